import os
from decimal import Decimal


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_days(name: str, default: str) -> tuple:
    return tuple(int(d) for d in os.environ.get(name, default).split(",") if d.strip())


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "change-this")
    SQLALCHEMY_DATABASE_URI = os.environ.get("SQLALCHEMY_DATABASE_URI", "sqlite:///rentflow.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    APP_NAME = os.environ.get("APP_NAME", "RentFlow")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")
    APP_ERROR_LOG = os.environ.get("APP_ERROR_LOG", os.path.join(os.path.expanduser("~"), "rentflow_error.log"))

    # Payment provider
    PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "stripe")
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_CONNECT_WEBHOOK_SECRET = os.environ.get("STRIPE_CONNECT_WEBHOOK_SECRET", "")
    STRIPE_REQUEST_TIMEOUT = float(os.environ.get("STRIPE_REQUEST_TIMEOUT", "30"))
    STRIPE_MAX_NETWORK_RETRIES = int(os.environ.get("STRIPE_MAX_NETWORK_RETRIES", "2"))

    # Charges
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "usd")
    STATEMENT_DESCRIPTOR = os.environ.get("STATEMENT_DESCRIPTOR", "RENT")
    # Platform fee per payment-method type: percent of the amount, capped (None = no cap)
    PLATFORM_FEE_RULES = {
        "us_bank_account": {
            "percent": Decimal(os.environ.get("ACH_FEE_PERCENT", "0.008")),
            "cap": Decimal(os.environ.get("ACH_FEE_CAP", "5.00")),
        },
        "card": {
            "percent": Decimal(os.environ.get("CARD_FEE_PERCENT", "0.029")),
            "cap": Decimal(os.environ.get("CARD_FEE_CAP", "50.00")),
        },
    }
    DEFAULT_FEE_MODE = os.environ.get("DEFAULT_FEE_MODE", "landlord_absorbs")

    # AutoPay
    # Delay before each retry; the first entry rolls forward to the next business day
    AUTOPAY_RETRY_DELAYS_DAYS = _env_days("AUTOPAY_RETRY_DELAYS_DAYS", "1,3,7")
    AUTOPAY_MAX_ATTEMPTS = len(AUTOPAY_RETRY_DELAYS_DAYS) + 1
    AUTOPAY_MAX_WORKERS = int(os.environ.get("AUTOPAY_MAX_WORKERS", "4"))

    # Connected accounts / payout speed
    STANDARD_PAYOUT_DELAY_DAYS = 7
    MAX_PAYOUT_DELAY_DAYS = 14
    EXPEDITED_PAYOUT_DELAY_RANGE = (2, 4)
    EXPEDITED_MIN_SUCCESSFUL_PAYOUTS = int(os.environ.get("EXPEDITED_MIN_SUCCESSFUL_PAYOUTS", "3"))
    EXPEDITED_DISPUTE_LOOKBACK_DAYS = 90
    EXPEDITED_MIN_ACCOUNT_AGE_DAYS = 90

    # Background jobs
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "false")
    SCHEDULER_MAX_WORKERS = int(os.environ.get("SCHEDULER_MAX_WORKERS", "3"))
    AUTOPAY_RUN_HOUR_UTC = int(os.environ.get("AUTOPAY_RUN_HOUR_UTC", "14"))

    # Rate limiting
    RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "memory://")
    RATELIMIT_ENABLED = _env_bool("RATELIMIT_ENABLED", "true")
    PAY_NOW_RATE_LIMIT = os.environ.get("PAY_NOW_RATE_LIMIT", "10 per minute")

    # Sentry error tracking and monitoring
    SENTRY_DSN = os.environ.get("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.environ.get("SENTRY_ENVIRONMENT", os.environ.get("ENVIRONMENT", "production"))
    SENTRY_RELEASE = os.environ.get("SENTRY_RELEASE", os.environ.get("GIT_COMMIT", "unknown"))
    SENTRY_TRACES_SAMPLE_RATE = float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.1"))  # 10% of requests
    SENTRY_PROFILES_SAMPLE_RATE = float(os.environ.get("SENTRY_PROFILES_SAMPLE_RATE", "0.1"))  # 10% profiling
    SENTRY_SAMPLE_RATE = float(os.environ.get("SENTRY_SAMPLE_RATE", "1.0"))  # 100% of errors


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_test_platform"
    STRIPE_CONNECT_WEBHOOK_SECRET = "whsec_test_connect"
    SCHEDULER_ENABLED = False
    RATELIMIT_ENABLED = False
    SENTRY_DSN = ""
    APP_ERROR_LOG = ""
