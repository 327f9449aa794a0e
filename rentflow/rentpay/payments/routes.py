# rentpay/payments/routes.py
"""
JSON API for the dashboard and internal callers.

- Customers and payment methods (setup sessions, bank linking, defaults)
- Pay now (rate limited, optional Idempotency-Key header)
- AutoPay enrollment
- Landlord connected accounts: onboarding, dashboard, payout speed, fees, payouts
- Payment / refund history and refunds
- Payment alerts
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from flask import current_app, jsonify, redirect, request

from rentpay import db, limiter
from rentpay.models_autopay import PaymentAlert
from rentpay.models_connect import ConnectedAccount
from rentpay.payments import payments_bp
from rentpay.services.autopay_service import AutoPayScheduler
from rentpay.services.charge_service import ChargeProcessor, ChargeRequest, calculate_fees
from rentpay.services.connect_service import ConnectAccountManager
from rentpay.services.customer_service import CustomerService
from rentpay.services.providers import get_payment_provider
from rentpay.services.providers.errors import (
    AccountNotReadyError,
    ConfigurationError,
    InsufficientFundsError,
    InvalidPaymentMethodError,
    PaymentDeclinedError,
    PaymentProviderError,
    ProviderTimeoutError,
)


# ===== error mapping =====

@payments_bp.errorhandler(PaymentDeclinedError)
@payments_bp.errorhandler(InsufficientFundsError)
@payments_bp.errorhandler(InvalidPaymentMethodError)
def _payment_refused(e: PaymentProviderError):
    return jsonify(e.to_dict()), 402


@payments_bp.errorhandler(AccountNotReadyError)
def _account_not_ready(e: AccountNotReadyError):
    return jsonify(e.to_dict()), 409


@payments_bp.errorhandler(ProviderTimeoutError)
def _provider_timeout(e: ProviderTimeoutError):
    return jsonify(e.to_dict()), 504


@payments_bp.errorhandler(PaymentProviderError)
def _provider_error(e: PaymentProviderError):
    current_app.logger.error(f"Payment provider error: {e.message} ({e.code})")
    return jsonify(e.to_dict()), 502


@payments_bp.errorhandler(ConfigurationError)
def _configuration_error(e: ConfigurationError):
    current_app.logger.error(f"Payment provider misconfigured: {e}")
    return jsonify(error="configuration_error", message="Payments are not configured"), 503


@payments_bp.errorhandler(ValueError)
def _bad_request(e: ValueError):
    return jsonify(error="invalid_request", message=str(e)), 400


@payments_bp.errorhandler(LookupError)
def _not_found(e: LookupError):
    return jsonify(error="not_found", message=str(e.args[0]) if e.args else "Not found"), 404


# ===== helpers =====

def _json() -> dict:
    return request.get_json(silent=True) or {}


def _require(data: dict, *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValueError(f"Missing required field(s): {', '.join(missing)}")


def _decimal(value: Any, field: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{field} must be a number")


def _int(value: Any, field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be an integer")


def _customers() -> CustomerService:
    return CustomerService(get_payment_provider())


def _charges() -> ChargeProcessor:
    return ChargeProcessor(get_payment_provider())


def _connect() -> ConnectAccountManager:
    return ConnectAccountManager(get_payment_provider())


def _autopay() -> AutoPayScheduler:
    provider = get_payment_provider()
    return AutoPayScheduler(ChargeProcessor(provider), CustomerService(provider))


# ===== customers & payment methods =====

@payments_bp.route("/customers", methods=["POST"])
def create_customer():
    data = _json()
    _require(data, "tenant_ref", "email")
    customer = _customers().get_or_create_customer(
        tenant_ref=str(data["tenant_ref"]),
        email=data["email"].strip().lower(),
        name=data.get("name") or "",
        phone=data.get("phone"),
    )
    return jsonify(customer.to_dict()), 201


@payments_bp.route("/customers/<int:customer_id>", methods=["GET"])
def get_customer(customer_id):
    return jsonify(_customers().get_customer(customer_id).to_dict())


@payments_bp.route("/customers/<int:customer_id>", methods=["PATCH"])
def update_customer(customer_id):
    data = _json()
    customer = _customers().update_customer(
        customer_id, email=data.get("email"), name=data.get("name"), phone=data.get("phone")
    )
    return jsonify(customer.to_dict())


@payments_bp.route("/customers/<int:customer_id>/setup-session", methods=["POST"])
def create_setup_session(customer_id):
    types = _json().get("payment_method_types") or ["us_bank_account", "card"]
    session = _customers().create_setup_session(customer_id, types)
    return jsonify(
        session_id=session.session_id,
        client_secret=session.client_secret,
        expires_at=session.expires_at.isoformat() if session.expires_at else None,
    ), 201


@payments_bp.route("/customers/<int:customer_id>/bank-link-session", methods=["POST"])
def create_bank_link_session(customer_id):
    session = _customers().create_bank_link_session(customer_id)
    return jsonify(
        session_id=session.session_id,
        client_secret=session.client_secret,
        expires_at=session.expires_at.isoformat() if session.expires_at else None,
    ), 201


@payments_bp.route("/customers/<int:customer_id>/payment-methods", methods=["GET"])
def list_payment_methods(customer_id):
    include_inactive = request.args.get("include_inactive") in ("1", "true")
    methods = _customers().list_payment_methods(customer_id, include_inactive=include_inactive)
    return jsonify(payment_methods=[pm.to_dict() for pm in methods])


@payments_bp.route("/customers/<int:customer_id>/payment-methods", methods=["POST"])
def add_payment_method(customer_id):
    data = _json()
    _require(data, "provider_payment_method_id")
    pm = _customers().save_payment_method(
        customer_id,
        data["provider_payment_method_id"],
        set_as_default=bool(data.get("set_as_default")),
        nickname=data.get("nickname"),
    )
    return jsonify(pm.to_dict()), 201


@payments_bp.route("/customers/<int:customer_id>/payment-methods/<int:pm_id>/default", methods=["POST"])
def set_default_payment_method(customer_id, pm_id):
    pm = _customers().set_default_payment_method(customer_id, pm_id)
    return jsonify(pm.to_dict())


@payments_bp.route("/customers/<int:customer_id>/payment-methods/<int:pm_id>", methods=["PATCH"])
def update_payment_method(customer_id, pm_id):
    data = _json()
    _require(data, "nickname")
    pm = _customers().update_payment_method_nickname(customer_id, pm_id, data["nickname"])
    return jsonify(pm.to_dict())


@payments_bp.route("/customers/<int:customer_id>/payment-methods/<int:pm_id>", methods=["DELETE"])
def remove_payment_method(customer_id, pm_id):
    _customers().remove_payment_method(customer_id, pm_id)
    return "", 204


# ===== pay now =====

@payments_bp.route("/pay", methods=["POST"])
@limiter.limit(lambda: current_app.config.get("PAY_NOW_RATE_LIMIT", "10 per minute"))
def pay_now():
    data = _json()
    _require(data, "customer_id", "payment_method_id", "connected_account_id", "amount")

    payment = _charges().charge(ChargeRequest(
        customer_id=_int(data["customer_id"], "customer_id"),
        payment_method_id=_int(data["payment_method_id"], "payment_method_id"),
        connected_account_id=_int(data["connected_account_id"], "connected_account_id"),
        amount=_decimal(data["amount"], "amount"),
        currency=data.get("currency"),
        application_fee_amount=_decimal(data.get("application_fee_amount"), "application_fee_amount"),
        statement_descriptor=data.get("statement_descriptor"),
        description=data.get("description"),
        metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
        lease_id=_int(data.get("lease_id"), "lease_id"),
        idempotency_key=request.headers.get("Idempotency-Key"),
    ))
    # 202 while the outcome is still settling (ACH processing, unknown after timeout)
    return jsonify(payment.to_dict()), 201 if payment.is_terminal else 202


@payments_bp.route("/fees/quote", methods=["GET"])
def quote_fees():
    amount = _decimal(request.args.get("amount"), "amount")
    if amount is None:
        raise ValueError("amount is required")
    fee_mode = request.args.get("fee_mode")
    account_id = _int(request.args.get("connected_account_id"), "connected_account_id")
    if account_id and not fee_mode:
        fee_mode = _connect().get_account(account_id).fee_mode
    breakdown = calculate_fees(
        amount,
        request.args.get("method_type", "us_bank_account"),
        fee_mode or current_app.config.get("DEFAULT_FEE_MODE", "landlord_absorbs"),
    )
    return jsonify(breakdown.to_dict())


# ===== payments & refunds =====

@payments_bp.route("/payments", methods=["GET"])
def list_payments():
    payments = _charges().list_payments(
        customer_id=_int(request.args.get("customer_id"), "customer_id"),
        connected_account_id=_int(request.args.get("connected_account_id"), "connected_account_id"),
        lease_id=_int(request.args.get("lease_id"), "lease_id"),
        status=request.args.get("status"),
        limit=min(_int(request.args.get("limit"), "limit") or 50, 200),
        offset=_int(request.args.get("offset"), "offset") or 0,
    )
    return jsonify(payments=[p.to_dict() for p in payments])


@payments_bp.route("/payments/<int:payment_id>", methods=["GET"])
def get_payment(payment_id):
    return jsonify(_charges().get_payment(payment_id).to_dict())


@payments_bp.route("/payments/<int:payment_id>/refunds", methods=["GET"])
def list_refunds(payment_id):
    return jsonify(refunds=[r.to_dict() for r in _charges().list_refunds(payment_id)])


@payments_bp.route("/payments/<int:payment_id>/refunds", methods=["POST"])
def create_refund(payment_id):
    data = _json()
    refund = _charges().refund(
        payment_id, amount=_decimal(data.get("amount"), "amount"), reason=data.get("reason")
    )
    return jsonify(refund.to_dict()), 201


# ===== AutoPay =====

@payments_bp.route("/autopay", methods=["PUT"])
def enable_autopay():
    data = _json()
    _require(data, "customer_id", "lease_id", "payment_method_id", "day_of_month")
    schedule = _autopay().enable(
        customer_id=_int(data["customer_id"], "customer_id"),
        lease_id=_int(data["lease_id"], "lease_id"),
        payment_method_id=_int(data["payment_method_id"], "payment_method_id"),
        day_of_month=_int(data["day_of_month"], "day_of_month"),
        amount=_decimal(data.get("amount"), "amount"),
    )
    return jsonify(schedule.to_dict())


@payments_bp.route("/autopay/<int:customer_id>/<int:lease_id>", methods=["GET"])
def get_autopay(customer_id, lease_id):
    autopay = _autopay()
    schedule = autopay.get_schedule(customer_id, lease_id)
    if schedule is None:
        raise LookupError("AutoPay is not set up for this lease")
    data = schedule.to_dict()
    if schedule.enabled:
        data["next_payment_date"] = autopay.next_payment_date(
            schedule.day_of_month, datetime.utcnow().date()
        ).isoformat()
    return jsonify(data)


@payments_bp.route("/autopay/<int:customer_id>/<int:lease_id>", methods=["DELETE"])
def disable_autopay(customer_id, lease_id):
    schedule = _autopay().disable(customer_id, lease_id)
    return jsonify(schedule.to_dict())


# ===== connected accounts =====

@payments_bp.route("/connect", methods=["POST"])
def create_connected_account():
    data = _json()
    _require(data, "landlord_ref", "email", "business_type")
    account = _connect().create_account(
        landlord_ref=str(data["landlord_ref"]),
        email=data["email"].strip().lower(),
        business_type=data["business_type"],
        business_name=data.get("business_name"),
        business_structure=data.get("business_structure"),
        country=data.get("country") or "US",
    )
    return jsonify(account.to_dict()), 201


@payments_bp.route("/connect/<int:account_id>", methods=["GET"])
def get_connected_account(account_id):
    return jsonify(_connect().get_account(account_id).to_dict())


@payments_bp.route("/connect/<int:account_id>/onboarding-link", methods=["POST"])
def create_onboarding_link(account_id):
    data = _json()
    link = _connect().create_onboarding_link(
        account_id, refresh_url=data.get("refresh_url"), return_url=data.get("return_url")
    )
    return jsonify(url=link.url, expires_at=link.expires_at.isoformat() if link.expires_at else None), 201


@payments_bp.route("/connect/<int:account_id>/onboarding/refresh", methods=["GET"])
def refresh_onboarding(account_id):
    # Onboarding links are single-use; the processor sends the landlord here for a new one
    link = _connect().create_onboarding_link(account_id)
    return redirect(link.url)


@payments_bp.route("/connect/<int:account_id>/onboarding/complete", methods=["GET"])
def complete_onboarding(account_id):
    account = _connect().sync_status(account_id)
    return jsonify(account.to_dict())


@payments_bp.route("/connect/<int:account_id>/dashboard-link", methods=["POST"])
def create_dashboard_link(account_id):
    return jsonify(url=_connect().create_dashboard_link(account_id)), 201


@payments_bp.route("/connect/<int:account_id>/sync", methods=["POST"])
def sync_connected_account(account_id):
    return jsonify(_connect().sync_status(account_id).to_dict())


@payments_bp.route("/connect/<int:account_id>/payout-speed", methods=["PUT"])
def update_payout_speed(account_id):
    data = _json()
    _require(data, "trust_level")
    account = _connect().update_payout_speed(
        account_id,
        trust_level=data["trust_level"],
        delay_days=_int(data.get("delay_days"), "delay_days"),
        acknowledge_clawback_risk=data.get("acknowledge_clawback_risk") is True,
    )
    return jsonify(account.to_dict())


@payments_bp.route("/connect/<int:account_id>/payout-speed/eligibility", methods=["GET"])
def payout_speed_eligibility(account_id):
    manager = _connect()
    eligible, reasons = manager.expedited_eligibility(manager.get_account(account_id))
    return jsonify(eligible=eligible, reasons=reasons)


@payments_bp.route("/connect/<int:account_id>/fee-configuration", methods=["PUT"])
def update_fee_configuration(account_id):
    data = _json()
    _require(data, "fee_mode")
    return jsonify(_connect().update_fee_configuration(account_id, data["fee_mode"]).to_dict())


@payments_bp.route("/connect/<int:account_id>/payouts", methods=["GET"])
def list_payouts(account_id):
    limit = min(_int(request.args.get("limit"), "limit") or 50, 200)
    return jsonify(payouts=[p.to_dict() for p in _connect().list_payouts(account_id, limit=limit)])


@payments_bp.route("/connect/<int:account_id>/payouts/<int:payout_id>", methods=["GET"])
def get_payout(account_id, payout_id):
    refresh = request.args.get("refresh") in ("1", "true")
    return jsonify(_connect().get_payout(account_id, payout_id, refresh=refresh).to_dict())


# ===== alerts =====

@payments_bp.route("/alerts", methods=["GET"])
def list_alerts():
    query = PaymentAlert.query.filter(PaymentAlert.resolved_at.is_(None))
    customer_id = _int(request.args.get("customer_id"), "customer_id")
    account_id = _int(request.args.get("connected_account_id"), "connected_account_id")
    if customer_id is not None:
        query = query.filter_by(customer_id=customer_id)
    if account_id is not None:
        if not db.session.get(ConnectedAccount, account_id):
            raise LookupError(f"Connected account {account_id} not found")
        query = query.filter_by(connected_account_id=account_id)
    alerts = query.order_by(PaymentAlert.created_at.desc()).limit(100).all()
    return jsonify(alerts=[a.to_dict() for a in alerts])
