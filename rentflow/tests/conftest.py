import hashlib
import hmac
import itertools
import json
import threading
import time
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from rentpay import create_app, db
from rentpay.config import TestConfig
from rentpay.models_autopay import Lease
from rentpay.models_billing import Customer, PaymentMethod
from rentpay.models_connect import ConnectedAccount
from rentpay.services.providers import reset_payment_provider, set_payment_provider
from rentpay.services.providers.base import (
    AccountStatusResult,
    BankLinkSessionResult,
    ConnectedAccountResult,
    CustomerResult,
    OnboardingLink,
    PaymentMethodResult,
    PaymentProvider,
    PaymentResult,
    RefundResult,
    SetupSessionResult,
)
from rentpay.services.providers.errors import PaymentProviderError
from rentpay.services.providers.stripe_provider import StripeProvider


class FakeProvider(PaymentProvider):
    """
    In-memory processor. Charges are keyed by idempotency key like Stripe's,
    so replaying a request returns the first result.

    `outcomes[provider_payment_method_id]` is a queue of statuses or
    exceptions consumed by create_payment; an empty queue means "succeeded".
    Webhook verification is the real Stripe signature check.
    """

    provider_type = "stripe"

    def __init__(self):
        self.calls = []
        self.outcomes = {}
        self.charges = {}
        self.payments = {}
        self.account_statuses = {}
        self.payouts = {}
        self._ids = itertools.count(1)
        # create_payment runs on AutoPay worker threads
        self._lock = threading.Lock()
        self._verifier = StripeProvider(
            secret_key=TestConfig.STRIPE_SECRET_KEY,
            webhook_secret=TestConfig.STRIPE_WEBHOOK_SECRET,
            connect_webhook_secret=TestConfig.STRIPE_CONNECT_WEBHOOK_SECRET,
            timeout=None,
        )

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)

    def args_for(self, name):
        return [args for call, args in self.calls if call == name]

    def _record(self, name, *args):
        self.calls.append((name, args))
        return next(self._ids)

    # ---- customers ----
    def create_customer(self, data):
        n = self._record("create_customer", data)
        return CustomerResult(provider_customer_id=f"cus_{n}", email=data.email, name=data.name, phone=data.phone)

    def get_customer(self, provider_customer_id):
        self._record("get_customer", provider_customer_id)
        return CustomerResult(provider_customer_id=provider_customer_id)

    def update_customer(self, provider_customer_id, **updates):
        self._record("update_customer", provider_customer_id, updates)
        return CustomerResult(provider_customer_id=provider_customer_id, email=updates.get("email") or "")

    # ---- payment methods ----
    def create_setup_session(self, provider_customer_id, payment_method_types, metadata=None):
        n = self._record("create_setup_session", provider_customer_id, payment_method_types)
        return SetupSessionResult(session_id=f"seti_{n}", client_secret=f"seti_{n}_secret_test")

    def attach_payment_method(self, provider_customer_id, provider_payment_method_id, set_as_default=False):
        self._record("attach_payment_method", provider_customer_id, provider_payment_method_id, set_as_default)
        return self._method(provider_payment_method_id, provider_customer_id, set_as_default)

    def list_payment_methods(self, provider_customer_id):
        self._record("list_payment_methods", provider_customer_id)
        return []

    def get_payment_method(self, provider_payment_method_id):
        self._record("get_payment_method", provider_payment_method_id)
        return self._method(provider_payment_method_id)

    def detach_payment_method(self, provider_payment_method_id):
        self._record("detach_payment_method", provider_payment_method_id)

    def set_default_payment_method(self, provider_customer_id, provider_payment_method_id):
        self._record("set_default_payment_method", provider_customer_id, provider_payment_method_id)

    # ---- charges ----
    def create_payment(self, data):
        with self._lock:
            self._record("create_payment", data)
            if data.idempotency_key in self.charges:
                return self.charges[data.idempotency_key]

            queue = self.outcomes.get(data.payment_method_id) or []
            outcome = queue.pop(0) if queue else "succeeded"
            if isinstance(outcome, Exception):
                raise outcome

            result = PaymentResult(
                provider_payment_id=f"pi_{next(self._ids)}",
                amount=data.amount,
                currency=data.currency,
                status=outcome,
                platform_fee=data.application_fee_amount,
                destination_account_id=data.destination_account_id,
                metadata=dict(data.metadata),
            )
            self.charges[data.idempotency_key] = result
            self.payments[result.provider_payment_id] = result
            return result

    def get_payment(self, provider_payment_id):
        self._record("get_payment", provider_payment_id)
        if provider_payment_id not in self.payments:
            raise PaymentProviderError(f"No such payment_intent: '{provider_payment_id}'", code="resource_missing")
        return self.payments[provider_payment_id]

    def refund_payment(self, data):
        n = self._record("refund_payment", data)
        return RefundResult(
            provider_refund_id=f"re_{n}",
            amount=data.amount,
            currency="usd",
            status="succeeded",
            provider_payment_id=data.provider_payment_id,
            reason=data.reason,
        )

    # ---- connected accounts ----
    def create_connected_account(self, data):
        n = self._record("create_connected_account", data)
        return ConnectedAccountResult(
            provider_account_id=f"acct_{n}",
            currently_due=["external_account", "tos_acceptance.date"],
            email=data.email,
            business_type=data.business_type,
        )

    def get_onboarding_url(self, provider_account_id, refresh_url, return_url):
        n = self._record("get_onboarding_url", provider_account_id, refresh_url, return_url)
        return OnboardingLink(
            url=f"https://connect.stripe.com/setup/e/{provider_account_id}/{n}",
            expires_at=datetime.utcnow() + timedelta(minutes=5),
        )

    def get_express_dashboard_url(self, provider_account_id):
        self._record("get_express_dashboard_url", provider_account_id)
        return f"https://connect.stripe.com/express/{provider_account_id}"

    def get_account_status(self, provider_account_id):
        self._record("get_account_status", provider_account_id)
        return self.account_statuses.get(provider_account_id) or AccountStatusResult(
            provider_account_id=provider_account_id
        )

    def update_payout_schedule(self, provider_account_id, delay_days):
        self._record("update_payout_schedule", provider_account_id, delay_days)

    # ---- bank linking / payouts ----
    def create_bank_link_session(self, provider_customer_id, metadata=None):
        n = self._record("create_bank_link_session", provider_customer_id)
        return BankLinkSessionResult(session_id=f"seti_{n}", client_secret=f"seti_{n}_secret_test")

    def get_payout(self, provider_payout_id, provider_account_id=None):
        self._record("get_payout", provider_payout_id, provider_account_id)
        return self.payouts[provider_payout_id]

    # ---- webhooks ----
    def verify_webhook(self, payload, signature):
        return self._verifier.verify_webhook(payload, signature)

    def verify_connect_webhook(self, payload, signature):
        return self._verifier.verify_connect_webhook(payload, signature)

    @staticmethod
    def _method(provider_payment_method_id, provider_customer_id=None, is_default=False):
        if provider_payment_method_id.startswith("pm_card"):
            return PaymentMethodResult(
                provider_payment_method_id=provider_payment_method_id,
                type="card",
                provider_customer_id=provider_customer_id,
                is_default=is_default,
                card_brand="visa",
                card_last4="4242",
                card_exp_month=12,
                card_exp_year=2030,
                card_funding="credit",
                verification_status="verified",
            )
        return PaymentMethodResult(
            provider_payment_method_id=provider_payment_method_id,
            type="us_bank_account",
            provider_customer_id=provider_customer_id,
            is_default=is_default,
            bank_name="STRIPE TEST BANK",
            bank_account_last4="6789",
            bank_account_type="checking",
            verification_status="instant_verified",
        )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def app(provider):
    reset_payment_provider()
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        set_payment_provider(provider)
        yield app
        db.session.remove()
        db.drop_all()
    reset_payment_provider()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db_session(app):
    yield db.session
    db.session.rollback()


@pytest.fixture
def sign_payload():
    """Stripe-Signature header for a payload: t=<ts>,v1=HMAC-SHA256(secret, "<ts>.<payload>")."""

    def _sign(event, secret=TestConfig.STRIPE_WEBHOOK_SECRET, timestamp=None):
        payload = json.dumps(event).encode("utf-8")
        timestamp = timestamp or int(time.time())
        digest = hmac.new(
            secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + payload, hashlib.sha256
        ).hexdigest()
        return payload, f"t={timestamp},v1={digest}"

    return _sign


# ===== ledger factories =====

@pytest.fixture
def customer(app):
    customer = Customer(
        tenant_ref="tenant-1",
        provider_customer_id="cus_tenant1",
        email="tenant@example.com",
        name="Terry Tenant",
    )
    db.session.add(customer)
    db.session.commit()
    return customer


@pytest.fixture
def bank_method(customer):
    pm = PaymentMethod(
        customer_id=customer.id,
        provider_payment_method_id="pm_bank_1",
        type="us_bank_account",
        bank_name="STRIPE TEST BANK",
        bank_account_last4="6789",
        bank_account_type="checking",
        verification_status="instant_verified",
        is_default=True,
    )
    db.session.add(pm)
    customer.default_payment_method_id = "pm_bank_1"
    db.session.commit()
    return pm


@pytest.fixture
def card_method(customer):
    pm = PaymentMethod(
        customer_id=customer.id,
        provider_payment_method_id="pm_card_1",
        type="card",
        card_brand="visa",
        card_last4="4242",
        card_exp_month=12,
        card_exp_year=2030,
        verification_status="verified",
        is_default=False,
    )
    db.session.add(pm)
    db.session.commit()
    return pm


@pytest.fixture
def make_account(app):
    def _make(landlord_ref="landlord-1", status="active", **fields):
        ready = status == "active"
        account = ConnectedAccount(
            landlord_ref=landlord_ref,
            provider_account_id=f"acct_{landlord_ref.replace('-', '')}",
            email=f"{landlord_ref}@example.com",
            business_type="individual",
            status=status,
            charges_enabled=ready,
            payouts_enabled=ready,
            details_submitted=ready,
            requirements_currently_due=[] if ready else ["external_account"],
        )
        for key, value in fields.items():
            setattr(account, key, value)
        db.session.add(account)
        db.session.commit()
        return account

    return _make


@pytest.fixture
def active_account(make_account):
    return make_account()


@pytest.fixture
def make_lease(customer):
    def _make(account, lease_ref="lease-1", rent_amount="1800.00", status="active"):
        lease = Lease(
            lease_ref=lease_ref,
            customer_id=customer.id,
            connected_account_id=account.id,
            property_label="12 Elm St, Unit 4",
            rent_amount=Decimal(rent_amount),
            status=status,
        )
        db.session.add(lease)
        db.session.commit()
        return lease

    return _make


@pytest.fixture
def lease(make_lease, active_account):
    return make_lease(active_account)
