from decimal import Decimal

import pytest
import stripe

from rentpay.services.providers import base
from rentpay.services.providers.base import CreatePaymentInput
from rentpay.services.providers.errors import (
    AccountNotReadyError,
    ConfigurationError,
    InsufficientFundsError,
    InvalidPaymentMethodError,
    PaymentDeclinedError,
    PaymentProviderError,
    ProviderTimeoutError,
    WebhookSignatureError,
)
from rentpay.services.providers.stripe_provider import (
    StripeProvider,
    classify_failure,
    to_major_units,
    to_minor_units,
    truncate_descriptor,
)


@pytest.fixture
def stripe_provider():
    return StripeProvider("sk_test_dummy", webhook_secret="whsec_test_platform", timeout=None)


def _payment_input(**overrides):
    data = dict(
        amount=Decimal("1800.00"),
        currency="USD",
        customer_id="cus_1",
        payment_method_id="pm_bank_1",
        destination_account_id="acct_landlord1",
        idempotency_key="autopay-7-1",
        application_fee_amount=Decimal("5.00"),
        statement_descriptor="Sunset Apartments Monthly Rent",
        metadata={"payment_id": "42"},
    )
    data.update(overrides)
    return CreatePaymentInput(**data)


def _raise(error):
    def create(*args, **kwargs):
        raise error
    return create


def test_money_conversions():
    assert to_minor_units(Decimal("1800.00")) == 180000
    assert to_minor_units("19.995") == 2000
    assert to_major_units(179500) == Decimal("1795.00")
    assert truncate_descriptor("Sunset Apartments Monthly Rent") == "Sunset Apartments Mont"
    assert truncate_descriptor("") is None


@pytest.mark.parametrize(
    "code, decline_code, kind",
    [
        ("card_declined", "insufficient_funds", "insufficient_funds"),
        ("insufficient_funds", None, "insufficient_funds"),
        ("card_declined", "do_not_honor", "declined"),
        ("expired_card", None, "invalid_payment_method"),
        ("bank_account_unusable", None, "invalid_payment_method"),
        ("rate_limit", None, None),
    ],
)
def test_classify_failure(code, decline_code, kind):
    assert classify_failure(code, decline_code) == kind


def test_create_payment_builds_destination_charge(stripe_provider, monkeypatch):
    sent = {}

    def create(**kwargs):
        sent.update(kwargs)
        return {
            "id": "pi_123",
            "object": "payment_intent",
            "amount": 180000,
            "currency": "usd",
            "status": "processing",
            "application_fee_amount": 500,
            "transfer_data": {"destination": "acct_landlord1"},
            "metadata": {"payment_id": "42"},
        }

    monkeypatch.setattr(stripe.PaymentIntent, "create", create)

    result = stripe_provider.create_payment(_payment_input())

    assert sent["amount"] == 180000
    assert sent["currency"] == "usd"
    assert sent["application_fee_amount"] == 500
    assert sent["transfer_data"] == {"destination": "acct_landlord1"}
    assert sent["off_session"] is True and sent["confirm"] is True
    assert sent["statement_descriptor_suffix"] == "Sunset Apartments Mont"
    assert sent["idempotency_key"] == "autopay-7-1"
    assert sent["api_key"] == "sk_test_dummy"

    assert result.provider_payment_id == "pi_123"
    assert result.status == "processing"
    assert result.amount == Decimal("1800.00")
    assert result.platform_fee == Decimal("5.00")
    assert result.destination_account_id == "acct_landlord1"
    assert result.metadata == {"payment_id": "42"}


def test_card_error_with_insufficient_funds(stripe_provider, monkeypatch):
    error = stripe.CardError(
        "Your card has insufficient funds.",
        None,
        "card_declined",
        json_body={"error": {
            "code": "card_declined",
            "decline_code": "insufficient_funds",
            "message": "Your card has insufficient funds.",
            "payment_intent": {"id": "pi_456", "object": "payment_intent"},
        }},
    )
    monkeypatch.setattr(stripe.PaymentIntent, "create", _raise(error))

    with pytest.raises(InsufficientFundsError) as excinfo:
        stripe_provider.create_payment(_payment_input())

    assert excinfo.value.provider_payment_id == "pi_456"
    assert excinfo.value.original_error is error


def test_generic_decline(stripe_provider, monkeypatch):
    error = stripe.CardError(
        "Your card was declined.",
        None,
        "card_declined",
        json_body={"error": {"code": "card_declined", "decline_code": "generic_decline"}},
    )
    monkeypatch.setattr(stripe.PaymentIntent, "create", _raise(error))

    with pytest.raises(PaymentDeclinedError) as excinfo:
        stripe_provider.create_payment(_payment_input())
    assert excinfo.value.decline_code == "generic_decline"


@pytest.mark.parametrize(
    "code, expected",
    [
        ("payment_method_unactivated", InvalidPaymentMethodError),
        ("account_invalid", AccountNotReadyError),
        ("parameter_missing", PaymentProviderError),
    ],
)
def test_invalid_request_errors(stripe_provider, monkeypatch, code, expected):
    error = stripe.InvalidRequestError("Request failed", "payment_method", code=code)
    monkeypatch.setattr(stripe.PaymentIntent, "create", _raise(error))

    with pytest.raises(expected) as excinfo:
        stripe_provider.create_payment(_payment_input())
    assert type(excinfo.value) is expected
    assert excinfo.value.code == code


def test_connection_error_means_status_unknown(stripe_provider, monkeypatch):
    monkeypatch.setattr(stripe.PaymentIntent, "create", _raise(stripe.APIConnectionError("Read timed out")))

    with pytest.raises(ProviderTimeoutError) as excinfo:
        stripe_provider.create_payment(_payment_input())
    assert excinfo.value.kind == "status_unknown"


def test_missing_secret_key():
    with pytest.raises(ConfigurationError):
        StripeProvider("")


def test_webhook_requires_valid_signature(stripe_provider, sign_payload):
    payload, _ = sign_payload({"id": "evt_1", "object": "event", "type": "payout.paid", "data": {"object": {}}})
    _, forged = sign_payload({"id": "evt_2"}, secret="whsec_test_platform")

    with pytest.raises(WebhookSignatureError):
        stripe_provider.verify_webhook(payload, forged)
    with pytest.raises(WebhookSignatureError):
        stripe_provider.verify_webhook(payload, None)
    with pytest.raises(ConfigurationError):
        stripe_provider.verify_connect_webhook(payload, forged)


def test_webhook_event_is_normalized(stripe_provider, sign_payload):
    payload, signature = sign_payload({
        "id": "evt_10",
        "object": "event",
        "type": "charge.dispute.closed",
        "created": 1780300800,
        "livemode": False,
        "data": {"object": {
            "id": "dp_1",
            "object": "dispute",
            "amount": 180000,
            "currency": "usd",
            "status": "warning_closed",
            "reason": "fraudulent",
            "payment_intent": "pi_123",
        }},
    })

    event = stripe_provider.verify_webhook(payload, signature)

    assert event.id == "evt_10"
    assert event.type == base.EVENT_DISPUTE_CLOSED
    assert event.raw_type == "charge.dispute.closed"
    assert event.data.status == "closed"
    assert event.data.provider_payment_id == "pi_123"
    assert event.data.amount == Decimal("1800.00")


def _retrieved_intent(status, error=None):
    intent = {
        "id": "pi_789",
        "object": "payment_intent",
        "amount": 180000,
        "currency": "usd",
        "status": status,
        "metadata": {},
    }
    if error:
        intent["last_payment_error"] = error
    return intent


def test_requery_of_failed_confirmation_reports_failed(stripe_provider, monkeypatch):
    intent = _retrieved_intent(
        "requires_payment_method", {"code": "card_declined", "decline_code": "insufficient_funds"}
    )
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", lambda *args, **kwargs: intent)

    result = stripe_provider.get_payment("pi_789")

    assert result.status == "failed"
    assert result.failure_kind == "insufficient_funds"


def test_requery_of_unconfirmed_intent_stays_pending(stripe_provider, monkeypatch):
    monkeypatch.setattr(
        stripe.PaymentIntent, "retrieve", lambda *args, **kwargs: _retrieved_intent("requires_payment_method")
    )

    assert stripe_provider.get_payment("pi_789").status == "pending"


def test_charge_refunded_event_lists_refunds(stripe_provider, sign_payload):
    payload, signature = sign_payload({
        "id": "evt_11",
        "object": "event",
        "type": "charge.refunded",
        "data": {"object": {
            "id": "ch_1",
            "object": "charge",
            "amount_refunded": 30000,
            "payment_intent": "pi_123",
            "refunds": {"object": "list", "data": [
                {"id": "re_1", "object": "refund", "amount": 30000, "currency": "usd", "status": "succeeded"},
            ]},
        }},
    })

    event = stripe_provider.verify_webhook(payload, signature)

    assert event.type == base.EVENT_CHARGE_REFUNDED
    (refund,) = event.data
    assert refund.provider_refund_id == "re_1"
    assert refund.provider_payment_id == "pi_123"
    assert refund.amount == Decimal("300.00")
