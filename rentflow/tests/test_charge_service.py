from decimal import Decimal

import pytest

from rentpay import db
from rentpay.models_autopay import PaymentAlert
from rentpay.models_billing import Customer, Payment, PaymentMethod
from rentpay.services.charge_service import ChargeProcessor, ChargeRequest
from rentpay.services.providers.base import PaymentResult
from rentpay.services.providers.errors import (
    AccountNotReadyError,
    PaymentDeclinedError,
    PaymentProviderError,
    ProviderTimeoutError,
)


def _request(customer, pm, account, amount="1800.00", **kwargs):
    return ChargeRequest(
        customer_id=customer.id,
        payment_method_id=pm.id,
        connected_account_id=account.id,
        amount=Decimal(amount),
        **kwargs,
    )


def test_charge_succeeds_with_platform_fee(provider, customer, bank_method, active_account):
    payment = ChargeProcessor(provider).charge(_request(customer, bank_method, active_account))

    assert payment.status == "succeeded"
    assert payment.amount == Decimal("1800.00")
    assert payment.platform_fee == Decimal("5.00")
    assert payment.net_amount == Decimal("1795.00")
    assert payment.processed_at is not None

    (sent,) = provider.args_for("create_payment")
    assert sent[0].destination_account_id == active_account.provider_account_id
    assert sent[0].application_fee_amount == Decimal("5.00")
    assert sent[0].metadata["payment_id"] == str(payment.id)


def test_account_not_ready_never_reaches_provider(provider, customer, bank_method, make_account):
    account = make_account("landlord-2", status="onboarding")

    with pytest.raises(AccountNotReadyError) as excinfo:
        ChargeProcessor(provider).charge(_request(customer, bank_method, account))

    assert excinfo.value.requirements == ["external_account"]
    assert provider.count("create_payment") == 0
    assert Payment.query.count() == 0


def test_invalid_requests_persist_nothing(provider, customer, bank_method, active_account):
    processor = ChargeProcessor(provider)

    with pytest.raises(ValueError):
        processor.charge(_request(customer, bank_method, active_account, amount="0"))

    bank_method.needs_replacement = True
    db.session.commit()
    with pytest.raises(ValueError):
        processor.charge(_request(customer, bank_method, active_account))

    assert provider.count("create_payment") == 0
    assert Payment.query.count() == 0


def test_declined_charge_is_recorded_and_raised(provider, customer, card_method, active_account):
    provider.outcomes["pm_card_1"] = [PaymentDeclinedError("Your card was declined.", decline_code="generic_decline")]

    with pytest.raises(PaymentDeclinedError):
        ChargeProcessor(provider).charge(_request(customer, card_method, active_account))

    payment = Payment.query.one()
    assert payment.status == "failed"
    assert payment.failure_kind == "declined"
    assert payment.failure_code == "card_declined"


def test_unclassified_provider_error_is_recorded(provider, customer, card_method, active_account):
    provider.outcomes["pm_card_1"] = [PaymentProviderError("Something went wrong", code="api_error")]

    with pytest.raises(PaymentProviderError):
        ChargeProcessor(provider).charge(_request(customer, card_method, active_account))

    assert Payment.query.one().failure_kind == "provider_error"


def test_timeout_leaves_status_unknown_then_reconciles(provider, customer, bank_method, active_account):
    provider.outcomes["pm_bank_1"] = [ProviderTimeoutError()]
    processor = ChargeProcessor(provider)

    payment = processor.charge(_request(customer, bank_method, active_account))
    assert payment.status == "pending"
    assert payment.status_unknown is True

    summary = processor.reconcile_pending()
    assert summary == {"checked": 1, "resolved": 1, "still_unknown": 0}

    payment = processor.get_payment(payment.id)
    assert payment.status == "succeeded"
    assert payment.status_unknown is False
    # Replayed under the original key, never a fresh charge
    keys = {args[0].idempotency_key for args in provider.args_for("create_payment")}
    assert keys == {payment.idempotency_key}


def test_reconcile_requeries_known_processor_id(provider, customer, bank_method, active_account):
    provider.outcomes["pm_bank_1"] = ["processing"]
    processor = ChargeProcessor(provider)
    payment = processor.charge(_request(customer, bank_method, active_account))
    payment.status_unknown = True
    db.session.commit()

    provider.payments[payment.provider_payment_id].status = "succeeded"
    payment = processor.reconcile(payment.id)

    assert payment.status == "succeeded"
    assert provider.count("get_payment") == 1


def test_idempotency_key_returns_existing_payment(provider, customer, bank_method, active_account):
    processor = ChargeProcessor(provider)

    first = processor.charge(_request(customer, bank_method, active_account, idempotency_key="client-key-1"))
    second = processor.charge(_request(customer, bank_method, active_account, idempotency_key="client-key-1"))

    assert first.id == second.id
    assert provider.count("create_payment") == 1


def test_idempotency_keys_are_scoped_per_customer(provider, customer, bank_method, active_account):
    other = Customer(tenant_ref="tenant-2", provider_customer_id="cus_tenant2", email="two@example.com")
    db.session.add(other)
    db.session.flush()
    other_method = PaymentMethod(
        customer_id=other.id, provider_payment_method_id="pm_bank_2", type="us_bank_account", is_default=True
    )
    db.session.add(other_method)
    db.session.commit()
    processor = ChargeProcessor(provider)

    mine = processor.charge(_request(customer, bank_method, active_account, idempotency_key="checkout-1"))
    theirs = processor.charge(_request(other, other_method, active_account, idempotency_key="checkout-1"))

    assert mine.id != theirs.id
    assert mine.idempotency_key == f"client-{customer.id}-checkout-1"
    assert provider.count("create_payment") == 2


def test_reused_idempotency_key_with_different_amount_is_rejected(provider, customer, bank_method, active_account):
    processor = ChargeProcessor(provider)
    processor.charge(_request(customer, bank_method, active_account, idempotency_key="checkout-1"))

    with pytest.raises(ValueError):
        processor.charge(_request(customer, bank_method, active_account, amount="900.00", idempotency_key="checkout-1"))
    assert Payment.query.count() == 1


def test_statement_descriptor_is_truncated(provider, customer, bank_method, active_account):
    payment = ChargeProcessor(provider).charge(
        _request(customer, bank_method, active_account, statement_descriptor="Sunset Apartments Monthly Rent")
    )
    assert payment.statement_descriptor == "Sunset Apartments Mont"


def test_refunds_never_exceed_charge(provider, customer, bank_method, active_account):
    processor = ChargeProcessor(provider)
    payment = processor.charge(_request(customer, bank_method, active_account))

    processor.refund(payment.id, Decimal("1000.00"), reason="requested_by_customer")
    with pytest.raises(ValueError):
        processor.refund(payment.id, Decimal("900.00"))

    remainder = processor.refund(payment.id)
    assert remainder.amount == Decimal("800.00")
    assert processor.get_payment(payment.id).refundable_amount == Decimal("0.00")
    assert provider.count("refund_payment") == 2


def test_refund_requires_succeeded_payment(provider, customer, bank_method, active_account):
    provider.outcomes["pm_bank_1"] = ["processing"]
    processor = ChargeProcessor(provider)
    payment = processor.charge(_request(customer, bank_method, active_account))

    with pytest.raises(ValueError):
        processor.refund(payment.id)
    assert provider.count("refund_payment") == 0


def test_out_of_order_updates_converge(provider, customer, bank_method, active_account):
    provider.outcomes["pm_bank_1"] = ["processing"]
    processor = ChargeProcessor(provider)
    payment = processor.charge(_request(customer, bank_method, active_account))
    pi_id = payment.provider_payment_id

    def update(status):
        processor.apply_payment_update(
            PaymentResult(provider_payment_id=pi_id, amount=Decimal("1800.00"), currency="usd", status=status)
        )
        db.session.commit()

    update("succeeded")
    update("processing")
    update("failed")

    payment = processor.get_payment(payment.id)
    assert payment.status == "succeeded"
    assert PaymentAlert.query.count() == 0


def test_async_failure_writes_alert(provider, customer, bank_method, active_account):
    provider.outcomes["pm_bank_1"] = ["processing"]
    processor = ChargeProcessor(provider)
    payment = processor.charge(_request(customer, bank_method, active_account))

    processor.apply_payment_update(PaymentResult(
        provider_payment_id=payment.provider_payment_id,
        amount=Decimal("1800.00"),
        currency="usd",
        status="failed",
        failure_code="insufficient_funds",
        failure_kind="insufficient_funds",
    ))
    db.session.commit()

    payment = processor.get_payment(payment.id)
    assert payment.failure_kind == "insufficient_funds"
    alert = PaymentAlert.query.one()
    assert alert.kind == "payment_failed"
    assert alert.payment_id == payment.id


def test_list_payments_filters_by_customer(provider, customer, bank_method, active_account):
    processor = ChargeProcessor(provider)
    processor.charge(_request(customer, bank_method, active_account, amount="100.00"))
    processor.charge(_request(customer, bank_method, active_account, amount="200.00"))

    payments = processor.list_payments(customer_id=customer.id)
    assert [p.base_amount for p in payments] == [Decimal("200.00"), Decimal("100.00")]
    assert processor.list_payments(customer_id=customer.id + 1) == []
