from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from rentpay import db
from rentpay.models_autopay import PaymentAlert
from rentpay.models_billing import Dispute
from rentpay.services.connect_service import ConnectAccountManager, derive_account_status
from rentpay.services.providers.base import AccountStatusResult, PayoutResult
from rentpay.services.providers.errors import AccountNotReadyError


def _status(**flags):
    return AccountStatusResult(provider_account_id="acct_x", **flags)


@pytest.mark.parametrize(
    "flags, current, expected",
    [
        ({}, "created", "created"),
        ({"details_submitted": True}, "created", "onboarding"),
        ({"charges_enabled": True, "payouts_enabled": True, "details_submitted": True}, "onboarding", "active"),
        ({"details_submitted": True, "disabled_reason": "requirements.past_due"}, "active", "restricted"),
        ({"details_submitted": True, "past_due": ["individual.id_number"]}, "active", "restricted"),
        ({"charges_enabled": True, "payouts_enabled": True}, "deauthorized", "deauthorized"),
        ({}, "onboarding", "onboarding"),
    ],
)
def test_derive_account_status(flags, current, expected):
    assert derive_account_status(_status(**flags), current) == expected


def test_create_account_and_onboarding_link(app, provider):
    manager = ConnectAccountManager(provider)

    account = manager.create_account("landlord-7", "owner@example.com", "individual")
    assert account.status == "created"
    assert account.payout_delay_days == 7
    assert account.outstanding_requirements == ["external_account", "tos_acceptance.date"]
    assert not account.can_accept_payments

    link = manager.create_onboarding_link(account.id)
    assert link.url.startswith("https://connect.stripe.com/setup/")
    assert manager.get_account(account.id).status == "onboarding"

    _, refresh_url, return_url = provider.args_for("get_onboarding_url")[0]
    assert refresh_url.endswith(f"/connect/{account.id}/onboarding/refresh")
    assert return_url.endswith(f"/connect/{account.id}/onboarding/complete")


def test_duplicate_landlord_account_is_rejected(app, provider):
    manager = ConnectAccountManager(provider)
    manager.create_account("landlord-7", "owner@example.com", "company")

    with pytest.raises(ValueError):
        manager.create_account("landlord-7", "owner@example.com", "company")
    assert provider.count("create_connected_account") == 1


def test_sync_status_activates_account(provider, make_account):
    account = make_account("landlord-3", status="onboarding")
    provider.account_statuses[account.provider_account_id] = AccountStatusResult(
        provider_account_id=account.provider_account_id,
        charges_enabled=True,
        payouts_enabled=True,
        details_submitted=True,
    )

    account = ConnectAccountManager(provider).sync_status(account.id)

    assert account.status == "active"
    assert account.can_accept_payments
    assert account.onboarded_at is not None
    assert account.last_synced_at is not None


def test_dashboard_link_requires_active_account(provider, make_account):
    account = make_account("landlord-3", status="onboarding")

    with pytest.raises(AccountNotReadyError):
        ConnectAccountManager(provider).create_dashboard_link(account.id)
    assert provider.count("get_express_dashboard_url") == 0


def test_expedited_requires_clawback_acknowledgment(provider, active_account):
    manager = ConnectAccountManager(provider)

    with pytest.raises(ValueError):
        manager.update_payout_speed(active_account.id, "expedited", delay_days=2)

    assert provider.count("update_payout_schedule") == 0
    assert manager.get_account(active_account.id).trust_level == "standard"


def test_expedited_requires_track_record(provider, active_account):
    manager = ConnectAccountManager(provider)

    eligible, reasons = manager.expedited_eligibility(active_account)
    assert not eligible
    assert len(reasons) == 2  # payouts and account age

    with pytest.raises(ValueError):
        manager.update_payout_speed(active_account.id, "expedited", acknowledge_clawback_risk=True)
    assert provider.count("update_payout_schedule") == 0


def test_expedited_with_acknowledgment(provider, make_account):
    account = make_account(successful_payout_count=3, created_at=datetime.utcnow() - timedelta(days=120))

    account = ConnectAccountManager(provider).update_payout_speed(
        account.id, "expedited", delay_days=2, acknowledge_clawback_risk=True
    )

    assert account.trust_level == "expedited"
    assert account.payout_delay_days == 2
    assert account.clawback_acknowledged_at is not None
    assert provider.args_for("update_payout_schedule") == [(account.provider_account_id, 2)]


def test_recent_dispute_blocks_expedited(provider, make_account):
    account = make_account(successful_payout_count=5, created_at=datetime.utcnow() - timedelta(days=365))
    db.session.add(Dispute(
        provider_dispute_id="dp_1",
        connected_account_id=account.id,
        amount=Decimal("1800.00"),
        status="needs_response",
    ))
    db.session.commit()

    eligible, reasons = ConnectAccountManager(provider).expedited_eligibility(account)
    assert not eligible
    assert reasons == ["no disputes allowed in the last 90 days"]


def test_standard_delay_must_be_in_range(provider, active_account):
    with pytest.raises(ValueError):
        ConnectAccountManager(provider).update_payout_speed(active_account.id, "standard", delay_days=5)
    assert provider.count("update_payout_schedule") == 0


def test_fee_configuration(provider, active_account):
    manager = ConnectAccountManager(provider)
    assert manager.update_fee_configuration(active_account.id, "tenant_pays").fee_mode == "tenant_pays"
    with pytest.raises(ValueError):
        manager.update_fee_configuration(active_account.id, "free")


def _payout(status, **kwargs):
    return PayoutResult(provider_payout_id="po_1", amount=Decimal("1795.00"), currency="usd", status=status, **kwargs)


def test_paid_payout_counted_once(provider, active_account):
    manager = ConnectAccountManager(provider)
    for status in ("in_transit", "paid", "paid", "in_transit"):
        manager.record_payout(_payout(status), active_account.provider_account_id)
        db.session.commit()

    account = manager.get_account(active_account.id)
    assert account.successful_payout_count == 1
    assert account.first_successful_payout_at is not None
    assert [p.status for p in manager.list_payouts(account.id)] == ["paid"]


def test_failed_payout_writes_alert(provider, active_account):
    manager = ConnectAccountManager(provider)
    manager.record_payout(
        _payout("failed", failure_code="account_closed", failure_message="The bank account has been closed"),
        active_account.provider_account_id,
    )
    db.session.commit()

    alert = PaymentAlert.query.one()
    assert alert.kind == "payout_failed"
    assert alert.connected_account_id == active_account.id


def test_get_payout_refresh(provider, active_account):
    manager = ConnectAccountManager(provider)
    payout = manager.record_payout(_payout("in_transit"), active_account.provider_account_id)
    db.session.commit()
    provider.payouts["po_1"] = _payout("paid")

    assert manager.get_payout(active_account.id, payout.id).status == "in_transit"
    assert manager.get_payout(active_account.id, payout.id, refresh=True).status == "paid"
    assert provider.args_for("get_payout") == [("po_1", active_account.provider_account_id)]

    with pytest.raises(LookupError):
        manager.get_payout(active_account.id + 1, payout.id)
