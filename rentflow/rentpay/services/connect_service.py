# rentpay/services/connect_service.py
"""
Connected-account lifecycle for landlords.

Provides:
- Express account creation and single-use onboarding links
- Express dashboard login links
- Status sync (polling) and webhook-driven status updates
- Payout speed ("trust level") with explicit clawback-risk acknowledgment
- Fee configuration mode per landlord
- Payout ledger updates

No DB transaction is held open across a provider call: reads are committed,
the provider is called, then results are written in a fresh transaction.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from flask import current_app

from rentpay import db
from rentpay.models_autopay import PaymentAlert
from rentpay.models_billing import Dispute
from rentpay.models_connect import FEE_MODES, TRUST_LEVELS, ConnectedAccount, Payout
from rentpay.services import end_transaction
from rentpay.services.providers.base import (
    AccountStatusResult,
    ConnectedAccountInput,
    OnboardingLink,
    PaymentProvider,
    PayoutResult,
)
from rentpay.services.providers.errors import AccountNotReadyError

_PAYOUT_RANK = {"pending": 0, "in_transit": 1, "paid": 2, "failed": 2, "canceled": 2}


def derive_account_status(status: AccountStatusResult, current: Optional[str] = None) -> str:
    """Local lifecycle state from the processor's capability/requirement flags."""
    if current == "deauthorized":
        return "deauthorized"
    if status.charges_enabled and status.payouts_enabled and not status.disabled_reason:
        return "active"
    if status.details_submitted and (status.disabled_reason or status.past_due):
        return "restricted"
    if current == "created" and not status.details_submitted:
        return "created"
    return "onboarding"


class ConnectAccountManager:
    def __init__(self, provider: PaymentProvider):
        self.provider = provider

    # ===== lookups =====

    def get_account(self, account_id: int) -> ConnectedAccount:
        account = db.session.get(ConnectedAccount, account_id)
        if not account:
            raise LookupError(f"Connected account {account_id} not found")
        return account

    def get_by_landlord(self, landlord_ref: str) -> Optional[ConnectedAccount]:
        return ConnectedAccount.query.filter_by(landlord_ref=landlord_ref).first()

    def get_by_provider_id(self, provider_account_id: str) -> Optional[ConnectedAccount]:
        return ConnectedAccount.query.filter_by(provider_account_id=provider_account_id).first()

    # ===== lifecycle =====

    def create_account(
        self,
        landlord_ref: str,
        email: str,
        business_type: str,
        business_name: Optional[str] = None,
        business_structure: Optional[str] = None,
        country: str = "US",
    ) -> ConnectedAccount:
        if business_type not in ("individual", "company"):
            raise ValueError("business_type must be 'individual' or 'company'")
        if self.get_by_landlord(landlord_ref):
            raise ValueError(f"Landlord {landlord_ref} already has a connected account")

        delay_days = current_app.config.get("STANDARD_PAYOUT_DELAY_DAYS", 7)
        end_transaction()

        result = self.provider.create_connected_account(
            ConnectedAccountInput(
                email=email,
                business_type=business_type,
                country=country,
                business_name=business_name,
                business_structure=business_structure,
                payout_delay_days=delay_days,
                metadata={"landlord_ref": landlord_ref},
            )
        )

        account = ConnectedAccount(
            landlord_ref=landlord_ref,
            provider_account_id=result.provider_account_id,
            email=email,
            business_type=business_type,
            business_name=business_name,
            country=country,
            status="created",
            trust_level="standard",
            payout_delay_days=delay_days,
            fee_mode=current_app.config.get("DEFAULT_FEE_MODE", "landlord_absorbs"),
        )
        self._write_status(account, result)
        db.session.add(account)
        db.session.commit()

        current_app.logger.info(
            f"Created connected account {result.provider_account_id} for landlord {landlord_ref}"
        )
        return account

    def create_onboarding_link(
        self, account_id: int, refresh_url: Optional[str] = None, return_url: Optional[str] = None
    ) -> OnboardingLink:
        """
        A fresh single-use onboarding link. Links expire quickly, so one is
        generated per request and never stored.
        """
        account = self.get_account(account_id)
        if account.status == "deauthorized":
            raise ValueError("Connected account was disconnected from the platform")

        base_url = (current_app.config.get("APP_BASE_URL") or "").rstrip("/")
        refresh_url = refresh_url or f"{base_url}/api/payments/connect/{account_id}/onboarding/refresh"
        return_url = return_url or f"{base_url}/api/payments/connect/{account_id}/onboarding/complete"
        provider_account_id = account.provider_account_id
        end_transaction()

        link = self.provider.get_onboarding_url(provider_account_id, refresh_url, return_url)

        account = self.get_account(account_id)
        if account.status == "created":
            account.status = "onboarding"
            db.session.commit()
        return link

    def create_dashboard_link(self, account_id: int) -> str:
        account = self.get_account(account_id)
        if account.status != "active":
            raise AccountNotReadyError(
                "Dashboard access is available once onboarding is complete",
                requirements=account.outstanding_requirements,
            )
        provider_account_id = account.provider_account_id
        end_transaction()
        return self.provider.get_express_dashboard_url(provider_account_id)

    def sync_status(self, account_id: int) -> ConnectedAccount:
        """Poll the processor and persist the account's capability/requirement state."""
        account = self.get_account(account_id)
        provider_account_id = account.provider_account_id
        end_transaction()

        status = self.provider.get_account_status(provider_account_id)

        account = self.apply_account_status(status)
        db.session.commit()
        return account

    def apply_account_status(self, status: AccountStatusResult) -> Optional[ConnectedAccount]:
        """Write a status snapshot. Caller commits (webhooks run this inside their transaction)."""
        account = self.get_by_provider_id(status.provider_account_id)
        if account is None:
            current_app.logger.warning(f"Status update for unknown connected account {status.provider_account_id}")
            return None

        previous = account.status
        self._write_status(account, status)
        if account.status != previous:
            current_app.logger.info(
                f"Connected account {account.provider_account_id} status {previous} -> {account.status}"
            )
        return account

    def record_deauthorized(self, provider_account_id: str) -> Optional[ConnectedAccount]:
        """Landlord disconnected the platform. Caller commits."""
        account = self.get_by_provider_id(provider_account_id)
        if account is None:
            return None
        account.status = "deauthorized"
        account.charges_enabled = False
        account.payouts_enabled = False
        account.deauthorized_at = datetime.utcnow()
        current_app.logger.warning(f"Connected account {provider_account_id} deauthorized")
        return account

    def ensure_chargeable(self, account: ConnectedAccount) -> None:
        if not account.can_accept_payments:
            raise AccountNotReadyError(
                f"Connected account {account.id} cannot accept payments yet",
                requirements=account.outstanding_requirements,
            )

    def can_accept_payments(self, account_id: int) -> bool:
        return self.get_account(account_id).can_accept_payments

    # ===== payout speed / fees =====

    def expedited_eligibility(self, account: ConnectedAccount) -> Tuple[bool, List[str]]:
        cfg = current_app.config
        reasons = []
        now = datetime.utcnow()

        min_payouts = cfg.get("EXPEDITED_MIN_SUCCESSFUL_PAYOUTS", 3)
        if (account.successful_payout_count or 0) < min_payouts:
            reasons.append(f"at least {min_payouts} successful payouts required")

        min_age = cfg.get("EXPEDITED_MIN_ACCOUNT_AGE_DAYS", 90)
        if account.created_at and account.created_at > now - timedelta(days=min_age):
            reasons.append(f"account must be at least {min_age} days old")

        lookback = cfg.get("EXPEDITED_DISPUTE_LOOKBACK_DAYS", 90)
        recent_disputes = Dispute.query.filter(
            Dispute.connected_account_id == account.id,
            Dispute.created_at >= now - timedelta(days=lookback),
        ).count()
        if recent_disputes:
            reasons.append(f"no disputes allowed in the last {lookback} days")

        return not reasons, reasons

    def update_payout_speed(
        self,
        account_id: int,
        trust_level: str,
        delay_days: Optional[int] = None,
        acknowledge_clawback_risk: bool = False,
    ) -> ConnectedAccount:
        """
        Switch between standard and expedited payouts.

        Expedited payouts reach the landlord before chargebacks can surface,
        so the landlord must explicitly accept the clawback risk. Without the
        acknowledgment the switch is rejected before the processor is called.
        """
        if trust_level not in TRUST_LEVELS:
            raise ValueError(f"trust_level must be one of {TRUST_LEVELS}")

        cfg = current_app.config
        account = self.get_account(account_id)

        if trust_level == "expedited":
            if not acknowledge_clawback_risk:
                raise ValueError("Expedited payouts require acknowledging the chargeback clawback risk")
            if account.status != "active":
                raise AccountNotReadyError(
                    "Expedited payouts require an active account",
                    requirements=account.outstanding_requirements,
                )
            eligible, reasons = self.expedited_eligibility(account)
            if not eligible:
                raise ValueError("Not eligible for expedited payouts: " + "; ".join(reasons))
            low, high = cfg.get("EXPEDITED_PAYOUT_DELAY_RANGE", (2, 4))
            delay = delay_days if delay_days is not None else low
        else:
            low = cfg.get("STANDARD_PAYOUT_DELAY_DAYS", 7)
            high = cfg.get("MAX_PAYOUT_DELAY_DAYS", 14)
            delay = delay_days if delay_days is not None else low

        if not low <= delay <= high:
            raise ValueError(f"{trust_level} payout delay must be between {low} and {high} days")

        provider_account_id = account.provider_account_id
        end_transaction()

        self.provider.update_payout_schedule(provider_account_id, delay)

        account = self.get_account(account_id)
        account.trust_level = trust_level
        account.payout_delay_days = delay
        account.clawback_acknowledged_at = datetime.utcnow() if trust_level == "expedited" else None
        db.session.commit()

        current_app.logger.info(
            f"Connected account {provider_account_id} payout speed -> {trust_level} ({delay} days)"
        )
        return account

    def update_fee_configuration(self, account_id: int, fee_mode: str) -> ConnectedAccount:
        if fee_mode not in FEE_MODES:
            raise ValueError(f"fee_mode must be one of {FEE_MODES}")
        account = self.get_account(account_id)
        account.fee_mode = fee_mode
        db.session.commit()
        current_app.logger.info(f"Connected account {account.id} fee mode -> {fee_mode}")
        return account

    # ===== payouts =====

    def record_payout(self, result: PayoutResult, provider_account_id: Optional[str]) -> Optional[Payout]:
        """Upsert a payout from a webhook or refresh. Caller commits."""
        account = self.get_by_provider_id(provider_account_id) if provider_account_id else None
        payout = Payout.query.filter_by(provider_payout_id=result.provider_payout_id).first()
        if payout is None:
            if account is None:
                current_app.logger.warning(
                    f"Payout {result.provider_payout_id} for unknown connected account {provider_account_id}"
                )
                return None
            payout = Payout(
                provider_payout_id=result.provider_payout_id,
                connected_account_id=account.id,
                amount=result.amount,
                currency=result.currency,
                status="pending",
            )
            db.session.add(payout)
        account = account or payout.connected_account

        previous = payout.status
        if _PAYOUT_RANK.get(result.status, 0) < _PAYOUT_RANK.get(previous, 0):
            current_app.logger.info(
                f"Ignoring stale payout status {result.status} for {payout.provider_payout_id} (stored {previous})"
            )
            return payout
        if _PAYOUT_RANK.get(previous, 0) == 2 and result.status != previous:
            current_app.logger.warning(
                f"Payout {payout.provider_payout_id} already {previous}; ignoring {result.status}"
            )
            return payout

        payout.status = result.status
        payout.amount = result.amount
        payout.expected_arrival_date = result.expected_arrival_date
        payout.arrived_at = result.arrived_at
        payout.failure_code = result.failure_code
        payout.failure_message = result.failure_message

        if result.status == "paid" and previous != "paid":
            account.successful_payout_count = (account.successful_payout_count or 0) + 1
            if account.first_successful_payout_at is None:
                account.first_successful_payout_at = datetime.utcnow()
        elif result.status == "failed" and previous != "failed":
            db.session.add(PaymentAlert(
                kind="payout_failed",
                message=f"Payout of {result.amount} {result.currency.upper()} failed: "
                        f"{result.failure_message or result.failure_code or 'unknown reason'}",
                connected_account_id=account.id,
            ))
            current_app.logger.warning(f"Payout {payout.provider_payout_id} failed ({result.failure_code})")
        return payout

    def list_payouts(self, account_id: int, limit: int = 50) -> List[Payout]:
        self.get_account(account_id)
        return (
            Payout.query.filter_by(connected_account_id=account_id)
            .order_by(Payout.created_at.desc(), Payout.id.desc())
            .limit(limit)
            .all()
        )

    def get_payout(self, account_id: int, payout_id: int, refresh: bool = False) -> Payout:
        payout = db.session.get(Payout, payout_id)
        if not payout or payout.connected_account_id != account_id:
            raise LookupError(f"Payout {payout_id} not found")
        if not refresh:
            return payout

        provider_payout_id = payout.provider_payout_id
        provider_account_id = payout.connected_account.provider_account_id
        end_transaction()

        result = self.provider.get_payout(provider_payout_id, provider_account_id)
        payout = self.record_payout(result, provider_account_id)
        db.session.commit()
        return payout

    # ===== helpers =====

    @staticmethod
    def _write_status(account: ConnectedAccount, status: AccountStatusResult) -> None:
        account.charges_enabled = status.charges_enabled
        account.payouts_enabled = status.payouts_enabled
        account.details_submitted = status.details_submitted
        account.requirements_currently_due = list(status.currently_due)
        account.requirements_eventually_due = list(status.eventually_due)
        account.requirements_past_due = list(status.past_due)
        account.disabled_reason = status.disabled_reason
        account.capabilities = dict(status.capabilities)
        account.status = derive_account_status(status, account.status)
        account.last_synced_at = datetime.utcnow()
        if account.status == "active" and account.onboarded_at is None:
            account.onboarded_at = datetime.utcnow()
