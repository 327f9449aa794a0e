# rentpay/models_connect.py
"""
Landlord-side ledger: connected (payout) accounts and their payouts.

Status lifecycle of a ConnectedAccount:
    created -> onboarding -> active <-> restricted
    any -> deauthorized (landlord disconnected the platform)
"""

from datetime import datetime
from typing import Any, Dict, List

from rentpay import db


ACCOUNT_STATUSES = ("created", "onboarding", "active", "restricted", "deauthorized")
TRUST_LEVELS = ("standard", "expedited")
FEE_MODES = ("landlord_absorbs", "tenant_pays", "split")


class ConnectedAccount(db.Model):
    __tablename__ = "connected_accounts"

    id = db.Column(db.Integer, primary_key=True)
    landlord_ref = db.Column(db.String(64), unique=True, nullable=False)  # landlord org id in the property system
    provider_account_id = db.Column(db.String(64), unique=True, nullable=False)
    email = db.Column(db.String(255), nullable=False)
    business_type = db.Column(db.String(16), nullable=False)  # individual, company
    business_name = db.Column(db.String(255), nullable=True)
    country = db.Column(db.String(2), nullable=False, default="US")

    status = db.Column(db.String(16), nullable=False, default="created", index=True)
    charges_enabled = db.Column(db.Boolean, nullable=False, default=False)
    payouts_enabled = db.Column(db.Boolean, nullable=False, default=False)
    details_submitted = db.Column(db.Boolean, nullable=False, default=False)
    requirements_currently_due = db.Column(db.JSON, nullable=True)
    requirements_eventually_due = db.Column(db.JSON, nullable=True)
    requirements_past_due = db.Column(db.JSON, nullable=True)
    disabled_reason = db.Column(db.String(128), nullable=True)
    capabilities = db.Column(db.JSON, nullable=True)  # card_payments / transfers / us_bank_account_ach_payments

    # Payout speed
    trust_level = db.Column(db.String(16), nullable=False, default="standard")
    payout_delay_days = db.Column(db.Integer, nullable=False, default=7)
    clawback_acknowledged_at = db.Column(db.DateTime, nullable=True)
    successful_payout_count = db.Column(db.Integer, nullable=False, default=0)
    first_successful_payout_at = db.Column(db.DateTime, nullable=True)

    fee_mode = db.Column(db.String(32), nullable=False, default="landlord_absorbs")

    onboarded_at = db.Column(db.DateTime, nullable=True)
    deauthorized_at = db.Column(db.DateTime, nullable=True)
    last_synced_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    payouts = db.relationship("Payout", backref="connected_account", lazy="dynamic")

    @property
    def outstanding_requirements(self) -> List[str]:
        seen = []
        for item in (self.requirements_past_due or []) + (self.requirements_currently_due or []):
            if item not in seen:
                seen.append(item)
        return seen

    @property
    def can_accept_payments(self) -> bool:
        return bool(self.charges_enabled) and self.status != "deauthorized"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "landlord_ref": self.landlord_ref,
            "provider_account_id": self.provider_account_id,
            "email": self.email,
            "business_type": self.business_type,
            "business_name": self.business_name,
            "status": self.status,
            "charges_enabled": self.charges_enabled,
            "payouts_enabled": self.payouts_enabled,
            "details_submitted": self.details_submitted,
            "requirements": {
                "currently_due": self.requirements_currently_due or [],
                "eventually_due": self.requirements_eventually_due or [],
                "past_due": self.requirements_past_due or [],
            },
            "disabled_reason": self.disabled_reason,
            "capabilities": self.capabilities or {},
            "trust_level": self.trust_level,
            "payout_delay_days": self.payout_delay_days,
            "fee_mode": self.fee_mode,
            "successful_payout_count": self.successful_payout_count,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }

    def __repr__(self) -> str:
        return f"<ConnectedAccount {self.landlord_ref} {self.provider_account_id} ({self.status})>"


class Payout(db.Model):
    """Settled funds moving from a connected account balance to the landlord's bank."""
    __tablename__ = "payouts"

    id = db.Column(db.Integer, primary_key=True)
    provider_payout_id = db.Column(db.String(64), unique=True, nullable=False)
    connected_account_id = db.Column(db.Integer, db.ForeignKey("connected_accounts.id"), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="usd")
    status = db.Column(db.String(16), nullable=False, default="pending")  # pending, in_transit, paid, failed, canceled
    expected_arrival_date = db.Column(db.DateTime, nullable=True)
    arrived_at = db.Column(db.DateTime, nullable=True)
    failure_code = db.Column(db.String(64), nullable=True)
    failure_message = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider_payout_id": self.provider_payout_id,
            "connected_account_id": self.connected_account_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "expected_arrival_date": self.expected_arrival_date.isoformat() if self.expected_arrival_date else None,
            "arrived_at": self.arrived_at.isoformat() if self.arrived_at else None,
            "failure_code": self.failure_code,
            "failure_message": self.failure_message,
        }
