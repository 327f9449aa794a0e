# rentpay/models_autopay.py
"""
Recurring rent collection.

Lease         - amount source for AutoPay (rent + recurring fees)
AutoPaySchedule - tenant enrollment: method + day of month
AutoPayCycle  - one billing period (YYYY-MM) of a schedule and its attempts
PaymentAlert  - tenant/landlord-visible record of a payment problem
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from rentpay import db


CYCLE_STATUSES = ("scheduled", "processing", "retry_scheduled", "succeeded", "failed", "needs_attention")
CYCLE_OPEN_STATUSES = ("scheduled", "retry_scheduled")
CYCLE_FINAL_STATUSES = ("succeeded", "failed", "needs_attention")


class Lease(db.Model):
    __tablename__ = "leases"

    id = db.Column(db.Integer, primary_key=True)
    lease_ref = db.Column(db.String(64), unique=True, nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    connected_account_id = db.Column(db.Integer, db.ForeignKey("connected_accounts.id"), nullable=False, index=True)
    property_label = db.Column(db.String(255), nullable=True)
    rent_amount = db.Column(db.Numeric(12, 2), nullable=False)
    recurring_fees = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency = db.Column(db.String(8), nullable=False, default="usd")
    status = db.Column(db.String(16), nullable=False, default="active")  # active, ended
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    customer = db.relationship("Customer")
    connected_account = db.relationship("ConnectedAccount")

    @property
    def monthly_amount(self) -> Decimal:
        return (self.rent_amount or Decimal("0")) + (self.recurring_fees or Decimal("0"))


class AutoPaySchedule(db.Model):
    __tablename__ = "autopay_schedules"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    lease_id = db.Column(db.Integer, db.ForeignKey("leases.id"), nullable=False)
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_methods.id"), nullable=False)
    enabled = db.Column(db.Boolean, nullable=False, default=True, index=True)
    day_of_month = db.Column(db.Integer, nullable=False)  # 1-28 so every month has the day
    fixed_amount = db.Column(db.Numeric(12, 2), nullable=True)  # overrides lease rent + fees
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    disabled_at = db.Column(db.DateTime, nullable=True)

    lease = db.relationship("Lease")
    customer = db.relationship("Customer")
    payment_method = db.relationship("PaymentMethod")

    __table_args__ = (db.UniqueConstraint("customer_id", "lease_id", name="uq_autopay_customer_lease"),)

    @property
    def charge_amount(self) -> Decimal:
        if self.fixed_amount is not None:
            return self.fixed_amount
        return self.lease.monthly_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "lease_id": self.lease_id,
            "payment_method_id": self.payment_method_id,
            "enabled": self.enabled,
            "day_of_month": self.day_of_month,
            "amount": str(self.charge_amount),
            "fixed_amount": str(self.fixed_amount) if self.fixed_amount is not None else None,
        }


class AutoPayCycle(db.Model):
    __tablename__ = "autopay_cycles"

    id = db.Column(db.Integer, primary_key=True)
    schedule_id = db.Column(db.Integer, db.ForeignKey("autopay_schedules.id"), nullable=False, index=True)
    period = db.Column(db.String(7), nullable=False)  # YYYY-MM
    status = db.Column(db.String(20), nullable=False, default="scheduled", index=True)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_on = db.Column(db.Date, nullable=True, index=True)
    last_failure_code = db.Column(db.String(64), nullable=True)
    last_failure_kind = db.Column(db.String(32), nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    schedule = db.relationship("AutoPaySchedule", backref=db.backref("cycles", lazy="dynamic"))

    __table_args__ = (db.UniqueConstraint("schedule_id", "period", name="uq_autopay_cycle_period"),)

    def __repr__(self) -> str:
        return f"<AutoPayCycle schedule={self.schedule_id} {self.period} ({self.status}, attempts={self.attempt_count})>"


class PaymentAlert(db.Model):
    __tablename__ = "payment_alerts"

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(48), nullable=False, index=True)
    # autopay_failed, payment_method_needs_replacement, payment_failed, payout_failed, dispute_opened
    message = db.Column(db.String(500), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    connected_account_id = db.Column(db.Integer, db.ForeignKey("connected_accounts.id"), nullable=True, index=True)
    lease_id = db.Column(db.Integer, db.ForeignKey("leases.id"), nullable=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True)
    autopay_cycle_id = db.Column(db.Integer, db.ForeignKey("autopay_cycles.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    resolved_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "message": self.message,
            "customer_id": self.customer_id,
            "connected_account_id": self.connected_account_id,
            "lease_id": self.lease_id,
            "payment_id": self.payment_id,
            "autopay_cycle_id": self.autopay_cycle_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved": self.resolved_at is not None,
        }
