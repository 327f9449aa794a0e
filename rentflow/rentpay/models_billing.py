# rentpay/models_billing.py
"""
Tenant-side ledger: customers, payment methods, payments, refunds, disputes.

Amounts are stored in major units (dollars) as Numeric(12, 2).
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from rentpay import db


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Customer(db.Model):
    """Payer identity known to the processor. Archived, never deleted."""
    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    tenant_ref = db.Column(db.String(64), unique=True, nullable=False)  # tenant id in the property system
    provider_customer_id = db.Column(db.String(64), unique=True, nullable=False)
    email = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    default_payment_method_id = db.Column(db.String(64), nullable=True)  # processor pm id
    archived_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    payment_methods = db.relationship("PaymentMethod", backref="customer", lazy="selectin")

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_ref": self.tenant_ref,
            "provider_customer_id": self.provider_customer_id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "default_payment_method_id": self.default_payment_method_id,
            "archived": self.is_archived,
        }

    def __repr__(self) -> str:
        return f"<Customer {self.tenant_ref} ({self.provider_customer_id})>"


class PaymentMethod(db.Model):
    __tablename__ = "payment_methods"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    provider_payment_method_id = db.Column(db.String(64), unique=True, nullable=False)
    type = db.Column(db.String(32), nullable=False)  # us_bank_account, card, apple_pay, google_pay
    nickname = db.Column(db.String(64), nullable=True)

    # Bank account
    bank_name = db.Column(db.String(128), nullable=True)
    bank_account_last4 = db.Column(db.String(4), nullable=True)
    bank_account_type = db.Column(db.String(16), nullable=True)  # checking, savings

    # Card / wallet
    card_brand = db.Column(db.String(32), nullable=True)
    card_last4 = db.Column(db.String(4), nullable=True)
    card_exp_month = db.Column(db.Integer, nullable=True)
    card_exp_year = db.Column(db.Integer, nullable=True)
    card_funding = db.Column(db.String(16), nullable=True)
    wallet_type = db.Column(db.String(16), nullable=True)

    verification_status = db.Column(db.String(32), default="pending")  # pending, verified, failed, instant_verified
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    needs_replacement = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        # At most one default method per customer
        db.Index(
            "uq_payment_methods_customer_default",
            "customer_id",
            unique=True,
            sqlite_where=db.text("is_default = 1"),
            postgresql_where=db.text("is_default"),
        ),
    )

    @property
    def is_bank_account(self) -> bool:
        return self.type == "us_bank_account"

    @property
    def fee_category(self) -> str:
        """Fee rules treat wallets as cards."""
        return "us_bank_account" if self.is_bank_account else "card"

    @property
    def last4(self) -> Optional[str]:
        return self.bank_account_last4 if self.is_bank_account else self.card_last4

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider_payment_method_id": self.provider_payment_method_id,
            "type": self.type,
            "nickname": self.nickname,
            "bank_name": self.bank_name,
            "bank_account_type": self.bank_account_type,
            "card_brand": self.card_brand,
            "card_exp_month": self.card_exp_month,
            "card_exp_year": self.card_exp_year,
            "wallet_type": self.wallet_type,
            "last4": self.last4,
            "verification_status": self.verification_status,
            "is_default": self.is_default,
            "needs_replacement": self.needs_replacement,
        }

    def __repr__(self) -> str:
        return f"<PaymentMethod {self.type} ****{self.last4} default={self.is_default}>"


class Payment(db.Model):
    """One charge attempt. Immutable once terminal; a retry is a new row."""
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    provider_payment_id = db.Column(db.String(64), unique=True, nullable=True)
    idempotency_key = db.Column(db.String(128), unique=True, nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_methods.id"), nullable=False)
    connected_account_id = db.Column(db.Integer, db.ForeignKey("connected_accounts.id"), nullable=False, index=True)
    lease_id = db.Column(db.Integer, db.ForeignKey("leases.id"), nullable=True, index=True)
    autopay_cycle_id = db.Column(db.Integer, db.ForeignKey("autopay_cycles.id"), nullable=True, index=True)
    attempt_number = db.Column(db.Integer, nullable=True)

    base_amount = db.Column(db.Numeric(12, 2), nullable=False)  # rent + fees before platform fee
    amount = db.Column(db.Numeric(12, 2), nullable=False)  # what the tenant is charged
    platform_fee = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    net_amount = db.Column(db.Numeric(12, 2), nullable=False)  # what the landlord receives
    currency = db.Column(db.String(8), nullable=False, default="usd")
    fee_mode = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    status_unknown = db.Column(db.Boolean, nullable=False, default=False, index=True)
    failure_code = db.Column(db.String(64), nullable=True)
    failure_message = db.Column(db.String(500), nullable=True)
    failure_kind = db.Column(db.String(32), nullable=True)  # declined, insufficient_funds, invalid_payment_method, ...

    description = db.Column(db.String(255), nullable=True)
    statement_descriptor = db.Column(db.String(22), nullable=True)
    receipt_url = db.Column(db.String(500), nullable=True)
    metadata_json = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)  # when a terminal status was recorded

    customer = db.relationship("Customer")
    payment_method = db.relationship("PaymentMethod")
    connected_account = db.relationship("ConnectedAccount")
    refunds = db.relationship("Refund", backref="payment", lazy="selectin", order_by="Refund.id")

    TERMINAL_STATUSES = ("succeeded", "failed", "canceled")

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def refunded_amount(self) -> Decimal:
        return sum(
            (r.amount for r in self.refunds if r.status in ("pending", "succeeded")),
            Decimal("0.00"),
        )

    @property
    def refundable_amount(self) -> Decimal:
        if self.status != "succeeded":
            return Decimal("0.00")
        return self.amount - self.refunded_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider_payment_id": self.provider_payment_id,
            "customer_id": self.customer_id,
            "connected_account_id": self.connected_account_id,
            "lease_id": self.lease_id,
            "autopay_cycle_id": self.autopay_cycle_id,
            "attempt_number": self.attempt_number,
            "base_amount": _money(self.base_amount),
            "amount": _money(self.amount),
            "platform_fee": _money(self.platform_fee),
            "net_amount": _money(self.net_amount),
            "refunded_amount": _money(self.refunded_amount),
            "currency": self.currency,
            "fee_mode": self.fee_mode,
            "status": self.status,
            "status_unknown": self.status_unknown,
            "failure_code": self.failure_code,
            "failure_message": self.failure_message,
            "failure_kind": self.failure_kind,
            "description": self.description,
            "receipt_url": self.receipt_url,
            "created_at": _iso(self.created_at),
            "processed_at": _iso(self.processed_at),
        }

    def __repr__(self) -> str:
        return f"<Payment {self.id} {self.amount} {self.currency} ({self.status})>"


class Refund(db.Model):
    __tablename__ = "refunds"

    id = db.Column(db.Integer, primary_key=True)
    provider_refund_id = db.Column(db.String(64), unique=True, nullable=False)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="usd")
    status = db.Column(db.String(16), nullable=False, default="pending")  # pending, succeeded, failed, canceled
    reason = db.Column(db.String(64), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider_refund_id": self.provider_refund_id,
            "payment_id": self.payment_id,
            "amount": _money(self.amount),
            "currency": self.currency,
            "status": self.status,
            "reason": self.reason,
            "failure_reason": self.failure_reason,
            "created_at": _iso(self.created_at),
        }


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Integer, primary_key=True)
    provider_dispute_id = db.Column(db.String(64), unique=True, nullable=False)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)
    connected_account_id = db.Column(db.Integer, db.ForeignKey("connected_accounts.id"), nullable=True, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="usd")
    reason = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(32), nullable=False)  # needs_response, under_review, won, lost, ...
    evidence_due_by = db.Column(db.DateTime, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Dispute {self.provider_dispute_id} ({self.status})>"
