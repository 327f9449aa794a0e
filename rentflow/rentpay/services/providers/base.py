# rentpay/services/providers/base.py
"""
Provider-agnostic payment interface.

Business services talk to a `PaymentProvider` and only ever see the
dataclasses below. Amounts are Decimals in major units (dollars); identifiers
are opaque strings owned by the processor.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional


PAYMENT_STATUSES = ("pending", "processing", "succeeded", "failed", "canceled")
PAYMENT_TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})
REFUND_STATUSES = ("pending", "succeeded", "failed", "canceled")
PAYOUT_STATUSES = ("pending", "in_transit", "paid", "failed", "canceled")

# Normalized webhook event types
EVENT_PAYMENT_SUCCEEDED = "payment.succeeded"
EVENT_PAYMENT_PROCESSING = "payment.processing"
EVENT_PAYMENT_FAILED = "payment.failed"
EVENT_PAYMENT_CANCELED = "payment.canceled"
EVENT_REFUND_UPDATED = "refund.updated"
EVENT_CHARGE_REFUNDED = "charge.refunded"
EVENT_DISPUTE_CREATED = "dispute.created"
EVENT_DISPUTE_UPDATED = "dispute.updated"
EVENT_DISPUTE_CLOSED = "dispute.closed"
EVENT_PAYOUT_CREATED = "payout.created"
EVENT_PAYOUT_UPDATED = "payout.updated"
EVENT_PAYOUT_PAID = "payout.paid"
EVENT_PAYOUT_FAILED = "payout.failed"
EVENT_PAYOUT_CANCELED = "payout.canceled"
EVENT_ACCOUNT_UPDATED = "account.updated"
EVENT_ACCOUNT_DEAUTHORIZED = "account.deauthorized"
EVENT_SETUP_SUCCEEDED = "setup_intent.succeeded"
EVENT_SETUP_FAILED = "setup_intent.failed"


# ===== Inputs =====

@dataclass
class CustomerInput:
    email: str
    name: str
    phone: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class CreatePaymentInput:
    amount: Decimal
    currency: str
    customer_id: str
    payment_method_id: str
    destination_account_id: str
    idempotency_key: str
    application_fee_amount: Optional[Decimal] = None
    statement_descriptor: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class RefundInput:
    provider_payment_id: str
    amount: Optional[Decimal] = None  # None refunds the remaining balance
    reason: Optional[str] = None  # duplicate | fraudulent | requested_by_customer
    idempotency_key: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ConnectedAccountInput:
    email: str
    business_type: str  # individual | company
    country: str = "US"
    business_name: Optional[str] = None
    business_structure: Optional[str] = None
    payout_delay_days: int = 7
    metadata: Dict[str, str] = field(default_factory=dict)


# ===== Results =====

@dataclass
class CustomerResult:
    provider_customer_id: str
    email: str = ""
    name: str = ""
    phone: Optional[str] = None
    default_payment_method_id: Optional[str] = None


@dataclass
class SetupSessionResult:
    session_id: str
    client_secret: str
    expires_at: Optional[datetime] = None


@dataclass
class BankLinkSessionResult:
    session_id: str
    client_secret: str
    expires_at: Optional[datetime] = None


@dataclass
class PaymentMethodResult:
    provider_payment_method_id: str
    type: str  # us_bank_account | card | apple_pay | google_pay
    provider_customer_id: Optional[str] = None
    is_default: bool = False

    bank_name: Optional[str] = None
    bank_account_last4: Optional[str] = None
    bank_account_type: Optional[str] = None
    verification_status: Optional[str] = None

    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    card_exp_month: Optional[int] = None
    card_exp_year: Optional[int] = None
    card_funding: Optional[str] = None

    wallet_type: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class PaymentResult:
    provider_payment_id: str
    amount: Decimal
    currency: str
    status: str
    platform_fee: Optional[Decimal] = None
    destination_account_id: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    failure_kind: Optional[str] = None
    receipt_url: Optional[str] = None
    created_at: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in PAYMENT_TERMINAL_STATUSES


@dataclass
class RefundResult:
    provider_refund_id: str
    amount: Decimal
    currency: str
    status: str
    provider_payment_id: Optional[str] = None
    reason: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class AccountStatusResult:
    provider_account_id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    currently_due: List[str] = field(default_factory=list)
    eventually_due: List[str] = field(default_factory=list)
    past_due: List[str] = field(default_factory=list)
    disabled_reason: Optional[str] = None
    # card_payments / transfers / us_bank_account_ach_payments -> inactive | pending | active
    capabilities: Dict[str, str] = field(default_factory=dict)


@dataclass
class ConnectedAccountResult(AccountStatusResult):
    email: str = ""
    business_type: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class OnboardingLink:
    url: str
    expires_at: Optional[datetime] = None


@dataclass
class PayoutResult:
    provider_payout_id: str
    amount: Decimal
    currency: str
    status: str
    expected_arrival_date: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


@dataclass
class DisputeResult:
    provider_dispute_id: str
    provider_payment_id: Optional[str]
    amount: Decimal
    currency: str
    status: str
    reason: Optional[str] = None
    evidence_due_by: Optional[datetime] = None


@dataclass
class SetupIntentResult:
    setup_intent_id: str
    status: str
    provider_customer_id: Optional[str] = None
    provider_payment_method_id: Optional[str] = None
    failure_message: Optional[str] = None


@dataclass
class WebhookEvent:
    """A verified, normalized processor event.

    `type` is one of the EVENT_* constants when the adapter understands the
    event, otherwise the processor's own event name. `data` holds the mapped
    result object (PaymentResult, PayoutResult, ...) or None when unmapped.
    """
    id: str
    type: str
    provider_type: str
    raw_type: str
    data: Any = None
    account_id: Optional[str] = None
    created_at: Optional[datetime] = None
    livemode: bool = False


class PaymentProvider(ABC):
    """Capability contract every payment processor adapter implements."""

    provider_type: str = ""

    # ---- customers ----
    @abstractmethod
    def create_customer(self, data: CustomerInput) -> CustomerResult: ...

    @abstractmethod
    def get_customer(self, provider_customer_id: str) -> CustomerResult: ...

    @abstractmethod
    def update_customer(self, provider_customer_id: str, **updates) -> CustomerResult: ...

    # ---- payment methods ----
    @abstractmethod
    def create_setup_session(
        self,
        provider_customer_id: str,
        payment_method_types: List[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> SetupSessionResult: ...

    @abstractmethod
    def attach_payment_method(
        self, provider_customer_id: str, provider_payment_method_id: str, set_as_default: bool = False
    ) -> PaymentMethodResult: ...

    @abstractmethod
    def list_payment_methods(self, provider_customer_id: str) -> List[PaymentMethodResult]: ...

    @abstractmethod
    def get_payment_method(self, provider_payment_method_id: str) -> PaymentMethodResult: ...

    @abstractmethod
    def detach_payment_method(self, provider_payment_method_id: str) -> None: ...

    @abstractmethod
    def set_default_payment_method(self, provider_customer_id: str, provider_payment_method_id: str) -> None: ...

    # ---- charges ----
    @abstractmethod
    def create_payment(self, data: CreatePaymentInput) -> PaymentResult:
        """Destination charge, confirmed immediately and off-session.

        Replaying the same idempotency key must return the original result
        instead of charging twice.
        """

    @abstractmethod
    def get_payment(self, provider_payment_id: str) -> PaymentResult: ...

    @abstractmethod
    def refund_payment(self, data: RefundInput) -> RefundResult: ...

    # ---- connected accounts ----
    @abstractmethod
    def create_connected_account(self, data: ConnectedAccountInput) -> ConnectedAccountResult: ...

    @abstractmethod
    def get_onboarding_url(self, provider_account_id: str, refresh_url: str, return_url: str) -> OnboardingLink: ...

    @abstractmethod
    def get_express_dashboard_url(self, provider_account_id: str) -> str: ...

    @abstractmethod
    def get_account_status(self, provider_account_id: str) -> AccountStatusResult: ...

    @abstractmethod
    def update_payout_schedule(self, provider_account_id: str, delay_days: int) -> None: ...

    # ---- bank linking / payouts ----
    @abstractmethod
    def create_bank_link_session(
        self, provider_customer_id: str, metadata: Optional[Dict[str, str]] = None
    ) -> BankLinkSessionResult: ...

    @abstractmethod
    def get_payout(self, provider_payout_id: str, provider_account_id: Optional[str] = None) -> PayoutResult: ...

    # ---- webhooks ----
    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent: ...

    @abstractmethod
    def verify_connect_webhook(self, payload: bytes, signature: str) -> WebhookEvent: ...
