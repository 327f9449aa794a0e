# rentpay/services/charge_service.py
"""
Rent charges as destination charges to the landlord's connected account.

Flow of one charge:
    validate -> compute platform fee -> persist pending Payment (commit)
    -> submit to processor (no DB transaction open) -> persist result

The processor is never retried from here. AutoPay owns the retry policy and
uses the phase API (prepare / submit / record_result / record_failure) so it
can fan submissions out to worker threads while keeping DB work on its own
thread.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional
from uuid import uuid4

from flask import current_app

from rentpay import db
from rentpay.models_autopay import PaymentAlert
from rentpay.models_billing import Customer, Dispute, Payment, PaymentMethod, Refund
from rentpay.models_connect import FEE_MODES, ConnectedAccount
from rentpay.monitoring import capture_exception
from rentpay.services import end_transaction
from rentpay.services.providers.base import (
    CreatePaymentInput,
    DisputeResult,
    PaymentProvider,
    PaymentResult,
    RefundInput,
    RefundResult,
)
from rentpay.services.providers.errors import (
    AccountNotReadyError,
    PaymentProviderError,
    ProviderTimeoutError,
)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
MAX_DESCRIPTOR_LENGTH = 22
REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")
DISPUTE_CLOSED_STATUSES = ("won", "lost", "closed", "charge_refunded")

# pending < processing < terminal; a write never lowers the rank
_STATUS_RANK = {"pending": 0, "processing": 1, "succeeded": 2, "failed": 2, "canceled": 2}
_REFUND_RANK = {"pending": 0, "succeeded": 1, "failed": 2, "canceled": 2}


def _to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class FeeBreakdown:
    base_amount: Decimal  # rent + fees owed by the tenant
    platform_fee: Decimal  # application fee kept by the platform
    charge_amount: Decimal  # what the tenant's method is charged
    net_amount: Decimal  # what reaches the landlord's balance
    fee_mode: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "base_amount": str(self.base_amount),
            "platform_fee": str(self.platform_fee),
            "charge_amount": str(self.charge_amount),
            "net_amount": str(self.net_amount),
            "fee_mode": self.fee_mode,
        }


def calculate_fees(
    amount: Any,
    method_type: str,
    fee_mode: str = "landlord_absorbs",
    fee_override: Any = None,
    rules: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> FeeBreakdown:
    """
    Platform fee for a charge: min(percent x amount, cap) by method type.

    An explicit fee_override replaces the computed fee; the fee mode still
    decides whether the fee is deducted from the landlord (landlord_absorbs),
    added for the tenant (tenant_pays) or shared (split).
    """
    base = _to_money(amount)
    if base <= ZERO:
        raise ValueError("Amount must be greater than zero")
    if fee_mode not in FEE_MODES:
        raise ValueError(f"fee_mode must be one of {FEE_MODES}")

    if fee_override is not None:
        fee = _to_money(fee_override)
        if fee < ZERO:
            raise ValueError("Application fee cannot be negative")
    else:
        if rules is None:
            rules = current_app.config["PLATFORM_FEE_RULES"]
        category = "us_bank_account" if method_type == "us_bank_account" else "card"
        rule = rules[category]
        fee = base * Decimal(str(rule["percent"]))
        cap = rule.get("cap")
        if cap is not None:
            fee = min(fee, Decimal(str(cap)))
        fee = _to_money(fee)

    if fee_mode == "tenant_pays":
        charge = base + fee
    elif fee_mode == "split":
        charge = base + _to_money(fee / 2)
    else:
        charge = base

    net = charge - fee
    if net < ZERO:
        raise ValueError("Platform fee exceeds the payment amount")
    return FeeBreakdown(base_amount=base, platform_fee=fee, charge_amount=charge, net_amount=net, fee_mode=fee_mode)


@dataclass
class ChargeRequest:
    customer_id: int
    payment_method_id: int
    connected_account_id: int
    amount: Decimal
    currency: Optional[str] = None
    application_fee_amount: Optional[Decimal] = None
    statement_descriptor: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    lease_id: Optional[int] = None
    autopay_cycle_id: Optional[int] = None
    attempt_number: Optional[int] = None
    idempotency_key: Optional[str] = None


def client_idempotency_key(customer_id: int, key: str) -> str:
    # Scoped per customer and kept apart from the internal autopay-/pay- keys
    if not key or len(key) > 100:
        raise ValueError("Idempotency key must be 1 to 100 characters")
    return f"client-{customer_id}-{key}"


def _same_charge(payment: Payment, request: ChargeRequest) -> bool:
    return (
        payment.customer_id == request.customer_id
        and payment.payment_method_id == request.payment_method_id
        and payment.connected_account_id == request.connected_account_id
        and request.amount is not None
        and payment.base_amount == _to_money(request.amount)
    )


@dataclass
class PreparedCharge:
    """A persisted pending Payment and the plain-data processor request for it."""
    payment_id: int
    provider_input: CreatePaymentInput


class ChargeProcessor:
    def __init__(self, provider: PaymentProvider):
        self.provider = provider

    # ===== one-shot charge =====

    def charge(self, request: ChargeRequest) -> Payment:
        """
        Validate, persist, submit and record one charge.

        Semantic failures are recorded on the Payment and re-raised. A timeout
        returns the Payment still pending with status_unknown set.
        """
        if request.idempotency_key:
            key = client_idempotency_key(request.customer_id, request.idempotency_key)
            existing = Payment.query.filter_by(idempotency_key=key).first()
            if existing:
                if not _same_charge(existing, request):
                    raise ValueError("Idempotency key was already used for a different payment")
                current_app.logger.info(f"Charge with idempotency key {key} already exists as payment {existing.id}")
                return existing

        prepared = self.prepare(request)
        try:
            result = self.submit(prepared)
        except ProviderTimeoutError as e:
            return self.record_failure(prepared.payment_id, e)
        except PaymentProviderError as e:
            self.record_failure(prepared.payment_id, e)
            raise
        return self.record_result(prepared.payment_id, result)

    # ===== phase API =====

    def prepare(self, request: ChargeRequest) -> PreparedCharge:
        """Validate and persist a pending Payment. Raises before anything is stored."""
        cfg = current_app.config

        if request.amount is None or _to_money(request.amount) <= ZERO:
            raise ValueError("Amount must be greater than zero")

        customer = db.session.get(Customer, request.customer_id)
        if not customer:
            raise LookupError(f"Customer {request.customer_id} not found")
        if customer.is_archived:
            raise ValueError(f"Customer {customer.id} is archived")

        pm = db.session.get(PaymentMethod, request.payment_method_id)
        if not pm or pm.customer_id != customer.id:
            raise ValueError("Payment method does not belong to this customer")
        if not pm.is_active:
            raise ValueError("Payment method has been removed")
        if pm.needs_replacement:
            raise ValueError("Payment method needs to be replaced before it can be charged")

        account = db.session.get(ConnectedAccount, request.connected_account_id)
        if not account:
            raise LookupError(f"Connected account {request.connected_account_id} not found")
        if not account.can_accept_payments:
            current_app.logger.warning(
                f"Refusing charge to connected account {account.id}: charges not enabled ({account.status})"
            )
            raise AccountNotReadyError(
                f"Connected account {account.id} cannot accept payments yet",
                requirements=account.outstanding_requirements,
            )

        fees = calculate_fees(request.amount, pm.type, account.fee_mode, request.application_fee_amount)
        descriptor = (request.statement_descriptor or cfg.get("STATEMENT_DESCRIPTOR") or "")[:MAX_DESCRIPTOR_LENGTH]

        if request.idempotency_key:
            key = client_idempotency_key(customer.id, request.idempotency_key)
        elif request.autopay_cycle_id:
            key = f"autopay-{request.autopay_cycle_id}-{request.attempt_number or 1}"
        else:
            key = f"pay-{uuid4().hex}"

        payment = Payment(
            idempotency_key=key,
            customer_id=customer.id,
            payment_method_id=pm.id,
            connected_account_id=account.id,
            lease_id=request.lease_id,
            autopay_cycle_id=request.autopay_cycle_id,
            attempt_number=request.attempt_number,
            base_amount=fees.base_amount,
            amount=fees.charge_amount,
            platform_fee=fees.platform_fee,
            net_amount=fees.net_amount,
            currency=(request.currency or cfg.get("DEFAULT_CURRENCY", "usd")).lower(),
            fee_mode=fees.fee_mode,
            status="pending",
            description=request.description,
            statement_descriptor=descriptor or None,
            metadata_json=dict(request.metadata),
        )
        db.session.add(payment)
        db.session.commit()

        current_app.logger.info(
            f"Prepared payment {payment.id}: {payment.amount} {payment.currency} "
            f"(fee {payment.platform_fee}, net {payment.net_amount}, {payment.fee_mode}) "
            f"to connected account {account.provider_account_id}"
        )
        return PreparedCharge(payment_id=payment.id, provider_input=self._provider_input(payment))

    def submit(self, prepared: PreparedCharge) -> PaymentResult:
        """Processor round trip only. Safe to run on a worker thread."""
        return self.provider.create_payment(prepared.provider_input)

    def record_result(self, payment_id: int, result: PaymentResult) -> Payment:
        payment = self.get_payment(payment_id)
        self._apply_result(payment, result)
        db.session.commit()

        if payment.status == "failed":
            current_app.logger.warning(
                f"Payment {payment.id} failed: {payment.failure_code} ({payment.failure_kind})"
            )
        else:
            current_app.logger.info(f"Payment {payment.id} recorded as {payment.status}")
        return payment

    def record_failure(self, payment_id: int, error: PaymentProviderError) -> Payment:
        payment = self.get_payment(payment_id)
        if error.provider_payment_id and not payment.provider_payment_id:
            payment.provider_payment_id = error.provider_payment_id

        if isinstance(error, ProviderTimeoutError):
            # Never assume failed: reconciliation re-queries or replays the same key
            payment.status_unknown = True
            db.session.commit()
            current_app.logger.warning(f"Payment {payment.id} status unknown after timeout; will reconcile")
            return payment

        if payment.is_terminal:
            return payment

        payment.status = "failed"
        payment.status_unknown = False
        payment.failure_code = error.code
        payment.failure_message = (error.message or "")[:500]
        payment.failure_kind = error.kind
        payment.processed_at = datetime.utcnow()
        db.session.commit()

        if type(error) is PaymentProviderError:
            current_app.logger.error(f"Payment {payment.id} provider error: {error.message}", exc_info=error)
            capture_exception(error, payment_id=payment.id, code=error.code)
        else:
            current_app.logger.warning(f"Payment {payment.id} {error.kind}: {error.code} {error.message}")
        return payment

    # ===== reconciliation =====

    def reconcile(self, payment_id: int) -> Payment:
        """
        Resolve a payment whose submission outcome is unknown.

        With a processor id the payment is re-queried. Without one the original
        request is replayed under the original idempotency key, so the
        processor returns the first outcome instead of charging again.
        """
        payment = self.get_payment(payment_id)
        if payment.is_terminal:
            return payment

        provider_payment_id = payment.provider_payment_id
        provider_input = None if provider_payment_id else self._provider_input(payment)
        end_transaction()

        try:
            if provider_payment_id:
                result = self.provider.get_payment(provider_payment_id)
            else:
                result = self.provider.create_payment(provider_input)
        except ProviderTimeoutError as e:
            return self.record_failure(payment_id, e)
        except PaymentProviderError as e:
            if provider_payment_id:
                # Re-query failed; the charge itself is still in whatever state it was
                current_app.logger.warning(f"Could not re-query payment {payment_id}: {e.message}")
                return self.get_payment(payment_id)
            return self.record_failure(payment_id, e)

        current_app.logger.info(f"Reconciled payment {payment_id} -> {result.status}")
        return self.record_result(payment_id, result)

    def reconcile_pending(
        self,
        limit: int = 100,
        stale_after_minutes: int = 10,
        on_resolved: Optional[Callable[[Payment], Any]] = None,
    ) -> Dict[str, int]:
        """
        Reconcile status-unknown payments and pending ones that never got a processor id.

        on_resolved is called with every payment whose outcome became known,
        and its writes are committed with it.
        """
        cutoff = datetime.utcnow() - timedelta(minutes=stale_after_minutes)
        payment_ids = [
            p.id
            for p in Payment.query.filter(
                Payment.status.in_(("pending", "processing")),
                db.or_(
                    Payment.status_unknown.is_(True),
                    db.and_(Payment.provider_payment_id.is_(None), Payment.created_at < cutoff),
                ),
            )
            .order_by(Payment.created_at)
            .limit(limit)
            .all()
        ]

        summary = {"checked": 0, "resolved": 0, "still_unknown": 0}
        for payment_id in payment_ids:
            summary["checked"] += 1
            payment = self.reconcile(payment_id)
            if payment.status_unknown:
                summary["still_unknown"] += 1
                continue
            summary["resolved"] += 1
            if on_resolved is not None:
                on_resolved(payment)
                db.session.commit()
        return summary

    # ===== refunds =====

    def refund(self, payment_id: int, amount: Any = None, reason: Optional[str] = None) -> Refund:
        payment = self.get_payment(payment_id)
        if payment.status != "succeeded":
            raise ValueError("Only succeeded payments can be refunded")
        if reason is not None and reason not in REFUND_REASONS:
            raise ValueError(f"reason must be one of {REFUND_REASONS}")

        refundable = payment.refundable_amount
        refund_amount = refundable if amount is None else _to_money(amount)
        if refund_amount <= ZERO:
            raise ValueError("Nothing left to refund")
        if refund_amount > refundable:
            raise ValueError(f"Refund exceeds refundable amount {refundable}")

        request = RefundInput(
            provider_payment_id=payment.provider_payment_id,
            amount=refund_amount,
            reason=reason,
            idempotency_key=f"refund-{payment.id}-{uuid4().hex}",
            metadata={"payment_id": str(payment.id)},
        )
        end_transaction()

        result = self.provider.refund_payment(request)

        refund = Refund.query.filter_by(provider_refund_id=result.provider_refund_id).first()
        if refund is None:
            refund = Refund(provider_refund_id=result.provider_refund_id, payment_id=payment_id)
            db.session.add(refund)
        refund.amount = result.amount
        refund.currency = result.currency
        refund.status = result.status
        refund.reason = result.reason or reason
        refund.failure_reason = result.failure_reason
        db.session.commit()

        current_app.logger.info(f"Refund {result.provider_refund_id} of {result.amount} for payment {payment_id}: {result.status}")
        return refund

    # ===== webhook writers (caller commits) =====

    def apply_payment_update(self, result: PaymentResult) -> Optional[Payment]:
        payment = Payment.query.filter_by(provider_payment_id=result.provider_payment_id).first()
        if payment is None:
            # Submission timed out before we learned the processor id
            local_id = str((result.metadata or {}).get("payment_id", ""))
            if local_id.isdigit():
                candidate = db.session.get(Payment, int(local_id))
                if candidate and candidate.provider_payment_id in (None, result.provider_payment_id):
                    payment = candidate
        if payment is None:
            current_app.logger.info(f"Payment update for unknown payment {result.provider_payment_id}")
            return None

        changed = self._apply_result(payment, result)
        if changed and payment.status == "failed" and payment.autopay_cycle_id is None:
            db.session.add(PaymentAlert(
                kind="payment_failed",
                message=f"Payment of {payment.amount} {payment.currency.upper()} failed: "
                        f"{payment.failure_message or payment.failure_code or 'unknown reason'}",
                customer_id=payment.customer_id,
                connected_account_id=payment.connected_account_id,
                lease_id=payment.lease_id,
                payment_id=payment.id,
            ))
        return payment

    def apply_refund_update(self, result: RefundResult) -> Optional[Refund]:
        refund = Refund.query.filter_by(provider_refund_id=result.provider_refund_id).first()
        if refund is None:
            payment = (
                Payment.query.filter_by(provider_payment_id=result.provider_payment_id).first()
                if result.provider_payment_id
                else None
            )
            if payment is None:
                current_app.logger.info(f"Refund update for unknown payment {result.provider_payment_id}")
                return None
            # Refund issued outside the platform (e.g. processor dashboard)
            refund = Refund(
                provider_refund_id=result.provider_refund_id,
                payment_id=payment.id,
                amount=result.amount,
                currency=result.currency,
                status="pending",
                reason=result.reason,
            )
            db.session.add(refund)

        if _REFUND_RANK.get(result.status, 0) < _REFUND_RANK.get(refund.status, 0):
            return refund
        refund.status = result.status
        refund.amount = result.amount
        refund.failure_reason = result.failure_reason
        return refund

    def apply_dispute(self, result: DisputeResult) -> Optional[Dispute]:
        dispute = Dispute.query.filter_by(provider_dispute_id=result.provider_dispute_id).first()
        created = dispute is None
        if created:
            payment = (
                Payment.query.filter_by(provider_payment_id=result.provider_payment_id).first()
                if result.provider_payment_id
                else None
            )
            dispute = Dispute(
                provider_dispute_id=result.provider_dispute_id,
                payment_id=payment.id if payment else None,
                connected_account_id=payment.connected_account_id if payment else None,
                amount=result.amount,
                currency=result.currency,
                status=result.status,
            )
            db.session.add(dispute)

        if dispute.resolved_at is not None and result.status not in DISPUTE_CLOSED_STATUSES:
            # Closed disputes do not reopen on a late update
            return dispute

        dispute.status = result.status
        dispute.reason = result.reason
        dispute.amount = result.amount
        dispute.evidence_due_by = result.evidence_due_by
        if result.status in DISPUTE_CLOSED_STATUSES and dispute.resolved_at is None:
            dispute.resolved_at = datetime.utcnow()

        if created:
            db.session.add(PaymentAlert(
                kind="dispute_opened",
                message=f"Tenant disputed a payment of {result.amount} {result.currency.upper()} "
                        f"({result.reason or 'no reason given'})",
                connected_account_id=dispute.connected_account_id,
                payment_id=dispute.payment_id,
            ))
            current_app.logger.warning(f"Dispute {result.provider_dispute_id} opened ({result.reason})")
        return dispute

    # ===== reads =====

    def get_payment(self, payment_id: int) -> Payment:
        payment = db.session.get(Payment, payment_id)
        if not payment:
            raise LookupError(f"Payment {payment_id} not found")
        return payment

    def list_payments(
        self,
        customer_id: Optional[int] = None,
        connected_account_id: Optional[int] = None,
        lease_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Payment]:
        query = Payment.query
        if customer_id is not None:
            query = query.filter_by(customer_id=customer_id)
        if connected_account_id is not None:
            query = query.filter_by(connected_account_id=connected_account_id)
        if lease_id is not None:
            query = query.filter_by(lease_id=lease_id)
        if status:
            query = query.filter_by(status=status)
        return query.order_by(Payment.created_at.desc(), Payment.id.desc()).offset(offset).limit(limit).all()

    def list_refunds(self, payment_id: int) -> List[Refund]:
        return self.get_payment(payment_id).refunds

    # ===== helpers =====

    def _provider_input(self, payment: Payment) -> CreatePaymentInput:
        metadata = {str(k): str(v) for k, v in (payment.metadata_json or {}).items()}
        metadata.update({
            "payment_id": str(payment.id),
            "customer_id": str(payment.customer_id),
            "connected_account_id": str(payment.connected_account_id),
        })
        if payment.lease_id:
            metadata["lease_id"] = str(payment.lease_id)
        if payment.autopay_cycle_id:
            metadata["autopay_cycle_id"] = str(payment.autopay_cycle_id)
            metadata["attempt_number"] = str(payment.attempt_number or 1)

        return CreatePaymentInput(
            amount=payment.amount,
            currency=payment.currency,
            customer_id=payment.customer.provider_customer_id,
            payment_method_id=payment.payment_method.provider_payment_method_id,
            destination_account_id=payment.connected_account.provider_account_id,
            idempotency_key=payment.idempotency_key,
            application_fee_amount=payment.platform_fee,
            statement_descriptor=payment.statement_descriptor,
            description=payment.description,
            metadata=metadata,
        )

    @staticmethod
    def _apply_result(payment: Payment, result: PaymentResult) -> bool:
        """Converge a Payment toward the processor's status. Returns True when written."""
        if payment.is_terminal:
            if result.status != payment.status:
                current_app.logger.warning(
                    f"Payment {payment.id} already {payment.status}; ignoring {result.status}"
                )
            return False
        if _STATUS_RANK.get(result.status, 0) < _STATUS_RANK.get(payment.status, 0):
            current_app.logger.info(
                f"Ignoring stale status {result.status} for payment {payment.id} (stored {payment.status})"
            )
            return False

        if result.provider_payment_id and not payment.provider_payment_id:
            payment.provider_payment_id = result.provider_payment_id
        payment.status = result.status
        payment.status_unknown = False
        if result.receipt_url:
            payment.receipt_url = result.receipt_url
        if result.status == "failed":
            payment.failure_code = result.failure_code
            payment.failure_message = (result.failure_message or "")[:500] or None
            payment.failure_kind = result.failure_kind or "provider_error"
        if payment.is_terminal:
            payment.processed_at = datetime.utcnow()
        return True
