# rentpay/services/autopay_service.py
"""
AutoPay: recurring rent collection with retries.

One AutoPayCycle per schedule per month tracks the attempts for that period.
A daily run opens cycles for schedules due today, then charges every open
cycle whose next attempt date has arrived.

Retry policy (AUTOPAY_RETRY_DELAYS_DAYS, default 1,3,7):
    declined / insufficient funds / account not ready / provider error
        -> retry after the next delay, rolled to a business day
        -> after AUTOPAY_MAX_ATTEMPTS the cycle fails and an alert is written
    invalid payment method
        -> no retry: cycle needs attention, method flagged for replacement
    processing / pending / status unknown
        -> settled later by webhook or reconciliation (apply_payment_outcome)

Re-running on the same day never double charges: a cycle with a succeeded
or in-flight payment is skipped, and every attempt carries a deterministic
idempotency key.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError

from rentpay import db
from rentpay.models_autopay import (
    CYCLE_FINAL_STATUSES,
    CYCLE_OPEN_STATUSES,
    AutoPayCycle,
    AutoPaySchedule,
    Lease,
    PaymentAlert,
)
from rentpay.models_billing import Payment
from rentpay.monitoring import capture_exception
from rentpay.services.charge_service import ChargeProcessor, ChargeRequest, PreparedCharge
from rentpay.services.customer_service import CustomerService
from rentpay.services.providers.errors import (
    AccountNotReadyError,
    InvalidPaymentMethodError,
    PaymentProviderError,
    ProviderTimeoutError,
)

SUMMARY_KEYS = ("processed", "succeeded", "pending", "retry_scheduled", "failed", "needs_attention", "skipped")


def roll_to_business_day(day: date) -> date:
    while day.weekday() >= 5:  # Saturday, Sunday
        day += timedelta(days=1)
    return day


def next_payment_date(day_of_month: int, today: date) -> date:
    """Next date (today included) on which a schedule for day_of_month charges."""
    if today.day <= day_of_month:
        return today.replace(day=day_of_month)
    if today.month == 12:
        return date(today.year + 1, 1, day_of_month)
    return date(today.year, today.month + 1, day_of_month)


class AutoPayScheduler:
    def __init__(self, charge_processor: ChargeProcessor, customer_service: Optional[CustomerService] = None):
        self.charges = charge_processor
        self.customers = customer_service or CustomerService(charge_processor.provider)

    # ===== enrollment =====

    def enable(
        self,
        customer_id: int,
        lease_id: int,
        payment_method_id: int,
        day_of_month: int,
        amount: Optional[Decimal] = None,
    ) -> AutoPaySchedule:
        if not 1 <= int(day_of_month) <= 28:
            raise ValueError("day_of_month must be between 1 and 28")

        lease = db.session.get(Lease, lease_id)
        if not lease:
            raise LookupError(f"Lease {lease_id} not found")
        if lease.customer_id != customer_id:
            raise ValueError("Lease does not belong to this customer")
        if lease.status != "active":
            raise ValueError("AutoPay requires an active lease")

        pm = self.customers.get_payment_method(customer_id, payment_method_id)
        if not pm.is_active or pm.needs_replacement:
            raise ValueError("Choose a usable payment method for AutoPay")

        if amount is not None:
            amount = Decimal(str(amount)).quantize(Decimal("0.01"))
            if amount <= 0:
                raise ValueError("Amount must be greater than zero")

        schedule = self.get_schedule(customer_id, lease_id)
        if schedule is None:
            schedule = AutoPaySchedule(customer_id=customer_id, lease_id=lease_id)
            db.session.add(schedule)
        schedule.payment_method_id = pm.id
        schedule.day_of_month = int(day_of_month)
        schedule.fixed_amount = amount
        schedule.enabled = True
        schedule.disabled_at = None
        db.session.commit()

        current_app.logger.info(
            f"AutoPay enabled for customer {customer_id} lease {lease_id} on day {day_of_month} "
            f"with payment method {pm.id}"
        )
        return schedule

    def disable(self, customer_id: int, lease_id: int) -> AutoPaySchedule:
        schedule = self.get_schedule(customer_id, lease_id)
        if schedule is None:
            raise LookupError("AutoPay is not set up for this lease")
        if schedule.enabled:
            schedule.enabled = False
            schedule.disabled_at = datetime.utcnow()
            db.session.commit()
            current_app.logger.info(f"AutoPay disabled for customer {customer_id} lease {lease_id}")
        return schedule

    def get_schedule(self, customer_id: int, lease_id: int) -> Optional[AutoPaySchedule]:
        return AutoPaySchedule.query.filter_by(customer_id=customer_id, lease_id=lease_id).first()

    def list_schedules(self, customer_id: int) -> List[AutoPaySchedule]:
        return AutoPaySchedule.query.filter_by(customer_id=customer_id).order_by(AutoPaySchedule.id).all()

    next_payment_date = staticmethod(next_payment_date)

    # ===== daily run =====

    def run(self, today: Optional[date] = None) -> Dict[str, int]:
        today = today or datetime.utcnow().date()
        summary = dict.fromkeys(SUMMARY_KEYS, 0)

        self._open_cycles(today)

        cycles = (
            AutoPayCycle.query.join(AutoPaySchedule)
            .filter(
                AutoPaySchedule.enabled.is_(True),
                AutoPayCycle.status.in_(CYCLE_OPEN_STATUSES),
                AutoPayCycle.next_attempt_on <= today,
            )
            .order_by(AutoPayCycle.id)
            .all()
        )
        current_app.logger.info(f"AutoPay run for {today}: {len(cycles)} cycle(s) due")

        prepared: List[Tuple[int, PreparedCharge]] = []
        for cycle_id in [c.id for c in cycles]:
            cycle = db.session.get(AutoPayCycle, cycle_id)

            in_flight = (
                Payment.query.filter(
                    Payment.autopay_cycle_id == cycle.id,
                    Payment.status.in_(("pending", "processing", "succeeded")),
                )
                .order_by(Payment.id.desc())
                .first()
            )
            if in_flight:
                current_app.logger.info(
                    f"AutoPay cycle {cycle.id} already has payment {in_flight.id} ({in_flight.status}); skipping"
                )
                summary["skipped"] += 1
                if (in_flight.attempt_number or 0) > cycle.attempt_count:
                    # Crashed between persisting the attempt and updating the cycle
                    cycle.attempt_count = in_flight.attempt_number
                self._settle(cycle, in_flight, today)
                db.session.commit()
                continue

            summary["processed"] += 1
            schedule = cycle.schedule
            attempt = cycle.attempt_count + 1
            request = ChargeRequest(
                customer_id=schedule.customer_id,
                payment_method_id=schedule.payment_method_id,
                connected_account_id=schedule.lease.connected_account_id,
                amount=schedule.charge_amount,
                currency=schedule.lease.currency,
                description=f"Rent {cycle.period}",
                metadata={"autopay": "true", "period": cycle.period},
                lease_id=schedule.lease_id,
                autopay_cycle_id=cycle.id,
                attempt_number=attempt,
            )
            try:
                charge = self.charges.prepare(request)
            except IntegrityError:
                db.session.rollback()
                summary["processed"] -= 1
                cycle = db.session.get(AutoPayCycle, cycle_id)
                existing = Payment.query.filter_by(autopay_cycle_id=cycle.id, attempt_number=attempt).first()
                if existing is None:
                    # The attempt's idempotency key belongs to a payment outside this cycle
                    current_app.logger.error(
                        f"AutoPay cycle {cycle.id} attempt {attempt}: idempotency key held by another payment"
                    )
                    cycle.attempt_count = attempt
                    summary[self._needs_attention(
                        cycle, "idempotency_conflict", None, "the charge could not be submitted"
                    )] += 1
                else:
                    # Another run already persisted this attempt
                    summary["skipped"] += 1
                    cycle.attempt_count = max(cycle.attempt_count, attempt)
                    self._settle(cycle, existing, today)
                db.session.commit()
                continue
            except AccountNotReadyError as e:
                cycle = db.session.get(AutoPayCycle, cycle_id)
                cycle.attempt_count = attempt
                summary[self._after_failure(cycle, e.kind, e.code, today)] += 1
                db.session.commit()
                continue
            except (ValueError, LookupError) as e:
                cycle = db.session.get(AutoPayCycle, cycle_id)
                cycle.attempt_count = attempt
                summary[self._needs_attention(cycle, "invalid_request", None, str(e))] += 1
                db.session.commit()
                continue

            cycle = db.session.get(AutoPayCycle, cycle_id)
            cycle.attempt_count = attempt
            cycle.status = "processing"
            db.session.commit()
            prepared.append((cycle_id, charge))

        if prepared:
            for bucket in self._submit_all(prepared, today):
                summary[bucket] += 1

        current_app.logger.info(f"AutoPay run for {today} finished: {summary}")
        return summary

    def apply_payment_outcome(self, payment: Payment, today: Optional[date] = None) -> Optional[str]:
        """Apply the retry policy once a webhook or reconciliation settles an AutoPay payment. Caller commits."""
        if payment is None or payment.autopay_cycle_id is None:
            return None
        cycle = db.session.get(AutoPayCycle, payment.autopay_cycle_id)
        if cycle is None:
            return None
        return self._settle(cycle, payment, today or datetime.utcnow().date())

    def reconcile_pending(self, today: Optional[date] = None) -> Dict[str, int]:
        """Reconcile status-unknown payments, then move any AutoPay cycle they belong to."""
        today = today or datetime.utcnow().date()
        return self.charges.reconcile_pending(on_resolved=lambda payment: self.apply_payment_outcome(payment, today))

    # ===== helpers =====

    def _open_cycles(self, today: date) -> None:
        period = today.strftime("%Y-%m")
        due = AutoPaySchedule.query.filter_by(enabled=True, day_of_month=today.day).all()
        for schedule in due:
            if schedule.lease.status != "active":
                schedule.enabled = False
                schedule.disabled_at = datetime.utcnow()
                db.session.commit()
                current_app.logger.info(f"AutoPay schedule {schedule.id} disabled: lease {schedule.lease_id} ended")
                continue
            if schedule.cycles.filter_by(period=period).first():
                continue
            db.session.add(AutoPayCycle(
                schedule_id=schedule.id, period=period, status="scheduled", next_attempt_on=today
            ))
            try:
                db.session.commit()
            except IntegrityError:
                # A concurrent run opened the same period first
                db.session.rollback()

    def _submit_all(self, prepared: List[Tuple[int, PreparedCharge]], today: date) -> List[str]:
        """Fan processor calls out to worker threads; record every outcome on this thread."""
        max_workers = max(1, int(current_app.config.get("AUTOPAY_MAX_WORKERS", 4)))
        buckets = []

        with ThreadPoolExecutor(max_workers=min(max_workers, len(prepared))) as pool:
            futures = {pool.submit(self.charges.submit, charge): (cycle_id, charge) for cycle_id, charge in prepared}
            for future in as_completed(futures):
                cycle_id, charge = futures[future]
                try:
                    result = future.result()
                except PaymentProviderError as e:
                    payment = self.charges.record_failure(charge.payment_id, e)
                except Exception as e:
                    current_app.logger.error(
                        f"Unexpected error submitting AutoPay payment {charge.payment_id}: {e}", exc_info=True
                    )
                    capture_exception(e, payment_id=charge.payment_id, autopay_cycle_id=cycle_id)
                    payment = self.charges.record_failure(
                        charge.payment_id,
                        ProviderTimeoutError(f"Unexpected error submitting payment: {e}", original_error=e),
                    )
                else:
                    payment = self.charges.record_result(charge.payment_id, result)

                cycle = db.session.get(AutoPayCycle, cycle_id)
                buckets.append(self._settle(cycle, payment, today))
                db.session.commit()
        return buckets

    def _settle(self, cycle: AutoPayCycle, payment: Payment, today: date) -> str:
        """Move a cycle according to its latest payment. Returns the summary bucket."""
        if payment.status == "succeeded":
            if cycle.status != "succeeded":
                cycle.status = "succeeded"
                cycle.completed_at = datetime.utcnow()
                cycle.next_attempt_on = None
                current_app.logger.info(f"AutoPay cycle {cycle.id} ({cycle.period}) paid by payment {payment.id}")
            return "succeeded"

        if cycle.status in CYCLE_FINAL_STATUSES:
            return cycle.status
        if payment.attempt_number is not None and payment.attempt_number != cycle.attempt_count:
            # Outcome of an older attempt; the cycle has moved on
            return "skipped"

        if payment.status in ("pending", "processing"):
            cycle.status = "processing"
            return "pending"

        if payment.failure_kind == InvalidPaymentMethodError.kind:
            self.customers.mark_needs_replacement(payment.payment_method, payment.failure_code)
            return self._needs_attention(cycle, payment.failure_kind, payment.failure_code, payment.failure_message, payment)
        return self._after_failure(cycle, payment.failure_kind, payment.failure_code, today, payment)

    def _after_failure(
        self, cycle: AutoPayCycle, kind: Optional[str], code: Optional[str], today: date, payment: Optional[Payment] = None
    ) -> str:
        cfg = current_app.config
        delays = tuple(cfg.get("AUTOPAY_RETRY_DELAYS_DAYS", (1, 3, 7)))
        max_attempts = cfg.get("AUTOPAY_MAX_ATTEMPTS", len(delays) + 1)

        cycle.last_failure_kind = kind
        cycle.last_failure_code = code

        if cycle.attempt_count >= max_attempts or cycle.attempt_count > len(delays):
            cycle.status = "failed"
            cycle.next_attempt_on = None
            cycle.completed_at = datetime.utcnow()
            schedule = cycle.schedule
            db.session.add(PaymentAlert(
                kind="autopay_failed",
                message=f"AutoPay for {cycle.period} failed after {cycle.attempt_count} attempts "
                        f"({code or kind or 'unknown reason'})",
                customer_id=schedule.customer_id,
                connected_account_id=schedule.lease.connected_account_id,
                lease_id=schedule.lease_id,
                payment_id=payment.id if payment else None,
                autopay_cycle_id=cycle.id,
            ))
            current_app.logger.warning(
                f"AutoPay cycle {cycle.id} ({cycle.period}) failed after {cycle.attempt_count} attempts: {code or kind}"
            )
            return "failed"

        retry_on = roll_to_business_day(today + timedelta(days=delays[cycle.attempt_count - 1]))
        cycle.status = "retry_scheduled"
        cycle.next_attempt_on = retry_on
        current_app.logger.info(
            f"AutoPay cycle {cycle.id} attempt {cycle.attempt_count} failed ({code or kind}); retry on {retry_on}"
        )
        return "retry_scheduled"

    def _needs_attention(
        self,
        cycle: AutoPayCycle,
        kind: Optional[str],
        code: Optional[str],
        message: Optional[str],
        payment: Optional[Payment] = None,
    ) -> str:
        cycle.status = "needs_attention"
        cycle.next_attempt_on = None
        cycle.last_failure_kind = kind
        cycle.last_failure_code = code
        schedule = cycle.schedule
        db.session.add(PaymentAlert(
            kind="payment_method_needs_replacement" if kind == InvalidPaymentMethodError.kind else "autopay_failed",
            message=f"AutoPay for {cycle.period} stopped: {message or code or kind}. "
                    f"Update the payment method to resume.",
            customer_id=schedule.customer_id,
            connected_account_id=schedule.lease.connected_account_id,
            lease_id=schedule.lease_id,
            payment_id=payment.id if payment else None,
            autopay_cycle_id=cycle.id,
        ))
        current_app.logger.warning(f"AutoPay cycle {cycle.id} ({cycle.period}) needs attention: {code or kind}")
        return "needs_attention"
