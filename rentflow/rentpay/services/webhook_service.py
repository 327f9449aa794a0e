# rentpay/services/webhook_service.py
"""
Inbound processor webhooks.

Every verified event is recorded in webhook_events in the same transaction
as its handler's writes. A redelivered event id is acknowledged without
running the handler again; a failing handler rolls everything back so the
processor redelivers later. Handlers converge regardless of delivery order.
"""

from typing import Callable, Dict, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from rentpay import db
from rentpay.models_webhook import WebhookEventRecord
from rentpay.services.autopay_service import AutoPayScheduler
from rentpay.services.charge_service import ChargeProcessor
from rentpay.services.connect_service import ConnectAccountManager
from rentpay.services.customer_service import CustomerService
from rentpay.services.providers import base
from rentpay.services.providers.base import PaymentProvider, WebhookEvent


def handle_payment_event(dispatcher: "WebhookDispatcher", event: WebhookEvent):
    payment = dispatcher.charges.apply_payment_update(event.data)
    if payment is not None:
        dispatcher.autopay.apply_payment_outcome(payment)


def handle_refund_event(dispatcher: "WebhookDispatcher", event: WebhookEvent):
    dispatcher.charges.apply_refund_update(event.data)


def handle_charge_refunded(dispatcher: "WebhookDispatcher", event: WebhookEvent):
    for refund in event.data or []:
        dispatcher.charges.apply_refund_update(refund)


def handle_dispute_event(dispatcher: "WebhookDispatcher", event: WebhookEvent):
    dispatcher.charges.apply_dispute(event.data)


def handle_payout_event(dispatcher: "WebhookDispatcher", event: WebhookEvent):
    dispatcher.connect.record_payout(event.data, event.account_id)


def handle_account_updated(dispatcher: "WebhookDispatcher", event: WebhookEvent):
    dispatcher.connect.apply_account_status(event.data)


def handle_account_deauthorized(dispatcher: "WebhookDispatcher", event: WebhookEvent):
    if event.account_id:
        dispatcher.connect.record_deauthorized(event.account_id)


def handle_setup_succeeded(dispatcher: "WebhookDispatcher", event: WebhookEvent):
    dispatcher.customers.apply_setup_result(event.data, succeeded=True)


def handle_setup_failed(dispatcher: "WebhookDispatcher", event: WebhookEvent):
    dispatcher.customers.apply_setup_result(event.data, succeeded=False)


# Normalized event type -> handler
WEBHOOK_HANDLERS: Dict[str, Callable[["WebhookDispatcher", WebhookEvent], None]] = {
    base.EVENT_PAYMENT_SUCCEEDED: handle_payment_event,
    base.EVENT_PAYMENT_PROCESSING: handle_payment_event,
    base.EVENT_PAYMENT_FAILED: handle_payment_event,
    base.EVENT_PAYMENT_CANCELED: handle_payment_event,
    base.EVENT_REFUND_UPDATED: handle_refund_event,
    base.EVENT_CHARGE_REFUNDED: handle_charge_refunded,
    base.EVENT_DISPUTE_CREATED: handle_dispute_event,
    base.EVENT_DISPUTE_UPDATED: handle_dispute_event,
    base.EVENT_DISPUTE_CLOSED: handle_dispute_event,
    base.EVENT_PAYOUT_CREATED: handle_payout_event,
    base.EVENT_PAYOUT_UPDATED: handle_payout_event,
    base.EVENT_PAYOUT_PAID: handle_payout_event,
    base.EVENT_PAYOUT_FAILED: handle_payout_event,
    base.EVENT_PAYOUT_CANCELED: handle_payout_event,
    base.EVENT_ACCOUNT_UPDATED: handle_account_updated,
    base.EVENT_ACCOUNT_DEAUTHORIZED: handle_account_deauthorized,
    base.EVENT_SETUP_SUCCEEDED: handle_setup_succeeded,
    base.EVENT_SETUP_FAILED: handle_setup_failed,
}


class WebhookDispatcher:
    """Verify, deduplicate and route processor events."""

    def __init__(
        self,
        provider: PaymentProvider,
        charge_processor: Optional[ChargeProcessor] = None,
        connect_manager: Optional[ConnectAccountManager] = None,
        customer_service: Optional[CustomerService] = None,
        autopay: Optional[AutoPayScheduler] = None,
        handlers: Optional[Dict[str, Callable]] = None,
    ):
        self.provider = provider
        self.charges = charge_processor or ChargeProcessor(provider)
        self.connect = connect_manager or ConnectAccountManager(provider)
        self.customers = customer_service or CustomerService(provider)
        self.autopay = autopay or AutoPayScheduler(self.charges, self.customers)
        self.handlers = dict(WEBHOOK_HANDLERS if handlers is None else handlers)

    def handle(self, payload: bytes, signature: Optional[str], connect: bool = False) -> str:
        """
        Process one delivery. Returns "processed", "duplicate" or "ignored".

        Raises WebhookSignatureError for unverifiable payloads (nothing is
        recorded) and re-raises handler errors after rolling back.
        """
        if connect:
            event = self.provider.verify_connect_webhook(payload, signature)
        else:
            event = self.provider.verify_webhook(payload, signature)

        if WebhookEventRecord.query.filter_by(event_id=event.id).first():
            current_app.logger.info(f"Duplicate webhook event {event.id} ({event.raw_type}); skipping")
            return "duplicate"

        handler = self.handlers.get(event.type)
        outcome = "processed" if handler else "ignored"

        db.session.add(WebhookEventRecord(
            event_id=event.id,
            provider_type=event.provider_type,
            event_type=event.type,
            raw_type=event.raw_type,
            source="connect" if connect else "platform",
            account_ref=event.account_id,
            status=outcome,
        ))
        try:
            db.session.flush()
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            db.session.rollback()
            current_app.logger.info(f"Duplicate webhook event {event.id} (concurrent delivery)")
            return "duplicate"

        if handler is None:
            db.session.commit()
            current_app.logger.debug(f"No handler for webhook event: {event.raw_type}")
            return outcome

        current_app.logger.info(f"Processing webhook event {event.id}: {event.raw_type}")
        try:
            handler(self, event)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            if WebhookEventRecord.query.filter_by(event_id=event.id).first():
                current_app.logger.info(f"Duplicate webhook event {event.id} detected on commit")
                return "duplicate"
            current_app.logger.error(f"Integrity error processing webhook event {event.id}", exc_info=True)
            raise
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"Error processing webhook event {event.raw_type} ({event.id}): {e}", exc_info=True)
            raise
        return outcome
