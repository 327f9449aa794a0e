# rentpay/webhooks/routes.py
"""
Processor webhook endpoints.

200 - processed, duplicate (already seen) or ignored (no handler)
400 - missing or invalid signature; nothing is recorded
500 - handler failed; the transaction was rolled back and the processor redelivers
"""

from flask import current_app, jsonify, request

from rentpay.monitoring import capture_exception
from rentpay.services.providers import get_payment_provider
from rentpay.services.providers.errors import WebhookSignatureError
from rentpay.services.webhook_service import WebhookDispatcher
from rentpay.webhooks import webhooks_bp


def _dispatch(connect: bool):
    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature")

    try:
        outcome = WebhookDispatcher(get_payment_provider()).handle(payload, signature, connect=connect)
    except WebhookSignatureError as e:
        current_app.logger.warning(f"Rejected webhook with invalid signature: {e.message}")
        return jsonify(error="invalid_signature"), 400
    except Exception as e:
        current_app.logger.error(f"Webhook processing failed: {e}", exc_info=True)
        capture_exception(e, webhook_source="connect" if connect else "platform")
        return jsonify(error="processing_failed"), 500

    return jsonify(status=outcome), 200


@webhooks_bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    """Platform events: payments, refunds, disputes, setup intents."""
    return _dispatch(connect=False)


@webhooks_bp.route("/stripe/connect", methods=["POST"])
def stripe_connect_webhook():
    """Events on connected accounts: account updates, payouts, deauthorization."""
    return _dispatch(connect=True)
