# rentpay/monitoring/__init__.py
"""
Error tracking and monitoring integration.

Provides:
- Sentry error tracking
- Performance monitoring (APM)
- Request context tags
- Release tracking
"""

import os

import sentry_sdk
from flask import Flask, request
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

# Expected business outcomes, not bugs: the caller already got a 4xx for these
EXPECTED_ERRORS = (
    "PaymentDeclinedError",
    "InsufficientFundsError",
    "InvalidPaymentMethodError",
    "AccountNotReadyError",
    "WebhookSignatureError",
)


def init_sentry(app: Flask):
    """
    Initialize Sentry error tracking and performance monitoring.

    Does nothing when SENTRY_DSN is not configured.
    """
    sentry_dsn = app.config.get("SENTRY_DSN") or os.getenv("SENTRY_DSN")

    if not sentry_dsn:
        app.logger.info("Sentry DSN not configured - error tracking disabled")
        return

    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[
            FlaskIntegration(transaction_style="url"),
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=app.config.get("SENTRY_LOG_LEVEL", None),
                event_level=app.config.get("SENTRY_EVENT_LEVEL", None),
            ),
        ],
        traces_sample_rate=app.config.get("SENTRY_TRACES_SAMPLE_RATE", 0.1),
        profiles_sample_rate=app.config.get("SENTRY_PROFILES_SAMPLE_RATE", 0.1),
        environment=app.config.get("SENTRY_ENVIRONMENT", "production"),
        release=app.config.get("SENTRY_RELEASE", "unknown"),
        send_default_pii=False,  # card/bank details never leave the processor anyway
        attach_stacktrace=True,
        max_breadcrumbs=50,
        ignore_errors=[KeyboardInterrupt, SystemExit],
        sample_rate=app.config.get("SENTRY_SAMPLE_RATE", 1.0),
        before_send=before_send_event,
    )

    app.logger.info(
        f"Sentry initialized (environment={app.config.get('SENTRY_ENVIRONMENT', 'production')}, "
        f"traces_sample_rate={app.config.get('SENTRY_TRACES_SAMPLE_RATE', 0.1)})"
    )

    register_context_processors(app)


def before_send_event(event, hint):
    """
    Filter or modify events before sending to Sentry.

    Returns the event, or None to drop it.
    """
    # Drop events from health check endpoints
    if event.get("request", {}).get("url", "").endswith("/__health__"):
        return None

    values = event.get("exception", {}).get("values") or [{}]
    exc_type = values[0].get("type", "Unknown")

    if exc_type == "NotFound" or exc_type in EXPECTED_ERRORS:
        return None

    # Custom fingerprinting for better grouping
    if "exception" in event:
        exc_value = (values[0].get("value") or "")[:100]
        event["fingerprint"] = [exc_type, exc_value]

    return event


def register_context_processors(app: Flask):
    """Tag every request's events with method and endpoint."""

    @app.before_request
    def add_sentry_context():
        sentry_sdk.set_context("request_info", {
            "method": request.method,
            "url": request.url,
            "endpoint": request.endpoint,
        })
        sentry_sdk.set_tag("request_method", request.method)
        sentry_sdk.set_tag("endpoint", request.endpoint or "unknown")


def capture_exception(error: Exception, **extra_context):
    """
    Manually capture an exception to Sentry.

    A no-op when Sentry was never initialized.
    """
    if extra_context:
        with sentry_sdk.push_scope() as scope:
            for key, value in extra_context.items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(error)
    else:
        sentry_sdk.capture_exception(error)
