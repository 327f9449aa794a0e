# rentpay/services/providers/errors.py
"""
Semantic error taxonomy for payment providers.

Adapters catch raw processor errors and re-raise one of these. Everything
above the adapter (charge processing, AutoPay, webhooks, routes) branches
on these classes only.
"""

from typing import List, Optional


class ConfigurationError(Exception):
    """Provider configuration is missing or invalid."""


class PaymentProviderError(Exception):
    """Unclassified processor failure. `code` carries the raw processor code."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        provider_type: str = "stripe",
        original_error: Optional[BaseException] = None,
        provider_payment_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.provider_type = provider_type
        self.original_error = original_error
        self.provider_payment_id = provider_payment_id

    # Semantic kind stored on failed Payment rows
    kind = "provider_error"

    def to_dict(self) -> dict:
        return {"error": self.kind, "code": self.code, "message": self.message}


class PaymentDeclinedError(PaymentProviderError):
    kind = "declined"

    def __init__(self, message: str, decline_code: Optional[str] = None, **kwargs):
        kwargs.setdefault("code", "card_declined")
        super().__init__(message, **kwargs)
        self.decline_code = decline_code

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["decline_code"] = self.decline_code
        return data


class InsufficientFundsError(PaymentProviderError):
    kind = "insufficient_funds"

    def __init__(self, message: str = "Insufficient funds", **kwargs):
        kwargs.setdefault("code", "insufficient_funds")
        super().__init__(message, **kwargs)


class InvalidPaymentMethodError(PaymentProviderError):
    kind = "invalid_payment_method"

    def __init__(self, message: str = "Invalid payment method", **kwargs):
        kwargs.setdefault("code", "invalid_payment_method")
        super().__init__(message, **kwargs)


class AccountNotReadyError(PaymentProviderError):
    """Destination connected account cannot accept charges yet."""

    kind = "account_not_ready"

    def __init__(
        self,
        message: str = "Connected account is not ready to accept payments",
        requirements: Optional[List[str]] = None,
        **kwargs,
    ):
        kwargs.setdefault("code", "account_not_ready")
        super().__init__(message, **kwargs)
        self.requirements = list(requirements or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["requirements"] = self.requirements
        return data


class ProviderTimeoutError(PaymentProviderError):
    """The request may or may not have reached the processor. Status is unknown."""

    kind = "status_unknown"

    def __init__(self, message: str = "Payment provider did not respond", **kwargs):
        kwargs.setdefault("code", "timeout")
        super().__init__(message, **kwargs)


class WebhookSignatureError(PaymentProviderError):
    kind = "webhook_signature_invalid"

    def __init__(self, message: str = "Invalid webhook signature", **kwargs):
        kwargs.setdefault("code", "webhook_signature_invalid")
        super().__init__(message, **kwargs)


# failure_kind values that mean the charge itself was refused
FAILURE_KINDS = {
    PaymentDeclinedError.kind: PaymentDeclinedError,
    InsufficientFundsError.kind: InsufficientFundsError,
    InvalidPaymentMethodError.kind: InvalidPaymentMethodError,
}


def error_for_failure_kind(kind: Optional[str], message: str, code: Optional[str] = None) -> PaymentProviderError:
    """Rebuild a semantic error from a stored failure kind (used for async failures)."""
    cls = FAILURE_KINDS.get(kind or "")
    if cls is None:
        return PaymentProviderError(message, code=code)
    return cls(message, code=code) if code else cls(message)
