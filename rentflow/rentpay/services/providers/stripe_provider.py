# rentpay/services/providers/stripe_provider.py
"""
Stripe Connect implementation of the PaymentProvider interface.

Rent is collected with destination charges: one PaymentIntent charges the
tenant, transfers to the landlord's Express account and keeps the platform
fee, so there is never a separate transfer step.

This is the only module that imports `stripe` for money movement, the only
place raw Stripe errors are caught, and the only place dollars are
converted to cents.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import stripe

from rentpay.services.providers import base
from rentpay.services.providers.base import (
    AccountStatusResult,
    BankLinkSessionResult,
    ConnectedAccountInput,
    ConnectedAccountResult,
    CreatePaymentInput,
    CustomerInput,
    CustomerResult,
    DisputeResult,
    OnboardingLink,
    PaymentMethodResult,
    PaymentProvider,
    PaymentResult,
    PayoutResult,
    RefundInput,
    RefundResult,
    SetupIntentResult,
    SetupSessionResult,
    WebhookEvent,
)
from rentpay.services.providers.errors import (
    AccountNotReadyError,
    ConfigurationError,
    InsufficientFundsError,
    InvalidPaymentMethodError,
    PaymentDeclinedError,
    PaymentProviderError,
    ProviderTimeoutError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

STATEMENT_DESCRIPTOR_MAX_LENGTH = 22
REAL_ESTATE_MCC = "6513"  # Real Estate Agents and Managers - Rentals
PLATFORM_METADATA = {"platform": "rentflow"}

INVALID_METHOD_CODES = frozenset({
    "invalid_payment_method",
    "payment_method_not_available",
    "expired_card",
    "incorrect_number",
    "invalid_number",
    "invalid_expiry_month",
    "invalid_expiry_year",
    "payment_method_unactivated",
    "payment_method_unexpected_state",
    "bank_account_unusable",
    "bank_account_verification_failed",
    "debit_not_authorized",
    "account_closed",
    "no_account",
    "invalid_account_number",
})

ACCOUNT_NOT_READY_CODES = frozenset({
    "account_invalid",
    "account_not_yet_activated",
    "transfers_not_allowed",
})

_PAYMENT_STATUS = {
    "succeeded": "succeeded",
    "processing": "processing",
    "canceled": "canceled",
    "requires_payment_method": "pending",
    "requires_confirmation": "pending",
    "requires_action": "pending",
    "requires_capture": "pending",
}

_REFUND_STATUS = {
    "succeeded": "succeeded",
    "failed": "failed",
    "canceled": "canceled",
    "pending": "pending",
    "requires_action": "pending",
}

_PAYOUT_STATUS = {
    "pending": "pending",
    "in_transit": "in_transit",
    "paid": "paid",
    "failed": "failed",
    "canceled": "canceled",
}

_DISPUTE_STATUS = {
    "warning_needs_response": "needs_response",
    "needs_response": "needs_response",
    "warning_under_review": "under_review",
    "under_review": "under_review",
    "warning_closed": "closed",
    "charge_refunded": "charge_refunded",
    "won": "won",
    "lost": "lost",
}


# ===== Helpers =====

def to_minor_units(amount) -> int:
    """Dollars -> cents, half-up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(cents) -> Decimal:
    """Cents -> dollars."""
    return (Decimal(int(cents or 0)) / 100).quantize(Decimal("0.01"))


def truncate_descriptor(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    return text.strip()[:STATEMENT_DESCRIPTOR_MAX_LENGTH]


def classify_failure(code: Optional[str], decline_code: Optional[str] = None) -> Optional[str]:
    """Map a Stripe failure code to a semantic failure kind, or None if unclassified."""
    if code == "insufficient_funds" or decline_code == "insufficient_funds":
        return InsufficientFundsError.kind
    if code in INVALID_METHOD_CODES:
        return InvalidPaymentMethodError.kind
    if code == "card_declined" or decline_code:
        return PaymentDeclinedError.kind
    return None


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or plain dict."""
    if obj is None or isinstance(obj, str):
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
    else:
        value = getattr(obj, key, default)
    return default if value is None else value


def _as_dict(value: Any) -> Dict[str, Any]:
    if not value:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return {}


def _ts(value) -> Optional[datetime]:
    """Unix timestamp -> naive UTC datetime."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _id_of(value: Any) -> Optional[str]:
    """Expandable Stripe field: either an id string or an object with an id."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _get(value, "id")


class StripeProvider(PaymentProvider):
    provider_type = "stripe"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: Optional[str] = None,
        connect_webhook_secret: Optional[str] = None,
        timeout: Optional[float] = 30,
        max_network_retries: int = 2,
        app_url: Optional[str] = None,
    ):
        if not secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")

        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.connect_webhook_secret = connect_webhook_secret
        self.app_url = app_url

        stripe.max_network_retries = max_network_retries
        if timeout:
            stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

        logger.info("Stripe provider initialized (timeout=%ss, retries=%s)", timeout, max_network_retries)

    def _opts(self, **extra) -> Dict[str, Any]:
        opts = {"api_key": self.secret_key}
        opts.update({k: v for k, v in extra.items() if v is not None})
        return opts

    # ===== Error translation =====

    @contextmanager
    def _stripe_errors(self, context: str):
        try:
            yield
        except stripe.StripeError as e:
            raise self._translate_error(e, context) from e

    def _translate_error(self, error: "stripe.StripeError", context: str) -> PaymentProviderError:
        body = error.json_body if isinstance(getattr(error, "json_body", None), dict) else {}
        detail = body.get("error") or {}
        code = getattr(error, "code", None) or detail.get("code")
        decline_code = detail.get("decline_code")
        payment_intent = detail.get("payment_intent")
        payment_id = _id_of(payment_intent) if payment_intent else None
        message = detail.get("message") or getattr(error, "user_message", None) or str(error)

        common = {
            "provider_type": self.provider_type,
            "original_error": error,
            "provider_payment_id": payment_id,
        }

        if isinstance(error, stripe.APIConnectionError):
            logger.warning("%s: Stripe unreachable, status unknown: %s", context, error)
            return ProviderTimeoutError(f"{context}: {message}", **common)

        kind = classify_failure(code, decline_code)
        if kind == InsufficientFundsError.kind:
            logger.warning("%s: insufficient funds (code=%s)", context, code)
            return InsufficientFundsError(message, code=code or "insufficient_funds", **common)
        if kind == InvalidPaymentMethodError.kind:
            logger.warning("%s: invalid payment method (code=%s)", context, code)
            return InvalidPaymentMethodError(message, code=code, **common)
        if kind == PaymentDeclinedError.kind:
            logger.warning("%s: declined (code=%s, decline_code=%s)", context, code, decline_code)
            return PaymentDeclinedError(message, decline_code=decline_code, code=code or "card_declined", **common)
        if code in ACCOUNT_NOT_READY_CODES:
            logger.warning("%s: destination account not ready (code=%s)", context, code)
            return AccountNotReadyError(message, code=code, **common)

        logger.error("%s: unclassified Stripe error code=%s: %s", context, code, error)
        return PaymentProviderError(f"{context}: {message}", code=code, **common)

    # ===== Customers =====

    def create_customer(self, data: CustomerInput) -> CustomerResult:
        with self._stripe_errors("Failed to create customer"):
            customer = stripe.Customer.create(
                email=data.email,
                name=data.name,
                phone=data.phone,
                metadata={**data.metadata, **PLATFORM_METADATA},
                **self._opts(),
            )
        return self._map_customer(customer)

    def get_customer(self, provider_customer_id: str) -> CustomerResult:
        with self._stripe_errors("Failed to get customer"):
            customer = stripe.Customer.retrieve(provider_customer_id, **self._opts())
        if _get(customer, "deleted"):
            raise PaymentProviderError(
                "Customer has been deleted", code="customer_deleted", provider_type=self.provider_type
            )
        return self._map_customer(customer)

    def update_customer(self, provider_customer_id: str, **updates) -> CustomerResult:
        params = {k: v for k, v in updates.items() if k in ("email", "name", "phone", "metadata") and v is not None}
        with self._stripe_errors("Failed to update customer"):
            customer = stripe.Customer.modify(provider_customer_id, **params, **self._opts())
        return self._map_customer(customer)

    # ===== Payment methods =====

    def create_setup_session(
        self,
        provider_customer_id: str,
        payment_method_types: List[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> SetupSessionResult:
        types = ["us_bank_account" if t == "us_bank_account" else "card" for t in payment_method_types]
        types = list(dict.fromkeys(types))
        options = {}
        if "us_bank_account" in types:
            options["us_bank_account"] = {
                "financial_connections": {"permissions": ["payment_method", "balances"], "prefetch": ["balances"]},
                "verification_method": "automatic",
            }
        if "card" in types:
            options["card"] = {"request_three_d_secure": "automatic"}

        with self._stripe_errors("Failed to create setup session"):
            intent = stripe.SetupIntent.create(
                customer=provider_customer_id,
                payment_method_types=types,
                payment_method_options=options,
                usage="off_session",
                metadata={**(metadata or {}), **PLATFORM_METADATA},
                **self._opts(),
            )
        return SetupSessionResult(session_id=_get(intent, "id"), client_secret=_get(intent, "client_secret", ""))

    def attach_payment_method(
        self, provider_customer_id: str, provider_payment_method_id: str, set_as_default: bool = False
    ) -> PaymentMethodResult:
        with self._stripe_errors("Failed to attach payment method"):
            pm = stripe.PaymentMethod.attach(
                provider_payment_method_id, customer=provider_customer_id, **self._opts()
            )
            if set_as_default:
                stripe.Customer.modify(
                    provider_customer_id,
                    invoice_settings={"default_payment_method": provider_payment_method_id},
                    **self._opts(),
                )
        return self._map_payment_method(pm, is_default=set_as_default)

    def list_payment_methods(self, provider_customer_id: str) -> List[PaymentMethodResult]:
        with self._stripe_errors("Failed to list payment methods"):
            cards = stripe.PaymentMethod.list(customer=provider_customer_id, type="card", **self._opts())
            banks = stripe.PaymentMethod.list(customer=provider_customer_id, type="us_bank_account", **self._opts())
            customer = stripe.Customer.retrieve(provider_customer_id, **self._opts())

        default_id = _id_of(_get(_get(customer, "invoice_settings"), "default_payment_method"))
        methods = list(_get(cards, "data", [])) + list(_get(banks, "data", []))
        return [self._map_payment_method(pm, is_default=(_get(pm, "id") == default_id)) for pm in methods]

    def get_payment_method(self, provider_payment_method_id: str) -> PaymentMethodResult:
        with self._stripe_errors("Failed to get payment method"):
            pm = stripe.PaymentMethod.retrieve(provider_payment_method_id, **self._opts())
        return self._map_payment_method(pm)

    def detach_payment_method(self, provider_payment_method_id: str) -> None:
        with self._stripe_errors("Failed to detach payment method"):
            stripe.PaymentMethod.detach(provider_payment_method_id, **self._opts())

    def set_default_payment_method(self, provider_customer_id: str, provider_payment_method_id: str) -> None:
        with self._stripe_errors("Failed to set default payment method"):
            stripe.Customer.modify(
                provider_customer_id,
                invoice_settings={"default_payment_method": provider_payment_method_id},
                **self._opts(),
            )

    # ===== Charges =====

    def create_payment(self, data: CreatePaymentInput) -> PaymentResult:
        params = {
            "amount": to_minor_units(data.amount),
            "currency": data.currency.lower(),
            "customer": data.customer_id,
            "payment_method": data.payment_method_id,
            "off_session": True,
            "confirm": True,
            "transfer_data": {"destination": data.destination_account_id},
            "metadata": {**data.metadata, **PLATFORM_METADATA},
            "expand": ["latest_charge"],
        }
        if data.application_fee_amount is not None:
            params["application_fee_amount"] = to_minor_units(data.application_fee_amount)
        descriptor = truncate_descriptor(data.statement_descriptor)
        if descriptor:
            params["statement_descriptor_suffix"] = descriptor
        if data.description:
            params["description"] = data.description

        with self._stripe_errors("Failed to create payment"):
            intent = stripe.PaymentIntent.create(**params, **self._opts(idempotency_key=data.idempotency_key))

        result = self._map_payment_intent(intent)
        logger.info(
            "Stripe payment %s -> %s (%s %s, destination=%s)",
            result.provider_payment_id, result.status, result.amount, result.currency, data.destination_account_id,
        )
        return result

    def get_payment(self, provider_payment_id: str) -> PaymentResult:
        with self._stripe_errors("Failed to get payment"):
            intent = stripe.PaymentIntent.retrieve(provider_payment_id, expand=["latest_charge"], **self._opts())
        return self._map_payment_intent(intent)

    def refund_payment(self, data: RefundInput) -> RefundResult:
        params = {
            "payment_intent": data.provider_payment_id,
            "reverse_transfer": True,
            "refund_application_fee": True,
            "metadata": {**data.metadata, **PLATFORM_METADATA},
        }
        if data.amount is not None:
            params["amount"] = to_minor_units(data.amount)
        if data.reason:
            params["reason"] = data.reason

        with self._stripe_errors("Failed to refund payment"):
            refund = stripe.Refund.create(**params, **self._opts(idempotency_key=data.idempotency_key))
        return self._map_refund(refund)

    # ===== Connected accounts =====

    def create_connected_account(self, data: ConnectedAccountInput) -> ConnectedAccountResult:
        business_profile = {
            "mcc": REAL_ESTATE_MCC,
            "product_description": "Property management and rent collection",
        }
        if data.business_name:
            business_profile["name"] = data.business_name
        if self.app_url:
            business_profile["url"] = self.app_url

        params = {
            "type": "express",
            "country": data.country,
            "email": data.email,
            "business_type": data.business_type,
            "capabilities": {
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
                "us_bank_account_ach_payments": {"requested": True},
            },
            "business_profile": business_profile,
            "settings": {"payouts": {"schedule": {"delay_days": data.payout_delay_days, "interval": "daily"}}},
            "metadata": {**data.metadata, **PLATFORM_METADATA},
        }
        if data.business_type == "company" and data.business_structure:
            params["company"] = {"structure": data.business_structure}

        with self._stripe_errors("Failed to create connected account"):
            account = stripe.Account.create(**params, **self._opts())
        return self._map_connected_account(account)

    def get_onboarding_url(self, provider_account_id: str, refresh_url: str, return_url: str) -> OnboardingLink:
        with self._stripe_errors("Failed to get onboarding URL"):
            link = stripe.AccountLink.create(
                account=provider_account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
                **self._opts(),
            )
        return OnboardingLink(url=_get(link, "url"), expires_at=_ts(_get(link, "expires_at")))

    def get_express_dashboard_url(self, provider_account_id: str) -> str:
        with self._stripe_errors("Failed to get Express dashboard URL"):
            login_link = stripe.Account.create_login_link(provider_account_id, **self._opts())
        return _get(login_link, "url")

    def get_account_status(self, provider_account_id: str) -> AccountStatusResult:
        with self._stripe_errors("Failed to get account status"):
            account = stripe.Account.retrieve(provider_account_id, **self._opts())
        return self._map_account_status(account)

    def update_payout_schedule(self, provider_account_id: str, delay_days: int) -> None:
        with self._stripe_errors("Failed to update payout schedule"):
            stripe.Account.modify(
                provider_account_id,
                settings={"payouts": {"schedule": {"delay_days": delay_days, "interval": "daily"}}},
                **self._opts(),
            )
        logger.info("Payout delay for %s set to %s days", provider_account_id, delay_days)

    # ===== Bank linking / payouts =====

    def create_bank_link_session(
        self, provider_customer_id: str, metadata: Optional[Dict[str, str]] = None
    ) -> BankLinkSessionResult:
        with self._stripe_errors("Failed to create bank link session"):
            intent = stripe.SetupIntent.create(
                customer=provider_customer_id,
                payment_method_types=["us_bank_account"],
                payment_method_options={
                    "us_bank_account": {
                        "financial_connections": {
                            "permissions": ["payment_method", "balances"],
                            "prefetch": ["balances"],
                        },
                        "verification_method": "automatic",
                    }
                },
                usage="off_session",
                metadata={**(metadata or {}), **PLATFORM_METADATA},
                **self._opts(),
            )
        return BankLinkSessionResult(session_id=_get(intent, "id"), client_secret=_get(intent, "client_secret", ""))

    def get_payout(self, provider_payout_id: str, provider_account_id: Optional[str] = None) -> PayoutResult:
        with self._stripe_errors("Failed to get payout"):
            payout = stripe.Payout.retrieve(provider_payout_id, **self._opts(stripe_account=provider_account_id))
        return self._map_payout(payout)

    # ===== Webhooks =====

    def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        if not self.webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET not configured")
        return self._construct_event(payload, signature, self.webhook_secret)

    def verify_connect_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        if not self.connect_webhook_secret:
            raise ConfigurationError("STRIPE_CONNECT_WEBHOOK_SECRET not configured")
        return self._construct_event(payload, signature, self.connect_webhook_secret)

    def _construct_event(self, payload: bytes, signature: str, secret: str) -> WebhookEvent:
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header", provider_type=self.provider_type)
        try:
            event = stripe.Webhook.construct_event(payload, signature, secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise WebhookSignatureError(provider_type=self.provider_type, original_error=e) from e
        return self.normalize_event(event)

    def normalize_event(self, event: Any) -> WebhookEvent:
        """Translate a Stripe event into a provider-agnostic WebhookEvent."""
        raw_type = _get(event, "type", "")
        obj = _get(_get(event, "data"), "object")
        account_id = _get(event, "account")

        normalized_type, data = raw_type, None
        handler = self._EVENT_MAPPERS.get(raw_type)
        if handler is not None:
            normalized_type, mapper = handler
            data = mapper(self, obj) if mapper is not None else None

        return WebhookEvent(
            id=_get(event, "id"),
            type=normalized_type,
            provider_type=self.provider_type,
            raw_type=raw_type,
            data=data,
            account_id=account_id,
            created_at=_ts(_get(event, "created")),
            livemode=bool(_get(event, "livemode", False)),
        )

    # ===== Mapping =====

    def _map_customer(self, customer) -> CustomerResult:
        return CustomerResult(
            provider_customer_id=_get(customer, "id"),
            email=_get(customer, "email", ""),
            name=_get(customer, "name", ""),
            phone=_get(customer, "phone"),
            default_payment_method_id=_id_of(_get(_get(customer, "invoice_settings"), "default_payment_method")),
        )

    def _map_payment_method(self, pm, is_default: bool = False) -> PaymentMethodResult:
        result = PaymentMethodResult(
            provider_payment_method_id=_get(pm, "id"),
            type="card",
            provider_customer_id=_id_of(_get(pm, "customer")),
            is_default=is_default,
            created_at=_ts(_get(pm, "created")),
        )
        pm_type = _get(pm, "type")
        if pm_type == "us_bank_account":
            bank = _get(pm, "us_bank_account")
            result.type = "us_bank_account"
            result.bank_name = _get(bank, "bank_name")
            result.bank_account_last4 = _get(bank, "last4")
            result.bank_account_type = _get(bank, "account_type")
            # Financial Connections links are verified instantly
            result.verification_status = "instant_verified"
        elif pm_type == "card":
            card = _get(pm, "card")
            wallet_type = _get(_get(card, "wallet"), "type")
            if wallet_type in ("apple_pay", "google_pay"):
                result.type = wallet_type
                result.wallet_type = wallet_type
            result.card_brand = _get(card, "brand")
            result.card_last4 = _get(card, "last4")
            result.card_exp_month = _get(card, "exp_month")
            result.card_exp_year = _get(card, "exp_year")
            result.card_funding = _get(card, "funding")
            result.verification_status = "verified"
        return result

    def _map_payment_intent(self, intent, status: Optional[str] = None) -> PaymentResult:
        error = _get(intent, "last_payment_error")
        failure_code = _get(error, "code")
        decline_code = _get(error, "decline_code")
        if status is None:
            raw_status = _get(intent, "status")
            if raw_status == "requires_payment_method" and error:
                # A confirmed intent falls back here when its charge attempt failed
                status = "failed"
            else:
                status = _PAYMENT_STATUS.get(raw_status, "pending")
        fee = _get(intent, "application_fee_amount")
        charge = _get(intent, "latest_charge")

        failure_kind = None
        if status == "failed" or failure_code:
            failure_kind = classify_failure(failure_code, decline_code)

        return PaymentResult(
            provider_payment_id=_get(intent, "id"),
            amount=to_major_units(_get(intent, "amount", 0)),
            currency=_get(intent, "currency", "usd"),
            status=status,
            platform_fee=to_major_units(fee) if fee is not None else None,
            destination_account_id=_id_of(_get(_get(intent, "transfer_data"), "destination")),
            failure_code=failure_code or decline_code,
            failure_message=_get(error, "message"),
            failure_kind=failure_kind,
            receipt_url=_get(charge, "receipt_url"),
            created_at=_ts(_get(intent, "created")),
            metadata=_as_dict(_get(intent, "metadata")),
        )

    def _map_failed_payment_intent(self, intent) -> PaymentResult:
        # payment_failed events leave the intent in requires_payment_method
        return self._map_payment_intent(intent, status="failed")

    def _map_refund(self, refund) -> RefundResult:
        return RefundResult(
            provider_refund_id=_get(refund, "id"),
            amount=to_major_units(_get(refund, "amount", 0)),
            currency=_get(refund, "currency", "usd"),
            status=_REFUND_STATUS.get(_get(refund, "status"), "pending"),
            provider_payment_id=_id_of(_get(refund, "payment_intent")),
            reason=_get(refund, "reason"),
            failure_reason=_get(refund, "failure_reason"),
            created_at=_ts(_get(refund, "created")),
        )

    def _map_charge_refunds(self, charge) -> List[RefundResult]:
        # charge.refunded carries the charge; its refunds list holds the individual refunds
        payment_intent = _id_of(_get(charge, "payment_intent"))
        results = []
        for refund in _get(_get(charge, "refunds"), "data") or []:
            result = self._map_refund(refund)
            result.provider_payment_id = result.provider_payment_id or payment_intent
            results.append(result)
        return results

    def _map_account_status(self, account) -> AccountStatusResult:
        requirements = _get(account, "requirements")
        capabilities = _get(account, "capabilities")
        return AccountStatusResult(
            provider_account_id=_get(account, "id"),
            charges_enabled=bool(_get(account, "charges_enabled", False)),
            payouts_enabled=bool(_get(account, "payouts_enabled", False)),
            details_submitted=bool(_get(account, "details_submitted", False)),
            currently_due=list(_get(requirements, "currently_due", [])),
            eventually_due=list(_get(requirements, "eventually_due", [])),
            past_due=list(_get(requirements, "past_due", [])),
            disabled_reason=_get(requirements, "disabled_reason"),
            capabilities={
                "card_payments": _get(capabilities, "card_payments", "inactive"),
                "transfers": _get(capabilities, "transfers", "inactive"),
                "us_bank_account_ach_payments": _get(capabilities, "us_bank_account_ach_payments", "inactive"),
            },
        )

    def _map_connected_account(self, account) -> ConnectedAccountResult:
        status = self._map_account_status(account)
        return ConnectedAccountResult(
            **vars(status),
            email=_get(account, "email", ""),
            business_type=_get(account, "business_type"),
            created_at=_ts(_get(account, "created")),
        )

    def _map_payout(self, payout) -> PayoutResult:
        status = _PAYOUT_STATUS.get(_get(payout, "status"), "pending")
        arrival = _ts(_get(payout, "arrival_date"))
        return PayoutResult(
            provider_payout_id=_get(payout, "id"),
            amount=to_major_units(_get(payout, "amount", 0)),
            currency=_get(payout, "currency", "usd"),
            status=status,
            expected_arrival_date=arrival,
            arrived_at=arrival if status == "paid" else None,
            failure_code=_get(payout, "failure_code"),
            failure_message=_get(payout, "failure_message"),
        )

    def _map_dispute(self, dispute) -> DisputeResult:
        return DisputeResult(
            provider_dispute_id=_get(dispute, "id"),
            provider_payment_id=_id_of(_get(dispute, "payment_intent")),
            amount=to_major_units(_get(dispute, "amount", 0)),
            currency=_get(dispute, "currency", "usd"),
            status=_DISPUTE_STATUS.get(_get(dispute, "status"), "needs_response"),
            reason=_get(dispute, "reason"),
            evidence_due_by=_ts(_get(_get(dispute, "evidence_details"), "due_by")),
        )

    def _map_setup_intent(self, intent) -> SetupIntentResult:
        return SetupIntentResult(
            setup_intent_id=_get(intent, "id"),
            status=_get(intent, "status", ""),
            provider_customer_id=_id_of(_get(intent, "customer")),
            provider_payment_method_id=_id_of(_get(intent, "payment_method")),
            failure_message=_get(_get(intent, "last_setup_error"), "message"),
        )

    # Stripe event type -> (normalized type, mapper)
    _EVENT_MAPPERS = {
        "payment_intent.succeeded": (base.EVENT_PAYMENT_SUCCEEDED, _map_payment_intent),
        "payment_intent.processing": (base.EVENT_PAYMENT_PROCESSING, _map_payment_intent),
        "payment_intent.payment_failed": (base.EVENT_PAYMENT_FAILED, _map_failed_payment_intent),
        "payment_intent.canceled": (base.EVENT_PAYMENT_CANCELED, _map_payment_intent),
        "refund.created": (base.EVENT_REFUND_UPDATED, _map_refund),
        "refund.updated": (base.EVENT_REFUND_UPDATED, _map_refund),
        "refund.failed": (base.EVENT_REFUND_UPDATED, _map_refund),
        "charge.refund.updated": (base.EVENT_REFUND_UPDATED, _map_refund),
        "charge.refunded": (base.EVENT_CHARGE_REFUNDED, _map_charge_refunds),
        "charge.dispute.created": (base.EVENT_DISPUTE_CREATED, _map_dispute),
        "charge.dispute.updated": (base.EVENT_DISPUTE_UPDATED, _map_dispute),
        "charge.dispute.closed": (base.EVENT_DISPUTE_CLOSED, _map_dispute),
        "payout.created": (base.EVENT_PAYOUT_CREATED, _map_payout),
        "payout.updated": (base.EVENT_PAYOUT_UPDATED, _map_payout),
        "payout.paid": (base.EVENT_PAYOUT_PAID, _map_payout),
        "payout.failed": (base.EVENT_PAYOUT_FAILED, _map_payout),
        "payout.canceled": (base.EVENT_PAYOUT_CANCELED, _map_payout),
        "account.updated": (base.EVENT_ACCOUNT_UPDATED, _map_account_status),
        "account.application.deauthorized": (base.EVENT_ACCOUNT_DEAUTHORIZED, None),
        "setup_intent.succeeded": (base.EVENT_SETUP_SUCCEEDED, _map_setup_intent),
        "setup_intent.setup_failed": (base.EVENT_SETUP_FAILED, _map_setup_intent),
    }
