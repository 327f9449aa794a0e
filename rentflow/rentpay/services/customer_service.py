# rentpay/services/customer_service.py
"""
Tenant payer identities and their payment methods.

Provides:
- Customer creation on first payment-method setup, profile updates, archiving
- Setup sessions (card + bank) and bank-link sessions
- Attach / list / set default / remove payment methods
- Flagging methods that need replacement (used by AutoPay)

Invariant: at most one active default method per customer. The processor is
updated first; the local flip of the default flag happens in one transaction.
"""

from datetime import datetime
from typing import List, Optional, Sequence

from flask import current_app

from rentpay import db
from rentpay.models_autopay import AutoPaySchedule
from rentpay.models_billing import Customer, PaymentMethod
from rentpay.services import end_transaction
from rentpay.services.providers.base import (
    BankLinkSessionResult,
    CustomerInput,
    PaymentMethodResult,
    PaymentProvider,
    SetupIntentResult,
    SetupSessionResult,
)


class CustomerService:
    def __init__(self, provider: PaymentProvider):
        self.provider = provider

    # ===== Customers =====

    def get_customer(self, customer_id: int) -> Customer:
        customer = db.session.get(Customer, customer_id)
        if not customer:
            raise LookupError(f"Customer {customer_id} not found")
        return customer

    def get_by_tenant(self, tenant_ref: str) -> Optional[Customer]:
        return Customer.query.filter_by(tenant_ref=tenant_ref).first()

    def get_or_create_customer(
        self, tenant_ref: str, email: str, name: str, phone: Optional[str] = None
    ) -> Customer:
        """
        Get the tenant's customer record or create it at the processor.

        An archived customer is restored rather than re-created so payment
        history keeps pointing at the same row.
        """
        existing = self.get_by_tenant(tenant_ref)
        if existing:
            if existing.is_archived:
                existing.archived_at = None
                db.session.commit()
                current_app.logger.info(f"Restored archived customer {existing.id} for tenant {tenant_ref}")
            return existing

        end_transaction()
        result = self.provider.create_customer(
            CustomerInput(email=email, name=name, phone=phone, metadata={"tenant_ref": tenant_ref})
        )

        customer = Customer(
            tenant_ref=tenant_ref,
            provider_customer_id=result.provider_customer_id,
            email=email,
            name=name,
            phone=phone,
        )
        db.session.add(customer)
        db.session.commit()

        current_app.logger.info(f"Created customer {result.provider_customer_id} for tenant {tenant_ref}")
        return customer

    def update_customer(
        self,
        customer_id: int,
        email: Optional[str] = None,
        name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Customer:
        customer = self.get_customer(customer_id)
        provider_customer_id = customer.provider_customer_id
        end_transaction()

        self.provider.update_customer(provider_customer_id, email=email, name=name, phone=phone)

        customer = self.get_customer(customer_id)
        if email is not None:
            customer.email = email
        if name is not None:
            customer.name = name
        if phone is not None:
            customer.phone = phone
        db.session.commit()
        return customer

    def archive_customer(self, customer_id: int) -> Customer:
        customer = self.get_customer(customer_id)
        enrolled = AutoPaySchedule.query.filter_by(customer_id=customer.id, enabled=True).count()
        if enrolled:
            raise ValueError("Disable AutoPay before archiving this customer")
        customer.archived_at = datetime.utcnow()
        db.session.commit()
        current_app.logger.info(f"Archived customer {customer.id}")
        return customer

    # ===== Sessions =====

    def create_setup_session(
        self, customer_id: int, payment_method_types: Sequence[str] = ("us_bank_account", "card")
    ) -> SetupSessionResult:
        customer = self._active_customer(customer_id)
        provider_customer_id = customer.provider_customer_id
        end_transaction()
        return self.provider.create_setup_session(
            provider_customer_id, list(payment_method_types), metadata={"customer_id": str(customer_id)}
        )

    def create_bank_link_session(self, customer_id: int) -> BankLinkSessionResult:
        customer = self._active_customer(customer_id)
        provider_customer_id = customer.provider_customer_id
        end_transaction()
        return self.provider.create_bank_link_session(
            provider_customer_id, metadata={"customer_id": str(customer_id)}
        )

    # ===== Payment methods =====

    def list_payment_methods(self, customer_id: int, include_inactive: bool = False) -> List[PaymentMethod]:
        query = PaymentMethod.query.filter_by(customer_id=customer_id)
        if not include_inactive:
            query = query.filter_by(is_active=True)
        return query.order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc()).all()

    def get_payment_method(self, customer_id: int, payment_method_id: int) -> PaymentMethod:
        pm = db.session.get(PaymentMethod, payment_method_id)
        if not pm or pm.customer_id != customer_id:
            raise LookupError(f"Payment method {payment_method_id} not found")
        return pm

    def save_payment_method(
        self,
        customer_id: int,
        provider_payment_method_id: str,
        set_as_default: bool = False,
        nickname: Optional[str] = None,
    ) -> PaymentMethod:
        """
        Attach a payment method collected by a setup session.

        The customer's first active method always becomes the default.
        """
        customer = self._active_customer(customer_id)
        existing = PaymentMethod.query.filter_by(provider_payment_method_id=provider_payment_method_id).first()
        if existing and existing.customer_id != customer.id:
            raise ValueError("Payment method belongs to another customer")
        if existing and existing.is_active:
            return existing

        has_active = PaymentMethod.query.filter_by(customer_id=customer.id, is_active=True).count() > 0
        make_default = set_as_default or not has_active
        provider_customer_id = customer.provider_customer_id
        end_transaction()

        result = self.provider.attach_payment_method(
            provider_customer_id, provider_payment_method_id, set_as_default=make_default
        )

        pm = PaymentMethod.query.filter_by(provider_payment_method_id=provider_payment_method_id).first()
        if pm is None:
            pm = PaymentMethod(customer_id=customer_id, provider_payment_method_id=provider_payment_method_id)
            db.session.add(pm)
        self._apply_method_details(pm, result)
        pm.is_active = True
        pm.needs_replacement = False
        pm.nickname = nickname or pm.nickname

        if make_default:
            self._flip_default(customer_id, pm)
        db.session.commit()

        current_app.logger.info(
            f"Saved {pm.type} payment method {provider_payment_method_id} for customer {customer_id} "
            f"(default={pm.is_default})"
        )
        return pm

    def set_default_payment_method(self, customer_id: int, payment_method_id: int) -> PaymentMethod:
        customer = self._active_customer(customer_id)
        pm = self.get_payment_method(customer_id, payment_method_id)
        if not pm.is_active:
            raise ValueError("Cannot make a removed payment method the default")
        if pm.is_default:
            return pm

        provider_customer_id = customer.provider_customer_id
        provider_pm_id = pm.provider_payment_method_id
        end_transaction()

        self.provider.set_default_payment_method(provider_customer_id, provider_pm_id)

        pm = self.get_payment_method(customer_id, payment_method_id)
        self._flip_default(customer_id, pm)
        db.session.commit()

        current_app.logger.info(f"Payment method {payment_method_id} is now default for customer {customer_id}")
        return pm

    def update_payment_method_nickname(self, customer_id: int, payment_method_id: int, nickname: str) -> PaymentMethod:
        pm = self.get_payment_method(customer_id, payment_method_id)
        if not pm.is_active:
            raise LookupError(f"Payment method {payment_method_id} not found")
        nickname = (nickname or "").strip()
        if len(nickname) > 64:
            raise ValueError("nickname must be at most 64 characters")
        pm.nickname = nickname or None
        db.session.commit()
        return pm

    def remove_payment_method(self, customer_id: int, payment_method_id: int) -> None:
        """
        Detach a payment method at the processor and soft-delete it locally.

        Refused while an enabled AutoPay schedule charges it. If it was the
        default, the most recently added remaining method is promoted.
        """
        customer = self._active_customer(customer_id)
        pm = self.get_payment_method(customer_id, payment_method_id)
        if not pm.is_active:
            return

        in_use = AutoPaySchedule.query.filter_by(payment_method_id=pm.id, enabled=True).count()
        if in_use:
            raise ValueError("Payment method is used by AutoPay. Choose another method for AutoPay first")

        was_default = pm.is_default
        provider_customer_id = customer.provider_customer_id
        provider_pm_id = pm.provider_payment_method_id
        replacement = (
            PaymentMethod.query.filter(
                PaymentMethod.customer_id == customer_id,
                PaymentMethod.is_active.is_(True),
                PaymentMethod.id != pm.id,
            )
            .order_by(PaymentMethod.created_at.desc(), PaymentMethod.id.desc())
            .first()
        )
        replacement_id = replacement.id if replacement else None
        replacement_provider_id = replacement.provider_payment_method_id if replacement else None
        end_transaction()

        self.provider.detach_payment_method(provider_pm_id)
        if was_default and replacement_provider_id:
            self.provider.set_default_payment_method(provider_customer_id, replacement_provider_id)

        pm = self.get_payment_method(customer_id, payment_method_id)
        pm.is_active = False
        pm.is_default = False
        customer = self.get_customer(customer_id)
        if was_default:
            customer.default_payment_method_id = None
        db.session.flush()
        if was_default and replacement_id:
            self._flip_default(customer_id, db.session.get(PaymentMethod, replacement_id))
        db.session.commit()

        current_app.logger.info(f"Removed payment method {payment_method_id} for customer {customer_id}")

    def mark_needs_replacement(self, payment_method: PaymentMethod, reason: Optional[str] = None) -> None:
        """Flag a method the processor rejected as unusable. Caller commits."""
        payment_method.needs_replacement = True
        current_app.logger.warning(
            f"Payment method {payment_method.id} flagged for replacement ({reason or 'invalid'})"
        )

    def apply_setup_result(self, result: SetupIntentResult, succeeded: bool) -> Optional[PaymentMethod]:
        """Webhook writer for setup intents. Caller commits."""
        if not result.provider_payment_method_id:
            return None
        pm = PaymentMethod.query.filter_by(provider_payment_method_id=result.provider_payment_method_id).first()
        if pm is None:
            current_app.logger.info(
                f"Setup intent {result.setup_intent_id} for unsaved method {result.provider_payment_method_id}"
            )
            return None
        pm.verification_status = "verified" if succeeded else "failed"
        if succeeded:
            pm.needs_replacement = False
        return pm

    # ===== helpers =====

    def _active_customer(self, customer_id: int) -> Customer:
        customer = self.get_customer(customer_id)
        if customer.is_archived:
            raise ValueError(f"Customer {customer_id} is archived")
        return customer

    def _flip_default(self, customer_id: int, pm: PaymentMethod) -> None:
        # Clear first so the one-default index never sees two rows
        db.session.flush()
        PaymentMethod.query.filter(
            PaymentMethod.customer_id == customer_id,
            PaymentMethod.id != pm.id,
            PaymentMethod.is_default.is_(True),
        ).update({"is_default": False}, synchronize_session="fetch")
        db.session.flush()
        pm.is_default = True
        customer = db.session.get(Customer, customer_id)
        customer.default_payment_method_id = pm.provider_payment_method_id

    @staticmethod
    def _apply_method_details(pm: PaymentMethod, result: PaymentMethodResult) -> None:
        pm.type = result.type
        pm.bank_name = result.bank_name
        pm.bank_account_last4 = result.bank_account_last4
        pm.bank_account_type = result.bank_account_type
        pm.card_brand = result.card_brand
        pm.card_last4 = result.card_last4
        pm.card_exp_month = result.card_exp_month
        pm.card_exp_year = result.card_exp_year
        pm.card_funding = result.card_funding
        pm.wallet_type = result.wallet_type
        pm.verification_status = result.verification_status or pm.verification_status or "pending"
