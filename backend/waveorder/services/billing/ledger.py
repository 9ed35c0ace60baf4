"""Invoice ledger: Stripe invoices to StripeTransaction rows.

WHAT:
    Records one billing-history row per invoice that belongs to WaveOrder,
    deduplicated by invoice id.

WHY:
    The Stripe account is shared with sibling products, so invoices are only
    recorded when the subscription carries our metadata (source tag, or plan
    plus billing type) or a price id from our catalog.

Recording is best-effort: any failure is logged and swallowed so billing
history can never block a subscription transition or the webhook response.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ...models import PlanEnum, StripeTransaction, TransactionStatusEnum
from ...schemas import StripeInvoice, StripeSubscription, to_datetime
from .entity_resolver import find_user_by_customer
from .plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)

_PLAN_VALUES = {p.value for p in PlanEnum}


class LedgerRecorder:
    def __init__(self, catalog: PlanCatalog, gateway, product_source: str):
        self._catalog = catalog
        self._gateway = gateway
        self.product_source = product_source

    def belongs_to_product(self, metadata: Dict[str, Any], price_id: Optional[str]) -> bool:
        """Whether an invoice's subscription is one of ours."""
        source = metadata.get("source")
        if source:
            return source == self.product_source
        if metadata.get("plan") in _PLAN_VALUES and metadata.get("billingType"):
            return True
        return self._catalog.owns_price(price_id)

    async def record_invoice(
        self,
        db: Session,
        invoice: StripeInvoice,
        status: TransactionStatusEnum,
    ) -> Optional[StripeTransaction]:
        """Record the invoice once. Never raises.

        Returns:
            The new or already-recorded row, or None when the invoice is not
            ours or recording failed
        """
        try:
            return await self._record(db, invoice, status)
        except Exception as e:
            db.rollback()
            logger.error(f"[LEDGER] Failed to record invoice {invoice.id}: {e}", exc_info=True)
            return None

    async def _record(
        self,
        db: Session,
        invoice: StripeInvoice,
        status: TransactionStatusEnum,
    ) -> Optional[StripeTransaction]:
        existing = (
            db.query(StripeTransaction)
            .filter(StripeTransaction.stripe_id == invoice.id)
            .first()
        )
        if existing is not None:
            logger.info(f"[LEDGER] Invoice {invoice.id} already recorded, skipping")
            return existing

        metadata: Dict[str, Any] = dict(invoice.subscription_metadata)
        price_id = invoice.price_id
        if not metadata and not self._catalog.owns_price(price_id) and invoice.subscription:
            subscription = StripeSubscription.model_validate(
                await self._gateway.retrieve_subscription(invoice.subscription)
            )
            metadata = dict(subscription.metadata)
            price_id = price_id or subscription.price_id

        if not self.belongs_to_product(metadata, price_id):
            logger.info(f"[LEDGER] Invoice {invoice.id} belongs to another product, skipping")
            return None

        plan = self._catalog.plan_for_price(price_id)
        user = find_user_by_customer(db, invoice.customer)
        amount = invoice.amount_paid if status == TransactionStatusEnum.paid else invoice.amount_due

        transaction = StripeTransaction(
            stripe_id=invoice.id,
            type="invoice",
            status=status,
            amount=amount,
            currency=invoice.currency,
            stripe_customer_id=invoice.customer,
            customer_email=invoice.customer_email,
            customer_name=invoice.customer_name,
            description=invoice.description,
            plan=plan.value if plan else metadata.get("plan"),
            billing_type=self._catalog.billing_type(price_id) or metadata.get("billingType"),
            stripe_subscription_id=invoice.subscription,
            user_id=user.id if user else None,
            stripe_created_at=to_datetime(invoice.created),
        )
        db.add(transaction)
        db.commit()
        logger.info(f"[LEDGER] Recorded {status.value} invoice {invoice.id} ({amount} {invoice.currency})")
        return transaction
