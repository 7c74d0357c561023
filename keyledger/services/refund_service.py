"""
Refund Service
==============

Caller-initiated refunds. Creates the refund at Stripe, then mirrors it
into the Payment Ledger as its own row keyed by the refund id, and tags the
refunded charge with that id. Stripe failures propagate to the caller as
ProviderCallFailure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from keyledger.config import settings
from keyledger.core.database import run_store
from keyledger.models.payment import PaymentRecord
from keyledger.services.payment_ledger import PaymentLedger
from keyledger.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

KIND_REFUND = "refund"


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    payment_intent: str
    status: str
    amount: int
    currency: str
    payment_record_id: str


def refund_record_status(stripe_status: Optional[str], refunded: int, charged: Optional[int]) -> str:
    """Map a Stripe refund status onto a PaymentRecord status."""
    if stripe_status == "succeeded":
        if charged and refunded < charged:
            return "partially_refunded"
        return "refunded"
    if stripe_status in ("pending", "requires_action"):
        return "pending"
    if stripe_status in ("failed", "canceled"):
        return stripe_status
    return "pending"


class RefundService:
    def __init__(self, ledger: Optional[PaymentLedger] = None, gateway: Optional[StripeGateway] = None) -> None:
        self.ledger = ledger or PaymentLedger()
        self.gateway = gateway or StripeGateway()

    async def refund(
        self,
        payment_intent_ref: str,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """Refund ``payment_intent_ref`` fully, or ``amount`` minor units of it."""
        charge = await run_store(self.ledger.find_by_external_ref, "payment_intent", payment_intent_ref)
        if charge is None:
            logger.warning("refund_for_unrecorded_charge", extra={"payment_intent": payment_intent_ref})

        refund = await self.gateway.create_refund(payment_intent_ref, amount, idempotency_key)

        refunded = int(refund.get("amount") or amount or 0)
        currency = (refund.get("currency") or (charge.currency if charge else settings.default_currency)).upper()
        status = refund_record_status(refund.get("status"), refunded, charge.amount if charge else None)

        record = PaymentRecord(
            subscriber_id=charge.subscriber_id if charge else "",
            refund_ref=refund["id"],
            subscription_ref=charge.subscription_ref if charge else None,
            customer_ref=charge.customer_ref if charge else None,
            amount=refunded,
            currency=currency,
            status=status,
            kind=KIND_REFUND,
            metadata_json={
                "refund_id": refund["id"],
                "payment_intent": payment_intent_ref,
                "stripe_status": refund.get("status"),
                "reason": refund.get("reason"),
                "original_payment_record_id": charge.id if charge else None,
            },
        )
        stored = await run_store(self.ledger.upsert, record)

        if charge is not None:
            await run_store(self.ledger.annotate, charge.id, {"refund_id": refund["id"], "refund_status": status})

        logger.info(
            "refund_recorded",
            extra={
                "payment_intent": payment_intent_ref,
                "refund_id": refund["id"],
                "status": status,
                "amount": refunded,
            },
        )
        return RefundResult(
            refund_id=refund["id"],
            payment_intent=payment_intent_ref,
            status=status,
            amount=refunded,
            currency=currency,
            payment_record_id=stored.id,
        )
