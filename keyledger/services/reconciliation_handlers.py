"""
Reconciliation Handlers
=======================

PURPOSE:
    Turn verified, typed Stripe events into PaymentLedger and
    SubscriberState writes. One coroutine per event family.

RULES:
    - Payment records go through PaymentLedger.upsert, keyed on the
      provider reference, so a redelivered event updates the row it
      created instead of adding another.
    - The subscriber id comes from event metadata (``userId``). Payment
      intents without it fall back to the checkout session that created
      them; invoices fall back to their subscription. If nothing resolves,
      UnresolvedIdentity is raised and the router records a no-op.
    - Premium writes are last-write-wins (see SubscriberState).

Store and Stripe calls are synchronous; they run in worker threads so
webhook handling never blocks the event loop. A store call that times out
surfaces as StoreFailure, which the webhook answers with a retryable 503.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from keyledger.config import settings
from keyledger.core.clock import from_epoch, utcnow
from keyledger.core.database import run_store
from keyledger.core.errors import ProviderCallFailure, UnresolvedIdentity
from keyledger.models.events import (
    CheckoutSessionCompleted,
    Invoice,
    InvoicePaid,
    InvoicePaymentFailed,
    PaymentIntentSucceeded,
    Subscription,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    subscriber_from_metadata,
)
from keyledger.models.outcomes import APPLIED, HandlerOutcome
from keyledger.models.payment import PaymentRecord
from keyledger.services.payment_ledger import PaymentLedger
from keyledger.services.stripe_gateway import StripeGateway
from keyledger.services.subscriber_state import SubscriberState

logger = logging.getLogger(__name__)

KIND_INITIAL = "initial charge"
KIND_RENEWAL = "renewal"
KIND_PAYMENT = "payment"


class ReconciliationHandlers:
    """Event-family handlers sharing one ledger, subscriber store and gateway."""

    def __init__(
        self,
        ledger: Optional[PaymentLedger] = None,
        subscribers: Optional[SubscriberState] = None,
        gateway: Optional[StripeGateway] = None,
        validity_days: Optional[int] = None,
        default_currency: Optional[str] = None,
    ) -> None:
        self.ledger = ledger or PaymentLedger()
        self.subscribers = subscribers or SubscriberState()
        self.gateway = gateway or StripeGateway()
        self.validity_days = validity_days if validity_days is not None else settings.default_premium_validity_days
        self.default_currency = (default_currency or settings.default_currency).upper()

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def on_checkout_completed(self, event: CheckoutSessionCompleted) -> HandlerOutcome:
        session = event.data.object
        subscriber_id = subscriber_from_metadata(session.metadata)
        if subscriber_id is None:
            raise UnresolvedIdentity(detail="checkout session has no userId metadata", context={"session": session.id})

        record = PaymentRecord(
            subscriber_id=subscriber_id,
            payment_intent_ref=session.payment_intent,
            checkout_session_ref=session.id,
            subscription_ref=session.subscription,
            customer_ref=session.customer,
            amount=session.amount_total or 0,
            currency=self._currency(session.currency),
            status="succeeded",
            kind=KIND_INITIAL,
            metadata_json=_compact(
                {
                    "session_id": session.id,
                    "mode": session.mode,
                    "payment_status": session.payment_status,
                    "success_url": session.success_url,
                    "cancel_url": session.cancel_url,
                    "event_id": event.id,
                }
            ),
        )
        stored = await run_store(self.ledger.upsert, record)
        return await self._grant(subscriber_id, self._default_until(event), stored.id, customer_ref=session.customer)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def on_subscription_created(self, event: SubscriptionCreated) -> HandlerOutcome:
        sub = event.data.object
        subscriber_id = await self._subscriber_for_subscription(sub)

        period_end = sub.period_end()
        until = from_epoch(period_end) if period_end and period_end > 0 else self._default_until(event)

        record_id = None
        if sub.latest_invoice:
            amount, currency = sub.amount_and_currency()
            record = PaymentRecord(
                subscriber_id=subscriber_id,
                invoice_ref=sub.latest_invoice,
                subscription_ref=sub.id,
                customer_ref=sub.customer,
                amount=amount,
                currency=self._currency(currency),
                status="succeeded" if sub.status == "active" else "pending",
                kind=KIND_INITIAL,
                metadata_json=_compact(
                    {
                        "subscription_id": sub.id,
                        "subscription_status": sub.status,
                        "period_start": sub.current_period_start,
                        "period_end": period_end,
                        "event_id": event.id,
                    }
                ),
            )
            stored = await run_store(self.ledger.upsert, record)
            record_id = stored.id
        else:
            logger.info("subscription_without_invoice", extra={"subscription_id": sub.id})

        return await self._grant(subscriber_id, until, record_id, customer_ref=sub.customer)

    async def on_subscription_updated(self, event: SubscriptionUpdated) -> HandlerOutcome:
        sub = event.data.object
        subscriber_id = await self._subscriber_for_subscription(sub)

        active = sub.status == "active"
        period_end = sub.period_end()
        until = from_epoch(period_end) if active and period_end else None
        row = await run_store(self.subscribers.set_premium, subscriber_id, active, until, sub.customer)
        return _outcome(subscriber_id, row, reason=f"subscription_{sub.status}")

    async def on_subscription_deleted(self, event: SubscriptionDeleted) -> HandlerOutcome:
        sub = event.data.object
        subscriber_id = await self._subscriber_for_subscription(sub)
        row = await run_store(self.subscribers.set_premium, subscriber_id, False, None)
        return _outcome(subscriber_id, row, reason="subscription_deleted")

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def on_invoice_paid(self, event: InvoicePaid) -> HandlerOutcome:
        invoice = event.data.object
        line_start, line_end = invoice.line_period()
        subscriber_id, subscription = await self._subscriber_for_invoice(
            invoice, need_period=not (line_end or invoice.period_end)
        )

        period_start = line_start or invoice.period_start
        period_end = line_end or invoice.period_end
        if not period_end and subscription is not None:
            period_end = subscription.period_end()
        until = from_epoch(period_end) if period_end else self._default_until(event)

        record = PaymentRecord(
            subscriber_id=subscriber_id,
            payment_intent_ref=invoice.payment_intent,
            invoice_ref=invoice.id,
            subscription_ref=invoice.subscription_ref(),
            customer_ref=invoice.customer,
            amount=invoice.amount_paid or 0,
            currency=self._currency(invoice.currency),
            status="succeeded",
            kind=KIND_INITIAL if invoice.billing_reason == "subscription_create" else KIND_RENEWAL,
            metadata_json=_compact(
                {
                    "invoice_id": invoice.id,
                    "subscription_id": invoice.subscription_ref(),
                    "billing_reason": invoice.billing_reason,
                    "period_start": period_start,
                    "period_end": period_end,
                    "is_renewal": invoice.billing_reason != "subscription_create",
                    "event_id": event.id,
                }
            ),
        )
        stored = await run_store(self.ledger.upsert, record)
        return await self._grant(subscriber_id, until, stored.id, customer_ref=invoice.customer)

    async def on_invoice_payment_failed(self, event: InvoicePaymentFailed) -> HandlerOutcome:
        invoice = event.data.object
        subscriber_id, _ = await self._subscriber_for_invoice(invoice)
        row = await run_store(self.subscribers.set_premium, subscriber_id, False)
        logger.info(
            "invoice_payment_failed",
            extra={"subscriber_id": subscriber_id, "invoice_id": invoice.id},
        )
        return _outcome(subscriber_id, row, reason="invoice_payment_failed")

    # ------------------------------------------------------------------
    # Payment intents
    # ------------------------------------------------------------------

    async def on_payment_intent_succeeded(self, event: PaymentIntentSucceeded) -> HandlerOutcome:
        intent = event.data.object
        subscriber_id = subscriber_from_metadata(intent.metadata)
        if subscriber_id is None:
            subscriber_id = await self._subscriber_from_checkout(intent.id)

        record = PaymentRecord(
            subscriber_id=subscriber_id,
            payment_intent_ref=intent.id,
            customer_ref=intent.customer,
            amount=intent.amount_received or intent.amount or 0,
            currency=self._currency(intent.currency),
            status="succeeded",
            kind=KIND_PAYMENT,
            metadata_json=_compact({"payment_intent_id": intent.id, "invoice_id": intent.invoice, "event_id": event.id}),
        )
        # Checkout or invoice events may already have recorded this charge in more detail.
        stored = await run_store(self.ledger.upsert, record, False)

        current = await run_store(self.subscribers.get, subscriber_id)
        if current is None:
            logger.warning("subscriber_not_registered", extra={"subscriber_id": subscriber_id})
            return HandlerOutcome(APPLIED, "subscriber_not_registered", subscriber_id, stored.id)
        if current.premium:
            return HandlerOutcome(APPLIED, "already_premium", subscriber_id, stored.id)
        return await self._grant(subscriber_id, self._default_until(event), stored.id, customer_ref=intent.customer)

    # ------------------------------------------------------------------
    # Identity resolution
    # ------------------------------------------------------------------

    async def _subscriber_from_checkout(self, payment_intent: str) -> str:
        try:
            sessions = await self.gateway.list_checkout_sessions(payment_intent)
        except ProviderCallFailure as exc:
            logger.warning(
                "checkout_lookup_failed",
                extra={"payment_intent": payment_intent, "error": exc.detail},
            )
            raise UnresolvedIdentity(
                detail="checkout session lookup failed", context={"payment_intent": payment_intent}
            ) from exc

        for session in sessions:
            subscriber_id = subscriber_from_metadata(session.get("metadata") or {})
            if subscriber_id:
                logger.info(
                    "subscriber_resolved_via_checkout",
                    extra={"payment_intent": payment_intent, "session_id": session.get("id"), "subscriber_id": subscriber_id},
                )
                return subscriber_id
        raise UnresolvedIdentity(detail="no checkout session carries userId", context={"payment_intent": payment_intent})

    async def _subscriber_for_subscription(self, sub: Subscription) -> str:
        subscriber_id = subscriber_from_metadata(sub.metadata)
        if subscriber_id is None:
            raise UnresolvedIdentity(detail="subscription has no userId metadata", context={"subscription": sub.id})
        return subscriber_id

    async def _subscriber_for_invoice(
        self, invoice: Invoice, need_period: bool = False
    ) -> tuple[str, Optional[Subscription]]:
        """Resolve the invoice's subscriber, fetching its subscription only when needed.

        Returns (subscriber_id, subscription or None if it was not fetched).
        """
        subscriber_id = subscriber_from_metadata(invoice.subscription_metadata()) or subscriber_from_metadata(
            invoice.metadata
        )
        subscription_ref = invoice.subscription_ref()
        if subscriber_id and not need_period:
            return subscriber_id, None
        if not subscription_ref:
            if subscriber_id:
                return subscriber_id, None
            raise UnresolvedIdentity(detail="invoice has no subscription", context={"invoice": invoice.id})

        try:
            raw = await self.gateway.retrieve_subscription(subscription_ref)
        except ProviderCallFailure as exc:
            if subscriber_id:
                return subscriber_id, None
            logger.warning(
                "subscription_lookup_failed",
                extra={"subscription_id": subscription_ref, "error": exc.detail},
            )
            raise UnresolvedIdentity(
                detail="subscription lookup failed", context={"invoice": invoice.id}
            ) from exc

        subscription = Subscription.model_validate(raw)
        subscriber_id = subscriber_id or subscriber_from_metadata(subscription.metadata)
        if subscriber_id is None:
            raise UnresolvedIdentity(
                detail="subscription has no userId metadata", context={"invoice": invoice.id, "subscription": subscription_ref}
            )
        return subscriber_id, subscription

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _grant(
        self,
        subscriber_id: str,
        until: datetime,
        payment_record_id: Optional[str],
        customer_ref: Optional[str] = None,
    ) -> HandlerOutcome:
        row = await run_store(self.subscribers.set_premium, subscriber_id, True, until, customer_ref)
        return _outcome(subscriber_id, row, payment_record_id=payment_record_id)

    def _default_until(self, event) -> datetime:
        """Default premium window, counted from when Stripe created the event.

        Anchoring on the event rather than the wall clock keeps redelivery
        of the same event from moving the expiry.
        """
        start = from_epoch(event.created) if event.created else utcnow()
        return start + timedelta(days=self.validity_days)

    def _currency(self, currency: Optional[str]) -> str:
        return currency.upper() if currency else self.default_currency


def _outcome(subscriber_id: str, row, reason: Optional[str] = None, payment_record_id: Optional[str] = None) -> HandlerOutcome:
    if row is None:
        reason = "subscriber_not_registered"
    return HandlerOutcome(APPLIED, reason, subscriber_id, payment_record_id)


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}
