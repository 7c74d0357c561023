"""
Event Router
============

Parses a verified Stripe event into its typed payload and dispatches it to
the matching reconciliation handler.

Unknown event types are acknowledged as ``ignored``. An event whose payload
does not fit its type raises MalformedEvent. A handler that cannot resolve
the subscriber yields a ``skipped`` outcome; there is nothing to reconcile
against and the provider must not retry it.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import TypeAdapter, ValidationError

from keyledger.core.errors import MalformedEvent, UnresolvedIdentity
from keyledger.core.structured_logging import event_id_var
from keyledger.models.events import HANDLED_EVENT_TYPES, ProviderEvent, UnhandledEvent
from keyledger.models.outcomes import IGNORED, SKIPPED, HandlerOutcome
from keyledger.services.reconciliation_handlers import ReconciliationHandlers

logger = logging.getLogger(__name__)

_event_adapter: TypeAdapter = TypeAdapter(ProviderEvent)

Handler = Callable[[Any], Awaitable[HandlerOutcome]]


def parse_event(raw: Dict[str, Any]) -> Union[ProviderEvent, UnhandledEvent]:
    """Validate a raw event dict into its typed form."""
    event_type = raw.get("type") if isinstance(raw, dict) else None
    event_id = raw.get("id") if isinstance(raw, dict) else None
    if not isinstance(event_type, str) or not isinstance(event_id, str):
        raise MalformedEvent(detail="event is missing id or type")

    if event_type not in HANDLED_EVENT_TYPES:
        return UnhandledEvent(id=event_id, type=event_type)

    try:
        return _event_adapter.validate_python(raw)
    except ValidationError as exc:
        raise MalformedEvent(
            detail=f"{event_type} payload rejected: {exc.error_count()} validation error(s)",
            context={"event_id": event_id, "event_type": event_type, "errors": exc.errors(include_url=False)[:5]},
        ) from exc


class EventRouter:
    """Maps event types to ReconciliationHandlers coroutines."""

    def __init__(self, handlers: Optional[ReconciliationHandlers] = None) -> None:
        self.handlers = handlers or ReconciliationHandlers()
        self._routes: Dict[str, Handler] = {
            "checkout.session.completed": self.handlers.on_checkout_completed,
            "customer.subscription.created": self.handlers.on_subscription_created,
            "customer.subscription.updated": self.handlers.on_subscription_updated,
            "customer.subscription.deleted": self.handlers.on_subscription_deleted,
            "invoice.paid": self.handlers.on_invoice_paid,
            "invoice.payment_succeeded": self.handlers.on_invoice_paid,
            "invoice.payment_failed": self.handlers.on_invoice_payment_failed,
            "payment_intent.succeeded": self.handlers.on_payment_intent_succeeded,
        }

    async def route(self, raw: Dict[str, Any]) -> HandlerOutcome:
        event = parse_event(raw)
        token = event_id_var.set(event.id)
        try:
            if isinstance(event, UnhandledEvent):
                logger.info("webhook_event_ignored", extra={"event_type": event.type})
                return HandlerOutcome(IGNORED, "unhandled_event_type")

            handler = self._routes[event.type]
            try:
                outcome = await handler(event)
            except UnresolvedIdentity as exc:
                logger.warning(
                    "subscriber_unresolved",
                    extra={"event_type": event.type, "error.message": exc.detail, **exc.context},
                )
                return HandlerOutcome(SKIPPED, "unresolved_identity")

            logger.info(
                "webhook_event_reconciled",
                extra={
                    "event_type": event.type,
                    "outcome": outcome.status,
                    "reason": outcome.reason,
                    "subscriber_id": outcome.subscriber_id,
                    "payment_record_id": outcome.payment_record_id,
                },
            )
            return outcome
        finally:
            event_id_var.reset(token)
