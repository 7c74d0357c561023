"""
Stripe webhook endpoint.

Status codes:
    400  signature rejected; nothing was processed.
    503  transient store failure; Stripe retries, handlers are idempotent.
    200  everything else. Applied, ignored and unresolvable events report
         ``success: true`` with their outcome; malformed ones report
         ``success: false`` and are not retried.
"""

import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from keyledger.core.errors import AuthenticationFailure, MalformedEvent, StoreFailure
from keyledger.services.event_router import EventRouter
from keyledger.services.signature_verifier import verify_and_parse

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache(maxsize=1)
def get_event_router() -> EventRouter:
    return EventRouter()


@router.post("/stripe", summary="Stripe webhook")
async def stripe_webhook(request: Request, event_router: EventRouter = Depends(get_event_router)):
    # Raw bytes: the signature covers the body exactly as sent.
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = verify_and_parse(payload, signature)
    except AuthenticationFailure as exc:
        logger.warning("webhook_signature_rejected", extra={"error.message": exc.detail})
        return JSONResponse(status_code=400, content={"success": False, "error": "invalid_signature"})

    event_id = event.get("id")
    event_type = event.get("type")

    try:
        outcome = await event_router.route(event)
    except MalformedEvent as exc:
        logger.warning(
            "webhook_event_malformed",
            extra={"event_id": event_id, "event_type": event_type, "error.message": exc.detail},
        )
        return {
            "success": False,
            "event_id": event_id,
            "event_type": event_type,
            "outcome": "rejected",
            "reason": "malformed_event",
        }
    except StoreFailure as exc:
        logger.error(
            "webhook_store_failure",
            extra={"event_id": event_id, "event_type": event_type, "error.message": exc.detail},
        )
        return JSONResponse(
            status_code=503,
            content={"success": False, "retryable": True, "event_id": event_id, "event_type": event_type},
        )

    return {
        "success": True,
        "event_id": event_id,
        "event_type": event_type,
        "outcome": outcome.status,
        "reason": outcome.reason,
    }
