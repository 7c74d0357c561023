"""
Webhook signature verification.

Checks the ``Stripe-Signature`` header against the raw request body and
only then parses it. The HMAC covers the exact bytes Stripe sent: the body
must reach this module untouched. Parsing it and re-serializing it first
(``json.dumps(await request.json())``) changes whitespace and key order and
makes every valid signature fail.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe

from keyledger.config import settings
from keyledger.core.errors import AuthenticationFailure

logger = logging.getLogger(__name__)


def verify_and_parse(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str] = None,
    tolerance: Optional[int] = None,
) -> Dict[str, Any]:
    """Return the event dict for a correctly signed payload.

    Raises AuthenticationFailure on a missing header, missing secret, bad
    or stale signature, or a body that is not a JSON object.
    """
    secret = secret if secret is not None else settings.stripe_webhook_secret
    tolerance = tolerance if tolerance is not None else settings.stripe_webhook_tolerance_s

    if not secret:
        raise AuthenticationFailure(detail="webhook secret not configured")
    if not signature_header:
        raise AuthenticationFailure(detail="missing Stripe-Signature header")

    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise AuthenticationFailure(detail="payload is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(text, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise AuthenticationFailure(detail=str(exc)) from exc

    try:
        event = json.loads(text)
    except ValueError as exc:
        raise AuthenticationFailure(detail="payload is not valid JSON") from exc
    if not isinstance(event, dict):
        raise AuthenticationFailure(detail="payload is not a JSON object")
    return event
