"""
Stripe Gateway
==============

Outbound calls to Stripe: refunds, subscription retrieval and the
checkout-session lookup used to resolve subscribers on payment intents.

The Stripe SDK is synchronous; every call runs in a worker thread through
``run_sync`` with ``settings.provider_timeout_s`` as its bound. Results are
returned as plain dicts. Any SDK error or timeout surfaces as
ProviderCallFailure.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, Dict, List, Optional

import stripe

from keyledger.config import settings
from keyledger.core.async_utils import run_sync
from keyledger.core.errors import ProviderCallFailure

logger = logging.getLogger(__name__)

_configured = False


def _get_stripe():
    """Configure the stripe module with the secret key on first use."""
    global _configured
    if not settings.stripe_configured:
        raise ProviderCallFailure(
            "KL-PAY-002",
            detail="KEYLEDGER_STRIPE_SECRET_KEY is not set",
        )
    if not _configured:
        stripe.api_key = settings.stripe_secret_key
        _configured = True
    return stripe


def _to_plain(value: Any) -> Any:
    """Recursively turn StripeObject and ListObject results into plain dicts and lists.

    SDK objects are not dict subclasses on current stripe releases, so they
    go through ``to_dict()`` before the walk.
    """
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        value = to_dict()
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_plain(v) for v in value]
    return value


class StripeGateway:
    """Thin async facade over the Stripe SDK."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = timeout if timeout is not None else settings.provider_timeout_s

    async def create_refund(
        self,
        payment_intent_ref: str,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Refund a payment intent, fully or for ``amount`` minor units."""
        sdk = _get_stripe()
        params: Dict[str, Any] = {"payment_intent": payment_intent_ref}
        if amount is not None:
            params["amount"] = amount
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        return await self._call("create_refund", partial(sdk.Refund.create, **params), payment_intent_ref)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        sdk = _get_stripe()
        return await self._call(
            "retrieve_subscription", partial(sdk.Subscription.retrieve, subscription_id), subscription_id
        )

    async def list_checkout_sessions(self, payment_intent: str) -> List[Dict[str, Any]]:
        """Checkout sessions that produced ``payment_intent`` (normally one)."""
        sdk = _get_stripe()
        result = await self._call(
            "list_checkout_sessions",
            partial(sdk.checkout.Session.list, payment_intent=payment_intent, limit=3),
            payment_intent,
        )
        return result.get("data", [])

    async def _call(self, operation: str, fn, ref: str) -> Dict[str, Any]:
        try:
            result = await run_sync(fn, timeout=self.timeout, label=f"stripe.{operation}")
        except stripe.StripeError as exc:
            logger.error(
                "stripe_call_failed",
                extra={"operation": operation, "ref": ref, "stripe_code": getattr(exc, "code", None)},
            )
            raise ProviderCallFailure(
                detail=f"{operation} failed: {exc.user_message or exc}",
                context={"operation": operation, "ref": ref},
            ) from exc
        except TimeoutError as exc:
            logger.error("stripe_call_timeout", extra={"operation": operation, "ref": ref, "timeout_s": self.timeout})
            raise ProviderCallFailure(
                detail=f"{operation} timed out after {self.timeout}s",
                context={"operation": operation, "ref": ref},
            ) from exc
        return _to_plain(result)
