"""
Error code system.

KeyLedgerError is the base exception for all structured errors.
Raise it (or one of the taxonomy subclasses below) with an error code from
the registry, and the error middleware will produce a structured JSON
response.

Usage:
    from keyledger.core.errors import ProviderCallFailure
    raise ProviderCallFailure(detail="refund rejected: charge_already_refunded")
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^KL-[A-Z]{2,6}-\d{3}$")


class KeyLedgerError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "KL-PAY-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    default_code: str | None = None

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or self.default_code
        if code is None or not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class AuthenticationFailure(KeyLedgerError):
    """Webhook signature missing or invalid. The event must not be processed."""

    default_code = "KL-SEC-001"


class UnresolvedIdentity(KeyLedgerError):
    """No subscriber reference in the event, even after the checkout-session fallback."""

    default_code = "KL-RCN-001"


class MalformedEvent(KeyLedgerError):
    """Provider event does not match the payload shape of its type."""

    default_code = "KL-RCN-002"


class ProviderCallFailure(KeyLedgerError):
    """Outbound call to the payment provider failed or timed out."""

    default_code = "KL-PAY-001"


class StoreFailure(KeyLedgerError):
    """Persistence layer unavailable; fails the current unit of work."""

    default_code = "KL-DB-001"


class UnknownJob(KeyLedgerError):
    default_code = "KL-JOB-001"
