"""
Service-to-service authentication for internal endpoints (refunds, manual
job runs). Callers send the shared key in ``X-Internal-API-Key``.
"""

import hmac
import logging
from typing import Optional

from fastapi import Header

from keyledger.config import settings
from keyledger.core.errors import KeyLedgerError

logger = logging.getLogger(__name__)


async def require_internal_key(x_internal_api_key: Optional[str] = Header(default=None)) -> None:
    expected = settings.internal_api_key
    if not expected:
        logger.warning("internal_api_key_unset")
        raise KeyLedgerError("KL-SEC-002", detail="KEYLEDGER_INTERNAL_API_KEY is not configured")
    if not x_internal_api_key or not hmac.compare_digest(x_internal_api_key, expected):
        raise KeyLedgerError("KL-SEC-002", detail="missing or invalid internal API key")
