"""
Health check endpoints.

- GET /api/health        cheap: process alive, version, uptime
- GET /api/health/deep   adds a bounded database round-trip
"""
import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy import text

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from keyledger.config import settings
from keyledger.core.async_utils import run_sync
from keyledger.core.database import get_engine
from keyledger.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s

logger = logging.getLogger(__name__)

router = APIRouter()

COMPONENT_TIMEOUT = 2.0  # seconds


@router.get("/health")
async def health_check():
    """Cheap health check, no I/O."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _ping_database() -> None:
    with get_engine().connect() as conn:
        conn.execute(text("SELECT 1"))


@router.get("/health/deep")
async def deep_health_check():
    components = {
        "stripe": {"status": "ok" if settings.stripe_configured else "unconfigured"},
        "webhook_secret": {"status": "ok" if settings.stripe_webhook_secret else "unconfigured"},
    }
    try:
        await run_sync(_ping_database, timeout=COMPONENT_TIMEOUT)
        components["database"] = {"status": "ok"}
    except (TimeoutError, asyncio.TimeoutError):
        components["database"] = {"status": "timeout"}
    except Exception as e:
        logger.warning("health_database_failed", extra={"error.message": str(e)})
        components["database"] = {"status": "error"}

    healthy = components["database"]["status"] == "ok"
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ok" if healthy else "degraded", "components": components},
    )
