from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import asyncio

from keyledger.config import settings
from keyledger.routers import billing, health, jobs, webhooks
from keyledger.core.database import init_db, close_db
from keyledger.core.structured_logging import APP_VERSION, setup_logging
from keyledger.core.errors import KeyLedgerError
from keyledger.core.errors.registry import error_registry
from keyledger.core.errors.middleware import keyledger_error_handler
from keyledger.core.log_middleware import CorrelationMiddleware
from keyledger.jobs.scheduler import JobScheduler

# Initialize structured logging before any logger calls
setup_logging(log_dir=settings.log_directory)

logger = logging.getLogger(__name__)

API_TITLE = "keyledger API"

API_DESCRIPTION = """
## keyledger - Stripe reconciliation and API credential lifecycle

Receives Stripe webhooks and keeps subscriber premium state and the payment
ledger consistent with them. Runs the daily quota reset, credential
rotation and security analysis jobs, and the weekly security report.

### Authentication

- `/api/webhooks/stripe` is authenticated by the `Stripe-Signature` header.
- `/api/billing/*` and `/api/jobs/*` require `X-Internal-API-Key`.
"""

TAGS_METADATA = [
    {"name": "health", "description": "Liveness and dependency checks."},
    {"name": "webhooks", "description": "Inbound Stripe notifications."},
    {"name": "billing", "description": "Refunds. Internal callers only."},
    {"name": "jobs", "description": "Manual lifecycle job triggers. Internal callers only."},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Starting keyledger API v%s", APP_VERSION)

    error_registry.load()

    # Thread pool for run_sync() / asyncio.to_thread()
    executor = ThreadPoolExecutor(max_workers=16)
    loop = asyncio.get_running_loop()
    loop.set_default_executor(executor)

    init_db()
    logger.info("Database initialized")

    scheduler = JobScheduler()
    app.state.scheduler = scheduler
    if settings.scheduler_enabled:
        scheduler.start()
    else:
        logger.info("In-process scheduler disabled; jobs run via external cron or /api/jobs")

    yield

    logger.info("Shutting down keyledger API...")
    await scheduler.stop()
    close_db()
    executor.shutdown(wait=False)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # request_id + correlation_id in every log line
    app.add_middleware(CorrelationMiddleware)

    app.add_exception_handler(KeyLedgerError, keyledger_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
    app.include_router(billing.router, prefix="/api/billing", tags=["billing"])
    app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])

    return app


app = create_app()
