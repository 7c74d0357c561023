"""
Request logging and correlation IDs for the HTTP surface.

Every request gets a request_id and a correlation_id in contextvars, so
webhook handling and job triggers log under the same ids. Stripe does not
send either header; those deliveries get fresh ids.

One ``request_completed`` line per request, keyed on the route template
(``/api/jobs/{job_name}/run``) rather than the concrete path. Health probes log
at DEBUG and server errors at WARNING.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from keyledger.core.structured_logging import correlation_id_var, request_id_var

logger = logging.getLogger(__name__)

QUIET_PREFIXES = ("/api/health",)


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _level_for(path: str, status_code: int | None) -> int:
    if status_code is None or status_code >= 500:
        return logging.WARNING
    if path.startswith(QUIET_PREFIXES):
        return logging.DEBUG
    return logging.INFO


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Bind request/correlation ids and log one line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        corr_id = request.headers.get("x-correlation-id") or req_id

        rid_token = request_id_var.set(req_id)
        cid_token = correlation_id_var.set(corr_id)
        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            status_code = response.status_code if response is not None else None
            logger.log(
                _level_for(request.url.path, status_code),
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path_template": _route_template(request),
                    "http.status_code": status_code,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                    "stripe_delivery": "stripe-signature" in request.headers,
                },
            )
            request_id_var.reset(rid_token)
            correlation_id_var.reset(cid_token)

        response.headers["x-request-id"] = req_id
        response.headers["x-correlation-id"] = corr_id
        return response
