"""
Request middleware — logging, timing, correlation IDs.

Provides:
    • X-Request-ID header injection (correlation ID)
    • Request/response timing (X-Process-Time header)
    • One structured log entry per request, tagged with the broadcast or
      recipient id the path refers to
    • Quiet handling of probe and docs traffic
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any, Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health")

_BROADCAST_PATH = re.compile(r"^/api/v1/broadcasts/(BRC-[0-9A-Fa-f]+)")
_RECIPIENT_PATH = re.compile(r"^/api/v1/(?:recipients|inbox)/([^/]+)")

SLOW_REQUEST_MS = 1000.0


def _path_identifiers(path: str) -> Dict[str, Any]:
    ids: Dict[str, Any] = {}
    match = _BROADCAST_PATH.match(path)
    if match:
        ids["broadcast_id"] = match.group(1)
    match = _RECIPIENT_PATH.match(path)
    if match:
        ids["recipient_id"] = match.group(1)
    return ids


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every request with timing, inject correlation ID.

    Request log entry includes:
        - method, path, status_code
        - duration_ms
        - client IP
        - request_id (also returned in X-Request-ID response header)
        - broadcast_id / recipient_id when the path names one
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:16])
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path
        identifiers = _path_identifiers(path)

        set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
            **identifiers,
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms) [%s]",
                request.method, path, duration_ms, client_ip,
                extra={"duration_ms": duration_ms, "status_code": 500, **identifiers},
            )
            set_request_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        quiet = any(path.startswith(p) for p in _QUIET_PREFIXES)
        if not quiet or response.status_code >= 500:
            if response.status_code >= 400 or duration_ms >= SLOW_REQUEST_MS:
                log_level = logging.WARNING
            else:
                log_level = logging.INFO
            logger.log(
                log_level,
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code,
                duration_ms, client_ip,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                    **identifiers,
                },
            )

        set_request_context()
        return response
