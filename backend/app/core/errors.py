"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain exception classes for the broadcast service
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Propagation policy:
    ValidationError / InvalidStateError / NotFoundError
        surface synchronously to the caller.
    ResolutionError
        never raised out of the audience resolver; collected on the
        RecipientSet so resolution degrades instead of aborting.
    ChannelError (Rejected / Unavailable)
        contained inside the dispatcher; only ever affects one
        (recipient, channel) delivery record.

Usage:
    from backend.app.core.errors import NotFoundError, register_error_handlers

    raise NotFoundError("Broadcast", broadcast_id="BRC-3A7B9C")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class BroadcastServiceError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(BroadcastServiceError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(BroadcastServiceError):
    """Malformed broadcast input, rejected before any state change (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class InvalidStateError(BroadcastServiceError):
    """Operation forbidden by the broadcast's current status (409)."""

    def __init__(self, message: str, *, current_status: Optional[str] = None, **details: Any):
        d = {**details}
        if current_status:
            d["current_status"] = current_status
        super().__init__(
            message=message,
            status_code=409,
            error_code="INVALID_STATE",
            details=d,
        )


class ConcurrencyError(BroadcastServiceError):
    """Optimistic check-and-set kept losing to concurrent writers (409)."""

    def __init__(self, entity: str, key: Any, attempts: int):
        super().__init__(
            message=f"{entity} {key} changed concurrently; gave up after {attempts} attempts",
            status_code=409,
            error_code="CONCURRENT_MODIFICATION",
            details={"entity": entity, "key": str(key), "attempts": attempts},
        )


class ResolutionError(BroadcastServiceError):
    """
    Part of an audience could not be resolved.

    Non-fatal: the resolver records these on the RecipientSet and
    carries on with whoever it could resolve.
    """

    def __init__(self, message: str, *, kind: str, reference: str):
        super().__init__(
            message=message,
            status_code=207,
            error_code="RESOLUTION_PARTIAL",
            details={"kind": kind, "reference": reference},
        )
        self.kind = kind
        self.reference = reference


class ChannelError(BroadcastServiceError):
    """Channel provider failure for a single send (never aborts a fan-out)."""

    retryable: bool = False

    def __init__(self, channel: str, reason: str = ""):
        super().__init__(
            message=f"Channel '{channel}' failed: {reason}",
            status_code=502,
            error_code="CHANNEL_ERROR",
            details={"channel": channel, "reason": reason},
        )
        self.channel = channel
        self.reason = reason


class ChannelRejectedError(ChannelError):
    """Permanent provider refusal (invalid address, blocked number)."""

    retryable = False


class ChannelUnavailableError(ChannelError):
    """Transient provider failure (timeout, 5xx, throttling)."""

    retryable = True


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(BroadcastServiceError)
    async def handle_service_error(request: Request, exc: BroadcastServiceError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg", "")}
            for e in exc.errors()
        ]
        logger.warning("Request validation failed: %s", errors)
        return _build_error_response(
            422, "VALIDATION_ERROR", "Request body failed validation",
            {"errors": errors}, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
