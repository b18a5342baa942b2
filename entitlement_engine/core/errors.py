"""
Error Handling
==============

Domain error taxonomy for the entitlement pipeline, plus standardized HTTP
error codes and exception handlers for the API surface.

Pipeline errors are handled inside the stage that detects them. Routes
translate what a client should see into the ``AppException`` family;
storage outages that slip through still answer 503, never 500.
"""

import logging
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# =============================================================================
# Pipeline Errors
# =============================================================================

class EntitlementEngineError(Exception):
    """Base class for errors raised inside the entitlement pipeline."""


class TransientProviderError(EntitlementEngineError):
    """Network failure, timeout or 5xx from a payment provider. Retryable."""

    def __init__(self, provider: str, message: str, *, timed_out: bool = False):
        self.provider = provider
        self.timed_out = timed_out
        super().__init__(f"{provider}: {message}")


class MalformedEventError(EntitlementEngineError):
    """Structurally invalid payload. Dead-lettered, still acknowledged."""

    def __init__(self, message: str, payload: Optional[dict[str, Any]] = None):
        self.payload = payload or {}
        super().__init__(message)


class NormalizationError(MalformedEventError):
    """The normalizer could not map a provider payload to a lifecycle event."""


class UnresolvedSubscriberError(MalformedEventError):
    """Event names neither a user nor a subscription we already know."""


class StaleEventError(EntitlementEngineError):
    """Event is older than what was already applied to the record."""

    def __init__(self, event_id: str, observed_at, last_applied_observed_at):
        self.event_id = event_id
        self.observed_at = observed_at
        self.last_applied_observed_at = last_applied_observed_at
        super().__init__(
            f"event {event_id} observed at {observed_at.isoformat()} is older than "
            f"last applied {last_applied_observed_at.isoformat()}"
        )


class DuplicateEventError(EntitlementEngineError):
    """The ledger already holds this event id."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"event {event_id} already processed")


class ReconciliationDivergenceError(EntitlementEngineError):
    """Local and remote state disagree after a successful provider query."""

    def __init__(self, subscription_ref: str, local_status: str, remote_status: str, **detail):
        self.subscription_ref = subscription_ref
        self.local_status = local_status
        self.remote_status = remote_status
        self.detail = detail
        super().__init__(
            f"{subscription_ref}: local={local_status} remote={remote_status}"
        )


class LedgerUnavailableError(EntitlementEngineError):
    """Ledger storage cannot admit or reject events. Fatal to ingestion."""


class WebhookAuthenticationError(EntitlementEngineError):
    """Webhook signature or JWS could not be verified."""


class UnknownProductError(EntitlementEngineError):
    """A client command named a product the catalog does not sell."""

    def __init__(self, product_ref: str):
        self.product_ref = product_ref
        super().__init__(f"unknown product: {product_ref}")


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication (AUTH_001 - AUTH_010)
    AUTH_INVALID_TOKEN = "AUTH_005"
    UNAUTHORIZED = "UNAUTHORIZED"

    # Webhooks (HOOK_001 - HOOK_010)
    HOOK_INVALID_SIGNATURE = "HOOK_001"

    # Commands (CMD_001 - CMD_010)
    CMD_UNKNOWN_PRODUCT = "CMD_001"

    # Ledger
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"



# =============================================================================
# HTTP Exceptions
# =============================================================================

class AppException(HTTPException):
    """HTTP error rendered as ``{"success": false, "error": {...}}``."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.field = field
        self.extra = extra

        detail = {"code": code, "message": message}
        if field:
            detail["field"] = field
        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)


class AuthenticationError(AppException):
    """Bad bearer token, internal API key or webhook signature."""

    def __init__(
        self,
        code: str = ErrorCodes.UNAUTHORIZED,
        message: str = "Authentication failed",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )


class ValidationError(AppException):
    """Client input the engine will not act on."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: str = ErrorCodes.VALIDATION_ERROR,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            field=field,
            **extra,
        )


class ServiceUnavailableError(AppException):
    """Storage or queue unavailable; the caller should retry later."""

    def __init__(
        self,
        code: str = ErrorCodes.LEDGER_UNAVAILABLE,
        message: str = "Service temporarily unavailable",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=code,
            message=message,
            **extra,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_response(status_code: int, error: dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    return _error_response(exc.status_code, exc.detail)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Framework-raised HTTP errors (unknown route, wrong method)."""
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {"code": "HTTP_ERROR", "message": str(exc.detail)}
    return _error_response(exc.status_code, error)


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Report the first invalid field of a request body or query."""
    errors = exc.errors()
    error: dict[str, Any] = {"code": ErrorCodes.VALIDATION_ERROR, "message": "Validation error"}
    if errors:
        first = errors[0]
        error["message"] = first.get("msg", error["message"])
        error["field"] = ".".join(str(loc) for loc in first.get("loc", []))
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, error)


async def storage_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Database down on a path that did not translate it itself.

    Entitlement reads fail closed: the client gets 503 and retries rather
    than a free-tier answer built from nothing.
    """
    logger.error("Storage unavailable on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        {"code": ErrorCodes.LEDGER_UNAVAILABLE, "message": "Service temporarily unavailable"},
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error: %s: %s", type(exc).__name__, exc)
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {"code": ErrorCodes.INTERNAL_ERROR, "message": "An unexpected error occurred"},
    )


def setup_exception_handlers(app) -> None:
    """Register the handlers above on a FastAPI app."""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(LedgerUnavailableError, storage_unavailable_handler)
    app.add_exception_handler(OperationalError, storage_unavailable_handler)
    app.add_exception_handler(InterfaceError, storage_unavailable_handler)
    app.add_exception_handler(Exception, global_exception_handler)
