"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware: injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware: catches domain exceptions -> structured JSON errors
    3. CORSMiddleware: handles browser-based clients
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from escrow_engine.domain.exceptions import (
    ClawbackNotAllowedError,
    ConcurrentModificationError,
    CurrencyMismatchError,
    DealNotFoundError,
    DisputeActiveError,
    DisputeNotFoundError,
    DisputeStateError,
    EscrowError,
    IdempotencyConflictError,
    InsufficientCustodyError,
    InvalidTransitionError,
    MilestoneNotFoundError,
    MilestoneScheduleError,
    MilestoneStateError,
    NotActiveMilestoneError,
    PayoutFailedError,
    PayoutNotFoundError,
    PayoutStateError,
    ReleaseNotEligibleError,
    ReviewWindowExpiredError,
    RevisionLimitExceededError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

# Domain error -> HTTP status. First match wins, so subclasses go first.
ERROR_STATUS: tuple[tuple[type[EscrowError], int], ...] = (
    (DealNotFoundError, 404),
    (MilestoneNotFoundError, 404),
    (DisputeNotFoundError, 404),
    (PayoutNotFoundError, 404),
    (InvalidTransitionError, 409),
    (ConcurrentModificationError, 409),
    (NotActiveMilestoneError, 409),
    (ReleaseNotEligibleError, 409),
    (ClawbackNotAllowedError, 409),
    (IdempotencyConflictError, 409),
    (PayoutStateError, 409),
    (DisputeActiveError, 423),
    (RevisionLimitExceededError, 422),
    (ReviewWindowExpiredError, 422),
    (MilestoneScheduleError, 422),
    (MilestoneStateError, 422),
    (DisputeStateError, 422),
    (CurrencyMismatchError, 422),
    (PayoutFailedError, 502),
)


def status_for(exc: EscrowError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


def _error_body(code: str, message: str, retryable: bool = False) -> dict:
    return {"error": code, "message": message, "retryable": retryable}


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # Use client-provided ID or generate one
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        # Bind to structlog context for all log entries in this request
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except InsufficientCustodyError as exc:
            # Broken ledger invariant: alert, and never tell the client to retry.
            logger.critical(
                "ledger.insufficient_custody",
                deal_id=exc.deal_id,
                requested=exc.requested,
                available=exc.available,
                path=request.url.path,
            )
            return JSONResponse(
                status_code=500,
                content=_error_body(exc.code, "Ledger integrity check failed"),
            )
        except EscrowError as exc:
            status_code = status_for(exc)
            log = logger.error if status_code >= 500 else logger.warning
            log("domain.error", code=exc.code, error=exc.message, status=status_code)
            return JSONResponse(
                status_code=status_code,
                content=_error_body(exc.code, exc.message, exc.retryable),
            )
        except ValidationError as exc:
            # Routes only validate by hand when building responses.
            logger.exception("response.invalid", path=request.url.path, error=str(exc))
            return JSONResponse(
                status_code=500,
                content=_error_body("INTERNAL_ERROR", "An unexpected error occurred"),
            )
        except ValueError as exc:
            logger.warning("request.invalid", error=str(exc))
            return JSONResponse(
                status_code=422,
                content=_error_body("VALIDATION_ERROR", str(exc)),
            )
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content=_error_body("INTERNAL_ERROR", "An unexpected error occurred"),
            )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Order matters: middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    # CORS (runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handling (runs second)
    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID (runs last = outermost)
    app.add_middleware(RequestIDMiddleware)
