"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware - injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware - catches domain exceptions -> structured JSON errors
    3. CORSMiddleware - handles browser clients of the marketplace frontend
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from marketplace_escrow.domain.exceptions import (
    ConcurrentUpdateError,
    DuplicateOperationError,
    GatewayError,
    InvalidStateTransitionError,
    MarketplaceError,
    NotAuthorizedError,
    OrderNotFoundError,
    PaymentNotFoundError,
    PreconditionError,
    SettlementInProgressError,
    SignatureError,
    StoreError,
    UnknownGatewayError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": code, "message": message},
    )


def gateway_status(exc: GatewayError) -> int:
    """HTTP status for a gateway failure: the gateway's own 4xx/5xx, else 502."""
    if exc.status_code is not None and exc.status_code >= 400:
        return exc.status_code
    return 502


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
        except NotAuthorizedError as exc:
            logger.warning("auth.not_authorized", error=exc.message)
            return _error(403, exc.code, exc.message)
        except PreconditionError as exc:
            logger.warning("precondition.failed", error=exc.message, code=exc.code)
            return _error(400, exc.code, exc.message)
        except (OrderNotFoundError, PaymentNotFoundError, UnknownGatewayError) as exc:
            logger.warning("lookup.not_found", error=exc.message, code=exc.code)
            return _error(404, exc.code, exc.message)
        except InvalidStateTransitionError as exc:
            logger.warning(
                "state_machine.invalid_transition",
                current=exc.current_state,
                attempted=exc.attempted,
            )
            return _error(409, exc.code, exc.message)
        except DuplicateOperationError as exc:
            logger.warning("idempotency.duplicate", error=exc.message)
            return _error(409, exc.code, exc.message)
        except ConcurrentUpdateError as exc:
            logger.warning("store.concurrent_update", order_id=exc.order_id)
            return _error(409, exc.code, exc.message)
        except SettlementInProgressError as exc:
            logger.warning("escrow.settlement_in_progress", order_id=exc.order_id)
            return _error(409, exc.code, exc.message)
        except SignatureError as exc:
            logger.warning("webhook.signature_rejected")
            return _error(401, exc.code, exc.message)
        except GatewayError as exc:
            logger.error(
                "gateway.error", error=exc.message, status_code=exc.status_code
            )
            return _error(gateway_status(exc), exc.code, exc.message)
        except StoreError as exc:
            logger.error("store.error", error=exc.message, code=exc.code)
            return _error(500, exc.code, exc.message)
        except MarketplaceError as exc:
            logger.error("domain.error", error=exc.message, code=exc.code)
            return _error(400, exc.code, exc.message)
        except SQLAlchemyError as exc:
            logger.exception("store.database_error", error=str(exc))
            return _error(500, "STORE_ERROR", "A database error occurred")
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return _error(500, "INTERNAL_ERROR", "An unexpected error occurred")


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Order matters - middleware is applied bottom-up, so the last added
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
