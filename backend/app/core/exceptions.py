"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.

Error families:
- Validation: bad input, unknown resources. Safe to reject, no side effects.
- State conflict: the request raced or contradicts current state. Callers
  re-read and react (e.g. retry a bid with the returned minimum).
- External dependency: collaborator failures. Never surfaced from a committed
  transition; logged and captured for retry instead.
- Invariant violation: a bug. Halts the operation and alerts.
"""

import logging
from decimal import Decimal
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class ValidationFailedError(AppException):
    """Raised when a domain value is malformed (amount, rate, adjustment)."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_001",
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class BidRejectedError(AppException):
    """
    Raised when a bid is not admitted.

    reason is one of AuctionNotStarted, AuctionClosed, BidTooLow, ItemNotFound.
    BidTooLow carries the minimum the caller must bid to be admitted.
    """

    AUCTION_NOT_STARTED = "AuctionNotStarted"
    AUCTION_CLOSED = "AuctionClosed"
    BID_TOO_LOW = "BidTooLow"
    ITEM_NOT_FOUND = "ItemNotFound"

    _codes = {
        AUCTION_NOT_STARTED: "ERR_BID_001",
        AUCTION_CLOSED: "ERR_BID_002",
        BID_TOO_LOW: "ERR_BID_003",
        ITEM_NOT_FOUND: "ERR_BID_004",
    }

    def __init__(self, reason: str, message: str, minimum_bid: Optional[Decimal] = None, item_id: Any = None):
        self.reason = reason
        self.minimum_bid = minimum_bid
        details = {"reason": reason, "item_id": item_id}
        if minimum_bid is not None:
            details["minimum_bid"] = str(minimum_bid)
        super().__init__(
            message=message,
            error_code=self._codes[reason],
            status_code=status.HTTP_404_NOT_FOUND if reason == self.ITEM_NOT_FOUND else status.HTTP_409_CONFLICT,
            details=details
        )


class StateConflictError(AppException):
    """Raised when current persisted state forbids the requested change."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_CONFLICT_001",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class InvalidTransitionError(StateConflictError):
    """Raised when a status change is not in the entity's transition table."""

    def __init__(self, entity: str, from_status: Any, to_status: Any):
        super().__init__(
            message=f"{entity} cannot move from {_value(from_status)} to {_value(to_status)}",
            details={
                "entity": entity,
                "from_status": _value(from_status),
                "to_status": _value(to_status),
            }
        )
        self.error_code = "ERR_CONFLICT_002"


class InvariantViolationError(AppException):
    """Raised when persisted state breaks a financial invariant. Always a bug."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_INVARIANT_001",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )
        logger.critical("Invariant violation: %s", message, extra={"details": self.details})


class ExternalServiceError(AppException):
    """Raised by collaborator adapters (gateway, notifier, documents)."""

    def __init__(self, service: str, message: str):
        super().__init__(
            message=f"{service}: {message}",
            error_code="ERR_EXTERNAL_001",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"service": service}
        )


def _value(status_value: Any) -> Any:
    return getattr(status_value, "value", status_value)


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": jsonable_encoder(exc.details)
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": jsonable_encoder(exc.errors())
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
