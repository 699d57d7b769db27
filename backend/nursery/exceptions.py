"""Lineage error taxonomy and the matching FastAPI exception handlers.

Every failure the mutation engine surfaces is a ``LineageError``.  The
subclasses carry an HTTP status and a stable ``error_code`` so whichever
routing layer hosts the engine can render them without knowing the saga
internals.  ``retryable`` marks failures after which the caller may safely
resubmit the same request id.
"""

import logging
from typing import Union

from fastapi import Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

logger = logging.getLogger(__name__)


class LineageError(Exception):
    """Base exception for batch lineage errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        retryable: bool = False,
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.retryable = retryable
        self.details = details
        super().__init__(self.message)


class LineageValidationError(LineageError):
    """Malformed or inconsistent request.  Never retried, no side effects."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="VALIDATION_ERROR",
            details=details,
        )


class NotFoundError(LineageError):
    """Referenced batch, size or location does not exist."""

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
        )


class InsufficientQuantityError(LineageError):
    """A debit would take a batch below zero."""

    def __init__(
        self,
        batch_id: str,
        requested: int,
        available: int,
        batch_number: str | None = None,
    ):
        self.batch_id = batch_id
        self.batch_number = batch_number
        self.requested = requested
        self.available = available
        label = batch_number or batch_id
        super().__init__(
            message=(
                f"Not enough units in batch {label}: requested {requested}, "
                f"available {available} (short by {self.shortfall})"
            ),
            status_code=status.HTTP_409_CONFLICT,
            error_code="INSUFFICIENT_QUANTITY",
            details={
                "batch_id": batch_id,
                "batch_number": batch_number,
                "requested": requested,
                "available": available,
                "shortfall": self.shortfall,
            },
        )

    @property
    def shortfall(self) -> int:
        return max(self.requested - self.available, 0)


class ConflictError(LineageError):
    """A structural write (ancestry, counter, claim) hit a concurrent conflict."""

    def __init__(self, message: str = "Concurrent modification conflict"):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="CONFLICT",
            retryable=True,
        )


class TransientStoreError(LineageError):
    """Connectivity or timeout failure talking to a store."""

    def __init__(self, message: str = "Store temporarily unavailable"):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="STORE_UNAVAILABLE",
            retryable=True,
        )


class RequestInProgressError(LineageError):
    """The request id is claimed by an attempt that has not finished yet."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(
            message=f"Request {request_id} is still being applied",
            status_code=status.HTTP_409_CONFLICT,
            error_code="REQUEST_IN_PROGRESS",
            retryable=True,
        )


class UnrecoverableError(LineageError):
    """Compensation itself failed: the ledger may be inconsistent.

    Carries the failure that triggered compensation (``cause``) and every
    compensating action that did not apply (``compensation_errors``).
    """

    def __init__(
        self,
        request_id: str,
        cause: BaseException,
        compensation_errors: list[BaseException],
    ):
        self.request_id = request_id
        self.cause = cause
        self.compensation_errors = compensation_errors
        super().__init__(
            message=(
                f"Compensation failed for request {request_id}; "
                "manual reconciliation required"
            ),
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="COMPENSATION_FAILED",
            details={
                "cause": str(cause),
                "compensation_errors": [str(e) for e in compensation_errors],
            },
        )


def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
    retryable: bool = False,
) -> JSONResponse:
    """Create standardized error response.

    Format:
    {
        "error": {
            "code": "ERROR_CODE",
            "message": "Human-readable error message",
            "details": {...},    // Optional additional details
            "retryable": true    // Only when resubmitting is safe
        }
    }
    """
    content = {
        "error": {
            "code": error_code,
            "message": message,
        }
    }

    if details:
        content["error"]["details"] = details
    if retryable:
        content["error"]["retryable"] = True

    return JSONResponse(
        status_code=status_code,
        content=content,
    )


async def lineage_exception_handler(
    request: Request,
    exc: LineageError,
) -> JSONResponse:
    """Handle lineage errors raised by the mutation engine."""
    if isinstance(exc, UnrecoverableError):
        logger.critical(
            f"Unrecoverable lineage failure: {exc.message}",
            extra={"path": request.url.path, "details": exc.details},
        )
    else:
        logger.warning(
            f"Lineage exception: {exc.error_code} - {exc.message}",
            extra={
                "error_code": exc.error_code,
                "path": request.url.path,
                "method": request.method,
            },
        )

    message = exc.message
    if exc.retryable:
        message = f"{exc.message}. Operation failed, safe to retry."

    return create_error_response(
        status_code=exc.status_code,
        message=message,
        error_code=exc.error_code,
        details=exc.details,
        retryable=exc.retryable,
    )


async def validation_exception_handler(
    request: Request,
    exc: ValidationError,
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    logger.warning(
        f"Validation error on {request.url.path}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "errors": exc.errors(),
        },
    )

    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation error",
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


def register_exception_handlers(app):
    """Register lineage exception handlers with a FastAPI app."""
    app.add_exception_handler(LineageError, lineage_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
