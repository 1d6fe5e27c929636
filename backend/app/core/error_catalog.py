from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from fastapi import status


@dataclass(frozen=True)
class ErrorDefinition:
    code: str
    message: str
    status_code: int


class ErrorCatalog:
    VALIDATION_ERROR = ErrorDefinition(
        "VALIDATION_ERROR",
        "Validation error",
        status.HTTP_422_UNPROCESSABLE_ENTITY,
    )
    NOT_FOUND = ErrorDefinition("NOT_FOUND", "Resource not found", status.HTTP_404_NOT_FOUND)
    INSUFFICIENT_STOCK = ErrorDefinition(
        "INSUFFICIENT_STOCK",
        "Insufficient stock",
        status.HTTP_409_CONFLICT,
    )
    CONFLICT = ErrorDefinition("CONFLICT", "Conflicting concurrent change", status.HTTP_409_CONFLICT)
    INVALID_STATE = ErrorDefinition(
        "INVALID_STATE",
        "Operation not allowed in the current state",
        status.HTTP_409_CONFLICT,
    )
    INVARIANT_VIOLATION = ErrorDefinition(
        "INVARIANT_VIOLATION",
        "Fulfillment invariant violated",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    INTERNAL_ERROR = ErrorDefinition(
        "INTERNAL_ERROR",
        "Internal server error",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


class EngineError(Exception):
    """Base of every error raised by the dispatch engine."""

    error: ErrorDefinition = ErrorCatalog.INTERNAL_ERROR

    def __init__(self, message: str | None = None, details: dict | None = None):
        self.message = message or self.error.message
        self.details = details
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.error.code


class ValidationError(EngineError):
    error = ErrorCatalog.VALIDATION_ERROR


class NotFoundError(EngineError):
    error = ErrorCatalog.NOT_FOUND


class ConflictError(EngineError):
    error = ErrorCatalog.CONFLICT


class InvalidStateError(EngineError):
    error = ErrorCatalog.INVALID_STATE


class InvariantViolation(EngineError):
    """The fulfillment bookkeeping is already inconsistent. Never a business outcome."""

    error = ErrorCatalog.INVARIANT_VIOLATION


class InternalError(EngineError):
    error = ErrorCatalog.INTERNAL_ERROR


class InsufficientStockError(EngineError):
    error = ErrorCatalog.INSUFFICIENT_STOCK

    def __init__(self, spec, requested: Decimal, available: Decimal):
        self.spec = spec
        self.requested = requested
        self.available = available
        super().__init__(
            f"Cannot dispatch {requested} of {spec} when only {available} is available",
            details={
                "spec": spec.as_dict(),
                "requested": format(requested, "f"),
                "available": format(available, "f"),
            },
        )
