"""Structured error kinds raised by the allocation core.

Callers branch on ``exc.kind``; the message is for humans only and may
change between releases.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    ROOM_NOT_FOUND = "RoomNotFound"
    BED_UNAVAILABLE = "BedUnavailable"
    CAPACITY_EXCEEDED = "CapacityExceeded"
    INVALID_REQUEST_STATE = "InvalidRequestState"
    STUDENT_ALREADY_ALLOCATED = "StudentAlreadyAllocated"
    ACCOMMODATION_NOT_FOUND = "AccommodationNotFound"
    ALREADY_PROCESSED = "AlreadyProcessed"
    CONCURRENCY_CONFLICT = "ConcurrencyConflict"
    PERSISTENCE_FAILURE = "PersistenceFailure"
    REQUEST_NOT_FOUND = "RequestNotFound"
    DUPLICATE_REQUEST = "DuplicateRequest"
    INVENTORY_VALIDATION = "InventoryValidation"


class AllocationError(Exception):
    """Base class for every typed failure of the allocation core."""

    kind: ErrorKind

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {key: value for key, value in context.items() if value is not None}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


class RoomNotFoundError(AllocationError):
    kind = ErrorKind.ROOM_NOT_FOUND


class BedUnavailableError(AllocationError):
    kind = ErrorKind.BED_UNAVAILABLE


class CapacityExceededError(AllocationError):
    kind = ErrorKind.CAPACITY_EXCEEDED


class InvalidRequestStateError(AllocationError):
    kind = ErrorKind.INVALID_REQUEST_STATE


class StudentAlreadyAllocatedError(AllocationError):
    kind = ErrorKind.STUDENT_ALREADY_ALLOCATED


class AccommodationNotFoundError(AllocationError):
    kind = ErrorKind.ACCOMMODATION_NOT_FOUND


class RequestNotFoundError(AllocationError):
    kind = ErrorKind.REQUEST_NOT_FOUND


class DuplicateRequestError(AllocationError):
    kind = ErrorKind.DUPLICATE_REQUEST


class InventoryValidationError(AllocationError):
    kind = ErrorKind.INVENTORY_VALIDATION


class ConcurrencyConflictError(AllocationError):
    """Optimistic lock lost or writer lock contended; safe to retry."""

    kind = ErrorKind.CONCURRENCY_CONFLICT


class PersistenceFailureError(AllocationError):
    """Storage unavailable. The enclosing transaction has been rolled back."""

    kind = ErrorKind.PERSISTENCE_FAILURE


class AlreadyProcessedError(AllocationError):
    """Raised on idempotent replay of an allocation request id."""

    kind = ErrorKind.ALREADY_PROCESSED

    def __init__(self, message: str, original: Optional[Any] = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.original = original

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.original is not None:
            payload["original"] = self.original.to_dict()
        return payload
