"""Domain-level validation rules for inventory definitions and settings."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from backend.domain.models import RoomType

if TYPE_CHECKING:
    from backend.utils.config import Settings


UNIQUENESS_SCOPES = ("global", "semester")


def resolve_room_capacity(room_type: RoomType, capacity: Optional[int]) -> int:
    """Return the effective capacity for a new room.

    Capacity defaults to the room type's nominal capacity and may be lowered
    (e.g. a double used as a single) but never raised above it.
    """
    if capacity is None:
        return room_type.nominal_capacity
    if capacity < 1:
        raise ValueError("capacity must be >= 1")
    if capacity > room_type.nominal_capacity:
        raise ValueError(
            f"capacity {capacity} exceeds nominal capacity "
            f"{room_type.nominal_capacity} of a {room_type.value} room"
        )
    return capacity


def validate_room_number(room_number: str) -> str:
    cleaned = room_number.strip()
    if not cleaned:
        raise ValueError("room_number must be non-empty")
    if len(cleaned) > 20:
        raise ValueError("room_number must be at most 20 characters")
    return cleaned


def validate_floor_number(floor_number: int) -> None:
    if floor_number < 0:
        raise ValueError("floor_number must be >= 0")


def validate_academic_period(academic_year: str, semester: str) -> None:
    parts = academic_year.split("/")
    if len(parts) != 2 or not all(part.isdigit() and len(part) == 4 for part in parts):
        raise ValueError("academic_year must follow YYYY/YYYY format")
    start_year, end_year = (int(part) for part in parts)
    if end_year != start_year + 1:
        raise ValueError("academic_year must span consecutive years")
    if not semester.strip():
        raise ValueError("semester must be non-empty")


def validate_settings(settings: "Settings") -> None:
    if settings.sqlite_busy_timeout_seconds <= 0:
        raise ValueError("sqlite_busy_timeout_seconds must be > 0")
    if settings.allocation_max_retries < 0:
        raise ValueError("allocation_max_retries must be >= 0")
    if settings.allocation_retry_backoff_seconds < 0:
        raise ValueError("allocation_retry_backoff_seconds must be >= 0")
    if settings.allocation_uniqueness_scope not in UNIQUENESS_SCOPES:
        raise ValueError(
            f"allocation_uniqueness_scope must be one of {', '.join(UNIQUENESS_SCOPES)}"
        )
    if settings.matcher_max_time_seconds <= 0:
        raise ValueError("matcher_max_time_seconds must be > 0")
    if settings.matcher_workers <= 0:
        raise ValueError("matcher_workers must be > 0")
    if settings.matcher_random_seed < 0:
        raise ValueError("matcher_random_seed must be >= 0")
    if settings.matcher_objective_scale <= 0:
        raise ValueError("matcher_objective_scale must be > 0")
