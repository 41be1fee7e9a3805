"""Release and reassignment path, symmetric to allocation."""

from __future__ import annotations

import sqlite3
from typing import Optional

from backend.domain.errors import (
    AccommodationNotFoundError,
    ConcurrencyConflictError,
    InvalidRequestStateError,
)
from backend.domain.models import (
    Accommodation,
    AllocationResult,
    BedStatus,
    LedgerEventType,
    ReleaseResult,
    Room,
)
from backend.repository.data_repository import DataRepository, utc_now
from backend.services.allocation_service import AllocationEngine, room_lock_key
from backend.services.inventory_service import InventoryService
from backend.services.ledger_service import reassignment_key, release_key
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class ReleaseService:
    """Frees beds on checkout/cancellation and moves occupants between beds."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        allocation_engine: Optional[AllocationEngine] = None,
        inventory_service: Optional[InventoryService] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._inventory = inventory_service or InventoryService(
            repository=self._repository,
            settings=self._settings,
        )
        self._engine = allocation_engine or AllocationEngine(
            repository=self._repository,
            inventory_service=self._inventory,
            settings=self._settings,
        )

    def _room_of(self, accommodation_id: int) -> Room:
        """Resolve the room an accommodation points at, outside any lock."""
        with self._repository.using(None) as conn:
            accommodation = self._repository.get_accommodation(conn, accommodation_id)
            room = (
                None
                if accommodation is None
                else self._repository.get_room_by_id(conn, accommodation.room_id)
            )
        if accommodation is None or room is None:
            raise AccommodationNotFoundError(
                f"Accommodation {accommodation_id} not found",
                accommodation_id=accommodation_id,
            )
        return room

    def release(self, accommodation_id: int, reason: Optional[str] = None) -> ReleaseResult:
        """Deactivate an accommodation and reopen its bed immediately."""
        room = self._room_of(accommodation_id)

        def attempt() -> ReleaseResult:
            with self._engine.locks.hold(room_lock_key(room.hostel_id, room.room_number)):
                with self._repository.transaction() as conn:
                    return self._release_in(conn, accommodation_id, reason)

        result = self._engine.run_with_retry(
            attempt,
            operation="release",
            accommodation_id=accommodation_id,
        )
        logger.info(
            "Release committed | accommodation_id=%s | student_id=%s | bed=%s | occupancy=%s",
            accommodation_id,
            result.student_id,
            result.bed_number,
            result.room_occupancy,
        )
        return result

    def _release_in(
        self,
        conn: sqlite3.Connection,
        accommodation_id: int,
        reason: Optional[str],
    ) -> ReleaseResult:
        accommodation = self._load_active(conn, accommodation_id)
        bed = self._repository.get_bed(conn, accommodation.bed_id)
        assert bed is not None
        now = utc_now()
        if not self._repository.compare_and_set_bed_status(
            conn,
            bed_id=bed.bed_id,
            expected_status=BedStatus.OCCUPIED,
            expected_version=bed.version,
            new_status=BedStatus.AVAILABLE,
        ):
            raise ConcurrencyConflictError(
                f"Bed {bed.bed_number} changed concurrently", bed_id=bed.bed_id
            )
        occupancy = self._inventory.return_capacity(accommodation.room_id, conn=conn)
        if not self._repository.deactivate_accommodation(
            conn,
            accommodation_id=accommodation_id,
            release_date=now,
            reason=reason,
        ):
            raise ConcurrencyConflictError(
                f"Accommodation {accommodation_id} changed concurrently",
                accommodation_id=accommodation_id,
            )
        entry_id = self._repository.append_ledger_entry(
            conn,
            event_type=LedgerEventType.RELEASE,
            bed_id=bed.bed_id,
            room_id=accommodation.room_id,
            student_id=accommodation.student_id,
            request_id=accommodation.request_id,
            accommodation_id=accommodation_id,
            room_occupancy_after=occupancy,
            idempotency_key=release_key(accommodation_id),
            recorded_at=now,
            reason=reason,
        )
        return ReleaseResult(
            accommodation_id=accommodation_id,
            student_id=accommodation.student_id,
            room_id=accommodation.room_id,
            bed_id=bed.bed_id,
            bed_number=bed.bed_number,
            room_occupancy=occupancy,
            ledger_entry_id=entry_id,
            released_at=now,
            reason=reason,
        )

    def _load_active(self, conn: sqlite3.Connection, accommodation_id: int) -> Accommodation:
        accommodation = self._repository.get_accommodation(conn, accommodation_id)
        if accommodation is None or not accommodation.is_active:
            raise AccommodationNotFoundError(
                f"No active accommodation {accommodation_id}",
                accommodation_id=accommodation_id,
            )
        return accommodation

    def reassign(
        self,
        *,
        accommodation_id: int,
        hostel_id: int,
        room_number: str,
        bed_number: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AllocationResult:
        """Move an occupant to another bed in a single transaction.

        Writes a Release entry for the old accommodation and an Allocate
        entry for the new one; both carry the original request id.
        """
        source_room = self._room_of(accommodation_id)
        lock_keys = (
            room_lock_key(source_room.hostel_id, source_room.room_number),
            room_lock_key(hostel_id, room_number),
        )

        def attempt() -> AllocationResult:
            with self._engine.locks.hold(*lock_keys):
                with self._repository.transaction() as conn:
                    return self._reassign_in(
                        conn,
                        accommodation_id=accommodation_id,
                        hostel_id=hostel_id,
                        room_number=room_number,
                        bed_number=bed_number,
                        reason=reason,
                    )

        result = self._engine.run_with_retry(
            attempt,
            operation="reassign",
            accommodation_id=accommodation_id,
        )
        logger.info(
            "Reassignment committed | from_accommodation_id=%s | to_accommodation_id=%s | room=%s | bed=%s",
            accommodation_id,
            result.accommodation_id,
            result.room_number,
            result.bed_number,
        )
        return result

    def _reassign_in(
        self,
        conn: sqlite3.Connection,
        *,
        accommodation_id: int,
        hostel_id: int,
        room_number: str,
        bed_number: Optional[str],
        reason: Optional[str],
    ) -> AllocationResult:
        self._release_in(conn, accommodation_id, reason or "Reassigned")
        accommodation = self._repository.get_accommodation(conn, accommodation_id)
        assert accommodation is not None
        request = self._repository.get_request(conn, accommodation.request_id)
        if request is None:
            raise InvalidRequestStateError(
                f"Request {accommodation.request_id} for accommodation "
                f"{accommodation_id} does not exist",
                request_id=accommodation.request_id,
            )
        room = self._inventory.get_room(hostel_id, room_number, conn=conn)
        now = utc_now()
        binding = self._engine.bind_bed(
            conn,
            request=request,
            room=room,
            bed_number=bed_number,
            allocated_at=now,
        )
        entry_id = self._repository.append_ledger_entry(
            conn,
            event_type=LedgerEventType.ALLOCATE,
            bed_id=binding.bed.bed_id,
            room_id=room.room_id,
            student_id=accommodation.student_id,
            request_id=request.request_id,
            accommodation_id=binding.accommodation_id,
            room_occupancy_after=binding.room_occupancy,
            idempotency_key=reassignment_key(binding.accommodation_id),
            recorded_at=now,
            reason=reason,
        )
        return AllocationResult(
            request_id=request.request_id,
            accommodation_id=binding.accommodation_id,
            student_id=accommodation.student_id,
            hostel_id=hostel_id,
            room_id=room.room_id,
            room_number=room.room_number,
            bed_id=binding.bed.bed_id,
            bed_number=binding.bed.bed_number,
            room_occupancy=binding.room_occupancy,
            room_capacity=room.capacity,
            ledger_entry_id=entry_id,
            allocated_at=now,
        )
