"""Allocation engine: binds one pending request to one concrete bed."""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from backend.domain.errors import (
    AlreadyProcessedError,
    BedUnavailableError,
    ConcurrencyConflictError,
    InvalidRequestStateError,
    StudentAlreadyAllocatedError,
)
from backend.domain.models import (
    AllocationRequest,
    AllocationResult,
    Bed,
    BedStatus,
    LedgerEntry,
    LedgerEventType,
    RequestStatus,
    Room,
)
from backend.repository.data_repository import DataRepository, utc_now
from backend.services.inventory_service import InventoryService
from backend.services.ledger_service import allocation_key
from backend.utils.config import Settings, get_settings
from backend.utils.locking import KeyedLockRegistry
from backend.utils.logger import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


def room_lock_key(hostel_id: int, room_number: str) -> tuple[str, int, str]:
    return ("room", hostel_id, room_number.strip())


@dataclass(frozen=True)
class BedBinding:
    """Outcome of the bed-level half of an allocation, inside a transaction."""

    room: Room
    bed: Bed
    accommodation_id: int
    room_occupancy: int


class AllocationEngine:
    """Transactional allocate operation.

    Every effect (bed status, room counter, accommodation, request status,
    ledger entry) is written in one SQLite transaction. Work is serialized
    per room in-process; different rooms proceed independently.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        inventory_service: Optional[InventoryService] = None,
        settings: Optional[Settings] = None,
        locks: Optional[KeyedLockRegistry] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._inventory = inventory_service or InventoryService(
            repository=self._repository,
            settings=self._settings,
        )
        self.locks = locks or KeyedLockRegistry(self._settings.sqlite_busy_timeout_seconds)

    def allocate(
        self,
        *,
        request_id: int,
        student_id: str,
        hostel_id: int,
        room_number: str,
        bed_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AllocationResult:
        """Allocate a bed for ``request_id``; the request id is the idempotency key.

        Raises one of the typed errors in :mod:`backend.domain.errors`.
        Replaying an already committed request raises
        :class:`AlreadyProcessedError` carrying the original result.
        """

        def attempt() -> AllocationResult:
            with self.locks.hold(room_lock_key(hostel_id, room_number)):
                return self._allocate_once(
                    request_id=request_id,
                    student_id=student_id,
                    hostel_id=hostel_id,
                    room_number=room_number,
                    bed_number=bed_number,
                    notes=notes,
                )

        return self.run_with_retry(attempt, operation="allocate", request_id=request_id)

    def run_with_retry(self, operation_fn: Callable[[], T], *, operation: str, **context: object) -> T:
        """Retry ``ConcurrencyConflictError`` a bounded number of times.

        Every retry re-runs all precondition checks, so a race that was
        genuinely lost surfaces as the precondition error, not a conflict.
        """
        max_retries = self._settings.allocation_max_retries
        attempt = 0
        while True:
            try:
                return operation_fn()
            except ConcurrencyConflictError as exc:
                attempt += 1
                if attempt > max_retries:
                    logger.warning(
                        "Concurrency conflict not resolved | operation=%s | attempts=%s | %s",
                        operation,
                        attempt,
                        context,
                    )
                    raise
                logger.warning(
                    "Concurrency conflict, retrying | operation=%s | attempt=%s | reason=%s | %s",
                    operation,
                    attempt,
                    exc.message,
                    context,
                )
                time.sleep(self._settings.allocation_retry_backoff_seconds * attempt)

    def _allocate_once(
        self,
        *,
        request_id: int,
        student_id: str,
        hostel_id: int,
        room_number: str,
        bed_number: Optional[str],
        notes: Optional[str],
    ) -> AllocationResult:
        with self._repository.transaction() as conn:
            replay = self._repository.find_ledger_entry_by_key(conn, allocation_key(request_id))
            if replay is not None:
                entry, occupancy = replay
                original = self.result_from_ledger(conn, entry, occupancy)
                logger.info(
                    "Allocation replay detected | request_id=%s | accommodation_id=%s",
                    request_id,
                    entry.accommodation_id,
                )
                raise AlreadyProcessedError(
                    f"Request {request_id} was already allocated",
                    original=original,
                    request_id=request_id,
                )

            request = self._load_pending_request(conn, request_id, student_id)
            room = self._inventory.get_room(hostel_id, room_number, conn=conn)
            now = utc_now()
            binding = self.bind_bed(
                conn,
                request=request,
                room=room,
                bed_number=bed_number,
                allocated_at=now,
            )

            if not self._repository.transition_request(
                conn,
                request_id=request_id,
                expected_status=RequestStatus.PENDING,
                new_status=RequestStatus.ALLOCATED,
                admin_notes=notes,
            ):
                raise ConcurrencyConflictError(
                    f"Request {request_id} changed state during allocation",
                    request_id=request_id,
                )

            entry_id = self._repository.append_ledger_entry(
                conn,
                event_type=LedgerEventType.ALLOCATE,
                bed_id=binding.bed.bed_id,
                room_id=room.room_id,
                student_id=student_id,
                request_id=request_id,
                accommodation_id=binding.accommodation_id,
                room_occupancy_after=binding.room_occupancy,
                idempotency_key=allocation_key(request_id),
                recorded_at=now,
            )

        logger.info(
            "Allocation committed | request_id=%s | student_id=%s | room=%s | bed=%s | occupancy=%s/%s",
            request_id,
            student_id,
            room.room_number,
            binding.bed.bed_number,
            binding.room_occupancy,
            room.capacity,
        )
        return AllocationResult(
            request_id=request_id,
            accommodation_id=binding.accommodation_id,
            student_id=student_id,
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

    def _load_pending_request(
        self,
        conn: sqlite3.Connection,
        request_id: int,
        student_id: str,
    ) -> AllocationRequest:
        request = self._repository.get_request(conn, request_id)
        if request is None:
            raise InvalidRequestStateError(
                f"Request {request_id} does not exist",
                request_id=request_id,
            )
        if request.status.is_terminal:
            raise InvalidRequestStateError(
                f"Request {request_id} is {request.status.value}, expected Pending",
                request_id=request_id,
                status=request.status.value,
            )
        if request.student_id != student_id:
            raise InvalidRequestStateError(
                f"Request {request_id} belongs to a different student",
                request_id=request_id,
                student_id=student_id,
            )
        return request

    def bind_bed(
        self,
        conn: sqlite3.Connection,
        *,
        request: AllocationRequest,
        room: Room,
        bed_number: Optional[str],
        allocated_at: str,
    ) -> BedBinding:
        """Claim a bed plus one capacity unit, then write the accommodation.

        Must run inside a write transaction.
        """
        self._ensure_student_free(conn, request)
        # Named bed before capacity: a lost race for it is BedUnavailable.
        if bed_number is not None and bed_number.strip():
            bed = self._select_bed(conn, room, bed_number)
            permit = self._inventory.reserve_capacity(room.room_id, conn=conn)
        else:
            permit = self._inventory.reserve_capacity(room.room_id, conn=conn)
            bed = self._select_bed(conn, room, None)

        if not self._repository.compare_and_set_bed_status(
            conn,
            bed_id=bed.bed_id,
            expected_status=BedStatus.AVAILABLE,
            expected_version=bed.version,
            new_status=BedStatus.OCCUPIED,
        ):
            raise ConcurrencyConflictError(
                f"Bed {bed.bed_number} in room {room.room_number} changed concurrently",
                bed_id=bed.bed_id,
            )

        accommodation_id = self._repository.insert_accommodation(
            conn,
            student_id=request.student_id,
            room_id=room.room_id,
            bed_id=bed.bed_id,
            request_id=request.request_id,
            allocation_date=allocated_at[:10],
            semester=request.semester,
            academic_year=request.academic_year,
        )
        return BedBinding(
            room=room,
            bed=bed,
            accommodation_id=accommodation_id,
            room_occupancy=permit.occupancy_after,
        )

    def _select_bed(
        self,
        conn: sqlite3.Connection,
        room: Room,
        bed_number: Optional[str],
    ) -> Bed:
        if bed_number is None or not bed_number.strip():
            candidates = self._inventory.list_candidate_beds(room.room_id, conn=conn)
            if not candidates:
                raise BedUnavailableError(
                    f'Room "{room.room_number}" has no available bed',
                    room_id=room.room_id,
                )
            return candidates[0]

        bed = self._repository.find_bed(conn, room.room_id, bed_number.strip())
        if bed is None:
            raise BedUnavailableError(
                f'{bed_number} does not exist in room "{room.room_number}"',
                room_id=room.room_id,
                bed_number=bed_number,
            )
        if bed.status is not BedStatus.AVAILABLE:
            raise BedUnavailableError(
                f'{bed.bed_number} in room "{room.room_number}" is {bed.status.value}',
                room_id=room.room_id,
                bed_number=bed.bed_number,
                status=bed.status.value,
            )
        return bed

    def _ensure_student_free(
        self,
        conn: sqlite3.Connection,
        request: AllocationRequest,
    ) -> None:
        if self._settings.allocation_uniqueness_scope == "semester":
            existing = self._repository.find_active_accommodation(
                conn,
                student_id=request.student_id,
                academic_year=request.academic_year,
                semester=request.semester,
            )
        else:
            existing = self._repository.find_active_accommodation(
                conn,
                student_id=request.student_id,
            )
        if existing is not None:
            raise StudentAlreadyAllocatedError(
                f"Student {request.student_id} already holds an active accommodation",
                student_id=request.student_id,
                accommodation_id=existing.accommodation_id,
            )

    def result_from_ledger(
        self,
        conn: sqlite3.Connection,
        entry: LedgerEntry,
        room_occupancy: int,
    ) -> AllocationResult:
        """Rebuild the result originally returned for a committed allocation."""
        room = self._repository.get_room_by_id(conn, entry.room_id)
        bed = self._repository.get_bed(conn, entry.bed_id)
        assert room is not None and bed is not None
        return AllocationResult(
            request_id=entry.request_id,
            accommodation_id=entry.accommodation_id,
            student_id=entry.student_id,
            hostel_id=room.hostel_id,
            room_id=room.room_id,
            room_number=room.room_number,
            bed_id=bed.bed_id,
            bed_number=bed.bed_number,
            room_occupancy=room_occupancy,
            room_capacity=room.capacity,
            ledger_entry_id=entry.entry_id,
            allocated_at=entry.recorded_at,
        )
