"""Request model: reservation lifecycle outside of allocation itself."""

from __future__ import annotations

import secrets
import time
from typing import Optional

from backend.domain.constraints import validate_academic_period
from backend.domain.errors import (
    DuplicateRequestError,
    InvalidRequestStateError,
    InventoryValidationError,
    RequestNotFoundError,
)
from backend.domain.models import AllocationRequest, RequestPreferences, RequestStatus, RoomType
from backend.repository.data_repository import DataRepository, RequestRecord
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class RequestService:
    """Creates pending requests and applies the non-allocation transitions."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def _new_reference(self) -> str:
        return (
            f"{self._settings.reservation_reference_prefix}-"
            f"{int(time.time() * 1000)}-{secrets.randbelow(10_000):04d}"
        )

    def submit_request(
        self,
        *,
        student_id: str,
        hostel_id: int,
        academic_year: str,
        semester: str,
        floor_id: Optional[int] = None,
        room_type: Optional[RoomType] = None,
        special_requests: Optional[str] = None,
    ) -> AllocationRequest:
        """Record a Pending request.

        A student may hold only one Pending or Approved request per academic
        period.
        """
        if not student_id.strip():
            raise InventoryValidationError("student_id must be non-empty")
        try:
            validate_academic_period(academic_year, semester)
        except ValueError as exc:
            raise InventoryValidationError(str(exc)) from exc

        with self._repository.transaction() as conn:
            hostel = self._repository.get_hostel(conn, hostel_id)
            if hostel is None:
                raise InventoryValidationError(
                    f"Hostel {hostel_id} does not exist", hostel_id=hostel_id
                )
            if floor_id is not None:
                floor = self._repository.get_floor(conn, floor_id)
                if floor is None or floor.hostel_id != hostel_id:
                    raise InventoryValidationError(
                        f"Floor {floor_id} does not belong to hostel {hostel_id}",
                        floor_id=floor_id,
                    )
            existing = self._repository.find_open_request_for_period(
                conn,
                student_id=student_id,
                academic_year=academic_year,
                semester=semester,
            )
            if existing is not None:
                raise DuplicateRequestError(
                    "Student already has a pending or approved request for this semester",
                    student_id=student_id,
                    request_id=existing.request_id,
                )
            request_id = self._repository.insert_request(
                conn,
                student_id=student_id,
                preferences=RequestPreferences(
                    hostel_id=hostel_id,
                    floor_id=floor_id,
                    room_type=room_type,
                ),
                academic_year=academic_year,
                semester=semester,
                reference=self._new_reference(),
                special_requests=special_requests,
            )
            request = self._repository.get_request(conn, request_id)
        assert request is not None
        logger.info(
            "Request submitted | request_id=%s | student_id=%s | hostel_id=%s",
            request.request_id,
            student_id,
            hostel_id,
        )
        return request

    def get_request(self, request_id: int) -> AllocationRequest:
        with self._repository.using(None) as conn:
            request = self._repository.get_request(conn, request_id)
        if request is None:
            raise RequestNotFoundError(f"Request {request_id} not found", request_id=request_id)
        return request

    def cancel_request(self, request_id: int, reason: Optional[str] = None) -> AllocationRequest:
        """Pending -> Cancelled. A committed allocation must be released instead."""
        return self._close_pending(request_id, RequestStatus.CANCELLED, reason)

    def reject_request(self, request_id: int, notes: Optional[str] = None) -> AllocationRequest:
        return self._close_pending(request_id, RequestStatus.REJECTED, notes)

    def _close_pending(
        self,
        request_id: int,
        target: RequestStatus,
        notes: Optional[str],
    ) -> AllocationRequest:
        with self._repository.transaction() as conn:
            request = self._repository.get_request(conn, request_id)
            if request is None:
                raise RequestNotFoundError(
                    f"Request {request_id} not found", request_id=request_id
                )
            if not self._repository.transition_request(
                conn,
                request_id=request_id,
                expected_status=RequestStatus.PENDING,
                new_status=target,
                admin_notes=notes,
            ):
                raise InvalidRequestStateError(
                    f"Request {request_id} is {request.status.value}; only Pending requests "
                    f"can be {target.value.lower()}",
                    request_id=request_id,
                    status=request.status.value,
                )
            updated = self._repository.get_request(conn, request_id)
        assert updated is not None
        logger.info(
            "Request closed | request_id=%s | status=%s",
            request_id,
            updated.status.value,
        )
        return updated

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        hostel_id: Optional[int] = None,
    ) -> list[RequestRecord]:
        with self._repository.using(None) as conn:
            return self._repository.list_requests(conn, status=status, hostel_id=hostel_id)

    def seed_demo_requests_if_empty(self, hostel_id: int) -> int:
        """Submit a few pending requests for the demo hostel."""
        with self._repository.using(None) as conn:
            if self._repository.list_requests(conn):
                return 0
        students = [
            ("STU-1001", RoomType.DOUBLE),
            ("STU-1002", RoomType.DOUBLE),
            ("STU-1003", RoomType.SINGLE),
            ("STU-1004", None),
        ]
        for student_id, room_type in students:
            self.submit_request(
                student_id=student_id,
                hostel_id=hostel_id,
                academic_year="2024/2025",
                semester="First Semester",
                room_type=room_type,
            )
        return len(students)
