from __future__ import annotations

import sqlite3
from dataclasses import dataclass, replace

import pytest

from backend.domain.errors import (
    AlreadyProcessedError,
    BedUnavailableError,
    CapacityExceededError,
    ErrorKind,
    InvalidRequestStateError,
    PersistenceFailureError,
    RoomNotFoundError,
    StudentAlreadyAllocatedError,
)
from backend.domain.models import BedStatus, LedgerEventType, RequestStatus, RoomType
from backend.repository.data_repository import DataRepository
from backend.services.allocation_service import AllocationEngine
from backend.services.inventory_service import InventoryService
from backend.services.ledger_service import OccupancyLedgerService
from backend.services.release_service import ReleaseService
from backend.services.request_service import RequestService
from backend.utils.config import get_settings


@dataclass
class Core:
    hostel_id: int
    repository: DataRepository
    inventory: InventoryService
    requests: RequestService
    engine: AllocationEngine
    release: ReleaseService
    ledger: OccupancyLedgerService


def _build_core(tmp_path, **overrides) -> Core:
    get_settings.cache_clear()
    settings = replace(
        get_settings(),
        database_path=tmp_path / "allocation.db",
        allocation_retry_backoff_seconds=0.0,
        **overrides,
    )
    repository = DataRepository(settings)
    repository.initialize_database()
    inventory = InventoryService(repository=repository, settings=settings)
    engine = AllocationEngine(repository=repository, inventory_service=inventory, settings=settings)
    hostel = inventory.create_hostel(name="Unity Hall", code="UH")
    inventory.create_room(
        hostel_id=hostel.hostel_id, floor_number=1, room_number="A101", room_type=RoomType.DOUBLE
    )
    inventory.create_room(
        hostel_id=hostel.hostel_id, floor_number=1, room_number="A103", room_type=RoomType.SINGLE
    )
    return Core(
        hostel_id=hostel.hostel_id,
        repository=repository,
        inventory=inventory,
        requests=RequestService(repository=repository, settings=settings),
        engine=engine,
        release=ReleaseService(
            repository=repository,
            allocation_engine=engine,
            inventory_service=inventory,
            settings=settings,
        ),
        ledger=OccupancyLedgerService(repository=repository, settings=settings),
    )


def _submit(core: Core, student_id: str, semester: str = "First Semester") -> int:
    request = core.requests.submit_request(
        student_id=student_id,
        hostel_id=core.hostel_id,
        academic_year="2024/2025",
        semester=semester,
    )
    return request.request_id


def _allocate(core: Core, request_id: int, student_id: str, room: str = "A101", bed=None):
    return core.engine.allocate(
        request_id=request_id,
        student_id=student_id,
        hostel_id=core.hostel_id,
        room_number=room,
        bed_number=bed,
    )


def _bed_statuses(core: Core, room_number: str) -> dict[str, BedStatus]:
    snapshot = core.inventory.snapshot(core.hostel_id)
    room = next(item for item in snapshot.hostels[0].rooms if item.room_number == room_number)
    return {bed.bed_number: bed.status for bed in room.beds}


def _occupancy(core: Core, room_number: str) -> int:
    return core.inventory.get_room(core.hostel_id, room_number).current_occupancy


def test_a101_scenario(tmp_path):
    core = _build_core(tmp_path)
    s1, s2, s3 = (_submit(core, student) for student in ("S1", "S2", "S3"))

    first = _allocate(core, s1, "S1", bed="Bed 1")
    assert first.bed_number == "Bed 1"
    assert first.room_occupancy == 1
    assert _bed_statuses(core, "A101")["Bed 1"] is BedStatus.OCCUPIED

    with pytest.raises(BedUnavailableError):
        _allocate(core, s2, "S2", bed="Bed 1")

    second = _allocate(core, s2, "S2", bed="Bed 2")
    assert second.room_occupancy == 2
    assert _occupancy(core, "A101") == 2

    for bed in ("Bed 1", "Bed 2", None):
        with pytest.raises((CapacityExceededError, BedUnavailableError)):
            _allocate(core, s3, "S3", bed=bed)

    released = core.release.release(first.accommodation_id, reason="Checkout")
    assert released.room_occupancy == 1
    assert _occupancy(core, "A101") == 1
    assert _bed_statuses(core, "A101") == {
        "Bed 1": BedStatus.AVAILABLE,
        "Bed 2": BedStatus.OCCUPIED,
    }
    assert core.requests.get_request(s3).status is RequestStatus.PENDING


def test_allocation_without_bed_uses_lowest_available_bed(tmp_path):
    core = _build_core(tmp_path)
    request_id = _submit(core, "S1")
    room = core.inventory.get_room(core.hostel_id, "A101")
    core.inventory.set_bed_maintenance(core.inventory.list_candidate_beds(room.room_id)[0].bed_id, True)

    result = _allocate(core, request_id, "S1")

    assert result.bed_number == "Bed 2"
    assert core.requests.get_request(request_id).status is RequestStatus.ALLOCATED


def test_replayed_allocation_returns_original_result(tmp_path):
    core = _build_core(tmp_path)
    request_id = _submit(core, "S1")
    original = _allocate(core, request_id, "S1")

    with pytest.raises(AlreadyProcessedError) as excinfo:
        _allocate(core, request_id, "S1")

    assert excinfo.value.kind is ErrorKind.ALREADY_PROCESSED
    assert excinfo.value.original == original
    assert excinfo.value.to_dict()["original"]["accommodation_id"] == original.accommodation_id
    assert _occupancy(core, "A101") == 1
    assert len(core.ledger.entries(request_id=request_id)) == 1


def test_replay_is_detected_even_with_a_different_target(tmp_path):
    core = _build_core(tmp_path)
    request_id = _submit(core, "S1")
    original = _allocate(core, request_id, "S1", room="A101")

    with pytest.raises(AlreadyProcessedError) as excinfo:
        _allocate(core, request_id, "S1", room="A103")

    assert excinfo.value.original.room_number == "A101"
    assert excinfo.value.original.ledger_entry_id == original.ledger_entry_id
    assert _occupancy(core, "A103") == 0


def test_missing_room_is_rejected(tmp_path):
    core = _build_core(tmp_path)
    request_id = _submit(core, "S1")

    with pytest.raises(RoomNotFoundError):
        _allocate(core, request_id, "S1", room="Z999")
    assert core.requests.get_request(request_id).status is RequestStatus.PENDING


def test_unknown_bed_label_is_unavailable(tmp_path):
    core = _build_core(tmp_path)
    request_id = _submit(core, "S1")

    with pytest.raises(BedUnavailableError):
        _allocate(core, request_id, "S1", bed="Bed 9")
    assert _occupancy(core, "A101") == 0


def test_maintenance_bed_is_unavailable(tmp_path):
    core = _build_core(tmp_path)
    room = core.inventory.get_room(core.hostel_id, "A103")
    bed = core.inventory.list_candidate_beds(room.room_id)[0]
    core.inventory.set_bed_maintenance(bed.bed_id, True)
    request_id = _submit(core, "S1")

    with pytest.raises(BedUnavailableError):
        _allocate(core, request_id, "S1", room="A103", bed="Bed 1")
    with pytest.raises(BedUnavailableError):
        _allocate(core, request_id, "S1", room="A103")
    assert _occupancy(core, "A103") == 0


def test_full_room_reports_capacity_exceeded(tmp_path):
    core = _build_core(tmp_path)
    first, second = _submit(core, "S1"), _submit(core, "S2")
    _allocate(core, first, "S1", room="A103")

    with pytest.raises(CapacityExceededError) as excinfo:
        _allocate(core, second, "S2", room="A103")

    assert excinfo.value.context["capacity"] == 1
    assert _occupancy(core, "A103") == 1


@pytest.mark.parametrize("close", ["cancel", "reject"])
def test_closed_request_cannot_be_allocated(tmp_path, close):
    core = _build_core(tmp_path)
    request_id = _submit(core, "S1")
    getattr(core.requests, f"{close}_request")(request_id)

    with pytest.raises(InvalidRequestStateError):
        _allocate(core, request_id, "S1")
    assert _occupancy(core, "A101") == 0


def test_request_of_another_student_is_rejected(tmp_path):
    core = _build_core(tmp_path)
    request_id = _submit(core, "S1")

    with pytest.raises(InvalidRequestStateError):
        _allocate(core, request_id, "S2")


def test_unknown_request_is_rejected(tmp_path):
    core = _build_core(tmp_path)

    with pytest.raises(InvalidRequestStateError) as excinfo:
        _allocate(core, 999, "S1")
    assert excinfo.value.context["request_id"] == 999


def test_student_with_active_accommodation_is_rejected(tmp_path):
    core = _build_core(tmp_path)
    first = _submit(core, "S1", semester="First Semester")
    second = _submit(core, "S1", semester="Second Semester")
    _allocate(core, first, "S1", room="A101")

    with pytest.raises(StudentAlreadyAllocatedError):
        _allocate(core, second, "S1", room="A103")

    assert _occupancy(core, "A103") == 0
    assert core.requests.get_request(second).status is RequestStatus.PENDING


def test_semester_scope_allows_one_accommodation_per_period(tmp_path):
    core = _build_core(tmp_path, allocation_uniqueness_scope="semester")
    first = _submit(core, "S1", semester="First Semester")
    second = _submit(core, "S1", semester="Second Semester")

    _allocate(core, first, "S1", room="A101")
    result = _allocate(core, second, "S1", room="A103")

    assert result.room_number == "A103"
    assert [entry.student_id for entry in core.ledger.entries()] == ["S1", "S1"]
    assert core.ledger.reconcile().is_consistent


def test_storage_failure_rolls_back_every_effect(tmp_path, monkeypatch):
    core = _build_core(tmp_path)
    request_id = _submit(core, "S1")

    def broken_append(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(core.repository, "append_ledger_entry", broken_append)

    with pytest.raises(PersistenceFailureError):
        _allocate(core, request_id, "S1", bed="Bed 1")

    assert _occupancy(core, "A101") == 0
    assert _bed_statuses(core, "A101")["Bed 1"] is BedStatus.AVAILABLE
    assert core.requests.get_request(request_id).status is RequestStatus.PENDING
    assert core.ledger.entries() == []
    assert core.inventory.list_roommates("S1") == []


def test_successful_allocation_writes_one_ledger_entry(tmp_path):
    core = _build_core(tmp_path)
    request_id = _submit(core, "S1")
    result = _allocate(core, request_id, "S1")

    [entry] = core.ledger.entries()
    assert entry.event_type is LedgerEventType.ALLOCATE
    assert entry.entry_id == result.ledger_entry_id
    assert entry.bed_id == result.bed_id
    assert core.ledger.find_allocation(request_id) == entry
    assert core.ledger.reconcile().is_consistent
