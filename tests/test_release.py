from __future__ import annotations

from dataclasses import replace

import pytest

from backend.domain.errors import (
    AccommodationNotFoundError,
    BedUnavailableError,
    CapacityExceededError,
    RoomNotFoundError,
)
from backend.domain.models import BedStatus, LedgerEventType, RoomType
from backend.repository.data_repository import DataRepository
from backend.services.allocation_service import AllocationEngine
from backend.services.inventory_service import InventoryService
from backend.services.ledger_service import OccupancyLedgerService
from backend.services.release_service import ReleaseService
from backend.services.request_service import RequestService
from backend.utils.config import get_settings


def _build_services(tmp_path):
    get_settings.cache_clear()
    settings = replace(
        get_settings(),
        database_path=tmp_path / "release.db",
        allocation_retry_backoff_seconds=0.0,
    )
    repository = DataRepository(settings)
    repository.initialize_database()
    inventory = InventoryService(repository=repository, settings=settings)
    engine = AllocationEngine(repository=repository, inventory_service=inventory, settings=settings)
    release = ReleaseService(
        repository=repository,
        allocation_engine=engine,
        inventory_service=inventory,
        settings=settings,
    )
    requests = RequestService(repository=repository, settings=settings)
    ledger = OccupancyLedgerService(repository=repository, settings=settings)

    hostel = inventory.create_hostel(name="Unity Hall", code="UH")
    for floor_number, room_number, room_type in (
        (1, "A101", RoomType.DOUBLE),
        (1, "A103", RoomType.SINGLE),
        (2, "A201", RoomType.TRIPLE),
    ):
        inventory.create_room(
            hostel_id=hostel.hostel_id,
            floor_number=floor_number,
            room_number=room_number,
            room_type=room_type,
        )
    return hostel.hostel_id, inventory, engine, release, requests, ledger


def _allocate(hostel_id, engine, requests, student_id, room_number, bed_number=None):
    request = requests.submit_request(
        student_id=student_id,
        hostel_id=hostel_id,
        academic_year="2024/2025",
        semester="First Semester",
    )
    return engine.allocate(
        request_id=request.request_id,
        student_id=student_id,
        hostel_id=hostel_id,
        room_number=room_number,
        bed_number=bed_number,
    )


def test_allocate_release_round_trip_restores_inventory(tmp_path):
    hostel_id, inventory, engine, release, requests, ledger = _build_services(tmp_path)
    before = inventory.get_room(hostel_id, "A101")

    allocated = _allocate(hostel_id, engine, requests, "S1", "A101", "Bed 2")
    released = release.release(allocated.accommodation_id, reason="Checkout")

    after = inventory.get_room(hostel_id, "A101")
    assert after.current_occupancy == before.current_occupancy
    assert released.bed_number == "Bed 2"
    assert released.reason == "Checkout"
    beds = {bed.bed_number: bed.status for bed in inventory.list_candidate_beds(after.room_id)}
    assert beds == {"Bed 1": BedStatus.AVAILABLE, "Bed 2": BedStatus.AVAILABLE}

    entries = ledger.entries(bed_id=allocated.bed_id)
    assert [entry.event_type for entry in entries] == [
        LedgerEventType.ALLOCATE,
        LedgerEventType.RELEASE,
    ]
    assert {entry.accommodation_id for entry in entries} == {allocated.accommodation_id}
    assert ledger.reconstruct_occupancy()[after.room_id] == 0
    assert ledger.reconcile().is_consistent


def test_released_bed_is_immediately_allocatable(tmp_path):
    hostel_id, inventory, engine, release, requests, ledger = _build_services(tmp_path)
    first = _allocate(hostel_id, engine, requests, "S1", "A103")
    release.release(first.accommodation_id)

    second = _allocate(hostel_id, engine, requests, "S2", "A103")

    assert second.bed_id == first.bed_id
    assert second.room_occupancy == 1


def test_releasing_twice_reports_missing_accommodation(tmp_path):
    hostel_id, inventory, engine, release, requests, ledger = _build_services(tmp_path)
    allocated = _allocate(hostel_id, engine, requests, "S1", "A101")
    release.release(allocated.accommodation_id)

    with pytest.raises(AccommodationNotFoundError):
        release.release(allocated.accommodation_id)
    with pytest.raises(AccommodationNotFoundError):
        release.release(9999)
    assert inventory.get_room(hostel_id, "A101").current_occupancy == 0
    assert len(ledger.entries()) == 2


def test_released_student_can_be_allocated_again(tmp_path):
    hostel_id, inventory, engine, release, requests, ledger = _build_services(tmp_path)
    allocated = _allocate(hostel_id, engine, requests, "S1", "A101")
    release.release(allocated.accommodation_id)

    renewed = requests.submit_request(
        student_id="S1",
        hostel_id=hostel_id,
        academic_year="2024/2025",
        semester="Second Semester",
    )
    result = engine.allocate(
        request_id=renewed.request_id,
        student_id="S1",
        hostel_id=hostel_id,
        room_number="A201",
    )
    assert result.room_number == "A201"


def test_reassign_moves_occupant_atomically(tmp_path):
    hostel_id, inventory, engine, release, requests, ledger = _build_services(tmp_path)
    allocated = _allocate(hostel_id, engine, requests, "S1", "A101", "Bed 1")

    moved = release.reassign(
        accommodation_id=allocated.accommodation_id,
        hostel_id=hostel_id,
        room_number="A201",
        bed_number="Bed 3",
        reason="Room change",
    )

    assert moved.request_id == allocated.request_id
    assert moved.accommodation_id != allocated.accommodation_id
    assert moved.room_number == "A201"
    assert moved.bed_number == "Bed 3"
    assert inventory.get_room(hostel_id, "A101").current_occupancy == 0
    assert inventory.get_room(hostel_id, "A201").current_occupancy == 1
    assert [entry.event_type for entry in ledger.entries(request_id=allocated.request_id)] == [
        LedgerEventType.ALLOCATE,
        LedgerEventType.RELEASE,
        LedgerEventType.ALLOCATE,
    ]
    assert ledger.reconcile().is_consistent


def test_reassign_within_the_same_room(tmp_path):
    hostel_id, inventory, engine, release, requests, ledger = _build_services(tmp_path)
    allocated = _allocate(hostel_id, engine, requests, "S1", "A101", "Bed 1")

    moved = release.reassign(
        accommodation_id=allocated.accommodation_id,
        hostel_id=hostel_id,
        room_number="A101",
        bed_number="Bed 2",
    )

    assert moved.bed_number == "Bed 2"
    assert inventory.get_room(hostel_id, "A101").current_occupancy == 1


@pytest.mark.parametrize(
    ("room_number", "bed_number", "error"),
    [
        ("Z999", None, RoomNotFoundError),
        ("A103", None, CapacityExceededError),
        ("A101", "Bed 2", BedUnavailableError),
    ],
)
def test_failed_reassign_leaves_original_accommodation(tmp_path, room_number, bed_number, error):
    hostel_id, inventory, engine, release, requests, ledger = _build_services(tmp_path)
    allocated = _allocate(hostel_id, engine, requests, "S1", "A101", "Bed 1")
    _allocate(hostel_id, engine, requests, "S2", "A101", "Bed 2")
    _allocate(hostel_id, engine, requests, "S3", "A103")

    with pytest.raises(error):
        release.reassign(
            accommodation_id=allocated.accommodation_id,
            hostel_id=hostel_id,
            room_number=room_number,
            bed_number=bed_number,
        )

    assert inventory.get_room(hostel_id, "A101").current_occupancy == 2
    assert [item.student_id for item in inventory.list_roommates("S2")] == ["S1"]
    assert ledger.reconcile().is_consistent


def test_roommates_lists_other_active_occupants(tmp_path):
    hostel_id, inventory, engine, release, requests, ledger = _build_services(tmp_path)
    _allocate(hostel_id, engine, requests, "S1", "A201")
    second = _allocate(hostel_id, engine, requests, "S2", "A201")
    _allocate(hostel_id, engine, requests, "S3", "A201")
    _allocate(hostel_id, engine, requests, "S4", "A101")

    assert sorted(item.student_id for item in inventory.list_roommates("S1")) == ["S2", "S3"]
    release.release(second.accommodation_id)
    assert [item.student_id for item in inventory.list_roommates("S1")] == ["S3"]
    assert inventory.list_roommates("S4") == []
    assert inventory.list_roommates("nobody") == []
