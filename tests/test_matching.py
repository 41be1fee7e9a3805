from __future__ import annotations

from dataclasses import replace

import pytest

pytest.importorskip("ortools")

from backend.domain.errors import ErrorKind
from backend.domain.models import MatchingResult, RequestStatus, RoomType
from backend.repository.data_repository import DataRepository
from backend.services.allocation_service import AllocationEngine
from backend.services.inventory_service import InventoryService
from backend.services.ledger_service import OccupancyLedgerService
from backend.services.matching_service import MatchingService, first_come_first_served
from backend.services.request_service import RequestService
from backend.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(
        get_settings(),
        database_path=tmp_path / filename,
        matcher_max_time_seconds=5,
        matcher_workers=1,
        matcher_random_seed=7,
    )


def _build_services(tmp_path, filename: str = "matching.db", **matcher_kwargs):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    inventory = InventoryService(repository=repository, settings=settings)
    engine = AllocationEngine(repository=repository, inventory_service=inventory, settings=settings)
    matcher = MatchingService(
        repository=repository,
        allocation_engine=engine,
        settings=settings,
        **matcher_kwargs,
    )
    requests = RequestService(repository=repository, settings=settings)
    ledger = OccupancyLedgerService(repository=repository, settings=settings)
    return settings, repository, inventory, engine, matcher, requests, ledger


def _submit(requests, hostel_id, student_id, **extra):
    return requests.submit_request(
        student_id=student_id,
        hostel_id=hostel_id,
        academic_year="2024/2025",
        semester="First Semester",
        **extra,
    )


def test_priority_policy_prefers_older_requests() -> None:
    assert first_come_first_served(None, 0, 1) == 0.5
    assert first_come_first_served(None, 0, 3) == 0.5
    assert first_come_first_served(None, 2, 3) == 0.0


def test_proposals_respect_preferences_and_hostel(tmp_path):
    _, _, inventory, _, matcher, requests, _ = _build_services(tmp_path)
    north = inventory.create_hostel(name="North", code="N")
    south = inventory.create_hostel(name="South", code="S")
    inventory.create_room(
        hostel_id=north.hostel_id, floor_number=1, room_number="N101", room_type=RoomType.SINGLE
    )
    inventory.create_room(
        hostel_id=north.hostel_id, floor_number=2, room_number="N201", room_type=RoomType.DOUBLE
    )
    inventory.create_room(
        hostel_id=south.hostel_id, floor_number=1, room_number="S101", room_type=RoomType.SINGLE
    )
    wants_single = _submit(requests, north.hostel_id, "S1", room_type=RoomType.SINGLE)
    wants_double = _submit(requests, north.hostel_id, "S2", room_type=RoomType.DOUBLE)
    wants_south = _submit(requests, south.hostel_id, "S3")

    result = matcher.propose_matches()

    by_request = {proposal.request_id: proposal for proposal in result.proposals}
    assert set(by_request) == {
        wants_single.request_id,
        wants_double.request_id,
        wants_south.request_id,
    }
    assert by_request[wants_single.request_id].room_number == "N101"
    assert by_request[wants_double.request_id].room_number == "N201"
    assert by_request[wants_south.request_id].hostel_id == south.hostel_id
    assert len({proposal.bed_id for proposal in result.proposals}) == 3
    assert result.unmatched_request_ids == []
    assert result.objective_value > 0


def test_scarce_beds_go_to_older_requests(tmp_path):
    _, _, inventory, _, matcher, requests, _ = _build_services(tmp_path)
    hostel = inventory.create_hostel(name="North", code="N")
    inventory.create_room(
        hostel_id=hostel.hostel_id, floor_number=1, room_number="N101", room_type=RoomType.SINGLE
    )
    oldest = _submit(requests, hostel.hostel_id, "S1")
    newest = _submit(requests, hostel.hostel_id, "S2")

    result = matcher.propose_matches(hostel.hostel_id)

    assert [proposal.request_id for proposal in result.proposals] == [oldest.request_id]
    assert result.unmatched_request_ids == [newest.request_id]


def test_custom_priority_policy_can_override_age(tmp_path):
    def prefer_vip(request, rank, total):
        return 5.0 if request.special_requests == "VIP" else 0.0

    _, _, inventory, _, matcher, requests, _ = _build_services(
        tmp_path, priority_policy=prefer_vip
    )
    hostel = inventory.create_hostel(name="North", code="N")
    inventory.create_room(
        hostel_id=hostel.hostel_id, floor_number=1, room_number="N101", room_type=RoomType.SINGLE
    )
    _submit(requests, hostel.hostel_id, "S1")
    vip = _submit(requests, hostel.hostel_id, "S2", special_requests="VIP")

    result = matcher.propose_matches(hostel.hostel_id)

    assert [proposal.request_id for proposal in result.proposals] == [vip.request_id]


def test_no_beds_means_everything_unmatched(tmp_path):
    _, _, inventory, _, matcher, requests, _ = _build_services(tmp_path)
    hostel = inventory.create_hostel(name="North", code="N")
    request = _submit(requests, hostel.hostel_id, "S1")

    result = matcher.propose_matches()

    assert result.proposals == []
    assert result.unmatched_request_ids == [request.request_id]


def test_run_matcher_commits_through_engine(tmp_path):
    _, _, inventory, _, matcher, requests, ledger = _build_services(tmp_path)
    hostel = inventory.create_hostel(name="North", code="N")
    inventory.create_room(
        hostel_id=hostel.hostel_id, floor_number=1, room_number="N101", room_type=RoomType.DOUBLE
    )
    submitted = [_submit(requests, hostel.hostel_id, f"S{index}") for index in range(3)]

    report = matcher.run_matcher(hostel.hostel_id)

    assert len(report.committed) == 2
    assert report.failures == []
    assert report.unmatched_request_ids == [submitted[2].request_id]
    assert inventory.get_room(hostel.hostel_id, "N101").current_occupancy == 2
    statuses = {record.request.request_id: record.request.status for record in requests.list_requests()}
    assert list(statuses.values()).count(RequestStatus.ALLOCATED) == 2
    assert ledger.reconcile().is_consistent


def test_stale_proposal_fails_with_engine_error(tmp_path, monkeypatch):
    _, _, inventory, engine, matcher, requests, _ = _build_services(tmp_path)
    hostel = inventory.create_hostel(name="North", code="N")
    inventory.create_room(
        hostel_id=hostel.hostel_id, floor_number=1, room_number="N101", room_type=RoomType.SINGLE
    )
    request = _submit(requests, hostel.hostel_id, "S1")
    proposal = matcher.propose_matches().proposals[0]
    requests.cancel_request(request.request_id)

    stale = MatchingResult(proposals=[proposal], objective_value=proposal.score, unmatched_request_ids=[])
    monkeypatch.setattr(matcher, "propose_matches", lambda hostel_id=None: stale)
    report = matcher.run_matcher()

    assert report.committed == []
    assert [failure.kind for failure in report.failures] == [ErrorKind.INVALID_REQUEST_STATE.value]
    assert inventory.get_room(hostel.hostel_id, "N101").current_occupancy == 0


def test_students_with_active_accommodation_are_skipped(tmp_path):
    _, _, inventory, engine, matcher, requests, _ = _build_services(tmp_path)
    hostel = inventory.create_hostel(name="North", code="N")
    inventory.create_room(
        hostel_id=hostel.hostel_id, floor_number=1, room_number="N101", room_type=RoomType.TRIPLE
    )
    housed = _submit(requests, hostel.hostel_id, "S1")
    engine.allocate(
        request_id=housed.request_id,
        student_id="S1",
        hostel_id=hostel.hostel_id,
        room_number="N101",
    )
    renewal = requests.submit_request(
        student_id="S1",
        hostel_id=hostel.hostel_id,
        academic_year="2024/2025",
        semester="Second Semester",
    )

    result = matcher.propose_matches()

    assert result.proposals == []
    assert result.unmatched_request_ids == [renewal.request_id]
