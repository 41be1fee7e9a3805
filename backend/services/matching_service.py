"""Automated matcher: proposes request -> bed assignments with CP-SAT."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ortools.sat.python import cp_model

from backend.domain.errors import AllocationError
from backend.domain.models import (
    AllocationRequest,
    AllocationResult,
    Bed,
    MatchingResult,
    MatchProposal,
    Room,
)
from backend.repository.data_repository import DataRepository
from backend.services.allocation_service import AllocationEngine
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

FLOOR_MATCH_WEIGHT = 0.6
ROOM_TYPE_MATCH_WEIGHT = 0.4

PriorityPolicy = Callable[[AllocationRequest, int, int], float]


def first_come_first_served(request: AllocationRequest, rank: int, total: int) -> float:
    """Older requests (lower rank) weigh up to 0.5 more than the newest."""
    del request
    if total <= 1:
        return 0.5
    return 0.5 * (total - 1 - rank) / (total - 1)


@dataclass(frozen=True)
class BuildArtifacts:
    model: Any
    variables: dict[tuple[int, int], Any]
    objective_coefficients: dict[tuple[int, int], int]


@dataclass(frozen=True)
class MatchFailure:
    request_id: int
    kind: str
    message: str


@dataclass(frozen=True)
class MatcherRunReport:
    committed: list[AllocationResult] = field(default_factory=list)
    failures: list[MatchFailure] = field(default_factory=list)
    unmatched_request_ids: list[int] = field(default_factory=list)


def preference_score(request: AllocationRequest, room: Room) -> float:
    score = 1.0
    if request.preferences.floor_id is not None and request.preferences.floor_id == room.floor_id:
        score += FLOOR_MATCH_WEIGHT
    if request.preferences.room_type is not None and request.preferences.room_type is room.room_type:
        score += ROOM_TYPE_MATCH_WEIGHT
    return score


def build_model(
    *,
    requests: list[AllocationRequest],
    beds: list[tuple[Bed, Room]],
    priority_policy: PriorityPolicy,
    objective_scale: int,
) -> BuildArtifacts:
    """Build the CP-SAT assignment model.

    The preferred hostel is a hard constraint; floor and room type only
    add to the objective.
    """
    model = cp_model.CpModel()
    variables: dict[tuple[int, int], cp_model.IntVar] = {}
    objective_coefficients: dict[tuple[int, int], int] = {}
    total = len(requests)

    for rank, request in enumerate(requests):
        priority = priority_policy(request, rank, total)
        for bed, room in beds:
            if room.hostel_id != request.preferences.hostel_id:
                continue
            pair = (request.request_id, bed.bed_id)
            variables[pair] = model.NewBoolVar(f"x_req_{request.request_id}_bed_{bed.bed_id}")
            coefficient = int(round((preference_score(request, room) + priority) * objective_scale))
            objective_coefficients[pair] = max(0, coefficient)

    for request in requests:
        request_vars = [
            var
            for (request_id, _), var in variables.items()
            if request_id == request.request_id
        ]
        if request_vars:
            model.Add(sum(request_vars) <= 1)

    room_slots: dict[int, int] = {}
    bed_room: dict[int, int] = {}
    for bed, room in beds:
        room_slots[room.room_id] = room.available_slots
        bed_room[bed.bed_id] = room.room_id
        bed_vars = [
            var
            for (_, bed_id), var in variables.items()
            if bed_id == bed.bed_id
        ]
        if bed_vars:
            model.Add(sum(bed_vars) <= 1)

    for room_id, slots in room_slots.items():
        room_vars = [
            var
            for (_, bed_id), var in variables.items()
            if bed_room[bed_id] == room_id
        ]
        if room_vars:
            model.Add(sum(room_vars) <= slots)

    if variables:
        model.Maximize(
            sum(
                objective_coefficients[pair] * var
                for pair, var in variables.items()
            )
        )
    else:
        model.Maximize(0)

    return BuildArtifacts(
        model=model,
        variables=variables,
        objective_coefficients=objective_coefficients,
    )


def solve_model(
    *,
    artifacts: BuildArtifacts,
    requests: list[AllocationRequest],
    beds: list[tuple[Bed, Room]],
    settings: Settings,
) -> MatchingResult:
    if not requests or not artifacts.variables:
        return MatchingResult(
            proposals=[],
            objective_value=0.0,
            unmatched_request_ids=[request.request_id for request in requests],
        )

    solver = cp_model.CpSolver()
    solver.parameters.max_time_in_seconds = float(settings.matcher_max_time_seconds)
    solver.parameters.num_search_workers = settings.matcher_workers
    solver.parameters.random_seed = settings.matcher_random_seed

    status = solver.Solve(artifacts.model)
    status_name = solver.StatusName(status)
    if status not in (cp_model.OPTIMAL, cp_model.FEASIBLE):
        logger.warning("Matcher solve failed | status=%s", status_name)
        return MatchingResult(
            proposals=[],
            objective_value=0.0,
            unmatched_request_ids=[request.request_id for request in requests],
        )

    request_lookup = {request.request_id: request for request in requests}
    bed_lookup = {bed.bed_id: (bed, room) for bed, room in beds}
    proposals: list[MatchProposal] = []
    for (request_id, bed_id), var in artifacts.variables.items():
        if solver.Value(var) != 1:
            continue
        request = request_lookup[request_id]
        bed, room = bed_lookup[bed_id]
        proposals.append(
            MatchProposal(
                request_id=request_id,
                student_id=request.student_id,
                hostel_id=room.hostel_id,
                room_id=room.room_id,
                room_number=room.room_number,
                bed_id=bed_id,
                bed_number=bed.bed_number,
                score=artifacts.objective_coefficients[(request_id, bed_id)]
                / settings.matcher_objective_scale,
            )
        )
    proposals.sort(key=lambda proposal: proposal.request_id)

    matched = {proposal.request_id for proposal in proposals}
    unmatched = [request.request_id for request in requests if request.request_id not in matched]
    objective_value = float(solver.ObjectiveValue()) / settings.matcher_objective_scale
    logger.info(
        "Matcher solve completed | status=%s | objective_value=%.3f | proposals=%s | unmatched=%s",
        status_name,
        objective_value,
        len(proposals),
        len(unmatched),
    )
    return MatchingResult(
        proposals=proposals,
        objective_value=objective_value,
        unmatched_request_ids=unmatched,
    )


class MatchingService:
    """Proposes candidates for pending requests and commits them via the engine.

    The matcher only reads; every write goes through
    :meth:`AllocationEngine.allocate`, so proposals that went stale since the
    solve fail with the engine's typed errors.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        allocation_engine: Optional[AllocationEngine] = None,
        settings: Optional[Settings] = None,
        priority_policy: PriorityPolicy = first_come_first_served,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._engine = allocation_engine or AllocationEngine(
            repository=self._repository,
            settings=self._settings,
        )
        self._priority_policy = priority_policy

    def propose_matches(self, hostel_id: Optional[int] = None) -> MatchingResult:
        with self._repository.using(None) as conn:
            pending = self._repository.list_pending_requests(conn, hostel_id)
            eligible: list[AllocationRequest] = []
            blocked: list[int] = []
            for request in pending:
                if self._repository.find_active_accommodation(
                    conn,
                    student_id=request.student_id,
                    academic_year=(
                        request.academic_year
                        if self._settings.allocation_uniqueness_scope == "semester"
                        else None
                    ),
                    semester=(
                        request.semester
                        if self._settings.allocation_uniqueness_scope == "semester"
                        else None
                    ),
                ) is None:
                    eligible.append(request)
                else:
                    blocked.append(request.request_id)
            beds = self._repository.list_available_beds(conn, hostel_id)

        eligible = _one_request_per_student(eligible, blocked)
        artifacts = build_model(
            requests=eligible,
            beds=beds,
            priority_policy=self._priority_policy,
            objective_scale=self._settings.matcher_objective_scale,
        )
        result = solve_model(
            artifacts=artifacts,
            requests=eligible,
            beds=beds,
            settings=self._settings,
        )
        if not blocked:
            return result
        return MatchingResult(
            proposals=result.proposals,
            objective_value=result.objective_value,
            unmatched_request_ids=sorted(result.unmatched_request_ids + blocked),
        )

    def run_matcher(self, hostel_id: Optional[int] = None) -> MatcherRunReport:
        matching = self.propose_matches(hostel_id)
        report = MatcherRunReport(unmatched_request_ids=list(matching.unmatched_request_ids))
        for proposal in matching.proposals:
            try:
                report.committed.append(
                    self._engine.allocate(
                        request_id=proposal.request_id,
                        student_id=proposal.student_id,
                        hostel_id=proposal.hostel_id,
                        room_number=proposal.room_number,
                        bed_number=proposal.bed_number,
                        notes="Allocated by automated matcher",
                    )
                )
            except AllocationError as exc:
                logger.info(
                    "Matcher proposal rejected | request_id=%s | kind=%s",
                    proposal.request_id,
                    exc.kind.value,
                )
                report.failures.append(
                    MatchFailure(
                        request_id=proposal.request_id,
                        kind=exc.kind.value,
                        message=exc.message,
                    )
                )
        logger.info(
            "Matcher run completed | committed=%s | failed=%s | unmatched=%s",
            len(report.committed),
            len(report.failures),
            len(report.unmatched_request_ids),
        )
        return report


def _one_request_per_student(
    requests: list[AllocationRequest],
    skipped: list[int],
) -> list[AllocationRequest]:
    """Keep each student's oldest pending request; the rest go to ``skipped``."""
    seen: set[str] = set()
    kept: list[AllocationRequest] = []
    for request in requests:
        if request.student_id in seen:
            skipped.append(request.request_id)
            continue
        seen.add(request.student_id)
        kept.append(request)
    return kept
