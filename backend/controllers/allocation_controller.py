"""HTTP controller layer for allocation, release, reassignment and matching."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from backend.controllers.dependencies import (
    get_allocation_engine,
    get_matching_service,
    get_release_service,
    require_admin,
    to_http_error,
)
from backend.domain.errors import AllocationError
from backend.domain.models import AllocationResult, MatchProposal
from backend.services.allocation_service import AllocationEngine
from backend.services.matching_service import MatchingService
from backend.services.release_service import ReleaseService
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["allocation"])


class AllocateRequest(BaseModel):
    """Input DTO validated before entering the engine."""

    request_id: int = Field(gt=0)
    student_id: str = Field(min_length=1, max_length=64)
    hostel_id: int = Field(gt=0)
    room_number: str = Field(min_length=1, max_length=20)
    bed_number: Optional[str] = Field(default=None, max_length=20)
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("student_id", "room_number")
    @classmethod
    def validate_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("value must not be blank")
        return value.strip()


class AllocationResponse(BaseModel):
    request_id: int = Field(gt=0)
    accommodation_id: int = Field(gt=0)
    student_id: str
    hostel_id: int = Field(gt=0)
    room_id: int = Field(gt=0)
    room_number: str
    bed_id: int = Field(gt=0)
    bed_number: str
    room_occupancy: int = Field(ge=0)
    room_capacity: int = Field(ge=1)
    ledger_entry_id: int = Field(gt=0)
    allocated_at: str

    @classmethod
    def from_result(cls, result: AllocationResult) -> "AllocationResponse":
        return cls(**result.to_dict())


class ReleaseRequest(BaseModel):
    accommodation_id: int = Field(gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class ReleaseResponse(BaseModel):
    accommodation_id: int = Field(gt=0)
    student_id: str
    room_id: int = Field(gt=0)
    bed_id: int = Field(gt=0)
    bed_number: str
    room_occupancy: int = Field(ge=0)
    ledger_entry_id: int = Field(gt=0)
    released_at: str
    reason: Optional[str] = None


class ReassignRequest(BaseModel):
    accommodation_id: int = Field(gt=0)
    hostel_id: int = Field(gt=0)
    room_number: str = Field(min_length=1, max_length=20)
    bed_number: Optional[str] = Field(default=None, max_length=20)
    reason: Optional[str] = Field(default=None, max_length=500)


class MatchProposalResponse(BaseModel):
    request_id: int = Field(gt=0)
    student_id: str
    hostel_id: int = Field(gt=0)
    room_id: int = Field(gt=0)
    room_number: str
    bed_id: int = Field(gt=0)
    bed_number: str
    score: float = Field(ge=0.0)

    @classmethod
    def from_proposal(cls, proposal: MatchProposal) -> "MatchProposalResponse":
        return cls(
            request_id=proposal.request_id,
            student_id=proposal.student_id,
            hostel_id=proposal.hostel_id,
            room_id=proposal.room_id,
            room_number=proposal.room_number,
            bed_id=proposal.bed_id,
            bed_number=proposal.bed_number,
            score=proposal.score,
        )


class MatchFailureResponse(BaseModel):
    request_id: int = Field(gt=0)
    kind: str
    message: str


class MatchResponse(BaseModel):
    proposals: list[MatchProposalResponse] = Field(default_factory=list)
    objective_value: float = Field(default=0.0, ge=0.0)
    committed: list[AllocationResponse] = Field(default_factory=list)
    failures: list[MatchFailureResponse] = Field(default_factory=list)
    unmatched_request_ids: list[int] = Field(default_factory=list)


@router.post(
    "/allocate",
    response_model=AllocationResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
def allocate(
    payload: AllocateRequest,
    engine: AllocationEngine = Depends(get_allocation_engine),
) -> AllocationResponse:
    """Bind a pending request to a bed; replays return 409 with the original result."""
    try:
        result = engine.allocate(
            request_id=payload.request_id,
            student_id=payload.student_id,
            hostel_id=payload.hostel_id,
            room_number=payload.room_number,
            bed_number=payload.bed_number,
            notes=payload.notes,
        )
        return AllocationResponse.from_result(result)
    except AllocationError as exc:
        logger.info(
            "Allocation rejected | request_id=%s | kind=%s | message=%s",
            payload.request_id,
            exc.kind.value,
            exc.message,
        )
        raise to_http_error(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected allocation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to allocate bed",
        ) from exc


@router.post(
    "/release",
    response_model=ReleaseResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
def release(
    payload: ReleaseRequest,
    service: ReleaseService = Depends(get_release_service),
) -> ReleaseResponse:
    try:
        result = service.release(payload.accommodation_id, payload.reason)
        return ReleaseResponse(
            accommodation_id=result.accommodation_id,
            student_id=result.student_id,
            room_id=result.room_id,
            bed_id=result.bed_id,
            bed_number=result.bed_number,
            room_occupancy=result.room_occupancy,
            ledger_entry_id=result.ledger_entry_id,
            released_at=result.released_at,
            reason=result.reason,
        )
    except AllocationError as exc:
        logger.info(
            "Release rejected | accommodation_id=%s | kind=%s",
            payload.accommodation_id,
            exc.kind.value,
        )
        raise to_http_error(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected release failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to release accommodation",
        ) from exc


@router.post(
    "/reassign",
    response_model=AllocationResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
def reassign(
    payload: ReassignRequest,
    service: ReleaseService = Depends(get_release_service),
) -> AllocationResponse:
    try:
        result = service.reassign(
            accommodation_id=payload.accommodation_id,
            hostel_id=payload.hostel_id,
            room_number=payload.room_number,
            bed_number=payload.bed_number,
            reason=payload.reason,
        )
        return AllocationResponse.from_result(result)
    except AllocationError as exc:
        logger.info(
            "Reassignment rejected | accommodation_id=%s | kind=%s",
            payload.accommodation_id,
            exc.kind.value,
        )
        raise to_http_error(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected reassignment failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reassign accommodation",
        ) from exc


@router.post(
    "/match",
    response_model=MatchResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
def match(
    hostel_id: Optional[int] = Query(default=None, gt=0),
    commit: bool = Query(default=False),
    service: MatchingService = Depends(get_matching_service),
) -> MatchResponse:
    """Propose request -> bed matches; with ``commit`` they go through the engine."""
    try:
        if not commit:
            result = service.propose_matches(hostel_id)
            return MatchResponse(
                proposals=[MatchProposalResponse.from_proposal(item) for item in result.proposals],
                objective_value=result.objective_value,
                unmatched_request_ids=result.unmatched_request_ids,
            )
        report = service.run_matcher(hostel_id)
        return MatchResponse(
            committed=[AllocationResponse.from_result(item) for item in report.committed],
            failures=[
                MatchFailureResponse(
                    request_id=item.request_id,
                    kind=item.kind,
                    message=item.message,
                )
                for item in report.failures
            ],
            unmatched_request_ids=report.unmatched_request_ids,
        )
    except AllocationError as exc:
        raise to_http_error(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected matcher failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run matcher",
        ) from exc
