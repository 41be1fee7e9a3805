"""Controller layer for ledger history and occupancy reconciliation."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from backend.controllers.dependencies import get_ledger_service, require_admin, to_http_error
from backend.domain.errors import AllocationError
from backend.domain.models import LedgerEventType
from backend.services.ledger_service import OccupancyLedgerService


router = APIRouter(tags=["ledger"], dependencies=[Depends(require_admin)])


class LedgerEntryResponse(BaseModel):
    entry_id: int = Field(gt=0)
    event_type: LedgerEventType
    bed_id: int
    room_id: int
    student_id: str
    request_id: int
    accommodation_id: int
    recorded_at: str
    reason: Optional[str] = None


class RoomDiscrepancyResponse(BaseModel):
    room_id: int
    room_number: str
    counter_occupancy: int
    occupied_beds: int
    ledger_occupancy: int


class ReconciliationResponse(BaseModel):
    consistent: bool
    rooms_checked: int = Field(ge=0)
    ledger_entries: int = Field(ge=0)
    discrepancies: list[RoomDiscrepancyResponse]


@router.get("/ledger", response_model=list[LedgerEntryResponse], status_code=status.HTTP_200_OK)
def list_ledger(
    bed_id: Optional[int] = Query(default=None, gt=0),
    student_id: Optional[str] = Query(default=None, min_length=1),
    request_id: Optional[int] = Query(default=None, gt=0),
    limit: Optional[int] = Query(default=None, ge=1, le=10_000),
    service: OccupancyLedgerService = Depends(get_ledger_service),
) -> list[LedgerEntryResponse]:
    try:
        entries = service.entries(
            bed_id=bed_id,
            student_id=student_id,
            request_id=request_id,
            limit=limit,
        )
    except AllocationError as exc:
        raise to_http_error(exc) from exc
    return [
        LedgerEntryResponse(
            entry_id=entry.entry_id,
            event_type=entry.event_type,
            bed_id=entry.bed_id,
            room_id=entry.room_id,
            student_id=entry.student_id,
            request_id=entry.request_id,
            accommodation_id=entry.accommodation_id,
            recorded_at=entry.recorded_at,
            reason=entry.reason,
        )
        for entry in entries
    ]


@router.get(
    "/ledger/reconcile",
    response_model=ReconciliationResponse,
    status_code=status.HTTP_200_OK,
)
def reconcile(
    service: OccupancyLedgerService = Depends(get_ledger_service),
) -> ReconciliationResponse:
    try:
        report = service.reconcile()
    except AllocationError as exc:
        raise to_http_error(exc) from exc
    return ReconciliationResponse(
        consistent=report.is_consistent,
        rooms_checked=report.rooms_checked,
        ledger_entries=report.ledger_entries,
        discrepancies=[
            RoomDiscrepancyResponse(
                room_id=item.room_id,
                room_number=item.room_number,
                counter_occupancy=item.counter_occupancy,
                occupied_beds=item.occupied_beds,
                ledger_occupancy=item.ledger_occupancy,
            )
            for item in report.discrepancies
        ],
    )
