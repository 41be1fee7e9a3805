"""Controller layer for the request lifecycle outside allocation."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, ValidationInfo, field_validator

from backend.controllers.dependencies import (
    get_request_service,
    require_admin,
    to_http_error,
)
from backend.domain.constraints import validate_academic_period
from backend.domain.errors import AllocationError
from backend.domain.models import AllocationRequest, RequestStatus, RoomType
from backend.repository.data_repository import RequestRecord
from backend.services.request_service import RequestService
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["requests"])


class SubmitRequest(BaseModel):
    student_id: str = Field(min_length=1, max_length=64)
    hostel_id: int = Field(gt=0)
    academic_year: str = Field(pattern=r"^\d{4}/\d{4}$")
    semester: str = Field(min_length=1, max_length=40)
    floor_id: Optional[int] = Field(default=None, gt=0)
    room_type: Optional[RoomType] = None
    special_requests: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("semester")
    @classmethod
    def validate_period(cls, value: str, info: ValidationInfo) -> str:
        academic_year = info.data.get("academic_year")
        if academic_year is not None:
            validate_academic_period(academic_year, value)
        return value


class CloseRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=500)


class RequestResponse(BaseModel):
    request_id: int = Field(gt=0)
    reference: str
    student_id: str
    status: str
    hostel_id: int
    floor_id: Optional[int] = None
    room_type: Optional[RoomType] = None
    academic_year: str
    semester: str
    created_at: str
    admin_notes: Optional[str] = None
    special_requests: Optional[str] = None
    preferred_hostel_name: Optional[str] = None
    preferred_floor_number: Optional[int] = None
    accommodation_id: Optional[int] = None
    room_number: Optional[str] = None
    bed_number: Optional[str] = None

    @classmethod
    def from_request(
        cls,
        request: AllocationRequest,
        record: Optional[RequestRecord] = None,
    ) -> "RequestResponse":
        return cls(
            request_id=request.request_id,
            reference=request.reference,
            student_id=request.student_id,
            status=request.status.value,
            hostel_id=request.preferences.hostel_id,
            floor_id=request.preferences.floor_id,
            room_type=request.preferences.room_type,
            academic_year=request.academic_year,
            semester=request.semester,
            created_at=request.created_at,
            admin_notes=request.admin_notes,
            special_requests=request.special_requests,
            preferred_hostel_name=None if record is None else record.preferred_hostel_name,
            preferred_floor_number=None if record is None else record.preferred_floor_number,
            accommodation_id=None if record is None else record.accommodation_id,
            room_number=None if record is None else record.room_number,
            bed_number=None if record is None else record.bed_number,
        )


@router.post(
    "/requests",
    response_model=RequestResponse,
    status_code=status.HTTP_201_CREATED,
)
def submit_request(
    payload: SubmitRequest,
    service: RequestService = Depends(get_request_service),
) -> RequestResponse:
    try:
        request = service.submit_request(
            student_id=payload.student_id,
            hostel_id=payload.hostel_id,
            academic_year=payload.academic_year,
            semester=payload.semester,
            floor_id=payload.floor_id,
            room_type=payload.room_type,
            special_requests=payload.special_requests,
        )
        return RequestResponse.from_request(request)
    except AllocationError as exc:
        logger.info(
            "Request submission rejected | student_id=%s | kind=%s",
            payload.student_id,
            exc.kind.value,
        )
        raise to_http_error(exc) from exc


@router.get(
    "/requests",
    response_model=list[RequestResponse],
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
def list_requests(
    request_status: Optional[RequestStatus] = Query(default=None, alias="status"),
    hostel_id: Optional[int] = Query(default=None, gt=0),
    service: RequestService = Depends(get_request_service),
) -> list[RequestResponse]:
    try:
        records = service.list_requests(status=request_status, hostel_id=hostel_id)
    except AllocationError as exc:
        raise to_http_error(exc) from exc
    return [RequestResponse.from_request(record.request, record) for record in records]


@router.get(
    "/requests/{request_id}",
    response_model=RequestResponse,
    status_code=status.HTTP_200_OK,
)
def get_request(
    request_id: int,
    service: RequestService = Depends(get_request_service),
) -> RequestResponse:
    try:
        return RequestResponse.from_request(service.get_request(request_id))
    except AllocationError as exc:
        raise to_http_error(exc) from exc


@router.post(
    "/requests/{request_id}/cancel",
    response_model=RequestResponse,
    status_code=status.HTTP_200_OK,
)
def cancel_request(
    request_id: int,
    payload: CloseRequest,
    service: RequestService = Depends(get_request_service),
) -> RequestResponse:
    try:
        return RequestResponse.from_request(service.cancel_request(request_id, payload.notes))
    except AllocationError as exc:
        raise to_http_error(exc) from exc


@router.post(
    "/requests/{request_id}/reject",
    response_model=RequestResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
def reject_request(
    request_id: int,
    payload: CloseRequest,
    service: RequestService = Depends(get_request_service),
) -> RequestResponse:
    try:
        return RequestResponse.from_request(service.reject_request(request_id, payload.notes))
    except AllocationError as exc:
        raise to_http_error(exc) from exc
