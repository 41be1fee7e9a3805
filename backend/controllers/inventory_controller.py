"""Controller layer for hostel inventory administration and read projections."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from backend.controllers.dependencies import (
    get_inventory_service,
    require_admin,
    to_http_error,
)
from backend.domain.errors import AllocationError
from backend.domain.models import BedStatus, GenderPolicy, Room, RoomType
from backend.services.inventory_service import InventoryService
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["inventory"])


class CreateHostelRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    code: str = Field(min_length=1, max_length=20)
    gender_policy: GenderPolicy = GenderPolicy.MIXED


class HostelResponse(BaseModel):
    hostel_id: int = Field(gt=0)
    name: str
    code: str
    gender_policy: GenderPolicy
    is_active: bool


class CreateFloorRequest(BaseModel):
    floor_number: int = Field(ge=0)
    gender_policy: Optional[GenderPolicy] = None


class FloorResponse(BaseModel):
    floor_id: int = Field(gt=0)
    hostel_id: int = Field(gt=0)
    floor_number: int = Field(ge=0)
    gender_policy: Optional[GenderPolicy] = None


class CreateRoomRequest(BaseModel):
    hostel_id: int = Field(gt=0)
    floor_number: int = Field(ge=0)
    room_number: str = Field(min_length=1, max_length=20)
    room_type: RoomType
    capacity: Optional[int] = Field(default=None, ge=1, le=4)


class RoomResponse(BaseModel):
    room_id: int = Field(gt=0)
    hostel_id: int = Field(gt=0)
    floor_number: int = Field(ge=0)
    room_number: str
    room_type: RoomType
    capacity: int = Field(ge=1)
    current_occupancy: int = Field(ge=0)
    available_slots: int = Field(ge=0)

    @classmethod
    def from_room(cls, room: Room) -> "RoomResponse":
        return cls(
            room_id=room.room_id,
            hostel_id=room.hostel_id,
            floor_number=room.floor_number,
            room_number=room.room_number,
            room_type=room.room_type,
            capacity=room.capacity,
            current_occupancy=room.current_occupancy,
            available_slots=room.available_slots,
        )


class MaintenanceRequest(BaseModel):
    under_maintenance: bool


class BedResponse(BaseModel):
    bed_id: int = Field(gt=0)
    room_id: int = Field(gt=0)
    bed_number: str
    status: BedStatus


class BedSnapshotResponse(BaseModel):
    bed_id: int
    bed_number: str
    status: BedStatus
    student_id: Optional[str] = None


class RoomSnapshotResponse(BaseModel):
    room_id: int
    room_number: str
    floor_number: int
    room_type: RoomType
    capacity: int
    current_occupancy: int
    is_active: bool
    beds: list[BedSnapshotResponse]


class HostelSnapshotResponse(BaseModel):
    hostel_id: int
    name: str
    code: str
    gender_policy: GenderPolicy
    is_active: bool
    total_beds: int = Field(ge=0)
    occupied_beds: int = Field(ge=0)
    available_beds: int = Field(ge=0)
    rooms: list[RoomSnapshotResponse]


class InventorySnapshotResponse(BaseModel):
    hostels: list[HostelSnapshotResponse]
    generated_at: str


class RoommateResponse(BaseModel):
    accommodation_id: int
    student_id: str
    room_id: int
    bed_id: int
    allocation_date: str


@router.post(
    "/hostels",
    response_model=HostelResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def create_hostel(
    payload: CreateHostelRequest,
    service: InventoryService = Depends(get_inventory_service),
) -> HostelResponse:
    try:
        hostel = service.create_hostel(
            name=payload.name,
            code=payload.code,
            gender_policy=payload.gender_policy,
        )
        return HostelResponse(
            hostel_id=hostel.hostel_id,
            name=hostel.name,
            code=hostel.code,
            gender_policy=hostel.gender_policy,
            is_active=hostel.is_active,
        )
    except AllocationError as exc:
        raise to_http_error(exc) from exc


@router.post(
    "/hostels/{hostel_id}/floors",
    response_model=FloorResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def add_floor(
    hostel_id: int,
    payload: CreateFloorRequest,
    service: InventoryService = Depends(get_inventory_service),
) -> FloorResponse:
    try:
        floor = service.add_floor(
            hostel_id=hostel_id,
            floor_number=payload.floor_number,
            gender_policy=payload.gender_policy,
        )
        return FloorResponse(
            floor_id=floor.floor_id,
            hostel_id=floor.hostel_id,
            floor_number=floor.floor_number,
            gender_policy=floor.gender_policy,
        )
    except AllocationError as exc:
        raise to_http_error(exc) from exc


@router.post(
    "/rooms",
    response_model=RoomResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def create_room(
    payload: CreateRoomRequest,
    service: InventoryService = Depends(get_inventory_service),
) -> RoomResponse:
    try:
        room = service.create_room(
            hostel_id=payload.hostel_id,
            floor_number=payload.floor_number,
            room_number=payload.room_number,
            room_type=payload.room_type,
            capacity=payload.capacity,
        )
        return RoomResponse.from_room(room)
    except AllocationError as exc:
        raise to_http_error(exc) from exc


@router.post(
    "/beds/{bed_id}/maintenance",
    response_model=BedResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
def set_bed_maintenance(
    bed_id: int,
    payload: MaintenanceRequest,
    service: InventoryService = Depends(get_inventory_service),
) -> BedResponse:
    try:
        bed = service.set_bed_maintenance(bed_id, payload.under_maintenance)
        return BedResponse(
            bed_id=bed.bed_id,
            room_id=bed.room_id,
            bed_number=bed.bed_number,
            status=bed.status,
        )
    except AllocationError as exc:
        raise to_http_error(exc) from exc


@router.get(
    "/rooms/available",
    response_model=list[RoomResponse],
    status_code=status.HTTP_200_OK,
)
def list_available_rooms(
    hostel_id: int = Query(gt=0),
    floor_number: Optional[int] = Query(default=None, ge=0),
    service: InventoryService = Depends(get_inventory_service),
) -> list[RoomResponse]:
    try:
        rooms = service.list_available_rooms(hostel_id, floor_number)
        return [RoomResponse.from_room(room) for room in rooms]
    except AllocationError as exc:
        raise to_http_error(exc) from exc


@router.get(
    "/inventory-snapshot",
    response_model=InventorySnapshotResponse,
    status_code=status.HTTP_200_OK,
)
def inventory_snapshot(
    hostel_id: Optional[int] = Query(default=None, gt=0),
    service: InventoryService = Depends(get_inventory_service),
) -> InventorySnapshotResponse:
    try:
        snapshot = service.snapshot(hostel_id)
    except AllocationError as exc:
        raise to_http_error(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected snapshot failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to build inventory snapshot",
        ) from exc
    return InventorySnapshotResponse(
        generated_at=snapshot.generated_at,
        hostels=[
            HostelSnapshotResponse(
                hostel_id=hostel.hostel_id,
                name=hostel.name,
                code=hostel.code,
                gender_policy=hostel.gender_policy,
                is_active=hostel.is_active,
                total_beds=hostel.total_beds,
                occupied_beds=hostel.occupied_beds,
                available_beds=hostel.available_beds,
                rooms=[
                    RoomSnapshotResponse(
                        room_id=room.room_id,
                        room_number=room.room_number,
                        floor_number=room.floor_number,
                        room_type=room.room_type,
                        capacity=room.capacity,
                        current_occupancy=room.current_occupancy,
                        is_active=room.is_active,
                        beds=[
                            BedSnapshotResponse(
                                bed_id=bed.bed_id,
                                bed_number=bed.bed_number,
                                status=bed.status,
                                student_id=bed.student_id,
                            )
                            for bed in room.beds
                        ],
                    )
                    for room in hostel.rooms
                ],
            )
            for hostel in snapshot.hostels
        ],
    )


@router.get(
    "/students/{student_id}/roommates",
    response_model=list[RoommateResponse],
    status_code=status.HTTP_200_OK,
)
def list_roommates(
    student_id: str,
    service: InventoryService = Depends(get_inventory_service),
) -> list[RoommateResponse]:
    try:
        roommates = service.list_roommates(student_id)
    except AllocationError as exc:
        raise to_http_error(exc) from exc
    return [
        RoommateResponse(
            accommodation_id=item.accommodation_id,
            student_id=item.student_id,
            room_id=item.room_id,
            bed_id=item.bed_id,
            allocation_date=item.allocation_date,
        )
        for item in roommates
    ]
