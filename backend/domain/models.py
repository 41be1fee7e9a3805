"""Domain models for hostel inventory, requests, and bed allocation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class GenderPolicy(str, Enum):
    MALE = "Male"
    FEMALE = "Female"
    MIXED = "Mixed"


class RoomType(str, Enum):
    SINGLE = "Single"
    DOUBLE = "Double"
    TRIPLE = "Triple"
    QUADRUPLE = "Quadruple"

    @property
    def nominal_capacity(self) -> int:
        return ROOM_TYPE_CAPACITY[self]


ROOM_TYPE_CAPACITY: dict[RoomType, int] = {
    RoomType.SINGLE: 1,
    RoomType.DOUBLE: 2,
    RoomType.TRIPLE: 3,
    RoomType.QUADRUPLE: 4,
}


class BedStatus(str, Enum):
    AVAILABLE = "Available"
    OCCUPIED = "Occupied"
    RESERVED = "Reserved"
    MAINTENANCE = "Maintenance"


class RequestStatus(str, Enum):
    """Request lifecycle. Only ``PENDING`` is non-terminal.

    A request bound to a bed is stored as ``Approved``; ``ALLOCATED`` is an
    alias for the same member.
    """

    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    ALLOCATED = "Approved"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class LedgerEventType(str, Enum):
    ALLOCATE = "Allocate"
    RELEASE = "Release"


_BED_NUMBER_PATTERN = re.compile(r"(\d+)\s*$")


def bed_label(position: int) -> str:
    return f"Bed {position}"


def bed_sort_key(label: str) -> tuple[int, str]:
    """Order "Bed 2" before "Bed 10"; labels without a number sort last."""
    match = _BED_NUMBER_PATTERN.search(label)
    if match is None:
        return (10**9, label)
    return (int(match.group(1)), label)


@dataclass(frozen=True)
class Hostel:
    hostel_id: int
    name: str
    code: str
    gender_policy: GenderPolicy
    is_active: bool


@dataclass(frozen=True)
class Floor:
    floor_id: int
    hostel_id: int
    floor_number: int
    gender_policy: Optional[GenderPolicy]


@dataclass(frozen=True)
class Room:
    room_id: int
    hostel_id: int
    floor_id: int
    floor_number: int
    room_number: str
    room_type: RoomType
    capacity: int
    current_occupancy: int
    is_active: bool

    @property
    def available_slots(self) -> int:
        return self.capacity - self.current_occupancy


@dataclass(frozen=True)
class Bed:
    bed_id: int
    room_id: int
    bed_number: str
    status: BedStatus
    version: int


@dataclass(frozen=True)
class RequestPreferences:
    hostel_id: int
    floor_id: Optional[int] = None
    room_type: Optional[RoomType] = None


@dataclass(frozen=True)
class AllocationRequest:
    """A student's reservation/booking request prior to bed binding."""

    request_id: int
    student_id: str
    preferences: RequestPreferences
    academic_year: str
    semester: str
    status: RequestStatus
    reference: str
    created_at: str
    admin_notes: Optional[str] = None
    special_requests: Optional[str] = None


@dataclass(frozen=True)
class Accommodation:
    accommodation_id: int
    student_id: str
    room_id: int
    bed_id: int
    request_id: int
    allocation_date: str
    semester: str
    academic_year: str
    is_active: bool
    release_date: Optional[str] = None
    release_reason: Optional[str] = None


@dataclass(frozen=True)
class LedgerEntry:
    entry_id: int
    event_type: LedgerEventType
    bed_id: int
    room_id: int
    student_id: str
    request_id: int
    accommodation_id: int
    recorded_at: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class CapacityPermit:
    """One reserved unit of room capacity, valid inside its transaction."""

    room_id: int
    occupancy_after: int
    capacity: int


@dataclass(frozen=True)
class AllocationResult:
    request_id: int
    accommodation_id: int
    student_id: str
    hostel_id: int
    room_id: int
    room_number: str
    bed_id: int
    bed_number: str
    room_occupancy: int
    room_capacity: int
    ledger_entry_id: int
    allocated_at: str

    def to_dict(self) -> dict[str, int | str]:
        return {
            "request_id": self.request_id,
            "accommodation_id": self.accommodation_id,
            "student_id": self.student_id,
            "hostel_id": self.hostel_id,
            "room_id": self.room_id,
            "room_number": self.room_number,
            "bed_id": self.bed_id,
            "bed_number": self.bed_number,
            "room_occupancy": self.room_occupancy,
            "room_capacity": self.room_capacity,
            "ledger_entry_id": self.ledger_entry_id,
            "allocated_at": self.allocated_at,
        }


@dataclass(frozen=True)
class ReleaseResult:
    accommodation_id: int
    student_id: str
    room_id: int
    bed_id: int
    bed_number: str
    room_occupancy: int
    ledger_entry_id: int
    released_at: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class BedSnapshot:
    bed_id: int
    bed_number: str
    status: BedStatus
    student_id: Optional[str] = None


@dataclass(frozen=True)
class RoomSnapshot:
    room_id: int
    room_number: str
    floor_number: int
    room_type: RoomType
    capacity: int
    current_occupancy: int
    is_active: bool
    beds: list[BedSnapshot] = field(default_factory=list)


@dataclass(frozen=True)
class HostelSnapshot:
    hostel_id: int
    name: str
    code: str
    gender_policy: GenderPolicy
    is_active: bool
    total_beds: int
    occupied_beds: int
    available_beds: int
    rooms: list[RoomSnapshot] = field(default_factory=list)


@dataclass(frozen=True)
class InventorySnapshot:
    hostels: list[HostelSnapshot]
    generated_at: str


@dataclass(frozen=True)
class RoomDiscrepancy:
    room_id: int
    room_number: str
    counter_occupancy: int
    occupied_beds: int
    ledger_occupancy: int


@dataclass(frozen=True)
class ReconciliationReport:
    rooms_checked: int
    discrepancies: list[RoomDiscrepancy]
    ledger_entries: int

    @property
    def is_consistent(self) -> bool:
        return not self.discrepancies


@dataclass(frozen=True)
class MatchProposal:
    request_id: int
    student_id: str
    hostel_id: int
    room_id: int
    room_number: str
    bed_id: int
    bed_number: str
    score: float


@dataclass(frozen=True)
class MatchingResult:
    proposals: list[MatchProposal]
    objective_value: float
    unmatched_request_ids: list[int]
