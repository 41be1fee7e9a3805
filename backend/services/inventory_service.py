"""Inventory model: hostels, floors, rooms, beds and capacity counters."""

from __future__ import annotations

import sqlite3
from typing import Optional

from backend.domain.constraints import (
    resolve_room_capacity,
    validate_floor_number,
    validate_room_number,
)
from backend.domain.errors import (
    BedUnavailableError,
    CapacityExceededError,
    InventoryValidationError,
    RoomNotFoundError,
)
from backend.domain.models import (
    Accommodation,
    Bed,
    BedSnapshot,
    BedStatus,
    CapacityPermit,
    Floor,
    GenderPolicy,
    Hostel,
    HostelSnapshot,
    InventorySnapshot,
    Room,
    RoomSnapshot,
    RoomType,
    bed_label,
)
from backend.repository.data_repository import DataRepository, utc_now
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class InventoryService:
    """Queries and counter mutations over the hostel inventory.

    Methods that accept ``conn`` join the caller's transaction; without it
    they open their own. Nothing here touches request state.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    # --- allocation contract -------------------------------------------

    def get_room(
        self,
        hostel_id: int,
        room_number: str,
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Room:
        with self._repository.using(conn) as active:
            hostel = self._repository.get_hostel(active, hostel_id)
            room = None
            if hostel is not None and hostel.is_active:
                room = self._repository.find_room(active, hostel_id, room_number.strip())
        if room is None or not room.is_active:
            raise RoomNotFoundError(
                f'Room "{room_number}" not found in hostel {hostel_id}',
                hostel_id=hostel_id,
                room_number=room_number,
            )
        return room

    def list_candidate_beds(
        self,
        room_id: int,
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> list[Bed]:
        """Available beds of a room in ascending bed-number order."""
        with self._repository.using(conn) as active:
            return self._repository.list_beds(active, room_id, BedStatus.AVAILABLE)

    def reserve_capacity(self, room_id: int, *, conn: sqlite3.Connection) -> CapacityPermit:
        """Take one unit of room capacity inside the caller's transaction.

        The unit is returned automatically if the transaction rolls back.
        """
        if not self._repository.increment_room_occupancy(conn, room_id):
            room = self._repository.get_room_by_id(conn, room_id)
            if room is None:
                raise RoomNotFoundError(f"Room {room_id} not found", room_id=room_id)
            raise CapacityExceededError(
                f'Room "{room.room_number}" is already at full capacity',
                room_id=room_id,
                capacity=room.capacity,
                current_occupancy=room.current_occupancy,
            )
        room = self._repository.get_room_by_id(conn, room_id)
        assert room is not None
        return CapacityPermit(
            room_id=room_id,
            occupancy_after=room.current_occupancy,
            capacity=room.capacity,
        )

    def return_capacity(self, room_id: int, *, conn: sqlite3.Connection) -> int:
        """Give back one unit of capacity; returns the new occupancy."""
        if not self._repository.decrement_room_occupancy(conn, room_id):
            raise InventoryValidationError(
                f"Room {room_id} occupancy counter is already zero",
                room_id=room_id,
            )
        room = self._repository.get_room_by_id(conn, room_id)
        assert room is not None
        return room.current_occupancy

    # --- administration ------------------------------------------------

    def create_hostel(
        self,
        *,
        name: str,
        code: str,
        gender_policy: GenderPolicy = GenderPolicy.MIXED,
    ) -> Hostel:
        if not name.strip() or not code.strip():
            raise InventoryValidationError("Hostel name and code are required")
        with self._repository.transaction() as conn:
            if self._repository.get_hostel_by_code(conn, code.strip()) is not None:
                raise InventoryValidationError(
                    f'Hostel code "{code}" already exists', code=code
                )
            hostel_id = self._repository.insert_hostel(
                conn,
                name=name.strip(),
                code=code.strip(),
                gender_policy=gender_policy,
            )
            hostel = self._repository.get_hostel(conn, hostel_id)
        assert hostel is not None
        logger.info("Hostel created | hostel_id=%s | code=%s", hostel.hostel_id, hostel.code)
        return hostel

    def add_floor(
        self,
        *,
        hostel_id: int,
        floor_number: int,
        gender_policy: Optional[GenderPolicy] = None,
    ) -> Floor:
        try:
            validate_floor_number(floor_number)
        except ValueError as exc:
            raise InventoryValidationError(str(exc), floor_number=floor_number) from exc
        with self._repository.transaction() as conn:
            floor = self._ensure_floor(conn, hostel_id, floor_number, gender_policy)
        return floor

    def _ensure_floor(
        self,
        conn: sqlite3.Connection,
        hostel_id: int,
        floor_number: int,
        gender_policy: Optional[GenderPolicy] = None,
    ) -> Floor:
        if self._repository.get_hostel(conn, hostel_id) is None:
            raise InventoryValidationError(f"Hostel {hostel_id} does not exist", hostel_id=hostel_id)
        floor = self._repository.find_floor(conn, hostel_id, floor_number)
        if floor is not None:
            return floor
        floor_id = self._repository.insert_floor(
            conn,
            hostel_id=hostel_id,
            floor_number=floor_number,
            gender_policy=gender_policy,
        )
        created = self._repository.get_floor(conn, floor_id)
        assert created is not None
        return created

    def create_room(
        self,
        *,
        hostel_id: int,
        floor_number: int,
        room_number: str,
        room_type: RoomType,
        capacity: Optional[int] = None,
    ) -> Room:
        """Create a room and its beds ("Bed 1".."Bed N") in one transaction."""
        try:
            cleaned_number = validate_room_number(room_number)
            validate_floor_number(floor_number)
            effective_capacity = resolve_room_capacity(room_type, capacity)
        except ValueError as exc:
            raise InventoryValidationError(str(exc), room_number=room_number) from exc

        with self._repository.transaction() as conn:
            floor = self._ensure_floor(conn, hostel_id, floor_number)
            if self._repository.find_room(conn, hostel_id, cleaned_number) is not None:
                raise InventoryValidationError(
                    f'Room "{cleaned_number}" already exists in hostel {hostel_id}',
                    hostel_id=hostel_id,
                    room_number=cleaned_number,
                )
            room_id = self._repository.insert_room(
                conn,
                hostel_id=hostel_id,
                floor_id=floor.floor_id,
                room_number=cleaned_number,
                room_type=room_type,
                capacity=effective_capacity,
            )
            self._repository.insert_beds(
                conn,
                room_id,
                [bed_label(position) for position in range(1, effective_capacity + 1)],
            )
            room = self._repository.get_room_by_id(conn, room_id)
        assert room is not None
        logger.info(
            "Room created | hostel_id=%s | room_number=%s | capacity=%s",
            hostel_id,
            room.room_number,
            room.capacity,
        )
        return room

    def set_bed_maintenance(self, bed_id: int, under_maintenance: bool) -> Bed:
        """Move a bed between Available and Maintenance out of band."""
        expected, target = (
            (BedStatus.AVAILABLE, BedStatus.MAINTENANCE)
            if under_maintenance
            else (BedStatus.MAINTENANCE, BedStatus.AVAILABLE)
        )
        with self._repository.transaction() as conn:
            bed = self._repository.get_bed(conn, bed_id)
            if bed is None:
                raise BedUnavailableError(f"Bed {bed_id} does not exist", bed_id=bed_id)
            if bed.status is target:
                return bed
            if bed.status is not expected:
                raise BedUnavailableError(
                    f"Bed {bed.bed_number} is {bed.status.value}; cannot move to {target.value}",
                    bed_id=bed_id,
                    status=bed.status.value,
                )
            self._repository.compare_and_set_bed_status(
                conn,
                bed_id=bed_id,
                expected_status=expected,
                expected_version=bed.version,
                new_status=target,
            )
            updated = self._repository.get_bed(conn, bed_id)
        assert updated is not None
        logger.info("Bed status changed | bed_id=%s | status=%s", bed_id, updated.status.value)
        return updated

    # --- read projections ----------------------------------------------

    def list_available_rooms(
        self,
        hostel_id: int,
        floor_number: Optional[int] = None,
    ) -> list[Room]:
        with self._repository.using(None) as conn:
            return self._repository.list_rooms(
                conn,
                hostel_id=hostel_id,
                floor_number=floor_number,
                only_with_capacity=True,
            )

    def list_roommates(self, student_id: str) -> list[Accommodation]:
        """Active accommodations sharing the student's room, the student excluded."""
        with self._repository.using(None) as conn:
            own = self._repository.find_active_accommodation(conn, student_id=student_id)
            if own is None:
                return []
            return [
                accommodation
                for accommodation in self._repository.list_active_accommodations_in_room(
                    conn, own.room_id
                )
                if accommodation.student_id != student_id
            ]

    def snapshot(self, hostel_id: Optional[int] = None) -> InventorySnapshot:
        """Hostels, rooms and beds with counters, read in one transaction."""
        with self._repository.using(None) as conn:
            hostels = self._repository.list_hostels(conn, hostel_id)
            hostel_snapshots: list[HostelSnapshot] = []
            for hostel in hostels:
                rooms = self._repository.list_rooms(conn, hostel_id=hostel.hostel_id)
                occupants = {
                    occupant.bed_id: occupant.student_id
                    for occupant in self._repository.list_active_occupants(
                        conn, [room.room_id for room in rooms]
                    )
                }
                room_snapshots = [
                    RoomSnapshot(
                        room_id=room.room_id,
                        room_number=room.room_number,
                        floor_number=room.floor_number,
                        room_type=room.room_type,
                        capacity=room.capacity,
                        current_occupancy=room.current_occupancy,
                        is_active=room.is_active,
                        beds=[
                            BedSnapshot(
                                bed_id=bed.bed_id,
                                bed_number=bed.bed_number,
                                status=bed.status,
                                student_id=occupants.get(bed.bed_id),
                            )
                            for bed in self._repository.list_beds(conn, room.room_id)
                        ],
                    )
                    for room in rooms
                ]
                total_beds = sum(room.capacity for room in room_snapshots)
                occupied_beds = sum(room.current_occupancy for room in room_snapshots)
                available_beds = sum(
                    1
                    for room in room_snapshots
                    for bed in room.beds
                    if bed.status is BedStatus.AVAILABLE and room.is_active
                )
                hostel_snapshots.append(
                    HostelSnapshot(
                        hostel_id=hostel.hostel_id,
                        name=hostel.name,
                        code=hostel.code,
                        gender_policy=hostel.gender_policy,
                        is_active=hostel.is_active,
                        total_beds=total_beds,
                        occupied_beds=occupied_beds,
                        available_beds=available_beds,
                        rooms=room_snapshots,
                    )
                )
        return InventorySnapshot(hostels=hostel_snapshots, generated_at=utc_now())

    def seed_demo_inventory_if_empty(self) -> bool:
        """Create a small demo hostel when the database has none."""
        with self._repository.using(None) as conn:
            if self._repository.count_hostels(conn) > 0:
                logger.info("Inventory already present; skipping demo seed")
                return False

        hostel = self.create_hostel(name="Unity Hall", code="UH", gender_policy=GenderPolicy.MIXED)
        layout = [
            (1, "A101", RoomType.DOUBLE),
            (1, "A102", RoomType.DOUBLE),
            (1, "A103", RoomType.SINGLE),
            (2, "A201", RoomType.TRIPLE),
            (2, "A202", RoomType.QUADRUPLE),
        ]
        for floor_number, room_number, room_type in layout:
            self.create_room(
                hostel_id=hostel.hostel_id,
                floor_number=floor_number,
                room_number=room_number,
                room_type=room_type,
            )
        logger.info("Demo inventory seeded | hostel_id=%s | rooms=%s", hostel.hostel_id, len(layout))
        return True
