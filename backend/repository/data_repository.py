"""Repository layer responsible for all database access."""

from __future__ import annotations

import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence

from backend.domain.errors import (
    AllocationError,
    ConcurrencyConflictError,
    PersistenceFailureError,
)
from backend.domain.models import (
    Accommodation,
    AllocationRequest,
    Bed,
    BedStatus,
    Floor,
    GenderPolicy,
    Hostel,
    LedgerEntry,
    LedgerEventType,
    RequestPreferences,
    RequestStatus,
    Room,
    RoomType,
    bed_sort_key,
)
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class RequestRecord:
    """Request joined with preference names and its bed, for operator views."""

    request: AllocationRequest
    preferred_hostel_name: Optional[str]
    preferred_floor_number: Optional[int]
    accommodation_id: Optional[int]
    room_number: Optional[str]
    bed_number: Optional[str]


@dataclass(frozen=True)
class OccupantRecord:
    bed_id: int
    student_id: str
    accommodation_id: int


@dataclass(frozen=True)
class RoomCounters:
    room_id: int
    room_number: str
    current_occupancy: int
    occupied_beds: int


_LOCK_MESSAGES = ("database is locked", "database table is locked", "database is busy")


def _is_lock_contention(exc: sqlite3.Error) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and any(
        message in str(exc).lower() for message in _LOCK_MESSAGES
    )


def _is_active_uniqueness_violation(exc: sqlite3.Error) -> bool:
    message = str(exc)
    return isinstance(exc, sqlite3.IntegrityError) and (
        "ux_accommodations_active" in message
        or "Accommodations.bed_id" in message
        or "Accommodations.student_id" in message
        or "OccupancyLedger.idempotency_key" in message
    )


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic.

    Connections run in autocommit mode; multi-statement work goes through
    :meth:`transaction`, which opens ``BEGIN IMMEDIATE`` so that at most one
    writer holds the database at a time and every write set commits or rolls
    back as a unit.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.sqlite_busy_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def transaction(self, *, write: bool = True) -> Iterator[sqlite3.Connection]:
        """Run a unit of work atomically.

        Domain errors propagate unchanged after rollback. SQLite lock
        contention and active-uniqueness races surface as
        :class:`ConcurrencyConflictError`; every other storage error becomes
        :class:`PersistenceFailureError`.
        """
        try:
            connection = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceFailureError(f"Cannot open database: {exc}") from exc

        with closing(connection):
            try:
                connection.execute("BEGIN IMMEDIATE;" if write else "BEGIN;")
            except sqlite3.Error as exc:
                if _is_lock_contention(exc):
                    raise ConcurrencyConflictError(
                        "Timed out waiting for the database writer lock"
                    ) from exc
                raise PersistenceFailureError(f"Cannot begin transaction: {exc}") from exc

            try:
                yield connection
                connection.execute("COMMIT;")
            except AllocationError:
                self._rollback(connection)
                raise
            except sqlite3.Error as exc:
                self._rollback(connection)
                if _is_lock_contention(exc) or _is_active_uniqueness_violation(exc):
                    raise ConcurrencyConflictError(
                        f"Concurrent modification detected: {exc}"
                    ) from exc
                logger.exception("Transaction rolled back after storage failure")
                raise PersistenceFailureError(f"Storage failure: {exc}") from exc
            except BaseException:
                self._rollback(connection)
                raise

    @contextmanager
    def using(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        """Reuse the caller's transaction, or open a read transaction."""
        if conn is not None:
            yield conn
            return
        with self.transaction(write=False) as connection:
            yield connection

    @staticmethod
    def _rollback(connection: sqlite3.Connection) -> None:
        if connection.in_transaction:
            connection.execute("ROLLBACK;")

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with closing(self._connect()) as conn:
                conn.execute("PRAGMA journal_mode = WAL;")
                conn.executescript(_SCHEMA)
                self._apply_uniqueness_scope(conn)
            logger.info(
                "Database initialized at %s | uniqueness_scope=%s",
                self._db_path,
                self._settings.allocation_uniqueness_scope,
            )
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def _apply_uniqueness_scope(self, conn: sqlite3.Connection) -> None:
        if self._settings.allocation_uniqueness_scope == "semester":
            conn.executescript(
                """
                DROP INDEX IF EXISTS ux_accommodations_active_student;
                CREATE UNIQUE INDEX IF NOT EXISTS ux_accommodations_active_student_period
                ON Accommodations(student_id, academic_year, semester)
                WHERE is_active = 1;
                """
            )
        else:
            conn.executescript(
                """
                DROP INDEX IF EXISTS ux_accommodations_active_student_period;
                CREATE UNIQUE INDEX IF NOT EXISTS ux_accommodations_active_student
                ON Accommodations(student_id)
                WHERE is_active = 1;
                """
            )

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def insert_hostel(
        self,
        conn: sqlite3.Connection,
        *,
        name: str,
        code: str,
        gender_policy: GenderPolicy,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO Hostels (name, code, gender_policy)
            VALUES (?, ?, ?);
            """,
            (name, code, gender_policy.value),
        )
        return int(cursor.lastrowid)

    def get_hostel(self, conn: sqlite3.Connection, hostel_id: int) -> Optional[Hostel]:
        row = conn.execute(
            "SELECT * FROM Hostels WHERE id = ?;",
            (hostel_id,),
        ).fetchone()
        return None if row is None else _row_to_hostel(row)

    def get_hostel_by_code(self, conn: sqlite3.Connection, code: str) -> Optional[Hostel]:
        row = conn.execute(
            "SELECT * FROM Hostels WHERE code = ?;",
            (code,),
        ).fetchone()
        return None if row is None else _row_to_hostel(row)

    def list_hostels(
        self,
        conn: sqlite3.Connection,
        hostel_id: Optional[int] = None,
    ) -> List[Hostel]:
        if hostel_id is None:
            rows = conn.execute("SELECT * FROM Hostels ORDER BY id ASC;").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM Hostels WHERE id = ?;",
                (hostel_id,),
            ).fetchall()
        return [_row_to_hostel(row) for row in rows]

    def count_hostels(self, conn: sqlite3.Connection) -> int:
        return int(conn.execute("SELECT COUNT(*) AS count FROM Hostels;").fetchone()["count"])

    def insert_floor(
        self,
        conn: sqlite3.Connection,
        *,
        hostel_id: int,
        floor_number: int,
        gender_policy: Optional[GenderPolicy],
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO Floors (hostel_id, floor_number, gender_policy)
            VALUES (?, ?, ?);
            """,
            (hostel_id, floor_number, gender_policy.value if gender_policy else None),
        )
        return int(cursor.lastrowid)

    def get_floor(self, conn: sqlite3.Connection, floor_id: int) -> Optional[Floor]:
        row = conn.execute("SELECT * FROM Floors WHERE id = ?;", (floor_id,)).fetchone()
        return None if row is None else _row_to_floor(row)

    def find_floor(
        self,
        conn: sqlite3.Connection,
        hostel_id: int,
        floor_number: int,
    ) -> Optional[Floor]:
        row = conn.execute(
            "SELECT * FROM Floors WHERE hostel_id = ? AND floor_number = ?;",
            (hostel_id, floor_number),
        ).fetchone()
        return None if row is None else _row_to_floor(row)

    def insert_room(
        self,
        conn: sqlite3.Connection,
        *,
        hostel_id: int,
        floor_id: int,
        room_number: str,
        room_type: RoomType,
        capacity: int,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO Rooms (hostel_id, floor_id, room_number, room_type, capacity)
            VALUES (?, ?, ?, ?, ?);
            """,
            (hostel_id, floor_id, room_number, room_type.value, capacity),
        )
        return int(cursor.lastrowid)

    def insert_beds(
        self,
        conn: sqlite3.Connection,
        room_id: int,
        bed_numbers: Iterable[str],
    ) -> None:
        conn.executemany(
            "INSERT INTO Beds (room_id, bed_number) VALUES (?, ?);",
            [(room_id, bed_number) for bed_number in bed_numbers],
        )

    def find_room(
        self,
        conn: sqlite3.Connection,
        hostel_id: int,
        room_number: str,
    ) -> Optional[Room]:
        row = conn.execute(
            f"""
            {_ROOM_SELECT}
            WHERE r.hostel_id = ? AND r.room_number = ?;
            """,
            (hostel_id, room_number),
        ).fetchone()
        return None if row is None else _row_to_room(row)

    def get_room_by_id(self, conn: sqlite3.Connection, room_id: int) -> Optional[Room]:
        row = conn.execute(
            f"""
            {_ROOM_SELECT}
            WHERE r.id = ?;
            """,
            (room_id,),
        ).fetchone()
        return None if row is None else _row_to_room(row)

    def list_rooms(
        self,
        conn: sqlite3.Connection,
        *,
        hostel_id: Optional[int] = None,
        floor_number: Optional[int] = None,
        only_with_capacity: bool = False,
    ) -> List[Room]:
        clauses: list[str] = []
        params: list[object] = []
        if hostel_id is not None:
            clauses.append("r.hostel_id = ?")
            params.append(hostel_id)
        if floor_number is not None:
            clauses.append("f.floor_number = ?")
            params.append(floor_number)
        if only_with_capacity:
            clauses.append("r.is_active = 1 AND r.current_occupancy < r.capacity")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = conn.execute(
            f"""
            {_ROOM_SELECT}
            {where}
            ORDER BY r.hostel_id ASC, r.room_number ASC;
            """,
            tuple(params),
        ).fetchall()
        return [_row_to_room(row) for row in rows]

    def list_beds(
        self,
        conn: sqlite3.Connection,
        room_id: int,
        status: Optional[BedStatus] = None,
    ) -> List[Bed]:
        if status is None:
            rows = conn.execute(
                "SELECT * FROM Beds WHERE room_id = ?;",
                (room_id,),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM Beds WHERE room_id = ? AND status = ?;",
                (room_id, status.value),
            ).fetchall()
        beds = [_row_to_bed(row) for row in rows]
        return sorted(beds, key=lambda bed: bed_sort_key(bed.bed_number))

    def list_available_beds(
        self,
        conn: sqlite3.Connection,
        hostel_id: Optional[int] = None,
    ) -> List[tuple[Bed, Room]]:
        """Return every allocatable bed with its room, for the matcher."""
        pairs: list[tuple[Bed, Room]] = []
        active_hostels = {
            hostel.hostel_id for hostel in self.list_hostels(conn, hostel_id) if hostel.is_active
        }
        rooms = self.list_rooms(conn, hostel_id=hostel_id, only_with_capacity=True)
        for room in rooms:
            if room.hostel_id not in active_hostels:
                continue
            for bed in self.list_beds(conn, room.room_id, BedStatus.AVAILABLE):
                pairs.append((bed, room))
        return pairs

    def get_bed(self, conn: sqlite3.Connection, bed_id: int) -> Optional[Bed]:
        row = conn.execute("SELECT * FROM Beds WHERE id = ?;", (bed_id,)).fetchone()
        return None if row is None else _row_to_bed(row)

    def find_bed(
        self,
        conn: sqlite3.Connection,
        room_id: int,
        bed_number: str,
    ) -> Optional[Bed]:
        row = conn.execute(
            "SELECT * FROM Beds WHERE room_id = ? AND bed_number = ?;",
            (room_id, bed_number),
        ).fetchone()
        return None if row is None else _row_to_bed(row)

    def compare_and_set_bed_status(
        self,
        conn: sqlite3.Connection,
        *,
        bed_id: int,
        expected_status: BedStatus,
        expected_version: int,
        new_status: BedStatus,
    ) -> bool:
        """Apply a bed transition only if the prior read still holds."""
        cursor = conn.execute(
            """
            UPDATE Beds
            SET status = ?, version = version + 1, updated_at = ?
            WHERE id = ? AND status = ? AND version = ?;
            """,
            (new_status.value, utc_now(), bed_id, expected_status.value, expected_version),
        )
        return cursor.rowcount == 1

    def increment_room_occupancy(self, conn: sqlite3.Connection, room_id: int) -> bool:
        cursor = conn.execute(
            """
            UPDATE Rooms
            SET current_occupancy = current_occupancy + 1
            WHERE id = ? AND current_occupancy < capacity;
            """,
            (room_id,),
        )
        return cursor.rowcount == 1

    def decrement_room_occupancy(self, conn: sqlite3.Connection, room_id: int) -> bool:
        cursor = conn.execute(
            """
            UPDATE Rooms
            SET current_occupancy = current_occupancy - 1
            WHERE id = ? AND current_occupancy > 0;
            """,
            (room_id,),
        )
        return cursor.rowcount == 1

    def list_room_counters(self, conn: sqlite3.Connection) -> List[RoomCounters]:
        rows = conn.execute(
            """
            SELECT
                r.id AS room_id,
                r.room_number,
                r.current_occupancy,
                COALESCE(SUM(CASE WHEN b.status = ? THEN 1 ELSE 0 END), 0) AS occupied_beds
            FROM Rooms AS r
            LEFT JOIN Beds AS b ON b.room_id = r.id
            GROUP BY r.id
            ORDER BY r.id ASC;
            """,
            (BedStatus.OCCUPIED.value,),
        ).fetchall()
        return [
            RoomCounters(
                room_id=int(row["room_id"]),
                room_number=str(row["room_number"]),
                current_occupancy=int(row["current_occupancy"]),
                occupied_beds=int(row["occupied_beds"]),
            )
            for row in rows
        ]

    def list_active_occupants(
        self,
        conn: sqlite3.Connection,
        room_ids: Sequence[int],
    ) -> List[OccupantRecord]:
        if not room_ids:
            return []
        placeholders = ",".join("?" for _ in room_ids)
        rows = conn.execute(
            f"""
            SELECT bed_id, student_id, id
            FROM Accommodations
            WHERE is_active = 1 AND room_id IN ({placeholders});
            """,
            tuple(room_ids),
        ).fetchall()
        return [
            OccupantRecord(
                bed_id=int(row["bed_id"]),
                student_id=str(row["student_id"]),
                accommodation_id=int(row["id"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def insert_request(
        self,
        conn: sqlite3.Connection,
        *,
        student_id: str,
        preferences: RequestPreferences,
        academic_year: str,
        semester: str,
        reference: str,
        special_requests: Optional[str],
    ) -> int:
        now = utc_now()
        cursor = conn.execute(
            """
            INSERT INTO Requests (
                student_id,
                preferred_hostel_id,
                preferred_floor_id,
                preferred_room_type,
                academic_year,
                semester,
                status,
                reference,
                special_requests,
                created_at,
                updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                student_id,
                preferences.hostel_id,
                preferences.floor_id,
                preferences.room_type.value if preferences.room_type else None,
                academic_year,
                semester,
                RequestStatus.PENDING.value,
                reference,
                special_requests,
                now,
                now,
            ),
        )
        return int(cursor.lastrowid)

    def get_request(
        self,
        conn: sqlite3.Connection,
        request_id: int,
    ) -> Optional[AllocationRequest]:
        row = conn.execute(
            "SELECT * FROM Requests WHERE id = ?;",
            (request_id,),
        ).fetchone()
        return None if row is None else _row_to_request(row)

    def find_open_request_for_period(
        self,
        conn: sqlite3.Connection,
        *,
        student_id: str,
        academic_year: str,
        semester: str,
    ) -> Optional[AllocationRequest]:
        row = conn.execute(
            """
            SELECT *
            FROM Requests
            WHERE student_id = ?
              AND academic_year = ?
              AND semester = ?
              AND status IN (?, ?)
            ORDER BY id ASC
            LIMIT 1;
            """,
            (
                student_id,
                academic_year,
                semester,
                RequestStatus.PENDING.value,
                RequestStatus.APPROVED.value,
            ),
        ).fetchone()
        return None if row is None else _row_to_request(row)

    def transition_request(
        self,
        conn: sqlite3.Connection,
        *,
        request_id: int,
        expected_status: RequestStatus,
        new_status: RequestStatus,
        admin_notes: Optional[str] = None,
    ) -> bool:
        """Move a request between states only from ``expected_status``.

        ``admin_notes`` replaces the stored notes when provided.
        """
        cursor = conn.execute(
            """
            UPDATE Requests
            SET status = ?,
                admin_notes = COALESCE(?, admin_notes),
                updated_at = ?
            WHERE id = ? AND status = ?;
            """,
            (new_status.value, admin_notes, utc_now(), request_id, expected_status.value),
        )
        return cursor.rowcount == 1

    def list_requests(
        self,
        conn: sqlite3.Connection,
        *,
        status: Optional[RequestStatus] = None,
        hostel_id: Optional[int] = None,
    ) -> List[RequestRecord]:
        clauses: list[str] = []
        params: list[object] = []
        if status is not None:
            clauses.append("q.status = ?")
            params.append(status.value)
        if hostel_id is not None:
            clauses.append("q.preferred_hostel_id = ?")
            params.append(hostel_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = conn.execute(
            f"""
            SELECT
                q.*,
                h.name AS preferred_hostel_name,
                f.floor_number AS preferred_floor_number,
                a.id AS accommodation_id,
                r.room_number AS allocated_room_number,
                b.bed_number AS allocated_bed_number
            FROM Requests AS q
            LEFT JOIN Hostels AS h ON h.id = q.preferred_hostel_id
            LEFT JOIN Floors AS f ON f.id = q.preferred_floor_id
            LEFT JOIN Accommodations AS a ON a.id = (
                SELECT MAX(id) FROM Accommodations WHERE request_id = q.id
            )
            LEFT JOIN Rooms AS r ON r.id = a.room_id
            LEFT JOIN Beds AS b ON b.id = a.bed_id
            {where}
            ORDER BY q.created_at DESC, q.id DESC;
            """,
            tuple(params),
        ).fetchall()
        return [
            RequestRecord(
                request=_row_to_request(row),
                preferred_hostel_name=row["preferred_hostel_name"],
                preferred_floor_number=(
                    None
                    if row["preferred_floor_number"] is None
                    else int(row["preferred_floor_number"])
                ),
                accommodation_id=(
                    None if row["accommodation_id"] is None else int(row["accommodation_id"])
                ),
                room_number=row["allocated_room_number"],
                bed_number=row["allocated_bed_number"],
            )
            for row in rows
        ]

    def list_pending_requests(
        self,
        conn: sqlite3.Connection,
        hostel_id: Optional[int] = None,
    ) -> List[AllocationRequest]:
        """Return pending requests oldest first, the matcher's input order."""
        if hostel_id is None:
            rows = conn.execute(
                "SELECT * FROM Requests WHERE status = ? ORDER BY created_at ASC, id ASC;",
                (RequestStatus.PENDING.value,),
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT * FROM Requests
                WHERE status = ? AND preferred_hostel_id = ?
                ORDER BY created_at ASC, id ASC;
                """,
                (RequestStatus.PENDING.value, hostel_id),
            ).fetchall()
        return [_row_to_request(row) for row in rows]

    # ------------------------------------------------------------------
    # Accommodations
    # ------------------------------------------------------------------

    def insert_accommodation(
        self,
        conn: sqlite3.Connection,
        *,
        student_id: str,
        room_id: int,
        bed_id: int,
        request_id: int,
        allocation_date: str,
        semester: str,
        academic_year: str,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO Accommodations (
                student_id,
                room_id,
                bed_id,
                request_id,
                allocation_date,
                semester,
                academic_year,
                is_active
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 1);
            """,
            (student_id, room_id, bed_id, request_id, allocation_date, semester, academic_year),
        )
        return int(cursor.lastrowid)

    def get_accommodation(
        self,
        conn: sqlite3.Connection,
        accommodation_id: int,
    ) -> Optional[Accommodation]:
        row = conn.execute(
            "SELECT * FROM Accommodations WHERE id = ?;",
            (accommodation_id,),
        ).fetchone()
        return None if row is None else _row_to_accommodation(row)

    def find_active_accommodation(
        self,
        conn: sqlite3.Connection,
        *,
        student_id: str,
        academic_year: Optional[str] = None,
        semester: Optional[str] = None,
    ) -> Optional[Accommodation]:
        """Find the student's active accommodation, optionally per period."""
        if academic_year is None or semester is None:
            row = conn.execute(
                "SELECT * FROM Accommodations WHERE student_id = ? AND is_active = 1 LIMIT 1;",
                (student_id,),
            ).fetchone()
        else:
            row = conn.execute(
                """
                SELECT * FROM Accommodations
                WHERE student_id = ?
                  AND academic_year = ?
                  AND semester = ?
                  AND is_active = 1
                LIMIT 1;
                """,
                (student_id, academic_year, semester),
            ).fetchone()
        return None if row is None else _row_to_accommodation(row)

    def list_active_accommodations_in_room(
        self,
        conn: sqlite3.Connection,
        room_id: int,
    ) -> List[Accommodation]:
        rows = conn.execute(
            """
            SELECT * FROM Accommodations
            WHERE room_id = ? AND is_active = 1
            ORDER BY allocation_date ASC, id ASC;
            """,
            (room_id,),
        ).fetchall()
        return [_row_to_accommodation(row) for row in rows]

    def deactivate_accommodation(
        self,
        conn: sqlite3.Connection,
        *,
        accommodation_id: int,
        release_date: str,
        reason: Optional[str],
    ) -> bool:
        cursor = conn.execute(
            """
            UPDATE Accommodations
            SET is_active = 0, release_date = ?, release_reason = ?
            WHERE id = ? AND is_active = 1;
            """,
            (release_date, reason, accommodation_id),
        )
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Occupancy ledger (append-only)
    # ------------------------------------------------------------------

    def append_ledger_entry(
        self,
        conn: sqlite3.Connection,
        *,
        event_type: LedgerEventType,
        bed_id: int,
        room_id: int,
        student_id: str,
        request_id: int,
        accommodation_id: int,
        room_occupancy_after: int,
        idempotency_key: str,
        recorded_at: str,
        reason: Optional[str] = None,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO OccupancyLedger (
                event_type,
                bed_id,
                room_id,
                student_id,
                request_id,
                accommodation_id,
                room_occupancy_after,
                idempotency_key,
                reason,
                recorded_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                event_type.value,
                bed_id,
                room_id,
                student_id,
                request_id,
                accommodation_id,
                room_occupancy_after,
                idempotency_key,
                reason,
                recorded_at,
            ),
        )
        return int(cursor.lastrowid)

    def find_ledger_entry_by_key(
        self,
        conn: sqlite3.Connection,
        idempotency_key: str,
    ) -> Optional[tuple[LedgerEntry, int]]:
        """Return the entry recorded under ``idempotency_key`` and its occupancy."""
        row = conn.execute(
            "SELECT * FROM OccupancyLedger WHERE idempotency_key = ?;",
            (idempotency_key,),
        ).fetchone()
        if row is None:
            return None
        return _row_to_ledger_entry(row), int(row["room_occupancy_after"])

    def list_ledger_entries(
        self,
        conn: sqlite3.Connection,
        *,
        bed_id: Optional[int] = None,
        student_id: Optional[str] = None,
        request_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[LedgerEntry]:
        clauses: list[str] = []
        params: list[object] = []
        if bed_id is not None:
            clauses.append("bed_id = ?")
            params.append(bed_id)
        if student_id is not None:
            clauses.append("student_id = ?")
            params.append(student_id)
        if request_id is not None:
            clauses.append("request_id = ?")
            params.append(request_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit_clause = ""
        if limit is not None:
            limit_clause = "LIMIT ?"
            params.append(limit)
        rows = conn.execute(
            f"""
            SELECT * FROM OccupancyLedger
            {where}
            ORDER BY id ASC
            {limit_clause};
            """,
            tuple(params),
        ).fetchall()
        return [_row_to_ledger_entry(row) for row in rows]

    def ledger_occupancy_by_room(self, conn: sqlite3.Connection) -> dict[int, int]:
        rows = conn.execute(
            """
            SELECT
                room_id,
                SUM(CASE WHEN event_type = ? THEN 1 ELSE -1 END) AS occupancy
            FROM OccupancyLedger
            GROUP BY room_id;
            """,
            (LedgerEventType.ALLOCATE.value,),
        ).fetchall()
        return {int(row["room_id"]): int(row["occupancy"]) for row in rows}

    def count_ledger_entries(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT COUNT(*) AS count FROM OccupancyLedger;").fetchone()
        return int(row["count"])


_ROOM_SELECT = """
SELECT
    r.id,
    r.hostel_id,
    r.floor_id,
    f.floor_number,
    r.room_number,
    r.room_type,
    r.capacity,
    r.current_occupancy,
    r.is_active
FROM Rooms AS r
INNER JOIN Floors AS f ON f.id = r.floor_id
"""


def _row_to_hostel(row: sqlite3.Row) -> Hostel:
    return Hostel(
        hostel_id=int(row["id"]),
        name=str(row["name"]),
        code=str(row["code"]),
        gender_policy=GenderPolicy(row["gender_policy"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_floor(row: sqlite3.Row) -> Floor:
    return Floor(
        floor_id=int(row["id"]),
        hostel_id=int(row["hostel_id"]),
        floor_number=int(row["floor_number"]),
        gender_policy=(
            None if row["gender_policy"] is None else GenderPolicy(row["gender_policy"])
        ),
    )


def _row_to_room(row: sqlite3.Row) -> Room:
    return Room(
        room_id=int(row["id"]),
        hostel_id=int(row["hostel_id"]),
        floor_id=int(row["floor_id"]),
        floor_number=int(row["floor_number"]),
        room_number=str(row["room_number"]),
        room_type=RoomType(row["room_type"]),
        capacity=int(row["capacity"]),
        current_occupancy=int(row["current_occupancy"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_bed(row: sqlite3.Row) -> Bed:
    return Bed(
        bed_id=int(row["id"]),
        room_id=int(row["room_id"]),
        bed_number=str(row["bed_number"]),
        status=BedStatus(row["status"]),
        version=int(row["version"]),
    )


def _row_to_request(row: sqlite3.Row) -> AllocationRequest:
    return AllocationRequest(
        request_id=int(row["id"]),
        student_id=str(row["student_id"]),
        preferences=RequestPreferences(
            hostel_id=int(row["preferred_hostel_id"]),
            floor_id=(
                None if row["preferred_floor_id"] is None else int(row["preferred_floor_id"])
            ),
            room_type=(
                None if row["preferred_room_type"] is None else RoomType(row["preferred_room_type"])
            ),
        ),
        academic_year=str(row["academic_year"]),
        semester=str(row["semester"]),
        status=RequestStatus(row["status"]),
        reference=str(row["reference"]),
        created_at=str(row["created_at"]),
        admin_notes=row["admin_notes"],
        special_requests=row["special_requests"],
    )


def _row_to_accommodation(row: sqlite3.Row) -> Accommodation:
    return Accommodation(
        accommodation_id=int(row["id"]),
        student_id=str(row["student_id"]),
        room_id=int(row["room_id"]),
        bed_id=int(row["bed_id"]),
        request_id=int(row["request_id"]),
        allocation_date=str(row["allocation_date"]),
        semester=str(row["semester"]),
        academic_year=str(row["academic_year"]),
        is_active=bool(row["is_active"]),
        release_date=row["release_date"],
        release_reason=row["release_reason"],
    )


def _row_to_ledger_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        entry_id=int(row["id"]),
        event_type=LedgerEventType(row["event_type"]),
        bed_id=int(row["bed_id"]),
        room_id=int(row["room_id"]),
        student_id=str(row["student_id"]),
        request_id=int(row["request_id"]),
        accommodation_id=int(row["accommodation_id"]),
        recorded_at=str(row["recorded_at"]),
        reason=row["reason"],
    )


_SCHEMA = """
CREATE TABLE IF NOT EXISTS Hostels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    code TEXT NOT NULL UNIQUE,
    gender_policy TEXT NOT NULL CHECK (gender_policy IN ('Male', 'Female', 'Mixed')),
    is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS Floors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hostel_id INTEGER NOT NULL,
    floor_number INTEGER NOT NULL CHECK (floor_number >= 0),
    gender_policy TEXT CHECK (gender_policy IN ('Male', 'Female', 'Mixed')),
    UNIQUE (hostel_id, floor_number),
    FOREIGN KEY (hostel_id) REFERENCES Hostels(id) ON DELETE RESTRICT
);

CREATE TABLE IF NOT EXISTS Rooms (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hostel_id INTEGER NOT NULL,
    floor_id INTEGER NOT NULL,
    room_number TEXT NOT NULL,
    room_type TEXT NOT NULL CHECK (room_type IN ('Single', 'Double', 'Triple', 'Quadruple')),
    capacity INTEGER NOT NULL CHECK (capacity >= 1),
    current_occupancy INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    CHECK (current_occupancy >= 0 AND current_occupancy <= capacity),
    UNIQUE (hostel_id, room_number),
    FOREIGN KEY (hostel_id) REFERENCES Hostels(id) ON DELETE RESTRICT,
    FOREIGN KEY (floor_id) REFERENCES Floors(id) ON DELETE RESTRICT
);

CREATE TABLE IF NOT EXISTS Beds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room_id INTEGER NOT NULL,
    bed_number TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'Available'
        CHECK (status IN ('Available', 'Occupied', 'Reserved', 'Maintenance')),
    version INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT,
    UNIQUE (room_id, bed_number),
    FOREIGN KEY (room_id) REFERENCES Rooms(id) ON DELETE RESTRICT
);

CREATE TABLE IF NOT EXISTS Requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL,
    preferred_hostel_id INTEGER NOT NULL,
    preferred_floor_id INTEGER,
    preferred_room_type TEXT
        CHECK (preferred_room_type IN ('Single', 'Double', 'Triple', 'Quadruple')),
    academic_year TEXT NOT NULL,
    semester TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'Pending'
        CHECK (status IN ('Pending', 'Approved', 'Rejected', 'Cancelled')),
    reference TEXT NOT NULL UNIQUE,
    admin_notes TEXT,
    special_requests TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (preferred_hostel_id) REFERENCES Hostels(id),
    FOREIGN KEY (preferred_floor_id) REFERENCES Floors(id)
);

CREATE TABLE IF NOT EXISTS Accommodations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL,
    room_id INTEGER NOT NULL,
    bed_id INTEGER NOT NULL,
    request_id INTEGER NOT NULL,
    allocation_date TEXT NOT NULL,
    semester TEXT NOT NULL,
    academic_year TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
    release_date TEXT,
    release_reason TEXT,
    FOREIGN KEY (room_id) REFERENCES Rooms(id),
    FOREIGN KEY (bed_id) REFERENCES Beds(id),
    FOREIGN KEY (request_id) REFERENCES Requests(id)
);

CREATE TABLE IF NOT EXISTS OccupancyLedger (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL CHECK (event_type IN ('Allocate', 'Release')),
    bed_id INTEGER NOT NULL,
    room_id INTEGER NOT NULL,
    student_id TEXT NOT NULL,
    request_id INTEGER NOT NULL,
    accommodation_id INTEGER NOT NULL,
    room_occupancy_after INTEGER NOT NULL,
    idempotency_key TEXT NOT NULL UNIQUE,
    reason TEXT,
    recorded_at TEXT NOT NULL,
    FOREIGN KEY (bed_id) REFERENCES Beds(id),
    FOREIGN KEY (room_id) REFERENCES Rooms(id),
    FOREIGN KEY (request_id) REFERENCES Requests(id),
    FOREIGN KEY (accommodation_id) REFERENCES Accommodations(id)
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_accommodations_active_bed
ON Accommodations(bed_id)
WHERE is_active = 1;

CREATE INDEX IF NOT EXISTS idx_requests_status_hostel
ON Requests(status, preferred_hostel_id);

CREATE INDEX IF NOT EXISTS idx_requests_student_period
ON Requests(student_id, academic_year, semester);

CREATE INDEX IF NOT EXISTS idx_accommodations_room_active
ON Accommodations(room_id, is_active);

CREATE INDEX IF NOT EXISTS idx_ledger_room
ON OccupancyLedger(room_id);

CREATE TRIGGER IF NOT EXISTS trg_ledger_no_update
BEFORE UPDATE ON OccupancyLedger
BEGIN
    SELECT RAISE(ABORT, 'OccupancyLedger is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_ledger_no_delete
BEFORE DELETE ON OccupancyLedger
BEGIN
    SELECT RAISE(ABORT, 'OccupancyLedger is append-only');
END;
"""
