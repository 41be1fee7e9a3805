"""Occupancy ledger: append-only allocation history and reconciliation."""

from __future__ import annotations

import sqlite3
from typing import Optional

from backend.domain.models import LedgerEntry, ReconciliationReport, RoomDiscrepancy
from backend.repository.data_repository import DataRepository
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


def allocation_key(request_id: int) -> str:
    return f"allocate:{request_id}"


def release_key(accommodation_id: int) -> str:
    return f"release:{accommodation_id}"


def reassignment_key(accommodation_id: int) -> str:
    return f"reassign:{accommodation_id}"


class OccupancyLedgerService:
    """Read side of the ledger.

    Entries are written only by the allocation and release paths, inside
    their transactions; the table itself rejects updates and deletes.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def entries(
        self,
        *,
        bed_id: Optional[int] = None,
        student_id: Optional[str] = None,
        request_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[LedgerEntry]:
        with self._repository.using(None) as conn:
            return self._repository.list_ledger_entries(
                conn,
                bed_id=bed_id,
                student_id=student_id,
                request_id=request_id,
                limit=limit,
            )

    def find_allocation(
        self,
        request_id: int,
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[LedgerEntry]:
        with self._repository.using(conn) as active:
            found = self._repository.find_ledger_entry_by_key(active, allocation_key(request_id))
        return None if found is None else found[0]

    def reconstruct_occupancy(self) -> dict[int, int]:
        """Replay Allocate/Release entries into per-room occupancy."""
        with self._repository.using(None) as conn:
            return self._repository.ledger_occupancy_by_room(conn)

    def reconcile(self) -> ReconciliationReport:
        """Compare counters, bed statuses and ledger replay for every room."""
        with self._repository.using(None) as conn:
            counters = self._repository.list_room_counters(conn)
            replayed = self._repository.ledger_occupancy_by_room(conn)
            entry_count = self._repository.count_ledger_entries(conn)

        discrepancies = [
            RoomDiscrepancy(
                room_id=counter.room_id,
                room_number=counter.room_number,
                counter_occupancy=counter.current_occupancy,
                occupied_beds=counter.occupied_beds,
                ledger_occupancy=replayed.get(counter.room_id, 0),
            )
            for counter in counters
            if not (
                counter.current_occupancy
                == counter.occupied_beds
                == replayed.get(counter.room_id, 0)
            )
        ]
        if discrepancies:
            logger.warning(
                "Occupancy reconciliation found discrepancies | rooms=%s",
                [item.room_id for item in discrepancies],
            )
        else:
            logger.info(
                "Occupancy reconciliation clean | rooms_checked=%s | ledger_entries=%s",
                len(counters),
                entry_count,
            )
        return ReconciliationReport(
            rooms_checked=len(counters),
            discrepancies=discrepancies,
            ledger_entries=entry_count,
        )
