#!/usr/bin/env python3
"""Fire concurrent allocations at one bed and check that exactly one wins."""

from __future__ import annotations

import argparse
import shutil
import sys
import tempfile
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from threading import Barrier

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.domain.errors import AllocationError
from backend.repository.data_repository import DataRepository
from backend.services.allocation_service import AllocationEngine
from backend.services.inventory_service import InventoryService
from backend.services.ledger_service import OccupancyLedgerService
from backend.services.request_service import RequestService
from backend.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--students", type=int, default=5, help="concurrent bookings")
    parser.add_argument("--room", default="A101", help="demo room to contend for")
    parser.add_argument("--bed", default="Bed 1", help="bed label every booking targets")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    temp_dir = tempfile.mkdtemp(prefix="hostel-load-")
    try:
        settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "load.db",
            allocation_retry_backoff_seconds=0.01,
        )
        repository = DataRepository(settings)
        repository.initialize_database()
        inventory = InventoryService(repository=repository, settings=settings)
        requests = RequestService(repository=repository, settings=settings)
        engine = AllocationEngine(
            repository=repository,
            inventory_service=inventory,
            settings=settings,
        )
        ledger = OccupancyLedgerService(repository=repository, settings=settings)

        inventory.seed_demo_inventory_if_empty()
        hostel_id = inventory.snapshot().hostels[0].hostel_id
        submitted = [
            requests.submit_request(
                student_id=f"LOAD-{index:03d}",
                hostel_id=hostel_id,
                academic_year="2024/2025",
                semester="First Semester",
            )
            for index in range(args.students)
        ]
        print(f"Target: room {args.room}, {args.bed} | bookings: {len(submitted)}")

        barrier = Barrier(len(submitted))

        def book(request_id: int, student_id: str) -> str:
            barrier.wait()
            try:
                engine.allocate(
                    request_id=request_id,
                    student_id=student_id,
                    hostel_id=hostel_id,
                    room_number=args.room,
                    bed_number=args.bed,
                )
                return "success"
            except AllocationError as exc:
                return exc.kind.value

        with ThreadPoolExecutor(max_workers=len(submitted)) as pool:
            outcomes = list(
                pool.map(
                    lambda request: book(request.request_id, request.student_id),
                    submitted,
                )
            )

        tally = Counter(outcomes)
        report = ledger.reconcile()
        print(SEPARATOR_LINE)
        print(" Booking load results")
        print(SEPARATOR_LINE)
        for outcome, count in sorted(tally.items()):
            print(f" {outcome:<24} {count}")
        print(f" ledger consistent       {report.is_consistent}")
        print(SEPARATOR_LINE)
        if tally["success"] == 1 and report.is_consistent:
            print(" Exactly one booking won the bed.")
            return 0
        print(" Unexpected outcome: double booking or lost booking.")
        return 1
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)


if __name__ == "__main__":
    raise SystemExit(main())
