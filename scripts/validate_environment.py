#!/usr/bin/env python3
"""Validate local allocation-core environment readiness.

Each check returns a short detail string or raises; the first failing
storage check skips the ones that depend on it.
"""

from __future__ import annotations

import importlib
import sys
import tempfile
from dataclasses import dataclass, replace
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Callable

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.domain.errors import AllocationError
from backend.repository.data_repository import DataRepository
from backend.services.allocation_service import AllocationEngine
from backend.services.inventory_service import InventoryService
from backend.services.ledger_service import OccupancyLedgerService
from backend.services.release_service import ReleaseService
from backend.services.request_service import RequestService
from backend.utils.config import Settings, get_settings

REQUIRED_DISTRIBUTIONS = ("fastapi", "uvicorn", "pydantic", "ortools", "httpx", "pytest")
RULE = "-" * 48


class CheckFailed(Exception):
    pass


@dataclass
class CheckOutcome:
    name: str
    passed: bool
    detail: str

    def render(self) -> str:
        marker = "ok  " if self.passed else "FAIL"
        return f" [{marker}] {self.name}: {self.detail}"


def check_python() -> str:
    found = sys.version.split()[0]
    if sys.version_info < (3, 10):
        raise CheckFailed(f"need >= 3.10, found {found}")
    return found


def check_packages() -> str:
    missing: list[str] = []
    found: list[str] = []
    for name in REQUIRED_DISTRIBUTIONS:
        try:
            importlib.import_module(name)
            found.append(f"{name}=={version(name)}")
        except (ImportError, PackageNotFoundError) as exc:
            missing.append(f"{name} ({exc})")
    if missing:
        raise CheckFailed("missing " + "; ".join(missing))
    return ", ".join(found)


class StorageChecks:
    """Runs the core against a throwaway database."""

    def __init__(self, settings: Settings) -> None:
        self.repository = DataRepository(settings)
        self.inventory = InventoryService(repository=self.repository, settings=settings)
        self.requests = RequestService(repository=self.repository, settings=settings)
        self.engine = AllocationEngine(
            repository=self.repository,
            inventory_service=self.inventory,
            settings=settings,
        )
        self.release = ReleaseService(
            repository=self.repository,
            allocation_engine=self.engine,
            inventory_service=self.inventory,
            settings=settings,
        )
        self.ledger = OccupancyLedgerService(repository=self.repository, settings=settings)
        self.hostel_id: int | None = None

    def schema(self) -> str:
        self.repository.initialize_database()
        return self.repository.database_path.name

    def seed(self) -> str:
        self.inventory.seed_demo_inventory_if_empty()
        self.hostel_id = self.inventory.snapshot().hostels[0].hostel_id
        seeded = self.requests.seed_demo_requests_if_empty(self.hostel_id)
        return f"{seeded} demo requests"

    def round_trip(self) -> str:
        if self.hostel_id is None:
            raise CheckFailed("no demo hostel")
        pending = self.requests.list_requests()[-1].request
        allocated = self.engine.allocate(
            request_id=pending.request_id,
            student_id=pending.student_id,
            hostel_id=self.hostel_id,
            room_number="A101",
        )
        self.release.release(allocated.accommodation_id, reason="Validation")
        if not self.ledger.reconcile().is_consistent:
            raise CheckFailed("ledger does not reconcile after round trip")
        return f"{allocated.bed_number} in {allocated.room_number}"


def _run(name: str, check: Callable[[], str]) -> CheckOutcome:
    try:
        return CheckOutcome(name, True, check())
    except (CheckFailed, AllocationError) as exc:
        return CheckOutcome(name, False, str(exc))


def main() -> int:
    outcomes = [_run("Python", check_python), _run("Packages", check_packages)]

    with tempfile.TemporaryDirectory(prefix="hostel-env-") as temp_dir:
        settings = replace(get_settings(), database_path=Path(temp_dir) / "validation.db")
        storage = StorageChecks(settings)
        for name, check in (
            ("Schema", storage.schema),
            ("Demo seed", storage.seed),
            ("Allocate/release", storage.round_trip),
        ):
            outcome = _run(name, check)
            outcomes.append(outcome)
            if not outcome.passed:
                break

    print("Allocation core environment")
    print(RULE)
    for outcome in outcomes:
        print(outcome.render())
    print(RULE)
    failed = [outcome.name for outcome in outcomes if not outcome.passed]
    if failed:
        print(f"Failed: {', '.join(failed)}")
        return 1
    print("Environment is ready.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
