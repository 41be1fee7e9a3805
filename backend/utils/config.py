"""Environment-driven application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration.

    Tests derive variants with ``dataclasses.replace`` instead of mutating
    environment variables.
    """

    app_name: str
    app_version: str
    database_path: Path
    log_level: str
    admin_token: Optional[str]

    sqlite_busy_timeout_seconds: float

    allocation_max_retries: int
    allocation_retry_backoff_seconds: float
    allocation_uniqueness_scope: str

    matcher_max_time_seconds: int
    matcher_workers: int
    matcher_random_seed: int
    matcher_objective_scale: int

    seed_demo_data: bool
    reservation_reference_prefix: str


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings from environment variables once per process."""
    from backend.domain.constraints import validate_settings

    admin_token = os.getenv("ADMIN_TOKEN")
    settings = Settings(
        app_name=_env_str("APP_NAME", "Hostel Allocation Core"),
        app_version=_env_str("APP_VERSION", "1.0.0"),
        database_path=Path(
            _env_str("DATABASE_PATH", str(PROJECT_ROOT / "data" / "hostel_allocation.db"))
        ),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        admin_token=admin_token.strip() if admin_token and admin_token.strip() else None,
        sqlite_busy_timeout_seconds=_env_float("SQLITE_BUSY_TIMEOUT_SECONDS", 5.0),
        allocation_max_retries=_env_int("ALLOCATION_MAX_RETRIES", 3),
        allocation_retry_backoff_seconds=_env_float("ALLOCATION_RETRY_BACKOFF_SECONDS", 0.05),
        allocation_uniqueness_scope=_env_str("ALLOCATION_UNIQUENESS_SCOPE", "global").lower(),
        matcher_max_time_seconds=_env_int("MATCHER_MAX_TIME_SECONDS", 10),
        matcher_workers=_env_int("MATCHER_WORKERS", 4),
        matcher_random_seed=_env_int("MATCHER_RANDOM_SEED", 42),
        matcher_objective_scale=_env_int("MATCHER_OBJECTIVE_SCALE", 1000),
        seed_demo_data=_env_bool("SEED_DEMO_DATA", True),
        reservation_reference_prefix=_env_str("RESERVATION_REFERENCE_PREFIX", "RES"),
    )
    validate_settings(settings)
    return settings
