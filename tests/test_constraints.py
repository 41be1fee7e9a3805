"""Tests for inventory and settings validation rules."""

from __future__ import annotations

from dataclasses import replace

import pytest

from backend.domain.constraints import (
    resolve_room_capacity,
    validate_academic_period,
    validate_floor_number,
    validate_room_number,
    validate_settings,
)
from backend.domain.models import RoomType, bed_label, bed_sort_key
from backend.utils.config import get_settings


# --- room capacity ---

def test_capacity_defaults_to_room_type() -> None:
    assert resolve_room_capacity(RoomType.SINGLE, None) == 1
    assert resolve_room_capacity(RoomType.QUADRUPLE, None) == 4


def test_capacity_may_be_lowered() -> None:
    assert resolve_room_capacity(RoomType.TRIPLE, 2) == 2


def test_capacity_above_nominal_raises() -> None:
    with pytest.raises(ValueError):
        resolve_room_capacity(RoomType.DOUBLE, 3)


def test_capacity_zero_raises() -> None:
    with pytest.raises(ValueError):
        resolve_room_capacity(RoomType.DOUBLE, 0)


# --- room / floor numbers ---

def test_room_number_is_stripped() -> None:
    assert validate_room_number("  A101 ") == "A101"


@pytest.mark.parametrize("value", ["", "   ", "X" * 21])
def test_invalid_room_number_raises(value: str) -> None:
    with pytest.raises(ValueError):
        validate_room_number(value)


def test_negative_floor_raises() -> None:
    with pytest.raises(ValueError):
        validate_floor_number(-1)
    validate_floor_number(0)


# --- academic period ---

def test_valid_academic_period_passes() -> None:
    validate_academic_period("2024/2025", "First Semester")


@pytest.mark.parametrize(
    ("academic_year", "semester"),
    [
        ("2024-2025", "First Semester"),
        ("2024/2026", "First Semester"),
        ("24/25", "First Semester"),
        ("2024/2025", "  "),
    ],
)
def test_invalid_academic_period_raises(academic_year: str, semester: str) -> None:
    with pytest.raises(ValueError):
        validate_academic_period(academic_year, semester)


# --- bed labels ---

def test_bed_labels_sort_numerically() -> None:
    labels = [bed_label(10), bed_label(2), bed_label(1)]
    assert sorted(labels, key=bed_sort_key) == ["Bed 1", "Bed 2", "Bed 10"]


# --- settings ---

def test_default_settings_pass() -> None:
    get_settings.cache_clear()
    validate_settings(get_settings())


@pytest.mark.parametrize(
    "overrides",
    [
        {"sqlite_busy_timeout_seconds": 0},
        {"allocation_max_retries": -1},
        {"allocation_retry_backoff_seconds": -0.1},
        {"allocation_uniqueness_scope": "building"},
        {"matcher_max_time_seconds": 0},
        {"matcher_workers": 0},
        {"matcher_random_seed": -1},
        {"matcher_objective_scale": 0},
    ],
)
def test_invalid_settings_raise(overrides) -> None:
    with pytest.raises(ValueError):
        validate_settings(replace(get_settings(), **overrides))


def test_uniqueness_scope_read_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("ALLOCATION_UNIQUENESS_SCOPE", "Semester")
    get_settings.cache_clear()
    try:
        assert get_settings().allocation_uniqueness_scope == "semester"
    finally:
        get_settings.cache_clear()
