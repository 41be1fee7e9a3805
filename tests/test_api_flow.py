from __future__ import annotations

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

pytest.importorskip("ortools")

from app import create_app
from backend.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str, admin_token: str):
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        admin_token=admin_token,
        seed_demo_data=False,
        matcher_max_time_seconds=5,
        matcher_workers=1,
    )


def _login(client: TestClient, admin_token: str) -> dict[str, str]:
    response = client.post("/login", json={"admin_token": admin_token})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_allocation_end_to_end_flow(tmp_path):
    admin_token = "secret-admin-token"
    app = create_app(_build_test_settings(tmp_path, "api_flow.db", admin_token))

    with TestClient(app) as client:
        unauthorized = client.post("/hostels", json={"name": "Unity Hall", "code": "UH"})
        assert unauthorized.status_code == 401

        headers = _login(client, admin_token)

        hostel = client.post(
            "/hostels", json={"name": "Unity Hall", "code": "UH"}, headers=headers
        )
        assert hostel.status_code == 201
        hostel_id = hostel.json()["hostel_id"]

        room = client.post(
            "/rooms",
            json={
                "hostel_id": hostel_id,
                "floor_number": 1,
                "room_number": "A101",
                "room_type": "Double",
            },
            headers=headers,
        )
        assert room.status_code == 201
        assert room.json()["capacity"] == 2
        assert room.json()["available_slots"] == 2

        submitted = client.post(
            "/requests",
            json={
                "student_id": "S1",
                "hostel_id": hostel_id,
                "academic_year": "2024/2025",
                "semester": "First Semester",
            },
        )
        assert submitted.status_code == 201
        request_id = submitted.json()["request_id"]
        assert submitted.json()["status"] == "Pending"

        allocate_payload = {
            "request_id": request_id,
            "student_id": "S1",
            "hostel_id": hostel_id,
            "room_number": "A101",
            "bed_number": "Bed 2",
        }
        allocated = client.post("/allocate", json=allocate_payload, headers=headers)
        assert allocated.status_code == 200
        result = allocated.json()
        assert result["bed_number"] == "Bed 2"
        assert result["room_occupancy"] == 1

        replay = client.post("/allocate", json=allocate_payload, headers=headers)
        assert replay.status_code == 409
        detail = replay.json()["detail"]
        assert detail["kind"] == "AlreadyProcessed"
        assert detail["original"]["accommodation_id"] == result["accommodation_id"]

        stored = client.get(f"/requests/{request_id}")
        assert stored.json()["status"] == "Approved"

        available = client.get("/rooms/available", params={"hostel_id": hostel_id})
        assert [item["available_slots"] for item in available.json()] == [1]

        snapshot = client.get("/inventory-snapshot", params={"hostel_id": hostel_id})
        assert snapshot.status_code == 200
        [hostel_view] = snapshot.json()["hostels"]
        assert hostel_view["occupied_beds"] == 1
        beds = {bed["bed_number"]: bed["student_id"] for bed in hostel_view["rooms"][0]["beds"]}
        assert beds == {"Bed 1": None, "Bed 2": "S1"}

        released = client.post(
            "/release",
            json={"accommodation_id": result["accommodation_id"], "reason": "Checkout"},
            headers=headers,
        )
        assert released.status_code == 200
        assert released.json()["room_occupancy"] == 0

        ledger = client.get("/ledger", params={"student_id": "S1"}, headers=headers)
        assert [entry["event_type"] for entry in ledger.json()] == ["Allocate", "Release"]

        reconcile = client.get("/ledger/reconcile", headers=headers)
        assert reconcile.status_code == 200
        assert reconcile.json()["consistent"] is True
        assert reconcile.json()["ledger_entries"] == 2


def test_errors_map_to_http_statuses(tmp_path):
    admin_token = "secret-admin-token"
    app = create_app(_build_test_settings(tmp_path, "api_errors.db", admin_token))

    with TestClient(app) as client:
        headers = _login(client, admin_token)
        hostel_id = client.post(
            "/hostels", json={"name": "Unity Hall", "code": "UH"}, headers=headers
        ).json()["hostel_id"]
        request_id = client.post(
            "/requests",
            json={
                "student_id": "S1",
                "hostel_id": hostel_id,
                "academic_year": "2024/2025",
                "semester": "First Semester",
            },
        ).json()["request_id"]

        missing_room = client.post(
            "/allocate",
            json={
                "request_id": request_id,
                "student_id": "S1",
                "hostel_id": hostel_id,
                "room_number": "Z999",
            },
            headers=headers,
        )
        assert missing_room.status_code == 404
        assert missing_room.json()["detail"]["kind"] == "RoomNotFound"

        room_payload = {
            "hostel_id": hostel_id,
            "floor_number": 1,
            "room_number": "A103",
            "room_type": "Single",
        }
        assert client.post("/rooms", json=room_payload, headers=headers).status_code == 201
        duplicate_room = client.post("/rooms", json=room_payload, headers=headers)
        assert duplicate_room.status_code == 400
        assert duplicate_room.json()["detail"]["kind"] == "InventoryValidation"

        duplicate = client.post(
            "/requests",
            json={
                "student_id": "S1",
                "hostel_id": hostel_id,
                "academic_year": "2024/2025",
                "semester": "First Semester",
            },
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["detail"]["kind"] == "DuplicateRequest"

        assert client.get("/requests/9999").status_code == 404
        assert client.post("/release", json={"accommodation_id": 9999}, headers=headers).status_code == 404
        assert client.get("/students/S1/roommates").json() == []


def test_roommates_and_matcher_endpoints(tmp_path):
    admin_token = "secret-admin-token"
    app = create_app(_build_test_settings(tmp_path, "api_match.db", admin_token))

    with TestClient(app) as client:
        headers = _login(client, admin_token)
        hostel_id = client.post(
            "/hostels", json={"name": "Unity Hall", "code": "UH"}, headers=headers
        ).json()["hostel_id"]
        client.post(
            "/rooms",
            json={
                "hostel_id": hostel_id,
                "floor_number": 2,
                "room_number": "A201",
                "room_type": "Triple",
            },
            headers=headers,
        )
        for student_id in ("S1", "S2", "S3"):
            client.post(
                "/requests",
                json={
                    "student_id": student_id,
                    "hostel_id": hostel_id,
                    "academic_year": "2024/2025",
                    "semester": "First Semester",
                },
            )

        preview = client.post("/match", params={"hostel_id": hostel_id}, headers=headers)
        assert preview.status_code == 200
        assert len(preview.json()["proposals"]) == 3
        assert preview.json()["committed"] == []

        committed = client.post(
            "/match", params={"hostel_id": hostel_id, "commit": True}, headers=headers
        )
        assert committed.status_code == 200
        assert len(committed.json()["committed"]) == 3
        assert committed.json()["failures"] == []

        roommates = client.get("/students/S1/roommates")
        assert sorted(item["student_id"] for item in roommates.json()) == ["S2", "S3"]

        pending = client.get("/requests", params={"status": "Pending"}, headers=headers)
        assert pending.json() == []


def test_login_rejects_invalid_admin_token(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_login.db", "real-admin-token"))
    with TestClient(app) as client:
        response = client.post("/login", json={"admin_token": "wrong-token"})
        assert response.status_code == 401
