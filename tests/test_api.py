from datetime import datetime, time, timedelta, timezone

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from warehouse_ops import procedures
from warehouse_ops.config import local_today
from warehouse_ops.db import Base
from warehouse_ops.errors import BackendError
from warehouse_ops.main import KPI_REFRESH_WARNING, app, get_db, get_photo_bucket
from warehouse_ops.models import Truck
from warehouse_ops.storage import PhotoBucket

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _make_client():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app), TestingSessionLocal


def _create_user(client: TestClient, email: str, name: str, role: str = "WAREHOUSE_STAFF") -> str:
    resp = client.post(
        "/functions/v1/create-user",
        json={"name": name, "email": email, "role": role, "password": "warehouse1"},
    )
    assert resp.status_code == 200
    return resp.json()["user"]["id"]


def _schedule_truck(client: TestClient, user_id: str, **overrides) -> dict:
    body = {
        "license_plate": "ca 1234 ab",
        "arrival_date": (local_today() + timedelta(days=1)).isoformat(),
        "arrival_time": "09:30:00",
        "cargo_description": "Frozen goods",
        "pallet_count": 24,
        "priority": "HIGH",
        "ramp_number": 3,
    }
    body.update(overrides)
    resp = client.post("/api/v1/trucks", json=body, headers={"X-User-Id": user_id})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def test_root_and_health() -> None:
    client, _ = _make_client()
    with client:
        assert client.get("/").json() == {"status": "ok"}
        assert client.get("/health").json() == {"status": "healthy"}


def test_truck_lifecycle_feeds_kpis() -> None:
    client, _ = _make_client()
    with client:
        staff_id = _create_user(client, "maria@example.com", "Maria Ivanova")
        truck = _schedule_truck(client, staff_id)
        assert truck["status"] == "SCHEDULED"
        assert truck["license_plate"] == "CA 1234 AB"
        headers = {"X-User-Id": staff_id}
        truck_id = truck["truck_id"]

        premature = client.post(f"/api/v1/trucks/{truck_id}/start", headers=headers)
        assert premature.status_code == 400

        arrived = client.post(f"/api/v1/trucks/{truck_id}/arrive", headers=headers)
        assert arrived.status_code == 200
        assert arrived.json()["data"]["status"] == "ARRIVED"
        assert arrived.json()["data"]["actual_arrival_date"] == local_today().isoformat()

        started = client.post(f"/api/v1/trucks/{truck_id}/start", headers=headers).json()["data"]
        assert started["status"] == "IN_PROGRESS"
        assert started["handled_by_name"] == "Maria Ivanova"
        assert started["processing_time"].endswith("(ongoing)")

        done = client.post(f"/api/v1/trucks/{truck_id}/complete", headers=headers).json()["data"]
        assert done["status"] == "DONE"
        assert done["completed_at"] is not None

        user_kpis = client.get(f"/api/v1/kpi/users/{staff_id}").json()["data"]
        assert user_kpis["scope"] == "single_user"
        assert user_kpis["metrics"]["completed_trucks"] == 1
        assert user_kpis["metrics"]["total_pallets_handled"] == 24
        assert user_kpis["trucks"]["completed_trucks"] == 1
        assert user_kpis["trucks"]["high_priority_trucks"] == 1

        summary = client.get("/api/v1/kpi/summary", params={"period_days": 7}).json()["data"]
        assert summary["scope"] == "all_staff"
        assert [user["user_id"] for user in summary["users"]] == [staff_id]
        assert summary["users"][0]["display_name"] == "Maria Ivanova"

        trends = client.get("/api/v1/kpi/trends").json()["data"]
        assert trends[-1]["completed_trucks"] == 1

        titles = [item["title"] for item in client.get("/api/v1/notifications").json()["data"]]
        assert "New Truck Scheduled" in titles
        assert "Truck Completed" in titles


def test_failed_kpi_refresh_does_not_fail_a_committed_transition(monkeypatch) -> None:
    client, SessionLocal = _make_client()
    with client:
        headers = {"X-User-Id": "staff-1"}
        truck_id = _schedule_truck(client, "planner-1")["truck_id"]
        assert client.post(f"/api/v1/trucks/{truck_id}/arrive", headers=headers).status_code == 200

        def broken_refresh(db, target_date, feed=None):
            raise BackendError("KPI refresh failed")

        monkeypatch.setattr(procedures, "refresh_user_kpi_metrics", broken_refresh)
        resp = client.post(f"/api/v1/trucks/{truck_id}/start", headers=headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["data"]["status"] == "IN_PROGRESS"
        assert body["meta"]["warnings"] == [KPI_REFRESH_WARNING]

    db = SessionLocal()
    assert db.get(Truck, truck_id).status == "IN_PROGRESS"
    db.close()


def test_truck_validation_errors() -> None:
    client, _ = _make_client()
    with client:
        headers = {"X-User-Id": "planner-1"}
        tomorrow = (local_today() + timedelta(days=1)).isoformat()
        base = {
            "license_plate": "CA1234AB",
            "arrival_date": tomorrow,
            "arrival_time": "09:30:00",
            "cargo_description": "Frozen goods",
            "pallet_count": 24,
        }
        assert client.post("/api/v1/trucks", json=base).status_code == 403
        assert client.post("/api/v1/trucks", json={**base, "pallet_count": 0}, headers=headers).status_code == 400
        assert client.post("/api/v1/trucks", json={**base, "pallet_count": 101}, headers=headers).status_code == 400
        assert client.post("/api/v1/trucks", json={**base, "license_plate": "CA!1"}, headers=headers).status_code == 400
        assert (
            client.post("/api/v1/trucks", json={**base, "cargo_description": "<b>x</b>"}, headers=headers).status_code
            == 400
        )
        yesterday = (local_today() - timedelta(days=1)).isoformat()
        resp = client.post("/api/v1/trucks", json={**base, "arrival_date": yesterday}, headers=headers)
        assert resp.status_code == 400
        assert "Arrival date" in resp.json()["detail"]


def test_ramp_status_follows_truck_slots() -> None:
    client, _ = _make_client()
    with client:
        truck = _schedule_truck(client, "planner-1")
        day = truck["arrival_date"]

        before = client.get("/api/v1/ramps/status", params={"at": f"{day}T09:00:00"}).json()["data"]
        assert len(before) == 13
        ramp3 = before[2]
        assert ramp3["state"] == "SCHEDULED"
        assert ramp3["display_time"] == "09:30"

        client.post(f"/api/v1/trucks/{truck['truck_id']}/arrive", headers={"X-User-Id": "planner-1"})
        during = client.get("/api/v1/ramps/status", params={"at": f"{day}T10:00:00"}).json()["data"][2]
        assert during["state"] == "OCCUPIED"
        assert during["display_time"] == "10:20"

        after = client.get("/api/v1/ramps/status", params={"at": f"{day}T11:00:00"}).json()["data"][2]
        assert after["state"] == "OCCUPIED"
        assert after["display_time"] == "Now"


def test_ramp_assignment_and_reschedule() -> None:
    client, _ = _make_client()
    with client:
        truck = _schedule_truck(client, "planner-1")
        truck_id = truck["truck_id"]

        assert client.put(f"/api/v1/trucks/{truck_id}/ramp", json={"ramp_number": 14}).status_code == 400
        staff_id = _create_user(client, "dock@example.com", "Dock Worker")
        assert [row["user_id"] for row in client.get("/api/v1/staff").json()["data"]] == [staff_id]
        moved = client.put(
            f"/api/v1/trucks/{truck_id}/ramp", json={"ramp_number": 8, "staff_id": staff_id}
        ).json()["data"]
        assert moved["ramp_number"] == 8
        assert moved["assigned_staff_id"] == staff_id
        assert moved["assigned_staff_name"] == "Dock Worker"

        new_day = (local_today() + timedelta(days=3)).isoformat()
        resp = client.post(
            f"/api/v1/trucks/{truck_id}/reschedule",
            json={"arrival_date": new_day, "arrival_time": "14:00:00"},
        )
        data = resp.json()["data"]
        assert data["arrival_date"] == new_day
        assert data["original_arrival_date"] == truck["arrival_date"]
        assert data["reschedule_count"] == 1


def test_warehouse_staff_do_not_see_done_trucks() -> None:
    client, _ = _make_client()
    with client:
        staff_id = _create_user(client, "staff@example.com", "Staff Member")
        headers = {"X-User-Id": staff_id}
        done = _schedule_truck(client, staff_id)
        waiting = _schedule_truck(client, staff_id, license_plate="CB7777BB", arrival_time="08:00:00")
        for step in ("arrive", "start", "complete"):
            client.post(f"/api/v1/trucks/{done['truck_id']}/{step}", headers=headers)

        staff_view = client.get("/api/v1/trucks", headers=headers).json()["data"]
        assert [truck["truck_id"] for truck in staff_view] == [waiting["truck_id"]]

        full_view = client.get("/api/v1/trucks").json()["data"]
        assert [truck["truck_id"] for truck in full_view] == [waiting["truck_id"], done["truck_id"]]


def test_procedures_over_rpc() -> None:
    client, SessionLocal = _make_client()
    with client:
        truck = _schedule_truck(client, "planner-1")
        late_day = (local_today() + timedelta(days=2)).isoformat()
        resp = client.post(
            "/api/v1/rpc/handle_truck_arrival",
            json={
                "p_truck_id": truck["truck_id"],
                "p_actual_arrival_date": late_day,
                "p_late_reason": "Border delay",
                "p_user_id": "planner-1",
            },
        )
        data = resp.json()["data"]
        assert data["status"] == "ARRIVED"
        assert data["late_arrival_reason"] == "Border delay"
        assert data["original_arrival_date"] == truck["arrival_date"]

        db = SessionLocal()
        stamp = datetime.now(timezone.utc)
        overdue = Truck(
            license_plate="PB0001AA",
            arrival_date=local_today() - timedelta(days=2),
            arrival_time=time(7, 0),
            cargo_description="Steel",
            pallet_count=10,
            status="SCHEDULED",
            created_by_user_id="planner-1",
            created_at=stamp,
            updated_at=stamp,
        )
        db.add(overdue)
        db.commit()
        overdue_id = overdue.id
        db.close()

        marked = client.post("/api/v1/rpc/mark_overdue_trucks", json={}).json()["data"]
        assert marked == {"trucks_marked": 1}
        assert client.get(f"/api/v1/trucks/{overdue_id}").json()["data"]["is_overdue"] is True

        refreshed = client.post("/api/v1/rpc/refresh_user_kpi_metrics", json={}).json()["data"]
        assert "users_refreshed" in refreshed

        assert client.post("/api/v1/rpc/drop_everything", json={}).status_code == 404


def test_tasks_flow() -> None:
    client, _ = _make_client()
    with client:
        staff_id = _create_user(client, "ivan@example.com", "Ivan Petrov")
        headers = {"X-User-Id": staff_id}
        assert client.post("/api/v1/tasks", json={"title": "  "}, headers=headers).status_code == 400

        first = client.post("/api/v1/tasks", json={"title": "Restack aisle 4"}, headers=headers).json()["data"]
        second = client.post(
            "/api/v1/tasks", json={"title": "Sweep dock", "priority": "URGENT"}, headers=headers
        ).json()["data"]
        assert first["status"] == "PENDING"

        listed = client.get("/api/v1/tasks").json()["data"]
        assert [task["task_id"] for task in listed] == [second["task_id"], first["task_id"]]

        working = client.patch(
            f"/api/v1/tasks/{first['task_id']}/status", json={"status": "IN_PROGRESS"}, headers=headers
        ).json()["data"]
        assert working["assigned_to_user_id"] == staff_id
        assert working["assigned_to_name"] == "Ivan Petrov"

        finished = client.patch(
            f"/api/v1/tasks/{first['task_id']}/status",
            json={"status": "COMPLETED", "comment": "All done"},
            headers=headers,
        ).json()["data"]
        assert finished["completed_by_user_id"] == staff_id
        assert finished["completed_at"] is not None
        assert finished["completion_comment"] == "All done"

        bad = client.patch(f"/api/v1/tasks/{first['task_id']}/status", json={"status": "LOST"}, headers=headers)
        assert bad.status_code == 400
        assert client.patch("/api/v1/tasks/999/status", json={"status": "COMPLETED"}, headers=headers).status_code == 404


def test_exceptions_flow() -> None:
    client, _ = _make_client()
    with client:
        headers = {"X-User-Id": "checker-1"}
        truck = _schedule_truck(client, "planner-1")
        reported = client.post(
            f"/api/v1/trucks/{truck['truck_id']}/exceptions",
            json={"exception_type": "DAMAGED_CARGO", "reason": "Two pallets crushed"},
            headers=headers,
        ).json()["data"]
        assert reported["status"] == "PENDING"
        assert reported["priority"] == "MEDIUM"

        listed = client.get("/api/v1/exceptions").json()["data"]
        assert listed[0]["license_plate"] == "CA 1234 AB"
        assert listed[0]["cargo_description"] == "Frozen goods"

        resolved = client.patch(
            f"/api/v1/exceptions/{reported['exception_id']}/status",
            json={"status": "RESOLVED"},
            headers=headers,
        ).json()["data"]
        assert resolved["resolved_by_user_id"] == "checker-1"
        assert resolved["actual_resolution_time"] is not None

        notices = client.get("/api/v1/notifications").json()["data"]
        assert any(
            item["title"] == "New Exception Reported" and item["variant"] == "destructive" for item in notices
        )

        missing = client.post(
            "/api/v1/trucks/999/exceptions",
            json={"exception_type": "DELAY", "reason": "Late"},
            headers=headers,
        )
        assert missing.status_code == 404


def test_time_tracking_flow() -> None:
    client, _ = _make_client()
    with client:
        staff_id = _create_user(client, "worker@example.com", "Worker")
        admin_id = _create_user(client, "office@example.com", "Office", role="OFFICE_ADMIN")
        headers = {"X-User-Id": staff_id}

        assert client.post("/api/v1/time-entries/check-out", headers=headers).status_code == 400
        checked_in = client.post("/api/v1/time-entries/check-in", headers=headers)
        assert checked_in.status_code == 200
        assert client.post("/api/v1/time-entries/check-in", headers=headers).status_code == 400
        assert client.get("/api/v1/time-entries/status", headers=headers).json()["data"]["checked_in"] is True

        checked_out = client.post("/api/v1/time-entries/check-out", headers=headers).json()["data"]
        assert checked_out["check_out_time"] is not None
        assert checked_out["total_hours"] == 0.0

        totals = client.get("/api/v1/kpi/time-totals", params={"user_id": staff_id}).json()["data"]
        assert totals["entry_count"] == 1

        assert client.get("/api/v1/time-entries/overtime/pending", headers=headers).status_code == 403
        assert client.get("/api/v1/time-entries/overtime/pending", headers={"X-User-Id": admin_id}).status_code == 200


def test_holidays_require_an_admin() -> None:
    client, _ = _make_client()
    with client:
        admin_id = _create_user(client, "office@example.com", "Office", role="SUPER_ADMIN")
        body = {"date": "2026-12-25", "name": "Christmas"}
        assert client.post("/api/v1/holidays", json=body, headers={"X-User-Id": "nobody"}).status_code == 403
        created = client.post("/api/v1/holidays", json=body, headers={"X-User-Id": admin_id})
        assert created.status_code == 200
        assert client.post("/api/v1/holidays", json=body, headers={"X-User-Id": admin_id}).status_code == 400
        assert client.get("/api/v1/holidays", params={"year": 2026}).json()["data"][0]["name"] == "Christmas"


def test_completion_photos(tmp_path) -> None:
    client, _ = _make_client()
    app.dependency_overrides[get_photo_bucket] = lambda: PhotoBucket(tmp_path)
    try:
        with client:
            headers = {"X-User-Id": "staff-1"}
            truck_id = _schedule_truck(client, "planner-1")["truck_id"]

            rejected = client.post(
                f"/api/v1/trucks/{truck_id}/photos",
                files=[("files", ("notes.txt", b"hello", "text/plain"))],
                headers=headers,
            )
            assert rejected.status_code == 400
            assert list(tmp_path.iterdir()) == []

            stored = client.post(
                f"/api/v1/trucks/{truck_id}/photos",
                files=[("files", ("dock.png", PNG_BYTES, "image/png"))],
                headers=headers,
            )
            assert stored.status_code == 200
            [photo] = stored.json()["data"]
            assert photo["file_name"] == "dock.png"
            assert (tmp_path / photo["file_path"]).read_bytes() == PNG_BYTES

            listed = client.get(f"/api/v1/trucks/{truck_id}/photos").json()["data"]
            assert [item["photo_id"] for item in listed] == [photo["photo_id"]]
    finally:
        app.dependency_overrides.pop(get_photo_bucket, None)


def test_realtime_socket_pushes_refresh_counter() -> None:
    client, _ = _make_client()
    with client:
        with client.websocket_connect("/api/v1/realtime") as websocket:
            initial = websocket.receive_json()
            assert initial["refresh_count"] == 0

            _schedule_truck(client, "planner-1")
            update = websocket.receive_json()
            assert update["refresh_count"] == 1
            assert update["last_update"] >= initial["last_update"]
