from __future__ import annotations

import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

from fastapi.testclient import TestClient


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from main import app  # noqa: E402


def _register_user(client: TestClient, timezone_name: str = "UTC") -> str:
    username = f"dose_{uuid.uuid4().hex[:8]}"
    resp = client.post(
        "/api/auth/register",
        json={
            "username": username,
            "password": "Dose!Pass123",
            "display_name": "Dose User",
            "date_of_birth": "1980-05-04",
            "timezone": timezone_name,
        },
    )
    assert resp.status_code == 201
    assert resp.json()["access_token"]
    return username


def _today_iso() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _create(client: TestClient, **overrides):
    payload = {
        "name": "Metformin",
        "dose": "500 mg",
        "frequency": 2,
        "timing": "after_meal",
        "start_date": _today_iso(),
        "duration_days": 14,
    }
    payload.update(overrides)
    return client.post("/api/medicines", json=payload)


def test_health_endpoint():
    client = TestClient(app)
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_endpoints_require_a_session():
    client = TestClient(app)
    assert client.get("/api/medicines").status_code == 401
    assert client.get("/api/doses/today").status_code == 401


def test_register_login_me_logout():
    client = TestClient(app)
    username = _register_user(client)

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["username"] == username
    assert me.json()["date_of_birth"] == "1980-05-04"

    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/auth/me").status_code == 401

    login = client.post("/api/auth/login", json={"username": username.upper(), "password": "Dose!Pass123"})
    assert login.status_code == 200
    bearer = TestClient(app)
    resp = bearer.get("/api/auth/me", headers={"Authorization": f"Bearer {login.json()['access_token']}"})
    assert resp.status_code == 200

    bad = client.post("/api/auth/login", json={"username": username, "password": "wrong"})
    assert bad.status_code == 401


def test_settings_validate_timezone():
    client = TestClient(app)
    _register_user(client)

    assert client.get("/api/settings").json()["timezone"] == "UTC"
    assert client.put("/api/settings", json={"timezone": "Mars/Olympus"}).status_code == 400

    resp = client.put("/api/settings", json={"timezone": "America/Edmonton", "reminders_enabled": False})
    assert resp.status_code == 200
    assert resp.json() == {
        "display_name": "Dose User",
        "date_of_birth": "1980-05-04",
        "timezone": "America/Edmonton",
        "reminders_enabled": False,
    }


def test_password_change_invalidates_old_sessions():
    client = TestClient(app)
    _register_user(client)

    resp = client.post(
        "/api/settings/password/change",
        json={"current_password": "Dose!Pass123", "new_password": "Dose!Pass456"},
    )
    assert resp.status_code == 200
    assert client.get("/api/auth/me").status_code == 401


def test_medicine_and_dose_flow():
    client = TestClient(app)
    _register_user(client)

    created = _create(client)
    assert created.status_code == 201
    medicine = created.json()
    assert medicine["schedule"]["dose_times"] == ["08:00:00", "14:00:00"]
    assert medicine["days_remaining"] == 14

    today = client.get("/api/doses/today")
    assert today.status_code == 200
    view = today.json()
    assert view["date"] == _today_iso()
    assert view["summary"]["total"] == 2
    assert [d["scheduled_time"] for d in view["doses"]] == ["08:00:00", "14:00:00"]

    refreshed = client.post("/api/doses/refresh")
    assert refreshed.status_code == 200
    assert refreshed.json()["inserted"] == 0

    log_id = view["doses"][0]["log_id"]
    taken = client.post(f"/api/doses/{log_id}/taken")
    assert taken.status_code == 200
    assert taken.json()["status"] == "taken"
    assert taken.json()["state"] in {"taken_on_time", "taken_off_schedule"}

    again = client.post(f"/api/doses/{log_id}/taken")
    assert again.status_code == 409
    assert "already taken" in again.json()["detail"]

    skip = client.post(f"/api/doses/{view['doses'][1]['log_id']}/skip")
    assert skip.status_code == 200
    assert skip.json()["state"] == "skipped"

    assert client.post("/api/doses/999999999/taken").status_code == 404

    summary = client.get("/api/doses/today").json()["summary"]
    assert summary["taken"] == 1
    assert summary["skipped"] == 1


def test_medicine_validation_and_duplicates():
    client = TestClient(app)
    _register_user(client)

    assert _create(client).status_code == 201
    dup = _create(client, name="METFORMIN")
    assert dup.status_code == 409

    assert _create(client, name="Zinc", frequency=0).status_code == 400
    assert _create(client, name="Zinc", frequency=3, custom_dose_times=["08:00"]).status_code == 400
    overflow = _create(client, name="Zinc", frequency=4, timing="anytime", dose_interval_hours=6)
    assert overflow.status_code == 400
    assert "midnight" in overflow.json()["detail"]

    options = client.get("/api/medicines/interval-options", params={"frequency": 4})
    assert options.json()["options"] == [1, 2, 3]


def test_edit_deactivate_and_delete():
    client = TestClient(app)
    _register_user(client)
    medicine_id = _create(client).json()["id"]
    client.get("/api/doses/today")

    edited = client.put(f"/api/medicines/{medicine_id}", json={"frequency": 3})
    assert edited.status_code == 200
    assert edited.json()["resynced"] is True
    assert edited.json()["deleted_logs"] == 2
    assert edited.json()["schedule"]["dose_times"] == ["08:00:00", "14:00:00", "20:00:00"]
    assert client.get("/api/doses/today").json()["summary"]["total"] == 3

    reminders = client.get("/api/reminders/pending")
    assert reminders.status_code == 200
    assert all(r["title"] == "Medicine Reminder" for r in reminders.json()["reminders"])

    deactivated = client.post(f"/api/medicines/{medicine_id}/deactivate")
    assert deactivated.status_code == 200
    assert deactivated.json()["is_active"] is False
    assert client.get("/api/medicines").json()["medicines"] == []
    assert len(client.get("/api/medicines", params={"include_inactive": True}).json()["medicines"]) == 1

    assert client.delete(f"/api/medicines/{medicine_id}").status_code == 200
    assert client.delete(f"/api/medicines/{medicine_id}").status_code == 404
    assert client.get(f"/api/medicines/{medicine_id}").status_code == 404
