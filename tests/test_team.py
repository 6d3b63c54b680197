from datetime import date, datetime

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from hoodops.db import Base, get_db
from hoodops.models import Availability
from hoodops.schedule_api import router
from hoodops.team import is_technician_unavailable, js_weekday, unavailability_info


def make_client(tmp_path):
    db_path = tmp_path / "test_hoodops_team.db"
    database_url = f"sqlite:///{db_path}"
    engine = create_engine(database_url, connect_args={"check_same_thread": False})
    testing_session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(router)

    def override_get_db():
        db = testing_session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _headers(role="manager"):
    return {"X-Actor-Email": f"{role}@hoodops.local", "X-Actor-Role": role}


def _block(technician_id, start, end, day_of_week=None, specific_date=None, full_day=False):
    return Availability(
        technician_id=technician_id,
        day_of_week=day_of_week,
        specific_date=specific_date,
        start_time=start,
        end_time=end,
        is_full_day=full_day,
        is_recurring=day_of_week is not None,
    )


def test_weekday_numbering_starts_on_sunday():
    assert js_weekday(date(2025, 3, 2)) == 0
    assert js_weekday(date(2025, 3, 3)) == 1
    assert js_weekday(date(2025, 3, 8)) == 6


def test_recurring_block_overlap_rules():
    monday = date(2025, 3, 3)
    blocks = [_block(1, "09:00", "12:00", day_of_week=1)]

    assert is_technician_unavailable(blocks, 1, monday, datetime(2025, 3, 3, 11), datetime(2025, 3, 3, 13))
    assert not is_technician_unavailable(blocks, 1, monday, datetime(2025, 3, 3, 12), datetime(2025, 3, 3, 14))
    assert not is_technician_unavailable(blocks, 1, monday, datetime(2025, 3, 3, 7), datetime(2025, 3, 3, 9))
    assert is_technician_unavailable(blocks, 1, monday)
    assert not is_technician_unavailable(blocks, 1, date(2025, 3, 4))
    assert not is_technician_unavailable(blocks, 2, monday)


def test_full_day_block_wins_over_ranges():
    day = date(2025, 3, 4)
    blocks = [
        _block(1, "09:00", "12:00", specific_date=day),
        _block(1, "00:00", "23:59", specific_date=day, full_day=True),
    ]
    info = unavailability_info(blocks, 1, day, datetime(2025, 3, 4, 14), datetime(2025, 3, 4, 15))
    assert info == {"is_unavailable": True, "is_full_day": True, "ranges": []}

    timed_only = unavailability_info(blocks[:1], 1, day)
    assert timed_only == {"is_unavailable": True, "is_full_day": False, "ranges": ["09:00-12:00"]}


def test_technician_management_requires_manager(tmp_path):
    client = make_client(tmp_path)

    forbidden = client.post("/api/technicians", headers=_headers("technician"), json={"name": "Sam"})
    assert forbidden.status_code == 403

    created = client.post(
        "/api/technicians",
        headers=_headers("owner"),
        json={"name": " Sam ", "hourly_rate": 24.5, "depot_address": "1 Depot Rd"},
    )
    assert created.status_code == 201
    tech = created.json()
    assert tech["name"] == "Sam"
    assert tech["include_in_payroll"] is True

    duplicate = client.post("/api/technicians", headers=_headers(), json={"name": "Sam"})
    assert duplicate.status_code == 400

    updated = client.patch(
        f"/api/technicians/{tech['id']}",
        headers=_headers(),
        json={"hourly_rate": 26, "include_in_payroll": False},
    )
    assert updated.json()["hourly_rate"] == 26.0
    assert updated.json()["include_in_payroll"] is False

    assert client.delete(f"/api/technicians/{tech['id']}", headers=_headers()).status_code == 204
    assert client.get("/api/technicians").json() == []
    inactive = client.get("/api/technicians", params={"include_inactive": True}).json()
    assert [t["is_active"] for t in inactive] == [False]

    assert client.patch("/api/technicians/999", headers=_headers(), json={"name": "x"}).status_code == 404


def test_availability_blocks_api(tmp_path):
    client = make_client(tmp_path)
    tech = client.post("/api/technicians", headers=_headers(), json={"name": "Ana"}).json()

    both = client.post(
        "/api/availability",
        json={"technician_id": tech["id"], "day_of_week": 1, "specific_date": "2025-03-03"},
    )
    assert both.status_code == 400
    neither = client.post("/api/availability", json={"technician_id": tech["id"]})
    assert neither.status_code == 400
    backwards = client.post(
        "/api/availability",
        json={"technician_id": tech["id"], "day_of_week": 1, "start_time": "12:00", "end_time": "09:00"},
    )
    assert backwards.status_code == 400

    recurring = client.post(
        "/api/availability",
        json={"technician_id": tech["id"], "day_of_week": 1, "start_time": "09:00", "end_time": "12:00"},
    )
    assert recurring.status_code == 201
    assert recurring.json()["is_recurring"] is True

    full_day = client.post(
        "/api/availability",
        json={
            "technician_id": tech["id"],
            "specific_date": "2025-03-05",
            "start_time": "10:00",
            "end_time": "11:00",
            "is_full_day": True,
        },
    )
    assert full_day.status_code == 201
    assert full_day.json()["start_time"] == "00:00"
    assert full_day.json()["end_time"] == "23:59"
    assert full_day.json()["is_recurring"] is False

    check = client.get(
        "/api/availability/check",
        params={
            "technician_id": tech["id"],
            "day": "2025-03-10",
            "start": "2025-03-10T11:30:00",
            "end": "2025-03-10T13:00:00",
        },
    ).json()
    assert check["is_unavailable"] is True
    assert check["ranges"] == ["09:00-12:00"]

    free = client.get(
        "/api/availability/check",
        params={"technician_id": tech["id"], "day": "2025-03-11"},
    ).json()
    assert free["is_unavailable"] is False

    assert len(client.get("/api/availability", params={"technician_id": tech["id"]}).json()) == 2
    assert client.delete(f"/api/availability/{recurring.json()['id']}").status_code == 204
    assert client.delete(f"/api/availability/{recurring.json()['id']}").status_code == 404


def test_time_off_review_flow(tmp_path):
    client = make_client(tmp_path)
    tech = client.post("/api/technicians", headers=_headers(), json={"name": "Lee"}).json()

    inverted = client.post(
        "/api/time-off",
        json={"technician_id": tech["id"], "start_date": "2025-03-05", "end_date": "2025-03-01", "reason": "Trip"},
    )
    assert inverted.status_code == 422

    created = client.post(
        "/api/time-off",
        json={"technician_id": tech["id"], "start_date": "2025-03-01", "end_date": "2025-03-05", "reason": " Trip "},
    )
    assert created.status_code == 201
    request = created.json()
    assert request["status"] == "pending"
    assert request["reason"] == "Trip"
    assert request["technician_name"] == "Lee"
    assert client.get("/api/time-off/pending-count").json() == {"pending": 1}

    forbidden = client.patch(
        f"/api/time-off/{request['id']}",
        headers=_headers("technician"),
        json={"status": "approved"},
    )
    assert forbidden.status_code == 403

    approved = client.patch(
        f"/api/time-off/{request['id']}",
        headers=_headers(),
        json={"status": "approved", "notes": "Enjoy"},
    )
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"
    assert approved.json()["reviewed_by"] == "manager@hoodops.local"
    assert client.get("/api/time-off/pending-count").json() == {"pending": 0}

    twice = client.patch(f"/api/time-off/{request['id']}", headers=_headers(), json={"status": "rejected"})
    assert twice.status_code == 400

    approved_list = client.get("/api/time-off", params={"status": "approved"}).json()
    assert [r["id"] for r in approved_list] == [request["id"]]
    assert client.patch("/api/time-off/999", headers=_headers(), json={"status": "approved"}).status_code == 404
