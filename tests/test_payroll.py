import csv
from datetime import date
from io import StringIO

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from hoodops.api import router
from hoodops.db import Base, get_db
from hoodops.models import PayrollPeriod
from hoodops.payroll import select_payroll_period
from hoodops.schedule_api import router as schedule_router

MANAGER = {"X-Actor-Role": "manager", "X-Actor-Email": "office@hoodops.local"}


def make_client(tmp_path):
    db_path = tmp_path / "test_hoodops_payroll.db"
    database_url = f"sqlite:///{db_path}"
    engine = create_engine(database_url, connect_args={"check_same_thread": False})
    testing_session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(router)
    app.include_router(schedule_router)

    def override_get_db():
        db = testing_session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app), testing_session_local


def _seed_period(client):
    sam = client.post(
        "/api/technicians",
        headers=MANAGER,
        json={"name": "Sam", "hourly_rate": 25, "depot_address": "1 Depot Rd"},
    ).json()
    client.post("/api/technicians", headers=MANAGER, json={"name": "Ana"})
    client.post(
        "/api/technicians",
        headers=MANAGER,
        json={"name": "Owner", "hourly_rate": 99, "include_in_payroll": False},
    )

    created = client.post("/api/clients", json={"name": "Pho House", "prefix": "PH"}).json()
    invoice = client.post(
        "/api/invoices",
        json={
            "client_id": created["id"],
            "job_title": "Hoods",
            "date_issued": "2025-02-20",
            "frequency": 4,
            "location": "100 Main St",
            "items": [{"description": "Hood", "price": 900}],
        },
    ).json()

    jobs = []
    for start_dt, location in (
        ("2025-03-04T08:00:00", "100 Main St"),
        ("2025-03-04T13:00:00", "200 Oak Ave"),
    ):
        response = client.post(
            "/api/schedules",
            json={
                "invoice_id": invoice["id"],
                "job_title": "Pho House hoods",
                "location": location,
                "start_dt": start_dt,
                "technician_ids": [sam["id"]],
                "hours": 2,
            },
        )
        assert response.status_code == 201
        jobs.append(response.json())

    client.patch(f"/api/schedules/{jobs[0]['id']}/actual-service", json={"actual_service_minutes": 150})
    client.post(
        "/api/travel-time/estimates",
        headers=MANAGER,
        json={
            "estimates": [
                {
                    "origin": "1 Depot Rd",
                    "destination": "100 Main St",
                    "departure": "2025-03-04T08:00:00",
                    "typical_minutes": 20,
                    "estimated_km": 15,
                },
                {
                    "origin": "100 Main St",
                    "destination": "1 Depot Rd",
                    "departure": "2025-03-04T10:00:00",
                    "typical_minutes": 25,
                    "estimated_km": 15,
                },
            ]
        },
    )
    return sam, jobs


def test_payroll_requires_manager_role(tmp_path):
    client, _ = make_client(tmp_path)
    assert client.get("/api/payroll").status_code == 403
    assert client.get("/api/payroll/drive-metrics", headers={"X-Actor-Role": "technician"}).status_code == 403
    assert client.get("/api/payroll/export.csv").status_code == 403
    assert client.get("/api/payroll", headers=MANAGER).status_code == 404


def test_payroll_breakdown_per_technician(tmp_path):
    client, _ = make_client(tmp_path)
    sam, jobs = _seed_period(client)
    period_id = jobs[0]["payroll_period_id"]

    response = client.get("/api/payroll", headers=MANAGER, params={"payroll_period_id": period_id})
    assert response.status_code == 200
    body = response.json()
    assert body["start_date"] == "2025-02-20"
    assert body["end_date"] == "2025-03-05"
    assert body["pay_day"] == "2025-03-08"

    rows = {r["technician_name"]: r for r in body["technicians"]}
    assert set(rows) == {"Ana", "Sam"}
    assert rows["Sam"]["total_jobs"] == 2
    assert rows["Sam"]["total_hours"] == 4.0
    assert rows["Sam"]["hourly_rate"] == 25.0
    assert rows["Sam"]["gross_pay"] == 100.0
    assert rows["Ana"]["total_jobs"] == 0
    assert rows["Ana"]["hourly_rate"] == 18.0
    assert body["total_gross_pay"] == 100.0

    missing = client.get("/api/payroll", headers=MANAGER, params={"payroll_period_id": 999})
    assert missing.status_code == 404


def test_drive_metrics_combine_actual_scheduled_and_travel(tmp_path):
    client, _ = make_client(tmp_path)
    sam, jobs = _seed_period(client)

    response = client.get(
        "/api/payroll/drive-metrics",
        headers=MANAGER,
        params={"payroll_period_id": jobs[0]["payroll_period_id"]},
    )
    assert response.status_code == 200
    body = response.json()
    rows = {r["technician_name"]: r for r in body["technicians"]}

    sam_row = rows["Sam"]
    assert sam_row["scheduled_hours"] == 4.0
    assert sam_row["actual_hours"] == 2.5
    assert sam_row["drive_hours"] == 0.75
    assert sam_row["scheduled_plus_drive_hours"] == 4.75
    assert sam_row["actual_plus_drive_hours"] == 3.25
    assert sam_row["actual_vs_scheduled_plus_drive_hours"] == -2.25
    assert sam_row["has_depot_address"] is True
    assert [m["schedule_id"] for m in sam_row["missing_actual_duration_jobs"]] == [jobs[1]["id"]]
    assert sam_row["duration_review_jobs"] == []

    assert rows["Ana"]["has_depot_address"] is False
    assert body["total_jobs"] == 2
    assert body["total_missing_actual_duration_jobs"] == 1
    assert body["total_duration_review_jobs"] == 0
    assert body["total_drive_hours"] == 0.75


def test_payroll_csv_export(tmp_path):
    client, _ = make_client(tmp_path)
    _, jobs = _seed_period(client)

    response = client.get(
        "/api/payroll/export.csv",
        headers=MANAGER,
        params={"payroll_period_id": jobs[0]["payroll_period_id"]},
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "payroll_2025-02-20.csv" in response.headers["content-disposition"]

    rows = list(csv.reader(StringIO(response.text)))
    assert rows[0][0] == "technician"
    sam_rows = [r for r in rows[1:] if r[0] == "Sam"]
    assert len(sam_rows) == 3
    assert sam_rows[-1][3] == "TOTAL"
    assert sam_rows[-1][-1] == "100.0"
    assert any(r[0] == "Ana" and r[3] == "TOTAL" for r in rows)


def test_default_period_prefers_today_then_latest(tmp_path):
    _, session_factory = make_client(tmp_path)
    db = session_factory()
    try:
        older = PayrollPeriod(
            start_date=date(2025, 1, 2),
            end_date=date(2025, 1, 15),
            cutoff_date=date(2025, 1, 15),
            pay_day=date(2025, 1, 18),
        )
        newer = PayrollPeriod(
            start_date=date(2025, 1, 16),
            end_date=date(2025, 1, 29),
            cutoff_date=date(2025, 1, 29),
            pay_day=date(2025, 2, 1),
        )
        db.add_all([older, newer])
        db.commit()

        assert select_payroll_period(db, today=date(2025, 1, 10)).id == older.id
        assert select_payroll_period(db, today=date(2025, 6, 1)).id == newer.id
        assert select_payroll_period(db, period_id=older.id).id == older.id
        assert select_payroll_period(db, period_id=12345) is None
    finally:
        db.close()


def test_drive_metrics_flag_durations_needing_review(tmp_path):
    client, _ = make_client(tmp_path)
    _, jobs = _seed_period(client)
    client.patch(f"/api/schedules/{jobs[1]['id']}/actual-service", json={"actual_service_minutes": 400})

    body = client.get(
        "/api/payroll/drive-metrics",
        headers=MANAGER,
        params={"payroll_period_id": jobs[0]["payroll_period_id"]},
    ).json()
    sam_row = next(r for r in body["technicians"] if r["technician_name"] == "Sam")

    assert sam_row["missing_actual_duration_jobs"] == []
    assert body["total_duration_review_jobs"] == 1
    flagged = sam_row["duration_review_jobs"][0]
    assert flagged["schedule_id"] == jobs[1]["id"]
    assert flagged["actual_service_minutes"] == 400
    assert flagged["expected_range"] == "180-330m"
    assert flagged["price_check"] == "review: long vs price"
    assert flagged["reasons"] == ["over_schedule_plus_buffer", "price_mismatch_long"]
