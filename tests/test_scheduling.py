from datetime import date, datetime

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from hoodops.api import router
from hoodops.db import Base, get_db
from hoodops.models import PayrollPeriod
from hoodops.schedule_api import router as schedule_router
from hoodops.scheduling import (
    duration_confidence,
    find_or_create_payroll_period,
    job_duration_minutes,
    minutes_to_hours,
    price_check,
)

MANAGER = {"X-Actor-Role": "manager", "X-Actor-Email": "office@hoodops.local"}


def make_client(tmp_path):
    db_path = tmp_path / "test_hoodops_scheduling.db"
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
    return TestClient(app)


def make_session(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test_hoodops_periods.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)()


def _seed_invoice(client, price=500.0, date_issued="2024-10-01"):
    created = client.post(
        "/api/clients",
        json={"name": "Burger Barn", "prefix": "bb", "phone": "6045551234"},
    )
    assert created.status_code == 201
    invoice = client.post(
        "/api/invoices",
        json={
            "client_id": created.json()["id"],
            "job_title": "  Hood cleaning  ",
            "date_issued": date_issued,
            "frequency": 4,
            "location": "100 Main St",
            "items": [{"description": "Exhaust hood", "price": price}],
        },
    )
    assert invoice.status_code == 201
    return invoice.json()


def test_job_duration_follows_price_bands():
    assert job_duration_minutes(0) == 90
    assert job_duration_minutes(350) == 90
    assert job_duration_minutes(351) == 150
    assert job_duration_minutes(599.99) == 150
    assert job_duration_minutes(600) == 180
    assert job_duration_minutes(800) == 180
    assert job_duration_minutes(1000) == 210
    assert job_duration_minutes(1500) == 240
    assert job_duration_minutes(1501) == 300
    assert job_duration_minutes(1800) == 300
    assert job_duration_minutes(1801) == 360
    assert job_duration_minutes(10_000) == 480


def test_minutes_round_up_to_half_hours():
    assert minutes_to_hours(90) == 1.5
    assert minutes_to_hours(100) == 2.0
    assert minutes_to_hours(150) == 2.5
    assert minutes_to_hours(181) == 3.5


def test_price_check_statuses():
    assert price_check(400, None)["price_check"] == "-"
    assert price_check(None, 100)["price_check"] == "price unknown"
    assert price_check(400, 250)["price_check"] == "review: long vs <=$500"

    aligned = price_check(900, 240)
    assert aligned == {"expected_minutes": 240, "expected_range": "180-330m", "price_check": "price-aligned"}
    assert price_check(900, 400)["price_check"] == "review: long vs price"
    assert price_check(900, 120)["price_check"] == "review: short vs price"
    assert price_check(100, 20)["expected_range"] == "30-180m"


def test_duration_confidence_reasons():
    missing = duration_confidence(None, 2, 900)
    assert missing["confidence"] == "needs_review"
    assert [r["code"] for r in missing["reasons"]] == ["missing_duration"]
    assert missing["price_check"] == "-"

    good = duration_confidence(240, 4, 900)
    assert good["confidence"] == "good"
    assert good["reasons"] == []
    assert good["cutoff_minutes"] == 330.0

    short = duration_confidence(120, 4, 900)
    assert short["confidence"] == "good"
    assert short["price_check"] == "review: short vs price"

    def codes(result):
        return [r["code"] for r in result["reasons"]]

    assert codes(duration_confidence(400, 2, 900)) == ["over_schedule_plus_buffer", "price_mismatch_long"]
    assert codes(duration_confidence(250, 3, 400)) == ["price_mismatch_long_low_price"]
    assert codes(duration_confidence(-5, 2, 900)) == ["negative_or_invalid"]
    assert codes(duration_confidence(1500, 30, 5000)) == ["over_max_cap", "price_mismatch_long"]
    assert codes(duration_confidence(100, 1, None, max_minutes=90)) == ["over_max_cap"]


def test_payroll_periods_are_generated_contiguously(tmp_path):
    db = make_session(tmp_path)
    try:
        first = find_or_create_payroll_period(db, date(2024, 10, 3))
        assert first.start_date == date(2024, 10, 3)
        assert first.end_date == date(2024, 10, 16)
        assert first.cutoff_date == date(2024, 10, 16)
        assert first.pay_day == date(2024, 10, 19)

        later = find_or_create_payroll_period(db, datetime(2024, 11, 1, 23, 30))
        assert later.start_date == date(2024, 10, 31)
        assert later.end_date == date(2024, 11, 13)

        periods = db.execute(select(PayrollPeriod).order_by(PayrollPeriod.start_date)).scalars().all()
        assert [p.start_date for p in periods] == [
            date(2024, 10, 3),
            date(2024, 10, 17),
            date(2024, 10, 31),
        ]
        for previous, current in zip(periods, periods[1:]):
            assert (current.start_date - previous.end_date).days == 1

        again = find_or_create_payroll_period(db, date(2024, 10, 20))
        assert again.start_date == date(2024, 10, 17)
        assert db.execute(select(func.count(PayrollPeriod.id))).scalar_one() == 3
    finally:
        db.close()


def test_period_created_by_another_session_is_reused(tmp_path, monkeypatch):
    db = make_session(tmp_path)
    rival = sessionmaker(bind=db.get_bind(), autoflush=False, autocommit=False)()
    try:
        find_or_create_payroll_period(db, date(2024, 10, 3))
        real_add = db.add

        def add_after_rival(instance):
            taken = rival.execute(
                select(PayrollPeriod.id).where(PayrollPeriod.start_date == instance.start_date)
            ).first()
            if not taken:
                rival.add(
                    PayrollPeriod(
                        start_date=instance.start_date,
                        end_date=instance.end_date,
                        cutoff_date=instance.cutoff_date,
                        pay_day=instance.pay_day,
                    )
                )
                rival.commit()
            real_add(instance)

        monkeypatch.setattr(db, "add", add_after_rival)
        period = find_or_create_payroll_period(db, date(2024, 10, 20))

        assert period.start_date == date(2024, 10, 17)
        starts = db.execute(select(PayrollPeriod.start_date).order_by(PayrollPeriod.start_date)).scalars().all()
        assert starts == [date(2024, 10, 3), date(2024, 10, 17)]
    finally:
        rival.close()
        db.close()


def test_dates_before_first_period_have_no_payroll_period(tmp_path):
    db = make_session(tmp_path)
    try:
        assert find_or_create_payroll_period(db, date(2024, 9, 1)) is None
        find_or_create_payroll_period(db, date(2024, 10, 5))
        assert find_or_create_payroll_period(db, date(2024, 10, 2)) is None
    finally:
        db.close()


def test_create_schedule_derives_hours_from_invoice_total(tmp_path):
    client = make_client(tmp_path)
    invoice = _seed_invoice(client, price=500.0)
    tech = client.post(
        "/api/technicians",
        headers=MANAGER,
        json={"name": "Sam", "hourly_rate": 25},
    )
    assert tech.status_code == 201

    created = client.post(
        "/api/schedules",
        headers=MANAGER,
        json={
            "invoice_id": invoice["id"],
            "job_title": "  Burger Barn hoods ",
            "location": "100 Main St",
            "start_dt": "2024-10-20T09:00:00",
            "technician_ids": [tech.json()["id"]],
        },
    )
    assert created.status_code == 201
    body = created.json()
    assert body["job_title"] == "Burger Barn hoods"
    assert body["hours"] == 2.5
    assert body["end_dt"] == "2024-10-20T11:30:00"
    assert body["technicians"] == [{"id": tech.json()["id"], "name": "Sam"}]

    periods = client.get("/api/payroll-periods").json()
    period = next(p for p in periods if p["id"] == body["payroll_period_id"])
    assert period["start_date"] == "2024-10-17"

    default_hours = client.post(
        "/api/schedules",
        json={
            "invoice_id": invoice["id"],
            "job_title": "Second visit",
            "location": "100 Main St",
            "start_dt": "2024-10-21T09:00:00",
            "hours": 4,
        },
    )
    assert default_hours.json()["hours"] == 2.5

    explicit = client.post(
        "/api/schedules",
        json={
            "invoice_id": invoice["id"],
            "job_title": "Third visit",
            "location": "100 Main St",
            "start_dt": "2024-10-22T09:00:00",
            "hours": 3,
        },
    )
    assert explicit.json()["hours"] == 3.0

    audit = client.get("/api/audit", params={"invoice_ref": invoice["invoice_number"]}).json()
    assert any(row["action"] == "schedule_created" for row in audit)
    assert any(row["performed_by"] == "office@hoodops.local" for row in audit)


def test_create_schedule_rejects_unknown_invoice_and_technician(tmp_path):
    client = make_client(tmp_path)
    invoice = _seed_invoice(client)

    missing_invoice = client.post(
        "/api/schedules",
        json={
            "invoice_id": 999,
            "job_title": "Ghost",
            "location": "Nowhere",
            "start_dt": "2024-10-20T09:00:00",
        },
    )
    assert missing_invoice.status_code == 400

    missing_tech = client.post(
        "/api/schedules",
        json={
            "invoice_id": invoice["id"],
            "job_title": "Ghost",
            "location": "Nowhere",
            "start_dt": "2024-10-20T09:00:00",
            "technician_ids": [42],
        },
    )
    assert missing_tech.status_code == 400


def test_update_job_moves_schedule_to_new_payroll_period(tmp_path):
    client = make_client(tmp_path)
    invoice = _seed_invoice(client)
    created = client.post(
        "/api/schedules",
        json={
            "invoice_id": invoice["id"],
            "job_title": "Hoods",
            "location": "100 Main St",
            "start_dt": "2024-10-20T09:00:00",
        },
    ).json()

    updated = client.put(
        f"/api/schedules/{created['id']}",
        json={
            "job_title": " Hoods and fans ",
            "location": "101 Main St",
            "start_dt": "2024-11-05T10:00:00",
            "technician_ids": [],
            "technician_notes": "Ladder needed",
            "sync_invoice": True,
        },
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body["job_title"] == "Hoods and fans"
    assert body["technician_notes"] == "Ladder needed"
    assert body["payroll_period_id"] != created["payroll_period_id"]

    periods = {p["id"]: p for p in client.get("/api/payroll-periods").json()}
    assert periods[body["payroll_period_id"]]["start_date"] == "2024-10-31"

    synced = client.get(f"/api/invoices/{invoice['id']}").json()
    assert synced["date_issued"] == "2024-11-05"
    assert synced["date_due"] == "2025-02-05"

    missing = client.put(
        "/api/schedules/999",
        json={
            "job_title": "x",
            "location": "y",
            "start_dt": "2024-11-05T10:00:00",
            "technician_ids": [],
        },
    )
    assert missing.status_code == 404


def test_schedule_flags_hours_and_reports(tmp_path):
    client = make_client(tmp_path)
    invoice = _seed_invoice(client)
    tech = client.post("/api/technicians", headers=MANAGER, json={"name": "Ana"}).json()
    schedule = client.post(
        "/api/schedules",
        json={
            "invoice_id": invoice["id"],
            "job_title": "Hoods",
            "location": "100 Main St",
            "start_dt": "2024-10-20T09:00:00",
            "technician_ids": [tech["id"]],
        },
    ).json()
    sid = schedule["id"]

    confirmed = client.patch(f"/api/schedules/{sid}/confirmed", json={"confirmed": True})
    assert confirmed.json()["confirmed"] is True

    dead_run = client.patch(f"/api/schedules/{sid}/dead-run", json={"dead_run": True})
    assert dead_run.json()["dead_run"] is True

    forbidden = client.patch(f"/api/schedules/{sid}/hours", json={"hours_worked": 5})
    assert forbidden.status_code == 403
    hours = client.patch(f"/api/schedules/{sid}/hours", headers=MANAGER, json={"hours_worked": 5})
    assert hours.json()["hours"] == 5.0

    assert client.get(f"/api/schedules/{sid}/report").status_code == 404
    report = client.put(
        f"/api/schedules/{sid}/report",
        json={
            "technician_id": tech["id"],
            "date_completed": "2024-10-20",
            "fuel_type": "natural_gas",
            "cooking_volume": "High",
            "inspection_items": {"filtersReplaced": True},
            "comments": "Heavy grease",
        },
    )
    assert report.status_code == 200
    first_id = report.json()["id"]

    again = client.put(
        f"/api/schedules/{sid}/report",
        json={"technician_id": tech["id"], "comments": "Rechecked"},
    )
    assert again.status_code == 200
    assert again.json()["id"] == first_id
    assert again.json()["comments"] == "Rechecked"
    assert again.json()["fuel_type"] == "natural_gas"

    fetched = client.get(f"/api/schedules/{sid}/report").json()
    assert fetched["inspection_items"] == {"filtersReplaced": True}

    by_tech = client.get(f"/api/technicians/{tech['id']}/schedules").json()
    assert [s["id"] for s in by_tech] == [sid]
    tech_periods = client.get(f"/api/technicians/{tech['id']}/payroll-periods").json()
    assert [p["id"] for p in tech_periods] == [schedule["payroll_period_id"]]

    deleted = client.delete(f"/api/schedules/{sid}")
    assert deleted.status_code == 204
    assert client.get(f"/api/schedules/{sid}").status_code == 404
    assert client.delete(f"/api/schedules/{sid}").status_code == 404


def test_resolve_payroll_period_endpoint(tmp_path):
    client = make_client(tmp_path)
    resolved = client.post("/api/payroll-periods/resolve", json={"moment": "2024-10-10T02:00:00"})
    assert resolved.status_code == 200
    assert resolved.json()["start_date"] == "2024-10-03"
    assert resolved.json()["pay_day"] == "2024-10-19"

    too_early = client.post("/api/payroll-periods/resolve", json={"moment": "2024-01-01T09:00:00"})
    assert too_early.status_code == 404


def test_new_jobs_pick_up_historical_duration_for_location(tmp_path):
    client = make_client(tmp_path)
    invoice = _seed_invoice(client, price=900)

    def schedule(start_dt, location, **extra):
        response = client.post(
            "/api/schedules",
            json={
                "invoice_id": invoice["id"],
                "job_title": "Hoods",
                "location": location,
                "start_dt": start_dt,
                "hours": 3,
                **extra,
            },
        )
        assert response.status_code == 201
        return response.json()

    older = schedule("2024-10-07T08:00:00", "12 Granville St")
    newer = schedule("2024-10-14T08:00:00", "12  granville st ")
    unrelated = schedule("2024-10-15T08:00:00", "9 Fraser St")
    assert newer["historical_service_minutes"] is None

    client.patch(f"/api/schedules/{older['id']}/actual-service", json={"actual_service_minutes": 95})
    client.patch(f"/api/schedules/{newer['id']}/actual-service", json={"actual_service_minutes": 120})
    client.patch(f"/api/schedules/{unrelated['id']}/actual-service", json={"actual_service_minutes": 300})

    looked_up = schedule("2024-10-21T08:00:00", "12 GRANVILLE ST")
    assert looked_up["historical_service_minutes"] == 120

    explicit = schedule("2024-10-22T08:00:00", "12 Granville St", historical_service_minutes=60)
    assert explicit["historical_service_minutes"] == 60

    cloned = schedule("2024-10-23T08:00:00", "1 Nowhere Rd", source_schedule_id=explicit["id"])
    assert cloned["historical_service_minutes"] == 60

    unknown = schedule("2024-10-24T08:00:00", "1 Nowhere Rd")
    assert unknown["historical_service_minutes"] is None


def test_duration_review_endpoint(tmp_path):
    client = make_client(tmp_path)
    invoice = _seed_invoice(client, price=900)
    job = client.post(
        "/api/schedules",
        json={
            "invoice_id": invoice["id"],
            "job_title": "Hoods",
            "location": "100 Main St",
            "start_dt": "2024-10-07T08:00:00",
            "hours": 2,
        },
    ).json()

    pending = client.get(f"/api/schedules/{job['id']}/duration-review").json()
    assert pending["confidence"] == "needs_review"
    assert [r["code"] for r in pending["reasons"]] == ["missing_duration"]

    client.patch(f"/api/schedules/{job['id']}/actual-service", json={"actual_service_minutes": 400})
    review = client.get(f"/api/schedules/{job['id']}/duration-review").json()
    assert review["cutoff_minutes"] == 210.0
    assert review["expected_minutes"] == 240
    assert review["price_check"] == "review: long vs price"
    assert [r["code"] for r in review["reasons"]] == ["over_schedule_plus_buffer", "price_mismatch_long"]

    assert client.get("/api/schedules/999/duration-review").status_code == 404
