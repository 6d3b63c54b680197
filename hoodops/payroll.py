from collections import defaultdict
from datetime import date

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .calendar_views import business_today, sort_service_day
from .config import settings
from .models import PayrollPeriod, Schedule, Technician
from .scheduling import duration_confidence, invoice_total, list_schedules_for_period
from .travel_time import build_day_route, summarize_routes

logger = structlog.get_logger("hoodops.payroll")


def _round_hours(value: float) -> float:
    return round(float(value or 0), 2)


def select_payroll_period(
    db: Session, period_id: int | None = None, today: date | None = None
) -> PayrollPeriod | None:
    """Period shown by default on the payroll screens.

    An explicit id wins (``None`` when unknown). Otherwise the period
    containing today, falling back to the most recent one.
    """
    if period_id is not None:
        return db.get(PayrollPeriod, period_id)

    current = today or business_today()
    period = db.execute(
        select(PayrollPeriod).where(
            PayrollPeriod.start_date <= current,
            PayrollPeriod.end_date >= current,
        )
    ).scalar_one_or_none()
    if period:
        return period
    return db.execute(
        select(PayrollPeriod).order_by(PayrollPeriod.end_date.desc()).limit(1)
    ).scalar_one_or_none()


def payroll_technicians(db: Session) -> list[Technician]:
    return db.execute(
        select(Technician)
        .where(Technician.include_in_payroll.is_(True))
        .order_by(Technician.name.asc())
    ).scalars().all()


def hourly_rate_for(technician: Technician) -> float:
    if technician.hourly_rate is None:
        return float(settings.DEFAULT_HOURLY_RATE)
    return float(technician.hourly_rate)


def _jobs_for(technician: Technician, schedules: list[Schedule]) -> list[Schedule]:
    return [s for s in schedules if any(t.id == technician.id for t in s.technicians)]


def payroll_breakdown(db: Session, period: PayrollPeriod) -> dict:
    schedules = list_schedules_for_period(db, period.id)

    rows = []
    for technician in payroll_technicians(db):
        jobs = _jobs_for(technician, schedules)
        total_hours = _round_hours(sum(float(j.hours or 0) for j in jobs))
        rate = hourly_rate_for(technician)
        rows.append(
            {
                "technician_id": technician.id,
                "technician_name": technician.name,
                "total_jobs": len(jobs),
                "total_hours": total_hours,
                "hourly_rate": rate,
                "gross_pay": round(total_hours * rate, 2),
                "jobs": [
                    {
                        "schedule_id": j.id,
                        "job_title": j.job_title,
                        "location": j.location,
                        "start_dt": j.start_dt,
                        "hours": float(j.hours or 0),
                        "dead_run": bool(j.dead_run),
                    }
                    for j in jobs
                ],
            }
        )

    return {
        "payroll_period_id": period.id,
        "start_date": period.start_date,
        "end_date": period.end_date,
        "pay_day": period.pay_day,
        "technicians": rows,
        "total_hours": _round_hours(sum(r["total_hours"] for r in rows)),
        "total_gross_pay": round(sum(r["gross_pay"] for r in rows), 2),
    }


def travel_minutes_by_technician(
    db: Session, schedules: list[Schedule], technicians: list[Technician]
) -> dict[int, float]:
    by_tech_day = defaultdict(list)
    wanted = {t.id for t in technicians}
    for schedule in schedules:
        for tech in schedule.technicians:
            if tech.id in wanted:
                by_tech_day[(tech.id, schedule.start_dt.date())].append(schedule)

    depots = {t.id: t.depot_address for t in technicians}
    keys = sorted(by_tech_day)
    routes = [
        build_day_route(day, sort_service_day(by_tech_day[(tech_id, day)]), depots.get(tech_id))
        for tech_id, day in keys
    ]

    totals = defaultdict(float)
    for (tech_id, _), summary in zip(keys, summarize_routes(db, routes)):
        totals[tech_id] += summary["total_travel_minutes"]
    return totals


def drive_metrics(db: Session, period: PayrollPeriod) -> dict:
    """Scheduled vs actual vs drive hours per payroll technician."""
    schedules = list_schedules_for_period(db, period.id)
    technicians = payroll_technicians(db)
    travel = travel_minutes_by_technician(db, schedules, technicians)

    rows = []
    for technician in technicians:
        jobs = _jobs_for(technician, schedules)
        scheduled = _round_hours(sum(float(j.hours or 0) for j in jobs))

        actual_minutes = 0
        missing = []
        review = []
        for job in jobs:
            if job.actual_service_minutes is None:
                missing.append(
                    {
                        "schedule_id": job.id,
                        "job_title": (job.job_title or "").strip() or "Untitled Job",
                        "start_dt": job.start_dt,
                    }
                )
            else:
                actual_minutes += max(0, job.actual_service_minutes)
                check = duration_confidence(
                    job.actual_service_minutes,
                    job.hours,
                    invoice_total(job.invoice) if job.invoice else None,
                )
                if check["confidence"] == "needs_review":
                    review.append(
                        {
                            "schedule_id": job.id,
                            "job_title": (job.job_title or "").strip() or "Untitled Job",
                            "actual_service_minutes": job.actual_service_minutes,
                            "cutoff_minutes": check["cutoff_minutes"],
                            "expected_range": check["expected_range"],
                            "price_check": check["price_check"],
                            "reasons": [r["code"] for r in check["reasons"]],
                        }
                    )

        actual = _round_hours(actual_minutes / 60)
        drive = _round_hours(travel.get(technician.id, 0) / 60)
        scheduled_plus_drive = _round_hours(scheduled + drive)
        rows.append(
            {
                "technician_id": technician.id,
                "technician_name": technician.name,
                "total_jobs": len(jobs),
                "scheduled_hours": scheduled,
                "actual_hours": actual,
                "drive_hours": drive,
                "scheduled_plus_drive_hours": scheduled_plus_drive,
                "actual_plus_drive_hours": _round_hours(actual + drive),
                "actual_vs_scheduled_plus_drive_hours": _round_hours(actual - scheduled_plus_drive),
                "has_depot_address": bool((technician.depot_address or "").strip()),
                "missing_actual_duration_jobs": missing,
                "duration_review_jobs": review,
            }
        )

    total_actual = _round_hours(sum(r["actual_hours"] for r in rows))
    total_scheduled_plus_drive = _round_hours(sum(r["scheduled_plus_drive_hours"] for r in rows))
    return {
        "payroll_period_id": period.id,
        "total_jobs": sum(r["total_jobs"] for r in rows),
        "total_scheduled_hours": _round_hours(sum(r["scheduled_hours"] for r in rows)),
        "total_actual_hours": total_actual,
        "total_drive_hours": _round_hours(sum(r["drive_hours"] for r in rows)),
        "total_scheduled_plus_drive_hours": total_scheduled_plus_drive,
        "total_actual_plus_drive_hours": _round_hours(sum(r["actual_plus_drive_hours"] for r in rows)),
        "total_actual_vs_scheduled_plus_drive_hours": _round_hours(
            total_actual - total_scheduled_plus_drive
        ),
        "total_missing_actual_duration_jobs": sum(
            len(r["missing_actual_duration_jobs"]) for r in rows
        ),
        "total_duration_review_jobs": sum(len(r["duration_review_jobs"]) for r in rows),
        "technicians": rows,
    }
