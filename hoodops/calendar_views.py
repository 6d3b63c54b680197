import calendar
from collections import defaultdict
from datetime import date, datetime, time, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .models import Schedule, Technician, TimeOffRequest, business_now_naive
from .scheduling import list_schedules
from .team import list_availability_for_day, unavailability_info
from .travel_time import build_day_route, summarize_routes

SERVICE_DAY_HOUR_ORDER = list(range(settings.SERVICE_DAY_CUTOFF_HOUR, 24)) + list(
    range(settings.SERVICE_DAY_CUTOFF_HOUR)
)


def business_today() -> date:
    return business_now_naive().date()


def service_day_minutes(moment: datetime) -> int:
    """Minutes into the service day; 00:00-02:59 sort after 23:59."""
    hour = moment.hour
    if hour < settings.SERVICE_DAY_CUTOFF_HOUR:
        hour += 24
    return hour * 60 + moment.minute


def service_sort_key(job: Schedule) -> tuple:
    return (service_day_minutes(job.start_dt), job.start_dt, job.id or 0)


def sort_service_day(jobs: list[Schedule]) -> list[Schedule]:
    return sorted(jobs, key=service_sort_key)


def week_start(anchor: date) -> date:
    return anchor - timedelta(days=(anchor.weekday() + 1) % 7)


def week_days(anchor: date) -> list[date]:
    start = week_start(anchor)
    return [start + timedelta(days=i) for i in range(7)]


def month_weeks(year: int, month: int) -> list[list[date]]:
    """Sunday-to-Saturday weeks covering the whole month."""
    cal = calendar.Calendar(firstweekday=calendar.SUNDAY)
    return cal.monthdatescalendar(year, month)


def job_end(job: Schedule) -> datetime:
    return job.start_dt + timedelta(hours=max(float(job.hours or 0), 0))


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def _filter_technician(jobs: list[Schedule], technician_id: int | None) -> list[Schedule]:
    if technician_id is None:
        return jobs
    return [j for j in jobs if any(t.id == technician_id for t in j.technicians)]


def job_payload(job: Schedule) -> dict:
    return {
        "id": job.id,
        "invoice_id": job.invoice_id,
        "job_title": job.job_title,
        "location": job.location,
        "start_dt": job.start_dt,
        "end_dt": job_end(job),
        "hours": float(job.hours or 0),
        "confirmed": bool(job.confirmed),
        "dead_run": bool(job.dead_run),
        "payroll_period_id": job.payroll_period_id,
        "technician_notes": job.technician_notes or "",
        "actual_service_minutes": job.actual_service_minutes,
        "historical_service_minutes": job.historical_service_minutes,
        "technicians": [{"id": t.id, "name": t.name} for t in job.technicians],
    }


def _technician_routes(day: date, jobs: list[Schedule], technicians: dict[int, Technician]):
    by_technician = defaultdict(list)
    for job in jobs:
        for tech in job.technicians:
            by_technician[tech.id].append(job)

    tech_ids = sorted(by_technician, key=lambda tid: technicians[tid].name)
    routes = [
        build_day_route(day, by_technician[tid], technicians[tid].depot_address)
        for tid in tech_ids
    ]
    return tech_ids, routes


def unavailable_technicians(db: Session, day: date, technicians: list[Technician]) -> list[dict]:
    blocks = list_availability_for_day(db, day)
    time_off = db.execute(
        select(TimeOffRequest).where(
            TimeOffRequest.status == "approved",
            TimeOffRequest.start_date <= day,
            TimeOffRequest.end_date >= day,
        )
    ).scalars().all()
    on_leave = {r.technician_id: r for r in time_off}

    out = []
    for tech in technicians:
        if tech.id in on_leave:
            out.append(
                {
                    "technician_id": tech.id,
                    "name": tech.name,
                    "is_full_day": True,
                    "ranges": [],
                    "reason": "time_off",
                }
            )
            continue
        info = unavailability_info(blocks, tech.id, day)
        if info["is_unavailable"]:
            out.append(
                {
                    "technician_id": tech.id,
                    "name": tech.name,
                    "is_full_day": info["is_full_day"],
                    "ranges": info["ranges"],
                    "reason": "availability",
                }
            )
    return out


def day_view(db: Session, day: date, technician_id: int | None = None) -> dict:
    start, end = _day_bounds(day)
    jobs = sort_service_day(_filter_technician(list_schedules(db, start, end), technician_id))

    technicians = db.execute(
        select(Technician).where(Technician.is_active.is_(True)).order_by(Technician.name.asc())
    ).scalars().all()
    lookup = {t.id: t for t in technicians}
    for job in jobs:
        for tech in job.technicians:
            lookup.setdefault(tech.id, tech)
    if technician_id is not None:
        technicians = [t for t in technicians if t.id == technician_id]

    tech_ids, routes = _technician_routes(day, jobs, lookup)
    if technician_id is not None:
        pairs = [(tid, r) for tid, r in zip(tech_ids, routes) if tid == technician_id]
        tech_ids, routes = [p[0] for p in pairs], [p[1] for p in pairs]
    summaries = summarize_routes(db, routes)

    return {
        "date": day,
        "jobs": [job_payload(j) for j in jobs],
        "unavailable": unavailable_technicians(db, day, technicians),
        "travel": [
            {"technician_id": tid, "name": lookup[tid].name, **summary}
            for tid, summary in zip(tech_ids, summaries)
        ],
    }


def week_view(db: Session, anchor: date, technician_id: int | None = None) -> dict:
    days = week_days(anchor)
    start, _ = _day_bounds(days[0])
    _, end = _day_bounds(days[-1])
    jobs = _filter_technician(list_schedules(db, start, end), technician_id)

    by_day = defaultdict(list)
    for job in jobs:
        by_day[job.start_dt.date()].append(job)

    lookup = {}
    for job in jobs:
        for tech in job.technicians:
            lookup[tech.id] = tech

    buckets = []
    for day in days:
        day_jobs = sort_service_day(by_day.get(day, []))
        tech_ids, routes = _technician_routes(day, day_jobs, lookup)
        if technician_id is not None:
            routes = [r for tid, r in zip(tech_ids, routes) if tid == technician_id]
        summaries = summarize_routes(db, routes)
        buckets.append(
            {
                "date": day,
                "jobs": [job_payload(j) for j in day_jobs],
                "job_count": len(day_jobs),
                "scheduled_hours": round(sum(float(j.hours or 0) for j in day_jobs), 2),
                "travel_minutes": round(sum(s["total_travel_minutes"] for s in summaries), 1),
                "travel_km": round(sum(s["total_travel_km"] for s in summaries), 1),
                "has_partial_travel": any(s["is_partial"] for s in summaries),
            }
        )

    return {
        "week_start": days[0],
        "week_end": days[-1],
        "days": buckets,
    }
