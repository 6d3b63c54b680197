import math
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .models import (
    Invoice,
    PayrollPeriod,
    Report,
    Schedule,
    Technician,
    schedule_technicians,
    utc_now_naive,
)
from .services import mark_invoice_scheduled, sync_invoice_date_issued, write_audit

logger = structlog.get_logger("hoodops.scheduling")

_REPORT_FIELDS = (
    "date_completed",
    "last_service_date",
    "fuel_type",
    "cooking_volume",
    "cooking_equipment",
    "inspection_items",
    "equipment_details",
    "cleaning_details",
    "recommended_cleaning_frequency",
    "comments",
    "recommendations",
)


def job_duration_minutes(total_price: float) -> int:
    """Expected on-site time for a job, from the invoice total."""
    if total_price <= 350:
        return 90
    if total_price < 600:
        return 150
    if total_price <= 800:
        return 180
    if total_price <= 1000:
        return 210
    if total_price <= 1500:
        return 240

    # one more hour per started $300 above $1500, capped at a full day
    extra_hours = math.ceil((total_price - 1500) / 300)
    return min(4 + extra_hours, 8) * 60


def minutes_to_hours(minutes: float) -> float:
    return math.ceil(minutes / 60 * 2) / 2


def _as_date(moment: date | datetime) -> date:
    return moment.date() if isinstance(moment, datetime) else moment


def _period_containing(db: Session, day: date) -> PayrollPeriod | None:
    return db.execute(
        select(PayrollPeriod)
        .where(PayrollPeriod.start_date <= day, PayrollPeriod.end_date >= day)
        .order_by(PayrollPeriod.start_date.asc())
        .limit(1)
    ).scalar_one_or_none()


def find_or_create_payroll_period(db: Session, moment: date | datetime) -> PayrollPeriod | None:
    """Return the payroll period covering ``moment``, creating periods as needed.

    Periods are contiguous, ``PAYROLL_PERIOD_DAYS`` long and anchored on
    ``PAYROLL_BASE_START_DATE``. Missing periods are generated forward from
    the day after the latest existing one until the target day is covered.
    Days before the base start date have no period and yield ``None``.

    Each new period is committed on its own; call this before staging other
    changes on the session.
    """
    day = _as_date(moment)

    period = _period_containing(db, day)
    if period:
        return period

    latest = db.execute(
        select(PayrollPeriod).order_by(PayrollPeriod.end_date.desc()).limit(1)
    ).scalar_one_or_none()
    next_start = latest.end_date + timedelta(days=1) if latest else settings.PAYROLL_BASE_START_DATE

    length = max(1, int(settings.PAYROLL_PERIOD_DAYS))
    while next_start <= day:
        end = next_start + timedelta(days=length - 1)
        db.add(
            PayrollPeriod(
                start_date=next_start,
                end_date=end,
                cutoff_date=end,
                pay_day=end + timedelta(days=settings.PAYROLL_PAYDAY_OFFSET_DAYS),
                created_at=utc_now_naive(),
            )
        )
        try:
            db.commit()
            logger.info(
                "payroll_period_created",
                start_date=next_start.isoformat(),
                end_date=end.isoformat(),
            )
        except IntegrityError:
            # created concurrently by another request
            db.rollback()
            logger.info("payroll_period_exists", start_date=next_start.isoformat())
        next_start = end + timedelta(days=1)

    return _period_containing(db, day)


def invoice_total(invoice: Invoice) -> float:
    return round(sum(float(item.price or 0) for item in invoice.items), 2)


def derive_job_hours(invoice: Invoice | None) -> float:
    if invoice is None:
        return float(settings.FALLBACK_JOB_HOURS)
    try:
        total = invoice_total(invoice)
        minutes = job_duration_minutes(total)
    except (TypeError, ValueError, ArithmeticError) as exc:
        logger.warning("job_duration_fallback", invoice_id=invoice.id, error=str(exc))
        return float(settings.FALLBACK_JOB_HOURS)
    hours = minutes_to_hours(minutes)
    logger.info("job_duration_derived", invoice_id=invoice.id, total=total, minutes=minutes, hours=hours)
    return hours


def price_check(invoice_total: float | None, minutes: float | None) -> dict:
    """Compare an on-site duration with the band expected from the invoice total.

    The accepted band runs from an hour under the expected duration (never
    below 15 minutes) to 90 minutes over it.
    """
    if minutes is None or not math.isfinite(minutes) or minutes < 0:
        return {"expected_minutes": None, "expected_range": None, "price_check": "-"}
    if invoice_total is None or not math.isfinite(invoice_total):
        return {"expected_minutes": None, "expected_range": None, "price_check": "price unknown"}

    expected = job_duration_minutes(invoice_total)
    lower = max(15, expected - 60)
    upper = expected + 90
    if invoice_total <= 500 and minutes >= 240:
        status = "review: long vs <=$500"
    elif minutes > upper:
        status = "review: long vs price"
    elif minutes < lower:
        status = "review: short vs price"
    else:
        status = "price-aligned"
    return {"expected_minutes": expected, "expected_range": f"{lower}-{upper}m", "price_check": status}


def duration_confidence(
    actual_minutes: float | None,
    scheduled_hours: float | None,
    invoice_total: float | None,
    max_minutes: int | None = None,
) -> dict:
    cap = max_minutes if max_minutes and max_minutes > 0 else settings.ACTUAL_SERVICE_MAX_MINUTES
    hours = float(scheduled_hours) if scheduled_hours is not None else settings.DEFAULT_JOB_HOURS
    cutoff = (max(0.0, hours) + settings.DURATION_REVIEW_BUFFER_HOURS) * 60

    if actual_minutes is None:
        return {
            "confidence": "needs_review",
            "reasons": [{"code": "missing_duration", "message": "Actual duration is missing."}],
            "cutoff_minutes": cutoff,
            **price_check(invoice_total, None),
        }

    reasons = []
    if actual_minutes < 0:
        reasons.append({"code": "negative_or_invalid", "message": "Actual duration is negative or invalid."})
    if actual_minutes > cutoff:
        reasons.append(
            {
                "code": "over_schedule_plus_buffer",
                "message": f"Actual duration exceeds scheduled hours + {settings.DURATION_REVIEW_BUFFER_HOURS}h.",
            }
        )
    if actual_minutes > cap:
        reasons.append({"code": "over_max_cap", "message": f"Actual duration exceeds max cap ({cap} minutes)."})

    check = price_check(invoice_total, actual_minutes)
    if check["price_check"] == "review: long vs <=$500":
        reasons.append(
            {
                "code": "price_mismatch_long_low_price",
                "message": "Duration is unusually long for a <=$500 invoice.",
            }
        )
    elif check["price_check"] == "review: long vs price":
        reasons.append(
            {"code": "price_mismatch_long", "message": "Duration is longer than invoice-price baseline."}
        )

    return {
        "confidence": "needs_review" if reasons else "good",
        "reasons": reasons,
        "cutoff_minutes": cutoff,
        **check,
    }


def _location_key(location: str | None) -> str:
    return " ".join((location or "").split()).lower()


def historical_duration_for_location(db: Session, location: str | None) -> int | None:
    """Most recent recorded on-site minutes at ``location``, ignoring case and spacing."""
    key = _location_key(location)
    if not key:
        return None

    rows = db.execute(
        select(Schedule.location, Schedule.actual_service_minutes)
        .where(
            Schedule.actual_service_minutes.is_not(None),
            Schedule.actual_service_minutes >= 0,
            Schedule.actual_service_minutes <= settings.ACTUAL_SERVICE_MAX_MINUTES,
        )
        .order_by(Schedule.start_dt.desc(), Schedule.id.desc())
    )
    for row_location, minutes in rows:
        if _location_key(row_location) == key:
            return minutes
    return None


def resolve_historical_minutes(
    db: Session,
    location: str | None,
    *,
    explicit: int | None = None,
    source_schedule_id: int | None = None,
) -> int | None:
    if explicit is not None:
        return explicit
    if source_schedule_id is not None:
        source = db.get(Schedule, source_schedule_id)
        if source is not None and source.historical_service_minutes is not None:
            return source.historical_service_minutes
    return historical_duration_for_location(db, location)


def _load_technicians(db: Session, technician_ids: list[int]) -> list[Technician]:
    ids = list(dict.fromkeys(technician_ids or []))
    if not ids:
        return []
    rows = db.execute(select(Technician).where(Technician.id.in_(ids))).scalars().all()
    found = {t.id for t in rows}
    missing = [i for i in ids if i not in found]
    if missing:
        raise ValueError(f"Unknown technician ids: {missing}")
    return rows


def create_schedule(
    db: Session,
    *,
    invoice_id: int,
    job_title: str,
    location: str,
    start_dt: datetime,
    technician_ids: list[int] | None = None,
    hours: float | None = None,
    confirmed: bool = False,
    technician_notes: str | None = None,
    historical_service_minutes: int | None = None,
    source_schedule_id: int | None = None,
    performed_by: str | None = None,
) -> Schedule:
    title = (job_title or "").strip()
    if not title:
        raise ValueError("Job title is required")

    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        raise ValueError("Invoice not found")

    if not hours or hours == settings.DEFAULT_JOB_HOURS:
        hours = derive_job_hours(invoice)
    elif hours < 0:
        raise ValueError("Hours cannot be negative")

    technicians = _load_technicians(db, technician_ids or [])
    period = find_or_create_payroll_period(db, start_dt)
    historical = resolve_historical_minutes(
        db,
        location,
        explicit=historical_service_minutes,
        source_schedule_id=source_schedule_id,
    )

    schedule = Schedule(
        invoice_id=invoice.id,
        job_title=title,
        location=(location or "").strip(),
        start_dt=start_dt,
        confirmed=confirmed,
        hours=float(hours),
        payroll_period_id=period.id if period else None,
        technician_notes=(technician_notes or "").strip(),
        historical_service_minutes=historical,
        created_at=utc_now_naive(),
    )
    schedule.technicians = technicians
    db.add(schedule)
    db.flush()

    mark_invoice_scheduled(db, invoice.id, commit=False)
    write_audit(
        db,
        "schedule_created",
        invoice_ref=invoice.invoice_number,
        performed_by=performed_by,
        details={
            "new_value": {
                "schedule_id": schedule.id,
                "start_dt": start_dt.isoformat(),
                "hours": schedule.hours,
                "technician_ids": [t.id for t in technicians],
            },
            "reason": "Job scheduled",
        },
    )
    db.commit()
    db.refresh(schedule)
    logger.info(
        "schedule_created",
        schedule_id=schedule.id,
        invoice_id=invoice.id,
        payroll_period_id=schedule.payroll_period_id,
        hours=schedule.hours,
    )
    return schedule


def get_schedule(db: Session, schedule_id: int) -> Schedule | None:
    return db.get(Schedule, schedule_id)


def update_job(
    db: Session,
    schedule_id: int,
    *,
    job_title: str,
    location: str,
    start_dt: datetime,
    technician_ids: list[int],
    technician_notes: str | None = None,
    sync_invoice: bool = False,
) -> Schedule | None:
    schedule = db.get(Schedule, schedule_id)
    if not schedule:
        return None

    title = (job_title or "").strip()
    if not title:
        raise ValueError("Job title is required")

    technicians = _load_technicians(db, technician_ids)
    period = find_or_create_payroll_period(db, start_dt)

    schedule.job_title = title
    schedule.location = (location or "").strip()
    schedule.start_dt = start_dt
    schedule.technicians = technicians
    schedule.payroll_period_id = period.id if period else None
    if technician_notes is not None:
        schedule.technician_notes = technician_notes.strip()

    if sync_invoice:
        sync_invoice_date_issued(
            db, schedule.invoice_id, start_dt.date(), job_title=title, commit=False
        )

    db.commit()
    db.refresh(schedule)
    logger.info(
        "schedule_updated",
        schedule_id=schedule.id,
        payroll_period_id=schedule.payroll_period_id,
    )
    return schedule


def set_confirmed(db: Session, schedule_id: int, confirmed: bool) -> Schedule | None:
    schedule = db.get(Schedule, schedule_id)
    if not schedule:
        return None
    schedule.confirmed = bool(confirmed)
    db.commit()
    db.refresh(schedule)
    return schedule


def update_shift_hours(db: Session, schedule_id: int, hours_worked: float) -> Schedule | None:
    if hours_worked < 0:
        raise ValueError("Hours cannot be negative")
    schedule = db.get(Schedule, schedule_id)
    if not schedule:
        return None
    schedule.hours = float(hours_worked)
    db.commit()
    db.refresh(schedule)
    return schedule


def update_actual_service_minutes(db: Session, schedule_id: int, minutes: int | None) -> Schedule | None:
    if minutes is not None and minutes < 0:
        raise ValueError("Minutes cannot be negative")
    schedule = db.get(Schedule, schedule_id)
    if not schedule:
        return None
    schedule.actual_service_minutes = minutes
    db.commit()
    db.refresh(schedule)
    return schedule


def update_dead_run(db: Session, schedule_id: int, dead_run: bool) -> Schedule | None:
    schedule = db.get(Schedule, schedule_id)
    if not schedule:
        return None
    schedule.dead_run = bool(dead_run)
    db.commit()
    db.refresh(schedule)
    return schedule


def delete_job(db: Session, schedule_id: int) -> bool:
    schedule = db.get(Schedule, schedule_id)
    if not schedule:
        return False
    db.delete(schedule)
    db.commit()
    logger.info("schedule_deleted", schedule_id=schedule_id)
    return True


def create_or_update_report(db: Session, schedule_id: int, data: dict) -> Report | None:
    schedule = db.get(Schedule, schedule_id)
    if not schedule:
        return None

    technician_id = data.get("technician_id")
    if technician_id is None or db.get(Technician, technician_id) is None:
        raise ValueError("Technician not found")

    report = schedule.report
    if report is None:
        if data.get("date_completed") is None:
            raise ValueError("date_completed is required")
        report = Report(schedule_id=schedule.id, invoice_id=schedule.invoice_id)
        db.add(report)

    report.technician_id = technician_id
    for key in _REPORT_FIELDS:
        if data.get(key) is not None:
            setattr(report, key, data[key])
    report.updated_at = utc_now_naive()

    db.commit()
    db.refresh(report)
    return report


def get_report_by_schedule(db: Session, schedule_id: int) -> Report | None:
    return db.execute(
        select(Report).where(Report.schedule_id == schedule_id)
    ).scalar_one_or_none()


def list_schedules(
    db: Session,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Schedule]:
    q = db.query(Schedule)
    if start is not None:
        q = q.filter(Schedule.start_dt >= start)
    if end is not None:
        q = q.filter(Schedule.start_dt < end)
    return q.order_by(Schedule.start_dt.asc(), Schedule.id.asc()).all()


def list_schedules_for_period(db: Session, payroll_period_id: int) -> list[Schedule]:
    return (
        db.query(Schedule)
        .filter(Schedule.payroll_period_id == payroll_period_id)
        .order_by(Schedule.start_dt.asc(), Schedule.id.asc())
        .all()
    )


def list_schedules_for_technician(
    db: Session, technician_id: int, payroll_period_id: int | None = None
) -> list[Schedule]:
    q = (
        db.query(Schedule)
        .join(schedule_technicians, schedule_technicians.c.schedule_id == Schedule.id)
        .filter(schedule_technicians.c.technician_id == technician_id)
    )
    if payroll_period_id is not None:
        q = q.filter(Schedule.payroll_period_id == payroll_period_id)
    return q.order_by(Schedule.start_dt.asc(), Schedule.id.asc()).all()


def list_payroll_periods(db: Session) -> list[PayrollPeriod]:
    return db.execute(
        select(PayrollPeriod).order_by(PayrollPeriod.start_date.desc())
    ).scalars().all()


def list_payroll_periods_for_technician(db: Session, technician_id: int) -> list[PayrollPeriod]:
    stmt = (
        select(PayrollPeriod)
        .join(Schedule, Schedule.payroll_period_id == PayrollPeriod.id)
        .join(schedule_technicians, schedule_technicians.c.schedule_id == Schedule.id)
        .where(schedule_technicians.c.technician_id == technician_id)
        .distinct()
        .order_by(PayrollPeriod.start_date.desc())
    )
    return db.execute(stmt).scalars().all()
