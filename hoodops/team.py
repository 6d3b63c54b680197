from datetime import date, datetime

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import Availability, Technician, TimeOffRequest, utc_now_naive

logger = structlog.get_logger("hoodops.team")

TIME_OFF_STATUSES = {"pending", "approved", "rejected"}


def _parse_hhmm(value: str) -> int:
    try:
        hours, minutes = value.strip().split(":")
        h, m = int(hours), int(minutes)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid time {value!r}, expected HH:MM") from None
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    return h * 60 + m


def js_weekday(day: date) -> int:
    """Day of week with 0 = Sunday."""
    return (day.weekday() + 1) % 7


# Technicians


def create_technician(
    db: Session,
    name: str,
    email: str | None = None,
    hourly_rate: float | None = None,
    depot_address: str | None = None,
    include_in_payroll: bool = True,
) -> Technician:
    normalized = (name or "").strip()
    if not normalized:
        raise ValueError("Technician name is required")
    if hourly_rate is not None and hourly_rate < 0:
        raise ValueError("Hourly rate cannot be negative")

    technician = Technician(
        name=normalized,
        email=(email or "").strip() or None,
        hourly_rate=hourly_rate,
        depot_address=(depot_address or "").strip() or None,
        include_in_payroll=include_in_payroll,
        is_active=True,
    )
    db.add(technician)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValueError("Technician already exists") from None
    db.refresh(technician)
    return technician


def get_technician(db: Session, technician_id: int) -> Technician | None:
    return db.get(Technician, technician_id)


def list_technicians(db: Session, include_inactive: bool = False) -> list[Technician]:
    q = db.query(Technician)
    if not include_inactive:
        q = q.filter(Technician.is_active.is_(True))
    return q.order_by(Technician.name.asc()).all()


def update_technician(db: Session, technician_id: int, **updates) -> Technician | None:
    technician = db.get(Technician, technician_id)
    if not technician:
        return None

    if updates.get("name") is not None:
        name = updates["name"].strip()
        if not name:
            raise ValueError("Technician name is required")
        technician.name = name
    if updates.get("email") is not None:
        technician.email = updates["email"].strip() or None
    if updates.get("hourly_rate") is not None:
        if updates["hourly_rate"] < 0:
            raise ValueError("Hourly rate cannot be negative")
        technician.hourly_rate = updates["hourly_rate"]
    if updates.get("depot_address") is not None:
        technician.depot_address = updates["depot_address"].strip() or None
    for flag in ("include_in_payroll", "is_active"):
        if updates.get(flag) is not None:
            setattr(technician, flag, bool(updates[flag]))

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValueError("Technician already exists") from None
    db.refresh(technician)
    return technician


def deactivate_technician(db: Session, technician_id: int) -> bool:
    technician = db.get(Technician, technician_id)
    if not technician:
        return False
    technician.is_active = False
    db.commit()
    return True


# Availability


def create_availability(
    db: Session,
    technician_id: int,
    *,
    day_of_week: int | None = None,
    specific_date: date | None = None,
    start_time: str = "00:00",
    end_time: str = "23:59",
    is_full_day: bool = False,
) -> Availability:
    if db.get(Technician, technician_id) is None:
        raise ValueError("Technician not found")
    if (day_of_week is None) == (specific_date is None):
        raise ValueError("Provide either day_of_week or specific_date")
    if day_of_week is not None and not 0 <= day_of_week <= 6:
        raise ValueError("day_of_week must be between 0 (Sunday) and 6")

    if is_full_day:
        start_time, end_time = "00:00", "23:59"
    elif _parse_hhmm(start_time) >= _parse_hhmm(end_time):
        raise ValueError("start_time must be before end_time")

    block = Availability(
        technician_id=technician_id,
        day_of_week=day_of_week,
        specific_date=specific_date,
        start_time=start_time,
        end_time=end_time,
        is_full_day=is_full_day,
        is_recurring=day_of_week is not None,
    )
    db.add(block)
    db.commit()
    db.refresh(block)
    return block


def list_availability(db: Session, technician_id: int | None = None) -> list[Availability]:
    q = db.query(Availability)
    if technician_id is not None:
        q = q.filter(Availability.technician_id == technician_id)
    return q.order_by(Availability.technician_id.asc(), Availability.id.asc()).all()


def list_availability_for_day(db: Session, day: date) -> list[Availability]:
    stmt = select(Availability).where(
        or_(
            Availability.specific_date == day,
            Availability.day_of_week == js_weekday(day),
        )
    )
    return db.execute(stmt).scalars().all()


def delete_availability(db: Session, block_id: int) -> bool:
    block = db.get(Availability, block_id)
    if not block:
        return False
    db.delete(block)
    db.commit()
    return True


def _block_applies_to_day(block: Availability, day: date) -> bool:
    if block.is_recurring and block.day_of_week is not None:
        return block.day_of_week == js_weekday(day)
    return block.specific_date == day


def matching_blocks(
    blocks: list[Availability],
    technician_id: int,
    day: date,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Availability]:
    """Blocks of one technician that make them unavailable on ``day``.

    Full-day blocks always match. A timed block matches when the requested
    ``start``/``end`` hours overlap it, or when no range was requested.
    """
    out = []
    for block in blocks:
        if block.technician_id != technician_id or not _block_applies_to_day(block, day):
            continue
        if block.is_full_day or start is None or end is None:
            out.append(block)
            continue
        block_start = _parse_hhmm(block.start_time)
        block_end = _parse_hhmm(block.end_time)
        requested_start = start.hour * 60 + start.minute
        requested_end = end.hour * 60 + end.minute
        if requested_end <= requested_start:
            requested_end = 24 * 60
        if requested_start < block_end and block_start < requested_end:
            out.append(block)
    return out


def is_technician_unavailable(
    blocks: list[Availability],
    technician_id: int,
    day: date,
    start: datetime | None = None,
    end: datetime | None = None,
) -> bool:
    return bool(matching_blocks(blocks, technician_id, day, start, end))


def unavailability_info(
    blocks: list[Availability],
    technician_id: int,
    day: date,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict:
    matched = matching_blocks(blocks, technician_id, day, start, end)
    if not matched:
        return {"is_unavailable": False, "is_full_day": False, "ranges": []}
    full_day = any(b.is_full_day for b in matched)
    ranges = [] if full_day else [f"{b.start_time}-{b.end_time}" for b in matched]
    return {"is_unavailable": True, "is_full_day": full_day, "ranges": ranges}


# Time off


def create_time_off_request(
    db: Session,
    technician_id: int,
    start_date: date,
    end_date: date,
    reason: str,
) -> TimeOffRequest:
    if db.get(Technician, technician_id) is None:
        raise ValueError("Technician not found")
    if end_date < start_date:
        raise ValueError("end_date must be >= start_date")
    text = (reason or "").strip()
    if not text:
        raise ValueError("A reason is required")

    request = TimeOffRequest(
        technician_id=technician_id,
        start_date=start_date,
        end_date=end_date,
        reason=text[:500],
        status="pending",
        requested_at=utc_now_naive(),
    )
    db.add(request)
    db.commit()
    db.refresh(request)
    return request


def list_time_off_requests(
    db: Session, status: str | None = None, technician_id: int | None = None
) -> list[TimeOffRequest]:
    q = db.query(TimeOffRequest)
    if status:
        q = q.filter(TimeOffRequest.status == status)
    if technician_id is not None:
        q = q.filter(TimeOffRequest.technician_id == technician_id)
    return q.order_by(TimeOffRequest.requested_at.desc(), TimeOffRequest.id.desc()).all()


def review_time_off_request(
    db: Session,
    request_id: int,
    status: str,
    reviewed_by: str,
    notes: str | None = None,
) -> TimeOffRequest | None:
    decision = (status or "").strip().lower()
    if decision not in {"approved", "rejected"}:
        raise ValueError("Decision must be approved or rejected")

    request = db.get(TimeOffRequest, request_id)
    if not request:
        return None
    if request.status != "pending":
        raise ValueError("Time-off request already reviewed")

    request.status = decision
    request.reviewed_at = utc_now_naive()
    request.reviewed_by = (reviewed_by or "manager").strip()[:120]
    if notes is not None:
        request.notes = notes.strip()
    db.commit()
    db.refresh(request)
    logger.info("time_off_reviewed", request_id=request.id, status=decision)
    return request


def pending_time_off_count(db: Session) -> int:
    return int(
        db.execute(
            select(func.count(TimeOffRequest.id)).where(TimeOffRequest.status == "pending")
        ).scalar_one()
    )
