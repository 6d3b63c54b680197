import calendar
import re
from datetime import date, datetime, time, timedelta

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .models import (
    AuditLog,
    CallLogEntry,
    Client,
    Estimate,
    EstimateItem,
    Invoice,
    InvoiceItem,
    JobDueSoon,
    business_now_naive,
    utc_now_naive,
)
from .request_context import current_actor

logger = structlog.get_logger("hoodops.services")

INVOICE_STATUSES = {"pending", "overdue", "paid"}
PAYMENT_METHODS = {"eft", "e-transfer", "cheque", "credit-card", "other"}
ESTIMATE_STATUSES = {"draft", "sent", "approved", "rejected"}
CALL_OUTCOMES = {
    "will_call_back",
    "scheduled",
    "not_interested",
    "payment_promised",
    "no_answer",
    "voicemail_left",
    "wrong_number",
    "requested_callback",
    "needs_more_time",
    "will_pay_today",
    "dispute_raised",
    "rescheduled",
    "cancelled",
}
ESTIMATE_FIRST_NUMBER = 1000

_INVOICE_NUMBER_RE = re.compile(r"^(?P<prefix>.+)-(?P<number>\d+)$")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip()


def _clean_items(items: list[dict] | None) -> list[dict]:
    out = []
    for item in items or []:
        out.append(
            {
                "description": (item.get("description") or "").strip(),
                "details": _clean(item.get("details")) or None,
                "price": round(float(item.get("price") or 0), 2),
            }
        )
    return out


def format_phone_number(phone: str | None) -> str | None:
    if phone and len(phone) == 10:
        return f"({phone[0:3]})-{phone[3:6]}-{phone[6:]}"
    return phone


def add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def calculate_due_date(date_issued: date, frequency: int | None) -> date | None:
    """Next service date: the issue date plus one billing interval.

    ``frequency`` is the number of services per year (12 = monthly,
    4 = quarterly). Returns ``None`` when no whole-month interval exists.
    """
    if not frequency or frequency <= 0:
        return None
    months = 12 // int(frequency)
    if months <= 0:
        return None
    return add_months(date_issued, months)


def items_subtotal(items) -> float:
    return round(sum(float(getattr(i, "price", None) or 0) for i in items), 2)


def gst_for(subtotal: float) -> float:
    return round(subtotal * settings.GST_RATE, 2)


def write_audit(
    db: Session,
    action: str,
    *,
    invoice_ref: str | None = None,
    performed_by: str | None = None,
    details: dict | None = None,
    success: bool = True,
    error_message: str | None = None,
) -> AuditLog:
    row = AuditLog(
        invoice_ref=invoice_ref,
        action=action,
        performed_by=(performed_by or current_actor()).strip()[:120],
        details=details or {},
        success=success,
        error_message=error_message,
        created_at=utc_now_naive(),
    )
    db.add(row)
    db.flush()
    return row


def list_audit_entries(
    db: Session, invoice_ref: str | None = None, limit: int = 100
) -> list[AuditLog]:
    stmt = select(AuditLog)
    if invoice_ref:
        stmt = stmt.where(AuditLog.invoice_ref == invoice_ref)
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
    return db.execute(stmt).scalars().all()


# Clients


def create_client(db: Session, **data) -> Client:
    name = (data.get("name") or "").strip()
    prefix = (data.get("prefix") or "").strip().upper()
    if not name:
        raise ValueError("Client name is required")
    if not prefix:
        raise ValueError("Invoice prefix is required")

    client = Client(
        name=name,
        email=_clean(data.get("email")) or None,
        scheduling_email=_clean(data.get("scheduling_email")) or None,
        accounting_email=_clean(data.get("accounting_email")) or None,
        phone=_clean(data.get("phone")) or None,
        prefix=prefix,
        notes=_clean(data.get("notes")) or None,
    )
    db.add(client)
    db.commit()
    db.refresh(client)
    logger.info("client_created", client_id=client.id, prefix=prefix)
    return client


def get_client(db: Session, client_id: int) -> Client | None:
    return db.get(Client, client_id)


def update_client(db: Session, client_id: int, **updates) -> Client | None:
    client = db.get(Client, client_id)
    if not client:
        return None

    for key, value in updates.items():
        if value is None or not hasattr(client, key):
            continue
        if isinstance(value, str):
            value = value.strip()
        if key == "prefix":
            value = value.upper()
        setattr(client, key, value)

    db.commit()
    db.refresh(client)
    return client


def delete_client(db: Session, client_id: int) -> bool:
    client = db.get(Client, client_id)
    if not client:
        return False
    invoice_count = len(client.invoices)
    # estimates outlive the client and fall back to their prospect details
    for estimate in db.execute(select(Estimate).where(Estimate.client_id == client.id)).scalars():
        estimate.client_id = None
    db.delete(client)
    db.commit()
    logger.info("client_deleted", client_id=client_id, invoices_removed=invoice_count)
    return True


def _client_search_filter(query: str):
    pattern = f"%{(query or '').strip().lower()}%"
    return or_(
        func.lower(Client.name).like(pattern),
        func.lower(func.coalesce(Client.email, "")).like(pattern),
        func.lower(func.coalesce(Client.phone, "")).like(pattern),
        func.lower(func.coalesce(Client.notes, "")).like(pattern),
    )


def list_filtered_clients(
    db: Session, query: str = "", page: int = 1, sort: str = "asc"
) -> list[Client]:
    per_page = settings.ITEMS_PER_PAGE
    offset = (max(1, page) - 1) * per_page
    order = Client.name.desc() if sort == "desc" else Client.name.asc()
    stmt = (
        select(Client)
        .where(_client_search_filter(query))
        .order_by(order, Client.id.asc())
        .offset(offset)
        .limit(per_page)
    )
    return db.execute(stmt).scalars().all()


def count_client_pages(db: Session, query: str = "") -> int:
    total = db.execute(
        select(func.count(Client.id)).where(_client_search_filter(query))
    ).scalar_one()
    return -(-int(total) // settings.ITEMS_PER_PAGE)


# Invoices


def _next_invoice_number(db: Session, prefix: str) -> str:
    rows = db.execute(
        select(Invoice.invoice_number).where(Invoice.invoice_number.like(f"{prefix}-%"))
    ).scalars()
    highest = -1
    for number in rows:
        match = _INVOICE_NUMBER_RE.match(number)
        if match and match.group("prefix") == prefix:
            highest = max(highest, int(match.group("number")))
    return f"{prefix}-{highest + 1:03d}"


def create_invoice(
    db: Session,
    *,
    client_id: int,
    job_title: str,
    date_issued: date,
    frequency: int,
    location: str,
    items: list[dict],
    notes: str | None = None,
    performed_by: str | None = None,
    commit: bool = True,
) -> Invoice:
    client = db.get(Client, client_id)
    if not client:
        raise ValueError("Client not found")

    date_due = calculate_due_date(date_issued, frequency)
    if date_due is None:
        raise ValueError("Frequency must be between 1 and 12 services per year")

    cleaned_items = _clean_items(items)
    invoice = Invoice(
        invoice_number=_next_invoice_number(db, client.prefix),
        client_id=client.id,
        job_title=job_title.strip(),
        date_issued=date_issued,
        date_due=date_due,
        frequency=frequency,
        location=location.strip(),
        notes=_clean(notes) or None,
        status="pending",
        items=[InvoiceItem(position=idx, **item) for idx, item in enumerate(cleaned_items)],
    )
    db.add(invoice)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise ValueError("Invoice number already taken, retry") from None

    write_audit(
        db,
        "invoice_created",
        invoice_ref=invoice.invoice_number,
        performed_by=performed_by,
        details={
            "new_value": {
                "invoice_number": invoice.invoice_number,
                "job_title": invoice.job_title,
                "client_id": client.id,
            },
            "reason": "Invoice created",
        },
    )
    if commit:
        db.commit()
        db.refresh(invoice)
    logger.info("invoice_created", invoice_number=invoice.invoice_number, client_id=client.id)
    return invoice


def get_invoice(db: Session, invoice_id: int) -> Invoice | None:
    return db.get(Invoice, invoice_id)


def update_invoice(db: Session, invoice_id: int, **updates) -> Invoice | None:
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        return None

    previous_issued = invoice.date_issued
    previous_title = invoice.job_title

    for key in ("job_title", "location", "notes"):
        if updates.get(key) is not None:
            setattr(invoice, key, updates[key].strip())
    if updates.get("frequency") is not None:
        invoice.frequency = int(updates["frequency"])
    if updates.get("date_issued") is not None:
        invoice.date_issued = updates["date_issued"]
    if updates.get("items") is not None:
        invoice.items = [
            InvoiceItem(position=idx, **item)
            for idx, item in enumerate(_clean_items(updates["items"]))
        ]

    job_due_update: dict = {}
    if invoice.date_issued != previous_issued:
        date_due = calculate_due_date(invoice.date_issued, invoice.frequency)
        if date_due is None:
            raise ValueError("Frequency must be between 1 and 12 services per year")
        invoice.date_due = date_due
        job_due_update["date_due"] = date_due
    if invoice.job_title != previous_title:
        job_due_update["job_title"] = invoice.job_title

    if job_due_update and invoice.job_due is not None:
        for key, value in job_due_update.items():
            setattr(invoice.job_due, key, value)

    db.commit()
    db.refresh(invoice)
    return invoice


def update_invoice_status(
    db: Session,
    invoice_id: int,
    status: str,
    *,
    payment_method: str | None = None,
    date_paid: date | None = None,
    payment_notes: str | None = None,
) -> Invoice | None:
    target = (status or "").strip().lower()
    if target not in INVOICE_STATUSES:
        raise ValueError("Invalid invoice status")
    if payment_method is not None and payment_method not in PAYMENT_METHODS:
        raise ValueError("Invalid payment method")

    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        return None

    old_status = invoice.status
    invoice.status = target
    if payment_method is not None:
        invoice.payment_method = payment_method
    if date_paid is not None:
        invoice.date_paid = date_paid
    if payment_notes is not None:
        invoice.payment_notes = payment_notes.strip()

    if old_status != target:
        write_audit(
            db,
            "payment_status_changed",
            invoice_ref=invoice.invoice_number,
            details={"old_value": old_status, "new_value": target},
        )
    db.commit()
    db.refresh(invoice)
    return invoice


def delete_invoice(db: Session, invoice_id: int) -> bool:
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        return False
    for estimate in db.execute(
        select(Estimate).where(Estimate.converted_invoice_id == invoice.id)
    ).scalars():
        estimate.converted_invoice_id = None
    db.delete(invoice)
    db.commit()
    return True


def _invoice_search_filter(query: str, status_filter: str | None):
    pattern = f"%{(query or '').strip().lower()}%"
    conditions = [
        or_(
            func.lower(Invoice.invoice_number).like(pattern),
            func.lower(Invoice.job_title).like(pattern),
        )
    ]
    if status_filter == "pending":
        conditions.append(Invoice.status == "pending")
    return conditions


def list_filtered_invoices(
    db: Session,
    query: str = "",
    page: int = 1,
    status_filter: str | None = None,
    sort: str | None = None,
) -> list[Invoice]:
    per_page = settings.ITEMS_PER_PAGE
    offset = (max(1, page) - 1) * per_page
    if sort == "date_issued_asc":
        order = (Invoice.date_issued.asc(),)
    elif sort == "date_issued_desc":
        order = (Invoice.date_issued.desc(),)
    else:
        order = (Invoice.invoice_number.asc(), Invoice.job_title.asc())
    stmt = (
        select(Invoice)
        .where(*_invoice_search_filter(query, status_filter))
        .order_by(*order, Invoice.id.asc())
        .offset(offset)
        .limit(per_page)
    )
    return db.execute(stmt).scalars().all()


def count_invoice_pages(db: Session, query: str = "", status_filter: str | None = None) -> int:
    total = db.execute(
        select(func.count(Invoice.id)).where(*_invoice_search_filter(query, status_filter))
    ).scalar_one()
    return -(-int(total) // settings.ITEMS_PER_PAGE)


def list_client_invoices(db: Session, client_id: int) -> list[Invoice]:
    stmt = (
        select(Invoice)
        .where(Invoice.client_id == client_id)
        .order_by(Invoice.date_issued.desc(), Invoice.id.desc())
    )
    return db.execute(stmt).scalars().all()


def list_schedulable_invoices(db: Session) -> list[Invoice]:
    stmt = (
        select(Invoice)
        .where(Invoice.status.in_(("pending", "overdue")))
        .order_by(Invoice.date_issued.desc(), Invoice.id.desc())
    )
    return db.execute(stmt).scalars().all()


def mark_overdue_invoices(db: Session, now: datetime | None = None) -> list[str]:
    current = now or business_now_naive()
    cutoff = current - timedelta(days=settings.INVOICE_OVERDUE_AFTER_DAYS)
    # Issue dates count from midnight.
    if cutoff.time() == time.min:
        issued_before = Invoice.date_issued < cutoff.date()
    else:
        issued_before = Invoice.date_issued <= cutoff.date()

    invoices = db.execute(
        select(Invoice).where(Invoice.status == "pending", issued_before)
    ).scalars().all()
    if not invoices:
        return []

    numbers = []
    for invoice in invoices:
        invoice.status = "overdue"
        numbers.append(invoice.invoice_number)

    write_audit(
        db,
        "system_update_overdue",
        performed_by="system_cron",
        details={
            "count": len(numbers),
            "invoice_numbers": numbers,
            "reason": "Auto-update of overdue invoices",
        },
    )
    db.commit()
    logger.info("invoices_marked_overdue", count=len(numbers))
    return numbers


def sync_invoice_date_issued(
    db: Session,
    invoice_id: int,
    date_issued: date,
    *,
    job_title: str | None = None,
    frequency: int | None = None,
    commit: bool = True,
) -> Invoice | None:
    """Move an invoice's billing cycle to a new issue date.

    Used when a job is rescheduled: the issue date becomes the service date,
    the due date is recomputed from the (optionally overridden) frequency and
    both are mirrored onto the jobs-due record.
    """
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        return None

    effective_frequency = frequency if frequency is not None else invoice.frequency
    invoice.date_issued = date_issued
    date_due = calculate_due_date(date_issued, effective_frequency)
    if date_due is not None:
        invoice.date_due = date_due

    job_due = invoice.job_due
    if job_due is not None:
        if date_due is not None:
            job_due.date_due = date_due
        if job_title:
            job_due.job_title = job_title.strip()

    if commit:
        db.commit()
        db.refresh(invoice)
    return invoice


def _add_call_log(db: Session, invoice: Invoice, kind: str, call: dict) -> CallLogEntry:
    outcome = (call.get("outcome") or "").strip().lower()
    if outcome not in CALL_OUTCOMES:
        raise ValueError("Invalid call outcome")
    entry = CallLogEntry(
        invoice_id=invoice.id,
        kind=kind,
        caller_id=call["caller_id"].strip(),
        caller_name=call["caller_name"].strip(),
        created_at=call.get("timestamp") or utc_now_naive(),
        outcome=outcome,
        notes=(call.get("notes") or "").strip(),
        follow_up_date=call.get("follow_up_date"),
        duration_min=call.get("duration_min"),
    )
    db.add(entry)
    db.flush()
    return entry


def log_invoice_payment_call(db: Session, invoice_id: int, call: dict) -> CallLogEntry | None:
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        return None
    entry = _add_call_log(db, invoice, "payment", call)
    write_audit(
        db,
        "call_logged_payment",
        invoice_ref=invoice.invoice_number,
        performed_by=entry.caller_name,
        details={
            "new_value": {"outcome": entry.outcome, "notes": entry.notes},
            "reason": "Payment call logged",
            "metadata": {"client_id": invoice.client_id},
        },
    )
    db.commit()
    db.refresh(entry)
    return entry


def list_call_logs(db: Session, invoice_id: int, kind: str | None = None) -> list[CallLogEntry]:
    stmt = select(CallLogEntry).where(CallLogEntry.invoice_id == invoice_id)
    if kind:
        stmt = stmt.where(CallLogEntry.kind == kind)
    return db.execute(stmt.order_by(CallLogEntry.created_at.asc(), CallLogEntry.id.asc())).scalars().all()


# Jobs due


def _month_bounds(year: int, month: int) -> tuple[date, date]:
    if month < 1 or month > 12:
        raise ValueError("Month must be between 1 and 12")
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end


def refresh_jobs_due(db: Session, year: int, month: int) -> list[dict]:
    start, end = _month_bounds(year, month)
    due_invoices = db.execute(
        select(Invoice)
        .join(Client, Client.id == Invoice.client_id)
        .where(
            Invoice.date_due >= start,
            Invoice.date_due < end,
            Client.is_archived.is_(False),
        )
    ).scalars().all()

    created = 0
    for invoice in due_invoices:
        if invoice.job_due is None:
            db.add(
                JobDueSoon(
                    invoice_id=invoice.id,
                    client_id=invoice.client_id,
                    job_title=invoice.job_title,
                    date_due=invoice.date_due,
                    is_scheduled=False,
                    email_sent=False,
                )
            )
            created += 1
    if created:
        db.commit()
        logger.info("jobs_due_created", year=year, month=month, created=created)

    rows = db.execute(
        select(JobDueSoon)
        .join(Client, Client.id == JobDueSoon.client_id)
        .where(
            JobDueSoon.date_due >= start,
            JobDueSoon.date_due < end,
            Client.is_archived.is_(False),
        )
        .order_by(JobDueSoon.date_due.asc(), JobDueSoon.id.asc())
    ).scalars().all()

    out = []
    for job in rows:
        out.append(
            {
                "id": job.id,
                "invoice_id": job.invoice_id,
                "invoice_number": job.invoice.invoice_number,
                "client_id": job.client_id,
                "job_title": job.job_title,
                "date_due": job.date_due,
                "is_scheduled": bool(job.is_scheduled),
                "email_sent": bool(job.email_sent),
                "email_exists": bool(job.client.email or job.client.scheduling_email),
                "notes_exists": bool((job.invoice.notes or "").strip()),
                "call_history": list_call_logs(db, job.invoice_id, kind="job"),
            }
        )
    return out


def mark_invoice_scheduled(db: Session, invoice_id: int, *, commit: bool = True) -> bool:
    job = db.execute(
        select(JobDueSoon).where(JobDueSoon.invoice_id == invoice_id)
    ).scalar_one_or_none()
    if not job:
        return False
    job.is_scheduled = True
    if commit:
        db.commit()
    return True


def log_job_call(db: Session, invoice_id: int, call: dict) -> CallLogEntry | None:
    job = db.execute(
        select(JobDueSoon).where(JobDueSoon.invoice_id == invoice_id)
    ).scalar_one_or_none()
    if not job:
        return None
    entry = _add_call_log(db, job.invoice, "job", call)
    write_audit(
        db,
        "call_logged_job",
        invoice_ref=job.invoice.invoice_number,
        performed_by=entry.caller_name,
        details={
            "new_value": {"outcome": entry.outcome, "notes": entry.notes},
            "reason": "Job call logged",
            "metadata": {"client_id": job.client_id, "job_title": job.job_title},
        },
    )
    db.commit()
    db.refresh(entry)
    return entry


# Estimates


def generate_estimate_number(db: Session, year: int | None = None) -> str:
    current_year = year or utc_now_naive().year
    prefix = f"EST-{current_year}-"
    numbers = db.execute(
        select(Estimate.estimate_number).where(Estimate.estimate_number.like(f"{prefix}%"))
    ).scalars()
    highest = None
    for number in numbers:
        tail = number[len(prefix):]
        if tail.isdigit():
            highest = int(tail) if highest is None else max(highest, int(tail))
    next_number = ESTIMATE_FIRST_NUMBER if highest is None else highest + 1
    return f"{prefix}{next_number}"


def _apply_estimate_items(estimate: Estimate, items: list[dict]) -> None:
    estimate.items = [
        EstimateItem(position=idx, **item) for idx, item in enumerate(_clean_items(items))
    ]
    subtotal = items_subtotal(estimate.items)
    gst = gst_for(subtotal)
    estimate.subtotal = subtotal
    estimate.gst = gst
    estimate.total = round(subtotal + gst, 2)


_ESTIMATE_TEXT_FIELDS = (
    "prospect_business_name",
    "prospect_contact_person",
    "prospect_email",
    "prospect_phone",
    "prospect_address",
    "project_location",
    "terms",
    "notes",
)


def create_estimate(db: Session, **data) -> Estimate:
    status = (data.get("status") or "draft").strip().lower()
    if status not in ESTIMATE_STATUSES:
        raise ValueError("Invalid estimate status")
    client_id = data.get("client_id") or None
    if client_id is not None and db.get(Client, client_id) is None:
        raise ValueError("Client not found")
    if client_id is None and not (data.get("prospect_business_name") or "").strip():
        raise ValueError("A client or a prospect business name is required")

    estimate = Estimate(
        estimate_number=generate_estimate_number(db),
        client_id=client_id,
        status=status,
        services=list(data.get("services") or []),
        created_at=utc_now_naive(),
    )
    for key in _ESTIMATE_TEXT_FIELDS:
        setattr(estimate, key, _clean(data.get(key)) or None)
    _apply_estimate_items(estimate, data.get("items") or [])

    db.add(estimate)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValueError("Estimate number already taken, retry") from None
    db.refresh(estimate)
    logger.info("estimate_created", estimate_number=estimate.estimate_number)
    return estimate


def get_estimate(db: Session, estimate_id: int) -> Estimate | None:
    return db.get(Estimate, estimate_id)


def update_estimate(db: Session, estimate_id: int, **updates) -> Estimate | None:
    estimate = db.get(Estimate, estimate_id)
    if not estimate:
        return None

    if "client_id" in updates:
        client_id = updates["client_id"] or None
        if client_id is not None and db.get(Client, client_id) is None:
            raise ValueError("Client not found")
        estimate.client_id = client_id
    if updates.get("status") is not None:
        status = updates["status"].strip().lower()
        if status not in ESTIMATE_STATUSES:
            raise ValueError("Invalid estimate status")
        estimate.status = status
    if updates.get("services") is not None:
        estimate.services = list(updates["services"])
    for key in _ESTIMATE_TEXT_FIELDS:
        if updates.get(key) is not None:
            setattr(estimate, key, updates[key].strip())
    if updates.get("items") is not None:
        _apply_estimate_items(estimate, updates["items"])

    db.commit()
    db.refresh(estimate)
    return estimate


def delete_estimate(db: Session, estimate_id: int) -> bool:
    estimate = db.get(Estimate, estimate_id)
    if not estimate:
        return False
    db.delete(estimate)
    db.commit()
    return True


def list_filtered_estimates(
    db: Session,
    query: str = "",
    status: str | None = None,
    page: int = 1,
    date_from: date | None = None,
    date_to: date | None = None,
) -> tuple[list[Estimate], int]:
    conditions = []
    normalized = (query or "").strip().lower()
    if normalized:
        pattern = f"%{normalized}%"
        conditions.append(
            or_(
                func.lower(Estimate.estimate_number).like(pattern),
                func.lower(func.coalesce(Estimate.prospect_business_name, "")).like(pattern),
                func.lower(func.coalesce(Estimate.prospect_contact_person, "")).like(pattern),
                func.lower(func.coalesce(Estimate.project_location, "")).like(pattern),
            )
        )
    if status:
        conditions.append(Estimate.status == status)
    if date_from:
        conditions.append(Estimate.created_at >= datetime.combine(date_from, datetime.min.time()))
    if date_to:
        conditions.append(
            Estimate.created_at < datetime.combine(date_to + timedelta(days=1), datetime.min.time())
        )

    per_page = settings.ESTIMATES_PER_PAGE
    total = db.execute(select(func.count(Estimate.id)).where(*conditions)).scalar_one()
    rows = db.execute(
        select(Estimate)
        .where(*conditions)
        .order_by(Estimate.created_at.desc(), Estimate.id.desc())
        .offset((max(1, page) - 1) * per_page)
        .limit(per_page)
    ).scalars().all()
    return rows, -(-int(total) // per_page)


def convert_estimate_to_invoice(
    db: Session,
    estimate_id: int,
    *,
    date_issued: date,
    frequency: int,
    client_id: int | None = None,
    job_title: str | None = None,
    location: str | None = None,
) -> Invoice | None:
    estimate = db.get(Estimate, estimate_id)
    if not estimate:
        return None
    if estimate.converted_invoice_id is not None:
        raise ValueError("Estimate already converted to an invoice")

    target_client_id = client_id or estimate.client_id
    if target_client_id is None:
        raise ValueError("A client is required to convert an estimate")

    title = (job_title or estimate.prospect_business_name or estimate.estimate_number).strip()
    target_location = (location or estimate.project_location or estimate.prospect_address or "").strip()
    if not target_location:
        raise ValueError("A job location is required to convert an estimate")

    invoice = create_invoice(
        db,
        client_id=target_client_id,
        job_title=title,
        date_issued=date_issued,
        frequency=frequency,
        location=target_location,
        items=[
            {"description": i.description, "details": i.details, "price": float(i.price)}
            for i in estimate.items
        ],
        notes=estimate.notes,
        commit=False,
    )
    estimate.client_id = target_client_id
    estimate.converted_invoice_id = invoice.id
    estimate.status = "approved"
    db.commit()
    db.refresh(estimate)
    logger.info(
        "estimate_converted",
        estimate_number=estimate.estimate_number,
        invoice_number=invoice.invoice_number,
    )
    return invoice
