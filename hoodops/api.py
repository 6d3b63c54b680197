from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from .db import get_db
from .models import CallLogEntry, Client, Estimate, Invoice
from .schemas import (
    AuditEntryOut,
    CallLogCreate,
    CallLogOut,
    ClientCreate,
    ClientOut,
    ClientPage,
    ClientUpdate,
    EstimateConvert,
    EstimateCreate,
    EstimateOut,
    EstimatePage,
    EstimateUpdate,
    InvoiceCreate,
    InvoiceDateSync,
    InvoiceOut,
    InvoicePage,
    InvoiceStatusUpdate,
    InvoiceUpdate,
    JobDueOut,
    LineItemOut,
    OverdueRunOut,
)
from .services import (
    convert_estimate_to_invoice,
    count_client_pages,
    count_invoice_pages,
    create_client,
    create_estimate,
    create_invoice,
    delete_client,
    delete_estimate,
    delete_invoice,
    format_phone_number,
    get_client,
    get_estimate,
    get_invoice,
    gst_for,
    items_subtotal,
    list_audit_entries,
    list_call_logs,
    list_client_invoices,
    list_filtered_clients,
    list_filtered_estimates,
    list_filtered_invoices,
    list_schedulable_invoices,
    log_invoice_payment_call,
    log_job_call,
    mark_invoice_scheduled,
    mark_overdue_invoices,
    refresh_jobs_due,
    sync_invoice_date_issued,
    update_client,
    update_estimate,
    update_invoice,
    update_invoice_status,
)

router = APIRouter(prefix="/api")


def _to_client_out(c: Client) -> ClientOut:
    return ClientOut(
        id=c.id,
        name=c.name,
        prefix=c.prefix,
        email=c.email,
        scheduling_email=c.scheduling_email,
        accounting_email=c.accounting_email,
        phone=c.phone,
        phone_display=format_phone_number(c.phone),
        notes=c.notes,
        is_archived=bool(c.is_archived),
        created_at=c.created_at,
    )


def _to_items_out(items) -> list[LineItemOut]:
    return [
        LineItemOut(description=i.description, details=i.details, price=float(i.price or 0))
        for i in items
    ]


def _to_invoice_out(inv: Invoice) -> InvoiceOut:
    subtotal = items_subtotal(inv.items)
    gst = gst_for(subtotal)
    return InvoiceOut(
        id=inv.id,
        invoice_number=inv.invoice_number,
        client_id=inv.client_id,
        client_name=inv.client.name,
        job_title=inv.job_title,
        date_issued=inv.date_issued,
        date_due=inv.date_due,
        frequency=inv.frequency,
        location=inv.location,
        notes=inv.notes,
        status=inv.status,
        payment_method=inv.payment_method,
        date_paid=inv.date_paid,
        payment_notes=inv.payment_notes,
        items=_to_items_out(inv.items),
        subtotal=subtotal,
        gst=gst,
        total=round(subtotal + gst, 2),
    )


def _to_call_log_out(entry: CallLogEntry) -> CallLogOut:
    return CallLogOut(
        id=entry.id,
        invoice_id=entry.invoice_id,
        kind=entry.kind,
        caller_id=entry.caller_id,
        caller_name=entry.caller_name,
        created_at=entry.created_at,
        outcome=entry.outcome,
        notes=entry.notes,
        follow_up_date=entry.follow_up_date,
        duration_min=entry.duration_min,
    )


def _to_estimate_out(e: Estimate) -> EstimateOut:
    return EstimateOut(
        id=e.id,
        estimate_number=e.estimate_number,
        client_id=e.client_id,
        prospect_business_name=e.prospect_business_name,
        prospect_contact_person=e.prospect_contact_person,
        prospect_email=e.prospect_email,
        prospect_phone=e.prospect_phone,
        prospect_address=e.prospect_address,
        project_location=e.project_location,
        status=e.status,
        created_at=e.created_at,
        services=list(e.services or []),
        terms=e.terms,
        notes=e.notes,
        items=_to_items_out(e.items),
        subtotal=float(e.subtotal or 0),
        gst=float(e.gst or 0),
        total=float(e.total or 0),
        converted_invoice_id=e.converted_invoice_id,
    )


def _items_payload(items) -> list[dict]:
    return [item.model_dump() for item in items]


# Clients


@router.post("/clients", response_model=ClientOut, status_code=status.HTTP_201_CREATED)
def add_client(payload: ClientCreate, db: Session = Depends(get_db)):
    try:
        client = create_client(db, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _to_client_out(client)


@router.get("/clients", response_model=ClientPage)
def list_clients(
    query: str = Query(default=""),
    page: int = Query(default=1, ge=1),
    sort: str = Query(default="asc", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
):
    rows = list_filtered_clients(db, query=query, page=page, sort=sort)
    return ClientPage(
        items=[_to_client_out(c) for c in rows],
        page=page,
        total_pages=count_client_pages(db, query=query),
    )


@router.get("/clients/{client_id}", response_model=ClientOut)
def read_client(client_id: int, db: Session = Depends(get_db)):
    client = get_client(db, client_id)
    if not client:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return _to_client_out(client)


@router.patch("/clients/{client_id}", response_model=ClientOut)
def patch_client(client_id: int, payload: ClientUpdate, db: Session = Depends(get_db)):
    client = update_client(db, client_id, **payload.model_dump(exclude_unset=True))
    if not client:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return _to_client_out(client)


@router.delete("/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_client(client_id: int, db: Session = Depends(get_db)):
    ok = delete_client(db, client_id)
    if not ok:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/clients/{client_id}/invoices", response_model=List[InvoiceOut])
def client_invoices(client_id: int, db: Session = Depends(get_db)):
    if not get_client(db, client_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return [_to_invoice_out(inv) for inv in list_client_invoices(db, client_id)]


# Invoices


@router.post("/invoices", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def add_invoice(payload: InvoiceCreate, db: Session = Depends(get_db)):
    try:
        invoice = create_invoice(
            db,
            client_id=payload.client_id,
            job_title=payload.job_title,
            date_issued=payload.date_issued,
            frequency=payload.frequency,
            location=payload.location,
            items=_items_payload(payload.items),
            notes=payload.notes,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _to_invoice_out(invoice)


@router.get("/invoices", response_model=InvoicePage)
def list_invoices(
    query: str = Query(default=""),
    page: int = Query(default=1, ge=1),
    status_filter: Optional[str] = Query(default=None, alias="filter", pattern="^pending$"),
    sort: Optional[str] = Query(default=None, pattern="^(date_issued_asc|date_issued_desc)$"),
    db: Session = Depends(get_db),
):
    rows = list_filtered_invoices(db, query=query, page=page, status_filter=status_filter, sort=sort)
    return InvoicePage(
        items=[_to_invoice_out(inv) for inv in rows],
        page=page,
        total_pages=count_invoice_pages(db, query=query, status_filter=status_filter),
    )


@router.get("/invoices/schedulable", response_model=List[InvoiceOut])
def schedulable_invoices(db: Session = Depends(get_db)):
    return [_to_invoice_out(inv) for inv in list_schedulable_invoices(db)]


@router.post("/invoices/mark-overdue", response_model=OverdueRunOut)
def run_mark_overdue(db: Session = Depends(get_db)):
    numbers = mark_overdue_invoices(db)
    return OverdueRunOut(updated=len(numbers), invoice_numbers=numbers)


@router.get("/invoices/{invoice_id}", response_model=InvoiceOut)
def read_invoice(invoice_id: int, db: Session = Depends(get_db)):
    invoice = get_invoice(db, invoice_id)
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return _to_invoice_out(invoice)


@router.patch("/invoices/{invoice_id}", response_model=InvoiceOut)
def patch_invoice(invoice_id: int, payload: InvoiceUpdate, db: Session = Depends(get_db)):
    updates = payload.model_dump(exclude_unset=True)
    if payload.items is not None:
        updates["items"] = _items_payload(payload.items)
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        invoice = update_invoice(db, invoice_id, **updates)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return _to_invoice_out(invoice)


@router.patch("/invoices/{invoice_id}/status", response_model=InvoiceOut)
def patch_invoice_status(
    invoice_id: int, payload: InvoiceStatusUpdate, db: Session = Depends(get_db)
):
    try:
        invoice = update_invoice_status(
            db,
            invoice_id,
            payload.status,
            payment_method=payload.payment_method,
            date_paid=payload.date_paid,
            payment_notes=payload.payment_notes,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return _to_invoice_out(invoice)


@router.post("/invoices/{invoice_id}/sync-date", response_model=InvoiceOut)
def sync_invoice_date(invoice_id: int, payload: InvoiceDateSync, db: Session = Depends(get_db)):
    invoice = sync_invoice_date_issued(
        db,
        invoice_id,
        payload.date_issued,
        job_title=payload.job_title,
        frequency=payload.frequency,
    )
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return _to_invoice_out(invoice)


@router.delete("/invoices/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_invoice(invoice_id: int, db: Session = Depends(get_db)):
    ok = delete_invoice(db, invoice_id)
    if not ok:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/invoices/{invoice_id}/payment-calls", response_model=CallLogOut)
def add_payment_call(invoice_id: int, payload: CallLogCreate, db: Session = Depends(get_db)):
    try:
        entry = log_invoice_payment_call(db, invoice_id, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not entry:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return _to_call_log_out(entry)


@router.get("/invoices/{invoice_id}/calls", response_model=List[CallLogOut])
def invoice_calls(
    invoice_id: int,
    kind: Optional[str] = Query(default=None, pattern="^(payment|job)$"),
    db: Session = Depends(get_db),
):
    if not get_invoice(db, invoice_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return [_to_call_log_out(e) for e in list_call_logs(db, invoice_id, kind=kind)]


@router.get("/audit", response_model=List[AuditEntryOut])
def audit_entries(
    invoice_ref: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return [
        AuditEntryOut(
            id=row.id,
            invoice_ref=row.invoice_ref,
            action=row.action,
            created_at=row.created_at,
            performed_by=row.performed_by,
            details=row.details or {},
            success=bool(row.success),
            error_message=row.error_message,
        )
        for row in list_audit_entries(db, invoice_ref=invoice_ref, limit=limit)
    ]


# Jobs due


@router.get("/jobs-due", response_model=List[JobDueOut])
def jobs_due(
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    db: Session = Depends(get_db),
):
    rows = refresh_jobs_due(db, year, month)
    out = []
    for row in rows:
        row["call_history"] = [_to_call_log_out(e) for e in row["call_history"]]
        out.append(JobDueOut(**row))
    return out


@router.post("/jobs-due/{invoice_id}/scheduled", status_code=status.HTTP_204_NO_CONTENT)
def mark_job_scheduled(invoice_id: int, db: Session = Depends(get_db)):
    ok = mark_invoice_scheduled(db, invoice_id)
    if not ok:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job due not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/jobs-due/{invoice_id}/calls", response_model=CallLogOut)
def add_job_call(invoice_id: int, payload: CallLogCreate, db: Session = Depends(get_db)):
    try:
        entry = log_job_call(db, invoice_id, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not entry:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job due not found")
    return _to_call_log_out(entry)


# Estimates


@router.post("/estimates", response_model=EstimateOut, status_code=status.HTTP_201_CREATED)
def add_estimate(payload: EstimateCreate, db: Session = Depends(get_db)):
    data = payload.model_dump()
    data["items"] = _items_payload(payload.items)
    try:
        estimate = create_estimate(db, **data)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _to_estimate_out(estimate)


@router.get("/estimates", response_model=EstimatePage)
def list_estimates(
    query: str = Query(default=""),
    status_filter: Optional[str] = Query(
        default=None, alias="status", pattern="^(draft|sent|approved|rejected)$"
    ),
    page: int = Query(default=1, ge=1),
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
):
    rows, total_pages = list_filtered_estimates(
        db,
        query=query,
        status=status_filter,
        page=page,
        date_from=date_from,
        date_to=date_to,
    )
    return EstimatePage(
        items=[_to_estimate_out(e) for e in rows],
        page=page,
        total_pages=total_pages,
    )


@router.get("/estimates/{estimate_id}", response_model=EstimateOut)
def read_estimate(estimate_id: int, db: Session = Depends(get_db)):
    estimate = get_estimate(db, estimate_id)
    if not estimate:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Estimate not found")
    return _to_estimate_out(estimate)


@router.patch("/estimates/{estimate_id}", response_model=EstimateOut)
def patch_estimate(estimate_id: int, payload: EstimateUpdate, db: Session = Depends(get_db)):
    updates = payload.model_dump(exclude_unset=True)
    if payload.items is not None:
        updates["items"] = _items_payload(payload.items)
    try:
        estimate = update_estimate(db, estimate_id, **updates)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not estimate:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Estimate not found")
    return _to_estimate_out(estimate)


@router.delete("/estimates/{estimate_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_estimate(estimate_id: int, db: Session = Depends(get_db)):
    ok = delete_estimate(db, estimate_id)
    if not ok:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Estimate not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/estimates/{estimate_id}/convert", response_model=InvoiceOut)
def convert_estimate(estimate_id: int, payload: EstimateConvert, db: Session = Depends(get_db)):
    try:
        invoice = convert_estimate_to_invoice(
            db,
            estimate_id,
            date_issued=payload.date_issued,
            frequency=payload.frequency,
            client_id=payload.client_id,
            job_title=payload.job_title,
            location=payload.location,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Estimate not found")
    return _to_invoice_out(invoice)
