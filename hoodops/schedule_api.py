from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from .calendar_views import day_view, job_payload, month_weeks, week_view
from .csv_export import export_payroll_csv
from .db import get_db
from .models import Availability, PayrollPeriod, Report, Schedule, Technician, TimeOffRequest
from .payroll import drive_metrics, payroll_breakdown, select_payroll_period
from .scheduling import (
    create_or_update_report,
    create_schedule,
    delete_job,
    duration_confidence,
    find_or_create_payroll_period,
    get_report_by_schedule,
    get_schedule,
    invoice_total,
    list_payroll_periods,
    list_payroll_periods_for_technician,
    list_schedules,
    list_schedules_for_period,
    list_schedules_for_technician,
    set_confirmed,
    update_actual_service_minutes,
    update_dead_run,
    update_job,
    update_shift_hours,
)
from .schemas import (
    ActualServiceUpdate,
    AvailabilityCheckOut,
    AvailabilityCreate,
    AvailabilityOut,
    ConfirmedUpdate,
    DayViewOut,
    DeadRunUpdate,
    DriveMetricsOut,
    DurationConfidenceOut,
    MonthGridOut,
    PayrollBreakdownOut,
    PayrollPeriodOut,
    PayrollPeriodResolve,
    PendingCountOut,
    ReportOut,
    ReportUpsert,
    ScheduleCreate,
    ScheduleOut,
    ScheduleUpdate,
    ShiftHoursUpdate,
    TechnicianCreate,
    TechnicianOut,
    TechnicianUpdate,
    TimeOffCreate,
    TimeOffDecision,
    TimeOffOut,
    TravelImportIn,
    TravelImportOut,
    TravelPurgeOut,
    TravelSummaryOut,
    WeekViewOut,
)
from .team import (
    create_availability,
    create_technician,
    create_time_off_request,
    deactivate_technician,
    delete_availability,
    get_technician,
    list_availability,
    list_availability_for_day,
    list_technicians,
    list_time_off_requests,
    pending_time_off_count,
    review_time_off_request,
    unavailability_info,
    update_technician,
)
from .travel_time import day_travel_summary, import_estimates, purge_expired_estimates

router = APIRouter(prefix="/api")
MANAGER_ROLES = {"owner", "manager"}


def _require_role(role: Optional[str], allowed_roles: set[str]) -> None:
    if (role or "").strip().lower() not in allowed_roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden role")


def _to_technician_out(t: Technician) -> TechnicianOut:
    return TechnicianOut(
        id=t.id,
        name=t.name,
        email=t.email,
        hourly_rate=float(t.hourly_rate) if t.hourly_rate is not None else None,
        depot_address=t.depot_address,
        include_in_payroll=bool(t.include_in_payroll),
        is_active=bool(t.is_active),
    )


def _to_availability_out(b: Availability) -> AvailabilityOut:
    return AvailabilityOut(
        id=b.id,
        technician_id=b.technician_id,
        day_of_week=b.day_of_week,
        specific_date=b.specific_date,
        start_time=b.start_time,
        end_time=b.end_time,
        is_full_day=bool(b.is_full_day),
        is_recurring=bool(b.is_recurring),
    )


def _to_time_off_out(r: TimeOffRequest) -> TimeOffOut:
    return TimeOffOut(
        id=r.id,
        technician_id=r.technician_id,
        technician_name=r.technician.name,
        start_date=r.start_date,
        end_date=r.end_date,
        reason=r.reason,
        status=r.status,
        requested_at=r.requested_at,
        reviewed_at=r.reviewed_at,
        reviewed_by=r.reviewed_by,
        notes=r.notes,
    )


def _to_schedule_out(s: Schedule) -> ScheduleOut:
    return ScheduleOut(**job_payload(s))


def _to_period_out(p: PayrollPeriod) -> PayrollPeriodOut:
    return PayrollPeriodOut(
        id=p.id,
        start_date=p.start_date,
        end_date=p.end_date,
        cutoff_date=p.cutoff_date,
        pay_day=p.pay_day,
    )


def _to_report_out(r: Report) -> ReportOut:
    return ReportOut(
        id=r.id,
        schedule_id=r.schedule_id,
        invoice_id=r.invoice_id,
        technician_id=r.technician_id,
        date_completed=r.date_completed,
        last_service_date=r.last_service_date,
        fuel_type=r.fuel_type,
        cooking_volume=r.cooking_volume,
        cooking_equipment=r.cooking_equipment or {},
        inspection_items=r.inspection_items or {},
        equipment_details=r.equipment_details or {},
        cleaning_details=r.cleaning_details or {},
        recommended_cleaning_frequency=r.recommended_cleaning_frequency,
        comments=r.comments,
        recommendations=r.recommendations,
        updated_at=r.updated_at,
    )


def _resolve_period(db: Session, payroll_period_id: Optional[int]) -> PayrollPeriod:
    period = select_payroll_period(db, payroll_period_id)
    if not period:
        detail = "Payroll period not found" if payroll_period_id is not None else "No payroll periods"
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    return period


# Technicians


@router.post("/technicians", response_model=TechnicianOut, status_code=status.HTTP_201_CREATED)
def add_technician(
    payload: TechnicianCreate,
    x_actor_role: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    _require_role(x_actor_role, MANAGER_ROLES)
    try:
        technician = create_technician(db, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _to_technician_out(technician)


@router.get("/technicians", response_model=List[TechnicianOut])
def technicians(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    return [_to_technician_out(t) for t in list_technicians(db, include_inactive=include_inactive)]


@router.patch("/technicians/{technician_id}", response_model=TechnicianOut)
def patch_technician(
    technician_id: int,
    payload: TechnicianUpdate,
    x_actor_role: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    _require_role(x_actor_role, MANAGER_ROLES)
    try:
        technician = update_technician(db, technician_id, **payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not technician:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Technician not found")
    return _to_technician_out(technician)


@router.delete("/technicians/{technician_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_technician(
    technician_id: int,
    x_actor_role: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    _require_role(x_actor_role, MANAGER_ROLES)
    if not deactivate_technician(db, technician_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Technician not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/technicians/{technician_id}/schedules", response_model=List[ScheduleOut])
def technician_schedules(
    technician_id: int,
    payroll_period_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    if not get_technician(db, technician_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Technician not found")
    rows = list_schedules_for_technician(db, technician_id, payroll_period_id=payroll_period_id)
    return [_to_schedule_out(s) for s in rows]


@router.get("/technicians/{technician_id}/payroll-periods", response_model=List[PayrollPeriodOut])
def technician_payroll_periods(technician_id: int, db: Session = Depends(get_db)):
    if not get_technician(db, technician_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Technician not found")
    return [_to_period_out(p) for p in list_payroll_periods_for_technician(db, technician_id)]


# Availability


@router.post("/availability", response_model=AvailabilityOut, status_code=status.HTTP_201_CREATED)
def add_availability(payload: AvailabilityCreate, db: Session = Depends(get_db)):
    try:
        block = create_availability(
            db,
            payload.technician_id,
            day_of_week=payload.day_of_week,
            specific_date=payload.specific_date,
            start_time=payload.start_time,
            end_time=payload.end_time,
            is_full_day=payload.is_full_day,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _to_availability_out(block)


@router.get("/availability", response_model=List[AvailabilityOut])
def availability(
    technician_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    return [_to_availability_out(b) for b in list_availability(db, technician_id=technician_id)]


@router.get("/availability/check", response_model=AvailabilityCheckOut)
def check_availability(
    technician_id: int,
    day: date,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
):
    info = unavailability_info(list_availability_for_day(db, day), technician_id, day, start, end)
    return AvailabilityCheckOut(technician_id=technician_id, day=day, **info)


@router.delete("/availability/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_availability(block_id: int, db: Session = Depends(get_db)):
    if not delete_availability(db, block_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Availability block not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Time off


@router.post("/time-off", response_model=TimeOffOut, status_code=status.HTTP_201_CREATED)
def add_time_off(payload: TimeOffCreate, db: Session = Depends(get_db)):
    try:
        request = create_time_off_request(
            db,
            payload.technician_id,
            payload.start_date,
            payload.end_date,
            payload.reason,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _to_time_off_out(request)


@router.get("/time-off", response_model=List[TimeOffOut])
def time_off_requests(
    status_filter: Optional[str] = Query(default=None, alias="status", pattern="^(pending|approved|rejected)$"),
    technician_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    rows = list_time_off_requests(db, status=status_filter, technician_id=technician_id)
    return [_to_time_off_out(r) for r in rows]


@router.get("/time-off/pending-count", response_model=PendingCountOut)
def time_off_pending_count(db: Session = Depends(get_db)):
    return PendingCountOut(pending=pending_time_off_count(db))


@router.patch("/time-off/{request_id}", response_model=TimeOffOut)
def review_time_off(
    request_id: int,
    payload: TimeOffDecision,
    x_actor_role: Optional[str] = Header(default=None),
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    _require_role(x_actor_role, MANAGER_ROLES)
    try:
        request = review_time_off_request(
            db,
            request_id,
            payload.status,
            reviewed_by=x_actor_email or "manager",
            notes=payload.notes,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not request:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Time-off request not found")
    return _to_time_off_out(request)


# Schedules


@router.post("/schedules", response_model=ScheduleOut, status_code=status.HTTP_201_CREATED)
def add_schedule(
    payload: ScheduleCreate,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    try:
        schedule = create_schedule(
            db,
            invoice_id=payload.invoice_id,
            job_title=payload.job_title,
            location=payload.location,
            start_dt=payload.start_dt,
            technician_ids=payload.technician_ids,
            hours=payload.hours,
            confirmed=payload.confirmed,
            technician_notes=payload.technician_notes,
            historical_service_minutes=payload.historical_service_minutes,
            source_schedule_id=payload.source_schedule_id,
            performed_by=x_actor_email,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _to_schedule_out(schedule)


@router.get("/schedules", response_model=List[ScheduleOut])
def schedules(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    payroll_period_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    if payroll_period_id is not None:
        rows = list_schedules_for_period(db, payroll_period_id)
    else:
        rows = list_schedules(db, start, end)
    return [_to_schedule_out(s) for s in rows]


@router.get("/schedules/{schedule_id}", response_model=ScheduleOut)
def read_schedule(schedule_id: int, db: Session = Depends(get_db)):
    schedule = get_schedule(db, schedule_id)
    if not schedule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return _to_schedule_out(schedule)


@router.put("/schedules/{schedule_id}", response_model=ScheduleOut)
def put_schedule(schedule_id: int, payload: ScheduleUpdate, db: Session = Depends(get_db)):
    try:
        schedule = update_job(
            db,
            schedule_id,
            job_title=payload.job_title,
            location=payload.location,
            start_dt=payload.start_dt,
            technician_ids=payload.technician_ids,
            technician_notes=payload.technician_notes,
            sync_invoice=payload.sync_invoice,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not schedule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return _to_schedule_out(schedule)


@router.patch("/schedules/{schedule_id}/confirmed", response_model=ScheduleOut)
def patch_confirmed(schedule_id: int, payload: ConfirmedUpdate, db: Session = Depends(get_db)):
    schedule = set_confirmed(db, schedule_id, payload.confirmed)
    if not schedule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return _to_schedule_out(schedule)


@router.patch("/schedules/{schedule_id}/hours", response_model=ScheduleOut)
def patch_hours(
    schedule_id: int,
    payload: ShiftHoursUpdate,
    x_actor_role: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    _require_role(x_actor_role, MANAGER_ROLES)
    try:
        schedule = update_shift_hours(db, schedule_id, payload.hours_worked)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not schedule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return _to_schedule_out(schedule)


@router.patch("/schedules/{schedule_id}/dead-run", response_model=ScheduleOut)
def patch_dead_run(schedule_id: int, payload: DeadRunUpdate, db: Session = Depends(get_db)):
    schedule = update_dead_run(db, schedule_id, payload.dead_run)
    if not schedule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return _to_schedule_out(schedule)


@router.patch("/schedules/{schedule_id}/actual-service", response_model=ScheduleOut)
def patch_actual_service(
    schedule_id: int, payload: ActualServiceUpdate, db: Session = Depends(get_db)
):
    try:
        schedule = update_actual_service_minutes(db, schedule_id, payload.actual_service_minutes)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not schedule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return _to_schedule_out(schedule)


@router.delete("/schedules/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_schedule(schedule_id: int, db: Session = Depends(get_db)):
    if not delete_job(db, schedule_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/schedules/{schedule_id}/report", response_model=ReportOut)
def put_report(schedule_id: int, payload: ReportUpsert, db: Session = Depends(get_db)):
    try:
        report = create_or_update_report(db, schedule_id, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not report:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return _to_report_out(report)


@router.get("/schedules/{schedule_id}/report", response_model=ReportOut)
def read_report(schedule_id: int, db: Session = Depends(get_db)):
    report = get_report_by_schedule(db, schedule_id)
    if not report:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Report not found")
    return _to_report_out(report)


@router.get("/schedules/{schedule_id}/duration-review", response_model=DurationConfidenceOut)
def read_duration_review(schedule_id: int, db: Session = Depends(get_db)):
    schedule = get_schedule(db, schedule_id)
    if not schedule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    total = invoice_total(schedule.invoice) if schedule.invoice else None
    return DurationConfidenceOut(**duration_confidence(schedule.actual_service_minutes, schedule.hours, total))


# Payroll periods


@router.get("/payroll-periods", response_model=List[PayrollPeriodOut])
def payroll_periods(db: Session = Depends(get_db)):
    return [_to_period_out(p) for p in list_payroll_periods(db)]


@router.post("/payroll-periods/resolve", response_model=PayrollPeriodOut)
def resolve_payroll_period(payload: PayrollPeriodResolve, db: Session = Depends(get_db)):
    period = find_or_create_payroll_period(db, payload.moment)
    if not period:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Date is before the first payroll period",
        )
    return _to_period_out(period)


# Calendar


@router.get("/calendar/day", response_model=DayViewOut)
def calendar_day(
    day: date,
    technician_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    return DayViewOut(**day_view(db, day, technician_id=technician_id))


@router.get("/calendar/week", response_model=WeekViewOut)
def calendar_week(
    anchor: date,
    technician_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    return WeekViewOut(**week_view(db, anchor, technician_id=technician_id))


@router.get("/calendar/month", response_model=MonthGridOut)
def calendar_month(
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
):
    return MonthGridOut(year=year, month=month, weeks=month_weeks(year, month))


# Travel time


@router.get("/travel-time/day", response_model=TravelSummaryOut)
def travel_time_day(technician_id: int, day: date, db: Session = Depends(get_db)):
    technician = get_technician(db, technician_id)
    if not technician:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Technician not found")
    jobs = [
        s
        for s in list_schedules_for_technician(db, technician_id)
        if s.start_dt.date() == day
    ]
    return TravelSummaryOut(**day_travel_summary(db, day, jobs, technician.depot_address))


@router.post("/travel-time/estimates", response_model=TravelImportOut)
def travel_time_import(
    payload: TravelImportIn,
    x_actor_role: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    _require_role(x_actor_role, MANAGER_ROLES)
    try:
        count = import_estimates(db, [e.model_dump() for e in payload.estimates])
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return TravelImportOut(imported=count)


@router.delete("/travel-time/expired", response_model=TravelPurgeOut)
def travel_time_purge(
    x_actor_role: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    _require_role(x_actor_role, MANAGER_ROLES)
    return TravelPurgeOut(purged=purge_expired_estimates(db))


# Payroll


@router.get("/payroll", response_model=PayrollBreakdownOut)
def payroll(
    payroll_period_id: Optional[int] = Query(default=None),
    x_actor_role: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    _require_role(x_actor_role, MANAGER_ROLES)
    period = _resolve_period(db, payroll_period_id)
    return PayrollBreakdownOut(**payroll_breakdown(db, period))


@router.get("/payroll/drive-metrics", response_model=DriveMetricsOut)
def payroll_drive_metrics(
    payroll_period_id: Optional[int] = Query(default=None),
    x_actor_role: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    _require_role(x_actor_role, MANAGER_ROLES)
    period = _resolve_period(db, payroll_period_id)
    return DriveMetricsOut(**drive_metrics(db, period))


@router.get("/payroll/export.csv")
def payroll_csv(
    payroll_period_id: Optional[int] = Query(default=None),
    x_actor_role: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    _require_role(x_actor_role, MANAGER_ROLES)
    period = _resolve_period(db, payroll_period_id)
    csv_text = export_payroll_csv(db, period)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename=payroll_{period.start_date.isoformat()}.csv"
        },
    )
