from datetime import date, datetime

from pydantic import BaseModel, Field, validator


class ClientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    prefix: str = Field(min_length=1, max_length=20)
    email: str | None = Field(default=None, max_length=160)
    scheduling_email: str | None = Field(default=None, max_length=160)
    accounting_email: str | None = Field(default=None, max_length=160)
    phone: str | None = Field(default=None, max_length=40)
    notes: str | None = Field(default=None, max_length=4000)


class ClientUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=160)
    prefix: str | None = Field(default=None, min_length=1, max_length=20)
    email: str | None = Field(default=None, max_length=160)
    scheduling_email: str | None = Field(default=None, max_length=160)
    accounting_email: str | None = Field(default=None, max_length=160)
    phone: str | None = Field(default=None, max_length=40)
    notes: str | None = Field(default=None, max_length=4000)
    is_archived: bool | None = None


class ClientOut(BaseModel):
    id: int
    name: str
    prefix: str
    email: str | None = None
    scheduling_email: str | None = None
    accounting_email: str | None = None
    phone: str | None = None
    phone_display: str | None = None
    notes: str | None = None
    is_archived: bool = False
    created_at: datetime


class ClientPage(BaseModel):
    items: list[ClientOut]
    page: int
    total_pages: int


class LineItemIn(BaseModel):
    description: str = Field(min_length=1, max_length=255)
    details: str | None = Field(default=None, max_length=2000)
    price: float = Field(ge=0)


class LineItemOut(BaseModel):
    description: str
    details: str | None = None
    price: float


class InvoiceCreate(BaseModel):
    client_id: int = Field(gt=0)
    job_title: str = Field(min_length=1, max_length=200)
    date_issued: date
    frequency: int = Field(ge=1, le=12)
    location: str = Field(min_length=1, max_length=255)
    notes: str | None = Field(default=None, max_length=4000)
    items: list[LineItemIn] = Field(default_factory=list)


class InvoiceUpdate(BaseModel):
    job_title: str | None = Field(default=None, min_length=1, max_length=200)
    date_issued: date | None = None
    frequency: int | None = Field(default=None, ge=1, le=12)
    location: str | None = Field(default=None, min_length=1, max_length=255)
    notes: str | None = Field(default=None, max_length=4000)
    items: list[LineItemIn] | None = None


class InvoiceStatusUpdate(BaseModel):
    status: str = Field(pattern="^(pending|overdue|paid)$")
    payment_method: str | None = Field(
        default=None, pattern="^(eft|e-transfer|cheque|credit-card|other)$"
    )
    date_paid: date | None = None
    payment_notes: str | None = Field(default=None, max_length=2000)


class InvoiceDateSync(BaseModel):
    date_issued: date
    job_title: str | None = Field(default=None, max_length=200)
    frequency: int | None = Field(default=None, ge=1, le=12)


class InvoiceOut(BaseModel):
    id: int
    invoice_number: str
    client_id: int
    client_name: str
    job_title: str
    date_issued: date
    date_due: date
    frequency: int
    location: str
    notes: str | None = None
    status: str
    payment_method: str | None = None
    date_paid: date | None = None
    payment_notes: str | None = None
    items: list[LineItemOut]
    subtotal: float
    gst: float
    total: float


class InvoicePage(BaseModel):
    items: list[InvoiceOut]
    page: int
    total_pages: int


class CallLogCreate(BaseModel):
    caller_id: str = Field(min_length=1, max_length=120)
    caller_name: str = Field(min_length=1, max_length=120)
    outcome: str = Field(min_length=1, max_length=40)
    notes: str = Field(default="", max_length=4000)
    timestamp: datetime | None = None
    follow_up_date: datetime | None = None
    duration_min: int | None = Field(default=None, ge=0, le=600)


class CallLogOut(BaseModel):
    id: int
    invoice_id: int
    kind: str
    caller_id: str
    caller_name: str
    created_at: datetime
    outcome: str
    notes: str
    follow_up_date: datetime | None = None
    duration_min: int | None = None


class JobDueOut(BaseModel):
    id: int
    invoice_id: int
    invoice_number: str
    client_id: int
    job_title: str
    date_due: date
    is_scheduled: bool
    email_sent: bool
    email_exists: bool
    notes_exists: bool
    call_history: list[CallLogOut] = Field(default_factory=list)


class OverdueRunOut(BaseModel):
    updated: int
    invoice_numbers: list[str]


class EstimateCreate(BaseModel):
    client_id: int | None = Field(default=None, gt=0)
    prospect_business_name: str | None = Field(default=None, max_length=160)
    prospect_contact_person: str | None = Field(default=None, max_length=160)
    prospect_email: str | None = Field(default=None, max_length=160)
    prospect_phone: str | None = Field(default=None, max_length=40)
    prospect_address: str | None = Field(default=None, max_length=255)
    project_location: str | None = Field(default=None, max_length=255)
    status: str = Field(default="draft", pattern="^(draft|sent|approved|rejected)$")
    services: list[str] = Field(default_factory=list)
    terms: str | None = Field(default=None, max_length=4000)
    notes: str | None = Field(default=None, max_length=4000)
    items: list[LineItemIn] = Field(default_factory=list)


class EstimateUpdate(BaseModel):
    client_id: int | None = Field(default=None, gt=0)
    prospect_business_name: str | None = Field(default=None, max_length=160)
    prospect_contact_person: str | None = Field(default=None, max_length=160)
    prospect_email: str | None = Field(default=None, max_length=160)
    prospect_phone: str | None = Field(default=None, max_length=40)
    prospect_address: str | None = Field(default=None, max_length=255)
    project_location: str | None = Field(default=None, max_length=255)
    status: str | None = Field(default=None, pattern="^(draft|sent|approved|rejected)$")
    services: list[str] | None = None
    terms: str | None = Field(default=None, max_length=4000)
    notes: str | None = Field(default=None, max_length=4000)
    items: list[LineItemIn] | None = None


class EstimateConvert(BaseModel):
    date_issued: date
    frequency: int = Field(ge=1, le=12)
    client_id: int | None = Field(default=None, gt=0)
    job_title: str | None = Field(default=None, max_length=200)
    location: str | None = Field(default=None, max_length=255)


class EstimateOut(BaseModel):
    id: int
    estimate_number: str
    client_id: int | None = None
    prospect_business_name: str | None = None
    prospect_contact_person: str | None = None
    prospect_email: str | None = None
    prospect_phone: str | None = None
    prospect_address: str | None = None
    project_location: str | None = None
    status: str
    created_at: datetime
    services: list[str]
    terms: str | None = None
    notes: str | None = None
    items: list[LineItemOut]
    subtotal: float
    gst: float
    total: float
    converted_invoice_id: int | None = None


class EstimatePage(BaseModel):
    items: list[EstimateOut]
    page: int
    total_pages: int


class TechnicianCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: str | None = Field(default=None, max_length=160)
    hourly_rate: float | None = Field(default=None, ge=0)
    depot_address: str | None = Field(default=None, max_length=255)
    include_in_payroll: bool = True


class TechnicianUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    email: str | None = Field(default=None, max_length=160)
    hourly_rate: float | None = Field(default=None, ge=0)
    depot_address: str | None = Field(default=None, max_length=255)
    include_in_payroll: bool | None = None
    is_active: bool | None = None


class TechnicianOut(BaseModel):
    id: int
    name: str
    email: str | None = None
    hourly_rate: float | None = None
    depot_address: str | None = None
    include_in_payroll: bool
    is_active: bool


class AvailabilityCreate(BaseModel):
    technician_id: int = Field(gt=0)
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    specific_date: date | None = None
    start_time: str = Field(default="00:00", pattern=r"^\d{2}:\d{2}$")
    end_time: str = Field(default="23:59", pattern=r"^\d{2}:\d{2}$")
    is_full_day: bool = False


class AvailabilityOut(BaseModel):
    id: int
    technician_id: int
    day_of_week: int | None = None
    specific_date: date | None = None
    start_time: str
    end_time: str
    is_full_day: bool
    is_recurring: bool


class AvailabilityCheckOut(BaseModel):
    technician_id: int
    day: date
    is_unavailable: bool
    is_full_day: bool
    ranges: list[str]


class TimeOffCreate(BaseModel):
    technician_id: int = Field(gt=0)
    start_date: date
    end_date: date
    reason: str = Field(min_length=1, max_length=500)

    @validator("end_date")
    @classmethod
    def validate_end_after_start(cls, value: date, values: dict):
        start_date = values.get("start_date")
        if start_date and value < start_date:
            raise ValueError("end_date must be >= start_date")
        return value


class TimeOffDecision(BaseModel):
    status: str = Field(pattern="^(approved|rejected)$")
    notes: str | None = Field(default=None, max_length=500)


class TimeOffOut(BaseModel):
    id: int
    technician_id: int
    technician_name: str
    start_date: date
    end_date: date
    reason: str
    status: str
    requested_at: datetime
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    notes: str | None = None


class PendingCountOut(BaseModel):
    pending: int


class ScheduleCreate(BaseModel):
    invoice_id: int = Field(gt=0)
    job_title: str = Field(min_length=1, max_length=200)
    location: str = Field(min_length=1, max_length=255)
    start_dt: datetime
    technician_ids: list[int] = Field(default_factory=list)
    hours: float | None = Field(default=None, ge=0, le=24)
    confirmed: bool = False
    technician_notes: str | None = Field(default=None, max_length=4000)
    historical_service_minutes: int | None = Field(default=None, ge=0, le=1440)
    source_schedule_id: int | None = Field(default=None, gt=0)


class ScheduleUpdate(BaseModel):
    job_title: str = Field(min_length=1, max_length=200)
    location: str = Field(min_length=1, max_length=255)
    start_dt: datetime
    technician_ids: list[int] = Field(default_factory=list)
    technician_notes: str | None = Field(default=None, max_length=4000)
    sync_invoice: bool = False


class ConfirmedUpdate(BaseModel):
    confirmed: bool


class ShiftHoursUpdate(BaseModel):
    hours_worked: float = Field(ge=0, le=24)


class DeadRunUpdate(BaseModel):
    dead_run: bool


class ActualServiceUpdate(BaseModel):
    actual_service_minutes: int | None = Field(default=None, ge=0, le=1440)


class TechnicianRef(BaseModel):
    id: int
    name: str


class ScheduleOut(BaseModel):
    id: int
    invoice_id: int
    job_title: str
    location: str
    start_dt: datetime
    end_dt: datetime
    hours: float
    confirmed: bool
    dead_run: bool
    payroll_period_id: int | None = None
    technician_notes: str = ""
    actual_service_minutes: int | None = None
    historical_service_minutes: int | None = None
    technicians: list[TechnicianRef]


class ReportUpsert(BaseModel):
    technician_id: int = Field(gt=0)
    date_completed: date | None = None
    last_service_date: date | None = None
    fuel_type: str | None = Field(default=None, pattern="^(natural_gas|propane|electric|solid_fuel|other)$")
    cooking_volume: str | None = Field(default=None, pattern="^(High|Medium|Low)$")
    cooking_equipment: dict | None = None
    inspection_items: dict | None = None
    equipment_details: dict | None = None
    cleaning_details: dict | None = None
    recommended_cleaning_frequency: int | None = Field(default=None, ge=1, le=12)
    comments: str | None = Field(default=None, max_length=4000)
    recommendations: str | None = Field(default=None, max_length=4000)


class ReportOut(BaseModel):
    id: int
    schedule_id: int
    invoice_id: int
    technician_id: int
    date_completed: date
    last_service_date: date | None = None
    fuel_type: str | None = None
    cooking_volume: str | None = None
    cooking_equipment: dict
    inspection_items: dict
    equipment_details: dict
    cleaning_details: dict
    recommended_cleaning_frequency: int | None = None
    comments: str | None = None
    recommendations: str | None = None
    updated_at: datetime


class PayrollPeriodOut(BaseModel):
    id: int
    start_date: date
    end_date: date
    cutoff_date: date
    pay_day: date


class PayrollPeriodResolve(BaseModel):
    moment: datetime


class TravelSegmentOut(BaseModel):
    from_label: str
    to_label: str
    typical_minutes: float
    km: float
    travel_notes: str | None = None
    from_kind: str
    to_kind: str
    from_job_id: int | None = None
    to_job_id: int | None = None


class TravelSummaryOut(BaseModel):
    date: date
    total_travel_minutes: float
    total_travel_km: float
    segments: list[TravelSegmentOut]
    is_partial: bool


class TechnicianTravelOut(TravelSummaryOut):
    technician_id: int
    name: str


class TravelEstimateIn(BaseModel):
    origin: str = Field(min_length=1, max_length=255)
    destination: str = Field(min_length=1, max_length=255)
    departure: datetime
    typical_minutes: float = Field(ge=0)
    estimated_km: float = Field(ge=0)
    travel_notes: str | None = Field(default=None, max_length=255)


class TravelImportIn(BaseModel):
    estimates: list[TravelEstimateIn] = Field(min_length=1, max_length=1000)


class TravelImportOut(BaseModel):
    imported: int


class TravelPurgeOut(BaseModel):
    purged: int


class UnavailableOut(BaseModel):
    technician_id: int
    name: str
    is_full_day: bool
    ranges: list[str]
    reason: str


class DayViewOut(BaseModel):
    date: date
    jobs: list[ScheduleOut]
    unavailable: list[UnavailableOut]
    travel: list[TechnicianTravelOut]


class WeekDayOut(BaseModel):
    date: date
    jobs: list[ScheduleOut]
    job_count: int
    scheduled_hours: float
    travel_minutes: float
    travel_km: float
    has_partial_travel: bool


class WeekViewOut(BaseModel):
    week_start: date
    week_end: date
    days: list[WeekDayOut]


class MonthGridOut(BaseModel):
    year: int
    month: int
    weeks: list[list[date]]


class PayrollJobOut(BaseModel):
    schedule_id: int
    job_title: str
    location: str
    start_dt: datetime
    hours: float
    dead_run: bool


class PayrollTechnicianOut(BaseModel):
    technician_id: int
    technician_name: str
    total_jobs: int
    total_hours: float
    hourly_rate: float
    gross_pay: float
    jobs: list[PayrollJobOut]


class PayrollBreakdownOut(BaseModel):
    payroll_period_id: int
    start_date: date
    end_date: date
    pay_day: date
    technicians: list[PayrollTechnicianOut]
    total_hours: float
    total_gross_pay: float


class MissingActualOut(BaseModel):
    schedule_id: int
    job_title: str
    start_dt: datetime


class DurationReasonOut(BaseModel):
    code: str
    message: str


class DurationConfidenceOut(BaseModel):
    confidence: str
    reasons: list[DurationReasonOut]
    cutoff_minutes: float
    expected_minutes: int | None = None
    expected_range: str | None = None
    price_check: str


class DurationReviewOut(BaseModel):
    schedule_id: int
    job_title: str
    actual_service_minutes: int
    cutoff_minutes: float
    expected_range: str | None = None
    price_check: str
    reasons: list[str]


class DriveMetricsTechnicianOut(BaseModel):
    technician_id: int
    technician_name: str
    total_jobs: int
    scheduled_hours: float
    actual_hours: float
    drive_hours: float
    scheduled_plus_drive_hours: float
    actual_plus_drive_hours: float
    actual_vs_scheduled_plus_drive_hours: float
    has_depot_address: bool
    missing_actual_duration_jobs: list[MissingActualOut]
    duration_review_jobs: list[DurationReviewOut]


class DriveMetricsOut(BaseModel):
    payroll_period_id: int
    total_jobs: int
    total_scheduled_hours: float
    total_actual_hours: float
    total_drive_hours: float
    total_scheduled_plus_drive_hours: float
    total_actual_plus_drive_hours: float
    total_actual_vs_scheduled_plus_drive_hours: float
    total_missing_actual_duration_jobs: int
    total_duration_review_jobs: int
    technicians: list[DriveMetricsTechnicianOut]


class AuditEntryOut(BaseModel):
    id: int
    invoice_ref: str | None = None
    action: str
    created_at: datetime
    performed_by: str
    details: dict
    success: bool
    error_message: str | None = None
