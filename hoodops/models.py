from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .config import settings
from .db import Base


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def business_now_naive() -> datetime:
    """Wall-clock time in the business time zone; stored dates are local to it."""
    return datetime.now(ZoneInfo(settings.BUSINESS_TIME_ZONE)).replace(tzinfo=None)


schedule_technicians = Table(
    "schedule_technicians",
    Base.metadata,
    Column("schedule_id", ForeignKey("schedules.id", ondelete="CASCADE"), primary_key=True),
    Column("technician_id", ForeignKey("technicians.id", ondelete="CASCADE"), primary_key=True),
)


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(160), index=True)
    email: Mapped[str | None] = mapped_column(String(160), nullable=True)
    scheduling_email: Mapped[str | None] = mapped_column(String(160), nullable=True)
    accounting_email: Mapped[str | None] = mapped_column(String(160), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    prefix: Mapped[str] = mapped_column(String(20))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    invoices = relationship(
        "Invoice",
        back_populates="client",
        cascade="all, delete-orphan",
        order_by="Invoice.invoice_number.desc()",
    )


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), index=True)
    job_title: Mapped[str] = mapped_column(String(200))
    date_issued: Mapped[date] = mapped_column(Date, index=True)
    date_due: Mapped[date] = mapped_column(Date, index=True)
    frequency: Mapped[int] = mapped_column(Integer)
    location: Mapped[str] = mapped_column(String(255), index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    date_paid: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    client = relationship("Client", back_populates="invoices")
    items = relationship(
        "InvoiceItem",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.position",
    )
    schedules = relationship("Schedule", back_populates="invoice", cascade="all, delete-orphan")
    job_due = relationship(
        "JobDueSoon",
        back_populates="invoice",
        cascade="all, delete-orphan",
        uselist=False,
    )
    call_logs = relationship(
        "CallLogEntry",
        cascade="all, delete-orphan",
        order_by="CallLogEntry.created_at",
    )


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    description: Mapped[str] = mapped_column(String(255))
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[float] = mapped_column(Numeric(10, 2), default=0)


class CallLogEntry(Base):
    __tablename__ = "call_log_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), index=True)
    kind: Mapped[str] = mapped_column(String(16), index=True)
    caller_id: Mapped[str] = mapped_column(String(120))
    caller_name: Mapped[str] = mapped_column(String(120))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    outcome: Mapped[str] = mapped_column(String(40))
    notes: Mapped[str] = mapped_column(Text)
    follow_up_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_min: Mapped[int | None] = mapped_column(Integer, nullable=True)


class JobDueSoon(Base):
    __tablename__ = "jobs_due_soon"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), unique=True, index=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), index=True)
    job_title: Mapped[str] = mapped_column(String(200))
    date_due: Mapped[date] = mapped_column(Date, index=True)
    is_scheduled: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    email_sent: Mapped[bool] = mapped_column(Boolean, default=False)

    invoice = relationship("Invoice", back_populates="job_due")
    client = relationship("Client")


class Estimate(Base):
    __tablename__ = "estimates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    estimate_number: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id"), nullable=True, index=True)
    prospect_business_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    prospect_contact_person: Mapped[str | None] = mapped_column(String(160), nullable=True)
    prospect_email: Mapped[str | None] = mapped_column(String(160), nullable=True)
    prospect_phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    prospect_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    project_location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="draft", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    services: Mapped[list] = mapped_column(JSON, default=list)
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    subtotal: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    gst: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    total: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    converted_invoice_id: Mapped[int | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True
    )

    client = relationship("Client")
    items = relationship(
        "EstimateItem",
        cascade="all, delete-orphan",
        order_by="EstimateItem.position",
    )


class EstimateItem(Base):
    __tablename__ = "estimate_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    estimate_id: Mapped[int] = mapped_column(ForeignKey("estimates.id"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    description: Mapped[str] = mapped_column(String(255))
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[float] = mapped_column(Numeric(10, 2), default=0)


class Technician(Base):
    __tablename__ = "technicians"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String(160), nullable=True)
    hourly_rate: Mapped[float | None] = mapped_column(Numeric(8, 2), nullable=True)
    depot_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    include_in_payroll: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class PayrollPeriod(Base):
    __tablename__ = "payroll_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    start_date: Mapped[date] = mapped_column(Date, unique=True, index=True)
    end_date: Mapped[date] = mapped_column(Date, index=True)
    cutoff_date: Mapped[date] = mapped_column(Date)
    pay_day: Mapped[date] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class Schedule(Base):
    __tablename__ = "schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), index=True)
    job_title: Mapped[str] = mapped_column(String(200))
    location: Mapped[str] = mapped_column(String(255), index=True)
    start_dt: Mapped[datetime] = mapped_column(DateTime, index=True)
    confirmed: Mapped[bool] = mapped_column(Boolean, default=False)
    hours: Mapped[float] = mapped_column(Float, default=4.0)
    payroll_period_id: Mapped[int | None] = mapped_column(
        ForeignKey("payroll_periods.id"), nullable=True, index=True
    )
    dead_run: Mapped[bool] = mapped_column(Boolean, default=False)
    technician_notes: Mapped[str] = mapped_column(Text, default="")
    actual_service_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    historical_service_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    invoice = relationship("Invoice", back_populates="schedules")
    payroll_period = relationship("PayrollPeriod")
    technicians = relationship(
        "Technician",
        secondary=schedule_technicians,
        order_by="Technician.name",
    )
    report = relationship(
        "Report",
        back_populates="schedule",
        cascade="all, delete-orphan",
        uselist=False,
    )


class Report(Base):
    __tablename__ = "reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    schedule_id: Mapped[int] = mapped_column(ForeignKey("schedules.id"), unique=True, index=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), index=True)
    technician_id: Mapped[int] = mapped_column(ForeignKey("technicians.id"))
    date_completed: Mapped[date] = mapped_column(Date)
    last_service_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    fuel_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    cooking_volume: Mapped[str | None] = mapped_column(String(16), nullable=True)
    cooking_equipment: Mapped[dict] = mapped_column(JSON, default=dict)
    inspection_items: Mapped[dict] = mapped_column(JSON, default=dict)
    equipment_details: Mapped[dict] = mapped_column(JSON, default=dict)
    cleaning_details: Mapped[dict] = mapped_column(JSON, default=dict)
    recommended_cleaning_frequency: Mapped[int | None] = mapped_column(Integer, nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    recommendations: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    schedule = relationship("Schedule", back_populates="report")


class Availability(Base):
    __tablename__ = "availability_blocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    technician_id: Mapped[int] = mapped_column(ForeignKey("technicians.id"), index=True)
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_time: Mapped[str] = mapped_column(String(5), default="00:00")
    end_time: Mapped[str] = mapped_column(String(5), default="23:59")
    is_full_day: Mapped[bool] = mapped_column(Boolean, default=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    specific_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class TimeOffRequest(Base):
    __tablename__ = "time_off_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    technician_id: Mapped[int] = mapped_column(ForeignKey("technicians.id"), index=True)
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date] = mapped_column(Date)
    reason: Mapped[str] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(120), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    technician = relationship("Technician")


class TravelTimeCache(Base):
    __tablename__ = "travel_time_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pair_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    origin_address: Mapped[str] = mapped_column(String(255))
    destination_address: Mapped[str] = mapped_column(String(255))
    typical_minutes: Mapped[float] = mapped_column(Float, default=0)
    estimated_km: Mapped[float] = mapped_column(Float, default=0)
    travel_notes: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_ref: Mapped[str | None] = mapped_column(String(40), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(40), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    performed_by: Mapped[str] = mapped_column(String(120))
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
