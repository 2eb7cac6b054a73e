from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

APPOINTMENT_STATUSES = ("scheduled", "confirmed", "completed", "cancelled", "no-show")
BLOCKING_STATUSES = ("scheduled", "confirmed")
TERMINAL_STATUSES = ("completed", "cancelled", "no-show")

MESSAGE_TYPES = ("confirmation", "reminder", "follow-up", "custom")
MESSAGE_STATUSES = ("pending", "sent", "delivered", "read", "failed")
REMINDER_KINDS = ("24h", "2h", "30m")


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(value: datetime, tz_name: str | None) -> datetime:
    """Convert a naive UTC instant into the given IANA timezone."""
    return value.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name or "UTC"))


class Business(Base):
    __tablename__ = "businesses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(80), index=True)
    name: Mapped[str] = mapped_column(String(100))
    whatsapp_number: Mapped[str] = mapped_column(String(20), index=True)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    services: Mapped[list] = mapped_column(JSON, default=list)
    message_templates: Mapped[dict] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, onupdate=utc_now_naive
    )


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (
        Index("ix_clients_business_number", "business_id", "whatsapp_number"),
        Index("ix_clients_business_active", "business_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), index=True)
    first_name: Mapped[str] = mapped_column(String(50))
    last_name: Mapped[str] = mapped_column(String(50))
    email: Mapped[str | None] = mapped_column(String(254), nullable=True)
    whatsapp_number: Mapped[str] = mapped_column(String(20))
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_appointments: Mapped[int] = mapped_column(Integer, default=0)
    last_appointment_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, onupdate=utc_now_naive
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def initials(self) -> str:
        return f"{self.first_name[:1]}{self.last_name[:1]}".upper()

    def record_completed_appointment(self, at: datetime) -> None:
        self.total_appointments = int(self.total_appointments or 0) + 1
        if self.last_appointment_at is None or at > self.last_appointment_at:
            self.last_appointment_at = at


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_business_interval", "business_id", "starts_at", "ends_at"),
        Index("ix_appointments_business_status", "business_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), index=True)
    client_id: Mapped[int | None] = mapped_column(
        ForeignKey("clients.id"), nullable=True, index=True
    )
    service: Mapped[str] = mapped_column(String(100))
    starts_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    duration_min: Mapped[int] = mapped_column(Integer, default=60)
    ends_at: Mapped[datetime] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(16), default="scheduled")
    price: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, onupdate=utc_now_naive
    )

    reminders = relationship(
        "AppointmentReminder",
        order_by="AppointmentReminder.id",
        cascade="all, delete-orphan",
    )

    def set_interval(self, starts_at: datetime, duration_min: int) -> None:
        self.starts_at = to_utc_naive(starts_at)
        self.duration_min = int(duration_min)
        self.ends_at = self.starts_at + timedelta(minutes=int(duration_min))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_upcoming(self, now: datetime) -> bool:
        return self.status in BLOCKING_STATUSES and self.starts_at > now

    def is_today(self, now: datetime, tz_name: str | None = None) -> bool:
        return to_local(self.starts_at, tz_name).date() == to_local(now, tz_name).date()


class AppointmentReminder(Base):
    __tablename__ = "appointment_reminders"
    __table_args__ = (
        UniqueConstraint("appointment_id", "kind", name="uq_appointment_reminders_kind"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    appointment_id: Mapped[int] = mapped_column(ForeignKey("appointments.id"), index=True)
    kind: Mapped[str] = mapped_column(String(20))
    result: Mapped[str] = mapped_column(String(16))
    message_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class AppointmentStatusEvent(Base):
    __tablename__ = "appointment_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), index=True)
    appointment_id: Mapped[int] = mapped_column(ForeignKey("appointments.id"), index=True)
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str] = mapped_column(String(16))
    note: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class NotificationMessage(Base):
    __tablename__ = "notification_messages"
    __table_args__ = (
        Index("ix_messages_business_created", "business_id", "created_at"),
        Index("ix_messages_status_scheduled", "status", "scheduled_for"),
        Index("ix_messages_appointment_type", "appointment_id", "message_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_id: Mapped[int] = mapped_column(Integer, index=True)
    appointment_id: Mapped[int] = mapped_column(Integer)
    client_id: Mapped[int] = mapped_column(Integer, index=True)
    message_type: Mapped[str] = mapped_column(String(16))
    reminder_kind: Mapped[str | None] = mapped_column(String(8), nullable=True)
    destination: Mapped[str] = mapped_column(String(20))
    content: Mapped[str] = mapped_column(Text)
    provider_message_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, onupdate=utc_now_naive
    )

    @property
    def can_retry(self) -> bool:
        return self.status == "failed" and int(self.retry_count or 0) < int(self.max_retries or 0)

    def is_overdue(self, now: datetime) -> bool:
        return self.status == "pending" and self.scheduled_for is not None and now > self.scheduled_for

    @property
    def delivery_seconds(self) -> float | None:
        if self.sent_at and self.delivered_at:
            return (self.delivered_at - self.sent_at).total_seconds()
        return None

    @property
    def read_seconds(self) -> float | None:
        if self.delivered_at and self.read_at:
            return (self.read_at - self.delivered_at).total_seconds()
        return None
