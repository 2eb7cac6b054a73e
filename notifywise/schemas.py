from datetime import date, datetime

from pydantic import BaseModel, Field, field_validator


class BusinessCreate(BaseModel):
    owner_id: str = Field(min_length=1, max_length=80)
    name: str = Field(min_length=2, max_length=100)
    whatsapp_number: str = Field(min_length=7, max_length=40)
    timezone: str = Field(default="UTC", max_length=64)
    services: list[str] = Field(default_factory=list)
    message_templates: dict[str, str] = Field(default_factory=dict)


class BusinessUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=100)
    whatsapp_number: str | None = Field(default=None, min_length=7, max_length=40)
    timezone: str | None = Field(default=None, max_length=64)
    services: list[str] | None = None
    message_templates: dict[str, str] | None = None


class BusinessOut(BaseModel):
    id: int
    owner_id: str
    name: str
    whatsapp_number: str
    timezone: str
    services: list[str]
    message_templates: dict[str, str]
    is_active: bool
    created_at: datetime


class ClientCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    whatsapp_number: str = Field(min_length=7, max_length=40)
    email: str | None = Field(default=None, max_length=254)
    date_of_birth: date | None = None
    notes: str | None = Field(default=None, max_length=1000)


class ClientUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=50)
    last_name: str | None = Field(default=None, min_length=1, max_length=50)
    whatsapp_number: str | None = Field(default=None, min_length=7, max_length=40)
    email: str | None = Field(default=None, max_length=254)
    date_of_birth: date | None = None
    notes: str | None = Field(default=None, max_length=1000)


class ClientOut(BaseModel):
    id: int
    business_id: int
    first_name: str
    last_name: str
    full_name: str
    initials: str
    whatsapp_number: str
    email: str | None = None
    date_of_birth: date | None = None
    notes: str | None = None
    total_appointments: int
    last_appointment_at: datetime | None = None
    created_at: datetime


class AppointmentCreate(BaseModel):
    service: str = Field(min_length=1, max_length=100)
    starts_at: datetime
    duration_min: int | None = Field(default=None, ge=15, le=480)
    client_id: int | None = None
    price: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    notes: str | None = Field(default=None, max_length=1000)
    send_confirmation: bool = False


class AppointmentUpdate(BaseModel):
    service: str | None = Field(default=None, min_length=1, max_length=100)
    client_id: int | None = None
    price: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    notes: str | None = Field(default=None, max_length=1000)


class AppointmentReschedule(BaseModel):
    starts_at: datetime
    duration_min: int | None = Field(default=None, ge=15, le=480)


class AppointmentStatusUpdate(BaseModel):
    status: str = Field(min_length=2, max_length=16)
    note: str | None = Field(default=None, max_length=300)

    @field_validator("status")
    @classmethod
    def normalize_status(cls, value: str) -> str:
        return value.strip().lower()


class ReminderOut(BaseModel):
    kind: str
    result: str
    message_id: int | None = None
    recorded_at: datetime


class AppointmentOut(BaseModel):
    id: int
    business_id: int
    client_id: int | None = None
    service: str
    starts_at: datetime
    ends_at: datetime
    duration_min: int
    status: str
    price: float | None = None
    currency: str
    notes: str | None = None
    is_upcoming: bool = False
    is_today: bool = False
    reminders: list[ReminderOut] = Field(default_factory=list)
    created_at: datetime


class AppointmentStatusEventOut(BaseModel):
    id: int
    appointment_id: int
    from_status: str | None = None
    to_status: str
    note: str | None = None
    created_at: datetime


class AppointmentStats(BaseModel):
    total: int
    today: int
    this_month: int
    upcoming: int
    completed: int
    cancelled: int


class NotificationCreate(BaseModel):
    type: str = Field(min_length=3, max_length=16)
    reminder_kind: str | None = Field(default="24h", max_length=8)
    custom_text: str | None = Field(default=None, max_length=1000)
    scheduled_for: datetime | None = None
    max_retries: int | None = Field(default=None, ge=1, le=10)


class NotificationOut(BaseModel):
    id: int
    business_id: int
    appointment_id: int
    client_id: int
    type: str
    reminder_kind: str | None = None
    content: str
    provider_message_id: str | None = None
    status: str
    scheduled_for: datetime | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    error_message: str | None = None
    retry_count: int
    max_retries: int
    can_retry: bool
    is_overdue: bool = False
    delivery_seconds: float | None = None
    read_seconds: float | None = None
    created_at: datetime


class MessageStats(BaseModel):
    total: int
    pending: int
    sent: int
    delivered: int
    read: int
    failed: int
    success_rate: float


class DeliveryStatusUpdate(BaseModel):
    provider_message_id: str = Field(min_length=1, max_length=120)
    status: str
    timestamp: datetime | None = None

    @field_validator("status")
    @classmethod
    def normalize_status(cls, value: str) -> str:
        return value.strip().lower()


class PublicBookingCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    whatsapp_number: str = Field(min_length=7, max_length=40)
    email: str | None = Field(default=None, max_length=254)
    service: str = Field(min_length=1, max_length=100)
    starts_at: datetime
    duration_min: int | None = Field(default=None, ge=15, le=480)
    notes: str | None = Field(default=None, max_length=1000)


class PublicBookingOut(BaseModel):
    appointment_id: int
    status: str
    starts_at: datetime
    ends_at: datetime
    service: str
    business_name: str
    confirmation_status: str | None = None


class Page(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class AppointmentPage(BaseModel):
    items: list[AppointmentOut]
    pagination: Page


class ClientPage(BaseModel):
    items: list[ClientOut]
    pagination: Page


class ClientStats(BaseModel):
    total_clients: int
    new_this_month: int
    new_this_week: int


class MessagePage(BaseModel):
    items: list[NotificationOut]
    pagination: Page
