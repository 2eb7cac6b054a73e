import re
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from sqlalchemy import asc, desc, func, or_, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    APPOINTMENT_STATUSES,
    BLOCKING_STATUSES,
    TERMINAL_STATUSES,
    Appointment,
    AppointmentReminder,
    AppointmentStatusEvent,
    Business,
    Client,
    to_local,
    to_utc_naive,
    utc_now_naive,
)
from .phone import require_phone
from .templates import TEMPLATE_KEYS

logger = structlog.get_logger("notifywise.appointments")

MIN_DURATION_MIN = 15
MAX_DURATION_MIN = 480
MAX_NOTES_LENGTH = 1000
MAX_PAGE_SIZE = 200

ALLOWED_STATUS_TRANSITIONS = {
    "scheduled": {"confirmed", "cancelled", "no-show", "completed"},
    "confirmed": {"completed", "cancelled", "no-show"},
    "completed": set(),
    "cancelled": set(),
    "no-show": set(),
}

REMINDER_RECORD_KINDS = {
    "confirmation",
    "reminder-24h",
    "reminder-2h",
    "reminder-30m",
    "follow-up",
    "custom",
}
REMINDER_RESULTS = {"sent", "delivered", "failed"}

APPOINTMENT_SORT_FIELDS = {
    "starts_at": Appointment.starts_at,
    "created_at": Appointment.created_at,
    "service": Appointment.service,
    "status": Appointment.status,
    "price": Appointment.price,
    "duration_min": Appointment.duration_min,
}
CLIENT_SORT_FIELDS = {
    "created_at": Client.created_at,
    "first_name": Client.first_name,
    "last_name": Client.last_name,
    "last_appointment_at": Client.last_appointment_at,
    "total_appointments": Client.total_appointments,
}

_EMAIL = re.compile(r"^[\w.+-]+@[\w-]+(\.[\w-]+)*\.\w{2,}$")
_CURRENCY = re.compile(r"^[A-Z]{3}$")


def _clean_text(value: str | None) -> str | None:
    return (value or "").strip() or None


def _required_text(value: str | None, field: str, max_length: int) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(field, "is required")
    if len(cleaned) > max_length:
        raise ValidationError(field, f"must not exceed {max_length} characters")
    return cleaned


def _validate_timezone(tz_name: str | None) -> str:
    name = (tz_name or "UTC").strip() or "UTC"
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError("timezone", "must be a valid IANA timezone name")
    return name


def _validate_duration(duration_min: int | None) -> int:
    if duration_min is None:
        duration_min = settings.APPOINTMENT_DEFAULT_DURATION_MIN
    duration = int(duration_min)
    if duration < MIN_DURATION_MIN or duration > MAX_DURATION_MIN:
        raise ValidationError(
            "duration_min", f"must be between {MIN_DURATION_MIN} and {MAX_DURATION_MIN} minutes"
        )
    return duration


def _validate_start(starts_at: datetime, tz_name: str | None, now: datetime) -> datetime:
    start = to_utc_naive(starts_at)
    # Same calendar day (in the business timezone) or later.
    if to_local(start, tz_name).date() < to_local(now, tz_name).date():
        raise ValidationError("starts_at", "appointment date cannot be in the past")
    return start


def _validate_price(price: float | None) -> float | None:
    if price is None:
        return None
    if float(price) < 0:
        raise ValidationError("price", "cannot be negative")
    return float(price)


def _validate_currency(currency: str | None) -> str:
    code = (currency or settings.APPOINTMENT_DEFAULT_CURRENCY).strip().upper()
    if not _CURRENCY.match(code):
        raise ValidationError("currency", "must be a 3-letter currency code")
    return code


def _validate_notes(notes: str | None) -> str | None:
    cleaned = _clean_text(notes)
    if cleaned and len(cleaned) > MAX_NOTES_LENGTH:
        raise ValidationError("notes", f"must not exceed {MAX_NOTES_LENGTH} characters")
    return cleaned


def _validate_email(email: str | None) -> str | None:
    cleaned = _clean_text(email)
    if cleaned is None:
        return None
    cleaned = cleaned.lower()
    if not _EMAIL.match(cleaned):
        raise ValidationError("email", "must be a valid email address")
    return cleaned


def _validate_templates(templates: dict | None) -> dict:
    cleaned = {}
    for key, text in (templates or {}).items():
        if key not in TEMPLATE_KEYS:
            raise ValidationError("message_templates", f"unknown template key: {key}")
        if text and str(text).strip():
            cleaned[key] = str(text).strip()
    return cleaned


def _page_bounds(page: int, page_size: int) -> tuple[int, int]:
    page = max(1, int(page))
    page_size = max(1, min(int(page_size), MAX_PAGE_SIZE))
    return page, page_size


def _order_by(columns: dict, sort: str, order: str):
    column = columns.get((sort or "").strip())
    if column is None:
        raise ValidationError("sort", f"must be one of {', '.join(sorted(columns))}")
    direction = (order or "asc").strip().lower()
    if direction not in {"asc", "desc"}:
        raise ValidationError("order", "must be asc or desc")
    return desc(column) if direction == "desc" else asc(column)


# Businesses


def get_business(db: Session, business_id: int) -> Business:
    business = db.execute(
        select(Business).where(Business.id == business_id, Business.is_active.is_(True))
    ).scalar_one_or_none()
    if business is None:
        raise NotFoundError("Business", business_id)
    return business


def create_business(
    db: Session,
    owner_id: str,
    name: str,
    whatsapp_number: str,
    timezone_name: str = "UTC",
    services: list[str] | None = None,
    message_templates: dict | None = None,
) -> Business:
    owner = _required_text(owner_id, "owner_id", 80)
    existing = db.execute(
        select(Business.id).where(Business.owner_id == owner, Business.is_active.is_(True))
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("Owner already has an active business", conflicting_id=existing)

    business = Business(
        owner_id=owner,
        name=_required_text(name, "name", 100),
        whatsapp_number=require_phone(whatsapp_number),
        timezone=_validate_timezone(timezone_name),
        services=[s.strip() for s in (services or []) if s and s.strip()],
        message_templates=_validate_templates(message_templates),
        is_active=True,
    )
    db.add(business)
    db.commit()
    db.refresh(business)
    logger.info("business_created", business_id=business.id)
    return business


def update_business(db: Session, business_id: int, **changes) -> Business:
    business = get_business(db, business_id)
    if changes.get("name") is not None:
        business.name = _required_text(changes["name"], "name", 100)
    if changes.get("whatsapp_number") is not None:
        business.whatsapp_number = require_phone(changes["whatsapp_number"])
    if changes.get("timezone") is not None:
        business.timezone = _validate_timezone(changes["timezone"])
    if changes.get("services") is not None:
        business.services = [s.strip() for s in changes["services"] if s and s.strip()]
    if changes.get("message_templates") is not None:
        business.message_templates = _validate_templates(changes["message_templates"])
    db.commit()
    db.refresh(business)
    return business


def deactivate_business(db: Session, business_id: int) -> Business:
    business = get_business(db, business_id)
    business.is_active = False
    db.commit()
    db.refresh(business)
    logger.info("business_deactivated", business_id=business.id)
    return business


@contextmanager
def _business_transaction(db: Session, business_id: int):
    """Lock the owning business row so that mutations of one tenant serialize."""
    try:
        business = db.execute(
            select(Business)
            .where(Business.id == business_id, Business.is_active.is_(True))
            .with_for_update()
        ).scalar_one_or_none()
        if business is None:
            raise NotFoundError("Business", business_id)
        yield business
    except OperationalError as exc:
        db.rollback()
        logger.warning("business_transaction_contended", business_id=business_id, error=str(exc))
        raise ConflictError("Concurrent update for this business, please retry") from exc
    except Exception:
        db.rollback()
        raise


# Clients


def get_client(db: Session, business_id: int, client_id: int) -> Client:
    client = db.execute(
        select(Client).where(
            Client.id == client_id,
            Client.business_id == business_id,
            Client.is_active.is_(True),
        )
    ).scalar_one_or_none()
    if client is None:
        raise NotFoundError("Client", client_id)
    return client


def _find_active_client_by_number(
    db: Session, business_id: int, number: str, skip_client_id: int | None = None
) -> Client | None:
    stmt = select(Client).where(
        Client.business_id == business_id,
        Client.whatsapp_number == number,
        Client.is_active.is_(True),
    )
    if skip_client_id is not None:
        stmt = stmt.where(Client.id != skip_client_id)
    return db.execute(stmt.limit(1)).scalar_one_or_none()


def _validate_birth_date(value: date | None) -> date | None:
    if value is not None and value > utc_now_naive().date():
        raise ValidationError("date_of_birth", "cannot be in the future")
    return value


def create_client(
    db: Session,
    business_id: int,
    first_name: str,
    last_name: str,
    whatsapp_number: str,
    email: str | None = None,
    date_of_birth: date | None = None,
    notes: str | None = None,
) -> Client:
    get_business(db, business_id)
    number = require_phone(whatsapp_number)
    duplicate = _find_active_client_by_number(db, business_id, number)
    if duplicate is not None:
        raise ConflictError(
            "WhatsApp number already exists for this business", conflicting_id=duplicate.id
        )

    client = Client(
        business_id=business_id,
        first_name=_required_text(first_name, "first_name", 50),
        last_name=_required_text(last_name, "last_name", 50),
        whatsapp_number=number,
        email=_validate_email(email),
        date_of_birth=_validate_birth_date(date_of_birth),
        notes=_validate_notes(notes),
        total_appointments=0,
        is_active=True,
    )
    db.add(client)
    db.commit()
    db.refresh(client)
    logger.info("client_created", business_id=business_id, client_id=client.id)
    return client


def find_or_create_client(
    db: Session,
    business_id: int,
    first_name: str,
    last_name: str,
    whatsapp_number: str,
    email: str | None = None,
) -> Client:
    number = require_phone(whatsapp_number)
    existing = _find_active_client_by_number(db, business_id, number)
    if existing is not None:
        return existing
    return create_client(
        db,
        business_id,
        first_name=first_name,
        last_name=last_name,
        whatsapp_number=number,
        email=email,
    )


def list_clients(
    db: Session,
    business_id: int,
    search: str | None = None,
    page: int = 1,
    page_size: int = 50,
    sort: str = "created_at",
    order: str = "desc",
) -> tuple[list[Client], int]:
    page, page_size = _page_bounds(page, page_size)
    conditions = [Client.business_id == business_id, Client.is_active.is_(True)]
    term = (search or "").strip()
    if term:
        pattern = f"%{term}%"
        conditions.append(
            or_(
                Client.first_name.ilike(pattern),
                Client.last_name.ilike(pattern),
                Client.email.ilike(pattern),
            )
        )

    total = db.execute(select(func.count(Client.id)).where(*conditions)).scalar_one()
    rows = (
        db.execute(
            select(Client)
            .where(*conditions)
            .order_by(_order_by(CLIENT_SORT_FIELDS, sort, order), Client.id.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return list(rows), int(total)


def client_stats(db: Session, business_id: int, as_of: datetime | None = None) -> dict:
    """Active client counts: all, created this business-local month, created in the last 7 days."""
    business = get_business(db, business_id)
    as_of = to_utc_naive(as_of) if as_of else utc_now_naive()
    month_first = to_local(as_of, business.timezone).date().replace(day=1)
    month_start = _local_midnight_utc(month_first, business.timezone)

    def count(*conditions) -> int:
        return int(
            db.execute(
                select(func.count(Client.id)).where(
                    Client.business_id == business_id,
                    Client.is_active.is_(True),
                    *conditions,
                )
            ).scalar_one()
        )

    return {
        "total_clients": count(),
        "new_this_month": count(Client.created_at >= month_start, Client.created_at <= as_of),
        "new_this_week": count(
            Client.created_at >= as_of - timedelta(days=7), Client.created_at <= as_of
        ),
    }


def update_client(db: Session, business_id: int, client_id: int, **changes) -> Client:
    client = get_client(db, business_id, client_id)
    if changes.get("first_name") is not None:
        client.first_name = _required_text(changes["first_name"], "first_name", 50)
    if changes.get("last_name") is not None:
        client.last_name = _required_text(changes["last_name"], "last_name", 50)
    if changes.get("whatsapp_number") is not None:
        number = require_phone(changes["whatsapp_number"])
        duplicate = _find_active_client_by_number(db, business_id, number, skip_client_id=client.id)
        if duplicate is not None:
            raise ConflictError(
                "WhatsApp number already exists for this business", conflicting_id=duplicate.id
            )
        client.whatsapp_number = number
    if "email" in changes:
        client.email = _validate_email(changes["email"])
    if "date_of_birth" in changes:
        client.date_of_birth = _validate_birth_date(changes["date_of_birth"])
    if "notes" in changes:
        client.notes = _validate_notes(changes["notes"])
    db.commit()
    db.refresh(client)
    return client


def deactivate_client(db: Session, business_id: int, client_id: int) -> Client:
    # Appointments keep their client_id; the reference is weak.
    client = get_client(db, business_id, client_id)
    client.is_active = False
    db.commit()
    db.refresh(client)
    logger.info("client_deactivated", business_id=business_id, client_id=client.id)
    return client


# Appointments


def _get_appointment_row(db: Session, business_id: int, appointment_id: int) -> Appointment:
    appointment = db.execute(
        select(Appointment).where(
            Appointment.id == appointment_id,
            Appointment.business_id == business_id,
            Appointment.is_active.is_(True),
        )
    ).scalar_one_or_none()
    if appointment is None:
        raise NotFoundError("Appointment", appointment_id)
    return appointment


def get_appointment(db: Session, business_id: int, appointment_id: int) -> Appointment:
    return _get_appointment_row(db, business_id, appointment_id)


def find_conflict(
    db: Session,
    business_id: int,
    starts_at: datetime,
    ends_at: datetime,
    skip_appointment_id: int | None = None,
) -> Appointment | None:
    stmt = select(Appointment).where(
        Appointment.business_id == business_id,
        Appointment.is_active.is_(True),
        Appointment.status.in_(BLOCKING_STATUSES),
        Appointment.starts_at < ends_at,
        Appointment.ends_at > starts_at,
    )
    if skip_appointment_id is not None:
        stmt = stmt.where(Appointment.id != skip_appointment_id)
    return db.execute(stmt.order_by(Appointment.starts_at.asc()).limit(1)).scalar_one_or_none()


def check_slot_available(
    db: Session,
    business_id: int,
    starts_at: datetime,
    duration_min: int,
    skip_appointment_id: int | None = None,
) -> tuple[bool, Appointment | None]:
    start = to_utc_naive(starts_at)
    end = start + timedelta(minutes=int(duration_min))
    existing = find_conflict(db, business_id, start, end, skip_appointment_id)
    return existing is None, existing


def _ensure_no_conflict(
    db: Session,
    appointment: Appointment,
    skip_appointment_id: int | None = None,
) -> None:
    existing = find_conflict(
        db,
        appointment.business_id,
        appointment.starts_at,
        appointment.ends_at,
        skip_appointment_id,
    )
    if existing is not None:
        logger.info(
            "appointment_conflict",
            business_id=appointment.business_id,
            conflicting_id=existing.id,
        )
        raise ConflictError(
            "Time slot conflicts with an existing appointment",
            conflicting_id=existing.id,
            conflicting_start=existing.starts_at,
            conflicting_end=existing.ends_at,
        )


def add_status_event(
    db: Session,
    business_id: int,
    appointment_id: int,
    from_status: str | None,
    to_status: str,
    note: str | None = None,
) -> AppointmentStatusEvent:
    event = AppointmentStatusEvent(
        business_id=business_id,
        appointment_id=appointment_id,
        from_status=from_status,
        to_status=to_status,
        note=(_clean_text(note) or "")[:300] or None,
        created_at=utc_now_naive(),
    )
    db.add(event)
    db.flush()
    return event


def schedule(
    db: Session,
    business_id: int,
    service: str,
    starts_at: datetime,
    duration_min: int | None = None,
    client_id: int | None = None,
    price: float | None = None,
    currency: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    now = now or utc_now_naive()
    with _business_transaction(db, business_id) as business:
        duration = _validate_duration(duration_min)
        start = _validate_start(starts_at, business.timezone, now)
        if client_id is not None:
            get_client(db, business_id, client_id)

        appointment = Appointment(
            business_id=business_id,
            client_id=client_id,
            service=_required_text(service, "service", 100),
            status="scheduled",
            price=_validate_price(price),
            currency=_validate_currency(currency),
            notes=_validate_notes(notes),
            is_active=True,
        )
        appointment.set_interval(start, duration)
        _ensure_no_conflict(db, appointment)

        db.add(appointment)
        db.flush()
        add_status_event(db, business_id, appointment.id, None, "scheduled", note="created")
        db.commit()

    db.refresh(appointment)
    logger.info(
        "appointment_scheduled",
        business_id=business_id,
        appointment_id=appointment.id,
        starts_at=appointment.starts_at.isoformat(),
        duration_min=appointment.duration_min,
    )
    return appointment


def reschedule(
    db: Session,
    business_id: int,
    appointment_id: int,
    starts_at: datetime,
    duration_min: int | None = None,
    now: datetime | None = None,
) -> Appointment:
    now = now or utc_now_naive()
    with _business_transaction(db, business_id) as business:
        appointment = _get_appointment_row(db, business_id, appointment_id)
        if appointment.is_terminal:
            raise InvalidTransitionError(
                appointment.status,
                appointment.status,
                message=f"Cannot reschedule a {appointment.status} appointment",
            )
        duration = _validate_duration(
            duration_min if duration_min is not None else appointment.duration_min
        )
        start = _validate_start(starts_at, business.timezone, now)

        previous_start = appointment.starts_at
        appointment.set_interval(start, duration)
        _ensure_no_conflict(db, appointment, skip_appointment_id=appointment.id)
        add_status_event(
            db,
            business_id,
            appointment.id,
            appointment.status,
            appointment.status,
            note=f"rescheduled from {previous_start.isoformat()}",
        )
        db.commit()

    db.refresh(appointment)
    logger.info(
        "appointment_rescheduled",
        business_id=business_id,
        appointment_id=appointment.id,
        starts_at=appointment.starts_at.isoformat(),
    )
    return appointment


def _record_client_completion(db: Session, business_id: int, appointment: Appointment) -> None:
    # Best effort: the status transition is already committed.
    try:
        client = db.execute(
            select(Client).where(
                Client.id == appointment.client_id,
                Client.business_id == business_id,
            )
        ).scalar_one_or_none()
        if client is None:
            logger.warning(
                "client_counter_update_skipped",
                appointment_id=appointment.id,
                client_id=appointment.client_id,
            )
            return
        client.record_completed_appointment(appointment.starts_at)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(
            "client_counter_update_failed",
            appointment_id=appointment.id,
            client_id=appointment.client_id,
            error=str(exc),
        )


def update_status(
    db: Session,
    business_id: int,
    appointment_id: int,
    new_status: str,
    note: str | None = None,
) -> Appointment:
    target_status = (new_status or "").strip().lower()
    if target_status not in APPOINTMENT_STATUSES:
        raise ValidationError("status", f"must be one of {', '.join(APPOINTMENT_STATUSES)}")

    with _business_transaction(db, business_id):
        appointment = _get_appointment_row(db, business_id, appointment_id)
        current_status = appointment.status
        if current_status in TERMINAL_STATUSES:
            raise InvalidTransitionError(current_status, target_status)
        if target_status == current_status:
            db.commit()
            return appointment
        if target_status not in ALLOWED_STATUS_TRANSITIONS.get(current_status, set()):
            raise InvalidTransitionError(current_status, target_status)

        appointment.status = target_status
        add_status_event(db, business_id, appointment.id, current_status, target_status, note=note)
        db.commit()

    db.refresh(appointment)
    logger.info(
        "appointment_status_changed",
        business_id=business_id,
        appointment_id=appointment.id,
        from_status=current_status,
        to_status=target_status,
    )

    if target_status == "completed" and appointment.client_id is not None:
        _record_client_completion(db, business_id, appointment)
        db.refresh(appointment)
    return appointment


def cancel(
    db: Session, business_id: int, appointment_id: int, note: str | None = None
) -> Appointment:
    return update_status(db, business_id, appointment_id, "cancelled", note=note)


def update_appointment_details(
    db: Session, business_id: int, appointment_id: int, **changes
) -> Appointment:
    with _business_transaction(db, business_id):
        appointment = _get_appointment_row(db, business_id, appointment_id)
        if changes.get("service") is not None:
            appointment.service = _required_text(changes["service"], "service", 100)
        if "price" in changes:
            appointment.price = _validate_price(changes["price"])
        if changes.get("currency") is not None:
            appointment.currency = _validate_currency(changes["currency"])
        if "notes" in changes:
            appointment.notes = _validate_notes(changes["notes"])
        if "client_id" in changes:
            if changes["client_id"] is not None:
                get_client(db, business_id, changes["client_id"])
            appointment.client_id = changes["client_id"]
        db.commit()
    db.refresh(appointment)
    return appointment


def delete_appointment(db: Session, business_id: int, appointment_id: int) -> Appointment:
    with _business_transaction(db, business_id):
        appointment = _get_appointment_row(db, business_id, appointment_id)
        appointment.is_active = False
        db.commit()
    logger.info("appointment_deleted", business_id=business_id, appointment_id=appointment_id)
    return appointment


def list_for_business(
    db: Session,
    business_id: int,
    status: str | None = None,
    client_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    page_size: int = 50,
    sort: str = "starts_at",
    order: str = "asc",
) -> tuple[list[Appointment], int]:
    page, page_size = _page_bounds(page, page_size)
    conditions = [Appointment.business_id == business_id, Appointment.is_active.is_(True)]
    if status:
        normalized = status.strip().lower()
        if normalized not in APPOINTMENT_STATUSES:
            raise ValidationError("status", f"must be one of {', '.join(APPOINTMENT_STATUSES)}")
        conditions.append(Appointment.status == normalized)
    if client_id is not None:
        conditions.append(Appointment.client_id == client_id)
    if date_from is not None:
        conditions.append(Appointment.starts_at >= to_utc_naive(date_from))
    if date_to is not None:
        conditions.append(Appointment.starts_at <= to_utc_naive(date_to))
    ordering = _order_by(APPOINTMENT_SORT_FIELDS, sort, order)

    total = db.execute(select(func.count(Appointment.id)).where(*conditions)).scalar_one()
    rows = (
        db.execute(
            select(Appointment)
            .where(*conditions)
            .order_by(ordering, Appointment.id.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return list(rows), int(total)


def _local_midnight_utc(day: date, tz_name: str | None) -> datetime:
    local = datetime(day.year, day.month, day.day, tzinfo=ZoneInfo(tz_name or "UTC"))
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def stats(db: Session, business_id: int, as_of: datetime | None = None) -> dict:
    business = get_business(db, business_id)
    as_of = to_utc_naive(as_of) if as_of else utc_now_naive()
    today = to_local(as_of, business.timezone).date()
    day_start = _local_midnight_utc(today, business.timezone)
    day_end = _local_midnight_utc(today + timedelta(days=1), business.timezone)
    month_first = today.replace(day=1)
    next_month_first = (
        date(month_first.year + 1, 1, 1)
        if month_first.month == 12
        else date(month_first.year, month_first.month + 1, 1)
    )
    month_start = _local_midnight_utc(month_first, business.timezone)
    month_end = _local_midnight_utc(next_month_first, business.timezone)

    def count(*conditions) -> int:
        return int(
            db.execute(
                select(func.count(Appointment.id)).where(
                    Appointment.business_id == business_id,
                    Appointment.is_active.is_(True),
                    *conditions,
                )
            ).scalar_one()
        )

    return {
        "total": count(),
        "today": count(Appointment.starts_at >= day_start, Appointment.starts_at < day_end),
        "this_month": count(
            Appointment.starts_at >= month_start, Appointment.starts_at < month_end
        ),
        "upcoming": count(
            Appointment.status.in_(BLOCKING_STATUSES), Appointment.starts_at >= as_of
        ),
        "completed": count(Appointment.status == "completed"),
        "cancelled": count(Appointment.status == "cancelled"),
    }


def list_status_events(
    db: Session, business_id: int, appointment_id: int
) -> list[AppointmentStatusEvent]:
    _get_appointment_row(db, business_id, appointment_id)
    stmt = (
        select(AppointmentStatusEvent)
        .where(
            AppointmentStatusEvent.business_id == business_id,
            AppointmentStatusEvent.appointment_id == appointment_id,
        )
        .order_by(AppointmentStatusEvent.created_at.asc(), AppointmentStatusEvent.id.asc())
    )
    return list(db.execute(stmt).scalars().all())


def record_reminder(
    db: Session,
    business_id: int,
    appointment_id: int,
    kind: str,
    result: str,
    message_id: int | None = None,
    at: datetime | None = None,
) -> AppointmentReminder:
    if kind not in REMINDER_RECORD_KINDS:
        raise ValidationError("kind", f"must be one of {', '.join(sorted(REMINDER_RECORD_KINDS))}")
    if result not in REMINDER_RESULTS:
        raise ValidationError("result", f"must be one of {', '.join(sorted(REMINDER_RESULTS))}")
    _get_appointment_row(db, business_id, appointment_id)

    row = db.execute(
        select(AppointmentReminder).where(
            AppointmentReminder.appointment_id == appointment_id,
            AppointmentReminder.kind == kind,
        )
    ).scalar_one_or_none()
    if row is None:
        row = AppointmentReminder(appointment_id=appointment_id, kind=kind)
        db.add(row)
    row.result = result
    row.message_id = message_id if message_id is not None else row.message_id
    row.recorded_at = at or utc_now_naive()
    db.commit()
    db.refresh(row)
    return row
