import math
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .errors import ConflictError, NotFoundError, NotifyWiseError
from .gateway import MessagingGateway, build_gateway
from .models import Appointment, Business, Client, NotificationMessage, to_utc_naive, utc_now_naive
from .notifications import (
    AppointmentView,
    BusinessView,
    ClientView,
    NotificationDispatcher,
    reminder_record_kind,
    reminder_record_result,
)
from .phone import digits_only
from .rate_limit import SlidingWindowRateLimiter
from .schemas import (
    AppointmentCreate,
    AppointmentOut,
    AppointmentPage,
    AppointmentReschedule,
    AppointmentStats,
    AppointmentStatusEventOut,
    AppointmentStatusUpdate,
    AppointmentUpdate,
    BusinessCreate,
    BusinessOut,
    BusinessUpdate,
    ClientCreate,
    ClientOut,
    ClientPage,
    ClientStats,
    ClientUpdate,
    DeliveryStatusUpdate,
    MessagePage,
    MessageStats,
    NotificationCreate,
    NotificationOut,
    Page,
    PublicBookingCreate,
    PublicBookingOut,
    ReminderOut,
)
from . import services

logger = structlog.get_logger("notifywise.api")

router = APIRouter(prefix="/api")
public_router = APIRouter(prefix="/public")
webhook_router = APIRouter(prefix="/webhooks")

ERROR_STATUS_CODES = {
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "conflict": status.HTTP_409_CONFLICT,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "not_found": status.HTTP_404_NOT_FOUND,
    "not_retryable": status.HTTP_409_CONFLICT,
    "gateway_error": status.HTTP_502_BAD_GATEWAY,
}

_gateway: MessagingGateway | None = None
_public_rate_limiter = SlidingWindowRateLimiter(
    limit=settings.PUBLIC_RL_PER_WINDOW,
    window_seconds=settings.PUBLIC_RL_WINDOW_SECONDS,
)


async def notifywise_error_handler(request: Request, exc: NotifyWiseError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(exc.kind, status.HTTP_400_BAD_REQUEST)
    logger.info("request_rejected", error=exc.kind, detail=exc.message, status=status_code)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(NotifyWiseError, notifywise_error_handler)


def get_gateway() -> MessagingGateway:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway()
    return _gateway


def get_rate_limiter() -> SlidingWindowRateLimiter:
    return _public_rate_limiter


def get_dispatcher(
    db: Session = Depends(get_db),
    gateway: MessagingGateway = Depends(get_gateway),
) -> NotificationDispatcher:
    return NotificationDispatcher(db, gateway)


def get_current_business(
    db: Session = Depends(get_db),
    x_business_id: int = Header(...),
) -> Business:
    return services.get_business(db, x_business_id)


def _page(page: int, page_size: int, total: int) -> Page:
    return Page(
        page=page,
        page_size=page_size,
        total=total,
        total_pages=math.ceil(total / page_size) if page_size else 0,
    )


def _to_business_out(b: Business) -> BusinessOut:
    return BusinessOut(
        id=b.id,
        owner_id=b.owner_id,
        name=b.name,
        whatsapp_number=b.whatsapp_number,
        timezone=b.timezone,
        services=list(b.services or []),
        message_templates=dict(b.message_templates or {}),
        is_active=bool(b.is_active),
        created_at=b.created_at,
    )


def _to_client_out(c: Client) -> ClientOut:
    return ClientOut(
        id=c.id,
        business_id=c.business_id,
        first_name=c.first_name,
        last_name=c.last_name,
        full_name=c.full_name,
        initials=c.initials,
        whatsapp_number=c.whatsapp_number,
        email=c.email,
        date_of_birth=c.date_of_birth,
        notes=c.notes,
        total_appointments=int(c.total_appointments or 0),
        last_appointment_at=c.last_appointment_at,
        created_at=c.created_at,
    )


def _to_appointment_out(a: Appointment, tz_name: str | None = None) -> AppointmentOut:
    now = utc_now_naive()
    return AppointmentOut(
        id=a.id,
        business_id=a.business_id,
        client_id=a.client_id,
        service=a.service,
        starts_at=a.starts_at,
        ends_at=a.ends_at,
        duration_min=a.duration_min,
        status=a.status,
        price=float(a.price) if a.price is not None else None,
        currency=a.currency,
        notes=a.notes,
        is_upcoming=a.is_upcoming(now),
        is_today=a.is_today(now, tz_name),
        reminders=[
            ReminderOut(
                kind=r.kind,
                result=r.result,
                message_id=r.message_id,
                recorded_at=r.recorded_at,
            )
            for r in a.reminders
        ],
        created_at=a.created_at,
    )


def _to_message_out(m: NotificationMessage) -> NotificationOut:
    return NotificationOut(
        id=m.id,
        business_id=m.business_id,
        appointment_id=m.appointment_id,
        client_id=m.client_id,
        type=m.message_type,
        reminder_kind=m.reminder_kind,
        content=m.content,
        provider_message_id=m.provider_message_id,
        status=m.status,
        scheduled_for=m.scheduled_for,
        sent_at=m.sent_at,
        delivered_at=m.delivered_at,
        read_at=m.read_at,
        error_message=m.error_message,
        retry_count=int(m.retry_count),
        max_retries=int(m.max_retries),
        can_retry=m.can_retry,
        is_overdue=m.is_overdue(utc_now_naive()),
        delivery_seconds=m.delivery_seconds,
        read_seconds=m.read_seconds,
        created_at=m.created_at,
    )


def _client_view(db: Session, business_id: int, appointment: Appointment) -> ClientView | None:
    if appointment.client_id is None:
        return None
    try:
        client = services.get_client(db, business_id, appointment.client_id)
    except NotFoundError:
        return None
    return ClientView.from_model(client)


def record_outcome(db: Session, message: NotificationMessage) -> None:
    result = reminder_record_result(message)
    if result is None:
        return
    try:
        services.record_reminder(
            db,
            message.business_id,
            message.appointment_id,
            reminder_record_kind(message),
            result,
            message_id=message.id,
        )
    except NotFoundError:
        logger.warning(
            "reminder_record_skipped",
            message_id=message.id,
            appointment_id=message.appointment_id,
        )


def _dispatch_for_appointment(
    db: Session,
    dispatcher: NotificationDispatcher,
    business: Business,
    appointment: Appointment,
    message_type: str,
    **kwargs,
) -> NotificationMessage:
    message = dispatcher.dispatch(
        message_type,
        AppointmentView.from_model(appointment),
        _client_view(db, business.id, appointment),
        BusinessView.from_model(business),
        **kwargs,
    )
    record_outcome(db, message)
    return message


# Businesses


@router.post("/businesses", response_model=BusinessOut, status_code=status.HTTP_201_CREATED)
def add_business(payload: BusinessCreate, db: Session = Depends(get_db)):
    business = services.create_business(
        db,
        owner_id=payload.owner_id,
        name=payload.name,
        whatsapp_number=payload.whatsapp_number,
        timezone_name=payload.timezone,
        services=payload.services,
        message_templates=payload.message_templates,
    )
    return _to_business_out(business)


@router.get("/businesses/me", response_model=BusinessOut)
def read_business(business: Business = Depends(get_current_business)):
    return _to_business_out(business)


@router.patch("/businesses/me", response_model=BusinessOut)
def patch_business(
    payload: BusinessUpdate,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    return _to_business_out(services.update_business(db, business.id, **changes))


@router.delete("/businesses/me", response_model=BusinessOut)
def remove_business(
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    return _to_business_out(services.deactivate_business(db, business.id))


# Clients


@router.post("/clients", response_model=ClientOut, status_code=status.HTTP_201_CREATED)
def add_client(
    payload: ClientCreate,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    client = services.create_client(db, business.id, **payload.model_dump())
    return _to_client_out(client)


@router.get("/clients", response_model=ClientPage)
def list_clients(
    search: str | None = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    sort: str = Query(default="created_at"),
    order: str = Query(default="desc"),
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    rows, total = services.list_clients(
        db, business.id, search=search, page=page, page_size=page_size, sort=sort, order=order
    )
    return ClientPage(items=[_to_client_out(c) for c in rows], pagination=_page(page, page_size, total))


@router.get("/clients/stats", response_model=ClientStats)
def read_client_stats(
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    return ClientStats(**services.client_stats(db, business.id))


@router.get("/clients/{client_id}", response_model=ClientOut)
def read_client(
    client_id: int,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    return _to_client_out(services.get_client(db, business.id, client_id))


@router.patch("/clients/{client_id}", response_model=ClientOut)
def patch_client(
    client_id: int,
    payload: ClientUpdate,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    return _to_client_out(services.update_client(db, business.id, client_id, **changes))


@router.delete("/clients/{client_id}", response_model=ClientOut)
def remove_client(
    client_id: int,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    return _to_client_out(services.deactivate_client(db, business.id, client_id))


# Appointments


@router.post("/appointments", response_model=AppointmentOut, status_code=status.HTTP_201_CREATED)
def add_appointment(
    payload: AppointmentCreate,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    appointment = services.schedule(
        db,
        business.id,
        service=payload.service,
        starts_at=payload.starts_at,
        duration_min=payload.duration_min,
        client_id=payload.client_id,
        price=payload.price,
        currency=payload.currency,
        notes=payload.notes,
    )
    if payload.send_confirmation and appointment.client_id is not None:
        _dispatch_for_appointment(db, dispatcher, business, appointment, "confirmation")
        db.refresh(appointment)
    return _to_appointment_out(appointment, business.timezone)


@router.get("/appointments", response_model=AppointmentPage)
def list_appointments(
    status_filter: str | None = Query(default=None, alias="status"),
    client_id: int | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    sort: str = Query(default="starts_at"),
    order: str = Query(default="asc"),
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    rows, total = services.list_for_business(
        db,
        business.id,
        status=status_filter,
        client_id=client_id,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=page_size,
        sort=sort,
        order=order,
    )
    return AppointmentPage(
        items=[_to_appointment_out(a, business.timezone) for a in rows],
        pagination=_page(page, page_size, total),
    )


@router.get("/appointments/stats", response_model=AppointmentStats)
def appointment_stats(
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    return AppointmentStats(**services.stats(db, business.id))


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
def read_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    appointment = services.get_appointment(db, business.id, appointment_id)
    return _to_appointment_out(appointment, business.timezone)


@router.patch("/appointments/{appointment_id}", response_model=AppointmentOut)
def patch_appointment(
    appointment_id: int,
    payload: AppointmentUpdate,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    appointment = services.update_appointment_details(db, business.id, appointment_id, **changes)
    return _to_appointment_out(appointment, business.timezone)


@router.delete("/appointments/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    services.delete_appointment(db, business.id, appointment_id)


@router.post("/appointments/{appointment_id}/reschedule", response_model=AppointmentOut)
def reschedule_appointment(
    appointment_id: int,
    payload: AppointmentReschedule,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    appointment = services.reschedule(
        db,
        business.id,
        appointment_id,
        starts_at=payload.starts_at,
        duration_min=payload.duration_min,
    )
    return _to_appointment_out(appointment, business.timezone)


@router.patch("/appointments/{appointment_id}/status", response_model=AppointmentOut)
def patch_appointment_status(
    appointment_id: int,
    payload: AppointmentStatusUpdate,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    appointment = services.update_status(
        db, business.id, appointment_id, payload.status, note=payload.note
    )
    return _to_appointment_out(appointment, business.timezone)


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentOut)
def cancel_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    appointment = services.cancel(db, business.id, appointment_id)
    return _to_appointment_out(appointment, business.timezone)


@router.get(
    "/appointments/{appointment_id}/events",
    response_model=list[AppointmentStatusEventOut],
)
def list_appointment_events(
    appointment_id: int,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
):
    rows = services.list_status_events(db, business.id, appointment_id)
    return [
        AppointmentStatusEventOut(
            id=e.id,
            appointment_id=e.appointment_id,
            from_status=e.from_status,
            to_status=e.to_status,
            note=e.note,
            created_at=e.created_at,
        )
        for e in rows
    ]


@router.post(
    "/appointments/{appointment_id}/notifications",
    response_model=NotificationOut,
    status_code=status.HTTP_201_CREATED,
)
def notify_appointment(
    appointment_id: int,
    payload: NotificationCreate,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    appointment = services.get_appointment(db, business.id, appointment_id)
    message = _dispatch_for_appointment(
        db,
        dispatcher,
        business,
        appointment,
        payload.type,
        scheduled_for=to_utc_naive(payload.scheduled_for) if payload.scheduled_for else None,
        reminder_kind=payload.reminder_kind,
        custom_text=payload.custom_text,
        max_retries=payload.max_retries,
    )
    return _to_message_out(message)


# Messages


@router.get("/messages", response_model=MessagePage)
def list_messages(
    status_filter: str | None = Query(default=None, alias="status"),
    message_type: str | None = Query(default=None, alias="type"),
    appointment_id: int | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    business: Business = Depends(get_current_business),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    rows, total = dispatcher.list_messages(
        business.id,
        status=status_filter,
        message_type=message_type,
        appointment_id=appointment_id,
        page=page,
        page_size=page_size,
    )
    return MessagePage(items=[_to_message_out(m) for m in rows], pagination=_page(page, page_size, total))


@router.get("/messages/stats", response_model=MessageStats)
def read_message_stats(
    business: Business = Depends(get_current_business),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return MessageStats(**dispatcher.message_stats(business.id))


@router.get("/messages/{message_id}", response_model=NotificationOut)
def read_message(
    message_id: int,
    business: Business = Depends(get_current_business),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return _to_message_out(dispatcher.get_message(business.id, message_id))


@router.post("/messages/{message_id}/retry", response_model=NotificationOut)
def retry_message(
    message_id: int,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    message = dispatcher.retry(business.id, message_id)
    record_outcome(db, message)
    return _to_message_out(message)


@router.post("/messages/{message_id}/send", response_model=NotificationOut)
def send_message_now(
    message_id: int,
    db: Session = Depends(get_db),
    business: Business = Depends(get_current_business),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    message = dispatcher.send_pending(business.id, message_id)
    record_outcome(db, message)
    return _to_message_out(message)


# Provider callbacks


@webhook_router.post("/whatsapp/status", response_model=NotificationOut)
def whatsapp_status_callback(
    payload: DeliveryStatusUpdate,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    message = dispatcher.find_by_provider_id(payload.provider_message_id)
    message = dispatcher.record_delivery_update(
        message.business_id,
        message.id,
        payload.status,
        at=to_utc_naive(payload.timestamp) if payload.timestamp else None,
    )
    record_outcome(db, message)
    return _to_message_out(message)


# Public booking


@public_router.post(
    "/businesses/{business_id}/bookings",
    response_model=PublicBookingOut,
    status_code=status.HTTP_201_CREATED,
)
def create_public_booking(
    business_id: int,
    payload: PublicBookingCreate,
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
):
    client_ip = request.client.host if request.client else "unknown"
    key = f"{client_ip}:{digits_only(payload.whatsapp_number)}"
    if not limiter.hit(key):
        logger.warning("public_booking_rate_limited", business_id=business_id)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many booking attempts, please try again later",
            headers={"Retry-After": str(limiter.retry_after(key))},
        )

    business = services.get_business(db, business_id)
    client = services.find_or_create_client(
        db,
        business.id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        whatsapp_number=payload.whatsapp_number,
        email=payload.email,
    )
    try:
        appointment = services.schedule(
            db,
            business.id,
            service=payload.service,
            starts_at=payload.starts_at,
            duration_min=payload.duration_min,
            client_id=client.id,
            notes=payload.notes,
        )
    except ConflictError:
        logger.info("public_booking_slot_taken", business_id=business.id)
        raise

    message = _dispatch_for_appointment(db, dispatcher, business, appointment, "confirmation")
    return PublicBookingOut(
        appointment_id=appointment.id,
        status=appointment.status,
        starts_at=appointment.starts_at,
        ends_at=appointment.ends_at,
        service=appointment.service,
        business_name=business.name,
        confirmation_status=message.status,
    )
