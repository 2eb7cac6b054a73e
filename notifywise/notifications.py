"""Notification dispatch for appointment events.

The dispatcher renders a message from the business templates, sends it
through an injected :class:`~notifywise.gateway.MessagingGateway` and keeps
the resulting ``NotificationMessage`` row in step with delivery progress.
It never reads appointments, clients or businesses from storage: callers
hand it read-only views built with the ``from_model`` constructors below.

A message row is written only once the gateway call has settled, so an
abandoned request never leaves a half-updated message behind.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import settings
from .errors import GatewayError, InvalidTransitionError, NotFoundError, NotRetryableError, ValidationError
from .gateway import GatewayResult, MessagingGateway
from .models import MESSAGE_STATUSES, MESSAGE_TYPES, NotificationMessage, to_utc_naive, utc_now_naive
from .phone import is_valid_phone, normalize_phone
from .templates import build_values, check_length, render, select_template

logger = structlog.get_logger("notifywise.notifications")

DELIVERY_RANK = {"sent": 1, "delivered": 2, "read": 3}
MIN_MAX_RETRIES = 1
MAX_MAX_RETRIES = 10


@dataclass(frozen=True)
class BusinessView:
    id: int
    name: str
    timezone: str = "UTC"
    message_templates: dict | None = None

    @classmethod
    def from_model(cls, business) -> "BusinessView":
        return cls(
            id=business.id,
            name=business.name,
            timezone=business.timezone or "UTC",
            message_templates=dict(business.message_templates or {}),
        )


@dataclass(frozen=True)
class ClientView:
    id: int
    first_name: str
    last_name: str
    whatsapp_number: str

    @classmethod
    def from_model(cls, client) -> "ClientView":
        return cls(
            id=client.id,
            first_name=client.first_name,
            last_name=client.last_name,
            whatsapp_number=client.whatsapp_number,
        )


@dataclass(frozen=True)
class AppointmentView:
    id: int
    business_id: int
    service: str
    starts_at: datetime
    duration_min: int
    status: str

    @classmethod
    def from_model(cls, appointment) -> "AppointmentView":
        return cls(
            id=appointment.id,
            business_id=appointment.business_id,
            service=appointment.service,
            starts_at=appointment.starts_at,
            duration_min=appointment.duration_min,
            status=appointment.status,
        )


def is_retryable(message: NotificationMessage) -> bool:
    return message.status == "failed" and int(message.retry_count or 0) < int(message.max_retries or 0)


def retry_delay(message: NotificationMessage, base_seconds: int) -> timedelta:
    return timedelta(seconds=max(0, int(base_seconds)) * 2 ** int(message.retry_count or 0))


def reminder_record_kind(message: NotificationMessage) -> str:
    if message.message_type == "reminder" and message.reminder_kind:
        return f"reminder-{message.reminder_kind}"
    return message.message_type


def reminder_record_result(message: NotificationMessage) -> str | None:
    if message.status in {"delivered", "read"}:
        return "delivered"
    if message.status in {"sent", "failed"}:
        return message.status
    return None


class NotificationDispatcher:
    def __init__(
        self,
        db: Session,
        gateway: MessagingGateway,
        config=settings,
        clock: Callable[[], datetime] = utc_now_naive,
    ):
        self.db = db
        self.gateway = gateway
        self.config = config
        self.clock = clock

    def compose(
        self,
        message_type: str,
        appointment: AppointmentView,
        client: ClientView,
        business: BusinessView,
        reminder_kind: str | None = "24h",
        custom_text: str | None = None,
    ) -> str:
        if message_type == "custom" and (custom_text or "").strip():
            template = custom_text.strip()
        else:
            template = select_template(
                message_type,
                reminder_kind if message_type == "reminder" else None,
                business.message_templates,
            )
        values = build_values(
            client_name=client.first_name,
            service=appointment.service,
            starts_at=appointment.starts_at,
            business_name=business.name,
            tz_name=business.timezone,
            message_type=message_type,
            reminder_kind=reminder_kind if message_type == "reminder" else None,
        )
        return check_length(render(template, values))

    def dispatch(
        self,
        message_type: str,
        appointment: AppointmentView,
        client: ClientView | None,
        business: BusinessView,
        scheduled_for: datetime | None = None,
        reminder_kind: str | None = "24h",
        custom_text: str | None = None,
        max_retries: int | None = None,
    ) -> NotificationMessage:
        if scheduled_for is not None:
            scheduled_for = to_utc_naive(scheduled_for)
        if message_type not in MESSAGE_TYPES:
            raise ValidationError("type", f"must be one of {', '.join(MESSAGE_TYPES)}")
        if client is None:
            raise ValidationError("client", "appointment has no client to notify")
        if not is_valid_phone(client.whatsapp_number):
            raise ValidationError("whatsapp_number", "must contain 10 to 15 digits")

        retries = self.config.NOTIFICATION_MAX_RETRIES if max_retries is None else int(max_retries)
        if retries < MIN_MAX_RETRIES or retries > MAX_MAX_RETRIES:
            raise ValidationError(
                "max_retries", f"must be between {MIN_MAX_RETRIES} and {MAX_MAX_RETRIES}"
            )

        content = self.compose(message_type, appointment, client, business, reminder_kind, custom_text)
        now = self.clock()
        message = NotificationMessage(
            business_id=business.id,
            appointment_id=appointment.id,
            client_id=client.id,
            message_type=message_type,
            reminder_kind=reminder_kind if message_type == "reminder" else None,
            destination=normalize_phone(client.whatsapp_number, self.config),
            content=content,
            status="pending",
            scheduled_for=scheduled_for,
            retry_count=0,
            max_retries=retries,
            created_at=now,
            updated_at=now,
        )

        if scheduled_for is not None and scheduled_for > now:
            self.db.add(message)
            self.db.commit()
            self.db.refresh(message)
            logger.info(
                "notification_scheduled",
                business_id=business.id,
                message_id=message.id,
                message_type=message_type,
                scheduled_for=scheduled_for.isoformat(),
            )
            return message

        result = self._send(message)
        self._settle(message, result)
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)
        self._log_outcome(message)
        return message

    def get_message(self, business_id: int, message_id: int) -> NotificationMessage:
        message = self.db.execute(
            select(NotificationMessage).where(
                NotificationMessage.id == message_id,
                NotificationMessage.business_id == business_id,
            )
        ).scalar_one_or_none()
        if message is None:
            raise NotFoundError("Message", message_id)
        return message

    def send_pending(self, business_id: int, message_id: int) -> NotificationMessage:
        message = self.get_message(business_id, message_id)
        if message.status != "pending":
            raise NotRetryableError(
                message.id, message.status, int(message.retry_count), int(message.max_retries)
            )
        result = self._send(message)
        self._settle(message, result)
        self.db.commit()
        self.db.refresh(message)
        self._log_outcome(message)
        return message

    def retry(self, business_id: int, message_id: int) -> NotificationMessage:
        message = self.get_message(business_id, message_id)
        if not is_retryable(message):
            raise NotRetryableError(
                message.id, message.status, int(message.retry_count), int(message.max_retries)
            )
        result = self._send(message)
        message.retry_count = int(message.retry_count) + 1
        self._settle(message, result)
        self.db.commit()
        self.db.refresh(message)
        self._log_outcome(message)
        return message

    def record_delivery_update(
        self,
        business_id: int,
        message_id: int,
        new_status: str,
        at: datetime | None = None,
    ) -> NotificationMessage:
        target = (new_status or "").strip().lower()
        if target not in {"delivered", "read"}:
            raise ValidationError("status", "must be delivered or read")
        message = self.get_message(business_id, message_id)
        if message.status not in DELIVERY_RANK:
            raise InvalidTransitionError(message.status, target)

        if DELIVERY_RANK[target] <= DELIVERY_RANK[message.status]:
            return message

        at = at or self.clock()
        if message.delivered_at is None:
            message.delivered_at = at
        if target == "read" and message.read_at is None:
            message.read_at = at
        message.status = target
        message.updated_at = self.clock()
        self.db.commit()
        self.db.refresh(message)
        logger.info("notification_delivery_update", message_id=message.id, status=target)
        return message

    def find_by_provider_id(self, provider_id: str) -> NotificationMessage:
        if not (provider_id or "").strip():
            raise NotFoundError("Message", provider_id)
        message = self.db.execute(
            select(NotificationMessage)
            .where(NotificationMessage.provider_message_id == provider_id)
            .order_by(NotificationMessage.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if message is None:
            raise NotFoundError("Message", provider_id)
        return message

    def list_messages(
        self,
        business_id: int,
        status: str | None = None,
        message_type: str | None = None,
        appointment_id: int | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[NotificationMessage], int]:
        page = max(1, int(page))
        page_size = max(1, min(int(page_size), 200))
        conditions = [NotificationMessage.business_id == business_id]
        if status:
            if status not in MESSAGE_STATUSES:
                raise ValidationError("status", f"must be one of {', '.join(MESSAGE_STATUSES)}")
            conditions.append(NotificationMessage.status == status)
        if message_type:
            if message_type not in MESSAGE_TYPES:
                raise ValidationError("type", f"must be one of {', '.join(MESSAGE_TYPES)}")
            conditions.append(NotificationMessage.message_type == message_type)
        if appointment_id is not None:
            conditions.append(NotificationMessage.appointment_id == appointment_id)

        total = self.db.execute(
            select(func.count(NotificationMessage.id)).where(*conditions)
        ).scalar_one()
        rows = (
            self.db.execute(
                select(NotificationMessage)
                .where(*conditions)
                .order_by(NotificationMessage.created_at.desc(), NotificationMessage.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            .scalars()
            .all()
        )
        return list(rows), int(total)

    def message_stats(self, business_id: int) -> dict:
        rows = self.db.execute(
            select(NotificationMessage.status, func.count(NotificationMessage.id))
            .where(NotificationMessage.business_id == business_id)
            .group_by(NotificationMessage.status)
        ).all()
        result = {status: 0 for status in MESSAGE_STATUSES}
        for status, count in rows:
            result[status] = int(count)
        result["total"] = sum(result[status] for status in MESSAGE_STATUSES)
        settled = result["sent"] + result["delivered"] + result["read"]
        attempted = settled + result["failed"]
        result["success_rate"] = round(settled / attempted, 4) if attempted else 0.0
        return result

    def due_pending_messages(self, limit: int = 100) -> list[NotificationMessage]:
        stmt = (
            select(NotificationMessage)
            .where(
                NotificationMessage.status == "pending",
                NotificationMessage.scheduled_for <= self.clock(),
            )
            .order_by(NotificationMessage.scheduled_for.asc(), NotificationMessage.id.asc())
            .limit(max(1, int(limit)))
        )
        return list(self.db.execute(stmt).scalars().all())

    def retryable_messages(
        self,
        limit: int = 100,
        backoff_seconds: int | None = None,
        exclude_ids=(),
    ) -> list[NotificationMessage]:
        """Failed messages with retry budget left whose backoff has elapsed.

        A message that failed ``retry_count`` times waits
        ``backoff_seconds * 2 ** retry_count`` after its last attempt.
        """
        base = self.config.NOTIFICATION_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        now = self.clock()
        conditions = [
            NotificationMessage.status == "failed",
            NotificationMessage.retry_count < NotificationMessage.max_retries,
            NotificationMessage.updated_at <= now - timedelta(seconds=max(0, int(base))),
        ]
        if exclude_ids:
            conditions.append(NotificationMessage.id.not_in(list(exclude_ids)))
        stmt = (
            select(NotificationMessage)
            .where(*conditions)
            .order_by(NotificationMessage.updated_at.asc(), NotificationMessage.id.asc())
        )
        limit = max(1, int(limit))
        due = []
        for message in self.db.execute(stmt).scalars().all():
            if message.updated_at + retry_delay(message, base) <= now:
                due.append(message)
                if len(due) >= limit:
                    break
        return due

    def _send(self, message: NotificationMessage) -> GatewayResult:
        try:
            return self.gateway.send_text(message.destination, message.content)
        except GatewayError as exc:
            return GatewayResult(ok=False, error_text=exc.message)
        except Exception as exc:
            logger.exception(
                "gateway_unexpected_error",
                message_id=message.id,
                destination=message.destination,
            )
            return GatewayResult(ok=False, error_text=str(exc) or type(exc).__name__)

    def _settle(self, message: NotificationMessage, result: GatewayResult) -> None:
        now = self.clock()
        if result.ok:
            message.status = "sent"
            message.sent_at = now
            message.provider_message_id = result.provider_id
            message.error_message = None
        else:
            message.status = "failed"
            message.error_message = (result.error_text or "Failed to send WhatsApp message")[:500]
        message.updated_at = now

    def _log_outcome(self, message: NotificationMessage) -> None:
        if message.status == "sent":
            logger.info(
                "notification_sent",
                business_id=message.business_id,
                message_id=message.id,
                message_type=message.message_type,
                destination=message.destination,
                retry_count=message.retry_count,
            )
        else:
            logger.warning(
                "notification_failed",
                business_id=message.business_id,
                message_id=message.id,
                message_type=message.message_type,
                destination=message.destination,
                retry_count=message.retry_count,
                error=message.error_message,
            )
