"""Typed failures raised by the appointment store and the notification dispatcher.

Every error carries a human readable ``message`` and a ``details`` dict that
the HTTP layer copies into the response body, so callers can explain which
field was rejected or which interval is already taken.
"""

from datetime import datetime


class NotifyWiseError(Exception):
    kind = "error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"detail": self.message, "error": self.kind}
        payload.update(self.details)
        return payload


class ValidationError(NotifyWiseError):
    kind = "validation_error"

    def __init__(self, field: str, constraint: str, message: str | None = None):
        super().__init__(message or f"{field}: {constraint}", field=field, constraint=constraint)
        self.field = field
        self.constraint = constraint


class ConflictError(NotifyWiseError):
    kind = "conflict"

    def __init__(
        self,
        message: str,
        *,
        conflicting_id: int | None = None,
        conflicting_start: datetime | None = None,
        conflicting_end: datetime | None = None,
    ):
        details = {}
        if conflicting_id is not None:
            details["conflicting_id"] = conflicting_id
        if conflicting_start is not None:
            details["conflicting_start"] = conflicting_start.isoformat()
        if conflicting_end is not None:
            details["conflicting_end"] = conflicting_end.isoformat()
        super().__init__(message, **details)
        self.conflicting_id = conflicting_id
        self.conflicting_start = conflicting_start
        self.conflicting_end = conflicting_end


class InvalidTransitionError(NotifyWiseError):
    kind = "invalid_transition"

    def __init__(self, from_status: str, to_status: str, message: str | None = None):
        super().__init__(
            message or f"Invalid status transition: {from_status} -> {to_status}",
            from_status=from_status,
            to_status=to_status,
        )
        self.from_status = from_status
        self.to_status = to_status


class NotFoundError(NotifyWiseError):
    kind = "not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} not found", entity=entity, id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class NotRetryableError(NotifyWiseError):
    kind = "not_retryable"

    def __init__(self, message_id: int, status: str, retry_count: int, max_retries: int):
        super().__init__(
            f"Message {message_id} cannot be retried",
            status=status,
            retry_count=retry_count,
            max_retries=max_retries,
        )
        self.status = status
        self.retry_count = retry_count
        self.max_retries = max_retries


class GatewayError(NotifyWiseError):
    kind = "gateway_error"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, status_code=status_code)
        self.status_code = status_code
