from datetime import datetime

from .errors import ValidationError
from .models import MESSAGE_TYPES, REMINDER_KINDS, to_local

MAX_CONTENT_LENGTH = 1000
TEMPLATE_KEYS = MESSAGE_TYPES + tuple(f"reminder-{kind}" for kind in REMINDER_KINDS)

REMINDER_PHRASING = {
    "24h": ("tomorrow", "📅"),
    "2h": ("in 2 hours", "⏰"),
    "30m": ("in 30 minutes", "🔔"),
}

DEFAULT_TEMPLATES = {
    "confirmation": (
        "🎉 Appointment Confirmed!\n\n"
        "Hello {clientName}! 👋\n\n"
        "Your appointment has been successfully booked:\n\n"
        "📅 Service: {service}\n"
        "🗓️ Date: {date}\n"
        "🕐 Time: {time}\n"
        "🏢 Business: {businessName}\n\n"
        "We're excited to see you!\n\n"
        "If you need to reschedule or have any questions, please don't hesitate to contact us.\n\n"
        "Thank you for choosing {businessName}! ✨"
    ),
    "reminder": (
        "{emoji} Appointment Reminder\n\n"
        "Hi {clientName}!\n\n"
        "This is a friendly reminder about your appointment {when}:\n\n"
        "📋 Service: {service}\n"
        "📅 Date: {date}\n"
        "🕐 Time: {time}\n"
        "🏢 Location: {businessName}\n\n"
        "We look forward to seeing you! 😊\n\n"
        "If you need to reschedule, please contact us as soon as possible.\n\n"
        "See you soon! 👋"
    ),
    "follow-up": (
        "💙 Thank You!\n\n"
        "Hi {clientName}!\n\n"
        "Thank you for choosing {businessName} for your {service} today.\n\n"
        "We hope you had an excellent experience with us!\n\n"
        "🌟 Your feedback means the world to us. If you have a moment, "
        "we'd love to hear about your experience.\n\n"
        "We'd be delighted to see you again soon!\n\n"
        "Best regards,\n"
        "The {businessName} Team ✨"
    ),
}


def format_date(local_dt: datetime, long: bool = True) -> str:
    if long:
        return f"{local_dt:%A}, {local_dt:%B} {local_dt.day}, {local_dt.year}"
    return f"{local_dt.month}/{local_dt.day}/{local_dt.year}"


def format_time(local_dt: datetime) -> str:
    return local_dt.strftime("%I:%M %p")


def template_keys(message_type: str, reminder_kind: str | None = None) -> list[str]:
    if message_type == "reminder" and reminder_kind:
        return [f"reminder-{reminder_kind}", "reminder"]
    return [message_type]


def select_template(
    message_type: str,
    reminder_kind: str | None = None,
    overrides: dict | None = None,
) -> str:
    if message_type not in MESSAGE_TYPES:
        raise ValidationError("type", f"must be one of {', '.join(MESSAGE_TYPES)}")
    if message_type == "reminder" and reminder_kind not in REMINDER_KINDS:
        raise ValidationError("reminder_kind", f"must be one of {', '.join(REMINDER_KINDS)}")
    overrides = overrides or {}
    for key in template_keys(message_type, reminder_kind):
        text = (overrides.get(key) or "").strip()
        if text:
            return text
    if message_type == "custom":
        raise ValidationError("custom_text", "required for custom messages")
    return DEFAULT_TEMPLATES[message_type]


def render(template: str, values: dict[str, str]) -> str:
    # Plain substitution so stray braces in business-edited templates survive.
    rendered = template
    for key, value in values.items():
        rendered = rendered.replace("{" + key + "}", value)
    return rendered


def build_values(
    *,
    client_name: str,
    service: str,
    starts_at: datetime,
    business_name: str,
    tz_name: str | None,
    message_type: str,
    reminder_kind: str | None = None,
) -> dict[str, str]:
    local_dt = to_local(starts_at, tz_name)
    when, emoji = REMINDER_PHRASING.get(reminder_kind or "", ("", ""))
    return {
        "clientName": client_name,
        "service": service,
        "date": format_date(local_dt, long=message_type != "reminder"),
        "time": format_time(local_dt),
        "businessName": business_name,
        "when": when,
        "emoji": emoji,
    }


def check_length(content: str) -> str:
    content = content.strip()
    if not content:
        raise ValidationError("content", "must not be empty")
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError("content", f"must not exceed {MAX_CONTENT_LENGTH} characters")
    return content
