import logging
import sys

import structlog

from .phone import mask_phone

PHONE_LOG_KEYS = ("destination", "phone", "whatsapp_number")

_configured = False


def mask_phone_processor(logger, method_name, event_dict):
    """Mask phone numbers before they reach the renderer."""
    for key in PHONE_LOG_KEYS:
        value = event_dict.get(key)
        if value and "*" not in str(value):
            event_dict[key] = mask_phone(str(value))
    return event_dict


def setup_logging(level: int = logging.INFO) -> None:
    global _configured
    if _configured:
        return

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            mask_phone_processor,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in ("uvicorn.access", "sqlalchemy.engine", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True

    structlog.get_logger("notifywise").info("logging_initialized", app="notifywise")
