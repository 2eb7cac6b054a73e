import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./notifywise.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)

    WHATSAPP_API_KEY = os.getenv("WHATSAPP_API_KEY", "").strip()
    WHATSAPP_API_URL = os.getenv("WHATSAPP_API_URL", "https://1confirmed.com/api/v1").strip()
    WHATSAPP_TIMEOUT_SECONDS = _get_float("WHATSAPP_TIMEOUT_SECONDS", 30.0)
    WHATSAPP_LANGUAGE_ID = _get_int("WHATSAPP_LANGUAGE_ID", 3)
    WHATSAPP_TEMPLATE_ID = _get_int("WHATSAPP_TEMPLATE_ID", 97)
    WHATSAPP_TEMPLATE_IMAGE_URL = os.getenv(
        "WHATSAPP_TEMPLATE_IMAGE_URL",
        "https://1confirmed.com/images/default_template_img.jpeg",
    ).strip()

    # Country codes prepended to numbers stored without one.
    PHONE_COUNTRY_CODE_9_DIGITS = os.getenv("PHONE_COUNTRY_CODE_9_DIGITS", "212").strip()
    PHONE_COUNTRY_CODE_10_DIGITS = os.getenv("PHONE_COUNTRY_CODE_10_DIGITS", "1").strip()
    PHONE_STRIP_TRUNK_PREFIX = _get_bool("PHONE_STRIP_TRUNK_PREFIX", True)

    NOTIFICATION_MAX_RETRIES = _get_int("NOTIFICATION_MAX_RETRIES", 3)
    NOTIFICATION_WORKER_BATCH_SIZE = _get_int("NOTIFICATION_WORKER_BATCH_SIZE", 100)
    # Failed messages wait base * 2**retry_count seconds before the next attempt.
    NOTIFICATION_RETRY_BACKOFF_SECONDS = _get_int("NOTIFICATION_RETRY_BACKOFF_SECONDS", 60)

    APPOINTMENT_DEFAULT_DURATION_MIN = _get_int("APPOINTMENT_DEFAULT_DURATION_MIN", 60)
    APPOINTMENT_DEFAULT_CURRENCY = os.getenv("APPOINTMENT_DEFAULT_CURRENCY", "USD").strip().upper()

    PUBLIC_RL_PER_WINDOW = _get_int("PUBLIC_RL_PER_WINDOW", 5)
    PUBLIC_RL_WINDOW_SECONDS = _get_int("PUBLIC_RL_WINDOW_SECONDS", 900)

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)


settings = Settings()
