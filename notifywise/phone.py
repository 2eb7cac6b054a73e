import re

from .config import settings
from .errors import ValidationError

_VALID_NUMBER = re.compile(r"^\d{10,15}$")
_LETTERS = re.compile(r"[A-Za-z]")


def digits_only(raw: str | None) -> str:
    return "".join(ch for ch in str(raw or "") if ch.isdigit())


def normalize_phone(raw: str | None, config=settings) -> str:
    """Return the canonical gateway form: digits with country code, no ``+``."""
    cleaned = digits_only(raw)
    if config.PHONE_STRIP_TRUNK_PREFIX and len(cleaned) == 10 and cleaned.startswith("0"):
        cleaned = cleaned[1:]
    if len(cleaned) == 9:
        return f"{config.PHONE_COUNTRY_CODE_9_DIGITS}{cleaned}"
    if len(cleaned) == 10:
        return f"{config.PHONE_COUNTRY_CODE_10_DIGITS}{cleaned}"
    return cleaned


def is_valid_phone(raw: str | None) -> bool:
    # Shape is checked on the digits as entered, before any country code is added.
    if not raw or _LETTERS.search(str(raw)):
        return False
    return bool(_VALID_NUMBER.match(digits_only(raw)))


def require_phone(raw: str | None, field: str = "whatsapp_number", config=settings) -> str:
    if not is_valid_phone(raw):
        raise ValidationError(field, "must contain 10 to 15 digits including country code")
    return normalize_phone(raw, config)


def mask_phone(number: str | None) -> str:
    cleaned = digits_only(number)
    if len(cleaned) <= 4:
        return "****"
    return f"{'*' * (len(cleaned) - 4)}{cleaned[-4:]}"
