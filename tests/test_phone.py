from types import SimpleNamespace

import pytest

from notifywise.errors import ValidationError
from notifywise.logging_config import mask_phone_processor
from notifywise.phone import is_valid_phone, mask_phone, normalize_phone, require_phone


def test_normalize_adds_country_codes_by_length():
    assert normalize_phone("612345678") == "212612345678"
    assert normalize_phone("555 123 4567") == "15551234567"
    assert normalize_phone("+44 20 7946 0958") == "442079460958"


def test_normalize_strips_single_trunk_zero():
    assert normalize_phone("0612345678") == "212612345678"
    assert normalize_phone("06 12 34 56 78") == "212612345678"


def test_trunk_zero_is_kept_when_disabled():
    config = SimpleNamespace(
        PHONE_STRIP_TRUNK_PREFIX=False,
        PHONE_COUNTRY_CODE_9_DIGITS="212",
        PHONE_COUNTRY_CODE_10_DIGITS="1",
    )
    assert normalize_phone("0612345678", config) == "10612345678"


def test_validation_checks_digits_as_entered():
    assert is_valid_phone("+1 (555) 123-4567") is True
    assert is_valid_phone("0612345678") is True
    assert is_valid_phone("612345678") is False
    assert is_valid_phone("1234567890123456") is False
    assert is_valid_phone("555-CALL-NOW1") is False
    assert is_valid_phone("") is False
    assert is_valid_phone(None) is False


def test_require_phone_returns_normalized_or_raises():
    assert require_phone("+212 612-345-678") == "212612345678"
    with pytest.raises(ValidationError) as exc_info:
        require_phone("12345", field="phone")
    assert exc_info.value.field == "phone"


def test_mask_phone_keeps_last_four_digits():
    assert mask_phone("212612345678") == "********5678"
    assert mask_phone("123") == "****"


def test_log_processor_masks_phone_fields():
    event = mask_phone_processor(
        None, "info", {"event": "notification_sent", "destination": "212612345678", "message_id": 4}
    )
    assert event == {"event": "notification_sent", "destination": "********5678", "message_id": 4}

    already = mask_phone_processor(None, "info", {"destination": "********5678", "phone": None})
    assert already == {"destination": "********5678", "phone": None}
