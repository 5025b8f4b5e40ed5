from datetime import datetime

from utils.time_utils import add_months, from_unix, is_lapsed
from utils.validation_utils import (
    is_generic_email,
    normalize_email,
    normalize_phone,
    phone_match_candidates,
)


def test_normalize_email():
    assert normalize_email("  Chief.Engineer@QAAQ.app ") == "chief.engineer@qaaq.app"
    assert normalize_email("") is None
    assert normalize_email(None) is None
    assert normalize_email("not-an-address") is None


def test_generic_email_detection():
    known = ["void@razorpay.com", "void@gateway.com"]
    assert is_generic_email("void@gateway.com", known)
    assert is_generic_email("void@razorpay.com", known)
    assert is_generic_email("noreply@anything.in", known)
    assert is_generic_email("someone@example.com", known, ["example.com"])
    assert is_generic_email(None, known)
    assert not is_generic_email("chief.engineer@qaaq.app", known, ["example.com"])


def test_normalize_phone_variants():
    for raw in ["+91 8973 297600", "91-8973-297600", "08973297600", "8973297600", "whatsapp:+918973297600"]:
        assert normalize_phone(raw) == "+918973297600", raw


def test_normalize_phone_rejects_garbage():
    assert normalize_phone("12345") is None
    assert normalize_phone("") is None
    assert normalize_phone(None) is None


def test_normalize_phone_keeps_foreign_numbers():
    assert normalize_phone("+44 20 7946 0958") == "+442079460958"


def test_phone_match_candidates():
    assert phone_match_candidates("+91 8973 297600") == ["+918973297600", "918973297600", "8973297600"]
    assert phone_match_candidates("n/a") == []


def test_add_months_clamps_day():
    assert add_months(datetime(2025, 1, 31, 12, 0), 1) == datetime(2025, 2, 28, 12, 0)
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2025, 11, 15), 12) == datetime(2026, 11, 15)
    assert add_months(datetime(2025, 3, 10), 24) == datetime(2027, 3, 10)


def test_from_unix_is_naive_utc():
    assert from_unix(0) == datetime(1970, 1, 1)
    assert from_unix(None) is None


def test_is_lapsed_with_grace():
    end = datetime(2025, 9, 1, 10, 0)
    assert not is_lapsed(end, datetime(2025, 9, 1, 9, 59))
    assert is_lapsed(end, datetime(2025, 9, 1, 10, 1))
    assert not is_lapsed(end, datetime(2025, 9, 1, 10, 1), grace_minutes=5)
    assert not is_lapsed(None, datetime(2030, 1, 1))


def test_placeholder_local_parts_are_configurable():
    assert not is_generic_email("test@shipco.in")
    assert is_generic_email("test@shipco.in", known_local_parts=["test"])
    assert not is_generic_email("void@shipco.in", known_local_parts=[])
