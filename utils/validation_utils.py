"""
utils/validation_utils.py

Purpose: Identity field normalization

- Email normalization and placeholder detection
- Contact number normalization to +<country><number>
- Candidate phone formats for matching stored user numbers
"""

import re
from typing import Iterable, List, Optional


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Local parts the gateway uses when the payer gave no address
DEFAULT_PLACEHOLDER_LOCAL_PARTS = ("void", "noreply", "no-reply", "donotreply")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Lower-cases and trims an email address.

    Args:
        email: Raw email from the gateway or the users table

    Returns:
        Normalized email, or None if empty or not an address
    """
    if not email:
        return None

    email = email.strip().lower()
    if not EMAIL_PATTERN.match(email):
        return None

    return email


def is_generic_email(
    email: Optional[str],
    known_addresses: Iterable[str] = (),
    known_domains: Iterable[str] = (),
    known_local_parts: Iterable[str] = DEFAULT_PLACEHOLDER_LOCAL_PARTS
) -> bool:
    """
    Detects masked/placeholder addresses that must never be matched to a user.

    Args:
        email: Normalized email
        known_addresses: Exact placeholder addresses (e.g. void@razorpay.com)
        known_domains: Domains whose addresses are never trusted
        known_local_parts: Local parts that are placeholders on any domain

    Returns:
        True if the address is a placeholder
    """
    if not email:
        return True

    if email in {a.strip().lower() for a in known_addresses}:
        return True

    local_part, _, domain = email.partition("@")
    if domain in {d.strip().lower() for d in known_domains}:
        return True

    return local_part in {p.strip().lower() for p in known_local_parts}


def normalize_phone(phone: Optional[str], default_country_code: str = "91") -> Optional[str]:
    """
    Normalizes a contact number to +<country code><subscriber number>.

    "+91 8973 297600", "91-8973-297600", "08973297600" and "8973297600"
    all become "+918973297600".

    Args:
        phone: Raw contact string
        default_country_code: Prefix for bare national numbers

    Returns:
        Canonical number, or None if there are too few digits
    """
    if not phone:
        return None

    phone = phone.strip().replace("whatsapp:", "")
    has_plus = phone.startswith("+")
    digits = re.sub(r"\D", "", phone)

    if digits.startswith("00"):
        digits = digits[2:]
        has_plus = True

    if not has_plus:
        if len(digits) == 11 and digits.startswith("0"):
            digits = digits[1:]
        if len(digits) == 10:
            digits = f"{default_country_code}{digits}"

    if len(digits) < 8 or len(digits) > 15:
        return None

    return f"+{digits}"


def phone_match_candidates(phone: Optional[str], default_country_code: str = "91") -> List[str]:
    """
    All spellings under which a normalized number may be stored on a user.

    Stored numbers predate normalization, so "+918973297600" is looked up as
    itself, without the plus, and as the bare national number.
    """
    canonical = normalize_phone(phone, default_country_code)
    if not canonical:
        return []

    digits = canonical[1:]
    candidates = [canonical, digits]
    if digits.startswith(default_country_code) and len(digits) - len(default_country_code) == 10:
        candidates.append(digits[len(default_country_code):])

    return candidates


def sanitize_input(text: str, max_length: int = 1000) -> str:
    """
    Sanitizes free text (descriptions, operator names) before logging or storage.

    Args:
        text: Input text
        max_length: Maximum allowed length

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    text = text[:max_length]
    text = re.sub(r"[<>{}\[\]]", "", text)
    text = " ".join(text.split())

    return text.strip()
