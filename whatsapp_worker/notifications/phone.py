"""
Phone number handling for Argentine mobile numbers.

WhatsApp addresses Argentine mobiles as ``+549`` followed by the area code
and subscriber number. Numbers arrive from user input in every local
variant (leading trunk ``0``, missing mobile ``9``, spaces, dashes, with or
without country code) and are normalized here before sending.
"""

import re
from typing import Any


ARGENTINA_COUNTRY_CODE = "54"
MOBILE_PREFIX = "9"

_NON_DIALABLE = re.compile(r'[^\d+]')
_VALID_MOBILE = re.compile(r'^\+549\d{8,12}$')


def normalize_phone(raw: Any) -> str:
    """
    Rewrite a phone number into the canonical ``+549...`` form.

    Pure and total: never raises, and applying it to its own output returns
    the same string. The result is not guaranteed to be valid; use
    :func:`is_valid_phone` for that.

    Args:
        raw: Phone number as entered by a user

    Returns:
        Normalized phone number, always starting with ``+``
    """
    cleaned = _NON_DIALABLE.sub('', str(raw or ''))

    if not cleaned.startswith('+') and not cleaned.startswith(ARGENTINA_COUNTRY_CODE):
        # Local format: drop the trunk prefix and add the mobile 9 to area+number
        if cleaned.startswith('0'):
            cleaned = cleaned[1:]

        if len(cleaned) == 10 and not cleaned.startswith(MOBILE_PREFIX):
            cleaned = MOBILE_PREFIX + cleaned

        cleaned = f"+{ARGENTINA_COUNTRY_CODE}{cleaned}"

    elif cleaned.startswith(ARGENTINA_COUNTRY_CODE):
        number_part = cleaned[len(ARGENTINA_COUNTRY_CODE):]
        if len(number_part) == 10 and not number_part.startswith(MOBILE_PREFIX):
            cleaned = f"+{ARGENTINA_COUNTRY_CODE}{MOBILE_PREFIX}{number_part}"
        else:
            cleaned = f"+{cleaned}"

    if not cleaned.startswith('+'):
        cleaned = f"+{cleaned}"

    return cleaned


def is_valid_phone(phone: Any) -> bool:
    """Check that a number normalizes to an Argentine mobile (``+549`` and 8-12 digits)."""
    return bool(_VALID_MOBILE.match(normalize_phone(phone)))


def display_phone(raw: Any) -> str:
    """
    Human readable form, e.g. ``+54 9 11 2233-4455``.

    Falls back to the normalized number when it is not a ``+549`` mobile or
    the subscriber part is too short to split.
    """
    formatted = normalize_phone(raw)
    if formatted.startswith(f"+{ARGENTINA_COUNTRY_CODE}{MOBILE_PREFIX}"):
        national = formatted[3:]
        area_code = national[1:3]
        number = national[3:]

        if len(number) >= 7:
            return f"+54 9 {area_code} {number[:4]}-{number[4:]}"

    return formatted


def mask_phone(raw: Any) -> str:
    """Mask all but the last 4 digits of a phone number for logging."""
    digits = ''.join(ch for ch in str(raw or '') if ch.isdigit())
    if not digits:
        return '***'
    if len(digits) <= 4:
        return '*' * len(digits)
    return f"{'*' * (len(digits) - 4)}{digits[-4:]}"
