"""
Phone normalization for the coupon ledger.

Every wallet, redemption and rate-limit counter is keyed by the E.164 form
produced here, so two spellings of the same number always land on the same
wallet. Turkey (+90) is the default country.

Accepted inputs:
- +905551234567  (already E.164)
- 905551234567   (country code without +)
- 05551234567    (national format with trunk 0)
- 5551234567     (national number only)
"""

from __future__ import annotations

import re


DEFAULT_COUNTRY_CODE = "90"
NATIONAL_NUMBER_LENGTH = 10

E164_RE = re.compile(r"^\+\d{1,15}$")
NON_DIGIT_RE = re.compile(r"\D")


class PhoneValidationError(ValueError):
    """Raised when input cannot be turned into an E.164 number."""


def normalize(phone: str) -> str:
    """
    Normalize a phone number to E.164.

    Idempotent: normalize(normalize(x)) == normalize(x).

    Raises:
        PhoneValidationError: empty input, no digits, or not a valid E.164 result
    """
    if not phone or not str(phone).strip():
        raise PhoneValidationError("Phone number is required")

    cleaned = str(phone).strip()
    has_plus = cleaned.startswith("+")
    digits = NON_DIGIT_RE.sub("", cleaned)

    if not digits:
        raise PhoneValidationError("Phone number contains no digits")

    if has_plus or digits.startswith(DEFAULT_COUNTRY_CODE):
        normalized = "+" + digits
    elif digits.startswith("0"):
        normalized = "+" + DEFAULT_COUNTRY_CODE + digits[1:]
    elif len(digits) == NATIONAL_NUMBER_LENGTH:
        normalized = "+" + DEFAULT_COUNTRY_CODE + digits
    else:
        normalized = "+" + digits

    if not E164_RE.match(normalized):
        raise PhoneValidationError(f"Invalid phone number format: {phone}")

    prefix = "+" + DEFAULT_COUNTRY_CODE
    if normalized.startswith(prefix) and len(normalized) != len(prefix) + NATIONAL_NUMBER_LENGTH:
        raise PhoneValidationError(
            f"Invalid Turkish phone number: {phone} (expected {NATIONAL_NUMBER_LENGTH} digits after {prefix})"
        )

    return normalized


def is_e164(phone: str | None) -> bool:
    return bool(phone) and bool(E164_RE.match(phone))
