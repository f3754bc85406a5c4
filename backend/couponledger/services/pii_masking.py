"""
PII masking helpers.

Used wherever phones or tokens leave the ledger tables: audit details,
application logs and admin listings. Enough is kept for support staff to
match a record with a customer.
"""

from __future__ import annotations


def mask_phone(phone: str | None) -> str:
    """
    Show only the last 4 digits.

    +905551234567 -> *********4567
    """
    if not phone:
        return ""
    value = str(phone)
    if len(value) <= 4:
        return "*" * (len(value) - 1) + value[-1:]
    return "*" * (len(value) - 4) + value[-4:]


def mask_token(token: str | None) -> str:
    """
    Show the first 4 and last 4 characters.

    ABC123DEF456 -> ABC1****F456
    Tokens of 5-8 characters keep 2 on each side; 4 or fewer are returned as-is.
    """
    if not token:
        return ""
    value = str(token)
    if len(value) <= 4:
        return value
    if len(value) <= 8:
        return value[:2] + "*" * (len(value) - 4) + value[-2:]
    return value[:4] + "*" * (len(value) - 8) + value[-4:]


def mask_email(email: str | None) -> str | None:
    if not email or "@" not in email:
        return email
    local, domain = email.split("@", 1)
    if len(local) <= 1:
        return email
    return local[0] + "*" * (len(local) - 1) + "@" + domain


def mask_generic(value: str | None) -> str:
    if not value:
        return ""
    value = str(value)
    if len(value) <= 8:
        return "*" * len(value)
    return value[:4] + "*" * (len(value) - 8) + value[-4:]
