# Overview: Random coupon codes for kiosk issuance.

from __future__ import annotations

import re
import secrets


TOKEN_LENGTH = 12

# Drop 0/O/1/I so codes can be read off a screen and typed back
ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

TOKEN_RE = re.compile(r"^[A-Z0-9]{%d}$" % TOKEN_LENGTH)


def generate() -> str:
    """
    Generate a 12-character uppercase token.

    WHY secrets.choice: tokens are bearer credentials worth a coupon each.
    Uniqueness is NOT checked here; callers retry on collision.
    """
    return "".join(secrets.choice(ALPHABET) for _ in range(TOKEN_LENGTH))


def is_valid_format(token: str | None) -> bool:
    if not token:
        return False
    return bool(TOKEN_RE.match(token))


def clean(token: str | None) -> str:
    """Canonical form of user-typed input: stripped and uppercased."""
    return (token or "").strip().upper()
