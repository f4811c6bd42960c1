"""Email handling for the join wall and the per-email upload history."""

from __future__ import annotations

import hashlib
import re
from email.utils import parseaddr

EMAIL_PATTERN = re.compile(
    r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)+$"
)
MAX_EMAIL_LENGTH = 320


def normalize_email(email: str | None) -> str:
    """Lower-case and trim an address so one visitor always maps to one key."""
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    """Return True for a bare address the join form may accept.

    Display-name forms ("Name <a@b.c>") and header-injection attempts are
    refused so the value can go straight into a cookie and a blob key.
    """
    if not email or len(email) > MAX_EMAIL_LENGTH:
        return False
    if "\r" in email or "\n" in email:
        return False
    _, parsed = parseaddr(email)
    if parsed != email:
        return False
    return bool(EMAIL_PATTERN.fullmatch(email))


def sanitize_email(email: str | None) -> str | None:
    """Return the normalized join-wall email, or None when it is unusable."""
    normalized = normalize_email(email)
    return normalized if is_valid_email(normalized) else None


def email_hash(email: str) -> str:
    """Return the SHA-256 key under which an email's uploads are indexed."""
    return hashlib.sha256(normalize_email(email).encode("utf-8")).hexdigest()
