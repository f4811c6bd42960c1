"""Cookie helpers for the email gate and the anonymous session id."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import random
import string
import time
from urllib.parse import urlparse

from .config import (
    COOKIE_MAX_AGE_SECONDS,
    EMAIL_COOKIE_NAME,
    SESSION_ID_COOKIE_NAME,
    session_secret,
)
from .email_utils import sanitize_email

_BASE36 = string.digits + string.ascii_lowercase


def random_base36(length: int) -> str:
    """Return a short random lowercase base-36 token."""
    return "".join(random.choice(_BASE36) for _ in range(length))


def new_timestamped_id(suffix_length: int = 6) -> str:
    """Return an id of the form ``<epoch-ms>-<base36 token>``."""
    return f"{int(time.time() * 1000)}-{random_base36(suffix_length)}"


def email_signature(email: str) -> str:
    """Build an HMAC signature for an email cookie payload."""
    secret = session_secret().encode("utf-8")
    return hmac.new(secret, email.encode("utf-8"), hashlib.sha256).hexdigest()


def encode_email_cookie(email: str) -> str:
    """Encode signed email cookie contents."""
    payload = base64.urlsafe_b64encode(email.encode("utf-8")).decode("ascii").rstrip("=")
    return f"{payload}.{email_signature(email)}"


def decode_email_cookie(raw_value: str | None) -> str | None:
    """Decode and verify a signed email cookie value."""
    value = (raw_value or "").strip()
    if "." not in value:
        return None
    payload, signature = value.rsplit(".", 1)
    try:
        padded = payload + "=" * (-len(payload) % 4)
        email = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None
    if not hmac.compare_digest(signature, email_signature(email)):
        return None
    return sanitize_email(email)


def email_cookie_header(email: str, secure: bool = False) -> str:
    """Build Set-Cookie header value for the email gate."""
    parts = [
        f"{EMAIL_COOKIE_NAME}={encode_email_cookie(email)}",
        "Path=/",
        "HttpOnly",
        "SameSite=Lax",
        f"Max-Age={COOKIE_MAX_AGE_SECONDS}",
    ]
    if secure:
        parts.append("Secure")
    return "; ".join(parts)


def clear_email_cookie_header() -> str:
    """Build Set-Cookie header value for clearing the email cookie."""
    return (
        f"{EMAIL_COOKIE_NAME}=; Path=/; HttpOnly; SameSite=Lax; Max-Age=0; "
        "Expires=Thu, 01 Jan 1970 00:00:00 GMT"
    )


def session_id_cookie_header(sid: str) -> str:
    """Build Set-Cookie header value for the attribution session id.

    Not HttpOnly so client-side pixels can read it.
    """
    return f"{SESSION_ID_COOKIE_NAME}={sid}; Path=/; SameSite=Lax; Max-Age={COOKIE_MAX_AGE_SECONDS}"


def is_valid_session_id(value: str | None) -> bool:
    text = value or ""
    if not text or len(text) > 64:
        return False
    return all(ch in _BASE36 or ch == "-" for ch in text)


def normalize_next_path(value: str | None, default: str = "/") -> str:
    """Normalize redirect targets to local absolute paths only."""
    candidate = (value or "").strip()
    if not candidate:
        return default
    parsed = urlparse(candidate)
    if parsed.scheme or parsed.netloc:
        return default
    if not candidate.startswith("/") or candidate.startswith("//"):
        return default
    return candidate
