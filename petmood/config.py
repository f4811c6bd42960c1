"""Configuration and simple helper utilities for PetMood."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_BLOB_DIR = "./.blobs"
DEFAULT_AFFILIATE_TAG = "petmoodai-20"
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024
EMAIL_COOKIE_NAME = "pm_email"
SESSION_ID_COOKIE_NAME = "pm_sid"
COOKIE_MAX_AGE_SECONDS = 60 * 60 * 24 * 180
DEFAULT_SESSION_SECRET = "petmood-dev-session-secret-change-me"
CTA_VARIANTS = ("vet", "trainer", "tracker", "dna")
WTP_OPTIONS = ("$2.99/m", "$4.99/m", "$7.99/m", "Not interested")


def get_model() -> str:
    """Return the hosted model name used for image analysis."""
    return os.environ.get("PETMOOD_MODEL", "").strip() or DEFAULT_MODEL


def get_blob_dir() -> Path:
    """Return the root directory of the local blob store."""
    raw = os.environ.get("PETMOOD_BLOB_DIR", "").strip() or DEFAULT_BLOB_DIR
    return Path(raw)


def get_blob_token() -> str | None:
    """Return the Vercel Blob read/write token, if configured."""
    token = os.environ.get("BLOB_READ_WRITE_TOKEN", "").strip()
    return token or None


def get_affiliate_tag() -> str:
    """Return the affiliate tag appended to shopping links."""
    return os.environ.get("PETMOOD_AFFILIATE_TAG", "").strip() or DEFAULT_AFFILIATE_TAG


def get_max_upload_bytes() -> int:
    """Return the upload size limit, falling back to the default on bad input."""
    raw = os.environ.get("PETMOOD_MAX_UPLOAD_BYTES", "").strip()
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_MAX_UPLOAD_BYTES
    return value if value > 0 else DEFAULT_MAX_UPLOAD_BYTES


def session_secret() -> str:
    """Return the cookie-signing secret."""
    secret = os.environ.get("PETMOOD_SESSION_SECRET", "").strip()
    return secret or DEFAULT_SESSION_SECRET


def get_fb_pixel_id() -> str | None:
    """Return the Facebook Pixel id, or None when unset or not numeric."""
    raw = os.environ.get("FB_PIXEL_ID", "").strip()
    return raw if raw.isascii() and raw.isdigit() else None
