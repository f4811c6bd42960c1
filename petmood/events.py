"""First-party analytics events for CTA experiments."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone

from .models import AnalyticsEvent
from .session import random_base36
from .storage import BlobStore, StoredBlob

logger = logging.getLogger(__name__)

MAX_FIELD_LENGTH = 512
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def _field(payload: dict, key: str) -> str:
    value = payload.get(key)
    if value is None or value == "":
        return ""
    return str(value)[:MAX_FIELD_LENGTH]


def build_event(payload: dict | None, sid: str, user_agent: str | None = None) -> AnalyticsEvent:
    """Build an event record from a client payload.

    Args:
        payload: Decoded JSON body; anything that is not a dict counts as empty.
        sid: Anonymous session id of the caller.
        user_agent: Client user agent header.

    Returns:
        Event with every field coerced to a string.
    """
    data = payload if isinstance(payload, dict) else {}
    return AnalyticsEvent(
        ts=datetime.now(timezone.utc).isoformat(),
        sid=sid,
        type=_field(data, "type"),
        variant=_field(data, "variant"),
        upload_id=_field(data, "uploadId"),
        label=_field(data, "label"),
        url=_field(data, "url"),
        price=_field(data, "price"),
        ua=(user_agent or "")[:MAX_FIELD_LENGTH],
    )


def event_key(event: AnalyticsEvent) -> str:
    """Return the blob key for an event, grouped by type and UTC day."""
    event_type = _UNSAFE_KEY_CHARS.sub("_", event.type).strip("._") or "unknown"
    day = event.ts[:10]
    return f"events/{event_type}/{day}/{int(time.time() * 1000)}-{random_base36(8)}.json"


def log_event(store: BlobStore, event: AnalyticsEvent) -> StoredBlob:
    """Persist one event under a unique, unguessable key."""
    blob = store.put_json(event_key(event), event.to_dict(), add_random_suffix=True)
    logger.debug(f"Logged event {event.type or 'unknown'} for session {event.sid}.")
    return blob
