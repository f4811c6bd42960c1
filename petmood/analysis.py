"""Upload pipeline: model call, normalization, persistence, response payload."""

from __future__ import annotations

import logging
import mimetypes
from urllib.parse import quote_plus

from .config import get_affiliate_tag, get_max_upload_bytes
from .email_utils import email_hash
from .inference import InferenceClient
from .models import NormalizedResult, Rejected, UploadRecord
from .normalizer import ResponseNormalizer
from .session import new_timestamped_id
from .storage import BlobStore, StorageError, store_upload

logger = logging.getLogger(__name__)

DEFAULT_MIME = "image/jpeg"
DEFAULT_TREAT_QUERY = "pet treats"
IMAGE_SIGNATURES = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)
EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/heic": ".heic",
}


class EmptyUploadError(ValueError):
    """Raised when an upload carries no image bytes."""


class UploadTooLargeError(ValueError):
    """Raised when an uploaded image exceeds the configured size limit."""


def detect_mime(image: bytes, filename: str | None = None, declared: str | None = None) -> str:
    """Best-effort image content type from magic bytes, filename or header."""
    for signature, mime in IMAGE_SIGNATURES:
        if image.startswith(signature):
            return mime
    if image[:4] == b"RIFF" and image[8:12] == b"WEBP":
        return "image/webp"
    if declared and declared.startswith("image/"):
        return declared
    guessed, _ = mimetypes.guess_type(filename or "")
    if guessed and guessed.startswith("image/"):
        return guessed
    return DEFAULT_MIME


def shopping_link(query: str, tag: str | None = None) -> str:
    return f"https://www.amazon.com/s?k={quote_plus(query)}&tag={quote_plus(tag or get_affiliate_tag())}"


def build_cta_links(result: NormalizedResult) -> list[dict]:
    """Return one shopping link per toy idea plus one for the treat."""
    links = [{"label": toy, "url": shopping_link(toy)} for toy in result.toy_ideas]
    treat = result.recommended_treat or DEFAULT_TREAT_QUERY
    links.append({"label": f"Buy {treat}", "url": shopping_link(treat)})
    return links


def analyze_upload(
    email: str,
    image: bytes,
    mime: str,
    *,
    store: BlobStore,
    inference: InferenceClient,
    normalizer: ResponseNormalizer | None = None,
) -> Rejected | dict:
    """Analyze one uploaded image and persist the accepted result.

    Args:
        email: Verified email of the uploader.
        image: Raw image bytes.
        mime: Image content type.
        store: Blob store for the image, metadata and email index.
        inference: Client for the hosted model.
        normalizer: Normalizer to apply; a default one when omitted.

    Returns:
        ``Rejected`` when the model says the image is not a pet, otherwise
        the response payload for the browser.

    Raises:
        EmptyUploadError: If the image is empty.
        UploadTooLargeError: If the image exceeds the size limit.
        InferenceError: If the model call fails.
        AnalysisFailedError: If the model output is not JSON.
        StorageError: If the image or metadata could not be stored.
    """
    if not image:
        raise EmptyUploadError("image is empty")
    if len(image) > get_max_upload_bytes():
        raise UploadTooLargeError(f"image is {len(image)} bytes")

    normalizer = normalizer or ResponseNormalizer()
    outcome = normalizer.normalize_text(inference.analyze(image, mime))
    if isinstance(outcome, Rejected):
        logger.info(f"Upload rejected by model: {outcome.reason}")
        return outcome

    upload_id = new_timestamped_id()
    record = UploadRecord(
        id=upload_id,
        email=email,
        email_hash=email_hash(email),
        image_path=f"uploads/{upload_id}{EXTENSIONS.get(mime, '.jpg')}",
        meta_path=f"uploads/meta/{upload_id}.json",
        size=len(image),
        mime=mime,
        result=outcome,
    )
    image_blob, meta_blob = store_upload(store, record, image)

    index_entry = {**record.index_entry(), "imageUrl": image_blob.url, "metaUrl": meta_blob.url}
    try:
        store.put_json(f"email-index/{record.email_hash}/{upload_id}.json", index_entry)
    except StorageError as exc:
        logger.warning(f"[{upload_id}] Could not write email index entry: {exc}")

    logger.info(
        f"[{upload_id}] Stored analysis: emotion={outcome.emotion.label} "
        f"breed={outcome.breed_guess.label!r} size={record.size}"
    )
    return {
        **outcome.to_dict(),
        "uploadId": upload_id,
        "imageUrl": image_blob.url,
        "cta_links": build_cta_links(outcome),
    }


def list_analyses(email: str, store: BlobStore) -> dict:
    """Load every stored analysis for an email, newest first.

    Malformed or missing index entries are skipped.
    """
    key = email_hash(email)
    items: list[dict] = []
    for blob in store.list(f"email-index/{key}/"):
        try:
            entry = store.get_json(blob.path)
            meta = store.get_json(str(entry["metaPath"]))
        except (StorageError, KeyError, TypeError) as exc:
            logger.warning(f"Skipping history entry {blob.path}: {exc}")
            continue
        if not isinstance(meta, dict):
            logger.warning(f"Skipping history entry {blob.path}: metadata is not an object")
            continue
        meta.pop("email", None)
        if entry.get("imageUrl"):
            meta["imageUrl"] = entry["imageUrl"]
        items.append(meta)

    items.sort(key=lambda item: str(item.get("createdAt") or ""), reverse=True)
    return {"emailHash": key, "count": len(items), "items": items}
