"""Path-keyed blob storage for uploads, metadata and events."""

from __future__ import annotations

import abc
import concurrent.futures
import json
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import requests

from .config import get_blob_dir, get_blob_token
from .models import UploadRecord

logger = logging.getLogger(__name__)

VERCEL_BLOB_API = "https://blob.vercel-storage.com"
VERCEL_BLOB_API_VERSION = "7"
REQUEST_TIMEOUT_SECONDS = 30


class StorageError(RuntimeError):
    """Raised when a blob cannot be written or read."""


class PartialWriteError(StorageError):
    """Raised when only some of a group of related blobs were written."""

    def __init__(self, message: str, written: list[str], failed: list[str]) -> None:
        super().__init__(message)
        self.written = written
        self.failed = failed


@dataclass(frozen=True)
class StoredBlob:
    path: str
    url: str
    size: int | None = None


def _validate_path(path: str) -> str:
    """Return a normalized relative blob key or raise ``StorageError``."""
    candidate = (path or "").strip()
    if not candidate or "\\" in candidate or candidate.startswith("/"):
        raise StorageError(f"Invalid blob path: {path!r}")
    parts = PurePosixPath(candidate).parts
    if any(part in ("", ".", "..") for part in parts):
        raise StorageError(f"Invalid blob path: {path!r}")
    return "/".join(parts)


def _with_random_suffix(path: str) -> str:
    """Insert a random token before the file extension of a blob key."""
    pure = PurePosixPath(path)
    token = secrets.token_hex(4)
    return str(pure.with_name(f"{pure.stem}-{token}{pure.suffix}"))


class BlobStore(abc.ABC):
    """Interface shared by the storage backends."""

    @abc.abstractmethod
    def put(
        self,
        path: str,
        data: bytes,
        content_type: str,
        add_random_suffix: bool = False,
    ) -> StoredBlob:
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, path: str) -> bytes:
        raise NotImplementedError

    @abc.abstractmethod
    def list(self, prefix: str) -> list[StoredBlob]:
        raise NotImplementedError

    def put_json(self, path: str, payload: dict, add_random_suffix: bool = False) -> StoredBlob:
        data = json.dumps(payload, indent=2).encode("utf-8")
        return self.put(path, data, "application/json", add_random_suffix=add_random_suffix)

    def get_json(self, path: str):
        try:
            return json.loads(self.get(path).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StorageError(f"Blob {path!r} is not valid JSON: {exc}") from exc


class LocalBlobStore(BlobStore):
    """Blob store backed by a directory on local disk."""

    def __init__(self, root: Path | str, base_url: str = "/blobs") -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _file(self, path: str) -> Path:
        return self.root.joinpath(*_validate_path(path).split("/"))

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{_validate_path(path)}"

    def put(
        self,
        path: str,
        data: bytes,
        content_type: str,
        add_random_suffix: bool = False,
    ) -> StoredBlob:
        key = _validate_path(path)
        if add_random_suffix:
            key = _with_random_suffix(key)
        target = self._file(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Failed to write blob {key!r}: {exc}") from exc
        return StoredBlob(path=key, url=self.url_for(key), size=len(data))

    def get(self, path: str) -> bytes:
        target = self._file(path)
        try:
            return target.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read blob {path!r}: {exc}") from exc

    def list(self, prefix: str) -> list[StoredBlob]:
        if not self.root.exists():
            return []
        blobs: list[StoredBlob] = []
        for item in sorted(self.root.rglob("*")):
            if not item.is_file():
                continue
            key = item.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                blobs.append(StoredBlob(path=key, url=self.url_for(key), size=item.stat().st_size))
        return blobs


class VercelBlobStore(BlobStore):
    """Blob store backed by the Vercel Blob HTTP API."""

    def __init__(
        self,
        token: str,
        api_url: str = VERCEL_BLOB_API,
        session: requests.Session | None = None,
    ) -> None:
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "x-api-version": VERCEL_BLOB_API_VERSION,
        }

    def put(
        self,
        path: str,
        data: bytes,
        content_type: str,
        add_random_suffix: bool = False,
    ) -> StoredBlob:
        key = _validate_path(path)
        headers = {
            **self._headers(),
            "x-content-type": content_type,
            "x-add-random-suffix": "1" if add_random_suffix else "0",
        }
        try:
            r = self.session.put(
                f"{self.api_url}/{key}",
                data=data,
                headers=headers,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            r.raise_for_status()
            body = r.json()
        except (requests.RequestException, ValueError) as exc:
            raise StorageError(f"Failed to write blob {key!r}: {exc}") from exc
        return StoredBlob(
            path=str(body.get("pathname") or key),
            url=str(body.get("url") or ""),
            size=len(data),
        )

    def list(self, prefix: str) -> list[StoredBlob]:
        blobs: list[StoredBlob] = []
        cursor = None
        while True:
            params = {"prefix": prefix, "limit": "1000"}
            if cursor:
                params["cursor"] = cursor
            try:
                r = self.session.get(
                    self.api_url,
                    params=params,
                    headers=self._headers(),
                    timeout=REQUEST_TIMEOUT_SECONDS,
                )
                r.raise_for_status()
                body = r.json()
            except (requests.RequestException, ValueError) as exc:
                raise StorageError(f"Failed to list blobs under {prefix!r}: {exc}") from exc
            for item in body.get("blobs") or []:
                blobs.append(
                    StoredBlob(
                        path=str(item.get("pathname") or ""),
                        url=str(item.get("url") or ""),
                        size=item.get("size"),
                    )
                )
            cursor = body.get("cursor")
            if not body.get("hasMore") or not cursor:
                return blobs

    def get(self, path: str) -> bytes:
        key = _validate_path(path)
        match = next((blob for blob in self.list(key) if blob.path == key), None)
        if match is None:
            raise StorageError(f"Blob {key!r} not found")
        try:
            r = self.session.get(match.url, timeout=REQUEST_TIMEOUT_SECONDS)
            r.raise_for_status()
        except requests.RequestException as exc:
            raise StorageError(f"Failed to read blob {key!r}: {exc}") from exc
        return r.content


def get_blob_store() -> BlobStore:
    """Return the configured blob store (Vercel when a token is set)."""
    token = get_blob_token()
    if token:
        return VercelBlobStore(token)
    return LocalBlobStore(get_blob_dir())


def store_upload(
    store: BlobStore,
    record: UploadRecord,
    image: bytes,
) -> tuple[StoredBlob, StoredBlob]:
    """Write an upload's image and metadata blobs concurrently.

    No rollback is attempted when only one write lands; the inconsistency is
    logged and reported to the caller.

    Args:
        store: Destination blob store.
        record: Upload metadata to persist.
        image: Raw image bytes.

    Returns:
        Tuple of the stored image blob and the stored metadata blob.

    Raises:
        PartialWriteError: If exactly one of the two writes failed.
        StorageError: If both writes failed.
    """
    with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
        image_future = executor.submit(
            store.put, record.image_path, image, record.mime
        )
        meta_future = executor.submit(
            store.put_json, record.meta_path, record.to_dict()
        )
        concurrent.futures.wait([image_future, meta_future])

    results: dict[str, StoredBlob] = {}
    errors: dict[str, BaseException] = {}
    for path, future in ((record.image_path, image_future), (record.meta_path, meta_future)):
        exc = future.exception()
        if exc is None:
            results[path] = future.result()
        else:
            errors[path] = exc

    if not errors:
        return results[record.image_path], results[record.meta_path]

    failed = list(errors)
    if results:
        written = list(results)
        logger.error(
            f"[{record.id}] Partial upload write: wrote {written}, failed {failed}: "
            f"{'; '.join(str(e) for e in errors.values())}"
        )
        raise PartialWriteError(
            f"Upload {record.id} was only partially stored", written=written, failed=failed
        )

    logger.error(f"[{record.id}] Upload write failed for {failed}.")
    first = next(iter(errors.values()))
    raise StorageError(f"Upload {record.id} could not be stored: {first}") from first
