import threading

import pytest
import requests

import petmood.storage as storage
from petmood.models import BreedGuess, CareTips, Emotion, NormalizedResult, UploadRecord
from petmood.storage import LocalBlobStore, PartialWriteError, StorageError, VercelBlobStore


def _record():
    result = NormalizedResult(
        emotion=Emotion("Happy", 0.9),
        activity_suggestion="Fetch",
        breed_guess=BreedGuess("Beagle", 0.7),
        toy_ideas=("Ball",),
        recommended_treat="Jerky",
        care=CareTips("Brush", "Trim", "Wipe"),
    )
    return UploadRecord(
        id="1-abc",
        email="owner@example.com",
        email_hash="hash",
        image_path="uploads/1-abc.jpg",
        meta_path="uploads/meta/1-abc.json",
        size=3,
        mime="image/jpeg",
        result=result,
        created_at="2024-01-01T00:00:00+00:00",
    )


class FlakyStore(storage.BlobStore):
    def __init__(self, fail_paths=()):
        self.fail_paths = set(fail_paths)
        self.written = {}
        self.lock = threading.Lock()

    def put(self, path, data, content_type, add_random_suffix=False):
        if path in self.fail_paths:
            raise StorageError(f"boom {path}")
        with self.lock:
            self.written[path] = data
        return storage.StoredBlob(path=path, url=f"https://blob.example/{path}", size=len(data))

    def get(self, path):
        return self.written[path]

    def list(self, prefix):
        return [storage.StoredBlob(path=p, url="") for p in sorted(self.written) if p.startswith(prefix)]


class DummyResponse:
    def __init__(self, payload=None, content=b"", status_code=200):
        self.payload = payload
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")

    def json(self):
        return self.payload


class DummySession:
    def __init__(self, get_responses=None, put_response=None):
        self.get_responses = list(get_responses or [])
        self.put_response = put_response
        self.calls = []

    def put(self, url, data=None, headers=None, timeout=None):
        self.calls.append(("PUT", url, headers, None))
        return self.put_response

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append(("GET", url, headers, params))
        return self.get_responses.pop(0)


def test_local_store_put_get_list(tmp_path):
    store = LocalBlobStore(tmp_path)
    blob = store.put("uploads/a.jpg", b"abc", "image/jpeg")
    assert blob.path == "uploads/a.jpg"
    assert blob.url == "/blobs/uploads/a.jpg"
    assert blob.size == 3
    store.put_json("uploads/meta/a.json", {"id": "a"})

    assert store.get("uploads/a.jpg") == b"abc"
    assert store.get_json("uploads/meta/a.json") == {"id": "a"}
    assert [b.path for b in store.list("uploads/meta/")] == ["uploads/meta/a.json"]
    assert [b.path for b in store.list("uploads/")] == ["uploads/a.jpg", "uploads/meta/a.json"]


def test_local_store_list_missing_root(tmp_path):
    assert LocalBlobStore(tmp_path / "missing").list("") == []


def test_local_store_random_suffix(tmp_path):
    store = LocalBlobStore(tmp_path)
    first = store.put_json("events/click/x.json", {"n": 1}, add_random_suffix=True)
    second = store.put_json("events/click/x.json", {"n": 2}, add_random_suffix=True)
    assert first.path != second.path
    assert first.path.startswith("events/click/x-")
    assert first.path.endswith(".json")
    assert len(store.list("events/")) == 2


@pytest.mark.parametrize("path", ["", "/etc/passwd", "../x", "a/../../x", "a\\b", "uploads/.."])
def test_local_store_rejects_unsafe_paths(tmp_path, path):
    store = LocalBlobStore(tmp_path)
    with pytest.raises(StorageError):
        store.put(path, b"x", "text/plain")


def test_local_store_missing_and_bad_json(tmp_path):
    store = LocalBlobStore(tmp_path)
    with pytest.raises(StorageError):
        store.get("nope.json")
    store.put("bad.json", b"{not json", "application/json")
    with pytest.raises(StorageError):
        store.get_json("bad.json")


def test_store_upload_writes_image_and_metadata():
    store = FlakyStore()
    image_blob, meta_blob = storage.store_upload(store, _record(), b"img")
    assert image_blob.path == "uploads/1-abc.jpg"
    assert meta_blob.path == "uploads/meta/1-abc.json"
    assert store.written["uploads/1-abc.jpg"] == b"img"
    assert b'"emailHash": "hash"' in store.written["uploads/meta/1-abc.json"]


def test_store_upload_reports_partial_write():
    store = FlakyStore(fail_paths={"uploads/meta/1-abc.json"})
    with pytest.raises(PartialWriteError) as excinfo:
        storage.store_upload(store, _record(), b"img")
    assert excinfo.value.written == ["uploads/1-abc.jpg"]
    assert excinfo.value.failed == ["uploads/meta/1-abc.json"]
    assert "uploads/1-abc.jpg" in store.written


def test_store_upload_raises_when_both_writes_fail():
    store = FlakyStore(fail_paths={"uploads/1-abc.jpg", "uploads/meta/1-abc.json"})
    with pytest.raises(StorageError) as excinfo:
        storage.store_upload(store, _record(), b"img")
    assert not isinstance(excinfo.value, PartialWriteError)


def test_vercel_put_sends_api_headers():
    session = DummySession(
        put_response=DummyResponse(
            {"pathname": "uploads/a.jpg", "url": "https://x.public.blob.vercel-storage.com/uploads/a.jpg"}
        )
    )
    store = VercelBlobStore("tok", session=session)
    blob = store.put("uploads/a.jpg", b"abc", "image/jpeg")
    assert blob.url == "https://x.public.blob.vercel-storage.com/uploads/a.jpg"
    method, url, headers, _ = session.calls[0]
    assert method == "PUT"
    assert url == "https://blob.vercel-storage.com/uploads/a.jpg"
    assert headers["Authorization"] == "Bearer tok"
    assert headers["x-content-type"] == "image/jpeg"
    assert headers["x-add-random-suffix"] == "0"


def test_vercel_list_follows_cursor_and_get_downloads():
    session = DummySession(
        get_responses=[
            DummyResponse(
                {
                    "blobs": [{"pathname": "a/1.json", "url": "https://b/a/1.json", "size": 2}],
                    "hasMore": True,
                    "cursor": "c1",
                }
            ),
            DummyResponse(
                {
                    "blobs": [{"pathname": "a/2.json", "url": "https://b/a/2.json", "size": 2}],
                    "hasMore": False,
                }
            ),
        ]
    )
    store = VercelBlobStore("tok", session=session)
    assert [b.path for b in store.list("a/")] == ["a/1.json", "a/2.json"]
    assert session.calls[1][3]["cursor"] == "c1"

    session.get_responses = [
        DummyResponse({"blobs": [{"pathname": "a/2.json", "url": "https://b/a/2.json"}]}),
        DummyResponse(content=b'{"ok": true}'),
    ]
    assert store.get_json("a/2.json") == {"ok": True}


def test_vercel_errors_become_storage_errors():
    session = DummySession(put_response=DummyResponse(status_code=500))
    store = VercelBlobStore("tok", session=session)
    with pytest.raises(StorageError):
        store.put("a.json", b"{}", "application/json")


def test_get_blob_store_selects_backend(monkeypatch, tmp_path):
    monkeypatch.delenv("BLOB_READ_WRITE_TOKEN", raising=False)
    monkeypatch.setenv("PETMOOD_BLOB_DIR", str(tmp_path))
    local = storage.get_blob_store()
    assert isinstance(local, LocalBlobStore)
    assert local.root == tmp_path
    monkeypatch.setenv("BLOB_READ_WRITE_TOKEN", "tok")
    assert isinstance(storage.get_blob_store(), VercelBlobStore)


def test_blob_store_backend_must_implement_interface():
    class WriteOnlyStore(storage.BlobStore):
        def put(self, path, data, content_type, add_random_suffix=False):
            return storage.StoredBlob(path=path, url="")

    with pytest.raises(TypeError):
        WriteOnlyStore()
