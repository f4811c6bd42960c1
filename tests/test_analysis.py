import json

import pytest

import petmood.analysis as analysis
from petmood.email_utils import email_hash
from petmood.models import Rejected
from petmood.normalizer import AnalysisFailedError
from petmood.storage import LocalBlobStore, StorageError

MODEL_TEXT = json.dumps(
    {
        "emotion": {"label": "Playful", "confidence": 0.82},
        "activity_suggestion": "Ten minutes of tug",
        "breed_guess": {"label": "Border Collie mixed", "confidence": 0.6},
        "toy_ideas": ["Rope toy - loves to tug", "Frisbee - high energy"],
        "recommended_treat": "Freeze-dried liver",
        "care": {"teeth": "Brush twice weekly", "paws": "", "eyes": "Wipe gently"},
    }
)


class DummyInference:
    def __init__(self, text=MODEL_TEXT):
        self.text = text
        self.calls = []

    def analyze(self, image, mime):
        self.calls.append((image, mime))
        return self.text


def test_detect_mime():
    assert analysis.detect_mime(b"\xff\xd8\xff\xe0rest") == "image/jpeg"
    assert analysis.detect_mime(b"\x89PNG\r\n\x1a\nrest") == "image/png"
    assert analysis.detect_mime(b"RIFF\x00\x00\x00\x00WEBPVP8") == "image/webp"
    assert analysis.detect_mime(b"????", declared="image/heic") == "image/heic"
    assert analysis.detect_mime(b"????", filename="cat.gif") == "image/gif"
    assert analysis.detect_mime(b"????", declared="text/plain") == "image/jpeg"


def test_build_cta_links_uses_affiliate_tag(monkeypatch):
    monkeypatch.setenv("PETMOOD_AFFILIATE_TAG", "tag-20")
    result = analysis.ResponseNormalizer().normalize_text(MODEL_TEXT)
    links = analysis.build_cta_links(result)
    assert [link["label"] for link in links] == [
        "Rope toy - loves to tug",
        "Frisbee - high energy",
        "Buy Freeze-dried liver",
    ]
    assert links[0]["url"].startswith("https://www.amazon.com/s?k=Rope+toy")
    assert links[-1]["url"].endswith("&tag=tag-20")


def test_build_cta_links_falls_back_to_generic_treat():
    result = analysis.ResponseNormalizer().normalize({})
    links = analysis.build_cta_links(result)
    assert links == [{"label": "Buy pet treats", "url": analysis.shopping_link("pet treats")}]


def test_analyze_upload_persists_record_and_index(tmp_path):
    store = LocalBlobStore(tmp_path)
    inference = DummyInference()
    payload = analysis.analyze_upload(
        "owner@example.com", b"\xff\xd8\xffimage", "image/jpeg", store=store, inference=inference
    )

    assert inference.calls == [(b"\xff\xd8\xffimage", "image/jpeg")]
    upload_id = payload["uploadId"]
    assert payload["emotion"] == {"label": "Playful", "confidence": 0.82}
    assert payload["breed_guess"]["label"] == "Border Collie"
    assert payload["care"]["paws"] == "Not Clearly Visible"
    assert payload["imageUrl"] == f"/blobs/uploads/{upload_id}.jpg"
    assert len(payload["cta_links"]) == 3

    assert store.get(f"uploads/{upload_id}.jpg") == b"\xff\xd8\xffimage"
    meta = store.get_json(f"uploads/meta/{upload_id}.json")
    assert meta["email"] == "owner@example.com"
    assert meta["emailHash"] == email_hash("owner@example.com")
    assert meta["result"]["emotion"]["label"] == "Playful"
    index = store.list(f"email-index/{email_hash('owner@example.com')}/")
    assert len(index) == 1
    assert store.get_json(index[0].path)["metaPath"] == f"uploads/meta/{upload_id}.json"


def test_analyze_upload_rejection_stores_nothing(tmp_path):
    store = LocalBlobStore(tmp_path)
    inference = DummyInference('{"blocked": true}')
    outcome = analysis.analyze_upload(
        "owner@example.com", b"img", "image/jpeg", store=store, inference=inference
    )
    assert isinstance(outcome, Rejected)
    assert outcome.reason == "Please upload a clear photo of your pet."
    assert store.list("") == []


def test_analyze_upload_parse_failure(tmp_path):
    store = LocalBlobStore(tmp_path)
    with pytest.raises(AnalysisFailedError):
        analysis.analyze_upload(
            "owner@example.com", b"img", "image/jpeg", store=store, inference=DummyInference("oops")
        )
    assert store.list("") == []


def test_analyze_upload_deeply_nested_output_is_a_parse_failure(tmp_path):
    store = LocalBlobStore(tmp_path)
    inference = DummyInference("[" * 100000 + "]" * 100000)
    with pytest.raises(AnalysisFailedError):
        analysis.analyze_upload(
            "owner@example.com", b"img", "image/jpeg", store=store, inference=inference
        )
    assert store.list("") == []


def test_analyze_upload_validates_size(tmp_path, monkeypatch):
    store = LocalBlobStore(tmp_path)
    inference = DummyInference()
    with pytest.raises(analysis.EmptyUploadError):
        analysis.analyze_upload("owner@example.com", b"", "image/jpeg", store=store, inference=inference)
    monkeypatch.setenv("PETMOOD_MAX_UPLOAD_BYTES", "4")
    with pytest.raises(analysis.UploadTooLargeError):
        analysis.analyze_upload("owner@example.com", b"12345", "image/jpeg", store=store, inference=inference)
    assert inference.calls == []


def test_analyze_upload_survives_index_failure(tmp_path):
    class NoIndexStore(LocalBlobStore):
        def put(self, path, data, content_type, add_random_suffix=False):
            if path.startswith("email-index/"):
                raise StorageError("index down")
            return super().put(path, data, content_type, add_random_suffix)

    store = NoIndexStore(tmp_path)
    payload = analysis.analyze_upload(
        "owner@example.com", b"img", "image/png", store=store, inference=DummyInference()
    )
    assert payload["imageUrl"].endswith(".png")
    assert store.list("email-index/") == []


def test_list_analyses_newest_first_and_skips_bad_entries(tmp_path, monkeypatch):
    store = LocalBlobStore(tmp_path)
    ids = iter(["1000-aaaaaa", "2000-bbbbbb"])
    monkeypatch.setattr(analysis, "new_timestamped_id", lambda: next(ids))
    for _ in range(2):
        analysis.analyze_upload(
            "owner@example.com", b"img", "image/jpeg", store=store, inference=DummyInference()
        )
    key = email_hash("owner@example.com")
    store.put_json(f"email-index/{key}/broken.json", {"id": "x"})
    store.put_json(f"email-index/{key}/dangling.json", {"metaPath": "uploads/meta/missing.json"})

    history = analysis.list_analyses("Owner@Example.com", store)
    assert history["emailHash"] == key
    assert history["count"] == 2
    created = [item["createdAt"] for item in history["items"]]
    assert created == sorted(created, reverse=True)
    assert all("email" not in item for item in history["items"])
    assert {item["id"] for item in history["items"]} == {"1000-aaaaaa", "2000-bbbbbb"}
    assert all(item["imageUrl"].startswith("/blobs/uploads/") for item in history["items"])


def test_list_analyses_empty(tmp_path):
    history = analysis.list_analyses("nobody@example.com", LocalBlobStore(tmp_path))
    assert history["count"] == 0
    assert history["items"] == []
