from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Emotion:
    label: str
    confidence: float

    def to_dict(self) -> dict:
        return {"label": self.label, "confidence": self.confidence}


@dataclass(frozen=True)
class BreedGuess:
    label: str
    confidence: float

    def to_dict(self) -> dict:
        return {"label": self.label, "confidence": self.confidence}


@dataclass(frozen=True)
class CareTips:
    teeth: str
    paws: str
    eyes: str

    def to_dict(self) -> dict:
        return {"teeth": self.teeth, "paws": self.paws, "eyes": self.eyes}


@dataclass(frozen=True)
class NormalizedResult:
    """Fully populated, bounded analysis of one pet photo."""

    emotion: Emotion
    activity_suggestion: str
    breed_guess: BreedGuess
    toy_ideas: tuple[str, ...]
    recommended_treat: str
    care: CareTips

    def to_dict(self) -> dict:
        """Return the wire form used in API payloads and stored records."""
        return {
            "emotion": self.emotion.to_dict(),
            "activity_suggestion": self.activity_suggestion,
            "breed_guess": self.breed_guess.to_dict(),
            "toy_ideas": list(self.toy_ideas),
            "recommended_treat": self.recommended_treat,
            "care": self.care.to_dict(),
        }


@dataclass(frozen=True)
class Rejected:
    """The model declined to analyze the image (no pet or animal found)."""

    reason: str

    def to_dict(self) -> dict:
        return {"rejected": True, "reason": self.reason}


@dataclass(frozen=True)
class UploadRecord:
    """Metadata persisted once per accepted upload and never modified."""

    id: str
    email: str
    email_hash: str
    image_path: str
    meta_path: str
    size: int
    mime: str
    result: NormalizedResult
    created_at: str = field(default_factory=_utc_now_iso)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "emailHash": self.email_hash,
            "imagePath": self.image_path,
            "metaPath": self.meta_path,
            "size": self.size,
            "mime": self.mime,
            "result": self.result.to_dict(),
            "createdAt": self.created_at,
        }

    def index_entry(self) -> dict:
        """Return the small pointer document stored under the email index."""
        return {
            "id": self.id,
            "emailHash": self.email_hash,
            "metaPath": self.meta_path,
            "imagePath": self.image_path,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class AnalyticsEvent:
    ts: str
    sid: str
    type: str
    variant: str = ""
    upload_id: str = ""
    label: str = ""
    url: str = ""
    price: str = ""
    ua: str = ""

    def to_dict(self) -> dict:
        return {
            "ts": self.ts,
            "sid": self.sid,
            "type": self.type,
            "variant": self.variant,
            "uploadId": self.upload_id,
            "label": self.label,
            "url": self.url,
            "price": self.price,
            "ua": self.ua,
        }
