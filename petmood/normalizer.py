"""Turn free-form model output into a bounded, UI-ready analysis record.

The upstream model is asked for JSON but nothing guarantees its shape, so
every field is routed through a coercion helper before use. Field-level
problems (wrong types, out-of-range confidences, oversized text, duplicate
list entries) are resolved here and never raised; the only error this module
signals is text that does not parse as JSON at all.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any

from .models import BreedGuess, CareTips, Emotion, NormalizedResult, Rejected

EMOTION_LABELS = (
    "Happy",
    "Excited",
    "Relaxed",
    "Content",
    "Curious",
    "Playful",
    "Alert",
    "Bored",
    "Anxious",
    "Stressed",
    "Fearful",
    "Sad",
    "Angry",
    "Tired",
)

# Checked top to bottom; the first rule with a matching keyword wins.
EMOTION_KEYWORD_RULES = (
    (("angry", "mad", "furious"), "Angry"),
    (("sad",), "Sad"),
    (("fear",), "Fearful"),
    (("stress",), "Stressed"),
    (("anx",), "Anxious"),
    (("bored",), "Bored"),
    (("tired", "sleep"), "Tired"),
    (("alert",), "Alert"),
    (("play",), "Playful"),
    (("curio",), "Curious"),
    (("content",), "Content"),
    (("relax", "calm"), "Relaxed"),
    (("excite",), "Excited"),
    (("happy", "joy"), "Happy"),
)

# Longer phrases first so "mixed breed" goes as a whole.
BREED_HEDGE_PATTERNS = (
    r"mixed\s*breed",
    r"breed\s*mix",
    r"unidentifiable",
    r"unknown",
    r"mixed",
)

DEFAULT_BLOCKED_REASON = "Please upload a clear photo of your pet."
NOT_VISIBLE = "Not Clearly Visible"
BREED_SENTINEL = "Best Guess"


class AnalysisFailedError(ValueError):
    """Raised when the model text cannot be parsed as JSON."""


@dataclass(frozen=True)
class NormalizerConfig:
    """Immutable label sets, sentinels and limits used by the normalizer."""

    emotion_labels: tuple[str, ...] = EMOTION_LABELS
    emotion_rules: tuple[tuple[tuple[str, ...], str], ...] = EMOTION_KEYWORD_RULES
    default_emotion: str = "Alert"
    breed_hedges: tuple[str, ...] = BREED_HEDGE_PATTERNS
    breed_sentinel: str = BREED_SENTINEL
    sentinel_confidence_cap: float = 0.5
    care_sentinel: str = NOT_VISIBLE
    blocked_reason: str = DEFAULT_BLOCKED_REASON
    default_confidence: float = 0.5
    activity_limit: int = 120
    breed_limit: int = 60
    treat_limit: int = 60
    care_limit: int = 80
    toy_limit: int = 2

    @property
    def hedge_regex(self) -> re.Pattern:
        return re.compile("|".join(self.breed_hedges), re.IGNORECASE)


DEFAULT_CONFIG = NormalizerConfig()


def coerce_text(value: Any, fallback: str = "") -> str:
    """Return a string form of any JSON value.

    Args:
        value: Untrusted value from the parsed model output.
        fallback: Returned when ``value`` is ``None``.

    Returns:
        ``value`` unchanged when it is a string, ``fallback`` for ``None``,
        JSON text for booleans, lists and objects, and ``str()`` otherwise.
    """
    if value is None:
        return fallback
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
        except (TypeError, ValueError):
            return str(value)
        except RecursionError:
            return ""
    return str(value)


def coerce_unit_interval(value: Any, fallback: float = 0.0) -> float:
    """Coerce a confidence-like value into ``[0, 1]``.

    Numbers and numeric strings are accepted; everything else (including
    booleans and NaN) yields ``fallback``. Out-of-range values are clamped,
    not rejected.
    """
    if isinstance(value, bool) or value is None:
        number = fallback
    elif isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            number = 1.0 if value > 0 else 0.0
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            number = fallback
    else:
        number = fallback
    if math.isnan(number):
        number = fallback
    return max(0.0, min(1.0, float(number)))


def coerce_distinct_pair(value: Any, limit: int = 2) -> list[str]:
    """Return at most ``limit`` distinct, non-blank strings in first-seen order."""
    if not isinstance(value, (list, tuple)):
        return []
    cleaned: list[str] = []
    for item in value:
        text = coerce_text(item).strip()
        if not text or text in cleaned:
            continue
        cleaned.append(text)
        if len(cleaned) == limit:
            break
    return cleaned


def canonicalize_emotion(label: Any, config: NormalizerConfig = DEFAULT_CONFIG) -> str:
    """Map free text onto one of the known emotion labels.

    An exact (case-sensitive) label match wins outright. Otherwise the
    keyword rules are scanned in order against the lower-cased text, and
    when nothing matches the configured default label is returned.
    """
    text = coerce_text(label).strip()
    if text in config.emotion_labels:
        return text
    lowered = text.lower()
    for keywords, canonical in config.emotion_rules:
        if any(keyword in lowered for keyword in keywords):
            return canonical
    return config.default_emotion


def strip_breed_disclaimers(label: Any, config: NormalizerConfig = DEFAULT_CONFIG) -> str:
    """Remove hedge words from a breed label and bound its length.

    Returns an empty string when nothing but hedging was present; callers
    substitute the sentinel label in that case.
    """
    text = config.hedge_regex.sub(" ", coerce_text(label))
    text = " ".join(text.split())
    return text[: config.breed_limit].strip()


def classify_block(raw: Any, config: NormalizerConfig = DEFAULT_CONFIG) -> Rejected | None:
    """Return a rejection when the model flagged the image as not a pet.

    Only the ``blocked`` and ``reason`` keys are read, since a blocked
    response may omit every analysis field. ``None`` means "continue".
    """
    if not isinstance(raw, dict) or not raw.get("blocked"):
        return None
    reason = coerce_text(raw.get("reason")).strip()
    return Rejected(reason=reason or config.blocked_reason)


def _as_record(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _bounded_text(value: Any, limit: int, fallback: str = "") -> str:
    text = coerce_text(value, fallback).strip()
    return text[:limit].strip()


def assemble_result(raw: Any, config: NormalizerConfig = DEFAULT_CONFIG) -> NormalizedResult:
    """Build a fully populated result from untrusted model output.

    Every field is coerced independently and falls back to a safe default,
    so a malformed or missing field never affects any other one.
    """
    record = _as_record(raw)
    emotion = _as_record(record.get("emotion"))
    breed = _as_record(record.get("breed_guess"))
    care = _as_record(record.get("care"))

    breed_label = strip_breed_disclaimers(breed.get("label"), config)
    breed_confidence = coerce_unit_interval(breed.get("confidence"), config.default_confidence)
    if not breed_label:
        breed_label = config.breed_sentinel
        breed_confidence = min(breed_confidence, config.sentinel_confidence_cap)

    treat = record.get("recommended_treat")
    if treat is None:
        treat = record.get("favorite_treat")

    def care_tip(key: str) -> str:
        tip = _bounded_text(care.get(key), config.care_limit)
        return tip or config.care_sentinel

    return NormalizedResult(
        emotion=Emotion(
            label=canonicalize_emotion(emotion.get("label"), config),
            confidence=coerce_unit_interval(
                emotion.get("confidence"), config.default_confidence
            ),
        ),
        activity_suggestion=_bounded_text(
            record.get("activity_suggestion"), config.activity_limit
        ),
        breed_guess=BreedGuess(label=breed_label, confidence=breed_confidence),
        toy_ideas=tuple(coerce_distinct_pair(record.get("toy_ideas"), config.toy_limit)),
        recommended_treat=_bounded_text(treat, config.treat_limit),
        care=CareTips(
            teeth=care_tip("teeth"),
            paws=care_tip("paws"),
            eyes=care_tip("eyes"),
        ),
    )


def parse_model_text(text: Any) -> Any:
    """Parse raw model text as JSON, tolerating a surrounding code fence.

    Raises:
        AnalysisFailedError: If the text cannot be decoded as JSON.
    """
    body = coerce_text(text).strip()
    if body.startswith("```"):
        body = re.sub(r"^```[A-Za-z]*\s*|\s*```$", "", body)
    try:
        return json.loads(body)
    except (ValueError, RecursionError) as exc:
        raise AnalysisFailedError(f"model output is not valid JSON: {exc}") from exc


class ResponseNormalizer:
    """Stateless normalizer bound to one immutable configuration."""

    def __init__(self, config: NormalizerConfig = DEFAULT_CONFIG) -> None:
        self.config = config

    def normalize(self, raw: Any) -> Rejected | NormalizedResult:
        rejected = classify_block(raw, self.config)
        if rejected is not None:
            return rejected
        return assemble_result(raw, self.config)

    def normalize_text(self, text: Any) -> Rejected | NormalizedResult:
        """Parse model text and normalize it.

        Raises:
            AnalysisFailedError: If the text is not valid JSON.
        """
        return self.normalize(parse_model_text(text))
