"""OpenAI client for pet photo analysis.

One call both validates that the image shows an animal and analyzes it;
the model answers with a single JSON object that is handed, unparsed, to
the response normalizer.
"""

from __future__ import annotations

import base64
import logging

from openai import OpenAI, OpenAIError

from .config import get_model
from .normalizer import EMOTION_LABELS

logger = logging.getLogger(__name__)

_LABEL_LIST = ",".join(f'"{label}"' for label in EMOTION_LABELS)

SYSTEM_PROMPT = f"""You first decide if the image clearly shows an ANIMAL (any species).
If it does NOT, return ONLY:
{{"blocked": true, "reason": "Please upload a clear photo of a pet or animal."}}

If it DOES show an animal, return ONE JSON object ONLY (no extra text):
{{
  "emotion": {{ "label": one of [{_LABEL_LIST}], "confidence": [0,1] }},
  "activity_suggestion": string,
  "breed_guess": {{ "label": string, "confidence": [0,1] }},
  "toy_ideas": string[],   // 2 concise items, each formatted "Toy - why it fits"
  "recommended_treat": string,
  "care": {{ "teeth": string, "paws": string, "eyes": string }}
}}
Rules:
- NO positivity bias; choose negative labels when warranted.
- Breed/species: single plausible guess (never "unknown"); lower confidence if unsure.
- "toy_ideas": only 2, distinct, use varied phrasing across runs.
- "care": exactly one actionable tip per field; if a region isn't visible, say "Not Clearly Visible".
- Keep text concise, factual, JSON only.
- Vary wording naturally based on visible cues; avoid repeating stock phrases."""

USER_PROMPT = "Analyze or block as instructed; return JSON only."


class InferenceError(RuntimeError):
    """Raised when the hosted model call fails."""


def image_data_url(image: bytes, mime: str) -> str:
    """Encode image bytes as a base64 data URL."""
    encoded = base64.b64encode(image).decode("ascii")
    return f"data:{mime or 'image/jpeg'};base64,{encoded}"


class InferenceClient:
    """Send an image plus fixed instructions to the hosted model."""

    def __init__(
        self,
        client: OpenAI | None = None,
        model: str | None = None,
        temperature: float = 0.2,
    ) -> None:
        self._client = client
        self.model = model or get_model()
        self.temperature = temperature

    @property
    def client(self) -> OpenAI:
        # Created lazily so the server can start without OPENAI_API_KEY set.
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def analyze(self, image: bytes, mime: str) -> str:
        """Return the raw model text for one image.

        Args:
            image: Uploaded image bytes.
            mime: Image content type used in the data URL.

        Returns:
            Stripped model output text, ``"{}"`` when the response has none.

        Raises:
            InferenceError: If the API call fails.
        """
        try:
            response = self.client.responses.create(
                model=self.model,
                temperature=self.temperature,
                text={"format": {"type": "json_object"}},
                input=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "input_text", "text": USER_PROMPT},
                            {
                                "type": "input_image",
                                "image_url": image_data_url(image, mime),
                                "detail": "auto",
                            },
                        ],
                    },
                ],
            )
        except OpenAIError as exc:
            raise InferenceError(f"model call failed: {exc}") from exc

        text = getattr(response, "output_text", None) or "{}"
        logger.debug(f"Model returned {len(text)} characters.")
        return text.strip()
