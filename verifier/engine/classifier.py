"""
EcoBuild Verifier — Vision Classification Client
=================================================
Adapts an uploaded image to the external vision oracle and returns a
ClassificationVerdict.

The oracle's reply is a distrusted external payload: every field is checked
for existence, type, range and enum membership before it leaves this module.
Confidence is clamped to [0, 1], estimated weight to >= 0, and a missing or
unknown category becomes "mixed".

Mock mode:
    With no ANTHROPIC_API_KEY configured the client returns a fixed,
    clearly-labelled verdict (plastic, 5 lbs, confidence 0.85) so the rest of
    the pipeline runs without network access. Every mock call is logged at
    WARNING and the verdict carries mock=True.
"""

from __future__ import annotations

import base64
import io
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import requests
from PIL import Image

from engine.attestation import CLASSIFIED_CATEGORIES, coerce_number, normalize_category
from engine.config import Settings
from engine.errors import ClassificationError

logger = logging.getLogger("verifier.vision")

ANTHROPIC_VERSION = "2023-06-01"
MAX_IMAGE_DIM     = 1568      # longest edge sent to the oracle
MAX_IMAGE_KB      = 3750      # stays under the 5 MB base64 request limit

VISION_PROMPT = """You are a waste collection verification agent for EcoBuild, an environmental rewards platform.

Analyze this image and determine if it shows collected waste/recyclable materials.

Return ONLY valid JSON (no markdown, no code fences) with this exact structure:
{
  "waste_detected": boolean,
  "waste_type": "plastic" | "glass" | "metal" | "paper" | "organic" | "mixed",
  "estimated_weight_lbs": number,
  "confidence": number between 0 and 1,
  "description": "brief description of what you see"
}

Rules:
- waste_detected: true only if you can clearly see collected waste/recyclables
- waste_type: the dominant material type. Use "mixed" if multiple types are visible
- estimated_weight_lbs: rough estimate of total weight in pounds (minimum 1 if waste detected)
- confidence: how confident you are in the classification (0.0 to 1.0)
- description: one sentence describing what's in the image

If the image does not show waste or recyclables (e.g., it's a selfie, landscape, food, etc.), set waste_detected to false and confidence to your certainty level.

Be conservative — only confirm waste_detected if you're reasonably certain."""


@dataclass(frozen=True)
class ClassificationVerdict:
    detected:           bool
    category:           str
    estimated_quantity: float
    confidence:         float
    description:        str
    mock:               bool = False

    def to_dict(self) -> dict:
        """Wire shape consumed by the web client."""
        return {
            "waste_detected":       self.detected,
            "waste_type":           self.category,
            "estimated_weight_lbs": self.estimated_quantity,
            "confidence":           self.confidence,
            "description":          self.description,
            "mock":                 self.mock,
        }


MOCK_VERDICT = ClassificationVerdict(
    detected           = True,
    category           = "plastic",
    estimated_quantity = 5.0,
    confidence         = 0.85,
    description        = "Mock classification: appears to be collected plastic waste materials",
    mock               = True,
)


# ---------------------------------------------------------------------------
# Payload sanitation
# ---------------------------------------------------------------------------
def sanitize_verdict(data: Any) -> ClassificationVerdict:
    """Field-by-field validation of the oracle reply."""
    if not isinstance(data, dict):
        raise ClassificationError(f"Classifier returned {type(data).__name__}, expected a JSON object")

    detected = data.get("waste_detected")
    if not isinstance(detected, bool):
        detected = False

    category = normalize_category(data.get("waste_type"))
    if category not in CLASSIFIED_CATEGORIES:
        if category:
            logger.warning(f"[VISION] Unknown waste_type '{category}' — defaulting to 'mixed'")
        category = "mixed"

    confidence = coerce_number(data.get("confidence"))
    confidence = 0.0 if confidence is None else max(0.0, min(1.0, float(confidence)))

    weight = coerce_number(data.get("estimated_weight_lbs"))
    weight = 0.0 if weight is None else max(0.0, float(weight))

    description = data.get("description")
    if not isinstance(description, str):
        description = ""

    return ClassificationVerdict(
        detected           = detected,
        category           = category,
        estimated_quantity = weight,
        confidence         = confidence,
        description        = description.strip(),
    )


def parse_verdict_text(raw_text: str) -> ClassificationVerdict:
    """Strips optional ```json fences, parses, then sanitizes."""
    text  = raw_text.strip()
    fence = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    if fence:
        text = fence.group(1).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ClassificationError(f"Classifier reply is not valid JSON: {e}") from e
    return sanitize_verdict(data)


def normalize_media_type(mime: Optional[str]) -> str:
    lower = (mime or "").lower()
    if "png" in lower:
        return "image/png"
    if "gif" in lower:
        return "image/gif"
    if "webp" in lower:
        return "image/webp"
    return "image/jpeg"


def _resize_image_bytes(
    image_bytes: bytes,
    media_type:  str,
    max_dim:     int = MAX_IMAGE_DIM,
    max_kb:      int = MAX_IMAGE_KB,
) -> tuple[bytes, str]:
    """
    Downscale to max_dim and re-encode as JPEG when the upload is too large
    for the oracle. Small images pass through untouched.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        if max(img.size) <= max_dim and len(image_bytes) <= max_kb * 1024:
            return image_bytes, media_type

        img = img.convert("RGB")
        img.thumbnail((max_dim, max_dim), Image.LANCZOS)

        quality = 85
        while quality >= 40:
            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=quality)
            size_kb = buf.tell() / 1024
            if size_kb <= max_kb:
                logger.info(f"[VISION] Image resized: {size_kb:.0f}KB @ quality={quality}")
                return buf.getvalue(), "image/jpeg"
            quality -= 10

        return buf.getvalue(), "image/jpeg"
    except Exception as e:
        logger.warning(f"[VISION] Image resize failed: {e} — using original")
        return image_bytes, media_type


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
class VisionClassifier:

    def __init__(self, settings: Settings):
        self._api_key = settings.classifier_api_key
        self._model   = settings.classifier_model
        self._url     = settings.classifier_url
        self._timeout = settings.classifier_timeout_sec
        if self.mock_mode:
            logger.warning("[VISION] ANTHROPIC_API_KEY not set — MOCK MODE, every verdict is fixed")
        else:
            logger.info(f"[VISION] Live classifier initialized (model={self._model})")

    @property
    def mock_mode(self) -> bool:
        return not self._api_key

    @property
    def mode(self) -> str:
        return "mock" if self.mock_mode else "anthropic"

    def classify(self, image_bytes: bytes, media_type: Optional[str] = None) -> ClassificationVerdict:
        if self.mock_mode:
            logger.warning(f"[VISION] MOCK MODE verdict for {len(image_bytes):,} byte image")
            return MOCK_VERDICT

        media_type = normalize_media_type(media_type)
        image_bytes, media_type = _resize_image_bytes(image_bytes, media_type)

        payload = {
            "model":      self._model,
            "max_tokens": 512,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type":       "base64",
                                "media_type": media_type,
                                "data":       base64.b64encode(image_bytes).decode("ascii"),
                            },
                        },
                        {"type": "text", "text": VISION_PROMPT},
                    ],
                }
            ],
        }
        headers = {
            "x-api-key":         self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type":      "application/json",
        }

        logger.info(f"[VISION] Sending {len(image_bytes):,} bytes ({media_type}) to classifier")
        try:
            response = requests.post(self._url, json=payload, headers=headers, timeout=self._timeout)
        except requests.Timeout as e:
            raise ClassificationError(f"Classifier timed out after {self._timeout}s") from e
        except requests.RequestException as e:
            raise ClassificationError(f"Classifier request failed: {e}") from e

        if response.status_code != 200:
            raise ClassificationError(
                f"Classifier returned HTTP {response.status_code}: {response.text[:300]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ClassificationError("Classifier response body is not JSON") from e

        content = body.get("content") if isinstance(body, dict) else None
        if not isinstance(content, list):
            raise ClassificationError(
                f"Classifier response has no content list (got {type(body).__name__})"
            )

        text_block = next(
            (b for b in content if isinstance(b, dict) and b.get("type") == "text"),
            None,
        )
        if text_block is None or not isinstance(text_block.get("text"), str):
            raise ClassificationError("No text response from classifier")

        verdict = parse_verdict_text(text_block["text"])
        logger.info(
            f"[VISION] detected={verdict.detected} type={verdict.category} "
            f"weight={verdict.estimated_quantity} confidence={verdict.confidence:.2%}"
        )
        return verdict
