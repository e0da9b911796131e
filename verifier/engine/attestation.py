"""
EcoBuild Verifier — Attestation Normalizer, Validator & Identity
=================================================================

One canonicalization routine feeds both call surfaces:

  - legacy claim path  (has_image=False): manual category + quantity,
    strict field rules, bounded clock window
  - image path         (has_image=True):  category/quantity come from the
    classifier, only actor id + evidence hash are mandatory

Pipeline:
    raw dict → normalize_claim() → validate rules (all collected, never
    short-circuited) → compute_attestation_id() over the canonical claim.

The attestation id is a sha256 over the canonical claim serialized with a
fixed key order and no whitespace, so identical normalized claims always
produce the identical id. Nothing here persists or deduplicates ids.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from engine.config import WINDOW_MS

logger = logging.getLogger("verifier.attest")

Number = Union[int, float]

MATERIAL_CATEGORIES   = ("plastic", "glass", "metal", "paper")
CLASSIFIED_CATEGORIES = MATERIAL_CATEGORIES + ("organic", "mixed")

# Field names sent by older web clients, accepted as aliases.
FIELD_ALIASES = {
    "playerPubkey": "actorId",
    "materialType": "materialCategory",
    "photoHash":    "evidenceHash",
    "gps":          "location",
    "timestamp":    "claimedTimestamp",
}


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------
def coerce_number(value: Any) -> Optional[Number]:
    """
    Numeric or numeric-string → finite number, anything else → None.

    Integral floats collapse to int so that 4, 4.0 and "4" serialize to the
    same bytes when hashed.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        num = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            num = float(text)
        except ValueError:
            return None
    else:
        return None

    if not math.isfinite(num):
        return None
    if num.is_integer():
        return int(num)
    return num


def _text(value: Any) -> str:
    if isinstance(value, bool) or value is None:
        return ""
    if isinstance(value, (str, int, float)):
        return str(value).strip()
    return ""


def normalize_category(value: Any) -> str:
    return _text(value).lower()


def _encodes_as_utf8(value: str) -> bool:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def _shown(value: str) -> str:
    """Echo-safe form of caller text: lone surrogates become \\udXXX escapes."""
    return value.encode("utf-8", "backslashreplace").decode("utf-8")


# ---------------------------------------------------------------------------
# Canonical claim
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Location:
    lat: Optional[Number]
    lon: Optional[Number]


@dataclass(frozen=True)
class AttestationClaim:
    actor_id:          str
    material_category: str
    quantity:          Optional[Number]
    zone_id:           str
    evidence_hash:     str
    location:          Optional[Location]
    claimed_timestamp: Optional[Number]
    has_image:         bool = False

    def to_dict(self) -> dict:
        """Canonical serialization order. Changing it changes every id."""
        location = None
        if self.location is not None:
            location = {"lat": self.location.lat, "lon": self.location.lon}
        return {
            "actorId":          self.actor_id,
            "materialCategory": self.material_category,
            "quantity":         self.quantity,
            "zoneId":           self.zone_id,
            "evidenceHash":     self.evidence_hash,
            "location":         location,
            "claimedTimestamp": self.claimed_timestamp,
        }


def _unalias(raw: dict) -> dict:
    merged = dict(raw)
    for alias, name in FIELD_ALIASES.items():
        if alias in raw and name not in raw:
            merged[name] = raw[alias]
    return merged


def normalize_claim(raw: dict, has_image: bool = False) -> AttestationClaim:
    """Pure: identical raw input always yields an identical canonical claim."""
    data = _unalias(raw)

    location = None
    raw_location = data.get("location")
    if isinstance(raw_location, dict):
        location = Location(
            lat = coerce_number(raw_location.get("lat")),
            lon = coerce_number(raw_location.get("lon")),
        )

    category = normalize_category(data.get("materialCategory"))
    if has_image and not category:
        category = "mixed"

    return AttestationClaim(
        actor_id          = _text(data.get("actorId")),
        material_category = category,
        quantity          = coerce_number(data.get("quantity")),
        zone_id           = _text(data.get("zoneId")),
        evidence_hash     = _text(data.get("evidenceHash")),
        location          = location,
        claimed_timestamp = coerce_number(data.get("claimedTimestamp")),
        has_image         = has_image,
    )


def compute_attestation_id(claim: AttestationClaim) -> str:
    canonical = json.dumps(claim.to_dict(), separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
@dataclass
class AttestationResult:
    server_timestamp: int
    claim:            Optional[AttestationClaim] = None
    attestation_id:   Optional[str]              = None
    errors:           list[str]                  = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, message: str):
        self.errors.append(message)

    def to_response(self) -> dict:
        if not self.ok:
            return {"ok": False, "errors": self.errors, "serverTimestamp": self.server_timestamp}
        return {
            "ok":              True,
            "attestationId":   self.attestation_id,
            "normalized":      self.claim.to_dict(),
            "serverTimestamp": self.server_timestamp,
        }


def now_ms() -> int:
    return int(time.time() * 1000)


class AttestationValidator:
    """
    Collects every violated rule in one pass.

    Usage:
        validator = AttestationValidator(window_ms=600_000)
        result = validator.validate(payload)
        if not result.ok:
            raise AttestationValidationError(result.errors, result.server_timestamp)
    """

    def __init__(self, window_ms: int = WINDOW_MS):
        self.window_ms = window_ms

    def validate(
        self,
        raw:       Any,
        has_image: bool = False,
        server_ts: Optional[int] = None,
    ) -> AttestationResult:
        server_ts = now_ms() if server_ts is None else server_ts
        result    = AttestationResult(server_timestamp=server_ts)

        if not isinstance(raw, dict):
            result.add_error("claim must be a JSON object")
            return result

        claim = normalize_claim(raw, has_image=has_image)

        if has_image:
            self._check_image_claim(result, claim)
        else:
            self._check_legacy_claim(result, claim)

        self._check_text_encoding(result, claim)

        if claim.claimed_timestamp is not None:
            self._check_window(result, claim.claimed_timestamp, server_ts)

        if not result.ok:
            logger.warning(
                f"[ATTEST] rejected actor={_shown(claim.actor_id) or '-'} "
                f"violations={len(result.errors)}: {'; '.join(result.errors)}"
            )
            return result

        result.claim          = claim
        result.attestation_id = compute_attestation_id(claim)
        logger.info(f"[ATTEST] accepted actor={claim.actor_id} id={result.attestation_id[:16]}...")
        return result

    # ─────────────────────────────────────────────────────────────────────
    def _check_legacy_claim(self, result: AttestationResult, claim: AttestationClaim):
        for name, value in (
            ("actorId",          claim.actor_id),
            ("materialCategory", claim.material_category),
            ("zoneId",           claim.zone_id),
            ("evidenceHash",     claim.evidence_hash),
        ):
            if not value:
                result.add_error(f"{name} is required")

        if claim.material_category and claim.material_category not in MATERIAL_CATEGORIES:
            result.add_error(
                f"materialCategory '{_shown(claim.material_category)}' must be one of "
                f"{', '.join(MATERIAL_CATEGORIES)}"
            )

        if claim.quantity is None:
            result.add_error("quantity must be a finite number")
        elif claim.quantity <= 0:
            result.add_error("quantity must be greater than 0")

        if claim.location is None:
            result.add_error("location.lat must be a finite number")
            result.add_error("location.lon must be a finite number")
        else:
            if claim.location.lat is None:
                result.add_error("location.lat must be a finite number")
            if claim.location.lon is None:
                result.add_error("location.lon must be a finite number")

        if claim.claimed_timestamp is None:
            result.add_error("claimedTimestamp must be a finite number")

    def _check_image_claim(self, result: AttestationResult, claim: AttestationClaim):
        if not claim.actor_id:
            result.add_error("actorId is required")
        if not claim.evidence_hash:
            result.add_error("evidenceHash is required")
        if claim.material_category not in CLASSIFIED_CATEGORIES:
            result.add_error(
                f"materialCategory '{_shown(claim.material_category)}' must be one of "
                f"{', '.join(CLASSIFIED_CATEGORIES)}"
            )
        if claim.quantity is None or claim.quantity < 0:
            result.add_error("quantity must be a non-negative finite number")
        if claim.location is not None:
            if claim.location.lat is None:
                result.add_error("location.lat must be a finite number")
            if claim.location.lon is None:
                result.add_error("location.lon must be a finite number")

    def _check_text_encoding(self, result: AttestationResult, claim: AttestationClaim):
        for name, value in (
            ("actorId",          claim.actor_id),
            ("materialCategory", claim.material_category),
            ("zoneId",           claim.zone_id),
            ("evidenceHash",     claim.evidence_hash),
        ):
            if not _encodes_as_utf8(value):
                result.add_error(f"{name} must be valid UTF-8 text")

    def _check_window(self, result: AttestationResult, claimed: Number, server_ts: int):
        skew = server_ts - claimed
        if abs(skew) > self.window_ms:
            direction = "behind" if skew > 0 else "ahead of"
            result.add_error(
                f"claimedTimestamp is {abs(skew)} ms {direction} server time "
                f"(allowed window ±{self.window_ms} ms)"
            )
