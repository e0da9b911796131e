"""
EcoBuild Verifier — Reward Orchestrator
=======================================

    Received → Validated → Classified → Rejected
                                      → Accepted → Minted | MintFailed

  Received → Validated     any validator violation → AttestationValidationError,
                           the classifier is never called
  Validated → Classified   classifier failure → ClassificationError (5xx),
                           never folded into a rejection
  Classified → Rejected    not detected, or confidence < MIN_CONFIDENCE;
                           a normal outcome carrying the reason
  Accepted → Minted        ledger submission is the last step; a failure is
                           LedgerError(verified=True) and is never retried

Components are injected at construction; the orchestrator itself holds no
mutable state between requests.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from engine.attestation import AttestationValidator, compute_attestation_id, normalize_claim, now_ms
from engine.classifier import ClassificationVerdict, VisionClassifier
from engine.config import Settings
from engine.errors import AttestationValidationError, InvalidAddressError, LedgerError
from engine.ledger import LedgerAdapter, parse_actor_address

logger = logging.getLogger("verifier.rewards")

# Category → on-ledger material discriminant. Anything else (organic, mixed,
# unknown) is recorded as plastic.
CATEGORY_CODES = {
    "plastic": 0,
    "glass":   1,
    "metal":   2,
    "paper":   3,
}
DEFAULT_CATEGORY_CODE = CATEGORY_CODES["plastic"]


def category_code(category: str) -> int:
    return CATEGORY_CODES.get((category or "").strip().lower(), DEFAULT_CATEGORY_CODE)


def reward_units(estimated_quantity: float) -> int:
    """Round half up, never below 1: 0.2 → 1, 2.5 → 3, 4.6 → 5."""
    return max(1, int(math.floor(estimated_quantity + 0.5)))


class PipelineState(str, Enum):
    RECEIVED    = "received"
    VALIDATED   = "validated"
    CLASSIFIED  = "classified"
    REJECTED    = "rejected"
    ACCEPTED    = "accepted"
    MINTED      = "minted"
    MINT_FAILED = "mint_failed"


@dataclass(frozen=True)
class RewardDecision:
    accepted:      bool
    reason:        Optional[str] = None
    units:         int = 0
    category_code: int = DEFAULT_CATEGORY_CODE


def decide(verdict: ClassificationVerdict, min_confidence: float) -> RewardDecision:
    if not verdict.detected:
        return RewardDecision(
            accepted=False,
            reason=f"No waste detected (confidence {verdict.confidence})",
        )
    if verdict.confidence < min_confidence:
        return RewardDecision(
            accepted=False,
            reason=f"Confidence {verdict.confidence} below threshold {min_confidence}",
        )
    return RewardDecision(
        accepted      = True,
        units         = reward_units(verdict.estimated_quantity),
        category_code = category_code(verdict.category),
    )


@dataclass
class VerificationOutcome:
    state:          PipelineState
    actor:          str
    verdict:        ClassificationVerdict
    decision:       RewardDecision
    transaction:    Optional[str] = None
    attestation_id: Optional[str] = None

    def to_response(self) -> dict:
        if not self.decision.accepted:
            return {
                "ok":             True,
                "verified":       False,
                "classification": self.verdict.to_dict(),
                "reason":         self.decision.reason,
                "playerWallet":   self.actor,
            }
        return {
            "ok":             True,
            "verified":       True,
            "classification": self.verdict.to_dict(),
            "blocksMinted":   self.decision.units,
            "categoryCode":   self.decision.category_code,
            "transaction":    self.transaction,
            "playerWallet":   self.actor,
            "attestationId":  self.attestation_id,
        }


@dataclass(frozen=True)
class ConversionOutcome:
    transaction:      str
    blocks_converted: int
    bricks_received:  int = 1

    def to_response(self) -> dict:
        return {
            "ok":              True,
            "transaction":     self.transaction,
            "blocksConverted": self.blocks_converted,
            "bricksReceived":  self.bricks_received,
        }


class RewardOrchestrator:

    def __init__(
        self,
        settings:   Settings,
        classifier: VisionClassifier,
        ledger:     LedgerAdapter,
        validator:  Optional[AttestationValidator] = None,
    ):
        self.settings   = settings
        self.classifier = classifier
        self.ledger     = ledger
        self.validator  = validator or AttestationValidator(window_ms=settings.attestation_window_ms)

    # ── /verify ───────────────────────────────────────────────────────────
    def verify(
        self,
        image_bytes: bytes,
        actor:       str,
        media_type:  Optional[str] = None,
        request_id:  str = "-",
    ) -> VerificationOutcome:
        server_ts     = now_ms()
        evidence_hash = hashlib.sha256(image_bytes).hexdigest() if image_bytes else ""
        logger.info(
            f"[VERIFY] rid={request_id} state={PipelineState.RECEIVED.value} "
            f"actor={actor or '-'} bytes={len(image_bytes):,}"
        )

        raw_claim = {
            "actorId":          actor,
            "evidenceHash":     evidence_hash,
            "quantity":         0,
            "claimedTimestamp": server_ts,
        }
        result = self.validator.validate(raw_claim, has_image=True, server_ts=server_ts)
        errors = list(result.errors)
        actor_key = None
        if actor:
            try:
                actor_key = parse_actor_address(actor)
            except InvalidAddressError:
                errors.append("player_wallet is not a valid wallet address")
        if errors:
            logger.warning(f"[VERIFY] rid={request_id} invalid: {'; '.join(errors)}")
            raise AttestationValidationError(errors, server_ts)
        actor = str(actor_key)
        logger.info(f"[VERIFY] rid={request_id} state={PipelineState.VALIDATED.value} actor={actor}")

        verdict = self.classifier.classify(image_bytes, media_type)
        if verdict.mock:
            logger.warning(f"[VERIFY] rid={request_id} using MOCK classifier verdict")
        logger.info(
            f"[VERIFY] rid={request_id} state={PipelineState.CLASSIFIED.value} "
            f"detected={verdict.detected} type={verdict.category} confidence={verdict.confidence}"
        )

        decision = decide(verdict, self.settings.min_confidence)
        if not decision.accepted:
            logger.info(
                f"[VERIFY] rid={request_id} state={PipelineState.REJECTED.value} "
                f"actor={actor} reason={decision.reason}"
            )
            return VerificationOutcome(PipelineState.REJECTED, actor, verdict, decision)

        claim = normalize_claim(
            {
                "actorId":          actor,
                "materialCategory": verdict.category,
                "quantity":         decision.units,
                "evidenceHash":     evidence_hash,
                "claimedTimestamp": server_ts,
            },
            has_image=True,
        )
        attestation_id = compute_attestation_id(claim)
        logger.info(
            f"[VERIFY] rid={request_id} state={PipelineState.ACCEPTED.value} actor={actor} "
            f"units={decision.units} code={decision.category_code} attestation={attestation_id[:16]}..."
        )

        try:
            tx = self.ledger.mint_reward(actor_key, decision.units, decision.category_code)
        except LedgerError as e:
            logger.error(
                f"[VERIFY] rid={request_id} state={PipelineState.MINT_FAILED.value} actor={actor} "
                f"attestation={attestation_id[:16]}... reason={e.reason.value} detail={e.detail}"
            )
            e.verified = True
            raise

        logger.info(
            f"[VERIFY] rid={request_id} state={PipelineState.MINTED.value} actor={actor} "
            f"attestation={attestation_id[:16]}... tx={tx}"
        )
        return VerificationOutcome(
            PipelineState.MINTED, actor, verdict, decision,
            transaction=tx, attestation_id=attestation_id,
        )

    # ── /convert ──────────────────────────────────────────────────────────
    def convert(
        self,
        actor:              Optional[str] = None,
        signed_transaction: Optional[str] = None,
        request_id:         str = "-",
    ) -> ConversionOutcome:
        if self.settings.convert_signer != "actor":
            logger.warning(
                f"[CONVERT] rid={request_id} converting as AUTHORITY "
                f"{self.ledger.authority_address} (deployment-specific compromise)"
            )
            tx = self.ledger.convert_as_authority()
            return ConversionOutcome(tx, self.settings.blocks_per_brick)

        errors = []
        actor_key = None
        try:
            actor_key = parse_actor_address(actor or "")
        except InvalidAddressError:
            errors.append("player_wallet must be a valid wallet address")

        raw_tx = b""
        if not signed_transaction:
            errors.append("signed_transaction is required")
        else:
            try:
                raw_tx = base64.b64decode(signed_transaction, validate=True)
            except (binascii.Error, ValueError):
                errors.append("signed_transaction must be base64")
        if errors:
            raise AttestationValidationError(errors, now_ms())

        logger.info(f"[CONVERT] rid={request_id} relaying actor-signed conversion for {actor_key}")
        tx = self.ledger.relay_conversion(actor_key, raw_tx)
        return ConversionOutcome(tx, self.settings.blocks_per_brick)
