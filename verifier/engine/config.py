"""
EcoBuild Verifier — Settings
Process-wide configuration, read once from the environment and treated as
immutable afterwards. Passed explicitly into every component.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger("verifier.config")

DEFAULT_PROGRAM_ID     = "HcENn31gno9LMse5iERziSpLGjMdtLZAxLQo9Ff4xn5b"
DEFAULT_RPC_URL        = "http://127.0.0.1:8899"
DEFAULT_CLASSIFIER_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_MODEL          = "claude-sonnet-4-20250514"
DEFAULT_ORIGINS        = "http://localhost:3000,http://127.0.0.1:3000"

MIN_CONFIDENCE   = 0.7        # inclusive lower bound for acceptance
BLOCKS_PER_BRICK = 10         # reward units burned per crafted unit
WINDOW_MS        = 600_000    # 10 minutes, symmetric


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not an integer — using default {default}")
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not a number — using default {default}")
        return default


@dataclass(frozen=True)
class Settings:
    attestation_window_ms:  int            = WINDOW_MS
    min_confidence:         float          = MIN_CONFIDENCE
    blocks_per_brick:       int            = BLOCKS_PER_BRICK

    rpc_url:                str            = DEFAULT_RPC_URL
    program_id:             str            = DEFAULT_PROGRAM_ID
    authority_keypair_b64:  Optional[str]  = None
    authority_keypair_path: Optional[str]  = None
    ledger_mode:            str            = "auto"        # auto | solana | simulated
    ledger_timeout_sec:     float          = 15.0
    convert_signer:         str            = "authority"   # authority | actor

    classifier_api_key:     Optional[str]  = None
    classifier_model:       str            = DEFAULT_MODEL
    classifier_url:         str            = DEFAULT_CLASSIFIER_URL
    classifier_timeout_sec: float          = 30.0

    allowed_origins:        List[str]      = field(
        default_factory=lambda: [o.strip() for o in DEFAULT_ORIGINS.split(",")]
    )
    max_body_bytes:         int            = 10 * 1024 * 1024
    rate_limit_verify:      str            = "20/minute"
    port:                   int            = 3000
    version:                str            = "0.1.0"
    commit:                 str            = "dev"

    @classmethod
    def from_env(cls) -> "Settings":
        raw_origins = os.getenv("ALLOWED_ORIGINS", DEFAULT_ORIGINS)
        return cls(
            attestation_window_ms  = _int_env("ATTESTATION_WINDOW_MS", WINDOW_MS),
            rpc_url                = os.getenv("SOLANA_RPC_URL", DEFAULT_RPC_URL),
            program_id             = os.getenv("PROGRAM_ID", DEFAULT_PROGRAM_ID),
            authority_keypair_b64  = os.getenv("AUTHORITY_KEYPAIR_BASE64") or None,
            authority_keypair_path = os.getenv("PROGRAM_AUTHORITY_KEYPAIR") or None,
            ledger_mode            = os.getenv("LEDGER_MODE", "auto").strip().lower(),
            ledger_timeout_sec     = _float_env("LEDGER_TIMEOUT_SEC", 15.0),
            convert_signer         = os.getenv("CONVERT_SIGNER", "authority").strip().lower(),
            classifier_api_key     = os.getenv("ANTHROPIC_API_KEY") or None,
            classifier_model       = os.getenv("CLASSIFIER_MODEL", DEFAULT_MODEL),
            classifier_url         = os.getenv("CLASSIFIER_API_URL", DEFAULT_CLASSIFIER_URL),
            classifier_timeout_sec = _float_env("CLASSIFIER_TIMEOUT_SEC", 30.0),
            allowed_origins        = [o.strip() for o in raw_origins.split(",") if o.strip()],
            max_body_bytes         = _int_env("MAX_BODY_BYTES", 10 * 1024 * 1024),
            rate_limit_verify      = os.getenv("RATE_LIMIT_VERIFY", "20/minute"),
            port                   = _int_env("PORT", 3000),
            version                = os.getenv("VERIFIER_VERSION", "0.1.0"),
            commit                 = os.getenv("COMMIT_SHA", "dev"),
        )

    @property
    def has_authority_keypair(self) -> bool:
        return bool(self.authority_keypair_b64 or self.authority_keypair_path)

    @property
    def use_simulated_ledger(self) -> bool:
        if self.ledger_mode == "simulated":
            return True
        if self.ledger_mode == "solana":
            return False
        return not self.has_authority_keypair
