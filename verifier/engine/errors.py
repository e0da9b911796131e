"""
EcoBuild Verifier — Error taxonomy
===================================
Every failure the pipeline can surface to a caller is one of these.
Rejections (low confidence, nothing detected) are NOT errors and never
raise; they come back as a normal outcome.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class VerifierError(Exception):
    """Base class for all errors translated into HTTP responses."""

    status_code = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        body = {"ok": False, "error": self.message}
        if self.detail:
            body["detail"] = self.detail
        return body


class AttestationValidationError(VerifierError):
    """Caller-fixable input problem. Carries the complete violation list."""

    status_code = 400

    def __init__(self, errors: list[str], server_timestamp: int, message: str = "Invalid request"):
        super().__init__(message)
        self.errors = list(errors)
        self.server_timestamp = server_timestamp

    def to_dict(self) -> dict:
        return {
            "ok":              False,
            "error":           self.message,
            "errors":          self.errors,
            "serverTimestamp": self.server_timestamp,
        }


class PayloadTooLargeError(VerifierError):
    status_code = 413

    def __init__(self, limit_bytes: int):
        super().__init__(
            "Payload too large",
            detail=f"Request body exceeds the {limit_bytes} byte limit",
        )
        self.limit_bytes = limit_bytes


class InvalidAddressError(ValueError):
    """Raised when a string does not parse as a ledger account address."""


class ClassificationError(VerifierError):
    """The external classifier could not produce a verdict."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__("Classification failed", detail=detail)


class LedgerReason(str, Enum):
    INSUFFICIENT_BALANCE = "insufficient_balance"
    UNAUTHORIZED         = "unauthorized"
    OVERFLOW             = "overflow"
    INVALID_AMOUNT       = "invalid_amount"
    NOT_INITIALIZED      = "not_initialized"
    INVALID_TRANSACTION  = "invalid_transaction"
    TIMEOUT              = "timeout"
    REJECTED             = "rejected"
    UNAVAILABLE          = "unavailable"


class LedgerError(VerifierError):
    """
    The ledger refused or could not complete a state change.

    `verified` is True when classification already accepted the claim, so
    callers can tell "verified but not rewarded" apart from "not verified".
    """

    status_code = 500

    def __init__(
        self,
        message:  str,
        reason:   LedgerReason = LedgerReason.REJECTED,
        detail:   Optional[str] = None,
        verified: bool = False,
    ):
        super().__init__(message, detail=detail)
        self.reason   = reason
        self.verified = verified

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["reason"] = self.reason.value
        if self.verified:
            body["verified"] = True
            body["rewarded"] = False
        return body
