"""
EcoBuild Verifier — API Gateway
FastAPI server exposing the reward pipeline to the web client.

Routes:
  GET  /health             — liveness + ledger identifiers + operating modes
  POST /verify             — multipart image + player_wallet → classify → mint
  POST /convert            — burn 10 BLOCK for 1 Brick
  GET  /stats/{wallet}     — per-player counters
  GET  /global-stats       — program-wide counters
  POST /attest             — legacy claim validation, no ledger interaction

Notes:
  - CORS allow_origins from ALLOWED_ORIGINS env var
  - Rate limiting on /verify via slowapi (RATE_LIMIT_VERIFY)
  - Request bodies above MAX_BODY_BYTES are refused with 413 before parsing
  - Every response carries X-Request-ID; pipeline logs include it
"""

import json
import logging
import uuid
from typing import Any, Dict, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool

from engine.attestation import now_ms
from engine.classifier import VisionClassifier
from engine.config import Settings
from engine.errors import (
    AttestationValidationError,
    InvalidAddressError,
    PayloadTooLargeError,
    VerifierError,
)
from engine.ledger import LedgerAdapter, build_ledger, parse_actor_address
from engine.rewards import RewardOrchestrator

load_dotenv()

# ─── Setup ────────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] VERIFIER :: %(message)s",
)
log = logging.getLogger("verifier.api")


# ─── Request Models ───────────────────────────────────────────────────────────
class ConvertRequest(BaseModel):
    player_wallet:      Optional[str] = None
    signed_transaction: Optional[str] = None   # base64, CONVERT_SIGNER=actor only


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "-")


def create_app(
    settings:   Optional[Settings] = None,
    classifier: Optional[VisionClassifier] = None,
    ledger:     Optional[LedgerAdapter] = None,
) -> FastAPI:
    settings     = settings or Settings.from_env()
    classifier   = classifier or VisionClassifier(settings)
    ledger       = ledger or build_ledger(settings)
    orchestrator = RewardOrchestrator(settings, classifier, ledger)
    validator    = orchestrator.validator

    app = FastAPI(
        title="EcoBuild Verifier API",
        description="Image-verified waste collection rewards",
        version=settings.version,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings     = settings
    app.state.orchestrator = orchestrator

    # ─── Rate limiter ─────────────────────────────────────────────────────────
    limiter = Limiter(key_func=get_remote_address)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # ─── Startup Validation ───────────────────────────────────────────────────
    @app.on_event("startup")
    async def _startup_validation():
        warnings_found = []

        if classifier.mock_mode:
            warnings_found.append(
                "ANTHROPIC_API_KEY NOT SET — CLASSIFIER IS IN MOCK MODE. "
                "Every image receives the same fixed verdict and is rewarded."
            )
        if ledger.mode == "simulated":
            warnings_found.append(
                "SIMULATED LEDGER IN USE — balances live in process memory and vanish on restart. "
                "Configure AUTHORITY_KEYPAIR_BASE64 / LEDGER_MODE=solana for a real ledger."
            )
        if ledger.ephemeral_authority:
            warnings_found.append(
                "NO AUTHORITY KEYPAIR SET — A RANDOM EPHEMERAL KEY IS BEING USED! "
                "The authority address will change on every restart."
            )
        if settings.convert_signer != "actor":
            warnings_found.append(
                "CONVERT_SIGNER=authority — /convert burns the AUTHORITY's own balance, "
                "not the requesting player's. Use CONVERT_SIGNER=actor for player-signed conversion."
            )

        for w in warnings_found:
            log.warning(f"\n{'='*70}\n⚠️  STARTUP WARNING: {w}\n{'='*70}")

        if not warnings_found:
            log.info("✅ Startup validation passed. Classifier, ledger and authority are configured.")

    # ─── CORS ─────────────────────────────────────────────────────────────────
    log.info(f"CORS allowed origins: {settings.allowed_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # ─── Request context + body ceiling ───────────────────────────────────────
    @app.middleware("http")
    async def _request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id

        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > settings.max_body_bytes:
            log.warning(
                f"[BODY] rid={request_id} {request.url.path} refused: "
                f"{declared} bytes > {settings.max_body_bytes}"
            )
            err = PayloadTooLargeError(settings.max_body_bytes)
            response = JSONResponse(status_code=err.status_code, content=err.to_dict())
        else:
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        return response

    # ─── Error translation ────────────────────────────────────────────────────
    @app.exception_handler(VerifierError)
    async def _verifier_error(request: Request, exc: VerifierError):
        level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        log.log(
            level,
            f"[ERROR] rid={_request_id(request)} {request.url.path} "
            f"{exc.status_code} {exc.message}: {exc.detail or ''}",
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # ─── Routes ───────────────────────────────────────────────────────────────

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "ok":         True,
            "version":    settings.version,
            "commit":     settings.commit,
            **ledger.addresses(),
            "classifier": classifier.mode,
            "ledger":     ledger.mode,
        }

    @app.post("/verify")
    @limiter.limit(settings.rate_limit_verify)
    async def verify(
        request:       Request,                          # required by slowapi
        image:         Optional[UploadFile] = File(None),
        player_wallet: Optional[str]        = Form(None),
    ) -> Dict[str, Any]:
        rid = _request_id(request)

        missing = []
        if image is None:
            missing.append("Missing image file")
        if not (player_wallet or "").strip():
            missing.append("Missing player_wallet")
        if missing:
            raise AttestationValidationError(missing, now_ms(), message="Missing required fields")

        image_bytes = await image.read(settings.max_body_bytes + 1)
        if len(image_bytes) > settings.max_body_bytes:
            raise PayloadTooLargeError(settings.max_body_bytes)
        if not image_bytes:
            raise AttestationValidationError(["Image file is empty"], now_ms())

        log.info(f"[VERIFY] rid={rid} image received — {len(image_bytes):,} bytes ({image.content_type})")
        outcome = await run_in_threadpool(
            orchestrator.verify,
            image_bytes,
            player_wallet.strip(),
            image.content_type,
            rid,
        )
        return outcome.to_response()

    @app.post("/convert")
    async def convert(request: Request, body: Optional[ConvertRequest] = None) -> Dict[str, Any]:
        body = body or ConvertRequest()
        outcome = await run_in_threadpool(
            orchestrator.convert,
            body.player_wallet,
            body.signed_transaction,
            _request_id(request),
        )
        return outcome.to_response()

    @app.get("/stats/{wallet}")
    async def player_stats(wallet: str, request: Request):
        try:
            actor = parse_actor_address(wallet)
        except InvalidAddressError:
            log.info(f"[STATS] rid={_request_id(request)} invalid wallet {wallet!r}")
            return JSONResponse(status_code=400, content={"ok": False, "error": "Invalid wallet address"})

        stats = await run_in_threadpool(ledger.get_player_stats, actor)
        if stats is None:
            return JSONResponse(status_code=404, content={"ok": False, "error": "Player profile not found"})
        return {"ok": True, **stats.to_dict()}

    @app.get("/global-stats")
    async def global_stats():
        stats = await run_in_threadpool(ledger.get_global_stats)
        if stats is None:
            return JSONResponse(status_code=404, content={"ok": False, "error": "Global config not initialized"})
        return {"ok": True, **stats.to_dict()}

    @app.post("/attest")
    async def attest(request: Request):
        raw_body = await request.body()
        if len(raw_body) > settings.max_body_bytes:
            raise PayloadTooLargeError(settings.max_body_bytes)
        try:
            payload = json.loads(raw_body) if raw_body else None
        except ValueError:
            payload = None
            log.info(f"[ATTEST] rid={_request_id(request)} body is not valid JSON")

        result = validator.validate(payload, has_image=False)
        if not result.ok:
            log.warning(
                f"[ATTEST] rid={_request_id(request)} rejected "
                f"violations={len(result.errors)}: {'; '.join(result.errors)}"
            )
            return JSONResponse(status_code=400, content=result.to_response())
        log.info(f"[ATTEST] rid={_request_id(request)} attestation {result.attestation_id}")
        return result.to_response()

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
