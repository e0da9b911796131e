"""
EcoBuild Verifier — Ledger Adapter
===================================
Bridge between the reward pipeline and the EcoBuild on-chain program.

  - deterministic address derivation (program-derived addresses from fixed
    seeds + the actor's public key, associated token accounts)
  - mint_reward(actor, units, category_code)
  - convert_as_authority() / relay_conversion(actor, signed_tx)
  - read-only player and global counters, "not created yet" → None

Two implementations share one interface:

  SolanaLedger    real RPC adapter (solana-py + solders). The program is the
                  sole arbiter of balances; nothing is pre-checked here.
  InMemoryLedger  in-process stand-in that enforces the same program rules
                  (authority, zero amount, u64 overflow, exchange balance).
                  Used when no authority keypair is configured, and in tests.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import re
import struct
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Optional

from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.sysvar import RENT
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from engine.config import BLOCKS_PER_BRICK, Settings
from engine.errors import InvalidAddressError, LedgerError, LedgerReason

logger = logging.getLogger("verifier.ledger")

GLOBAL_CONFIG_SEED = b"global_config"
BLOCK_MINT_SEED    = b"block_mint"
PLAYER_SEED        = b"player"

U64_MAX = 2**64 - 1

_CONFIRMED_STATUSES = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


def _anchor_discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


MINT_BLOCKS_DISCRIMINATOR       = _anchor_discriminator("global", "mint_blocks")
CONVERT_TO_BRICK_DISCRIMINATOR  = _anchor_discriminator("global", "convert_to_brick")
INITIALIZE_CONFIG_DISCRIMINATOR = _anchor_discriminator("global", "initialize_config")
PLAYER_PROFILE_DISCRIMINATOR    = _anchor_discriminator("account", "PlayerProfile")
GLOBAL_CONFIG_DISCRIMINATOR     = _anchor_discriminator("account", "GlobalConfig")

# Account layouts after the 8-byte discriminator. Field order follows the
# PlayerProfile and GlobalConfig accounts the web client reads through Anchor
# (authority, bump, totalCredits, blocksMinted, brickCount, collectionsCount;
# authority, blockMint, totalBlocksMinted, totalBricksCreated). Re-check against
# the deployed program IDL whenever the program is upgraded.
PLAYER_PROFILE_LAYOUT = struct.Struct("<32sBQQQQ")   # authority, bump, credits, minted, bricks, collections
GLOBAL_CONFIG_LAYOUT  = struct.Struct("<32s32sQQ")   # authority, block_mint, total minted, total bricks


# ---------------------------------------------------------------------------
# Address derivation
# ---------------------------------------------------------------------------
def parse_actor_address(value: str) -> Pubkey:
    """base58 string → Pubkey, or InvalidAddressError."""
    if not isinstance(value, str) or not value.strip():
        raise InvalidAddressError("Wallet address is required")
    try:
        return Pubkey.from_string(value.strip())
    except ValueError as e:
        raise InvalidAddressError(f"Invalid wallet address: {value!r}") from e


def derive_global_config(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([GLOBAL_CONFIG_SEED], program_id)[0]


def derive_block_mint(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([BLOCK_MINT_SEED], program_id)[0]


def derive_player_profile(program_id: Pubkey, actor: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([PLAYER_SEED, bytes(actor)], program_id)[0]


def derive_player_token_account(block_mint: Pubkey, actor: Pubkey) -> Pubkey:
    return get_associated_token_address(actor, block_mint)


# ---------------------------------------------------------------------------
# Instruction builders
# ---------------------------------------------------------------------------
def build_mint_instruction(
    program_id:    Pubkey,
    authority:     Pubkey,
    actor:         Pubkey,
    amount:        int,
    category_code: int,
) -> Instruction:
    block_mint = derive_block_mint(program_id)
    data = MINT_BLOCKS_DISCRIMINATOR + struct.pack("<QB", amount, category_code)
    accounts = [
        AccountMeta(authority,                                      is_signer=True,  is_writable=True),
        AccountMeta(derive_global_config(program_id),               is_signer=False, is_writable=True),
        AccountMeta(block_mint,                                     is_signer=False, is_writable=True),
        AccountMeta(derive_player_profile(program_id, actor),       is_signer=False, is_writable=True),
        AccountMeta(derive_player_token_account(block_mint, actor), is_signer=False, is_writable=True),
        AccountMeta(actor,                                          is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM_ID,                               is_signer=False, is_writable=False),
        AccountMeta(ASSOCIATED_TOKEN_PROGRAM_ID,                    is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID,                              is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, data, accounts)


def build_conversion_instruction(program_id: Pubkey, actor: Pubkey) -> Instruction:
    """The actor signs: they burn their own reward units."""
    block_mint = derive_block_mint(program_id)
    accounts = [
        AccountMeta(actor,                                          is_signer=True,  is_writable=True),
        AccountMeta(derive_global_config(program_id),               is_signer=False, is_writable=True),
        AccountMeta(block_mint,                                     is_signer=False, is_writable=True),
        AccountMeta(derive_player_profile(program_id, actor),       is_signer=False, is_writable=True),
        AccountMeta(derive_player_token_account(block_mint, actor), is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM_ID,                               is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, CONVERT_TO_BRICK_DISCRIMINATOR, accounts)


def build_initialize_config_instruction(program_id: Pubkey, authority: Pubkey) -> Instruction:
    accounts = [
        AccountMeta(authority,                        is_signer=True,  is_writable=True),
        AccountMeta(derive_global_config(program_id), is_signer=False, is_writable=True),
        AccountMeta(derive_block_mint(program_id),    is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM_ID,                 is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID,                is_signer=False, is_writable=False),
        AccountMeta(RENT,                             is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, INITIALIZE_CONFIG_DISCRIMINATOR, accounts)


def parse_conversion_transaction(raw: bytes, program_id: Pubkey, actor: Pubkey) -> Transaction:
    """
    Checks a caller-supplied conversion transaction before it is relayed:
    it must deserialize, carry valid signatures, be signed by the actor,
    and invoke convert_to_brick on our program with the actor as authority.
    """
    try:
        tx = Transaction.from_bytes(raw)
    except Exception as e:
        raise LedgerError(
            "Invalid conversion transaction",
            reason=LedgerReason.INVALID_TRANSACTION,
            detail=f"Could not deserialize transaction: {e}",
        ) from e

    try:
        tx.verify()
    except Exception as e:
        raise LedgerError(
            "Invalid conversion transaction",
            reason=LedgerReason.INVALID_TRANSACTION,
            detail=f"Signature verification failed: {e}",
        ) from e

    message = tx.message
    keys    = list(message.account_keys)
    signers = keys[: message.header.num_required_signatures]
    if actor not in signers:
        raise LedgerError(
            "Invalid conversion transaction",
            reason=LedgerReason.UNAUTHORIZED,
            detail=f"Transaction is not signed by {actor}",
        )

    for ix in message.instructions:
        if keys[ix.program_id_index] != program_id:
            continue
        ix_accounts = list(ix.accounts)
        if (
            bytes(ix.data)[:8] == CONVERT_TO_BRICK_DISCRIMINATOR
            and ix_accounts
            and keys[ix_accounts[0]] == actor
        ):
            return tx

    raise LedgerError(
        "Invalid conversion transaction",
        reason=LedgerReason.INVALID_TRANSACTION,
        detail="Transaction does not invoke convert_to_brick for this wallet",
    )


# ---------------------------------------------------------------------------
# Keypair loading
# ---------------------------------------------------------------------------
def load_authority_keypair(settings: Settings) -> tuple[Keypair, bool]:
    """
    Returns (keypair, ephemeral).

    AUTHORITY_KEYPAIR_BASE64 (base64 of the JSON byte array) wins over
    PROGRAM_AUTHORITY_KEYPAIR (path to the JSON file). With neither set a
    fresh keypair is generated; its address changes on every restart.
    """
    if settings.authority_keypair_b64:
        decoded = base64.b64decode(settings.authority_keypair_b64).decode("utf-8")
        return Keypair.from_bytes(bytes(json.loads(decoded))), False

    if settings.authority_keypair_path:
        with open(settings.authority_keypair_path, "r", encoding="utf-8") as f:
            return Keypair.from_bytes(bytes(json.load(f))), False

    logger.warning(
        "[LEDGER] No authority keypair configured — using a RANDOM EPHEMERAL key (DEV ONLY). "
        "Set AUTHORITY_KEYPAIR_BASE64 or PROGRAM_AUTHORITY_KEYPAIR for production."
    )
    return Keypair(), True


# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class PlayerStats:
    wallet:                str
    total_credits:         int
    blocks_minted:         int
    brick_count:           int
    collections_count:     int
    current_block_balance: int

    def to_dict(self) -> dict:
        return {
            "wallet":              self.wallet,
            "totalCredits":        self.total_credits,
            "blocksMinted":        self.blocks_minted,
            "brickCount":          self.brick_count,
            "collectionsCount":    self.collections_count,
            "currentBlockBalance": self.current_block_balance,
        }


@dataclass(frozen=True)
class GlobalStats:
    authority:            str
    block_mint:           str
    total_blocks_minted:  int
    total_bricks_created: int

    def to_dict(self) -> dict:
        return {
            "authority":          self.authority,
            "blockMint":          self.block_mint,
            "totalBlocksMinted":  self.total_blocks_minted,
            "totalBricksCreated": self.total_bricks_created,
        }


# Anchor error names → reason codes. First match wins.
_FAILURE_PATTERNS = [
    (re.compile(r"InsufficientBlocks|insufficient funds", re.I),            LedgerReason.INSUFFICIENT_BALANCE),
    (re.compile(r"Unauthorized|ConstraintHasOne|ConstraintRaw|constraint", re.I), LedgerReason.UNAUTHORIZED),
    (re.compile(r"Overflow", re.I),                                         LedgerReason.OVERFLOW),
    (re.compile(r"InvalidAmount", re.I),                                    LedgerReason.INVALID_AMOUNT),
    (re.compile(r"AccountNotInitialized|account does not exist", re.I),     LedgerReason.NOT_INITIALIZED),
    (re.compile(r"timed? ?out|BlockheightExceeded", re.I),                  LedgerReason.TIMEOUT),
]


def classify_ledger_failure(message: str) -> LedgerReason:
    for pattern, reason in _FAILURE_PATTERNS:
        if pattern.search(message):
            return reason
    return LedgerReason.REJECTED


# ---------------------------------------------------------------------------
# Adapter interface
# ---------------------------------------------------------------------------
class LedgerAdapter:
    """Shared address book + interface. Subclasses talk to an actual ledger."""

    mode = "abstract"

    def __init__(self, program_id: Pubkey, authority: Keypair, ephemeral_authority: bool = False):
        self.program_id          = program_id
        self.authority           = authority
        self.ephemeral_authority = ephemeral_authority
        self.global_config       = derive_global_config(program_id)
        self.block_mint          = derive_block_mint(program_id)

    @property
    def authority_address(self) -> Pubkey:
        return self.authority.pubkey()

    def addresses(self) -> dict:
        return {
            "programId":    str(self.program_id),
            "globalConfig": str(self.global_config),
            "blockMint":    str(self.block_mint),
            "authority":    str(self.authority_address),
        }

    def player_profile(self, actor: Pubkey) -> Pubkey:
        return derive_player_profile(self.program_id, actor)

    def player_token_account(self, actor: Pubkey) -> Pubkey:
        return derive_player_token_account(self.block_mint, actor)

    # ── operations ────────────────────────────────────────────────────────
    def initialize_config(self) -> str:
        raise NotImplementedError

    def mint_reward(self, actor: Pubkey, units: int, category_code: int) -> str:
        raise NotImplementedError

    def convert_as_authority(self) -> str:
        raise NotImplementedError

    def relay_conversion(self, actor: Pubkey, signed_tx: bytes) -> str:
        raise NotImplementedError

    def get_player_stats(self, actor: Pubkey) -> Optional[PlayerStats]:
        raise NotImplementedError

    def get_global_stats(self) -> Optional[GlobalStats]:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Solana RPC
# ---------------------------------------------------------------------------
class SolanaLedger(LedgerAdapter):

    mode = "solana"
    confirm_poll_sec = 0.5

    def __init__(
        self,
        rpc_url:             str,
        program_id:          Pubkey,
        authority:           Keypair,
        timeout_sec:         float = 15.0,
        ephemeral_authority: bool = False,
    ):
        super().__init__(program_id, authority, ephemeral_authority)
        self.rpc_url = rpc_url
        self.timeout_sec = timeout_sec
        self.client  = Client(rpc_url, commitment=Confirmed, timeout=timeout_sec)
        logger.info(f"[LEDGER] Connected to {rpc_url}")
        logger.info(f"[LEDGER] Authority: {self.authority_address}")
        logger.info(f"[LEDGER] Program:   {self.program_id}")
        logger.info(f"[LEDGER] Config:    {self.global_config}")
        logger.info(f"[LEDGER] Mint:      {self.block_mint}")

    def _submit(self, action: str, raw_tx: bytes) -> str:
        try:
            resp = self.client.send_raw_transaction(
                raw_tx,
                opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed),
            )
        except Exception as e:
            reason = classify_ledger_failure(str(e))
            logger.error(f"[LEDGER] {action} failed ({reason.value}): {e}")
            raise LedgerError(f"{action} failed", reason=reason, detail=str(e)) from e
        signature = resp.value
        self._await_confirmation(action, signature)
        return str(signature)

    def _await_confirmation(self, action: str, signature):
        """Polls signature status until confirmed, bounded by timeout_sec overall."""
        deadline = time.monotonic() + self.timeout_sec
        while True:
            try:
                status = self.client.get_signature_statuses([signature]).value[0]
            except Exception as e:
                reason = classify_ledger_failure(str(e))
                if reason is not LedgerReason.TIMEOUT:
                    reason = LedgerReason.UNAVAILABLE
                raise LedgerError(f"{action} failed", reason=reason, detail=str(e)) from e

            if status is not None:
                if status.err is not None:
                    detail = str(status.err)
                    reason = classify_ledger_failure(detail)
                    logger.error(f"[LEDGER] {action} {signature} failed on-chain ({reason.value}): {detail}")
                    raise LedgerError(f"{action} failed", reason=reason, detail=detail)
                if status.confirmation_status in _CONFIRMED_STATUSES:
                    return

            if time.monotonic() + self.confirm_poll_sec > deadline:
                logger.error(f"[LEDGER] {action} {signature} not confirmed within {self.timeout_sec}s")
                raise LedgerError(
                    f"{action} failed",
                    reason=LedgerReason.TIMEOUT,
                    detail=f"Transaction {signature} not confirmed within {self.timeout_sec}s",
                )
            time.sleep(self.confirm_poll_sec)

    def _sign_and_submit(self, action: str, instruction: Instruction) -> str:
        try:
            blockhash = self.client.get_latest_blockhash().value.blockhash
        except Exception as e:
            logger.error(f"[LEDGER] RPC unavailable at {self.rpc_url}: {e}")
            reason = classify_ledger_failure(str(e))
            if reason is not LedgerReason.TIMEOUT:
                reason = LedgerReason.UNAVAILABLE
            raise LedgerError(f"{action} failed", reason=reason, detail=str(e)) from e
        tx = Transaction.new_signed_with_payer(
            [instruction], self.authority_address, [self.authority], blockhash
        )
        return self._submit(action, bytes(tx))

    def _fetch_account_data(self, address: Pubkey) -> Optional[bytes]:
        try:
            account = self.client.get_account_info(address).value
        except Exception as e:
            raise LedgerError("Ledger read failed", reason=LedgerReason.UNAVAILABLE, detail=str(e)) from e
        if account is None:
            return None
        return bytes(account.data)

    # ── operations ────────────────────────────────────────────────────────
    def initialize_config(self) -> str:
        ix  = build_initialize_config_instruction(self.program_id, self.authority_address)
        sig = self._sign_and_submit("Config initialization", ix)
        logger.info(f"[LEDGER] GlobalConfig initialized — tx: {sig}")
        return sig

    def mint_reward(self, actor: Pubkey, units: int, category_code: int) -> str:
        if units <= 0:
            raise LedgerError("Mint failed", reason=LedgerReason.INVALID_AMOUNT,
                              detail="InvalidAmount: Amount must be greater than zero")
        if units > U64_MAX:
            logger.error(f"[MINT] Refusing to mint {units} BLOCK to {actor}: exceeds u64")
            raise LedgerError("Mint failed", reason=LedgerReason.OVERFLOW,
                              detail=f"Overflow: {units} does not fit in a u64 amount")
        ix  = build_mint_instruction(self.program_id, self.authority_address, actor, units, category_code)
        sig = self._sign_and_submit("Mint", ix)
        logger.info(f"[MINT] Minted {units} BLOCK to {actor} — tx: {sig}")
        return sig

    def convert_as_authority(self) -> str:
        ix  = build_conversion_instruction(self.program_id, self.authority_address)
        sig = self._sign_and_submit("Conversion", ix)
        logger.info(f"[CONVERT] Converted {BLOCKS_PER_BRICK} BLOCK → 1 Brick for {self.authority_address} — tx: {sig}")
        return sig

    def relay_conversion(self, actor: Pubkey, signed_tx: bytes) -> str:
        tx  = parse_conversion_transaction(signed_tx, self.program_id, actor)
        sig = self._submit("Conversion", bytes(tx))
        logger.info(f"[CONVERT] Relayed conversion for {actor} — tx: {sig}")
        return sig

    def get_player_stats(self, actor: Pubkey) -> Optional[PlayerStats]:
        data = self._fetch_account_data(self.player_profile(actor))
        if data is None:
            return None
        if data[:8] != PLAYER_PROFILE_DISCRIMINATOR:
            raise LedgerError("Ledger read failed", detail="Unexpected PlayerProfile account discriminator")
        if len(data) < 8 + PLAYER_PROFILE_LAYOUT.size:
            raise LedgerError("Ledger read failed", detail=f"PlayerProfile account too short ({len(data)} bytes)")
        _, _, credits, minted, bricks, collections = PLAYER_PROFILE_LAYOUT.unpack_from(data, 8)

        balance = 0
        ata = self.player_token_account(actor)
        if self._fetch_account_data(ata) is not None:
            try:
                balance = int(self.client.get_token_account_balance(ata).value.amount)
            except Exception as e:
                raise LedgerError("Ledger read failed", reason=LedgerReason.UNAVAILABLE, detail=str(e)) from e

        return PlayerStats(
            wallet                = str(actor),
            total_credits         = credits,
            blocks_minted         = minted,
            brick_count           = bricks,
            collections_count     = collections,
            current_block_balance = balance,
        )

    def get_global_stats(self) -> Optional[GlobalStats]:
        data = self._fetch_account_data(self.global_config)
        if data is None:
            return None
        if data[:8] != GLOBAL_CONFIG_DISCRIMINATOR:
            raise LedgerError("Ledger read failed", detail="Unexpected GlobalConfig account discriminator")
        if len(data) < 8 + GLOBAL_CONFIG_LAYOUT.size:
            raise LedgerError("Ledger read failed", detail=f"GlobalConfig account too short ({len(data)} bytes)")
        authority, block_mint, minted, bricks = GLOBAL_CONFIG_LAYOUT.unpack_from(data, 8)
        return GlobalStats(
            authority            = str(Pubkey.from_bytes(authority)),
            block_mint           = str(Pubkey.from_bytes(block_mint)),
            total_blocks_minted  = minted,
            total_bricks_created = bricks,
        )


# ---------------------------------------------------------------------------
# In-process ledger
# ---------------------------------------------------------------------------
@dataclass
class _Profile:
    authority:         str
    total_credits:     int = 0
    blocks_minted:     int = 0
    brick_count:       int = 0
    collections_count: int = 0
    balance:           int = 0


class InMemoryLedger(LedgerAdapter):
    """
    Simulated program state. Mutations hold one lock, standing in for the
    ledger's own per-account serialization. Transaction refs look like
    "sim_<hex>" so they are never mistaken for real signatures.
    """

    mode = "simulated"

    def __init__(
        self,
        program_id:          Pubkey,
        authority:           Keypair,
        config_authority:    Optional[Pubkey] = None,
        auto_initialize:     bool = True,
        ephemeral_authority: bool = False,
    ):
        super().__init__(program_id, authority, ephemeral_authority)
        self._lock             = threading.Lock()
        self._config_authority = config_authority or self.authority_address
        self._initialized      = False
        self._total_minted     = 0
        self._total_bricks     = 0
        self._profiles: dict[str, _Profile] = {}
        logger.warning("[LEDGER] SIMULATED ledger in use — balances live in process memory only")
        if auto_initialize:
            self.initialize_config()

    @property
    def initialized(self) -> bool:
        return self._initialized

    @staticmethod
    def _tx_ref() -> str:
        return f"sim_{uuid.uuid4().hex}"

    def _require_initialized(self):
        if not self._initialized:
            raise LedgerError(
                "Ledger not initialized",
                reason=LedgerReason.NOT_INITIALIZED,
                detail="AccountNotInitialized: global_config",
            )

    # ── operations ────────────────────────────────────────────────────────
    def initialize_config(self) -> str:
        with self._lock:
            if self._initialized:
                raise LedgerError(
                    "Config initialization failed",
                    reason=LedgerReason.REJECTED,
                    detail=f"global_config {self.global_config} already in use",
                )
            self._initialized = True
        sig = self._tx_ref()
        logger.info(f"[LEDGER] GlobalConfig initialized (simulated) — tx: {sig}")
        return sig

    def mint_reward(self, actor: Pubkey, units: int, category_code: int) -> str:
        with self._lock:
            self._require_initialized()
            if self.authority_address != self._config_authority:
                raise LedgerError(
                    "Mint failed",
                    reason=LedgerReason.UNAUTHORIZED,
                    detail=f"Unauthorized: {self.authority_address} is not the config authority",
                )
            if units <= 0:
                raise LedgerError("Mint failed", reason=LedgerReason.INVALID_AMOUNT,
                                  detail="InvalidAmount: Amount must be greater than zero")
            if category_code not in range(4):
                raise LedgerError("Mint failed", reason=LedgerReason.REJECTED,
                                  detail=f"InvalidMaterial: material code {category_code}")

            key     = str(actor)
            profile = self._profiles.get(key) or _Profile(authority=key)
            if (
                units > U64_MAX
                or profile.total_credits + units > U64_MAX
                or profile.balance + units > U64_MAX
                or self._total_minted + units > U64_MAX
            ):
                raise LedgerError("Mint failed", reason=LedgerReason.OVERFLOW,
                                  detail="Overflow: Arithmetic overflow")

            profile.total_credits     += units
            profile.blocks_minted     += units
            profile.balance           += units
            profile.collections_count += 1
            self._profiles[key]        = profile
            self._total_minted        += units

        sig = self._tx_ref()
        logger.info(f"[MINT] Minted {units} BLOCK to {actor} (simulated) — tx: {sig}")
        return sig

    def _convert(self, actor: Pubkey) -> str:
        with self._lock:
            self._require_initialized()
            profile = self._profiles.get(str(actor))
            if profile is None:
                raise LedgerError(
                    "Conversion failed",
                    reason=LedgerReason.NOT_INITIALIZED,
                    detail=f"AccountNotInitialized: player_profile for {actor}",
                )
            if profile.balance < BLOCKS_PER_BRICK:
                raise LedgerError(
                    "Conversion failed",
                    reason=LedgerReason.INSUFFICIENT_BALANCE,
                    detail=f"InsufficientBlocks: balance {profile.balance} < {BLOCKS_PER_BRICK}",
                )
            profile.balance     -= BLOCKS_PER_BRICK
            profile.brick_count += 1
            self._total_bricks  += 1

        sig = self._tx_ref()
        logger.info(f"[CONVERT] Converted {BLOCKS_PER_BRICK} BLOCK → 1 Brick for {actor} (simulated) — tx: {sig}")
        return sig

    def convert_as_authority(self) -> str:
        return self._convert(self.authority_address)

    def relay_conversion(self, actor: Pubkey, signed_tx: bytes) -> str:
        parse_conversion_transaction(signed_tx, self.program_id, actor)
        return self._convert(actor)

    def get_player_stats(self, actor: Pubkey) -> Optional[PlayerStats]:
        with self._lock:
            profile = self._profiles.get(str(actor))
            if profile is None:
                return None
            snapshot = asdict(profile)
        return PlayerStats(
            wallet                = str(actor),
            total_credits         = snapshot["total_credits"],
            blocks_minted         = snapshot["blocks_minted"],
            brick_count           = snapshot["brick_count"],
            collections_count     = snapshot["collections_count"],
            current_block_balance = snapshot["balance"],
        )

    def get_global_stats(self) -> Optional[GlobalStats]:
        with self._lock:
            if not self._initialized:
                return None
            return GlobalStats(
                authority            = str(self._config_authority),
                block_mint           = str(self.block_mint),
                total_blocks_minted  = self._total_minted,
                total_bricks_created = self._total_bricks,
            )


def build_ledger(settings: Settings) -> LedgerAdapter:
    program_id = parse_actor_address(settings.program_id)
    authority, ephemeral = load_authority_keypair(settings)
    if settings.use_simulated_ledger:
        return InMemoryLedger(program_id, authority, ephemeral_authority=ephemeral)
    return SolanaLedger(
        settings.rpc_url,
        program_id,
        authority,
        timeout_sec         = settings.ledger_timeout_sec,
        ephemeral_authority = ephemeral,
    )
