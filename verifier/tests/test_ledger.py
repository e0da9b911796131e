"""
EcoBuild Verifier — Ledger Adapter Unit Tests
pytest test suite

Coverage:
  - Address parsing and deterministic PDA / token account derivation
  - Instruction encoding (discriminator, amount, material code, account order)
  - InMemoryLedger program rules: authority, zero amount, overflow,
    lazy profile creation, conversion exhaustion, uninitialized config
  - Actor-signed conversion transaction checks
  - Failure message → reason classification
  - SolanaLedger read path with a mocked RPC client
  - SolanaLedger submission: u64 bound, confirmation polling and its deadline
"""

import base64
import json
import struct
import sys
import os
from unittest import mock

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.config import DEFAULT_PROGRAM_ID, Settings
from engine.errors import InvalidAddressError, LedgerError, LedgerReason
from engine.ledger import (
    CONVERT_TO_BRICK_DISCRIMINATOR,
    GLOBAL_CONFIG_DISCRIMINATOR,
    MINT_BLOCKS_DISCRIMINATOR,
    PLAYER_PROFILE_DISCRIMINATOR,
    PLAYER_PROFILE_LAYOUT,
    U64_MAX,
    InMemoryLedger,
    SolanaLedger,
    build_conversion_instruction,
    build_ledger,
    build_mint_instruction,
    classify_ledger_failure,
    derive_block_mint,
    derive_player_profile,
    load_authority_keypair,
    parse_actor_address,
)

PROGRAM_ID = Pubkey.from_string(DEFAULT_PROGRAM_ID)
ACTOR      = Pubkey.from_string("6DTBLHzn49kFcuq7Fhzze1rpqEj6r3T6m5gyEqpkgoY7")


def _signed_conversion(player: Keypair, program_id: Pubkey = PROGRAM_ID) -> bytes:
    ix = build_conversion_instruction(program_id, player.pubkey())
    tx = Transaction.new_signed_with_payer([ix], player.pubkey(), [player], Hash.default())
    return bytes(tx)


# ── Addresses ─────────────────────────────────────────────────────────────────

class TestAddresses:

    def test_parse_valid_address(self):
        assert parse_actor_address(" 6DTBLHzn49kFcuq7Fhzze1rpqEj6r3T6m5gyEqpkgoY7 ") == ACTOR

    @pytest.mark.parametrize("value", ["", "   ", "not-base58!", "0x" + "ab" * 20, None])
    def test_parse_invalid_address(self, value):
        with pytest.raises(InvalidAddressError):
            parse_actor_address(value)

    def test_player_profile_deterministic(self):
        assert derive_player_profile(PROGRAM_ID, ACTOR) == derive_player_profile(PROGRAM_ID, ACTOR)

    def test_different_actors_different_profiles(self):
        other = Keypair().pubkey()
        assert derive_player_profile(PROGRAM_ID, ACTOR) != derive_player_profile(PROGRAM_ID, other)

    def test_profile_matches_seed_derivation(self):
        expected, _ = Pubkey.find_program_address([b"player", bytes(ACTOR)], PROGRAM_ID)
        assert derive_player_profile(PROGRAM_ID, ACTOR) == expected


# ── Instructions ──────────────────────────────────────────────────────────────

class TestInstructions:

    def test_mint_instruction_data(self):
        authority = Keypair().pubkey()
        ix = build_mint_instruction(PROGRAM_ID, authority, ACTOR, 5, 2)
        assert ix.program_id == PROGRAM_ID
        assert bytes(ix.data) == MINT_BLOCKS_DISCRIMINATOR + struct.pack("<QB", 5, 2)
        assert ix.accounts[0].pubkey == authority
        assert ix.accounts[0].is_signer is True
        assert ix.accounts[2].pubkey == derive_block_mint(PROGRAM_ID)
        assert ix.accounts[5].pubkey == ACTOR
        assert len(ix.accounts) == 9

    def test_conversion_instruction_signed_by_actor(self):
        ix = build_conversion_instruction(PROGRAM_ID, ACTOR)
        assert bytes(ix.data) == CONVERT_TO_BRICK_DISCRIMINATOR
        assert ix.accounts[0].pubkey == ACTOR
        assert ix.accounts[0].is_signer is True


# ── Keypair loading ───────────────────────────────────────────────────────────

class TestKeypairLoading:

    def test_base64_keypair(self):
        kp = Keypair()
        encoded = base64.b64encode(json.dumps(list(bytes(kp))).encode()).decode()
        loaded, ephemeral = load_authority_keypair(Settings(authority_keypair_b64=encoded))
        assert loaded.pubkey() == kp.pubkey()
        assert ephemeral is False

    def test_keypair_file(self, tmp_path):
        kp = Keypair()
        path = tmp_path / "id.json"
        path.write_text(json.dumps(list(bytes(kp))))
        loaded, ephemeral = load_authority_keypair(Settings(authority_keypair_path=str(path)))
        assert loaded.pubkey() == kp.pubkey()
        assert ephemeral is False

    def test_ephemeral_when_unset(self):
        _, ephemeral = load_authority_keypair(Settings())
        assert ephemeral is True

    def test_build_ledger_defaults_to_simulated(self):
        ledger = build_ledger(Settings())
        assert ledger.mode == "simulated"
        assert ledger.ephemeral_authority is True


# ── In-memory ledger ──────────────────────────────────────────────────────────

class TestInMemoryLedger:

    def setup_method(self):
        self.authority = Keypair()
        self.ledger = InMemoryLedger(PROGRAM_ID, self.authority)

    def test_stats_absent_before_first_mint(self):
        assert self.ledger.get_player_stats(ACTOR) is None

    def test_mint_creates_profile(self):
        tx = self.ledger.mint_reward(ACTOR, 5, 0)
        assert tx.startswith("sim_")
        stats = self.ledger.get_player_stats(ACTOR)
        assert stats.to_dict() == {
            "wallet":              str(ACTOR),
            "totalCredits":        5,
            "blocksMinted":        5,
            "brickCount":          0,
            "collectionsCount":    1,
            "currentBlockBalance": 5,
        }

    def test_transaction_refs_unique(self):
        assert self.ledger.mint_reward(ACTOR, 1, 0) != self.ledger.mint_reward(ACTOR, 1, 0)

    def test_zero_amount_rejected(self):
        with pytest.raises(LedgerError) as exc:
            self.ledger.mint_reward(ACTOR, 0, 0)
        assert exc.value.reason is LedgerReason.INVALID_AMOUNT
        assert self.ledger.get_player_stats(ACTOR) is None

    def test_overflow_rejected_without_partial_state(self):
        self.ledger.mint_reward(ACTOR, U64_MAX, 0)
        with pytest.raises(LedgerError) as exc:
            self.ledger.mint_reward(ACTOR, 1, 0)
        assert exc.value.reason is LedgerReason.OVERFLOW
        assert self.ledger.get_player_stats(ACTOR).collections_count == 1

    def test_wrong_authority_rejected(self):
        ledger = InMemoryLedger(PROGRAM_ID, Keypair(), config_authority=self.authority.pubkey())
        with pytest.raises(LedgerError) as exc:
            ledger.mint_reward(ACTOR, 5, 0)
        assert exc.value.reason is LedgerReason.UNAUTHORIZED

    def test_uninitialized_config(self):
        ledger = InMemoryLedger(PROGRAM_ID, self.authority, auto_initialize=False)
        assert ledger.get_global_stats() is None
        with pytest.raises(LedgerError) as exc:
            ledger.mint_reward(ACTOR, 5, 0)
        assert exc.value.reason is LedgerReason.NOT_INITIALIZED
        ledger.initialize_config()
        assert ledger.initialized is True

    def test_double_initialize_rejected(self):
        with pytest.raises(LedgerError):
            self.ledger.initialize_config()

    def test_conversion_exhaustion(self):
        me = self.authority.pubkey()
        self.ledger.mint_reward(me, 10, 0)
        assert self.ledger.convert_as_authority().startswith("sim_")

        stats = self.ledger.get_player_stats(me)
        assert stats.current_block_balance == 0
        assert stats.brick_count == 1

        with pytest.raises(LedgerError) as exc:
            self.ledger.convert_as_authority()
        assert exc.value.reason is LedgerReason.INSUFFICIENT_BALANCE
        assert self.ledger.get_player_stats(me).brick_count == 1

    def test_conversion_without_profile(self):
        with pytest.raises(LedgerError) as exc:
            self.ledger.convert_as_authority()
        assert exc.value.reason is LedgerReason.NOT_INITIALIZED

    def test_global_counters(self):
        me = self.authority.pubkey()
        self.ledger.mint_reward(ACTOR, 3, 1)
        self.ledger.mint_reward(me, 12, 2)
        self.ledger.convert_as_authority()
        stats = self.ledger.get_global_stats().to_dict()
        assert stats["totalBlocksMinted"] == 15
        assert stats["totalBricksCreated"] == 1
        assert stats["authority"] == str(me)
        assert stats["blockMint"] == str(derive_block_mint(PROGRAM_ID))


# ── Actor-signed conversion ───────────────────────────────────────────────────

class TestRelayConversion:

    def setup_method(self):
        self.ledger = InMemoryLedger(PROGRAM_ID, Keypair())
        self.player = Keypair()
        self.ledger.mint_reward(self.player.pubkey(), 10, 0)

    def test_valid_transaction_relayed(self):
        self.ledger.relay_conversion(self.player.pubkey(), _signed_conversion(self.player))
        assert self.ledger.get_player_stats(self.player.pubkey()).brick_count == 1

    def test_signed_by_someone_else(self):
        with pytest.raises(LedgerError) as exc:
            self.ledger.relay_conversion(self.player.pubkey(), _signed_conversion(Keypair()))
        assert exc.value.reason is LedgerReason.UNAUTHORIZED

    def test_wrong_program(self):
        raw = _signed_conversion(self.player, program_id=Keypair().pubkey())
        with pytest.raises(LedgerError) as exc:
            self.ledger.relay_conversion(self.player.pubkey(), raw)
        assert exc.value.reason is LedgerReason.INVALID_TRANSACTION

    def test_garbage_bytes(self):
        with pytest.raises(LedgerError) as exc:
            self.ledger.relay_conversion(self.player.pubkey(), b"\x00\x01garbage")
        assert exc.value.reason is LedgerReason.INVALID_TRANSACTION


# ── Failure classification ────────────────────────────────────────────────────

class TestClassifyFailure:

    @pytest.mark.parametrize("message,reason", [
        ("Error Code: InsufficientBlocks. Error Number: 6001",  LedgerReason.INSUFFICIENT_BALANCE),
        ("Error Code: ConstraintHasOne",                        LedgerReason.UNAUTHORIZED),
        ("Error Code: Unauthorized",                            LedgerReason.UNAUTHORIZED),
        ("Error Code: Overflow. Arithmetic overflow",           LedgerReason.OVERFLOW),
        ("Error Code: InvalidAmount",                           LedgerReason.INVALID_AMOUNT),
        ("AnchorError: AccountNotInitialized",                  LedgerReason.NOT_INITIALIZED),
        ("httpx.ReadTimeout: timed out",                        LedgerReason.TIMEOUT),
        ("Transaction simulation failed: custom program error", LedgerReason.REJECTED),
    ])
    def test_reason_mapping(self, message, reason):
        assert classify_ledger_failure(message) is reason


# ── Solana RPC adapter ────────────────────────────────────────────────────────

class TestSolanaLedgerReads:

    def setup_method(self):
        with mock.patch("engine.ledger.Client") as client_cls:
            self.ledger = SolanaLedger("http://rpc.test", PROGRAM_ID, Keypair())
        self.client = client_cls.return_value

    def test_missing_profile_is_none(self):
        self.client.get_account_info.return_value = mock.Mock(value=None)
        assert self.ledger.get_player_stats(ACTOR) is None

    def test_profile_decoded(self):
        body = PLAYER_PROFILE_LAYOUT.pack(bytes(ACTOR), 254, 40, 40, 2, 7)
        profile_account = mock.Mock(value=mock.Mock(data=PLAYER_PROFILE_DISCRIMINATOR + body))
        missing_ata     = mock.Mock(value=None)
        self.client.get_account_info.side_effect = [profile_account, missing_ata]

        stats = self.ledger.get_player_stats(ACTOR)
        assert stats.total_credits == 40
        assert stats.brick_count == 2
        assert stats.collections_count == 7
        assert stats.current_block_balance == 0

    def test_rpc_failure_on_mint(self):
        self.client.get_latest_blockhash.side_effect = Exception("Connection refused")
        with pytest.raises(LedgerError) as exc:
            self.ledger.mint_reward(ACTOR, 5, 0)
        assert exc.value.reason is LedgerReason.UNAVAILABLE

    def test_program_rejection_on_mint(self):
        self.client.get_latest_blockhash.return_value = mock.Mock(value=mock.Mock(blockhash=Hash.default()))
        self.client.send_raw_transaction.side_effect = Exception("Error Code: Unauthorized")
        with pytest.raises(LedgerError) as exc:
            self.ledger.mint_reward(ACTOR, 5, 0)
        assert exc.value.reason is LedgerReason.UNAUTHORIZED


    def test_truncated_profile_account_raises_ledger_error(self):
        short = mock.Mock(value=mock.Mock(data=PLAYER_PROFILE_DISCRIMINATOR + b"\x00" * 10))
        self.client.get_account_info.return_value = short
        with pytest.raises(LedgerError) as exc:
            self.ledger.get_player_stats(ACTOR)
        assert "too short" in exc.value.detail

    def test_truncated_global_config_raises_ledger_error(self):
        short = mock.Mock(value=mock.Mock(data=GLOBAL_CONFIG_DISCRIMINATOR + b"\x00" * 40))
        self.client.get_account_info.return_value = short
        with pytest.raises(LedgerError) as exc:
            self.ledger.get_global_stats()
        assert "too short" in exc.value.detail


def _status(err=None, confirmation=TransactionConfirmationStatus.Confirmed):
    return mock.Mock(value=[mock.Mock(err=err, confirmation_status=confirmation)])


class TestSolanaLedgerSubmit:

    def setup_method(self):
        with mock.patch("engine.ledger.Client") as client_cls:
            self.ledger = SolanaLedger("http://rpc.test", PROGRAM_ID, Keypair(), timeout_sec=0.05)
        self.ledger.confirm_poll_sec = 0.01
        self.client = client_cls.return_value
        self.client.get_latest_blockhash.return_value = mock.Mock(value=mock.Mock(blockhash=Hash.default()))
        self.client.send_raw_transaction.return_value = mock.Mock(value="5xSig")

    def test_successful_mint_returns_signature(self):
        self.client.get_signature_statuses.return_value = _status()
        assert self.ledger.mint_reward(ACTOR, 5, 0) == "5xSig"

    def test_send_skips_library_confirmation(self):
        self.client.get_signature_statuses.return_value = _status()
        self.ledger.mint_reward(ACTOR, 5, 0)
        opts = self.client.send_raw_transaction.call_args.kwargs["opts"]
        assert opts.skip_confirmation is True

    def test_finalized_status_accepted(self):
        self.client.get_signature_statuses.return_value = _status(
            confirmation=TransactionConfirmationStatus.Finalized
        )
        assert self.ledger.mint_reward(ACTOR, 5, 0) == "5xSig"

    def test_polls_until_confirmed(self):
        self.ledger.timeout_sec = 5.0
        self.client.get_signature_statuses.side_effect = [
            mock.Mock(value=[None]),
            _status(confirmation=TransactionConfirmationStatus.Processed),
            _status(),
        ]
        assert self.ledger.mint_reward(ACTOR, 5, 0) == "5xSig"
        assert self.client.get_signature_statuses.call_count == 3

    def test_unconfirmed_past_timeout_is_timeout(self):
        self.client.get_signature_statuses.return_value = mock.Mock(value=[None])
        with pytest.raises(LedgerError) as exc:
            self.ledger.mint_reward(ACTOR, 5, 0)
        assert exc.value.reason is LedgerReason.TIMEOUT
        assert "5xSig" in exc.value.detail

    def test_on_chain_error_is_classified(self):
        self.client.get_signature_statuses.return_value = _status(err="Error Code: InsufficientBlocks")
        with pytest.raises(LedgerError) as exc:
            self.ledger.convert_as_authority()
        assert exc.value.reason is LedgerReason.INSUFFICIENT_BALANCE

    def test_status_lookup_failure_is_unavailable(self):
        self.client.get_signature_statuses.side_effect = Exception("Connection reset")
        with pytest.raises(LedgerError) as exc:
            self.ledger.mint_reward(ACTOR, 5, 0)
        assert exc.value.reason is LedgerReason.UNAVAILABLE

    def test_units_beyond_u64_rejected_before_send(self):
        with pytest.raises(LedgerError) as exc:
            self.ledger.mint_reward(ACTOR, U64_MAX + 1, 0)
        assert exc.value.reason is LedgerReason.OVERFLOW
        self.client.send_raw_transaction.assert_not_called()

    def test_huge_units_rejected_before_send(self):
        with pytest.raises(LedgerError) as exc:
            self.ledger.mint_reward(ACTOR, 10**20, 0)
        assert exc.value.reason is LedgerReason.OVERFLOW
        self.client.get_latest_blockhash.assert_not_called()

    def test_zero_units_rejected_before_send(self):
        with pytest.raises(LedgerError) as exc:
            self.ledger.mint_reward(ACTOR, 0, 0)
        assert exc.value.reason is LedgerReason.INVALID_AMOUNT
        self.client.send_raw_transaction.assert_not_called()

    def test_u64_max_is_sent(self):
        self.client.get_signature_statuses.return_value = _status()
        assert self.ledger.mint_reward(ACTOR, U64_MAX, 0) == "5xSig"
