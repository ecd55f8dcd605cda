"""
tests/test_codec.py

Account and instruction encoding.

Covers:
    - exact account sizes for every kind
    - Config layout detection by length, legacy warning
    - decode error kinds: TooShort, DiscriminatorMismatch, UnknownLayout
    - instruction discriminators and argument validation
"""

import hashlib
import struct
import warnings

import pytest
from solders.pubkey import Pubkey

from delayclaw.core.exceptions import DecodeError, DecodeErrorKind, ValidationError
from delayclaw.core.models import (
    AccountKind,
    Config,
    LiquidityProvider,
    Policy,
    PolicyStatus,
)
from delayclaw.ledger.codec import (
    ACCOUNT_DISCRIMINATORS,
    CONFIG_CURRENT_SIZE,
    CONFIG_LEGACY_SIZE,
    INSTRUCTION_SCHEMAS,
    POLICY_ALLOCATED,
    POLICY_MIN_SIZE,
    PRODUCT_SIZE,
    LegacyLayoutWarning,
    instruction_discriminator,
)
from tests.conftest import ORACLE, T0, USDC_MINT, make_policy, make_product


def _config(vault=None, paused=False) -> Config:
    return Config(
        admin=           Pubkey.new_unique(),
        usdc_mint=       USDC_MINT,
        oracle_program=  ORACLE,
        paused=          paused,
        bump=            254,
        risk_pool_vault= vault,
    )


class TestDiscriminators:

    def test_account_discriminator_is_sha256_prefix(self):
        assert ACCOUNT_DISCRIMINATORS[AccountKind.POLICY] == hashlib.sha256(b"account:Policy").digest()[:8]

    def test_instruction_discriminator_is_sha256_prefix(self):
        assert instruction_discriminator("process_payout") == hashlib.sha256(b"global:process_payout").digest()[:8]


class TestConfig:

    def test_current_layout(self, codec):
        config = _config()
        raw = codec.encode_account(config)
        assert len(raw) == CONFIG_CURRENT_SIZE
        assert codec.detect_config_layout(raw) == "current"
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            decoded = codec.decode(AccountKind.CONFIG, raw)
        assert decoded == config
        assert not decoded.is_legacy

    def test_legacy_layout_warns(self, codec):
        config = _config(vault=Pubkey.new_unique(), paused=True)
        raw = codec.encode_account(config)
        assert len(raw) == CONFIG_LEGACY_SIZE
        with pytest.warns(LegacyLayoutWarning):
            decoded = codec.decode(Config, raw)
        assert decoded == config
        assert decoded.is_legacy
        assert decoded.paused is True

    def test_paused_byte_offset(self, codec):
        raw = codec.encode_account(_config(paused=True))
        assert raw[104] == 1
        assert raw[105] == 254

    @pytest.mark.parametrize("length", [107, 120, 137, 139, 200])
    def test_other_lengths_are_unknown_layout(self, codec, length):
        raw = codec.encode_account(_config())
        raw = raw + bytes(length - len(raw))
        with pytest.raises(DecodeError) as info:
            codec.decode(AccountKind.CONFIG, raw)
        assert info.value.kind is DecodeErrorKind.UNKNOWN_LAYOUT

    def test_too_short(self, codec):
        raw = codec.encode_account(_config())[:80]
        with pytest.raises(DecodeError) as info:
            codec.decode(AccountKind.CONFIG, raw)
        assert info.value.kind is DecodeErrorKind.TOO_SHORT

    def test_invalid_bool(self, codec):
        raw = bytearray(codec.encode_account(_config()))
        raw[104] = 2
        with pytest.raises(DecodeError) as info:
            codec.decode(AccountKind.CONFIG, bytes(raw))
        assert info.value.kind is DecodeErrorKind.UNKNOWN_LAYOUT


class TestProduct:

    def test_roundtrip_and_size(self, codec):
        product = make_product(bump=250)
        raw = codec.encode_account(product)
        assert len(raw) == PRODUCT_SIZE
        assert codec.decode(AccountKind.PRODUCT, raw) == product

    def test_field_offsets(self, codec):
        raw = codec.encode_account(make_product(id=3, delay_threshold_minutes=120))
        assert struct.unpack_from("<Q", raw, 8)[0] == 3
        assert struct.unpack_from("<I", raw, 16)[0] == 120
        assert struct.unpack_from("<Q", raw, 20)[0] == 100_000_000
        assert struct.unpack_from("<H", raw, 28)[0] == 120

    def test_required_premium(self):
        assert make_product().required_premium() == 1_200_000


class TestPolicy:

    def test_allocated_size_and_roundtrip(self, codec):
        policy = make_policy(bump=253)
        raw = codec.encode_account(policy)
        assert len(raw) == POLICY_ALLOCATED
        assert codec.decode(AccountKind.POLICY, raw) == policy

    def test_paid_policy(self, codec):
        policy = make_policy(status=PolicyStatus.PAID_OUT, paid_at=T0 + 6000)
        decoded = codec.decode(Policy, codec.encode_account(policy))
        assert decoded.status is PolicyStatus.PAID_OUT
        assert decoded.paid_at == T0 + 6000
        assert not decoded.is_active

    def test_minimum_size_policy(self, codec):
        raw = codec.encode_account(make_policy(flight_number=""))
        trimmed = raw[:POLICY_MIN_SIZE]
        decoded = codec.decode(AccountKind.POLICY, trimmed)
        assert decoded.flight_number == ""
        assert decoded.paid_at is None

    def test_below_minimum_is_too_short(self, codec):
        raw = codec.encode_account(make_policy())[:POLICY_MIN_SIZE - 1]
        with pytest.raises(DecodeError) as info:
            codec.decode(AccountKind.POLICY, raw)
        assert info.value.kind is DecodeErrorKind.TOO_SHORT

    def test_truncated_string_is_too_short(self, codec):
        raw = bytearray(codec.encode_account(make_policy()))
        # flight_number length prefix sits after id, policyholder, product_id
        struct.pack_into("<I", raw, 56, 500)
        with pytest.raises(DecodeError) as info:
            codec.decode(AccountKind.POLICY, bytes(raw))
        assert info.value.kind is DecodeErrorKind.TOO_SHORT

    def test_unknown_status_variant(self, codec):
        raw = bytearray(codec.encode_account(make_policy(flight_number="AI101")))
        status_offset = 60 + len("AI101") + 24
        raw[status_offset] = 7
        with pytest.raises(DecodeError) as info:
            codec.decode(AccountKind.POLICY, bytes(raw))
        assert info.value.kind is DecodeErrorKind.UNKNOWN_LAYOUT

    def test_wrong_discriminator(self, codec):
        raw = codec.encode_account(make_product()) + bytes(100)
        with pytest.raises(DecodeError) as info:
            codec.decode(AccountKind.POLICY, raw)
        assert info.value.kind is DecodeErrorKind.DISCRIMINATOR_MISMATCH

    def test_flight_number_too_long(self, codec):
        with pytest.raises(ValidationError):
            codec.encode_account(make_policy(flight_number="X" * 21))


class TestLiquidityProvider:

    def test_roundtrip(self, codec):
        lp = LiquidityProvider(Pubkey.new_unique(), 500, 100, 400, 255)
        raw = codec.encode_account(lp)
        assert len(raw) == 65
        assert codec.decode(AccountKind.LIQUIDITY_PROVIDER, raw) == lp


class TestInstructions:

    def test_process_payout_layout(self, codec):
        data = codec.encode("process_payout", {"policy_id": 42, "delay_minutes": 90})
        assert data[:8] == instruction_discriminator("process_payout")
        assert data[8:] == struct.pack("<QI", 42, 90)

    def test_decode_inverse(self, codec):
        fields = {
            "id": 2, "delay_threshold_minutes": 90, "coverage_amount": 200_000_000,
            "premium_rate_bps": 150, "claim_window_hours": 48,
        }
        name, decoded = codec.decode_instruction(codec.encode("create_product", fields))
        assert name == "create_product"
        assert decoded == fields

    def test_no_argument_instruction(self, codec):
        assert codec.encode("close_config", {}) == instruction_discriminator("close_config")

    def test_unknown_instruction(self, codec):
        with pytest.raises(ValidationError):
            codec.encode("drain_pool", {})

    def test_missing_and_extra_arguments(self, codec):
        with pytest.raises(ValidationError):
            codec.encode("process_payout", {"policy_id": 1})
        with pytest.raises(ValidationError):
            codec.encode("process_payout", {"policy_id": 1, "delay_minutes": 2, "amount": 3})

    @pytest.mark.parametrize("value", [-1, 2**32, "90", None, True])
    def test_out_of_range_arguments(self, codec, value):
        with pytest.raises(ValidationError):
            codec.encode("process_payout", {"policy_id": 1, "delay_minutes": value})

    def test_bool_argument_must_be_bool(self, codec):
        with pytest.raises(ValidationError):
            codec.encode("set_pause_status", {"paused": 1})

    def test_decode_rejects_unknown_discriminator(self, codec):
        with pytest.raises(DecodeError) as info:
            codec.decode_instruction(b"\x00" * 12)
        assert info.value.kind is DecodeErrorKind.DISCRIMINATOR_MISMATCH

    def test_decode_rejects_trailing_bytes(self, codec):
        data = codec.encode("expire_policy", {"policy_id": 1}) + b"\x00"
        with pytest.raises(DecodeError) as info:
            codec.decode_instruction(data)
        assert info.value.kind is DecodeErrorKind.UNKNOWN_LAYOUT


# ── Round trips at the edges ─────────────────────────────────────────────────

_LOW  = {"u8": 0, "u16": 0, "u32": 0, "u64": 0, "bool": False}
_HIGH = {"u8": 2**8 - 1, "u16": 2**16 - 1, "u32": 2**32 - 1, "u64": 2**64 - 1, "bool": True}


def _arguments(name: str, extremes: dict) -> dict:
    return {
        field: (Pubkey.new_unique() if extremes is _HIGH else Pubkey.default())
        if type_name == "pubkey" else extremes[type_name]
        for field, type_name in INSTRUCTION_SCHEMAS[name]
    }


class TestRoundTrips:

    @pytest.mark.parametrize("value", [0, 2**64 - 1])
    def test_policy_id_extremes(self, codec, value):
        policy = make_policy(value, product_id=value, premium_paid=value, coverage_amount=value)
        assert codec.decode(AccountKind.POLICY, codec.encode_account(policy)) == policy

    @pytest.mark.parametrize("value", [0, 2**64 - 1])
    def test_product_id_extremes(self, codec, value):
        product = make_product(id=value, coverage_amount=value)
        assert codec.decode(AccountKind.PRODUCT, codec.encode_account(product)) == product

    def test_negative_timestamps(self, codec):
        policy = make_policy(
            departure_time= -1,
            created_at=     -(2**63),
            status=         PolicyStatus.EXPIRED,
            paid_at=        -5,
        )
        decoded = codec.decode(AccountKind.POLICY, codec.encode_account(policy))
        assert (decoded.departure_time, decoded.created_at, decoded.paid_at) == (-1, -(2**63), -5)

    def test_multibyte_flight_number(self, codec):
        # 10 characters, 20 bytes
        policy = make_policy(flight_number="ÄÖ✈✈✈✈AB12")
        raw = codec.encode_account(policy)
        assert len(raw) == POLICY_ALLOCATED
        assert codec.decode(AccountKind.POLICY, raw).flight_number == "ÄÖ✈✈✈✈AB12"

    def test_empty_flight_number_at_allocated_size(self, codec):
        policy = make_policy(flight_number="")
        raw = codec.encode_account(policy)
        assert len(raw) == POLICY_ALLOCATED
        assert codec.decode(AccountKind.POLICY, raw) == policy

    def test_split_multibyte_character_is_rejected(self, codec):
        raw = bytearray(codec.encode_account(make_policy(flight_number="Ä")))
        # drop the second byte of the two-byte character from the string length
        struct.pack_into("<I", raw, 56, 1)
        with pytest.raises(DecodeError) as info:
            codec.decode(AccountKind.POLICY, bytes(raw))
        assert info.value.kind is DecodeErrorKind.UNKNOWN_LAYOUT

    @pytest.mark.parametrize("extremes", [_LOW, _HIGH], ids=["low", "high"])
    @pytest.mark.parametrize("name", sorted(INSTRUCTION_SCHEMAS))
    def test_every_instruction(self, codec, name, extremes):
        fields = _arguments(name, extremes)
        decoded_name, decoded = codec.decode_instruction(codec.encode(name, fields))
        assert decoded_name == name
        assert decoded == fields

    @pytest.mark.parametrize("name", sorted(INSTRUCTION_SCHEMAS))
    def test_every_truncated_instruction_is_too_short(self, codec, name):
        data = codec.encode(name, _arguments(name, _HIGH))
        if len(data) == 8:
            pytest.skip("no arguments to truncate")
        with pytest.raises(DecodeError) as info:
            codec.decode_instruction(data[:-1])
        assert info.value.kind is DecodeErrorKind.TOO_SHORT
