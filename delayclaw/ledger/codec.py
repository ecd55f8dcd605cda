"""
Binary codec for program accounts and instruction data.

Accounts:
    bytes 0..8   discriminator = sha256("account:<Name>")[:8]
    bytes 8..    fields, little-endian, packed in declaration order

Instructions:
    bytes 0..8   discriminator = sha256("global:<snake_name>")[:8]
    bytes 8..    arguments, packed in declaration order

Config has two deployed layouts, told apart ONLY by total length:

    offset  field                         current   legacy
    0       discriminator                 8         8
    8       admin                         32        32
    40      usdc_mint                     32        32
    72      oracle_program                32        32
    104     risk_pool_vault               -         32
    104/136 paused                        1         1
    105/137 bump                          1         1
            total                         106       138

Any other Config length is UnknownLayout. Never silently default.
"""

import hashlib
import struct
import warnings
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from borsh_incremental import DefensiveReader
from solders.pubkey import Pubkey

from delayclaw.core.exceptions import (
    DecodeError,
    DecodeErrorKind,
    ValidationError,
)
from delayclaw.core.models import (
    AccountKind,
    Config,
    Entity,
    LiquidityProvider,
    MAX_FLIGHT_NUMBER,
    Policy,
    PolicyStatus,
    Product,
)


DISCRIMINATOR_SIZE = 8

CONFIG_CURRENT_SIZE = 106
CONFIG_LEGACY_SIZE  = 138
PRODUCT_SIZE        = 36
LIQUIDITY_SIZE      = 65
# Smallest well-formed Policy: empty flight number, paid_at = None.
POLICY_MIN_SIZE     = 95
# Space the program allocates: flight number padded to MAX_FLIGHT_NUMBER, paid_at = Some.
POLICY_ALLOCATED    = 123

MIN_SIZES: Dict[AccountKind, int] = {
    AccountKind.CONFIG:             CONFIG_CURRENT_SIZE,
    AccountKind.PRODUCT:            PRODUCT_SIZE,
    AccountKind.POLICY:             POLICY_MIN_SIZE,
    AccountKind.LIQUIDITY_PROVIDER: LIQUIDITY_SIZE,
}


class LegacyLayoutWarning(UserWarning):
    """A Config account still uses the legacy layout with risk_pool_vault."""
    pass


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


ACCOUNT_DISCRIMINATORS: Dict[AccountKind, bytes] = {
    kind: account_discriminator(kind.value) for kind in AccountKind
}


# ─────────────────────────────────────────────────────────────
# Primitive readers / writers
# ─────────────────────────────────────────────────────────────

_INT_FORMATS = {
    "u8":  "<B",
    "u16": "<H",
    "u32": "<I",
    "u64": "<Q",
    "i64": "<q",
}


class _Reader:
    """
    Strict cursor over a DefensiveReader.

    DefensiveReader hands back defaults once the buffer runs dry, so every
    read is bounds-checked here first and running out of bytes is TooShort.
    """

    _READS = {
        "u8":  ("read_u8", 1),
        "u16": ("read_u16", 2),
        "u32": ("read_u32", 4),
        "u64": ("read_u64", 8),
        "i64": ("read_u64", 8),
    }

    def __init__(self, data: bytes, offset: int, kind: AccountKind):
        self.data   = data
        self.offset = offset
        self.kind   = kind
        self._inner = DefensiveReader(data[offset:])

    def _claim(self, size: int) -> None:
        end = self.offset + size
        if end > len(self.data):
            raise DecodeError(
                DecodeErrorKind.TOO_SHORT,
                f"{self.kind.value} account truncated",
                {"needed": end, "length": len(self.data)},
            )
        self.offset = end

    def int(self, type_name: str) -> int:
        method, size = self._READS[type_name]
        self._claim(size)
        value = getattr(self._inner, method)()
        if type_name == "i64":
            value = struct.unpack("<q", struct.pack("<Q", value))[0]
        return value

    def bool(self) -> bool:
        value = self.int("u8")
        if value > 1:
            raise DecodeError(
                DecodeErrorKind.UNKNOWN_LAYOUT,
                f"{self.kind.value} has invalid bool byte",
                {"value": value},
            )
        return value == 1

    def pubkey(self) -> Pubkey:
        self._claim(32)
        return Pubkey.from_bytes(self._inner.read_pubkey_raw())

    def string(self) -> str:
        start = self.offset
        self._claim(4)
        (length,) = struct.unpack_from("<I", self.data, start)
        self.offset = start
        self._claim(4 + length)
        try:
            self.data[start + 4:self.offset].decode("utf-8")
        except UnicodeDecodeError:
            raise DecodeError(
                DecodeErrorKind.UNKNOWN_LAYOUT,
                f"{self.kind.value} string is not UTF-8",
            )
        return self._inner.read_string()

    def option_i64(self) -> Optional[int]:
        tag = self.int("u8")
        if tag == 0:
            return None
        if tag == 1:
            return self.int("i64")
        raise DecodeError(
            DecodeErrorKind.UNKNOWN_LAYOUT,
            f"{self.kind.value} has invalid option tag",
            {"tag": tag},
        )


def _pack_int(type_name: str, value: Any, name: str) -> bytes:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an int", {"type": type(value).__name__})
    try:
        return struct.pack(_INT_FORMATS[type_name], value)
    except struct.error:
        raise ValidationError(f"{name} out of {type_name} range", {"value": value})


def _pack_bool(value: Any, name: str) -> bytes:
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a bool")
    return b"\x01" if value else b"\x00"


def _pack_pubkey(value: Any, name: str) -> bytes:
    if isinstance(value, Pubkey):
        return bytes(value)
    if isinstance(value, str):
        try:
            return bytes(Pubkey.from_string(value))
        except ValueError:
            pass
    raise ValidationError(f"{name} must be an address", {"value": value})


def _pack_string(value: Any, name: str) -> bytes:
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a str")
    raw = value.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def _pack_option_i64(value: Optional[int], name: str) -> bytes:
    if value is None:
        return b"\x00"
    return b"\x01" + _pack_int("i64", value, name)


# ─────────────────────────────────────────────────────────────
# Instruction schemas
# ─────────────────────────────────────────────────────────────

# name → ordered (argument, type). Order is the wire order.
INSTRUCTION_SCHEMAS: Dict[str, List[Tuple[str, str]]] = {
    "initialize": [
        ("admin",          "pubkey"),
        ("usdc_mint",      "pubkey"),
        ("oracle_program", "pubkey"),
    ],
    "create_product": [
        ("id",                      "u64"),
        ("delay_threshold_minutes", "u32"),
        ("coverage_amount",         "u64"),
        ("premium_rate_bps",        "u16"),
        ("claim_window_hours",      "u32"),
    ],
    "update_product": [
        ("id",                      "u64"),
        ("delay_threshold_minutes", "u32"),
        ("coverage_amount",         "u64"),
        ("premium_rate_bps",        "u16"),
        ("claim_window_hours",      "u32"),
    ],
    "deposit_liquidity":  [("amount", "u64")],
    "withdraw_liquidity": [("amount", "u64")],
    "process_payout": [
        ("policy_id",     "u64"),
        ("delay_minutes", "u32"),
    ],
    "expire_policy":    [("policy_id", "u64")],
    "set_pause_status": [("paused", "bool")],
    "close_config":     [],
}

INSTRUCTION_DISCRIMINATORS: Dict[bytes, str] = {
    instruction_discriminator(name): name for name in INSTRUCTION_SCHEMAS
}


def _pack_field(type_name: str, value: Any, name: str) -> bytes:
    if type_name in _INT_FORMATS:
        return _pack_int(type_name, value, name)
    if type_name == "bool":
        return _pack_bool(value, name)
    if type_name == "pubkey":
        return _pack_pubkey(value, name)
    if type_name == "string":
        return _pack_string(value, name)
    raise ValidationError(f"Unsupported field type {type_name}")


# ─────────────────────────────────────────────────────────────
# AccountCodec
# ─────────────────────────────────────────────────────────────

class AccountCodec:
    """
    Decodes program accounts into entity dataclasses and encodes
    instruction data. Stateless; one instance can be shared.
    """

    # ── Accounts: decode ──────────────────────────────────────

    def decode(self, kind: Union[AccountKind, type], raw: bytes) -> Entity:
        """
        Decode raw account bytes as the expected kind.

        Checks, in order: minimum length, discriminator, layout.
        Raises DecodeError; never returns a partially filled entity.
        """
        if isinstance(kind, type):
            kind = kind.KIND
        raw = bytes(raw)

        minimum = MIN_SIZES[kind]
        if len(raw) < minimum:
            raise DecodeError(
                DecodeErrorKind.TOO_SHORT,
                f"{kind.value} account too short",
                {"length": len(raw), "minimum": minimum},
            )

        expected = ACCOUNT_DISCRIMINATORS[kind]
        if raw[:DISCRIMINATOR_SIZE] != expected:
            raise DecodeError(
                DecodeErrorKind.DISCRIMINATOR_MISMATCH,
                f"Account is not a {kind.value}",
                {"expected": expected.hex(), "found": raw[:DISCRIMINATOR_SIZE].hex()},
            )

        return self._DECODERS[kind](self, raw)

    def detect_config_layout(self, raw: bytes) -> str:
        """'current' or 'legacy' by total length; UnknownLayout otherwise."""
        if len(raw) == CONFIG_CURRENT_SIZE:
            return "current"
        if len(raw) == CONFIG_LEGACY_SIZE:
            return "legacy"
        raise DecodeError(
            DecodeErrorKind.UNKNOWN_LAYOUT,
            "Config account length matches no known layout",
            {
                "length":   len(raw),
                "expected": f"{CONFIG_CURRENT_SIZE} or {CONFIG_LEGACY_SIZE}",
            },
        )

    def _decode_config(self, raw: bytes) -> Config:
        layout = self.detect_config_layout(raw)
        r = _Reader(raw, DISCRIMINATOR_SIZE, AccountKind.CONFIG)
        admin          = r.pubkey()
        usdc_mint      = r.pubkey()
        oracle_program = r.pubkey()
        vault          = r.pubkey() if layout == "legacy" else None
        paused         = r.bool()
        bump           = r.int("u8")
        if vault is not None:
            warnings.warn(
                "Config account uses the legacy 138-byte layout; "
                "close and re-initialize it to migrate.",
                LegacyLayoutWarning,
                stacklevel=3,
            )
        return Config(
            admin=           admin,
            usdc_mint=       usdc_mint,
            oracle_program=  oracle_program,
            paused=          paused,
            bump=            bump,
            risk_pool_vault= vault,
        )

    def _decode_product(self, raw: bytes) -> Product:
        r = _Reader(raw, DISCRIMINATOR_SIZE, AccountKind.PRODUCT)
        return Product(
            id=                      r.int("u64"),
            delay_threshold_minutes= r.int("u32"),
            coverage_amount=         r.int("u64"),
            premium_rate_bps=        r.int("u16"),
            claim_window_hours=      r.int("u32"),
            active=                  r.bool(),
            bump=                    r.int("u8"),
        )

    def _decode_policy(self, raw: bytes) -> Policy:
        r = _Reader(raw, DISCRIMINATOR_SIZE, AccountKind.POLICY)
        policy_id       = r.int("u64")
        policyholder    = r.pubkey()
        product_id      = r.int("u64")
        flight_number   = r.string()
        departure_time  = r.int("i64")
        premium_paid    = r.int("u64")
        coverage_amount = r.int("u64")
        status_tag      = r.int("u8")
        try:
            status = PolicyStatus(status_tag)
        except ValueError:
            raise DecodeError(
                DecodeErrorKind.UNKNOWN_LAYOUT,
                "Policy has unknown status variant",
                {"tag": status_tag},
            )
        created_at = r.int("i64")
        paid_at    = r.option_i64()
        bump       = r.int("u8")
        return Policy(
            id=              policy_id,
            policyholder=    policyholder,
            product_id=      product_id,
            flight_number=   flight_number,
            departure_time=  departure_time,
            premium_paid=    premium_paid,
            coverage_amount= coverage_amount,
            status=          status,
            created_at=      created_at,
            paid_at=         paid_at,
            bump=            bump,
        )

    def _decode_liquidity(self, raw: bytes) -> LiquidityProvider:
        r = _Reader(raw, DISCRIMINATOR_SIZE, AccountKind.LIQUIDITY_PROVIDER)
        return LiquidityProvider(
            provider=        r.pubkey(),
            total_deposited= r.int("u64"),
            total_withdrawn= r.int("u64"),
            active_deposit=  r.int("u64"),
            bump=            r.int("u8"),
        )

    _DECODERS: Dict[AccountKind, Callable[["AccountCodec", bytes], Entity]] = {
        AccountKind.CONFIG:             _decode_config,
        AccountKind.PRODUCT:            _decode_product,
        AccountKind.POLICY:             _decode_policy,
        AccountKind.LIQUIDITY_PROVIDER: _decode_liquidity,
    }

    # ── Accounts: encode ──────────────────────────────────────

    def encode_account(self, entity: Entity) -> bytes:
        """Serialize an entity exactly as the program stores it."""
        out = bytearray(ACCOUNT_DISCRIMINATORS[entity.KIND])

        if isinstance(entity, Config):
            out += _pack_pubkey(entity.admin, "admin")
            out += _pack_pubkey(entity.usdc_mint, "usdc_mint")
            out += _pack_pubkey(entity.oracle_program, "oracle_program")
            if entity.risk_pool_vault is not None:
                out += _pack_pubkey(entity.risk_pool_vault, "risk_pool_vault")
            out += _pack_bool(entity.paused, "paused")
            out += _pack_int("u8", entity.bump, "bump")

        elif isinstance(entity, Product):
            out += _pack_int("u64", entity.id, "id")
            out += _pack_int("u32", entity.delay_threshold_minutes, "delay_threshold_minutes")
            out += _pack_int("u64", entity.coverage_amount, "coverage_amount")
            out += _pack_int("u16", entity.premium_rate_bps, "premium_rate_bps")
            out += _pack_int("u32", entity.claim_window_hours, "claim_window_hours")
            out += _pack_bool(entity.active, "active")
            out += _pack_int("u8", entity.bump, "bump")

        elif isinstance(entity, Policy):
            if len(entity.flight_number.encode("utf-8")) > MAX_FLIGHT_NUMBER:
                raise ValidationError(
                    f"flight_number exceeds {MAX_FLIGHT_NUMBER} bytes"
                )
            out += _pack_int("u64", entity.id, "id")
            out += _pack_pubkey(entity.policyholder, "policyholder")
            out += _pack_int("u64", entity.product_id, "product_id")
            out += _pack_string(entity.flight_number, "flight_number")
            out += _pack_int("i64", entity.departure_time, "departure_time")
            out += _pack_int("u64", entity.premium_paid, "premium_paid")
            out += _pack_int("u64", entity.coverage_amount, "coverage_amount")
            out += _pack_int("u8", int(entity.status), "status")
            out += _pack_int("i64", entity.created_at, "created_at")
            out += _pack_option_i64(entity.paid_at, "paid_at")
            out += _pack_int("u8", entity.bump, "bump")
            out += bytes(POLICY_ALLOCATED - len(out))

        elif isinstance(entity, LiquidityProvider):
            out += _pack_pubkey(entity.provider, "provider")
            out += _pack_int("u64", entity.total_deposited, "total_deposited")
            out += _pack_int("u64", entity.total_withdrawn, "total_withdrawn")
            out += _pack_int("u64", entity.active_deposit, "active_deposit")
            out += _pack_int("u8", entity.bump, "bump")

        else:
            raise ValidationError(f"Cannot encode {type(entity).__name__}")

        return bytes(out)

    # ── Instructions ──────────────────────────────────────────

    def encode(self, instruction_name: str, fields: Dict[str, Any]) -> bytes:
        """
        Instruction data: discriminator + packed arguments in schema order.
        Raises ValidationError for unknown instructions, missing or extra
        arguments, and out-of-range values.
        """
        schema = INSTRUCTION_SCHEMAS.get(instruction_name)
        if schema is None:
            raise ValidationError(f"Unknown instruction '{instruction_name}'")

        names   = [name for name, _ in schema]
        missing = [n for n in names if n not in fields]
        extra   = sorted(set(fields) - set(names))
        if missing or extra:
            raise ValidationError(
                f"Bad arguments for {instruction_name}",
                {"missing": missing, "unexpected": extra},
            )

        out = bytearray(instruction_discriminator(instruction_name))
        for name, type_name in schema:
            out += _pack_field(type_name, fields[name], name)
        return bytes(out)

    def decode_instruction(self, raw: bytes) -> Tuple[str, Dict[str, Any]]:
        """Inverse of encode(). Unknown discriminators are DiscriminatorMismatch."""
        raw = bytes(raw)
        if len(raw) < DISCRIMINATOR_SIZE:
            raise DecodeError(DecodeErrorKind.TOO_SHORT, "Instruction data too short")
        name = INSTRUCTION_DISCRIMINATORS.get(raw[:DISCRIMINATOR_SIZE])
        if name is None:
            raise DecodeError(
                DecodeErrorKind.DISCRIMINATOR_MISMATCH,
                "Unknown instruction discriminator",
                {"found": raw[:DISCRIMINATOR_SIZE].hex()},
            )

        # Instruction readers reuse the account cursor; the kind only labels errors.
        r = _Reader(raw, DISCRIMINATOR_SIZE, AccountKind.CONFIG)
        fields: Dict[str, Any] = {}
        for field_name, type_name in INSTRUCTION_SCHEMAS[name]:
            if type_name in _INT_FORMATS:
                fields[field_name] = r.int(type_name)
            elif type_name == "bool":
                fields[field_name] = r.bool()
            elif type_name == "pubkey":
                fields[field_name] = r.pubkey()
            else:
                fields[field_name] = r.string()
        if r.offset != len(raw):
            raise DecodeError(
                DecodeErrorKind.UNKNOWN_LAYOUT,
                f"Trailing bytes after {name} arguments",
                {"extra": len(raw) - r.offset},
            )
        return name, fields
