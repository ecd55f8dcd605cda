"""
Deterministic ledger address derivation.

An account address is a pure function of the program id and its seeds:

    config              ["config"]
    product             ["product", u64le(id)]
    policy              ["policy",  u64le(id)]
    liquidity provider  ["liquidity_provider", provider]
    mint authority      ["policy_mint_authority"]

No I/O happens here. Collision handling belongs to the ledger runtime.
"""

import struct
from dataclasses import dataclass
from typing import Sequence, Union

from solders.pubkey import Pubkey

from delayclaw.core.exceptions import AddressError


SYSTEM_PROGRAM_ID           = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID            = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

# The runtime appends the bump as the last seed, so callers get one fewer.
MAX_SEEDS       = 15
MAX_SEED_LENGTH = 32

U64_MAX = 2**64 - 1

SEED_CONFIG          = b"config"
SEED_PRODUCT         = b"product"
SEED_POLICY          = b"policy"
SEED_LIQUIDITY       = b"liquidity_provider"
SEED_MINT_AUTHORITY  = b"policy_mint_authority"


@dataclass(frozen=True)
class DerivedAddress:
    address: Pubkey
    bump:    int

    def __str__(self) -> str:
        return str(self.address)


def u64_seed(value: int) -> bytes:
    """Fixed-width little-endian encoding of a 64-bit id."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise AddressError(f"id must be an int, got {type(value).__name__}")
    if not 0 <= value <= U64_MAX:
        raise AddressError("id out of u64 range", {"id": value})
    return struct.pack("<Q", value)


def as_pubkey(value: Union[Pubkey, str, bytes]) -> Pubkey:
    """Coerce a base58 string or 32 raw bytes to a Pubkey."""
    if isinstance(value, Pubkey):
        return value
    try:
        if isinstance(value, (bytes, bytearray)):
            if len(value) != 32:
                raise ValueError(f"expected 32 bytes, got {len(value)}")
            return Pubkey(bytes(value))
        return Pubkey.from_string(value)
    except (TypeError, ValueError) as exc:
        raise AddressError(f"Invalid address {value!r}: {exc}")


class AddressDeriver:
    """Derives program addresses for one deployed program."""

    def __init__(self, program_id: Union[Pubkey, str]):
        self.program_id = as_pubkey(program_id)

    def derive(self, seed_label: bytes, *components: bytes) -> DerivedAddress:
        """
        Derive the address for seed_label + components.

        Raises AddressError on malformed seeds.
        """
        seeds = [seed_label, *components]
        _check_seeds(seeds)
        address, bump = Pubkey.find_program_address(
            [bytes(s) for s in seeds], self.program_id
        )
        return DerivedAddress(address=address, bump=bump)

    def verify(self, address: Pubkey, seed_label: bytes, *components: bytes) -> bool:
        """True when address is the one derived from these seeds."""
        return self.derive(seed_label, *components).address == address

    # ── Named accounts ────────────────────────────────────────

    def config(self) -> DerivedAddress:
        return self.derive(SEED_CONFIG)

    def product(self, product_id: int) -> DerivedAddress:
        return self.derive(SEED_PRODUCT, u64_seed(product_id))

    def policy(self, policy_id: int) -> DerivedAddress:
        return self.derive(SEED_POLICY, u64_seed(policy_id))

    def liquidity_provider(self, provider: Pubkey) -> DerivedAddress:
        return self.derive(SEED_LIQUIDITY, bytes(as_pubkey(provider)))

    def mint_authority(self) -> DerivedAddress:
        return self.derive(SEED_MINT_AUTHORITY)


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    """Associated token account of owner for mint (token program, not ours)."""
    seeds = [bytes(as_pubkey(owner)), bytes(TOKEN_PROGRAM_ID), bytes(as_pubkey(mint))]
    address, _ = Pubkey.find_program_address(seeds, ASSOCIATED_TOKEN_PROGRAM_ID)
    return address


def _check_seeds(seeds: Sequence[bytes]) -> None:
    if len(seeds) > MAX_SEEDS:
        raise AddressError(
            f"At most {MAX_SEEDS} seeds allowed", {"count": len(seeds)}
        )
    for index, seed in enumerate(seeds):
        if not isinstance(seed, (bytes, bytearray)):
            raise AddressError(
                f"Seed {index} must be bytes, got {type(seed).__name__}"
            )
        if len(seed) > MAX_SEED_LENGTH:
            raise AddressError(
                f"Seed {index} exceeds {MAX_SEED_LENGTH} bytes",
                {"length": len(seed)},
            )
