"""
delayclaw/core/crypto.py

Ed25519 signing for ledger transactions and journal entries.

Key contracts:
    pubkey                  : @property → solders Pubkey of the signing key
    sign_raw(data)          : bytes → raw 64-byte Ed25519 signature
    sign(data)              : bytes → base64url str, no padding
    verify_detached(...)    : @staticmethod, verifies with ONLY a base58 pubkey

Keypair files use the ledger CLI format: a JSON array of 64 integers,
32-byte seed followed by the 32-byte public key. PEM (PKCS8) files are
also accepted.
"""

import base64
import json
from pathlib import Path
from typing import List, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)
from solders.pubkey import Pubkey


class Ed25519KeyManager:
    """
    Ed25519 key manager for the settlement signer.

    Public surface:
        Ed25519KeyManager.generate()                        → new random key
        Ed25519KeyManager.from_file(path)                  → load JSON keypair or PEM
        Ed25519KeyManager.from_private_bytes(seed)         → load from raw 32-byte seed
        Ed25519KeyManager.from_keypair_bytes(raw)          → load from 64-byte keypair
        Ed25519KeyManager.verify_detached(data, sig, key)  → @staticmethod

        key.pubkey                  (@property) → solders Pubkey
        key.sign_raw(data)                      → 64 raw bytes
        key.sign(data)                          → base64url str (no padding)
        key.save(path)                          → write JSON keypair file
    """

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key: Ed25519PrivateKey = private_key
        self._public_key:  Ed25519PublicKey  = private_key.public_key()
        self._public_bytes: bytes = self._public_key.public_bytes(
            Encoding.Raw, PublicFormat.Raw
        )
        self._pubkey: Pubkey = Pubkey(self._public_bytes)

    # ── Construction ──────────────────────────────────────────

    @classmethod
    def generate(cls) -> "Ed25519KeyManager":
        """Generate a new random Ed25519 key pair."""
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Ed25519KeyManager":
        """
        Load a signing key from a JSON keypair file or a PEM file.
        Raises FileNotFoundError if path does not exist.
        Raises ValueError if the file holds no usable Ed25519 key.
        """
        path = Path(path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Key file not found: {path}")
        raw = path.read_bytes()

        if raw.lstrip().startswith(b"["):
            try:
                values: List[int] = json.loads(raw.decode("utf-8"))
                return cls.from_keypair_bytes(bytes(values))
            except (ValueError, TypeError) as exc:
                raise ValueError(
                    f"Failed to load keypair from {path}: {exc}"
                ) from exc

        try:
            private_key = load_pem_private_key(raw, password=None)
        except (ValueError, TypeError) as exc:
            raise ValueError(
                f"Failed to load Ed25519 key from {path}: {exc}"
            ) from exc
        if not isinstance(private_key, Ed25519PrivateKey):
            raise ValueError(
                f"Key file {path} does not contain an Ed25519 private key"
            )
        return cls(private_key)

    @classmethod
    def from_private_bytes(cls, seed: bytes) -> "Ed25519KeyManager":
        """
        Load an Ed25519 key from a raw 32-byte seed.
        Raises ValueError if seed is not exactly 32 bytes.
        """
        if len(seed) != 32:
            raise ValueError(
                f"Ed25519 seed must be 32 bytes, got {len(seed)}"
            )
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def from_keypair_bytes(cls, raw: bytes) -> "Ed25519KeyManager":
        """
        Load from 64 bytes: seed followed by the public key.
        Raises ValueError when the embedded public key does not match the seed.
        """
        if len(raw) != 64:
            raise ValueError(f"Keypair must be 64 bytes, got {len(raw)}")
        manager = cls.from_private_bytes(raw[:32])
        if manager._public_bytes != raw[32:]:
            raise ValueError("Keypair public half does not match its seed")
        return manager

    # ── Public Key ────────────────────────────────────────────

    @property
    def pubkey(self) -> Pubkey:
        """Ledger address of this key. Access as key.pubkey (NO parentheses)."""
        return self._pubkey

    @property
    def public_key_bytes(self) -> bytes:
        return self._public_bytes

    # ── Signing ───────────────────────────────────────────────

    def sign_raw(self, data: bytes) -> bytes:
        """Sign data with Ed25519. Returns the 64-byte raw signature."""
        return self._private_key.sign(data)

    def sign(self, data: bytes) -> str:
        """Sign data with Ed25519. Returns base64url string, no '=' padding."""
        return (
            base64.urlsafe_b64encode(self.sign_raw(data))
            .rstrip(b"=")
            .decode("ascii")
        )

    def verify(self, data: bytes, signature_b64: str) -> bool:
        """Verify a base64url signature against this key. Never raises."""
        return Ed25519KeyManager.verify_detached(
            data, signature_b64, str(self._pubkey)
        )

    @staticmethod
    def verify_detached(
        data:          bytes,
        signature_b64: str,
        pubkey:        str,
    ) -> bool:
        """
        Verify an Ed25519 signature using ONLY a base58 public key string.

        Returns True if the signature is valid over data with the given key.
        False for ANY failure: wrong key, bad encoding, wrong length,
        corrupted signature. Never raises.
        """
        try:
            raw_pub = bytes(Pubkey.from_string(pubkey))
            pub     = Ed25519PublicKey.from_public_bytes(raw_pub)

            padding    = 4 - len(signature_b64) % 4
            padded_sig = signature_b64 + "=" * (padding % 4)
            raw_sig    = base64.urlsafe_b64decode(padded_sig)
            if len(raw_sig) != 64:
                return False

            pub.verify(raw_sig, data)
            return True
        except (InvalidSignature, ValueError, TypeError):
            return False

    # ── Persistence ───────────────────────────────────────────

    def keypair_bytes(self) -> bytes:
        """
        Return seed + public key (64 bytes).
        Use only for secure backup; never log or transmit.
        """
        seed = self._private_key.private_bytes(
            encoding=             Encoding.Raw,
            format=               PrivateFormat.Raw,
            encryption_algorithm= NoEncryption(),
        )
        return seed + self._public_bytes

    def save(self, path: Union[str, Path]) -> None:
        """
        Write the keypair to disk as a JSON integer array.
        Creates parent directories if needed.
        Raises RuntimeError on write failure.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.write_text(json.dumps(list(self.keypair_bytes())))
        except OSError as exc:
            raise RuntimeError(
                f"Failed to save keypair to {path}: {exc}"
            ) from exc

    def __repr__(self) -> str:
        return f"Ed25519KeyManager(pubkey={str(self._pubkey)[:16]}...)"


def load_signer(path: Optional[Union[str, Path]]) -> Ed25519KeyManager:
    """Load the admin signer, raising FileNotFoundError with a usable hint."""
    if not path:
        raise FileNotFoundError(
            "No admin keypair configured. Set ADMIN_KEYPAIR to a keypair file."
        )
    return Ed25519KeyManager.from_file(path)
