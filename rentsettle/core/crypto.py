"""
rentsettle/core/crypto.py

Party keys and Ed25519 signatures.

Key contracts:
    public_key_hex          : @property → 64-char lowercase hex  (NO parentheses)
    sign(data)              : bytes → base64url str, no padding
    verify_detached(...)    : @staticmethod — verifies with ONLY a pubkey hex string

A Party in a contract is nothing more than its public_key_hex. Contracts
never hold a key manager; they verify with verify_detached() alone.
"""

import base64
import re

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

from rentsettle.core.exceptions import ValidationError


# Raw Ed25519 public key = 32 bytes = 64 hex chars
PUBLIC_KEY_HEX_LENGTH = 64

_PUBLIC_KEY_RE = re.compile(r"^[0-9a-f]{64}$")


def validate_public_key_hex(value, field: str = "public_key") -> str:
    """
    Return value unchanged if it is a 64-char lowercase hex key.
    Raises ValidationError otherwise.
    """
    if not isinstance(value, str) or not _PUBLIC_KEY_RE.match(value):
        raise ValidationError(
            f"{field} must be a {PUBLIC_KEY_HEX_LENGTH}-char lowercase hex string",
            {"field": field, "value": repr(value)[:80]},
        )
    return value


class Ed25519KeyManager:
    """
    Ed25519 key manager for a contract party.

    Public surface:
        Ed25519KeyManager.generate()                        → new random key
        Ed25519KeyManager.from_private_bytes(seed)         → load from raw 32-byte seed
        Ed25519KeyManager.verify_detached(data, sig, hex)  → @staticmethod, no instance needed

        key.public_key_hex          (@property) → 64-char lowercase hex
        key.sign(data: bytes)                   → base64url str (no padding)
    """

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key:    Ed25519PrivateKey = private_key
        self._public_key:     Ed25519PublicKey  = private_key.public_key()
        self._public_key_hex: str = (
            self._public_key
            .public_bytes(Encoding.Raw, PublicFormat.Raw)
            .hex()
        )

    # ── Construction ──────────────────────────────────────────

    @classmethod
    def generate(cls) -> "Ed25519KeyManager":
        """Generate a new random Ed25519 key pair."""
        return cls(Ed25519PrivateKey.generate())

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

    # ── Public Key ────────────────────────────────────────────

    @property
    def public_key_hex(self) -> str:
        """
        64-character lowercase hex string of the Ed25519 public key.

        THIS IS A @property — access as key.public_key_hex (NO parentheses).
        """
        return self._public_key_hex

    # ── Signing ───────────────────────────────────────────────

    def sign(self, data: bytes) -> str:
        """
        Sign data with Ed25519. Returns base64url string, no '=' padding.

        Args:
            data: Raw bytes to sign. Callers pass canonical message bytes
                  from rentsettle.core.quorum, never ad-hoc encodings.
        """
        raw_sig = self._private_key.sign(data)
        return base64.urlsafe_b64encode(raw_sig).rstrip(b"=").decode("ascii")

    # ── Verification ──────────────────────────────────────────

    @staticmethod
    def verify_detached(
        data:           bytes,
        signature_b64:  str,
        public_key_hex: str,
    ) -> bool:
        """
        Verify an Ed25519 signature using ONLY a public key hex string.

        Returns:
            True if the signature is valid over data with the given public key.
            False for ANY failure — wrong key, bad encoding, wrong length,
            corrupted signature, missing signature. Never raises.
        """
        try:
            if not isinstance(public_key_hex, str) or len(public_key_hex) != PUBLIC_KEY_HEX_LENGTH:
                return False
            if not isinstance(signature_b64, str) or not signature_b64:
                return False

            raw_pub = bytes.fromhex(public_key_hex)
            pub     = Ed25519PublicKey.from_public_bytes(raw_pub)

            # Re-add base64url padding if stripped
            padding    = 4 - len(signature_b64) % 4
            padded_sig = signature_b64 + "=" * (padding % 4)
            raw_sig    = base64.urlsafe_b64decode(padded_sig)

            if len(raw_sig) != 64:
                return False

            pub.verify(raw_sig, data)
            return True

        except Exception:
            return False

    def __repr__(self) -> str:
        return (
            f"Ed25519KeyManager(public_key_hex={self._public_key_hex[:16]}...)"
        )
