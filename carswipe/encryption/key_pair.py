"""
Key Pair Service
Generates and serializes Curve25519 key pairs for the NaCl box construction.
Keys travel and rest as base64 strings of the raw 32 key bytes.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

from nacl.public import PrivateKey

from .errors import InvalidKeyMaterial, KeyGenerationError

KEY_SIZE = PrivateKey.SIZE  # 32 bytes for both halves


def encode_b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def decode_b64(value, what: str = "value") -> bytes:
    """
    Strictly decode a base64 string.

    Raises:
        ValueError: if value is not a string or not valid base64
    """
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="strict")
    if not isinstance(value, str):
        raise ValueError(f"{what} must be a base64 string")
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError(f"{what} is not valid base64") from exc


def decode_key(value, what: str = "key") -> bytes:
    """
    Decode a base64 key and check it is exactly 32 bytes.

    Raises:
        InvalidKeyMaterial: on undecodable input or wrong length
    """
    try:
        raw = decode_b64(value, what)
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidKeyMaterial(f"{what} is not valid base64") from exc
    if len(raw) != KEY_SIZE:
        raise InvalidKeyMaterial(f"{what} must be {KEY_SIZE} bytes, got {len(raw)}")
    return raw


@dataclass(frozen=True)
class KeyPair:
    """A user's box keypair, base64-encoded. The secret half never leaves its owner."""

    public_key: str
    secret_key: str

    @classmethod
    def from_secret_key(cls, secret_key: str) -> "KeyPair":
        """Rebuild the pair by deriving the public half from a secret key."""
        private_key = PrivateKey(decode_key(secret_key, "secret key"))
        return cls(
            public_key=encode_b64(bytes(private_key.public_key)),
            secret_key=encode_b64(bytes(private_key)),
        )

    def to_dict(self) -> dict[str, str]:
        return {"publicKey": self.public_key, "secretKey": self.secret_key}

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key!r}, secret_key=<redacted>)"


def generate_key_pair() -> KeyPair:
    """
    Generate a fresh Curve25519 key pair from libsodium's CSPRNG.

    Returns:
        KeyPair: base64-encoded public and secret keys (32 bytes each)

    Raises:
        KeyGenerationError: if the random source fails or the result is degenerate
    """
    try:
        private_key = PrivateKey.generate()
    except Exception as exc:
        raise KeyGenerationError("Random source failed while generating a key pair") from exc

    secret_raw = bytes(private_key)
    public_raw = bytes(private_key.public_key)

    if len(secret_raw) != KEY_SIZE or len(public_raw) != KEY_SIZE:
        raise KeyGenerationError("Generated key pair has the wrong size")
    if not any(secret_raw) or not any(public_raw):
        raise KeyGenerationError("Generated key pair is degenerate")

    return KeyPair(public_key=encode_b64(public_raw), secret_key=encode_b64(secret_raw))


__all__ = [
    "KEY_SIZE",
    "KeyPair",
    "generate_key_pair",
    "decode_key",
    "decode_b64",
    "encode_b64",
]
