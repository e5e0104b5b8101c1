"""
Secret Key Wrapping
Encrypts users' box secret keys at rest with AES-256-GCM under a key derived
(PBKDF2-HMAC-SHA256, per-user salt) from the server's key-encryption secret.
The owning user id is bound as associated data.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import InvalidKeyMaterial
from .key_pair import decode_b64, decode_key, encode_b64

SALT_SIZE = 16
IV_SIZE = 12
DEFAULT_ITERATIONS = 200_000


@dataclass(frozen=True)
class WrappedSecretKey:
    ciphertext: str  # base64, AES-GCM output including tag
    salt: str  # hex
    iv: str  # hex


def _derive_wrapping_key(master_secret: str, salt: bytes, iterations: int) -> bytes:
    if not master_secret:
        raise ValueError("A key-encryption secret is required to wrap secret keys")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(master_secret.encode("utf-8"))


def _aad(user_id: int) -> bytes:
    return f"carswipe:secret-key:{user_id}".encode("ascii")


def wrap_secret_key(
    secret_key: str,
    user_id: int,
    master_secret: str,
    iterations: int = DEFAULT_ITERATIONS,
) -> WrappedSecretKey:
    """
    Encrypt a base64 secret key for storage.

    Raises:
        InvalidKeyMaterial: if secret_key is not a 32-byte base64 key
    """
    raw = decode_key(secret_key, "secret key")
    salt = os.urandom(SALT_SIZE)
    iv = os.urandom(IV_SIZE)

    wrapping_key = _derive_wrapping_key(master_secret, salt, iterations)
    ciphertext = AESGCM(wrapping_key).encrypt(iv, raw, _aad(user_id))

    return WrappedSecretKey(ciphertext=encode_b64(ciphertext), salt=salt.hex(), iv=iv.hex())


def unwrap_secret_key(
    wrapped: WrappedSecretKey,
    user_id: int,
    master_secret: str,
    iterations: int = DEFAULT_ITERATIONS,
) -> str:
    """
    Decrypt a stored secret key back to its base64 form.

    Raises:
        InvalidKeyMaterial: if the stored material is corrupted, belongs to
            another user, or was wrapped under a different secret
    """
    try:
        ciphertext = decode_b64(wrapped.ciphertext, "wrapped secret key")
        salt = bytes.fromhex(wrapped.salt)
        iv = bytes.fromhex(wrapped.iv)
    except (TypeError, ValueError) as exc:
        raise InvalidKeyMaterial("Stored secret key is not decodable") from exc

    if len(iv) != IV_SIZE:
        raise InvalidKeyMaterial("Stored secret key has a bad IV")

    wrapping_key = _derive_wrapping_key(master_secret, salt, iterations)
    try:
        raw = AESGCM(wrapping_key).decrypt(iv, ciphertext, _aad(user_id))
    except InvalidTag as exc:
        raise InvalidKeyMaterial("Stored secret key failed authentication") from exc

    return encode_b64(raw)


__all__ = ["WrappedSecretKey", "wrap_secret_key", "unwrap_secret_key"]
