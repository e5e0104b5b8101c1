"""
Box Message Cipher
Authenticated public-key encryption of chat messages using NaCl's crypto_box
(Curve25519 + XSalsa20-Poly1305). One fresh 24-byte nonce per message.

Ciphertexts are the MAC followed by the encrypted bytes, without the nonce
prefix, which matches what tweetnacl's ``nacl.box`` emits on web clients.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from nacl.utils import random as random_bytes

from .errors import DecryptionFailed, InvalidKeyMaterial
from .key_pair import decode_b64, decode_key, encode_b64

logger = logging.getLogger(__name__)

NONCE_SIZE = Box.NONCE_SIZE  # 24 bytes
MAC_SIZE = 16  # Poly1305 tag prepended to every box ciphertext


@dataclass(frozen=True)
class EncryptedMessage:
    ciphertext: str  # base64
    nonce: str  # base64, 24 bytes

    def to_dict(self) -> dict[str, str]:
        return {"encryptedContent": self.ciphertext, "nonce": self.nonce}


def _box(secret_key: str, public_key: str) -> Box:
    private_key = PrivateKey(decode_key(secret_key, "secret key"))
    peer_key = PublicKey(decode_key(public_key, "public key"))
    try:
        return Box(private_key, peer_key)
    except CryptoError as exc:
        # libsodium rejects low-order points when computing the shared key
        raise InvalidKeyMaterial("public key is not a usable Curve25519 point") from exc


def encrypt_message(plaintext: str, sender_secret_key: str, receiver_public_key: str) -> EncryptedMessage:
    """
    Encrypt a message for a receiver.

    Args:
        plaintext: str - the UTF-8 message text
        sender_secret_key: base64-encoded sender's secret key
        receiver_public_key: base64-encoded receiver's public key

    Returns:
        EncryptedMessage: base64 ciphertext and base64 nonce

    Raises:
        InvalidKeyMaterial: if either key is malformed
    """
    if not isinstance(plaintext, str):
        raise TypeError("plaintext must be a str")

    box = _box(sender_secret_key, receiver_public_key)
    nonce = random_bytes(NONCE_SIZE)
    encrypted = box.encrypt(plaintext.encode("utf-8"), nonce)

    return EncryptedMessage(
        ciphertext=encode_b64(encrypted.ciphertext),
        nonce=encode_b64(nonce),
    )


def open_message(ciphertext: str, nonce: str, sender_public_key: str, receiver_secret_key: str) -> str:
    """
    Decrypt and authenticate a message.

    Raises:
        InvalidKeyMaterial: if either key is malformed
        DecryptionFailed: if the payload is corrupted or does not authenticate
    """
    box = _box(receiver_secret_key, sender_public_key)

    try:
        ciphertext_bytes = decode_b64(ciphertext, "ciphertext")
        nonce_bytes = decode_b64(nonce, "nonce")
    except ValueError as exc:
        raise DecryptionFailed(str(exc)) from exc

    if len(nonce_bytes) != NONCE_SIZE:
        raise DecryptionFailed(f"nonce must be {NONCE_SIZE} bytes, got {len(nonce_bytes)}")

    try:
        plaintext = box.decrypt(ciphertext_bytes, nonce_bytes)
    except CryptoError as exc:
        raise DecryptionFailed("Message failed authentication") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionFailed("Message is not valid UTF-8") from exc


def decrypt_message(ciphertext: str, nonce: str, sender_public_key: str, receiver_secret_key: str) -> str | None:
    """
    Decrypt a message, returning None when it cannot be decrypted.

    Callers render a placeholder for None; malformed keys still raise
    InvalidKeyMaterial because retrying with the same keys cannot succeed.
    """
    try:
        return open_message(ciphertext, nonce, sender_public_key, receiver_secret_key)
    except DecryptionFailed as exc:
        logger.debug("Decryption failed: %s", exc)
        return None


def shared_key(secret_key: str, public_key: str) -> bytes:
    """Precomputed Curve25519 shared key for the (secret, public) pair."""
    return _box(secret_key, public_key).shared_key()


__all__ = [
    "NONCE_SIZE",
    "MAC_SIZE",
    "EncryptedMessage",
    "encrypt_message",
    "open_message",
    "decrypt_message",
    "shared_key",
]
