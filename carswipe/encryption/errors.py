"""Error taxonomy for key handling and message encryption."""

from __future__ import annotations


class MessagingError(Exception):
    """Base class for all encrypted-messaging errors."""


class InvalidKeyMaterial(MessagingError, ValueError):
    """Key bytes are undecodable or have the wrong length."""


class KeyGenerationError(MessagingError, RuntimeError):
    """The entropy source failed or produced a degenerate keypair."""


class DecryptionFailed(MessagingError):
    """Authentication of a ciphertext failed (tampered data, wrong keys or nonce)."""


class RecipientKeyMissing(MessagingError, LookupError):
    """The counterpart has no public key on file."""

    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} has no public key; cannot message this user securely.")
        self.user_id = user_id


class KeyNotFound(MessagingError, LookupError):
    """The requesting user has no key material on file."""


class KeyMaterialExists(MessagingError):
    """Key material is write-once and the user already has some."""


class KeyAccessDenied(MessagingError, PermissionError):
    """A principal asked for (or tried to use) a secret key that is not their own."""


class ThreadAccessError(MessagingError, PermissionError):
    """The user is not a participant of the thread, or the thread does not exist."""


__all__ = [
    "MessagingError",
    "InvalidKeyMaterial",
    "KeyGenerationError",
    "DecryptionFailed",
    "RecipientKeyMissing",
    "KeyNotFound",
    "KeyMaterialExists",
    "KeyAccessDenied",
    "ThreadAccessError",
]
