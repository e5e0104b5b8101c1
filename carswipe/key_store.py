"""
Key material store.

Public keys are readable by anyone authenticated. Secret keys are stored
wrapped and only ever handed back to the user they belong to.
"""
from __future__ import annotations

from flask import current_app

from .database import db
from .encryption.errors import (
    InvalidKeyMaterial,
    KeyAccessDenied,
    KeyMaterialExists,
    KeyNotFound,
)
from .encryption.key_pair import KeyPair, decode_key
from .encryption.key_wrapping import DEFAULT_ITERATIONS, unwrap_secret_key, wrap_secret_key
from .models import User
from .session_keys import SessionKeys


class KeyMaterialStore:
    """SQLAlchemy-backed persistence of each user's key pair."""

    def __init__(self, master_secret: str | None = None, iterations: int | None = None):
        self._master_secret = master_secret
        self._iterations = iterations

    @property
    def master_secret(self) -> str:
        if self._master_secret is not None:
            return self._master_secret
        return current_app.config["KEY_ENCRYPTION_SECRET"]

    @property
    def iterations(self) -> int:
        if self._iterations is not None:
            return self._iterations
        return current_app.config.get("KEY_DERIVATION_ITERATIONS", DEFAULT_ITERATIONS)

    def get_public_key(self, user_id: int) -> str | None:
        """Return a user's base64 public key, or None if they have none on file."""
        user = db.session.get(User, user_id)
        if not user or not user.publicKey:
            return None
        return user.publicKey

    def get_own_secret_key(self, requesting_user_id: int, owner_id: int | None = None) -> str | None:
        """
        Return the requester's own secret key.

        Raises:
            KeyAccessDenied: if owner_id names anyone other than the requester
            InvalidKeyMaterial: if the stored key cannot be unwrapped
        """
        if owner_id is not None and owner_id != requesting_user_id:
            raise KeyAccessDenied("Secret keys are only released to their owner")

        user = db.session.get(User, requesting_user_id)
        if not user:
            return None
        wrapped = user.wrapped_secret_key
        if wrapped is None:
            return None
        return unwrap_secret_key(wrapped, user.userID, self.master_secret, self.iterations)

    def get_own_key_pair(self, requesting_user_id: int) -> KeyPair | None:
        public_key = self.get_public_key(requesting_user_id)
        secret_key = self.get_own_secret_key(requesting_user_id)
        if public_key is None or secret_key is None:
            return None
        return KeyPair(public_key=public_key, secret_key=secret_key)

    def load_session_keys(self, user_id: int) -> SessionKeys:
        """
        Build the session handle for a principal from their stored keys.

        Raises:
            KeyNotFound: if the user has no key material
            InvalidKeyMaterial: if the stored halves do not form a pair
        """
        key_pair = self.get_own_key_pair(user_id)
        if key_pair is None:
            raise KeyNotFound(f"User {user_id} has no key material on file")
        return SessionKeys.from_key_pair(user_id, key_pair)

    def store_key_pair(self, user_id: int, key_pair: KeyPair) -> User:
        """
        Persist a freshly generated key pair (write-once). Adds to the current
        session without committing, so it joins the caller's transaction.

        Raises:
            KeyMaterialExists: if the user already has a public key
            LookupError: if the user does not exist
            InvalidKeyMaterial: if the public key does not belong to the secret key
        """
        user = db.session.get(User, user_id)
        if not user:
            raise LookupError(f"User {user_id} not found")
        if user.publicKey or user.secret_key_encrypted:
            raise KeyMaterialExists(f"User {user_id} already has key material")

        decode_key(key_pair.public_key, "public key")
        if KeyPair.from_secret_key(key_pair.secret_key).public_key != key_pair.public_key:
            raise InvalidKeyMaterial("Public key does not match the secret key")
        wrapped = wrap_secret_key(key_pair.secret_key, user.userID, self.master_secret, self.iterations)

        user.publicKey = key_pair.public_key
        user.secret_key_encrypted = wrapped.ciphertext
        user.secret_key_salt = wrapped.salt
        user.secret_key_iv = wrapped.iv
        return user


__all__ = ["KeyMaterialStore"]
