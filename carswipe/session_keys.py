"""Session-scoped handle on a user's own key pair."""
from __future__ import annotations

from nacl.public import PrivateKey

from .encryption.errors import InvalidKeyMaterial, KeyAccessDenied
from .encryption.key_pair import KeyPair, decode_key


class SessionKeys:
    """
    A viewer's own key pair for the duration of one thread-view session.

    Passed explicitly into every message-flow call; nothing keeps a global
    copy. The secret half is never shown by repr and can be dropped with
    ``clear()`` when the session ends.
    """

    __slots__ = ("user_id", "public_key", "_secret_key")

    def __init__(self, user_id: int, public_key: str, secret_key: str):
        secret_raw = decode_key(secret_key, "secret key")
        public_raw = decode_key(public_key, "public key")
        if bytes(PrivateKey(secret_raw).public_key) != public_raw:
            raise InvalidKeyMaterial("Public key does not belong to the secret key")

        self.user_id = user_id
        self.public_key = public_key
        self._secret_key: str | None = secret_key

    @classmethod
    def from_key_pair(cls, user_id: int, key_pair: KeyPair) -> "SessionKeys":
        return cls(user_id, key_pair.public_key, key_pair.secret_key)

    @property
    def secret_key(self) -> str:
        if self._secret_key is None:
            raise KeyAccessDenied("Session keys have been cleared")
        return self._secret_key

    @property
    def is_cleared(self) -> bool:
        return self._secret_key is None

    def owns(self, user_id: int) -> bool:
        return self.user_id == user_id

    def require_owner(self, user_id: int) -> None:
        if not self.owns(user_id):
            raise KeyAccessDenied(
                f"Session keys belong to user {self.user_id}, not user {user_id}"
            )

    def clear(self) -> None:
        self._secret_key = None

    def __enter__(self) -> "SessionKeys":
        return self

    def __exit__(self, *exc_info) -> None:
        self.clear()

    def __repr__(self) -> str:
        state = "cleared" if self.is_cleared else "active"
        return f"SessionKeys(user_id={self.user_id!r}, public_key={self.public_key!r}, {state})"


__all__ = ["SessionKeys"]
