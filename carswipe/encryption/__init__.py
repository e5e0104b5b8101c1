"""Key generation, box encryption and at-rest key wrapping."""

from .box_handler import (
    NONCE_SIZE,
    EncryptedMessage,
    decrypt_message,
    encrypt_message,
    open_message,
    shared_key,
)
from .errors import (
    DecryptionFailed,
    InvalidKeyMaterial,
    KeyAccessDenied,
    KeyGenerationError,
    KeyMaterialExists,
    KeyNotFound,
    MessagingError,
    RecipientKeyMissing,
    ThreadAccessError,
)
from .key_pair import KEY_SIZE, KeyPair, generate_key_pair
from .key_wrapping import WrappedSecretKey, unwrap_secret_key, wrap_secret_key

__all__ = [
    "NONCE_SIZE",
    "KEY_SIZE",
    "EncryptedMessage",
    "KeyPair",
    "WrappedSecretKey",
    "generate_key_pair",
    "encrypt_message",
    "decrypt_message",
    "open_message",
    "shared_key",
    "wrap_secret_key",
    "unwrap_secret_key",
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
