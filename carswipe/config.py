from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path


DEV_KEY_ENCRYPTION_SECRET = "dev-key-encryption-secret"


class Config:
    """Default configuration for the marketplace messaging backend."""

    BASE_DIR = Path(__file__).resolve().parent.parent
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", SECRET_KEY)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", f"sqlite:///{BASE_DIR / 'instance' / 'app.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=12)

    # Secret keys are wrapped at rest under a key derived from this value.
    KEY_ENCRYPTION_SECRET = os.environ.get("KEY_ENCRYPTION_SECRET", DEV_KEY_ENCRYPTION_SECRET)
    KEY_DERIVATION_ITERATIONS = int(os.environ.get("KEY_DERIVATION_ITERATIONS", "200000"))

    MAX_MESSAGE_LENGTH = 2000
    DECRYPTION_PLACEHOLDER = "Unable to decrypt"

    RELAY_API_URL = os.environ.get("RELAY_API_URL", "")
    RELAY_API_TOKEN = os.environ.get("RELAY_API_TOKEN", "dev-relay-token")
    FRONTEND_ORIGIN = os.environ.get("FRONTEND_ORIGIN", "http://localhost:3000")


__all__ = ["Config", "DEV_KEY_ENCRYPTION_SECRET"]
