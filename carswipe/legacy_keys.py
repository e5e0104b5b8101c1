"""
Migration of secret keys stored in clear.

Earlier deployments kept each user's box secret key as plain base64 in a
``privateKeyEnc`` column. This moves every such key into the wrapped
columns and blanks the clear copy.
"""
from __future__ import annotations

import logging

from sqlalchemy import inspect, text

from .database import db
from .encryption.errors import InvalidKeyMaterial
from .encryption.key_pair import KeyPair
from .encryption.key_wrapping import wrap_secret_key
from .key_store import KeyMaterialStore
from .models import User

logger = logging.getLogger(__name__)

LEGACY_COLUMN = "privateKeyEnc"


def has_legacy_column() -> bool:
    columns = {column["name"] for column in inspect(db.engine).get_columns(User.__tablename__)}
    return LEGACY_COLUMN in columns


def wrap_legacy_secret_keys(store: KeyMaterialStore | None = None) -> dict[str, int]:
    """
    Wrap every clear-text secret key. Must run inside an app context.

    Returns:
        dict: counts of wrapped and skipped rows
    """
    if not has_legacy_column():
        return {"wrapped": 0, "skipped": 0}

    store = store or KeyMaterialStore()
    rows = db.session.execute(
        text(f'SELECT "userID", "{LEGACY_COLUMN}" FROM "user" WHERE "{LEGACY_COLUMN}" IS NOT NULL')
    ).all()

    wrapped_count = 0
    skipped = 0
    for user_id, clear_secret in rows:
        user = db.session.get(User, user_id)
        try:
            key_pair = KeyPair.from_secret_key(clear_secret)
        except InvalidKeyMaterial:
            logger.warning("User %s has an undecodable legacy secret key; left untouched", user_id)
            skipped += 1
            continue

        if user.publicKey and user.publicKey != key_pair.public_key:
            logger.warning("User %s legacy secret key does not match their public key; left untouched", user_id)
            skipped += 1
            continue

        wrapped = wrap_secret_key(key_pair.secret_key, user_id, store.master_secret, store.iterations)
        user.publicKey = key_pair.public_key
        user.secret_key_encrypted = wrapped.ciphertext
        user.secret_key_salt = wrapped.salt
        user.secret_key_iv = wrapped.iv
        db.session.execute(
            text(f'UPDATE "user" SET "{LEGACY_COLUMN}" = NULL WHERE "userID" = :user_id'),
            {"user_id": user_id},
        )
        wrapped_count += 1

    db.session.commit()
    return {"wrapped": wrapped_count, "skipped": skipped}


__all__ = ["LEGACY_COLUMN", "has_legacy_column", "wrap_legacy_secret_keys"]
