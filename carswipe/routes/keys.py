"""
Key Management Routes
Serves public keys to any authenticated user and a user's own key pair to
that user only.
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify
from flask_jwt_extended import get_jwt_identity, jwt_required

from ..database import db
from ..encryption.errors import InvalidKeyMaterial
from ..key_store import KeyMaterialStore
from ..models import User

keys_bp = Blueprint("keys", __name__)


def _safe_identity() -> int:
    """Load the current user id from the JWT."""
    return int(get_jwt_identity())


@keys_bp.get("/me")
@jwt_required()
def get_my_keys():
    """
    Return the caller's own key pair.

    The owner is always the JWT principal; nothing in the request can
    select another user's secret key.

    Returns:
        200: {"publicKey": ..., "secretKey": ...}
        404: No key material on file
    """
    current_user_id = _safe_identity()

    try:
        key_pair = KeyMaterialStore().get_own_key_pair(current_user_id)
    except InvalidKeyMaterial:
        current_app.logger.error("Stored key material for user %s cannot be unwrapped", current_user_id)
        return jsonify({"message": "Encryption keys are unavailable."}), 500

    if key_pair is None:
        return jsonify({"message": "Encryption keys not found."}), 404

    return jsonify(key_pair.to_dict()), 200


@keys_bp.get("/public/<int:user_id>")
@jwt_required()
def get_public_key(user_id: int):
    """
    Retrieve a user's public key for encryption.

    Returns:
        200: Public key data
        404: User or key not found
    """
    target_user = db.session.get(User, user_id)
    if not target_user:
        return jsonify({"message": "User not found."}), 404

    public_key = KeyMaterialStore().get_public_key(user_id)
    if not public_key:
        return jsonify({"message": "Public key not found for this user."}), 404

    return jsonify({
        "user": {"id": target_user.userID, "name": target_user.display_name},
        "publicKey": public_key,
    }), 200


__all__ = ["keys_bp"]
