from __future__ import annotations

import re

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import create_access_token, get_jwt_identity, jwt_required
from sqlalchemy import func
from werkzeug.security import check_password_hash, generate_password_hash

from ..database import db
from ..encryption.errors import MessagingError
from ..encryption.key_pair import generate_key_pair
from ..key_store import KeyMaterialStore
from ..models import User

auth_bp = Blueprint("auth", __name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


def _normalise_email(email: str) -> str:
    return email.strip().lower()


@auth_bp.post("/register")
def register():
    """Register a new user and issue their encryption key pair."""
    payload = request.get_json(silent=True) or {}
    email = _normalise_email(payload.get("email") or "")
    password = payload.get("password") or ""
    name = (payload.get("name") or "").strip() or None

    if not email or not password:
        return jsonify({"message": "Email and password are required."}), 400

    if not EMAIL_PATTERN.match(email):
        return jsonify({"message": "Invalid email address."}), 400

    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({"message": f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."}), 400

    if User.query.filter(func.lower(User.email) == email).first():
        return jsonify({"message": "An account with this email already exists."}), 409

    user = User(
        email=email,
        password=generate_password_hash(password, method="pbkdf2:sha256"),
        name=name,
    )

    db.session.add(user)
    db.session.flush()  # Flush to get user.userID before commit

    # A user must never exist without a usable key pair.
    try:
        key_pair = generate_key_pair()
        KeyMaterialStore().store_key_pair(user.userID, key_pair)
    except (MessagingError, ValueError) as exc:
        db.session.rollback()
        current_app.logger.error("Key generation failed during signup: %s", exc)
        return jsonify({"message": "Failed to generate encryption keys."}), 500

    db.session.commit()
    current_app.logger.info("Registered user %s", user.userID)

    token = create_access_token(identity=str(user.userID))

    return jsonify({"accessToken": token, "user": user.to_dict()}), 201


@auth_bp.post("/login")
def login():
    """Authenticate a user and issue a JWT access token."""
    payload = request.get_json(silent=True) or {}
    email = _normalise_email(payload.get("email") or "")
    password = payload.get("password") or ""

    if not email or not password:
        return jsonify({"message": "Email and password are required."}), 400

    user = User.query.filter(func.lower(User.email) == email).first()
    if not user or not check_password_hash(user.password, password):
        return jsonify({"message": "Invalid credentials."}), 401

    token = create_access_token(identity=str(user.userID))
    return jsonify({"accessToken": token, "user": user.to_dict()}), 200


@auth_bp.get("/me")
@jwt_required()
def me():
    """Return the authenticated user's profile."""
    user = db.session.get(User, int(get_jwt_identity()))
    if not user:
        return jsonify({"message": "User not found."}), 404
    return jsonify({"user": user.to_dict()}), 200


__all__ = ["auth_bp"]
