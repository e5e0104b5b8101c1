from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from ..encryption.box_handler import EncryptedMessage
from ..encryption.errors import (
    InvalidKeyMaterial,
    KeyAccessDenied,
    KeyNotFound,
    RecipientKeyMissing,
    ThreadAccessError,
)
from ..key_store import KeyMaterialStore
from ..message_flow import ThreadMessageFlow

threads_bp = Blueprint("threads", __name__)


def _current_user_id() -> int:
    return int(get_jwt_identity())


def get_message_flow() -> ThreadMessageFlow:
    """Build the message flow from app config and registered subscribers."""
    return ThreadMessageFlow(
        key_store=KeyMaterialStore(),
        on_message=current_app.extensions.get("carswipe.subscribers"),
        max_length=current_app.config.get("MAX_MESSAGE_LENGTH", 2000),
        placeholder=current_app.config.get("DECRYPTION_PLACEHOLDER", "Unable to decrypt"),
    )


def _flag(name: str) -> bool:
    return request.args.get(name, "").lower() in {"1", "true", "yes"}


def _thread_error(exc: ThreadAccessError):
    current_app.logger.info("Thread access refused: %s", exc)
    return jsonify({"message": "Thread not found or access denied."}), 404


@threads_bp.get("")
@jwt_required()
def list_threads():
    """Return the caller's threads with unread counts, most recent first."""
    flow = get_message_flow()
    return jsonify({"threads": flow.list_threads(_current_user_id())}), 200


@threads_bp.post("")
@jwt_required()
def open_thread():
    """Open (or return the existing) thread with the seller of a listing."""
    payload = request.get_json(silent=True) or {}
    listing_id = payload.get("listingId")

    if not isinstance(listing_id, int) or isinstance(listing_id, bool):
        return jsonify({"message": "Listing ID is required."}), 400

    try:
        thread, created = get_message_flow().open_thread(listing_id, _current_user_id())
    except LookupError:
        return jsonify({"message": "Listing not found."}), 404
    except ValueError as exc:
        return jsonify({"message": str(exc)}), 400

    return jsonify({"thread": thread.to_dict()}), 201 if created else 200


@threads_bp.get("/<int:thread_id>")
@jwt_required()
def get_thread(thread_id: int):
    """
    Return a thread and its messages in conversation order.

    Rows are returned encrypted; with ``?decrypt=1`` they are rendered with
    the caller's own keys and carry ``decryptedText``.
    """
    current_user_id = _current_user_id()
    flow = get_message_flow()

    try:
        thread = flow.require_participant(thread_id, current_user_id)
        if _flag("decrypt"):
            with flow.key_store.load_session_keys(current_user_id) as session_keys:
                rendered = flow.render_thread(thread_id, current_user_id, session_keys)
            messages = [item.to_dict() for item in rendered]
        else:
            messages = [message.to_dict() for message in flow.messages(thread_id)]
    except ThreadAccessError as exc:
        return _thread_error(exc)
    except KeyNotFound:
        return jsonify({"message": "Encryption keys not found."}), 404
    except InvalidKeyMaterial:
        current_app.logger.error("Stored key material for user %s is unusable", current_user_id)
        return jsonify({"message": "Encryption keys are unavailable."}), 500

    return jsonify({"thread": thread.to_dict(), "messages": messages}), 200


@threads_bp.post("/<int:thread_id>/messages")
@jwt_required()
def create_message(thread_id: int):
    """
    Add a message to a thread.

    Either ``{"content": "..."}`` (encrypted here with the caller's keys) or
    ``{"encrypted": true, "encryptedContent": ..., "nonce": ...}`` for
    messages already encrypted on the client. ``receiverId`` defaults to the
    other participant.
    """
    current_user_id = _current_user_id()
    payload = request.get_json(silent=True) or {}
    flow = get_message_flow()

    try:
        thread = flow.require_participant(thread_id, current_user_id)
    except ThreadAccessError as exc:
        return _thread_error(exc)

    receiver_id = payload.get("receiverId")
    if receiver_id is None:
        other = thread.other_participant(current_user_id)
        receiver_id = other.userID if other else None
    if not isinstance(receiver_id, int) or isinstance(receiver_id, bool):
        return jsonify({"message": "Receiver ID is required."}), 400

    try:
        if payload.get("encrypted", False):
            encrypted_content = payload.get("encryptedContent") or ""
            nonce = payload.get("nonce") or ""
            if not encrypted_content or not nonce:
                return jsonify({"message": "Missing encryption fields."}), 400
            message = flow.store_encrypted(
                thread_id,
                current_user_id,
                receiver_id,
                EncryptedMessage(ciphertext=encrypted_content, nonce=nonce),
            )
        else:
            content = payload.get("content")
            if not isinstance(content, str) or not content.strip():
                return jsonify({"message": "Message content is required."}), 400
            with flow.key_store.load_session_keys(current_user_id) as session_keys:
                message = flow.send(thread_id, current_user_id, receiver_id, content, session_keys)
    except RecipientKeyMissing as exc:
        current_app.logger.info("Blocked send to keyless user %s", exc.user_id)
        return jsonify({"message": "Cannot message this user securely."}), 409
    except ThreadAccessError as exc:
        return _thread_error(exc)
    except KeyAccessDenied:
        return jsonify({"message": "Access denied."}), 403
    except KeyNotFound:
        return jsonify({"message": "Your encryption keys were not found."}), 404
    except InvalidKeyMaterial:
        current_app.logger.error("Key material unusable for a send in thread %s", thread_id)
        return jsonify({"message": "Encryption keys are invalid."}), 422
    except ValueError as exc:
        return jsonify({"message": str(exc)}), 400

    return jsonify({"message": message}), 201


@threads_bp.post("/<int:thread_id>/read")
@jwt_required()
def mark_read(thread_id: int):
    """Move the caller's read marker to now."""
    try:
        participant = get_message_flow().mark_read(thread_id, _current_user_id())
    except ThreadAccessError as exc:
        return _thread_error(exc)
    return jsonify({"success": True, "lastReadAt": participant.last_read_at.isoformat()}), 200


@threads_bp.get("/<int:thread_id>/unread")
@jwt_required()
def unread_count(thread_id: int):
    try:
        count = get_message_flow().unread_count(thread_id, _current_user_id())
    except ThreadAccessError as exc:
        return _thread_error(exc)
    return jsonify({"unreadCount": count}), 200


__all__ = ["threads_bp", "get_message_flow"]
