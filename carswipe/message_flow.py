"""
Thread message flow.

Bridges the box cipher with persisted threads and messages: encrypts on
send, decrypts on render and keeps the per-participant read markers that
unread counts are computed from.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .database import db
from .encryption.box_handler import MAC_SIZE, NONCE_SIZE, EncryptedMessage, decrypt_message, encrypt_message
from .encryption.errors import InvalidKeyMaterial, RecipientKeyMissing, ThreadAccessError
from .encryption.key_pair import decode_b64
from .key_store import KeyMaterialStore
from .models import Listing, Message, MessageThread, ThreadParticipant
from .session_keys import SessionKeys

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 2000
DEFAULT_PLACEHOLDER = "Unable to decrypt"
NEVER_READ = datetime(1970, 1, 1)


@dataclass
class RenderedMessage:
    message: Message
    text: str
    decrypted: bool

    def to_dict(self) -> dict[str, object]:
        data = self.message.to_dict()
        data["decryptedText"] = self.text
        data["decrypted"] = self.decrypted
        return data


class ThreadMessageFlow:
    """Send, render and read-tracking for two-party encrypted threads."""

    def __init__(
        self,
        key_store: KeyMaterialStore | None = None,
        on_message: Callable[[int, dict], None] | None = None,
        max_length: int = DEFAULT_MAX_LENGTH,
        placeholder: str = DEFAULT_PLACEHOLDER,
    ):
        self.key_store = key_store or KeyMaterialStore()
        self.on_message = on_message
        self.max_length = max_length
        self.placeholder = placeholder

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def _thread_for(self, thread_id: int, user_id: int) -> tuple[MessageThread, ThreadParticipant]:
        thread = db.session.get(MessageThread, thread_id)
        if not thread:
            raise ThreadAccessError(f"Thread {thread_id} not found")
        participant = thread.participant(user_id)
        if participant is None:
            raise ThreadAccessError(f"User {user_id} is not a participant of thread {thread_id}")
        return thread, participant

    def require_participant(self, thread_id: int, user_id: int) -> MessageThread:
        """Return the thread if ``user_id`` takes part in it, else raise ThreadAccessError."""
        thread, _ = self._thread_for(thread_id, user_id)
        return thread

    def _check_pair(self, thread: MessageThread, sender_id: int, receiver_id: int) -> None:
        if sender_id == receiver_id:
            raise ThreadAccessError("Cannot send a message to yourself")
        if thread.participant(receiver_id) is None:
            raise ThreadAccessError(
                f"User {receiver_id} is not a participant of thread {thread.threadID}"
            )

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------
    def send(
        self,
        thread_id: int,
        sender_id: int,
        receiver_id: int,
        plaintext: str,
        session_keys: SessionKeys,
    ) -> dict[str, object]:
        """
        Encrypt ``plaintext`` for the receiver and persist it.

        The receiver's public key is resolved first; if they have none the
        send aborts with RecipientKeyMissing before anything is written. The
        sender's secret key comes only from ``session_keys``.

        Returns the persisted message (with sender metadata), never the plaintext.
        """
        if not isinstance(plaintext, str):
            raise TypeError("plaintext must be a str")
        if len(plaintext) > self.max_length:
            raise ValueError(f"Message must not exceed {self.max_length} characters.")

        session_keys.require_owner(sender_id)
        thread, _ = self._thread_for(thread_id, sender_id)
        self._check_pair(thread, sender_id, receiver_id)

        receiver_public_key = self.key_store.get_public_key(receiver_id)
        if not receiver_public_key:
            raise RecipientKeyMissing(receiver_id)

        encrypted = encrypt_message(plaintext, session_keys.secret_key, receiver_public_key)
        return self._persist(thread, sender_id, receiver_id, encrypted)

    def store_encrypted(
        self,
        thread_id: int,
        sender_id: int,
        receiver_id: int,
        encrypted: EncryptedMessage,
    ) -> dict[str, object]:
        """Persist a message that was already encrypted on the client."""
        ciphertext = decode_b64(encrypted.ciphertext, "encryptedContent")
        nonce = decode_b64(encrypted.nonce, "nonce")
        if len(nonce) != NONCE_SIZE:
            raise ValueError(f"nonce must be {NONCE_SIZE} bytes.")
        if len(ciphertext) < MAC_SIZE:
            raise ValueError("encryptedContent is too short to be a box ciphertext.")
        # UTF-8 needs at most 4 bytes per character.
        if len(ciphertext) > MAC_SIZE + 4 * self.max_length:
            raise ValueError(f"Message must not exceed {self.max_length} characters.")

        thread, _ = self._thread_for(thread_id, sender_id)
        self._check_pair(thread, sender_id, receiver_id)
        if not self.key_store.get_public_key(receiver_id):
            raise RecipientKeyMissing(receiver_id)

        return self._persist(thread, sender_id, receiver_id, encrypted)

    def _persist(
        self,
        thread: MessageThread,
        sender_id: int,
        receiver_id: int,
        encrypted: EncryptedMessage,
    ) -> dict[str, object]:
        # Message row and thread timestamp commit together or not at all.
        now = datetime.utcnow()
        message = Message(
            threadID=thread.threadID,
            senderID=sender_id,
            receiverID=receiver_id,
            encryptedContent=encrypted.ciphertext,
            nonce=encrypted.nonce,
            created_at=now,
        )
        try:
            db.session.add(message)
            thread.updated_at = now
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to persist message in thread %s", thread.threadID)
            raise

        payload = message.to_dict()
        if self.on_message is not None:
            self.on_message(receiver_id, payload)
        return payload

    # ------------------------------------------------------------------
    # Render
    # ------------------------------------------------------------------
    def messages(self, thread_id: int) -> list[Message]:
        """All messages of a thread in conversation order (created_at, then id)."""
        return (
            Message.query.filter_by(threadID=thread_id)
            .order_by(Message.created_at.asc(), Message.msgID.asc())
            .all()
        )

    def render_thread(self, thread_id: int, viewer_id: int, session_keys: SessionKeys) -> list[RenderedMessage]:
        """
        Decrypt every message of a thread for its viewer.

        A box is keyed by the pair (one party's secret, the other's public),
        so the viewer opens every message with their own secret key and the
        counterpart's public key: the sender's for received messages, the
        receiver's for their own. Failures degrade to the placeholder for
        that message only.
        """
        session_keys.require_owner(viewer_id)
        self._thread_for(thread_id, viewer_id)

        peer_keys: dict[int, str | None] = {}
        rendered = []
        for message in self.messages(thread_id):
            peer_id = message.receiverID if message.senderID == viewer_id else message.senderID
            if peer_id not in peer_keys:
                peer_keys[peer_id] = self.key_store.get_public_key(peer_id)

            text = None
            peer_key = peer_keys[peer_id]
            if peer_key:
                try:
                    text = decrypt_message(
                        message.encryptedContent,
                        message.nonce,
                        peer_key,
                        session_keys.secret_key,
                    )
                except InvalidKeyMaterial:
                    logger.warning("Public key of user %s is malformed", peer_id)

            if text is None:
                logger.info("Message %s in thread %s could not be decrypted", message.msgID, thread_id)
                rendered.append(RenderedMessage(message, self.placeholder, False))
            else:
                rendered.append(RenderedMessage(message, text, True))
        return rendered

    # ------------------------------------------------------------------
    # Read tracking
    # ------------------------------------------------------------------
    def mark_read(self, thread_id: int, viewer_id: int, now: datetime | None = None) -> ThreadParticipant:
        _, participant = self._thread_for(thread_id, viewer_id)
        participant.last_read_at = now or datetime.utcnow()
        db.session.commit()
        return participant

    def unread_count(self, thread_id: int, viewer_id: int) -> int:
        _, participant = self._thread_for(thread_id, viewer_id)
        since = participant.last_read_at or NEVER_READ
        return Message.query.filter(
            Message.threadID == thread_id,
            Message.receiverID == viewer_id,
            Message.created_at > since,
        ).count()

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------
    def list_threads(self, viewer_id: int) -> list[dict[str, object]]:
        """Threads the viewer takes part in, most recently active first."""
        threads = (
            MessageThread.query.join(ThreadParticipant)
            .filter(ThreadParticipant.userID == viewer_id)
            .order_by(MessageThread.updated_at.desc(), MessageThread.threadID.desc())
            .all()
        )

        summaries = []
        for thread in threads:
            other = thread.other_participant(viewer_id)
            last_message = (
                Message.query.filter_by(threadID=thread.threadID)
                .order_by(Message.created_at.desc(), Message.msgID.desc())
                .first()
            )
            summaries.append({
                "id": thread.threadID,
                "listing": thread.listing.to_dict() if thread.listing else None,
                "otherUser": other.user.to_public_dict() if other and other.user else None,
                "lastMessage": {
                    "content": "[Encrypted]",
                    "senderId": last_message.senderID,
                    "createdAt": last_message.created_at.isoformat(),
                } if last_message else None,
                "unreadCount": self.unread_count(thread.threadID, viewer_id),
                "updatedAt": thread.updated_at.isoformat() if thread.updated_at else None,
            })
        return summaries

    def open_thread(self, listing_id: int, buyer_id: int) -> tuple[MessageThread, bool]:
        """
        Return the buyer/seller thread for a listing, creating it if needed.

        Returns:
            (thread, created)
        """
        listing = db.session.get(Listing, listing_id)
        if not listing:
            raise LookupError(f"Listing {listing_id} not found")
        if listing.sellerID == buyer_id:
            raise ValueError("Cannot message yourself.")

        existing = self._existing_thread(listing_id, buyer_id)
        if existing is not None:
            return existing, False

        seller_id = listing.sellerID
        thread = MessageThread(listingID=listing_id, buyerID=buyer_id)
        thread.participants = [
            ThreadParticipant(userID=buyer_id),
            ThreadParticipant(userID=seller_id),
        ]
        try:
            db.session.add(thread)
            db.session.commit()
        except IntegrityError:
            # A concurrent request created the thread first.
            db.session.rollback()
            existing = self._existing_thread(listing_id, buyer_id)
            if existing is None:
                raise
            logger.info("Reusing thread %s for listing %s", existing.threadID, listing_id)
            return existing, False
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return thread, True

    def _existing_thread(self, listing_id: int, buyer_id: int) -> MessageThread | None:
        return MessageThread.query.filter_by(listingID=listing_id, buyerID=buyer_id).first()


__all__ = ["ThreadMessageFlow", "RenderedMessage"]
