from __future__ import annotations

from datetime import datetime

from .database import db
from .encryption.key_wrapping import WrappedSecretKey


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ============================================================================
# 1. USER Table (Base Entity, carries the user's key material)
# ============================================================================
class User(db.Model):
    """Marketplace account with its box key material."""

    __tablename__ = "user"

    userID = db.Column(db.Integer, primary_key=True, autoincrement=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password = db.Column(db.String(255), nullable=False)  # Stores hashed password
    name = db.Column(db.String(255), nullable=True)
    image = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Base64 32-byte Curve25519 public key, shared freely
    publicKey = db.Column(db.Text, nullable=True)
    # Secret key wrapped at rest (AES-GCM under a PBKDF2-derived key)
    secret_key_encrypted = db.Column(db.Text, nullable=True)
    secret_key_salt = db.Column(db.String(64), nullable=True)  # Hex-encoded salt for PBKDF2
    secret_key_iv = db.Column(db.String(64), nullable=True)  # Hex-encoded IV for AES-GCM

    # Relationships
    listings = db.relationship("Listing", back_populates="seller", cascade="all, delete-orphan")
    participations = db.relationship(
        "ThreadParticipant", back_populates="user", cascade="all, delete-orphan"
    )
    sent_messages = db.relationship(
        "Message",
        foreign_keys="Message.senderID",
        back_populates="sender",
    )
    received_messages = db.relationship(
        "Message",
        foreign_keys="Message.receiverID",
        back_populates="receiver",
    )

    @property
    def display_name(self) -> str:
        return self.name or self.email.split("@", 1)[0]

    @property
    def wrapped_secret_key(self) -> WrappedSecretKey | None:
        if not (self.secret_key_encrypted and self.secret_key_salt and self.secret_key_iv):
            return None
        return WrappedSecretKey(
            ciphertext=self.secret_key_encrypted,
            salt=self.secret_key_salt,
            iv=self.secret_key_iv,
        )

    def to_public_dict(self) -> dict[str, object]:
        """Fields any participant may see, including the public key."""
        return {
            "id": self.userID,
            "name": self.display_name,
            "image": self.image,
            "publicKey": self.publicKey,
        }

    def to_dict(self) -> dict[str, object]:
        """Serialize user data for API responses (excludes password and secret key)."""
        return {
            "id": self.userID,
            "email": self.email,
            "name": self.display_name,
            "image": self.image,
            "publicKey": self.publicKey,
            "createdAt": _iso(self.created_at),
        }


# ============================================================================
# 2. LISTING Table (Depends on USER; the car a thread is about)
# ============================================================================
class Listing(db.Model):
    """Car listing; only the fields a message thread needs to show."""

    __tablename__ = "listing"

    listingID = db.Column(db.Integer, primary_key=True, autoincrement=True)
    sellerID = db.Column(
        db.Integer,
        db.ForeignKey("user.userID", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    make = db.Column(db.String(100), nullable=False)
    model = db.Column(db.String(100), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Integer, nullable=False)
    image_url = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    seller = db.relationship("User", back_populates="listings")
    threads = db.relationship("MessageThread", back_populates="listing", cascade="all, delete-orphan")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.listingID,
            "sellerId": self.sellerID,
            "make": self.make,
            "model": self.model,
            "year": self.year,
            "price": self.price,
            "imageUrl": self.image_url,
        }


# ============================================================================
# 3. MESSAGE_THREAD Table (Depends on LISTING)
# ============================================================================
class MessageThread(db.Model):
    """Two-party conversation about one listing."""

    __tablename__ = "message_thread"
    __table_args__ = (db.UniqueConstraint("listingID", "buyerID", name="uq_thread_listing_buyer"),)

    threadID = db.Column(db.Integer, primary_key=True, autoincrement=True)
    listingID = db.Column(
        db.Integer,
        db.ForeignKey("listing.listingID", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    # One thread per buyer and listing; the seller is implied by the listing.
    buyerID = db.Column(
        db.Integer,
        db.ForeignKey("user.userID", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    listing = db.relationship("Listing", back_populates="threads")
    participants = db.relationship(
        "ThreadParticipant", back_populates="thread", cascade="all, delete-orphan"
    )
    messages = db.relationship("Message", back_populates="thread", cascade="all, delete-orphan")

    def participant(self, user_id: int) -> "ThreadParticipant | None":
        for participant in self.participants:
            if participant.userID == user_id:
                return participant
        return None

    def other_participant(self, user_id: int) -> "ThreadParticipant | None":
        for participant in self.participants:
            if participant.userID != user_id:
                return participant
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.threadID,
            "listing": self.listing.to_dict() if self.listing else None,
            "participants": [participant.to_dict() for participant in self.participants],
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


# ============================================================================
# 4. THREAD_PARTICIPANT Table (Depends on USER and MESSAGE_THREAD)
# ============================================================================
class ThreadParticipant(db.Model):
    """Membership of a user in a thread, with their read marker."""

    __tablename__ = "thread_participant"
    __table_args__ = (db.PrimaryKeyConstraint("threadID", "userID"),)

    threadID = db.Column(
        db.Integer,
        db.ForeignKey("message_thread.threadID", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )
    userID = db.Column(
        db.Integer,
        db.ForeignKey("user.userID", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )
    last_read_at = db.Column(db.DateTime, nullable=True)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    thread = db.relationship("MessageThread", back_populates="participants")
    user = db.relationship("User", back_populates="participations")

    def to_dict(self) -> dict[str, object]:
        return {
            "userId": self.userID,
            "lastReadAt": _iso(self.last_read_at),
            "user": self.user.to_public_dict() if self.user else None,
        }


# ============================================================================
# 5. MESSAGE Table (Depends on USER and MESSAGE_THREAD)
# ============================================================================
class Message(db.Model):
    """Encrypted message; created once on send and never updated."""

    __tablename__ = "message"
    __table_args__ = (db.Index("idx_thread_created", "threadID", "created_at", "msgID"),)

    msgID = db.Column(db.Integer, primary_key=True, autoincrement=True)
    threadID = db.Column(
        db.Integer,
        db.ForeignKey("message_thread.threadID", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    senderID = db.Column(
        db.Integer,
        db.ForeignKey("user.userID", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    receiverID = db.Column(
        db.Integer,
        db.ForeignKey("user.userID", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    encryptedContent = db.Column(db.Text, nullable=False)  # base64 box ciphertext
    nonce = db.Column(db.String(64), nullable=False)  # base64 24-byte nonce
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    thread = db.relationship("MessageThread", back_populates="messages")
    sender = db.relationship("User", foreign_keys=[senderID], back_populates="sent_messages")
    receiver = db.relationship("User", foreign_keys=[receiverID], back_populates="received_messages")

    def to_dict(self) -> dict[str, object]:
        """Serialize message for API response; plaintext is never part of a row."""
        return {
            "id": self.msgID,
            "threadId": self.threadID,
            "senderId": self.senderID,
            "receiverId": self.receiverID,
            "encryptedContent": self.encryptedContent,
            "nonce": self.nonce,
            "createdAt": _iso(self.created_at),
            "sender": self.sender.to_public_dict() if self.sender else None,
        }


__all__ = [
    "User",
    "Listing",
    "MessageThread",
    "ThreadParticipant",
    "Message",
]
