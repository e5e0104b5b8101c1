"""Tests for sending, rendering and read tracking in message threads."""

import base64
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from carswipe.database import db
from carswipe.encryption.box_handler import EncryptedMessage, decrypt_message, encrypt_message
from carswipe.encryption.errors import (
    KeyAccessDenied,
    RecipientKeyMissing,
    ThreadAccessError,
)
from carswipe.message_flow import ThreadMessageFlow
from carswipe.models import Listing, Message, MessageThread, ThreadParticipant
from carswipe.relay import MessageSubscribers
from carswipe.session_keys import SessionKeys


def _session(user_and_pair):
    user, pair = user_and_pair
    return SessionKeys.from_key_pair(user.userID, pair)


def _insert(thread, sender_pair, receiver_pair, text, created_at):
    sender, sender_keys = sender_pair
    receiver, receiver_keys = receiver_pair
    encrypted = encrypt_message(text, sender_keys.secret_key, receiver_keys.public_key)
    message = Message(
        threadID=thread.threadID,
        senderID=sender.userID,
        receiverID=receiver.userID,
        encryptedContent=encrypted.ciphertext,
        nonce=encrypted.nonce,
        created_at=created_at,
    )
    db.session.add(message)
    db.session.commit()
    return message


# ========== Send ==========

def test_buyer_asks_seller_about_the_car(flow, thread, alice, bob):
    buyer, _ = alice
    seller, _ = bob

    sent = flow.send(thread.threadID, buyer.userID, seller.userID, "Is this car still available?", _session(alice))

    row = db.session.get(Message, sent["id"])
    assert row.encryptedContent and row.nonce
    assert row.encryptedContent != "Is this car still available?"
    assert "Is this car still available?" not in sent.values()
    assert len(base64.b64decode(row.nonce)) == 24

    seller_view = flow.render_thread(thread.threadID, seller.userID, _session(bob))
    assert [item.text for item in seller_view] == ["Is this car still available?"]
    assert seller_view[0].decrypted

    buyer_view = flow.render_thread(thread.threadID, buyer.userID, _session(alice))
    assert [item.text for item in buyer_view] == ["Is this car still available?"]


def test_send_returns_sender_metadata(flow, thread, alice, bob):
    buyer, buyer_keys = alice
    seller, _ = bob
    sent = flow.send(thread.threadID, buyer.userID, seller.userID, "hello", _session(alice))

    assert sent["threadId"] == thread.threadID
    assert sent["senderId"] == buyer.userID
    assert sent["receiverId"] == seller.userID
    assert sent["sender"] == {
        "id": buyer.userID,
        "name": "Alice",
        "image": None,
        "publicKey": buyer_keys.public_key,
    }
    assert "decryptedText" not in sent


def test_send_bumps_thread_updated_at(flow, thread, alice, bob):
    buyer, _ = alice
    seller, _ = bob
    before = thread.updated_at
    sent = flow.send(thread.threadID, buyer.userID, seller.userID, "hello", _session(alice))

    db.session.refresh(thread)
    assert thread.updated_at > before
    assert thread.updated_at.isoformat() == sent["createdAt"]


def test_send_to_keyless_recipient_is_blocked(flow, make_user, alice):
    buyer, _ = alice
    keyless, _ = make_user("keyless@example.com", with_keys=False)
    car = Listing(sellerID=keyless.userID, make="Ford", model="Focus", year=2015, price=6000)
    db.session.add(car)
    db.session.commit()
    conversation, _ = flow.open_thread(car.listingID, buyer.userID)

    with pytest.raises(RecipientKeyMissing):
        flow.send(conversation.threadID, buyer.userID, keyless.userID, "hi", _session(alice))

    assert Message.query.count() == 0


def test_send_requires_the_senders_own_keys(flow, thread, alice, bob):
    buyer, _ = alice
    seller, _ = bob
    with pytest.raises(KeyAccessDenied):
        flow.send(thread.threadID, buyer.userID, seller.userID, "hi", _session(bob))
    assert Message.query.count() == 0


def test_send_rejects_non_participants(flow, thread, make_user, alice):
    buyer, _ = alice
    outsider = make_user("eve@example.com")
    with pytest.raises(ThreadAccessError):
        flow.send(thread.threadID, outsider[0].userID, buyer.userID, "hi", _session(outsider))
    with pytest.raises(ThreadAccessError):
        flow.send(thread.threadID, buyer.userID, outsider[0].userID, "hi", _session(alice))
    with pytest.raises(ThreadAccessError):
        flow.send(thread.threadID, buyer.userID, buyer.userID, "hi", _session(alice))
    with pytest.raises(ThreadAccessError):
        flow.send(9999, buyer.userID, outsider[0].userID, "hi", _session(alice))


def test_send_enforces_max_length(flow, thread, alice, bob):
    buyer, _ = alice
    seller, _ = bob
    flow.send(thread.threadID, buyer.userID, seller.userID, "x" * 2000, _session(alice))
    with pytest.raises(ValueError):
        flow.send(thread.threadID, buyer.userID, seller.userID, "x" * 2001, _session(alice))
    assert Message.query.count() == 1


def test_failed_commit_leaves_no_partial_state(flow, thread, alice, bob, monkeypatch):
    buyer, _ = alice
    seller, _ = bob
    before = thread.updated_at

    def failing_commit():
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(db.session, "commit", failing_commit)
    with pytest.raises(SQLAlchemyError):
        flow.send(thread.threadID, buyer.userID, seller.userID, "hello", _session(alice))
    monkeypatch.undo()

    assert Message.query.count() == 0
    assert db.session.get(MessageThread, thread.threadID).updated_at == before


def test_subscribers_hear_about_new_messages(key_store, thread, alice, bob):
    buyer, _ = alice
    seller, _ = bob
    received = []
    subscribers = MessageSubscribers()
    unsubscribe = subscribers.subscribe(lambda receiver_id, message: received.append((receiver_id, message["id"])))
    flow = ThreadMessageFlow(key_store=key_store, on_message=subscribers)

    sent = flow.send(thread.threadID, buyer.userID, seller.userID, "hello", _session(alice))
    assert received == [(seller.userID, sent["id"])]

    unsubscribe()
    flow.send(thread.threadID, buyer.userID, seller.userID, "again", _session(alice))
    assert len(received) == 1


def test_broken_subscriber_does_not_fail_the_send(key_store, thread, alice, bob):
    buyer, _ = alice
    seller, _ = bob
    subscribers = MessageSubscribers()

    def broken(receiver_id, message):
        raise RuntimeError("relay down")

    subscribers.subscribe(broken)
    flow = ThreadMessageFlow(key_store=key_store, on_message=subscribers)
    flow.send(thread.threadID, buyer.userID, seller.userID, "hello", _session(alice))
    assert Message.query.count() == 1


def test_store_encrypted_message_from_client(flow, thread, alice, bob):
    buyer, buyer_keys = alice
    seller, seller_keys = bob
    encrypted = encrypt_message("encrypted in the browser", buyer_keys.secret_key, seller_keys.public_key)

    flow.store_encrypted(thread.threadID, buyer.userID, seller.userID, encrypted)

    rendered = flow.render_thread(thread.threadID, seller.userID, _session(bob))
    assert rendered[0].text == "encrypted in the browser"


@pytest.mark.parametrize(
    "ciphertext, nonce",
    [
        ("not base64!!", base64.b64encode(b"\x00" * 24).decode()),
        (base64.b64encode(b"\x00" * 32).decode(), base64.b64encode(b"\x00" * 12).decode()),
        (base64.b64encode(b"\x00" * 4).decode(), base64.b64encode(b"\x00" * 24).decode()),
    ],
)
def test_store_encrypted_validates_payload(flow, thread, alice, bob, ciphertext, nonce):
    buyer, _ = alice
    seller, _ = bob
    with pytest.raises(ValueError):
        flow.store_encrypted(thread.threadID, buyer.userID, seller.userID, EncryptedMessage(ciphertext, nonce))
    assert Message.query.count() == 0


def test_store_encrypted_rejects_oversized_ciphertext(flow, thread, alice, bob):
    buyer, _ = alice
    seller, _ = bob
    nonce = base64.b64encode(b"\x00" * 24).decode()
    limit = 16 + 4 * flow.max_length

    with pytest.raises(ValueError):
        flow.store_encrypted(
            thread.threadID,
            buyer.userID,
            seller.userID,
            EncryptedMessage(base64.b64encode(b"\x00" * (limit + 1)).decode(), nonce),
        )
    assert Message.query.count() == 0

    flow.store_encrypted(
        thread.threadID,
        buyer.userID,
        seller.userID,
        EncryptedMessage(base64.b64encode(b"\x00" * limit).decode(), nonce),
    )
    assert Message.query.count() == 1


# ========== Render ==========

def test_messages_render_in_creation_order(flow, thread, alice, bob):
    buyer, _ = alice
    seller, _ = bob
    base = datetime(2024, 5, 1, 12, 0, 0)

    _insert(thread, alice, bob, "third", base + timedelta(minutes=3))
    _insert(thread, bob, alice, "first", base + timedelta(minutes=1))
    _insert(thread, alice, bob, "fourth", base + timedelta(minutes=4))
    _insert(thread, bob, alice, "second", base + timedelta(minutes=2))

    rendered = flow.render_thread(thread.threadID, buyer.userID, _session(alice))
    assert [item.text for item in rendered] == ["first", "second", "third", "fourth"]
    stamps = [item.message.created_at for item in rendered]
    assert stamps == sorted(stamps)


def test_identical_timestamps_fall_back_to_id_order(flow, thread, alice, bob):
    seller, _ = bob
    moment = datetime(2024, 5, 1, 12, 0, 0)
    _insert(thread, alice, bob, "one", moment)
    _insert(thread, alice, bob, "two", moment)
    _insert(thread, alice, bob, "three", moment)

    rendered = flow.render_thread(thread.threadID, seller.userID, _session(bob))
    assert [item.text for item in rendered] == ["one", "two", "three"]


def test_one_bad_message_does_not_break_the_thread(flow, thread, alice, bob):
    seller, _ = bob
    base = datetime(2024, 5, 1, 12, 0, 0)
    _insert(thread, alice, bob, "good before", base)
    broken = _insert(thread, alice, bob, "will be tampered", base + timedelta(seconds=1))
    _insert(thread, alice, bob, "good after", base + timedelta(seconds=2))

    raw = bytearray(base64.b64decode(broken.encryptedContent))
    raw[-1] ^= 0x01
    broken.encryptedContent = base64.b64encode(bytes(raw)).decode()
    db.session.commit()

    rendered = flow.render_thread(thread.threadID, seller.userID, _session(bob))
    assert [item.text for item in rendered] == ["good before", "Unable to decrypt", "good after"]
    assert [item.decrypted for item in rendered] == [True, False, True]


def test_placeholder_is_configurable(key_store, thread, alice, bob):
    seller, _ = bob
    message = _insert(thread, alice, bob, "hello", datetime(2024, 5, 1))
    message.nonce = base64.b64encode(b"\x00" * 24).decode()
    db.session.commit()

    flow = ThreadMessageFlow(key_store=key_store, placeholder="[message unavailable]")
    rendered = flow.render_thread(thread.threadID, seller.userID, _session(bob))
    assert rendered[0].text == "[message unavailable]"
    assert rendered[0].to_dict()["decryptedText"] == "[message unavailable]"


def test_counterpart_with_malformed_key_degrades_to_placeholder(flow, thread, alice, bob):
    buyer, _ = alice
    seller, _ = bob
    _insert(thread, alice, bob, "hello", datetime(2024, 5, 1))
    buyer.publicKey = "broken"
    db.session.commit()

    rendered = flow.render_thread(thread.threadID, seller.userID, _session(bob))
    assert rendered[0].text == "Unable to decrypt"


def test_render_requires_viewer_keys_and_membership(flow, thread, alice, bob, make_user):
    buyer, _ = alice
    outsider = make_user("eve@example.com")
    with pytest.raises(KeyAccessDenied):
        flow.render_thread(thread.threadID, buyer.userID, _session(bob))
    with pytest.raises(ThreadAccessError):
        flow.render_thread(thread.threadID, outsider[0].userID, _session(outsider))


def test_outsider_cannot_read_copied_rows(thread, alice, bob, make_user):
    seller, _ = bob
    _, eve_keys = make_user("eve@example.com")
    message = _insert(thread, alice, bob, "private", datetime(2024, 5, 1))

    _, alice_keys = alice
    assert decrypt_message(message.encryptedContent, message.nonce, alice_keys.public_key, eve_keys.secret_key) is None


# ========== Read tracking ==========

def test_unread_count_counts_messages_after_last_read(flow, thread, alice, bob):
    seller, _ = bob
    base = datetime(2024, 5, 1, 12, 0, 0)
    participant = thread.participant(seller.userID)
    participant.last_read_at = base + timedelta(minutes=10)
    db.session.commit()

    _insert(thread, alice, bob, "old 1", base + timedelta(minutes=1))
    _insert(thread, alice, bob, "old 2", base + timedelta(minutes=2))
    _insert(thread, alice, bob, "new 1", base + timedelta(minutes=11))
    _insert(thread, alice, bob, "new 2", base + timedelta(minutes=12))
    _insert(thread, alice, bob, "new 3", base + timedelta(minutes=13))

    assert flow.unread_count(thread.threadID, seller.userID) == 3


def test_own_messages_are_never_unread(flow, thread, alice, bob):
    buyer, _ = alice
    seller, _ = bob
    _insert(thread, alice, bob, "from buyer", datetime(2024, 5, 1))
    _insert(thread, bob, alice, "from seller", datetime(2024, 5, 2))

    assert flow.unread_count(thread.threadID, buyer.userID) == 1
    assert flow.unread_count(thread.threadID, seller.userID) == 1


def test_mark_read_clears_unread(flow, thread, alice, bob):
    buyer, _ = alice
    seller, _ = bob
    flow.send(thread.threadID, buyer.userID, seller.userID, "one", _session(alice))
    flow.send(thread.threadID, buyer.userID, seller.userID, "two", _session(alice))
    assert flow.unread_count(thread.threadID, seller.userID) == 2

    participant = flow.mark_read(thread.threadID, seller.userID, now=datetime.utcnow() + timedelta(seconds=1))
    assert participant.last_read_at is not None
    assert flow.unread_count(thread.threadID, seller.userID) == 0

    # The buyer's marker is untouched.
    assert thread.participant(buyer.userID).last_read_at is None


def test_mark_read_requires_membership(flow, thread, make_user):
    outsider, _ = make_user("eve@example.com")
    with pytest.raises(ThreadAccessError):
        flow.mark_read(thread.threadID, outsider.userID)


# ========== Threads ==========

def test_open_thread_is_idempotent(flow, listing, alice):
    buyer, _ = alice
    first, created = flow.open_thread(listing.listingID, buyer.userID)
    second, created_again = flow.open_thread(listing.listingID, buyer.userID)

    assert created and not created_again
    assert first.threadID == second.threadID
    assert {p.userID for p in first.participants} == {buyer.userID, listing.sellerID}


def test_seller_cannot_message_own_listing(flow, listing):
    with pytest.raises(ValueError):
        flow.open_thread(listing.listingID, listing.sellerID)


def test_open_thread_for_unknown_listing(flow, alice):
    with pytest.raises(LookupError):
        flow.open_thread(9999, alice[0].userID)


def test_require_participant(flow, thread, alice, make_user):
    buyer, _ = alice
    outsider, _ = make_user("mallory@example.com")

    assert flow.require_participant(thread.threadID, buyer.userID).threadID == thread.threadID
    with pytest.raises(ThreadAccessError):
        flow.require_participant(thread.threadID, outsider.userID)
    with pytest.raises(ThreadAccessError):
        flow.require_participant(9999, buyer.userID)


def test_one_thread_per_listing_and_buyer(thread, listing, alice):
    buyer, _ = alice
    db.session.add(MessageThread(listingID=listing.listingID, buyerID=buyer.userID))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()
    assert MessageThread.query.count() == 1


def test_open_thread_reuses_thread_created_concurrently(flow, thread, listing, alice, monkeypatch):
    buyer, _ = alice
    lookup = flow._existing_thread
    calls = []

    # The first lookup misses, as if another request committed in between.
    def racing_lookup(listing_id, buyer_id):
        calls.append(listing_id)
        if len(calls) == 1:
            return None
        return lookup(listing_id, buyer_id)

    monkeypatch.setattr(flow, "_existing_thread", racing_lookup)
    reused, created = flow.open_thread(listing.listingID, buyer.userID)

    assert not created
    assert reused.threadID == thread.threadID
    assert len(calls) == 2
    assert MessageThread.query.count() == 1


def test_list_threads_orders_by_activity_and_counts_unread(flow, listing, alice, bob, make_user):
    buyer, _ = alice
    seller, _ = bob
    carol = make_user("carol@example.com", name="Carol")

    first, _ = flow.open_thread(listing.listingID, buyer.userID)
    second, _ = flow.open_thread(listing.listingID, carol[0].userID)

    flow.send(first.threadID, buyer.userID, seller.userID, "from alice", _session(alice))
    flow.send(second.threadID, carol[0].userID, seller.userID, "from carol", _session(carol))
    flow.send(second.threadID, carol[0].userID, seller.userID, "carol again", _session(carol))

    summaries = flow.list_threads(seller.userID)
    assert [summary["id"] for summary in summaries] == [second.threadID, first.threadID]
    assert summaries[0]["otherUser"]["name"] == "Carol"
    assert summaries[0]["unreadCount"] == 2
    assert summaries[1]["unreadCount"] == 1
    assert summaries[0]["lastMessage"]["content"] == "[Encrypted]"

    assert [summary["id"] for summary in flow.list_threads(buyer.userID)] == [first.threadID]


def test_thread_participant_helpers(thread, alice, bob):
    buyer, _ = alice
    seller, _ = bob
    assert thread.participant(buyer.userID).userID == buyer.userID
    assert thread.other_participant(buyer.userID).userID == seller.userID
    assert isinstance(thread.participant(seller.userID), ThreadParticipant)
    assert thread.participant(12345) is None
