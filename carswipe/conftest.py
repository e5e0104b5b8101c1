from __future__ import annotations

from datetime import datetime

import pytest
from flask_jwt_extended import create_access_token

from carswipe import create_app
from carswipe.config import Config
from carswipe.database import db
from carswipe.encryption.key_pair import generate_key_pair
from carswipe.key_store import KeyMaterialStore
from carswipe.message_flow import ThreadMessageFlow
from carswipe.models import Listing, MessageThread, ThreadParticipant, User


class InMemoryConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test-secret-key-that-is-long-enough-for-hs256"
    JWT_SECRET_KEY = SECRET_KEY
    KEY_ENCRYPTION_SECRET = "test-key-encryption-secret"
    KEY_DERIVATION_ITERATIONS = 1000
    RELAY_API_URL = ""


@pytest.fixture
def app():
    app = create_app(InMemoryConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def key_store(app):
    return KeyMaterialStore()


@pytest.fixture
def flow(key_store):
    return ThreadMessageFlow(key_store=key_store)


@pytest.fixture
def make_user(key_store):
    def _make_user(email: str, with_keys: bool = True, name: str | None = None):
        user = User(email=email, password="not-a-real-hash", name=name)
        db.session.add(user)
        db.session.flush()
        key_pair = None
        if with_keys:
            key_pair = generate_key_pair()
            key_store.store_key_pair(user.userID, key_pair)
        db.session.commit()
        return user, key_pair

    return _make_user


@pytest.fixture
def alice(make_user):
    return make_user("alice@example.com", name="Alice")


@pytest.fixture
def bob(make_user):
    return make_user("bob@example.com", name="Bob")


@pytest.fixture
def listing(bob):
    seller, _ = bob
    car = Listing(sellerID=seller.userID, make="Mazda", model="MX-5", year=2019, price=21500)
    db.session.add(car)
    db.session.commit()
    return car


@pytest.fixture
def thread(alice, bob, listing):
    buyer, _ = alice
    seller, _ = bob
    conversation = MessageThread(
        listingID=listing.listingID, buyerID=buyer.userID, updated_at=datetime(2024, 1, 1)
    )
    conversation.participants = [
        ThreadParticipant(userID=buyer.userID),
        ThreadParticipant(userID=seller.userID),
    ]
    db.session.add(conversation)
    db.session.commit()
    return conversation


@pytest.fixture
def auth_headers(app):
    def _headers(user: User) -> dict[str, str]:
        token = create_access_token(identity=str(user.userID))
        return {"Authorization": f"Bearer {token}"}

    return _headers
