import pytest
import requests

from carswipe import create_app
from carswipe.conftest import InMemoryConfig
from carswipe.relay import MessageSubscribers, RelaySubscriber


class _Response:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


def test_relay_posts_message_event(monkeypatch):
    calls = []

    def fake_post(url, json, headers, timeout):
        calls.append((url, json, headers, timeout))
        return _Response()

    monkeypatch.setattr(requests, "post", fake_post)
    RelaySubscriber("http://relay.local/", "secret-token")(5, {"id": 1})

    assert calls == [(
        "http://relay.local/relay/message",
        {"receiverId": 5, "message": {"id": 1}},
        {"X-Relay-Token": "secret-token"},
        2,
    )]


@pytest.mark.parametrize("failure", [requests.ConnectionError("down"), None])
def test_relay_failures_are_swallowed(monkeypatch, failure):
    def fake_post(*args, **kwargs):
        if failure is not None:
            raise failure
        return _Response(503)

    monkeypatch.setattr(requests, "post", fake_post)
    RelaySubscriber("http://relay.local", "t")(5, {"id": 1})


def test_subscribers_run_in_order_and_unsubscribe():
    subscribers = MessageSubscribers()
    seen = []
    subscribers.subscribe(lambda receiver_id, message: seen.append(("first", receiver_id)))
    unsubscribe = subscribers.subscribe(lambda receiver_id, message: seen.append(("second", receiver_id)))

    subscribers(3, {})
    unsubscribe()
    unsubscribe()
    subscribers(4, {})

    assert seen == [("first", 3), ("second", 3), ("first", 4)]
    assert len(subscribers) == 1


def test_relay_is_registered_only_when_configured():
    class RelayConfig(InMemoryConfig):
        RELAY_API_URL = "http://relay.local"

    with_relay = create_app(RelayConfig)
    without_relay = create_app(InMemoryConfig)

    assert len(with_relay.extensions["carswipe.subscribers"]) == 1
    assert len(without_relay.extensions["carswipe.subscribers"]) == 0
