"""
New-message notification contract.

The messaging core only persists and decrypts; how clients learn about new
rows (polling, a websocket relay, ...) is decided by whoever subscribes here.
"""
from __future__ import annotations

import logging
from typing import Callable

import requests

logger = logging.getLogger(__name__)

Subscriber = Callable[[int, dict], None]


class MessageSubscribers:
    """Ordered set of callbacks invoked after a message row is committed."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback(receiver_id, message_dict)``; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, receiver_id: int, message: dict) -> None:
        for callback in list(self._subscribers):
            try:
                callback(receiver_id, message)
            except Exception:
                # The row is already committed; a broken subscriber must not undo the send.
                logger.warning("Message subscriber %r failed", callback, exc_info=True)

    def __call__(self, receiver_id: int, message: dict) -> None:
        self.publish(receiver_id, message)

    def __len__(self) -> int:
        return len(self._subscribers)


class RelaySubscriber:
    """Forward new-message events to the websocket relay over HTTP."""

    def __init__(self, base_url: str, token: str, timeout: float = 2) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _post(self, path: str, payload: dict) -> None:
        try:
            response = requests.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"X-Relay-Token": self.token},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Relay call to %s failed: %s", path, exc)

    def __call__(self, receiver_id: int, message: dict) -> None:
        self._post("/relay/message", {"receiverId": receiver_id, "message": message})

    def __repr__(self) -> str:
        return f"RelaySubscriber({self.base_url!r})"


__all__ = ["MessageSubscribers", "RelaySubscriber", "Subscriber"]
