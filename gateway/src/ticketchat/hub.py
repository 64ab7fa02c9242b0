from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List


logger = logging.getLogger(__name__)

INSERT = "chat.insert"
UPDATE = "chat.update"
TYPING = "chat.typing"
PRESENCE_SYNC = "presence.sync"


def topic_for(event_id: str) -> str:
    return f"chat-room:{event_id.lower()}"


@dataclass(frozen=True)
class ChannelSignal:
    """One frame on an event channel topic."""

    topic: str
    kind: str
    body: Dict[str, Any] = field(default_factory=dict)

    def to_frame(self) -> Dict[str, Any]:
        return {"v": 1, "t": self.kind, "topic": self.topic, "body": self.body}


Callback = Callable[[ChannelSignal], None]


@dataclass
class Subscription:
    wallet: str
    topic: str
    callback: Callback

    def deliver(self, signal: ChannelSignal) -> None:
        self.callback(signal)


class SubscriptionHub:
    """Registers subscriptions and broadcasts signals to all listeners of a topic."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, wallet: str, topic: str, callback: Callback) -> Subscription:
        subscription = Subscription(wallet=wallet.lower(), topic=topic, callback=callback)
        self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic, None)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))

    def broadcast(self, signal: ChannelSignal) -> None:
        for subscription in list(self._subscriptions.get(signal.topic, [])):
            try:
                subscription.deliver(signal)
            except Exception:
                # Remaining subscribers still receive the signal.
                logger.exception("delivery to %s on %s failed", subscription.wallet, signal.topic)
