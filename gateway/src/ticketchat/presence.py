from __future__ import annotations

import threading
from typing import Dict, List, Set

from .hub import PRESENCE_SYNC, ChannelSignal, SubscriptionHub


class ChannelPresence:
    """Tracks which wallets are connected to each channel topic.

    A wallet may hold several connections (tabs, devices); it is online while
    at least one of them is registered. Every change publishes a
    ``presence.sync`` signal carrying the full online set.
    """

    def __init__(self, hub: SubscriptionHub) -> None:
        self._hub = hub
        self._lock = threading.Lock()
        self._members: Dict[str, Dict[str, Set[str]]] = {}

    def join(self, topic: str, wallet: str, connection_id: str) -> bool:
        """Register a connection; return True when the wallet came online.

        When False, no ``presence.sync`` went out and the caller should hand
        the joining connection a ``snapshot``.
        """

        wallet = wallet.lower()
        with self._lock:
            roster = self._members.setdefault(topic, {})
            connections = roster.setdefault(wallet, set())
            changed = not connections
            connections.add(connection_id)
        if changed:
            self._sync(topic)
        return changed

    def leave(self, topic: str, wallet: str, connection_id: str) -> None:
        wallet = wallet.lower()
        changed = False
        with self._lock:
            roster = self._members.get(topic)
            if roster is None:
                return
            connections = roster.get(wallet)
            if connections is None:
                return
            connections.discard(connection_id)
            if not connections:
                roster.pop(wallet, None)
                changed = True
            if not roster:
                self._members.pop(topic, None)
        if changed:
            self._sync(topic)

    def online(self, topic: str) -> List[str]:
        with self._lock:
            return sorted(self._members.get(topic, {}).keys())

    def online_count(self, topic: str) -> int:
        with self._lock:
            return len(self._members.get(topic, {}))

    def snapshot(self, topic: str) -> ChannelSignal:
        online = self.online(topic)
        return ChannelSignal(topic=topic, kind=PRESENCE_SYNC, body={"online": online, "count": len(online)})

    def _sync(self, topic: str) -> None:
        self._hub.broadcast(self.snapshot(topic))
