"""Token-gated event chat gateway."""

from .access import AccessDecision, AccessGate, InMemoryAccessCache
from .gateway import ChannelGateway
from .hub import ChannelSignal, Subscription, SubscriptionHub
from .messages import ChatMessage, InMemoryMessageStore, SQLiteMessageStore
from .reconciler import RealtimeReconciler
from .server import main

__all__ = [
    "AccessDecision",
    "AccessGate",
    "InMemoryAccessCache",
    "ChannelGateway",
    "ChannelSignal",
    "Subscription",
    "SubscriptionHub",
    "ChatMessage",
    "InMemoryMessageStore",
    "SQLiteMessageStore",
    "RealtimeReconciler",
    "main",
]
