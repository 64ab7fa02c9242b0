"""Request-level chat operations.

Each public coroutine validates its inputs, gates on channel membership and
then talks to the message store. Writes check, in order: membership, the
per-wallet send limit, the content filter, then the store. The first failure
short-circuits the request.

Fan-out to realtime subscribers happens after the write and is best-effort:
a failure there is logged and the request still succeeds.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List

from .access import AccessGate
from .config import ChatConfig
from .content import clean_content
from .directory import Directory, Event, UserProfile
from .errors import AuthorizationError, NotFoundError, ProfileRequired, RateLimitError, UpstreamError, ValidationError
from .hub import INSERT, TYPING, UPDATE, ChannelSignal, SubscriptionHub, topic_for
from .messages import DELETED_PLACEHOLDER, ChatMessage
from .ratelimit import RateLimiter
from .validation import is_valid_address, is_valid_uuid, require_address, short_address


logger = logging.getLogger(__name__)

DELETE_MODES = ("for_everyone", "for_me")


@contextlib.contextmanager
def _datastore(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        logger.exception("datastore failure while trying to %s", action)
        raise UpstreamError(f"Failed to {action}") from exc


def _event_activity_ms(event: Event) -> int:
    if not event.date:
        return 0
    raw = event.date.replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


class ChannelGateway:
    def __init__(
        self,
        *,
        directory: Directory,
        messages,
        access: AccessGate,
        limiter: RateLimiter,
        hub: SubscriptionHub,
        config: ChatConfig | None = None,
    ) -> None:
        self.directory = directory
        self.messages = messages
        self.access = access
        self.limiter = limiter
        self.hub = hub
        self.config = config or ChatConfig()

    def _require_channel_ids(self, event_id: object, wallet: object, label: str = "event_id") -> str:
        if not event_id or not wallet:
            raise ValidationError(f"{label} and user_address are required")
        if not is_valid_uuid(event_id) or not is_valid_address(wallet):
            raise ValidationError(f"Invalid {label} or user_address format")
        return str(wallet).lower()

    def _load_event(self, event_id: str) -> Event:
        with _datastore("load event"):
            event = self.directory.get_event(event_id)
        if event is None or not event.is_deployed:
            raise NotFoundError("Event not found or contract not deployed")
        return event

    async def open_channel(self, event_id: object, wallet: object, *, action: str = "access this chat") -> Event:
        """Validate ids, load the event and require membership."""

        wallet = self._require_channel_ids(event_id, wallet)
        event = self._load_event(str(event_id))
        if not await self.access.is_member(event, wallet):
            raise AuthorizationError(f"You must hold a ticket to {action}")
        return event

    async def list_messages(self, event_id: object, viewer: object, before: int | None = None) -> Dict[str, Any]:
        event = await self.open_channel(event_id, viewer)
        with _datastore("fetch messages"):
            page, has_more = self.messages.list_page(
                event.id, str(viewer), before=before, limit=self.config.page_size
            )
            enriched = self._enrich(page)
        return {"messages": enriched, "hasMore": has_more}

    async def send_message(
        self,
        event_id: object,
        wallet: object,
        content: object,
        reply_to: object = None,
    ) -> Dict[str, Any]:
        if not event_id or not wallet or not isinstance(content, str) or not content.strip():
            raise ValidationError("event_id, user_address, and content are required")
        author = self._require_channel_ids(event_id, wallet)
        if reply_to and not is_valid_uuid(reply_to):
            raise ValidationError("Invalid reply_to format")

        event = await self.open_channel(event_id, author, action="send messages")
        if not self.limiter.allow(author):
            raise RateLimitError("Too many messages. Please wait a moment.")
        cleaned = clean_content(content, max_len=self.config.max_content_len)

        with _datastore("send message"):
            if self.directory.get_profile(author) is None:
                raise ProfileRequired("User not found. Please sign in first.")
            message = self.messages.create(event.id, author, cleaned, reply_to=str(reply_to) if reply_to else None)
            enriched = self._enrich([message])[0]

        self._publish(ChannelSignal(topic=topic_for(event.id), kind=INSERT, body=enriched))
        return {"message": enriched}

    async def edit_message(self, message_id: object, wallet: object, content: object) -> Dict[str, Any]:
        if not message_id or not wallet or not isinstance(content, str) or not content.strip():
            raise ValidationError("message_id, user_address, and content are required")
        editor = self._require_channel_ids(message_id, wallet, label="message_id")
        cleaned = clean_content(content, max_len=self.config.max_content_len)

        with _datastore("edit message"):
            message = self.messages.edit(str(message_id), editor, cleaned)
            enriched = self._enrich([message])[0]

        self._publish(self._update_signal(message))
        return {"message": enriched}

    async def delete_message(self, message_id: object, wallet: object, mode: object) -> Dict[str, Any]:
        if not message_id or not wallet or not mode:
            raise ValidationError("message_id, user_address, and mode are required")
        requester = self._require_channel_ids(message_id, wallet, label="message_id")
        if mode not in DELETE_MODES:
            raise ValidationError("mode must be 'for_everyone' or 'for_me'")

        with _datastore("delete message"):
            if mode == "for_everyone":
                message = self.messages.delete_for_everyone(str(message_id), requester)
            else:
                message = self.messages.delete_for_me(str(message_id), requester)

        self._publish(self._update_signal(message))
        return {"success": True, "mode": mode}

    async def list_memberships(self, wallet: object) -> Dict[str, Any]:
        address = require_address(wallet, "Valid user_address is required")
        with _datastore("fetch chat events"):
            organized = self.directory.events_organized_by(address)
            holding = self.directory.events_with_tickets_owned_by(address)

            seen: set[str] = set()
            entries: List[tuple[int, Dict[str, Any]]] = []
            for event in [*organized, *holding]:
                if event.id in seen:
                    continue
                seen.add(event.id)
                last = self.messages.last_message(event.id)
                entry = event.to_api_dict()
                entry["isOrganizer"] = event.organizer_address == address
                entry["lastMessage"] = (
                    {"content": last.content, "created_at": last.created_at_ms, "user_address": last.user_address}
                    if last is not None
                    else None
                )
                activity = last.created_at_ms if last is not None else _event_activity_ms(event)
                entries.append((activity, entry))

        entries.sort(key=lambda item: item[0], reverse=True)
        return {"events": [entry for _, entry in entries]}

    def broadcast_typing(self, event: Event, wallet: str, name: str | None = None) -> None:
        wallet = wallet.lower()
        label = name or short_address(wallet)
        self._publish(
            ChannelSignal(
                topic=topic_for(event.id),
                kind=TYPING,
                body={"user_address": wallet, "name": label, "ttl_ms": self.config.typing_ttl_s * 1000},
            )
        )

    def _update_signal(self, message: ChatMessage) -> ChannelSignal:
        return ChannelSignal(
            topic=topic_for(message.event_id),
            kind=UPDATE,
            body=message.to_api_dict(include_deleted_for=True),
        )

    def _publish(self, signal: ChannelSignal) -> None:
        try:
            self.hub.broadcast(signal)
        except Exception:
            logger.exception("realtime fan-out of %s on %s failed", signal.kind, signal.topic)

    def _enrich(self, messages: Iterable[ChatMessage]) -> List[Dict[str, Any]]:
        """Attach author profiles and resolve reply targets as of now."""

        messages = list(messages)
        reply_ids = {m.reply_to for m in messages if m.reply_to}
        targets = self.messages.get_many(reply_ids) if reply_ids else {}
        addresses = {m.user_address for m in messages} | {t.user_address for t in targets.values()}
        profiles = self.directory.get_profiles(addresses)

        enriched: List[Dict[str, Any]] = []
        for message in messages:
            data = message.to_api_dict()
            data["user"] = _profile_dict(profiles, message.user_address)
            data["reply_to_message"] = None
            target = targets.get(message.reply_to) if message.reply_to else None
            if target is not None:
                data["reply_to_message"] = {
                    "id": target.id,
                    "content": DELETED_PLACEHOLDER if target.is_deleted else target.content,
                    "user_address": target.user_address,
                    "user": _profile_dict(profiles, target.user_address),
                }
            enriched.append(data)
        return enriched


def _profile_dict(profiles: Dict[str, UserProfile], address: str) -> Dict[str, Any] | None:
    profile = profiles.get(address)
    return profile.to_api_dict() if profile is not None else None
