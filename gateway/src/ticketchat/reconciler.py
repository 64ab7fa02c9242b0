"""Client-side view of one event channel.

The reconciler owns the list a client renders. It merges three sources: the
paged history returned by ``GET /v1/chat``, the client's own optimistic sends,
and the server's change stream (``chat.insert``, ``chat.update``,
``chat.typing`` and ``presence.sync`` frames). It has no I/O of its own; a
websocket loop, a TUI or a test feeds it frames and reads its state.
"""

from __future__ import annotations

import itertools
import time
from typing import Any, Callable, Dict, List, Tuple

from .clock import now_ms
from .hub import INSERT, PRESENCE_SYNC, TYPING, UPDATE
from .messages import DELETED_PLACEHOLDER
from .validation import short_address


TYPING_TTL_MS = 3000
TEMP_PREFIX = "temp-"


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class RealtimeReconciler:
    def __init__(
        self,
        wallet: str,
        *,
        typing_ttl_ms: int = TYPING_TTL_MS,
        now_func: Callable[[], int] = _monotonic_ms,
    ) -> None:
        self.wallet = wallet.lower()
        self.typing_ttl_ms = typing_ttl_ms
        self._now = now_func
        self._messages: List[Dict[str, Any]] = []
        self._typing: Dict[str, Tuple[str, int]] = {}
        self._temp_ids = itertools.count(1)
        self.online_count = 0
        self.online: List[str] = []
        self.errors: List[str] = []

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return [dict(m) for m in self._messages]

    def message_ids(self) -> List[str]:
        return [m["id"] for m in self._messages]

    def _index(self, message_id: str) -> int | None:
        for index, message in enumerate(self._messages):
            if message["id"] == message_id:
                return index
        return None

    def load(self, messages: List[Dict[str, Any]]) -> None:
        """Replace the view with a freshly fetched newest page."""

        self._messages = [dict(m, pending=False) for m in messages]

    def prepend_older(self, messages: List[Dict[str, Any]]) -> None:
        known = set(self.message_ids())
        older = [dict(m, pending=False) for m in messages if m["id"] not in known]
        self._messages = older + self._messages

    def oldest_cursor(self) -> int | None:
        for message in self._messages:
            if not message.get("pending"):
                return message["created_at"]
        return None

    # Optimistic sends

    def begin_send(
        self,
        event_id: str,
        content: str,
        *,
        reply_to: Dict[str, Any] | None = None,
        user: Dict[str, Any] | None = None,
    ) -> str:
        temp_id = f"{TEMP_PREFIX}{next(self._temp_ids)}"
        self._messages.append(
            {
                "id": temp_id,
                "event_id": event_id,
                "user_address": self.wallet,
                "content": content,
                "created_at": None,
                "edited_at": None,
                "deleted_at": None,
                "reply_to": reply_to["id"] if reply_to else None,
                "reply_to_message": (
                    {
                        "id": reply_to["id"],
                        "content": reply_to.get("content", ""),
                        "user_address": reply_to.get("user_address"),
                        "user": reply_to.get("user"),
                    }
                    if reply_to
                    else None
                ),
                "user": user,
                "pending": True,
            }
        )
        return temp_id

    def confirm_send(self, temp_id: str, message: Dict[str, Any]) -> None:
        index = self._index(temp_id)
        confirmed = dict(message, pending=False)
        if index is None:
            if self._index(message["id"]) is None:
                self._messages.append(confirmed)
            return
        if self._index(message["id"]) is not None:
            del self._messages[index]
            return
        self._messages[index] = confirmed

    def fail_send(self, temp_id: str, error: str) -> None:
        index = self._index(temp_id)
        if index is not None:
            del self._messages[index]
        self.errors.append(error)

    # Confirmed local mutations

    def apply_edit_confirmed(self, message: Dict[str, Any]) -> None:
        index = self._index(message["id"])
        if index is None:
            return
        current = self._messages[index]
        current["content"] = message["content"]
        current["edited_at"] = message.get("edited_at")

    def apply_local_delete(self, message_id: str, mode: str) -> None:
        index = self._index(message_id)
        if index is None:
            return
        if mode == "for_me":
            del self._messages[index]
            return
        current = self._messages[index]
        current["content"] = ""
        current["deleted_at"] = current.get("deleted_at") or now_ms()
        self._refresh_reply_previews(message_id)

    # Server change stream

    def handle_frame(self, frame: Dict[str, Any]) -> None:
        kind = frame.get("t")
        body = frame.get("body") or {}
        if kind == INSERT:
            self.apply_insert(body)
        elif kind == UPDATE:
            self.apply_update(body)
        elif kind == TYPING:
            self.apply_typing(body)
        elif kind == PRESENCE_SYNC:
            self.apply_presence(body)

    def apply_insert(self, message: Dict[str, Any]) -> bool:
        if str(message.get("user_address", "")).lower() == self.wallet:
            return False
        if self._index(message["id"]) is not None:
            return False
        inserted = dict(message, pending=False)
        reply_to = inserted.get("reply_to")
        if reply_to and not inserted.get("reply_to_message"):
            target_index = self._index(reply_to)
            if target_index is not None:
                inserted["reply_to_message"] = self._reply_preview(self._messages[target_index])
        self._messages.append(inserted)
        return True

    def apply_update(self, update: Dict[str, Any]) -> None:
        index = self._index(update["id"])
        if index is None:
            return
        current = self._messages[index]
        if update.get("deleted_at"):
            current["content"] = ""
            current["deleted_at"] = update["deleted_at"]
        else:
            current["content"] = update.get("content", current["content"])
        current["edited_at"] = update.get("edited_at")
        deleted_for = [str(w).lower() for w in update.get("deleted_for") or []]
        if self.wallet in deleted_for:
            del self._messages[index]
            return
        self._refresh_reply_previews(update["id"])

    def apply_typing(self, body: Dict[str, Any]) -> None:
        typer = str(body.get("user_address") or "").lower()
        if not typer or typer == self.wallet:
            return
        label = body.get("name") or short_address(typer)
        ttl_ms = body.get("ttl_ms") or self.typing_ttl_ms
        self._typing[typer] = (label, self._now() + int(ttl_ms))

    def typing_labels(self) -> List[str]:
        now = self._now()
        self._typing = {typer: entry for typer, entry in self._typing.items() if entry[1] > now}
        return sorted(label for label, _ in self._typing.values())

    def apply_presence(self, body: Dict[str, Any]) -> None:
        self.online = list(body.get("online") or [])
        self.online_count = int(body.get("count", len(self.online)))

    def _reply_preview(self, target: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": target["id"],
            "content": DELETED_PLACEHOLDER if target.get("deleted_at") else target.get("content", ""),
            "user_address": target.get("user_address"),
            "user": target.get("user"),
        }

    def _refresh_reply_previews(self, target_id: str) -> None:
        index = self._index(target_id)
        if index is None:
            return
        preview = self._reply_preview(self._messages[index])
        for message in self._messages:
            if message.get("reply_to") == target_id and message.get("reply_to_message"):
                message["reply_to_message"] = preview
