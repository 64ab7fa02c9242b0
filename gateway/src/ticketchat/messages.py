"""Chat message persistence and lifecycle.

A message is Active until its author deletes it for everyone, which is
terminal: the content is cleared and no further edits are accepted.
Independently, any viewer may hide a message from themselves; that set only
ever grows. Messages are never physically removed.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Tuple

from .clock import now_ms
from .errors import AuthorizationError, MessageDeleted, NotFoundError, ValidationError
from .sqlite_backend import SQLiteBackend


PAGE_SIZE = 50
DELETED_PLACEHOLDER = "This message was deleted"


@dataclass(frozen=True)
class ChatMessage:
    id: str
    event_id: str
    user_address: str
    content: str
    created_at_ms: int
    edited_at_ms: int | None = None
    deleted_at_ms: int | None = None
    deleted_for: FrozenSet[str] = field(default_factory=frozenset)
    reply_to: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at_ms is not None

    def hidden_for(self, viewer: str) -> bool:
        return viewer.lower() in self.deleted_for

    def to_api_dict(self, *, include_deleted_for: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "event_id": self.event_id,
            "user_address": self.user_address,
            "content": self.content,
            "created_at": self.created_at_ms,
            "edited_at": self.edited_at_ms,
            "deleted_at": self.deleted_at_ms,
            "reply_to": self.reply_to,
        }
        if include_deleted_for:
            data["deleted_for"] = sorted(self.deleted_for)
        return data


def _require_author(message: ChatMessage, requester: str, action: str) -> None:
    if message.user_address != requester.lower():
        raise AuthorizationError(f"You can only {action} your own messages")


def _require_editable(message: ChatMessage, requester: str) -> None:
    _require_author(message, requester, "edit")
    if message.is_deleted:
        raise MessageDeleted("Cannot edit a deleted message")


def _new_message_id() -> str:
    return str(uuid.uuid4())


class InMemoryMessageStore:
    def __init__(self, *, now_func: Callable[[], int] = now_ms) -> None:
        self._now = now_func
        self._lock = threading.Lock()
        self._messages: Dict[str, ChatMessage] = {}
        # Ascending by created_at_ms, which is strictly increasing per event.
        self._by_event: Dict[str, List[str]] = {}

    def _next_created_at(self, event_id: str) -> int:
        now = self._now()
        ids = self._by_event.get(event_id)
        if ids:
            return max(now, self._messages[ids[-1]].created_at_ms + 1)
        return now

    def create(self, event_id: str, author: str, content: str, reply_to: str | None = None) -> ChatMessage:
        event_id = event_id.lower()
        with self._lock:
            if reply_to is not None:
                reply_to = reply_to.lower()
                target = self._messages.get(reply_to)
                if target is None or target.event_id != event_id:
                    raise ValidationError("reply_to must reference a message in the same event")
            message = ChatMessage(
                id=_new_message_id(),
                event_id=event_id,
                user_address=author.lower(),
                content=content,
                created_at_ms=self._next_created_at(event_id),
                reply_to=reply_to,
            )
            self._messages[message.id] = message
            self._by_event.setdefault(event_id, []).append(message.id)
            return message

    def get(self, message_id: str) -> ChatMessage | None:
        with self._lock:
            return self._messages.get(message_id.lower())

    def get_many(self, message_ids: Iterable[str]) -> Dict[str, ChatMessage]:
        with self._lock:
            found = (self._messages.get(mid.lower()) for mid in message_ids)
            return {m.id: m for m in found if m is not None}

    def _require(self, message_id: str) -> ChatMessage:
        message = self._messages.get(message_id.lower())
        if message is None:
            raise NotFoundError("Message not found")
        return message

    def edit(self, message_id: str, requester: str, content: str) -> ChatMessage:
        with self._lock:
            message = self._require(message_id)
            _require_editable(message, requester)
            updated = replace(message, content=content, edited_at_ms=self._now())
            self._messages[updated.id] = updated
            return updated

    def delete_for_everyone(self, message_id: str, requester: str) -> ChatMessage:
        with self._lock:
            message = self._require(message_id)
            _require_author(message, requester, "delete")
            if message.is_deleted:
                return message
            updated = replace(message, content="", deleted_at_ms=self._now())
            self._messages[updated.id] = updated
            return updated

    def delete_for_me(self, message_id: str, requester: str) -> ChatMessage:
        with self._lock:
            message = self._require(message_id)
            viewer = requester.lower()
            if viewer in message.deleted_for:
                return message
            updated = replace(message, deleted_for=message.deleted_for | {viewer})
            self._messages[updated.id] = updated
            return updated

    def list_page(
        self,
        event_id: str,
        viewer: str,
        before: int | None = None,
        limit: int = PAGE_SIZE,
    ) -> Tuple[List[ChatMessage], bool]:
        """Return up to ``limit`` messages older than ``before``, oldest first.

        ``has_more`` is true when a full page survived the viewer's own
        deletions; it is a boundary heuristic, not an exact count.
        """

        viewer = viewer.lower()
        with self._lock:
            newest_first: List[ChatMessage] = []
            for message_id in reversed(self._by_event.get(event_id.lower(), [])):
                message = self._messages[message_id]
                if before is not None and message.created_at_ms >= before:
                    continue
                newest_first.append(message)
                if len(newest_first) >= limit:
                    break
        visible = [m for m in newest_first if not m.hidden_for(viewer)]
        visible.reverse()
        return visible, len(visible) == limit

    def last_message(self, event_id: str) -> ChatMessage | None:
        with self._lock:
            ids = self._by_event.get(event_id.lower())
            if not ids:
                return None
            return self._messages[ids[-1]]


_MESSAGE_COLUMNS = "id, event_id, user_address, content, created_at_ms, edited_at_ms, deleted_at_ms, reply_to"


class SQLiteMessageStore:
    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def _deleted_for(self, message_ids: List[str]) -> Dict[str, FrozenSet[str]]:
        if not message_ids:
            return {}
        placeholders = ",".join("?" for _ in message_ids)
        rows = self._backend.connection.execute(
            f"SELECT message_id, user_address FROM chat_message_deletions WHERE message_id IN ({placeholders})",
            message_ids,
        ).fetchall()
        grouped: Dict[str, set[str]] = {}
        for row in rows:
            grouped.setdefault(row[0], set()).add(row[1])
        return {mid: frozenset(addrs) for mid, addrs in grouped.items()}

    def _hydrate(self, rows: List[Any]) -> List[ChatMessage]:
        deletions = self._deleted_for([row["id"] for row in rows])
        return [ChatMessage(**row, deleted_for=deletions.get(row["id"], frozenset())) for row in rows]

    def _fetch(self, message_id: str) -> ChatMessage | None:
        row = self._backend.connection.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM chat_messages WHERE id=?", (message_id.lower(),)
        ).fetchone()
        if row is None:
            return None
        return self._hydrate([row])[0]

    def _require(self, message_id: str) -> ChatMessage:
        message = self._fetch(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        return message

    def create(self, event_id: str, author: str, content: str, reply_to: str | None = None) -> ChatMessage:
        event_id = event_id.lower()
        reply_to = reply_to.lower() if reply_to is not None else None
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                if reply_to is not None:
                    target = cursor.execute(
                        "SELECT event_id FROM chat_messages WHERE id=?", (reply_to,)
                    ).fetchone()
                    if target is None or target[0] != event_id:
                        raise ValidationError("reply_to must reference a message in the same event")
                last = cursor.execute(
                    "SELECT MAX(created_at_ms) FROM chat_messages WHERE event_id=?", (event_id,)
                ).fetchone()[0]
                now = self._now()
                created_at = now if last is None else max(now, last + 1)
                message = ChatMessage(
                    id=_new_message_id(),
                    event_id=event_id,
                    user_address=author.lower(),
                    content=content,
                    created_at_ms=created_at,
                    reply_to=reply_to,
                )
                cursor.execute(
                    f"INSERT INTO chat_messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        message.id,
                        message.event_id,
                        message.user_address,
                        message.content,
                        message.created_at_ms,
                        None,
                        None,
                        message.reply_to,
                    ),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        return message

    def get(self, message_id: str) -> ChatMessage | None:
        with self._backend.lock:
            return self._fetch(message_id)

    def get_many(self, message_ids: Iterable[str]) -> Dict[str, ChatMessage]:
        keys = sorted({mid.lower() for mid in message_ids})
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM chat_messages WHERE id IN ({placeholders})", keys
            ).fetchall()
            messages = self._hydrate(rows)
        return {m.id: m for m in messages}

    def edit(self, message_id: str, requester: str, content: str) -> ChatMessage:
        with self._backend.lock:
            message = self._require(message_id)
            _require_editable(message, requester)
            edited_at = self._now()
            self._backend.connection.execute(
                "UPDATE chat_messages SET content=?, edited_at_ms=? WHERE id=? AND deleted_at_ms IS NULL",
                (content, edited_at, message.id),
            )
        return replace(message, content=content, edited_at_ms=edited_at)

    def delete_for_everyone(self, message_id: str, requester: str) -> ChatMessage:
        with self._backend.lock:
            message = self._require(message_id)
            _require_author(message, requester, "delete")
            if message.is_deleted:
                return message
            deleted_at = self._now()
            self._backend.connection.execute(
                "UPDATE chat_messages SET content='', deleted_at_ms=? WHERE id=? AND deleted_at_ms IS NULL",
                (deleted_at, message.id),
            )
        return replace(message, content="", deleted_at_ms=deleted_at)

    def delete_for_me(self, message_id: str, requester: str) -> ChatMessage:
        viewer = requester.lower()
        with self._backend.lock:
            message = self._require(message_id)
            self._backend.connection.execute(
                "INSERT OR IGNORE INTO chat_message_deletions (message_id, user_address) VALUES (?, ?)",
                (message.id, viewer),
            )
        return replace(message, deleted_for=message.deleted_for | {viewer})

    def list_page(
        self,
        event_id: str,
        viewer: str,
        before: int | None = None,
        limit: int = PAGE_SIZE,
    ) -> Tuple[List[ChatMessage], bool]:
        viewer = viewer.lower()
        params: list[Any] = [event_id.lower()]
        where = "event_id=?"
        if before is not None:
            where += " AND created_at_ms < ?"
            params.append(before)
        params.append(limit)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM chat_messages
                WHERE {where}
                ORDER BY created_at_ms DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
            newest_first = self._hydrate(rows)
        visible = [m for m in newest_first if not m.hidden_for(viewer)]
        visible.reverse()
        return visible, len(visible) == limit

    def last_message(self, event_id: str) -> ChatMessage | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM chat_messages
                WHERE event_id=?
                ORDER BY created_at_ms DESC
                LIMIT 1
                """,
                (event_id.lower(),),
            ).fetchone()
            if row is None:
                return None
            return self._hydrate([row])[0]
