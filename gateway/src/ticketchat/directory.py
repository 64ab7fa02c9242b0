"""Read-only views of storefront records the chat depends on.

Events, user profiles and ticket-ownership rows are owned by other parts of
the storefront. The chat only reads them; the ``upsert``/``add`` methods exist
so deployments and tests can seed a local copy.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Protocol

from .sqlite_backend import SQLiteBackend


PUBLISHED = "published"


@dataclass(frozen=True)
class Event:
    id: str
    name: str
    organizer_address: str
    contract_address: str | None
    chain_id: int
    date: str | None = None
    image_url: str | None = None
    status: str = PUBLISHED

    @property
    def is_deployed(self) -> bool:
        return bool(self.contract_address)

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "image_url": self.image_url,
            "organizer_address": self.organizer_address,
            "contract_address": self.contract_address,
            "chain_id": self.chain_id,
            "date": self.date,
        }


@dataclass(frozen=True)
class UserProfile:
    wallet_address: str
    username: str | None = None
    name: str | None = None
    avatar_url: str | None = None

    def to_api_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TicketRecord:
    event_contract_address: str
    token_id: str
    owner_address: str
    event_id: str | None = None


class Directory(Protocol):
    def get_event(self, event_id: str) -> Event | None:
        ...

    def events_organized_by(self, wallet: str) -> List[Event]:
        ...

    def events_with_tickets_owned_by(self, wallet: str) -> List[Event]:
        ...

    def get_profile(self, wallet: str) -> UserProfile | None:
        ...

    def get_profiles(self, wallets: Iterable[str]) -> Dict[str, UserProfile]:
        ...


def _normalize_event(event: Event) -> Event:
    return Event(
        id=event.id.lower(),
        name=event.name,
        organizer_address=event.organizer_address.lower(),
        contract_address=event.contract_address.lower() if event.contract_address else None,
        chain_id=event.chain_id,
        date=event.date,
        image_url=event.image_url,
        status=event.status,
    )


def _listable(event: Event) -> bool:
    return event.status == PUBLISHED and event.is_deployed


class InMemoryDirectory:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: Dict[str, Event] = {}
        self._profiles: Dict[str, UserProfile] = {}
        self._tickets: Dict[tuple[str, str], TicketRecord] = {}

    def upsert_event(self, event: Event) -> Event:
        event = _normalize_event(event)
        with self._lock:
            self._events[event.id] = event
        return event

    def upsert_profile(self, profile: UserProfile) -> UserProfile:
        profile = UserProfile(
            wallet_address=profile.wallet_address.lower(),
            username=profile.username,
            name=profile.name,
            avatar_url=profile.avatar_url,
        )
        with self._lock:
            self._profiles[profile.wallet_address] = profile
        return profile

    def add_ticket(self, ticket: TicketRecord) -> None:
        key = (ticket.event_contract_address.lower(), ticket.token_id)
        with self._lock:
            self._tickets[key] = TicketRecord(
                event_contract_address=key[0],
                token_id=ticket.token_id,
                owner_address=ticket.owner_address.lower(),
                event_id=ticket.event_id.lower() if ticket.event_id else None,
            )

    def get_event(self, event_id: str) -> Event | None:
        with self._lock:
            return self._events.get(event_id.lower())

    def events_organized_by(self, wallet: str) -> List[Event]:
        wallet = wallet.lower()
        with self._lock:
            return [e for e in self._events.values() if e.organizer_address == wallet and _listable(e)]

    def events_with_tickets_owned_by(self, wallet: str) -> List[Event]:
        wallet = wallet.lower()
        with self._lock:
            event_ids = {
                t.event_id for t in self._tickets.values() if t.owner_address == wallet and t.event_id
            }
            return [self._events[eid] for eid in event_ids if eid in self._events and _listable(self._events[eid])]

    def get_profile(self, wallet: str) -> UserProfile | None:
        with self._lock:
            return self._profiles.get(wallet.lower())

    def get_profiles(self, wallets: Iterable[str]) -> Dict[str, UserProfile]:
        with self._lock:
            found: Dict[str, UserProfile] = {}
            for wallet in wallets:
                profile = self._profiles.get(wallet.lower())
                if profile is not None:
                    found[profile.wallet_address] = profile
            return found


_EVENT_COLUMNS = "id, name, organizer_address, contract_address, chain_id, date, image_url, status"


class SQLiteDirectory:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def upsert_event(self, event: Event) -> Event:
        event = _normalize_event(event)
        with self._backend.lock:
            self._backend.connection.execute(
                f"""
                INSERT INTO events ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    organizer_address=excluded.organizer_address,
                    contract_address=excluded.contract_address,
                    chain_id=excluded.chain_id,
                    date=excluded.date,
                    image_url=excluded.image_url,
                    status=excluded.status
                """,
                (
                    event.id,
                    event.name,
                    event.organizer_address,
                    event.contract_address,
                    event.chain_id,
                    event.date,
                    event.image_url,
                    event.status,
                ),
            )
        return event

    def upsert_profile(self, profile: UserProfile) -> UserProfile:
        wallet = profile.wallet_address.lower()
        with self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT INTO users (wallet_address, username, name, avatar_url) VALUES (?, ?, ?, ?)
                ON CONFLICT(wallet_address) DO UPDATE SET
                    username=excluded.username, name=excluded.name, avatar_url=excluded.avatar_url
                """,
                (wallet, profile.username, profile.name, profile.avatar_url),
            )
        return UserProfile(wallet, profile.username, profile.name, profile.avatar_url)

    def add_ticket(self, ticket: TicketRecord) -> None:
        with self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT OR REPLACE INTO user_tickets (event_contract_address, token_id, event_id, owner_address)
                VALUES (?, ?, ?, ?)
                """,
                (
                    ticket.event_contract_address.lower(),
                    ticket.token_id,
                    ticket.event_id.lower() if ticket.event_id else None,
                    ticket.owner_address.lower(),
                ),
            )

    def get_event(self, event_id: str) -> Event | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE id=?", (event_id.lower(),)
            ).fetchone()
        if row is None:
            return None
        return Event(**row)

    def events_organized_by(self, wallet: str) -> List[Event]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_EVENT_COLUMNS} FROM events
                WHERE organizer_address=? AND status=? AND contract_address IS NOT NULL
                """,
                (wallet.lower(), PUBLISHED),
            ).fetchall()
        return [Event(**row) for row in rows]

    def events_with_tickets_owned_by(self, wallet: str) -> List[Event]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_EVENT_COLUMNS} FROM events
                WHERE id IN (
                    SELECT DISTINCT event_id FROM user_tickets
                    WHERE owner_address=? AND event_id IS NOT NULL
                )
                AND status=? AND contract_address IS NOT NULL
                """,
                (wallet.lower(), PUBLISHED),
            ).fetchall()
        return [Event(**row) for row in rows]

    def get_profile(self, wallet: str) -> UserProfile | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT wallet_address, username, name, avatar_url FROM users WHERE wallet_address=?",
                (wallet.lower(),),
            ).fetchone()
        if row is None:
            return None
        return UserProfile(**row)

    def get_profiles(self, wallets: Iterable[str]) -> Dict[str, UserProfile]:
        keys = sorted({w.lower() for w in wallets})
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT wallet_address, username, name, avatar_url FROM users WHERE wallet_address IN ({placeholders})",
                keys,
            ).fetchall()
        return {row["wallet_address"]: UserProfile(**row) for row in rows}
