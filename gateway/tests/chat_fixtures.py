from __future__ import annotations

from typing import Dict, List, Tuple

from ticketchat.access import AccessGate, InMemoryAccessCache
from ticketchat.chain import ChainError, Listing
from ticketchat.config import ChatConfig
from ticketchat.directory import Event, InMemoryDirectory, SQLiteDirectory, UserProfile
from ticketchat.gateway import ChannelGateway
from ticketchat.hub import SubscriptionHub
from ticketchat.messages import InMemoryMessageStore, SQLiteMessageStore
from ticketchat.ratelimit import FixedWindowRateLimiter
from ticketchat.sqlite_backend import SQLiteBackend


CHAIN_ID = 127823
EVENT_ID = "6f1c2d3e-4a5b-4c6d-8e9f-0a1b2c3d4e5f"
OTHER_EVENT_ID = "0b9a8c7d-6e5f-4a3b-9c2d-1e0f2a3b4c5d"
UNDEPLOYED_EVENT_ID = "11111111-2222-4333-8444-555555555555"
CONTRACT = "0x" + "ab" * 20
OTHER_CONTRACT = "0x" + "cd" * 20
ORGANIZER = "0x" + "01" * 20
HOLDER = "0x" + "02" * 20
SELLER = "0x" + "03" * 20
STRANGER = "0x" + "04" * 20
NO_PROFILE_HOLDER = "0x" + "05" * 20
CURRENCY = "0x" + "00" * 20


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class FakeChain:
    """In-process stand-in for the two contract reads."""

    def __init__(self) -> None:
        self.balances: Dict[Tuple[int, str, str], int] = {}
        self.listings: Dict[Tuple[int, str], List[Listing]] = {}
        self.failing = False
        self.balance_calls = 0
        self.listing_calls = 0

    def give_ticket(self, wallet: str, contract: str = CONTRACT, chain_id: int = CHAIN_ID, count: int = 1) -> None:
        self.balances[(chain_id, contract.lower(), wallet.lower())] = count

    def list_ticket(
        self,
        wallet: str,
        contract: str = CONTRACT,
        chain_id: int = CHAIN_ID,
        *,
        active: bool = True,
    ) -> None:
        listing = Listing(
            listing_id=len(self.listings) + 1,
            token_id=7,
            nft_address=contract.lower(),
            seller=wallet.lower(),
            currency=CURRENCY,
            price=10**18,
            created_at=1_700_000_000,
            active=active,
        )
        self.listings.setdefault((chain_id, wallet.lower()), []).append(listing)

    async def token_balance(self, chain_id: int, contract_address: str, wallet: str) -> int:
        self.balance_calls += 1
        if self.failing:
            raise ChainError("rpc unreachable")
        return self.balances.get((chain_id, contract_address.lower(), wallet.lower()), 0)

    async def listings_by_seller(self, chain_id: int, wallet: str) -> List[Listing]:
        self.listing_calls += 1
        if self.failing:
            raise ChainError("rpc unreachable")
        return list(self.listings.get((chain_id, wallet.lower()), []))


def sample_event(event_id: str = EVENT_ID, **overrides) -> Event:
    fields = {
        "id": event_id,
        "name": "Launch Night",
        "organizer_address": ORGANIZER,
        "contract_address": CONTRACT,
        "chain_id": CHAIN_ID,
        "date": "2030-05-01T20:00:00Z",
        "image_url": "https://img.example/launch.png",
    }
    fields.update(overrides)
    return Event(**fields)


def seed_directory(directory) -> None:
    directory.upsert_event(sample_event())
    directory.upsert_event(
        sample_event(OTHER_EVENT_ID, name="Afterparty", contract_address=OTHER_CONTRACT, date="2030-06-01T20:00:00Z")
    )
    directory.upsert_event(sample_event(UNDEPLOYED_EVENT_ID, name="Draft", contract_address=None))
    directory.upsert_profile(UserProfile(ORGANIZER, username="host", name="Host"))
    directory.upsert_profile(UserProfile(HOLDER, username="holder", name="Holder"))
    directory.upsert_profile(UserProfile(SELLER, username="seller", name=None))
    directory.upsert_profile(UserProfile(STRANGER, username="stranger", name="Stranger"))


def seed_chain(chain: FakeChain) -> None:
    chain.give_ticket(HOLDER)
    chain.give_ticket(NO_PROFILE_HOLDER)
    chain.list_ticket(SELLER)


def build_gateway(
    clock: FakeClock,
    chain: FakeChain,
    *,
    sqlite: bool = False,
    config: ChatConfig | None = None,
):
    """Return ``(gateway, directory, hub, backend)`` wired to fakes."""

    config = config or ChatConfig()
    backend = None
    if sqlite:
        backend = SQLiteBackend(":memory:")
        directory = SQLiteDirectory(backend)
        messages = SQLiteMessageStore(backend, now_func=clock.now)
    else:
        directory = InMemoryDirectory()
        messages = InMemoryMessageStore(now_func=clock.now)
    seed_directory(directory)
    hub = SubscriptionHub()
    gateway = ChannelGateway(
        directory=directory,
        messages=messages,
        access=AccessGate(chain, InMemoryAccessCache(config.access_cache_ttl_ms, now_func=clock.now)),
        limiter=FixedWindowRateLimiter(config.sends_per_window, config.rate_window_ms, now_func=clock.now),
        hub=hub,
        config=config,
    )
    return gateway, directory, hub, backend
