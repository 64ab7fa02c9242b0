"""Read-only blockchain calls used by the access gate.

Only two contract reads are needed: ERC-721 ``balanceOf(address)`` on the
event's ticket contract and ``getListingsBySeller(address)`` on the shared
resale marketplace. Both go out as plain JSON-RPC ``eth_call`` requests.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

import aiohttp


logger = logging.getLogger(__name__)

BALANCE_OF_SELECTOR = "70a08231"
GET_LISTINGS_BY_SELLER_SELECTOR = "d8cba251"
_WORD_HEX = 64
_LISTING_WORDS = 8


class ChainError(Exception):
    """An RPC call failed or returned something undecodable."""


@dataclass(frozen=True)
class Listing:
    listing_id: int
    token_id: int
    nft_address: str
    seller: str
    currency: str
    price: int
    created_at: int
    active: bool


class ChainReader(Protocol):
    async def token_balance(self, chain_id: int, contract_address: str, wallet: str) -> int:
        ...

    async def listings_by_seller(self, chain_id: int, wallet: str) -> List[Listing]:
        ...


def encode_address_call(selector: str, address: str) -> str:
    raw = address.lower()
    if raw.startswith("0x"):
        raw = raw[2:]
    if len(raw) != 40:
        raise ValueError("address must be 20 bytes")
    return "0x" + selector + raw.rjust(_WORD_HEX, "0")


def _words(result: str) -> List[str]:
    payload = result[2:] if result.startswith("0x") else result
    if not payload or len(payload) % _WORD_HEX != 0:
        raise ChainError("malformed eth_call result")
    return [payload[i : i + _WORD_HEX] for i in range(0, len(payload), _WORD_HEX)]


def _word_to_address(word: str) -> str:
    return "0x" + word[-40:].lower()


def decode_uint256(result: str) -> int:
    words = _words(result)
    return int(words[0], 16)


def decode_listings(result: str) -> List[Listing]:
    """Decode a ``Listing[]`` return value.

    Every struct member is a static type, so the array body is laid out as
    ``length`` followed by eight words per element.
    """

    words = _words(result)
    offset = int(words[0], 16)
    if offset % 32 != 0:
        raise ChainError("unaligned array offset")
    base = offset // 32
    if base >= len(words):
        raise ChainError("array offset out of range")
    length = int(words[base], 16)
    body = words[base + 1 :]
    if len(body) < length * _LISTING_WORDS:
        raise ChainError("truncated listing array")

    listings: List[Listing] = []
    for index in range(length):
        chunk = body[index * _LISTING_WORDS : (index + 1) * _LISTING_WORDS]
        listings.append(
            Listing(
                listing_id=int(chunk[0], 16),
                token_id=int(chunk[1], 16),
                nft_address=_word_to_address(chunk[2]),
                seller=_word_to_address(chunk[3]),
                currency=_word_to_address(chunk[4]),
                price=int(chunk[5], 16),
                created_at=int(chunk[6], 16),
                active=int(chunk[7], 16) != 0,
            )
        )
    return listings


class JsonRpcChainReader:
    """Issues ``eth_call`` requests over HTTP JSON-RPC, one endpoint per chain."""

    def __init__(
        self,
        rpc_urls: Dict[int, str],
        marketplace_addresses: Dict[int, str],
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._rpc_urls = dict(rpc_urls)
        self._marketplaces = dict(marketplace_addresses)
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _eth_call(self, chain_id: int, to: str, data: str) -> str:
        url = self._rpc_urls.get(chain_id)
        logger.debug("eth_call chain=%s to=%s", chain_id, to)
        if url is None:
            raise ChainError(f"no rpc endpoint configured for chain {chain_id}")
        payload: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "eth_call",
            "params": [{"to": to, "data": data}, "latest"],
        }
        try:
            async with self._client().post(url, json=payload) as response:
                response.raise_for_status()
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise ChainError(f"eth_call to chain {chain_id} failed: {exc}") from exc

        if not isinstance(body, dict):
            raise ChainError("unexpected rpc response")
        if body.get("error") is not None:
            raise ChainError(f"rpc error: {body['error']}")
        result = body.get("result")
        if not isinstance(result, str):
            raise ChainError("rpc response missing result")
        return result

    async def token_balance(self, chain_id: int, contract_address: str, wallet: str) -> int:
        data = encode_address_call(BALANCE_OF_SELECTOR, wallet)
        result = await self._eth_call(chain_id, contract_address, data)
        return decode_uint256(result)

    async def listings_by_seller(self, chain_id: int, wallet: str) -> List[Listing]:
        marketplace = self._marketplaces.get(chain_id)
        if marketplace is None:
            raise ChainError(f"no marketplace configured for chain {chain_id}")
        data = encode_address_call(GET_LISTINGS_BY_SELLER_SELECTOR, wallet)
        result = await self._eth_call(chain_id, marketplace, data)
        return decode_listings(result)
