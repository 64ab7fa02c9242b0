from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict


DEFAULT_RPC_URLS: Dict[int, str] = {
    127823: "https://rpc.ankr.com/etherlink_shadownet_testnet",
    11155111: "https://rpc.sepolia.org",
}

DEFAULT_MARKETPLACE_ADDRESSES: Dict[int, str] = {
    127823: "0xfbc5f575a39d97a15545f095b92fa23baa3ea075",
    11155111: "0x5991553521b100dec25af22067377ca37752d67c",
}


@dataclass(frozen=True)
class ChatConfig:
    sends_per_window: int = 20
    rate_window_s: int = 60
    access_cache_ttl_s: int = 60
    page_size: int = 50
    max_content_len: int = 500
    typing_ttl_s: int = 3
    rpc_urls: Dict[int, str] = field(default_factory=lambda: dict(DEFAULT_RPC_URLS))
    marketplace_addresses: Dict[int, str] = field(
        default_factory=lambda: dict(DEFAULT_MARKETPLACE_ADDRESSES)
    )

    @property
    def rate_window_ms(self) -> int:
        return self.rate_window_s * 1000

    @property
    def access_cache_ttl_ms(self) -> int:
        return self.access_cache_ttl_s * 1000


def _parse_positive_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_chain_map(name: str, default: Dict[int, str]) -> Dict[int, str]:
    """Parse ``chain_id=value`` pairs separated by commas."""

    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return dict(default)
    parsed: Dict[int, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        chain_id, sep, value = item.partition("=")
        if not sep or not value.strip():
            raise ValueError(f"{name} entries must look like chain_id=value")
        try:
            parsed[int(chain_id.strip())] = value.strip()
        except ValueError as exc:
            raise ValueError(f"{name} chain ids must be integers") from exc
    return parsed


def load_chat_config_from_env() -> ChatConfig:
    marketplaces = _parse_chain_map("GATEWAY_MARKETPLACE_ADDRESSES", DEFAULT_MARKETPLACE_ADDRESSES)
    return ChatConfig(
        sends_per_window=_parse_positive_int("GATEWAY_CHAT_SENDS_PER_MIN", 20),
        rate_window_s=_parse_positive_int("GATEWAY_CHAT_RATE_WINDOW_S", 60),
        access_cache_ttl_s=_parse_positive_int("GATEWAY_ACCESS_CACHE_TTL_S", 60),
        page_size=_parse_positive_int("GATEWAY_CHAT_PAGE_SIZE", 50),
        max_content_len=_parse_positive_int("GATEWAY_CHAT_MAX_CONTENT_LEN", 500),
        typing_ttl_s=_parse_positive_int("GATEWAY_TYPING_TTL_S", 3),
        rpc_urls=_parse_chain_map("GATEWAY_RPC_URLS", DEFAULT_RPC_URLS),
        marketplace_addresses={chain: addr.lower() for chain, addr in marketplaces.items()},
    )
