import asyncio
from typing import Any, Dict

from aiohttp import WSMsgType


async def recv_frame(ws, kind: str, *, timeout: float = 2.0, **body_match: Any) -> Dict[str, Any]:
    """Return the next frame of ``kind`` whose body contains ``body_match``."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise asyncio.TimeoutError(f"Timed out waiting for {kind} frame")
        msg = await ws.receive(timeout=remaining)
        if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR):
            raise AssertionError(f"WebSocket closed while waiting for {kind}")
        if msg.type != WSMsgType.TEXT:
            continue
        frame = msg.json()
        if frame.get("t") != kind:
            continue
        body = frame.get("body") or {}
        if all(body.get(key) == value for key, value in body_match.items()):
            return frame


async def assert_no_frame(ws, kind: str, *, timeout: float = 0.2) -> None:
    try:
        frame = await recv_frame(ws, kind, timeout=timeout)
    except asyncio.TimeoutError:
        return
    raise AssertionError(f"Unexpected {kind} frame: {frame}")
