from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Awaitable, Callable, Dict

from aiohttp import WSMsgType, web

from .access import AccessGate, InMemoryAccessCache
from .chain import ChainReader, JsonRpcChainReader
from .clock import now_ms
from .config import ChatConfig, load_chat_config_from_env
from .directory import InMemoryDirectory, SQLiteDirectory
from .errors import ChatError, ValidationError
from .gateway import ChannelGateway
from .hub import ChannelSignal, Subscription, SubscriptionHub, topic_for
from .messages import InMemoryMessageStore, SQLiteMessageStore
from .presence import ChannelPresence
from .ratelimit import FixedWindowRateLimiter
from .sqlite_backend import SQLiteBackend


logger = logging.getLogger(__name__)


class Runtime:
    def __init__(
        self,
        *,
        gateway: ChannelGateway,
        hub: SubscriptionHub,
        presence: ChannelPresence,
        chain: ChainReader,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.gateway = gateway
        self.hub = hub
        self.presence = presence
        self.chain = chain
        self.backend = backend

    @property
    def directory(self):
        return self.gateway.directory


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _no_store_response(data: dict[str, Any], status: int = 200) -> web.Response:
    return _with_no_store(web.json_response(data, status=status))


def _error_response(exc: ChatError) -> web.Response:
    return _no_store_response({"code": exc.code, "message": str(exc)}, status=exc.status)


def _failure(message: str) -> web.Response:
    return _no_store_response({"code": "internal_error", "message": message}, status=500)


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except Exception as exc:
        raise ValidationError("malformed json") from exc
    if not isinstance(body, dict):
        raise ValidationError("json body must be an object")
    return body


def _parse_before(raw: str | None) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        before = int(raw)
    except ValueError as exc:
        raise ValidationError("before must be a created_at cursor in milliseconds") from exc
    if before < 0:
        raise ValidationError("before must be non-negative")
    return before


async def _respond(action: str, call: Callable[[], Awaitable[Dict[str, Any]]]) -> web.Response:
    try:
        result = await call()
    except ChatError as exc:
        if exc.status >= 500:
            logger.error("failed to %s: %r", action, exc.__cause__ or exc)
        return _error_response(exc)
    except Exception:
        logger.exception("failed to %s", action)
        return _failure(f"Failed to {action}")
    return _no_store_response(result)


async def handle_list_messages(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    query = request.query

    async def call() -> Dict[str, Any]:
        before = _parse_before(query.get("before"))
        return await runtime.gateway.list_messages(query.get("event_id"), query.get("user_address"), before)

    return await _respond("fetch messages", call)


async def handle_send_message(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]

    async def call() -> Dict[str, Any]:
        body = await _read_json(request)
        return await runtime.gateway.send_message(
            body.get("event_id"), body.get("user_address"), body.get("content"), body.get("reply_to")
        )

    return await _respond("send message", call)


async def handle_edit_message(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]

    async def call() -> Dict[str, Any]:
        body = await _read_json(request)
        return await runtime.gateway.edit_message(body.get("message_id"), body.get("user_address"), body.get("content"))

    return await _respond("edit message", call)


async def handle_delete_message(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]

    async def call() -> Dict[str, Any]:
        body = await _read_json(request)
        return await runtime.gateway.delete_message(body.get("message_id"), body.get("user_address"), body.get("mode"))

    return await _respond("delete message", call)


async def handle_list_memberships(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    return await _respond(
        "fetch chat events",
        lambda: runtime.gateway.list_memberships(request.query.get("user_address")),
    )


def create_app(
    *,
    config: ChatConfig | None = None,
    db_path: str | None = None,
    chain: ChainReader | None = None,
    now_func: Callable[[], int] = now_ms,
    ping_interval_s: float = 30.0,
    max_msg_size: int = 64 * 1024,
    outbound_queue_size: int = 1000,
) -> web.Application:
    config = config or load_chat_config_from_env()
    backend: SQLiteBackend | None = None
    if db_path is not None:
        backend = SQLiteBackend(db_path)
        directory: Any = SQLiteDirectory(backend)
        messages: Any = SQLiteMessageStore(backend, now_func=now_func)
    else:
        directory = InMemoryDirectory()
        messages = InMemoryMessageStore(now_func=now_func)

    owns_chain = chain is None
    if chain is None:
        chain = JsonRpcChainReader(config.rpc_urls, config.marketplace_addresses)

    hub = SubscriptionHub()
    gateway = ChannelGateway(
        directory=directory,
        messages=messages,
        access=AccessGate(chain, InMemoryAccessCache(config.access_cache_ttl_ms, now_func=now_func)),
        limiter=FixedWindowRateLimiter(config.sends_per_window, config.rate_window_ms, now_func=now_func),
        hub=hub,
        config=config,
    )
    runtime = Runtime(gateway=gateway, hub=hub, presence=ChannelPresence(hub), chain=chain, backend=backend)

    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "max_msg_size": max_msg_size,
        "outbound_queue_size": outbound_queue_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/chat", handle_list_messages)
    app.router.add_post("/v1/chat", handle_send_message)
    app.router.add_patch("/v1/chat", handle_edit_message)
    app.router.add_delete("/v1/chat", handle_delete_message)
    app.router.add_get("/v1/chat/events", handle_list_memberships)
    app.router.add_get("/v1/chat/ws", websocket_handler)

    if owns_chain and isinstance(chain, JsonRpcChainReader):
        rpc_reader = chain

        async def close_chain(_: web.Application) -> None:
            await rpc_reader.close()

        app.on_cleanup.append(close_chain)

    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def websocket_handler(request: web.Request) -> web.StreamResponse:
    """Realtime topic for one event channel.

    The connection is gated exactly like a read; afterwards it receives
    ``chat.insert``, ``chat.update``, ``chat.typing`` and ``presence.sync``
    frames and may emit ``chat.typing`` and ``ping`` frames.
    """

    runtime = request.app[RUNTIME_KEY]
    ws_config = request.app[WS_CONFIG_KEY]
    wallet = request.query.get("user_address")
    try:
        event = await runtime.gateway.open_channel(request.query.get("event_id"), wallet)
    except ChatError as exc:
        return _error_response(exc)
    except Exception:
        logger.exception("failed to open chat channel")
        return _failure("Failed to open chat channel")

    wallet = str(wallet).lower()
    topic = topic_for(event.id)
    connection_id = f"c_{secrets.token_urlsafe(8)}"

    ws = web.WebSocketResponse(heartbeat=ws_config["ping_interval_s"], max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=ws_config["outbound_queue_size"])
    closing: set[asyncio.Task] = set()
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def enqueue(signal: ChannelSignal) -> None:
        try:
            outbound.put_nowait(signal.to_frame())
        except asyncio.QueueFull:
            task = asyncio.create_task(close_with_error("backpressure"))
            closing.add(task)
            task.add_done_callback(closing.discard)

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except (asyncio.CancelledError, ConnectionResetError):
            return

    writer_task = asyncio.create_task(writer())
    subscription: Subscription = runtime.hub.subscribe(wallet, topic, enqueue)
    if not runtime.presence.join(topic, wallet, connection_id):
        enqueue(runtime.presence.snapshot(topic))

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    await ws.send_json(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    request_id = frame.get("id") if isinstance(frame, dict) else None
                    await ws.send_json(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body")
                if not isinstance(body, dict):
                    body = {}
                if frame_type == "ping":
                    await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "chat.typing":
                    name = body.get("name") if isinstance(body.get("name"), str) else None
                    runtime.gateway.broadcast_typing(event, wallet, name)
                else:
                    await ws.send_json(_error_frame("invalid_request", "unknown frame type", request_id=frame.get("id")))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        runtime.hub.unsubscribe(subscription)
        runtime.presence.leave(topic, wallet, connection_id)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(writer_task, return_exceptions=True)

    return ws
