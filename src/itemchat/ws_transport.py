"""Realtime change feed over websockets.

Server side: an aiohttp application exposing a :class:`ChangeFeed` at
``/v1/ws``. Client side: :class:`WebSocketRealtimeTransport`, a drop-in for
the in-process feed that a :class:`~itemchat.router.RealtimeRouter` can use.

Frames are JSON objects ``{"v": 1, "t": <type>, "id": <request id>, "body": {...}}``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp
from aiohttp import WSMsgType, web

from .errors import SubscriptionError
from .feed import Callback, ChangeFeed, ChangeFilter, ErrorCallback, Subscription
from .models import ChangeEvent, ChangeOperation, Message

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1


def message_to_dict(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "item_id": message.item_id,
        "sender_id": message.sender_id,
        "receiver_id": message.receiver_id,
        "body": message.body,
        "created_at_ms": message.created_at_ms,
        "attachment_url": message.attachment_url,
        "read": message.read,
        "deleted_by_sender": message.deleted_by_sender,
        "deleted_by_receiver": message.deleted_by_receiver,
    }


def message_from_dict(data: Dict[str, Any]) -> Message:
    return Message(
        id=int(data["id"]),
        item_id=str(data["item_id"]),
        sender_id=str(data["sender_id"]),
        receiver_id=str(data["receiver_id"]),
        body=str(data["body"]),
        created_at_ms=int(data["created_at_ms"]),
        attachment_url=data.get("attachment_url"),
        read=bool(data.get("read", False)),
        deleted_by_sender=bool(data.get("deleted_by_sender", False)),
        deleted_by_receiver=bool(data.get("deleted_by_receiver", False)),
    )


def _frame(frame_type: str, body: Dict[str, Any] | None = None, *, request_id: str | None = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"v": PROTOCOL_VERSION, "t": frame_type}
    if request_id is not None:
        frame["id"] = request_id
    if body is not None:
        frame["body"] = body
    return frame


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> Dict[str, Any]:
    return {"v": PROTOCOL_VERSION, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


class FeedRuntime:
    def __init__(self, feed: ChangeFeed) -> None:
        self.feed = feed
        self.sockets: set[web.WebSocketResponse] = set()


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def create_feed_app(
    feed: ChangeFeed,
    *,
    ping_interval_s: float = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    max_queue: int = 1000,
) -> web.Application:
    """Build the websocket application serving ``feed`` to remote sessions."""

    runtime = FeedRuntime(feed)
    app = web.Application()
    app["runtime"] = runtime
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
        "max_queue": max_queue,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/ws", websocket_handler)

    async def close_sockets(_: web.Application) -> None:
        await drop_connections(app, message="server shutdown")

    app.on_shutdown.append(close_sockets)
    return app


async def drop_connections(app: web.Application, *, message: str = "dropped") -> int:
    """Close every live websocket of ``app``; clients see a channel drop."""

    runtime: FeedRuntime = app["runtime"]
    sockets = list(runtime.sockets)
    for ws in sockets:
        await ws.close(code=1001, message=message.encode("utf-8"))
    return len(sockets)


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: FeedRuntime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)
    runtime.sockets.add(ws)

    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=ws_config["max_queue"])
    subscriptions: Dict[str, Subscription] = {}
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_event_loop().time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    def forward_to(sub_id: str) -> Callback:
        def _forward(event: ChangeEvent) -> None:
            enqueue(
                _frame(
                    "change",
                    {"sub_id": sub_id, "op": event.operation.value, "row": message_to_dict(event.row)},
                )
            )

        return _forward

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_event_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    enqueue(_frame("ping"))
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue(_error_frame("invalid_request", "frame must be an object"))
                    continue

                mark_activity()
                request_id = frame.get("id")
                if frame.get("v") != PROTOCOL_VERSION:
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}

                if frame_type == "ping":
                    enqueue(_frame("pong", request_id=request_id))
                elif frame_type == "pong":
                    continue
                elif frame_type == "sub":
                    try:
                        change_filter = ChangeFilter.from_dict(body.get("filter") or {})
                    except (ValueError, TypeError, AttributeError) as exc:
                        enqueue(_error_frame("invalid_request", f"bad filter: {exc}", request_id=request_id))
                        continue
                    subscription = await runtime.feed.subscribe(change_filter, lambda _event: None)
                    subscription.callback = forward_to(subscription.sub_id)
                    subscriptions[subscription.sub_id] = subscription
                    enqueue(_frame("sub.ok", {"sub_id": subscription.sub_id}, request_id=request_id))
                elif frame_type == "unsub":
                    sub_id = body.get("sub_id")
                    subscription = subscriptions.pop(sub_id, None) if isinstance(sub_id, str) else None
                    if subscription is None:
                        enqueue(_error_frame("not_found", "unknown sub_id", request_id=request_id))
                        continue
                    await runtime.feed.unsubscribe(subscription)
                    enqueue(_frame("unsub.ok", {"sub_id": sub_id}, request_id=request_id))
                else:
                    enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        runtime.sockets.discard(ws)
        heartbeat_task.cancel()
        for subscription in subscriptions.values():
            await runtime.feed.unsubscribe(subscription)
        subscriptions.clear()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws


class WebSocketRealtimeTransport:
    """Client for :func:`create_feed_app`, shaped like :class:`ChangeFeed`.

    All subscriptions share one connection. When it drops, every live
    subscription fails with :class:`SubscriptionError`; the next
    :meth:`subscribe` reconnects.
    """

    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        request_timeout_s: float = 10.0,
    ) -> None:
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._request_timeout_s = request_timeout_s
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._connect_lock = asyncio.Lock()
        self._subscriptions: Dict[str, Subscription] = {}
        self._requests: Dict[str, Tuple[asyncio.Future, Optional[Subscription]]] = {}
        self._ids = itertools.count(1)
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.connected:
                return
            if self._session is None:
                self._session = aiohttp.ClientSession()
            try:
                ws = await self._session.ws_connect(self.url)
            except (aiohttp.ClientError, OSError) as exc:
                raise SubscriptionError(f"connect to {self.url} failed: {exc}") from exc
            self._ws = ws
            self._reader = asyncio.create_task(self._read_loop(ws))

    async def subscribe(
        self,
        change_filter: ChangeFilter,
        callback: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        await self.connect()
        subscription = Subscription(
            change_filter=change_filter,
            callback=callback,
            on_error=on_error,
            transport=self,
        )
        await self._request("sub", {"filter": change_filter.to_dict()}, subscription)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        if self._subscriptions.pop(subscription.sub_id, None) is None:
            return
        ws = self._ws
        if ws is None or ws.closed:
            return
        frame = _frame("unsub", {"sub_id": subscription.sub_id}, request_id=self._next_id())
        try:
            await ws.send_json(frame)
        except ConnectionResetError:
            logger.debug("connection gone while unsubscribing %s", subscription.sub_id)

    async def close(self) -> None:
        self._closing = True
        for subscription in list(self._subscriptions.values()):
            subscription.closed = True
        self._subscriptions.clear()
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _next_id(self) -> str:
        return f"req_{next(self._ids)}"

    async def _request(
        self,
        frame_type: str,
        body: Dict[str, Any],
        subscription: Optional[Subscription] = None,
    ) -> Dict[str, Any]:
        ws = self._ws
        if ws is None or ws.closed:
            raise SubscriptionError("not connected")
        request_id = self._next_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._requests[request_id] = (future, subscription)
        try:
            await ws.send_json(_frame(frame_type, body, request_id=request_id))
            reply = await asyncio.wait_for(future, self._request_timeout_s)
        except asyncio.TimeoutError as exc:
            raise SubscriptionError(f"{frame_type} timed out") from exc
        except ConnectionResetError as exc:
            raise SubscriptionError(f"{frame_type} failed: {exc}") from exc
        finally:
            self._requests.pop(request_id, None)
        if reply.get("t") == "error":
            error = reply.get("body") or {}
            raise SubscriptionError(f"{frame_type} rejected: {error.get('message', 'unknown error')}")
        return reply

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        reason = "connection closed"
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("ignoring malformed frame from %s", self.url)
                        continue
                    if isinstance(frame, dict):
                        self._handle_frame(ws, frame)
                elif msg.type == WSMsgType.ERROR:
                    reason = f"connection error: {ws.exception()}"
                    break
        finally:
            self._connection_lost(ws, reason)

    def _handle_frame(self, ws: aiohttp.ClientWebSocketResponse, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") or {}

        if frame_type == "change":
            subscription = self._subscriptions.get(body.get("sub_id"))
            if subscription is None:
                return
            try:
                event = ChangeEvent(operation=ChangeOperation(body["op"]), row=message_from_dict(body["row"]))
            except (KeyError, ValueError, TypeError):
                logger.warning("ignoring malformed change frame for %s", subscription.sub_id)
                return
            try:
                subscription.deliver(event)
            except Exception:
                logger.exception("subscriber %s failed on message %s", subscription.sub_id, event.row.id)
            return

        if frame_type == "ping":
            asyncio.ensure_future(self._send_quietly(ws, _frame("pong", request_id=frame.get("id"))))
            return

        pending = self._requests.get(frame.get("id") or "")
        if pending is None:
            return
        future, subscription = pending
        if frame_type == "sub.ok" and subscription is not None:
            subscription.sub_id = body["sub_id"]
            self._subscriptions[subscription.sub_id] = subscription
        if not future.done():
            future.set_result(frame)

    async def _send_quietly(self, ws: aiohttp.ClientWebSocketResponse, frame: Dict[str, Any]) -> None:
        try:
            await ws.send_json(frame)
        except ConnectionResetError:
            return

    def _connection_lost(self, ws: aiohttp.ClientWebSocketResponse, reason: str) -> None:
        if self._ws is ws:
            self._ws = None
        for future, _subscription in list(self._requests.values()):
            if not future.done():
                future.set_exception(SubscriptionError(reason))
        if self._closing:
            return
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        if subscriptions:
            logger.warning("realtime connection to %s lost: %s", self.url, reason)
        for subscription in subscriptions:
            subscription.fail(SubscriptionError(reason))
