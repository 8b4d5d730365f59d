"""Minimal Pusher Channels client (protocol 7) over websockets.

Only what the conversation core needs: connect, subscribe to one private
channel, bind event handlers, answer pings, unsubscribe, disconnect.

Wire flow
---------
    ← pusher:connection_established   {"socket_id": "123.456", ...}
    → POST auth endpoint               socket_id, channel_name, **auth_params
    → pusher:subscribe                 {"channel": ..., "auth": "<key>:<sig>"}
    ← pusher_internal:subscription_succeeded
    ← <event>                          data is a JSON-encoded string
    ← pusher:ping  → pusher:pong
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import websockets

from apps.conversation.errors import TransportFailure

log = logging.getLogger("stella.pusher")

PUSHER_PROTOCOL = 7
CLIENT_NAME = "stella-python"
CLIENT_VERSION = "0.1.0"

EventHandler = Callable[[Any], Union[None, Awaitable[None]]]


class Channel:
    """A subscribed channel and its bound handlers."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: dict[str, list[EventHandler]] = {}

    def bind(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def unbind(self, event: str, handler: Optional[EventHandler] = None) -> None:
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def unbind_all(self) -> None:
        self._handlers.clear()

    def handlers(self, event: str) -> list[EventHandler]:
        return list(self._handlers.get(event, []))

    @property
    def bound_events(self) -> list[str]:
        return [event for event, handlers in self._handlers.items() if handlers]


class RealtimeClient(ABC):
    """Generic publish/subscribe client used by the transport binding.

    on_connection_lost, when set, is called once if an established
    connection drops without disconnect() being asked for.
    """

    on_connection_lost: Optional[Callable[[], None]] = None

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def subscribe(self, channel: str) -> Channel: ...

    @abstractmethod
    async def unsubscribe(self, channel: str) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...


class PusherClient(RealtimeClient):
    def __init__(
        self,
        app_key: str,
        *,
        cluster: str,
        auth_endpoint: str,
        auth_params: Optional[dict[str, str]] = None,
        timeout: float = 5.0,
        connector: Callable[..., Awaitable[Any]] = websockets.connect,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._app_key = app_key
        self._cluster = cluster
        self._auth_endpoint = auth_endpoint
        self._auth_params = dict(auth_params or {})
        self._timeout = timeout
        self._connector = connector
        self._http_transport = http_transport

        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._socket_id: Optional[str] = None
        self._established: Optional[asyncio.Future] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._channels: dict[str, Channel] = {}
        self._dispatch_tasks: set[asyncio.Task] = set()

    @property
    def url(self) -> str:
        return (
            f"wss://ws-{self._cluster}.pusher.com/app/{self._app_key}"
            f"?protocol={PUSHER_PROTOCOL}&client={CLIENT_NAME}&version={CLIENT_VERSION}"
        )

    @property
    def socket_id(self) -> Optional[str]:
        return self._socket_id

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._socket_id is not None

    # -- lifecycle ------------------------------------------------------------

    async def connect(self) -> None:
        if self._ws is not None:
            return
        if not self._app_key:
            raise TransportFailure("Pusher app key is not configured")

        loop = asyncio.get_running_loop()
        self._established = loop.create_future()
        try:
            self._ws = await asyncio.wait_for(self._connector(self.url), timeout=self._timeout)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
            self._ws = None
            raise TransportFailure(f"realtime connect failed: {exc}") from exc

        self._reader_task = loop.create_task(self._reader(), name="pusher_reader")
        try:
            self._socket_id = await asyncio.wait_for(asyncio.shield(self._established), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            await self.disconnect()
            raise TransportFailure("realtime connection was not established") from exc
        except TransportFailure:
            await self.disconnect()
            raise
        log.info("event=pusher_connected socket_id=%s", self._socket_id)

    async def subscribe(self, channel: str) -> Channel:
        if not self.connected:
            raise TransportFailure("realtime client is not connected")
        if channel in self._channels:
            return self._channels[channel]

        data: dict[str, Any] = {"channel": channel}
        if channel.startswith("private-"):
            data["auth"] = await self._authorize(channel)

        future = asyncio.get_running_loop().create_future()
        self._pending[channel] = future
        await self._send("pusher:subscribe", data)
        try:
            await asyncio.wait_for(future, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise TransportFailure(f"subscription to {channel} timed out") from exc
        finally:
            self._pending.pop(channel, None)

        subscribed = Channel(channel)
        self._channels[channel] = subscribed
        log.info("event=pusher_subscribed channel=%s", channel)
        return subscribed

    async def unsubscribe(self, channel: str) -> None:
        subscribed = self._channels.pop(channel, None)
        if subscribed is None:
            return
        subscribed.unbind_all()
        if self._ws is not None:
            try:
                await self._send("pusher:unsubscribe", {"channel": channel})
            except TransportFailure as exc:
                log.debug("event=pusher_unsubscribe_error channel=%s error=%s", channel, exc)
        log.info("event=pusher_unsubscribed channel=%s", channel)

    async def disconnect(self) -> None:
        for channel in self._channels.values():
            channel.unbind_all()
        self._channels.clear()
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()

        current = asyncio.current_task()
        for task in list(self._dispatch_tasks):
            if task is not current:
                task.cancel()
        if self._reader_task is not None and self._reader_task is not current:
            self._reader_task.cancel()
        self._reader_task = None

        ws = self._ws
        self._ws = None
        self._socket_id = None
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:
                log.debug("event=pusher_close_error error=%s", exc)
            log.info("event=pusher_disconnected")

    # -- internals ------------------------------------------------------------

    async def _authorize(self, channel: str) -> str:
        form = {"socket_id": self._socket_id or "", "channel_name": channel, **self._auth_params}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._http_transport) as client:
                response = await client.post(self._auth_endpoint, data=form)
        except httpx.HTTPError as exc:
            raise TransportFailure(f"channel authorization failed: {exc}") from exc
        if response.status_code != 200:
            raise TransportFailure(
                f"channel authorization failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            signature = response.json()["auth"]
        except (ValueError, KeyError, TypeError) as exc:
            raise TransportFailure("channel authorization returned no auth signature") from exc
        if not isinstance(signature, str) or not signature:
            raise TransportFailure("channel authorization returned no auth signature")
        return signature

    async def _send(self, event: str, data: Any) -> None:
        if self._ws is None:
            raise TransportFailure("realtime client is not connected")
        try:
            await self._ws.send(json.dumps({"event": event, "data": data}))
        except Exception as exc:
            raise TransportFailure(f"realtime send failed: {exc}") from exc

    async def _reader(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                await self._handle_message(raw)
        except asyncio.CancelledError:
            return
        except Exception as exc:
            log.warning("event=pusher_reader_error error=%s", exc)
        if self._established is not None and not self._established.done():
            self._established.set_exception(TransportFailure("realtime connection closed"))
        if self._ws is ws:
            log.warning("event=pusher_connection_lost")
            self._socket_id = None
            if self.on_connection_lost is not None:
                try:
                    self.on_connection_lost()
                except Exception:
                    log.exception("event=pusher_connection_lost_handler_error")

    async def _handle_message(self, raw: Union[str, bytes]) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            log.debug("event=pusher_non_json_message")
            return
        event = msg.get("event", "")
        data = _decode_data(msg.get("data"))
        channel = msg.get("channel")

        if event == "pusher:connection_established":
            if self._established is not None and not self._established.done():
                self._established.set_result((data or {}).get("socket_id"))
        elif event == "pusher:ping":
            await self._send("pusher:pong", {})
        elif event == "pusher_internal:subscription_succeeded":
            future = self._pending.get(channel)
            if future is not None and not future.done():
                future.set_result(True)
        elif event == "pusher:subscription_error":
            future = self._pending.get(channel)
            if future is not None and not future.done():
                future.set_exception(TransportFailure(f"subscription to {channel} rejected: {data}"))
        elif event == "pusher:error":
            log.warning("event=pusher_error data=%s", data)
            if self._established is not None and not self._established.done():
                self._established.set_exception(TransportFailure(f"realtime error: {data}"))
        elif channel in self._channels:
            self._dispatch(self._channels[channel], event, data)

    def _dispatch(self, channel: Channel, event: str, data: Any) -> None:
        for handler in channel.handlers(event):
            try:
                result = handler(data)
            except Exception:
                log.exception("event=pusher_handler_error channel=%s event=%s", channel.name, event)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._dispatch_tasks.add(task)
                task.add_done_callback(self._dispatch_done)

    def _dispatch_done(self, task: asyncio.Task) -> None:
        self._dispatch_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("event=pusher_handler_error error=%s", exc, exc_info=exc)


def _decode_data(data: Any) -> Any:
    if isinstance(data, str):
        try:
            return json.loads(data)
        except ValueError:
            return data
    return data
