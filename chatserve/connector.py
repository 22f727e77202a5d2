"""Live websocket connections and the hub that dispatches their events."""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import json
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from chatserve.domain import User

CLEAN_INTERVAL = 60.0
_MAX_EVENT_TYPE = 2**64

_END = object()


class ConnectorAlreadyStartedError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("connector already started")


@dataclass
class Event:
    """A typed message exchanged over a connection; data is decoded JSON."""

    type: int = 0
    data: Any = None

    @classmethod
    def from_json(cls, raw: str | bytes) -> Event:
        """Decode an event; raises ValueError on malformed input."""
        payload = json.loads(raw)
        if payload is None:
            return cls()
        if not isinstance(payload, dict):
            raise ValueError("event must be a JSON object")

        event_type = payload.get("type")
        if event_type is None:
            event_type = 0
        elif (
            isinstance(event_type, bool)
            or not isinstance(event_type, int)
            or not 0 <= event_type < _MAX_EVENT_TYPE
        ):
            raise ValueError("event type must be an unsigned integer")

        return cls(type=event_type, data=payload.get("data"))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data}


def _json_default(obj: Any) -> Any:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"object of type {type(obj).__name__} is not JSON serializable")


class WebSocketConnection:
    """One client socket speaking the ASGI websocket receive/send protocol."""

    def __init__(self, websocket: Any, user: User) -> None:
        self.connection_id = str(uuid.uuid4())
        self.websocket = websocket
        self.user = user
        self.connector: Connector | None = None
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._closing = asyncio.Event()
        self._connected = False
        self._closed = False
        self._reader: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_event(self, event_type: int, data: Any) -> None:
        text = json.dumps({"type": int(event_type), "data": data}, default=_json_default)
        await self.websocket.send_text(text)

    def connect(self) -> asyncio.Task[None]:
        """Start reading incoming messages in the background."""
        if self._reader is None or self._reader.done():
            self._reader = asyncio.get_running_loop().create_task(self._read_loop())
        return self._reader

    async def _read_loop(self) -> None:
        if self._connected or self._closed:
            return
        self._connected = True
        try:
            while not self._closing.is_set():
                message = await self.websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
                payload = message.get("text")
                if payload is None:
                    payload = message.get("bytes")
                if payload is not None:
                    await self._inbox.put(payload)
        except Exception:
            # Any read failure ends the connection.
            pass
        finally:
            self._connected = False
            self._closed = True
            self._inbox.put_nowait(_END)

    async def close(self) -> None:
        if not self._connected or self._closing.is_set():
            return
        self._closing.set()
        self._inbox.put_nowait(_END)
        await self.websocket.close()

    async def _messages(self) -> AsyncIterator[Any]:
        while True:
            item = await self._inbox.get()
            if item is _END:
                return
            yield item


class Connector:
    """Keeps track of connections and feeds their events to a handler.

    The handler's ``handle_event(conn, event)`` may be a plain or a
    coroutine function.
    """

    clean_interval: float = CLEAN_INTERVAL

    def __init__(self, log: logging.Logger, event_handler: Any) -> None:
        self._log = log
        self._event_handler = event_handler
        self._connections: list[WebSocketConnection] = []
        self._started = False
        self._listeners: set[asyncio.Task[None]] = set()

    async def start(self, stop: asyncio.Event) -> None:
        """Prune closed connections periodically until stop is set, then close all."""
        if self._started:
            raise ConnectorAlreadyStartedError()
        self._started = True
        try:
            while True:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.clean_interval)
                except asyncio.TimeoutError:
                    self._log.debug("Clean closed connections")
                    self.clean()
                else:
                    await self._close_all()
                    return
        finally:
            self._started = False

    async def _close_all(self) -> None:
        for conn in list(self._connections):
            await conn.close()

    def clean(self) -> None:
        self._connections = [conn for conn in self._connections if not conn.closed]

    def add_connection(self, conn: WebSocketConnection) -> None:
        """Register and start a connection; must run inside an event loop."""
        user = conn.user
        self._log.debug(
            "Connected id=%d email=%s username=%s", user.id, user.email, user.username
        )
        conn.connector = self
        conn.connect()
        self._connections.append(conn)
        task = asyncio.get_running_loop().create_task(self._listen(conn))
        self._listeners.add(task)
        task.add_done_callback(self._listeners.discard)

    @property
    def connections(self) -> list[WebSocketConnection]:
        return list(self._connections)

    async def _listen(self, conn: WebSocketConnection) -> None:
        async for message in conn._messages():
            await self.on_event(conn, message)

    async def on_event(self, conn: Any, data: str | bytes) -> None:
        """Decode one raw message and pass it to the event handler."""
        try:
            event = Event.from_json(data)
        except ValueError as err:
            self._log.debug("error on parse raw event: %s", err)
            return

        self._log.debug(
            "Got new event event_type=%d message=%s", event.type, json.dumps(event.data)
        )

        try:
            result = self._event_handler.handle_event(conn, event)
            if inspect.isawaitable(result):
                await result
        except Exception as err:
            self._log.error("%s", err, exc_info=True)