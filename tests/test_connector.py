import asyncio
import json
import logging
from dataclasses import dataclass

import pytest

from chatserve.connector import (
    Connector,
    ConnectorAlreadyStartedError,
    Event,
    WebSocketConnection,
)
from chatserve.domain import User

LOG = logging.getLogger("tests.connector")


class FakeWebSocket:
    def __init__(self):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False

    def push_text(self, text):
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self):
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})

    async def receive(self):
        return await self.incoming.get()

    async def send_text(self, text):
        self.sent.append(text)

    async def close(self, code=1000):
        self.closed = True
        self.disconnect()


class RecordingHandler:
    def __init__(self, fail_type=None):
        self.events = []
        self.fail_type = fail_type

    async def handle_event(self, conn, event):
        if event.type == self.fail_type:
            raise RuntimeError("boom")
        self.events.append((conn, event))


class SyncHandler:
    def __init__(self):
        self.events = []

    def handle_event(self, conn, event):
        self.events.append(event)


@dataclass
class Payload:
    text: str

    def to_dict(self):
        return {"text": self.text}


def make_user():
    return User(id=1, email="alice@example.com", username="alice")


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def test_event_from_json_parses_type_and_data():
    event = Event.from_json('{"type": 5, "data": {"text": "hi"}}')
    assert event == Event(type=5, data={"text": "hi"})


def test_event_from_json_accepts_bytes_and_missing_fields():
    assert Event.from_json(b'{"data": [1, 2]}') == Event(data=[1, 2])
    assert Event.from_json("null") == Event()


@pytest.mark.parametrize(
    "raw",
    ["not json", "[1, 2]", '{"type": "x"}', '{"type": -1}', '{"type": 1.5}', '{"type": true}'],
)
def test_event_from_json_rejects_malformed(raw):
    with pytest.raises(ValueError):
        Event.from_json(raw)


def test_event_round_trip():
    event = Event(type=8, data={"status": 2, "messageIds": [1, 2]})
    assert Event.from_json(json.dumps(event.to_dict())) == event


@pytest.mark.asyncio
async def test_send_event_writes_json():
    ws = FakeWebSocket()
    conn = WebSocketConnection(ws, make_user())
    await conn.send_event(5, {"text": "hi"})
    await conn.send_event(5, Payload("there"))
    assert [json.loads(text) for text in ws.sent] == [
        {"type": 5, "data": {"text": "hi"}},
        {"type": 5, "data": {"text": "there"}},
    ]


@pytest.mark.asyncio
async def test_send_event_unserializable_sends_nothing():
    ws = FakeWebSocket()
    conn = WebSocketConnection(ws, make_user())
    with pytest.raises(TypeError):
        await conn.send_event(1, object())
    assert ws.sent == []


def test_connection_ids_are_unique():
    ids = {WebSocketConnection(None, make_user()).connection_id for _ in range(20)}
    assert len(ids) == 20


@pytest.mark.asyncio
async def test_connect_reads_until_disconnect():
    ws = FakeWebSocket()
    conn = WebSocketConnection(ws, make_user())
    reader = conn.connect()
    ws.push_text("one")
    ws.disconnect()
    await asyncio.wait_for(reader, 1)
    assert conn.closed is True
    received = [message async for message in conn._messages()]
    assert received == ["one"]


@pytest.mark.asyncio
async def test_close_before_connect_is_noop():
    ws = FakeWebSocket()
    conn = WebSocketConnection(ws, make_user())
    await conn.close()
    assert ws.closed is False
    assert conn.closed is False


@pytest.mark.asyncio
async def test_close_while_connected_closes_socket():
    ws = FakeWebSocket()
    conn = WebSocketConnection(ws, make_user())
    reader = conn.connect()
    await asyncio.sleep(0.01)
    await conn.close()
    await asyncio.wait_for(reader, 1)
    assert ws.closed is True
    assert conn.closed is True


@pytest.mark.asyncio
async def test_connector_dispatches_events():
    handler = RecordingHandler()
    connector = Connector(LOG, handler)
    ws = FakeWebSocket()
    conn = WebSocketConnection(ws, make_user())
    connector.add_connection(conn)
    assert conn.connector is connector
    assert connector.connections == [conn]

    ws.push_text('{"type": 3, "data": 42}')
    await wait_until(lambda: handler.events)
    assert handler.events == [(conn, Event(type=3, data=42))]
    ws.disconnect()
    await wait_until(lambda: conn.closed)


@pytest.mark.asyncio
async def test_connector_skips_invalid_and_survives_handler_errors(caplog):
    handler = RecordingHandler(fail_type=7)
    connector = Connector(LOG, handler)
    ws = FakeWebSocket()
    conn = WebSocketConnection(ws, make_user())
    connector.add_connection(conn)

    with caplog.at_level(logging.DEBUG, logger="tests.connector"):
        ws.push_text("garbage")
        ws.push_text('{"type": 7}')
        ws.push_text('{"type": 1, "data": [4]}')
        await wait_until(lambda: handler.events)

    assert [event for _, event in handler.events] == [Event(type=1, data=[4])]
    assert "boom" in caplog.text
    assert "error on parse raw event" in caplog.text
    ws.disconnect()
    await wait_until(lambda: conn.closed)


@pytest.mark.asyncio
async def test_on_event_supports_sync_handler():
    handler = SyncHandler()
    connector = Connector(LOG, handler)
    await connector.on_event(None, '{"type": 2, "data": "x"}')
    assert handler.events == [Event(type=2, data="x")]


@pytest.mark.asyncio
async def test_clean_removes_closed_connections():
    connector = Connector(LOG, RecordingHandler())
    open_ws, gone_ws = FakeWebSocket(), FakeWebSocket()
    open_conn = WebSocketConnection(open_ws, make_user())
    gone_conn = WebSocketConnection(gone_ws, make_user())
    connector.add_connection(open_conn)
    connector.add_connection(gone_conn)
    gone_ws.disconnect()
    await wait_until(lambda: gone_conn.closed)

    connector.clean()
    assert connector.connections == [open_conn]
    open_ws.disconnect()
    await wait_until(lambda: open_conn.closed)


@pytest.mark.asyncio
async def test_start_twice_raises_and_stop_closes_all():
    connector = Connector(LOG, RecordingHandler())
    ws = FakeWebSocket()
    conn = WebSocketConnection(ws, make_user())
    connector.add_connection(conn)
    await asyncio.sleep(0.01)

    stop = asyncio.Event()
    task = asyncio.create_task(connector.start(stop))
    await asyncio.sleep(0.01)
    with pytest.raises(ConnectorAlreadyStartedError):
        await connector.start(stop)

    stop.set()
    await asyncio.wait_for(task, 1)
    assert ws.closed is True
    await wait_until(lambda: conn.closed)


@pytest.mark.asyncio
async def test_start_cleans_periodically():
    connector = Connector(LOG, RecordingHandler())
    connector.clean_interval = 0.01
    ws = FakeWebSocket()
    conn = WebSocketConnection(ws, make_user())
    connector.add_connection(conn)
    ws.disconnect()
    await wait_until(lambda: conn.closed)

    stop = asyncio.Event()
    task = asyncio.create_task(connector.start(stop))
    await wait_until(lambda: connector.connections == [])
    stop.set()
    await asyncio.wait_for(task, 1)
    assert connector.connections == []