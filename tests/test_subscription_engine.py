"""
Tests for the WebSocket subscription engine.

A fake connector stands in for `websockets.asyncio.client.connect`; each fake
connection records sent frames and close calls and yields whatever the test
feeds into it. Async code is driven with asyncio.run() from plain tests.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from websockets.exceptions import ConnectionClosedError

from topic_subscriber.errors import (
    AuthenticationFailed,
    ConcurrentOperationError,
    FrameParseError,
    SubscriptionFailed,
)
from topic_subscriber.notifications.engine import EngineState, SubscriptionEngine, parse_frame

URL = "wss://api.mypurecloud.com/notifications"
STAMP = datetime(2031, 3, 4, 5, 6, 7, tzinfo=timezone.utc)

_CLOSE = object()
_ABORT = object()
_BREAK = object()


class FakeConnection:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.close_code = None
        self.close_reason = None
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_CLOSE)

    def feed(self, *messages) -> None:
        for m in messages:
            self._incoming.put_nowait(m)

    def remote_close(self) -> None:
        self._incoming.put_nowait(_CLOSE)

    def abort(self) -> None:
        self._incoming.put_nowait(_ABORT)

    def break_transport(self) -> None:
        self._incoming.put_nowait(_BREAK)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if item is _ABORT:
            raise ConnectionClosedError(None, None)
        if item is _BREAK:
            raise RuntimeError("transport broke")
        return item

    @property
    def frames(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]


class FakeConnector:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, dict]] = []
        self.connections: list[FakeConnection] = []

    async def __call__(self, url: str, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        conn = FakeConnection()
        self.connections.append(conn)
        return conn


def _counting_token_provider():
    counter = itertools.count(1)
    provider = Mock(side_effect=lambda: f"TOKEN-{next(counter)}")
    return provider


async def _until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _engine(connector: FakeConnector, sink=None, **kwargs) -> SubscriptionEngine:
    kwargs.setdefault("token_provider", _counting_token_provider())
    return SubscriptionEngine(
        URL,
        kwargs.pop("token_provider"),
        sink if sink is not None else Mock(),
        connect=connector,
        **kwargs,
    )


def test_subscribe_opens_authorized_socket_and_sends_subscribe_frame() -> None:
    connector = FakeConnector()

    async def scenario():
        engine = _engine(connector)
        await engine.subscribe(["topic.a", "topic.b"])
        assert engine.state is EngineState.SUBSCRIBED
        assert engine.topics == ("topic.a", "topic.b")
        await engine.unsubscribe()

    asyncio.run(scenario())

    url, kwargs = connector.calls[0]
    assert url == URL
    assert kwargs["additional_headers"] == {"Authorization": "Bearer TOKEN-1"}
    assert connector.connections[0].frames[0] == {"type": "subscribe", "topics": ["topic.a", "topic.b"]}


def test_resubscribe_replaces_connection_and_topic_set() -> None:
    connector = FakeConnector()
    provider = _counting_token_provider()

    async def scenario():
        engine = _engine(connector, token_provider=provider)
        await engine.subscribe(["topic.a", "topic.b"])
        await engine.subscribe(["topic.c"])
        assert engine.topics == ("topic.c",)
        assert engine.state is EngineState.SUBSCRIBED

    asyncio.run(scenario())

    first, second = connector.connections
    assert first.closed is True
    assert (first.close_code, first.close_reason) == (1000, "resubscribe")
    assert second.closed is False
    assert second.frames[-1] == {"type": "subscribe", "topics": ["topic.c"]}
    assert provider.call_count == 2
    assert connector.calls[1][1]["additional_headers"] == {"Authorization": "Bearer TOKEN-2"}


def test_unsubscribe_when_idle_is_a_noop() -> None:
    connector = FakeConnector()

    async def scenario():
        engine = _engine(connector)
        await engine.unsubscribe()
        return engine

    engine = asyncio.run(scenario())

    assert connector.calls == []
    assert engine.state is EngineState.IDLE


def test_unsubscribe_sends_frame_and_closes() -> None:
    connector = FakeConnector()

    async def scenario():
        engine = _engine(connector)
        await engine.subscribe(["topic.a"])
        await engine.unsubscribe()
        await engine.unsubscribe()
        return engine

    engine = asyncio.run(scenario())

    conn = connector.connections[0]
    assert conn.frames == [{"type": "subscribe", "topics": ["topic.a"]}, {"type": "unsubscribe"}]
    assert (conn.close_code, conn.close_reason) == (1000, "unsubscribe")
    assert engine.state is EngineState.IDLE
    assert engine.topics == ()


def test_inbound_frame_becomes_event_stamped_at_receipt() -> None:
    connector = FakeConnector()
    events = []
    clock = Mock(return_value=STAMP)

    async def scenario():
        engine = _engine(connector, sink=events.append, clock=clock)
        await engine.subscribe(["v2.detail"])
        clock.assert_not_called()
        connector.connections[0].feed('{"topic":"v2.detail","data":{}}')
        await _until(lambda: len(events) == 1)
        await engine.unsubscribe()

    asyncio.run(scenario())

    event = events[0]
    assert event.topic == "v2.detail"
    assert event.received_at == STAMP
    assert event.payload == {"topic": "v2.detail", "data": {}}
    clock.assert_called_once()


def test_malformed_frame_does_not_stop_the_loop() -> None:
    connector = FakeConnector()
    events = []
    frame_errors = []

    async def scenario():
        engine = _engine(connector, sink=events.append, on_frame_error=frame_errors.append)
        await engine.subscribe(["topic.a"])
        connector.connections[0].feed("{not json", '{"topic":"topic.a","n":1}')
        await _until(lambda: len(events) == 1)
        assert engine.state is EngineState.SUBSCRIBED
        await engine.unsubscribe()

    asyncio.run(scenario())

    assert events[0].payload["n"] == 1
    assert len(frame_errors) == 1
    assert isinstance(frame_errors[0], FrameParseError)
    assert frame_errors[0].raw == "{not json"


def test_events_are_delivered_in_arrival_order() -> None:
    connector = FakeConnector()
    events = []

    async def scenario():
        engine = _engine(connector, sink=events.append)
        await engine.subscribe(["topic.a"])
        connector.connections[0].feed(*[json.dumps({"topic": "topic.a", "seq": i}) for i in range(20)])
        await _until(lambda: len(events) == 20)
        await engine.unsubscribe()

    asyncio.run(scenario())

    assert [e.payload["seq"] for e in events] == list(range(20))


def test_sink_errors_do_not_stop_the_loop() -> None:
    connector = FakeConnector()
    delivered = []

    def sink(event):
        delivered.append(event)
        if len(delivered) == 1:
            raise RuntimeError("consumer bug")

    async def scenario():
        engine = _engine(connector, sink=sink)
        await engine.subscribe(["topic.a"])
        connector.connections[0].feed('{"topic":"topic.a"}', '{"topic":"topic.a"}')
        await _until(lambda: len(delivered) == 2)
        await engine.unsubscribe()

    asyncio.run(scenario())


@pytest.mark.parametrize("close", ["remote_close", "abort"])
def test_peer_close_ends_loop_without_reconnect(close: str) -> None:
    connector = FakeConnector()

    async def scenario():
        engine = _engine(connector)
        await engine.subscribe(["topic.a"])
        getattr(connector.connections[0], close)()
        await asyncio.wait_for(engine.wait_closed(), timeout=2)
        assert engine.state is EngineState.IDLE
        await engine.unsubscribe()

    asyncio.run(scenario())

    assert len(connector.calls) == 1
    assert connector.connections[0].frames == [{"type": "subscribe", "topics": ["topic.a"]}]


def test_unexpected_receive_error_is_logged_and_connection_released(caplog) -> None:
    connector = FakeConnector()

    async def scenario():
        engine = _engine(connector)
        await engine.subscribe(["topic.a"])
        connector.connections[0].break_transport()
        await asyncio.wait_for(engine.wait_closed(), timeout=2)
        assert engine.state is EngineState.IDLE
        assert engine.topics == ()

    asyncio.run(scenario())

    conn = connector.connections[0]
    assert (conn.close_code, conn.close_reason) == (1000, "receive failed")
    assert "notification receive loop failed" in caplog.text
    assert "transport broke" in caplog.text


def test_connect_failure_is_subscription_failed_and_leaves_engine_idle() -> None:
    connector = FakeConnector(error=OSError("connection refused"))

    async def scenario():
        engine = _engine(connector)
        with pytest.raises(SubscriptionFailed) as excinfo:
            await engine.subscribe(["topic.a"])
        assert isinstance(excinfo.value.__cause__, OSError)
        assert engine.state is EngineState.IDLE
        assert engine.topics == ()

    asyncio.run(scenario())


def test_token_failure_propagates_and_skips_connect() -> None:
    connector = FakeConnector()
    provider = Mock(side_effect=AuthenticationFailed("login cancelled"))

    async def scenario():
        engine = _engine(connector, token_provider=provider)
        with pytest.raises(AuthenticationFailed):
            await engine.subscribe(["topic.a"])
        assert engine.state is EngineState.IDLE

    asyncio.run(scenario())

    assert connector.calls == []


def test_overlapping_calls_are_rejected() -> None:
    gate: asyncio.Event | None = None

    class SlowConnector(FakeConnector):
        async def __call__(self, url, **kwargs):
            await gate.wait()
            return await super().__call__(url, **kwargs)

    connector = SlowConnector()

    async def scenario():
        nonlocal gate
        gate = asyncio.Event()
        engine = _engine(connector)
        first = asyncio.create_task(engine.subscribe(["topic.a"]))
        await _until(lambda: engine.state is EngineState.CONNECTING)
        with pytest.raises(ConcurrentOperationError):
            await engine.unsubscribe()
        with pytest.raises(ConcurrentOperationError):
            await engine.subscribe(["topic.b"])
        gate.set()
        await first
        assert engine.topics == ("topic.a",)
        await engine.unsubscribe()

    asyncio.run(scenario())

    assert len(connector.connections) == 1


def test_context_manager_unsubscribes_on_exit() -> None:
    connector = FakeConnector()

    async def scenario():
        async with _engine(connector) as engine:
            await engine.subscribe(["topic.a"])
        return engine

    engine = asyncio.run(scenario())

    assert connector.connections[0].frames[-1] == {"type": "unsubscribe"}
    assert engine.state is EngineState.IDLE


def test_parse_frame_topic_fallback_and_binary_frames() -> None:
    event = parse_frame(b'{"topicName":"channel.metadata","eventBody":{"message":"WebSocket Heartbeat"}}', received_at=STAMP)
    assert event.topic == "channel.metadata"

    no_topic = parse_frame('{"eventBody":{}}', received_at=STAMP)
    assert no_topic.topic is None
    assert no_topic.payload == {"eventBody": {}}


@pytest.mark.parametrize("frame", ["[1, 2]", '"text"', "", b"\xff\xfe"])
def test_parse_frame_rejects_non_objects(frame) -> None:
    with pytest.raises(FrameParseError):
        parse_frame(frame, received_at=STAMP)
