"""
WebSocket notification subscription engine.

One engine owns at most one live connection. `subscribe()` replaces the whole
topic set: any current connection is closed ("resubscribe") and a brand-new one
is opened with a freshly fetched bearer token, followed by a single
{"type": "subscribe", "topics": [...]} frame. A receive task then hands every
inbound frame, in arrival order, to the sink callback until the socket closes.

There is no automatic reconnect. When the peer closes the socket the engine
drops back to IDLE and the caller may subscribe() again.

Contract: subscribe()/unsubscribe() on one engine must be serialized by the
caller. Overlapping calls raise ConcurrentOperationError instead of racing.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Iterable, Optional, Union

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import ConcurrentOperationError, FrameParseError, SubscriptionFailed
from ..logging_config import get_logger
from .models import NotificationEvent

CLOSE_NORMAL = 1000

NotificationSink = Callable[[NotificationEvent], None]
FrameErrorHook = Callable[[FrameParseError], None]


class EngineState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CLOSING = "closing"


@dataclass
class _Subscription:
    connection: Any
    topics: tuple[str, ...]
    receive_task: Optional[asyncio.Task] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_frame(message: Union[str, bytes], *, received_at: datetime) -> NotificationEvent:
    """
    Turn one inbound frame into a NotificationEvent.

    The frame must be a JSON object. The topic comes from `topic`, falling
    back to `topicName`; the whole object is kept as the payload.
    """
    if isinstance(message, (bytes, bytearray, memoryview)):
        try:
            text = bytes(message).decode("utf-8")
        except UnicodeDecodeError as e:
            raise FrameParseError(f"frame is not valid UTF-8: {e}", raw=message) from e
    else:
        text = message

    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise FrameParseError(f"frame is not valid JSON: {e}", raw=message) from e
    if not isinstance(obj, dict):
        raise FrameParseError(f"frame is a JSON {type(obj).__name__}, expected an object", raw=message)

    topic = obj.get("topic")
    if topic is None:
        topic = obj.get("topicName")
    return NotificationEvent(
        topic=str(topic) if topic is not None else None,
        received_at=received_at,
        payload=obj,
    )


class SubscriptionEngine:
    """
    Subscribe to notification topics over one WebSocket connection.

    Args:
        url: Notification WebSocket URL (wss://api.<region>/notifications).
        token_provider: Blocking callable returning a bearer token; called once
            per subscribe() in a worker thread, never cached by the engine.
        sink: Called synchronously from the receive task for every notification.
            An asyncio.Queue's put_nowait works as a sink.
        on_frame_error: Optional diagnostic hook for frames that fail to parse.
        connect: WebSocket connect coroutine (websockets.asyncio.client.connect).
        clock: Returns the aware UTC time stamped on each received notification.
        open_timeout: Handshake timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        token_provider: Callable[[], str],
        sink: NotificationSink,
        *,
        on_frame_error: Optional[FrameErrorHook] = None,
        connect: Callable[..., Any] = ws_connect,
        clock: Callable[[], datetime] = _utc_now,
        open_timeout: Optional[float] = 10.0,
        log: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self._url = url
        self._token_provider = token_provider
        self._sink = sink
        self._on_frame_error = on_frame_error
        self._connect = connect
        self._clock = clock
        self._open_timeout = open_timeout
        self._log = get_logger("engine", log)

        self._state = EngineState.IDLE
        self._active: Optional[_Subscription] = None
        self._lock = asyncio.Lock()
        self._receive_tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def topics(self) -> tuple[str, ...]:
        return self._active.topics if self._active is not None else ()

    async def __aenter__(self) -> "SubscriptionEngine":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.unsubscribe()

    @contextlib.asynccontextmanager
    async def _exclusive(self, operation: str) -> AsyncIterator[None]:
        if self._lock.locked():
            raise ConcurrentOperationError(
                f"{operation}() called while another subscribe/unsubscribe is in progress; "
                "calls on one engine must be serialized by the caller"
            )
        async with self._lock:
            yield

    async def subscribe(self, topic_names: Iterable[str]) -> None:
        topics = tuple(topic_names)
        async with self._exclusive("subscribe"):
            if self._active is not None:
                self._log.info("resubscribing; closing current connection")
                await self._close_active(reason="resubscribe")

            self._state = EngineState.CONNECTING
            try:
                connection = await self._open(topics)
            except BaseException:
                self._state = EngineState.IDLE
                raise

            subscription = _Subscription(connection=connection, topics=topics)
            self._active = subscription
            self._state = EngineState.SUBSCRIBED
            task = asyncio.create_task(self._receive_loop(subscription), name="notification-receive")
            subscription.receive_task = task
            self._receive_tasks.add(task)
            task.add_done_callback(self._receive_tasks.discard)
            self._log.info("subscribed to %d topic(s)", len(topics))
            self._log.debug("subscribed topics: %s", list(topics))

    async def unsubscribe(self) -> None:
        async with self._exclusive("unsubscribe"):
            subscription = self._active
            if subscription is None:
                return
            self._state = EngineState.CLOSING
            try:
                await subscription.connection.send(json.dumps({"type": "unsubscribe"}))
            except (OSError, WebSocketException) as e:
                self._log.debug("unsubscribe frame not sent: %s", e)
            await self._close_active(reason="unsubscribe")
            self._log.info("unsubscribed")

    async def wait_closed(self) -> None:
        """Wait until the current connection's receive loop ends. Returns at once when idle."""
        subscription = self._active
        if subscription is None or subscription.receive_task is None:
            return
        await asyncio.wait({subscription.receive_task})

    async def _open(self, topics: tuple[str, ...]) -> Any:
        token = await asyncio.to_thread(self._token_provider)
        headers = {"Authorization": f"Bearer {token}"}
        self._log.debug("connecting to %s", self._url)
        try:
            connection = await self._connect(self._url, additional_headers=headers, open_timeout=self._open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise SubscriptionFailed(f"Could not connect to {self._url}: {e}") from e

        frame = json.dumps({"type": "subscribe", "topics": list(topics)})
        try:
            await connection.send(frame)
        except (OSError, WebSocketException) as e:
            await self._dispose(connection, reason="subscribe failed")
            raise SubscriptionFailed(f"Could not send subscribe frame to {self._url}: {e}") from e
        return connection

    async def _close_active(self, *, reason: str) -> None:
        subscription = self._active
        self._active = None
        if subscription is not None:
            self._state = EngineState.CLOSING
            await self._dispose(subscription.connection, reason=reason)
        self._state = EngineState.IDLE

    async def _dispose(self, connection: Any, *, reason: str) -> None:
        try:
            await connection.close(code=CLOSE_NORMAL, reason=reason)
        except (OSError, WebSocketException) as e:
            self._log.debug("error while closing connection (%s): %s", reason, e)

    async def _receive_loop(self, subscription: _Subscription) -> None:
        try:
            async for message in subscription.connection:
                self._dispatch(message, received_at=self._clock())
        except ConnectionClosed as e:
            self._log.info("notification socket closed: %s", e)
        except Exception:
            self._log.exception("notification receive loop failed")
            await self._dispose(subscription.connection, reason="receive failed")
        finally:
            if self._active is subscription:
                # Closed by the peer, not by us: nothing left to unsubscribe.
                self._active = None
                self._state = EngineState.IDLE
            self._log.debug("receive loop ended (topics=%d)", len(subscription.topics))

    def _dispatch(self, message: Union[str, bytes], *, received_at: datetime) -> None:
        try:
            event = parse_frame(message, received_at=received_at)
        except FrameParseError as e:
            self._log.warning("dropping malformed notification frame: %s", e)
            if self._on_frame_error is not None:
                try:
                    self._on_frame_error(e)
                except Exception:
                    self._log.exception("frame error hook raised")
            return

        try:
            self._sink(event)
        except Exception:
            self._log.exception("notification sink raised for topic %s", event.topic)
