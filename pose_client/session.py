"""
NT4 Session
===========

Owns one WebSocket connection to the NT4 peer. Publishes and subscribes on
behalf of the tick loop, demultiplexes incoming control messages and value
frames, and keeps the latest value per topic.

Nothing here awaits on behalf of the caller: outbound messages go through a
FIFO queue drained by a writer task, inbound messages are handled by a
reader task. When the transport fails the Session flips to closed and stays
there; reconnecting is the Supervisor's job.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

import aiohttp

from .clock_sync import ClockSync
from .context import ClientContext
from .errors import ProtocolError, TransportError
from .nt_protocol import (
    SUBPROTOCOLS,
    ControlMessage,
    Subscription,
    SubscriptionOptions,
    Topic,
    ValueFrame,
    check_value,
    decode_control,
    decode_frames,
    decode_value,
)

logger = logging.getLogger(__name__)

QUEUED_VALUES_MAX = 256


@dataclass
class TopicValue:
    timestamp_us: int
    value: Any


class NtSession:
    """One open connection to the NT4 peer.

    Args:
        ctx:          Shared client context (config, registry, clocks).
        ws:           An open WebSocket (aiohttp.ClientWebSocketResponse).
        http_session: The aiohttp.ClientSession owning ``ws``, closed with it.
        address:      The resolved address this session is connected to.
    """

    def __init__(
        self,
        ctx: ClientContext,
        ws: aiohttp.ClientWebSocketResponse,
        http_session: Optional[aiohttp.ClientSession] = None,
        address: str = "",
    ):
        self._ctx = ctx
        self._ws = ws
        self._http = http_session
        self.address = address

        self._clock = ClockSync(ctx.wall_us)
        self._published: dict[str, Topic] = {}
        self._subscriptions: dict[int, Subscription] = {}
        self._latest: dict[str, TopicValue] = {}
        self._queued: dict[str, deque] = {}

        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=ctx.config.send_queue_size)
        self._tasks: list[asyncio.Task] = []
        self._connected = False
        self._started = False
        self._close_task: Optional[asyncio.Task] = None

        self.close_reason: Optional[TransportError] = None
        self.values_sent = 0
        self.values_dropped = 0
        self.frames_rejected = 0

    # ---- Properties ----------------------------------------------------------

    def is_connected(self) -> bool:
        return self._connected and not self._ws.closed

    @property
    def clock(self) -> ClockSync:
        return self._clock

    def peer_time_us(self) -> Optional[int]:
        """Current peer time, or None before the first clock round trip."""
        return self._clock.peer_time_us()

    # ---- Lifecycle -----------------------------------------------------------

    def start(self):
        """Announce every registered topic, sync clocks and start I/O tasks.

        Must be called from the running event loop. Announcements are queued
        before anything else, so they reach the peer before any value frame.
        """
        if self._started:
            return
        self._started = True
        self._connected = True

        registry = self._ctx.registry
        registry.clear_announced()
        for definition in registry.published():
            self.publish(definition.name, definition.type, definition.properties)
        for definition in registry.subscriptions():
            self.subscribe(definition.topics, definition.options)
        self.send_clock_sync()

        self._tasks.append(asyncio.create_task(self._recv_loop()))
        self._tasks.append(asyncio.create_task(self._send_loop()))
        logger.info(
            f"Session started on {self.address}: {len(self._published)} topics, "
            f"{len(self._subscriptions)} subscriptions"
        )

    def abort(self, reason: TransportError) -> asyncio.Task:
        """Mark the session closed now and tear it down in the background.

        Returns:
            The background close task (the same one on repeated calls).
        """
        self._mark_closed(reason)
        if self._close_task is None:
            self._close_task = asyncio.create_task(self.close())
        return self._close_task

    async def close(self):
        """Cancel I/O tasks and close the socket."""
        self._mark_closed(self.close_reason or TransportError("Closed locally"))

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        try:
            if not self._ws.closed:
                await self._ws.close()
            if self._http is not None and not self._http.closed:
                await self._http.close()
        except Exception as e:
            logger.warning(f"Error closing session to {self.address}: {e}")

    def _mark_closed(self, reason: TransportError):
        if not self._connected and self.close_reason is not None:
            return
        was_connected = self._connected
        self._connected = False
        self.close_reason = reason
        if was_connected:
            logger.warning(f"Session to {self.address} closed: {reason}")

    # ---- Publishing ----------------------------------------------------------

    def publish(
        self, name: str, type_str: str, properties: Optional[dict[str, Any]] = None
    ) -> Optional[Topic]:
        """Publish a topic. Calling it again for the same name is a no-op.

        The definition is always recorded in the registry, so a topic
        published while disconnected is announced on the next Session.

        Returns:
            The session's Topic, or None if not connected.
        """
        self._ctx.registry.publish(name, type_str, properties)
        if not self._connected:
            return None
        topic = self._published.get(name)
        if topic is not None:
            return topic
        topic = Topic(self._ctx.next_uid(), name, type_str, dict(properties or {}))
        self._published[name] = topic
        self._enqueue(ControlMessage.publish(topic).encode())
        return topic

    def unpublish(self, name: str):
        self._ctx.registry.unpublish(name)
        topic = self._published.pop(name, None)
        if topic is None:
            logger.warning(f"Attempted to unpublish topic that was not published: {name}")
            return
        if self._connected:
            self._enqueue(ControlMessage.unpublish(topic).encode())

    def publish_value(self, name: str, value: Any, timestamp_us: Optional[int] = None) -> bool:
        """Queue a value for a published topic.

        Values are dropped (returning False) when the session is closed, the
        topic was never published, or the value does not fit the topic type.

        Args:
            name:         Topic name.
            value:        Value matching the topic type.
            timestamp_us: Local publish time; defaults to now.
        """
        if not self.is_connected():
            return False
        topic = self._published.get(name)
        if topic is None:
            logger.debug(f"Dropping value for unpublished topic {name}")
            return False
        try:
            check_value(topic.type_tag, value)
        except ProtocolError as e:
            logger.warning(f"Dropping value for {name}: {e}")
            return False

        if timestamp_us is None:
            timestamp_us = self._ctx.wall_us()
        frame = ValueFrame(topic.uid, timestamp_us, topic.type_tag, value)
        if not self._enqueue(frame.encode()):
            return False
        self.values_sent += 1
        return True

    def send_clock_sync(self):
        if self._connected:
            self._enqueue(self._clock.request().encode())

    # ---- Subscribing ---------------------------------------------------------

    def subscribe(
        self,
        topics: Union[str, Sequence[str]],
        options: Optional[SubscriptionOptions] = None,
        **kwargs,
    ) -> int:
        """Subscribe to one or more topic names or prefixes.

        Args:
            topics:  A name or a list of names/prefixes.
            options: Delivery options; keyword arguments build one if omitted.

        Returns:
            The subscription uid, or -1 if not connected.
        """
        if isinstance(topics, str):
            topics = (topics,)
        topics = tuple(topics)
        if options is None:
            options = SubscriptionOptions(**kwargs)

        self._ctx.registry.subscribe(topics, options)
        if not self._connected:
            return -1
        for sub in self._subscriptions.values():
            if sub.topics == topics:
                return sub.uid
        sub = Subscription(self._ctx.next_uid(), topics, options)
        self._subscriptions[sub.uid] = sub
        self._enqueue(ControlMessage.subscribe(sub).encode())
        return sub.uid

    def unsubscribe(self, uid: int):
        sub = self._subscriptions.pop(uid, None)
        if sub is None:
            logger.warning(f"Attempted to unsubscribe from a subscription that does not exist: {uid}")
            return
        self._ctx.registry.unsubscribe(sub.topics)
        if self._connected:
            self._enqueue(ControlMessage.unsubscribe(sub).encode())

    # ---- Reading -------------------------------------------------------------

    def read_latest(self, name: str, default: Any = None) -> Any:
        """Latest value received for ``name``, or ``default``."""
        entry = self._latest.get(name)
        return entry.value if entry is not None else default

    def read_latest_entry(self, name: str) -> Optional[TopicValue]:
        return self._latest.get(name)

    def read_queued(self, name: str) -> list[TopicValue]:
        """Drain every value received for a send-all subscription."""
        queue = self._queued.get(name)
        if not queue:
            return []
        values = list(queue)
        queue.clear()
        return values

    # ---- Outbound ------------------------------------------------------------

    def _enqueue(self, payload: Union[str, bytes]) -> bool:
        try:
            self._outbox.put_nowait(payload)
            return True
        except asyncio.QueueFull:
            self.values_dropped += 1
            logger.warning(f"Send queue full ({self._outbox.maxsize}), dropping message")
            return False

    async def _send_loop(self):
        """Drain the outbound queue in order."""
        try:
            while True:
                payload = await self._outbox.get()
                if isinstance(payload, str):
                    await self._ws.send_str(payload)
                else:
                    await self._ws.send_bytes(payload)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Send error: {e}")
            self._mark_closed(TransportError(f"Send failed: {e}"))

    # ---- Inbound -------------------------------------------------------------

    async def _recv_loop(self):
        """Dispatch incoming messages by frame type."""
        reason = TransportError("Connection closed by peer")
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._handle_binary(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = TransportError(f"WebSocket error: {self._ws.exception()}")
                    break
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    break
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error(f"Recv error: {e}")
            reason = TransportError(f"Receive failed: {e}")
        self._mark_closed(reason)

    def _handle_text(self, data: str):
        try:
            messages = decode_control(data)
        except ProtocolError as e:
            self.frames_rejected += 1
            logger.warning(f"Dropping control frame: {e}")
            return

        registry = self._ctx.registry
        for msg in messages:
            try:
                if msg.method == "announce":
                    topic = Topic.from_announce(msg.params)
                    registry.announce(topic)
                    logger.debug(f"Announced {topic.name} ({topic.type}) id={topic.uid}")
                elif msg.method == "unannounce":
                    registry.unannounce(int(msg.params["id"]))
                elif msg.method == "properties":
                    registry.update_properties(str(msg.params["name"]), dict(msg.params.get("update") or {}))
            except (ProtocolError, KeyError, TypeError, ValueError) as e:
                self.frames_rejected += 1
                logger.warning(f"Dropping {msg.method} message: {e}")

    def _handle_binary(self, data: bytes):
        try:
            for frame in decode_frames(data):
                if frame.is_clock_sync:
                    self._handle_clock_echo(frame)
                else:
                    self._handle_value(frame)
        except ProtocolError as e:
            self.frames_rejected += 1
            logger.warning(f"Dropping binary message: {e}")

    def _handle_clock_echo(self, frame: ValueFrame):
        if not isinstance(frame.value, int) or isinstance(frame.value, bool):
            raise ProtocolError(f"Clock echo carries {frame.value!r}, expected int")
        self._clock.process(frame.timestamp_us, frame.value)

    def _handle_value(self, frame: ValueFrame):
        topic = self._ctx.registry.announced(frame.topic_id)
        try:
            value = decode_value(frame, topic)
        except ProtocolError as e:
            self.frames_rejected += 1
            logger.warning(f"Dropping value frame: {e}")
            return

        entry = TopicValue(frame.timestamp_us, value)
        self._latest[topic.name] = entry
        if self._wants_queue(topic.name):
            queue = self._queued.setdefault(topic.name, deque(maxlen=QUEUED_VALUES_MAX))
            queue.append(entry)

    def _wants_queue(self, name: str) -> bool:
        return any(s.options.send_all and s.matches(name) for s in self._subscriptions.values())


async def open_session(ctx: ClientContext, address: str) -> NtSession:
    """Open a WebSocket to ``address`` and wrap it in an unstarted NtSession.

    Raises:
        TransportError: the handshake failed.
    """
    cfg = ctx.config
    url = f"ws://{address}:{cfg.port}/nt/{cfg.app_name}"
    http = aiohttp.ClientSession()
    try:
        ws = await http.ws_connect(url, protocols=SUBPROTOCOLS, heartbeat=cfg.ws_heartbeat)
    except asyncio.CancelledError:
        await http.close()
        raise
    except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
        await http.close()
        raise TransportError(f"Connect to {url} failed: {e}") from e

    logger.info(f"Connected: {url} (protocol {ws.protocol})")
    return NtSession(ctx, ws, http, address)
