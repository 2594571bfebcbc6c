"""
Pose Client
===========

Ties the components together into a two-rate tick loop:

    fast tick (100 Hz): supervisor -> heartbeat -> publish pose -> commands
    slow tick (3 Hz):   clock re-sync -> device health -> stats -> log flush

Neither tick awaits network I/O; connection attempts and socket traffic run
in background tasks owned by the Supervisor and the Session.
"""

import asyncio
import logging
from typing import Optional

from .commands import CommandDispatcher, CommandExecutor
from .config import ClientConfig
from .context import ClientContext
from .diagnostics import CoalescingLogHandler
from .heartbeat import HeartbeatMonitor
from .session import NtSession
from .stats import Stats
from .supervisor import ConnectionState, ConnectionSupervisor
from .telemetry import DeviceHealth, PosePublisher, PoseSample, PoseSource

logger = logging.getLogger(__name__)


class PoseClient:
    """Streams poses to the remote controller and serves its commands.

    Args:
        executor:    Performs heading/pose resets.
        config:      Connection settings; ignored when ``ctx`` is given.
        ctx:         Shared client context.
        supervisor:  Connection supervisor; one is built from ``ctx`` if omitted.
        diagnostics: Log handler flushed once per slow tick.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        config: Optional[ClientConfig] = None,
        ctx: Optional[ClientContext] = None,
        supervisor: Optional[ConnectionSupervisor] = None,
        diagnostics: Optional[CoalescingLogHandler] = None,
    ):
        self._ctx = ctx or ClientContext(config=config or ClientConfig())
        self.supervisor = supervisor or ConnectionSupervisor(self._ctx)
        self.heartbeat = HeartbeatMonitor(self._ctx)
        self.dispatcher = CommandDispatcher(executor)
        self.publisher = PosePublisher()
        self.stats = Stats()
        self.diagnostics = diagnostics

        registry = self._ctx.registry
        HeartbeatMonitor.register_topics(registry)
        CommandDispatcher.register_topics(registry)
        PosePublisher.register_topics(registry)

        self._last_resync = self._ctx.monotonic()
        self.supervisor.add_session_listener(self._on_session)

    # ---- Properties ----------------------------------------------------------

    @property
    def ctx(self) -> ClientContext:
        return self._ctx

    @property
    def connected(self) -> bool:
        return self.supervisor.connected

    @property
    def state(self) -> ConnectionState:
        return self.supervisor.state

    @property
    def status_message(self) -> str:
        return self.supervisor.status_message

    def peer_time_us(self) -> Optional[int]:
        """Current peer time, or None until the clock is synced."""
        session = self.supervisor.session
        return session.peer_time_us() if session is not None else None

    # ---- Ticks ---------------------------------------------------------------

    def fast_tick(self, sample: Optional[PoseSample] = None):
        """Advance the connection and exchange one round of data."""
        self.supervisor.tick()
        session = self.supervisor.session

        self.heartbeat.tick(session)
        if sample is not None:
            self.publisher.publish_pose(session, sample)

        response = self.dispatcher.tick(session)
        if response is not None:
            self.stats.record_command(response.success)

    def slow_tick(self, health: Optional[DeviceHealth] = None):
        """Housekeeping at a lower rate."""
        session = self.supervisor.session
        now = self._ctx.monotonic()

        if session is not None and session.is_connected():
            if now - self._last_resync >= self._ctx.config.resync_interval:
                session.send_clock_sync()
                self._last_resync = now

        if health is not None:
            self.publisher.publish_health(session, health)

        self.stats.update(session, self.heartbeat.state)
        if self.diagnostics is not None:
            self.diagnostics.flush()

    def _on_session(self, session: NtSession):
        self._last_resync = self._ctx.monotonic()
        logger.info(f"Session #{self.supervisor.connect_count} live on {session.address}")

    # ---- Run loop ------------------------------------------------------------

    async def run(self, source: PoseSource, stop: asyncio.Event):
        """Tick at the configured rates until ``stop`` is set."""
        cfg = self._ctx.config
        fast_period = 1.0 / cfg.main_rate_hz
        slow_period = 1.0 / cfg.slow_rate_hz
        next_slow = self._ctx.monotonic()

        while not stop.is_set():
            started = self._ctx.monotonic()
            self.fast_tick(self._sample(source))

            if started >= next_slow:
                self.slow_tick(self._health(source))
                next_slow = started + slow_period

            remaining = fast_period - (self._ctx.monotonic() - started)
            try:
                await asyncio.wait_for(stop.wait(), timeout=max(remaining, 0.0))
            except asyncio.TimeoutError:
                pass

    async def close(self):
        """Close the connection and flush pending diagnostics."""
        logger.info("Closing...")
        await self.supervisor.close()
        if self.diagnostics is not None:
            self.diagnostics.flush()

    @staticmethod
    def _sample(source: PoseSource) -> Optional[PoseSample]:
        try:
            return source.sample()
        except Exception as e:
            logger.error(f"Pose source error: {e}")
            return None

    @staticmethod
    def _health(source: PoseSource) -> Optional[DeviceHealth]:
        try:
            return source.health()
        except Exception as e:
            logger.error(f"Device health error: {e}")
            return None
