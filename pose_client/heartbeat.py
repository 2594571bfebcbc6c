"""
Heartbeat Monitor
=================

Application-level ping/pong that tells a live peer from a "zombie" one: a
connection that is still open at the transport level but whose control loop
has stopped answering.

The monitor publishes a counter on the request topic and waits for the peer
to echo the same number on the response topic. Too many unanswered rounds in
a row abort the Session with a LivenessError, which the Supervisor then
handles exactly like a dropped connection.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import HEARTBEAT_COUNTER_WRAP, TOPIC_HEARTBEAT_REQUEST, TOPIC_HEARTBEAT_RESPONSE
from .context import ClientContext
from .errors import LivenessError
from .nt_protocol import SubscriptionOptions
from .session import NtSession
from .topics import TopicRegistry

logger = logging.getLogger(__name__)


@dataclass
class HeartbeatState:
    counter: int = 1
    pending_since: Optional[float] = None
    consecutive_failures: int = 0
    last_sent: float = 0.0
    last_round_trip: Optional[float] = None
    answered: int = 0


class HeartbeatMonitor:
    """Detects unresponsive peers on an open Session.

    Args:
        ctx: Shared client context; supplies the interval, timeout and
             failure threshold, and the monotonic clock.
    """

    def __init__(self, ctx: ClientContext):
        self._ctx = ctx
        self._session: Optional[NtSession] = None
        self.state = HeartbeatState(last_sent=ctx.monotonic())

    @staticmethod
    def register_topics(registry: TopicRegistry):
        """Record the heartbeat topics; every Session announces them on start."""
        registry.publish(TOPIC_HEARTBEAT_REQUEST, "double")
        registry.subscribe((TOPIC_HEARTBEAT_RESPONSE,), SubscriptionOptions())

    def reset(self):
        """Start over with counter 1, nothing pending, no failures."""
        self.state = HeartbeatState(last_sent=self._ctx.monotonic())

    def tick(self, session: Optional[NtSession]):
        """Send, check or time out a heartbeat. No-op unless connected."""
        if session is None or not session.is_connected():
            return
        if session is not self._session:
            self._session = session
            self.reset()

        cfg = self._ctx.config
        state = self.state
        now = self._ctx.monotonic()

        if state.pending_since is not None:
            if now - state.pending_since > cfg.heartbeat_timeout:
                state.consecutive_failures += 1
                state.pending_since = None
                logger.warning(
                    f"Heartbeat #{state.counter} timed out. "
                    f"Failed count: {state.consecutive_failures}"
                )
                if state.consecutive_failures >= cfg.max_failed_heartbeats:
                    logger.warning("Too many failed heartbeats, forcing reconnection")
                    session.abort(
                        LivenessError(f"{state.consecutive_failures} consecutive heartbeats unanswered")
                    )
                    return
            else:
                self._check_response(session, now)

        if state.pending_since is None and now - state.last_sent > cfg.heartbeat_interval:
            self._send(session, now)

    def _send(self, session: NtSession, now: float):
        state = self.state
        if not session.publish_value(TOPIC_HEARTBEAT_REQUEST, float(state.counter)):
            logger.warning(f"Could not send heartbeat #{state.counter}")
            return
        state.last_sent = now
        state.pending_since = now
        logger.debug(f"Sent heartbeat #{state.counter}")

    def _check_response(self, session: NtSession, now: float):
        state = self.state
        response = session.read_latest(TOPIC_HEARTBEAT_RESPONSE)
        if not isinstance(response, (int, float)) or isinstance(response, bool):
            return
        if int(response) != state.counter:
            return

        state.last_round_trip = now - state.pending_since
        state.pending_since = None
        state.consecutive_failures = 0
        state.answered += 1
        logger.debug(f"Received heartbeat response #{state.counter}")

        state.counter += 1
        if state.counter > HEARTBEAT_COUNTER_WRAP:
            state.counter = 1
