"""
Link Statistics
===============

Tracks clock-sync and heartbeat round trips over a sliding window, plus
traffic counters that add up across reconnections.
"""

from collections import deque
from typing import Optional

from .heartbeat import HeartbeatState
from .session import NtSession


class Stats:
    """Sliding-window link statistics.

    Args:
        window: Number of recent samples to keep for averaging.
    """

    def __init__(self, window: int = 100):
        self._clock_rtt_ms: deque[float] = deque(maxlen=window)
        self._heartbeat_rtt_ms: deque[float] = deque(maxlen=window)
        self.sessions: int = 0
        self.commands: int = 0
        self.commands_failed: int = 0

        self._session: Optional[NtSession] = None
        self._clock_samples = 0
        self._heartbeat: Optional[HeartbeatState] = None
        self._heartbeats_seen = 0
        self._closed_sent = 0
        self._closed_dropped = 0
        self._closed_rejected = 0

    def update(self, session: Optional[NtSession], heartbeat: HeartbeatState):
        """Pick up new samples from the current Session and heartbeat state."""
        if session is not None:
            self._observe_session(session)

        if heartbeat is not self._heartbeat:
            self._heartbeat = heartbeat
            self._heartbeats_seen = 0
        if heartbeat.answered > self._heartbeats_seen:
            self._heartbeats_seen = heartbeat.answered
            if heartbeat.last_round_trip is not None:
                self._heartbeat_rtt_ms.append(heartbeat.last_round_trip * 1000)

    def record_command(self, success: bool):
        self.commands += 1
        if not success:
            self.commands_failed += 1

    def _observe_session(self, session: NtSession):
        if session is not self._session:
            if self._session is not None:
                self._closed_sent += self._session.values_sent
                self._closed_dropped += self._session.values_dropped
                self._closed_rejected += self._session.frames_rejected
            self._session = session
            self._clock_samples = 0
            self.sessions += 1

        clock = session.clock
        if clock.sample_count > self._clock_samples:
            self._clock_samples = clock.sample_count
            self._clock_rtt_ms.append(clock.state.round_trip_us / 1000)

    @staticmethod
    def _avg(d: deque) -> float:
        """Average of a deque, or 0.0 if empty."""
        return sum(d) / len(d) if d else 0.0

    @property
    def avg_clock_rtt_ms(self) -> float:
        return self._avg(self._clock_rtt_ms)

    @property
    def avg_heartbeat_rtt_ms(self) -> float:
        return self._avg(self._heartbeat_rtt_ms)

    @property
    def values_sent(self) -> int:
        current = self._session.values_sent if self._session else 0
        return self._closed_sent + current

    @property
    def values_dropped(self) -> int:
        current = self._session.values_dropped if self._session else 0
        return self._closed_dropped + current

    @property
    def frames_rejected(self) -> int:
        current = self._session.frames_rejected if self._session else 0
        return self._closed_rejected + current

    def __str__(self) -> str:
        return (
            f"sessions={self.sessions} sent={self.values_sent} "
            f"dropped={self.values_dropped} rejected={self.frames_rejected} "
            f"cmds={self.commands} failed={self.commands_failed} "
            f"clock_rtt={self.avg_clock_rtt_ms:.1f}ms "
            f"hb_rtt={self.avg_heartbeat_rtt_ms:.1f}ms"
        )
