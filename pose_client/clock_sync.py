"""
Clock Synchronization
=====================

Single-sample clock sync between this client and the NT4 peer, driven by the
reserved ``-1`` value frame. Each completed round trip fully replaces the
previous estimate; there is no filtering.

Offset convention:
    offset = peer_time - local_time
    peer_time = local_time + offset
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .nt_protocol import ValueFrame

logger = logging.getLogger(__name__)


@dataclass
class ClockSyncState:
    offset_us: int = 0
    round_trip_us: int = 0
    valid: bool = False


class ClockSync:
    """Estimates the peer clock offset for one Session.

    A new instance is created for every Session, so an offset is never
    carried across reconnections.

    Args:
        wall_us: Local microsecond clock.
    """

    def __init__(self, wall_us: Callable[[], int]):
        self._wall_us = wall_us
        self.state = ClockSyncState()
        self.sample_count = 0

    def request(self) -> ValueFrame:
        """Build a timestamp frame to send to the peer."""
        return ValueFrame.clock_request(self._wall_us())

    def process(self, peer_time_us: int, sent_us: int) -> ClockSyncState:
        """Process a peer echo and replace the offset estimate.

        Args:
            peer_time_us: Peer clock when it answered.
            sent_us:      Our local send time, echoed back by the peer.

        Returns:
            The updated state.
        """
        rx_us = self._wall_us()
        rtt = rx_us - sent_us
        latency = rtt // 2
        offset = (peer_time_us + latency) - rx_us

        self.state = ClockSyncState(offset_us=offset, round_trip_us=rtt, valid=True)
        self.sample_count += 1

        logger.info(
            f"Clock sync: peer time {(rx_us + offset) / 1e6:.3f}s "
            f"offset={offset / 1000:.1f}ms rtt={rtt / 1000:.1f}ms"
        )
        return self.state

    @property
    def synced(self) -> bool:
        return self.state.valid

    def peer_time_us(self, local_time_us: Optional[int] = None) -> Optional[int]:
        """Convert a local timestamp to peer time.

        Returns:
            The estimated peer timestamp, or None before the first round trip.
        """
        if not self.state.valid:
            return None
        if local_time_us is None:
            local_time_us = self._wall_us()
        return local_time_us + self.state.offset_us
