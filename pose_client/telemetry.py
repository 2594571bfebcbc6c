"""
Pose Telemetry
==============

Publishes the device's pose and health to the remote controller.

FRAME DATA  (/QuestNav/frameData, double[]):
    [frame_count, timestamp_s, x, y, z, qx, qy, qz, qw]

DEVICE DATA (/QuestNav/deviceData, double[]):
    [tracking (1.0/0.0), tracking_lost_count, battery_percent]

Timestamps are the device's local clock in seconds.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from .config import TOPIC_DEVICE_DATA, TOPIC_FRAME_DATA
from .session import NtSession
from .topics import TopicRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoseSample:
    position: tuple[float, float, float]
    orientation: tuple[float, float, float, float]  # x, y, z, w
    timestamp: float
    frame_count: Optional[int] = None

    def to_array(self, frame_count: int) -> list[float]:
        return [float(frame_count), float(self.timestamp), *map(float, self.position), *map(float, self.orientation)]


@dataclass(frozen=True)
class DeviceHealth:
    battery_percent: float
    tracking: bool


class PoseSource(Protocol):
    """Provides the latest tracking data. Called once per tick."""

    def sample(self) -> Optional[PoseSample]: ...

    def health(self) -> DeviceHealth: ...


class TrackingMonitor:
    """Counts transitions from tracking to not tracking."""

    def __init__(self):
        self.lost_count = 0
        self._tracking: Optional[bool] = None

    @property
    def tracking(self) -> bool:
        return bool(self._tracking)

    def update(self, tracking: bool) -> int:
        if self._tracking and not tracking:
            self.lost_count += 1
            logger.warning(f"Tracking lost (count={self.lost_count})")
        elif self._tracking is False and tracking:
            logger.info("Tracking regained")
        self._tracking = tracking
        return self.lost_count


class PosePublisher:
    """Publishes frame and device data on the current Session."""

    def __init__(self):
        self.tracking = TrackingMonitor()
        self.frames_published = 0
        self._frame_count = 0

    @staticmethod
    def register_topics(registry: TopicRegistry):
        registry.publish(TOPIC_FRAME_DATA, "double[]")
        registry.publish(TOPIC_DEVICE_DATA, "double[]")

    def publish_pose(self, session: Optional[NtSession], sample: PoseSample) -> bool:
        """Publish one pose sample. Returns False if it was not sent."""
        self._frame_count += 1
        if session is None or not session.is_connected():
            return False
        frame_count = sample.frame_count if sample.frame_count is not None else self._frame_count
        if not session.publish_value(TOPIC_FRAME_DATA, sample.to_array(frame_count)):
            return False
        self.frames_published += 1
        return True

    def publish_health(self, session: Optional[NtSession], health: DeviceHealth) -> bool:
        # Tracking transitions are counted even while disconnected
        lost = self.tracking.update(health.tracking)
        if session is None or not session.is_connected():
            return False
        values = [1.0 if health.tracking else 0.0, float(lost), float(health.battery_percent)]
        return session.publish_value(TOPIC_DEVICE_DATA, values)
