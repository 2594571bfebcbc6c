"""
Pose Client Package
===================

NT4 pub/sub client that streams 6-DOF poses from a tracking device to a
remote controller and serves its reset/ping commands, reconnecting across
cable pulls and peer reboots.

Modules:
    nt_protocol  - NT4 control messages and MessagePack value frames
    topics       - Topic/subscription registry surviving reconnects
    clock_sync   - Single-sample peer clock offset
    session      - One WebSocket connection to the peer
    supervisor   - Candidate cycling, cooldown and backoff
    heartbeat    - Application-level liveness check
    commands     - Command request/response dispatch
    telemetry    - Pose and device-health publishing
    diagnostics  - Batched, coalescing log output
    stats        - Link statistics
    client       - Two-rate tick orchestration
"""

from .errors import PoseClientError, TransportError, ProtocolError, LivenessError, CommandError
from .config import ClientConfig, load_client_config, validate_team_number
from .context import ClientContext
from .nt_protocol import Topic, Subscription, SubscriptionOptions, ValueFrame, current_time_us
from .topics import TopicRegistry
from .clock_sync import ClockSync, ClockSyncState
from .session import NtSession, open_session
from .supervisor import ConnectionState, ConnectionCandidate, ConnectionSupervisor
from .heartbeat import HeartbeatMonitor, HeartbeatState
from .commands import (
    CommandType,
    CommandEnvelope,
    CommandResponse,
    CommandExecutor,
    CommandDispatcher,
    PoseResetTarget,
    parse_pose_reset_payload,
)
from .telemetry import PoseSample, DeviceHealth, PoseSource, PosePublisher, TrackingMonitor
from .diagnostics import CoalescingLogHandler, install_coalescing_handler
from .stats import Stats
from .client import PoseClient

__all__ = [
    "PoseClientError",
    "TransportError",
    "ProtocolError",
    "LivenessError",
    "CommandError",
    "ClientConfig",
    "load_client_config",
    "validate_team_number",
    "ClientContext",
    "Topic",
    "Subscription",
    "SubscriptionOptions",
    "ValueFrame",
    "current_time_us",
    "TopicRegistry",
    "ClockSync",
    "ClockSyncState",
    "NtSession",
    "open_session",
    "ConnectionState",
    "ConnectionCandidate",
    "ConnectionSupervisor",
    "HeartbeatMonitor",
    "HeartbeatState",
    "CommandType",
    "CommandEnvelope",
    "CommandResponse",
    "CommandExecutor",
    "CommandDispatcher",
    "PoseResetTarget",
    "parse_pose_reset_payload",
    "PoseSample",
    "DeviceHealth",
    "PoseSource",
    "PosePublisher",
    "TrackingMonitor",
    "CoalescingLogHandler",
    "install_coalescing_handler",
    "Stats",
    "PoseClient",
]
