"""
Client Configuration
====================

Constants shared with the remote controller, plus the tunable settings of
the connection lifecycle. ``load_client_config`` materialises a frozen
``ClientConfig`` from environment overrides so the rest of the package never
reads ``os.environ`` directly.
"""

import os
import re
from dataclasses import dataclass, replace
from typing import Mapping, Optional

# =================
# CONSTANTS
# =================

NT_SERVER_PORT = 5810
APP_NAME = "QuestNav"
DEFAULT_TEAM_NUMBER = 9999

SERVER_ADDRESS_FORMAT = "10.TE.AM.2"
USB_ADDRESS = "172.22.11.2"
HOSTNAME_FORMATS = (
    "roboRIO-{team}-FRC.local",
    "roboRIO-{team}-FRC.lan",
    "roboRIO-{team}-FRC.frc-field.local",
)

# ---- Topic names (contract with the remote controller) ----
NT_BASE_PATH = "/QuestNav"
TOPIC_COMMAND_REQUEST = NT_BASE_PATH + "/request"
TOPIC_COMMAND_RESPONSE = NT_BASE_PATH + "/response"
TOPIC_FRAME_DATA = NT_BASE_PATH + "/frameData"
TOPIC_DEVICE_DATA = NT_BASE_PATH + "/deviceData"
TOPIC_HEARTBEAT_REQUEST = NT_BASE_PATH + "/heartbeat/quest_to_robot"
TOPIC_HEARTBEAT_RESPONSE = NT_BASE_PATH + "/heartbeat/robot_to_quest"

# ---- Field dimensions for pose resets (meters) ----
FIELD_LENGTH = 16.54
FIELD_WIDTH = 8.02

HEARTBEAT_COUNTER_WRAP = 1_000_000

_TEAM_RE = re.compile(r"^(?:[1-9]\d{0,3}|1\d{4}|2(?:[0-4]\d{3}|5[0-5]\d{2}))$")


def validate_team_number(team: str) -> str:
    """Return ``team`` stripped if it is an integer in 1..25599.

    Raises:
        ValueError: not a valid team number.
    """
    team = str(team).strip()
    if not _TEAM_RE.match(team):
        raise ValueError(f"Invalid team number: {team!r} (expected 1-25599)")
    return team


def team_address(team: str) -> str:
    """The ``10.TE.AM.2`` address for a team number."""
    te = team[:-2] if len(team) > 2 else "0"
    am = team[-2:] if len(team) > 2 else team
    return SERVER_ADDRESS_FORMAT.replace("TE", str(int(te))).replace("AM", str(int(am)))


@dataclass(frozen=True)
class ClientConfig:
    """Connection lifecycle settings. All durations are in seconds."""

    team_number: str = str(DEFAULT_TEAM_NUMBER)
    address_override: Optional[str] = None
    port: int = NT_SERVER_PORT
    app_name: str = APP_NAME

    connect_timeout: float = 3.0
    candidate_cooldown: float = 10.0
    reconnect_base_delay: float = 3.0
    reconnect_max_delay: float = 10.0
    unreachable_delay: float = 5.0

    heartbeat_interval: float = 1.0
    heartbeat_timeout: float = 3.0
    max_failed_heartbeats: int = 3

    resync_interval: float = 10.0
    ws_heartbeat: Optional[float] = 25.0
    send_queue_size: int = 1024

    main_rate_hz: float = 100.0
    slow_rate_hz: float = 3.0

    def __post_init__(self):
        validate_team_number(self.team_number)

    def candidate_addresses(self) -> list[str]:
        """Ordered connection candidates: override, team IP, USB, hostnames."""
        candidates = []
        if self.address_override:
            candidates.append(self.address_override)
        candidates.append(team_address(self.team_number))
        candidates.append(USB_ADDRESS)
        candidates.extend(fmt.format(team=self.team_number) for fmt in HOSTNAME_FORMATS)
        # Preserve order, drop duplicates
        return list(dict.fromkeys(candidates))

    def with_team(self, team: str) -> "ClientConfig":
        return replace(self, team_number=validate_team_number(team))


def _env_str(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    raw = env.get(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw if raw else default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw, 10)
    except ValueError:
        return default


def load_client_config(env: Optional[Mapping[str, str]] = None, **overrides) -> ClientConfig:
    """Build a ClientConfig from ``POSE_CLIENT_*`` environment variables.

    Keyword overrides (typically CLI flags) win over the environment;
    ``None`` overrides are ignored.
    """
    if env is None:
        env = os.environ
    base = ClientConfig()
    values = {
        "team_number": _env_str(env, "POSE_CLIENT_TEAM", base.team_number),
        "address_override": _env_str(env, "POSE_CLIENT_ADDRESS", base.address_override),
        "port": _env_int(env, "POSE_CLIENT_PORT", base.port),
        "app_name": _env_str(env, "POSE_CLIENT_APP_NAME", base.app_name),
        "connect_timeout": _env_float(env, "POSE_CLIENT_CONNECT_TIMEOUT", base.connect_timeout),
        "candidate_cooldown": _env_float(env, "POSE_CLIENT_CANDIDATE_COOLDOWN", base.candidate_cooldown),
        "reconnect_base_delay": _env_float(env, "POSE_CLIENT_RECONNECT_DELAY", base.reconnect_base_delay),
        "reconnect_max_delay": _env_float(env, "POSE_CLIENT_RECONNECT_MAX_DELAY", base.reconnect_max_delay),
        "heartbeat_interval": _env_float(env, "POSE_CLIENT_HEARTBEAT_INTERVAL", base.heartbeat_interval),
        "heartbeat_timeout": _env_float(env, "POSE_CLIENT_HEARTBEAT_TIMEOUT", base.heartbeat_timeout),
        "max_failed_heartbeats": _env_int(env, "POSE_CLIENT_MAX_FAILED_HEARTBEATS", base.max_failed_heartbeats),
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ClientConfig(**values)
