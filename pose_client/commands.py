"""
Command Protocol
================

Request/response envelopes exchanged with the remote controller, and the
dispatcher that turns requests into calls on the external command executor.

REQUEST  (/QuestNav/request, json):   {"type": 2, "commandId": 7, "payload": {...}}
RESPONSE (/QuestNav/response, json):  {"commandId": 7, "success": false,
                                       "errorMessage": "..."}

``type`` may be the integer code or the enum name. A request is executed at
most once per ``commandId``: the issuer keeps the last request visible until
it sends a new one, so the same envelope is read on many ticks. A command
counts as handled once its response has been sent; a response the Session
could not queue is retried on later ticks without running the command again.
"""

import json
import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional, Protocol

from .config import FIELD_LENGTH, FIELD_WIDTH, TOPIC_COMMAND_REQUEST, TOPIC_COMMAND_RESPONSE
from .errors import CommandError, ProtocolError
from .nt_protocol import SubscriptionOptions
from .session import NtSession
from .topics import TopicRegistry

logger = logging.getLogger(__name__)


class CommandType(IntEnum):
    """Command codes shared with the remote controller."""
    IDLE = 0
    HEADING_RESET = 1
    POSE_RESET = 2
    PING = 3

    @classmethod
    def parse(cls, raw: Any) -> "CommandType":
        if isinstance(raw, str):
            try:
                return cls[raw.strip().upper()]
            except KeyError:
                raise ProtocolError(f"Unknown command type {raw!r}") from None
        if isinstance(raw, int) and not isinstance(raw, bool):
            try:
                return cls(raw)
            except ValueError:
                raise ProtocolError(f"Unknown command type {raw!r}") from None
        raise ProtocolError(f"Command type must be int or str, got {raw!r}")


@dataclass(frozen=True)
class CommandEnvelope:
    command_id: int
    type: CommandType
    payload: Any = None

    @classmethod
    def from_wire(cls, raw: Any) -> "CommandEnvelope":
        """Decode a request from a JSON string (or an already-decoded dict).

        Raises:
            ProtocolError: not a JSON object, or a missing/invalid field.
        """
        if isinstance(raw, (str, bytes, bytearray)):
            try:
                raw = json.loads(raw)
            except ValueError as e:
                raise ProtocolError(f"Command request is not JSON: {e}") from e
        if not isinstance(raw, dict):
            raise ProtocolError(f"Command request must be an object, got {type(raw).__name__}")

        command_id = raw.get("commandId")
        if not isinstance(command_id, int) or isinstance(command_id, bool):
            raise ProtocolError(f"Command request has invalid commandId {command_id!r}")
        return cls(command_id, CommandType.parse(raw.get("type")), raw.get("payload"))


@dataclass(frozen=True)
class CommandResponse:
    command_id: int
    success: bool
    error_message: str = ""

    def to_wire(self) -> str:
        return json.dumps(
            {
                "commandId": self.command_id,
                "success": self.success,
                "errorMessage": self.error_message,
            },
            separators=(",", ":"),
        )


class CommandExecutor(Protocol):
    """Performs heading and pose resets on the tracking device.

    ``execute`` returns normally on success and raises CommandError when the
    command cannot be applied.
    """

    def execute(self, command_type: CommandType, payload: Any) -> None: ...


@dataclass(frozen=True)
class PoseResetTarget:
    """Field-relative reset target: meters and radians."""

    x: float
    y: float
    rotation: float


def parse_pose_reset_payload(payload: Any) -> PoseResetTarget:
    """Validate a pose reset payload.

    Accepts ``{"x": .., "y": .., "rotation": ..}`` or ``[x, y, rotation]``.
    Rotation is wrapped to [-pi, pi].

    Raises:
        CommandError: missing values, NaN/inf, or a position off the field.
    """
    try:
        if isinstance(payload, dict):
            x, y, rotation = (float(payload[k]) for k in ("x", "y", "rotation"))
        elif isinstance(payload, (list, tuple)) and len(payload) == 3:
            x, y, rotation = (float(v) for v in payload)
        else:
            raise CommandError(f"Pose reset payload must be {{x, y, rotation}} or [x, y, rotation], got {payload!r}")
    except (KeyError, TypeError, ValueError) as e:
        raise CommandError(f"Invalid pose reset payload: {e}") from e

    if not all(math.isfinite(v) for v in (x, y, rotation)):
        raise CommandError("Failed to get valid pose data (NaN or infinite value)")
    if not (0 <= x <= FIELD_LENGTH and 0 <= y <= FIELD_WIDTH):
        raise CommandError(f"Failed to get valid pose data (out of field bounds: ({x}, {y}))")
    return PoseResetTarget(x, y, math.remainder(rotation, 2 * math.pi))


class CommandDispatcher:
    """Executes each new command request once and publishes its response.

    The last handled id is kept across Sessions so a request the peer still
    retains after a reconnect is not replayed.

    Args:
        executor: Performs heading/pose resets.
    """

    def __init__(self, executor: CommandExecutor):
        self._executor = executor
        self.last_handled_id: Optional[int] = None
        self.last_response: Optional[CommandResponse] = None
        self._last_rejected: Any = None
        self._unsent: Optional[CommandResponse] = None

    @staticmethod
    def register_topics(registry: TopicRegistry):
        registry.subscribe((TOPIC_COMMAND_REQUEST,), SubscriptionOptions())
        registry.publish(TOPIC_COMMAND_RESPONSE, "json")

    def tick(self, session: Optional[NtSession]) -> Optional[CommandResponse]:
        """Process the pending request, if it is new.

        Returns:
            The response published this tick, if any.
        """
        if session is None or not session.is_connected():
            return None
        raw = session.read_latest(TOPIC_COMMAND_REQUEST)
        if raw is None:
            return None

        try:
            envelope = CommandEnvelope.from_wire(raw)
        except ProtocolError as e:
            if raw != self._last_rejected:
                self._last_rejected = raw
                logger.warning(f"Ignoring command request: {e}")
            return None

        if envelope.command_id == self.last_handled_id:
            return None

        if self._unsent is not None and self._unsent.command_id == envelope.command_id:
            response = self._unsent
        else:
            response = self.handle(envelope)
        if response is None:
            self.last_handled_id = envelope.command_id
            return None
        if not session.publish_value(TOPIC_COMMAND_RESPONSE, response.to_wire()):
            if response is not self._unsent:
                logger.warning(f"Could not publish response for command {response.command_id}, will retry")
            self._unsent = response
            return None

        self._unsent = None
        self.last_handled_id = envelope.command_id
        self.last_response = response
        return response

    def handle(self, envelope: CommandEnvelope) -> Optional[CommandResponse]:
        """Run one command. Never raises; failures become unsuccessful responses."""
        command_type = envelope.type
        if command_type is CommandType.IDLE:
            return None
        if command_type is CommandType.PING:
            logger.info("Ping received, responding...")
            return CommandResponse(envelope.command_id, True)
        if command_type in (CommandType.HEADING_RESET, CommandType.POSE_RESET):
            return self._execute(envelope)
        return CommandResponse(envelope.command_id, False, f"Unhandled command type {command_type!r}")

    def _execute(self, envelope: CommandEnvelope) -> CommandResponse:
        name = envelope.type.name
        logger.info(f"Executing {name} command #{envelope.command_id}")
        try:
            self._executor.execute(envelope.type, envelope.payload)
        except CommandError as e:
            logger.error(f"{name} command #{envelope.command_id} failed: {e}")
            return CommandResponse(envelope.command_id, False, str(e))
        except Exception as e:
            logger.error(f"Error during {name} command #{envelope.command_id}: {e!r}")
            return CommandResponse(envelope.command_id, False, f"Unexpected error during {name}: {e}")
        logger.info(f"{name} command #{envelope.command_id} completed successfully")
        return CommandResponse(envelope.command_id, True)
