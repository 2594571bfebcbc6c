"""
NT4 Protocol Module - Control Messages and Value Frames
=======================================================

Encoding/decoding for the two channels of a NetworkTables 4 connection.

CONTROL CHANNEL (WebSocket text frames):
  A JSON array of verb objects, several verbs may share one frame:
    [{"method": "publish",   "params": {"name", "type", "pubuid", "properties"}},
     {"method": "subscribe", "params": {"topics", "subuid", "options"}}]

  Sent:     publish, unpublish, subscribe, unsubscribe
  Received: announce, unannounce, properties

VALUE CHANNEL (WebSocket binary frames):
  One or more concatenated MessagePack arrays:
    [topic_id, timestamp_us, type_tag, value]

  topic_id == -1 is reserved for clock sync:
    client -> peer:  [-1, 0,         2, client_send_us]
    peer -> client:  [-1, peer_time, 2, client_send_us]

TYPE TAGS:
    boolean 0   double 1   int 2   float 3   string/json 4
    raw/rpc/msgpack/protobuf 5
    boolean[] 16   double[] 17   int[] 18   float[] 19   string[] 20
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

import msgpack

from .errors import ProtocolError


# =================
# CONSTANTS
# =================

CLOCK_SYNC_ID = -1

TYPE_TAGS: dict[str, int] = {
    "boolean": 0,
    "double": 1,
    "int": 2,
    "float": 3,
    "string": 4,
    "json": 4,
    "raw": 5,
    "rpc": 5,
    "msgpack": 5,
    "protobuf": 5,
    "boolean[]": 16,
    "double[]": 17,
    "int[]": 18,
    "float[]": 19,
    "string[]": 20,
}

RAW_TAG = TYPE_TAGS["raw"]
INT_TAG = TYPE_TAGS["int"]

SUBPROTOCOLS = ("v4.1.networktables.first.wpi.edu", "networktables.first.wpi.edu")


# ===================
# UTILITY FUNCTIONS
# ===================

def current_time_us() -> int:
    """Current wall-clock time in microseconds since Unix epoch."""
    return time.time_ns() // 1000


def type_tag(type_str: str) -> int:
    """Map an NT4 type string to its wire tag. Unknown types are raw bytes."""
    return TYPE_TAGS.get(type_str, RAW_TAG)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


_SCALAR_CHECKS = {
    0: lambda v: isinstance(v, bool),
    1: _is_number,
    2: _is_int,
    3: _is_number,
    4: lambda v: isinstance(v, str),
    5: lambda v: isinstance(v, (bytes, bytearray)),
}

_ARRAY_ELEMENT_TAGS = {16: 0, 17: 1, 18: 2, 19: 3, 20: 4}


def check_value(tag: int, value: Any) -> None:
    """Raise ProtocolError if ``value`` cannot be carried under ``tag``."""
    if tag in _SCALAR_CHECKS:
        ok = _SCALAR_CHECKS[tag](value)
    elif tag in _ARRAY_ELEMENT_TAGS:
        element_check = _SCALAR_CHECKS[_ARRAY_ELEMENT_TAGS[tag]]
        ok = isinstance(value, (list, tuple)) and all(element_check(v) for v in value)
    else:
        raise ProtocolError(f"Unknown type tag {tag}")
    if not ok:
        raise ProtocolError(f"Value of type {type(value).__name__} does not match tag {tag}")


# =================
# DATA CLASSES
# =================

@dataclass
class Topic:
    """A named, typed data channel.

    ``uid`` is the publisher id for topics we publish, or the peer-assigned
    topic id for announced topics.
    """

    uid: int
    name: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def type_tag(self) -> int:
        return type_tag(self.type)

    def to_publish_params(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "pubuid": self.uid,
            "properties": self.properties,
        }

    def to_unpublish_params(self) -> dict[str, Any]:
        return {"pubuid": self.uid}

    @classmethod
    def from_announce(cls, params: dict[str, Any]) -> "Topic":
        """Build a Topic from the params of an ``announce`` message."""
        try:
            properties = params.get("properties") or {}
            if isinstance(properties, str):
                properties = json.loads(properties)
            return cls(
                uid=int(params["id"]),
                name=str(params["name"]),
                type=str(params["type"]),
                properties=dict(properties),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed announce: {params!r}") from e


@dataclass(frozen=True)
class SubscriptionOptions:
    """Delivery options for a subscription.

    Args:
        periodic:    Update period in seconds (must be > 0 unless send_all).
        send_all:    Deliver every value change, queued locally.
        topics_only: Receive announcements only, no values.
        prefix:      Treat each topic name as a prefix.
    """

    periodic: float = 0.1
    send_all: bool = False
    topics_only: bool = False
    prefix: bool = False

    def __post_init__(self):
        if not self.send_all and not self.periodic > 0:
            raise ValueError(f"periodic must be > 0 unless send_all is set (got {self.periodic})")

    def to_params(self) -> dict[str, Any]:
        return {
            "periodic": self.periodic,
            "all": self.send_all,
            "topicsonly": self.topics_only,
            "prefix": self.prefix,
        }


@dataclass
class Subscription:
    uid: int
    topics: tuple[str, ...]
    options: SubscriptionOptions = field(default_factory=SubscriptionOptions)

    def matches(self, name: str) -> bool:
        if self.options.prefix:
            return any(name.startswith(t) for t in self.topics)
        return name in self.topics

    def to_subscribe_params(self) -> dict[str, Any]:
        return {
            "topics": list(self.topics),
            "subuid": self.uid,
            "options": self.options.to_params(),
        }

    def to_unsubscribe_params(self) -> dict[str, Any]:
        return {"subuid": self.uid}


@dataclass
class ControlMessage:
    """One ``{method, params}`` verb on the control channel."""

    method: str
    params: dict[str, Any]

    def to_obj(self) -> dict[str, Any]:
        return {"method": self.method, "params": self.params}

    def encode(self) -> str:
        return encode_control([self])

    @classmethod
    def publish(cls, topic: Topic) -> "ControlMessage":
        return cls("publish", topic.to_publish_params())

    @classmethod
    def unpublish(cls, topic: Topic) -> "ControlMessage":
        return cls("unpublish", topic.to_unpublish_params())

    @classmethod
    def subscribe(cls, sub: Subscription) -> "ControlMessage":
        return cls("subscribe", sub.to_subscribe_params())

    @classmethod
    def unsubscribe(cls, sub: Subscription) -> "ControlMessage":
        return cls("unsubscribe", sub.to_unsubscribe_params())


def encode_control(messages: list[ControlMessage]) -> str:
    """Encode verbs into one JSON-array text frame."""
    return json.dumps([m.to_obj() for m in messages], separators=(",", ":"))


def decode_control(text: str) -> list[ControlMessage]:
    """Decode a text frame into verbs.

    Entries without a string ``method`` or a dict ``params`` are skipped;
    a frame that is not a JSON array raises ProtocolError.
    """
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ProtocolError(f"Control frame is not JSON: {e}") from e
    if not isinstance(data, list):
        raise ProtocolError("Control frame is not a JSON array")

    messages = []
    for obj in data:
        if not isinstance(obj, dict):
            continue
        method = obj.get("method")
        params = obj.get("params")
        if isinstance(method, str) and isinstance(params, dict):
            messages.append(ControlMessage(method, params))
    return messages


@dataclass
class ValueFrame:
    """A single timestamped value on the binary channel."""

    topic_id: int
    timestamp_us: int
    type_tag: int
    value: Any

    @property
    def is_clock_sync(self) -> bool:
        return self.topic_id == CLOCK_SYNC_ID

    def encode(self) -> bytes:
        return msgpack.packb(
            [self.topic_id, self.timestamp_us, self.type_tag, self.value],
            use_bin_type=True,
        )

    @classmethod
    def from_obj(cls, obj: Any) -> "ValueFrame":
        if not isinstance(obj, (list, tuple)) or len(obj) != 4:
            raise ProtocolError(f"Value frame must be a 4-element array, got {obj!r}")
        topic_id, timestamp_us, tag, value = obj
        if not (_is_int(topic_id) and _is_int(timestamp_us) and _is_int(tag)):
            raise ProtocolError(f"Value frame header must be integers, got {obj[:3]!r}")
        return cls(topic_id, timestamp_us, tag, value)

    @classmethod
    def clock_request(cls, local_time_us: int) -> "ValueFrame":
        return cls(CLOCK_SYNC_ID, 0, INT_TAG, local_time_us)


def decode_frames(data: bytes) -> Iterator[ValueFrame]:
    """Decode every MessagePack frame in a binary message.

    Malformed entries raise ProtocolError when reached; frames decoded
    before the bad one have already been yielded.
    """
    unpacker = msgpack.Unpacker(raw=False)
    unpacker.feed(data)
    try:
        for obj in unpacker:
            yield ValueFrame.from_obj(obj)
    except (ValueError, msgpack.exceptions.UnpackException) as e:
        raise ProtocolError(f"Bad msgpack data: {e}") from e


def decode_value(frame: ValueFrame, topic: Optional[Topic]) -> Any:
    """Validate a frame against the topic it claims to belong to.

    Returns:
        The frame's value.

    Raises:
        ProtocolError: unknown topic, tag mismatch or payload of the wrong type.
    """
    if topic is None:
        raise ProtocolError(f"Value for unannounced topic id {frame.topic_id}")
    if frame.type_tag != topic.type_tag:
        raise ProtocolError(
            f"Type tag {frame.type_tag} does not match {topic.name} ({topic.type})"
        )
    check_value(frame.type_tag, frame.value)
    return frame.value
