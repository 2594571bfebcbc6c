"""
Topic Registry
==============

Holds what this client publishes and subscribes to, independent of any
connection, so every new Session can re-announce it. Also keeps the table of
topics the peer has announced on the current Session.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .nt_protocol import SubscriptionOptions, Topic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TopicDefinition:
    """A topic we publish: name and type, no per-session identifier."""

    name: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class SubscriptionDefinition:
    topics: tuple[str, ...]
    options: SubscriptionOptions = field(default_factory=SubscriptionOptions)


class TopicRegistry:
    """Session-independent topic and subscription definitions.

    ``publish`` and ``subscribe`` are idempotent: registering the same name
    (or the same topic list) twice keeps the first definition.
    """

    def __init__(self):
        self._published: dict[str, TopicDefinition] = {}
        self._subscriptions: dict[tuple[str, ...], SubscriptionDefinition] = {}
        self._announced: dict[int, Topic] = {}

    # ---- Published topics ----------------------------------------------------

    def publish(self, name: str, type_str: str, properties: Optional[dict[str, Any]] = None) -> bool:
        """Register a topic for publishing.

        Returns:
            True if the topic is new, False if it was already registered.
        """
        existing = self._published.get(name)
        if existing is not None:
            if existing.type != type_str:
                logger.warning(
                    f"Topic {name} already published as {existing.type}, ignoring {type_str}"
                )
            return False
        self._published[name] = TopicDefinition(name, type_str, dict(properties or {}))
        return True

    def unpublish(self, name: str) -> bool:
        return self._published.pop(name, None) is not None

    def published(self) -> list[TopicDefinition]:
        return list(self._published.values())

    def is_published(self, name: str) -> bool:
        return name in self._published

    # ---- Subscriptions -------------------------------------------------------

    def subscribe(self, topics: tuple[str, ...], options: SubscriptionOptions) -> bool:
        if topics in self._subscriptions:
            return False
        self._subscriptions[topics] = SubscriptionDefinition(topics, options)
        return True

    def unsubscribe(self, topics: tuple[str, ...]) -> bool:
        return self._subscriptions.pop(topics, None) is not None

    def subscriptions(self) -> list[SubscriptionDefinition]:
        return list(self._subscriptions.values())

    # ---- Peer announcements (current Session only) ---------------------------

    def announce(self, topic: Topic):
        stale = [uid for uid, t in self._announced.items() if t.name == topic.name]
        for uid in stale:
            del self._announced[uid]
        self._announced[topic.uid] = topic

    def unannounce(self, topic_id: int) -> Optional[Topic]:
        return self._announced.pop(topic_id, None)

    def update_properties(self, name: str, update: dict[str, Any]):
        topic = self.announced_by_name(name)
        if topic is None:
            return
        for key, value in update.items():
            if value is None:
                topic.properties.pop(key, None)
            else:
                topic.properties[key] = value

    def announced(self, topic_id: int) -> Optional[Topic]:
        return self._announced.get(topic_id)

    def announced_by_name(self, name: str) -> Optional[Topic]:
        for topic in self._announced.values():
            if topic.name == name:
                return topic
        return None

    def clear_announced(self):
        self._announced.clear()
