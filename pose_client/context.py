"""
Client Context
==============

Per-client state that would otherwise be process-wide: the configuration,
the topic registry, the local identifier counter and the clocks. Every
component takes the context in its constructor so that several clients
(e.g. in tests) never share tables.
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterator

from .config import ClientConfig
from .nt_protocol import current_time_us
from .topics import TopicRegistry


@dataclass
class ClientContext:
    """Shared dependencies for one client instance.

    Args:
        config:    Connection lifecycle settings.
        registry:  Topic/subscription definitions surviving reconnects.
        monotonic: Seconds clock for intervals, cooldowns and timeouts.
        wall_us:   Microsecond wall clock used for value timestamps.
        sleep:     Awaitable sleep used by background tasks.
    """

    config: ClientConfig = field(default_factory=ClientConfig)
    registry: TopicRegistry = field(default_factory=TopicRegistry)
    monotonic: Callable[[], float] = time.monotonic
    wall_us: Callable[[], int] = current_time_us
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    _ids: Iterator[int] = field(default_factory=lambda: itertools.count(1), repr=False)

    def next_uid(self) -> int:
        """Next local identifier. Never -1, which is reserved for clock sync."""
        return next(self._ids)
