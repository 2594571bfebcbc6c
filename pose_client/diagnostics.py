"""
Diagnostics Queue
=================

Log records from the client are buffered and written out in one batch from
the slow tick, so the fast tick never waits on a slow console. Consecutive
identical records are collapsed into a single line:

    Send queue full (1024), dropping message (repeated 37 times)
"""

import logging
import logging.handlers
import sys
from typing import Iterable, Iterator, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def _key(record: logging.LogRecord) -> tuple:
    return record.name, record.levelno, record.getMessage()


def coalesce(records: Iterable[logging.LogRecord]) -> Iterator[logging.LogRecord]:
    """Yield records with runs of identical messages merged into one."""
    first: Optional[logging.LogRecord] = None
    count = 0
    for record in records:
        if first is not None and _key(record) == _key(first):
            count += 1
            continue
        if first is not None:
            yield _repeated(first, count)
        first, count = record, 1
    if first is not None:
        yield _repeated(first, count)


def _repeated(record: logging.LogRecord, count: int) -> logging.LogRecord:
    if count == 1:
        return record
    merged = logging.makeLogRecord(record.__dict__)
    merged.msg = f"{record.getMessage()} (repeated {count} times)"
    merged.args = None
    return merged


class CoalescingLogHandler(logging.handlers.MemoryHandler):
    """MemoryHandler that merges duplicate records on flush.

    The buffer is flushed when full, when a CRITICAL record arrives, or when
    ``flush()`` is called (once per slow tick).

    Args:
        target:   Handler that receives the coalesced records.
        capacity: Records held before a forced flush.
    """

    def __init__(self, target: logging.Handler, capacity: int = 1000):
        super().__init__(capacity, flushLevel=logging.CRITICAL, target=target, flushOnClose=True)
        self.flush_count = 0

    def flush(self):
        self.acquire()
        try:
            if self.target is None or not self.buffer:
                return
            for record in coalesce(self.buffer):
                self.target.handle(record)
            self.buffer.clear()
            self.flush_count += 1
        finally:
            self.release()


def install_coalescing_handler(
    target: Optional[logging.Handler] = None,
    logger_name: str = "pose_client",
    capacity: int = 1000,
) -> CoalescingLogHandler:
    """Route ``logger_name`` records through a CoalescingLogHandler.

    Args:
        target:      Output handler; a stdout StreamHandler if omitted.
        logger_name: Logger whose records are batched. It stops propagating
                     so records are not written twice.
        capacity:    Buffer size before a forced flush.

    Returns:
        The installed handler; call ``flush()`` on it periodically.
    """
    if target is None:
        target = logging.StreamHandler(sys.stdout)
        target.setFormatter(logging.Formatter(LOG_FORMAT))
    handler = CoalescingLogHandler(target, capacity)
    log = logging.getLogger(logger_name)
    log.addHandler(handler)
    log.propagate = False
    return handler
