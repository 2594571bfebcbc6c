import logging

import pytest

from pose_client.diagnostics import CoalescingLogHandler, install_coalescing_handler


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.messages = []

    def emit(self, record):
        self.messages.append(record.getMessage())


@pytest.fixture
def batched():
    target = ListHandler()
    handler = install_coalescing_handler(target, logger_name="pose_client.test_diagnostics")
    log = logging.getLogger("pose_client.test_diagnostics")
    log.setLevel(logging.DEBUG)
    yield log, handler, target
    log.removeHandler(handler)
    log.propagate = True


def test_records_wait_for_flush(batched):
    log, handler, target = batched
    log.info("hello")

    assert target.messages == []
    handler.flush()
    assert target.messages == ["hello"]


def test_consecutive_duplicates_are_collapsed(batched):
    log, handler, target = batched
    for _ in range(5):
        log.warning("Send queue full (%d), dropping message", 1024)
    log.warning("other")
    log.warning("Send queue full (%d), dropping message", 1024)

    handler.flush()

    assert target.messages == [
        "Send queue full (1024), dropping message (repeated 5 times)",
        "other",
        "Send queue full (1024), dropping message",
    ]


def test_critical_flushes_immediately(batched):
    log, handler, target = batched
    log.info("queued")
    log.critical("now")

    assert target.messages == ["queued", "now"]


def test_full_buffer_flushes():
    target = ListHandler()
    handler = CoalescingLogHandler(target, capacity=3)
    for i in range(3):
        handler.handle(logging.makeLogRecord({"msg": f"m{i}", "levelno": logging.INFO}))

    assert target.messages == ["m0", "m1", "m2"]
    assert handler.flush_count == 1
