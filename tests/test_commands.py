import json
import math

import pytest

from pose_client.commands import (
    CommandDispatcher,
    CommandEnvelope,
    CommandResponse,
    CommandType,
    parse_pose_reset_payload,
)
from pose_client.config import TOPIC_COMMAND_REQUEST, TOPIC_COMMAND_RESPONSE
from pose_client.errors import CommandError, ProtocolError

from .fakes import StubSession


class RecordingExecutor:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def execute(self, command_type, payload):
        self.calls.append((command_type, payload))
        if self.error is not None:
            raise self.error


def _request(command_id, command_type, payload=None):
    body = {"type": command_type, "commandId": command_id}
    if payload is not None:
        body["payload"] = payload
    return json.dumps(body)


def _responses(session):
    return [json.loads(v) for v in session.values_for(TOPIC_COMMAND_RESPONSE)]


def test_envelope_accepts_int_or_name():
    assert CommandEnvelope.from_wire(_request(1, 2)).type is CommandType.POSE_RESET
    assert CommandEnvelope.from_wire(_request(1, "heading_reset")).type is CommandType.HEADING_RESET


@pytest.mark.parametrize(
    "raw",
    ["not json", "[1, 2]", '{"type": 3}', '{"type": 9, "commandId": 1}', '{"type": 3, "commandId": true}'],
)
def test_malformed_envelopes_raise(raw):
    with pytest.raises(ProtocolError):
        CommandEnvelope.from_wire(raw)


def test_response_wire_format():
    assert json.loads(CommandResponse(7, False, "nope").to_wire()) == {
        "commandId": 7,
        "success": False,
        "errorMessage": "nope",
    }


def test_same_command_id_handled_once():
    executor = RecordingExecutor()
    dispatcher = CommandDispatcher(executor)
    session = StubSession({TOPIC_COMMAND_REQUEST: _request(7, "POSE_RESET", {"x": 1, "y": 2, "rotation": 0})})

    for _ in range(5):
        dispatcher.tick(session)

    assert len(executor.calls) == 1
    assert _responses(session) == [{"commandId": 7, "success": True, "errorMessage": ""}]


def test_last_handled_id_survives_reconnect():
    executor = RecordingExecutor()
    dispatcher = CommandDispatcher(executor)
    request = {TOPIC_COMMAND_REQUEST: _request(3, "HEADING_RESET")}

    dispatcher.tick(StubSession(request))
    replayed = StubSession(request)
    dispatcher.tick(replayed)

    assert len(executor.calls) == 1
    assert replayed.published == []


def test_new_command_id_is_handled():
    executor = RecordingExecutor()
    dispatcher = CommandDispatcher(executor)
    session = StubSession({TOPIC_COMMAND_REQUEST: _request(1, 1)})
    dispatcher.tick(session)
    session.latest[TOPIC_COMMAND_REQUEST] = _request(2, 1)
    dispatcher.tick(session)

    assert [r["commandId"] for r in _responses(session)] == [1, 2]


def test_unsent_response_is_retried_without_rerunning():
    executor = RecordingExecutor()
    dispatcher = CommandDispatcher(executor)
    session = StubSession({TOPIC_COMMAND_REQUEST: _request(5, "HEADING_RESET")})
    session.accept = False

    assert dispatcher.tick(session) is None
    assert dispatcher.tick(session) is None
    assert dispatcher.last_handled_id is None

    session.accept = True
    response = dispatcher.tick(session)

    assert response == CommandResponse(5, True)
    assert dispatcher.last_handled_id == 5
    assert len(executor.calls) == 1
    assert _responses(session) == [{"commandId": 5, "success": True, "errorMessage": ""}]
    assert dispatcher.tick(session) is None


def test_unsent_response_is_dropped_for_newer_command():
    executor = RecordingExecutor()
    dispatcher = CommandDispatcher(executor)
    session = StubSession({TOPIC_COMMAND_REQUEST: _request(5, "HEADING_RESET")})
    session.accept = False
    dispatcher.tick(session)

    session.accept = True
    session.latest[TOPIC_COMMAND_REQUEST] = _request(6, "PING")
    dispatcher.tick(session)

    assert [r["commandId"] for r in _responses(session)] == [6]
    assert dispatcher.last_handled_id == 6


def test_ping_answers_without_executor():
    executor = RecordingExecutor()
    dispatcher = CommandDispatcher(executor)
    session = StubSession({TOPIC_COMMAND_REQUEST: _request(11, "PING")})

    response = dispatcher.tick(session)

    assert response == CommandResponse(11, True)
    assert executor.calls == []


def test_idle_is_marked_handled_without_response():
    dispatcher = CommandDispatcher(RecordingExecutor())
    session = StubSession({TOPIC_COMMAND_REQUEST: _request(4, 0)})

    assert dispatcher.tick(session) is None
    assert dispatcher.last_handled_id == 4
    assert session.published == []


def test_command_error_becomes_failed_response():
    dispatcher = CommandDispatcher(RecordingExecutor(CommandError("tracking lost")))
    session = StubSession({TOPIC_COMMAND_REQUEST: _request(5, "POSE_RESET", [1, 1, 0])})

    dispatcher.tick(session)

    assert _responses(session) == [{"commandId": 5, "success": False, "errorMessage": "tracking lost"}]


def test_unexpected_executor_error_is_contained():
    dispatcher = CommandDispatcher(RecordingExecutor(RuntimeError("boom")))
    session = StubSession({TOPIC_COMMAND_REQUEST: _request(6, "HEADING_RESET")})

    response = dispatcher.tick(session)

    assert not response.success
    assert "boom" in response.error_message


def test_malformed_request_is_ignored():
    executor = RecordingExecutor()
    dispatcher = CommandDispatcher(executor)
    session = StubSession({TOPIC_COMMAND_REQUEST: "{broken"})

    assert dispatcher.tick(session) is None
    assert dispatcher.tick(session) is None
    assert executor.calls == []


def test_disconnected_session_is_skipped():
    executor = RecordingExecutor()
    dispatcher = CommandDispatcher(executor)

    dispatcher.tick(StubSession({TOPIC_COMMAND_REQUEST: _request(1, 1)}, connected=False))
    dispatcher.tick(None)

    assert executor.calls == []
    assert dispatcher.last_handled_id is None


def test_pose_reset_payload_forms():
    target = parse_pose_reset_payload({"x": 1.5, "y": 2.5, "rotation": 3 * math.pi})
    assert (target.x, target.y) == (1.5, 2.5)
    assert abs(target.rotation) == pytest.approx(math.pi)

    assert parse_pose_reset_payload([16.54, 8.02, 0]).x == 16.54


@pytest.mark.parametrize(
    "payload",
    [
        {"x": float("nan"), "y": 1, "rotation": 0},
        {"x": 17.0, "y": 1, "rotation": 0},
        {"x": 1, "y": -0.1, "rotation": 0},
        {"x": 1, "y": 1},
        [1, 2],
        "1,2,3",
        None,
    ],
)
def test_invalid_pose_reset_payloads(payload):
    with pytest.raises(CommandError):
        parse_pose_reset_payload(payload)
