import json

import msgpack
import pytest

from pose_client.errors import ProtocolError
from pose_client.nt_protocol import (
    ControlMessage,
    Subscription,
    SubscriptionOptions,
    Topic,
    ValueFrame,
    check_value,
    decode_control,
    decode_frames,
    decode_value,
    type_tag,
)


def test_type_tags_follow_nt4_table():
    assert type_tag("boolean") == 0
    assert type_tag("double") == 1
    assert type_tag("int") == 2
    assert type_tag("float") == 3
    assert type_tag("string") == type_tag("json") == 4
    assert type_tag("double[]") == 17
    assert type_tag("string[]") == 20


def test_unknown_type_string_is_raw():
    assert type_tag("structschema") == 5


def test_subscription_options_require_positive_periodic():
    with pytest.raises(ValueError):
        SubscriptionOptions(periodic=0)
    assert SubscriptionOptions(periodic=0, send_all=True).send_all


def test_publish_message_params():
    msg = ControlMessage.publish(Topic(3, "/QuestNav/frameData", "double[]"))
    data = json.loads(msg.encode())

    assert data == [
        {
            "method": "publish",
            "params": {"name": "/QuestNav/frameData", "type": "double[]", "pubuid": 3, "properties": {}},
        }
    ]


def test_subscribe_message_params():
    sub = Subscription(7, ("/QuestNav/",), SubscriptionOptions(send_all=True, prefix=True))
    params = ControlMessage.subscribe(sub).params

    assert params["subuid"] == 7
    assert params["topics"] == ["/QuestNav/"]
    assert params["options"] == {"periodic": 0.1, "all": True, "topicsonly": False, "prefix": True}


def test_prefix_subscription_matches():
    sub = Subscription(1, ("/QuestNav/heartbeat",), SubscriptionOptions(prefix=True))
    assert sub.matches("/QuestNav/heartbeat/robot_to_quest")
    assert not sub.matches("/QuestNav/request")
    assert not Subscription(2, ("/a",)).matches("/a/b")


def test_decode_control_handles_several_messages_per_frame():
    text = json.dumps(
        [
            {"method": "announce", "params": {"name": "/a", "id": 1, "type": "int"}},
            {"method": "unannounce", "params": {"name": "/a", "id": 1}},
            {"bogus": True},
        ]
    )
    messages = decode_control(text)

    assert [m.method for m in messages] == ["announce", "unannounce"]


def test_decode_control_rejects_non_array():
    with pytest.raises(ProtocolError):
        decode_control('{"method": "announce"}')
    with pytest.raises(ProtocolError):
        decode_control("not json")


def test_announce_with_missing_id_is_protocol_error():
    with pytest.raises(ProtocolError):
        Topic.from_announce({"name": "/a", "type": "int"})


def test_clock_request_frame():
    frame = ValueFrame.clock_request(123456)
    assert msgpack.unpackb(frame.encode(), raw=False) == [-1, 0, 2, 123456]
    assert frame.is_clock_sync


def test_decode_frames_reads_concatenated_frames():
    data = msgpack.packb([1, 10, 1, 2.5]) + msgpack.packb([2, 11, 4, "hi"])
    frames = list(decode_frames(data))

    assert [(f.topic_id, f.value) for f in frames] == [(1, 2.5), (2, "hi")]


def test_decode_frames_rejects_malformed_frame():
    with pytest.raises(ProtocolError):
        list(decode_frames(msgpack.packb([1, 2, 3])))
    with pytest.raises(ProtocolError):
        list(decode_frames(msgpack.packb(["x", 2, 3, 4])))


def test_decode_value_checks_tag_against_topic():
    topic = Topic(5, "/a", "double")
    assert decode_value(ValueFrame(5, 0, 1, 1.5), topic) == 1.5

    with pytest.raises(ProtocolError):
        decode_value(ValueFrame(5, 0, 4, "1.5"), topic)
    with pytest.raises(ProtocolError):
        decode_value(ValueFrame(6, 0, 1, 1.5), None)


def test_check_value_rejects_wrong_payloads():
    check_value(17, [1.0, 2, 3.5])
    check_value(0, True)
    with pytest.raises(ProtocolError):
        check_value(17, [1.0, "x"])
    with pytest.raises(ProtocolError):
        check_value(2, True)
    with pytest.raises(ProtocolError):
        check_value(1, "1.0")
