import asyncio
import json

from pose_client.client import PoseClient
from pose_client.config import (
    TOPIC_COMMAND_RESPONSE,
    TOPIC_FRAME_DATA,
    TOPIC_HEARTBEAT_REQUEST,
)
from pose_client.supervisor import ConnectionCandidate, ConnectionState, ConnectionSupervisor
from pose_client.telemetry import DeviceHealth, PoseSample

from .fakes import FakeConnector, passthrough_resolver, run_until, settle

SAMPLE = PoseSample(position=(1.0, 2.0, 0.0), orientation=(0.0, 0.0, 0.0, 1.0), timestamp=1.0)


class NullExecutor:
    def execute(self, command_type, payload):
        pass


class StaticSource:
    def __init__(self):
        self.samples = 0

    def sample(self):
        self.samples += 1
        return SAMPLE

    def health(self):
        return DeviceHealth(90.0, True)


def _client(ctx, connector):
    supervisor = ConnectionSupervisor(ctx, connector, passthrough_resolver, reachable=lambda: True)
    supervisor.candidates = [ConnectionCandidate("A")]
    return PoseClient(NullExecutor(), ctx=ctx, supervisor=supervisor)


def _pubuid(ws, name):
    for msg in ws.control_messages():
        if msg["method"] == "publish" and msg["params"]["name"] == name:
            return msg["params"]["pubuid"]
    raise AssertionError(f"{name} was not published")


def test_unanswered_heartbeats_force_reconnect(make_ctx, clock):
    connector = FakeConnector(accept=["A"])
    client = _client(make_ctx(), connector)

    async def scenario():
        await run_until(lambda: client.connected, client.fast_tick)
        ws = client.supervisor.session._ws
        client.heartbeat.state.counter = 42

        clock.advance(1.1)
        client.fast_tick()
        await settle()
        sent = [f.value for f in ws.value_frames() if f.topic_id == _pubuid(ws, TOPIC_HEARTBEAT_REQUEST)]

        states = []
        for _ in range(3):
            clock.advance(3.1)
            client.fast_tick()
            states.append(client.connected)

        client.fast_tick()
        state = client.state
        await run_until(lambda: len(connector.attempts) == 2)
        await client.close()
        return sent, states, state

    sent, states, state = asyncio.run(scenario())

    assert sent == [42.0]
    assert states == [True, True, False]
    assert state is ConnectionState.CONNECTING
    assert len(connector.attempts) == 2


def test_command_round_trip_over_session(make_ctx):
    client = _client(make_ctx(), FakeConnector(accept=["A"]))

    async def scenario():
        await run_until(lambda: client.connected, client.fast_tick)
        ws = client.supervisor.session._ws
        ws.announce(5, "/QuestNav/request", "json")
        ws.feed_frames([5, 1, 4, json.dumps({"type": "PING", "commandId": 9})])
        await settle()
        client.fast_tick()
        client.fast_tick()
        await settle()
        await client.close()
        return ws

    ws = asyncio.run(scenario())

    uid = _pubuid(ws, TOPIC_COMMAND_RESPONSE)
    responses = [json.loads(f.value) for f in ws.value_frames() if f.topic_id == uid]
    assert responses == [{"commandId": 9, "success": True, "errorMessage": ""}]
    assert client.stats.commands == 1


def test_poses_are_dropped_until_connected(make_ctx):
    client = _client(make_ctx(), FakeConnector(hang=["A"]))

    async def scenario():
        client.fast_tick(SAMPLE)
        client.slow_tick(DeviceHealth(50.0, True))
        await client.close()

    asyncio.run(scenario())

    assert client.publisher.frames_published == 0
    assert client.peer_time_us() is None


def test_run_loop_streams_poses(make_ctx):
    client = _client(make_ctx(main_rate_hz=200.0), FakeConnector(accept=["A"]))
    source = StaticSource()

    async def scenario():
        stop = asyncio.Event()
        runner = asyncio.create_task(client.run(source, stop))
        await run_until(lambda: client.publisher.frames_published >= 3)
        ws = client.supervisor.session._ws
        stop.set()
        await runner
        await settle()
        await client.close()
        return ws

    ws = asyncio.run(scenario())

    uid = _pubuid(ws, TOPIC_FRAME_DATA)
    frames = [f for f in ws.value_frames() if f.topic_id == uid]
    assert len(frames) >= 3
    assert frames[0].type_tag == 17
    assert source.samples >= 3


def test_resync_follows_interval(make_ctx, clock):
    client = _client(make_ctx(), FakeConnector(accept=["A"]))

    async def scenario():
        await run_until(lambda: client.connected, client.fast_tick)
        ws = client.supervisor.session._ws
        client.slow_tick()
        clock.advance(10.5)
        client.slow_tick()
        client.slow_tick()
        await settle()
        await client.close()
        return ws

    ws = asyncio.run(scenario())

    assert len([f for f in ws.value_frames() if f.is_clock_sync]) == 2


def test_reconnect_discards_previous_clock_offset(make_ctx):
    connector = FakeConnector(accept=["A"])
    client = _client(make_ctx(), connector)

    async def scenario():
        await run_until(lambda: client.connected, client.fast_tick)
        first = client.supervisor.session
        first._ws.feed_frames([-1, 5_000_000, 2, 1_000_000])
        await settle()
        synced = client.peer_time_us()

        client.supervisor.force_reconnect("peer rebooted")
        await run_until(lambda: client.connected, client.fast_tick)
        second = client.supervisor.session
        unsynced = client.peer_time_us()

        second._ws.feed_frames([-1, 9_000_000, 2, 2_000_000])
        await settle()
        resynced = client.peer_time_us()
        await client.close()
        return first, second, synced, unsynced, resynced

    first, second, synced, unsynced, resynced = asyncio.run(scenario())

    assert second is not first
    assert synced is not None
    assert unsynced is None
    assert resynced is not None
