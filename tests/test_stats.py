import asyncio

import pytest

from pose_client.heartbeat import HeartbeatState
from pose_client.session import NtSession
from pose_client.stats import Stats

from .fakes import FakeWebSocket


def test_counters_accumulate_across_sessions(make_ctx):
    ctx = make_ctx()

    async def sessions():
        return NtSession(ctx, FakeWebSocket(), None, "A"), NtSession(ctx, FakeWebSocket(), None, "B")

    first, second = asyncio.run(sessions())
    stats = Stats()

    first.values_sent = 5
    first.values_dropped = 1
    stats.update(first, HeartbeatState())
    second.values_sent = 2
    stats.update(second, HeartbeatState())

    assert stats.sessions == 2
    assert stats.values_sent == 7
    assert stats.values_dropped == 1


def test_round_trips_are_sampled_once(make_ctx):
    ctx = make_ctx()

    async def session():
        return NtSession(ctx, FakeWebSocket(), None, "A")

    s = asyncio.run(session())
    stats = Stats()
    heartbeat = HeartbeatState(answered=1, last_round_trip=0.020)

    s.clock.process(peer_time_us=5_000_000, sent_us=ctx.wall_us() - 4_000)
    stats.update(s, heartbeat)
    stats.update(s, heartbeat)

    assert stats.avg_heartbeat_rtt_ms == pytest.approx(20.0)
    assert stats.avg_clock_rtt_ms > 0
    assert len(stats._heartbeat_rtt_ms) == 1
    assert len(stats._clock_rtt_ms) == 1


def test_command_outcomes():
    stats = Stats()
    stats.record_command(True)
    stats.record_command(False)

    assert (stats.commands, stats.commands_failed) == (2, 1)
    assert "cmds=2 failed=1" in str(stats)
