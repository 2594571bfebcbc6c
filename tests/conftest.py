import pytest

from pose_client.config import ClientConfig
from pose_client.context import ClientContext

from .fakes import FakeClock


@pytest.fixture
def clock():
    return FakeClock(100.0)


@pytest.fixture
def make_ctx(clock):
    """Build a ClientContext on the fake clock with a deterministic wall clock."""

    def factory(**config) -> ClientContext:
        wall = iter(range(1_000_000, 10**12, 1_000))
        return ClientContext(config=ClientConfig(**config), monotonic=clock, wall_us=lambda: next(wall))

    return factory
