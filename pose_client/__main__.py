"""
Entry point for `python -m pose_client`.

Usage:
    python -m pose_client [--team 9999] [--address 10.99.99.2] [--verbose]

Streams a synthetic pose (a slow circle on the field) so the link can be
exercised without tracking hardware. Reset commands are validated and logged.
"""

import asyncio
import argparse
import logging
import math
import signal
import sys
import time
from typing import Any

from .client import PoseClient
from .commands import CommandType, parse_pose_reset_payload
from .config import FIELD_LENGTH, FIELD_WIDTH, load_client_config
from .context import ClientContext
from .diagnostics import LOG_FORMAT, install_coalescing_handler
from .telemetry import DeviceHealth, PoseSample

logger = logging.getLogger("pose_client.cli")


class DemoPoseSource:
    """Circles the field center at a fixed angular rate."""

    def __init__(self, radius: float = 2.0, rate_dps: float = 20.0):
        self._radius = radius
        self._rate = math.radians(rate_dps)
        self._start = time.monotonic()
        self._offset = (0.0, 0.0, 0.0)
        self._yaw_offset = 0.0

    def sample(self) -> PoseSample:
        t = time.monotonic() - self._start
        angle = self._rate * t
        x = FIELD_LENGTH / 2 + self._radius * math.cos(angle) + self._offset[0]
        y = FIELD_WIDTH / 2 + self._radius * math.sin(angle) + self._offset[1]
        yaw = angle + math.pi / 2 + self._yaw_offset
        return PoseSample(
            position=(x, y, 0.0),
            orientation=(0.0, 0.0, math.sin(yaw / 2), math.cos(yaw / 2)),
            timestamp=time.time(),
        )

    def health(self) -> DeviceHealth:
        return DeviceHealth(battery_percent=100.0, tracking=True)

    def reset_to(self, x: float, y: float, rotation: float):
        current = self.sample()
        self._offset = (x - current.position[0], y - current.position[1], 0.0)
        self._yaw_offset = rotation - 2 * math.atan2(current.orientation[2], current.orientation[3])


class LoggingExecutor:
    """Applies reset commands to the demo source."""

    def __init__(self, source: DemoPoseSource):
        self._source = source

    def execute(self, command_type: CommandType, payload: Any) -> None:
        if command_type is CommandType.POSE_RESET:
            target = parse_pose_reset_payload(payload)
            self._source.reset_to(target.x, target.y, target.rotation)
            logger.info(f"Pose reset to x={target.x:.2f} y={target.y:.2f} rot={target.rotation:.2f}")
        elif command_type is CommandType.HEADING_RESET:
            current = self._source.sample()
            self._source.reset_to(current.position[0], current.position[1], 0.0)
            logger.info("Heading reset")


def parse_args():
    parser = argparse.ArgumentParser(description="Pose Client - NT4 pose streaming")
    parser.add_argument("--team", "-t", default=None, help="Team number (1-25599)")
    parser.add_argument("--address", "-a", default=None, help="Try this address first")
    parser.add_argument("--port", "-p", type=int, default=None)
    parser.add_argument("--rate", type=float, default=None, help="Fast tick rate (Hz)")
    parser.add_argument("--stats-interval", type=float, default=5.0, help="Seconds between stats lines")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser.parse_args()


async def run():
    args = parse_args()

    output = logging.StreamHandler(sys.stdout)
    output.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=[output],
    )
    diagnostics = install_coalescing_handler(output)

    try:
        config = load_client_config(
            team_number=args.team,
            address_override=args.address,
            port=args.port,
            main_rate_hz=args.rate,
        )
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        return 2

    print(f"Team:       {config.team_number}")
    print(f"Candidates: {', '.join(config.candidate_addresses())}\n")

    source = DemoPoseSource()
    client = PoseClient(LoggingExecutor(source), ctx=ClientContext(config=config), diagnostics=diagnostics)

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    async def stats_printer():
        while not shutdown.is_set():
            await asyncio.sleep(args.stats_interval)
            logger.info(f"[{client.status_message}] Stats: {client.stats}")

    task = asyncio.create_task(stats_printer())
    try:
        await client.run(source, shutdown)
    finally:
        task.cancel()
        await client.close()

    return 0


def main():
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
