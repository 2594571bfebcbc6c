"""
Reconnection Supervisor
=======================

Owns zero or one NtSession and the policy for replacing it.

    DISCONNECTED -> CONNECTING -> CONNECTED -> (DISCONNECTED on failure)

Connection attempts run in a background asyncio task that cycles through the
candidate addresses with a per-candidate cooldown and an exponential backoff
between full cycles. ``tick()`` only polls that task and swaps the finished
Session in, so a slow DNS lookup or a dead address never stalls the caller.
"""

import asyncio
import errno
import ipaddress
import logging
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

from .context import ClientContext
from .errors import LivenessError, TransportError
from .session import NtSession, open_session

logger = logging.getLogger(__name__)

Connector = Callable[[ClientContext, str], Awaitable[NtSession]]
Resolver = Callable[[str, int], Awaitable[str]]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class ConnectionCandidate:
    """One address the Supervisor may try. Failures cool down, never remove it."""

    address: str
    last_failure: Optional[float] = None
    last_error: str = ""

    def cooling_down(self, now: float, cooldown: float) -> bool:
        return self.last_failure is not None and now - self.last_failure < cooldown


async def resolve_ipv4(host: str, port: int) -> str:
    """Resolve ``host`` to its first IPv4 address without blocking the loop.

    Raises:
        TransportError: lookup failed, the name is malformed, or no IPv4 address.
    """
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, family=socket.AF_INET, type=socket.SOCK_STREAM)
    except (OSError, ValueError) as e:
        # ValueError covers UnicodeError from the idna codec (e.g. "bad..host")
        raise TransportError(f"DNS resolution failed for '{host}': {e}") from e
    if not infos:
        raise TransportError(f"DNS lookup returned no IPv4 for '{host}'")
    return infos[0][4][0]


def network_reachable(addresses: Sequence[str], port: int) -> bool:
    """Ask the OS whether any literal IPv4 candidate has a route.

    A UDP ``connect()`` only consults the routing table; nothing is sent.
    Hostname candidates are ignored. With no literal candidates the network
    is assumed reachable.
    """
    literals = []
    for address in addresses:
        try:
            literals.append(str(ipaddress.IPv4Address(address)))
        except ValueError:
            continue
    if not literals:
        return True

    for address in literals:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
                probe.connect((address, port))
            return True
        except OSError as e:
            if e.errno not in (errno.ENETUNREACH, errno.EHOSTUNREACH, errno.EADDRNOTAVAIL):
                return True
    return False


def _log_abandoned(task: asyncio.Task):
    """Retrieve the outcome of a task nobody awaits."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Abandoned task ended with {exc!r}")


class ConnectionSupervisor:
    """Keeps one Session alive across cable pulls and peer reboots.

    Args:
        ctx:       Shared client context.
        connector: Opens an unstarted Session to a resolved address.
        resolver:  Async name resolution (address, port) -> IPv4 string.
        reachable: OS-level network check; the cycle is skipped when False.
    """

    def __init__(
        self,
        ctx: ClientContext,
        connector: Connector = open_session,
        resolver: Resolver = resolve_ipv4,
        reachable: Optional[Callable[[], bool]] = None,
    ):
        self._ctx = ctx
        self._connector = connector
        self._resolver = resolver
        self._reachable = reachable or self._default_reachable

        self.candidates = [ConnectionCandidate(a) for a in ctx.config.candidate_addresses()]
        self._state = ConnectionState.DISCONNECTED
        self._session: Optional[NtSession] = None
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._failed_cycles = 0
        self._stale_attempts: set[asyncio.Task] = set()
        self._closing: set[asyncio.Task] = set()
        self._listeners: list[Callable[[NtSession], None]] = []

        self.status_message = "No Message"
        self.connected_address = ""
        self.connect_count = 0

    # ---- Properties ----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> Optional[NtSession]:
        return self._session

    @property
    def connected(self) -> bool:
        return self._session is not None and self._session.is_connected()

    @property
    def attempt_in_progress(self) -> bool:
        return self._state is ConnectionState.CONNECTING

    def next_backoff(self) -> float:
        """Delay after the current streak of failed cycles: min(base * 2^k, max)."""
        cfg = self._ctx.config
        return min(cfg.reconnect_base_delay * (2 ** self._failed_cycles), cfg.reconnect_max_delay)

    def add_session_listener(self, listener: Callable[[NtSession], None]):
        """Call ``listener(session)`` from ``tick()`` whenever a new Session goes live."""
        self._listeners.append(listener)

    # ---- Tick-side API -------------------------------------------------------

    def tick(self):
        """Advance the lifecycle. Never blocks; call it every tick."""
        if self._session is not None and not self._session.is_connected():
            reason = self._session.close_reason
            logger.warning(f"Robot disconnected ({reason}). Attempting to reconnect...")
            self.status_message = "robot disconnected - retrying"
            self._teardown()

        if self._task is not None and self._task.done():
            self._collect(self._task)

        if self._session is None:
            self.connect()

    def connect(self):
        """Start a connection attempt. No-op while connecting or connected."""
        if self._state is ConnectionState.CONNECTING:
            return
        if self._session is not None:
            return
        self._generation += 1
        self._state = ConnectionState.CONNECTING
        self._task = asyncio.create_task(self._connect_loop(self._generation))

    def force_reconnect(self, reason: str = "forced"):
        """Drop the current Session and start over."""
        logger.warning(f"Forcing reconnection: {reason}")
        if self._session is not None:
            self._session.abort(LivenessError(reason))
        self._teardown()
        self.connect()

    def set_team_number(self, team: str):
        """Switch to a new team's candidates, clearing failure history."""
        self._ctx.config = self._ctx.config.with_team(team)
        logger.info(f"Updating team number to {team}")
        self.candidates = [ConnectionCandidate(a) for a in self._ctx.config.candidate_addresses()]
        self._failed_cycles = 0
        self._teardown()
        self._supersede_attempt()
        self.connect()

    async def close(self):
        """Stop connecting and close the current Session."""
        self._generation += 1
        self._supersede_attempt()
        self._teardown()
        for task in list(self._stale_attempts):
            task.cancel()
        pending = self._stale_attempts | self._closing
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ---- Background connection attempts --------------------------------------

    async def _connect_loop(self, generation: int) -> Optional[NtSession]:
        cfg = self._ctx.config
        while not self._superseded(generation):
            if not self._reachable():
                self.status_message = "network unreachable - waiting"
                logger.warning(
                    f"Network not reachable. Waiting {cfg.unreachable_delay} seconds before reattempting."
                )
                await self._ctx.sleep(cfg.unreachable_delay)
                continue

            session = await self.run_cycle(generation)
            if session is not None:
                return session

            delay = self.next_backoff()
            self._failed_cycles += 1
            self.status_message = f"no connection to any candidate, retrying in {delay}s"
            logger.warning(
                f"Could not establish a connection with any candidate addresses. "
                f"Reattempting in {delay} second(s)..."
            )
            await self._ctx.sleep(delay)
        return None

    async def run_cycle(self, generation: Optional[int] = None) -> Optional[NtSession]:
        """Try each candidate not cooling down, in order, once.

        Returns:
            An unstarted Session for the first candidate that connects, or None.
        """
        cfg = self._ctx.config
        for candidate in self.candidates:
            if self._superseded(generation):
                return None
            if candidate.cooling_down(self._ctx.monotonic(), cfg.candidate_cooldown):
                logger.debug(
                    f"Skipping candidate {candidate.address} "
                    f"(failed less than {cfg.candidate_cooldown} seconds ago)."
                )
                continue

            self.status_message = f"attempting {candidate.address}"
            try:
                session = await asyncio.wait_for(self._attempt(candidate.address), cfg.connect_timeout)
            except asyncio.TimeoutError:
                self._record_failure(candidate, f"timed out after {cfg.connect_timeout}s")
                continue
            except (TransportError, OSError) as e:
                self._record_failure(candidate, str(e))
                continue
            except Exception as e:
                self._record_failure(candidate, repr(e))
                continue

            candidate.last_failure = None
            candidate.last_error = ""
            if self._superseded(generation):
                logger.info(f"Discarding superseded connection to {session.address}")
                self._track(self._closing, asyncio.create_task(session.close()))
                return None
            logger.info(f"Connected successfully to {session.address}.")
            return session
        return None

    async def _attempt(self, address: str) -> NtSession:
        resolved = await self._resolver(address, self._ctx.config.port)
        return await self._connector(self._ctx, resolved)

    def _record_failure(self, candidate: ConnectionCandidate, error: str):
        candidate.last_failure = self._ctx.monotonic()
        candidate.last_error = error
        self.status_message = f"connection failed to {candidate.address}"
        logger.warning(f"Connection attempt failed for {candidate.address}: {error}")

    def _superseded(self, generation: Optional[int]) -> bool:
        if generation is None:
            return False
        return generation != self._generation or self._session is not None

    # ---- Session handoff -----------------------------------------------------

    def _collect(self, task: asyncio.Task):
        self._task = None
        if self._session is None:
            self._state = ConnectionState.DISCONNECTED
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Connection attempt failed with exception: {exc!r}")
            return

        session = task.result()
        if session is None:
            return
        if self._session is not None:
            logger.info(f"Discarding stale connection to {session.address}")
            self._track(self._closing, asyncio.create_task(session.close()))
            return

        session.start()
        self._session = session
        self._state = ConnectionState.CONNECTED
        self._failed_cycles = 0
        self.connected_address = session.address
        self.connect_count += 1
        self.status_message = f"connected to {session.address}"
        for listener in self._listeners:
            listener(session)

    def _teardown(self):
        session = self._session
        self._session = None
        self.connected_address = ""
        if self._state is ConnectionState.CONNECTED:
            self._state = ConnectionState.DISCONNECTED
        if session is not None:
            self._track(self._closing, session.abort(session.close_reason or TransportError("Torn down")))

    def _supersede_attempt(self):
        if self._task is not None:
            self._track(self._stale_attempts, self._task)
            self._task = None
        self._state = ConnectionState.DISCONNECTED

    @staticmethod
    def _track(tasks: set, task: asyncio.Task):
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        task.add_done_callback(_log_abandoned)

    def _default_reachable(self) -> bool:
        return network_reachable(self._ctx.config.candidate_addresses(), self._ctx.config.port)
