"""Connection supervisor: keeps one hub session alive and gates app discovery."""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from .config import HostConfig
from .hub import HubClient, HubTarget

LOG = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Lifecycle of the supervised connection."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RETRYING = "retrying"
    STOPPED = "stopped"


class AttemptOutcome(str, Enum):
    """How a single session attempt ended."""

    CONNECTED = "connected"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAULTED = "faulted"


@dataclass(frozen=True, slots=True)
class SupervisorTimings:
    """Probe cadence and retry cooldown, in seconds."""

    probe_interval: float = 1.0
    max_probes: int = 4
    cooldown: float = 30.0


@dataclass(slots=True)
class SessionAttempt:
    """One connect cycle against the hub."""

    target: HubTarget
    probes: int = 0
    outcome: AttemptOutcome | None = None


class AppCoordinator(Protocol):
    """What the supervisor needs from the app discovery coordinator."""

    async def enable(self, hub: HubClient, *, discover_on_startup: bool = True) -> object: ...


DiscoveryFactory = Callable[[HostConfig], AbstractAsyncContextManager[AppCoordinator]]
StateListener = Callable[[ConnectionState], None]


class ConnectionSupervisor:
    """Drives the connect, probe, discover, wait and cooldown cycle.

    ``run`` retries forever until the stop signal is set. Every wait races
    the stop signal, so shutdown never has to sit out a full probe interval,
    session or cooldown.
    """

    def __init__(
        self,
        hub: HubClient,
        *,
        discovery_factory: DiscoveryFactory,
        timings: SupervisorTimings | None = None,
    ) -> None:
        self._hub = hub
        self._discovery_factory = discovery_factory
        self._timings = timings or SupervisorTimings()
        self._state = ConnectionState.IDLE
        self._listeners: set[StateListener] = set()
        self._stopping: asyncio.Event | None = None
        self._session: asyncio.Task[None] | None = None
        self._last_attempt: SessionAttempt | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def last_attempt(self) -> SessionAttempt | None:
        """The most recent session attempt, for diagnostics."""

        return self._last_attempt

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to state transitions; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    async def run(self, config: HostConfig, stopping: asyncio.Event) -> None:
        """Supervise the hub connection until ``stopping`` is set."""

        if self._state is not ConnectionState.IDLE:
            raise RuntimeError(f"Supervisor cannot start from state {self._state.value}")
        self._stopping = stopping
        target = HubTarget(
            host=config.host,
            port=config.port,
            ssl=config.ssl,
            token=config.token,
            websocket_path=config.websocket_path,
        )
        LOG.info("Starting hub supervisor", extra={"url": target.url})
        try:
            while not stopping.is_set():
                attempt = SessionAttempt(target=target)
                self._last_attempt = attempt
                await self._run_attempt(config, attempt, stopping)
                if attempt.outcome is AttemptOutcome.CANCELLED or stopping.is_set():
                    break
                self._set_state(ConnectionState.RETRYING)
                if await self._wait_for_stop(stopping, self._timings.cooldown):
                    break
        except asyncio.CancelledError:
            self._cancel_session()
            raise
        except Exception:
            LOG.exception("Hub supervisor had unhandled exception, closing")
            self._cancel_session()
        finally:
            self._set_state(ConnectionState.STOPPED)
            LOG.info("Hub supervisor stopped")

    async def stop(self, timeout: float = 1.0) -> None:
        """Request shutdown and wait up to ``timeout`` seconds for the session.

        Returning means shutdown was initiated, not that the session released
        everything.
        """

        LOG.info("Stopping hub supervisor...")
        if self._stopping is not None:
            self._stopping.set()
        session = self._session
        if session is None:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        if not session.done():
            try:
                await asyncio.wait_for(self._hub.stop(), timeout)
            except asyncio.TimeoutError:
                LOG.warning("Hub client did not acknowledge stop in time")
            except Exception:
                LOG.exception("Hub client failed to stop")
        if not session.done():
            await asyncio.wait({session}, timeout=max(0.0, deadline - loop.time()))
        if session.done():
            _session_error(session)
        else:
            LOG.warning("Hub session still running after %g seconds, cancelling", timeout)
            session.cancel()
        if self._session is session:
            self._session = None

    async def _run_attempt(self, config: HostConfig, attempt: SessionAttempt, stopping: asyncio.Event) -> None:
        self._set_state(ConnectionState.CONNECTING)
        session = asyncio.create_task(self._hub.run(attempt.target, stopping), name="hubrunner-session")
        self._session = session
        try:
            if not await self._await_connected(attempt, session, stopping):
                if attempt.outcome is AttemptOutcome.CANCELLED:
                    return
                if session.done():
                    attempt.outcome = AttemptOutcome.FAULTED
                    LOG.warning(
                        "Hub connection failed, retrying in %g seconds...",
                        self._timings.cooldown,
                        extra={"error": str(_session_error(session))},
                    )
                else:
                    attempt.outcome = AttemptOutcome.TIMED_OUT
                    LOG.warning("Hub still unavailable, retrying in %g seconds...", self._timings.cooldown)
                return

            attempt.outcome = AttemptOutcome.CONNECTED
            self._set_state(ConnectionState.CONNECTED)
            async with self._discovery_factory(config) as discovery:
                try:
                    await discovery.enable(self._hub, discover_on_startup=True)
                except Exception:
                    LOG.exception("Failed to load applications")
                await self._wait_session(session, stopping)

            if stopping.is_set():
                attempt.outcome = AttemptOutcome.CANCELLED
                return
            error = _session_error(session)
            LOG.warning(
                "Hub disconnected, retrying in %g seconds...",
                self._timings.cooldown,
                extra={"error": str(error) if error else None},
            )
        finally:
            if attempt.outcome is not AttemptOutcome.CANCELLED:
                self._cancel_session()

    async def _await_connected(
        self,
        attempt: SessionAttempt,
        session: asyncio.Task[None],
        stopping: asyncio.Event,
    ) -> bool:
        while not self._hub.connected:
            if stopping.is_set():
                attempt.outcome = AttemptOutcome.CANCELLED
                return False
            if session.done() or attempt.probes >= self._timings.max_probes:
                return False
            attempt.probes += 1
            if await self._wait_for_stop(stopping, self._timings.probe_interval):
                attempt.outcome = AttemptOutcome.CANCELLED
                return False
        return True

    @staticmethod
    async def _wait_session(session: asyncio.Task[None], stopping: asyncio.Event) -> None:
        if stopping.is_set():
            return
        stop_waiter = asyncio.ensure_future(stopping.wait())
        try:
            await asyncio.wait({session, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()

    @staticmethod
    async def _wait_for_stop(stopping: asyncio.Event, timeout: float) -> bool:
        """Sleep up to ``timeout``; True if the stop signal fired."""

        try:
            await asyncio.wait_for(stopping.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _cancel_session(self) -> None:
        session = self._session
        self._session = None
        if session is None:
            return
        if session.done():
            _session_error(session)
        else:
            session.cancel()

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        LOG.debug("Supervisor state change", extra={"from": self._state.value, "to": state.value})
        self._state = state
        for listener in tuple(self._listeners):
            try:
                listener(state)
            except Exception:
                LOG.exception("Supervisor state listener failed")


def _session_error(session: asyncio.Task[None]) -> BaseException | None:
    """Return (and mark as retrieved) the exception a finished session raised."""

    if session.cancelled():
        return None
    return session.exception()


__all__ = [
    "AppCoordinator",
    "AttemptOutcome",
    "ConnectionState",
    "ConnectionSupervisor",
    "DiscoveryFactory",
    "SessionAttempt",
    "SupervisorTimings",
]
