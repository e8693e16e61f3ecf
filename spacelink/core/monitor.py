"""Polling monitor for the local server and the remote editor server."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from spacelink.constants import MONITOR_INTERVAL_SECONDS, MONITOR_MAX_CHECKS, MonitorState
from spacelink.core.errors import classify_failure
from spacelink.services.server import ServerInfo
from spacelink.services.ssh import ConnectionTestResult, RemoteInstallState

logger = logging.getLogger(__name__)


class ServerProbe(Protocol):
    def check(self) -> ServerInfo: ...


class RemoteProbe(Protocol):
    def check_installation(self) -> RemoteInstallState: ...

    def list_server_dirs(self): ...

    def test_connection(self) -> ConnectionTestResult: ...


@dataclass
class TickStatus:
    """Observations of one monitor tick.

    Attributes
    ----------
    host_key : str
        Monitored host alias
    check : int
        Tick number, starting at 1
    max_checks : int
        Tick budget of the session
    server : ServerInfo | None
        Local server snapshot, None if not probed or the probe failed
    remote : RemoteInstallState | None
        Remote installation snapshot, None if the probe failed
    failures : list[str]
        Classified probe failures of this tick
    detail : str
        Extra remote output, such as the server directory listing
    """

    host_key: str
    check: int
    max_checks: int
    server: ServerInfo | None = None
    remote: RemoteInstallState | None = None
    failures: list[str] = field(default_factory=list)
    detail: str = ""

    @property
    def remote_ready(self) -> bool:
        return self.remote is not None and self.remote.process_running

    def format(self) -> str:
        parts = [f"[{self.host_key}] check {self.check}/{self.max_checks}"]

        if self.server is not None:
            if self.server.running:
                parts.append(f"local server running (pid {self.server.pid}, port {self.server.port})")
            else:
                parts.append(f"local server down: {self.server.error}")

        if self.remote is not None:
            parts.append(f"remote: {self.remote.details}")

        if self.failures:
            parts.append(f"failures: {', '.join(self.failures)}")

        return " | ".join(parts)


@dataclass
class MonitorSession:
    """One monitoring run for a host.

    Attributes
    ----------
    host_key : str
        Monitored host alias
    max_checks : int
        Tick budget
    started_at : float
        Monotonic start time
    check_count : int
        Ticks completed so far
    state : MonitorState
        Current state
    last_status : TickStatus | None
        Status of the last tick that was not discarded
    """

    host_key: str
    max_checks: int
    started_at: float = field(default_factory=time.monotonic)
    check_count: int = 0
    state: MonitorState = MonitorState.IDLE
    last_status: TickStatus | None = None
    thread: threading.Thread | None = field(default=None, repr=False)
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    _state_lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def transition(self, state: MonitorState) -> bool:
        """Move to ``state`` unless the session already ended.

        A cancelled session always ends as cancelled, whatever the caller
        asked for.

        Returns
        -------
        bool
            True if the state changed
        """
        with self._state_lock:
            if self.state.terminal:
                return False
            if self._cancel_event.is_set() and state is not MonitorState.CANCELLED:
                state = MonitorState.CANCELLED
            self.state = state
            if state.terminal:
                self._done.set()
            return True

    def cancel(self) -> None:
        self._cancel_event.set()
        self.transition(MonitorState.CANCELLED)

    def publish(self, status: TickStatus, emit: Callable[[TickStatus], None]) -> bool:
        """Record and emit ``status`` unless the session was cancelled.

        The check and the emit share the state lock, so once ``cancel``
        returns no further status is emitted.

        Returns
        -------
        bool
            False if the status was discarded
        """
        with self._state_lock:
            if self._cancel_event.is_set():
                return False
            self.last_status = status
            emit(status)
            return True

    def sleep(self, seconds: float) -> bool:
        """Wait between ticks; returns True if woken by cancellation."""
        return self._cancel_event.wait(seconds)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the session ends; returns False on timeout."""
        return self._done.wait(timeout)


class ConnectionMonitor:
    """Poll server health per host until ready, cancelled or out of checks.

    Each host has at most one live session. Starting a new session for a
    host cancels the previous one.

    Parameters
    ----------
    channel_factory : Callable[[str], RemoteProbe]
        Creates the remote probe for a host alias
    server_probe : ServerProbe | None
        Local server probe, skipped when None
    interval : float
        Seconds between ticks
    max_checks : int
        Ticks before a session times out
    on_status : Callable[[TickStatus], None] | None
        Called with every tick status that was not discarded
    collect_details : bool
        List remote server directories when the server is not running yet
    """

    def __init__(
        self,
        channel_factory: Callable[[str], RemoteProbe],
        server_probe: ServerProbe | None = None,
        interval: float = MONITOR_INTERVAL_SECONDS,
        max_checks: int = MONITOR_MAX_CHECKS,
        on_status: Callable[[TickStatus], None] | None = None,
        collect_details: bool = True,
    ) -> None:
        if max_checks < 1:
            raise ValueError(f"max_checks must be at least 1, got {max_checks}")
        self.channel_factory = channel_factory
        self.server_probe = server_probe
        self.interval = interval
        self.max_checks = max_checks
        self.on_status = on_status
        self.collect_details = collect_details
        self._sessions: dict[str, MonitorSession] = {}
        self._lock = threading.Lock()

    def _register(self, host_key: str) -> MonitorSession:
        session = MonitorSession(host_key=host_key, max_checks=self.max_checks)
        with self._lock:
            previous = self._sessions.get(host_key)
            self._sessions[host_key] = session
        if previous is not None:
            previous.cancel()
            logger.info("Replacing running monitor for %s", host_key)
        return session

    def _unregister(self, session: MonitorSession) -> None:
        with self._lock:
            if self._sessions.get(session.host_key) is session:
                del self._sessions[session.host_key]

    def start(self, host_key: str) -> MonitorSession:
        """Start monitoring ``host_key`` in a background thread."""
        session = self._register(host_key)
        thread = threading.Thread(
            target=self._run_session,
            args=(session,),
            name=f"monitor-{host_key}",
            daemon=True,
        )
        session.thread = thread
        thread.start()
        return session

    def run(self, host_key: str) -> MonitorSession:
        """Monitor ``host_key`` in the calling thread until the session ends."""
        session = self._register(host_key)
        self._run_session(session)
        return session

    def stop(self, host_key: str) -> bool:
        """Cancel the session for ``host_key``.

        Returns
        -------
        bool
            True if a session was running
        """
        with self._lock:
            session = self._sessions.pop(host_key, None)
        if session is not None:
            session.cancel()
            logger.info("Stopped monitor for %s", host_key)
        return session is not None

    def stop_all(self) -> int:
        """Cancel every session; returns how many were running."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.cancel()
        return len(sessions)

    def active_sessions(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

    def get(self, host_key: str) -> MonitorSession | None:
        with self._lock:
            return self._sessions.get(host_key)

    def wait(self, host_key: str, timeout: float | None = None) -> bool:
        """Wait for the session of ``host_key`` to end.

        Returns
        -------
        bool
            True if no session is running or it ended within ``timeout``
        """
        session = self.get(host_key)
        if session is None:
            return True
        return session.wait(timeout)

    def _run_session(self, session: MonitorSession) -> None:
        session.transition(MonitorState.POLLING)
        logger.info(
            "Monitoring %s every %ss (up to %d checks)",
            session.host_key,
            self.interval,
            session.max_checks,
        )

        try:
            while True:
                if session.cancelled:
                    session.transition(MonitorState.CANCELLED)
                    break

                status = self._tick(session)

                if not session.publish(status, self._emit):
                    logger.debug("Discarding check %d for cancelled %s", status.check, session.host_key)
                    session.transition(MonitorState.CANCELLED)
                    break

                if status.remote_ready:
                    session.transition(MonitorState.SUCCEEDED)
                    break

                if session.check_count >= session.max_checks:
                    session.transition(MonitorState.TIMED_OUT)
                    break

                session.sleep(self.interval)
        finally:
            if not session.state.terminal:
                session.transition(MonitorState.CANCELLED)
            self._unregister(session)

        logger.info(
            "Monitor for %s ended: %s after %d check(s)",
            session.host_key,
            session.state.value,
            session.check_count,
        )

    def _tick(self, session: MonitorSession) -> TickStatus:
        session.check_count += 1
        return self.probe(session.host_key, session.check_count, session.max_checks)

    def probe(self, host_key: str, check: int = 1, max_checks: int = 1) -> TickStatus:
        """Take one snapshot of the local server and the remote host.

        Probe failures are classified and recorded in the status, never
        raised.
        """
        status = TickStatus(host_key=host_key, check=check, max_checks=max_checks)

        if self.server_probe is not None:
            try:
                status.server = self.server_probe.check()
            except Exception as e:
                kind = classify_failure(e)
                logger.warning("Local server probe failed (%s): %s", kind.value, e)
                status.failures.append(f"local:{kind.value}")

        try:
            channel = self.channel_factory(host_key)
            status.remote = channel.check_installation()
        except Exception as e:
            kind = classify_failure(e)
            logger.warning("Remote probe for %s failed (%s): %s", host_key, kind.value, e)
            status.failures.append(f"remote:{kind.value}")
            return status

        if status.remote.failure is not None:
            status.failures.append(f"remote:{status.remote.failure.value}")
        elif self.collect_details and not status.remote.process_running:
            try:
                listing = channel.list_server_dirs()
                status.detail = listing.stdout.strip()
            except Exception as e:
                logger.debug("Directory listing on %s failed: %s", host_key, e)

        return status

    def quick_status(self, host_key: str) -> TickStatus:
        """One-shot snapshot of ``host_key`` outside any session."""
        return self.probe(host_key)

    def _emit(self, status: TickStatus) -> None:
        logger.info(status.format())
        if status.detail:
            for line in status.detail.splitlines():
                logger.debug("  %s", line)

        if self.on_status is not None:
            try:
                self.on_status(status)
            except Exception as e:
                logger.warning("Monitor status callback failed: %s", e)

    def check_connection(self, host_key: str) -> ConnectionTestResult:
        """Run the verbose initial connection test for ``host_key``."""
        return self.channel_factory(host_key).test_connection()
