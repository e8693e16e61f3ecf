"""Signal handling for graceful cancellation and shutdown."""

from __future__ import annotations

import signal
import threading
import types
from typing import Protocol


class CleanupHandler(Protocol):
    """Object that stops running work when a signal arrives."""

    def _cleanup_resources(
        self, signum: int | None = None, frame: types.FrameType | None = None
    ) -> None: ...


class CleanupInstanceManager:
    """Thread-safe holder of the cleanup instance.

    One lock guards both reading the instance and calling it, so a signal
    arriving while the instance is being cleared never calls a stale one.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._instance: CleanupHandler | None = None

    def set(self, instance: CleanupHandler | None) -> None:
        with self._lock:
            self._instance = instance

    def get(self) -> CleanupHandler | None:
        with self._lock:
            return self._instance

    def cleanup_with_lock(self, signum: int, frame: types.FrameType | None) -> None:
        """Call the instance's cleanup while holding the lock.

        Parameters
        ----------
        signum : int
            Signal number
        frame : types.FrameType | None
            Signal frame
        """
        with self._lock:
            instance = self._instance
            if instance is not None:
                instance._cleanup_resources(signum=signum, frame=frame)


_cleanup_manager = CleanupInstanceManager()


def setup_signal_handlers() -> None:
    """Register SIGINT and SIGTERM handlers before heavy imports.

    Handlers delegate to the registered cleanup instance, which cancels
    running monitors and workflows.
    """

    def handler(signum: int, frame: types.FrameType | None) -> None:
        _cleanup_manager.cleanup_with_lock(signum=signum, frame=frame)

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def set_cleanup_instance(instance: CleanupHandler | None) -> None:
    """Set the instance that handles cleanup for signal handlers."""
    _cleanup_manager.set(instance)


def get_cleanup_instance() -> CleanupHandler | None:
    return _cleanup_manager.get()
