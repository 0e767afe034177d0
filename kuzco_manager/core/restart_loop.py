"""Crash-restart loop for the Kuzco worker.

Runs the worker binary in the foreground and relaunches it after a fixed
delay whenever it exits, for any reason. The loop ends only when cancelled
(SIGTERM/SIGINT/SIGHUP, or cancel() from another thread), when the restart
predicate declines, or after max_launches launches.

This is the process that the session backend runs inside screen and the
raw backend spawns detached; its log lines go to the worker log file.
"""

import logging
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from kuzco_manager.core.models import WorkerState

logger = logging.getLogger(__name__)

DEFAULT_RESTART_DELAY = 5.0


class _Process(Protocol):
    def wait(self) -> int: ...

    def poll(self) -> int | None: ...

    def terminate(self) -> None: ...


def always_restart(exit_code: int) -> bool:
    """Default restart condition: crash and clean exit look the same."""
    return True


def worker_command(binary: str, worker_id: str, registration_code: str) -> list[str]:
    """Foreground worker invocation used by the loop."""
    return [binary, "worker", "start", "--worker", worker_id, "--code", registration_code]


class RestartLoop:
    """Keep a command running, relaunching it `delay` seconds after each exit."""

    def __init__(
        self,
        command: list[str],
        delay: float = DEFAULT_RESTART_DELAY,
        should_restart: Callable[[int], bool] = always_restart,
        max_launches: int | None = None,
        popen: Callable[..., _Process] = subprocess.Popen,
    ):
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self.command = list(command)
        self.delay = delay
        self.should_restart = should_restart
        self.max_launches = max_launches
        self._popen = popen
        self._cancel = threading.Event()
        self._lock = threading.RLock()
        self._child: _Process | None = None
        self.launches = 0
        self.state = WorkerState.CONFIGURED

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop relaunching and terminate the running child, if any."""
        self._cancel.set()
        with self._lock:
            child = self._child
        if child is not None and child.poll() is None:
            try:
                child.terminate()
            except OSError as e:
                logger.debug(f"terminate failed: {e}")

    def install_signal_handlers(self) -> None:
        """Map SIGTERM, SIGINT and SIGHUP to cancel(). Main thread only."""
        for signum in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
            signal.signal(signum, self._signal_handler)

    def _signal_handler(self, signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, stopping worker loop")
        self.cancel()

    def _launch(self) -> int:
        with self._lock:
            if self._cancel.is_set():
                return -1
            self._child = self._popen(self.command)
            if self._cancel.is_set():
                # Cancelled by a signal while the child was being spawned
                self._child.terminate()
        self.launches += 1
        self.state = WorkerState.RUNNING
        logger.info(f"Worker started (launch #{self.launches})")
        started = time.monotonic()
        exit_code = self._child.wait()
        with self._lock:
            self._child = None
        logger.info(
            f"Worker exited with code {exit_code} after {time.monotonic() - started:.1f}s"
        )
        return exit_code

    def run(self) -> int:
        """Run until cancelled. Returns the number of launches."""
        logger.info(f"Starting worker loop (restart delay {self.delay}s)")
        while not self._cancel.is_set():
            try:
                exit_code = self._launch()
            except OSError as e:
                # Binary missing or not executable: keep retrying like a crash
                logger.error(f"Failed to launch worker: {e}")
                exit_code = -1

            if self._cancel.is_set():
                break
            if self.max_launches is not None and self.launches >= self.max_launches:
                logger.info(f"Reached {self.max_launches} launches, leaving loop")
                break
            if not self.should_restart(exit_code):
                logger.info(f"Not restarting after exit code {exit_code}")
                break

            self.state = WorkerState.RELAUNCHING
            logger.warning(f"Worker stopped. Restarting in {self.delay:g} seconds...")
            if self._cancel.wait(self.delay):
                break

        self.state = WorkerState.STOPPED
        logger.info(f"Worker loop finished after {self.launches} launch(es)")
        return self.launches
