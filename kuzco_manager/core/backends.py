"""Supervision backends for the Kuzco worker.

Three ways of keeping the worker alive, chosen once per invocation by
detect_backend():

1. SystemdBackend - an externally installed kuzco.service unit
2. SessionBackend - a detached GNU screen session running the restart loop
3. RawProcessBackend - a detached background process (restart loop, or the
   vendor's own --background mode)

Each backend probes its own availability and raises BackendProbeFailure
when it cannot be used; detection falls through to the next one.
"""

import getpass
import logging
import os
import re
import sys
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Iterator
from pathlib import Path

import psutil

from kuzco_manager.core.config import ManagerConfig
from kuzco_manager.core.errors import (
    BackendProbeFailure,
    NotRunningError,
    ProcessError,
    ServiceError,
)
from kuzco_manager.core.models import (
    BackendKind,
    RawProcessHandle,
    SessionHandle,
    SystemdHandle,
    WorkerCredentials,
    WorkerProcessHandle,
    WorkerStatus,
)
from kuzco_manager.system.executor import CommandExecutor

logger = logging.getLogger(__name__)

# Poll interval while waiting for a session or process to go away
_WAIT_POLL_INTERVAL = 0.25

# Present only when systemd is PID 1
SYSTEMD_RUNTIME_DIR = Path("/run/systemd/system")

# `screen -ls` line: "\t12345.kuzco\t(12/01/2024 10:00:00 AM)\t(Detached)"
_SCREEN_LS_LINE = re.compile(r"^\s*(\d+)\.(\S+)\s+(.*)$")


def loop_command(config: ManagerConfig) -> list[str]:
    """Command line of the restart loop process."""
    return [
        sys.executable,
        "-m",
        "kuzco_manager",
        "run-loop",
        "--credentials-file",
        str(config.credentials_file),
        "--binary",
        config.binary,
        "--delay",
        f"{config.restart_delay:g}",
    ]


def tail_file(
    path: Path,
    lines: int = 50,
    follow: bool = False,
    poll_interval: float = 0.5,
    should_stop: Callable[[], bool] | None = None,
) -> Iterator[str]:
    """Yield the last `lines` lines of a file, then new lines if following.

    Raises:
        ProcessError: If the file does not exist.
    """
    if not path.exists():
        raise ProcessError(f"No worker log at {path} (has the worker been started?)")

    with open(path, errors="replace") as f:
        for line in deque(f, maxlen=lines) if lines > 0 else ():
            yield line.rstrip("\n")
        if lines <= 0:
            f.seek(0, os.SEEK_END)
        if not follow:
            return

        while should_stop is None or not should_stop():
            position = f.tell()
            line = f.readline()
            if line:
                yield line.rstrip("\n")
                continue
            # Log rotated or truncated underneath us
            if path.exists() and path.stat().st_size < position:
                f.seek(0)
                continue
            time.sleep(poll_interval)


def _wait_until(predicate: Callable[[], bool], timeout: float) -> bool:
    """Poll predicate until true or timeout elapses. Returns the final value."""
    deadline = time.monotonic() + timeout
    while True:
        if predicate():
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(_WAIT_POLL_INTERVAL)


class WorkerBackend(ABC):
    """Strategy interface for one supervision mechanism."""

    kind: BackendKind

    def __init__(self, config: ManagerConfig, executor: CommandExecutor):
        self.config = config
        self.executor = executor

    @abstractmethod
    def probe(self) -> None:
        """Raise BackendProbeFailure if this backend cannot be used here."""

    def is_available(self) -> bool:
        try:
            self.probe()
        except BackendProbeFailure:
            return False
        return True

    @abstractmethod
    def handle(self) -> WorkerProcessHandle:
        """Describe how the worker is (or would be) supervised right now."""

    @abstractmethod
    def start(self, credentials: WorkerCredentials) -> None:
        """Start the worker under this backend."""

    @abstractmethod
    def stop(self, force: bool = False) -> None:
        """Stop the worker. Raises NotRunningError if nothing was running."""

    def restart(self, credentials: WorkerCredentials) -> None:
        """Stop then start; a worker that was not running is simply started."""
        try:
            self.stop()
        except NotRunningError:
            logger.info(f"Worker was not running under {self.kind.value}, starting it")
        self.start(credentials)

    @abstractmethod
    def status(self) -> WorkerStatus:
        """Probe whether the worker is running. Never raises for 'not running'."""

    @abstractmethod
    def logs(self, lines: int = 50, follow: bool = False) -> Iterator[str]:
        """Stream worker log lines."""

    def attach(self) -> int:
        raise ProcessError(f"Attaching is not supported by the {self.kind.value} backend")


# =============================================================================
# systemd
# =============================================================================


class SystemdBackend(WorkerBackend):
    """Drive an externally defined systemd unit. The unit is never authored here."""

    kind = BackendKind.SYSTEMD

    @property
    def unit(self) -> str:
        return self.config.unit_name

    def probe(self) -> None:
        if not self.executor.which("systemctl"):
            raise BackendProbeFailure("systemctl not found")
        if not SYSTEMD_RUNTIME_DIR.is_dir():
            raise BackendProbeFailure("systemd is not the running init system")

        result = self.executor.run(
            ["systemctl", "show", self.unit, "--property=LoadState", "--value"],
            timeout=15,
        )
        if not result.ok:
            raise BackendProbeFailure(f"systemctl query failed: {result.error_text()}")
        load_state = result.stdout.strip()
        if load_state != "loaded":
            raise BackendProbeFailure(f"{self.unit} is not installed (LoadState={load_state or '?'})")

    def handle(self) -> SystemdHandle:
        return SystemdHandle(unit_name=self.unit)

    def _systemctl(self, action: str) -> None:
        result = self.executor.run(["systemctl", action, self.unit], privileged=True)
        if not result.ok:
            raise ServiceError(f"systemctl {action} {self.unit} failed: {result.error_text()}")

    def _is_active(self) -> tuple[bool, str]:
        result = self.executor.run(["systemctl", "is-active", self.unit], timeout=15)
        state = result.stdout.strip() or "unknown"
        return state in ("active", "reloading", "activating"), state

    def start(self, credentials: WorkerCredentials) -> None:
        # Credentials are configured in the unit itself; they are only checked here
        logger.info(f"Starting {self.unit} for worker {credentials.worker_id}")
        self._systemctl("enable")
        self._systemctl("start")

    def stop(self, force: bool = False) -> None:
        active, state = self._is_active()
        if not active:
            raise NotRunningError(f"{self.unit} is not running ({state})")
        self._systemctl("stop")
        logger.info(f"Stopped {self.unit}")

    def restart(self, credentials: WorkerCredentials) -> None:
        try:
            self._systemctl("restart")
        except ServiceError as e:
            logger.warning(f"{e}; falling back to stop + start")
            super().restart(credentials)

    def status(self) -> WorkerStatus:
        active, state = self._is_active()
        pids: list[int] = []
        if active:
            result = self.executor.run(
                ["systemctl", "show", self.unit, "--property=MainPID", "--value"],
                timeout=15,
            )
            pid = result.stdout.strip()
            if result.ok and pid.isdigit() and int(pid) > 0:
                pids.append(int(pid))
        return WorkerStatus(
            backend=self.kind,
            running=active,
            detail=f"{self.unit}: {state}",
            pids=pids,
        )

    def logs(self, lines: int = 50, follow: bool = False) -> Iterator[str]:
        command = ["journalctl", "-u", self.unit, "-n", str(lines), "--no-pager"]
        if follow:
            command.append("-f")
        return self.executor.stream(command, privileged=True)


# =============================================================================
# screen session
# =============================================================================


def _screen_socket_dirs() -> list[Path]:
    """Candidate screen socket directories for the current user."""
    env_dir = os.environ.get("SCREENDIR")
    if env_dir:
        return [Path(env_dir)]
    user = getpass.getuser()
    return [
        Path(f"/run/screen/S-{user}"),
        Path(f"/var/run/screen/S-{user}"),
        Path(f"/tmp/screens/S-{user}"),
        Path(f"/tmp/uscreens/S-{user}"),
    ]


class SessionBackend(WorkerBackend):
    """Run the restart loop inside a detached screen session."""

    kind = BackendKind.SESSION

    @property
    def name(self) -> str:
        return self.config.session_name

    def probe(self) -> None:
        if not self.executor.which("screen"):
            raise BackendProbeFailure("screen not found")

    def handle(self) -> SessionHandle:
        return SessionHandle(session_name=self.name)

    def sessions(self) -> list[tuple[int, str, bool]]:
        """Parse `screen -ls` into (pid, name, alive) tuples for our session name."""
        # screen -ls exits non-zero whenever sessions exist on some builds; ignore it
        result = self.executor.run(["screen", "-ls"], timeout=15)
        found = []
        for line in result.stdout.splitlines():
            match = _SCREEN_LS_LINE.match(line)
            if not match or match.group(2) != self.name:
                continue
            alive = "dead" not in match.group(3).lower()
            found.append((int(match.group(1)), match.group(2), alive))
        return found

    def _live_pids(self) -> list[int]:
        return [pid for pid, _, alive in self.sessions() if alive]

    def is_alive(self) -> bool:
        return bool(self._live_pids())

    def socket_artifacts(self) -> list[Path]:
        """Socket files named <pid>.<session> in the screen directories."""
        artifacts: list[Path] = []
        for directory in _screen_socket_dirs():
            if directory.is_dir():
                artifacts.extend(sorted(directory.glob(f"*.{self.name}")))
        return artifacts

    def _wipe(self) -> None:
        """Remove sockets left behind by dead sessions."""
        self.executor.run(["screen", "-wipe"], timeout=15)
        for socket_path in self.socket_artifacts():
            pid_part = socket_path.name.split(".", 1)[0]
            if pid_part.isdigit() and psutil.pid_exists(int(pid_part)):
                continue
            try:
                socket_path.unlink()
                logger.info(f"Removed stale screen socket {socket_path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove stale screen socket {socket_path}: {e}")

    def _quit(self) -> None:
        result = self.executor.run(["screen", "-S", self.name, "-X", "quit"], timeout=15)
        if not result.ok:
            logger.debug(f"screen quit returned {result.returncode}: {result.error_text()}")

    def _kill_sessions(self, pids: list[int]) -> None:
        for pid in pids:
            try:
                proc = psutil.Process(pid)
                for child in proc.children(recursive=True):
                    child.kill()
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                raise ProcessError(f"Not permitted to kill screen session {pid}: {e}") from e

    def start(self, credentials: WorkerCredentials) -> None:
        if self.is_alive():
            logger.info(f"Terminating stale screen session '{self.name}'")
            self._quit()
            _wait_until(lambda: not self.is_alive(), self.config.stop_grace_period)
        self._wipe()

        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)
        command = [
            "screen",
            "-L",
            "-Logfile",
            str(log_file),
            "-dmS",
            self.name,
            *loop_command(self.config),
        ]
        result = self.executor.run(command, timeout=30)
        if not result.ok:
            raise ProcessError(f"Failed to start screen session '{self.name}': {result.error_text()}")
        if not self.is_alive():
            raise ProcessError(
                f"Screen session '{self.name}' exited immediately; see {log_file}"
            )
        logger.info(f"Worker {credentials.worker_id} running in screen session '{self.name}'")

    def stop(self, force: bool = False) -> None:
        if not self.is_alive():
            self._wipe()
            raise NotRunningError(f"No screen session named '{self.name}'")

        self._quit()
        if not _wait_until(lambda: not self.is_alive(), self.config.stop_grace_period):
            if not force:
                raise ProcessError(
                    f"Screen session '{self.name}' still running after "
                    f"{self.config.stop_grace_period:g}s; use force kill"
                )
            logger.warning(f"Killing screen session '{self.name}'")
            self._kill_sessions(self._live_pids())
        self._wipe()
        logger.info(f"Stopped screen session '{self.name}'")

    def status(self) -> WorkerStatus:
        pids = self._live_pids()
        detail = (
            f"screen session {pids[0]}.{self.name}" if pids else f"no screen session '{self.name}'"
        )
        return WorkerStatus(backend=self.kind, running=bool(pids), detail=detail, pids=pids)

    def logs(self, lines: int = 50, follow: bool = False) -> Iterator[str]:
        return tail_file(self.config.log_file, lines=lines, follow=follow)

    def attach(self) -> int:
        if not self.is_alive():
            raise NotRunningError(f"No screen session named '{self.name}'")
        return self.executor.interactive(["screen", "-r", self.name])


# =============================================================================
# raw background process
# =============================================================================


class RawProcessBackend(WorkerBackend):
    """Detached background process found later by command-line pattern."""

    kind = BackendKind.RAW

    def probe(self) -> None:
        # Always available: the fallback of last resort
        return None

    def _is_worker_cmdline(self, cmdline: list[str]) -> bool:
        if not cmdline:
            return False
        if "kuzco_manager" in cmdline and "run-loop" in cmdline:
            return True
        binary_name = Path(self.config.binary).name
        # Allow a leading sudo/env wrapper
        for index in range(min(2, len(cmdline))):
            if Path(cmdline[index]).name == binary_name:
                args = cmdline[index + 1:]
                return args[:2] == ["worker", "start"]
        return False

    def _managed_elsewhere(self, proc: psutil.Process) -> bool:
        """True for processes owned by a screen session or the systemd unit."""
        try:
            for parent in proc.parents():
                if parent.name().lower().startswith("screen"):
                    return True
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
        try:
            cgroup = Path(f"/proc/{proc.pid}/cgroup").read_text()
        except OSError:
            return False
        return f"/{self.config.unit_name}" in cgroup

    def find_processes(self) -> list[psutil.Process]:
        """Worker and restart-loop processes not owned by another backend."""
        own_pid = os.getpid()
        found = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            try:
                if proc.pid == own_pid:
                    continue
                if not self._is_worker_cmdline(proc.info.get("cmdline") or []):
                    continue
                if self._managed_elsewhere(proc):
                    continue
                found.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return found

    def handle(self) -> RawProcessHandle:
        procs = self.find_processes()
        return RawProcessHandle(pid=procs[0].pid if procs else None)

    def start(self, credentials: WorkerCredentials) -> None:
        if self.config.raw_restart_loop:
            pid = self.executor.spawn_detached(loop_command(self.config), self.config.log_file)
            logger.info(f"Worker loop started in background (pid {pid}), logging to {self.config.log_file}")
            return

        command = [
            self.config.binary,
            "worker",
            "start",
            "--background",
            "--worker",
            credentials.worker_id,
            "--code",
            credentials.registration_code,
        ]
        result = self.executor.run(command, privileged=True)
        if not result.ok:
            raise ProcessError(f"kuzco worker start failed: {result.error_text()}")
        logger.info(f"Worker {credentials.worker_id} started in vendor background mode")

    def _signal(self, proc: psutil.Process, kill: bool) -> None:
        try:
            if kill:
                proc.kill()
            else:
                proc.terminate()
        except psutil.NoSuchProcess:
            return
        except psutil.AccessDenied:
            # Root-owned worker (vendor background mode): escalate through sudo
            signal_name = "-KILL" if kill else "-TERM"
            result = self.executor.run(["kill", signal_name, str(proc.pid)], privileged=True)
            if not result.ok:
                raise ProcessError(f"Failed to signal pid {proc.pid}: {result.error_text()}")

    def stop(self, force: bool = False) -> None:
        procs = self.find_processes()
        if not procs:
            raise NotRunningError("No running Kuzco worker process found")

        # Loop processes first so they cannot relaunch the worker
        procs.sort(key=lambda p: 0 if "run-loop" in (p.info.get("cmdline") or []) else 1)
        for proc in procs:
            logger.info(f"Sending SIGTERM to pid {proc.pid}")
            self._signal(proc, kill=False)

        _, alive = psutil.wait_procs(procs, timeout=self.config.stop_grace_period)
        if not alive:
            logger.info(f"Stopped {len(procs)} worker process(es)")
            return

        pids = ", ".join(str(p.pid) for p in alive)
        if not force:
            raise ProcessError(
                f"Worker process(es) {pids} still running after "
                f"{self.config.stop_grace_period:g}s; use force kill"
            )
        logger.warning(f"Force killing worker process(es) {pids}")
        for proc in alive:
            self._signal(proc, kill=True)
        _, still_alive = psutil.wait_procs(alive, timeout=5)
        if still_alive:
            raise ProcessError(
                f"Worker process(es) {', '.join(str(p.pid) for p in still_alive)} survived SIGKILL"
            )

    def status(self) -> WorkerStatus:
        pids = [proc.pid for proc in self.find_processes()]
        detail = f"pid {', '.join(map(str, pids))}" if pids else "no worker process"
        return WorkerStatus(backend=self.kind, running=bool(pids), detail=detail, pids=pids)

    def logs(self, lines: int = 50, follow: bool = False) -> Iterator[str]:
        if self.config.raw_restart_loop:
            return tail_file(self.config.log_file, lines=lines, follow=follow)
        return self.executor.stream([self.config.binary, "worker", "logs"], privileged=True)


# =============================================================================
# detection
# =============================================================================

BACKEND_ORDER: tuple[type[WorkerBackend], ...] = (
    SystemdBackend,
    SessionBackend,
    RawProcessBackend,
)


def build_backend(kind: BackendKind, config: ManagerConfig, executor: CommandExecutor) -> WorkerBackend:
    for backend_cls in BACKEND_ORDER:
        if backend_cls.kind == kind:
            return backend_cls(config, executor)
    raise ValueError(f"Unknown backend: {kind}")


def detect_backend(config: ManagerConfig, executor: CommandExecutor) -> WorkerBackend:
    """Pick the first available backend: systemd, then screen, then raw."""
    for backend_cls in BACKEND_ORDER:
        backend = backend_cls(config, executor)
        try:
            backend.probe()
        except BackendProbeFailure as e:
            logger.info(f"{backend.kind.value} backend unavailable: {e}")
            continue
        logger.info(f"Using {backend.kind.value} backend")
        return backend
    # RawProcessBackend.probe never fails
    raise BackendProbeFailure("No supervision backend available")


def available_backends(config: ManagerConfig, executor: CommandExecutor) -> list[WorkerBackend]:
    """Every backend whose probe succeeds, in detection order."""
    return [
        backend
        for backend in (cls(config, executor) for cls in BACKEND_ORDER)
        if backend.is_available()
    ]
