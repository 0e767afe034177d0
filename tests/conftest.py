# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Kuzco manager test suite.

This module provides:
- Isolated state directories and configurations
- Sample worker credentials
- A mocked CommandExecutor seam
- FakeHost: an in-memory stand-in for screen/systemctl so lifecycle tests
  never touch the real system

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import shlex
from pathlib import Path
from unittest.mock import Mock

import pytest

from kuzco_manager.core.config import ManagerConfig
from kuzco_manager.core.models import WorkerCredentials
from kuzco_manager.system.executor import CommandExecutor, ExecutionResult


def make_result(returncode: int = 0, stdout: str = "", stderr: str = "") -> ExecutionResult:
    return ExecutionResult(returncode=returncode, stdout=stdout, stderr=stderr)


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def kuzco_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """State directory under tmp_path, exported as KUZCO_HOME."""
    home = tmp_path / ".kuzco"
    monkeypatch.setenv("KUZCO_HOME", str(home))
    return home


@pytest.fixture
def config(kuzco_home: Path) -> ManagerConfig:
    """Config with zero delays so lifecycle tests never sleep."""
    return ManagerConfig(
        home=kuzco_home,
        restart_delay=0,
        stop_grace_period=0,
        use_sudo="never",
    )


@pytest.fixture
def credentials() -> WorkerCredentials:
    return WorkerCredentials(worker_id="abc123", registration_code="xyz-456")


# =============================================================================
# Executor Fixtures
# =============================================================================


@pytest.fixture
def executor() -> Mock:
    """CommandExecutor mock: every command succeeds, no binary is installed."""
    mock = Mock(spec=CommandExecutor)
    mock.run.return_value = make_result()
    mock.which.return_value = None
    mock.build.side_effect = lambda command, privileged=False: list(command)
    return mock


class FakeHost:
    """In-memory host with optional screen and systemd.

    Handles the commands the backends issue through CommandExecutor.run:
    screen -ls / -dmS / -X quit / -wipe and systemctl show / is-active /
    enable / start / stop / restart. Every command is recorded in `commands`.
    """

    def __init__(self, socket_dir: Path):
        self.socket_dir = socket_dir
        self.binaries: set[str] = set()
        self.sessions: dict[str, int] = {}
        self.unit_loaded = False
        self.unit_active = False
        self.fail: set[str] = set()
        self.commands: list[list[str]] = []
        self._next_pid = 40000

    # CommandExecutor.which
    def which(self, name: str) -> str | None:
        return f"/usr/bin/{name}" if name in self.binaries else None

    def pid_exists(self, pid: int) -> bool:
        return pid in self.sessions.values()

    def run(self, command: list[str], **kwargs) -> ExecutionResult:
        self.commands.append(list(command))
        joined = shlex.join(command)
        if any(pattern in joined for pattern in self.fail):
            return make_result(1, stderr=f"simulated failure: {joined}")
        if command[0] == "screen":
            return self._screen(command[1:])
        if command[0] == "systemctl":
            return self._systemctl(command[1:])
        return make_result()

    def _screen(self, args: list[str]) -> ExecutionResult:
        if args == ["-ls"]:
            if not self.sessions:
                return make_result(1, stdout="No Sockets found in /run/screen/S-test.\n")
            lines = ["There is a screen on:"]
            for name, pid in self.sessions.items():
                lines.append(f"\t{pid}.{name}\t(01/01/2025 10:00:00 AM)\t(Detached)")
            lines.append(f"{len(self.sessions)} Socket in /run/screen/S-test.")
            return make_result(1, stdout="\n".join(lines) + "\n")
        if args == ["-wipe"]:
            return make_result(1)
        if "-dmS" in args:
            name = args[args.index("-dmS") + 1]
            self._next_pid += 1
            self.sessions[name] = self._next_pid
            self.socket_dir.mkdir(parents=True, exist_ok=True)
            (self.socket_dir / f"{self._next_pid}.{name}").touch()
            return make_result()
        if args[:1] == ["-S"] and args[2:] == ["-X", "quit"]:
            name = args[1]
            if name not in self.sessions:
                return make_result(1, stdout="No screen session found.\n")
            # Socket is left behind like a crashed screen would
            self.sessions.pop(name)
            return make_result()
        return make_result()

    def _systemctl(self, args: list[str]) -> ExecutionResult:
        action = args[0]
        if action == "show":
            if "--property=LoadState" in args:
                return make_result(stdout="loaded\n" if self.unit_loaded else "not-found\n")
            if "--property=MainPID" in args:
                return make_result(stdout="4242\n" if self.unit_active else "0\n")
        if action == "is-active":
            if self.unit_active:
                return make_result(stdout="active\n")
            return make_result(3, stdout="inactive\n")
        if action in ("start", "restart"):
            self.unit_active = True
        if action == "stop":
            self.unit_active = False
        return make_result()


@pytest.fixture
def fake_host(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, mocker) -> FakeHost:
    """FakeHost with SCREENDIR pointed at a temp socket directory."""
    socket_dir = tmp_path / "screens"
    monkeypatch.setenv("SCREENDIR", str(socket_dir))
    host = FakeHost(socket_dir)
    mocker.patch("kuzco_manager.core.backends.psutil.pid_exists", side_effect=host.pid_exists)
    # No stray kuzco processes from the real host
    mocker.patch("kuzco_manager.core.backends.psutil.process_iter", return_value=[])
    return host


@pytest.fixture
def host_executor(fake_host: FakeHost) -> Mock:
    """CommandExecutor mock routed through FakeHost."""
    mock = Mock(spec=CommandExecutor)
    mock.run.side_effect = fake_host.run
    mock.which.side_effect = fake_host.which
    mock.spawn_detached.return_value = 50001
    return mock
