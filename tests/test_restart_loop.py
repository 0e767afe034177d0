"""Tests for the crash-restart loop."""

from __future__ import annotations

import os
import signal
import threading

import pytest

from kuzco_manager.core.models import WorkerState
from kuzco_manager.core.restart_loop import RestartLoop, worker_command


class FakeProcess:
    """Popen stand-in that exits immediately with a fixed code."""

    def __init__(self, exit_code: int = 0, on_wait=None):
        self.exit_code = exit_code
        self.on_wait = on_wait
        self.terminated = False

    def wait(self) -> int:
        if self.on_wait:
            self.on_wait()
        return self.exit_code

    def poll(self) -> int | None:
        return None if not self.terminated else self.exit_code

    def terminate(self) -> None:
        self.terminated = True


class FakePopen:
    """Records every launch and hands out FakeProcess instances."""

    def __init__(self, exit_codes=None, on_wait=None):
        self.exit_codes = list(exit_codes or [])
        self.on_wait = on_wait
        self.commands: list[list[str]] = []

    def __call__(self, command):
        self.commands.append(command)
        code = self.exit_codes.pop(0) if self.exit_codes else 0
        return FakeProcess(code, self.on_wait)


def test_worker_command():
    assert worker_command("kuzco", "abc123", "xyz-456") == [
        "kuzco",
        "worker",
        "start",
        "--worker",
        "abc123",
        "--code",
        "xyz-456",
    ]


class TestRestartLoop:
    """Tests for RestartLoop.run."""

    def test_relaunches_after_every_exit(self):
        popen = FakePopen(exit_codes=[1, 0, 137])
        loop = RestartLoop(["kuzco"], delay=0, max_launches=3, popen=popen)

        assert loop.run() == 3
        assert len(popen.commands) == 3
        assert loop.state == WorkerState.STOPPED

    def test_clean_exit_is_restarted_too(self):
        popen = FakePopen(exit_codes=[0, 0])
        loop = RestartLoop(["kuzco"], delay=0, max_launches=2, popen=popen)
        assert loop.run() == 2

    def test_should_restart_can_decline(self):
        popen = FakePopen(exit_codes=[1, 0, 1])
        loop = RestartLoop(
            ["kuzco"],
            delay=0,
            should_restart=lambda code: code != 0,
            popen=popen,
        )
        assert loop.run() == 2

    def test_delay_between_launches(self, mocker):
        popen = FakePopen(exit_codes=[1, 1])
        loop = RestartLoop(["kuzco"], delay=5, max_launches=2, popen=popen)
        wait = mocker.patch.object(loop._cancel, "wait", return_value=False)

        loop.run()

        wait.assert_called_once_with(5)

    def test_cancel_during_run_stops_relaunching(self):
        loop: RestartLoop

        def cancel_on_third_wait():
            if len(popen.commands) == 3:
                loop.cancel()

        popen = FakePopen(on_wait=cancel_on_third_wait)
        loop = RestartLoop(["kuzco"], delay=0, popen=popen)

        assert loop.run() == 3
        assert loop.cancelled
        assert loop.state == WorkerState.STOPPED

    def test_cancel_before_run_launches_nothing(self):
        popen = FakePopen()
        loop = RestartLoop(["kuzco"], delay=0, popen=popen)
        loop.cancel()
        assert loop.run() == 0
        assert popen.commands == []

    def test_cancel_interrupts_delay(self):
        popen = FakePopen(exit_codes=[1])
        loop = RestartLoop(["kuzco"], delay=60, popen=popen)
        timer = threading.Timer(0.1, loop.cancel)
        timer.start()
        try:
            assert loop.run() == 1
        finally:
            timer.cancel()

    def test_launch_failure_is_retried(self):
        attempts = []

        def failing_popen(command):
            attempts.append(command)
            raise FileNotFoundError("kuzco")

        loop = RestartLoop(["kuzco"], delay=0, max_launches=None, popen=failing_popen)
        loop.should_restart = lambda code: len(attempts) < 3

        loop.run()

        assert len(attempts) == 3
        assert loop.launches == 0

    def test_cancel_terminates_running_child(self):
        child = FakeProcess()
        loop = RestartLoop(["kuzco"], delay=0, popen=lambda command: child)
        loop._child = child

        loop.cancel()

        assert child.terminated

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            RestartLoop(["kuzco"], delay=-1)


@pytest.fixture
def restore_signal_handlers():
    """Put back the handlers install_signal_handlers replaces."""
    saved = {signum: signal.getsignal(signum) for signum in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)}
    yield
    for signum, handler in saved.items():
        signal.signal(signum, handler)


@pytest.mark.usefixtures("restore_signal_handlers")
class TestSignalCancellation:
    """Tests for cancellation through delivered signals."""

    def test_sigterm_during_launch(self):
        children = []

        def popen(command):
            os.kill(os.getpid(), signal.SIGTERM)
            children.append(FakeProcess())
            return children[-1]

        loop = RestartLoop(["kuzco"], delay=60, popen=popen)
        loop.install_signal_handlers()

        assert loop.run() == 1
        assert loop.cancelled
        assert children[0].terminated
        assert loop.state == WorkerState.STOPPED

    def test_sighup_during_delay(self):
        popen = FakePopen(exit_codes=[1])
        loop = RestartLoop(["kuzco"], delay=60, popen=popen)
        loop.install_signal_handlers()
        timer = threading.Timer(
            0.1, signal.pthread_kill, args=(threading.main_thread().ident, signal.SIGHUP)
        )
        timer.start()
        try:
            assert loop.run() == 1
        finally:
            timer.cancel()
        assert loop.cancelled
        assert len(popen.commands) == 1

    def test_sigterm_while_worker_runs(self):
        def popen(command):
            return FakeProcess(on_wait=lambda: os.kill(os.getpid(), signal.SIGTERM))

        loop = RestartLoop(["kuzco"], delay=60, popen=popen)
        loop.install_signal_handlers()

        assert loop.run() == 1
        assert loop.cancelled
