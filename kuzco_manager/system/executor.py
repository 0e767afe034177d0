"""External command execution for the Kuzco manager.

Every shell-out (apt, systemctl, screen, journalctl, the kuzco binary) goes
through CommandExecutor so that privilege escalation, timeouts and output
limits are handled in one place and tests can mock a single seam.
"""

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Iterator
from pathlib import Path
from typing import Literal

from pydantic import BaseModel

logger = logging.getLogger(__name__)

SudoMode = Literal["auto", "always", "never"]

# Output limits (prevent unbounded apt/dpkg output from piling up in memory)
MAX_OUTPUT_BYTES = 1024 * 1024


class ExecutionResult(BaseModel):
    """Result of an external command."""

    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def error_text(self, limit: int = 300) -> str:
        """Short failure description for log lines and exception messages."""
        if self.timed_out:
            return self.stderr
        text = (self.stderr or self.stdout).strip()
        return text[:limit] or f"exit code {self.returncode}"


def _truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed."""
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    # Truncate by bytes, ensuring we don't cut in the middle of a UTF-8 sequence
    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


def _is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


class CommandExecutor:
    """Run host commands with optional sudo escalation.

    privileged=True marks commands that need root (apt, dpkg, systemctl
    mutations, the vendor CLI). With use_sudo="auto" they are prefixed with
    sudo only when the manager is not already root and sudo is installed.
    """

    def __init__(
        self,
        use_sudo: SudoMode = "auto",
        timeout: int = 600,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
    ):
        self.use_sudo = use_sudo
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes

    def which(self, name: str) -> str | None:
        """Locate a binary on PATH."""
        return shutil.which(name)

    def _sudo_prefix(self) -> list[str]:
        if self.use_sudo == "never":
            return []
        if self.use_sudo == "always":
            return ["sudo"]
        if _is_root() or not shutil.which("sudo"):
            return []
        return ["sudo"]

    def build(self, command: list[str], privileged: bool = False) -> list[str]:
        """Return the argv that will actually be executed."""
        if privileged:
            return self._sudo_prefix() + list(command)
        return list(command)

    def run(
        self,
        command: list[str],
        privileged: bool = False,
        timeout: int | None = None,
        input_text: str | bytes | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecutionResult:
        """Run a command to completion and capture its output.

        A missing binary is reported as returncode 127 rather than raised,
        so callers only have to check ExecutionResult.ok.
        """
        argv = self.build(command, privileged)
        effective_timeout = timeout or self.timeout
        binary_input = isinstance(input_text, bytes)
        logger.debug(f"exec: {shlex.join(argv)}")

        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=not binary_input,
                input=input_text,
                timeout=effective_timeout,
                env={**os.environ, **env} if env else None,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Command timed out after {effective_timeout}s: {argv[0]}")
            return ExecutionResult(
                returncode=-1,
                stdout="",
                stderr=f"Command timed out after {effective_timeout}s",
                timed_out=True,
            )
        except FileNotFoundError:
            return ExecutionResult(
                returncode=127,
                stdout="",
                stderr=f"{argv[0]}: command not found",
            )

        stdout = result.stdout
        stderr = result.stderr
        if binary_input:
            stdout = stdout.decode("utf-8", errors="replace")
            stderr = stderr.decode("utf-8", errors="replace")

        return ExecutionResult(
            returncode=result.returncode,
            stdout=_truncate_output(stdout, self.max_output_bytes),
            stderr=_truncate_output(stderr, self.max_output_bytes),
        )

    def spawn_detached(self, command: list[str], log_file: Path) -> int:
        """Start a command in its own session with output appended to log_file.

        Returns the child's PID. The child outlives this process.
        """
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"spawn: {shlex.join(command)} >> {log_file}")
        with open(log_file, "ab") as log:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                close_fds=True,
            )
        return proc.pid

    def stream(self, command: list[str], privileged: bool = False) -> Iterator[str]:
        """Yield a command's stdout line by line until it exits.

        Raises subprocess.CalledProcessError if the command fails.
        """
        argv = self.build(command, privileged)
        logger.debug(f"stream: {shlex.join(argv)}")
        proc = subprocess.Popen(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        try:
            if proc.stdout is not None:
                for line in proc.stdout:
                    yield line.rstrip("\n")
        finally:
            if proc.poll() is None:
                proc.terminate()
            returncode = proc.wait()
        if returncode not in (0, -15):
            raise subprocess.CalledProcessError(returncode, argv)

    def interactive(self, command: list[str], privileged: bool = False) -> int:
        """Run a command attached to the current terminal; return its exit code."""
        argv = self.build(command, privileged)
        try:
            return subprocess.call(argv)
        except FileNotFoundError:
            return 127
