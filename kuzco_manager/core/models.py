"""Data models for the Kuzco manager.

Uses Pydantic so credentials are validated at construction time.
"""

from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator


class BackendKind(str, Enum):
    """OS mechanism used to keep the worker running."""

    SYSTEMD = "systemd"
    SESSION = "session"
    RAW = "raw"


class WorkerState(str, Enum):
    """Lifecycle of the worker within one manager invocation."""

    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    RUNNING = "running"
    RELAUNCHING = "relaunching"  # Only reachable under restart-loop backends
    STOPPED = "stopped"


# --- Credentials ---


class WorkerCredentials(BaseModel):
    """Worker identity and registration code issued by the Kuzco dashboard."""

    worker_id: str
    registration_code: str = Field(repr=False)

    @field_validator("worker_id", "registration_code")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        """Strip surrounding whitespace and reject empty values."""
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        if "\n" in v or "\r" in v:
            raise ValueError("must be a single line")
        return v

    @property
    def masked_code(self) -> str:
        """Registration code with all but the last four characters hidden."""
        code = self.registration_code
        if len(code) <= 4:
            return "*" * len(code)
        return "*" * (len(code) - 4) + code[-4:]


# --- Process Handles (tagged variant) ---


class SystemdHandle(BaseModel):
    """Worker supervised by a systemd unit."""

    kind: Literal[BackendKind.SYSTEMD] = BackendKind.SYSTEMD
    unit_name: str


class SessionHandle(BaseModel):
    """Worker supervised inside a detached screen session."""

    kind: Literal[BackendKind.SESSION] = BackendKind.SESSION
    session_name: str


class RawProcessHandle(BaseModel):
    """Worker running as a plain background process (pid None if not found)."""

    kind: Literal[BackendKind.RAW] = BackendKind.RAW
    pid: int | None = None


WorkerProcessHandle = Annotated[
    SystemdHandle | SessionHandle | RawProcessHandle,
    Field(discriminator="kind"),
]


# --- Status ---


class WorkerStatus(BaseModel):
    """Result of a status probe. Not running is a normal result."""

    backend: BackendKind
    running: bool
    detail: str = ""
    pids: list[int] = Field(default_factory=list)

    @property
    def label(self) -> str:
        return "running" if self.running else "not running"
