"""Worker supervisor: credentials plus one lifecycle backend per invocation.

The backend is detected once (systemd, then screen, then raw process) and
every operation goes through it. Detection is not persisted, so a later
invocation may pick a different backend if the host changes; start()
refuses to launch while another backend already has the worker running.
"""

import logging
from collections.abc import Iterator

from rich.prompt import Prompt

from kuzco_manager.core.backends import (
    RawProcessBackend,
    WorkerBackend,
    available_backends,
    detect_backend,
)
from kuzco_manager.core.config import ManagerConfig
from kuzco_manager.core.credentials import CredentialStore, PromptFn
from kuzco_manager.core.errors import NotRunningError, ProcessError
from kuzco_manager.core.models import (
    WorkerCredentials,
    WorkerProcessHandle,
    WorkerState,
    WorkerStatus,
)
from kuzco_manager.system.executor import CommandExecutor

logger = logging.getLogger(__name__)


def rich_prompt(label: str, secret: bool) -> str:
    """Interactive prompt used when no other prompt function is supplied."""
    return Prompt.ask(f"[bold]{label}[/bold]", password=secret, default="", show_default=False)


class WorkerSupervisor:
    """Start, stop, restart and inspect the Kuzco worker."""

    def __init__(
        self,
        config: ManagerConfig | None = None,
        executor: CommandExecutor | None = None,
        backend: WorkerBackend | None = None,
        prompt: PromptFn | None = None,
    ):
        self.config = config or ManagerConfig()
        self.executor = executor or CommandExecutor(
            use_sudo=self.config.use_sudo,  # type: ignore[arg-type]
            timeout=self.config.command_timeout,
        )
        self.store = CredentialStore(self.config.credentials_file)
        self.prompt = prompt or rich_prompt
        self._backend = backend
        self.credentials: WorkerCredentials | None = None
        self.state = WorkerState.UNCONFIGURED

    # --- Backend ---

    def select_backend(self) -> WorkerBackend:
        """Probe the host and choose the backend for the rest of this run."""
        self._backend = detect_backend(self.config, self.executor)
        return self._backend

    @property
    def backend(self) -> WorkerBackend:
        if self._backend is None:
            return self.select_backend()
        return self._backend

    def handle(self) -> WorkerProcessHandle:
        return self.backend.handle()

    # --- Credentials ---

    def load_or_prompt_credentials(self) -> WorkerCredentials:
        """Load saved credentials or prompt for and persist new ones."""
        self.credentials = self.store.load_or_prompt(self.prompt)
        self.state = WorkerState.CONFIGURED
        return self.credentials

    def reset_credentials(self) -> bool:
        """Forget saved credentials. The running worker is left alone."""
        removed = self.store.reset()
        self.credentials = None
        self.state = WorkerState.UNCONFIGURED
        return removed

    def _credentials(self, credentials: WorkerCredentials | None) -> WorkerCredentials:
        if credentials is not None:
            # Loop backends read the file, so it must match what we start with
            self.store.save(credentials)
            self.credentials = credentials
            self.state = WorkerState.CONFIGURED
            return credentials
        if self.credentials is not None:
            return self.credentials
        return self.load_or_prompt_credentials()

    # --- Lifecycle ---

    def _ensure_exclusive(self, backend: WorkerBackend, restarting: bool = False) -> None:
        """Refuse to start while any other backend has the worker running.

        A restart may replace the worker this backend already runs, so its own
        status is only checked for a fresh raw-process start.
        """
        for other in available_backends(self.config, self.executor):
            if other.kind == backend.kind:
                continue
            other_status = other.status()
            if other_status.running:
                raise ProcessError(
                    f"Worker is already running under the {other.kind.value} backend "
                    f"({other_status.detail}); stop it first"
                )
        if isinstance(backend, RawProcessBackend) and not restarting:
            own_status = backend.status()
            if own_status.running:
                raise ProcessError(f"Worker is already running ({own_status.detail})")

    def start(self, credentials: WorkerCredentials | None = None) -> WorkerStatus:
        """Start the worker under the selected backend.

        Raises:
            CredentialsValidationError: If no valid credentials could be obtained.
            ProcessError: If the worker is already running elsewhere or launch failed.
            ServiceError: If systemd refused to start the unit.
        """
        creds = self._credentials(credentials)
        backend = self.backend
        self._ensure_exclusive(backend)
        logger.info(f"Starting worker {creds.worker_id} via {backend.kind.value}")
        backend.start(creds)
        self.state = WorkerState.RUNNING
        return backend.status()

    def stop(self) -> None:
        """Stop the worker. Raises NotRunningError if nothing is running."""
        try:
            self.backend.stop(force=False)
        except NotRunningError:
            self.state = WorkerState.STOPPED
            raise
        self.state = WorkerState.STOPPED

    def force_kill(self) -> None:
        """Stop, escalating to SIGKILL for anything that ignores SIGTERM."""
        try:
            self.backend.stop(force=True)
        except NotRunningError:
            self.state = WorkerState.STOPPED
            raise
        self.state = WorkerState.STOPPED

    def restart(self, credentials: WorkerCredentials | None = None) -> WorkerStatus:
        creds = self._credentials(credentials)
        backend = self.backend
        self._ensure_exclusive(backend, restarting=True)
        backend.restart(creds)
        self.state = WorkerState.RUNNING
        return backend.status()

    def status(self) -> WorkerStatus:
        status = self.backend.status()
        if status.running:
            self.state = WorkerState.RUNNING
        elif self.state == WorkerState.RUNNING:
            self.state = WorkerState.STOPPED
        return status

    def logs(self, lines: int = 50, follow: bool = False) -> Iterator[str]:
        return self.backend.logs(lines=lines, follow=follow)

    def attach(self) -> int:
        return self.backend.attach()
