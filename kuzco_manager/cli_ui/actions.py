"""User-facing worker actions shared by subcommands and the interactive menu.

Actions print progress through a Rich console and let KuzcoManagerError
propagate; the caller decides whether an error exits the process (subcommands)
or returns to the prompt (menu). NotRunningError is reported here as a
warning because it is never fatal.
"""

import logging
import subprocess

from rich.console import Console
from rich.markup import escape

from kuzco_manager.cli_ui.renderers import (
    render_credentials,
    render_setup_results,
    render_status,
)
from kuzco_manager.core.errors import NotRunningError, ProcessError
from kuzco_manager.core.models import WorkerStatus
from kuzco_manager.core.supervisor import WorkerSupervisor
from kuzco_manager.install.environment import EnvironmentInstaller, SetupStep, StepResult

logger = logging.getLogger(__name__)


class ManagerActions:
    """One method per menu entry."""

    def __init__(
        self,
        supervisor: WorkerSupervisor,
        console: Console | None = None,
        installer: EnvironmentInstaller | None = None,
    ):
        self.supervisor = supervisor
        self.console = console or Console()
        self._installer = installer

    @property
    def installer(self) -> EnvironmentInstaller:
        if self._installer is None:
            self._installer = EnvironmentInstaller(self.supervisor.config, self.supervisor.executor)
        return self._installer

    def _announce_step(self, step: SetupStep) -> None:
        self.console.print(f"[bold]🔧 {escape(step.description)}...[/bold]")

    def install(self, continue_on_error: bool | None = None, start: bool = True) -> list[StepResult]:
        """Prepare the host, install the Kuzco CLI and optionally start the worker."""
        results = self.installer.run(continue_on_error=continue_on_error, on_step=self._announce_step)
        self.console.print(render_setup_results(results))
        if start:
            self.start()
        return results

    def start(self) -> WorkerStatus:
        credentials = self.supervisor.load_or_prompt_credentials()
        self.console.print(render_credentials(credentials))
        status = self.supervisor.start(credentials)
        self.console.print("[green]✅ Kuzco Worker started![/green]")
        self.console.print(render_status(status))
        return status

    def status(self) -> WorkerStatus:
        status = self.supervisor.status()
        self.console.print(render_status(status))
        return status

    def stop(self, force: bool = False) -> bool:
        """Stop the worker. Returns False (with a warning) if nothing was running."""
        try:
            if force:
                self.supervisor.force_kill()
            else:
                self.supervisor.stop()
        except NotRunningError as e:
            logger.info(f"Stop requested but worker not running: {e}")
            self.console.print(f"[yellow]Worker is not running: {escape(str(e))}[/yellow]")
            return False
        self.console.print("[green]✅ Kuzco Worker stopped![/green]")
        return True

    def restart(self) -> WorkerStatus:
        credentials = self.supervisor.load_or_prompt_credentials()
        status = self.supervisor.restart(credentials)
        self.console.print("[green]✅ Kuzco Worker restarted![/green]")
        self.console.print(render_status(status))
        return status

    def logs(self, lines: int = 50, follow: bool = False, attach: bool = False) -> None:
        """Print worker logs; Ctrl+C ends a follow or an attached session view."""
        if attach:
            self.supervisor.attach()
            return

        try:
            for line in self.supervisor.logs(lines=lines, follow=follow):
                self.console.print(line, markup=False, highlight=False)
        except KeyboardInterrupt:
            self.console.print()
        except subprocess.CalledProcessError as e:
            raise ProcessError(f"Log command failed with exit code {e.returncode}") from e

    def reset(self) -> bool:
        removed = self.supervisor.reset_credentials()
        if removed:
            self.console.print("[green]Saved worker credentials removed.[/green]")
        else:
            self.console.print("[yellow]No saved worker credentials.[/yellow]")
        return removed

    def show_backend(self) -> None:
        backend = self.supervisor.backend
        handle = backend.handle()
        self.console.print(f"[bold]Backend:[/] {backend.kind.value}")
        self.console.print(f"[bold]Handle:[/] {escape(handle.model_dump_json())}")
