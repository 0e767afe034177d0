"""CLI entry point for the Kuzco manager.

Commands:
- kuzco-manager: Interactive numbered menu (default)
- kuzco-manager install: Prepare the host and start the worker
- kuzco-manager start / stop / restart / status: Worker lifecycle
- kuzco-manager logs: Stream worker logs
- kuzco-manager reset: Forget saved worker credentials
- kuzco-manager backend: Show which supervision backend would be used
- kuzco-manager version: Show version information
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from kuzco_manager import __version__
from kuzco_manager.cli_ui.actions import ManagerActions
from kuzco_manager.cli_ui.menu import WorkerMenu
from kuzco_manager.core.config import ManagerConfig, load_config
from kuzco_manager.core.credentials import CredentialStore
from kuzco_manager.core.errors import ConfigError, CredentialsValidationError, KuzcoManagerError
from kuzco_manager.core.restart_loop import RestartLoop, worker_command
from kuzco_manager.core.supervisor import WorkerSupervisor

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def _configure_logging(verbosity: int) -> None:
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def _get_config(ctx: click.Context) -> ManagerConfig:
    return ctx.obj["config"]


def _get_actions(ctx: click.Context) -> ManagerActions:
    if "actions" not in ctx.obj:
        supervisor = WorkerSupervisor(_get_config(ctx))
        ctx.obj["actions"] = ManagerActions(supervisor, console=console)
    return ctx.obj["actions"]


def _fail(e: Exception) -> None:
    console.print(f"[red]Error:[/red] {escape(str(e))}")
    sys.exit(1)


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Configuration file (default: ~/.kuzco/manager.yaml)",
)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v, -vv)")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, verbose: int) -> None:
    """Kuzco Manager - install and supervise a Kuzco GPU worker.

    Run without a command for the interactive menu.
    """
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    if "config" not in ctx.obj:
        try:
            ctx.obj["config"] = load_config(config_path)
        except ConfigError as e:
            _fail(e)

    if ctx.invoked_subcommand is None:
        WorkerMenu(_get_actions(ctx)).run()


@main.command()
@click.pass_context
def menu(ctx: click.Context) -> None:
    """Show the interactive numbered menu."""
    WorkerMenu(_get_actions(ctx)).run()


@main.command()
@click.option(
    "--continue-on-error",
    is_flag=True,
    help="Keep going when a setup step fails",
)
@click.option("--no-start", is_flag=True, help="Only prepare the host; don't start the worker")
@click.pass_context
def install(ctx: click.Context, continue_on_error: bool, no_start: bool) -> None:
    """Install GPU prerequisites and the Kuzco CLI, then start the worker.

    Example:
        kuzco-manager install --continue-on-error
    """
    try:
        # Without the flag, continue_on_setup_error from the config decides
        _get_actions(ctx).install(continue_on_error=continue_on_error or None, start=not no_start)
    except KuzcoManagerError as e:
        _fail(e)


@main.command()
@click.pass_context
def start(ctx: click.Context) -> None:
    """Start the worker (prompts for credentials on first run)."""
    try:
        _get_actions(ctx).start()
    except KuzcoManagerError as e:
        _fail(e)


@main.command()
@click.option("--force", is_flag=True, help="SIGKILL processes that ignore SIGTERM")
@click.pass_context
def stop(ctx: click.Context, force: bool) -> None:
    """Stop the worker."""
    try:
        _get_actions(ctx).stop(force=force)
    except KuzcoManagerError as e:
        _fail(e)


@main.command()
@click.pass_context
def restart(ctx: click.Context) -> None:
    """Restart the worker."""
    try:
        _get_actions(ctx).restart()
    except KuzcoManagerError as e:
        _fail(e)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show whether the worker is running."""
    try:
        _get_actions(ctx).status()
    except KuzcoManagerError as e:
        _fail(e)


@main.command()
@click.option("--lines", "-n", type=int, default=50, help="Number of lines to show")
@click.option("--follow", "-f", is_flag=True, help="Keep streaming new lines")
@click.option("--attach", is_flag=True, help="Attach to the screen session instead")
@click.pass_context
def logs(ctx: click.Context, lines: int, follow: bool, attach: bool) -> None:
    """Show worker logs.

    Example:
        kuzco-manager logs -n 200 --follow
    """
    try:
        _get_actions(ctx).logs(lines=lines, follow=follow, attach=attach)
    except KuzcoManagerError as e:
        _fail(e)


@main.command()
@click.confirmation_option(prompt="Remove saved worker ID and registration code?")
@click.pass_context
def reset(ctx: click.Context) -> None:
    """Forget saved worker credentials."""
    try:
        _get_actions(ctx).reset()
    except KuzcoManagerError as e:
        _fail(e)


@main.command()
@click.pass_context
def backend(ctx: click.Context) -> None:
    """Show which supervision backend this host would use."""
    try:
        _get_actions(ctx).show_backend()
    except KuzcoManagerError as e:
        _fail(e)


@main.command(name="run-loop", hidden=True)
@click.option(
    "--credentials-file",
    type=click.Path(dir_okay=False, path_type=Path),
    required=True,
)
@click.option("--binary", default="kuzco", show_default=True)
@click.option("--delay", type=float, default=5.0, show_default=True)
def run_loop(credentials_file: Path, binary: str, delay: float) -> None:
    """Run the worker in the foreground, relaunching it whenever it exits."""
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stdout,
        force=True,
    )
    try:
        credentials = CredentialStore(credentials_file).load()
    except CredentialsValidationError as e:
        _fail(e)
        return
    if credentials is None:
        _fail(ConfigError(f"No credentials at {credentials_file}"))
        return

    loop = RestartLoop(
        worker_command(binary, credentials.worker_id, credentials.registration_code),
        delay=delay,
    )
    loop.install_signal_handlers()
    loop.run()


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"Kuzco Manager v{__version__}")
    console.print("Kuzco GPU worker installer and supervisor")


if __name__ == "__main__":
    main()
