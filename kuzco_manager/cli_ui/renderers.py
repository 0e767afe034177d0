"""Rich renderables for worker status and setup results.

SECURITY: Command output and credential values are escaped to prevent Rich
markup injection.
"""

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from kuzco_manager.core.models import WorkerCredentials, WorkerStatus
from kuzco_manager.install.environment import StepOutcome, StepResult


def render_status(status: WorkerStatus) -> Panel:
    if status.running:
        state = "[green]✓ Running[/]"
        style = "green"
    else:
        state = "[yellow]○ Not running[/]"
        style = "yellow"

    lines = [
        f"[bold]Status:[/] {state}",
        f"[bold]Backend:[/] {status.backend.value}",
        f"[bold]Detail:[/] {escape(status.detail) or '-'}",
    ]
    if status.pids:
        lines.append(f"[bold]PIDs:[/] {', '.join(str(pid) for pid in status.pids)}")
    return Panel("\n".join(lines), title="Kuzco Worker", border_style=style)


def render_credentials(credentials: WorkerCredentials) -> str:
    return (
        f"[bold]Worker ID:[/] {escape(credentials.worker_id)}\n"
        f"[bold]Registration Code:[/] {escape(credentials.masked_code)}"
    )


def render_setup_results(results: list[StepResult]) -> Table:
    table = Table(title="Environment Setup")
    table.add_column("Step", style="cyan")
    table.add_column("Result", justify="center")
    table.add_column("Message", max_width=70)

    for result in results:
        if result.outcome == StepOutcome.OK:
            outcome = "[green]✓ OK[/]"
        elif result.outcome == StepOutcome.SKIPPED:
            outcome = "[dim]⊘ Skipped[/]"
        else:
            outcome = "[red]✗ Failed[/]"
        table.add_row(result.name, outcome, escape(result.message))
    return table
