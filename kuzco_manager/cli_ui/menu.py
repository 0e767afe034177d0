"""Interactive numbered menu.

Each entry runs one action to completion before the next prompt. Errors
are printed and the menu is shown again; only "Exit" leaves the loop.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm, Prompt

from kuzco_manager.cli_ui.actions import ManagerActions
from kuzco_manager.core.errors import KuzcoManagerError

logger = logging.getLogger(__name__)

MENU_TITLE = "🚀 Kuzco Manager - GPU & CUDA Ready 🚀"
RULE = "=" * 38


@dataclass
class MenuEntry:
    key: str
    label: str
    handler: Callable[[], object] | None  # None means exit


class WorkerMenu:
    """Numbered menu over ManagerActions."""

    def __init__(
        self,
        actions: ManagerActions,
        console: Console | None = None,
        ask: Callable[[str], str] | None = None,
        confirm: Callable[[str], bool] | None = None,
    ):
        self.actions = actions
        self.console = console or actions.console
        self._ask = ask or (lambda label: Prompt.ask(label, default="", show_default=False))
        self._confirm = confirm or (lambda label: Confirm.ask(label, default=False))
        self.entries = [
            MenuEntry("1", "Install Kuzco Worker Node", self.actions.install),
            MenuEntry("2", "Start Worker", self.actions.start),
            MenuEntry("3", "Check Worker Status", self.actions.status),
            MenuEntry("4", "Stop Worker", self.actions.stop),
            MenuEntry("5", "Restart Worker", self.actions.restart),
            MenuEntry("6", "View Worker Logs", self._logs),
            MenuEntry("7", "Force Kill Worker", self._force_kill),
            MenuEntry("8", "Reset Worker Credentials", self._reset),
            MenuEntry("9", "Exit", None),
        ]

    def _logs(self) -> None:
        self.actions.logs(lines=50, follow=False)

    def _force_kill(self) -> None:
        self.actions.stop(force=True)

    def _reset(self) -> None:
        if self._confirm("Remove saved worker ID and registration code?"):
            self.actions.reset()

    def show(self) -> None:
        self.console.print(RULE)
        self.console.print(f"[bold]{MENU_TITLE}[/bold]")
        self.console.print(RULE)
        for entry in self.entries:
            self.console.print(f"{entry.key}) {entry.label}")
        self.console.print(RULE)

    def dispatch(self, choice: str) -> bool:
        """Run the entry for `choice`. Returns False when the menu should exit."""
        entry = next((e for e in self.entries if e.key == choice.strip()), None)
        if entry is None:
            self.console.print("[red]❌ Invalid option, try again![/red]")
            return True
        if entry.handler is None:
            self.console.print("🚀 Exiting Kuzco Manager!")
            return False

        try:
            entry.handler()
        except KuzcoManagerError as e:
            logger.debug(f"Menu action '{entry.label}' failed", exc_info=True)
            self.console.print(f"[red]❌ {escape(str(e))}[/red]")
        return True

    def run(self) -> None:
        """Loop until the user picks Exit (or hits Ctrl+D / Ctrl+C)."""
        while True:
            self.show()
            try:
                choice = self._ask("Choose an option")
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n🚀 Exiting Kuzco Manager!")
                return
            if not self.dispatch(choice):
                return
