"""Terminal UI for the Kuzco manager: actions, renderers and the numbered menu."""

from kuzco_manager.cli_ui.actions import ManagerActions
from kuzco_manager.cli_ui.menu import WorkerMenu

__all__ = ["ManagerActions", "WorkerMenu"]
