"""Host command execution for the Kuzco manager."""

from kuzco_manager.system.executor import CommandExecutor, ExecutionResult

__all__ = ["CommandExecutor", "ExecutionResult"]
