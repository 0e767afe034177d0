"""Host environment setup for Kuzco worker nodes."""

from kuzco_manager.install.environment import EnvironmentInstaller, StepOutcome, StepResult

__all__ = ["EnvironmentInstaller", "StepOutcome", "StepResult"]
