"""Core modules for the Kuzco manager."""

from kuzco_manager.core.config import ManagerConfig, load_config
from kuzco_manager.core.credentials import CredentialStore
from kuzco_manager.core.errors import (
    BackendProbeFailure,
    ConfigError,
    CredentialsValidationError,
    KuzcoManagerError,
    NotRunningError,
    ProcessError,
    ServiceError,
    SetupError,
)
from kuzco_manager.core.models import (
    BackendKind,
    WorkerCredentials,
    WorkerState,
    WorkerStatus,
)
from kuzco_manager.core.supervisor import WorkerSupervisor

__all__ = [
    "BackendKind",
    "BackendProbeFailure",
    "ConfigError",
    "CredentialStore",
    "CredentialsValidationError",
    "KuzcoManagerError",
    "ManagerConfig",
    "NotRunningError",
    "ProcessError",
    "ServiceError",
    "SetupError",
    "WorkerCredentials",
    "WorkerState",
    "WorkerStatus",
    "WorkerSupervisor",
    "load_config",
]
