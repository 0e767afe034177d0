"""Exception hierarchy for the Kuzco manager.

Subcommands exit non-zero on KuzcoManagerError; the interactive menu
reports it and returns to the prompt. NotRunningError is informational.
"""


class KuzcoManagerError(Exception):
    """Base class for all manager errors."""

    pass


class ConfigError(KuzcoManagerError):
    """Manager configuration file is unreadable or invalid."""

    pass


class CredentialsValidationError(KuzcoManagerError):
    """Worker ID or registration code is empty or malformed."""

    pass


class BackendProbeFailure(KuzcoManagerError):
    """A supervision backend is not available on this host."""

    pass


class ServiceError(KuzcoManagerError):
    """The service manager reported a failure."""

    pass


class ProcessError(KuzcoManagerError):
    """An external command or process operation failed."""

    pass


class NotRunningError(KuzcoManagerError):
    """Nothing matching the worker was found to act on."""

    pass


class SetupError(KuzcoManagerError):
    """A one-shot environment setup step failed."""

    def __init__(self, step: str, message: str):
        super().__init__(f"[{step}] {message}")
        self.step = step
