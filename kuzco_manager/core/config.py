"""Manager configuration.

Defaults live on ManagerConfig; ~/.kuzco/manager.yaml overrides them.
KUZCO_HOME relocates the whole state directory and KUZCO_BIN points at a
non-default vendor binary.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from kuzco_manager.core.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "manager.yaml"

_VALID_SUDO_MODES = ("auto", "always", "never")
_PATH_FIELDS = ("home", "credentials_file", "log_file")


def default_home() -> Path:
    """State directory: $KUZCO_HOME or ~/.kuzco."""
    env_home = os.environ.get("KUZCO_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".kuzco"


@dataclass
class ManagerConfig:
    """Configuration for the worker supervisor and installer."""

    home: Path = field(default_factory=default_home)
    credentials_file: Path | None = None  # Defaults to <home>/worker_info
    log_file: Path | None = None  # Defaults to <home>/worker.log

    # Vendor binary and supervision names
    binary: str = field(default_factory=lambda: os.environ.get("KUZCO_BIN", "kuzco"))
    unit_name: str = "kuzco.service"
    session_name: str = "kuzco"

    # Timing (seconds)
    restart_delay: float = 5.0
    stop_grace_period: float = 10.0
    command_timeout: int = 600

    # Raw backend runs the crash-restart loop; False uses `kuzco worker start --background`
    raw_restart_loop: bool = True

    # Privilege escalation for apt/systemctl/dpkg/kuzco
    use_sudo: str = "auto"

    # Installer settings
    timezone: str | None = None
    install_script_url: str = "https://inference.supply/install.sh"
    cuda_repo_base: str = "https://developer.download.nvidia.com/compute/cuda/repos"
    continue_on_setup_error: bool = False

    def __post_init__(self) -> None:
        self.home = Path(self.home).expanduser()
        if self.credentials_file is None:
            self.credentials_file = self.home / "worker_info"
        if self.log_file is None:
            self.log_file = self.home / "worker.log"
        self.credentials_file = Path(self.credentials_file).expanduser()
        self.log_file = Path(self.log_file).expanduser()

        if self.use_sudo not in _VALID_SUDO_MODES:
            raise ConfigError(
                f"use_sudo must be one of {', '.join(_VALID_SUDO_MODES)}, got '{self.use_sudo}'"
            )
        if self.restart_delay < 0:
            raise ConfigError("restart_delay must be >= 0")
        if self.stop_grace_period < 0:
            raise ConfigError("stop_grace_period must be >= 0")
        if not self.session_name or not self.session_name.replace("-", "").replace("_", "").isalnum():
            raise ConfigError(f"Invalid session_name: '{self.session_name}'")

    @property
    def config_path(self) -> Path:
        return self.home / CONFIG_FILENAME


def load_config(path: Path | None = None) -> ManagerConfig:
    """Load ManagerConfig from YAML, falling back to defaults.

    Raises:
        ConfigError: If the file is not valid YAML, not a mapping, or has
            unknown keys or invalid values.
    """
    config_path = path or default_home() / CONFIG_FILENAME
    if not config_path.exists():
        return ManagerConfig()

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(
            f"Expected a mapping in {config_path}, got {type(data).__name__}"
        )

    known = {f.name for f in dataclasses.fields(ManagerConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in {config_path}: {', '.join(unknown)}")

    values: dict[str, Any] = dict(data)
    for key in _PATH_FIELDS:
        if values.get(key) is not None:
            values[key] = Path(str(values[key]))

    try:
        config = ManagerConfig(**values)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e

    logger.debug(f"Loaded configuration from {config_path}")
    return config
