"""Worker credential persistence.

The credentials file is a plain KEY=value file, one pair per line:

    WORKER_ID=abc123
    REGISTRATION_CODE=xyz-456

Values are shell-quoted on write when they contain anything other than
word characters, so the file stays `source`-able by shell scripts.
"""

import logging
import os
import shlex
import tempfile
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError

from kuzco_manager.core.errors import CredentialsValidationError
from kuzco_manager.core.models import WorkerCredentials

logger = logging.getLogger(__name__)

WORKER_ID_KEY = "WORKER_ID"
REGISTRATION_CODE_KEY = "REGISTRATION_CODE"

_KEY_ALIASES = {
    "WORKER_ID": WORKER_ID_KEY,
    "KUZCO_WORKER_ID": WORKER_ID_KEY,
    "WORKER": WORKER_ID_KEY,
    "REGISTRATION_CODE": REGISTRATION_CODE_KEY,
    "KUZCO_CODE": REGISTRATION_CODE_KEY,
    "CODE": REGISTRATION_CODE_KEY,
}

# Prompt callable: (label, secret) -> answer
PromptFn = Callable[[str, bool], str]


def _parse_value(raw: str) -> str:
    """Unquote a value written by save() or by hand."""
    raw = raw.strip()
    if raw[:1] in ("'", '"'):
        try:
            parts = shlex.split(raw)
        except ValueError:
            return raw.strip("'\"")
        return parts[0] if parts else ""
    return raw


def parse_credentials_text(text: str) -> dict[str, str]:
    """Parse KEY=value lines into canonical keys; unknown keys are ignored."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        canonical = _KEY_ALIASES.get(key.upper())
        if canonical:
            values[canonical] = _parse_value(raw)
    return values


def format_credentials(credentials: WorkerCredentials) -> str:
    return (
        f"{WORKER_ID_KEY}={shlex.quote(credentials.worker_id)}\n"
        f"{REGISTRATION_CODE_KEY}={shlex.quote(credentials.registration_code)}\n"
    )


def _validation_message(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        field_name = ".".join(str(x) for x in err["loc"])
        parts.append(f"{field_name}: {err['msg']}")
    return "; ".join(parts)


def build_credentials(worker_id: str, registration_code: str) -> WorkerCredentials:
    """Validate raw input into WorkerCredentials.

    Raises:
        CredentialsValidationError: If either value is empty.
    """
    try:
        return WorkerCredentials(worker_id=worker_id, registration_code=registration_code)
    except ValidationError as e:
        raise CredentialsValidationError(_validation_message(e)) from e


class CredentialStore:
    """Load, prompt for, save and reset the worker credentials file."""

    def __init__(self, path: Path, max_attempts: int = 3):
        self.path = path
        self.max_attempts = max_attempts

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> WorkerCredentials | None:
        """Read credentials from disk.

        Returns:
            WorkerCredentials, or None if the file does not exist.

        Raises:
            CredentialsValidationError: If the file is missing a key or a value is empty.
        """
        if not self.exists():
            return None

        values = parse_credentials_text(self.path.read_text())
        missing = [k for k in (WORKER_ID_KEY, REGISTRATION_CODE_KEY) if k not in values]
        if missing:
            raise CredentialsValidationError(
                f"{self.path} is missing {', '.join(missing)}"
            )
        return build_credentials(values[WORKER_ID_KEY], values[REGISTRATION_CODE_KEY])

    def save(self, credentials: WorkerCredentials) -> Path:
        """Write credentials via temp file + rename, readable by the owner only."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".worker_info-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(format_credentials(credentials))
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info(f"Saved worker credentials to {self.path}")
        return self.path

    def reset(self) -> bool:
        """Delete the credentials file. Returns True if a file was removed."""
        if not self.exists():
            return False
        self.path.unlink()
        logger.info(f"Removed worker credentials at {self.path}")
        return True

    def prompt(self, ask: PromptFn) -> WorkerCredentials:
        """Ask for credentials until valid or attempts run out. Does not save."""
        last_error: CredentialsValidationError | None = None
        for attempt in range(1, self.max_attempts + 1):
            worker_id = ask("Enter Worker ID", False)
            registration_code = ask("Enter Registration Code", True)
            try:
                return build_credentials(worker_id or "", registration_code or "")
            except CredentialsValidationError as e:
                last_error = e
                logger.warning(f"Invalid credentials (attempt {attempt}/{self.max_attempts}): {e}")

        raise CredentialsValidationError(
            f"No valid credentials after {self.max_attempts} attempts: {last_error}"
        )

    def load_or_prompt(self, ask: PromptFn) -> WorkerCredentials:
        """Return saved credentials, or prompt for new ones and persist them.

        An unreadable or invalid file is treated like a missing one and
        overwritten once valid input is given. Nothing is written when
        every prompt attempt is rejected.
        """
        try:
            credentials = self.load()
        except CredentialsValidationError as e:
            logger.warning(f"Ignoring invalid credentials file: {e}")
            credentials = None

        if credentials is not None:
            logger.info(f"Using saved worker ID {credentials.worker_id}")
            return credentials

        credentials = self.prompt(ask)
        self.save(credentials)
        return credentials
