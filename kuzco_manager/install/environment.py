"""One-shot host setup for a Kuzco worker node.

Steps run in a fixed order:

1. base-packages      apt prerequisites (gnupg, lsb-release, wget, curl)
2. timezone           only when `timezone` is configured
3. gpu                nvidia-smi must be present and working
4. container-toolkit  NVIDIA container toolkit apt repo + package
5. cuda               CUDA repo package for WSL / Ubuntu 22.04 / 24.04, then cuda
6. cuda-env           PATH / LD_LIBRARY_PATH / CUDA_HOME exports in ~/.bashrc
7. kuzco-cli          vendor install script

Every step is safe to re-run. A failing step aborts the run unless
continue_on_error is set, in which case it is recorded and skipped past.
"""

import logging
import re
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import requests
from pydantic import BaseModel

from kuzco_manager.core.config import ManagerConfig
from kuzco_manager.core.errors import SetupError
from kuzco_manager.system.executor import CommandExecutor, ExecutionResult

logger = logging.getLogger(__name__)

BASE_PACKAGES = ["gnupg", "lsb-release", "wget", "curl"]

TOOLKIT_GPG_URL = "https://nvidia.github.io/libnvidia-container/gpgkey"
TOOLKIT_LIST_URL = (
    "https://nvidia.github.io/libnvidia-container/stable/deb/nvidia-container-toolkit.list"
)
TOOLKIT_KEYRING = "/usr/share/keyrings/nvidia-container-toolkit-keyring.gpg"
TOOLKIT_LIST_PATH = "/etc/apt/sources.list.d/nvidia-container-toolkit.list"

# Ubuntu release -> NVIDIA repository name
CUDA_DISTROS = {
    "22.04": "ubuntu2204",
    "24.04": "ubuntu2404",
}
WSL_DISTRO = "wsl-ubuntu"
WSL_MARKER = Path("/mnt/wsl")

CUDA_ENV_LINES = [
    "export PATH=/usr/local/cuda/bin:$PATH",
    "export LD_LIBRARY_PATH=/usr/local/cuda/lib64:$LD_LIBRARY_PATH",
    "export CUDA_HOME=/usr/local/cuda",
]

_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
_HTTP_TIMEOUT = 30


class StepOutcome(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


class StepResult(BaseModel):
    """Outcome of one setup step."""

    name: str
    outcome: StepOutcome
    message: str = ""


class StepSkipped(Exception):
    """Raised by a step that has nothing to do."""

    pass


@dataclass
class SetupStep:
    name: str
    description: str
    action: Callable[[], str]


def _version_key(filename: str) -> tuple[int, ...]:
    """Natural sort key, equivalent to `sort -V` for package file names."""
    return tuple(int(part) for part in re.findall(r"\d+", filename))


def pick_latest_cuda_package(index_html: str, distro: str) -> str | None:
    """Find the newest cuda-repo-<distro>-*_amd64.deb named in a repo index."""
    pattern = re.compile(rf"cuda-repo-{re.escape(distro)}-[0-9][0-9.\-_]*_amd64\.deb")
    candidates = set(pattern.findall(index_html))
    if not candidates:
        return None
    return max(candidates, key=_version_key)


class EnvironmentInstaller:
    """Prepare a host to run the Kuzco worker."""

    def __init__(
        self,
        config: ManagerConfig,
        executor: CommandExecutor,
        http: requests.Session | None = None,
        bashrc: Path | None = None,
    ):
        self.config = config
        self.executor = executor
        self.http = http or requests.Session()
        self.bashrc = bashrc or Path.home() / ".bashrc"

    def steps(self) -> list[SetupStep]:
        return [
            SetupStep("base-packages", "Install required packages", self.install_base_packages),
            SetupStep("timezone", "Set system timezone", self.set_timezone),
            SetupStep("gpu", "Check for NVIDIA GPU", self.check_gpu),
            SetupStep(
                "container-toolkit",
                "Install NVIDIA Container Toolkit",
                self.install_container_toolkit,
            ),
            SetupStep("cuda", "Install CUDA", self.install_cuda),
            SetupStep("cuda-env", "Set CUDA environment variables", self.set_cuda_env),
            SetupStep("kuzco-cli", "Install Kuzco CLI", self.install_kuzco_cli),
        ]

    def run(
        self,
        continue_on_error: bool | None = None,
        on_step: Callable[[SetupStep], None] | None = None,
    ) -> list[StepResult]:
        """Run all steps in order.

        Raises:
            SetupError: From the first failing step, unless continuing on error.
        """
        if continue_on_error is None:
            continue_on_error = self.config.continue_on_setup_error

        results: list[StepResult] = []
        for step in self.steps():
            if on_step:
                on_step(step)
            logger.info(f"==> {step.description}")
            try:
                message = step.action()
                results.append(StepResult(name=step.name, outcome=StepOutcome.OK, message=message))
            except StepSkipped as e:
                logger.info(f"{step.name}: skipped ({e})")
                results.append(StepResult(name=step.name, outcome=StepOutcome.SKIPPED, message=str(e)))
            except SetupError as e:
                results.append(StepResult(name=step.name, outcome=StepOutcome.FAILED, message=str(e)))
                if not continue_on_error:
                    raise
                logger.error(f"{e} (continuing)")
        return results

    # --- helpers ---

    def _require(self, result: ExecutionResult, step: str, what: str) -> ExecutionResult:
        if not result.ok:
            raise SetupError(step, f"{what} failed: {result.error_text()}")
        return result

    def _apt(self, step: str, *args: str) -> None:
        self._require(
            self.executor.run(["apt-get", *args], privileged=True, env=_APT_ENV),
            step,
            f"apt-get {args[0]}",
        )

    def _fetch(self, step: str, url: str) -> requests.Response:
        try:
            response = self.http.get(url, timeout=_HTTP_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            raise SetupError(step, f"Download of {url} failed: {e}") from e
        return response

    def _download(self, step: str, url: str, dest: Path) -> Path:
        try:
            with self.http.get(url, stream=True, timeout=_HTTP_TIMEOUT) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=1024 * 1024):
                        f.write(chunk)
        except requests.RequestException as e:
            raise SetupError(step, f"Download of {url} failed: {e}") from e
        return dest

    # --- steps ---

    def install_base_packages(self) -> str:
        self._apt("base-packages", "update")
        self._apt("base-packages", "install", "-y", *BASE_PACKAGES)
        return f"Installed {', '.join(BASE_PACKAGES)}"

    def set_timezone(self) -> str:
        if not self.config.timezone:
            raise StepSkipped("no timezone configured")
        self._require(
            self.executor.run(
                ["timedatectl", "set-timezone", self.config.timezone], privileged=True
            ),
            "timezone",
            "timedatectl set-timezone",
        )
        return f"Timezone set to {self.config.timezone}"

    def check_gpu(self) -> str:
        if not self.executor.which("nvidia-smi"):
            raise SetupError("gpu", "NVIDIA GPU not detected! Install NVIDIA drivers first.")
        result = self._require(
            self.executor.run(["nvidia-smi", "-L"], timeout=60), "gpu", "nvidia-smi"
        )
        gpus = [line for line in result.stdout.splitlines() if line.strip()]
        if not gpus:
            raise SetupError("gpu", "nvidia-smi reported no GPUs")
        return f"NVIDIA GPU detected: {gpus[0].strip()}" + (
            f" (+{len(gpus) - 1} more)" if len(gpus) > 1 else ""
        )

    def install_container_toolkit(self) -> str:
        step = "container-toolkit"
        key = self._fetch(step, TOOLKIT_GPG_URL).content
        self._require(
            self.executor.run(
                ["gpg", "--batch", "--yes", "--dearmor", "-o", TOOLKIT_KEYRING],
                privileged=True,
                input_text=key,
            ),
            step,
            "gpg --dearmor",
        )

        source_list = self._fetch(step, TOOLKIT_LIST_URL).text
        signed_list = source_list.replace(
            "deb https://", f"deb [signed-by={TOOLKIT_KEYRING}] https://"
        )
        self._require(
            self.executor.run(["tee", TOOLKIT_LIST_PATH], privileged=True, input_text=signed_list),
            step,
            f"writing {TOOLKIT_LIST_PATH}",
        )

        self._apt(step, "update")
        self._apt(step, "install", "-y", "nvidia-container-toolkit")
        return "NVIDIA Container Toolkit installed"

    def detect_cuda_distro(self) -> str:
        if WSL_MARKER.is_dir():
            return WSL_DISTRO
        result = self.executor.run(["lsb_release", "-rs"], timeout=15)
        version = result.stdout.strip()
        distro = CUDA_DISTROS.get(version)
        if not result.ok or distro is None:
            raise SetupError("cuda", f"Unsupported OS version '{version or 'unknown'}'")
        return distro

    def install_cuda(self) -> str:
        step = "cuda"
        if self.executor.which("nvcc"):
            raise StepSkipped("CUDA is already installed")

        distro = self.detect_cuda_distro()
        repo_url = f"{self.config.cuda_repo_base.rstrip('/')}/{distro}/x86_64"
        package = pick_latest_cuda_package(self._fetch(step, f"{repo_url}/").text, distro)
        if package is None:
            raise SetupError(step, f"Failed to find a valid CUDA package for {distro}")

        logger.info(f"Installing {package} for {distro}")
        with tempfile.TemporaryDirectory(prefix="kuzco-cuda-") as workdir:
            deb_path = self._download(step, f"{repo_url}/{package}", Path(workdir) / package)
            self._require(
                self.executor.run(["dpkg", "-i", str(deb_path)], privileged=True),
                step,
                "dpkg -i",
            )

        keyrings = sorted(Path("/var").glob(f"cuda-repo-{distro}-*/cuda-*-keyring.gpg"))
        if not keyrings:
            logger.warning(f"No CUDA keyring found under /var/cuda-repo-{distro}-*")
        for keyring in keyrings:
            self._require(
                self.executor.run(["cp", str(keyring), "/usr/share/keyrings/"], privileged=True),
                step,
                f"copying {keyring.name}",
            )

        self._apt(step, "update")
        self._apt(step, "install", "-y", "cuda")
        return f"CUDA installed from {package}"

    def set_cuda_env(self) -> str:
        try:
            existing = self.bashrc.read_text() if self.bashrc.exists() else ""
        except OSError as e:
            raise SetupError("cuda-env", f"Cannot read {self.bashrc}: {e}") from e
        present = {line.strip() for line in existing.splitlines()}
        missing = [line for line in CUDA_ENV_LINES if line not in present]
        if not missing:
            raise StepSkipped(f"CUDA variables already set in {self.bashrc}")

        try:
            with open(self.bashrc, "a") as f:
                if existing and not existing.endswith("\n"):
                    f.write("\n")
                for line in missing:
                    f.write(line + "\n")
        except OSError as e:
            raise SetupError("cuda-env", f"Cannot update {self.bashrc}: {e}") from e
        return f"Added {len(missing)} line(s) to {self.bashrc}; open a new shell to apply"

    def install_kuzco_cli(self) -> str:
        step = "kuzco-cli"
        script = self._fetch(step, self.config.install_script_url).text
        self._require(
            self.executor.run(["sh"], input_text=script, timeout=self.config.command_timeout),
            step,
            "Kuzco install script",
        )
        return "Kuzco CLI installed"
