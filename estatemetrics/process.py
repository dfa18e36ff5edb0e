# estatemetrics/process.py
"""Start/stop control for the locally managed store process (a Docker container)."""
import subprocess
from typing import List, Optional, Sequence

from . import config
from .errors import ProcessStartError
from .utils import logger


class DockerContainer:
    """Drives one named container through the docker CLI.

    `start()` is a no-op when the container already runs, restarts it when
    it exists but is stopped, and creates it from `image` otherwise.
    """

    def __init__(
        self,
        name: str = config.STORE_CONTAINER,
        image: str = config.STORE_IMAGE,
        port: int = config.STORE_PORT,
        environment: Optional[dict] = None,
        volume: Optional[str] = None,
        docker: str = "docker",
        timeout: float = 120,
    ):
        self.name = name
        self.image = image
        self.port = port
        self.environment = environment if environment is not None else {"POSTGRES_PASSWORD": config.STORE_PASSWORD}
        self.volume = volume if volume is not None else f"{name}-data:/var/lib/postgresql/data"
        self.docker = docker
        self.timeout = timeout

    def _run(self, args: Sequence[str], check: bool = True) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.docker, *args],
            check=check,
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )

    def is_running(self) -> bool:
        try:
            result = self._run(["inspect", "-f", "{{.State.Running}}", self.name], check=False)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def exists(self) -> bool:
        try:
            result = self._run(["ps", "-a", "--format", "{{.Names}}"], check=False)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return self.name in result.stdout.split()

    def run_args(self) -> List[str]:
        args = ["run", "-d", "--name", self.name, "-p", f"{self.port}:5432"]
        for key, value in self.environment.items():
            args += ["-e", f"{key}={value}"]
        if self.volume:
            args += ["-v", self.volume]
        args.append(self.image)
        return args

    def start(self) -> None:
        try:
            if self.is_running():
                logger.debug("%s is already running", self.name)
                return
            if self.exists():
                logger.info("%s container exists, starting it", self.name)
                self._run(["start", self.name])
            else:
                logger.info("%s container does not exist, creating it from %s", self.name, self.image)
                self._run(self.run_args())
        except FileNotFoundError as e:
            raise ProcessStartError(f"{self.docker} executable not found") from e
        except subprocess.CalledProcessError as e:
            raise ProcessStartError(f"{' '.join(e.cmd)} exited {e.returncode}: {(e.stderr or '').strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise ProcessStartError(f"starting {self.name} timed out after {e.timeout}s") from e

    def stop(self) -> None:
        if not self.is_running():
            logger.debug("%s container is not running", self.name)
            return
        logger.info("Stopping %s container", self.name)
        try:
            self._run(["stop", self.name])
        except (OSError, subprocess.SubprocessError) as e:
            logger.error("Failed stopping %s: %s", self.name, e)
