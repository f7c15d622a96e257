"""Container runtime client for running the OpenVPN server."""

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import Corrupted, RuntimeUnavailable
from .log import get_logger
from .models import DEFAULT_PORT, ServerEndpoint
from .state import ENV_FILE

logger = get_logger(__name__)

LOG_TAIL = 10


@dataclass(frozen=True)
class RuntimeStatus:
    running: bool
    container: str
    log_tail: str = ""


class DockerRuntime:
    def __init__(self, image: str, instance_root: Path, container_name: str = "openvpn",
                 port: int = 1194, binary: str = "docker", timeout: float = 60.0):
        self.image = image
        self.instance_root = Path(instance_root)
        self.container_name = container_name
        self.port = port
        self.binary = binary
        self.timeout = timeout

    def _run(self, *args: str, timeout=None) -> subprocess.CompletedProcess:
        argv = [self.binary, *args]
        logger.debug("Running: %s", " ".join(argv))
        try:
            result = subprocess.run(argv, stdin=subprocess.DEVNULL, capture_output=True, text=True,
                                    timeout=timeout or self.timeout, check=False)
        except FileNotFoundError:
            raise RuntimeUnavailable(f"{self.binary} is not installed or not in PATH") from None
        except subprocess.TimeoutExpired:
            raise RuntimeUnavailable(f"{self.binary} {args[0]} did not answer in time") from None
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip() or f"exit status {result.returncode}"
            raise RuntimeUnavailable(f"{self.binary} {args[0]} failed: {detail}")
        return result

    def check(self) -> None:
        """Fail unless the runtime daemon is reachable."""
        self._run("info")

    def is_running(self) -> bool:
        result = self._run("ps", "--filter", f"name=^{self.container_name}$",
                           "--filter", "status=running", "--format", "{{.Names}}")
        return self.container_name in result.stdout.split()

    def endpoint(self) -> Optional[ServerEndpoint]:
        """Endpoint written by init, or None before init."""
        path = self.instance_root / ENV_FILE
        try:
            return ServerEndpoint.from_dict(json.loads(path.read_text()))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise Corrupted(f"Unreadable {path}: {e}") from e

    def port_mapping(self) -> str:
        endpoint = self.endpoint()
        if endpoint is None:
            return f"{self.port}:{DEFAULT_PORT}/udp"
        # The server listens on the endpoint port inside the container too.
        return f"{endpoint.port}:{endpoint.port}/{endpoint.proto}"

    def run_argv(self) -> List[str]:
        return [
            "run", "-v", f"{self.instance_root.resolve()}:/etc/openvpn",
            "-d", "-p", self.port_mapping(),
            "--cap-add=NET_ADMIN",
            "--cap-drop=ALL",
            "--restart=unless-stopped",
            f"--name={self.container_name}",
            self.image,
        ]

    def start(self) -> bool:
        """Start the server; returns False when it was already running."""
        if self.is_running():
            logger.warning("OpenVPN server is already running")
            return False
        logger.info("Starting OpenVPN server")
        self._run(*self.run_argv())
        logger.info("OpenVPN server started successfully")
        return True

    def stop(self) -> bool:
        """Stop and remove the server container; False when it was not running."""
        if not self.is_running():
            logger.warning("OpenVPN server is not running")
            return False
        logger.info("Stopping OpenVPN server")
        self._run("stop", self.container_name)
        self._run("rm", self.container_name)
        logger.info("OpenVPN server stopped")
        return True

    def logs(self, tail: int = LOG_TAIL) -> str:
        result = self._run("logs", "--tail", str(tail), self.container_name)
        return result.stdout + result.stderr

    def status(self) -> RuntimeStatus:
        running = self.is_running()
        return RuntimeStatus(
            running=running,
            container=self.container_name,
            log_tail=self.logs() if running else "",
        )

    def update_image(self) -> None:
        logger.info("Updating OpenVPN Docker image: %s", self.image)
        self._run("pull", self.image, timeout=max(self.timeout, 600))
        logger.info("Image updated successfully")
