"""Tunnel process backends and the liveness probe."""

import os
import shutil
import signal
import subprocess
import time
from pathlib import Path
from types import TracebackType
from typing import Literal

import docker
import httpx
from docker.errors import DockerException, NotFound

from .common.exceptions import ConfigurationError, TunnelProcessError
from .common.logging import get_logger

logger = get_logger(__name__)


class ProcessManager:
    """Manages a child process lifecycle with context manager support"""

    def __init__(self, command: list[str], stop_timeout: float = 5.0):
        """Initialize ProcessManager with the command to run

        Args:
            command: Executable followed by its arguments
            stop_timeout: Seconds to wait after SIGTERM before killing

        Raises:
            TunnelProcessError: If the executable doesn't exist or isn't executable
        """
        if not command:
            raise ValueError("Command cannot be empty")
        self.command = [self._resolve_binary(command[0]), *command[1:]]
        self.stop_timeout = stop_timeout
        self._process: subprocess.Popen[bytes] | None = None
        self._started_at: float | None = None
        logger.info("ProcessManager initialized", command=self.command)

    @staticmethod
    def _resolve_binary(binary: str) -> str:
        """Resolve ``binary`` through PATH and check that it is executable"""
        resolved = shutil.which(binary) if os.sep not in binary else binary
        if resolved is None:
            raise TunnelProcessError(f"Binary not found in PATH: {binary}")

        path = Path(resolved)
        if not path.exists():
            raise TunnelProcessError(f"Binary not found: {resolved}")
        if not path.is_file():
            raise TunnelProcessError(f"Binary path is not a file: {resolved}")
        if not os.access(resolved, os.X_OK):
            raise TunnelProcessError(f"Binary is not executable: {resolved}")
        return resolved

    def start(self) -> bool:
        """Start the process

        Returns:
            True if started (or already running)

        Raises:
            TunnelProcessError: If the process fails to start
        """
        if self.is_running():
            logger.debug("Process already running", pid=self.pid)
            return True

        logger.info("Starting process", command=self.command)
        try:
            self._process = subprocess.Popen(self.command)
            self._started_at = time.monotonic()
            logger.info("Process started successfully", pid=self._process.pid)
            return True
        except OSError as e:
            logger.error("Failed to start process", error=str(e))
            raise TunnelProcessError(f"Failed to start process: {e}") from e

    def stop(self) -> bool:
        """Stop the process gracefully, killing it if it ignores SIGTERM

        Returns:
            True if stopped successfully, False otherwise
        """
        if not self.is_running() or self._process is None:
            logger.debug("Process not running, nothing to stop")
            self._process = None
            return True

        logger.info("Stopping process", pid=self.pid)
        try:
            self._process.terminate()
            try:
                self._process.wait(timeout=self.stop_timeout)
                logger.info("Process terminated gracefully")
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Process did not terminate gracefully, force killing", pid=self.pid
                )
                self._process.kill()
                try:
                    self._process.wait(timeout=self.stop_timeout)
                except subprocess.TimeoutExpired:
                    logger.error("Failed to kill process", pid=self._process.pid)
            return True
        except OSError as e:
            logger.error("Error stopping process", error=str(e))
            return False
        finally:
            self._process = None
            self._started_at = None

    def restart(self) -> bool:
        """Stop then start the process"""
        self.stop()
        return self.start()

    def send_signal(self, sig: int) -> None:
        """Deliver ``sig`` to the running process

        Raises:
            TunnelProcessError: If the process is not running
        """
        if not self.is_running() or self._process is None:
            raise TunnelProcessError("Process is not running")
        try:
            self._process.send_signal(sig)
        except OSError as e:
            raise TunnelProcessError(f"Failed to signal process: {e}") from e

    def is_running(self) -> bool:
        """Check if process is currently running"""
        if self._process is None:
            return False

        return self._process.poll() is None

    @property
    def pid(self) -> int | None:
        """Get process ID if running"""
        if self.is_running() and self._process:
            return self._process.pid
        return None

    @property
    def uptime_seconds(self) -> int:
        if not self.is_running() or self._started_at is None:
            return 0
        return int(time.monotonic() - self._started_at)

    def wait_for_startup(self, timeout: float = 10.0) -> bool:
        """Wait until the process has stayed up for a short moment"""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self.is_running():
                return False
            time.sleep(0.1)
            if self.is_running():
                return True
        return False

    def __enter__(self) -> "ProcessManager":
        """Context manager entry - automatically start process

        Raises:
            TunnelProcessError: If process fails to start
        """
        logger.debug("Entering ProcessManager context")
        self.start()
        if not self.wait_for_startup():
            raise TunnelProcessError("Process failed to start within timeout")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        """Context manager exit - automatically stop process"""
        logger.debug("Exiting ProcessManager context")
        self.stop()
        return False


class ManagedTunnelProcess(ProcessManager):
    """cloudflared run as a child of the tunnel manager."""

    def __init__(self, config_path: str | Path, binary: str = "cloudflared", stop_timeout: float = 5.0):
        if not Path(config_path).exists():
            raise ConfigurationError(
                f"Config file not found: {config_path}",
                recommendation="Set TUNNEL_MANAGER_INGRESS_CONFIG_PATH to the cloudflared config.yml",
            )
        self.config_path = str(config_path)
        super().__init__(
            [binary, "tunnel", "--no-autoupdate", "--config", self.config_path, "run"],
            stop_timeout=stop_timeout,
        )

    def reload(self) -> None:
        """SIGHUP makes cloudflared re-read its ingress rules"""
        self.send_signal(signal.SIGHUP)
        logger.info("Reload signal sent", pid=self.pid)

    def restart(self) -> bool:
        super().restart()
        if not self.wait_for_startup():
            raise TunnelProcessError("cloudflared exited right after restart")
        return True


class SystemdTunnelService:
    """cloudflared supervised by a systemd unit."""

    def __init__(self, unit: str = "cloudflared", timeout: float = 30.0):
        self.unit = unit
        self.timeout = timeout

    def _systemctl(self, *args: str) -> subprocess.CompletedProcess[str]:
        command = ["systemctl", *args, self.unit]
        try:
            return subprocess.run(
                command, capture_output=True, text=True, timeout=self.timeout, check=False
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise TunnelProcessError(f"{' '.join(command)} failed: {e}") from e

    def _checked(self, *args: str) -> None:
        result = self._systemctl(*args)
        if result.returncode != 0:
            raise TunnelProcessError(
                f"systemctl {' '.join(args)} {self.unit} exited with {result.returncode}: "
                f"{result.stderr.strip()}"
            )

    def reload(self) -> None:
        self._checked("reload-or-restart")
        logger.info("systemd unit reloaded", unit=self.unit)

    def restart(self) -> None:
        self._checked("restart")
        logger.info("systemd unit restarted", unit=self.unit)

    def is_running(self) -> bool:
        try:
            result = self._systemctl("is-active")
        except TunnelProcessError as e:
            logger.warning("Cannot query systemd unit", unit=self.unit, error=str(e))
            return False
        return result.stdout.strip() == "active"


class ContainerTunnelService:
    """cloudflared running in a container, controlled through the Docker API."""

    def __init__(
        self,
        container_name: str = "cloudflared",
        client: "docker.DockerClient | None" = None,
        timeout: int = 10,
    ):
        self.container_name = container_name
        self.timeout = timeout
        try:
            self._client = client or docker.from_env(timeout=timeout)
        except DockerException as e:
            raise TunnelProcessError(f"Container runtime unavailable: {e}") from e

    def _container(self):
        try:
            return self._client.containers.get(self.container_name)
        except NotFound as e:
            raise TunnelProcessError(f"Tunnel container {self.container_name} not found") from e
        except DockerException as e:
            raise TunnelProcessError(f"Cannot inspect tunnel container: {e}") from e

    def reload(self) -> None:
        try:
            self._container().kill(signal="SIGHUP")
        except DockerException as e:
            raise TunnelProcessError(f"Failed to signal tunnel container: {e}") from e
        logger.info("Reload signal sent", container=self.container_name)

    def restart(self) -> None:
        try:
            self._container().restart(timeout=self.timeout)
        except DockerException as e:
            raise TunnelProcessError(f"Failed to restart tunnel container: {e}") from e
        logger.info("Tunnel container restarted", container=self.container_name)

    def is_running(self) -> bool:
        try:
            return self._container().status == "running"
        except TunnelProcessError as e:
            logger.warning("Cannot query tunnel container", error=str(e))
            return False


class HttpLivenessProbe:
    """GET the tunnel's readiness endpoint; anything but a timely 2xx is a failure."""

    def __init__(self, url: str, timeout: float = 5.0, client: httpx.Client | None = None):
        self.url = url
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)
        self.last_error: str | None = None

    def check(self) -> bool:
        try:
            response = self._client.get(self.url, timeout=self.timeout)
        except httpx.TimeoutException:
            self.last_error = f"timed out after {self.timeout}s"
        except httpx.HTTPError as e:
            self.last_error = f"{type(e).__name__}: {e}"
        else:
            if response.is_success:
                self.last_error = None
                return True
            self.last_error = f"HTTP {response.status_code}"
        logger.debug("Liveness probe failed", url=self.url, error=self.last_error)
        return False

    def close(self) -> None:
        self._client.close()
