"""Protocol interfaces for the collaborators the tunnel manager consumes.

The core only depends on these shapes; concrete adapters live next to the
concern they wrap (``dns/``, ``process.py``, ``topology/inspector.py``) and
tests substitute simple fakes.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .common.exceptions import ConfigurationError
from .common.logging import get_logger

logger = get_logger(__name__)


class PortRegistry(Protocol):
    """External port-allocation registry."""

    def is_port_owned_by(self, port: int, owner_project: str) -> bool:
        """True if ``port`` is currently allocated to ``owner_project``."""
        ...


class SecretsVault(Protocol):
    """External secrets vault."""

    def get_credential(self, path: str) -> str:
        """Return the secret stored at ``path``."""
        ...


class DNSProvider(Protocol):
    """DNS provider API used to publish hostnames."""

    def create_record(self, zone_id: str, name: str, target: str) -> str:
        """Create a record and return its provider id."""
        ...

    def delete_record(self, zone_id: str, record_id: str) -> None:
        """Delete a record by provider id."""
        ...

    def list_zones(self) -> list[dict[str, str]]:
        """Return ``[{"name": ..., "zone_id": ...}]`` for every zone."""
        ...


class ContainerRuntime(Protocol):
    """Read-only container runtime introspection."""

    def list_networks(self) -> list[dict[str, Any]]:
        ...

    def list_containers(self) -> list[dict[str, Any]]:
        ...

    def get_container_ports(self, container_id: str) -> dict[str, Any]:
        ...


@runtime_checkable
class TunnelProcess(Protocol):
    """Control surface of the tunnel process."""

    def reload(self) -> None:
        """Ask the tunnel to re-read its config without dropping it."""
        ...

    def restart(self) -> None:
        """Hard-restart the tunnel."""
        ...

    def is_running(self) -> bool:
        """True if the process (or unit/container) is up."""
        ...


class LivenessProbe(Protocol):
    def check(self) -> bool:
        """True if the tunnel answered its liveness probe in time."""
        ...


class EnvironmentSecretsVault:
    """Secrets vault backed by environment variables.

    ``meta/cloudflare/dns_edit_token`` is read from
    ``META_CLOUDFLARE_DNS_EDIT_TOKEN``.
    """

    def __init__(self, environ: dict[str, str] | None = None):
        self._environ = environ if environ is not None else os.environ

    @staticmethod
    def env_name(path: str) -> str:
        return re.sub(r"[^A-Za-z0-9]+", "_", path.strip("/")).upper()

    def get_credential(self, path: str) -> str:
        name = self.env_name(path)
        value = self._environ.get(name)
        if not value:
            raise ConfigurationError(
                f"Credential '{path}' not found",
                recommendation=f"Set the {name} environment variable",
            )
        return value


class StaticPortRegistry:
    """In-memory ``port -> owner`` allocation map."""

    def __init__(self, allocations: dict[int, str] | None = None):
        self._allocations: dict[int, str] = dict(allocations or {})

    @classmethod
    def from_json_file(cls, path: str | Path) -> "StaticPortRegistry":
        """Load ``{"5000": "billing", ...}`` from a JSON file."""
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot read port allocations from {path}: {e}") from e
        return cls({int(port): str(owner) for port, owner in data.items()})

    def allocate(self, port: int, owner_project: str) -> None:
        self._allocations[port] = owner_project

    def release(self, port: int) -> None:
        self._allocations.pop(port, None)

    def is_port_owned_by(self, port: int, owner_project: str) -> bool:
        return self._allocations.get(port) == owner_project
