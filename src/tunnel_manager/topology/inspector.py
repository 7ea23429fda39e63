"""Live topology discovery from the container runtime."""

import re
import threading
from typing import Any

import docker
from docker.errors import DockerException

from ..common.exceptions import ContainerRuntimeError
from ..common.logging import get_logger
from ..interfaces import ContainerRuntime
from ..store.database import StateStore
from .models import (
    ContainerInfo,
    NetworkInfo,
    PortBinding,
    RouteDecision,
    TopologySnapshot,
    TunnelLocation,
    TunnelPlacement,
    UnreachableRoute,
)
from .resolver import resolve_route

logger = get_logger(__name__)

PROJECT_LABEL = "com.supervisor.project"
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
TUNNEL_IMAGE = "cloudflare/cloudflared"

_PORT_SPEC_RE = re.compile(r"^(\d+)/(tcp|udp|sctp)$")


class DockerRuntime:
    """ContainerRuntime backed by the Docker Engine API."""

    def __init__(self, client: "docker.DockerClient | None" = None, timeout: int = 10):
        try:
            self._client = client or docker.from_env(timeout=timeout)
        except DockerException as e:
            raise ContainerRuntimeError(
                f"Container runtime unavailable: {e}",
                recommendation="Check that the Docker daemon is running and the socket is readable",
            ) from e

    def list_networks(self) -> list[dict[str, Any]]:
        try:
            return [network.attrs for network in self._client.networks.list()]
        except DockerException as e:
            raise ContainerRuntimeError(f"Failed to list networks: {e}") from e

    def list_containers(self) -> list[dict[str, Any]]:
        """Inspect data of every running container."""
        try:
            return [container.attrs for container in self._client.containers.list()]
        except DockerException as e:
            raise ContainerRuntimeError(f"Failed to list containers: {e}") from e

    def get_container_ports(self, container_id: str) -> dict[str, Any]:
        try:
            container = self._client.containers.get(container_id)
        except DockerException as e:
            raise ContainerRuntimeError(
                f"Failed to inspect container {container_id}: {e}"
            ) from e
        return container.attrs.get("NetworkSettings", {}).get("Ports") or {}


def parse_port_bindings(ports: dict[str, Any]) -> list[PortBinding]:
    """Convert Docker's ``{"5000/tcp": [{"HostPort": "5000"}]}`` map."""
    bindings = []
    for spec, host_bindings in sorted(ports.items()):
        match = _PORT_SPEC_RE.match(spec)
        if not match:
            continue
        host_port = None
        for host_binding in host_bindings or []:
            value = host_binding.get("HostPort")
            if value:
                host_port = int(value)
                break
        bindings.append(
            PortBinding(
                internal_port=int(match.group(1)),
                host_port=host_port,
                protocol=match.group(2),
            )
        )
    return bindings


def extract_project(name: str, labels: dict[str, str] | None) -> str | None:
    """Owner project of a container: explicit label, compose project, or name prefix."""
    labels = labels or {}
    if labels.get(PROJECT_LABEL):
        return labels[PROJECT_LABEL]
    if labels.get(COMPOSE_PROJECT_LABEL):
        return labels[COMPOSE_PROJECT_LABEL]
    if "-" in name:
        return name.split("-", 1)[0]
    return None


def is_tunnel_container(container: ContainerInfo) -> bool:
    return "cloudflared" in container.name or container.image.startswith(TUNNEL_IMAGE)


class TopologyInspector:
    """Answers "how do I reach service X" from a cached topology snapshot."""

    def __init__(
        self,
        runtime: ContainerRuntime | None,
        store: StateStore,
        cache_ttl: float = 60.0,
    ):
        """Initialize the inspector.

        Args:
            runtime: Container runtime to introspect; None means no containers
                exist on this host and the tunnel runs on the host
            store: State store used to cache the last snapshot
            cache_ttl: Seconds a snapshot may be reused before refreshing
        """
        self._runtime = runtime
        self._store = store
        self._cache_ttl = cache_ttl
        self._lock = threading.Lock()
        self._snapshot: TopologySnapshot | None = None

    def build_snapshot(self) -> TopologySnapshot:
        """Query the runtime and assemble a fresh snapshot."""
        if self._runtime is None:
            return TopologySnapshot()

        networks = [
            NetworkInfo(
                id=raw.get("Id", ""),
                name=raw.get("Name", ""),
                driver=raw.get("Driver") or "bridge",
            )
            for raw in self._runtime.list_networks()
        ]

        containers = []
        for raw in self._runtime.list_containers():
            container_id = raw.get("Id", "")
            name = (raw.get("Name") or "").lstrip("/")
            config = raw.get("Config") or {}
            settings = raw.get("NetworkSettings") or {}
            ports = settings.get("Ports")
            if ports is None:
                ports = self._runtime.get_container_ports(container_id)
            containers.append(
                ContainerInfo(
                    id=container_id,
                    name=name,
                    image=config.get("Image", ""),
                    status=(raw.get("State") or {}).get("Status", "running"),
                    project=extract_project(name, config.get("Labels")),
                    networks=sorted((settings.get("Networks") or {}).keys()),
                    ports=parse_port_bindings(ports),
                )
            )

        tunnel = TunnelPlacement()
        for container in containers:
            if is_tunnel_container(container):
                tunnel = TunnelPlacement(
                    location=TunnelLocation.CONTAINER,
                    container_name=container.name,
                    networks=container.networks,
                )
                break

        # The tunnel's own container must not be picked as a backend
        backends = [c for c in containers if c.name != tunnel.container_name]
        snapshot = TopologySnapshot(tunnel=tunnel, containers=backends, networks=networks)
        logger.info(
            "Topology discovered",
            tunnel_location=tunnel.location.value,
            containers=len(backends),
            networks=len(networks),
        )
        return snapshot

    def refresh(self) -> TopologySnapshot:
        """Rebuild the snapshot and cache it in memory and in the store."""
        snapshot = self.build_snapshot()
        with self._lock:
            self._snapshot = snapshot
        self._store.save_topology(snapshot)
        return snapshot

    def snapshot(self) -> tuple[TopologySnapshot, bool]:
        """Current snapshot and whether it came from cache."""
        with self._lock:
            cached = self._snapshot
        if cached is None:
            cached = self._store.load_topology()
            if cached is not None:
                with self._lock:
                    self._snapshot = cached
        if cached is not None and cached.age_seconds() < self._cache_ttl:
            return cached, True
        return self.refresh(), False

    def resolve_route(self, target_port: int, requesting_owner: str | None = None) -> RouteDecision:
        """Route for ``target_port``; re-fetches topology before answering unreachable.

        Raises:
            ContainerRuntimeError: If the runtime cannot be queried
        """
        snapshot, from_cache = self.snapshot()
        decision = resolve_route(snapshot, target_port, requesting_owner)
        if isinstance(decision, UnreachableRoute) and from_cache:
            logger.debug("Cached topology gave no route, refreshing", port=target_port)
            decision = resolve_route(self.refresh(), target_port, requesting_owner)
        return decision
