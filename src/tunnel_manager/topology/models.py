"""Container topology snapshot and routing decision models."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from ..common.utils import utc_now


class TunnelLocation(str, Enum):
    HOST = "host"
    CONTAINER = "container"


class PortBinding(BaseModel):
    """A container port and, if published, its host port."""

    model_config = ConfigDict(frozen=True)

    internal_port: int = Field(ge=1, le=65535)
    host_port: int | None = Field(default=None, ge=1, le=65535)
    protocol: str = "tcp"


class NetworkInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    driver: str = "bridge"


class ContainerInfo(BaseModel):
    """A running container as seen by the container runtime."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    image: str = ""
    status: str = "running"
    project: str | None = None
    networks: list[str] = Field(default_factory=list)
    ports: list[PortBinding] = Field(default_factory=list)

    def binding_for(self, port: int) -> PortBinding | None:
        """Find the binding serving ``port``, matching the container side first."""
        for binding in self.ports:
            if binding.internal_port == port:
                return binding
        for binding in self.ports:
            if binding.host_port == port:
                return binding
        return None


class TunnelPlacement(BaseModel):
    """Where the tunnel process itself runs."""

    model_config = ConfigDict(frozen=True)

    location: TunnelLocation = TunnelLocation.HOST
    container_name: str | None = None
    networks: list[str] = Field(default_factory=list)


class TopologySnapshot(BaseModel):
    """Networks, containers and published ports as last observed."""

    model_config = ConfigDict(frozen=True)

    tunnel: TunnelPlacement = Field(default_factory=TunnelPlacement)
    containers: list[ContainerInfo] = Field(default_factory=list)
    networks: list[NetworkInfo] = Field(default_factory=list)
    captured_at: datetime = Field(default_factory=utc_now)

    def containers_serving(self, port: int) -> list[tuple[ContainerInfo, PortBinding]]:
        """Containers with a binding for ``port``, paired with that binding."""
        serving = []
        for container in self.containers:
            binding = container.binding_for(port)
            if binding is not None:
                serving.append((container, binding))
        return serving

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or utc_now()
        return (now - self.captured_at).total_seconds()


class ContainerRoute(BaseModel):
    """Reach the backend by container name over a shared network."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["container"] = "container"
    name: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    network: str | None = None

    @property
    def service_url(self) -> str:
        return f"http://{self.name}:{self.port}"


class LocalhostRoute(BaseModel):
    """Reach the backend through a port on the host."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["localhost"] = "localhost"
    port: int = Field(ge=1, le=65535)

    @property
    def service_url(self) -> str:
        return f"http://localhost:{self.port}"


class UnreachableRoute(BaseModel):
    """No verifiable route exists; carries a fix the operator can apply."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["unreachable"] = "unreachable"
    reason: str
    recommendation: str


RouteDecision = Annotated[
    Union[ContainerRoute, LocalhostRoute, UnreachableRoute],
    Field(discriminator="kind"),
]

ReachableRoute = Union[ContainerRoute, LocalhostRoute]
