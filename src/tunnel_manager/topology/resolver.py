"""Route resolution over a topology snapshot.

``resolve_route`` is a pure function: it never talks to the container
runtime, so every routing decision can be reproduced from the snapshot it
was made on. Priority order:

1. tunnel and target are both containers sharing a network -> container route
2. target publishes the port to the host, or runs on the host -> localhost route
3. otherwise -> unreachable, with the fix the operator should apply

A shared-network route always wins over a host-port route.
"""

from ..common.logging import get_logger
from .models import (
    ContainerInfo,
    ContainerRoute,
    LocalhostRoute,
    PortBinding,
    RouteDecision,
    TopologySnapshot,
    TunnelLocation,
    UnreachableRoute,
)

logger = get_logger(__name__)


def _pick_container(
    candidates: list[tuple[ContainerInfo, PortBinding]], requesting_owner: str | None
) -> tuple[ContainerInfo, PortBinding]:
    """Prefer the requester's own container, then the first by name."""
    ordered = sorted(candidates, key=lambda pair: pair[0].name)
    if requesting_owner:
        for pair in ordered:
            if pair[0].project == requesting_owner:
                return pair
    return ordered[0]


def resolve_route(
    snapshot: TopologySnapshot,
    target_port: int,
    requesting_owner: str | None = None,
) -> RouteDecision:
    """Decide how the tunnel reaches the service listening on ``target_port``.

    Args:
        snapshot: Topology observed from the container runtime
        target_port: Port the service listens on (container side or host side)
        requesting_owner: Project asking for the route; its containers win ties

    Returns:
        ContainerRoute, LocalhostRoute or UnreachableRoute
    """
    tunnel = snapshot.tunnel
    candidates = snapshot.containers_serving(target_port)

    if not candidates:
        # Not containerized: the service runs on the host itself
        return LocalhostRoute(port=target_port)

    container, binding = _pick_container(candidates, requesting_owner)

    if tunnel.location == TunnelLocation.CONTAINER:
        shared = sorted(set(tunnel.networks) & set(container.networks))
        if shared:
            logger.debug(
                "Shared network route",
                container=container.name,
                network=shared[0],
                port=binding.internal_port,
            )
            return ContainerRoute(
                name=container.name, port=binding.internal_port, network=shared[0]
            )

    if binding.host_port is not None:
        return LocalhostRoute(port=binding.host_port)

    network = container.networks[0] if container.networks else "<network>"
    port = binding.internal_port

    if tunnel.location == TunnelLocation.CONTAINER:
        tunnel_container = tunnel.container_name or "cloudflared"
        return UnreachableRoute(
            reason=(
                f"Container '{container.name}' shares no network with the tunnel "
                f"and does not publish port {port} to the host"
            ),
            recommendation=(
                f"Attach the tunnel container to network {network} "
                f"(docker network connect {network} {tunnel_container}), "
                f"or publish port {port} to the host (-p {port}:{port})"
            ),
        )

    return UnreachableRoute(
        reason=f"Container '{container.name}' does not publish port {port} to the host",
        recommendation=(
            f"Publish port {port} to the host (-p {port}:{port}), or run the tunnel "
            f"in a container attached to network {network}"
        ),
    )
