"""Container topology: snapshot models and pure route resolution.

The live inspector is in ``topology.inspector``; it depends on the state
store, which in turn stores snapshots defined here.
"""

from .models import (
    ContainerInfo,
    ContainerRoute,
    LocalhostRoute,
    NetworkInfo,
    PortBinding,
    ReachableRoute,
    RouteDecision,
    TopologySnapshot,
    TunnelLocation,
    TunnelPlacement,
    UnreachableRoute,
)
from .resolver import resolve_route

__all__ = [
    "resolve_route",
    "ContainerInfo",
    "ContainerRoute",
    "LocalhostRoute",
    "NetworkInfo",
    "PortBinding",
    "ReachableRoute",
    "RouteDecision",
    "TopologySnapshot",
    "TunnelLocation",
    "TunnelPlacement",
    "UnreachableRoute",
]
