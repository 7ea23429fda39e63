"""Tunnel Manager - public hostnames for many services through one cloudflared tunnel."""

__version__ = "0.1.0"

from .common.exceptions import (
    CompensationFailedError,
    ConfigurationError,
    ContainerRuntimeError,
    DNSProviderError,
    HostnameInUseError,
    HostnameNotFoundError,
    IngressError,
    IngressReloadError,
    IngressWriteError,
    InvalidRequestError,
    NotOwnerError,
    PortNotOwnedError,
    PreconditionError,
    ServiceUnreachableError,
    StoreError,
    TunnelManagerError,
    TunnelProcessError,
    UnknownDomainError,
)
from .common.logging import get_logger, setup_logging
from .config import TunnelBackend, TunnelManagerSettings, get_settings
from .domains import DomainDirectory
from .health import HealthMonitor, RestartController
from .hostnames import HostnameLifecycleManager, HostnameLocks
from .ingress import IngressConfig, IngressConfigWriter, IngressRule
from .interfaces import EnvironmentSecretsVault, StaticPortRegistry
from .manager import TunnelManager, build_tunnel_manager
from .store import (
    AuditEntry,
    DiscoveredDomain,
    HealthSample,
    HostnameRecord,
    StateStore,
    TargetType,
    TunnelRuntimeState,
    TunnelStatus,
)
from .topology import (
    ContainerRoute,
    LocalhostRoute,
    TopologySnapshot,
    UnreachableRoute,
    resolve_route,
)
from .topology.inspector import TopologyInspector

__all__ = [
    "__version__",
    # Facade
    "TunnelManager",
    "build_tunnel_manager",
    # Components
    "StateStore",
    "TopologyInspector",
    "resolve_route",
    "DomainDirectory",
    "IngressConfigWriter",
    "IngressConfig",
    "IngressRule",
    "HealthMonitor",
    "RestartController",
    "HostnameLifecycleManager",
    "HostnameLocks",
    "EnvironmentSecretsVault",
    "StaticPortRegistry",
    # Models
    "HostnameRecord",
    "HealthSample",
    "TunnelRuntimeState",
    "TunnelStatus",
    "DiscoveredDomain",
    "AuditEntry",
    "TargetType",
    "TopologySnapshot",
    "ContainerRoute",
    "LocalhostRoute",
    "UnreachableRoute",
    # Configuration
    "TunnelManagerSettings",
    "TunnelBackend",
    "get_settings",
    # Logging
    "get_logger",
    "setup_logging",
    # Exceptions
    "TunnelManagerError",
    "ConfigurationError",
    "StoreError",
    "PreconditionError",
    "InvalidRequestError",
    "PortNotOwnedError",
    "HostnameInUseError",
    "ServiceUnreachableError",
    "UnknownDomainError",
    "NotOwnerError",
    "HostnameNotFoundError",
    "DNSProviderError",
    "ContainerRuntimeError",
    "IngressError",
    "IngressWriteError",
    "IngressReloadError",
    "TunnelProcessError",
    "CompensationFailedError",
]
