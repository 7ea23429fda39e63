"""Tunnel manager facade."""

import threading
from datetime import timedelta
from types import TracebackType
from typing import Any, Literal

from .common.exceptions import (
    ConfigurationError,
    DNSProviderError,
    InvalidRequestError,
    TunnelManagerError,
)
from .common.logging import get_logger
from .common.utils import utc_now
from .config import TunnelBackend, TunnelManagerSettings, get_settings
from .dns.cloudflare import CloudflareDNSProvider
from .domains import DomainDirectory
from .health.monitor import HealthMonitor
from .health.restart import RestartController
from .hostnames.lifecycle import HostnameLifecycleManager
from .ingress.writer import IngressConfigWriter
from .interfaces import (
    DNSProvider,
    EnvironmentSecretsVault,
    PortRegistry,
    SecretsVault,
    StaticPortRegistry,
    TunnelProcess,
)
from .process import (
    ContainerTunnelService,
    HttpLivenessProbe,
    ManagedTunnelProcess,
    SystemdTunnelService,
)
from .store.database import StateStore
from .store.models import AuditEntry, DiscoveredDomain, HealthSample, HostnameRecord, TargetType
from .topology.inspector import DockerRuntime, TopologyInspector

logger = get_logger(__name__)


class TunnelManager:
    """The operations offered to services and operators.

    Every caller-facing result is a plain dict; failures carry the error
    code of the exception (``PortNotOwned``, ``NotOwner``, ...) and, when
    available, a recommendation the caller can act on.
    """

    def __init__(
        self,
        store: StateStore,
        monitor: HealthMonitor,
        lifecycle: HostnameLifecycleManager,
        domains: DomainDirectory,
        tunnel: TunnelProcess,
        default_domain: str | None = None,
        health_retention_days: int = 30,
    ):
        self.store = store
        self.monitor = monitor
        self.lifecycle = lifecycle
        self.domains = domains
        self.tunnel = tunnel
        self.default_domain = default_domain
        self.health_retention_days = health_retention_days
        self._closeables: list[Any] = []

    def add_closeable(self, resource: Any) -> None:
        """Register a client whose ``close()`` runs on shutdown."""
        self._closeables.append(resource)

    # Lifecycle

    def start(self, discover_domains: bool = True) -> None:
        """Start the tunnel (if owned), the health monitor and domain discovery."""
        if isinstance(self.tunnel, ManagedTunnelProcess):
            self.tunnel.start()
        if discover_domains:
            try:
                self.domains.discover()
            except DNSProviderError as e:
                logger.warning("Initial domain discovery failed", error=str(e))
        self.monitor.start()
        logger.info("Tunnel manager started")

    def shutdown(self) -> None:
        self.monitor.stop()
        if isinstance(self.tunnel, ManagedTunnelProcess):
            self.tunnel.stop()
        for resource in self._closeables:
            resource.close()
        logger.info("Tunnel manager stopped")

    def __enter__(self) -> "TunnelManager":
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        self.shutdown()
        return False

    # Caller operations

    def get_status(self) -> dict[str, Any]:
        state = self.monitor.state
        return {
            "status": state.status.value,
            "uptimeSeconds": state.uptime_seconds(),
            "restartCount": state.restart_count,
            "lastCheck": state.last_check_at.isoformat() if state.last_check_at else None,
        }

    def request_hostname(
        self,
        subdomain: str,
        target_port: int,
        owner_project: str,
        domain: str | None = None,
    ) -> dict[str, Any]:
        domain = domain or self.default_domain
        try:
            if not domain:
                raise InvalidRequestError(
                    "No domain given and no default domain configured",
                    recommendation="Pass a domain or set TUNNEL_MANAGER_DEFAULT_DOMAIN",
                )
            record = self.lifecycle.create(subdomain, domain, target_port, owner_project)
        except TunnelManagerError as e:
            return self._failure(e)

        result: dict[str, Any] = {
            "success": True,
            "url": record.url,
            "targetType": record.target_type.value,
        }
        if record.target_type == TargetType.CONTAINER:
            result["containerName"] = record.container_name
        return result

    def delete_hostname(
        self, full_hostname: str, owner_project: str, is_privileged: bool = False
    ) -> dict[str, Any]:
        try:
            self.lifecycle.delete(full_hostname, owner_project, is_privileged)
        except TunnelManagerError as e:
            return self._failure(e)
        return {"success": True, "message": f"Hostname {full_hostname} deleted"}

    def list_hostnames(
        self,
        owner_project: str | None = None,
        domain: str | None = None,
        is_privileged: bool = False,
    ) -> list[HostnameRecord]:
        return self.lifecycle.list_hostnames(owner_project, domain, is_privileged)

    def list_domains(self) -> list[DiscoveredDomain]:
        return self.domains.list()

    # Operator operations

    def refresh_domains(self) -> list[DiscoveredDomain]:
        return self.domains.discover()

    def manual_restart(self) -> dict[str, Any]:
        success = self.monitor.manual_restart()
        return {"success": success, **self.get_status()}

    def reconcile_ingress(self) -> dict[str, Any]:
        try:
            result = self.lifecycle.reconcile_ingress()
        except TunnelManagerError as e:
            return self._failure(e)
        return {"success": True, **result}

    def get_audit_log(
        self,
        owner_project: str | None = None,
        action: str | None = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        return self.store.list_audit(actor=owner_project, action=action, limit=limit)

    def get_health_history(self, limit: int = 100) -> list[HealthSample]:
        return self.store.health_history(limit)

    def prune_health_samples(self) -> int:
        cutoff = utc_now() - timedelta(days=self.health_retention_days)
        removed = self.store.prune_health_samples(cutoff)
        logger.info("Pruned health samples", removed=removed, older_than=cutoff.isoformat())
        return removed

    @staticmethod
    def _failure(error: TunnelManagerError) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": False,
            "error": error.code,
            "message": error.message,
        }
        if error.recommendation:
            result["recommendation"] = error.recommendation
        return result


def _build_tunnel_process(settings: TunnelManagerSettings) -> TunnelProcess:
    if settings.tunnel_backend == TunnelBackend.MANAGED:
        return ManagedTunnelProcess(settings.ingress_config_path, settings.cloudflared_binary)
    if settings.tunnel_backend == TunnelBackend.CONTAINER:
        return ContainerTunnelService(settings.tunnel_container_name, timeout=settings.docker_timeout)
    return SystemdTunnelService(settings.systemd_unit)


def _build_port_registry(settings: TunnelManagerSettings) -> PortRegistry:
    if settings.port_allocations_file is None:
        raise ConfigurationError(
            "No port registry configured",
            recommendation="Set TUNNEL_MANAGER_PORT_ALLOCATIONS_FILE to a JSON port allocation map",
        )
    return StaticPortRegistry.from_json_file(settings.port_allocations_file)


def _build_dns_provider(settings: TunnelManagerSettings, vault: SecretsVault) -> CloudflareDNSProvider:
    token = vault.get_credential(settings.dns_api_token_secret)
    account_id = None
    if settings.dns_account_id_secret:
        try:
            account_id = vault.get_credential(settings.dns_account_id_secret)
        except ConfigurationError:
            logger.info("No DNS account id configured, listing all zones of the token")
    return CloudflareDNSProvider(token, account_id=account_id, timeout=settings.dns_timeout)


def build_tunnel_manager(
    settings: TunnelManagerSettings | None = None,
    port_registry: PortRegistry | None = None,
    vault: SecretsVault | None = None,
    dns_provider: DNSProvider | None = None,
    tunnel: TunnelProcess | None = None,
    inspector: TopologyInspector | None = None,
) -> TunnelManager:
    """Wire a TunnelManager from settings; any collaborator may be supplied instead.

    Raises:
        ConfigurationError: If a required credential or the port registry is missing
        StoreError: If the state store cannot be opened
    """
    settings = settings or get_settings()
    store = StateStore(settings.db_path)
    tunnel = tunnel or _build_tunnel_process(settings)
    port_registry = port_registry or _build_port_registry(settings)

    owned_dns = dns_provider is None
    if dns_provider is None:
        dns_provider = _build_dns_provider(settings, vault or EnvironmentSecretsVault())

    if inspector is None:
        runtime = DockerRuntime(timeout=settings.docker_timeout) if settings.docker_enabled else None
        inspector = TopologyInspector(runtime, store, cache_ttl=settings.topology_cache_ttl)

    ingress = IngressConfigWriter(settings.ingress_config_path, tunnel)
    domains = DomainDirectory(dns_provider, store)
    cname_target = settings.tunnel_cname_target or (lambda: ingress.load().cname_target)
    lifecycle = HostnameLifecycleManager(
        store, port_registry, inspector, dns_provider, ingress, domains, cname_target
    )

    stop_event = threading.Event()
    restarts = RestartController(
        tunnel,
        store,
        initial_backoff=settings.initial_backoff,
        max_backoff=settings.max_backoff,
        settle_seconds=settings.restart_settle_seconds,
        stop_event=stop_event,
    )
    probe = HttpLivenessProbe(settings.liveness_url, timeout=settings.health_poll_timeout)
    monitor = HealthMonitor(
        probe,
        restarts,
        store,
        poll_interval=settings.health_poll_interval,
        down_threshold=settings.down_threshold,
        stop_event=stop_event,
    )

    manager = TunnelManager(
        store,
        monitor,
        lifecycle,
        domains,
        tunnel,
        default_domain=settings.default_domain,
        health_retention_days=settings.health_retention_days,
    )
    manager.add_closeable(probe)
    if owned_dns:
        manager.add_closeable(dns_provider)
    logger.info(
        "Tunnel manager wired",
        backend=settings.tunnel_backend.value,
        db_path=str(settings.db_path),
        ingress=str(settings.ingress_config_path),
    )
    return manager
