"""Provisioning and retiring public hostnames.

Create runs, for one hostname at a time::

    port ownership -> hostname free -> route -> known domain
    -> DNS record -> ingress rule + reload -> persist record

Delete runs in reverse (ingress, DNS, record). A record is stored only once
the DNS provider and the tunnel have both confirmed; a failed step undoes
the steps before it. If an undo step fails too, a critical audit entry is
written and ``CompensationFailedError`` is raised.
"""

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from ..common.exceptions import (
    CompensationFailedError,
    DNSProviderError,
    HostnameInUseError,
    HostnameNotFoundError,
    IngressError,
    InvalidRequestError,
    NotOwnerError,
    PortNotOwnedError,
    PreconditionError,
    ServiceUnreachableError,
    StoreError,
    TunnelManagerError,
    UnknownDomainError,
)
from ..common.logging import get_logger
from ..common.utils import normalize_domain, normalize_subdomain, validate_port
from ..domains import DomainDirectory
from ..ingress.config import IngressRule
from ..ingress.writer import IngressConfigWriter
from ..interfaces import DNSProvider, PortRegistry
from ..store.database import StateStore
from ..store.models import AuditEntry, AuditSeverity, HostnameRecord, TargetType
from ..topology.inspector import TopologyInspector
from ..topology.models import ContainerRoute, UnreachableRoute
from .locks import HostnameLocks

logger = get_logger(__name__)

CREATE_ACTION = "create_hostname"
DELETE_ACTION = "delete_hostname"
COMPENSATION_ACTION = "compensation_failed"
RECONCILE_ACTION = "reconcile_ingress"


class HostnameLifecycleManager:
    """Orchestrates DNS, ingress and the state store for one hostname at a time."""

    def __init__(
        self,
        store: StateStore,
        port_registry: PortRegistry,
        inspector: TopologyInspector,
        dns_provider: DNSProvider,
        ingress: IngressConfigWriter,
        domains: DomainDirectory,
        cname_target: str | Callable[[], str],
        locks: HostnameLocks | None = None,
    ):
        """Initialize the lifecycle manager.

        Args:
            store: State store for records and audit entries
            port_registry: External registry answering port ownership
            inspector: Topology inspector resolving routes
            dns_provider: DNS provider API
            ingress: Writer of the tunnel's ingress file
            domains: Directory of managed DNS zones
            cname_target: CNAME target (or a callable returning it)
            locks: Per-hostname locks, shared if several managers coexist
        """
        self._store = store
        self._ports = port_registry
        self._inspector = inspector
        self._dns = dns_provider
        self._ingress = ingress
        self._domains = domains
        self._cname_target = cname_target
        self._locks = locks or HostnameLocks()
        self._in_flight: set[str] = set()
        self._in_flight_guard = threading.Lock()

    @property
    def cname_target(self) -> str:
        target = self._cname_target
        return target() if callable(target) else target

    # Create

    def create(
        self, subdomain: str, domain: str, target_port: int, owner_project: str
    ) -> HostnameRecord:
        """Provision ``subdomain.domain`` routed to ``target_port``.

        Raises:
            PreconditionError: PortNotOwned, HostnameInUse, ServiceUnreachable,
                UnknownDomain or InvalidRequest; nothing was changed
            DNSProviderError: The DNS record could not be created; nothing was changed
            IngressError: The rule could not be applied; the DNS record was removed
            CompensationFailedError: Undo failed; see the critical audit entry
        """
        details: dict[str, Any] = {
            "subdomain": subdomain,
            "domain": domain,
            "port": target_port,
        }
        try:
            subdomain = normalize_subdomain(subdomain)
            domain = normalize_domain(domain)
            validate_port(target_port, "Target port")
            if not owner_project or not owner_project.strip():
                raise ValueError("Owner project cannot be empty")
        except ValueError as e:
            error = InvalidRequestError(str(e))
            self._audit(CREATE_ACTION, owner_project, None, False, details, error)
            raise error from e

        hostname = f"{subdomain}.{domain}"
        with self._locks.hold(hostname), self._in_flight_hostname(hostname):
            try:
                record = self._create_locked(hostname, subdomain, domain, target_port, owner_project)
            except TunnelManagerError as e:
                self._audit(CREATE_ACTION, owner_project, hostname, False, details, e)
                raise

        details.update(target=record.service_url, target_type=record.target_type.value)
        self._audit(CREATE_ACTION, owner_project, hostname, True, details)
        logger.info(
            "Hostname created",
            hostname=hostname,
            owner=owner_project,
            service=record.service_url,
        )
        return record

    def _create_locked(
        self,
        hostname: str,
        subdomain: str,
        domain: str,
        target_port: int,
        owner_project: str,
    ) -> HostnameRecord:
        if not self._ports.is_port_owned_by(target_port, owner_project):
            raise PortNotOwnedError(
                f"Port {target_port} is not allocated to project {owner_project}",
                recommendation=f"Allocate port {target_port} to {owner_project} in the port registry first",
            )

        if self._store.get_hostname(hostname) is not None:
            raise HostnameInUseError(
                f"Hostname {hostname} is already in use",
                recommendation="Choose a different subdomain or delete the existing hostname first",
            )

        route = self._inspector.resolve_route(target_port, owner_project)
        if isinstance(route, UnreachableRoute):
            raise ServiceUnreachableError(route.reason, recommendation=route.recommendation)

        zone = self._domains.get(domain)
        if zone is None:
            available = ", ".join(d.domain_name for d in self._domains.list()) or "none"
            raise UnknownDomainError(
                f"Domain {domain} is not managed by this account",
                recommendation=f"Available domains: {available}",
            )

        record_id = self._dns.create_record(zone.provider_zone_id, hostname, self.cname_target)

        try:
            self._ingress.add_rule(hostname, route)
        except IngressError as e:
            logger.error("Ingress update failed, removing DNS record", hostname=hostname, error=str(e))
            self._compensate(
                hostname,
                e,
                [("delete DNS record", lambda: self._dns.delete_record(zone.provider_zone_id, record_id))],
            )
            raise

        is_container = isinstance(route, ContainerRoute)
        record = HostnameRecord(
            full_hostname=hostname,
            subdomain=subdomain,
            domain=domain,
            owner_project=owner_project,
            target_port=target_port,
            target_type=TargetType.CONTAINER if is_container else TargetType.LOCALHOST,
            container_name=route.name if is_container else None,
            service_url=route.service_url,
            dns_record_id=record_id,
            zone_id=zone.provider_zone_id,
        )
        try:
            self._store.insert_hostname(record)
        except (StoreError, HostnameInUseError) as e:
            logger.error("Persisting hostname failed, undoing", hostname=hostname, error=str(e))
            self._compensate(
                hostname,
                e,
                [
                    ("remove ingress rule", lambda: self._ingress.remove_rule(hostname)),
                    ("delete DNS record", lambda: self._dns.delete_record(zone.provider_zone_id, record_id)),
                ],
            )
            raise
        return record

    # Delete

    def delete(
        self, hostname: str, requesting_owner: str, is_privileged: bool = False
    ) -> HostnameRecord:
        """Retire ``hostname``: ingress rule, then DNS record, then the record.

        Raises:
            HostnameNotFoundError: No live record for the hostname
            NotOwnerError: Caller neither owns the record nor is privileged
            IngressError: The rule could not be removed; nothing was changed
            DNSProviderError: DNS removal failed; the ingress rule was restored
            CompensationFailedError: Undo failed; see the critical audit entry
        """
        hostname = hostname.strip().lower().rstrip(".")
        details: dict[str, Any] = {"hostname": hostname, "privileged": is_privileged}
        with self._locks.hold(hostname), self._in_flight_hostname(hostname):
            try:
                record = self._delete_locked(hostname, requesting_owner, is_privileged)
            except TunnelManagerError as e:
                self._audit(DELETE_ACTION, requesting_owner, hostname, False, details, e)
                raise

        details["owner"] = record.owner_project
        self._audit(DELETE_ACTION, requesting_owner, hostname, True, details)
        logger.info("Hostname deleted", hostname=hostname, requested_by=requesting_owner)
        return record

    def _delete_locked(
        self, hostname: str, requesting_owner: str, is_privileged: bool
    ) -> HostnameRecord:
        record = self._store.get_hostname(hostname)
        if record is None:
            raise HostnameNotFoundError(f"Hostname {hostname} not found")

        if not is_privileged and record.owner_project != requesting_owner:
            raise NotOwnerError(
                f"Hostname {hostname} belongs to project {record.owner_project}",
                recommendation=f"Only {record.owner_project} or a privileged operator can delete it",
            )

        removed = self._ingress.remove_rule(hostname)
        if not removed:
            logger.warning("No ingress rule found for hostname", hostname=hostname)

        try:
            self._dns.delete_record(record.zone_id, record.dns_record_id)
        except DNSProviderError as e:
            if removed:
                logger.error("DNS delete failed, restoring ingress rule", hostname=hostname, error=str(e))
                rule = IngressRule.for_service(hostname, record.service_url)
                self._compensate(
                    hostname, e, [("restore ingress rule", lambda: self._ingress.insert_rule(rule))]
                )
            raise

        try:
            self._store.delete_hostname(hostname)
        except StoreError as e:
            # DNS and ingress are gone; only the stale record is left
            self._audit(
                COMPENSATION_ACTION,
                "tunnel_manager",
                hostname,
                False,
                {"stale_record": True, "dns_record_id": record.dns_record_id},
                e,
                severity=AuditSeverity.CRITICAL,
            )
            raise CompensationFailedError(
                f"Hostname {hostname} was unpublished but its record could not be removed: {e}",
                recommendation="Delete the stale record manually",
            ) from e
        return record

    # List

    def list_hostnames(
        self,
        owner_project: str | None = None,
        domain: str | None = None,
        is_privileged: bool = False,
    ) -> list[HostnameRecord]:
        """Records visible to the caller.

        ``owner_project`` is the caller's project. Non-privileged callers always
        get their own records only; privileged callers may omit it to see all.
        """
        if not is_privileged and not owner_project:
            return []
        if domain is not None:
            domain = domain.strip().lower().rstrip(".")
        return self._store.list_hostnames(owner_project=owner_project, domain=domain)

    # Reconcile

    def reconcile_ingress(self) -> dict[str, list[str]]:
        """Add rules for records that lack one and drop rules with no record.

        Hostnames with a create or delete in progress are left untouched.
        """
        try:
            with self._ingress.locked():
                with self._in_flight_guard:
                    keep = set(self._in_flight)
                desired = [
                    IngressRule.for_service(record.full_hostname, record.service_url)
                    for record in self._store.list_hostnames()
                ]
                added, removed = self._ingress.sync_rules(desired, keep=keep)
        except IngressError as e:
            self._audit(RECONCILE_ACTION, "tunnel_manager", None, False, {}, e)
            raise
        result = {"added": added, "removed": removed}
        self._audit(RECONCILE_ACTION, "tunnel_manager", None, True, result)
        if added or removed:
            logger.warning("Ingress drift repaired", **result)
        return result

    # Helpers

    @contextmanager
    def _in_flight_hostname(self, hostname: str) -> Iterator[None]:
        with self._in_flight_guard:
            self._in_flight.add(hostname)
        try:
            yield
        finally:
            with self._in_flight_guard:
                self._in_flight.discard(hostname)

    def _compensate(
        self,
        hostname: str,
        cause: Exception,
        steps: list[tuple[str, Callable[[], object]]],
    ) -> None:
        """Run undo steps in order; escalate if any of them fails."""
        failed: list[str] = []
        for name, step in steps:
            try:
                step()
                logger.info("Compensation step done", hostname=hostname, step=name)
            except TunnelManagerError as e:
                logger.critical("Compensation step failed", hostname=hostname, step=name, error=str(e))
                failed.append(f"{name}: {e}")

        if failed:
            self._audit(
                COMPENSATION_ACTION,
                "tunnel_manager",
                hostname,
                False,
                {"cause": str(cause), "failed_steps": failed},
                cause,
                severity=AuditSeverity.CRITICAL,
            )
            raise CompensationFailedError(
                f"Could not undo partial change for {hostname}: {'; '.join(failed)}",
                recommendation="Reconcile DNS and ingress for this hostname manually",
            ) from cause

    def _audit(
        self,
        action: str,
        actor: str | None,
        target: str | None,
        success: bool,
        details: dict[str, Any],
        error: Exception | None = None,
        severity: AuditSeverity | None = None,
    ) -> None:
        if severity is None:
            if success:
                severity = AuditSeverity.INFO
            elif isinstance(error, PreconditionError):
                severity = AuditSeverity.WARNING
            else:
                severity = AuditSeverity.ERROR
        if error is not None:
            details = {**details, "error_code": getattr(error, "code", type(error).__name__)}
        entry = AuditEntry(
            action=action,
            actor=actor,
            target=target,
            success=success,
            severity=severity,
            details=details,
            error_message=str(error) if error else None,
        )
        try:
            self._store.append_audit(entry)
        except StoreError as e:
            logger.error("Failed to write audit entry", action=action, target=target, error=str(e))
