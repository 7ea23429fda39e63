"""Discovered DNS zones."""

import threading

from .common.logging import get_logger
from .common.utils import normalize_domain, utc_now
from .interfaces import DNSProvider
from .store.database import StateStore
from .store.models import DiscoveredDomain

logger = get_logger(__name__)


class DomainDirectory:
    """Cache of the zones the DNS account controls.

    The provider is authoritative. ``discover()`` overwrites metadata of the
    zones it returns and never drops a cached zone, since a zone missing
    from one response is treated as a provider hiccup.
    """

    def __init__(self, dns_provider: DNSProvider, store: StateStore):
        self._dns = dns_provider
        self._store = store
        self._lock = threading.Lock()

    def discover(self) -> list[DiscoveredDomain]:
        """Fetch the zone list and merge it into the cache.

        Raises:
            DNSProviderError: If the zone listing fails
        """
        with self._lock:
            zones = self._dns.list_zones()
            now = utc_now()
            known = {d.domain_name: d for d in self._store.list_domains()}
            discovered = []
            for zone in zones:
                name = normalize_domain(zone["name"])
                existing = known.get(name)
                discovered.append(
                    DiscoveredDomain(
                        domain_name=name,
                        provider_zone_id=zone["zone_id"],
                        discovered_at=existing.discovered_at if existing else now,
                        last_seen=now,
                    )
                )
            self._store.upsert_domains(discovered)
            logger.info(
                "Domains discovered",
                count=len(discovered),
                domains=[d.domain_name for d in discovered],
            )
            return discovered

    def list(self) -> list[DiscoveredDomain]:
        return self._store.list_domains()

    def get(self, domain_name: str, refresh_on_miss: bool = True) -> DiscoveredDomain | None:
        """Cached zone for ``domain_name``, discovering once if it is unknown."""
        name = normalize_domain(domain_name)
        domain = self._store.get_domain(name)
        if domain is None and refresh_on_miss:
            logger.debug("Domain not cached, refreshing", domain=name)
            self.discover()
            domain = self._store.get_domain(name)
        return domain
