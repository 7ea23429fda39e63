"""Shared pytest fixtures for tunnel manager tests."""

import itertools
import threading
from pathlib import Path
from typing import Any

import pytest

from tunnel_manager.common.exceptions import DNSProviderError, TunnelProcessError
from tunnel_manager.config import reset_settings
from tunnel_manager.domains import DomainDirectory
from tunnel_manager.hostnames.lifecycle import HostnameLifecycleManager
from tunnel_manager.ingress.writer import IngressConfigWriter
from tunnel_manager.interfaces import StaticPortRegistry
from tunnel_manager.store.database import StateStore
from tunnel_manager.topology.inspector import TopologyInspector

TUNNEL_ID = "6ff42ae2-765d-4adf-8112-31c55c1551ef"

INGRESS_YAML = f"""\
tunnel: {TUNNEL_ID}
credentials-file: /etc/cloudflared/{TUNNEL_ID}.json
metrics: 127.0.0.1:2000
ingress:
  - service: http_status:404
"""


class FakeTunnel:
    """TunnelProcess double that records calls."""

    def __init__(self) -> None:
        self.running = True
        self.fail_reload = False
        self.fail_restart = False
        self.running_after_restart = True
        self.reload_calls = 0
        self.restart_calls = 0

    def reload(self) -> None:
        self.reload_calls += 1
        if self.fail_reload:
            raise TunnelProcessError("reload rejected")

    def restart(self) -> None:
        self.restart_calls += 1
        if self.fail_restart:
            raise TunnelProcessError("restart failed")
        self.running = self.running_after_restart

    def is_running(self) -> bool:
        return self.running


class FakeDNSProvider:
    """In-memory DNS provider with failure switches and a call log."""

    def __init__(self, zones: list[dict[str, str]] | None = None) -> None:
        self.zones = zones if zones is not None else [{"name": "example.com", "zone_id": "zone-1"}]
        self.records: dict[str, dict[str, str]] = {}
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.fail_create = False
        self.fail_delete = False
        self.fail_list = False
        self.create_delay = 0.0
        self.calls: list[str] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create_record(self, zone_id: str, name: str, target: str) -> str:
        if self.create_delay:
            threading.Event().wait(self.create_delay)
        with self._lock:
            self.calls.append(f"dns.create:{name}")
            if self.fail_create:
                raise DNSProviderError("create timed out")
            record_id = f"rec-{next(self._ids)}"
            self.records[record_id] = {"zone_id": zone_id, "name": name, "target": target}
            self.created.append(name)
            return record_id

    def delete_record(self, zone_id: str, record_id: str) -> None:
        with self._lock:
            self.calls.append(f"dns.delete:{record_id}")
            if self.fail_delete:
                raise DNSProviderError("delete failed")
            self.records.pop(record_id, None)
            self.deleted.append(record_id)

    def list_zones(self) -> list[dict[str, str]]:
        if self.fail_list:
            raise DNSProviderError("zones unavailable")
        return list(self.zones)

    def names(self) -> set[str]:
        return {record["name"] for record in self.records.values()}


class FakeContainerRuntime:
    """ContainerRuntime double serving docker-inspect shaped dicts."""

    def __init__(
        self,
        containers: list[dict[str, Any]] | None = None,
        networks: list[dict[str, Any]] | None = None,
    ) -> None:
        self.containers = containers or []
        self.networks = networks or []
        self.list_calls = 0

    def list_networks(self) -> list[dict[str, Any]]:
        return self.networks

    def list_containers(self) -> list[dict[str, Any]]:
        self.list_calls += 1
        return self.containers

    def get_container_ports(self, container_id: str) -> dict[str, Any]:
        for container in self.containers:
            if container["Id"] == container_id:
                return container["NetworkSettings"].get("Ports") or {}
        return {}


def docker_container(
    name: str,
    networks: list[str],
    ports: dict[str, list[dict[str, str]] | None] | None = None,
    image: str = "app:latest",
    labels: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build a container dict the way the Docker API reports it."""
    return {
        "Id": f"id-{name}",
        "Name": f"/{name}",
        "Config": {"Image": image, "Labels": labels or {}},
        "State": {"Status": "running"},
        "NetworkSettings": {
            "Networks": {network: {} for network in networks},
            "Ports": ports or {},
        },
    }


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    """Isolate tests from TUNNEL_MANAGER_* variables and cached settings."""
    import os  # noqa: PLC0415

    for key in list(os.environ):
        if key.startswith("TUNNEL_MANAGER_"):
            monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "state.db")


@pytest.fixture
def fake_tunnel() -> FakeTunnel:
    return FakeTunnel()


@pytest.fixture
def fake_dns() -> FakeDNSProvider:
    return FakeDNSProvider()


@pytest.fixture
def ingress_path(tmp_path: Path) -> Path:
    path = tmp_path / "cloudflared" / "config.yml"
    path.parent.mkdir()
    path.write_text(INGRESS_YAML)
    return path


@pytest.fixture
def writer(ingress_path: Path, fake_tunnel: FakeTunnel) -> IngressConfigWriter:
    return IngressConfigWriter(ingress_path, fake_tunnel)


@pytest.fixture
def port_registry() -> StaticPortRegistry:
    return StaticPortRegistry({5000: "billing", 5001: "payments", 6000: "billing"})


@pytest.fixture
def domains(fake_dns: FakeDNSProvider, store: StateStore) -> DomainDirectory:
    directory = DomainDirectory(fake_dns, store)
    directory.discover()
    return directory


@pytest.fixture
def host_inspector(store: StateStore) -> TopologyInspector:
    """Inspector for a host without containers: every port is a localhost route."""
    return TopologyInspector(None, store)


@pytest.fixture
def lifecycle(
    store, port_registry, host_inspector, fake_dns, writer, domains
) -> HostnameLifecycleManager:
    return HostnameLifecycleManager(
        store,
        port_registry,
        host_inspector,
        fake_dns,
        writer,
        domains,
        cname_target=f"{TUNNEL_ID}.cfargotunnel.com",
    )
