"""Tests for hostname provisioning, deletion and compensation."""

import threading
from unittest.mock import patch

import pytest

from tunnel_manager.common.exceptions import (
    CompensationFailedError,
    DNSProviderError,
    HostnameInUseError,
    HostnameNotFoundError,
    IngressReloadError,
    IngressWriteError,
    InvalidRequestError,
    NotOwnerError,
    PortNotOwnedError,
    ServiceUnreachableError,
    StoreError,
    UnknownDomainError,
)
from tunnel_manager.hostnames.lifecycle import (
    COMPENSATION_ACTION,
    CREATE_ACTION,
    DELETE_ACTION,
    RECONCILE_ACTION,
    HostnameLifecycleManager,
)
from tunnel_manager.store.models import AuditSeverity, TargetType
from tunnel_manager.topology.inspector import TopologyInspector
from tunnel_manager.topology.models import LocalhostRoute

from conftest import TUNNEL_ID, FakeContainerRuntime, docker_container

CNAME = f"{TUNNEL_ID}.cfargotunnel.com"


def assert_consistent(store, fake_dns, writer) -> None:
    """Records, DNS records and ingress rules describe the same hostnames."""
    records = {r.full_hostname for r in store.list_hostnames()}
    assert records == fake_dns.names()
    assert records == {r.hostname for r in writer.list_rules()}


@pytest.fixture
def make_lifecycle(store, port_registry, fake_dns, writer, domains):
    """Build a lifecycle manager over a given container runtime."""

    def factory(runtime=None) -> HostnameLifecycleManager:
        inspector = TopologyInspector(runtime, store)
        return HostnameLifecycleManager(
            store, port_registry, inspector, fake_dns, writer, domains, cname_target=CNAME
        )

    return factory


class TestCreate:
    """Provisioning a hostname"""

    def test_localhost_service(self, lifecycle, store, fake_dns, writer, fake_tunnel):
        """A host service gets a localhost rule, a CNAME and a record"""
        record = lifecycle.create("api", "example.com", 5000, "billing")

        assert record.full_hostname == "api.example.com"
        assert record.url == "https://api.example.com"
        assert record.target_type == TargetType.LOCALHOST
        assert record.container_name is None
        assert record.service_url == "http://localhost:5000"
        assert record.zone_id == "zone-1"

        assert list(fake_dns.records.values()) == [
            {"zone_id": "zone-1", "name": "api.example.com", "target": CNAME}
        ]
        assert writer.list_rules()[0].service == "http://localhost:5000"
        assert fake_tunnel.reload_calls == 1
        assert store.get_hostname("api.example.com") == record
        assert_consistent(store, fake_dns, writer)

    def test_container_on_shared_network(self, make_lifecycle, store, fake_dns, writer):
        """A containerized tunnel reaches a backend by container name"""
        runtime = FakeContainerRuntime(
            containers=[
                docker_container("cloudflared", ["billing_net"], image="cloudflare/cloudflared:2024.1.0"),
                docker_container("billing-api", ["billing_net"], ports={"5000/tcp": None}),
            ]
        )
        lifecycle = make_lifecycle(runtime)

        record = lifecycle.create("app", "example.com", 5000, "billing")

        assert record.target_type == TargetType.CONTAINER
        assert record.container_name == "billing-api"
        assert record.service_url == "http://billing-api:5000"
        assert writer.list_rules()[0].service == "http://billing-api:5000"
        assert_consistent(store, fake_dns, writer)

    def test_input_is_normalized(self, lifecycle):
        record = lifecycle.create("  API ", "Example.COM.", 5000, "billing")

        assert record.full_hostname == "api.example.com"
        assert record.subdomain == "api"
        assert record.domain == "example.com"

    def test_success_is_audited(self, lifecycle, store):
        lifecycle.create("api", "example.com", 5000, "billing")

        entry = store.list_audit(action=CREATE_ACTION)[0]
        assert entry.success is True
        assert entry.actor == "billing"
        assert entry.target == "api.example.com"
        assert entry.severity == AuditSeverity.INFO
        assert entry.details["target"] == "http://localhost:5000"

    @pytest.mark.parametrize(
        ("subdomain", "domain", "port"),
        [
            ("bad_label", "example.com", 5000),
            ("api", "localhost", 5000),
            ("api", "example.com", 0),
            ("", "example.com", 5000),
        ],
    )
    def test_invalid_request(self, lifecycle, fake_dns, subdomain, domain, port):
        with pytest.raises(InvalidRequestError):
            lifecycle.create(subdomain, domain, port, "billing")
        assert fake_dns.calls == []


class TestCreatePreconditions:
    """Precondition failures change nothing and are checked in a fixed order"""

    def test_port_not_owned(self, lifecycle, store, fake_dns, writer):
        with pytest.raises(PortNotOwnedError) as exc_info:
            lifecycle.create("api", "example.com", 5001, "billing")

        assert "5001" in exc_info.value.recommendation
        assert fake_dns.calls == []
        assert writer.list_rules() == []
        assert store.list_hostnames() == []

        entry = store.list_audit(action=CREATE_ACTION)[0]
        assert entry.success is False
        assert entry.severity == AuditSeverity.WARNING
        assert entry.details["error_code"] == "PortNotOwned"

    def test_hostname_in_use(self, lifecycle, fake_dns):
        lifecycle.create("api", "example.com", 5000, "billing")

        with pytest.raises(HostnameInUseError):
            lifecycle.create("api", "example.com", 6000, "billing")
        assert len(fake_dns.records) == 1

    def test_port_ownership_checked_before_hostname(self, lifecycle):
        lifecycle.create("api", "example.com", 5000, "billing")

        with pytest.raises(PortNotOwnedError):
            lifecycle.create("api", "example.com", 5000, "payments")

    def test_unreachable_container(self, make_lifecycle, fake_dns):
        runtime = FakeContainerRuntime(
            containers=[
                docker_container("cloudflared", ["edge"], image="cloudflare/cloudflared:latest"),
                docker_container("billing-api", ["billing_net"], ports={"5000/tcp": None}),
            ]
        )
        lifecycle = make_lifecycle(runtime)

        with pytest.raises(ServiceUnreachableError) as exc_info:
            lifecycle.create("api", "example.com", 5000, "billing")

        assert "docker network connect billing_net cloudflared" in exc_info.value.recommendation
        assert fake_dns.calls == []

    def test_hostname_checked_before_route(self, make_lifecycle, lifecycle):
        lifecycle.create("api", "example.com", 5000, "billing")
        unreachable = make_lifecycle(
            FakeContainerRuntime(
                containers=[docker_container("billing-api", ["billing_net"], ports={"5000/tcp": None})]
            )
        )

        with pytest.raises(HostnameInUseError):
            unreachable.create("api", "example.com", 5000, "billing")

    def test_unknown_domain(self, lifecycle, fake_dns):
        with pytest.raises(UnknownDomainError) as exc_info:
            lifecycle.create("api", "example.org", 5000, "billing")

        assert exc_info.value.recommendation == "Available domains: example.com"
        assert fake_dns.created == []

    def test_new_zone_found_by_refresh(self, lifecycle, fake_dns):
        fake_dns.zones.append({"name": "example.org", "zone_id": "zone-2"})

        record = lifecycle.create("api", "example.org", 5000, "billing")

        assert record.zone_id == "zone-2"


class TestCreateCompensation:
    """Partial changes are undone when a later step fails"""

    def test_dns_failure_changes_nothing(self, lifecycle, store, fake_dns, writer):
        fake_dns.fail_create = True

        with pytest.raises(DNSProviderError):
            lifecycle.create("api", "example.com", 5000, "billing")

        assert writer.list_rules() == []
        assert store.list_hostnames() == []
        entry = store.list_audit(action=CREATE_ACTION)[0]
        assert entry.severity == AuditSeverity.ERROR

    def test_ingress_write_failure_removes_dns_record(self, lifecycle, store, fake_dns, writer):
        """Disk error while writing the ingress file"""
        with patch(
            "tunnel_manager.ingress.writer.os.replace",
            side_effect=OSError(28, "No space left on device"),
        ):
            with pytest.raises(IngressWriteError):
                lifecycle.create("api", "example.com", 5000, "billing")

        assert fake_dns.created == ["api.example.com"]
        assert fake_dns.deleted == ["rec-1"]
        assert_consistent(store, fake_dns, writer)
        assert store.list_hostnames() == []

        entry = store.list_audit(action=CREATE_ACTION)[0]
        assert entry.success is False
        assert entry.details["error_code"] == "IngressWriteError"

    def test_reload_failure_removes_dns_record(self, lifecycle, store, fake_dns, writer, fake_tunnel):
        fake_tunnel.fail_reload = True

        with pytest.raises(IngressReloadError):
            lifecycle.create("api", "example.com", 5000, "billing")

        assert fake_dns.deleted == ["rec-1"]
        assert_consistent(store, fake_dns, writer)

    def test_persist_failure_undoes_dns_and_ingress(self, lifecycle, store, fake_dns, writer):
        with patch.object(store, "insert_hostname", side_effect=StoreError("disk I/O error")):
            with pytest.raises(StoreError):
                lifecycle.create("api", "example.com", 5000, "billing")

        assert writer.list_rules() == []
        assert fake_dns.records == {}
        assert store.list_hostnames() == []

    def test_failed_undo_escalates(self, lifecycle, store, fake_dns, fake_tunnel):
        fake_tunnel.fail_reload = True
        fake_dns.fail_delete = True

        with pytest.raises(CompensationFailedError) as exc_info:
            lifecycle.create("api", "example.com", 5000, "billing")

        assert isinstance(exc_info.value.__cause__, IngressReloadError)
        critical = store.list_audit(severity=AuditSeverity.CRITICAL)
        assert len(critical) == 1
        assert critical[0].action == COMPENSATION_ACTION
        assert critical[0].target == "api.example.com"
        assert "delete DNS record" in critical[0].details["failed_steps"][0]


class TestConcurrentCreate:
    """Serialization per hostname"""

    def run_concurrently(self, targets):
        results: list[object] = []
        lock = threading.Lock()

        def worker(fn):
            try:
                outcome = fn()
            except Exception as e:  # noqa: BLE001
                outcome = e
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker, args=(fn,)) for fn in targets]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return results

    def test_same_hostname_created_once(self, lifecycle, store, fake_dns, writer):
        fake_dns.create_delay = 0.05

        results = self.run_concurrently(
            [lambda: lifecycle.create("api", "example.com", 5000, "billing")] * 5
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 4
        assert all(isinstance(f, HostnameInUseError) for f in failures)
        assert fake_dns.created == ["api.example.com"]
        assert_consistent(store, fake_dns, writer)

    def test_different_hostnames_all_succeed(self, lifecycle, store, fake_dns, writer):
        names = [f"svc{i}" for i in range(6)]

        results = self.run_concurrently(
            [lambda name=name: lifecycle.create(name, "example.com", 5000, "billing") for name in names]
        )

        assert not [r for r in results if isinstance(r, Exception)]
        assert len(store.list_hostnames()) == 6
        assert_consistent(store, fake_dns, writer)


class TestDelete:
    """Retiring a hostname"""

    @pytest.fixture
    def created(self, lifecycle):
        return lifecycle.create("api", "example.com", 5000, "billing")

    def test_owner_deletes(self, lifecycle, created, store, fake_dns, writer):
        lifecycle.delete("api.example.com", "billing")

        assert store.get_hostname("api.example.com") is None
        assert fake_dns.deleted == [created.dns_record_id]
        assert writer.list_rules() == []

        entry = store.list_audit(action=DELETE_ACTION)[0]
        assert entry.success is True
        assert entry.details["owner"] == "billing"

    def test_ingress_removed_before_dns(self, lifecycle, created, fake_dns, writer, monkeypatch):
        rule_present_at_dns_delete = []
        original = fake_dns.delete_record

        def delete_record(zone_id, record_id):
            rule_present_at_dns_delete.append(writer.has_rule("api.example.com"))
            original(zone_id, record_id)

        monkeypatch.setattr(fake_dns, "delete_record", delete_record)
        lifecycle.delete("api.example.com", "billing")

        assert rule_present_at_dns_delete == [False]

    def test_not_owner(self, lifecycle, created, store, fake_dns, writer):
        with pytest.raises(NotOwnerError) as exc_info:
            lifecycle.delete("api.example.com", "payments")

        assert "billing" in exc_info.value.message
        assert store.get_hostname("api.example.com") is not None
        assert fake_dns.deleted == []
        assert writer.has_rule("api.example.com")

    def test_privileged_operator_deletes_any(self, lifecycle, created, store):
        lifecycle.delete("api.example.com", "operator", is_privileged=True)

        assert store.get_hostname("api.example.com") is None

    def test_unknown_hostname(self, lifecycle):
        with pytest.raises(HostnameNotFoundError):
            lifecycle.delete("nope.example.com", "billing")

    def test_hostname_is_normalized(self, lifecycle, created, store):
        lifecycle.delete(" API.Example.com. ", "billing")

        assert store.get_hostname("api.example.com") is None

    def test_dns_failure_restores_rule(self, lifecycle, created, store, fake_dns, writer):
        fake_dns.fail_delete = True

        with pytest.raises(DNSProviderError):
            lifecycle.delete("api.example.com", "billing")

        assert writer.has_rule("api.example.com")
        assert store.get_hostname("api.example.com") == created
        fake_dns.fail_delete = False
        assert_consistent(store, fake_dns, writer)

    def test_reconcile_during_delete_leaves_rule_removed(
        self, lifecycle, created, store, fake_dns, writer, monkeypatch
    ):
        original = fake_dns.delete_record

        def delete_record(zone_id, record_id):
            lifecycle.reconcile_ingress()
            original(zone_id, record_id)

        monkeypatch.setattr(fake_dns, "delete_record", delete_record)
        lifecycle.delete("api.example.com", "billing")

        assert writer.list_rules() == []
        assert_consistent(store, fake_dns, writer)

    def test_reconcile_during_failed_delete_restores_rule_once(
        self, lifecycle, created, store, fake_dns, writer, monkeypatch
    ):
        def delete_record(zone_id, record_id):
            lifecycle.reconcile_ingress()
            raise DNSProviderError("Cloudflare DELETE timed out")

        monkeypatch.setattr(fake_dns, "delete_record", delete_record)

        with pytest.raises(DNSProviderError):
            lifecycle.delete("api.example.com", "billing")

        assert [r.hostname for r in writer.list_rules()] == ["api.example.com"]
        assert store.get_hostname("api.example.com") == created
        assert store.list_audit(severity=AuditSeverity.CRITICAL) == []

    def test_missing_rule_still_deletes(self, lifecycle, created, store, writer):
        writer.remove_rule("api.example.com")

        lifecycle.delete("api.example.com", "billing")

        assert store.get_hostname("api.example.com") is None

    def test_stale_record_escalates(self, lifecycle, created, store):
        with patch.object(store, "delete_hostname", side_effect=StoreError("database is locked")):
            with pytest.raises(CompensationFailedError):
                lifecycle.delete("api.example.com", "billing")

        critical = store.list_audit(severity=AuditSeverity.CRITICAL)
        assert critical[0].action == COMPENSATION_ACTION
        assert critical[0].details["stale_record"] is True


class TestListAndReconcile:
    """Listing scope and ingress drift repair"""

    @pytest.fixture
    def populated(self, lifecycle, fake_dns):
        fake_dns.zones.append({"name": "example.org", "zone_id": "zone-2"})
        lifecycle.create("api", "example.com", 5000, "billing")
        lifecycle.create("admin", "example.org", 6000, "billing")
        lifecycle.create("pay", "example.com", 5001, "payments")

    def test_owner_sees_own_records(self, lifecycle, populated):
        names = {r.full_hostname for r in lifecycle.list_hostnames("billing")}
        assert names == {"api.example.com", "admin.example.org"}

    def test_unprivileged_without_owner_sees_nothing(self, lifecycle, populated):
        assert lifecycle.list_hostnames() == []

    def test_privileged_sees_all(self, lifecycle, populated):
        assert len(lifecycle.list_hostnames(is_privileged=True)) == 3

    def test_domain_filter(self, lifecycle, populated):
        records = lifecycle.list_hostnames("billing", domain="Example.ORG")
        assert [r.full_hostname for r in records] == ["admin.example.org"]

    def test_reconcile_repairs_drift(self, lifecycle, store, fake_dns, writer):
        lifecycle.create("api", "example.com", 5000, "billing")
        writer.remove_rule("api.example.com")
        writer.add_rule("stray.example.com", LocalhostRoute(port=7000))

        result = lifecycle.reconcile_ingress()

        assert result == {"added": ["api.example.com"], "removed": ["stray.example.com"]}
        assert_consistent(store, fake_dns, writer)
        entry = store.list_audit(action=RECONCILE_ACTION)[0]
        assert entry.success is True
        assert entry.details["removed"] == ["stray.example.com"]

    def test_reconcile_without_drift(self, lifecycle):
        lifecycle.create("api", "example.com", 5000, "billing")

        assert lifecycle.reconcile_ingress() == {"added": [], "removed": []}

    def test_cname_target_may_be_callable(self, store, port_registry, host_inspector, fake_dns, writer, domains):
        lifecycle = HostnameLifecycleManager(
            store,
            port_registry,
            host_inspector,
            fake_dns,
            writer,
            domains,
            cname_target=lambda: writer.load().cname_target,
        )

        lifecycle.create("api", "example.com", 5000, "billing")

        assert list(fake_dns.records.values())[0]["target"] == CNAME
