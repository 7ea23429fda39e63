"""SQLite-backed state store.

Holds hostname ownership, health samples, the runtime-state projection,
discovered domains, the cached topology snapshot and the audit log. Each
operation opens its own connection so the store can be shared between the
health monitor thread and request-handling threads; WAL mode lets readers
proceed while a writer holds the lock.

Schema changes are additive-only: new versions are appended to ``MIGRATIONS``
and never rewrite an existing table.
"""

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from ..common.exceptions import HostnameInUseError, StoreError
from ..common.logging import get_logger
from ..topology.models import TopologySnapshot
from .models import (
    AuditEntry,
    AuditSeverity,
    DiscoveredDomain,
    HealthSample,
    HostnameRecord,
    ObservedStatus,
    TargetType,
    TunnelRuntimeState,
    TunnelStatus,
)

logger = get_logger(__name__)


MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS hostnames (
            full_hostname TEXT PRIMARY KEY,
            subdomain TEXT NOT NULL,
            domain TEXT NOT NULL,
            owner_project TEXT NOT NULL,
            target_port INTEGER NOT NULL,
            target_type TEXT NOT NULL CHECK(target_type IN ('localhost', 'container')),
            container_name TEXT,
            service_url TEXT NOT NULL,
            dns_record_id TEXT NOT NULL,
            zone_id TEXT NOT NULL,
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_hostnames_owner ON hostnames(owner_project);
        CREATE INDEX IF NOT EXISTS idx_hostnames_domain ON hostnames(domain);

        CREATE TABLE IF NOT EXISTS health_samples (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            observed_status TEXT NOT NULL CHECK(observed_status IN ('up', 'down')),
            consecutive_failures INTEGER NOT NULL,
            process_uptime_seconds INTEGER NOT NULL,
            status TEXT NOT NULL,
            error TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_health_samples_timestamp ON health_samples(timestamp);

        CREATE TABLE IF NOT EXISTS tunnel_runtime_state (
            id INTEGER PRIMARY KEY CHECK(id = 1),
            status TEXT NOT NULL,
            consecutive_failures INTEGER NOT NULL,
            restart_count INTEGER NOT NULL,
            last_restart_at TEXT,
            current_backoff_seconds REAL NOT NULL,
            last_check_at TEXT,
            up_since TEXT
        );

        CREATE TABLE IF NOT EXISTS domains (
            domain_name TEXT PRIMARY KEY,
            provider_zone_id TEXT NOT NULL,
            discovered_at TEXT NOT NULL,
            last_seen TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS topology_snapshot (
            id INTEGER PRIMARY KEY CHECK(id = 1),
            captured_at TEXT NOT NULL,
            snapshot_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            action TEXT NOT NULL,
            actor TEXT,
            target TEXT,
            success INTEGER NOT NULL,
            severity TEXT NOT NULL DEFAULT 'info',
            details TEXT,
            error_message TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log(timestamp);
        CREATE INDEX IF NOT EXISTS idx_audit_log_action ON audit_log(action);
        """,
    ),
]


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class StateStore:
    """Embedded relational store for all tunnel manager state."""

    def __init__(self, db_path: str | Path, timeout: float = 30.0):
        """Open (and migrate) the store.

        Args:
            db_path: Path of the SQLite file; parent directories are created
            timeout: Seconds a connection waits on a locked database
        """
        self.db_path = str(db_path)
        self._timeout = timeout
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._migrate()
        logger.info("State store initialized", db_path=self.db_path)

    # Connection handling

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block in one IMMEDIATE transaction (single writer)."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"State store write failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreError(f"State store read failed: {e}") from e
        finally:
            conn.close()

    def _migrate(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                "version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
            )
            applied = {
                row["version"]
                for row in conn.execute("SELECT version FROM schema_migrations")
            }
            for version, script in MIGRATIONS:
                if version in applied:
                    continue
                conn.executescript(script)
                conn.execute(
                    "INSERT INTO schema_migrations (version, applied_at) "
                    "VALUES (?, datetime('now'))",
                    (version,),
                )
                conn.commit()
                logger.info("Applied schema migration", version=version)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to migrate state store: {e}") from e
        finally:
            conn.close()

    def schema_version(self) -> int:
        with self._reader() as conn:
            row = conn.execute("SELECT MAX(version) AS v FROM schema_migrations").fetchone()
            return int(row["v"] or 0)

    # Hostnames

    def insert_hostname(self, record: HostnameRecord) -> None:
        """Persist a confirmed hostname record.

        Raises:
            HostnameInUseError: If a live record already exists for the hostname
        """
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO hostnames (
                        full_hostname, subdomain, domain, owner_project,
                        target_port, target_type, container_name, service_url,
                        dns_record_id, zone_id, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.full_hostname,
                        record.subdomain,
                        record.domain,
                        record.owner_project,
                        record.target_port,
                        record.target_type.value,
                        record.container_name,
                        record.service_url,
                        record.dns_record_id,
                        record.zone_id,
                        _iso(record.created_at),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise HostnameInUseError(
                f"Hostname {record.full_hostname} is already in use"
            ) from e

    def get_hostname(self, full_hostname: str) -> HostnameRecord | None:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM hostnames WHERE full_hostname = ?", (full_hostname,)
            ).fetchone()
            return self._map_hostname(row) if row else None

    def list_hostnames(
        self, owner_project: str | None = None, domain: str | None = None
    ) -> list[HostnameRecord]:
        query = "SELECT * FROM hostnames WHERE 1=1"
        params: list[Any] = []
        if owner_project is not None:
            query += " AND owner_project = ?"
            params.append(owner_project)
        if domain is not None:
            query += " AND domain = ?"
            params.append(domain)
        query += " ORDER BY created_at DESC, full_hostname ASC"

        with self._reader() as conn:
            return [self._map_hostname(row) for row in conn.execute(query, params)]

    def delete_hostname(self, full_hostname: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM hostnames WHERE full_hostname = ?", (full_hostname,)
            )
            return cursor.rowcount > 0

    @staticmethod
    def _map_hostname(row: sqlite3.Row) -> HostnameRecord:
        return HostnameRecord(
            full_hostname=row["full_hostname"],
            subdomain=row["subdomain"],
            domain=row["domain"],
            owner_project=row["owner_project"],
            target_port=row["target_port"],
            target_type=TargetType(row["target_type"]),
            container_name=row["container_name"],
            service_url=row["service_url"],
            dns_record_id=row["dns_record_id"],
            zone_id=row["zone_id"],
            created_at=_dt(row["created_at"]),
        )

    # Health

    def record_health(self, sample: HealthSample, state: TunnelRuntimeState) -> None:
        """Append a sample and replace the runtime state in one transaction."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO health_samples (
                    timestamp, observed_status, consecutive_failures,
                    process_uptime_seconds, status, error
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    _iso(sample.timestamp),
                    sample.observed_status.value,
                    sample.consecutive_failures,
                    sample.process_uptime_seconds,
                    sample.status.value,
                    sample.error,
                ),
            )
            self._write_runtime_state(conn, state)

    def save_runtime_state(self, state: TunnelRuntimeState) -> None:
        with self._transaction() as conn:
            self._write_runtime_state(conn, state)

    @staticmethod
    def _write_runtime_state(conn: sqlite3.Connection, state: TunnelRuntimeState) -> None:
        conn.execute(
            """
            INSERT INTO tunnel_runtime_state (
                id, status, consecutive_failures, restart_count, last_restart_at,
                current_backoff_seconds, last_check_at, up_since
            ) VALUES (1, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                consecutive_failures = excluded.consecutive_failures,
                restart_count = excluded.restart_count,
                last_restart_at = excluded.last_restart_at,
                current_backoff_seconds = excluded.current_backoff_seconds,
                last_check_at = excluded.last_check_at,
                up_since = excluded.up_since
            """,
            (
                state.status.value,
                state.consecutive_failures,
                state.restart_count,
                _iso(state.last_restart_at),
                state.current_backoff_seconds,
                _iso(state.last_check_at),
                _iso(state.up_since),
            ),
        )

    def load_runtime_state(self) -> TunnelRuntimeState | None:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM tunnel_runtime_state WHERE id = 1").fetchone()
            if not row:
                return None
            return TunnelRuntimeState(
                status=TunnelStatus(row["status"]),
                consecutive_failures=row["consecutive_failures"],
                restart_count=row["restart_count"],
                last_restart_at=_dt(row["last_restart_at"]),
                current_backoff_seconds=row["current_backoff_seconds"],
                last_check_at=_dt(row["last_check_at"]),
                up_since=_dt(row["up_since"]),
            )

    def health_history(self, limit: int = 100) -> list[HealthSample]:
        """Most recent samples first."""
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM health_samples ORDER BY id DESC LIMIT ?", (limit,)
            )
            return [
                HealthSample(
                    timestamp=_dt(row["timestamp"]),
                    observed_status=ObservedStatus(row["observed_status"]),
                    consecutive_failures=row["consecutive_failures"],
                    process_uptime_seconds=row["process_uptime_seconds"],
                    status=TunnelStatus(row["status"]),
                    error=row["error"],
                )
                for row in rows
            ]

    def prune_health_samples(self, older_than: datetime) -> int:
        """Delete samples taken before ``older_than``. Returns the count removed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM health_samples WHERE timestamp < ?", (_iso(older_than),)
            )
            return cursor.rowcount

    # Domains

    def upsert_domains(self, domains: Iterable[DiscoveredDomain]) -> None:
        """Insert new domains and overwrite metadata of known ones; never deletes."""
        with self._transaction() as conn:
            for domain in domains:
                conn.execute(
                    """
                    INSERT INTO domains (domain_name, provider_zone_id, discovered_at, last_seen)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(domain_name) DO UPDATE SET
                        provider_zone_id = excluded.provider_zone_id,
                        last_seen = excluded.last_seen
                    """,
                    (
                        domain.domain_name,
                        domain.provider_zone_id,
                        _iso(domain.discovered_at),
                        _iso(domain.last_seen),
                    ),
                )

    def list_domains(self) -> list[DiscoveredDomain]:
        with self._reader() as conn:
            rows = conn.execute("SELECT * FROM domains ORDER BY domain_name ASC")
            return [self._map_domain(row) for row in rows]

    def get_domain(self, domain_name: str) -> DiscoveredDomain | None:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM domains WHERE domain_name = ?", (domain_name,)
            ).fetchone()
            return self._map_domain(row) if row else None

    @staticmethod
    def _map_domain(row: sqlite3.Row) -> DiscoveredDomain:
        return DiscoveredDomain(
            domain_name=row["domain_name"],
            provider_zone_id=row["provider_zone_id"],
            discovered_at=_dt(row["discovered_at"]),
            last_seen=_dt(row["last_seen"]),
        )

    # Topology cache

    def save_topology(self, snapshot: TopologySnapshot) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO topology_snapshot (id, captured_at, snapshot_json)
                VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    captured_at = excluded.captured_at,
                    snapshot_json = excluded.snapshot_json
                """,
                (_iso(snapshot.captured_at), snapshot.model_dump_json()),
            )

    def load_topology(self) -> TopologySnapshot | None:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT snapshot_json FROM topology_snapshot WHERE id = 1"
            ).fetchone()
            if not row:
                return None
            return TopologySnapshot.model_validate_json(row["snapshot_json"])

    # Audit

    def append_audit(self, entry: AuditEntry) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO audit_log (
                    timestamp, action, actor, target, success, severity,
                    details, error_message
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _iso(entry.timestamp),
                    entry.action,
                    entry.actor,
                    entry.target,
                    1 if entry.success else 0,
                    entry.severity.value,
                    json.dumps(entry.details, default=str),
                    entry.error_message,
                ),
            )
            return int(cursor.lastrowid or 0)

    def list_audit(
        self,
        actor: str | None = None,
        action: str | None = None,
        severity: AuditSeverity | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Audit entries, newest first, with optional filters."""
        query = "SELECT * FROM audit_log WHERE 1=1"
        params: list[Any] = []
        if actor is not None:
            query += " AND actor = ?"
            params.append(actor)
        if action is not None:
            query += " AND action = ?"
            params.append(action)
        if severity is not None:
            query += " AND severity = ?"
            params.append(severity.value)
        query += " ORDER BY id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._reader() as conn:
            return [
                AuditEntry(
                    id=row["id"],
                    timestamp=_dt(row["timestamp"]),
                    action=row["action"],
                    actor=row["actor"],
                    target=row["target"],
                    success=bool(row["success"]),
                    severity=AuditSeverity(row["severity"]),
                    details=json.loads(row["details"]) if row["details"] else {},
                    error_message=row["error_message"],
                )
                for row in conn.execute(query, params)
            ]
