"""State store: persisted records and the SQLite access layer."""

from .database import MIGRATIONS, StateStore
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

__all__ = [
    "StateStore",
    "MIGRATIONS",
    "AuditEntry",
    "AuditSeverity",
    "DiscoveredDomain",
    "HealthSample",
    "HostnameRecord",
    "ObservedStatus",
    "TargetType",
    "TunnelRuntimeState",
    "TunnelStatus",
]
