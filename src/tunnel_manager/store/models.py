"""Records persisted in the state store.

All models are frozen; state changes produce a new instance through
``model_copy(update=...)`` so a reader never observes a half-updated object.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..common.utils import utc_now


class TargetType(str, Enum):
    """How the tunnel reaches a backend."""

    LOCALHOST = "localhost"
    CONTAINER = "container"


class HostnameRecord(BaseModel):
    """A provisioned public endpoint and its owner."""

    model_config = ConfigDict(frozen=True)

    full_hostname: str = Field(min_length=3, description="subdomain + domain")
    subdomain: str = Field(min_length=1)
    domain: str = Field(min_length=1)
    owner_project: str = Field(min_length=1)
    target_port: int = Field(ge=1, le=65535)
    target_type: TargetType
    container_name: str | None = None
    service_url: str = Field(description="Ingress service, e.g. http://localhost:5000")
    dns_record_id: str = Field(min_length=1)
    zone_id: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def check_container_name(self) -> "HostnameRecord":
        """container_name is present iff the target is a container."""
        if self.target_type == TargetType.CONTAINER and not self.container_name:
            raise ValueError("container_name is required for container targets")
        if self.target_type == TargetType.LOCALHOST and self.container_name:
            raise ValueError("container_name must be empty for localhost targets")
        return self

    @property
    def url(self) -> str:
        return f"https://{self.full_hostname}"


class ObservedStatus(str, Enum):
    UP = "up"
    DOWN = "down"


class TunnelStatus(str, Enum):
    """Runtime status of the single tunnel process."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"
    RECOVERING = "recovering"


class HealthSample(BaseModel):
    """One health-check observation. Append-only."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    observed_status: ObservedStatus
    consecutive_failures: int = Field(ge=0)
    process_uptime_seconds: int = Field(default=0, ge=0)
    status: TunnelStatus = Field(description="Runtime status after this observation")
    error: str | None = None


class TunnelRuntimeState(BaseModel):
    """Current-status projection of the tunnel process."""

    model_config = ConfigDict(frozen=True)

    status: TunnelStatus = TunnelStatus.HEALTHY
    consecutive_failures: int = Field(default=0, ge=0)
    restart_count: int = Field(default=0, ge=0)
    last_restart_at: datetime | None = None
    current_backoff_seconds: float = Field(default=5.0, ge=0)
    last_check_at: datetime | None = None
    up_since: datetime | None = None

    def uptime_seconds(self, now: datetime | None = None) -> int:
        """Seconds since the tunnel was last observed coming up."""
        if self.up_since is None or self.status in (
            TunnelStatus.DOWN,
            TunnelStatus.RECOVERING,
        ):
            return 0
        now = now or utc_now()
        return max(0, int((now - self.up_since).total_seconds()))


class DiscoveredDomain(BaseModel):
    """A DNS zone available for hostname creation (cache of the provider)."""

    model_config = ConfigDict(frozen=True)

    domain_name: str
    provider_zone_id: str
    discovered_at: datetime = Field(default_factory=utc_now)
    last_seen: datetime = Field(default_factory=utc_now)


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"  # needs manual reconciliation


class AuditEntry(BaseModel):
    """Immutable record of a mutating operation."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    action: str = Field(min_length=1)
    actor: str | None = None
    target: str | None = None
    success: bool
    severity: AuditSeverity = AuditSeverity.INFO
    details: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
