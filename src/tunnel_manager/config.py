"""Runtime settings for the tunnel manager, loaded from the environment."""

from enum import Enum
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .common.utils import normalize_domain


class TunnelBackend(str, Enum):
    """How the tunnel process is supervised on this host."""

    MANAGED = "managed"  # child process owned by the tunnel manager
    SYSTEMD = "systemd"
    CONTAINER = "container"


class TunnelManagerSettings(BaseSettings):
    """Settings for one tunnel manager process (one per host)."""

    model_config = SettingsConfigDict(
        env_prefix="TUNNEL_MANAGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        str_strip_whitespace=True,
        validate_assignment=True,
    )

    # State store
    db_path: Path = Field(
        default=Path("data/tunnel-manager.db"), description="SQLite state store file"
    )

    # Ingress
    ingress_config_path: Path = Field(
        default=Path("/etc/cloudflared/config.yml"),
        description="cloudflared config file holding the ingress rules",
    )

    # DNS
    default_domain: str | None = Field(
        default=None, description="Domain used when a request omits one"
    )
    tunnel_cname_target: str = Field(
        default="",
        description="CNAME target for every public hostname (<tunnel-id>.cfargotunnel.com)",
    )
    dns_api_token_secret: str = Field(
        default="meta/cloudflare/dns_edit_token",
        description="Vault path of the DNS provider API token",
    )
    dns_account_id_secret: str | None = Field(
        default="meta/cloudflare/account_id",
        description="Vault path of the DNS provider account id (optional)",
    )
    dns_timeout: float = Field(default=30.0, ge=1.0, le=120.0)

    # Port registry
    port_allocations_file: Path | None = Field(
        default=None, description='JSON map of port to owner project, e.g. {"5000": "billing"}'
    )

    # Tunnel process
    tunnel_backend: TunnelBackend = Field(default=TunnelBackend.SYSTEMD)
    cloudflared_binary: str = Field(default="cloudflared")
    systemd_unit: str = Field(default="cloudflared")
    tunnel_container_name: str = Field(default="cloudflared")
    liveness_url: str = Field(
        default="http://127.0.0.1:2000/ready",
        description="cloudflared metrics readiness endpoint",
    )

    # Health monitoring
    health_poll_interval: float = Field(default=30.0, ge=1.0, le=600.0)
    health_poll_timeout: float = Field(default=5.0, ge=0.1, le=60.0)
    down_threshold: int = Field(
        default=3, ge=1, le=20, description="Consecutive failed polls before 'down'"
    )
    initial_backoff: float = Field(default=5.0, ge=0.0, le=600.0)
    max_backoff: float = Field(default=300.0, ge=1.0, le=3600.0)
    restart_settle_seconds: float = Field(
        default=3.0, ge=0.0, le=60.0, description="Wait after restart before verifying"
    )
    health_retention_days: int = Field(default=30, ge=1, le=3650)

    # Topology
    docker_enabled: bool = Field(
        default=True, description="Inspect containers; disable on hosts without a container runtime"
    )
    topology_cache_ttl: float = Field(default=60.0, ge=0.0, le=3600.0)
    docker_timeout: int = Field(default=10, ge=1, le=120)

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_json: bool = False
    log_file: str | None = None

    @field_validator("default_domain")
    @classmethod
    def validate_default_domain(cls, v: str | None) -> str | None:
        """Normalize the default domain."""
        if v is None or v == "":
            return None
        return normalize_domain(v)

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_backoff_range(self) -> "TunnelManagerSettings":
        """Initial backoff cannot exceed the cap."""
        if self.initial_backoff > self.max_backoff:
            raise ValueError("initial_backoff must not exceed max_backoff")
        return self


_settings: TunnelManagerSettings | None = None


def get_settings() -> TunnelManagerSettings:
    """Get or create the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = TunnelManagerSettings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (used by tests)."""
    global _settings
    _settings = None
