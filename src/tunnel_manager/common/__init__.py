"""Common utilities and shared functionality."""

from .exceptions import (
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
from .logging import get_logger, setup_logging
from .utils import (
    MAX_PORT,
    MIN_PORT,
    mask_sensitive_data,
    normalize_domain,
    normalize_subdomain,
    sanitize_log_data,
    utc_now,
    validate_non_empty_string,
    validate_port,
)

__all__ = [
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
    # Logging
    "get_logger",
    "setup_logging",
    # Utils
    "validate_port",
    "validate_non_empty_string",
    "normalize_subdomain",
    "normalize_domain",
    "mask_sensitive_data",
    "sanitize_log_data",
    "utc_now",
    "MIN_PORT",
    "MAX_PORT",
]
