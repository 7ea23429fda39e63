"""Exceptions raised by the tunnel manager."""


class TunnelManagerError(Exception):
    """Base exception for all tunnel manager errors."""

    code = "InternalError"

    def __init__(self, message: str, recommendation: str | None = None):
        super().__init__(message)
        self.message = message
        self.recommendation = recommendation


class ConfigurationError(TunnelManagerError):
    """Raised when configuration or a required credential is invalid."""

    code = "ConfigurationError"


class StoreError(TunnelManagerError):
    """Raised when the state store cannot be read or written."""

    code = "StoreError"


# Precondition errors: returned to the caller, never retried automatically.


class PreconditionError(TunnelManagerError):
    """A caller-correctable precondition did not hold."""


class InvalidRequestError(PreconditionError):
    """Malformed subdomain, domain or port."""

    code = "InvalidRequest"


class PortNotOwnedError(PreconditionError):
    code = "PortNotOwned"


class HostnameInUseError(PreconditionError):
    code = "HostnameInUse"


class ServiceUnreachableError(PreconditionError):
    code = "ServiceUnreachable"


class UnknownDomainError(PreconditionError):
    code = "UnknownDomain"


class NotOwnerError(PreconditionError):
    code = "NotOwner"


class HostnameNotFoundError(PreconditionError):
    code = "HostnameNotFound"


# Infrastructure errors


class DNSProviderError(TunnelManagerError):
    """Raised when the DNS provider call fails or times out."""

    code = "DNSProviderError"

    def __init__(
        self,
        message: str,
        recommendation: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, recommendation)
        self.status_code = status_code


class ContainerRuntimeError(TunnelManagerError):
    """Raised when the container runtime cannot be introspected."""

    code = "ContainerRuntimeError"


class IngressError(TunnelManagerError):
    """Base class for ingress config failures."""

    code = "IngressError"


class IngressWriteError(IngressError):
    """The ingress file could not be written; nothing took effect."""

    code = "IngressWriteError"


class IngressReloadError(IngressError):
    """The tunnel rejected the reload; the file was rolled back."""

    code = "IngressReloadError"


class TunnelProcessError(TunnelManagerError):
    """Raised when the tunnel process cannot be started, stopped or signalled."""

    code = "TunnelProcessError"


class CompensationFailedError(TunnelManagerError):
    """A compensating action failed; manual reconciliation is required."""

    code = "CompensationFailed"
