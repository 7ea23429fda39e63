"""Public hostname provisioning."""

from .lifecycle import (
    COMPENSATION_ACTION,
    CREATE_ACTION,
    DELETE_ACTION,
    RECONCILE_ACTION,
    HostnameLifecycleManager,
)
from .locks import HostnameLocks

__all__ = [
    "HostnameLifecycleManager",
    "HostnameLocks",
    "CREATE_ACTION",
    "DELETE_ACTION",
    "COMPENSATION_ACTION",
    "RECONCILE_ACTION",
]
