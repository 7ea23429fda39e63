"""Tunnel health monitoring and recovery."""

from .monitor import HealthMonitor
from .restart import RESTART_ACTION, RestartController

__all__ = ["HealthMonitor", "RestartController", "RESTART_ACTION"]
