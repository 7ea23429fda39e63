"""Tunnel recovery with exponential backoff."""

import threading

from ..common.exceptions import StoreError, TunnelProcessError
from ..common.logging import get_logger
from ..interfaces import TunnelProcess
from ..store.database import StateStore
from ..store.models import AuditEntry, AuditSeverity

logger = get_logger(__name__)

RESTART_ACTION = "restart_tunnel"


class RestartController:
    """Restarts the tunnel process on behalf of the health monitor.

    Holds no runtime state: the caller passes the current backoff in and
    stores the returned one. Retries are unlimited; the backoff doubles on
    every failed attempt up to ``max_backoff``.
    """

    def __init__(
        self,
        tunnel: TunnelProcess,
        store: StateStore,
        initial_backoff: float = 5.0,
        max_backoff: float = 300.0,
        settle_seconds: float = 3.0,
        stop_event: threading.Event | None = None,
    ):
        """Initialize the controller.

        Args:
            tunnel: Tunnel process backend to restart
            store: State store receiving one audit entry per attempt
            initial_backoff: Backoff after a healthy transition
            max_backoff: Upper bound of the backoff
            settle_seconds: Wait between restart and verification
            stop_event: Set on shutdown; interrupts the backoff wait
        """
        self._tunnel = tunnel
        self._store = store
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.settle_seconds = settle_seconds
        self._stop_event = stop_event or threading.Event()

    def next_backoff(self, current_backoff: float) -> float:
        return min(max(current_backoff * 2, self.initial_backoff), self.max_backoff)

    def attempt_restart(self, current_backoff: float) -> float:
        """Wait ``current_backoff`` seconds, restart and verify.

        Returns:
            The backoff to use for the next attempt: unchanged on success,
            doubled (capped) on failure
        """
        logger.info("Waiting before restart attempt", backoff=current_backoff)
        if current_backoff > 0 and self._stop_event.wait(current_backoff):
            logger.info("Restart cancelled by shutdown")
            return current_backoff

        success = self.restart_now(reason="automatic", backoff=current_backoff)
        if success:
            return current_backoff
        next_backoff = self.next_backoff(current_backoff)
        logger.warning("Restart attempt failed", next_backoff=next_backoff)
        return next_backoff

    def restart_now(self, reason: str = "manual", backoff: float = 0.0) -> bool:
        """Restart without waiting. Returns True if the tunnel is running afterwards."""
        error = None
        try:
            self._tunnel.restart()
            if self.settle_seconds > 0:
                self._stop_event.wait(self.settle_seconds)
            success = self._tunnel.is_running()
            if not success:
                error = "Tunnel is not running after restart"
        except TunnelProcessError as e:
            success = False
            error = str(e)

        if success:
            logger.info("Tunnel restarted", reason=reason)
        else:
            logger.error("Tunnel restart failed", reason=reason, error=error)

        self._audit(success, reason, backoff, error)
        return success

    def _audit(self, success: bool, reason: str, backoff: float, error: str | None) -> None:
        entry = AuditEntry(
            action=RESTART_ACTION,
            actor="health_monitor" if reason == "automatic" else "operator",
            target="tunnel",
            success=success,
            severity=AuditSeverity.INFO if success else AuditSeverity.ERROR,
            details={"reason": reason, "backoff_seconds": backoff},
            error_message=error,
        )
        try:
            self._store.append_audit(entry)
        except StoreError as e:
            logger.error("Failed to audit restart attempt", error=str(e))
