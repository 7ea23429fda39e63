"""Periodic liveness polling and the tunnel status state machine.

    healthy --1 failed poll--> degraded --N consecutive--> down
    down --immediately--> recovering (restart controller invoked)
    recovering --failed poll--> recovering (restart retried with backoff)
    recovering/degraded --successful poll--> healthy

Only the monitor writes ``TunnelRuntimeState``; every poll appends a
``HealthSample`` and stores the new state in the same transaction.
"""

import threading
from collections.abc import Callable
from datetime import datetime

from ..common.exceptions import TunnelManagerError
from ..common.logging import get_logger
from ..common.utils import utc_now
from ..interfaces import LivenessProbe
from ..store.database import StateStore
from ..store.models import HealthSample, ObservedStatus, TunnelRuntimeState, TunnelStatus
from .restart import RestartController

logger = get_logger(__name__)


class HealthMonitor:
    """Owns the single ``TunnelRuntimeState`` of this host's tunnel."""

    def __init__(
        self,
        probe: LivenessProbe,
        restart_controller: RestartController,
        store: StateStore,
        poll_interval: float = 30.0,
        down_threshold: int = 3,
        stop_event: threading.Event | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._probe = probe
        self._restarts = restart_controller
        self._store = store
        self.poll_interval = poll_interval
        self.down_threshold = down_threshold
        self._stop_event = stop_event or threading.Event()
        self._clock = clock
        self._write_lock = threading.Lock()
        self._thread: threading.Thread | None = None

        initial = TunnelRuntimeState(current_backoff_seconds=restart_controller.initial_backoff)
        self._state = store.load_runtime_state() or initial

    @property
    def state(self) -> TunnelRuntimeState:
        return self._state

    def poll_once(self) -> TunnelRuntimeState:
        """Probe the tunnel once and advance the state machine."""
        with self._write_lock:
            try:
                alive = self._probe.check()
                error = None if alive else getattr(self._probe, "last_error", None) or "probe failed"
            except TunnelManagerError as e:
                alive, error = False, str(e)

            now = self._clock()
            if alive:
                return self._on_success(now)
            return self._on_failure(now, error)

    def _on_success(self, now: datetime) -> TunnelRuntimeState:
        previous = self._state
        update: dict = {
            "status": TunnelStatus.HEALTHY,
            "consecutive_failures": 0,
            "current_backoff_seconds": self._restarts.initial_backoff,
            "last_check_at": now,
        }
        if previous.status in (TunnelStatus.RECOVERING, TunnelStatus.DOWN):
            update["last_restart_at"] = now
            update["up_since"] = now
        elif previous.up_since is None:
            update["up_since"] = now

        state = previous.model_copy(update=update)
        self._commit(now, ObservedStatus.UP, state)
        if previous.status != TunnelStatus.HEALTHY:
            logger.info("Tunnel healthy", previous=previous.status.value)
        return state

    def _on_failure(self, now: datetime, error: str | None) -> TunnelRuntimeState:
        previous = self._state
        failures = previous.consecutive_failures + 1

        if previous.status == TunnelStatus.RECOVERING:
            state = previous.model_copy(
                update={"consecutive_failures": failures, "last_check_at": now}
            )
            self._commit(now, ObservedStatus.DOWN, state, error)
            logger.warning("Tunnel still down, retrying restart", failures=failures)
            return self._recover(now, state, error)

        if failures < self.down_threshold and previous.status != TunnelStatus.DOWN:
            state = previous.model_copy(
                update={
                    "status": TunnelStatus.DEGRADED,
                    "consecutive_failures": failures,
                    "last_check_at": now,
                }
            )
            self._commit(now, ObservedStatus.DOWN, state, error)
            logger.warning("Tunnel degraded", failures=failures, error=error)
            return state

        state = previous.model_copy(
            update={
                "status": TunnelStatus.DOWN,
                "consecutive_failures": failures,
                "last_check_at": now,
                "up_since": None,
            }
        )
        self._commit(now, ObservedStatus.DOWN, state, error)
        logger.error("Tunnel down", failures=failures, error=error)
        return self._recover(now, state, error)

    def _recover(
        self, now: datetime, state: TunnelRuntimeState, error: str | None
    ) -> TunnelRuntimeState:
        recovering = state
        if state.status != TunnelStatus.RECOVERING:
            recovering = state.model_copy(update={"status": TunnelStatus.RECOVERING})
            self._commit(now, ObservedStatus.DOWN, recovering, error)

        next_backoff = self._restarts.attempt_restart(recovering.current_backoff_seconds)
        if self._stop_event.is_set():
            logger.info("Shutdown during recovery, restart not attempted")
            return recovering

        recovering = recovering.model_copy(
            update={
                "restart_count": recovering.restart_count + 1,
                "current_backoff_seconds": next_backoff,
            }
        )
        self._set_state(recovering)
        return recovering

    def manual_restart(self) -> bool:
        """Operator-triggered restart; the next successful poll reports healthy."""
        with self._write_lock:
            recovering = self._state.model_copy(update={"status": TunnelStatus.RECOVERING})
            self._set_state(recovering)
            success = self._restarts.restart_now(reason="manual")
            self._set_state(
                recovering.model_copy(update={"restart_count": recovering.restart_count + 1})
            )
            return success

    def _commit(
        self,
        now: datetime,
        observed: ObservedStatus,
        state: TunnelRuntimeState,
        error: str | None = None,
    ) -> None:
        sample = HealthSample(
            timestamp=now,
            observed_status=observed,
            consecutive_failures=state.consecutive_failures,
            process_uptime_seconds=state.uptime_seconds(now),
            status=state.status,
            error=error,
        )
        self._store.record_health(sample, state)
        self._state = state

    def _set_state(self, state: TunnelRuntimeState) -> None:
        self._store.save_runtime_state(state)
        self._state = state

    # Background loop

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="tunnel-health-monitor", daemon=True
        )
        self._thread.start()
        logger.info("Health monitor started", interval=self.poll_interval)

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Health monitor stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except TunnelManagerError as e:
                logger.error("Health poll failed", error=str(e))
            self._stop_event.wait(self.poll_interval)
