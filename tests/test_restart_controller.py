"""Tests for RestartController backoff and auditing."""

import threading
from unittest.mock import Mock

import pytest

from tunnel_manager.health.restart import RESTART_ACTION, RestartController
from tunnel_manager.store.models import AuditSeverity


@pytest.fixture
def no_wait():
    """Stop event whose wait returns immediately without shutdown."""
    return Mock(wait=Mock(return_value=False))


@pytest.fixture
def controller(fake_tunnel, store, no_wait) -> RestartController:
    return RestartController(fake_tunnel, store, settle_seconds=0, stop_event=no_wait)


class TestBackoff:
    """Exponential backoff between restart attempts"""

    def test_doubles_and_caps(self, controller):
        backoff = 5.0
        seen = []
        for _ in range(8):
            backoff = controller.next_backoff(backoff)
            seen.append(backoff)

        assert seen == [10.0, 20.0, 40.0, 80.0, 160.0, 300.0, 300.0, 300.0]

    def test_zero_backoff_starts_at_initial(self, controller):
        assert controller.next_backoff(0.0) == 5.0

    def test_custom_bounds(self, fake_tunnel, store):
        controller = RestartController(fake_tunnel, store, initial_backoff=1, max_backoff=3)
        assert controller.next_backoff(2) == 3


class TestAttemptRestart:
    """One restart attempt per call"""

    def test_waits_backoff_before_restarting(self, controller, no_wait, fake_tunnel):
        controller.attempt_restart(40.0)

        no_wait.wait.assert_called_once_with(40.0)
        assert fake_tunnel.restart_calls == 1

    def test_success_keeps_backoff(self, controller, store):
        assert controller.attempt_restart(20.0) == 20.0

        entry = store.list_audit(action=RESTART_ACTION)[0]
        assert entry.success is True
        assert entry.actor == "health_monitor"
        assert entry.severity == AuditSeverity.INFO
        assert entry.details == {"reason": "automatic", "backoff_seconds": 20.0}

    def test_failure_doubles_backoff(self, controller, fake_tunnel, store):
        fake_tunnel.fail_restart = True

        assert controller.attempt_restart(5.0) == 10.0
        assert controller.attempt_restart(200.0) == 300.0

        entries = store.list_audit(action=RESTART_ACTION)
        assert len(entries) == 2
        assert all(not e.success for e in entries)
        assert entries[0].severity == AuditSeverity.ERROR
        assert entries[0].error_message == "restart failed"

    def test_process_not_running_afterwards_is_failure(self, controller, fake_tunnel, store):
        fake_tunnel.running_after_restart = False

        assert controller.attempt_restart(5.0) == 10.0
        assert "not running" in store.list_audit(action=RESTART_ACTION)[0].error_message

    def test_shutdown_cancels_attempt(self, fake_tunnel, store):
        stop = threading.Event()
        stop.set()
        controller = RestartController(fake_tunnel, store, stop_event=stop)

        assert controller.attempt_restart(5.0) == 5.0
        assert fake_tunnel.restart_calls == 0
        assert store.list_audit(action=RESTART_ACTION) == []

    def test_retries_are_unlimited(self, controller, fake_tunnel):
        fake_tunnel.fail_restart = True
        backoff = 5.0
        for _ in range(20):
            backoff = controller.attempt_restart(backoff)

        assert fake_tunnel.restart_calls == 20
        assert backoff == 300.0


class TestRestartNow:
    """Operator-triggered restarts"""

    def test_manual_restart_is_audited_as_operator(self, controller, store, no_wait):
        assert controller.restart_now() is True

        no_wait.wait.assert_not_called()
        entry = store.list_audit(action=RESTART_ACTION)[0]
        assert entry.actor == "operator"
        assert entry.details["reason"] == "manual"

    def test_waits_for_settle_before_verifying(self, fake_tunnel, store, no_wait):
        controller = RestartController(fake_tunnel, store, settle_seconds=3, stop_event=no_wait)

        controller.restart_now()

        no_wait.wait.assert_called_once_with(3)
