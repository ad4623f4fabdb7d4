"""
Tests for the Webhook Event Gate
"""

from concurrent.futures import ThreadPoolExecutor

from billing.webhook_gate import WebhookEventGate, MAX_ERROR_LENGTH
from persistence.models import WebhookStatus


class TestCheckAndLock:
    """Test at-most-once locking per event id."""

    def test_new_event_locks(self, db):
        """A first delivery takes the lock."""
        gate = WebhookEventGate(db)

        lock = gate.check_and_lock("evt_1", "invoice.paid")

        assert lock.should_process is True
        assert lock.reason == "new_event"
        assert gate.get_status("evt_1") == WebhookStatus.PROCESSING

    def test_completed_event_is_skipped(self, db):
        """Redelivery after completion is a cheap no-op."""
        gate = WebhookEventGate(db)
        gate.check_and_lock("evt_1", "invoice.paid")
        gate.mark_completed("evt_1")

        lock = gate.check_and_lock("evt_1", "invoice.paid")

        assert lock.should_process is False
        assert lock.reason == "already_completed"

    def test_processing_event_is_skipped(self, db):
        """A concurrent delivery of an in-flight event does not process."""
        gate = WebhookEventGate(db)
        gate.check_and_lock("evt_1", "invoice.paid")

        lock = gate.check_and_lock("evt_1", "invoice.paid")

        assert lock.should_process is False
        assert lock.reason == "already_processing"

    def test_failed_event_is_retried(self, db):
        """A failed event is reclaimed and its attempts counted."""
        gate = WebhookEventGate(db)
        gate.check_and_lock("evt_1", "invoice.paid")
        gate.mark_failed("evt_1", "boom")

        lock = gate.check_and_lock("evt_1", "invoice.paid")

        assert lock.should_process is True
        assert lock.reason == "retry_failed"
        assert lock.record.attempts == 2
        assert lock.record.error is None

    def test_concurrent_deliveries_lock_once(self, db):
        """Simultaneous deliveries of one event: exactly one proceeds."""
        gate = WebhookEventGate(db)

        with ThreadPoolExecutor(max_workers=8) as pool:
            locks = list(pool.map(lambda _: gate.check_and_lock("evt_race", "invoice.paid"), range(8)))

        assert sum(1 for lock in locks if lock.should_process) == 1


class TestTransitions:
    """Test completion, failure and retention."""

    def test_error_is_truncated(self, db):
        """Stored errors are capped."""
        gate = WebhookEventGate(db)
        gate.check_and_lock("evt_1", "invoice.paid")
        gate.mark_failed("evt_1", "e" * (MAX_ERROR_LENGTH + 500))

        record = gate.events.get("evt_1")
        assert record.status == WebhookStatus.FAILED
        assert len(record.error) == MAX_ERROR_LENGTH

    def test_completed_is_terminal(self, db):
        """A completed event cannot be marked failed."""
        gate = WebhookEventGate(db)
        gate.check_and_lock("evt_1", "invoice.paid")
        gate.mark_completed("evt_1")

        assert gate.mark_failed("evt_1", "late") is False
        assert gate.get_status("evt_1") == WebhookStatus.COMPLETED

    def test_cleanup_removes_only_completed(self, db):
        """Retention deletes completed events and keeps failed ones."""
        gate = WebhookEventGate(db)
        gate.check_and_lock("evt_done", "invoice.paid")
        gate.mark_completed("evt_done")
        gate.check_and_lock("evt_failed", "invoice.paid")
        gate.mark_failed("evt_failed", "x")

        assert gate.cleanup(older_than_days=30) == 0
        assert gate.cleanup(older_than_days=-1) == 1
        assert gate.get_status("evt_done") is None
        assert gate.get_status("evt_failed") == WebhookStatus.FAILED

    def test_unknown_event_status(self, db):
        """Unknown events have no status."""
        assert WebhookEventGate(db).get_status("nope") is None
