"""
Webhook Event Gate

At-most-once processing lock for provider events delivered at-least-once.

Flow per delivery:
1. check_and_lock(event_id) - skip if completed or already processing
2. handle the event
3. mark_completed(event_id), or mark_failed(event_id, error) so the
   provider's next redelivery can retry it
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import structlog

from core.errors import PersistenceConflict
from persistence.database import Database, get_database
from persistence.models import WebhookEventRecord, WebhookStatus, to_iso
from persistence.repository import WebhookEventRepository

logger = structlog.get_logger()

# Stored error text is capped
MAX_ERROR_LENGTH = 1000


@dataclass
class LockResult:
    """Outcome of check_and_lock."""
    should_process: bool
    record: Optional[WebhookEventRecord]
    reason: str


class WebhookEventGate:
    """Dedup lock keyed by the provider's event id."""

    def __init__(
        self,
        db: Optional[Database] = None,
        events: Optional[WebhookEventRepository] = None,
    ):
        self.db = db or get_database()
        self.events = events or WebhookEventRepository(self.db)

    def check_and_lock(self, event_id: str, event_type: str) -> LockResult:
        """
        Try to take the processing lock for an event.

        Returns should_process=True for a new event or a retry of a failed
        one. Completed and in-flight events return False; so does losing an
        insert or reclaim race to a concurrent delivery.
        """
        existing = self.events.get(event_id)

        if existing is not None:
            if existing.status == WebhookStatus.COMPLETED:
                logger.info("webhook_already_completed", event_id=event_id, event_type=event_type)
                return LockResult(False, existing, "already_completed")

            if existing.status == WebhookStatus.PROCESSING:
                logger.info("webhook_already_processing", event_id=event_id, event_type=event_type)
                return LockResult(False, existing, "already_processing")

            if self.events.reclaim_failed(event_id):
                record = self.events.get(event_id)
                logger.info(
                    "webhook_retrying_failed",
                    event_id=event_id,
                    event_type=event_type,
                    attempts=record.attempts if record else None,
                )
                return LockResult(True, record, "retry_failed")

            # Another delivery reclaimed it between our read and update
            return LockResult(False, self.events.get(event_id), "already_processing")

        try:
            record = self.events.insert(WebhookEventRecord(event_id=event_id, event_type=event_type))
        except PersistenceConflict:
            logger.info("webhook_insert_race", event_id=event_id, event_type=event_type)
            return LockResult(False, self.events.get(event_id), "already_processing")

        logger.info("webhook_locked", event_id=event_id, event_type=event_type)
        return LockResult(True, record, "new_event")

    def mark_completed(self, event_id: str) -> bool:
        """Permanently terminal."""
        changed = self.events.finish(event_id, WebhookStatus.COMPLETED)
        if changed:
            logger.info("webhook_completed", event_id=event_id)
        else:
            logger.warning("webhook_not_processing", event_id=event_id, attempted="completed")
        return changed

    def mark_failed(self, event_id: str, error: str) -> bool:
        """Retryable: the next delivery of this event may process it again."""
        changed = self.events.finish(event_id, WebhookStatus.FAILED, error=error[:MAX_ERROR_LENGTH])
        if changed:
            logger.error("webhook_failed", event_id=event_id, error=error[:200])
        else:
            logger.warning("webhook_not_processing", event_id=event_id, attempted="failed")
        return changed

    def get_status(self, event_id: str) -> Optional[WebhookStatus]:
        record = self.events.get(event_id)
        return record.status if record else None

    def cleanup(self, older_than_days: int = 30) -> int:
        """Delete completed events older than the retention window."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        deleted = self.events.delete_completed_before(to_iso(cutoff))
        logger.info("webhook_events_cleaned", deleted=deleted, older_than_days=older_than_days)
        return deleted
