"""
Operation Runs (Idempotency Store)

Tracks the lifecycle of one logical attempt at a paid operation, keyed by the
caller's request_id, so retries get the original outcome instead of running
the operation again.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import json
import structlog

from core.errors import PersistenceConflict
from core.money import Amount, usd_to_micros
from persistence.database import Database, get_database
from persistence.models import OperationRunRecord, RunStatus, to_iso
from persistence.repository import OperationRunRepository

logger = structlog.get_logger()

# Longest string parameter kept on a run record
MAX_PARAM_LENGTH = 10000


class RunClaimState(Enum):
    """What create_or_get found."""
    NEW = "new"  # caller owns the attempt and must run it
    SUCCEEDED = "succeeded"  # cached output is the answer
    FAILED = "failed"  # cached error is the answer
    IN_FLIGHT = "in_flight"  # another caller is running it now
    CONFLICT = "conflict"  # request_id belongs to another user


@dataclass
class RunClaim:
    """Result of create_or_get."""
    run: OperationRunRecord
    state: RunClaimState

    @property
    def is_existing(self) -> bool:
        return self.state != RunClaimState.NEW

    @classmethod
    def for_existing(cls, run: OperationRunRecord, user_id: Optional[str] = None) -> "RunClaim":
        if user_id is not None and run.user_id != user_id:
            return cls(run, RunClaimState.CONFLICT)
        if run.status == RunStatus.SUCCEEDED:
            return cls(run, RunClaimState.SUCCEEDED)
        if run.status == RunStatus.FAILED:
            return cls(run, RunClaimState.FAILED)
        return cls(run, RunClaimState.IN_FLIGHT)


def _sanitize_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """JSON-safe copy of the params with long strings truncated."""
    if params is None:
        return None
    safe = json.loads(json.dumps(params, default=str))
    return {
        key: value[:MAX_PARAM_LENGTH] if isinstance(value, str) else value
        for key, value in safe.items()
    }


class OperationRunStore:
    """
    Idempotency store for paid operations.

    The UNIQUE constraint on operation_runs.request_id is the only
    coordination between instances: exactly one caller inserts the
    processing row, every other caller reads it back.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        runs: Optional[OperationRunRepository] = None,
    ):
        self.db = db or get_database()
        self.runs = runs or OperationRunRepository(self.db)

    def get(self, request_id: str) -> Optional[OperationRunRecord]:
        """Read-only lookup by request_id."""
        return self.runs.get_by_request_id(request_id)

    def create_or_get(
        self,
        user_id: str,
        request_id: str,
        operation_type: str,
        estimated_cost: Amount = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RunClaim:
        """
        Claim a request_id for execution.

        Returns a NEW claim only to the caller whose insert won. Everyone else
        gets the existing run: SUCCEEDED or FAILED with the cached outcome, or
        IN_FLIGHT while the winner is still running. A run owned by another
        user is reported as CONFLICT and its outcome is not exposed.
        """
        existing = self.runs.get_by_request_id(request_id)
        if existing is not None:
            return self._existing(existing, user_id)

        record = OperationRunRecord(
            request_id=request_id,
            user_id=user_id,
            operation_type=operation_type,
            estimated_cost_micros=usd_to_micros(estimated_cost),
            input_params=_sanitize_params(metadata),
        )
        try:
            self.runs.insert(record)
        except PersistenceConflict:
            existing = self.runs.get_by_request_id(request_id)
            if existing is None:
                raise
            return self._existing(existing, user_id)

        logger.info(
            "operation_run_created",
            run_id=record.id,
            request_id=request_id,
            user_id=user_id,
            operation_type=operation_type,
        )
        return RunClaim(record, RunClaimState.NEW)

    def mark_succeeded(self, request_id: str, output_result: Any, duration_ms: Optional[int] = None) -> bool:
        """Terminal transition to succeeded. No-op unless the run is processing."""
        changed = self.runs.finish(
            request_id,
            RunStatus.SUCCEEDED,
            output_result=output_result,
            duration_ms=duration_ms,
        )
        self._log_transition(request_id, RunStatus.SUCCEEDED, changed, duration_ms)
        return changed

    def mark_failed(self, request_id: str, error_message: str, duration_ms: Optional[int] = None) -> bool:
        """Terminal transition to failed. No-op unless the run is processing."""
        changed = self.runs.finish(
            request_id,
            RunStatus.FAILED,
            error_message=error_message,
            duration_ms=duration_ms,
        )
        self._log_transition(request_id, RunStatus.FAILED, changed, duration_ms)
        return changed

    def find_stale(self, older_than: timedelta, limit: int = 100) -> List[OperationRunRecord]:
        """Runs still processing after older_than."""
        cutoff = datetime.now(timezone.utc) - older_than
        return self.runs.find_stale(to_iso(cutoff), limit)

    def _existing(self, run: OperationRunRecord, user_id: str) -> RunClaim:
        claim = RunClaim.for_existing(run, user_id)
        logger.info(
            "operation_run_exists",
            request_id=run.request_id,
            user_id=user_id,
            status=run.status.value,
            claim=claim.state.value,
        )
        return claim

    def _log_transition(
        self,
        request_id: str,
        status: RunStatus,
        changed: bool,
        duration_ms: Optional[int],
    ) -> None:
        if changed:
            logger.info("operation_run_finished", request_id=request_id, status=status.value, duration_ms=duration_ms)
        else:
            logger.warning("operation_run_already_terminal", request_id=request_id, attempted=status.value)
