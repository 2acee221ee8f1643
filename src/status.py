"""
Status Tracker - Condition and observed-attribute bookkeeping.

Collects every status change made during one reconciliation pass on a
working copy of the status block and persists it with a single write.
"""

import copy
import logging
from typing import Any, Callable, Dict, Optional

from models import Condition, ResourceRecord, StatusBlock, utcnow

logger = logging.getLogger(__name__)

# Condition types written by the reconciler
CONDITION_READY = "Ready"
CONDITION_DEGRADED = "Degraded"

# Condition reasons
REASON_SUCCESS = "ReconcileSuccess"
REASON_VALIDATION_FAILED = "ValidationFailed"
REASON_RECONCILE_FAILED = "ReconcileFailed"
REASON_CLEANUP_FAILED = "CleanupFailed"
REASON_PERMANENT_FAILURE = "PermanentFailure"


class StatusTracker:
    """
    Batches status writes for one resource during one pass.

    When the resource kind is not status-aware the tracker is inert:
    every setter is a no-op and flush() never writes.
    """

    def __init__(
        self,
        db: Any,
        record: ResourceRecord,
        supported: bool = True,
        clock: Callable[[], Any] = utcnow,
    ):
        self._db = db
        self._record = record
        self._clock = clock
        self.supported = supported
        self.status: Optional[StatusBlock] = (
            record.status.copy() if supported else None
        )
        self._baseline = self.status.to_dict() if supported else None

    @property
    def dirty(self) -> bool:
        """True if the working status differs from what was read."""
        if not self.supported:
            return False
        return self.status.to_dict() != self._baseline

    def set_condition(
        self, kind: str, value: str, reason: str = "", message: str = ""
    ) -> None:
        """
        Replace the condition of the given kind.

        The transition time only moves when the value changes.
        """
        if not self.supported:
            return

        existing = self.status.get_condition(kind)
        if existing is not None and existing.status == value:
            transition_time = existing.last_transition_time
        else:
            transition_time = self._clock()

        self.status.conditions[kind] = Condition(
            type=kind,
            status=value,
            reason=reason,
            message=message or "",
            last_transition_time=transition_time,
            observed_generation=self._record.generation,
        )

    def set_observed_attributes(self, attributes: Dict[str, Any]) -> None:
        if not self.supported:
            return
        self.status.observed_attributes = copy.deepcopy(attributes or {})

    def set_observed_generation(self, generation: int) -> None:
        if not self.supported:
            return
        self.status.observed_generation = generation

    async def flush(self) -> bool:
        """
        Persist the working status if anything changed.

        Returns:
            True if a write was issued.

        Raises:
            ConflictError: If the record changed since it was read.
        """
        if not self.dirty:
            return False

        new_version = await self._db.update_status(
            self._record.id,
            self.status,
            expected_version=self._record.resource_version,
        )
        self._record.resource_version = new_version
        self._record.status = self.status.copy()
        self._baseline = self.status.to_dict()
        logger.debug(
            f"Persisted status for {self._record.key} (version {new_version})"
        )
        return True
