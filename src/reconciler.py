"""
Reconciler - Drives one resource kind toward its declared state.

Each pass reads the current record and decides what to do from that
snapshot and the controller-owned status block alone:

- marked for deletion: clean up every known item, then discharge the
  finalizer so storage can purge the record
- otherwise: register the finalizer, validate, converge the target
  environment item by item, then record the outcome in the status block

A pass makes at most one status write. Any storage conflict aborts the pass
and asks for an immediate retry against a fresh snapshot.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, Optional

from adapters.base import AdapterContext, AdapterError, TargetAdapter
from db import ConflictError
from declaration_cache import DeclarationCache
from finalizers import FinalizerManager
from models import ConditionStatus, ResourceKind, ResourceRecord, utcnow
from requeue import ReconcileOutcome, RequeueScheduler
from status import (
    CONDITION_DEGRADED,
    CONDITION_READY,
    REASON_CLEANUP_FAILED,
    REASON_PERMANENT_FAILURE,
    REASON_RECONCILE_FAILED,
    REASON_SUCCESS,
    REASON_VALIDATION_FAILED,
    StatusTracker,
)
from validation import Validator

logger = logging.getLogger(__name__)

TRUE = ConditionStatus.TRUE.value
FALSE = ConditionStatus.FALSE.value


class Reconciler:
    """
    Reconciles resources of a single kind through one target adapter.

    Args:
        db: Resource store
        kind: Kind configuration (finalizer token, status capability, ...)
        adapter: Initialized adapter for the kind's target environment
        scheduler: Backoff policy for failed passes
        validator: Defaults to Validator.for_kind(kind)
        reconcile_timeout: Deadline for all adapter work in one pass, in
            seconds; 0 disables it
        drift_interval: Requeue delay after a successful pass, in seconds;
            0 means wait for the next trigger
        clock: Source of timestamps, injectable for tests
    """

    def __init__(
        self,
        db: Any,
        kind: ResourceKind,
        adapter: TargetAdapter,
        scheduler: RequeueScheduler,
        validator: Optional[Validator] = None,
        reconcile_timeout: float = 300.0,
        drift_interval: float = 0.0,
        clock: Callable[[], Any] = utcnow,
    ):
        self.db = db
        self.kind = kind
        self.adapter = adapter
        self.scheduler = scheduler
        self.validator = validator or Validator.for_kind(kind)
        self.finalizers = FinalizerManager(db, kind.finalizer)
        self.reconcile_timeout = reconcile_timeout
        self.drift_interval = drift_interval
        self._clock = clock

    async def reconcile(self, resource_id: int) -> ReconcileOutcome:
        """
        Run one reconciliation pass for a resource.

        Storage errors other than conflicts propagate to the caller.
        """
        record = await self.db.get_resource(resource_id)
        if record is None:
            logger.debug(f"Resource {resource_id} no longer exists")
            return ReconcileOutcome.no_requeue(reason="NotFound")

        if record.kind != self.kind.name:
            logger.warning(
                f"Resource {record.key} is not of kind {self.kind.name}, skipping"
            )
            return ReconcileOutcome.no_requeue(reason="KindMismatch")

        tracker = StatusTracker(
            self.db,
            record,
            supported=self.kind.status_enabled,
            clock=self._clock,
        )

        generation = record.generation
        try:
            if record.is_deleting:
                outcome = await self._reconcile_deletion(record, tracker)
            else:
                outcome = await self._reconcile_desired(record, tracker)
        except ConflictError as e:
            logger.info(f"Conflict while reconciling {record.key}: {e.message}")
            outcome = ReconcileOutcome.requeue_immediately(reason="Conflict")

        return replace(outcome, generation=generation)

    # Branches

    async def _reconcile_deletion(
        self, record: ResourceRecord, tracker: StatusTracker
    ) -> ReconcileOutcome:
        if not self.finalizers.is_registered(record):
            logger.debug(f"No cleanup owed for {record.key}")
            return ReconcileOutcome.no_requeue(reason="NoFinalizer")

        cache = DeclarationCache(tracker)
        ctx = self._context(record)
        try:
            await self._with_deadline(self._cleanup(ctx, cache.get(), record.spec))
        except Exception as e:
            return await self._fail(record, tracker, e, REASON_CLEANUP_FAILED)

        await self.finalizers.discharge(record)
        logger.info(f"Finalized {record.key}")
        return ReconcileOutcome.no_requeue(reason="Finalized")

    async def _reconcile_desired(
        self, record: ResourceRecord, tracker: StatusTracker
    ) -> ReconcileOutcome:
        await self.finalizers.register(record)

        cache = DeclarationCache(tracker)
        result = self.validator.validate(record.spec, cache.get(), deleting=False)
        if not result.is_valid:
            message = result.error_message or "Validation failed"
            logger.warning(f"Rejected spec of {record.key}: {message}")
            tracker.set_condition(
                CONDITION_READY, FALSE, REASON_VALIDATION_FAILED, message
            )
            tracker.set_condition(
                CONDITION_DEGRADED, TRUE, REASON_VALIDATION_FAILED, message
            )
            await tracker.flush()
            return ReconcileOutcome.no_requeue(
                reason=REASON_VALIDATION_FAILED, error=message
            )

        ctx = self._context(record)
        try:
            attributes = await self._with_deadline(
                self._converge(ctx, cache, record.spec)
            )
        except Exception as e:
            return await self._fail(record, tracker, e, REASON_RECONCILE_FAILED)

        if not cache.unchanged(record.spec):
            cache.set(record.spec, self._clock())
        tracker.set_observed_attributes(attributes)
        tracker.set_observed_generation(record.generation)
        self.scheduler.on_success(tracker.status)
        tracker.set_condition(
            CONDITION_READY,
            TRUE,
            REASON_SUCCESS,
            f"Generation {record.generation} applied",
        )
        tracker.set_condition(CONDITION_DEGRADED, FALSE, REASON_SUCCESS)
        if await tracker.flush():
            logger.info(f"Reconciled {record.key} (generation {record.generation})")

        if self.drift_interval > 0:
            return ReconcileOutcome.requeue_after(
                self.drift_interval, reason=REASON_SUCCESS
            )
        return ReconcileOutcome.no_requeue(reason=REASON_SUCCESS)

    # Adapter work

    async def _converge(
        self,
        ctx: AdapterContext,
        cache: DeclarationCache,
        desired: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Apply the difference from the last applied spec, then observe."""
        diff = cache.diff(desired)

        if diff.is_empty:
            if await self.adapter.detect_drift(ctx, desired):
                logger.info(
                    f"Drift on {ctx.kind}/{ctx.namespace}/{ctx.name}, re-applying"
                )
                for key in sorted(desired):
                    await self.adapter.update(ctx, key, desired[key], desired[key])
        else:
            logger.info(
                f"Converging {ctx.kind}/{ctx.namespace}/{ctx.name}: "
                f"{diff.summary()}"
            )
            for key, value in diff.added.items():
                await self.adapter.create(ctx, key, value)
            for key, (previous, value) in diff.changed.items():
                await self.adapter.update(ctx, key, previous, value)
            for key, previous in diff.removed.items():
                await self.adapter.delete(ctx, key, previous)

        return await self.adapter.observe(ctx) or {}

    async def _cleanup(
        self,
        ctx: AdapterContext,
        cached: Optional[Dict[str, Any]],
        desired: Dict[str, Any],
    ) -> None:
        """Delete every item that was applied or is still declared."""
        items = dict(desired)
        items.update(cached or {})
        for key in sorted(items):
            await self.adapter.delete(ctx, key, items[key])

    async def _with_deadline(self, coro: Awaitable[Any]) -> Any:
        if self.reconcile_timeout and self.reconcile_timeout > 0:
            return await asyncio.wait_for(coro, timeout=self.reconcile_timeout)
        return await coro

    # Outcome helpers

    async def _fail(
        self,
        record: ResourceRecord,
        tracker: StatusTracker,
        error: Exception,
        reason: str,
    ) -> ReconcileOutcome:
        """Record a failed pass and compute the retry delay."""
        permanent = isinstance(error, AdapterError) and error.permanent
        if permanent:
            reason = REASON_PERMANENT_FAILURE

        if isinstance(error, asyncio.TimeoutError):
            message = f"Reconciliation exceeded {self.reconcile_timeout}s deadline"
            logger.warning(f"{message} for {record.key}")
        elif isinstance(error, AdapterError):
            message = error.message
            logger.warning(f"{reason} for {record.key}: {message}")
        else:
            message = str(error) or error.__class__.__name__
            logger.error(
                f"Unexpected error reconciling {record.key}: {message}",
                exc_info=True,
            )

        delay = self.scheduler.on_failure(
            tracker.status, self._clock(), permanent=permanent
        )
        tracker.set_condition(CONDITION_READY, FALSE, reason, message)
        tracker.set_condition(CONDITION_DEGRADED, TRUE, reason, message)
        await tracker.flush()

        return ReconcileOutcome.requeue_after(delay, reason=reason, error=message)

    def _context(self, record: ResourceRecord) -> AdapterContext:
        return AdapterContext(
            resource_id=record.id,
            namespace=record.namespace,
            name=record.name,
            kind=record.kind,
            generation=record.generation,
            spec=record.spec,
        )
