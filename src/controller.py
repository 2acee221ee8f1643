"""
Controller - Dispatches reconciliation work to per-kind reconcilers.

Triggers (resource events, periodic resync, manual requests) land in a
work queue keyed by (kind, resource_id). A fixed pool of workers drains
the queue; the queue guarantees that a key is never processed by two
workers at once.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Deque, Dict, Hashable, List, Optional, Set, Tuple

from config import ControllerConfig
from events import EventBus, EventType, ResourceEvent
from models import utcnow
from reconciler import Reconciler
from requeue import ReconcileOutcome, RequeueAction
from status import REASON_SUCCESS

logger = logging.getLogger(__name__)

ResourceKey = Tuple[str, int]


class WorkQueue:
    """
    Rate-aware work queue with per-key deduplication.

    - A key added while already queued is coalesced into the queued entry.
    - A key added while being processed is queued again once, when the
      worker calls done().
    - add_after() keeps only the earliest pending timer per key.
    """

    def __init__(self):
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._timers: Dict[Hashable, asyncio.TimerHandle] = {}
        self._waiters: Deque[asyncio.Future] = deque()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return

        self._dirty.add(key)
        if key in self._processing:
            return

        self._queue.append(key)
        self._wake_one()

    def add_after(self, key: Hashable, delay: float) -> None:
        """Add a key once `delay` seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        pending = self.pending_delay(key)
        if pending is not None:
            if pending <= delay:
                return
            self._timers[key].cancel()

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def pending_delay(self, key: Hashable) -> Optional[float]:
        """Seconds until the key's timer fires, or None without a timer."""
        timer = self._timers.get(key)
        if timer is None:
            return None
        return max(timer.when() - asyncio.get_running_loop().time(), 0.0)

    async def get(self) -> Optional[Hashable]:
        """
        Wait for the next key and mark it as processing.

        Returns:
            The key, or None once the queue is shut down.
        """
        while not self._queue:
            if self._shutting_down:
                return None
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                # Pass a wakeup we may have consumed on to another waiter
                if self._queue:
                    self._wake_one()
                raise
            finally:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: Hashable) -> None:
        """Mark a key as processed, re-queueing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._wake_one()

    def shutdown(self) -> None:
        """Stop accepting keys and release every waiting get()."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._queue.clear()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    def _fire(self, key: Hashable) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def _wake_one(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return


class Controller:
    """
    Runs the reconciliation workers, the resync loop and the event watcher.

    Args:
        db: Resource store
        reconcilers: One Reconciler per kind, keyed by kind name
        config: Worker count and resync interval
        event_bus: Source of change triggers; RECONCILED events are
            published to it after successful passes
    """

    def __init__(
        self,
        db,
        reconcilers: Dict[str, Reconciler],
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.db = db
        self.reconcilers = reconcilers
        self.config = config or ControllerConfig()
        self.queue = WorkQueue()
        self.running = False
        self._event_bus = event_bus
        self._subscriber_id: Optional[str] = None
        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start workers, resync and event watching; returns after stop()."""
        logger.info(
            f"Starting controller for kinds: {', '.join(sorted(self.reconcilers))}"
        )
        self.running = True
        self._stop_event.clear()

        self._tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.config.max_concurrent_reconciles)
        ]
        self._tasks.append(asyncio.create_task(self._resync_loop()))

        if self._event_bus is not None:
            self._subscriber_id, subscription = await self._event_bus.subscribe(
                filter_fn=lambda e: e.triggers_reconcile and e.kind in self.reconcilers,
                queue_size=4096,
            )
            self._tasks.append(asyncio.create_task(self._watch_events(subscription)))

        try:
            await asyncio.gather(*self._tasks)
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop accepting work and let workers finish their current pass."""
        logger.info("Stopping controller")
        self.running = False
        self._stop_event.set()
        self.queue.shutdown()
        if self._event_bus is not None and self._subscriber_id is not None:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

    def trigger_reconciliation(self, kind: str, resource_id: int) -> None:
        """Queue a resource for reconciliation now."""
        if kind not in self.reconcilers:
            raise ValueError(f"No reconciler for kind '{kind}'")
        logger.info(f"Triggering reconciliation for {kind} resource {resource_id}")
        self.queue.add((kind, resource_id))

    async def resync(self) -> int:
        """
        Queue every resource of every handled kind.

        Resources still inside a backoff window are queued when the window
        ends, so resync never shortens a backoff.

        Returns:
            Number of resources queued
        """
        now = utcnow()
        count = 0
        for kind, reconciler in self.reconcilers.items():
            records = await self.db.list_resources(kind=kind)
            for record in records:
                status = record.status if reconciler.kind.status_enabled else None
                delay = reconciler.scheduler.remaining_delay(status, now)
                self.queue.add_after((kind, record.id), delay)
                count += 1
        logger.debug(f"Resync queued {count} resources")
        return count

    # Loops

    async def _worker(self, worker_id: int) -> None:
        while True:
            key = await self.queue.get()
            if key is None:
                logger.debug(f"Worker {worker_id} exiting")
                return
            try:
                await self._process(key)
            finally:
                self.queue.done(key)

    async def _resync_loop(self) -> None:
        while self.running:
            try:
                await self.resync()
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.config.resync_interval
                )
            except asyncio.TimeoutError:
                pass

    async def _watch_events(self, subscription) -> None:
        async for event in subscription:
            self.queue.add((event.kind, event.resource_id))

    # Processing

    async def _process(self, key: ResourceKey) -> None:
        kind, resource_id = key
        reconciler = self.reconcilers.get(kind)
        if reconciler is None:
            logger.warning(f"No reconciler for kind '{kind}', dropping {key}")
            return

        start_time = time.monotonic()
        try:
            outcome = await reconciler.reconcile(resource_id)
        except Exception as e:
            # Storage failures cannot be recorded on the resource itself
            logger.error(
                f"Error reconciling {kind} resource {resource_id}: {e}",
                exc_info=True,
            )
            self.queue.add_after(key, reconciler.scheduler.base_delay)
            return
        duration_seconds = time.monotonic() - start_time

        self._schedule(key, outcome)

        if outcome.generation is None:
            return
        await self._record(resource_id, outcome, duration_seconds)
        if outcome.reason == REASON_SUCCESS:
            await self._publish_reconciled(resource_id)

    def _schedule(self, key: ResourceKey, outcome: ReconcileOutcome) -> None:
        if outcome.action == RequeueAction.REQUEUE_IMMEDIATELY:
            self.queue.add(key)
        elif outcome.action == RequeueAction.REQUEUE_AFTER:
            self.queue.add_after(key, outcome.delay)

    async def _record(
        self, resource_id: int, outcome: ReconcileOutcome, duration_seconds: float
    ) -> None:
        try:
            await self.db.record_reconciliation(
                resource_id=resource_id,
                generation=outcome.generation,
                success=not outcome.failed,
                action=outcome.action.value,
                reason=outcome.reason,
                error_message=outcome.error,
                requeue_after=(
                    outcome.delay
                    if outcome.action == RequeueAction.REQUEUE_AFTER
                    else None
                ),
                duration_seconds=duration_seconds,
            )
        except Exception as e:
            logger.error(
                f"Failed to record reconciliation of resource {resource_id}: {e}"
            )

    async def _publish_reconciled(self, resource_id: int) -> None:
        if self._event_bus is None:
            return
        try:
            record = await self.db.get_resource(resource_id)
        except Exception as e:
            logger.error(f"Failed to load resource {resource_id}: {e}")
            return
        if record is not None:
            await self._event_bus.publish(
                ResourceEvent.from_resource(EventType.RECONCILED, record)
            )
