"""Unit tests for controller.py - work queue and dispatch."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from adapters.base import AdapterError, PermanentAdapterError
from config import ControllerConfig
from controller import Controller, WorkQueue
from events import EventBus, EventType, ResourceEvent
from models import utcnow
from reconciler import Reconciler
from requeue import RequeueScheduler
from status import REASON_RECONCILE_FAILED, REASON_SUCCESS

SPEC = {"site": {"domain": "example.com"}}
KEY = ("Website", 1)


async def wait_until(predicate, timeout=1.0):
    """Poll until predicate() is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
class TestWorkQueue:
    """Tests for WorkQueue."""

    async def test_add_coalesces_queued_key(self):
        queue = WorkQueue()
        queue.add(KEY)
        queue.add(KEY)
        assert len(queue) == 1

    async def test_key_added_while_processing_is_requeued_once(self):
        queue = WorkQueue()
        queue.add(KEY)
        key = await queue.get()

        queue.add(KEY)
        queue.add(KEY)
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert await queue.get() == KEY

    async def test_done_without_readd_does_not_requeue(self):
        queue = WorkQueue()
        queue.add(KEY)
        queue.done(await queue.get())
        assert len(queue) == 0

    async def test_add_after_keeps_earliest_timer(self):
        queue = WorkQueue()
        queue.add_after(KEY, 10)
        queue.add_after(KEY, 1)
        assert queue.pending_delay(KEY) <= 1

        queue.add_after(KEY, 5)
        assert queue.pending_delay(KEY) <= 1
        queue.shutdown()

    async def test_add_after_fires(self):
        queue = WorkQueue()
        queue.add_after(KEY, 0.01)
        assert len(queue) == 0

        key = await asyncio.wait_for(queue.get(), timeout=1)

        assert key == KEY
        assert queue.pending_delay(KEY) is None

    async def test_add_after_zero_adds_now(self):
        queue = WorkQueue()
        queue.add_after(KEY, 0)
        assert len(queue) == 1

    async def test_shutdown_releases_waiters(self):
        queue = WorkQueue()
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.shutdown()

        assert await asyncio.wait_for(waiter, timeout=1) is None
        queue.add(KEY)
        assert len(queue) == 0
        assert queue.shutting_down

    async def test_wakes_waiting_getter(self):
        queue = WorkQueue()
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.add(KEY)

        assert await asyncio.wait_for(waiter, timeout=1) == KEY


@pytest.mark.asyncio
class TestController:
    """Tests for Controller dispatch."""

    @pytest.fixture
    def scheduler(self):
        return RequeueScheduler(base_delay=1, max_delay=60)

    @pytest.fixture
    def reconciler(self, store, adapter, website_kind, scheduler):
        return Reconciler(store, website_kind, adapter, scheduler)

    @pytest.fixture
    def event_bus(self):
        bus = MagicMock()
        bus.publish = AsyncMock()
        return bus

    @pytest.fixture
    def controller(self, store, reconciler, event_bus):
        return Controller(
            store,
            {"Website": reconciler},
            config=ControllerConfig(resync_interval=3600, max_concurrent_reconciles=2),
            event_bus=event_bus,
        )

    async def create(self, store, name="site"):
        return await store.create_resource("default", name, "Website", dict(SPEC))

    async def test_trigger_reconciliation(self, controller):
        controller.trigger_reconciliation("Website", 7)
        assert len(controller.queue) == 1

    async def test_trigger_unknown_kind(self, controller):
        with pytest.raises(ValueError):
            controller.trigger_reconciliation("Mailbox", 7)

    async def test_success_records_history_and_publishes(
        self, controller, store, adapter, event_bus
    ):
        resource_id = await self.create(store)

        await controller._process(("Website", resource_id))

        assert adapter.items() == SPEC
        assert len(controller.queue) == 0
        assert controller.queue.pending_delay(("Website", resource_id)) is None

        [entry] = store.history
        assert entry["resource_id"] == resource_id
        assert entry["success"] is True
        assert entry["reason"] == REASON_SUCCESS
        assert entry["generation"] == 1
        assert entry["requeue_after"] is None

        event_bus.publish.assert_awaited_once()
        event = event_bus.publish.call_args[0][0]
        assert event.event_type == EventType.RECONCILED
        assert event.resource_id == resource_id

    async def test_failure_schedules_backoff(
        self, controller, store, adapter, event_bus
    ):
        resource_id = await self.create(store)
        adapter.errors["create"] = AdapterError("target unavailable")

        await controller._process(("Website", resource_id))

        delay = controller.queue.pending_delay(("Website", resource_id))
        assert 0 < delay <= 1
        [entry] = store.history
        assert entry["success"] is False
        assert entry["reason"] == REASON_RECONCILE_FAILED
        assert entry["requeue_after"] == 1
        event_bus.publish.assert_not_awaited()
        controller.queue.shutdown()

    async def test_missing_resource_records_nothing(self, controller, store):
        await controller._process(("Website", 404))
        assert store.history == []

    async def test_unknown_kind_dropped(self, controller, store):
        await controller._process(("Mailbox", 1))
        assert store.history == []
        assert len(controller.queue) == 0

    async def test_unexpected_error_retries_at_base_delay(self, store):
        reconciler = MagicMock()
        reconciler.reconcile = AsyncMock(side_effect=RuntimeError("db down"))
        reconciler.scheduler = RequeueScheduler(base_delay=2, max_delay=60)
        controller = Controller(store, {"Website": reconciler})

        await controller._process(KEY)

        assert 1 < controller.queue.pending_delay(KEY) <= 2
        assert store.history == []
        controller.queue.shutdown()

    async def test_resync_respects_backoff(self, controller, store):
        ready_id = await self.create(store, "ready")
        backing_off_id = await self.create(store, "backing-off")
        status = store.records[backing_off_id].status
        status.consecutive_failures = 3
        status.last_failure_time = utcnow() - timedelta(seconds=1)

        count = await controller.resync()

        assert count == 2
        assert len(controller.queue) == 1
        assert await controller.queue.get() == ("Website", ready_id)
        assert 2 < controller.queue.pending_delay(("Website", backing_off_id)) <= 3
        controller.queue.shutdown()

    async def test_resync_waits_out_permanent_failure(
        self, controller, store, adapter
    ):
        resource_id = await self.create(store)
        adapter.errors["create"] = PermanentAdapterError("HTTP 422")
        key = ("Website", resource_id)

        await controller._process(key)
        assert 59 < controller.queue.pending_delay(key) <= 60

        controller.queue._timers.pop(key).cancel()
        store.records[resource_id].status.last_failure_time -= timedelta(seconds=10)
        await controller.resync()

        assert len(controller.queue) == 0
        assert 49 < controller.queue.pending_delay(key) <= 50
        controller.queue.shutdown()

    async def test_events_trigger_reconciliation(self, store, reconciler, adapter):
        bus = EventBus()
        controller = Controller(
            store,
            {"Website": reconciler},
            config=ControllerConfig(resync_interval=3600, max_concurrent_reconciles=1),
            event_bus=bus,
        )
        received = []
        _, watcher = await bus.subscribe()

        async def collect():
            async for event in watcher:
                received.append(event.event_type)

        collector = asyncio.create_task(collect())
        task = asyncio.create_task(controller.start())
        await wait_until(lambda: bus.subscriber_count() == 2)

        resource_id = await self.create(store)
        record = await store.get_resource(resource_id)
        await bus.publish(ResourceEvent.from_resource(EventType.CREATED, record))

        await wait_until(lambda: EventType.RECONCILED in received)
        assert adapter.items() == SPEC

        await controller.stop()
        await asyncio.wait_for(task, timeout=1)
        collector.cancel()

        assert received == [EventType.CREATED, EventType.RECONCILED]
        assert store.history[0]["success"] is True
