"""
Resource Events - In-process pub/sub for resource changes.

The API publishes an event for every author-facing write. The controller
subscribes to turn them into reconciliation triggers and the watch
endpoints stream them to clients as Server-Sent Events.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from models import ResourceRecord, utcnow

logger = logging.getLogger(__name__)

EventFilter = Callable[["ResourceEvent"], bool]


class EventType(Enum):
    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RECONCILED = "RECONCILED"


# Events that mean the record may need reconciling
TRIGGER_EVENTS = frozenset({EventType.CREATED, EventType.MODIFIED, EventType.DELETED})


@dataclass
class ResourceEvent:
    """A change to one resource record, with a snapshot of the record."""

    event_type: EventType
    resource_id: int
    namespace: str
    name: str
    kind: str
    resource_data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())

    @property
    def triggers_reconcile(self) -> bool:
        return self.event_type in TRIGGER_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "resource_id": self.resource_id,
            "namespace": self.namespace,
            "name": self.name,
            "kind": self.kind,
            "resource_data": self.resource_data,
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> str:
        """One Server-Sent Events message: event name plus JSON data line."""
        return f"event: {self.event_type.value}\ndata: {json.dumps(self.to_dict())}\n\n"

    @classmethod
    def from_resource(
        cls, event_type: EventType, record: ResourceRecord
    ) -> "ResourceEvent":
        return cls(
            event_type=event_type,
            resource_id=record.id,
            namespace=record.namespace,
            name=record.name,
            kind=record.kind,
            resource_data=record.to_dict(),
        )


class EventSubscription:
    """
    One subscriber's bounded inbox.

    Iterating yields events until the subscription is closed. Filtering
    happens when the bus offers an event, so rejected events never take
    up queue space.
    """

    def __init__(
        self,
        subscriber_id: str,
        maxsize: int,
        filter_fn: Optional[EventFilter] = None,
    ):
        self.subscriber_id = subscriber_id
        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._filter_fn = filter_fn

    def accepts(self, event: ResourceEvent) -> bool:
        return self._filter_fn is None or self._filter_fn(event)

    def offer(self, event: ResourceEvent) -> bool:
        """Queue an event without waiting; False if the inbox is full."""
        try:
            self._inbox.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        """End iteration for the consumer, dropping one event if full."""
        if self._inbox.full():
            self._inbox.get_nowait()
        self._inbox.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[ResourceEvent]:
        return self

    async def __anext__(self) -> ResourceEvent:
        event = await self._inbox.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """
    Fan-out of resource events to subscribers.

    Publishing never blocks. A subscriber whose inbox is full misses the
    event; the controller's periodic resync covers missed triggers.
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscriptions: Dict[str, EventSubscription] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ResourceEvent) -> None:
        async with self._lock:
            subscriptions = list(self._subscriptions.values())

        for subscription in subscriptions:
            if not subscription.accepts(event):
                continue
            if not subscription.offer(event):
                logger.warning(
                    f"Subscriber {subscription.subscriber_id} missed "
                    f"{event.event_type.value} of resource {event.resource_id}: "
                    f"inbox full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[EventFilter] = None,
        queue_size: Optional[int] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Register a subscriber.

        Args:
            filter_fn: Only events for which it returns True are delivered
            queue_size: Inbox size; defaults to the bus-wide size

        Returns:
            (subscriber_id, subscription)
        """
        subscription = EventSubscription(
            str(uuid.uuid4()), queue_size or self.queue_size, filter_fn
        )
        async with self._lock:
            self._subscriptions[subscription.subscriber_id] = subscription

        logger.debug(
            f"Subscribed {subscription.subscriber_id} "
            f"({self.subscriber_count()} subscribers)"
        )
        return subscription.subscriber_id, subscription

    async def unsubscribe(self, subscriber_id: str) -> None:
        async with self._lock:
            subscription = self._subscriptions.pop(subscriber_id, None)

        if subscription is not None:
            subscription.close()
            logger.debug(
                f"Unsubscribed {subscriber_id} ({self.subscriber_count()} subscribers)"
            )

    def subscriber_count(self) -> int:
        return len(self._subscriptions)
