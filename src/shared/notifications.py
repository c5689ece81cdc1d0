"""
In-Process Notification Channel for Hearth

Typed-topic publish/subscribe used by the home control core to tell UI
consumers about state changes (device-updated, door-locked, ...).

Delivery is fire-and-forget: a handler that is not subscribed when a
notification is published never sees it, and a failing handler is logged
without affecting the publisher or the other handlers.

Usage:
    channel = NotificationChannel()

    async def on_device_updated(notification: Notification):
        await websocket.send_json(notification.to_dict())
    channel.subscribe(Topic.DEVICE_UPDATED, on_device_updated)

    await channel.publish(Topic.DEVICE_UPDATED, {'room_id': 'living'})
    ...
    await channel.close()  # waits for handlers still running
"""

import asyncio
import inspect
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class Topic(Enum):
    """Notification topics"""
    # Appliance state
    DEVICE_UPDATED = "device-updated"

    # Security
    DOOR_LOCKED = "door-locked"
    DOOR_UNLOCKED = "door-unlocked"
    SECURITY_MODE_CHANGED = "security-mode-changed"
    AUTO_LOCK_ARMED = "auto-lock-armed"
    AUTO_LOCK_CANCELLED = "auto-lock-cancelled"
    AUTO_LOCK_COMPLETED = "auto-lock-completed"

    # Diagnostics
    SYSTEMS_CHECK_REQUESTED = "systems-check-requested"

    # Backend-origin change of a canonical device record
    CANONICAL_CHANGED = "canonical-changed"


@dataclass
class Notification:
    """A single published notification"""
    topic: Topic
    payload: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'topic': self.topic.value,
            'payload': self.payload,
            'timestamp': self.timestamp,
            'timestamp_iso': datetime.fromtimestamp(self.timestamp).isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


Handler = Callable[[Notification], Any]


class NotificationChannel:
    """
    Same-process publish/subscribe keyed by topic.

    Handlers may be plain functions or coroutine functions. Plain handlers
    run inline; coroutine handlers are scheduled as tasks and publish()
    returns without waiting for them, so a handler may call back into the
    publisher. drain() waits for the scheduled handlers to finish.
    """

    def __init__(self):
        self._subscribers: Dict[Topic, List[Handler]] = {}
        self._published: Dict[Topic, int] = {}
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, topic: Topic, handler: Handler):
        """Subscribe a handler to one topic."""
        handlers = self._subscribers.setdefault(topic, [])
        if handler not in handlers:
            handlers.append(handler)
        logger.debug("notification_subscriber_added", topic=topic.value, total=len(handlers))

    def unsubscribe(self, topic: Topic, handler: Handler):
        """Unsubscribe a handler; unknown handlers are ignored."""
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)
        logger.debug("notification_subscriber_removed", topic=topic.value, total=len(handlers))

    def get_subscriber_count(self, topic: Optional[Topic] = None) -> int:
        """Number of handlers on a topic, or across all topics."""
        if topic is not None:
            return len(self._subscribers.get(topic, []))
        return sum(len(handlers) for handlers in self._subscribers.values())

    async def publish(self, topic: Topic, payload: Optional[Dict[str, Any]] = None) -> Notification:
        """Publish a notification to the topic's current subscribers."""
        notification = Notification(topic=topic, payload=dict(payload or {}))
        self._published[topic] = self._published.get(topic, 0) + 1

        logger.debug("notification_published", topic=topic.value, payload=notification.payload)
        self._deliver(notification)
        return notification

    def _deliver(self, notification: Notification):
        # Snapshot so handlers may (un)subscribe while being notified
        handlers = list(self._subscribers.get(notification.topic, []))

        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    task = asyncio.create_task(handler(notification))
                    self._pending.add(task)
                    task.add_done_callback(self._handler_done(notification.topic))
                else:
                    handler(notification)
            except Exception as e:
                logger.warning("notification_handler_error", topic=notification.topic.value, error=str(e))

    def _handler_done(self, topic: Topic) -> Callable[[asyncio.Task], None]:
        def done(task: asyncio.Task):
            self._pending.discard(task)
            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                logger.warning("notification_handler_error", topic=topic.value, error=str(error))
        return done

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait until every scheduled handler, including ones they publish to, has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self):
        await self.drain()
        logger.debug("notification_channel_closed", published=sum(self._published.values()))

    def get_stats(self) -> Dict[str, Any]:
        """Get channel statistics."""
        return {
            'subscriber_count': self.get_subscriber_count(),
            'pending_handlers': self.pending_count,
            'published': {topic.value: count for topic, count in self._published.items()},
        }


# =============================================================================
# Convenience Functions for Common Notifications
# =============================================================================

async def publish_device_updated(
    channel: NotificationChannel,
    room_id: str,
    appliance_ids: List[str],
    source: str = "dispatch"
):
    """Publish a device-updated notification for one room."""
    await channel.publish(Topic.DEVICE_UPDATED, {
        'room_id': room_id,
        'appliance_ids': appliance_ids,
        'source': source,
    })


async def publish_canonical_changed(
    channel: NotificationChannel,
    device_id: str,
    room_id: Optional[str] = None
):
    """Publish a backend-origin canonical device change."""
    await channel.publish(Topic.CANONICAL_CHANGED, {
        'device_id': device_id,
        'room_id': room_id,
    })
