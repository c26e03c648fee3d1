"""
Realtime change feed.

Operations publish a ChangeEvent after their transaction commits; subscribers
receive the events matching their topic in publish order. When Redis is
connected, events are relayed to the other app instances over pub/sub.
"""
import enum
import inspect
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from . import core
from .metrics import ACTIVE_SUBSCRIPTIONS, REALTIME_EVENTS

logger = logging.getLogger(__name__)

REDIS_CHANNEL = 'realtime_events'


class Operation(str, enum.Enum):
    INSERT = 'INSERT'
    UPDATE = 'UPDATE'
    DELETE = 'DELETE'


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    operation: Operation
    row: Dict[str, Any]

    def to_dict(self) -> dict:
        return {'table': self.table, 'operation': self.operation.value, 'row': self.row}

    @classmethod
    def from_dict(cls, data: dict) -> 'ChangeEvent':
        return cls(table=data['table'], operation=Operation(data['operation']), row=dict(data['row']))


@dataclass(frozen=True)
class Topic:
    """A table plus an optional column equality filter, e.g. messages / conversation_id=<id>"""
    table: str
    column: Optional[str] = None
    value: Optional[str] = None

    @classmethod
    def for_table(cls, table: str, filter: Optional[Dict[str, Any]] = None) -> 'Topic':
        if not filter:
            return cls(table)
        if len(filter) != 1:
            raise ValueError('a topic filters on at most one column')
        (column, value), = filter.items()
        return cls(table, column, str(value))

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.column is None:
            return True
        return str(event.row.get(self.column)) == self.value


EventCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


class Subscription:
    def __init__(self, topic: Topic, callback: EventCallback):
        self.id = uuid.uuid4().hex
        self.topic = topic
        self.callback = callback
        self.active = True

    def __repr__(self):
        return f"<Subscription {self.id} {self.topic}>"


class ChangeFeed:
    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}
        self.origin = uuid.uuid4().hex

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def subscribe(self, topic: Topic, on_event: EventCallback) -> Subscription:
        sub = Subscription(topic, on_event)
        self._subscriptions[sub.id] = sub
        ACTIVE_SUBSCRIPTIONS.inc()
        logger.debug(f"subscribed {sub}")
        return sub

    async def unsubscribe(self, handle: Subscription) -> bool:
        """Release a subscription; calling it again is a no-op"""
        handle.active = False
        if self._subscriptions.pop(handle.id, None) is None:
            return False
        ACTIVE_SUBSCRIPTIONS.dec()
        logger.debug(f"unsubscribed {handle}")
        return True

    async def publish(self, event: ChangeEvent, relay: bool = True):
        REALTIME_EVENTS.labels(table=event.table, operation=event.operation.value).inc()
        await self._deliver(event)
        if relay and core.REDIS:
            payload = json.dumps({'origin': self.origin, 'event': event.to_dict()})
            try:
                await core.REDIS.publish(REDIS_CHANNEL, payload)
            except Exception as e:
                logger.warning(f"Realtime relay publish failed: {e}")

    async def emit(self, table: str, operation: Operation, row: Dict[str, Any]):
        await self.publish(ChangeEvent(table, operation, row))

    async def _deliver(self, event: ChangeEvent):
        for sub in list(self._subscriptions.values()):
            if not sub.active or not sub.topic.matches(event):
                continue
            try:
                result = sub.callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # one broken subscriber must not starve the others
                logger.exception(f"Subscriber {sub.id} failed handling {event.table} {event.operation.value}")

    async def start_redis_listener(self):
        """Deliver events published by other app instances to local subscribers"""
        if not core.REDIS:
            return
        pubsub = core.REDIS.pubsub()
        await pubsub.subscribe(REDIS_CHANNEL)
        logger.info("Realtime relay listener started")
        try:
            async for item in pubsub.listen():
                if not item or item.get('type') != 'message':
                    continue
                try:
                    payload = json.loads(item['data'])
                    event = ChangeEvent.from_dict(payload['event'])
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Dropping malformed relay payload: {e}")
                    continue
                if payload.get('origin') == self.origin:
                    continue
                await self._deliver(event)
        finally:
            await pubsub.unsubscribe(REDIS_CHANNEL)
            await pubsub.aclose()


feed = ChangeFeed()
