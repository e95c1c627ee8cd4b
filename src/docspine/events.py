"""Entity change notifications.

After every successful create, update or delete the store hands a
:class:`ChangeEvent` to the injected :class:`MessageBus`. Publishing is
fire-and-forget from the store's point of view: a bus failure is logged as a
warning and never reported to the caller, because the write it describes has
already been committed.

Event fields::

    topic       ENTITY-{table template}-{first shard key}
    op_code     1=add, 2=update, 3=delete
    addressee   entity class name
    session_id  entity id
    payload     the entity itself

Usage::

    bus = InMemoryMessageBus()
    bus.subscribe("ENTITY-users-*", lambda event: print(event.op_code))
    store = DocumentStore.open(uri, bus=bus)
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Protocol, runtime_checkable

from docspine.entity import Entity, entity_type_name, first_shard_key
from docspine.logging import get_logger

logger = get_logger(__name__)

ENTITY_TOPIC = "ENTITY"


class EntityAction(IntEnum):
    """Operation code carried by a change event."""

    ADD = 1
    UPDATE = 2
    DELETE = 3


@dataclass
class ChangeEvent:
    """A committed change to one entity.

    Attributes:
        topic: ``ENTITY-{table}-{shard key}``
        op_code: :class:`EntityAction` value
        addressee: Entity class name
        session_id: Entity id (correlates events for the same entity)
        payload: The entity as written
        timestamp: When the event was built (UTC)
        event_id: Unique event identifier
    """

    topic: str
    op_code: int
    addressee: str
    session_id: str
    payload: Any
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def action(self) -> EntityAction:
        return EntityAction(self.op_code)

    def matches(self, pattern: str) -> bool:
        """Check if the topic matches a pattern.

        Examples:
            - ``*`` matches everything
            - ``ENTITY-users-*`` matches any shard of ``users``
            - ``ENTITY-users-acct1`` matches exactly
        """
        if pattern == "*":
            return True
        if pattern.endswith("*"):
            return self.topic.startswith(pattern[:-1])
        return self.topic == pattern


def build_change_event(action: EntityAction, entity: Entity) -> ChangeEvent:
    topic = f"{ENTITY_TOPIC}-{entity.table_name()}-{first_shard_key(entity)}"
    return ChangeEvent(
        topic=topic,
        op_code=int(action),
        addressee=entity_type_name(entity),
        session_id=entity.entity_id(),
        payload=entity,
    )


@runtime_checkable
class MessageBus(Protocol):
    """Notification channel. ``publish`` raises on delivery failure."""

    def publish(self, message: ChangeEvent) -> None: ...


MessageHandler = Callable[[ChangeEvent], None]


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    pattern: str
    handler: MessageHandler


class InMemoryMessageBus:
    """In-process bus for single-node deployments and tests.

    Events are delivered synchronously, in publish order, to every matching
    handler. A failing handler is logged and does not stop delivery to the
    others.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._closed = False

    def publish(self, message: ChangeEvent) -> None:
        if self._closed:
            raise RuntimeError("message bus is closed")

        with self._lock:
            handlers = [
                (sub.id, sub.handler) for sub in self._subscriptions.values() if message.matches(sub.pattern)
            ]

        for sub_id, handler in handlers:
            try:
                handler(message)
            except Exception as e:
                logger.warning(
                    "message_handler_error",
                    subscription_id=sub_id,
                    topic=message.topic,
                    error=str(e),
                )

    def subscribe(self, pattern: str, handler: MessageHandler) -> str:
        """Subscribe to topics matching ``pattern``; returns a subscription id."""
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._subscriptions[sub_id] = Subscription(id=sub_id, pattern=pattern, handler=handler)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> None:
        with self._lock:
            self._subscriptions.pop(subscription_id, None)

    def close(self) -> None:
        self._closed = True
        with self._lock:
            self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)


class ChangePublisher:
    """Packages committed mutations as :class:`ChangeEvent` and publishes them."""

    def __init__(self, bus: MessageBus | None = None) -> None:
        self.bus = bus

    @property
    def enabled(self) -> bool:
        return self.bus is not None

    def publish(self, action: EntityAction, entity: Entity | None) -> None:
        if self.bus is None or entity is None:
            return

        event = build_change_event(action, entity)
        try:
            self.bus.publish(event)
        except Exception as e:
            logger.warning(
                "change_publish_failed",
                topic=event.topic,
                op_code=event.op_code,
                entity_id=event.session_id,
                error=str(e),
            )


__all__ = [
    "ENTITY_TOPIC",
    "EntityAction",
    "ChangeEvent",
    "MessageBus",
    "MessageHandler",
    "InMemoryMessageBus",
    "ChangePublisher",
    "build_change_event",
]
