"""Tests for ``docspine.events`` — change events, bus and publisher."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from conftest import Order, User
from docspine.events import (
    ChangeEvent,
    ChangePublisher,
    EntityAction,
    InMemoryMessageBus,
    MessageBus,
    build_change_event,
)


class TestEntityAction:
    def test_op_codes(self):
        assert (EntityAction.ADD, EntityAction.UPDATE, EntityAction.DELETE) == (1, 2, 3)


class TestBuildChangeEvent:
    def test_fields(self):
        order = Order(id="o1", account_id="acct1")
        event = build_change_event(EntityAction.DELETE, order)
        assert event.topic == "ENTITY-orders_{{accountId}}-acct1"
        assert event.op_code == 3
        assert event.action is EntityAction.DELETE
        assert event.addressee == "Order"
        assert event.session_id == "o1"
        assert event.payload is order
        assert event.timestamp.tzinfo is not None

    def test_unique_event_ids(self):
        user = User(id="u1", name="Ada")
        assert build_change_event(EntityAction.ADD, user).event_id != build_change_event(EntityAction.ADD, user).event_id


class TestTopicMatching:
    @pytest.mark.parametrize(
        ("pattern", "expected"),
        [
            ("*", True),
            ("ENTITY-users-*", True),
            ("ENTITY-users-acct1", True),
            ("ENTITY-users-acct2", False),
            ("ENTITY-orders-*", False),
        ],
    )
    def test_matches(self, pattern, expected):
        event = ChangeEvent(topic="ENTITY-users-acct1", op_code=1, addressee="User", session_id="u1", payload=None)
        assert event.matches(pattern) is expected


class TestInMemoryMessageBus:
    def test_satisfies_protocol(self):
        assert isinstance(InMemoryMessageBus(), MessageBus)

    def test_delivers_to_matching_subscribers(self):
        bus = InMemoryMessageBus()
        users, everything = [], []
        bus.subscribe("ENTITY-users-*", users.append)
        bus.subscribe("*", everything.append)

        bus.publish(build_change_event(EntityAction.ADD, User(id="u1", name="Ada")))
        bus.publish(build_change_event(EntityAction.ADD, Order(id="o1", account_id="a")))

        assert [e.session_id for e in users] == ["u1"]
        assert [e.session_id for e in everything] == ["u1", "o1"]

    def test_failing_handler_does_not_block_others(self):
        bus = InMemoryMessageBus()
        received = []
        bus.subscribe("*", MagicMock(side_effect=ValueError("boom")))
        bus.subscribe("*", received.append)
        bus.publish(build_change_event(EntityAction.ADD, User(id="u1", name="Ada")))
        assert len(received) == 1

    def test_unsubscribe(self):
        bus = InMemoryMessageBus()
        received = []
        sub_id = bus.subscribe("*", received.append)
        assert bus.subscription_count == 1
        bus.unsubscribe(sub_id)
        bus.publish(build_change_event(EntityAction.ADD, User(id="u1", name="Ada")))
        assert received == []

    def test_closed_bus_rejects(self):
        bus = InMemoryMessageBus()
        bus.close()
        with pytest.raises(RuntimeError, match="closed"):
            bus.publish(build_change_event(EntityAction.ADD, User(id="u1", name="Ada")))


class TestChangePublisher:
    def test_disabled_without_bus(self):
        publisher = ChangePublisher()
        assert publisher.enabled is False
        publisher.publish(EntityAction.ADD, User(id="u1", name="Ada"))

    def test_none_entity_ignored(self):
        bus = MagicMock()
        ChangePublisher(bus).publish(EntityAction.ADD, None)
        bus.publish.assert_not_called()

    def test_swallows_bus_errors(self):
        bus = MagicMock()
        bus.publish.side_effect = ConnectionError("broker down")
        ChangePublisher(bus).publish(EntityAction.UPDATE, User(id="u1", name="Ada"))
        bus.publish.assert_called_once()

    def test_closed_bus_swallowed(self):
        bus = InMemoryMessageBus()
        bus.close()
        ChangePublisher(bus).publish(EntityAction.UPDATE, User(id="u1", name="Ada"))
