"""
Shared pytest fixtures for docspine tests.

This module provides:
- Settings isolation (no DOCSPINE_ variables leak between tests)
- Sample entity types (plain and sharded)
- A fake connection handle whose driver calls are MagicMocks
- A recording message bus

Tests marked ``integration`` need a live PostgreSQL and are skipped unless
``DOCSPINE_TEST_DATABASE_URL`` is set.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, ClassVar
from unittest.mock import MagicMock

import pytest

from docspine.entity import Document
from docspine.events import ChangeEvent, InMemoryMessageBus
from docspine.settings import DocstoreSettings, reset_settings

TEST_DATABASE_ENV = "DOCSPINE_TEST_DATABASE_URL"


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip integration tests when no test database is configured."""
    if os.environ.get(TEST_DATABASE_ENV):
        return
    skip = pytest.mark.skip(reason=f"{TEST_DATABASE_ENV} not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


# =============================================================================
# Settings isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Run every test with a clean DOCSPINE_ environment and no .env file."""
    for key in list(os.environ):
        if key.startswith("DOCSPINE_") and key != TEST_DATABASE_ENV:
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> DocstoreSettings:
    return DocstoreSettings(application_name="docspine-tests", connect_timeout=5)


# =============================================================================
# Entities
# =============================================================================


class User(Document):
    table: ClassVar[str] = "users"

    name: str
    age: int = 0


class Order(Document):
    table: ClassVar[str] = "orders_{{accountId}}"

    account_id: str
    total: float = 0.0

    def shard_keys(self) -> tuple[str, ...]:
        return (self.account_id,)


# =============================================================================
# Fake handle
# =============================================================================


def make_cursor(*, rowcount: int = 1, one: Any = None, rows: list | None = None) -> MagicMock:
    cursor = MagicMock(name="cursor")
    cursor.rowcount = rowcount
    cursor.fetchone.return_value = one
    cursor.fetchall.return_value = rows or []
    return cursor


class FakeHandle:
    """Stands in for LiveConnection; every checkout yields the same mock connection."""

    def __init__(self) -> None:
        self.conn = MagicMock(name="conn")
        self.conn.execute.return_value = make_cursor()
        self.closed = False
        self.checkouts = 0
        self.clones: list[FakeHandle] = []
        self.pinged: tuple[int, int] | None = None

    def results(self, *cursors: MagicMock) -> None:
        """Queue the cursors returned by successive ``conn.execute`` calls."""
        self.conn.execute.side_effect = list(cursors)

    @property
    def statements(self) -> list[tuple[str, Any]]:
        """(rendered statement, params) for every ``conn.execute`` call."""
        calls = []
        for call in self.conn.execute.call_args_list:
            statement = call.args[0]
            params = call.args[1] if len(call.args) > 1 else None
            calls.append((statement if isinstance(statement, str) else repr(statement), params))
        return calls

    @contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn

    def ping(self, retries: int = 3, interval: int = 1) -> None:
        self.pinged = (retries, interval)

    def clone(self) -> FakeHandle:
        clone = FakeHandle()
        self.clones.append(clone)
        return clone

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def handle() -> FakeHandle:
    return FakeHandle()


# =============================================================================
# Bus
# =============================================================================


class RecordingBus(InMemoryMessageBus):
    def __init__(self) -> None:
        super().__init__()
        self.events: list[ChangeEvent] = []
        self.subscribe("*", self.events.append)


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()
