"""Tests for ``docspine.errors`` — categorised error hierarchy."""

from __future__ import annotations

import pytest

from docspine.errors import (
    AuthMethodUnavailableError,
    ConfigurationError,
    ConnectFailure,
    ConnectionUnhealthyError,
    DocstoreError,
    EmptyIdentifierError,
    ErrorCategory,
    ErrorContext,
    InvalidURIError,
    KeyParseError,
    NoRowsAffectedError,
    NotFoundError,
    PartialFailureError,
    QueryError,
    TunnelAcceptFailure,
    TunnelConnectError,
    UnsupportedSchemeError,
    is_retryable,
)


class TestErrorContext:
    def test_empty(self):
        assert ErrorContext().to_dict() == {}

    def test_fields_and_metadata(self):
        ctx = ErrorContext(table="users", entity_id="u1", metadata={"field": "age"})
        assert ctx.to_dict() == {"table": "users", "entity_id": "u1", "field": "age"}


class TestDocstoreError:
    def test_with_context_sets_known_and_extra_keys(self):
        err = QueryError("insert failed").with_context(table="users", field="age")
        assert err.context.table == "users"
        assert err.context.metadata == {"field": "age"}

    def test_cause_chained(self):
        cause = ValueError("bad")
        err = QueryError("wrapped", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict()["cause"] == "bad"

    def test_to_dict(self):
        err = NotFoundError("u1", table="users")
        assert err.to_dict() == {
            "error_type": "NotFoundError",
            "message": "no row fetched for id: u1",
            "category": "DATABASE",
            "retryable": False,
            "context": {"table": "users", "entity_id": "u1"},
        }

    def test_override_retryable(self):
        assert QueryError("deadlock", retryable=True).retryable is True


class TestHierarchy:
    @pytest.mark.parametrize(
        ("error", "category", "retryable"),
        [
            (InvalidURIError("x"), ErrorCategory.CONFIG, False),
            (UnsupportedSchemeError("mysql"), ErrorCategory.CONFIG, False),
            (ConnectFailure("x"), ErrorCategory.NETWORK, True),
            (TunnelConnectError("x"), ErrorCategory.NETWORK, True),
            (TunnelAcceptFailure("x"), ErrorCategory.NETWORK, False),
            (AuthMethodUnavailableError("x"), ErrorCategory.AUTH, False),
            (KeyParseError("x"), ErrorCategory.AUTH, False),
            (EmptyIdentifierError("get"), ErrorCategory.VALIDATION, False),
            (QueryError("x"), ErrorCategory.DATABASE, False),
        ],
    )
    def test_defaults(self, error, category, retryable):
        assert isinstance(error, DocstoreError)
        assert error.category == category
        assert error.retryable is retryable

    def test_configuration_errors(self):
        assert issubclass(UnsupportedSchemeError, ConfigurationError)

    def test_messages(self):
        assert str(NoRowsAffectedError("delete")) == "no row affected when executing delete operation"
        assert str(EmptyIdentifierError("get")) == "empty entity id passed to get operation"
        assert ConnectionUnhealthyError("down", attempts=4).attempts == 4

    def test_partial_failure(self):
        err = PartialFailureError("stopped", applied=["a", "b"], failed="c")
        assert err.to_dict()["applied"] == ["a", "b"]
        assert err.to_dict()["failed"] == "c"


class TestIsRetryable:
    def test_docstore_errors(self):
        assert is_retryable(ConnectFailure("x")) is True
        assert is_retryable(QueryError("x")) is False

    def test_builtin_errors(self):
        assert is_retryable(ConnectionResetError()) is True
        assert is_retryable(TimeoutError()) is True
        assert is_retryable(ValueError()) is False
