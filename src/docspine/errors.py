"""
Structured error types for docspine.

Every failure raised by the store carries a category, a retry hint, a
structured context (table, entity id, failing statement, endpoint) and the
chained driver exception, so callers can route, log and retry without
parsing messages.

Manifesto:
    - **Typed Error Hierarchy:** Configuration, connectivity and per-operation
      failures are different types, not different strings
    - **Explicit Retry Semantics:** Connectivity errors are retryable by default,
      everything else is not
    - **Rich Context:** The failing SQL statement travels with the error
    - **Error Chaining:** The psycopg / paramiko exception is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        DocstoreError                             │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ConfigurationError    ConnectivityError        StoreError       │
        │  (CONFIG)              (NETWORK, retryable)     (DATABASE)       │
        │       │                     │                        │           │
        │  InvalidURIError       ConnectFailure          EmptyIdentifier   │
        │  UnsupportedScheme     LivenessCheckFailure    InvalidBatch      │
        │  InvalidEndpoint       ConnectionUnhealthy     NotFound          │
        │                        TunnelError             NoRowsAffected    │
        │                          AuthMethodUnavailable PartialFailure    │
        │                          KeyParseError         DecodeError       │
        │                          TunnelConnectError    QueryError        │
        │                          TunnelAcceptFailure                     │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> err = NotFoundError("no row fetched for id: u1").with_context(table="users")
    >>> err.context.table
    'users'
    >>> err.retryable
    False

    >>> ConnectFailure("pool did not fill").retryable
    True

Guardrails:
    ❌ DON'T: Raise bare psycopg errors out of the store
    ✅ DO: Wrap them in QueryError with the statement in context

    ❌ DON'T: Put passwords in error context
    ✅ DO: Use ConnectionDescriptor.redacted() when logging endpoints

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context, docspine
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"
    NETWORK = "NETWORK"
    AUTH = "AUTH"
    DATABASE = "DATABASE"
    VALIDATION = "VALIDATION"
    PARSE = "PARSE"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        table: Physical table the operation targeted
        entity_id: Entity identifier involved
        statement: SQL statement that failed
        endpoint: ``host:port`` of the database or SSH host
        metadata: Additional key-value pairs
    """

    table: str | None = None
    entity_id: str | None = None
    statement: str | None = None
    endpoint: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["table", "entity_id", "statement", "endpoint"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class DocstoreError(Exception):
    """
    Base exception for all docspine errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can be
    overridden per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DocstoreError:
        """
        Add context to this error (fluent API).

        Usage:
            raise QueryError("insert failed", cause=e).with_context(
                table="users",
                statement=stmt,
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigurationError(DocstoreError):
    """Malformed connection descriptor or settings. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class InvalidURIError(ConfigurationError):
    """Connection string cannot be parsed as a URI."""


class UnsupportedSchemeError(ConfigurationError):
    """URI scheme does not name the supported backend."""

    def __init__(self, scheme: str, supported: tuple[str, ...] = (), **kwargs: Any):
        self.scheme = scheme
        self.supported = supported
        expected = ", ".join(supported) if supported else "postgresql"
        super().__init__(f"unsupported database scheme {scheme!r}, expected one of: {expected}", **kwargs)


class InvalidEndpointError(ConfigurationError):
    """host:port cannot be split or parsed."""


# =============================================================================
# CONNECTIVITY ERRORS
# =============================================================================


class ConnectivityError(DocstoreError):
    """Dial, authentication or tunnel failure."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class ConnectFailure(ConnectivityError):
    """Could not open the connection pool."""


class LivenessCheckFailure(ConnectivityError):
    """Pool opened but the liveness probe failed."""


class ConnectionUnhealthyError(ConnectivityError):
    """Ping exhausted its retries."""

    def __init__(self, message: str, *, attempts: int = 0, **kwargs: Any):
        self.attempts = attempts
        super().__init__(message, **kwargs)


class TunnelError(ConnectivityError):
    """SSH tunnel could not be established or has failed."""


class AuthMethodUnavailableError(TunnelError):
    """Neither a password nor a readable private key was supplied."""

    default_category = ErrorCategory.AUTH
    default_retryable = False


class KeyParseError(TunnelError):
    """Private key material is present but malformed."""

    default_category = ErrorCategory.AUTH
    default_retryable = False


class TunnelConnectError(TunnelError):
    """SSH session to the intermediary host could not be opened."""


class TunnelAcceptFailure(TunnelError):
    """The local forwarding listener stopped accepting connections.

    Unrecoverable for the life of the tunnel.
    """

    default_retryable = False


# =============================================================================
# STORE (PER-OPERATION) ERRORS
# =============================================================================


class StoreError(DocstoreError):
    """Entity operation error."""

    default_category = ErrorCategory.DATABASE
    default_retryable = False


class EmptyIdentifierError(StoreError):
    """An operation that needs an entity id received an empty one."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, operation: str, **kwargs: Any):
        self.operation = operation
        super().__init__(f"empty entity id passed to {operation} operation", **kwargs)


class InvalidBatchError(StoreError):
    """Bulk operation received entities of more than one type or table."""

    default_category = ErrorCategory.VALIDATION


class NotFoundError(StoreError):
    """Zero rows where exactly one was expected."""

    def __init__(self, entity_id: str, *, table: str | None = None, **kwargs: Any):
        self.entity_id = entity_id
        super().__init__(f"no row fetched for id: {entity_id}", **kwargs)
        self.context.entity_id = entity_id
        self.context.table = table


class NoRowsAffectedError(StoreError):
    """Write statement executed but matched nothing."""

    def __init__(self, operation: str, **kwargs: Any):
        self.operation = operation
        super().__init__(f"no row affected when executing {operation} operation", **kwargs)


class PartialFailureError(StoreError):
    """Non-atomic multi-step operation aborted mid-way.

    Effects listed in ``applied`` were already committed and are not rolled
    back.
    """

    def __init__(
        self,
        message: str,
        *,
        applied: list[str] | None = None,
        failed: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.applied = applied or []
        self.failed = failed

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["applied"] = list(self.applied)
        if self.failed:
            result["failed"] = self.failed
        return result


class DecodeError(StoreError):
    """Stored document could not be decoded into the entity type."""

    default_category = ErrorCategory.PARSE


class QueryError(StoreError):
    """Backend rejected a statement."""


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, DocstoreError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "DocstoreError",
    "ConfigurationError",
    "InvalidURIError",
    "UnsupportedSchemeError",
    "InvalidEndpointError",
    "ConnectivityError",
    "ConnectFailure",
    "LivenessCheckFailure",
    "ConnectionUnhealthyError",
    "TunnelError",
    "AuthMethodUnavailableError",
    "KeyParseError",
    "TunnelConnectError",
    "TunnelAcceptFailure",
    "StoreError",
    "EmptyIdentifierError",
    "InvalidBatchError",
    "NotFoundError",
    "NoRowsAffectedError",
    "PartialFailureError",
    "DecodeError",
    "QueryError",
    "is_retryable",
]
