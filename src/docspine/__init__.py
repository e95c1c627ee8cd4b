"""docspine -- JSON document persistence on PostgreSQL.

Entities are stored as one JSON document per row in two-column tables
(``id`` + ``data jsonb``). Every committed mutation is announced on an
optional message bus.

Architecture::

    Layer 1 -- Errors & Configuration
        errors.py          Categorised error hierarchy (DocstoreError)
        settings.py        DocstoreSettings (DOCSPINE_ environment)
        logging.py         structlog configuration

    Layer 2 -- Connectivity
        uri.py             Connection URI -> descriptors
        tunnel.py          SSH port forwarding (paramiko)
        connection.py      Pooled handle factory (psycopg_pool)

    Layer 3 -- Documents
        entity.py          Entity protocol + pydantic Document base
        tables.py          Sharded / time-partitioned table names
        sql.py             Statement templates
        events.py          Change events + in-memory bus
        store.py           DocumentStore engine

    Layer 4 -- Surfaces
        cli.py             ``docspine`` operator CLI
"""

from docspine.connection import LiveConnection, open_connection
from docspine.entity import Document, Entity
from docspine.errors import (
    ConfigurationError,
    ConnectivityError,
    DecodeError,
    DocstoreError,
    EmptyIdentifierError,
    InvalidBatchError,
    NoRowsAffectedError,
    NotFoundError,
    PartialFailureError,
    QueryError,
    StoreError,
    TunnelError,
    is_retryable,
)
from docspine.events import ChangeEvent, EntityAction, InMemoryMessageBus, MessageBus
from docspine.settings import DocstoreSettings, get_settings
from docspine.store import DocumentStore
from docspine.tables import resolve_table_name

__version__ = "0.1.0"

__all__ = [
    "ChangeEvent",
    "ConfigurationError",
    "ConnectivityError",
    "DecodeError",
    "DocstoreError",
    "DocstoreSettings",
    "Document",
    "DocumentStore",
    "EmptyIdentifierError",
    "Entity",
    "EntityAction",
    "InMemoryMessageBus",
    "InvalidBatchError",
    "LiveConnection",
    "MessageBus",
    "NoRowsAffectedError",
    "NotFoundError",
    "PartialFailureError",
    "QueryError",
    "StoreError",
    "TunnelError",
    "get_settings",
    "is_retryable",
    "open_connection",
    "resolve_table_name",
]
