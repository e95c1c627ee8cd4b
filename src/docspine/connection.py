"""Connection factory: turn a URI into a live, pooled PostgreSQL handle.

``open_connection()`` is the single entry point::

    handle = open_connection("postgresql://app:pw@db:5432/app")
    with handle.connection() as conn:
        conn.execute("SELECT 1")
    handle.close()

When the URI carries ``ssh_host`` the handle first starts an
:class:`~docspine.tunnel.SSHTunnel` and points the pool at its local
forwarding address, keeping the backend credentials. A tunnel failure aborts
construction; there is no fall back to a direct connection.

Pooled connections run in autocommit mode. Callers that need atomicity open
``conn.transaction()`` explicitly.

Lifecycle
---------
A :class:`LiveConnection` is owned by exactly one store. ``clone()`` builds
a brand new handle (new pool, new tunnel) from the same URI. ``close()``
tears down listener → SSH session → pool, each step best-effort.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

import psycopg
from psycopg_pool import ConnectionPool, PoolTimeout

from docspine.errors import ConfigurationError, ConnectFailure, ConnectionUnhealthyError, LivenessCheckFailure
from docspine.logging import get_logger
from docspine.settings import DocstoreSettings, get_settings
from docspine.tunnel import SSHTunnel
from docspine.uri import ConnectionDescriptor, TunnelDescriptor, parse_connection_uri

logger = get_logger(__name__)

MAX_PING_RETRIES = 10
MAX_PING_INTERVAL_SECONDS = 60
MIN_CHECK_TIMEOUT_SECONDS = 1.0

LIVENESS_QUERY = "SELECT 1"


class LiveConnection:
    """Pooled connection to PostgreSQL, optionally routed through a tunnel."""

    def __init__(
        self,
        uri: str,
        descriptor: ConnectionDescriptor,
        pool: ConnectionPool,
        *,
        tunnel: SSHTunnel | None = None,
        settings: DocstoreSettings | None = None,
    ):
        self.uri = uri
        self.descriptor = descriptor
        self.pool = pool
        self.tunnel = tunnel
        self.settings = settings or get_settings()
        self._closed = False

    @property
    def tunnelled(self) -> bool:
        return self.tunnel is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @contextmanager
    def connection(self, timeout: float | None = None) -> Iterator[psycopg.Connection]:
        """Borrow a connection from the pool, waiting at most ``timeout`` seconds."""
        if self.tunnel is not None:
            self.tunnel.raise_if_failed()
        with self.pool.connection(timeout=timeout) as conn:
            yield conn

    def check(self, timeout: float | None = None) -> None:
        """Run the liveness query once; raises the driver error on failure.

        A pool with no healthy connection raises ``PoolTimeout`` once
        ``timeout`` expires.
        """
        with self.connection(timeout=timeout) as conn:
            conn.execute(LIVENESS_QUERY)

    def ping(self, retries: int = 3, interval: int = 1) -> None:
        """Test connectivity, retrying on failure.

        Args:
            retries: Attempts before giving up (clamped to 10)
            interval: Seconds allotted to each attempt (clamped to 60). A failed
                attempt sleeps for whatever the checkout left of it.

        Raises:
            ConnectionUnhealthyError: No attempt succeeded
        """
        retries = max(0, min(retries, MAX_PING_RETRIES))
        interval = max(0, min(interval, MAX_PING_INTERVAL_SECONDS))

        timeout = max(float(interval), MIN_CHECK_TIMEOUT_SECONDS)

        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            started = time.monotonic()
            try:
                self.check(timeout=timeout)
                return
            except (psycopg.Error, OSError) as e:
                last_error = e
                logger.debug("ping_failed", attempt=attempt, retries=retries, error=str(e))
            time.sleep(max(0.0, interval - (time.monotonic() - started)))

        raise ConnectionUnhealthyError(
            f"could not establish database connection after {retries} attempts",
            attempts=retries,
            cause=last_error,
        ).with_context(endpoint=self.descriptor.endpoint)

    def clone(self) -> LiveConnection:
        """Open a new, independent handle from the same URI."""
        return open_connection(self.uri, settings=self.settings)

    def close(self) -> None:
        """Close listener, SSH session and pool. Never raises."""
        if self._closed:
            return
        self._closed = True

        if self.tunnel is not None:
            try:
                self.tunnel.close()
            except Exception as e:
                logger.debug("tunnel_teardown_failed", error=str(e))

        try:
            self.pool.close()
        except Exception as e:
            logger.debug("pool_teardown_failed", error=str(e))

        logger.info("connection_closed", database=self.descriptor.redacted())

    def __enter__(self) -> LiveConnection:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"LiveConnection({self.descriptor.redacted()!r}, tunnelled={self.tunnelled})"


def _start_tunnel(
    descriptor: ConnectionDescriptor,
    tunnel_descriptor: TunnelDescriptor,
    settings: DocstoreSettings,
) -> SSHTunnel:
    tunnel = SSHTunnel(
        tunnel_descriptor,
        descriptor.host,
        descriptor.port,
        bind_host=settings.tunnel_bind_host,
        max_connections=settings.tunnel_max_connections,
        connect_timeout=settings.connect_timeout,
    )
    return tunnel.start()


def _check_tunnel_capacity(settings: DocstoreSettings) -> None:
    pool_size = max(settings.pool_max_size, settings.pool_min_size)
    if pool_size > settings.tunnel_max_connections:
        raise ConfigurationError(
            f"pool size {pool_size} exceeds tunnel_max_connections {settings.tunnel_max_connections}; "
            "each pooled connection holds one forwarding worker"
        )


def _open_pool(conninfo: str, settings: DocstoreSettings, descriptor: ConnectionDescriptor) -> ConnectionPool:
    pool = ConnectionPool(
        conninfo,
        min_size=settings.pool_min_size,
        max_size=max(settings.pool_max_size, settings.pool_min_size),
        kwargs={"autocommit": True},
        timeout=settings.connect_timeout,
        open=False,
        name=descriptor.application_name or None,
    )
    try:
        pool.open(wait=True, timeout=settings.connect_timeout)
    except (PoolTimeout, psycopg.Error) as e:
        pool.close()
        raise ConnectFailure(f"failed to connect to {descriptor.redacted()}: {e}", cause=e).with_context(
            endpoint=descriptor.endpoint
        ) from e
    return pool


def open_connection(uri: str, *, settings: DocstoreSettings | None = None) -> LiveConnection:
    """Create a live handle from a connection URI.

    Raises:
        ConfigurationError: The URI is malformed, or the pool is larger than
            the tunnel can forward
        TunnelError: The SSH tunnel could not be established
        ConnectFailure: The pool could not connect
        LivenessCheckFailure: The pool connected but ``SELECT 1`` failed
    """
    settings = settings or get_settings()
    descriptor, tunnel_descriptor = parse_connection_uri(
        uri,
        application_name=settings.application_name,
        infer_application_name=settings.infer_application_name,
        default_key_file=settings.ssh_key_file,
    )

    pool: ConnectionPool | None = None
    tunnel: SSHTunnel | None = None
    if tunnel_descriptor is not None:
        _check_tunnel_capacity(settings)
        tunnel = _start_tunnel(descriptor, tunnel_descriptor, settings)

    try:
        if tunnel is not None:
            local_host, local_port = tunnel.local_address
            conninfo = descriptor.conninfo(
                host=local_host, port=local_port, connect_timeout=max(1, int(settings.connect_timeout))
            )
        else:
            conninfo = descriptor.conninfo(connect_timeout=max(1, int(settings.connect_timeout)))

        pool = _open_pool(conninfo, settings, descriptor)
        handle = LiveConnection(uri, descriptor, pool, tunnel=tunnel, settings=settings)

        try:
            handle.check(timeout=settings.connect_timeout)
        except (psycopg.Error, OSError) as e:
            raise LivenessCheckFailure(f"liveness check failed: {e}", cause=e).with_context(
                endpoint=descriptor.endpoint
            ) from e
    except BaseException:
        if pool is not None:
            pool.close()
        if tunnel is not None:
            tunnel.close()
        raise

    logger.info(
        "connection_opened",
        database=descriptor.redacted(),
        tunnelled=tunnel is not None,
        application_name=descriptor.application_name,
    )
    return handle


__all__ = [
    "LiveConnection",
    "open_connection",
    "MAX_PING_RETRIES",
    "MAX_PING_INTERVAL_SECONDS",
]
