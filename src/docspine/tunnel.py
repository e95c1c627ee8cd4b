"""SSH tunnel to a database that is not directly reachable.

Architecture::

    client ──► 127.0.0.1:<ephemeral>  (local listener, accept thread)
                    │
                    │  one worker per accepted socket (bounded pool)
                    ▼
               direct-tcpip channel over one SSH session
                    │
                    ▼
               db.internal:5432       (remote backend)

One SSH session is opened to the intermediary host. Each accepted local
socket gets its own ``direct-tcpip`` channel and is spliced full-duplex until
either side closes. A failing pair is closed and logged; it never affects the
listener or other pairs. A failing listener is fatal: the tunnel stops and
:meth:`SSHTunnel.raise_if_failed` raises :class:`TunnelAcceptFailure` from
then on.

Host keys are accepted without verification (``AutoAddPolicy``). Strict host
key pinning is not supported.
"""

from __future__ import annotations

import io
import select
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import paramiko

from docspine.errors import (
    AuthMethodUnavailableError,
    KeyParseError,
    TunnelAcceptFailure,
    TunnelConnectError,
)
from docspine.logging import get_logger
from docspine.uri import TunnelDescriptor

logger = get_logger(__name__)

KEY_TYPES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)

ACCEPT_POLL_SECONDS = 0.5
SPLICE_POLL_SECONDS = 0.5
CHUNK_SIZE = 32 * 1024


def load_private_key(path: str | Path) -> paramiko.PKey:
    """Read and parse an unencrypted private key file.

    Raises:
        AuthMethodUnavailableError: The file is missing, unreadable or empty
        KeyParseError: The file has content but no supported key parses from it
    """
    path = Path(path).expanduser()
    try:
        material = path.read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise AuthMethodUnavailableError(f"failed to read private key {path}: {e}", cause=e) from e
    if not material.strip():
        raise AuthMethodUnavailableError(f"private key file {path} is empty")

    last_error: Exception | None = None
    for key_type in KEY_TYPES:
        try:
            return key_type.from_private_key(io.StringIO(material))
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
    raise KeyParseError(f"failed to parse private key {path}: {last_error}", cause=last_error) from last_error


def splice(
    a: Any,
    b: Any,
    stop: threading.Event,
    *,
    poll_interval: float = SPLICE_POLL_SECONDS,
) -> int:
    """Copy bytes both ways between two socket-like objects.

    Returns when either side reaches EOF or ``stop`` is set. ``a`` and ``b``
    need ``fileno``, ``recv`` and ``sendall`` (sockets and paramiko channels
    both qualify). Returns the number of bytes relayed.
    """
    peers = {a: b, b: a}
    relayed = 0
    while not stop.is_set():
        readable, _, _ = select.select([a, b], [], [], poll_interval)
        for src in readable:
            data = src.recv(CHUNK_SIZE)
            if not data:
                return relayed
            peers[src].sendall(data)
            relayed += len(data)
    return relayed


def _close_quietly(resource: Any) -> None:
    try:
        resource.close()
    except Exception as e:
        logger.debug("tunnel_close_failed", resource=type(resource).__name__, error=str(e))


class SSHTunnel:
    """Local forwarding endpoint to ``remote_host:remote_port`` via SSH.

    Example::

        tunnel = SSHTunnel(descriptor, "db.internal", 5432).start()
        host, port = tunnel.local_address
        ...
        tunnel.close()
    """

    def __init__(
        self,
        descriptor: TunnelDescriptor,
        remote_host: str,
        remote_port: int,
        *,
        bind_host: str = "127.0.0.1",
        max_connections: int = 32,
        connect_timeout: float = 10.0,
    ):
        self.descriptor = descriptor
        self.remote_host = remote_host
        self.remote_port = remote_port
        self.bind_host = bind_host
        self.max_connections = max_connections
        self.connect_timeout = connect_timeout

        self._client: paramiko.SSHClient | None = None
        self._transport: paramiko.Transport | None = None
        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._workers: ThreadPoolExecutor | None = None
        self._stop = threading.Event()
        self._active: set[tuple[Any, Any]] = set()
        self._active_lock = threading.Lock()
        self._failure: TunnelAcceptFailure | None = None

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> SSHTunnel:
        """Open the SSH session and the local listener."""
        self._client = self._connect()
        self._transport = self._client.get_transport()

        try:
            self._listener = socket.create_server((self.bind_host, 0))
        except OSError as e:
            _close_quietly(self._client)
            self._client = None
            raise TunnelConnectError(f"failed to create local listener: {e}", cause=e) from e
        self._listener.settimeout(ACCEPT_POLL_SECONDS)

        self._workers = ThreadPoolExecutor(
            max_workers=self.max_connections,
            thread_name_prefix="docspine-tunnel",
        )
        self._accept_thread = threading.Thread(
            target=self._accept_loop,
            name="docspine-tunnel-accept",
            daemon=True,
        )
        self._accept_thread.start()

        host, port = self.local_address
        logger.info(
            "tunnel_started",
            ssh_host=self.descriptor.endpoint,
            remote=f"{self.remote_host}:{self.remote_port}",
            local=f"{host}:{port}",
        )
        return self

    def close(self) -> None:
        """Stop accepting, close every forwarded pair, then the SSH session."""
        self._stop.set()

        if self._listener is not None:
            _close_quietly(self._listener)
            self._listener = None

        if self._accept_thread is not None:
            self._accept_thread.join(timeout=ACCEPT_POLL_SECONDS * 4)
            self._accept_thread = None

        with self._active_lock:
            pairs = list(self._active)
            self._active.clear()
        for local, channel in pairs:
            _close_quietly(channel)
            _close_quietly(local)

        if self._workers is not None:
            self._workers.shutdown(wait=True, cancel_futures=True)
            self._workers = None

        if self._client is not None:
            _close_quietly(self._client)
            self._client = None
            self._transport = None
            logger.info("tunnel_closed", ssh_host=self.descriptor.endpoint)

    def __enter__(self) -> SSHTunnel:
        return self.start()

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ── State ────────────────────────────────────────────────────

    @property
    def local_address(self) -> tuple[str, int]:
        if self._listener is None:
            raise RuntimeError("tunnel is not started")
        host, port = self._listener.getsockname()[:2]
        return host, port

    @property
    def active_connections(self) -> int:
        with self._active_lock:
            return len(self._active)

    @property
    def failed(self) -> bool:
        return self._failure is not None

    def raise_if_failed(self) -> None:
        """Raise if the listener died or the SSH session dropped."""
        if self._failure is not None:
            raise TunnelAcceptFailure(self._failure.message, cause=self._failure.cause).with_context(
                endpoint=self.descriptor.endpoint
            )
        if self._transport is not None and not self._transport.is_active():
            raise TunnelConnectError("ssh session is no longer active").with_context(
                endpoint=self.descriptor.endpoint
            )

    # ── Internals ────────────────────────────────────────────────

    def _auth_options(self) -> dict[str, Any]:
        if self.descriptor.password:
            return {"password": self.descriptor.password}
        if self.descriptor.key_file is None:
            raise AuthMethodUnavailableError(
                "no ssh password or private key file configured"
            ).with_context(endpoint=self.descriptor.endpoint)
        return {"pkey": load_private_key(self.descriptor.key_file)}

    def _connect(self) -> paramiko.SSHClient:
        auth = self._auth_options()

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.descriptor.host,
                port=self.descriptor.effective_port,
                username=self.descriptor.username or None,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
                **auth,
            )
        except (paramiko.SSHException, OSError) as e:
            _close_quietly(client)
            raise TunnelConnectError(f"failed to establish SSH connection: {e}", cause=e).with_context(
                endpoint=self.descriptor.endpoint
            ) from e
        return client

    def _accept_loop(self) -> None:
        listener = self._listener
        while not self._stop.is_set() and listener is not None:
            try:
                local, _ = listener.accept()
            except TimeoutError:
                continue
            except OSError as e:
                if self._stop.is_set():
                    break
                self._failure = TunnelAcceptFailure(f"failed to accept local connection: {e}", cause=e)
                logger.error("tunnel_accept_failed", ssh_host=self.descriptor.endpoint, error=str(e))
                self._stop.set()
                break

            local.setblocking(True)
            try:
                self._workers.submit(self._forward, local)
            except RuntimeError:
                # executor already shut down
                _close_quietly(local)
                break

    def _forward(self, local: socket.socket) -> None:
        try:
            peer = local.getpeername()
            channel = self._transport.open_channel(
                "direct-tcpip",
                (self.remote_host, self.remote_port),
                peer,
                timeout=self.connect_timeout,
            )
        except (paramiko.SSHException, OSError) as e:
            logger.warning(
                "tunnel_dial_failed",
                remote=f"{self.remote_host}:{self.remote_port}",
                error=str(e),
            )
            _close_quietly(local)
            return

        pair = (local, channel)
        with self._active_lock:
            self._active.add(pair)
        try:
            relayed = splice(local, channel, self._stop)
            logger.debug("tunnel_pair_closed", peer=f"{peer[0]}:{peer[1]}", relayed=relayed)
        except (OSError, paramiko.SSHException, ValueError) as e:
            logger.debug("tunnel_pair_failed", peer=f"{peer[0]}:{peer[1]}", error=str(e))
        finally:
            with self._active_lock:
                self._active.discard(pair)
            _close_quietly(channel)
            _close_quietly(local)


__all__ = [
    "SSHTunnel",
    "load_private_key",
    "splice",
]
