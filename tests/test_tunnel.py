"""Tests for ``docspine.tunnel`` — SSH port forwarding.

The SSH session is mocked; forwarding runs over real loopback sockets with a
socket pair standing in for the ``direct-tcpip`` channel.
"""

from __future__ import annotations

import socket
import threading
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from docspine.errors import (
    AuthMethodUnavailableError,
    KeyParseError,
    TunnelAcceptFailure,
    TunnelConnectError,
)
from docspine.tunnel import SSHTunnel, load_private_key, splice
from docspine.uri import TunnelDescriptor


def recv_exactly(sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


class TestLoadPrivateKey:
    def test_missing_file(self, tmp_path):
        with pytest.raises(AuthMethodUnavailableError, match="failed to read private key"):
            load_private_key(tmp_path / "nope")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "id_empty"
        path.write_text("")
        with pytest.raises(AuthMethodUnavailableError, match="empty"):
            load_private_key(path)

    def test_garbage(self, tmp_path):
        path = tmp_path / "id_garbage"
        path.write_text("this is not a private key\n")
        with pytest.raises(KeyParseError) as exc_info:
            load_private_key(path)
        assert exc_info.value.retryable is False

    def test_rsa_key(self, tmp_path):
        path = tmp_path / "id_rsa"
        paramiko.RSAKey.generate(2048).write_private_key_file(str(path))
        key = load_private_key(path)
        assert isinstance(key, paramiko.RSAKey)


class TestAuthSelection:
    def test_password_preferred(self, tmp_path):
        tunnel = SSHTunnel(TunnelDescriptor(host="bastion", password="pw", key_file=tmp_path / "k"), "db", 5432)
        assert tunnel._auth_options() == {"password": "pw"}

    def test_no_credentials(self):
        tunnel = SSHTunnel(TunnelDescriptor(host="bastion"), "db", 5432)
        with pytest.raises(AuthMethodUnavailableError) as exc_info:
            tunnel._auth_options()
        assert exc_info.value.context.endpoint == "bastion:22"

    @patch("docspine.tunnel.load_private_key")
    def test_key_file(self, mock_load, tmp_path):
        tunnel = SSHTunnel(TunnelDescriptor(host="bastion", key_file=tmp_path / "k"), "db", 5432)
        assert tunnel._auth_options() == {"pkey": mock_load.return_value}
        mock_load.assert_called_once_with(tmp_path / "k")


class TestSplice:
    def test_relays_both_ways_until_eof(self):
        left_outer, left_inner = socket.socketpair()
        right_inner, right_outer = socket.socketpair()
        stop = threading.Event()
        result: list[int] = []

        worker = threading.Thread(target=lambda: result.append(splice(left_inner, right_inner, stop, poll_interval=0.05)))
        worker.start()
        try:
            left_outer.sendall(b"hello")
            assert recv_exactly(right_outer, 5) == b"hello"
            right_outer.sendall(b"world!")
            assert recv_exactly(left_outer, 6) == b"world!"
            left_outer.close()
            worker.join(timeout=5)
            assert not worker.is_alive()
            assert result == [11]
        finally:
            stop.set()
            worker.join(timeout=5)
            for s in (left_inner, right_inner, right_outer):
                s.close()

    def test_stop_event_ends_splice(self):
        a, b = socket.socketpair()
        c, d = socket.socketpair()
        stop = threading.Event()
        stop.set()
        try:
            assert splice(b, c, stop, poll_interval=0.05) == 0
        finally:
            for s in (a, b, c, d):
                s.close()


@pytest.fixture
def ssh_client():
    with patch("docspine.tunnel.paramiko.SSHClient") as mock_client_cls:
        client = mock_client_cls.return_value
        transport = MagicMock(name="transport")
        transport.is_active.return_value = True
        client.get_transport.return_value = transport
        yield client


class TestSSHTunnel:
    def test_start_and_close(self, ssh_client):
        tunnel = SSHTunnel(TunnelDescriptor(host="bastion", username="ops", password="pw"), "db", 5432).start()
        try:
            host, port = tunnel.local_address
            assert host == "127.0.0.1"
            assert port > 0
            kwargs = ssh_client.connect.call_args.kwargs
            assert kwargs["port"] == 22
            assert kwargs["username"] == "ops"
            assert kwargs["password"] == "pw"
            assert kwargs["look_for_keys"] is False
        finally:
            tunnel.close()
        ssh_client.close.assert_called_once()
        with pytest.raises(RuntimeError):
            tunnel.local_address

    def test_connect_failure(self, ssh_client):
        ssh_client.connect.side_effect = paramiko.AuthenticationException("auth failed")
        tunnel = SSHTunnel(TunnelDescriptor(host="bastion", password="pw"), "db", 5432)
        with pytest.raises(TunnelConnectError, match="failed to establish SSH connection"):
            tunnel.start()
        ssh_client.close.assert_called_once()

    def test_forwards_bytes(self, ssh_client):
        channel_local, channel_remote = socket.socketpair()
        transport = ssh_client.get_transport.return_value
        transport.open_channel.return_value = channel_local

        with SSHTunnel(TunnelDescriptor(host="bastion", password="pw"), "db", 5432) as tunnel:
            client = socket.create_connection(tunnel.local_address, timeout=5)
            try:
                client.sendall(b"ping")
                assert recv_exactly(channel_remote, 4) == b"ping"
                channel_remote.sendall(b"pong")
                client.settimeout(5)
                assert recv_exactly(client, 4) == b"pong"
            finally:
                client.close()
                channel_remote.close()

        kind, dest = transport.open_channel.call_args.args[:2]
        assert kind == "direct-tcpip"
        assert dest == ("db", 5432)

    def test_dial_failure_closes_only_that_socket(self, ssh_client):
        transport = ssh_client.get_transport.return_value
        transport.open_channel.side_effect = paramiko.ChannelException(1, "administratively prohibited")

        with SSHTunnel(TunnelDescriptor(host="bastion", password="pw"), "db", 5432) as tunnel:
            client = socket.create_connection(tunnel.local_address, timeout=5)
            try:
                assert client.recv(1) == b""
            finally:
                client.close()
            assert tunnel.failed is False
            tunnel.raise_if_failed()

    def test_raise_if_failed_after_listener_failure(self):
        tunnel = SSHTunnel(TunnelDescriptor(host="bastion", password="pw"), "db", 5432)
        tunnel._failure = TunnelAcceptFailure("failed to accept local connection: bad fd")
        assert tunnel.failed is True
        with pytest.raises(TunnelAcceptFailure) as exc_info:
            tunnel.raise_if_failed()
        assert exc_info.value.retryable is False

    def test_raise_if_failed_when_session_dropped(self):
        tunnel = SSHTunnel(TunnelDescriptor(host="bastion", password="pw"), "db", 5432)
        tunnel._transport = MagicMock()
        tunnel._transport.is_active.return_value = False
        with pytest.raises(TunnelConnectError, match="no longer active"):
            tunnel.raise_if_failed()
