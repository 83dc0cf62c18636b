"""Tests for peer signalling over UDP and the relay stream."""

import logging
import socket
import threading
from collections.abc import Iterator
from unittest.mock import MagicMock

import pytest

from git_murmur.config import PeersConfig
from git_murmur.constants import APP_NAME, PEER_MESSAGE
from git_murmur.peers import PeerNotifier


def _free_port(kind: int = socket.SOCK_STREAM) -> int:
    with socket.socket(socket.AF_INET, kind) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class SignalRecorder:
    def __init__(self) -> None:
        self.sources: list[str] = []
        self.received = threading.Event()

    def __call__(self, source: str) -> None:
        self.sources.append(source)
        self.received.set()


@pytest.fixture
def relay_socket() -> Iterator[socket.socket]:
    """A bare listening socket standing in for the relay."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", 0))
    server.listen()
    server.settimeout(5)
    yield server
    server.close()


def _config(stream_port: int, udp_port: int | None = None) -> PeersConfig:
    return PeersConfig(
        address=f"127.0.0.1:{stream_port}",
        broadcast_port=udp_port or _free_port(socket.SOCK_DGRAM),
        reconnect_delay=0.1,
    )


def test_notify_peers_broadcasts_fixed_message(mocker: MagicMock) -> None:
    """Verifies the datagram payload and destination."""
    mock_socket_cls = mocker.patch("git_murmur.peers.socket.socket")
    sock = mock_socket_cls.return_value.__enter__.return_value
    mocker.patch(
        "git_murmur.peers.socket.create_connection", side_effect=OSError("refused")
    )

    peers = PeerNotifier(PeersConfig(broadcast_port=9999))
    peers.notify_peers()

    sock.setsockopt.assert_called_once_with(
        socket.SOL_SOCKET, socket.SO_BROADCAST, 1
    )
    sock.sendto.assert_called_once_with(b"Updated\n", ("<broadcast>", 9999))


def test_transport_failures_are_swallowed(
    mocker: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that neither send failure escapes notify_peers."""
    caplog.set_level(logging.WARNING, logger=APP_NAME)
    mock_socket_cls = mocker.patch("git_murmur.peers.socket.socket")
    sock = mock_socket_cls.return_value.__enter__.return_value
    sock.sendto.side_effect = OSError("Network is unreachable")
    mocker.patch(
        "git_murmur.peers.socket.create_connection",
        side_effect=ConnectionRefusedError("refused"),
    )

    PeerNotifier(PeersConfig()).notify_peers()

    assert "UDP broadcast failed" in caplog.text
    assert "Stream send to 127.0.0.1:8007 failed" in caplog.text


def test_one_shot_stream_send_without_relay_connection(
    relay_socket: socket.socket, mocker: MagicMock
) -> None:
    """Verifies a direct connection is made when no persistent one is open."""
    mocker.patch("git_murmur.peers.PeerNotifier._send_broadcast")
    port = relay_socket.getsockname()[1]

    PeerNotifier(_config(port)).notify_peers()

    conn, _ = relay_socket.accept()
    with conn:
        conn.settimeout(5)
        assert conn.recv(64) == PEER_MESSAGE


def test_udp_signal_is_forwarded() -> None:
    """Verifies that a received datagram produces exactly one signal."""
    recorder = SignalRecorder()
    udp_port = _free_port(socket.SOCK_DGRAM)
    peers = PeerNotifier(
        _config(_free_port(), udp_port), listen_host="127.0.0.1"
    )
    peers.start(recorder)
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
            # The listener may not be bound yet; resend until it hears us.
            for _ in range(20):
                sender.sendto(PEER_MESSAGE, ("127.0.0.1", udp_port))
                if recorder.received.wait(0.25):
                    break
        assert recorder.sources[0] == "udp:127.0.0.1"
    finally:
        peers.stop()


def test_unexpected_datagram_is_ignored() -> None:
    recorder = SignalRecorder()
    udp_port = _free_port(socket.SOCK_DGRAM)
    peers = PeerNotifier(
        _config(_free_port(), udp_port), listen_host="127.0.0.1"
    )
    peers.start(recorder)
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
            for _ in range(4):
                sender.sendto(b"hello\n", ("127.0.0.1", udp_port))
        assert not recorder.received.wait(1)
    finally:
        peers.stop()


def test_stream_signal_and_persistent_send(relay_socket: socket.socket) -> None:
    """Verifies both directions over the persistent relay connection."""
    recorder = SignalRecorder()
    port = relay_socket.getsockname()[1]
    peers = PeerNotifier(_config(port), listen_host="127.0.0.1")
    peers.start(recorder)
    try:
        conn, _ = relay_socket.accept()
        with conn:
            conn.settimeout(5)

            # Relay -> daemon, split across two writes.
            conn.sendall(b"Upd")
            conn.sendall(b"ated\n")
            assert recorder.received.wait(5)
            assert recorder.sources == ["stream"]

            # Daemon -> relay, over the same connection.
            assert peers.connected
            peers._send_stream()
            assert conn.recv(64) == PEER_MESSAGE
    finally:
        peers.stop()


def test_stream_reconnects_after_relay_drops(relay_socket: socket.socket) -> None:
    recorder = SignalRecorder()
    port = relay_socket.getsockname()[1]
    peers = PeerNotifier(_config(port), listen_host="127.0.0.1")
    peers.start(recorder)
    try:
        first, _ = relay_socket.accept()
        first.close()

        second, _ = relay_socket.accept()
        with second:
            second.sendall(PEER_MESSAGE)
            assert recorder.received.wait(5)
    finally:
        peers.stop()
