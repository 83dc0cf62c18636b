"""Best-effort "something changed" signalling between daemons.

After a push, a daemon tells its peers by UDP broadcast and over a stream
connection to the relay. Both channels carry the same fixed payload and
nothing else: no identity, no sequence number, no acknowledgement. A lost or
duplicated signal only costs (or saves) one sync that would have found nothing
to do.

Architecture:
    push ─► PeerNotifier.notify_peers ─┬─► UDP broadcast ─────────► peers
                                       └─► stream ─► relay ───────► peers

    UDP listener ─┐
                  ├─► on_signal ─► daemon command queue ─► sync()
    stream reader ┘
"""

import logging
import socket
import threading
from collections.abc import Callable

from .config import PeersConfig, parse_address
from .constants import APP_NAME, PEER_MESSAGE

logger = logging.getLogger(APP_NAME)

SignalHandler = Callable[[str], None]

# Short socket timeouts keep the listener threads responsive to stop().
_POLL_TIMEOUT = 0.5
_CONNECT_TIMEOUT = 3


class PeerNotifier:
    """Sends and receives peer signals.

    Usage:
        peers = PeerNotifier(config.peers)
        peers.start(on_signal=lambda source: queue.put(...))
        coordinator.register_push_hook(peers.notify_peers)
        ...
        peers.stop()

    Attributes:
        address (tuple[str, int]): The relay the stream connection goes to.
        broadcast_port (int): UDP port that signals are sent to and read from.
        broadcast_host (str): Destination of outgoing datagrams.
        listen_host (str): Interface the UDP listener binds to.
    """

    def __init__(
        self,
        config: PeersConfig,
        broadcast_host: str = "<broadcast>",
        listen_host: str = "",
    ):
        self.address = parse_address(config.address)
        self.broadcast_port = config.broadcast_port
        self.broadcast_host = broadcast_host
        self.listen_host = listen_host
        self.reconnect_delay = config.reconnect_delay

        self._on_signal: SignalHandler | None = None
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

        self._conn: socket.socket | None = None
        self._conn_lock = threading.Lock()

    @property
    def connected(self) -> bool:
        """Whether the stream connection to the relay is currently open."""
        with self._conn_lock:
            return self._conn is not None

    # --- Sending ---

    def notify_peers(self) -> None:
        """Tells every reachable peer that the remote has changed.

        Both sends are attempted independently; failures are logged and dropped.
        """
        self._send_broadcast()
        self._send_stream()

    def _send_broadcast(self) -> None:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
                sock.sendto(PEER_MESSAGE, (self.broadcast_host, self.broadcast_port))
            logger.info(f"Broadcast update on port {self.broadcast_port}")
        except OSError as e:
            logger.warning(f"UDP broadcast failed: {e}")

    def _send_stream(self) -> None:
        with self._conn_lock:
            conn = self._conn

        host, port = self.address
        try:
            if conn is not None:
                conn.sendall(PEER_MESSAGE)
            else:
                with socket.create_connection(
                    (host, port), timeout=_CONNECT_TIMEOUT
                ) as one_shot:
                    one_shot.sendall(PEER_MESSAGE)
            logger.info(f"Sent update to {host}:{port}")
        except OSError as e:
            logger.warning(f"Stream send to {host}:{port} failed: {e}")

    # --- Receiving ---

    def start(self, on_signal: SignalHandler) -> None:
        """Starts the UDP listener and the stream reader in background threads.

        Args:
            on_signal (SignalHandler): Called with a short description of the
                                       source ('udp:<ip>' or 'stream') for every
                                       signal received.
        """
        self._on_signal = on_signal
        self._stop.clear()
        for name, target in (
            ("peer-udp", self._listen_datagrams),
            ("peer-stream", self._listen_stream),
        ):
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        """Stops both listeners and closes their sockets."""
        self._stop.set()
        with self._conn_lock:
            if self._conn is not None:
                self._close_quietly(self._conn)
                self._conn = None
        for thread in self._threads:
            thread.join(timeout=2 * _POLL_TIMEOUT + 1)
        self._threads.clear()

    def _signal(self, source: str) -> None:
        logger.info(f"Remote update notification ({source})")
        if self._on_signal is not None:
            self._on_signal(source)

    def _listen_datagrams(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.listen_host, self.broadcast_port))
            sock.settimeout(_POLL_TIMEOUT)
        except OSError as e:
            logger.error(f"UDP listener disabled, cannot bind {self.broadcast_port}: {e}")
            sock.close()
            return

        logger.info(f"Listening for UDP updates on port {self.broadcast_port}")
        with sock:
            while not self._stop.is_set():
                try:
                    data, (addr, _) = sock.recvfrom(len(PEER_MESSAGE) + 64)
                except socket.timeout:
                    continue
                except OSError as e:
                    logger.warning(f"UDP receive error: {e}")
                    self._stop.wait(_POLL_TIMEOUT)
                    continue

                if data == PEER_MESSAGE:
                    self._signal(f"udp:{addr}")
                else:
                    logger.debug(f"Ignoring unexpected datagram from {addr}: {data!r}")

    def _listen_stream(self) -> None:
        host, port = self.address
        while not self._stop.is_set():
            try:
                conn = socket.create_connection((host, port), timeout=_CONNECT_TIMEOUT)
            except OSError as e:
                logger.debug(f"Relay {host}:{port} unreachable: {e}")
                self._stop.wait(self.reconnect_delay)
                continue

            logger.info(f"Connected to relay {host}:{port}")
            conn.settimeout(_POLL_TIMEOUT)
            with self._conn_lock:
                self._conn = conn
            try:
                self._read_stream(conn)
            finally:
                with self._conn_lock:
                    if self._conn is conn:
                        self._conn = None
                self._close_quietly(conn)

            if not self._stop.is_set():
                logger.info(f"Lost relay connection; retrying in {self.reconnect_delay}s")
                self._stop.wait(self.reconnect_delay)

    def _read_stream(self, conn: socket.socket) -> None:
        buffer = b""
        while not self._stop.is_set():
            try:
                chunk = conn.recv(1024)
            except socket.timeout:
                continue
            except OSError as e:
                logger.warning(f"Relay receive error: {e}")
                return

            if not chunk:
                return  # Closed by the relay.

            buffer += chunk
            while b"\n" in buffer:
                line, buffer = buffer.split(b"\n", 1)
                if line + b"\n" == PEER_MESSAGE:
                    self._signal("stream")
                else:
                    logger.debug(f"Ignoring unexpected relay line: {line!r}")

    @staticmethod
    def _close_quietly(sock: socket.socket) -> None:
        try:
            sock.close()
        except OSError as e:
            logger.debug(f"Error closing socket: {e}")
