import logging
import socket
import socketserver
import threading

from .config import parse_address
from .constants import APP_NAME, PEER_MESSAGE

logger = logging.getLogger(APP_NAME)

# Longer lines are read and discarded in pieces of this size.
_MAX_LINE = len(PEER_MESSAGE) + 64


class _RelayHandler(socketserver.StreamRequestHandler):
    """Serves one connected daemon for the lifetime of its connection."""

    server: "RelayServer"

    def handle(self) -> None:
        peer = "%s:%s" % self.client_address[:2]
        self.server.add_client(self.request)
        logger.info(f"Client connected: {peer}")
        try:
            while True:
                line = self.rfile.readline(_MAX_LINE)
                if not line:
                    break
                if line == PEER_MESSAGE:
                    logger.info(f"Update from {peer}")
                    self.server.forward(line, sender=self.request)
                else:
                    logger.debug(f"Ignoring unexpected line from {peer}: {line!r}")
        except OSError as e:
            logger.warning(f"Connection error from {peer}: {e}")
        finally:
            self.server.remove_client(self.request)
            logger.info(f"Client disconnected: {peer}")


class RelayServer(socketserver.ThreadingTCPServer):
    """Forwards every update signal to all other connected daemons.

    Each daemon keeps one stream connection open. A signal from one client is
    written to every other client; a client that cannot be written to is
    dropped without affecting the rest.
    """

    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, address: tuple[str, int]):
        super().__init__(address, _RelayHandler)
        self._clients: set[socket.socket] = set()
        self._clients_lock = threading.Lock()

    @property
    def client_count(self) -> int:
        with self._clients_lock:
            return len(self._clients)

    def add_client(self, conn: socket.socket) -> None:
        with self._clients_lock:
            self._clients.add(conn)

    def remove_client(self, conn: socket.socket) -> None:
        with self._clients_lock:
            self._clients.discard(conn)

    def forward(self, payload: bytes, sender: socket.socket | None = None) -> int:
        """Sends `payload` to every client except `sender`.

        Returns:
            int: The number of clients the payload was delivered to.
        """
        with self._clients_lock:
            targets = [c for c in self._clients if c is not sender]

        delivered = 0
        for conn in targets:
            try:
                conn.sendall(payload)
                delivered += 1
            except OSError as e:
                logger.warning(f"Dropping unreachable client: {e}")
                self.remove_client(conn)
        return delivered


def run_relay(address: str) -> None:
    """Runs the relay in the foreground until interrupted.

    Args:
        address (str): 'host:port' to listen on.
    """
    host, port = parse_address(address)
    with RelayServer((host, port)) as server:
        logger.info(f"Relay listening on {host}:{port}")
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            logger.info("Relay stopped.")
