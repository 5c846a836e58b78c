"""HTTP responder built on persistent read callbacks in an event loop."""

from __future__ import annotations

import argparse
import logging
import selectors
import socket
import sys
import threading
from typing import Callable, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080
FD_SETSIZE = 1024
BACKLOG = 1024
BUFFER_SIZE = 1024
POLL_INTERVAL = 0.1

RESPONSE = (
    b"HTTP/1.1 200 OK\r\n"
    b"Content-Type: text/plain\r\n"
    b"Content-Length: 13\r\n"
    b"Connection: keep-alive\r\n"
    b"\r\n"
    b"Hello, World!"
)


def create_listener(host: str = "0.0.0.0", port: int = DEFAULT_PORT) -> socket.socket:
    """Open a non-blocking listening TCP socket with address reuse enabled."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setblocking(False)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(BACKLOG)
    except OSError:
        sock.close()
        raise
    return sock


class _EventBase:
    """Dispatches readiness of registered sockets to their callbacks."""

    def __init__(self) -> None:
        self._selector = selectors.DefaultSelector()

    def add(self, sock: socket.socket, callback: Callable[[socket.socket], None]) -> None:
        self._selector.register(sock, selectors.EVENT_READ, callback)

    def remove(self, sock: socket.socket) -> None:
        self._selector.unregister(sock)

    def dispatch(self, timeout: Optional[float]) -> None:
        for key, _ in self._selector.select(timeout):
            key.data(key.fileobj)

    def close(self, keep: socket.socket) -> None:
        for key in list(self._selector.get_map().values()):
            if key.fileobj is not keep:
                key.fileobj.close()
        self._selector.close()


def serve(listener: socket.socket, stop: Optional[threading.Event] = None) -> None:
    """Answer connections until ``stop`` is set; the listener is closed afterwards."""
    base = _EventBase()

    def on_read(conn: socket.socket) -> None:
        try:
            data = conn.recv(BUFFER_SIZE - 1)
        except OSError:
            data = b""
        if data:
            print(f"received message: {data.decode('utf-8', 'replace')}")
            try:
                conn.send(RESPONSE)
            except OSError as exc:
                logger.debug("send failed: %s", exc)
        base.remove(conn)
        conn.close()

    def on_accept(sock: socket.socket) -> None:
        try:
            conn, _ = sock.accept()
        except OSError as exc:
            logger.error("accept: %s", exc)
            return
        if conn.fileno() > FD_SETSIZE:
            conn.close()
            return
        base.add(conn, on_read)

    base.add(listener, on_accept)
    timeout = None if stop is None else POLL_INTERVAL
    try:
        while stop is None or not stop.is_set():
            base.dispatch(timeout)
    finally:
        base.close(listener)
        listener.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Callback-driven HTTP responder.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    args = parser.parse_args(argv)

    try:
        listener = create_listener(args.host, args.port)
    except OSError as exc:
        print(f"listener: {exc}", file=sys.stderr)
        return 1
    try:
        serve(listener)
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())