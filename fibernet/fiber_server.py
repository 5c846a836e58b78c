"""HTTP responder built on the fiber I/O scheduler.

Every connection gets one fixed plain-text response and is then closed.
"""

from __future__ import annotations

import argparse
import functools
import logging
import socket
import sys
import threading
from typing import Optional, Sequence

from . import hook
from .ioscheduler import Event, IOManager

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080
DEFAULT_THREADS = 8
BACKLOG = 1024
BUFFER_SIZE = 1024

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
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(BACKLOG)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class _FiberServer:
    """Accepts connections and answers them from scheduler callbacks."""

    def __init__(self, listener: socket.socket, iom: IOManager) -> None:
        self.listener = listener
        self.iom = iom
        self.lock = threading.Lock()
        self.closing = False
        self.connections: set[socket.socket] = set()

    def watch_listener(self) -> None:
        with self.lock:
            if not self.closing:
                self.iom.add_event(self.listener, Event.READ, self.on_accept)

    def on_accept(self) -> None:
        try:
            conn, _ = hook.accept(self.listener)
        except OSError:
            conn = None
        if conn is not None:
            print(f"accepted connection, fd = {conn.fileno()}")
            hook.set_nonblocking(conn, True)
            with self.lock:
                if self.closing:
                    watched = False
                else:
                    self.connections.add(conn)
                    self.iom.add_event(
                        conn, Event.READ, functools.partial(self.on_readable, conn)
                    )
                    watched = True
            if not watched:
                self._close(conn)
        self.watch_listener()

    def on_readable(self, conn: socket.socket) -> None:
        try:
            data = hook.recv(conn, BUFFER_SIZE)
        except BlockingIOError:
            with self.lock:
                if not self.closing:
                    self.iom.add_event(
                        conn, Event.READ, functools.partial(self.on_readable, conn)
                    )
                    return
            self._close(conn)
            return
        except OSError:
            self._close(conn)
            return
        if data:
            try:
                hook.send(conn, RESPONSE)
            except OSError as exc:
                logger.debug("send failed: %s", exc)
        self._close(conn)

    def _close(self, conn: socket.socket) -> None:
        with self.lock:
            self.connections.discard(conn)
        try:
            hook.close(conn)
        except OSError as exc:
            logger.debug("close failed: %s", exc)

    def shutdown(self) -> None:
        with self.lock:
            self.closing = True
            open_connections = list(self.connections)
        self.iom.del_event(self.listener, Event.READ)
        for conn in open_connections:
            if conn.fileno() < 0:
                continue
            try:
                self.iom.cancel_all(conn)
            except (OSError, ValueError, KeyError) as exc:
                logger.debug("cancel failed: %s", exc)


def serve(
    listener: socket.socket,
    threads: int = DEFAULT_THREADS,
    stop: Optional[threading.Event] = None,
) -> None:
    """Answer connections on ``listener`` until ``stop`` is set, then close it."""
    try:
        with IOManager(threads) as iom:
            server = _FiberServer(listener, iom)
            server.watch_listener()
            try:
                (stop or threading.Event()).wait()
            finally:
                server.shutdown()
    finally:
        listener.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Fiber-based HTTP responder.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--threads", type=int, default=DEFAULT_THREADS)
    args = parser.parse_args(argv)

    try:
        listener = create_listener(args.host, args.port)
    except OSError as exc:
        print(f"Error creating listener: {exc}", file=sys.stderr)
        return 1

    print(f"epoll echo server listening for connections on port: {args.port}")
    try:
        serve(listener, args.threads)
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())