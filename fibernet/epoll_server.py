"""Single-threaded HTTP responder driven by a readiness selector."""

from __future__ import annotations

import argparse
import logging
import selectors
import socket
import sys
import threading
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8888
MAX_EVENTS = 10
BACKLOG = 1024
BUFFER_SIZE = 1024
POLL_INTERVAL = 0.1

RESPONSE = (
    b"HTTP/1.1 200 OK\r\n"
    b"Content-Type: text/plain\r\n"
    b"Content-Length: 1\r\n"
    b"Connection: keep-alive\r\n"
    b"\r\n"
    b"1"
)


def create_listener(host: str = "0.0.0.0", port: int = DEFAULT_PORT) -> socket.socket:
    """Open a listening TCP socket with address reuse enabled."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(BACKLOG)
    except OSError:
        sock.close()
        raise
    return sock


def _answer(selector: selectors.BaseSelector, conn: socket.socket) -> None:
    selector.unregister(conn)
    try:
        data = conn.recv(BUFFER_SIZE - 1)
    except OSError:
        data = b""
    if data:
        try:
            conn.send(RESPONSE)
        except OSError as exc:
            logger.debug("write failed: %s", exc)
    conn.close()


def serve(listener: socket.socket, stop: Optional[threading.Event] = None) -> None:
    """Answer connections until ``stop`` is set; the listener is closed afterwards."""
    selector = selectors.DefaultSelector()
    selector.register(listener, selectors.EVENT_READ)
    timeout = None if stop is None else POLL_INTERVAL
    try:
        while stop is None or not stop.is_set():
            for key, _ in selector.select(timeout)[:MAX_EVENTS]:
                if key.fileobj is listener:
                    try:
                        conn, _ = listener.accept()
                    except OSError as exc:
                        logger.error("accept: %s", exc)
                        continue
                    selector.register(conn, selectors.EVENT_READ)
                else:
                    _answer(selector, key.fileobj)
    finally:
        for key in list(selector.get_map().values()):
            if key.fileobj is not listener:
                key.fileobj.close()
        selector.close()
        listener.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Selector-driven HTTP responder.")
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