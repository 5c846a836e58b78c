import socket
import threading

import pytest

from fibernet.epoll_server import RESPONSE, create_listener, main, serve


def _request(port, payload):
    with socket.create_connection(("127.0.0.1", port), timeout=10) as client:
        client.sendall(payload)
        chunks = []
        while True:
            chunk = client.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks)


@pytest.fixture
def server():
    listener = create_listener("127.0.0.1", 0)
    port = listener.getsockname()[1]
    stop = threading.Event()
    thread = threading.Thread(target=serve, args=(listener, stop), daemon=True)
    thread.start()
    yield port, stop, thread, listener
    stop.set()
    thread.join(10)


def test_create_listener_reuses_address():
    listener = create_listener("127.0.0.1", 0)
    try:
        assert bool(listener.getsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR)) is True
        assert listener.getblocking() is True
    finally:
        listener.close()


def test_response_body_is_one():
    assert RESPONSE.startswith(b"HTTP/1.1 200 OK\r\n")
    assert RESPONSE.endswith(b"\r\n\r\n1")


def test_serves_fixed_response(server):
    port, _, _, _ = server
    assert _request(port, b"GET / HTTP/1.1\r\n\r\n") == RESPONSE


def test_silent_client_then_request(server):
    port, _, _, _ = server
    socket.create_connection(("127.0.0.1", port), timeout=10).close()
    assert _request(port, b"GET / HTTP/1.1\r\n\r\n") == RESPONSE


def test_many_clients(server):
    port, _, _, _ = server
    replies = [_request(port, b"GET / HTTP/1.1\r\n\r\n") for _ in range(12)]
    assert all(reply == RESPONSE for reply in replies)


def test_stop_closes_listener(server):
    port, stop, thread, listener = server
    idle = socket.create_connection(("127.0.0.1", port), timeout=10)
    try:
        stop.set()
        thread.join(10)
        assert not thread.is_alive()
        assert listener.fileno() == -1
    finally:
        idle.close()


def test_main_reports_bind_failure():
    occupant = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    occupant.bind(("127.0.0.1", 0))
    occupant.listen(1)
    try:
        port = occupant.getsockname()[1]
        assert main(["--host", "127.0.0.1", "--port", str(port)]) == 1
    finally:
        occupant.close()