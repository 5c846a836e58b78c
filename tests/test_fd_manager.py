import os
import socket

import pytest

from fibernet.fd_manager import FdCtx, FdManager, destroy_fd_manager, get_fd_manager


@pytest.fixture
def sock():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    yield s
    s.close()


def _closed_fd():
    r, w = os.pipe()
    os.close(r)
    os.close(w)
    return r


def test_socket_is_made_nonblocking(sock):
    assert os.get_blocking(sock.fileno()) is True
    ctx = FdCtx(sock.fileno())
    assert ctx.is_init is True
    assert ctx.is_socket is True
    assert ctx.sys_nonblock is True
    assert ctx.user_nonblock is False
    assert ctx.is_closed is False
    assert os.get_blocking(sock.fileno()) is False


def test_regular_file_is_not_socket(tmp_path):
    path = tmp_path / "data.txt"
    path.write_text("content")
    fd = os.open(path, os.O_RDONLY)
    try:
        ctx = FdCtx(fd)
        assert ctx.is_init is True
        assert ctx.is_socket is False
        assert ctx.sys_nonblock is False
        assert os.get_blocking(fd) is True
    finally:
        os.close(fd)


def test_invalid_fd_is_not_initialised():
    ctx = FdCtx(_closed_fd())
    assert ctx.is_init is False
    assert ctx.is_socket is False
    assert ctx.init() is False


def test_timeouts_default_to_none_and_round_trip(sock):
    ctx = FdCtx(sock.fileno())
    assert ctx.get_timeout(socket.SO_RCVTIMEO) is None
    assert ctx.get_timeout(socket.SO_SNDTIMEO) is None
    ctx.set_timeout(socket.SO_RCVTIMEO, 500)
    assert ctx.get_timeout(socket.SO_RCVTIMEO) == 500
    assert ctx.get_timeout(socket.SO_SNDTIMEO) is None
    ctx.set_timeout(socket.SO_SNDTIMEO, 250)
    assert ctx.get_timeout(socket.SO_SNDTIMEO) == 250
    assert ctx.get_timeout(socket.SO_RCVTIMEO) == 500


def test_manager_get_without_create_returns_none(sock):
    manager = FdManager()
    assert manager.get(sock.fileno()) is None
    assert manager.get(-1, True) is None


def test_manager_creates_and_caches(sock):
    manager = FdManager()
    ctx = manager.get(sock.fileno(), True)
    assert ctx.fd == sock.fileno()
    assert ctx.is_socket is True
    assert manager.get(sock.fileno()) is ctx
    assert manager.get(sock, True) is ctx


def test_manager_delete(sock):
    manager = FdManager()
    manager.get(sock.fileno(), True)
    manager.delete(sock.fileno())
    assert manager.get(sock.fileno()) is None
    manager.delete(100000)
    assert manager.get(100000) is None


def test_manager_grows_for_large_fd():
    manager = FdManager()
    fd = 1000
    ctx = manager.get(fd, True)
    assert ctx.fd == fd
    assert manager.get(fd) is ctx
    assert manager.get(fd + 1) is None


def test_singleton_lifecycle():
    first = get_fd_manager()
    assert get_fd_manager() is first
    destroy_fd_manager()
    second = get_fd_manager()
    assert second is not first
    assert get_fd_manager() is second