"""Cooperative versions of blocking socket and sleep calls.

When cooperative I/O is enabled for the calling thread (see
:mod:`fibernet.hookflag`) and the calling fiber runs under an
:class:`~fibernet.ioscheduler.IOManager`, an operation that would block parks
the fiber until the descriptor is ready or its timeout expires, and the thread
goes on with other work. Otherwise every function behaves like the plain call
it wraps.
"""

from __future__ import annotations

import errno
import logging
import os
import socket as _socket
import struct
import time
import weakref
from typing import Any, Callable, Optional, TypeVar

from .fd_manager import get_fd_manager
from .fiber import Fiber
from .hookflag import is_hook_enable
from .ioscheduler import Event, IOManager
from .timer import Timer

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_TIMEVAL = struct.Struct("ll")

# Timeout applied by connect(); None waits without limit.
_connect_timeout: Optional[int] = None


class _TimerInfo:
    """Shared between a waiting operation and its timeout timer."""

    __slots__ = ("cancelled", "__weakref__")

    def __init__(self) -> None:
        self.cancelled = 0


def _fileno(target: Any) -> int:
    if isinstance(target, int):
        return target
    return target.fileno()


def _bad_descriptor() -> OSError:
    return OSError(errno.EBADF, os.strerror(errno.EBADF))


def _arm_timeout(
    iom: IOManager,
    timeout: Optional[int],
    tinfo: _TimerInfo,
    fd: int,
    event: Event,
) -> Optional[Timer]:
    """Start a timer that cancels the wait for ``event`` once ``timeout`` ms pass."""
    if timeout is None:
        return None
    winfo = weakref.ref(tinfo)

    def on_timeout() -> None:
        info = winfo()
        if info is None or info.cancelled:
            return
        info.cancelled = errno.ETIMEDOUT
        iom.cancel_event(fd, event)

    return iom.add_condition_timer(timeout, on_timeout, winfo)


def _do_io(
    target: Any,
    op: Callable[[], _T],
    name: str,
    event: Event,
    timeout_kind: int,
) -> _T:
    """Run ``op``, parking the current fiber while the descriptor is not ready."""
    if not is_hook_enable():
        return op()
    fd = _fileno(target)
    ctx = get_fd_manager().get(fd)
    if ctx is None:
        return op()
    if ctx.is_closed:
        raise _bad_descriptor()
    if not ctx.is_socket or ctx.user_nonblock:
        return op()

    timeout = ctx.get_timeout(timeout_kind)
    tinfo = _TimerInfo()
    while True:
        try:
            return op()
        except InterruptedError:
            continue
        except BlockingIOError:
            iom = IOManager.get_this()
            if iom is None:
                raise

        timer = _arm_timeout(iom, timeout, tinfo, fd, event)
        try:
            iom.add_event(fd, event)
        except (OSError, ValueError, KeyError):
            logger.error("%s add_event(%d, %s) failed", name, fd, event.name)
            if timer is not None:
                timer.cancel()
            raise

        Fiber.get_this().suspend()
        if timer is not None:
            timer.cancel()
        if tinfo.cancelled == errno.ETIMEDOUT:
            raise TimeoutError(errno.ETIMEDOUT, os.strerror(errno.ETIMEDOUT))


def _park(ms: int) -> bool:
    """Reschedule the running fiber after ``ms`` milliseconds; False if not possible."""
    iom = IOManager.get_this()
    if iom is None:
        return False
    fiber = Fiber.get_this()
    iom.add_timer(ms, lambda: iom.schedule(fiber))
    fiber.yield_control()
    return True


def sleep(seconds: int) -> int:
    """Sleep ``seconds`` seconds; a fiber gives its thread to other work meanwhile."""
    if not (is_hook_enable() and _park(int(seconds * 1000))):
        time.sleep(seconds)
    return 0


def usleep(usec: int) -> int:
    """Sleep ``usec`` microseconds (millisecond resolution under a scheduler)."""
    if not (is_hook_enable() and _park(int(usec) // 1000)):
        time.sleep(usec / 1_000_000)
    return 0


def nanosleep(seconds: int, nanoseconds: int) -> int:
    """Sleep ``seconds`` plus ``nanoseconds`` (millisecond resolution under a scheduler)."""
    if is_hook_enable():
        timeout_ms = int(seconds) * 1000 + int(nanoseconds) // 1_000_000
        if _park(timeout_ms):
            return 0
    time.sleep(seconds + nanoseconds / 1_000_000_000)
    return 0


def socket(
    family: int = _socket.AF_INET, type: int = _socket.SOCK_STREAM, proto: int = 0
) -> _socket.socket:
    """Create a socket; with cooperative I/O on it is registered and made non-blocking."""
    sock = _socket.socket(family, type, proto)
    if is_hook_enable():
        get_fd_manager().get(sock.fileno(), True)
    return sock


def connect_with_timeout(
    sock: _socket.socket, address: Any, timeout_ms: Optional[int]
) -> None:
    """Connect, waiting at most ``timeout_ms`` milliseconds (None: no limit)."""
    if not is_hook_enable():
        sock.connect(address)
        return
    ctx = get_fd_manager().get(sock.fileno())
    if ctx is None or ctx.is_closed:
        raise _bad_descriptor()
    if not ctx.is_socket or ctx.user_nonblock:
        sock.connect(address)
        return

    err = sock.connect_ex(address)
    if err == 0:
        return
    if err != errno.EINPROGRESS:
        raise OSError(err, os.strerror(err))

    iom = IOManager.get_this()
    if iom is None:
        raise BlockingIOError(errno.EINPROGRESS, os.strerror(errno.EINPROGRESS))

    fd = sock.fileno()
    tinfo = _TimerInfo()
    timer = _arm_timeout(iom, timeout_ms, tinfo, fd, Event.WRITE)
    try:
        iom.add_event(fd, Event.WRITE)
    except (OSError, ValueError, KeyError):
        if timer is not None:
            timer.cancel()
        logger.error("connect add_event(%d, WRITE) failed", fd)
    else:
        Fiber.get_this().suspend()
        if timer is not None:
            timer.cancel()
        if tinfo.cancelled:
            raise OSError(tinfo.cancelled, os.strerror(tinfo.cancelled))

    error = sock.getsockopt(_socket.SOL_SOCKET, _socket.SO_ERROR)
    if error:
        raise OSError(error, os.strerror(error))


def connect(sock: _socket.socket, address: Any) -> None:
    """Connect using the default connect timeout."""
    connect_with_timeout(sock, address, _connect_timeout)


def accept(sock: _socket.socket) -> tuple[_socket.socket, Any]:
    """Accept a connection; the new socket is registered for cooperative I/O."""
    conn, addr = _do_io(sock, sock.accept, "accept", Event.READ, _socket.SO_RCVTIMEO)
    get_fd_manager().get(conn.fileno(), True)
    return conn, addr


def read(fd: Any, count: int) -> bytes:
    """Read up to ``count`` bytes from a descriptor."""
    number = _fileno(fd)
    return _do_io(number, lambda: os.read(number, count), "read", Event.READ, _socket.SO_RCVTIMEO)


def recv(sock: _socket.socket, bufsize: int, flags: int = 0) -> bytes:
    """Receive up to ``bufsize`` bytes."""
    return _do_io(
        sock, lambda: sock.recv(bufsize, flags), "recv", Event.READ, _socket.SO_RCVTIMEO
    )


def recvfrom(sock: _socket.socket, bufsize: int, flags: int = 0) -> tuple[bytes, Any]:
    """Receive up to ``bufsize`` bytes and the sender's address."""
    return _do_io(
        sock, lambda: sock.recvfrom(bufsize, flags), "recvfrom", Event.READ, _socket.SO_RCVTIMEO
    )


def write(fd: Any, data: bytes) -> int:
    """Write ``data`` to a descriptor, returning the number of bytes written."""
    number = _fileno(fd)
    return _do_io(number, lambda: os.write(number, data), "write", Event.WRITE, _socket.SO_SNDTIMEO)


def send(sock: _socket.socket, data: bytes, flags: int = 0) -> int:
    """Send ``data``, returning the number of bytes sent."""
    return _do_io(
        sock, lambda: sock.send(data, flags), "send", Event.WRITE, _socket.SO_SNDTIMEO
    )


def sendto(sock: _socket.socket, data: bytes, address: Any) -> int:
    """Send a datagram to ``address``."""
    return _do_io(
        sock, lambda: sock.sendto(data, address), "sendto", Event.WRITE, _socket.SO_SNDTIMEO
    )


def close(sock: Any) -> None:
    """Close a socket or descriptor, waking every fiber waiting on it first."""
    fd = _fileno(sock)
    if is_hook_enable():
        manager = get_fd_manager()
        if manager.get(fd) is not None:
            iom = IOManager.get_this()
            if iom is not None:
                iom.cancel_all(fd)
            manager.delete(fd)
    if isinstance(sock, int):
        os.close(sock)
    else:
        sock.close()


def set_nonblocking(sock: Any, flag: bool) -> None:
    """Choose non-blocking mode as the caller sees it.

    A registered socket stays non-blocking underneath; the flag only decides
    whether its operations wait cooperatively or report that they would block.
    """
    fd = _fileno(sock)
    ctx = get_fd_manager().get(fd)
    if ctx is None or ctx.is_closed or not ctx.is_socket:
        if isinstance(sock, int):
            os.set_blocking(fd, not flag)
        else:
            sock.setblocking(not flag)
        return
    ctx.user_nonblock = bool(flag)
    os.set_blocking(fd, not ctx.sys_nonblock)


def get_nonblocking(sock: Any) -> bool:
    """Whether the caller sees the descriptor as non-blocking."""
    fd = _fileno(sock)
    actual = not os.get_blocking(fd)
    ctx = get_fd_manager().get(fd)
    if ctx is None or ctx.is_closed or not ctx.is_socket:
        return actual
    return ctx.user_nonblock


def getsockopt(sock: _socket.socket, level: int, optname: int) -> int:
    """Read an integer socket option."""
    return sock.getsockopt(level, optname)


def _timeval(value: Any) -> tuple[int, bytes]:
    """Return the timeout in milliseconds and its packed struct timeval."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        packed = bytes(value)
        seconds, micros = _TIMEVAL.unpack(packed[: _TIMEVAL.size])
    else:
        seconds = int(value)
        micros = int(round((value - seconds) * 1_000_000))
        packed = _TIMEVAL.pack(seconds, micros)
    return seconds * 1000 + micros // 1000, packed


def setsockopt(sock: _socket.socket, level: int, optname: int, value: Any) -> None:
    """Set a socket option; receive and send timeouts are also kept for cooperative waits.

    Timeouts may be given in seconds or as a packed ``struct timeval``.
    """
    if level == _socket.SOL_SOCKET and optname in (_socket.SO_RCVTIMEO, _socket.SO_SNDTIMEO):
        ms, value = _timeval(value)
        if is_hook_enable():
            ctx = get_fd_manager().get(sock.fileno())
            if ctx is not None:
                ctx.set_timeout(optname, ms)
    sock.setsockopt(level, optname, value)