"""Bookkeeping for file descriptors used with cooperative I/O."""

from __future__ import annotations

import os
import socket
import stat
import threading
from typing import Any, Optional

_INITIAL_SLOTS = 64


class FdCtx:
    """What is known about one descriptor: socket or not, blocking mode, timeouts."""

    def __init__(self, fd: int) -> None:
        self.fd = fd
        self.is_init = False
        self.is_socket = False
        self.sys_nonblock = False
        self.user_nonblock = False
        self.is_closed = False
        self.recv_timeout: Optional[int] = None
        self.send_timeout: Optional[int] = None
        self.init()

    def __repr__(self) -> str:
        return f"FdCtx(fd={self.fd}, socket={self.is_socket}, init={self.is_init})"

    def init(self) -> bool:
        """Inspect the descriptor; sockets are switched to non-blocking mode."""
        if self.is_init:
            return True
        try:
            st = os.fstat(self.fd)
        except OSError:
            self.is_init = False
            self.is_socket = False
        else:
            self.is_init = True
            self.is_socket = stat.S_ISSOCK(st.st_mode)

        if self.is_socket:
            if os.get_blocking(self.fd):
                os.set_blocking(self.fd, False)
            self.sys_nonblock = True
        else:
            self.sys_nonblock = False
        return self.is_init

    def set_timeout(self, kind: int, value: Optional[int]) -> None:
        """Set the receive timeout for SO_RCVTIMEO, otherwise the send timeout (ms)."""
        if kind == socket.SO_RCVTIMEO:
            self.recv_timeout = value
        else:
            self.send_timeout = value

    def get_timeout(self, kind: int) -> Optional[int]:
        """Timeout in milliseconds, or None when there is none."""
        if kind == socket.SO_RCVTIMEO:
            return self.recv_timeout
        return self.send_timeout


def _as_fd(fd: Any) -> int:
    if isinstance(fd, int):
        return fd
    return fd.fileno()


class FdManager:
    """Table of FdCtx objects indexed by descriptor number."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._datas: list[Optional[FdCtx]] = [None] * _INITIAL_SLOTS

    def get(self, fd: Any, auto_create: bool = False) -> Optional[FdCtx]:
        """Look up a descriptor, creating its entry when ``auto_create`` is set."""
        fd = _as_fd(fd)
        if fd < 0:
            return None
        with self._lock:
            if fd < len(self._datas):
                existing = self._datas[fd]
                if existing is not None or not auto_create:
                    return existing
            elif not auto_create:
                return None
            if fd >= len(self._datas):
                self._datas.extend([None] * (int(fd * 1.5) - len(self._datas)))
            ctx = FdCtx(fd)
            self._datas[fd] = ctx
            return ctx

    def delete(self, fd: Any) -> None:
        """Forget a descriptor."""
        fd = _as_fd(fd)
        with self._lock:
            if 0 <= fd < len(self._datas):
                self._datas[fd] = None


_instance: Optional[FdManager] = None
_instance_lock = threading.Lock()


def get_fd_manager() -> FdManager:
    """Return the process-wide descriptor table, creating it on first use."""
    global _instance
    with _instance_lock:
        if _instance is None:
            _instance = FdManager()
        return _instance


def destroy_fd_manager() -> None:
    """Drop the process-wide descriptor table."""
    global _instance
    with _instance_lock:
        _instance = None