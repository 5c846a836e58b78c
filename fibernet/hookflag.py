"""Per-thread switch that turns cooperative I/O on or off."""

from __future__ import annotations

from .thread import _context

_KEY = "hook_enable"


def is_hook_enable() -> bool:
    """Return whether the calling thread uses the cooperative I/O functions."""
    return bool(_context().values.get(_KEY, False))


def set_hook_enable(flag: bool) -> None:
    """Turn cooperative I/O on or off for the calling thread."""
    _context().values[_KEY] = bool(flag)