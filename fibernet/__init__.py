"""Fibers, fiber pools, timers, schedulers, an I/O manager, cooperative socket calls and demo HTTP responders."""

__version__ = "0.1.0"