"""
Timer and clock seams for the playback engine.

The controller and watchdog never call the event loop or the system clock
directly; they go through a Scheduler and a clock callable so that tests can
drive them with virtual time.
"""

import asyncio
import time
from typing import Any, Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(self, delay_sec: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        ...


class LoopScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def call_later(self, delay_sec: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay_sec, callback, *args)


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000.0
