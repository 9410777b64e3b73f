"""
Startup watchdog for podradio.

Single-shot timer armed when a segment's pipeline is spawned. If the pipeline
has not produced its first bytes when the timer expires, the owner is told
which segment stalled.
"""

import logging
from typing import Callable, Optional

from podradio.broadcast_core.scheduling import LoopScheduler, Scheduler, TimerHandle

logger = logging.getLogger(__name__)

DEFAULT_WATCHDOG_TIMEOUT_SEC = 45.0


class Watchdog:
    """
    Generation-tagged single-shot timer.

    Each arming belongs to exactly one segment generation. Re-arming cancels
    the previous timer, and a fire whose generation no longer matches the
    armed one is dropped, so a stale timer can never act on a later segment.
    """

    def __init__(
        self,
        on_fire: Callable[[int], None],
        timeout_sec: float = DEFAULT_WATCHDOG_TIMEOUT_SEC,
        scheduler: Optional[Scheduler] = None,
    ):
        self.timeout_sec = timeout_sec
        self._on_fire = on_fire
        self._scheduler = scheduler or LoopScheduler()
        self._timer: Optional[TimerHandle] = None
        self._generation: Optional[int] = None

    @property
    def armed(self) -> bool:
        return self._timer is not None

    @property
    def generation(self) -> Optional[int]:
        return self._generation

    def arm(self, generation: int) -> None:
        self.disarm()
        self._generation = generation
        self._timer = self._scheduler.call_later(self.timeout_sec, self._fire, generation)
        logger.debug(f"[WATCHDOG] Armed for segment {generation} ({self.timeout_sec:.1f}s)")

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            logger.debug(f"[WATCHDOG] Disarmed (segment {self._generation})")
        self._timer = None
        self._generation = None

    def _fire(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._timer = None
        self._generation = None
        logger.warning(f"[WATCHDOG] No audio bytes within {self.timeout_sec:.1f}s (segment {generation})")
        self._on_fire(generation)
