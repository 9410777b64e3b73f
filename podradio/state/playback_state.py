"""
Playback State for podradio.

The single authoritative, mutable record of what the radio is doing. Created
once at process start and mutated only by the PlaybackController.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from podradio.broadcast_core.episode_queue import Episode


class PlaybackStatus(enum.Enum):
    """Playback status. WAITING_FOR_LISTENER is never re-entered once left."""
    WAITING_FOR_LISTENER = "waiting_for_listener"
    STARTING = "starting"
    PLAYING = "playing"
    PAUSED_EMPTY = "paused_empty"
    PAUSED_MANUAL = "paused_manual"
    TRANSITIONING = "transitioning"


PAUSED_STATES = frozenset({PlaybackStatus.PAUSED_EMPTY, PlaybackStatus.PAUSED_MANUAL})
ACTIVE_STATES = frozenset({PlaybackStatus.STARTING, PlaybackStatus.PLAYING})


class AdvanceReason(enum.Enum):
    """Why the queue cursor last moved."""
    CLEAN = "clean"
    ERROR = "error"
    STALL = "stall"
    START_FAILED = "start_failed"
    SKIP = "skip"


@dataclass
class PlaybackState:
    """
    Authoritative playback record.

    Invariant: while status is PLAYING, resume_offset_ms plus the time elapsed
    since segment_started_at_ms is the true playback position.

    generation identifies the current segment. Every timer and asynchronous
    callback is tagged with the generation it was created for, and anything
    carrying an older generation is ignored.

    start_token is the single in-flight start slot: it holds the generation
    of a start that has not finished spawning yet, or None.
    """
    status: PlaybackStatus = PlaybackStatus.WAITING_FOR_LISTENER
    current_episode: Optional[Episode] = None
    resume_offset_ms: int = 0
    segment_started_at_ms: Optional[float] = None
    paused_at_ms: Optional[float] = None
    pipeline_handle: Optional[Any] = None
    generation: int = 0
    start_token: Optional[int] = None
    last_advance: Optional[AdvanceReason] = None

    def elapsed_ms(self, now_ms: float) -> int:
        """Milliseconds played in the current segment (0 unless PLAYING)."""
        if self.status is not PlaybackStatus.PLAYING or self.segment_started_at_ms is None:
            return 0
        return max(0, int(now_ms - self.segment_started_at_ms))

    def position_ms(self, now_ms: float) -> int:
        """True playback position within the current episode."""
        return self.resume_offset_ms + self.elapsed_ms(now_ms)

    @property
    def start_in_flight(self) -> bool:
        return self.start_token is not None and self.start_token == self.generation


@dataclass(frozen=True)
class NowPlaying:
    """Read-only snapshot returned to the control surface."""
    episode: Optional[Episode]
    position_ms: int
    status: PlaybackStatus


@dataclass(frozen=True)
class ControlResult:
    """Outcome of a control operation; reason explains a refusal."""
    ok: bool
    reason: str = ""


def ms_to_hms(ms: int) -> str:
    """Format milliseconds as H:MM:SS, or MM:SS under an hour."""
    s = max(0, int(ms)) // 1000
    h = s // 3600
    m = (s % 3600) // 60
    sec = s % 60
    return (f"{h}:" if h else "") + f"{m:02d}:{sec:02d}"
