"""
State module for podradio.

This package contains the authoritative playback state record.
"""

from podradio.state.playback_state import (
    AdvanceReason,
    ControlResult,
    NowPlaying,
    PlaybackState,
    PlaybackStatus,
)

__all__ = ["AdvanceReason", "ControlResult", "NowPlaying", "PlaybackState", "PlaybackStatus"]
