"""
Outputs module for podradio.

This package contains the voice sinks, the Discord connection supervisor
and the now-playing activity.
"""

from .base_sink import VoiceSink, NullVoiceSink
from .discord_sink import DiscordVoiceSink, PipelineAudioSource
from .connection_supervisor import ConnectionSupervisor
from .activity import ListeningActivity, clean_title_for_status

__all__ = [
    "VoiceSink",
    "NullVoiceSink",
    "DiscordVoiceSink",
    "PipelineAudioSource",
    "ConnectionSupervisor",
    "ListeningActivity",
    "clean_title_for_status",
]
