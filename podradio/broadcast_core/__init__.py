"""
Broadcast Core module for podradio.

This package contains the episode queue, the ffmpeg transcoding pipeline,
the startup watchdog and the playback controller.
"""

from podradio.broadcast_core.episode_queue import Episode, EpisodeQueue
from podradio.broadcast_core.ffmpeg_pipeline import FFmpegPipeline, PipelineHandle
from podradio.broadcast_core.watchdog import Watchdog
from podradio.broadcast_core.playback_controller import PlaybackController

__all__ = ["Episode", "EpisodeQueue", "FFmpegPipeline", "PipelineHandle", "Watchdog", "PlaybackController"]
