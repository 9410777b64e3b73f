"""
Discord voice sink.

Streams a pipeline handle's Ogg/Opus output into a discord.py VoiceClient
without re-encoding: packets are pulled from the Ogg container and handed to
the voice client as ready-made Opus frames.
"""

import logging
from typing import Any

import discord
from discord.oggparse import OggStream

from podradio.errors import TransportUnavailableError
from podradio.outputs.base_sink import AfterCallback, VoiceSink

logger = logging.getLogger(__name__)


class PipelineAudioSource(discord.AudioSource):
    """
    AudioSource over a PipelineHandle.

    read() is called from discord.py's player thread; the first packet pulled
    through the handle is what fires its first-bytes signal.
    """

    def __init__(self, handle: Any):
        self._handle = handle
        self._packets = OggStream(handle).iter_packets()

    def read(self) -> bytes:
        return next(self._packets, b"")

    def is_opus(self) -> bool:
        return True

    def cleanup(self) -> None:
        self._handle.kill()


class DiscordVoiceSink(VoiceSink):
    """VoiceSink backed by a connected discord.VoiceClient."""

    def __init__(self, voice_client: discord.VoiceClient):
        self.voice_client = voice_client

    def play(self, handle: Any, after: AfterCallback) -> None:
        vc = self.voice_client
        if not vc.is_connected():
            raise TransportUnavailableError("voice client is not connected")
        if vc.is_playing() or vc.is_paused():
            vc.stop()
        vc.play(PipelineAudioSource(handle), after=after)

    def stop(self) -> None:
        vc = self.voice_client
        try:
            if vc.is_playing() or vc.is_paused():
                vc.stop()
        except Exception as e:
            logger.debug(f"[VC] Stop failed: {e}")

    def is_connected(self) -> bool:
        return self.voice_client.is_connected()

    async def close(self) -> None:
        self.stop()
        await self.voice_client.disconnect(force=True)
