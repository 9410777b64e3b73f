"""
Connection Supervisor for podradio.

Owns the Discord voice session for the target channel:
- joins once and subscribes the playback controller to the resulting sink
- on disconnect, waits a short grace window for discord.py's own in-place
  recovery, then tears the session down and rejoins after a fixed delay,
  re-subscribing the controller each time
- runs a low-frequency keep-alive tick while idle (best effort)
"""

import asyncio
import logging
from typing import Callable, Optional

import discord

from podradio.errors import ConfigurationError
from podradio.outputs.base_sink import VoiceSink
from podradio.outputs.discord_sink import DiscordVoiceSink

logger = logging.getLogger(__name__)

DEFAULT_REJOIN_DELAY_SEC = 5.0
DEFAULT_RECOVERY_GRACE_SEC = 5.0
DEFAULT_KEEPALIVE_INTERVAL_SEC = 15.0
RECOVERY_POLL_SEC = 0.25


class ConnectionSupervisor:
    """
    Voice session lifecycle for a single channel.

    Playback offsets live in the controller, so nothing here ever touches
    them: before a rejoin tears the old client down the controller is told
    the transport is gone, and afterwards it is handed a fresh sink.
    """

    def __init__(
        self,
        client: discord.Client,
        channel_id: int,
        controller,
        rejoin_delay_sec: float = DEFAULT_REJOIN_DELAY_SEC,
        recovery_grace_sec: float = DEFAULT_RECOVERY_GRACE_SEC,
        keepalive_interval_sec: float = DEFAULT_KEEPALIVE_INTERVAL_SEC,
        self_deaf: bool = True,
        sink_factory: Callable[[discord.VoiceClient], VoiceSink] = DiscordVoiceSink,
    ):
        self.client = client
        self.channel_id = channel_id
        self.controller = controller
        self.rejoin_delay_sec = rejoin_delay_sec
        self.recovery_grace_sec = recovery_grace_sec
        self.keepalive_interval_sec = keepalive_interval_sec
        self.self_deaf = self_deaf
        self._sink_factory = sink_factory

        self.voice_client: Optional[discord.VoiceClient] = None
        self.channel: Optional[discord.VoiceChannel] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._recovery_task: Optional[asyncio.Task] = None
        self._keepalive_enabled = True
        self._closed = False

    @property
    def recovering(self) -> bool:
        return self._recovery_task is not None and not self._recovery_task.done()

    async def fetch_channel(self) -> discord.VoiceChannel:
        """
        Resolve the target channel.

        Raises:
            ConfigurationError: If the channel cannot be fetched or is not a voice channel
        """
        channel = self.client.get_channel(self.channel_id)
        if channel is None:
            try:
                channel = await self.client.fetch_channel(self.channel_id)
            except discord.HTTPException as e:
                raise ConfigurationError(f"VOICE_CHANNEL_ID {self.channel_id} could not be fetched: {e}") from e
        if not isinstance(channel, discord.VoiceChannel):
            raise ConfigurationError("VOICE_CHANNEL_ID must be a voice channel.")
        return channel

    async def connect(self) -> VoiceSink:
        """
        Join the channel (if needed) and subscribe the controller.

        Returns:
            The sink now used by the controller
        """
        channel = await self.fetch_channel()
        self.channel = channel

        if self.voice_client is None or not self.voice_client.is_connected():
            await self._drop_voice_client()
            self.voice_client = await channel.connect(self_deaf=self.self_deaf, reconnect=True)
            logger.info(f"[SUPERVISOR] Joined voice channel {channel.name} ({channel.id})")

        sink = self._sink_factory(self.voice_client)
        self.controller.on_transport_replaced(sink)
        self._start_keepalive()
        return sink

    def handle_voice_state_update(self, member, before, after) -> None:
        """Watch the bot's own voice state for a drop out of the target channel."""
        user = self.client.user
        if user is None or member.id != user.id:
            return
        was_here = before.channel is not None and before.channel.id == self.channel_id
        still_here = after.channel is not None and after.channel.id == self.channel_id
        if was_here and not still_here:
            logger.warning("[VC] Voice disconnected, retrying…")
            self.handle_disconnect()

    def handle_disconnect(self) -> None:
        """Start recovery unless one is already running."""
        if self._closed or self.recovering:
            return
        self._recovery_task = asyncio.get_running_loop().create_task(self._recover())

    async def _recover(self) -> None:
        if await self._wait_for_reconnect(self.recovery_grace_sec):
            logger.info("[SUPERVISOR] Voice connection recovered in place")
            return

        # Detach playback before the old client stops its player and fires after().
        self.controller.on_transport_lost()
        while not self._closed:
            logger.warning(f"[SUPERVISOR] In-place recovery failed; rejoining in {self.rejoin_delay_sec:.0f}s")
            await asyncio.sleep(self.rejoin_delay_sec)
            if self._closed:
                return
            await self._drop_voice_client()
            try:
                await self.connect()
                logger.info("[SUPERVISOR] Rejoined voice channel")
                return
            except Exception as e:
                logger.error(f"[SUPERVISOR] Rejoin failed: {e}")

    async def _wait_for_reconnect(self, timeout_sec: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_sec
        while True:
            vc = self.voice_client
            if vc is not None and vc.is_connected():
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(RECOVERY_POLL_SEC)

    def _start_keepalive(self) -> None:
        if not self._keepalive_enabled:
            return
        if self._keepalive_task is not None and not self._keepalive_task.done():
            return
        self._keepalive_task = asyncio.get_running_loop().create_task(self._keepalive_loop())

    async def _keepalive_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.keepalive_interval_sec)
            await self.keepalive_tick()

    async def keepalive_tick(self) -> None:
        """
        Refresh the voice path while idle.

        Sends a speaking-state update on the voice websocket so idle
        sessions are not timed out. A client found disconnected starts
        recovery. Never raises.
        """
        vc = self.voice_client
        if vc is None:
            return
        try:
            if not vc.is_connected():
                logger.debug("[SUPERVISOR] Keep-alive found voice client disconnected")
                self.handle_disconnect()
                return
            if vc.is_playing():
                return
            ws = getattr(vc, "ws", None)
            if ws is not None:
                await ws.speak(False)
        except Exception as e:
            logger.debug(f"[SUPERVISOR] Keep-alive tick failed: {e}")

    async def _drop_voice_client(self) -> None:
        vc = self.voice_client
        self.voice_client = None
        if vc is None:
            return
        try:
            await vc.disconnect(force=True)
        except Exception as e:
            logger.debug(f"[SUPERVISOR] Voice client teardown failed: {e}")

    def stop_keepalive(self) -> None:
        """Cancel the keep-alive tick. Called first during shutdown."""
        self._keepalive_enabled = False
        task = self._keepalive_task
        self._keepalive_task = None
        if task is not None and not task.done():
            task.cancel()

    async def close(self) -> None:
        """Stop keep-alive and recovery, then leave the channel."""
        self._closed = True
        self.stop_keepalive()
        if self._recovery_task is not None and not self._recovery_task.done():
            self._recovery_task.cancel()
        await self._drop_voice_client()
        logger.info("[SUPERVISOR] Voice session closed")
