"""
Station wiring for podradio.

Builds every component from a RadioConfig, connects the Discord client, and
owns boot and shutdown ordering.
"""

import asyncio
import logging
from typing import Optional

import discord

from podradio.app.config import RadioConfig
from podradio.broadcast_core.episode_queue import EpisodeQueue
from podradio.broadcast_core.ffmpeg_pipeline import FFmpegPipeline
from podradio.broadcast_core.playback_controller import PlaybackController
from podradio.errors import ConfigurationError
from podradio.listeners.presence_gate import PresenceGate
from podradio.music_logic.feed_fetcher import FeedFetcher, FeedRefresher
from podradio.outputs.activity import ListeningActivity
from podradio.outputs.connection_supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)


class RadioClient(discord.Client):
    """Discord client that forwards gateway events to the station."""

    def __init__(self, station: "Station"):
        intents = discord.Intents.none()
        intents.guilds = True
        intents.voice_states = True
        super().__init__(intents=intents)
        self.station = station

    async def on_ready(self):
        await self.station.on_ready()

    async def on_voice_state_update(self, member, before, after):
        self.station.on_voice_state_update(member, before, after)


class Station:
    """
    Top-level podcast radio station.

    Boot order: login, initial feed fetch, periodic refresher, voice
    connection, presence sync. Playback itself only begins once a listener
    is present.
    """

    def __init__(self, config: RadioConfig, client: Optional[discord.Client] = None):
        self.config = config
        self.client = client or RadioClient(self)

        self.queue = EpisodeQueue()
        self.pipeline = FFmpegPipeline(
            ffmpeg_path=config.ffmpeg_path,
            bitrate=config.opus_bitrate,
            channels=config.opus_channels,
        )
        self.controller = PlaybackController(
            self.queue,
            self.pipeline,
            watchdog_timeout_sec=config.watchdog_sec,
            stale_resume_sec=config.stale_resume_sec,
            transport_retry_sec=config.rejoin_delay_sec,
        )
        self.fetcher = FeedFetcher(config.rss_url)
        self.refresher = FeedRefresher(self.fetcher, self.queue, interval_sec=config.refresh_rss_sec)
        self.supervisor = ConnectionSupervisor(
            self.client,
            config.voice_channel_id,
            self.controller,
            rejoin_delay_sec=config.rejoin_delay_sec,
            recovery_grace_sec=config.recovery_grace_sec,
            keepalive_interval_sec=config.keepalive_sec,
            self_deaf=config.self_deafen,
        )
        self.gate = PresenceGate(self.controller, config.voice_channel_id)
        self.controller.add_listener(ListeningActivity(self.client))

        self.exit_code = 0
        self._booted = False
        self._stopped = False
        self._shutdown_event: Optional[asyncio.Event] = None

    async def run(self) -> int:
        """
        Log in, run the gateway connection, and block until shutdown.

        Returns:
            Process exit code
        """
        self._shutdown_event = asyncio.Event()
        try:
            await self.client.login(self.config.discord_token)
        except discord.LoginFailure as e:
            logger.error(f"[STATION] Discord login failed: {e}")
            await self.stop()
            return 1

        connect_task = asyncio.create_task(self.client.connect(reconnect=True))
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())
        done, _ = await asyncio.wait({connect_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

        if connect_task in done and connect_task.exception() is not None:
            logger.error(f"[STATION] Gateway connection failed: {connect_task.exception()}")
            self.exit_code = 1

        await self.stop()
        for task in (connect_task, shutdown_task):
            if not task.done():
                task.cancel()
        return self.exit_code

    async def on_ready(self) -> None:
        """Boot once; later READY events (gateway resumes) are ignored."""
        if self._booted:
            return
        self._booted = True
        logger.info(f"[STATION] Logged in as {self.client.user}")

        await self.refresher.refresh()
        self.refresher.start()

        try:
            await self.supervisor.connect()
        except ConfigurationError as e:
            logger.error(f"[STATION] {e}")
            self.exit_code = 1
            self.request_shutdown()
            return
        except Exception as e:
            logger.error(f"[STATION] Voice connection failed: {e}")
            self.supervisor.handle_disconnect()

        if self.supervisor.channel is not None:
            self.gate.sync(self.supervisor.channel)
        logger.info("[STATION] Ready. Waiting for listeners…")

    def on_voice_state_update(self, member, before, after) -> None:
        self.supervisor.handle_voice_state_update(member, before, after)
        self.gate.handle_voice_state_update(member, before, after)

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop timers, pipeline, voice session and client, best effort. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("[STATION] Shutting down")

        self.refresher.stop()
        self.supervisor.stop_keepalive()
        self.controller.shutdown()
        try:
            await self.supervisor.close()
        except Exception as e:
            logger.error(f"[STATION] Error closing voice session: {e}", exc_info=True)
        try:
            await self.client.close()
        except Exception as e:
            logger.error(f"[STATION] Error closing Discord client: {e}", exc_info=True)
        self.pipeline.close()
        self.fetcher.close()
        logger.info("[STATION] Shutdown complete")
