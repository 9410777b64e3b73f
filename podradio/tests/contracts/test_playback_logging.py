"""
Logging tests for the playback path.

Tests verify that operator-facing events carry their subsystem tag:
- [PLAYBACK] now-playing and pause lines
- [WATCHDOG] stall warnings
- [FEED] fetch failures
"""

import asyncio
import logging
from unittest.mock import Mock

from podradio.broadcast_core.episode_queue import EpisodeQueue
from podradio.errors import FeedError
from podradio.music_logic.feed_fetcher import FeedRefresher
from podradio.tests.contracts.test_doubles import settle


class TestLOG1_Tags:
    """Tests for LOG1 — tagged log lines."""

    def test_log1_now_playing_logged(self, controller, caplog):
        caplog.set_level(logging.INFO)

        async def scenario():
            controller.resume_for_listener()
            await settle()

        asyncio.run(scenario())
        assert any("[PLAYBACK]" in r.message and "Now Playing: A" in r.message for r in caplog.records)

    def test_log1_pause_logs_offset(self, controller, pipeline, scheduler, caplog):
        caplog.set_level(logging.INFO)

        async def scenario():
            controller.resume_for_listener()
            await settle()
            pipeline.last.emit_first_bytes()
            await settle()
            scheduler.advance(75.0)
            controller.pause_for_empty()

        asyncio.run(scenario())
        assert any("paused at 01:15" in r.message for r in caplog.records)

    def test_log1_stall_logged_as_warning(self, controller, scheduler, caplog):
        caplog.set_level(logging.INFO)

        async def scenario():
            controller.resume_for_listener()
            await settle()
            scheduler.advance(45.0)

        asyncio.run(scenario())
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert any("[WATCHDOG]" in r.message for r in warnings)
        assert any("[PLAYBACK]" in r.message for r in warnings)

    def test_log1_feed_failure_logged_as_error(self, caplog):
        fetcher = Mock()
        fetcher.fetch.side_effect = FeedError("RSS request failed: 503")
        asyncio.run(FeedRefresher(fetcher, EpisodeQueue()).refresh())
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert any(r.message.startswith("[FEED] RSS fetch failed") for r in errors)
