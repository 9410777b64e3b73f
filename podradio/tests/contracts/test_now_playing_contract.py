"""
Contract tests for now-playing presentation.

Tests verify:
- Status titles are cleaned for the bot activity
- Offsets format as MM:SS / H:MM:SS
- Activity updates never raise
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import discord
import pytest

from podradio.broadcast_core.episode_queue import Episode
from podradio.outputs.activity import ListeningActivity, clean_title_for_status
from podradio.state.playback_state import PlaybackState, PlaybackStatus, ms_to_hms


class TestNP1_Titles:
    """Tests for NP1 — status title cleaning."""

    @pytest.mark.parametrize("raw,expected", [
        ("my-great_episode.mp3", "My Great Episode"),
        ("Episode   42:  the   return", "Episode 42: The Return"),
        ("already Clean", "Already Clean"),
        ("", "Podcast"),
        (None, "Podcast"),
        ("---", "Podcast"),
    ])
    def test_np1_clean_title(self, raw, expected):
        assert clean_title_for_status(raw) == expected


class TestNP2_Offsets:
    """Tests for NP2 — offset formatting and position."""

    @pytest.mark.parametrize("ms,expected", [
        (0, "00:00"),
        (65000, "01:05"),
        (3723000, "1:02:03"),
        (-5, "00:00"),
    ])
    def test_np2_ms_to_hms(self, ms, expected):
        assert ms_to_hms(ms) == expected

    def test_np2_position_only_counts_while_playing(self):
        """NP2: Elapsed time is added only in PLAYING."""
        state = PlaybackState(resume_offset_ms=5000, segment_started_at_ms=1000.0)
        state.status = PlaybackStatus.STARTING
        assert state.position_ms(9000.0) == 5000
        state.status = PlaybackStatus.PLAYING
        assert state.position_ms(9000.0) == 13000


class TestNP3_Activity:
    """Tests for NP3 — bot listening activity."""

    def test_np3_sets_listening_activity(self):
        client = Mock()
        client.change_presence = AsyncMock()
        asyncio.run(ListeningActivity(client).update("deep-dive_episode.mp3"))

        activity = client.change_presence.call_args[1]["activity"]
        assert activity.type is discord.ActivityType.listening
        assert activity.name == "Deep Dive Episode"

    def test_np3_presence_failures_swallowed(self):
        client = Mock()
        client.change_presence = AsyncMock(side_effect=RuntimeError("not connected"))
        asyncio.run(ListeningActivity(client).update("x"))

    def test_np3_listener_schedules_update(self):
        """NP3: As an episode listener it schedules a presence update."""
        client = Mock()
        client.change_presence = AsyncMock()
        activity = ListeningActivity(client)

        async def scenario():
            activity(Episode("Show Notes", "https://cdn.example.com/a.mp3"), 0)
            activity(Episode("Next Show", "https://cdn.example.com/b.mp3"), 0)
            assert len(activity._tasks) == 2
            await asyncio.gather(*activity._tasks)
            await asyncio.sleep(0)
            assert not activity._tasks

        asyncio.run(scenario())
        assert client.change_presence.await_count == 2
