"""
"Listening to ..." bot activity for the episode currently on air.
"""

import asyncio
import logging
import re
from typing import Set

import discord

logger = logging.getLogger(__name__)

DEFAULT_STATUS_TITLE = "Podcast"


def clean_title_for_status(title) -> str:
    """
    Turn an episode title (or file-like name) into a short status string.

    Drops a trailing file extension, turns dash/underscore runs into spaces,
    collapses whitespace and capitalises word starts.
    """
    if not title:
        return DEFAULT_STATUS_TITLE
    t = re.sub(r"\.[^/.]+$", "", str(title))
    t = re.sub(r"[-_]+", " ", t)
    t = re.sub(r"\s+", " ", t).strip()
    t = re.sub(r"\b\w", lambda m: m.group(0).upper(), t)
    return t or DEFAULT_STATUS_TITLE


class ListeningActivity:
    """Episode listener that updates the bot presence. Failures are ignored."""

    def __init__(self, client: discord.Client):
        self.client = client
        self._tasks: Set[asyncio.Task] = set()

    def __call__(self, episode, offset_ms: int) -> None:
        task = asyncio.get_running_loop().create_task(self.update(episode.title))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def update(self, title: str) -> None:
        activity = discord.Activity(type=discord.ActivityType.listening, name=clean_title_for_status(title))
        try:
            await self.client.change_presence(activity=activity)
        except Exception as e:
            logger.debug(f"[VC] Could not update listening status: {e}")
