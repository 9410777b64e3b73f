"""
Episode Queue for podradio.

Holds the ordered episode collection and the playback cursor. The collection
is replaced wholesale by the feed refresher; the playback controller only
reads the current episode and advances the cursor.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Episode:
    """
    One playable podcast episode.

    Attributes:
        title: Display title from the feed
        source_url: Remote enclosure URL handed to the transcoding pipeline
        published_at: Publish time in epoch seconds (0.0 when the feed has none)
    """
    title: str
    source_url: str
    published_at: float = 0.0


class EpisodeQueue:
    """
    Chronological, wrapping episode queue.

    The collection is always sorted oldest first, so advancing the cursor
    walks the feed in publish order and wraps back to the oldest episode.
    Replacement is a single reference swap, so readers never observe a
    partially updated collection.
    """

    def __init__(self, episodes: Optional[Iterable[Episode]] = None):
        self._episodes: Tuple[Episode, ...] = ()
        self._cursor = 0
        if episodes:
            self.replace(episodes)

    @property
    def episodes(self) -> Tuple[Episode, ...]:
        return self._episodes

    @property
    def cursor(self) -> int:
        return self._cursor

    def __len__(self) -> int:
        return len(self._episodes)

    def replace(self, items: Iterable[Episode]) -> bool:
        """
        Swap in a freshly fetched collection.

        An empty result is treated as a transient fetch failure and ignored,
        keeping the previous collection.

        The cursor is re-anchored to the episode it pointed at when that
        episode (matched by source URL) survives the refresh; otherwise it is
        wrapped into the new collection's range.

        Args:
            items: Episodes from the feed, in any order

        Returns:
            True if the collection was replaced, False if it was kept
        """
        new_episodes = tuple(sorted(items, key=lambda ep: ep.published_at))
        if not new_episodes:
            logger.debug("[QUEUE] Empty refresh ignored, keeping previous collection")
            return False

        current = self.current()
        cursor = self._cursor % len(new_episodes)
        if current is not None:
            for index, episode in enumerate(new_episodes):
                if episode.source_url == current.source_url:
                    cursor = index
                    break

        self._episodes = new_episodes
        self._cursor = cursor
        logger.info(f"[QUEUE] Loaded {len(new_episodes)} episodes (cursor={cursor})")
        return True

    def current(self) -> Optional[Episode]:
        """Episode under the cursor, or None while the queue is empty."""
        episodes = self._episodes
        if not episodes:
            return None
        return episodes[self._cursor % len(episodes)]

    def advance(self) -> Optional[Episode]:
        """
        Move the cursor to the next episode, wrapping at the end.

        Returns:
            The new current episode, or None while the queue is empty
        """
        episodes = self._episodes
        if not episodes:
            return None
        self._cursor = (self._cursor + 1) % len(episodes)
        return episodes[self._cursor]
