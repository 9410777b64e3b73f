"""
RSS feed fetching for podradio.

Fetches the podcast feed with httpx, parses it with feedparser, and swaps the
resulting episodes into the EpisodeQueue on a fixed interval.
"""

import asyncio
import calendar
import logging
from typing import List, Optional

import feedparser
import httpx

from podradio.broadcast_core.episode_queue import Episode, EpisodeQueue
from podradio.errors import FeedError

logger = logging.getLogger(__name__)

FEED_USER_AGENT = "discord-podcast-radio/1.0"
FEED_TIMEOUT_SEC = 30.0
DEFAULT_REFRESH_SEC = 3600.0


def _entry_url(entry) -> Optional[str]:
    """Enclosure href, then link, then id; only http(s) URLs are playable."""
    candidates = []
    for enclosure in entry.get("enclosures", []):
        candidates.append(enclosure.get("href") or enclosure.get("url"))
    candidates.append(entry.get("link"))
    candidates.append(entry.get("id"))
    for url in candidates:
        if url and str(url).startswith("http"):
            return str(url)
    return None


def _published_at(entry) -> float:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return 0.0
    return float(calendar.timegm(parsed))


def parse_feed(content) -> List[Episode]:
    """
    Parse feed XML into episodes, oldest first.

    Entries without a playable URL are skipped.
    """
    feed = feedparser.parse(content)
    episodes = []
    for entry in feed.entries:
        url = _entry_url(entry)
        if url is None:
            continue
        episodes.append(Episode(
            title=entry.get("title") or "Untitled",
            source_url=url,
            published_at=_published_at(entry),
        ))
    episodes.sort(key=lambda ep: ep.published_at)
    return episodes


class FeedFetcher:
    """Blocking RSS fetch; run it off the event loop."""

    def __init__(self, url: str, http_client: Optional[httpx.Client] = None, timeout: float = FEED_TIMEOUT_SEC):
        self.url = url
        self._http = http_client or httpx.Client(
            follow_redirects=True,
            timeout=timeout,
            headers={"User-Agent": FEED_USER_AGENT},
        )

    def fetch(self) -> List[Episode]:
        """
        Fetch and parse the feed.

        Raises:
            FeedError: On transport errors, an error status, or an unparseable body
        """
        try:
            response = self._http.get(self.url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise FeedError(f"RSS request failed: {e}") from e

        episodes = parse_feed(response.content)
        if not episodes:
            parsed = feedparser.parse(response.content)
            if parsed.bozo and not parsed.entries:
                raise FeedError(f"RSS feed could not be parsed: {parsed.get('bozo_exception')}")
        return episodes

    def close(self) -> None:
        self._http.close()


class FeedRefresher:
    """Periodically refreshes the EpisodeQueue from a FeedFetcher."""

    def __init__(self, fetcher: FeedFetcher, queue: EpisodeQueue, interval_sec: float = DEFAULT_REFRESH_SEC):
        self.fetcher = fetcher
        self.queue = queue
        self.interval_sec = interval_sec
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> bool:
        """
        Fetch once and replace the queue contents.

        Returns:
            True if the queue was replaced. Failures are logged and the
            previous collection is kept.
        """
        try:
            episodes = await asyncio.to_thread(self.fetcher.fetch)
        except FeedError as e:
            logger.error(f"[FEED] RSS fetch failed: {e}")
            return False
        if not episodes:
            logger.warning("[FEED] RSS feed returned no playable episodes")
            return False
        return self.queue.replace(episodes)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"[FEED] Refreshing every {self.interval_sec:.0f}s")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_sec)
            await self.refresh()

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
