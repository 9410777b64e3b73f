"""
Shared pytest fixtures for podradio contract tests.

Contract tests use test doubles (fakes, stubs, mocks) to avoid real
dependencies. No network, ffmpeg binary, Discord gateway, or real clock is
used.
"""

import pytest

from podradio.broadcast_core.episode_queue import EpisodeQueue
from podradio.broadcast_core.playback_controller import PlaybackController
from podradio.tests.contracts.test_doubles import (
    FakePipeline,
    FakeScheduler,
    FakeSink,
    make_episodes,
)

WATCHDOG_SEC = 45.0
STALE_SEC = 3600.0


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def queue():
    """Queue of A (oldest), B, C."""
    return EpisodeQueue(make_episodes("A", "B", "C"))


@pytest.fixture
def pipeline():
    return FakePipeline()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def controller(queue, pipeline, sink, scheduler):
    return PlaybackController(
        queue,
        pipeline,
        sink=sink,
        scheduler=scheduler,
        clock=scheduler.now_ms,
        watchdog_timeout_sec=WATCHDOG_SEC,
        stale_resume_sec=STALE_SEC,
    )
