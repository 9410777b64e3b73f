"""
Playback Controller for podradio.

The resumable streaming state machine: selects the episode, starts and stops
the transcoding pipeline, tracks the resume offset, and reacts to first
bytes, end of stream, pipeline errors, and watchdog stalls.

All state mutation runs on the asyncio event loop. Callbacks arriving from
other threads (ffmpeg reader, voice player thread) are turned into events
and posted onto the loop with post(); dispatch() is the transition function.

Segment ownership:
- Every segment has a generation number (PlaybackState.generation).
- Any transition that ends a segment bumps the generation, disarms the
  watchdog, cancels the retry timer, stops the sink and kills the pipeline.
- Events, timers and in-flight starts carry the generation they belong to;
  anything older than the current generation is dropped.
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, List, Optional

from podradio.broadcast_core.episode_queue import Episode, EpisodeQueue
from podradio.broadcast_core.scheduling import LoopScheduler, Scheduler, TimerHandle, monotonic_ms
from podradio.broadcast_core.watchdog import DEFAULT_WATCHDOG_TIMEOUT_SEC, Watchdog
from podradio.errors import TransportUnavailableError
from podradio.outputs.base_sink import NullVoiceSink, VoiceSink
from podradio.state.playback_state import (
    ACTIVE_STATES,
    PAUSED_STATES,
    AdvanceReason,
    ControlResult,
    NowPlaying,
    PlaybackState,
    PlaybackStatus,
    ms_to_hms,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_END_SEC = 1.5
RETRY_AFTER_STALL_SEC = 1.5
RETRY_AFTER_ERROR_SEC = 2.0
RETRY_EMPTY_QUEUE_SEC = 30.0
RETRY_TRANSPORT_SEC = 5.0
DEFAULT_STALE_RESUME_SEC = 3600.0

EpisodeListener = Callable[[Episode, int], None]


@dataclass(frozen=True)
class FirstBytes:
    generation: int


@dataclass(frozen=True)
class SegmentEnded:
    generation: int
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class WatchdogFired:
    generation: int


@dataclass(frozen=True)
class RetryDue:
    generation: int


class PlaybackController:
    """
    Owns PlaybackState and the single live pipeline handle.

    Public operations (begin, pause_for_empty, resume_for_listener, skip,
    restart, pause, resume) are called on the event loop by the presence
    gate, the connection supervisor, or a control surface. Refused
    operations return ControlResult(ok=False, reason) and leave state
    untouched.
    """

    def __init__(
        self,
        queue: EpisodeQueue,
        pipeline: Any,
        sink: Optional[VoiceSink] = None,
        state: Optional[PlaybackState] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Callable[[], float]] = None,
        watchdog_timeout_sec: float = DEFAULT_WATCHDOG_TIMEOUT_SEC,
        stale_resume_sec: float = DEFAULT_STALE_RESUME_SEC,
        transport_retry_sec: float = RETRY_TRANSPORT_SEC,
    ):
        """
        Initialize the controller.

        Args:
            queue: Episode queue to play from
            pipeline: Transcoding pipeline factory (open_source() / spawn())
            sink: Voice sink; a NullVoiceSink until the transport is up
            state: Playback state (a fresh one by default)
            scheduler: Timer source (event loop by default)
            clock: Millisecond clock (monotonic by default)
            watchdog_timeout_sec: First-byte window for each segment
            stale_resume_sec: Pauses longer than this restart the episode from 0
            transport_retry_sec: Retry delay while the voice transport is down
        """
        self.queue = queue
        self.pipeline = pipeline
        self.sink: VoiceSink = sink or NullVoiceSink()
        self.state = state or PlaybackState()
        self.stale_resume_ms = stale_resume_sec * 1000.0
        self.transport_retry_sec = transport_retry_sec

        self._scheduler = scheduler or LoopScheduler()
        self._clock = clock or monotonic_ms
        self.watchdog = Watchdog(
            on_fire=lambda generation: self.dispatch(WatchdogFired(generation)),
            timeout_sec=watchdog_timeout_sec,
            scheduler=self._scheduler,
        )

        self._retry_timer: Optional[TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._start_task: Optional[asyncio.Task] = None
        self._listeners: List[EpisodeListener] = []
        self._shut_down = False

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def post(self, event: Any) -> None:
        """Deliver an event from any thread onto the event loop."""
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self.dispatch, event)
        except RuntimeError:
            # Loop already closed during shutdown.
            pass

    def dispatch(self, event: Any) -> None:
        """Apply one event to the state machine. Runs on the event loop."""
        if event.generation != self.state.generation:
            logger.debug(
                f"[PLAYBACK] Ignoring stale {type(event).__name__} "
                f"(segment {event.generation}, current {self.state.generation})"
            )
            return

        if isinstance(event, FirstBytes):
            self._on_first_bytes()
        elif isinstance(event, WatchdogFired):
            self._on_stall()
        elif isinstance(event, SegmentEnded):
            self._on_segment_ended(event.error)
        elif isinstance(event, RetryDue):
            self._on_retry_due()
        else:
            logger.warning(f"[PLAYBACK] Unknown event {event!r}")

    def _on_first_bytes(self) -> None:
        if self.state.status is not PlaybackStatus.STARTING:
            return
        self.watchdog.disarm()
        self.state.status = PlaybackStatus.PLAYING
        self.state.segment_started_at_ms = self._clock()
        logger.info("[PLAYBACK] Audio stream started.")

    def _on_stall(self) -> None:
        # A pause that raced the watchdog wins: only a segment still starting stalls.
        if self.state.status is not PlaybackStatus.STARTING:
            return
        logger.warning("[PLAYBACK] No audio bytes, skipping episode.")
        self._advance_and_retry(AdvanceReason.STALL, RETRY_AFTER_STALL_SEC, PlaybackStatus.STARTING)

    def _on_segment_ended(self, error: Optional[BaseException]) -> None:
        status = self.state.status
        if status not in ACTIVE_STATES:
            return
        handle = self.state.pipeline_handle
        stream_error = handle.error if handle is not None else None
        if error is not None:
            logger.error(f"[PLAYBACK] Audio player error: {error}")
            self._advance_and_retry(AdvanceReason.ERROR, RETRY_AFTER_ERROR_SEC, PlaybackStatus.TRANSITIONING)
        elif status is PlaybackStatus.STARTING:
            detail = f" ({stream_error})" if stream_error is not None else ""
            logger.warning(f"[PLAYBACK] Stream ended before any audio{detail}, skipping episode.")
            self._advance_and_retry(AdvanceReason.START_FAILED, RETRY_AFTER_ERROR_SEC, PlaybackStatus.STARTING)
        elif stream_error is not None:
            logger.error(f"[PLAYBACK] Stream failed mid-episode: {stream_error}")
            self._advance_and_retry(AdvanceReason.ERROR, RETRY_AFTER_ERROR_SEC, PlaybackStatus.TRANSITIONING)
            self._advance_and_retry(AdvanceReason.START_FAILED, RETRY_AFTER_ERROR_SEC, PlaybackStatus.STARTING)
        else:
            episode = self.state.current_episode
            logger.info(f"[PLAYBACK] Finished: {episode.title if episode else 'episode'}")
            self._advance_and_retry(AdvanceReason.CLEAN, RETRY_AFTER_END_SEC, PlaybackStatus.TRANSITIONING)

    def _on_retry_due(self) -> None:
        self._retry_timer = None
        if self.state.status not in (PlaybackStatus.STARTING, PlaybackStatus.TRANSITIONING):
            return
        self._request_start("retry")

    # ------------------------------------------------------------------
    # Presence-driven operations
    # ------------------------------------------------------------------

    def begin(self) -> ControlResult:
        """Leave WAITING_FOR_LISTENER and start the first segment."""
        if self.state.status is not PlaybackStatus.WAITING_FOR_LISTENER:
            return ControlResult(False, "playback already started")
        logger.info("[PLAYBACK] First listener, starting playback.")
        return self._request_start("first listener")

    def pause_for_empty(self) -> ControlResult:
        """
        Pause because the channel has no listeners.

        An empty channel takes precedence over a manual pause: a manually
        paused station becomes PAUSED_EMPTY (keeping its pause time), so the
        staleness rule applies when someone comes back.
        """
        status = self.state.status
        if status is PlaybackStatus.WAITING_FOR_LISTENER:
            return ControlResult(False, "playback has not started")
        if status is PlaybackStatus.PAUSED_EMPTY:
            return ControlResult(False, "already paused")
        if status is PlaybackStatus.PAUSED_MANUAL:
            self.state.status = PlaybackStatus.PAUSED_EMPTY
            logger.info("[PLAYBACK] Channel emptied while manually paused, now paused for empty channel.")
            return ControlResult(True)

        self._pause(PlaybackStatus.PAUSED_EMPTY)
        logger.info(f"[PLAYBACK] No listeners, paused at {ms_to_hms(self.state.resume_offset_ms)}.")
        return ControlResult(True)

    def resume_for_listener(self) -> ControlResult:
        """
        React to a listener being present.

        Starts playback the first time, resumes (or restarts, when stale) a
        presence pause, and unpauses a manual pause at its saved offset.
        """
        status = self.state.status
        if status is PlaybackStatus.WAITING_FOR_LISTENER:
            return self.begin()

        if status is PlaybackStatus.PAUSED_EMPTY:
            paused_for_ms = self._paused_for_ms()
            if paused_for_ms > self.stale_resume_ms:
                logger.info(
                    f"[PLAYBACK] Listener joined after {ms_to_hms(paused_for_ms)} away, "
                    f"restarting episode from the beginning."
                )
                self.state.resume_offset_ms = 0
            else:
                logger.info(f"[PLAYBACK] Listener joined, resuming from {ms_to_hms(self.state.resume_offset_ms)}.")
            return self._resume()

        if status is PlaybackStatus.PAUSED_MANUAL:
            logger.info("[PLAYBACK] Listener joined, unpaused.")
            return self._resume()

        return ControlResult(False, "already playing")

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def skip(self) -> ControlResult:
        """Abandon the current episode and start the next one from 0."""
        refusal = self._check_can_restart()
        if refusal is not None:
            return refusal
        self._end_segment()
        self.state.resume_offset_ms = 0
        self.queue.advance()
        self.state.last_advance = AdvanceReason.SKIP
        if self.state.status is PlaybackStatus.PAUSED_EMPTY:
            self.state.current_episode = self.queue.current()
            logger.info("[PLAYBACK] Skipped to next episode; staying paused until a listener joins.")
            return ControlResult(True)
        self.state.paused_at_ms = None
        logger.info("[PLAYBACK] Skipped to next episode.")
        return self._request_start("skip")

    def restart(self) -> ControlResult:
        """Start the current episode again from 0."""
        refusal = self._check_can_restart()
        if refusal is not None:
            return refusal
        self._end_segment()
        self.state.resume_offset_ms = 0
        if self.state.status is PlaybackStatus.PAUSED_EMPTY:
            logger.info("[PLAYBACK] Episode rewound to the beginning; staying paused until a listener joins.")
            return ControlResult(True)
        self.state.paused_at_ms = None
        logger.info("[PLAYBACK] Restarting episode from the beginning.")
        return self._request_start("restart")

    def pause(self) -> ControlResult:
        status = self.state.status
        if status in PAUSED_STATES:
            return ControlResult(False, "already paused")
        if status not in ACTIVE_STATES:
            return ControlResult(False, "nothing is playing")
        self._pause(PlaybackStatus.PAUSED_MANUAL)
        logger.info(f"[PLAYBACK] Paused at {ms_to_hms(self.state.resume_offset_ms)}.")
        return ControlResult(True)

    def resume(self) -> ControlResult:
        status = self.state.status
        if status is PlaybackStatus.PAUSED_MANUAL:
            logger.info(f"[PLAYBACK] Resuming from {ms_to_hms(self.state.resume_offset_ms)}.")
            return self._resume()
        if status is PlaybackStatus.PAUSED_EMPTY:
            return ControlResult(False, "no listeners in the voice channel")
        if status is PlaybackStatus.WAITING_FOR_LISTENER:
            return ControlResult(False, "playback has not started")
        return ControlResult(False, "already playing")

    def now_playing(self) -> NowPlaying:
        return NowPlaying(
            episode=self.state.current_episode,
            position_ms=self.state.position_ms(self._clock()),
            status=self.state.status,
        )

    # ------------------------------------------------------------------
    # Transport and lifecycle
    # ------------------------------------------------------------------

    def on_transport_replaced(self, sink: VoiceSink) -> None:
        """
        Subscribe playback to a new voice sink.

        A segment that was streaming into the old sink is restarted at its
        current position on the new one; offsets are untouched by transport
        changes.
        """
        old_sink = self.sink
        self.sink = sink
        if old_sink is not sink:
            old_sink.stop()

        if self.state.status in ACTIVE_STATES and not self.state.start_in_flight:
            self.state.resume_offset_ms += self.state.elapsed_ms(self._clock())
            logger.info(
                f"[PLAYBACK] Voice transport replaced, restarting at {ms_to_hms(self.state.resume_offset_ms)}."
            )
            self._request_start("transport replaced")

    def on_transport_lost(self) -> None:
        """
        Detach playback from a voice transport that is going away.

        The live segment ends with its played time folded into the resume
        offset and the cursor left in place. The sink becomes a
        NullVoiceSink, so the end-of-stream callback the old transport fires
        while tearing down is stale by the time it arrives. A segment that
        was streaming restarts at that offset on on_transport_replaced().
        """
        if self.state.status in ACTIVE_STATES:
            self.state.resume_offset_ms += self.state.elapsed_ms(self._clock())
            self._end_segment()
            self.state.status = PlaybackStatus.STARTING
            logger.warning(
                f"[PLAYBACK] Voice transport lost, holding at {ms_to_hms(self.state.resume_offset_ms)} "
                f"until it is replaced."
            )
        old_sink = self.sink
        self.sink = NullVoiceSink()
        old_sink.stop()

    def add_listener(self, callback: EpisodeListener) -> None:
        """Register a callback invoked with (episode, offset_ms) when a segment starts."""
        self._listeners.append(callback)

    def shutdown(self) -> None:
        """Cancel timers, kill the live pipeline and stop the sink. Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True
        logger.info("[PLAYBACK] Shutting down playback.")
        self._end_segment()
        if self._start_task is not None and not self._start_task.done():
            self._start_task.cancel()

    # ------------------------------------------------------------------
    # Segment plumbing
    # ------------------------------------------------------------------

    def _check_can_restart(self) -> Optional[ControlResult]:
        if self._shut_down:
            return ControlResult(False, "shutting down")
        if self.state.status is PlaybackStatus.WAITING_FOR_LISTENER:
            return ControlResult(False, "playback has not started")
        if len(self.queue) == 0:
            return ControlResult(False, "queue is empty")
        if self.state.start_in_flight:
            return ControlResult(False, "a start is already in progress")
        return None

    def _paused_for_ms(self) -> float:
        if self.state.paused_at_ms is None:
            return 0.0
        return max(0.0, self._clock() - self.state.paused_at_ms)

    def _pause(self, target: PlaybackStatus) -> None:
        now = self._clock()
        self.state.resume_offset_ms += self.state.elapsed_ms(now)
        self._end_segment()
        self.state.status = target
        self.state.paused_at_ms = now

    def _resume(self) -> ControlResult:
        self.state.paused_at_ms = None
        return self._request_start("resume")

    def _end_segment(self) -> None:
        """Tear down everything owned by the current segment."""
        self.state.generation += 1
        self.watchdog.disarm()
        self._cancel_retry()
        handle = self.state.pipeline_handle
        self.state.pipeline_handle = None
        self.state.segment_started_at_ms = None
        self.sink.stop()
        if handle is not None:
            handle.kill()

    def _advance_and_retry(self, reason: AdvanceReason, delay_sec: float, status: PlaybackStatus) -> None:
        self._end_segment()
        self.state.resume_offset_ms = 0
        self.queue.advance()
        self.state.last_advance = reason
        self.state.status = status
        self._schedule_retry(delay_sec)

    def _schedule_retry(self, delay_sec: float) -> None:
        self._cancel_retry()
        self._retry_timer = self._scheduler.call_later(
            delay_sec, self.dispatch, RetryDue(self.state.generation)
        )

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _request_start(self, reason: str) -> ControlResult:
        if self._shut_down:
            return ControlResult(False, "shutting down")
        if self.state.start_in_flight:
            logger.debug(f"[PLAYBACK] Start already in flight, dropping request ({reason})")
            return ControlResult(False, "a start is already in progress")

        self._end_segment()
        self.state.status = PlaybackStatus.STARTING
        generation = self.state.generation
        self.state.start_token = generation
        self._loop = asyncio.get_running_loop()
        self._start_task = self._loop.create_task(self._start_segment(generation))
        return ControlResult(True)

    async def _start_segment(self, generation: int) -> None:
        try:
            episode = self.queue.current()
            if episode is None:
                logger.info(f"[PLAYBACK] No episodes yet; retry in {RETRY_EMPTY_QUEUE_SEC:.0f}s…")
                self._schedule_retry(RETRY_EMPTY_QUEUE_SEC)
                return

            self.state.current_episode = episode
            offset_ms = self.state.resume_offset_ms
            suffix = f" (from {ms_to_hms(offset_ms)})" if offset_ms else ""
            logger.info(f"[PLAYBACK] ▶️  Now Playing: {episode.title}{suffix}")
            self._notify_listeners(episode, offset_ms)

            source = await self.pipeline.open_source(episode.source_url)
            if generation != self.state.generation:
                logger.debug(f"[PLAYBACK] Segment {generation} superseded while opening source")
                source.close()
                return

            handle = self.pipeline.spawn(
                source,
                episode.source_url,
                offset_ms,
                on_first_bytes=partial(self.post, FirstBytes(generation)),
            )
            self.state.pipeline_handle = handle
            self.watchdog.arm(generation)
            self.sink.play(handle, after=lambda error: self.post(SegmentEnded(generation, error)))

        except TransportUnavailableError as e:
            if generation != self.state.generation:
                return
            logger.warning(
                f"[PLAYBACK] Voice transport unavailable ({e}); "
                f"retrying same episode in {self.transport_retry_sec:.0f}s"
            )
            self._end_segment()
            self.state.status = PlaybackStatus.STARTING
            self._schedule_retry(self.transport_retry_sec)
        except Exception as e:
            if generation != self.state.generation:
                return
            logger.error(f"[PLAYBACK] Playback error: {e}")
            self._advance_and_retry(AdvanceReason.START_FAILED, RETRY_AFTER_ERROR_SEC, PlaybackStatus.STARTING)
        finally:
            if self.state.start_token == generation:
                self.state.start_token = None

    def _notify_listeners(self, episode: Episode, offset_ms: int) -> None:
        for callback in list(self._listeners):
            try:
                callback(episode, offset_ms)
            except Exception as e:
                logger.error(f"[PLAYBACK] Episode listener failed: {e}", exc_info=True)
