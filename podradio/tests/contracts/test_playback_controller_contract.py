"""
Contract tests for PlaybackController.

Tests verify:
- Presence-driven start, pause, resume and stale-resume behaviour
- Offset bookkeeping (kept on pause, reset on end/skip/restart)
- Watchdog stalls advance the queue; late watchdogs are no-ops
- At most one live pipeline handle; stale starts never spawn
- Transport loss keeps the cursor and offset
- A source or ffmpeg failure mid-episode is an error advance, not a clean one
"""

import asyncio

from podradio.broadcast_core.episode_queue import EpisodeQueue
from podradio.broadcast_core.playback_controller import PlaybackController, RetryDue, WatchdogFired
from podradio.errors import PipelineStreamError
from podradio.outputs.base_sink import NullVoiceSink
from podradio.state.playback_state import AdvanceReason, PlaybackStatus
from podradio.tests.contracts.test_doubles import FakePipeline, FakeSink, make_episodes, settle

A_URL = "https://cdn.example.com/A.mp3"
B_URL = "https://cdn.example.com/B.mp3"


async def start_playing(controller, pipeline):
    """First listener joins and the pipeline produces audio."""
    controller.resume_for_listener()
    await settle()
    pipeline.last.emit_first_bytes()
    await settle()
    assert controller.state.status is PlaybackStatus.PLAYING


class TestPC1_FirstListener:
    """Tests for startup on the first listener."""

    def test_pc1_waits_for_listener(self, controller, pipeline):
        """PC1: Nothing is spawned before a listener arrives."""
        assert controller.state.status is PlaybackStatus.WAITING_FOR_LISTENER
        assert pipeline.spawn_count == 0

    def test_pc1_first_listener_starts_oldest_episode_at_zero(self, controller, pipeline, sink):
        """PC1: First listener starts the oldest episode at offset 0."""
        async def scenario():
            result = controller.resume_for_listener()
            assert result.ok
            assert controller.state.status is PlaybackStatus.STARTING
            await settle()

            assert pipeline.spawn_count == 1
            assert pipeline.last.locator == A_URL
            assert pipeline.last.offset_ms == 0
            assert sink.played == [pipeline.last]
            assert controller.watchdog.armed

        asyncio.run(scenario())

    def test_pc1_first_bytes_moves_to_playing(self, controller, pipeline):
        """PC1: First bytes disarm the watchdog and enter PLAYING."""
        async def scenario():
            await start_playing(controller, pipeline)
            assert not controller.watchdog.armed
            assert controller.state.segment_started_at_ms is not None

        asyncio.run(scenario())

    def test_pc1_empty_channel_before_start_is_refused(self, controller):
        """PC1: Pausing before playback started does nothing."""
        result = controller.pause_for_empty()
        assert not result.ok
        assert controller.state.status is PlaybackStatus.WAITING_FOR_LISTENER

    def test_pc1_listeners_notified_on_segment_start(self, controller, pipeline):
        """PC1: Episode listeners receive (episode, offset_ms)."""
        seen = []
        controller.add_listener(lambda episode, offset_ms: seen.append((episode.title, offset_ms)))

        async def scenario():
            controller.resume_for_listener()
            await settle()

        asyncio.run(scenario())
        assert seen == [("A", 0)]

    def test_pc1_failing_listener_does_not_stop_playback(self, controller, pipeline):
        """PC1: A raising listener is logged and ignored."""
        def broken(episode, offset_ms):
            raise RuntimeError("presence update failed")
        controller.add_listener(broken)

        async def scenario():
            controller.resume_for_listener()
            await settle()

        asyncio.run(scenario())
        assert pipeline.spawn_count == 1


class TestPC2_PresencePauseResume:
    """Tests for pausing on an empty channel and resuming on rejoin."""

    def test_pc2_resume_after_short_absence_keeps_offset(self, controller, pipeline, scheduler):
        """PC2: Leave after 10s, rejoin quickly, resume A at 10000ms."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(10.0)

            controller.pause_for_empty()
            assert controller.state.status is PlaybackStatus.PAUSED_EMPTY
            assert controller.state.resume_offset_ms == 10000
            assert pipeline.live_handles == []

            scheduler.advance(60.0)
            controller.resume_for_listener()
            await settle()

            assert pipeline.last.locator == A_URL
            assert pipeline.last.offset_ms == 10000
            assert controller.queue.cursor == 0

        asyncio.run(scenario())

    def test_pc2_resume_after_stale_absence_restarts_episode(self, controller, pipeline, scheduler):
        """PC2: An absence beyond the staleness threshold restarts A at 0."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(10.0)
            controller.pause_for_empty()

            scheduler.advance(3601.0)
            controller.resume_for_listener()
            await settle()

            assert pipeline.last.locator == A_URL
            assert pipeline.last.offset_ms == 0

        asyncio.run(scenario())

    def test_pc2_pause_never_resets_offset(self, controller, pipeline, scheduler):
        """PC2: Offsets accumulate across repeated pauses."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(4.0)
            controller.pause_for_empty()

            controller.resume_for_listener()
            await settle()
            pipeline.last.emit_first_bytes()
            await settle()
            scheduler.advance(6.0)
            controller.pause_for_empty()

            assert controller.state.resume_offset_ms == 10000

        asyncio.run(scenario())

    def test_pc2_pause_while_starting_keeps_offset(self, controller, pipeline, scheduler):
        """PC2: Pausing before first bytes adds no elapsed time."""
        async def scenario():
            controller.resume_for_listener()
            await settle()
            scheduler.advance(20.0)
            controller.pause_for_empty()
            assert controller.state.resume_offset_ms == 0
            assert pipeline.last.kill_count == 1

        asyncio.run(scenario())

    def test_pc2_second_listener_is_noop(self, controller, pipeline):
        """PC2: resume_for_listener while playing changes nothing."""
        async def scenario():
            await start_playing(controller, pipeline)
            result = controller.resume_for_listener()
            await settle()
            assert not result.ok
            assert pipeline.spawn_count == 1

        asyncio.run(scenario())


class TestPC3_Watchdog:
    """Tests for stall detection."""

    def test_pc3_stall_advances_to_next_episode(self, controller, pipeline, scheduler):
        """PC3: No first bytes within the window moves from A to B at 0."""
        async def scenario():
            controller.resume_for_listener()
            await settle()
            stalled = pipeline.last

            scheduler.advance(45.0)
            assert stalled.kill_count == 1
            assert controller.queue.cursor == 1
            assert controller.state.resume_offset_ms == 0
            assert controller.state.last_advance is AdvanceReason.STALL

            scheduler.advance(1.5)
            await settle()
            assert pipeline.last.locator == B_URL
            assert pipeline.last.offset_ms == 0

        asyncio.run(scenario())

    def test_pc3_watchdog_after_playing_is_noop(self, controller, pipeline, scheduler):
        """PC3: A watchdog firing for a PLAYING segment does nothing."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(10.0)
            controller.dispatch(WatchdogFired(controller.state.generation))
            assert controller.state.status is PlaybackStatus.PLAYING
            assert controller.queue.cursor == 0
            assert pipeline.last.kill_count == 0

            scheduler.advance(100.0)
            assert controller.queue.cursor == 0

        asyncio.run(scenario())

    def test_pc3_watchdog_after_pause_is_noop(self, controller, pipeline, scheduler):
        """PC3: A watchdog firing while PAUSED_EMPTY keeps cursor and offset."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(8.0)
            controller.pause_for_empty()

            controller.dispatch(WatchdogFired(controller.state.generation))
            assert controller.state.status is PlaybackStatus.PAUSED_EMPTY
            assert controller.queue.cursor == 0
            assert controller.state.resume_offset_ms == 8000

        asyncio.run(scenario())

    def test_pc3_stale_generation_events_are_dropped(self, controller, pipeline, scheduler):
        """PC3: Events tagged with an old generation are ignored."""
        async def scenario():
            await start_playing(controller, pipeline)
            old = controller.state.generation - 1
            controller.dispatch(WatchdogFired(old))
            controller.dispatch(RetryDue(old))
            assert controller.state.status is PlaybackStatus.PLAYING
            assert pipeline.spawn_count == 1

        asyncio.run(scenario())


class TestPC4_SegmentEnd:
    """Tests for end of stream, errors and start failures."""

    def test_pc4_clean_end_advances_and_resets_offset(self, controller, pipeline, sink, scheduler):
        """PC4: Natural end moves to B at offset 0 after a short delay."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(30.0)
            sink.finish()
            await settle()

            assert controller.state.status is PlaybackStatus.TRANSITIONING
            assert controller.state.last_advance is AdvanceReason.CLEAN
            assert controller.state.resume_offset_ms == 0
            assert controller.queue.cursor == 1

            scheduler.advance(1.5)
            await settle()
            assert pipeline.last.locator == B_URL
            assert pipeline.last.offset_ms == 0

        asyncio.run(scenario())

    def test_pc4_player_error_advances(self, controller, pipeline, sink, scheduler):
        """PC4: A mid-stream error is tagged ERROR and advances."""
        async def scenario():
            await start_playing(controller, pipeline)
            sink.finish(RuntimeError("decoder exploded"))
            await settle()

            assert controller.state.last_advance is AdvanceReason.ERROR
            assert controller.queue.cursor == 1
            assert pipeline.handles[0].kill_count == 1

            scheduler.advance(2.0)
            await settle()
            assert pipeline.last.locator == B_URL

        asyncio.run(scenario())

    def test_pc4_stream_failure_mid_episode_is_error_advance(self, controller, pipeline, sink, scheduler):
        """PC4: An end of stream caused by a pipeline failure is tagged ERROR."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(60.0)
            pipeline.last.error = PipelineStreamError(A_URL, "ffmpeg exited with code 1")
            sink.finish()
            await settle()

            assert controller.state.status is PlaybackStatus.TRANSITIONING
            assert controller.state.last_advance is AdvanceReason.ERROR
            assert controller.state.resume_offset_ms == 0
            assert controller.queue.cursor == 1

            scheduler.advance(2.0)
            await settle()
            assert pipeline.last.locator == B_URL
            assert pipeline.last.offset_ms == 0

        asyncio.run(scenario())

    def test_pc4_start_failure_advances(self, controller, pipeline, scheduler):
        """PC4: A source that cannot be opened is skipped."""
        pipeline.fail_locators.add(A_URL)

        async def scenario():
            controller.resume_for_listener()
            await settle()

            assert pipeline.spawn_count == 0
            assert controller.state.last_advance is AdvanceReason.START_FAILED
            assert controller.queue.cursor == 1

            scheduler.advance(2.0)
            await settle()
            assert pipeline.last.locator == B_URL

        asyncio.run(scenario())

    def test_pc4_wraps_after_last_episode(self, controller, pipeline, sink, scheduler):
        """PC4: After the newest episode the oldest plays again."""
        async def scenario():
            await start_playing(controller, pipeline)
            for _ in range(3):
                sink.finish()
                await settle()
                scheduler.advance(1.5)
                await settle()
                pipeline.last.emit_first_bytes()
                await settle()
            assert pipeline.last.locator == A_URL

        asyncio.run(scenario())

    def test_pc4_empty_queue_retries_later(self, pipeline, sink, scheduler):
        """PC4: With no episodes yet, the start is retried after 30s."""
        queue = EpisodeQueue()
        controller = PlaybackController(queue, pipeline, sink=sink, scheduler=scheduler, clock=scheduler.now_ms)

        async def scenario():
            controller.resume_for_listener()
            await settle()
            assert pipeline.spawn_count == 0

            queue.replace(make_episodes("A"))
            scheduler.advance(30.0)
            await settle()
            assert pipeline.last.locator == A_URL

        asyncio.run(scenario())


class TestPC5_ControlSurface:
    """Tests for skip, restart, pause, resume and now_playing."""

    def test_pc5_skip_starts_next_at_zero(self, controller, pipeline, scheduler):
        """PC5: skip() while playing A at any offset starts B at 0."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(1234.0)

            result = controller.skip()
            assert result.ok
            assert controller.state.resume_offset_ms == 0
            assert controller.state.last_advance is AdvanceReason.SKIP
            await settle()

            assert pipeline.handles[0].kill_count == 1
            assert pipeline.last.locator == B_URL
            assert pipeline.last.offset_ms == 0

        asyncio.run(scenario())

    def test_pc5_restart_replays_current_at_zero(self, controller, pipeline, scheduler):
        """PC5: restart() plays the same episode from 0."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(50.0)
            assert controller.restart().ok
            await settle()
            assert pipeline.last.locator == A_URL
            assert pipeline.last.offset_ms == 0

        asyncio.run(scenario())

    def test_pc5_skip_refused_before_start(self, controller):
        """PC5: skip() before playback started is refused."""
        result = controller.skip()
        assert not result.ok
        assert controller.queue.cursor == 0

    def test_pc5_skip_refused_while_start_in_flight(self, queue, sink, scheduler):
        """PC5: skip() while a start is still opening its source is refused."""
        pipeline = FakePipeline(hold_open=True)
        controller = PlaybackController(queue, pipeline, sink=sink, scheduler=scheduler, clock=scheduler.now_ms)

        async def scenario():
            controller.resume_for_listener()
            await settle()
            result = controller.skip()
            assert not result.ok
            assert controller.queue.cursor == 0
            pipeline.release()
            await settle()
            assert pipeline.spawn_count == 1

        asyncio.run(scenario())

    def test_pc5_skip_while_paused_empty_stays_paused(self, controller, pipeline, scheduler):
        """PC5: skip() into an empty channel moves the cursor but does not stream."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(40.0)
            controller.pause_for_empty()

            result = controller.skip()
            assert result.ok
            assert controller.state.status is PlaybackStatus.PAUSED_EMPTY
            assert controller.state.resume_offset_ms == 0
            assert controller.queue.cursor == 1
            assert controller.now_playing().episode.title == "B"
            await settle()
            assert pipeline.spawn_count == 1

            controller.resume_for_listener()
            await settle()
            assert pipeline.last.locator == B_URL
            assert pipeline.last.offset_ms == 0

        asyncio.run(scenario())

    def test_pc5_restart_while_paused_empty_stays_paused(self, controller, pipeline, scheduler):
        """PC5: restart() into an empty channel rewinds but does not stream."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(40.0)
            controller.pause_for_empty()

            assert controller.restart().ok
            assert controller.state.status is PlaybackStatus.PAUSED_EMPTY
            assert controller.state.resume_offset_ms == 0
            await settle()
            assert pipeline.spawn_count == 1

            controller.resume_for_listener()
            await settle()
            assert pipeline.last.locator == A_URL
            assert pipeline.last.offset_ms == 0

        asyncio.run(scenario())

    def test_pc5_manual_pause_and_resume(self, controller, pipeline, scheduler):
        """PC5: Manual pause keeps the offset and resume continues from it."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(5.0)
            assert controller.pause().ok
            assert controller.state.status is PlaybackStatus.PAUSED_MANUAL
            assert controller.state.resume_offset_ms == 5000
            assert not controller.pause().ok

            assert controller.resume().ok
            await settle()
            assert pipeline.last.offset_ms == 5000

        asyncio.run(scenario())

    def test_pc5_empty_channel_overrides_manual_pause(self, controller, pipeline, scheduler):
        """PC5: Emptying a manually paused channel becomes PAUSED_EMPTY."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(5.0)
            controller.pause()
            paused_at = controller.state.paused_at_ms

            assert controller.pause_for_empty().ok
            assert controller.state.status is PlaybackStatus.PAUSED_EMPTY
            assert controller.state.paused_at_ms == paused_at
            assert not controller.resume().ok

        asyncio.run(scenario())

    def test_pc5_listener_join_unpauses_manual_pause(self, controller, pipeline, scheduler):
        """PC5: A join while PAUSED_MANUAL resumes at the saved offset."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(3.0)
            controller.pause()
            assert controller.resume_for_listener().ok
            await settle()
            assert pipeline.last.offset_ms == 3000

        asyncio.run(scenario())

    def test_pc5_now_playing_position_is_monotonic(self, controller, pipeline, scheduler):
        """PC5: Position never decreases while PLAYING."""
        async def scenario():
            await start_playing(controller, pipeline)
            positions = []
            for _ in range(5):
                scheduler.advance(2.5)
                positions.append(controller.now_playing().position_ms)
            assert positions == sorted(positions)
            assert positions[-1] == 12500
            assert controller.now_playing().episode.title == "A"

        asyncio.run(scenario())


class TestPC6_SegmentOwnership:
    """Tests for single-live-handle and stale start guarantees."""

    def test_pc6_at_most_one_live_handle(self, controller, pipeline, sink, scheduler):
        """PC6: Every new segment kills the prior handle first."""
        async def scenario():
            await start_playing(controller, pipeline)
            controller.skip()
            await settle()
            controller.restart()
            await settle()
            controller.pause_for_empty()
            controller.resume_for_listener()
            await settle()

            assert pipeline.spawn_count == 4
            assert len(pipeline.live_handles) == 1
            assert all(h.kill_count == 1 for h in pipeline.handles[:-1])

        asyncio.run(scenario())

    def test_pc6_superseded_start_never_spawns(self, queue, sink, scheduler):
        """PC6: A start overtaken by a pause closes its source without spawning."""
        pipeline = FakePipeline(hold_open=True)
        controller = PlaybackController(queue, pipeline, sink=sink, scheduler=scheduler, clock=scheduler.now_ms)

        async def scenario():
            controller.resume_for_listener()
            await settle()
            controller.pause_for_empty()
            pipeline.release()
            await settle()

            assert pipeline.spawn_count == 0
            assert pipeline.opened[0].closed
            assert controller.state.status is PlaybackStatus.PAUSED_EMPTY
            assert not controller.state.start_in_flight

        asyncio.run(scenario())

    def test_pc6_stop_callback_from_sink_is_ignored(self, controller, pipeline, sink):
        """PC6: The after-callback fired by stopping the sink does not advance."""
        async def scenario():
            await start_playing(controller, pipeline)
            controller.pause_for_empty()
            await settle()
            assert controller.queue.cursor == 0
            assert controller.state.status is PlaybackStatus.PAUSED_EMPTY

        asyncio.run(scenario())


class TestPC7_Transport:
    """Tests for voice transport loss and replacement."""

    def test_pc7_transport_unavailable_keeps_cursor(self, queue, pipeline, scheduler):
        """PC7: A disconnected sink retries the same episode and offset."""
        sink = FakeSink(connected=False)
        controller = PlaybackController(queue, pipeline, sink=sink, scheduler=scheduler, clock=scheduler.now_ms)

        async def scenario():
            controller.resume_for_listener()
            await settle()
            assert controller.queue.cursor == 0
            assert pipeline.last.kill_count == 1
            assert controller.state.status is PlaybackStatus.STARTING

            sink.connected = True
            scheduler.advance(5.0)
            await settle()
            assert pipeline.last.locator == A_URL
            assert sink.played == [pipeline.last]

        asyncio.run(scenario())

    def test_pc7_transport_replaced_restarts_at_position(self, controller, pipeline, sink, scheduler):
        """PC7: A new sink resumes the segment at the current position."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(7.0)

            new_sink = FakeSink()
            controller.on_transport_replaced(new_sink)
            await settle()

            assert controller.sink is new_sink
            assert sink.stop_count >= 1
            assert new_sink.played == [pipeline.last]
            assert pipeline.last.offset_ms == 7000
            assert controller.queue.cursor == 0

        asyncio.run(scenario())

    def test_pc7_transport_replaced_while_paused_does_not_start(self, controller, pipeline, scheduler):
        """PC7: A new sink while paused only swaps the sink."""
        async def scenario():
            await start_playing(controller, pipeline)
            controller.pause_for_empty()
            controller.on_transport_replaced(FakeSink())
            await settle()
            assert pipeline.spawn_count == 1
            assert controller.state.status is PlaybackStatus.PAUSED_EMPTY

        asyncio.run(scenario())

    def test_pc7_transport_lost_holds_position_until_replaced(self, controller, pipeline, sink, scheduler):
        """PC7: Losing the transport keeps episode and offset for the next sink."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(30.0)

            controller.on_transport_lost()
            await settle()
            assert isinstance(controller.sink, NullVoiceSink)
            assert controller.state.status is PlaybackStatus.STARTING
            assert controller.state.resume_offset_ms == 30000
            assert controller.state.last_advance is None
            assert controller.queue.cursor == 0
            assert pipeline.last.kill_count == 1
            assert pipeline.spawn_count == 1

            new_sink = FakeSink()
            controller.on_transport_replaced(new_sink)
            await settle()
            assert new_sink.played == [pipeline.last]
            assert pipeline.last.locator == A_URL
            assert pipeline.last.offset_ms == 30000

        asyncio.run(scenario())

    def test_pc7_transport_lost_while_paused_keeps_pause(self, controller, pipeline, scheduler):
        """PC7: A paused station stays paused through a transport loss."""
        async def scenario():
            await start_playing(controller, pipeline)
            scheduler.advance(12.0)
            controller.pause_for_empty()

            controller.on_transport_lost()
            controller.on_transport_replaced(FakeSink())
            await settle()
            assert controller.state.status is PlaybackStatus.PAUSED_EMPTY
            assert controller.state.resume_offset_ms == 12000
            assert pipeline.spawn_count == 1

        asyncio.run(scenario())


class TestPC8_Shutdown:
    """Tests for shutdown."""

    def test_pc8_shutdown_kills_pipeline_and_cancels_retry(self, controller, pipeline, sink, scheduler):
        """PC8: Shutdown kills the live handle and no retry fires afterwards."""
        async def scenario():
            await start_playing(controller, pipeline)
            sink.finish()
            await settle()
            assert scheduler.pending()

            controller.shutdown()
            controller.shutdown()
            assert scheduler.pending() == []
            scheduler.advance(10.0)
            await settle()
            assert pipeline.spawn_count == 1

        asyncio.run(scenario())

    def test_pc8_operations_refused_after_shutdown(self, controller, pipeline):
        """PC8: No new segment starts after shutdown."""
        async def scenario():
            await start_playing(controller, pipeline)
            controller.shutdown()
            assert pipeline.last.kill_count == 1
            assert not controller.restart().ok
            await settle()
            assert pipeline.spawn_count == 1

        asyncio.run(scenario())
