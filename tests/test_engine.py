"""Tests for SoundEngine: single-graph invariant, stop semantics, timing, envelopes."""

from __future__ import annotations

from unittest.mock import MagicMock

import numpy as np
import pytest

from conftest import ThreadedStream, render_seconds
from soundscape.catalog import ALARM_TONES, AMBIENT_SOUNDS, SoundDefinition, find_alarm_tone, find_ambient
from soundscape.config import AmbientConfig, AppConfig, AudioConfig
from soundscape.context import SynthContext
from soundscape.engine import (
    CHIME_LENGTH_SEC,
    BufferVoice,
    EngineState,
    OscillatorVoice,
    SoundEngine,
)
from soundscape.errors import ContextUnavailableError
from soundscape.graph import AudioScheduledSourceNode, BufferSourceNode, FilterType, OscillatorNode

SR = 44100


def _connected_graphs(context: SynthContext) -> int:
    return len(context.destination.inputs)


# ---------------------------------------------------------------------------
# Idle / stop semantics
# ---------------------------------------------------------------------------


class TestStop:
    def test_initial_state_is_idle(self, engine: SoundEngine) -> None:
        assert engine.state is EngineState.IDLE
        assert not engine.is_playing
        assert engine.current_sound is None
        assert engine.wait_until_idle(0)

    def test_stop_when_idle_is_noop(self, engine: SoundEngine, stream_factory: MagicMock) -> None:
        engine.stop()
        assert engine.state is EngineState.IDLE
        stream_factory.assert_not_called()

    def test_stop_releases_graph(self, engine: SoundEngine, context: SynthContext) -> None:
        engine.play_ambient(find_ambient("rain"), loop=True)
        source = engine.active_graph.source

        engine.stop()

        assert engine.state is EngineState.IDLE
        assert source.ended
        assert _connected_graphs(context) == 0
        assert not render_seconds(context, 0.05).any()

    def test_double_stop(self, engine: SoundEngine) -> None:
        engine.play_alarm_tone(find_alarm_tone("classic"))
        engine.stop()
        engine.stop()
        assert engine.state is EngineState.IDLE

    def test_stop_tolerates_source_that_already_finished(self, engine: SoundEngine, context: SynthContext) -> None:
        engine.play_ambient(find_ambient("ocean"), duration_ms=100)
        graph = engine.active_graph
        # The source finishes but the engine has not been notified yet.
        graph.source.stop()
        assert graph.source.ended
        assert engine.is_playing

        engine.stop()

        assert engine.state is EngineState.IDLE
        assert _connected_graphs(context) == 0

    def test_stop_clears_loop_flag(self, engine: SoundEngine) -> None:
        engine.play_ambient(find_ambient("forest"), loop=True)
        assert engine.is_looping
        source = engine.active_graph.source

        engine.stop()

        assert not engine.is_looping
        assert isinstance(source, BufferSourceNode)
        assert source.loop is False


# ---------------------------------------------------------------------------
# Single-graph invariant and replacement ordering
# ---------------------------------------------------------------------------


class TestSingleGraph:
    def test_at_most_one_graph_connected(self, engine: SoundEngine, context: SynthContext) -> None:
        calls = [
            lambda: engine.play_ambient(AMBIENT_SOUNDS[0], loop=True),
            lambda: engine.play_alarm_tone(ALARM_TONES[0]),
            lambda: engine.play_ambient(AMBIENT_SOUNDS[3], duration_ms=500),
            lambda: engine.play_notification_chime(),
            lambda: engine.play_ambient(AMBIENT_SOUNDS[2]),
            lambda: engine.play_alarm_tone(ALARM_TONES[1], duration_ms=1000),
        ]
        for call in calls:
            call()
            assert _connected_graphs(context) == 1
            assert engine.state is EngineState.PLAYING
            render_seconds(context, 0.01)
            assert _connected_graphs(context) == 1

    def test_previous_source_stopped_before_next_starts(
        self,
        engine: SoundEngine,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        events: list[tuple[str, AudioScheduledSourceNode]] = []
        original_start = AudioScheduledSourceNode.start
        original_stop = AudioScheduledSourceNode.stop

        def start(self, when=0.0):
            events.append(("start", self))
            return original_start(self, when)

        def stop(self, when=0.0):
            events.append(("stop", self))
            return original_stop(self, when)

        monkeypatch.setattr(AudioScheduledSourceNode, "start", start)
        monkeypatch.setattr(AudioScheduledSourceNode, "stop", stop)

        engine.play_ambient(find_ambient("rain"), loop=True)
        a = engine.active_graph.source
        engine.play_ambient(find_ambient("cafe"), loop=True)
        b = engine.active_graph.source

        assert events == [("start", a), ("stop", a), ("start", b)]
        assert a.ended and not b.ended

    def test_stale_ended_notification_does_not_clear_new_graph(
        self,
        engine: SoundEngine,
        context: SynthContext,
    ) -> None:
        engine.play_ambient(find_ambient("ocean"), duration_ms=50)
        engine.play_ambient(find_ambient("rain"), loop=True)

        render_seconds(context, 0.2)

        assert engine.state is EngineState.PLAYING
        assert engine.current_sound.id == "rain"


# ---------------------------------------------------------------------------
# Ambient playback
# ---------------------------------------------------------------------------


class TestAmbient:
    @pytest.mark.parametrize(
        ("sound_id", "filter_type", "cutoff"),
        [
            ("ocean", FilterType.LOWPASS, 800.0),
            ("rain", FilterType.HIGHPASS, 1000.0),
            ("cafe", FilterType.BANDPASS, 1500.0),
            ("forest", None, None),
            ("white-noise", None, None),
        ],
    )
    def test_topology(
        self,
        engine: SoundEngine,
        context: SynthContext,
        sound_id: str,
        filter_type: FilterType | None,
        cutoff: float | None,
    ) -> None:
        engine.play_ambient(find_ambient(sound_id), loop=True)
        graph = engine.active_graph

        assert isinstance(graph.voice, BufferVoice)
        assert context.destination.inputs == (graph.gain,)
        if filter_type is None:
            assert graph.filter is None
            assert graph.source.outputs == (graph.gain,)
        else:
            assert graph.filter.type is filter_type
            assert graph.filter.frequency == cutoff
            assert graph.source.outputs == (graph.filter,)
            assert graph.filter.outputs == (graph.gain,)
        assert 0.1 <= graph.gain.gain.value <= 0.3

    def test_produces_sound(self, engine: SoundEngine, context: SynthContext) -> None:
        engine.play_ambient(find_ambient("white-noise"), loop=True)
        out = render_seconds(context, 0.1)
        assert np.max(np.abs(out)) > 0
        assert np.max(np.abs(out)) <= 0.1 * 0.1 + 1e-6

    def test_opens_context_lazily(self, engine: SoundEngine, stream_factory: MagicMock, fake_stream) -> None:
        stream_factory.assert_not_called()
        engine.play_ambient(find_ambient("rain"))
        stream_factory.assert_called_once()
        assert fake_stream.active

    def test_resumes_suspended_context(self, engine: SoundEngine, context: SynthContext, fake_stream) -> None:
        engine.play_ambient(find_ambient("rain"))
        context.suspend()

        engine.play_ambient(find_ambient("ocean"))

        assert fake_stream.start.call_count == 2

    def test_unknown_kind_matches_white_noise_topology(self, engine: SoundEngine) -> None:
        engine.play_ambient(SoundDefinition("mystery", "Mystery", kind="nonexistent"), loop=True)
        unknown = engine.active_graph
        engine.play_ambient(find_ambient("white-noise"), loop=True)
        white = engine.active_graph

        assert unknown.filter is None and white.filter is None
        assert unknown.gain.gain.value == white.gain.gain.value
        assert len(unknown.source.buffer) == len(white.source.buffer)
        assert unknown.source.loop == white.source.loop
        assert type(unknown.voice) is type(white.voice)

    def test_default_buffer_is_two_seconds(self, engine: SoundEngine) -> None:
        engine.play_ambient(find_ambient("rain"), loop=True)
        assert len(engine.active_graph.source.buffer) == 2 * SR

    def test_duration_sets_buffer_length(self, engine: SoundEngine) -> None:
        engine.play_ambient(find_ambient("rain"), duration_ms=500)
        assert len(engine.active_graph.source.buffer) == SR // 2

    def test_duration_bounded_returns_to_idle_at_boundary(self, engine: SoundEngine, context: SynthContext) -> None:
        engine.play_ambient(find_ambient("ocean"), duration_ms=2000)

        context.render(2 * SR - 1)
        assert engine.state is EngineState.PLAYING
        assert not engine.wait_until_idle(0)

        context.render(1)
        assert engine.state is EngineState.IDLE
        assert engine.wait_until_idle(0)
        assert _connected_graphs(context) == 0

    def test_duration_within_tolerance_in_stream_blocks(self, engine: SoundEngine, context: SynthContext) -> None:
        engine.play_ambient(find_ambient("cafe"), duration_ms=2000)
        blocksize = 512
        while engine.is_playing:
            context.render(blocksize)
            assert context.current_time < 2.05

        assert 2.0 <= context.current_time <= 2.0 + blocksize / SR

    def test_duration_overrides_loop(self, engine: SoundEngine, context: SynthContext) -> None:
        engine.play_ambient(find_ambient("rain"), loop=True, duration_ms=300)
        graph = engine.active_graph
        assert graph.loop is False
        assert graph.ends_at == pytest.approx(0.3)

        render_seconds(context, 0.31)

        assert engine.state is EngineState.IDLE

    def test_loop_keeps_playing_past_buffer_length(self, engine: SoundEngine, context: SynthContext) -> None:
        engine.play_ambient(find_ambient("rain"), loop=True)

        out = render_seconds(context, 3.0)

        assert engine.state is EngineState.PLAYING
        assert engine.is_looping
        assert np.abs(out[-SR // 2 :]).max() > 0

    def test_one_shot_ends_after_buffer(self, engine: SoundEngine, context: SynthContext) -> None:
        engine.play_ambient(find_ambient("rain"))

        render_seconds(context, 1.9)
        assert engine.is_playing
        render_seconds(context, 0.2)
        assert engine.state is EngineState.IDLE

    def test_configured_buffer_length(self, context: SynthContext) -> None:
        config = AppConfig(ambient=AmbientConfig(buffer_duration_sec=0.5))
        engine = SoundEngine(context, config, rng=np.random.default_rng(0))

        engine.play_ambient(find_ambient("rain"))

        assert len(engine.active_graph.source.buffer) == SR // 2


# ---------------------------------------------------------------------------
# Alarm tones and chime
# ---------------------------------------------------------------------------


class TestAlarmTone:
    def test_sine_at_target_frequency(self, engine: SoundEngine) -> None:
        engine.play_alarm_tone(find_alarm_tone("bell"))
        graph = engine.active_graph

        assert isinstance(graph.voice, OscillatorVoice)
        assert isinstance(graph.source, OscillatorNode)
        assert graph.source.frequency.value == pytest.approx(659.25)
        assert graph.filter is None

    def test_fades_in_over_100ms(self, engine: SoundEngine) -> None:
        engine.play_alarm_tone(find_alarm_tone("classic"))
        gain = engine.active_graph.gain.gain

        assert gain.value_at(0.0) == pytest.approx(0.0)
        assert gain.value_at(0.05) == pytest.approx(0.15)
        assert gain.value_at(0.1) == pytest.approx(0.3)
        assert gain.value_at(10.0) == pytest.approx(0.3)

    def test_no_click_at_start(self, engine: SoundEngine, context: SynthContext) -> None:
        engine.play_alarm_tone(find_alarm_tone("classic"))

        first_ms = context.render(SR // 1000)
        later = render_seconds(context, 0.2)

        assert np.max(np.abs(first_ms)) <= 0.3 * 0.01 + 1e-4
        assert np.max(np.abs(later[-SR // 20 :])) == pytest.approx(0.3, abs=0.01)

    def test_unbounded_tone_keeps_playing(self, engine: SoundEngine, context: SynthContext) -> None:
        engine.play_alarm_tone(find_alarm_tone("digital"))
        render_seconds(context, 3.0)
        assert engine.is_playing
        assert engine.active_graph.source.stop_time is None

    def test_bounded_tone_fades_out_and_stops_at_boundary(self, engine: SoundEngine, context: SynthContext) -> None:
        engine.play_alarm_tone(find_alarm_tone("gentle"), duration_ms=1000)
        graph = engine.active_graph
        gain = graph.gain.gain

        assert graph.ends_at == pytest.approx(1.0)
        assert graph.source.stop_time == pytest.approx(1.0)
        assert gain.value_at(0.5) == pytest.approx(0.3)
        assert gain.value_at(0.9) == pytest.approx(0.3)
        assert gain.value_at(0.95) == pytest.approx(0.15)
        assert gain.value_at(1.0) == pytest.approx(0.0)

        context.render(SR - 1)
        assert engine.is_playing
        context.render(1)
        assert engine.state is EngineState.IDLE

    def test_short_tone_shortens_fades(self, engine: SoundEngine) -> None:
        engine.play_alarm_tone(find_alarm_tone("gentle"), duration_ms=100)
        gain = engine.active_graph.gain.gain

        assert gain.value_at(0.05) == pytest.approx(0.3)
        assert gain.value_at(0.025) == pytest.approx(0.15)
        assert gain.value_at(0.1) == pytest.approx(0.0)

    def test_definition_without_frequency(self, engine: SoundEngine, context: SynthContext) -> None:
        with pytest.raises(ValueError):
            engine.play_alarm_tone(find_ambient("rain"))
        assert engine.state is EngineState.IDLE
        assert _connected_graphs(context) == 0


class TestNotificationChime:
    def test_steps_and_envelope(self, engine: SoundEngine, context: SynthContext) -> None:
        engine.play_notification_chime()
        graph = engine.active_graph
        freq = graph.source.frequency
        gain = graph.gain.gain

        assert freq.value_at(0.05) == pytest.approx(800.0)
        assert freq.value_at(0.15) == pytest.approx(600.0)
        assert freq.value_at(0.25) == pytest.approx(700.0)
        assert gain.value_at(0.0) == pytest.approx(0.0)
        assert gain.value_at(0.05) == pytest.approx(0.1)
        assert gain.value_at(0.3) == pytest.approx(0.0)

        render_seconds(context, CHIME_LENGTH_SEC)
        assert engine.state is EngineState.IDLE


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestContextUnavailable:
    def test_raises_and_leaves_nothing_connected(self) -> None:
        ctx = SynthContext(AudioConfig(), stream_factory=MagicMock(side_effect=OSError("no device")))
        engine = SoundEngine(ctx, rng=np.random.default_rng(0))

        with pytest.raises(ContextUnavailableError):
            engine.play_ambient(find_ambient("rain"), loop=True)
        with pytest.raises(ContextUnavailableError):
            engine.play_alarm_tone(find_alarm_tone("classic"))

        assert engine.state is EngineState.IDLE
        assert ctx.destination.inputs == ()

    def test_previous_graph_is_stopped_even_if_restart_fails(
        self,
        engine: SoundEngine,
        context: SynthContext,
        fake_stream,
    ) -> None:
        engine.play_ambient(find_ambient("rain"), loop=True)
        context.suspend()
        fake_stream.start.side_effect = RuntimeError("device unplugged")

        with pytest.raises(ContextUnavailableError):
            engine.play_ambient(find_ambient("ocean"), loop=True)

        assert engine.state is EngineState.IDLE
        assert _connected_graphs(context) == 0


# ---------------------------------------------------------------------------
# Audio-thread rendering
# ---------------------------------------------------------------------------


class TestAudioThread:
    def test_lifecycle_with_callback_on_its_own_thread(
        self,
        threaded_context: SynthContext,
        threaded_streams: list[ThreadedStream],
    ) -> None:
        engine = SoundEngine(threaded_context, AppConfig(), rng=np.random.default_rng(3))

        # Natural completion is reported from the audio thread
        engine.play_ambient(find_ambient("ocean"), duration_ms=50)
        assert engine.wait_until_idle(2.0)

        engine.play_ambient(find_ambient("rain"), loop=True)
        engine.play_alarm_tone(find_alarm_tone("bell"), duration_ms=200)
        engine.play_ambient(find_ambient("cafe"), loop=True)
        assert _connected_graphs(threaded_context) == 1
        engine.stop()
        assert engine.state is EngineState.IDLE

        engine.play_notification_chime()
        assert engine.wait_until_idle(2.0)

        engine.play_ambient(find_ambient("forest"), loop=True)
        threaded_context.close()

        stream = threaded_streams[0]
        assert stream.blocks > 0
        assert not stream.stop_timed_out
        assert stream.closed

    def test_texture_is_rendered_without_holding_the_engine_lock(
        self,
        engine: SoundEngine,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        lock_free: list[bool] = []

        def render(*args, **kwargs):
            acquired = engine._lock.acquire(blocking=False)
            if acquired:
                engine._lock.release()
            lock_free.append(acquired)
            return np.zeros(64, dtype=np.float32)

        monkeypatch.setattr("soundscape.engine.render_texture", render)

        engine.play_ambient(find_ambient("rain"), loop=True)
        engine.play_ambient(find_ambient("ocean"), duration_ms=100)

        assert lock_free == [True, True]
