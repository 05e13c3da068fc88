"""SoundEngine: owns the single active generated-audio graph.

Ambient textures are noise buffers played through a per-texture filter and
gain; alarm tones are sine oscillators with linear fades. Every ``play_*``
call tears down the previous graph before building the next one, so at most
one graph is ever connected to the context's destination.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass

import numpy as np

from soundscape.catalog import NOTIFICATION_CHIME, AmbientKind, SoundDefinition
from soundscape.config import AppConfig
from soundscape.context import SynthContext
from soundscape.errors import InvalidStateError
from soundscape.graph import (
    AudioNode,
    AudioScheduledSourceNode,
    BiquadFilterNode,
    BufferSourceNode,
    GainNode,
    OscillatorNode,
    OscillatorType,
)
from soundscape.textures import TEXTURES, render_texture

logger = logging.getLogger(__name__)

# Reminder chime: (offset_sec, frequency_hz) steps, peak gain, and envelope times
CHIME_STEPS: tuple[tuple[float, float], ...] = ((0.0, 800.0), (0.1, 600.0), (0.2, 700.0))
CHIME_GAIN = 0.1
CHIME_ATTACK_SEC = 0.05
CHIME_LENGTH_SEC = 0.3


class EngineState(enum.Enum):
    IDLE = "idle"
    PLAYING = "playing"


@dataclass(frozen=True)
class OscillatorVoice:
    node: OscillatorNode


@dataclass(frozen=True)
class BufferVoice:
    node: BufferSourceNode


ActiveVoice = OscillatorVoice | BufferVoice


@dataclass
class ActiveGraph:
    """The running synthesis instance: source voice -> [filter] -> gain -> destination."""

    sound: SoundDefinition
    voice: ActiveVoice
    gain: GainNode
    filter: BiquadFilterNode | None = None
    loop: bool = False
    ends_at: float | None = None  # Context time of the scheduled stop, if bounded

    @property
    def source(self) -> AudioScheduledSourceNode:
        return self.voice.node

    @property
    def nodes(self) -> tuple[AudioNode, ...]:
        if self.filter is None:
            return (self.source, self.gain)
        return (self.source, self.filter, self.gain)


class SoundEngine:
    """Procedural ambient textures and alarm tones over a shared SynthContext.

    Thread-safe: a lock guards the active graph. The context's "ended"
    notifications arrive on the audio thread and only clear the graph if the
    finished source is still the active one.

    Usage::

        engine = SoundEngine(SynthContext(config.audio), config)
        engine.play_ambient(find_ambient("rain"), loop=True)
        ...
        engine.stop()
    """

    def __init__(
        self,
        context: SynthContext,
        config: AppConfig | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._ctx = context
        self._cfg = config or AppConfig()
        self._rng = rng or np.random.default_rng()

        self._lock = threading.Lock()
        self._graph: ActiveGraph | None = None
        self._loop = False
        self._idle = threading.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def context(self) -> SynthContext:
        return self._ctx

    @property
    def state(self) -> EngineState:
        with self._lock:
            return EngineState.IDLE if self._graph is None else EngineState.PLAYING

    @property
    def is_playing(self) -> bool:
        return self.state is EngineState.PLAYING

    @property
    def is_looping(self) -> bool:
        with self._lock:
            return self._loop

    @property
    def current_sound(self) -> SoundDefinition | None:
        with self._lock:
            return None if self._graph is None else self._graph.sound

    @property
    def active_graph(self) -> ActiveGraph | None:
        with self._lock:
            return self._graph

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until the engine is Idle. Returns False on timeout."""
        return self._idle.wait(timeout=timeout)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def play_ambient(
        self,
        sound: SoundDefinition,
        loop: bool = False,
        duration_ms: float | None = None,
    ) -> None:
        """Play an ambient texture, replacing whatever is playing.

        Args:
            sound: Catalog entry; its ``kind`` selects the texture (unknown
                kinds play white noise).
            loop: Loop the noise buffer until stopped. Ignored when a
                duration is given.
            duration_ms: Stop automatically after this many milliseconds.

        Raises:
            ContextUnavailableError: The audio output could not be opened or
                resumed. Nothing is left connected.
        """
        kind = AmbientKind.from_tag(sound.kind)
        spec = TEXTURES[kind]
        bounded = duration_ms is not None
        duration_sec = duration_ms / 1000 if bounded else self._cfg.ambient.buffer_duration_sec
        looping = loop and not bounded

        # Rendered outside the engine lock: the audio thread's ended callback waits on it.
        buffer = render_texture(
            kind,
            self._ctx.sample_rate,
            duration_sec,
            self._rng,
            self._cfg.ambient.event_probability,
        )

        with self._lock:
            self._stop_locked()
            self._ctx.ensure_running()

            with self._ctx.locked():
                source = self._ctx.create_buffer_source(buffer, loop=looping)
                gain = self._ctx.create_gain(spec.gain)
                filt = None
                if spec.filter_type is not None:
                    filt = self._ctx.create_biquad_filter(spec.filter_type, spec.filter_frequency)
                graph = ActiveGraph(sound, BufferVoice(source), gain, filt, loop=looping)

                self._wire(graph)
                now = self._ctx.current_time
                source.start(now)
                if bounded:
                    graph.ends_at = now + duration_sec
                    source.stop(graph.ends_at)
                self._activate(graph)

        logger.info(
            "Playing ambient %r (%s, loop=%s, duration=%s).",
            sound.id,
            kind.value,
            looping,
            f"{duration_ms:.0f}ms" if bounded else "buffer",
        )

    def play_alarm_tone(self, sound: SoundDefinition, duration_ms: float | None = None) -> None:
        """Play a sine alarm tone at ``sound.frequency``, replacing whatever is playing.

        The gain always fades in linearly over ``alarm.fade_ms``. With a
        duration, a matching fade-out ends exactly at the boundary, where the
        oscillator stops; fades are shortened to half the duration for very
        short tones.
        """
        if sound.frequency is None:
            raise ValueError(f"Alarm tone {sound.id!r} has no frequency")

        target = self._cfg.alarm.gain
        fade = self._cfg.alarm.fade_ms / 1000
        if duration_ms is not None:
            fade = min(fade, duration_ms / 2000)

        with self._lock:
            self._stop_locked()
            self._ctx.ensure_running()

            with self._ctx.locked():
                osc = self._ctx.create_oscillator(OscillatorType.SINE, sound.frequency)
                gain = self._ctx.create_gain(0.0)
                graph = ActiveGraph(sound, OscillatorVoice(osc), gain)

                now = self._ctx.current_time
                gain.gain.set_value_at_time(0.0, now)
                gain.gain.linear_ramp_to_value_at_time(target, now + fade)
                self._wire(graph)
                osc.start(now)
                if duration_ms is not None:
                    end = now + duration_ms / 1000
                    gain.gain.set_value_at_time(target, end - fade)
                    gain.gain.linear_ramp_to_value_at_time(0.0, end)
                    graph.ends_at = end
                    osc.stop(end)
                self._activate(graph)

        logger.info("Playing alarm tone %r at %.2f Hz.", sound.id, sound.frequency)

    def play_notification_chime(self) -> None:
        """Play the short three-step reminder chime, replacing whatever is playing."""
        with self._lock:
            self._stop_locked()
            self._ctx.ensure_running()

            with self._ctx.locked():
                osc = self._ctx.create_oscillator(OscillatorType.SINE, CHIME_STEPS[0][1])
                gain = self._ctx.create_gain(0.0)
                graph = ActiveGraph(NOTIFICATION_CHIME, OscillatorVoice(osc), gain)

                now = self._ctx.current_time
                for offset, freq in CHIME_STEPS:
                    osc.frequency.set_value_at_time(freq, now + offset)
                gain.gain.set_value_at_time(0.0, now)
                gain.gain.linear_ramp_to_value_at_time(CHIME_GAIN, now + CHIME_ATTACK_SEC)
                gain.gain.linear_ramp_to_value_at_time(0.0, now + CHIME_LENGTH_SEC)
                self._wire(graph)
                osc.start(now)
                graph.ends_at = now + CHIME_LENGTH_SEC
                osc.stop(graph.ends_at)
                self._activate(graph)

        logger.debug("Playing notification chime.")

    def stop(self) -> None:
        """Silence and release the active graph. No-op when Idle."""
        with self._lock:
            self._stop_locked()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _wire(self, graph: ActiveGraph) -> None:
        """Connect source -> [filter] -> gain -> destination, or nothing at all."""
        try:
            chain = graph.nodes
            for upstream, downstream in zip(chain, chain[1:]):
                upstream.connect(downstream)
            graph.gain.connect(self._ctx.destination)
        except Exception:
            for node in graph.nodes:
                node.disconnect()
            raise

    def _activate(self, graph: ActiveGraph) -> None:
        graph.source.on_ended = self._on_source_ended
        self._graph = graph
        self._loop = graph.loop
        self._idle.clear()

    def _stop_locked(self) -> None:
        graph = self._graph
        if graph is None:
            return
        with self._ctx.locked():
            self._halt(graph.voice)
            self._release_locked()
        logger.debug("Stopped %r.", graph.sound.id)

    def _halt(self, voice: ActiveVoice) -> None:
        try:
            match voice:
                case BufferVoice(node=source):
                    source.loop = False
                    source.stop()
                case OscillatorVoice(node=osc):
                    osc.stop()
        except InvalidStateError:
            logger.debug("Voice had already finished; nothing to stop.")

    def _release_locked(self) -> None:
        graph = self._graph
        if graph is not None:
            for node in graph.nodes:
                node.disconnect()
        self._graph = None
        self._loop = False
        self._idle.set()

    def _on_source_ended(self, node: AudioScheduledSourceNode) -> None:
        """Runs on the audio thread after a render. Keep it short."""
        with self._lock:
            if self._graph is None or self._graph.source is not node:
                return
            with self._ctx.locked():
                self._release_locked()
