"""Audio-graph nodes rendered block-by-block by a SynthContext.

Rendering is pull-based: the destination asks each connected input for a
block of ``frames`` samples starting at an absolute frame index, and every
node in turn pulls from its own inputs. Each node feeds exactly one output
(no fan-out), so a node is rendered once per block.

Source nodes (oscillator, buffer) are scheduled in context time (seconds)
with ``start()`` / ``stop()`` and report completion through ``on_ended``.
``AudioParam`` supports ``set_value_at_time`` and
``linear_ramp_to_value_at_time`` automation, evaluated per sample.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Callable
from typing import TYPE_CHECKING, NamedTuple

import numpy as np
from scipy import signal

from soundscape.errors import InvalidStateError

if TYPE_CHECKING:
    from soundscape.context import SynthContext


class OscillatorType(enum.Enum):
    SINE = "sine"
    SQUARE = "square"
    SAWTOOTH = "sawtooth"
    TRIANGLE = "triangle"


class FilterType(enum.Enum):
    """Values double as scipy.signal.butter ``btype`` names."""

    LOWPASS = "lowpass"
    HIGHPASS = "highpass"
    BANDPASS = "bandpass"


# ---------------------------------------------------------------------------
# Parameter automation
# ---------------------------------------------------------------------------


class _Event(NamedTuple):
    ramp: bool  # False = step (set_value_at_time), True = linear ramp ending at `time`
    time: float
    value: float


class AudioParam:
    """A node parameter with scheduled automation.

    A ramp interpolates from the previous event's (time, value) to its own.
    With no earlier event, the ramp starts from the current value at the
    moment it is scheduled.
    """

    def __init__(self, default: float, sample_rate: int, clock: Callable[[], float]) -> None:
        self._value = float(default)
        self._sample_rate = sample_rate
        self._clock = clock
        self._events: list[_Event] = []

    @property
    def value(self) -> float:
        return self._value

    @value.setter
    def value(self, value: float) -> None:
        self._value = float(value)

    @property
    def has_automation(self) -> bool:
        return bool(self._events)

    def set_value_at_time(self, value: float, time: float) -> AudioParam:
        self._insert(_Event(False, float(time), float(value)))
        return self

    def linear_ramp_to_value_at_time(self, value: float, end_time: float) -> AudioParam:
        if not any(e.time <= end_time for e in self._events):
            now = self._clock()
            self._insert(_Event(False, now, self.value_at(now)))
        self._insert(_Event(True, float(end_time), float(value)))
        return self

    def cancel_scheduled_values(self, start_time: float) -> None:
        self._events = [e for e in self._events if e.time < start_time]

    def value_at(self, time: float) -> float:
        return float(self._evaluate(np.array([time], dtype=np.float64))[0])

    def render(self, start_frame: int, frames: int) -> np.ndarray:
        if not self._events:
            return np.full(frames, self._value, dtype=np.float32)
        times = (start_frame + np.arange(frames)) / self._sample_rate
        return self._evaluate(times).astype(np.float32)

    def _insert(self, event: _Event) -> None:
        self._events.append(event)
        self._events.sort(key=lambda e: e.time)  # stable: equal times keep insertion order

    def _evaluate(self, times: np.ndarray) -> np.ndarray:
        out = np.full(times.shape, self._value, dtype=np.float64)
        prev_time, prev_value = None, self._value
        for event in self._events:
            if event.ramp and prev_time is not None and event.time > prev_time:
                mask = (times >= prev_time) & (times < event.time)
                frac = (times[mask] - prev_time) / (event.time - prev_time)
                out[mask] = prev_value + (event.value - prev_value) * frac
            out[times >= event.time] = event.value
            prev_time, prev_value = event.time, event.value
        return out


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


class AudioNode:
    """Base node: connection bookkeeping and input mixing."""

    def __init__(self, context: SynthContext) -> None:
        self.context = context
        self._inputs: list[AudioNode] = []
        self._outputs: list[AudioNode] = []

    @property
    def inputs(self) -> tuple[AudioNode, ...]:
        return tuple(self._inputs)

    @property
    def outputs(self) -> tuple[AudioNode, ...]:
        return tuple(self._outputs)

    def connect(self, destination: AudioNode) -> AudioNode:
        """Connect this node's output to ``destination``. Returns ``destination`` for chaining."""
        destination._inputs.append(self)
        self._outputs.append(destination)
        return destination

    def disconnect(self) -> None:
        for output in self._outputs:
            if self in output._inputs:
                output._inputs.remove(self)
        self._outputs.clear()

    def render(self, start_frame: int, frames: int) -> np.ndarray:
        raise NotImplementedError

    def _mix_inputs(self, start_frame: int, frames: int) -> np.ndarray:
        out = np.zeros(frames, dtype=np.float32)
        for node in list(self._inputs):
            out += node.render(start_frame, frames)
        return out


class AudioScheduledSourceNode(AudioNode):
    """A signal generator with a start/stop schedule.

    ``on_ended`` is invoked by the context once the source has finished
    (scheduled stop reached, buffer exhausted, or stopped immediately).
    """

    def __init__(self, context: SynthContext) -> None:
        super().__init__(context)
        self.on_ended: Callable[[AudioScheduledSourceNode], None] | None = None
        self._start_frame: int | None = None
        self._stop_frame: int | None = None
        self._ended = False

    @property
    def started(self) -> bool:
        return self._start_frame is not None

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def stop_time(self) -> float | None:
        if self._stop_frame is None:
            return None
        return self._stop_frame / self.context.sample_rate

    def start(self, when: float = 0.0) -> None:
        if self._start_frame is not None:
            raise InvalidStateError(f"{type(self).__name__} already started")
        self._start_frame = max(self.context.current_frame, self.context.time_to_frame(when))

    def stop(self, when: float = 0.0) -> None:
        """Schedule the end of playback; ``when`` in the past means now.

        Raises InvalidStateError if the node was never started or has
        already finished.
        """
        if self._start_frame is None:
            raise InvalidStateError(f"{type(self).__name__} stopped before start")
        if self._ended:
            raise InvalidStateError(f"{type(self).__name__} already finished")
        self._stop_frame = max(self.context.current_frame, self.context.time_to_frame(when))
        if self._stop_frame <= self.context.current_frame:
            self._finish()

    def render(self, start_frame: int, frames: int) -> np.ndarray:
        out = np.zeros(frames, dtype=np.float32)
        if self._start_frame is None or self._ended:
            return out

        end_frame = start_frame + frames
        begin = max(self._start_frame, start_frame)
        until = end_frame if self._stop_frame is None else min(end_frame, self._stop_frame)
        if begin < until:
            produced = self._generate(begin, until - begin)
            offset = begin - start_frame
            out[offset : offset + len(produced)] = produced
            if len(produced) < until - begin or self._exhausted():
                self._finish()
                return out

        if self._stop_frame is not None and self._stop_frame <= end_frame:
            self._finish()
        return out

    def _generate(self, start_frame: int, frames: int) -> np.ndarray:
        raise NotImplementedError

    def _exhausted(self) -> bool:
        return False

    def _finish(self) -> None:
        if self._ended:
            return
        self._ended = True
        self.context._notify_ended(self)


class OscillatorNode(AudioScheduledSourceNode):
    """Periodic waveform with an automatable frequency (phase-continuous)."""

    def __init__(
        self,
        context: SynthContext,
        type: OscillatorType = OscillatorType.SINE,
        frequency: float = 440.0,
    ) -> None:
        super().__init__(context)
        self.type = type
        self.frequency = AudioParam(frequency, context.sample_rate, lambda: context.current_time)
        self._phase = 0.0

    def _generate(self, start_frame: int, frames: int) -> np.ndarray:
        freqs = self.frequency.render(start_frame, frames).astype(np.float64)
        increments = 2 * np.pi * freqs / self.context.sample_rate
        phase = self._phase + np.cumsum(increments) - increments
        self._phase = float((self._phase + increments.sum()) % (2 * np.pi))
        return _waveform(self.type, phase)


def _waveform(kind: OscillatorType, phase: np.ndarray) -> np.ndarray:
    if kind is OscillatorType.SQUARE:
        wave = np.sign(np.sin(phase))
    elif kind is OscillatorType.SAWTOOTH:
        wave = 2 * (phase / (2 * np.pi) % 1) - 1
    elif kind is OscillatorType.TRIANGLE:
        wave = 2 * np.abs(2 * (phase / (2 * np.pi) % 1) - 1) - 1
    else:
        wave = np.sin(phase)
    return wave.astype(np.float32)


class BufferSourceNode(AudioScheduledSourceNode):
    """Plays a mono float32 buffer once, or loops it until stopped."""

    def __init__(
        self,
        context: SynthContext,
        buffer: np.ndarray | None = None,
        loop: bool = False,
    ) -> None:
        super().__init__(context)
        self.buffer = buffer
        self.loop = loop
        self._position = 0

    @property
    def duration(self) -> float:
        if self.buffer is None:
            return 0.0
        return len(self.buffer) / self.context.sample_rate

    def _generate(self, start_frame: int, frames: int) -> np.ndarray:
        if self.buffer is None or len(self.buffer) == 0:
            return np.zeros(0, dtype=np.float32)

        length = len(self.buffer)
        if self.loop:
            idx = (self._position + np.arange(frames)) % length
            self._position = (self._position + frames) % length
            return self.buffer[idx]

        chunk = self.buffer[self._position : self._position + frames]
        self._position += len(chunk)
        return chunk

    def _exhausted(self) -> bool:
        if self.loop:
            return False
        return self.buffer is None or self._position >= len(self.buffer)


class BiquadFilterNode(AudioNode):
    """Second-order Butterworth lowpass / highpass / bandpass with state kept across blocks."""

    def __init__(
        self,
        context: SynthContext,
        type: FilterType = FilterType.LOWPASS,
        frequency: float = 350.0,
        q: float = 1.0,
    ) -> None:
        super().__init__(context)
        self._type = type
        self._frequency = float(frequency)
        self._q = float(q)
        self._sos = _design_filter(type, self._frequency, self._q, context.sample_rate)
        self._zi = np.zeros((self._sos.shape[0], 2))

    @property
    def type(self) -> FilterType:
        return self._type

    @property
    def frequency(self) -> float:
        return self._frequency

    @property
    def q(self) -> float:
        return self._q

    def render(self, start_frame: int, frames: int) -> np.ndarray:
        x = self._mix_inputs(start_frame, frames)
        y, self._zi = signal.sosfilt(self._sos, x, zi=self._zi)
        return y.astype(np.float32)


def _design_filter(kind: FilterType, frequency: float, q: float, sample_rate: int) -> np.ndarray:
    nyquist = sample_rate / 2
    freq = min(max(frequency, 1.0), nyquist * 0.99)
    if kind is FilterType.BANDPASS:
        # Band edges around the centre so that centre / bandwidth == q
        half = 1 / (2 * max(q, 1e-3))
        k = math.sqrt(1 + half**2)
        low = max(freq * (k - half), 1.0)
        high = min(freq * (k + half), nyquist * 0.99)
        return signal.butter(1, [low / nyquist, high / nyquist], btype=kind.value, output="sos")
    return signal.butter(2, freq / nyquist, btype=kind.value, output="sos")


class GainNode(AudioNode):
    def __init__(self, context: SynthContext, gain: float = 1.0) -> None:
        super().__init__(context)
        self.gain = AudioParam(gain, context.sample_rate, lambda: context.current_time)

    def render(self, start_frame: int, frames: int) -> np.ndarray:
        x = self._mix_inputs(start_frame, frames)
        return x * self.gain.render(start_frame, frames)


class AudioDestination(AudioNode):
    """The single output sink. Mixes its inputs and hard-limits to [-1, 1]."""

    def connect(self, destination: AudioNode) -> AudioNode:
        raise InvalidStateError("The destination has no output")

    def render(self, start_frame: int, frames: int) -> np.ndarray:
        return np.clip(self._mix_inputs(start_frame, frames), -1.0, 1.0)
