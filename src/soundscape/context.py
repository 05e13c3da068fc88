"""Shared synthesis context: the sample clock, node factory, and output stream.

One SynthContext is created at the application's composition root and
passed to everything that makes sound. The sounddevice.OutputStream is
opened lazily on first use and restarted if it was stopped, so a context
can be built on machines with no audio device and only fail when sound
is actually requested.

Rendering happens in the sounddevice callback (real-time audio thread).
A re-entrant lock serializes graph mutation against rendering; "ended"
notifications collected during a render are delivered after the lock is
released. Opening, starting and stopping the stream use a separate lock
that the callback never touches.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from typing import Any

import numpy as np

from soundscape.config import AudioConfig
from soundscape.errors import ContextUnavailableError
from soundscape.graph import (
    AudioDestination,
    AudioScheduledSourceNode,
    BiquadFilterNode,
    BufferSourceNode,
    FilterType,
    GainNode,
    OscillatorNode,
    OscillatorType,
)

logger = logging.getLogger(__name__)

StreamFactory = Callable[[AudioConfig, Callable[..., None]], Any]


class ContextState(enum.Enum):
    SUSPENDED = "suspended"  # No stream yet, or stream stopped
    RUNNING = "running"
    CLOSED = "closed"


def open_output_stream(config: AudioConfig, callback: Callable[..., None]) -> Any:
    """Create (but do not start) a float32 sounddevice output stream."""
    # Importing sounddevice loads PortAudio; a missing library raises OSError here.
    import sounddevice as sd

    return sd.OutputStream(
        samplerate=config.sample_rate,
        channels=config.channels,
        dtype="float32",
        blocksize=config.blocksize,
        latency=config.latency,
        callback=callback,
    )


class SynthContext:
    """Process-wide audio context.

    Usage::

        context = SynthContext(config.audio)
        context.ensure_running()
        with context.locked():
            osc = context.create_oscillator(frequency=440.0)
            osc.connect(context.destination)
            osc.start()
    """

    def __init__(
        self,
        config: AudioConfig | None = None,
        stream_factory: StreamFactory | None = None,
    ) -> None:
        self._cfg = config or AudioConfig()
        self._stream_factory = stream_factory or open_output_stream
        self._stream: Any = None
        self._closed = False

        self._lock = threading.RLock()  # Graph + clock; taken by the audio callback
        self._stream_lock = threading.Lock()  # Stream lifecycle; never taken by the callback
        self._frame = 0
        self._pending_ended: list[AudioScheduledSourceNode] = []

        self.destination = AudioDestination(self)

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------

    @property
    def sample_rate(self) -> int:
        return self._cfg.sample_rate

    @property
    def current_frame(self) -> int:
        return self._frame

    @property
    def current_time(self) -> float:
        return self._frame / self._cfg.sample_rate

    def time_to_frame(self, seconds: float) -> int:
        return self._cfg.seconds_to_frames(seconds)

    # ------------------------------------------------------------------
    # Stream lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ContextState:
        if self._closed:
            return ContextState.CLOSED
        if self._stream is not None and self._stream.active:
            return ContextState.RUNNING
        return ContextState.SUSPENDED

    def ensure_running(self) -> None:
        """Open the output stream on first use, or resume it if stopped.

        Raises ContextUnavailableError if the platform refuses either step.
        """
        with self._stream_lock:
            if self._closed:
                raise ContextUnavailableError("Audio context has been closed")

            if self._stream is None:
                try:
                    self._stream = self._stream_factory(self._cfg, self._callback)
                except Exception as exc:
                    raise ContextUnavailableError(f"Could not open audio output: {exc}") from exc
                logger.info(
                    "Audio output opened (%d Hz, %d ch, blocksize=%d).",
                    self._cfg.sample_rate,
                    self._cfg.channels,
                    self._cfg.blocksize,
                )

            if not self._stream.active:
                try:
                    self._stream.start()
                except Exception as exc:
                    raise ContextUnavailableError(f"Could not start audio output: {exc}") from exc
                logger.debug("Audio output running.")

    # Stopping a stream blocks until the callback in flight returns, and the
    # callback needs self._lock, so neither method below may hold it.

    def suspend(self) -> None:
        """Stop the stream without discarding it; ensure_running() resumes."""
        with self._stream_lock:
            if self._stream is not None and self._stream.active:
                self._stream.stop()
                logger.debug("Audio output suspended.")

    def close(self) -> None:
        with self._stream_lock:
            stream, self._stream = self._stream, None
            self._closed = True
        if stream is not None:
            stream.stop()
            stream.close()
        logger.info("Audio output closed.")

    def locked(self) -> threading.RLock:
        """The graph lock, for use as ``with context.locked(): ...``."""
        return self._lock

    # ------------------------------------------------------------------
    # Node factory
    # ------------------------------------------------------------------

    def create_oscillator(
        self,
        type: OscillatorType = OscillatorType.SINE,
        frequency: float = 440.0,
    ) -> OscillatorNode:
        return OscillatorNode(self, type=type, frequency=frequency)

    def create_buffer_source(self, buffer: np.ndarray | None = None, loop: bool = False) -> BufferSourceNode:
        return BufferSourceNode(self, buffer=buffer, loop=loop)

    def create_biquad_filter(
        self,
        type: FilterType = FilterType.LOWPASS,
        frequency: float = 350.0,
        q: float = 1.0,
    ) -> BiquadFilterNode:
        return BiquadFilterNode(self, type=type, frequency=frequency, q=q)

    def create_gain(self, gain: float = 1.0) -> GainNode:
        return GainNode(self, gain=gain)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(self, frames: int) -> np.ndarray:
        """Render the next ``frames`` samples of the mixed graph and advance the clock.

        Called from the stream callback; tests call it directly to drive
        the graph offline.
        """
        with self._lock:
            block = self.destination.render(self._frame, frames)
            self._frame += frames
            ended, self._pending_ended = self._pending_ended, []

        if self._cfg.master_volume != 1.0:
            block = block * self._cfg.master_volume

        for node in ended:
            if node.on_ended is not None:
                node.on_ended(node)
        return block

    def _notify_ended(self, node: AudioScheduledSourceNode) -> None:
        with self._lock:
            self._pending_ended.append(node)

    def _callback(
        self,
        outdata: np.ndarray,
        frames: int,
        time_info: object,
        status: object,
    ) -> None:
        """sounddevice callback (real-time thread). MUST be fast: no I/O, no logging."""
        block = self.render(frames)
        outdata[:] = block[:, np.newaxis]
