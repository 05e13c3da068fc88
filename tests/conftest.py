"""Shared fixtures: a SynthContext driven offline through a fake output stream."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import numpy as np
import pytest

from soundscape.config import AppConfig, AudioConfig
from soundscape.context import SynthContext
from soundscape.engine import SoundEngine


def make_fake_stream() -> MagicMock:
    """A stand-in for sounddevice.OutputStream whose ``active`` follows start()/stop()."""
    stream = MagicMock()
    stream.active = False
    stream.start.side_effect = lambda: setattr(stream, "active", True)
    stream.stop.side_effect = lambda: setattr(stream, "active", False)
    return stream


@pytest.fixture
def fake_stream() -> MagicMock:
    return make_fake_stream()


@pytest.fixture
def stream_factory(fake_stream: MagicMock) -> MagicMock:
    return MagicMock(return_value=fake_stream)


@pytest.fixture
def context(stream_factory: MagicMock) -> SynthContext:
    return SynthContext(AudioConfig(), stream_factory=stream_factory)


@pytest.fixture
def engine(context: SynthContext) -> SoundEngine:
    return SoundEngine(context, AppConfig(), rng=np.random.default_rng(1234))


def render_seconds(context: SynthContext, seconds: float, blocksize: int = 512) -> np.ndarray:
    """Render ``seconds`` of audio in stream-sized blocks; returns the concatenated output."""
    total = context.time_to_frame(seconds)
    blocks = []
    while total > 0:
        n = min(blocksize, total)
        blocks.append(context.render(n))
        total -= n
    if not blocks:
        return np.zeros(0, dtype=np.float32)
    return np.concatenate(blocks)


class ThreadedStream:
    """Fake OutputStream that runs the callback on its own thread, back to back.

    Like PortAudio, ``stop()`` waits for the callback in flight to return.
    If that wait exceeds ``join_timeout`` the stream records ``stop_timed_out``.
    """

    def __init__(self, config: AudioConfig, callback, join_timeout: float = 2.0) -> None:
        self._callback = callback
        self._frames = config.blocksize
        self._channels = config.channels
        self._join_timeout = join_timeout
        self._running = threading.Event()
        self._thread: threading.Thread | None = None
        self.blocks = 0
        self.stop_timed_out = False
        self.closed = False

    @property
    def active(self) -> bool:
        return self._thread is not None

    def start(self) -> None:
        self._running.set()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._running.clear()
        self._thread.join(self._join_timeout)
        self.stop_timed_out = self.stop_timed_out or self._thread.is_alive()
        self._thread = None

    def close(self) -> None:
        self.closed = True

    def _run(self) -> None:
        outdata = np.zeros((self._frames, self._channels), dtype=np.float32)
        while self._running.is_set():
            self._callback(outdata, self._frames, None, None)
            self.blocks += 1


@pytest.fixture
def threaded_streams() -> list[ThreadedStream]:
    return []


@pytest.fixture
def threaded_context(threaded_streams: list[ThreadedStream]):
    def factory(config: AudioConfig, callback) -> ThreadedStream:
        threaded_streams.append(ThreadedStream(config, callback))
        return threaded_streams[-1]

    ctx = SynthContext(AudioConfig(), stream_factory=factory)
    yield ctx
    ctx.close()
