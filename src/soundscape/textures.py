"""Noise-buffer synthesis for the ambient textures.

Each texture is uniform noise scaled to a small amplitude, shaped in the
time domain (swells, bursts, chirps, clinks), and paired with a fixed
filter and output gain. Buffers are generated fresh on every call.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
from scipy.signal import fftconvolve, windows

from soundscape.catalog import AmbientKind
from soundscape.graph import FilterType


@dataclass(frozen=True)
class TextureSpec:
    amplitude: float  # Peak of the raw uniform noise
    gain: float  # Gain node level
    filter_type: FilterType | None = None
    filter_frequency: float | None = None


TEXTURES: dict[AmbientKind, TextureSpec] = {
    AmbientKind.OCEAN: TextureSpec(amplitude=0.2, gain=0.3, filter_type=FilterType.LOWPASS, filter_frequency=800.0),
    AmbientKind.RAIN: TextureSpec(amplitude=0.1, gain=0.2, filter_type=FilterType.HIGHPASS, filter_frequency=1000.0),
    AmbientKind.FOREST: TextureSpec(amplitude=0.05, gain=0.25),
    AmbientKind.CAFE: TextureSpec(amplitude=0.15, gain=0.2, filter_type=FilterType.BANDPASS, filter_frequency=1500.0),
    AmbientKind.WHITE_NOISE: TextureSpec(amplitude=0.1, gain=0.1),
}

CHIRP_AMPLITUDE = 0.1
CHIRP_DURATION_SEC = 0.08
CLINK_BOOST = 4.0  # Peak amplitude multiplier at a clink onset
CLINK_DECAY_SEC = 0.008
CLINK_DURATION_SEC = 0.04
BURST_SEC = 0.05  # Forest rustle gate resolution
BURST_DENSITY = 0.3  # Fraction of gate slots that rustle


def render_texture(
    kind: AmbientKind,
    sample_rate: int,
    duration_sec: float,
    rng: np.random.Generator,
    event_probability: float = 1e-4,
) -> np.ndarray:
    """Generate a mono float32 noise buffer of ``sample_rate * duration_sec`` samples."""
    n = max(1, int(round(sample_rate * duration_sec)))
    spec = TEXTURES[kind]
    noise = rng.uniform(-1.0, 1.0, n) * spec.amplitude
    shaped = _SHAPERS[kind](noise, sample_rate, rng, event_probability)
    return np.clip(shaped, -1.0, 1.0).astype(np.float32)


def event_onsets(n: int, rng: np.random.Generator, probability: float) -> np.ndarray:
    """Sample indices where a sparse stochastic event (chirp, clink) starts."""
    if probability <= 0:
        return np.zeros(0, dtype=np.int64)
    return np.flatnonzero(rng.random(n) < probability)


def _ocean(noise: np.ndarray, sample_rate: int, rng: np.random.Generator, p: float) -> np.ndarray:
    # One swell per buffer so a looped buffer joins without a seam.
    n = len(noise)
    phase = 2 * np.pi * np.arange(n) / n
    swell = 0.5 - 0.5 * np.cos(phase)
    return noise * (0.3 + 0.7 * swell)


def _rain(noise: np.ndarray, sample_rate: int, rng: np.random.Generator, p: float) -> np.ndarray:
    return noise


def _forest(noise: np.ndarray, sample_rate: int, rng: np.random.Generator, p: float) -> np.ndarray:
    n = len(noise)

    # Leaf rustle: noise gated on and off in short slots, smoothed so bursts swell in and out
    slot = max(1, int(sample_rate * BURST_SEC))
    slots = -(-n // slot)
    gate = np.repeat((rng.random(slots) < BURST_DENSITY).astype(np.float64), slot)[:n]
    smooth = windows.hann(2 * slot)
    gate = fftconvolve(gate, smooth / smooth.sum(), mode="same")
    out = noise * gate

    # Bird chirps: short rising sine sweeps under a Hann envelope
    length = max(2, int(sample_rate * CHIRP_DURATION_SEC))
    for onset in event_onsets(n, rng, p):
        span = min(length, n - onset)
        if span < 2:
            continue
        f0 = rng.uniform(2000.0, 4000.0)
        freqs = np.linspace(f0, f0 * 1.5, length)[:span]
        phase = 2 * np.pi * np.cumsum(freqs) / sample_rate
        out[onset : onset + span] += np.sin(phase) * windows.hann(length)[:span] * CHIRP_AMPLITUDE
    return out


def _cafe(noise: np.ndarray, sample_rate: int, rng: np.random.Generator, p: float) -> np.ndarray:
    n = len(noise)
    boost = np.ones(n)
    length = max(1, int(sample_rate * CLINK_DURATION_SEC))
    decay = CLINK_BOOST * np.exp(-np.arange(length) / (sample_rate * CLINK_DECAY_SEC))
    for onset in event_onsets(n, rng, p):
        span = min(length, n - onset)
        boost[onset : onset + span] += decay[:span]
    return noise * boost


def _white_noise(noise: np.ndarray, sample_rate: int, rng: np.random.Generator, p: float) -> np.ndarray:
    return noise


_SHAPERS: dict[AmbientKind, Callable[[np.ndarray, int, np.random.Generator, float], np.ndarray]] = {
    AmbientKind.OCEAN: _ocean,
    AmbientKind.RAIN: _rain,
    AmbientKind.FOREST: _forest,
    AmbientKind.CAFE: _cafe,
    AmbientKind.WHITE_NOISE: _white_noise,
}
