"""Configuration dataclasses with sensible defaults. Optional YAML override via config.yaml."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

# Project root (two levels up from this file: src/soundscape/config.py → soundscape/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


@dataclass(frozen=True)
class AudioConfig:
    sample_rate: int = 44100
    channels: int = 1
    blocksize: int = 512  # Frames per stream callback
    latency: str = "low"
    master_volume: float = 1.0  # Applied at the output sink, after the graph is mixed

    def seconds_to_frames(self, seconds: float) -> int:
        return int(round(seconds * self.sample_rate))


@dataclass(frozen=True)
class AmbientConfig:
    buffer_duration_sec: float = 2.0  # Noise buffer length when no duration is given
    event_probability: float = 1e-4  # Per-sample chance of a forest chirp / cafe clink


@dataclass(frozen=True)
class AlarmConfig:
    gain: float = 0.3
    fade_ms: int = 100  # Linear fade-in (and fade-out for bounded tones)
    preview_ms: int = 3000  # Length of an alarm preview from the CLI


@dataclass(frozen=True)
class FocusConfig:
    session_minutes: int = 25
    adjust_step_minutes: int = 5
    default_sound: str = "none"  # "none" = silent session


@dataclass(frozen=True)
class AppConfig:
    audio: AudioConfig = field(default_factory=AudioConfig)
    ambient: AmbientConfig = field(default_factory=AmbientConfig)
    alarm: AlarmConfig = field(default_factory=AlarmConfig)
    focus: FocusConfig = field(default_factory=FocusConfig)


def _filter_keys(cls: type, raw: dict) -> dict:
    """Keep only keys that match dataclass fields, warn on unknown ones."""
    valid = {f.name for f in fields(cls)}
    unknown = set(raw) - valid
    if unknown:
        logger.warning("Ignoring unknown config keys for %s: %s", cls.__name__, ", ".join(sorted(unknown)))
    return {k: v for k, v in raw.items() if k in valid}


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load config from YAML file, falling back to defaults for missing fields."""
    if config_path is None:
        config_path = PROJECT_ROOT / "config.yaml"

    if not config_path.exists():
        return AppConfig()

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        cfg = AppConfig(
            audio=AudioConfig(**_filter_keys(AudioConfig, raw.get("audio", {}))),
            ambient=AmbientConfig(**_filter_keys(AmbientConfig, raw.get("ambient", {}))),
            alarm=AlarmConfig(**_filter_keys(AlarmConfig, raw.get("alarm", {}))),
            focus=FocusConfig(**_filter_keys(FocusConfig, raw.get("focus", {}))),
        )

        # Validate master_volume
        volume = cfg.audio.master_volume
        if not isinstance(volume, (int, float)) or not 0 < volume <= 1.0:
            logger.warning("master_volume must be in (0, 1] (got %r), resetting to 1.0", volume)
            cfg = replace(cfg, audio=replace(cfg.audio, master_volume=1.0))

        if cfg.ambient.buffer_duration_sec <= 0:
            logger.warning(
                "buffer_duration_sec must be positive (got %r), resetting to 2.0",
                cfg.ambient.buffer_duration_sec,
            )
            cfg = replace(cfg, ambient=replace(cfg.ambient, buffer_duration_sec=2.0))

        return cfg
    except Exception:
        logger.warning("Failed to parse %s, using defaults", config_path, exc_info=True)
        return AppConfig()
