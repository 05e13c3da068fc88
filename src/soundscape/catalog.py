"""Fixed catalog of ambient textures and alarm tones."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class AmbientKind(enum.Enum):
    """Synthesis algorithm selected by an ambient sound's kind tag."""

    OCEAN = "ocean"
    RAIN = "rain"
    FOREST = "forest"
    CAFE = "cafe"
    WHITE_NOISE = "white-noise"

    @classmethod
    def from_tag(cls, tag: str | None) -> AmbientKind:
        """Resolve a kind tag, falling back to white noise for anything unrecognized."""
        normalized = (tag or "").strip().lower()
        normalized = _KIND_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            logger.info("Unknown ambient kind %r, falling back to white noise.", tag)
            return cls.WHITE_NOISE


_KIND_ALIASES: dict[str, str] = {
    "tidal": "ocean",
    "waves": "ocean",
    "rainfall": "rain",
    "coffee": "cafe",
    "whitenoise": "white-noise",
    "white_noise": "white-noise",
}


@dataclass(frozen=True)
class SoundDefinition:
    """Immutable catalog entry.

    Ambient textures carry a ``kind`` tag; alarm tones carry a target
    ``frequency`` in Hz.
    """

    id: str
    name: str
    kind: str | None = None
    frequency: float | None = None


AMBIENT_SOUNDS: tuple[SoundDefinition, ...] = (
    SoundDefinition("ocean", "Ocean Waves", kind="ocean"),
    SoundDefinition("rain", "Gentle Rainfall", kind="rain"),
    SoundDefinition("forest", "Forest Sounds", kind="forest"),
    SoundDefinition("cafe", "Coffee Shop", kind="cafe"),
    SoundDefinition("white-noise", "White Noise", kind="white-noise"),
)

ALARM_TONES: tuple[SoundDefinition, ...] = (
    SoundDefinition("gentle", "Gentle Wake", frequency=440.0),
    SoundDefinition("classic", "Classic Beep", frequency=880.0),
    SoundDefinition("chime", "Soft Chime", frequency=523.25),
    SoundDefinition("bell", "Morning Bell", frequency=659.25),
    SoundDefinition("digital", "Digital", frequency=1000.0),
)

# Reminder chime; its frequency is the first of its three steps.
NOTIFICATION_CHIME = SoundDefinition("notification", "Reminder Chime", frequency=800.0)

# Focus-mode selection meaning "no ambient sound".
SILENT_ID = "none"


def find_ambient(sound_id: str) -> SoundDefinition:
    """Look up an ambient sound by id (aliases such as ``whitenoise`` accepted).

    Raises KeyError if no entry matches.
    """
    key = sound_id.strip().lower()
    key = _KIND_ALIASES.get(key, key)
    for sound in AMBIENT_SOUNDS:
        if sound.id == key:
            return sound
    raise KeyError(sound_id)


def find_alarm_tone(tone_id: str) -> SoundDefinition:
    """Look up an alarm tone by id. Raises KeyError if no entry matches."""
    key = tone_id.strip().lower()
    for tone in ALARM_TONES:
        if tone.id == key:
            return tone
    raise KeyError(tone_id)
