"""Focus timer that plays an ambient texture while a session is running."""

from __future__ import annotations

import logging

from soundscape.catalog import SILENT_ID, find_ambient
from soundscape.config import FocusConfig
from soundscape.engine import SoundEngine
from soundscape.errors import ContextUnavailableError

logger = logging.getLogger(__name__)


class FocusSession:
    """Countdown timer with optional looping ambient sound.

    The host drives time by calling ``tick()`` once per second. When the
    countdown reaches zero the ambient sound stops and the reminder chime
    plays.
    """

    def __init__(
        self,
        engine: SoundEngine,
        config: FocusConfig | None = None,
        sound_id: str | None = None,
    ) -> None:
        self._engine = engine
        self._cfg = config or FocusConfig()
        self._total = self._cfg.session_minutes * 60
        self._remaining = self._total
        self._running = False
        self._sound_id = SILENT_ID
        self.select_sound(sound_id or self._cfg.default_sound)

    @property
    def remaining(self) -> int:
        """Seconds left in the session."""
        return self._remaining

    @property
    def running(self) -> bool:
        return self._running

    @property
    def sound_id(self) -> str:
        return self._sound_id

    @property
    def progress(self) -> float:
        """Percent of the configured session length already elapsed, 0-100."""
        if self._total <= 0:
            return 100.0
        elapsed = (self._total - self._remaining) / self._total * 100
        return max(0.0, min(100.0, elapsed))

    def format_time(self) -> str:
        minutes, seconds = divmod(self._remaining, 60)
        return f"{minutes:02d}:{seconds:02d}"

    def select_sound(self, sound_id: str) -> None:
        """Choose the ambient sound (``"none"`` for silence). Raises KeyError for unknown ids."""
        sound_id = sound_id.strip().lower()
        if sound_id != SILENT_ID:
            sound_id = find_ambient(sound_id).id
        changed = sound_id != self._sound_id
        self._sound_id = sound_id
        if self._running and changed:
            self._engine.stop()
            try:
                self._start_sound()
            except ContextUnavailableError:
                self._running = False
                raise

    def adjust(self, minutes: int) -> bool:
        """Add (or subtract) minutes while paused. Returns False if running."""
        if self._running:
            return False
        self._remaining = max(0, self._remaining + minutes * 60)
        return True

    def extend(self) -> bool:
        return self.adjust(self._cfg.adjust_step_minutes)

    def shorten(self) -> bool:
        return self.adjust(-self._cfg.adjust_step_minutes)

    def start(self) -> None:
        if self._running or self._remaining == 0:
            return
        self._running = True
        try:
            self._start_sound()
        except ContextUnavailableError:
            self._running = False
            raise
        logger.info("Focus session started (%s left, sound=%s).", self.format_time(), self._sound_id)

    def pause(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._sound_id != SILENT_ID:
            self._engine.stop()
        logger.info("Focus session paused at %s.", self.format_time())

    def toggle(self) -> None:
        if self._running:
            self.pause()
        else:
            self.start()

    def reset(self) -> None:
        self.pause()
        self._remaining = self._total

    def tick(self, seconds: int = 1) -> bool:
        """Advance the countdown. Returns True when this tick finished the session."""
        if not self._running:
            return False
        self._remaining = max(0, self._remaining - seconds)
        if self._remaining > 0:
            return False

        self._running = False
        self._engine.stop()
        logger.info("Focus session complete.")
        try:
            self._engine.play_notification_chime()
        except ContextUnavailableError:
            logger.warning("Could not play the completion chime.", exc_info=True)
        return True

    def _start_sound(self) -> None:
        if self._sound_id == SILENT_ID:
            return
        self._engine.play_ambient(find_ambient(self._sound_id), loop=True)
