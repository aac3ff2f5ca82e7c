"""
Abstract base class for speech output ports.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from blindvision.events import Event, PlaybackFailed, PlaybackFinished

logger = logging.getLogger(__name__)


class SpeechOutputPort(ABC):
    """
    Text-to-speech and playback capability.

    ``speak()`` returns immediately; completion is reported later as a
    ``PlaybackFinished`` or ``PlaybackFailed`` event carrying the
    ``playback_id`` given by the caller. Only one playback may be
    outstanding. After ``cancel()`` the cancelled playback reports nothing.

    Subclasses implement ``_start_playback`` / ``_stop_playback`` and call
    ``_finish(playback_id)`` from whatever thread playback ends on.
    """

    name: str = "base"

    def __init__(self):
        self._sink: Optional[Callable[[Event], None]] = None
        self._lock = threading.Lock()
        self._current: Optional[int] = None

    def bind(self, sink: Callable[[Event], None]) -> None:
        self._sink = sink

    @property
    def is_playing(self) -> bool:
        return self._current is not None

    def speak(self, text: str, playback_id: int) -> None:
        """
        Begin speaking ``text``.

        Raises:
            RuntimeError: If a playback is already outstanding.
        """
        with self._lock:
            if self._current is not None:
                raise RuntimeError(
                    f"{self.name}: speak() called while playback {self._current} is active"
                )
            self._current = playback_id
        try:
            self._start_playback(text, playback_id)
        except Exception:
            with self._lock:
                if self._current == playback_id:
                    self._current = None
            raise

    def cancel(self) -> None:
        """Stop playback immediately (no-op when idle)."""
        with self._lock:
            playback_id = self._current
            self._current = None
        if playback_id is not None:
            logger.debug("%s: cancelling playback %d", self.name, playback_id)
            self._stop_playback()

    def _finish(self, playback_id: int, error: Optional[str] = None) -> None:
        with self._lock:
            if self._current != playback_id:
                return  # cancelled or superseded
            self._current = None
        if self._sink is None:
            return
        if error is None:
            self._sink(PlaybackFinished(playback_id=playback_id))
        else:
            self._sink(PlaybackFailed(playback_id=playback_id, error=error))

    @abstractmethod
    def _start_playback(self, text: str, playback_id: int) -> None:
        pass

    @abstractmethod
    def _stop_playback(self) -> None:
        pass

    def close(self) -> None:
        self.cancel()

    def get_info(self) -> dict[str, Any]:
        return {"name": self.name, "playing": self.is_playing}
