"""
Console speech output: replies are printed instead of spoken.

Playback "lasts" roughly as long as reading the text aloud would, so the
turn controller sees the same finished/settle timing as with a real
speaker.
"""

import logging
import threading
from typing import Any, Callable, Optional

from blindvision.tts.base import SpeechOutputPort
from blindvision.tts.registry import register_tts_backend

logger = logging.getLogger(__name__)


@register_tts_backend("console")
class ConsoleOutput(SpeechOutputPort):
    """Prints each utterance and reports it finished after a reading delay."""

    def __init__(
        self,
        words_per_minute: float = 180.0,
        printer: Optional[Callable[[str], None]] = None,
        **kwargs: Any,
    ):
        super().__init__()
        self.words_per_minute = words_per_minute
        self._printer = printer or (lambda text: print(f"Assistant: {text}", flush=True))
        self._timer: Optional[threading.Timer] = None

    def duration_for(self, text: str) -> float:
        if self.words_per_minute <= 0:
            return 0.0
        return len(text.split()) * 60.0 / self.words_per_minute

    def _start_playback(self, text: str, playback_id: int) -> None:
        self._printer(text)
        self._timer = threading.Timer(self.duration_for(text), self._finish, args=(playback_id,))
        self._timer.daemon = True
        self._timer.start()

    def _stop_playback(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info["words_per_minute"] = self.words_per_minute
        return info
