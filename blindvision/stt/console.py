"""
Console speech input: typed lines stand in for recognized speech.

Useful for exercising the assistant on a desktop without a microphone.
Each non-empty line read while a session is open becomes a final
transcript; an empty line is reported as "no input"; end of file means
input is no longer available.
"""

import logging
import sys
import threading
from typing import IO, Any, Optional

from blindvision.events import InputErrorKind
from blindvision.stt.base import SpeechInputError, SpeechInputPort
from blindvision.stt.registry import register_stt_backend

logger = logging.getLogger(__name__)


@register_stt_backend("console")
class ConsoleInput(SpeechInputPort):
    """Reads transcripts from a text stream (stdin by default)."""

    def __init__(self, stream: Optional[IO[str]] = None, **kwargs: Any):
        super().__init__()
        self._stream = stream or sys.stdin
        self._active = False
        self._closed = False
        self._lock = threading.Lock()
        self._reader: Optional[threading.Thread] = None

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self) -> None:
        if self._closed:
            raise SpeechInputError(InputErrorKind.UNSUPPORTED, "console input closed")
        with self._lock:
            if self._active:
                return
            self._active = True
        if self._reader is None:
            self._reader = threading.Thread(
                target=self._read_loop, name="blindvision-console-input", daemon=True
            )
            self._reader.start()
        self._emit_started()

    def stop(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._emit_ended()

    def _read_loop(self) -> None:
        for line in self._stream:
            text = line.strip()
            if not self._active:
                logger.debug("Not listening, ignored input: %r", text)
                continue
            if text:
                self._emit_result(text, is_final=True)
            else:
                self._emit_error(InputErrorKind.NO_INPUT)

        logger.info("Console input closed")
        self._closed = True
        was_active = self._active
        self._active = False
        self._emit_error(InputErrorKind.UNSUPPORTED, "end of input")
        if was_active:
            self._emit_ended()

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info["closed"] = self._closed
        return info
