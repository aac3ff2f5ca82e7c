"""
Abstract base class for speech input ports.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from blindvision.events import (
    Event,
    InputEnded,
    InputErrorKind,
    InputFailed,
    InputStarted,
    TranscriptReceived,
    Utterance,
)

logger = logging.getLogger(__name__)


class SpeechInputError(RuntimeError):
    """Raised by ``start()`` when the recognizer cannot be opened."""

    def __init__(self, kind: InputErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind


class SpeechInputPort(ABC):
    """
    Speech-to-text capability.

    Implementations report everything through the bound event sink:
    ``InputStarted`` when a session opens, ``TranscriptReceived`` for
    partial and final results, ``InputFailed`` on errors, and
    ``InputEnded`` whenever a session closes, whether because ``stop()``
    was called or because the platform ended it. Callers must ``stop()``
    before calling ``start()`` again.
    """

    name: str = "base"

    def __init__(self):
        self._sink: Optional[Callable[[Event], None]] = None

    def bind(self, sink: Callable[[Event], None]) -> None:
        """Attach the event sink (the controller's channel)."""
        self._sink = sink

    def _emit(self, event: Event) -> None:
        if self._sink is None:
            logger.debug("%s: no sink bound, dropping %s", self.name, type(event).__name__)
            return
        self._sink(event)

    def _emit_started(self) -> None:
        self._emit(InputStarted())

    def _emit_result(self, transcript: str, is_final: bool = True) -> None:
        self._emit(TranscriptReceived(utterance=Utterance(transcript=transcript, is_final=is_final)))

    def _emit_error(self, kind: InputErrorKind, detail: str = "") -> None:
        self._emit(InputFailed(kind=kind, detail=detail))

    def _emit_ended(self) -> None:
        self._emit(InputEnded())

    @abstractmethod
    def start(self) -> None:
        """
        Open a listening session.

        Raises:
            SpeechInputError: If the recognizer cannot be started.
        """
        pass

    @abstractmethod
    def stop(self) -> None:
        """Close the current session (no-op if none is open)."""
        pass

    @property
    @abstractmethod
    def is_active(self) -> bool:
        """True while a session is open and capturing."""
        pass

    def close(self) -> None:
        """Release resources; the port is not used afterwards."""
        self.stop()

    def get_info(self) -> dict[str, Any]:
        return {"name": self.name, "active": self.is_active}
