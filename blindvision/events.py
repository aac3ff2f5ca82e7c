"""
Typed event stream between the capability ports and the turn controller.

Ports never touch assistant state directly. Every platform callback
(recognition started/result/error/end, playback done/error), every timer
and every user action is turned into one of the events below and posted
to an ``EventChannel``. The turn controller is the only consumer.
"""

import logging
import queue
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class InputErrorKind(Enum):
    """Speech input error categories."""

    NO_INPUT = "no-input"  # Nothing heard before the platform gave up
    NETWORK = "network"  # Recognizer backend unreachable
    PERMISSION_DENIED = "permission-denied"
    UNSUPPORTED = "unsupported"
    ABORTED = "aborted"  # Platform aborted the session (treated like an end)

    @property
    def is_fatal(self) -> bool:
        """True for errors that permanently disable listening."""
        return self in (InputErrorKind.PERMISSION_DENIED, InputErrorKind.UNSUPPORTED)


@dataclass
class Utterance:
    """A transcribed span of speech."""

    transcript: str
    is_final: bool = True
    captured_at: float = field(default_factory=time.monotonic)

    @property
    def words(self) -> list[str]:
        return self.transcript.lower().split()


@dataclass
class Event:
    """Base class for everything flowing through the channel."""

    timestamp: float = field(default_factory=time.monotonic, init=False)


# ── Speech input port events ──


@dataclass
class InputStarted(Event):
    pass


@dataclass
class TranscriptReceived(Event):
    utterance: Optional[Utterance] = None


@dataclass
class InputFailed(Event):
    kind: InputErrorKind = InputErrorKind.NO_INPUT
    detail: str = ""


@dataclass
class InputEnded(Event):
    pass


# ── Speech output port events ──


@dataclass
class PlaybackFinished(Event):
    playback_id: int = 0


@dataclass
class PlaybackFailed(Event):
    playback_id: int = 0
    error: str = ""


# ── Scene query results ──


@dataclass
class QueryResolved(Event):
    turn_id: int = 0
    text: str = ""


@dataclass
class QueryFailed(Event):
    turn_id: int = 0
    error: Optional[BaseException] = None


# ── Timers ──


@dataclass
class SettleElapsed(Event):
    """Settle delay after playback (or restart delay after input end) ran out."""

    token: int = 0


@dataclass
class WatchdogFired(Event):
    pass


# ── User / application requests ──


@dataclass
class StartRequested(Event):
    pass


@dataclass
class StopRequested(Event):
    pass


@dataclass
class InterruptRequested(Event):
    pass


@dataclass
class ShutdownRequested(Event):
    pass


class EventChannel:
    """
    Thread-safe FIFO of events.

    Any thread may ``post``; only the turn controller's dispatch loop
    calls ``get``/``drain``.
    """

    def __init__(self):
        self._queue: queue.Queue[Event] = queue.Queue()

    def post(self, event: Event) -> None:
        logger.debug("event posted: %s", type(event).__name__)
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Block for the next event, returning None on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_nowait(self) -> Optional[Event]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def __len__(self) -> int:
        return self._queue.qsize()
