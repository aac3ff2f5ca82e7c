"""Bounded FIFO of replies waiting for the speaker."""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    text: str
    enqueued_at: float = field(default_factory=time.monotonic)


class SpeechOutputQueue:
    """
    Holds text that must be spoken while the output channel is busy.

    When the backlog is already at ``max_depth`` it is discarded before the
    new entry is appended: a reply that waited behind several others is
    no longer relevant and would be spoken out of context.
    """

    def __init__(self, max_depth: int = 2):
        if max_depth < 1:
            raise ValueError("max_depth must be at least 1")
        self._max_depth = max_depth
        self._entries: deque[QueueEntry] = deque()

    @property
    def max_depth(self) -> int:
        return self._max_depth

    def enqueue(self, text: str) -> QueueEntry:
        if len(self._entries) >= self._max_depth:
            logger.info("Speech queue full (%d), dropping stale backlog", len(self._entries))
            self._entries.clear()
        entry = QueueEntry(text=text)
        self._entries.append(entry)
        return entry

    def dequeue_next(self) -> Optional[QueueEntry]:
        """Oldest entry, or None when empty."""
        if not self._entries:
            return None
        return self._entries.popleft()

    def clear(self) -> int:
        """Drop everything; returns how many entries were discarded."""
        dropped = len(self._entries)
        self._entries.clear()
        return dropped

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def texts(self) -> list[str]:
        return [e.text for e in self._entries]
