"""Cancellable delayed callbacks used for settle delays and the watchdog."""

import logging
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class ScheduledTask(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Anything that can run a callback once after a delay."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask: ...


class ThreadingScheduler:
    """
    Scheduler backed by daemon ``threading.Timer`` threads.

    Callbacks run on the timer thread, so they should only post events to
    the controller's channel rather than mutate state.
    """

    def __init__(self, name: str = "blindvision-timer"):
        self._name = name

    def call_later(self, delay: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(delay, self._run, args=(callback,))
        timer.daemon = True
        timer.name = self._name
        timer.start()
        return timer

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Scheduled callback failed")
