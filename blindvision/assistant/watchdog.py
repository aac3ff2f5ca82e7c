"""
Listening watchdog.

Some recognizers (mobile browsers, cloud streaming sessions) end a
continuous listening session on their own after a stretch of silence,
sometimes without reporting it. The watchdog periodically asks the turn
controller whether the microphone is still live and, when the assistant
is supposed to be listening but the input is not, restarts it.

The watchdog owns exactly one scheduled task. Its timer thread only posts
a ``WatchdogFired`` event; the decision itself runs on the controller's
dispatch thread via ``on_fire`` so it always sees the current turn state.
"""

import logging
from enum import Enum
from typing import Callable, Optional

from blindvision.assistant.scheduler import ScheduledTask, Scheduler
from blindvision.events import Event, WatchdogFired

logger = logging.getLogger(__name__)


class WatchdogAction(Enum):
    DISABLED = "disabled"  # Fired after disable(); ignored
    SKIPPED = "skipped"  # Speaking/processing/idle: nothing to do this tick
    HEALTHY = "healthy"  # Listening and input active
    RESTARTED = "restarted"
    RETRY_SCHEDULED = "retry_scheduled"  # Restart failed, backoff armed


class ListeningWatchdog:
    """
    Periodic supervisor for continuous listening.

    Args:
        scheduler: Source of cancellable delayed callbacks.
        post: Posts events to the controller's channel.
        interval: Seconds between regular checks.
        backoff: Seconds before retrying a failed restart.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        post: Callable[[Event], None],
        interval: float = 20.0,
        backoff: float = 2.0,
    ):
        self._scheduler = scheduler
        self._post = post
        self.interval = interval
        self.backoff = backoff

        self._task: Optional[ScheduledTask] = None
        self._generation = 0
        self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        """Start periodic checks (no-op if already running)."""
        if self._enabled:
            return
        self._enabled = True
        self._schedule(self.interval)
        logger.debug("Watchdog enabled (interval=%.1fs)", self.interval)

    def disable(self) -> None:
        if not self._enabled:
            return
        self._enabled = False
        self._cancel()
        logger.debug("Watchdog disabled")

    def on_fire(
        self,
        listening: bool,
        busy: bool,
        input_active: bool,
        restart: Callable[[], bool],
    ) -> WatchdogAction:
        """
        Handle one tick on the dispatch thread.

        Args:
            listening: Turn state is LISTENING.
            busy: Turn state is SPEAKING or PROCESSING.
            input_active: The speech input port reports an open session.
            restart: Stops then restarts speech input; returns success.
        """
        if not self._enabled:
            return WatchdogAction.DISABLED

        if busy or not listening:
            self._schedule(self.interval)
            return WatchdogAction.SKIPPED

        if input_active:
            self._schedule(self.interval)
            return WatchdogAction.HEALTHY

        logger.info("Watchdog: speech input went quiet, restarting")
        restarted = restart()
        if not self._enabled:
            # Restart hit a fatal error and listening was switched off
            return WatchdogAction.DISABLED
        if restarted:
            self._schedule(self.interval)
            return WatchdogAction.RESTARTED

        logger.warning("Watchdog: restart failed, retrying in %.1fs", self.backoff)
        self._schedule(self.backoff)
        return WatchdogAction.RETRY_SCHEDULED

    def _schedule(self, delay: float) -> None:
        self._cancel()
        generation = self._generation
        self._task = self._scheduler.call_later(delay, lambda: self._fire(generation))

    def _cancel(self) -> None:
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def _fire(self, generation: int) -> None:
        # Stale timers (cancelled but already running) are dropped here
        if generation != self._generation or not self._enabled:
            return
        self._post(WatchdogFired())
