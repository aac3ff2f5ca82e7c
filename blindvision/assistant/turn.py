"""
Turn-taking and audio arbitration.

One microphone and one speaker are shared between listening and speaking.
The ``TurnController`` is the only component allowed to open the speech
input or start playback, and it does so exclusively from its dispatch
thread, in response to events posted by the ports, the timers, the scene
query worker and the application.

State machine:

    IDLE ──start──> LISTENING ──accepted utterance──> PROCESSING
      ^                 ^                                  │
      │                 │ settle delay                     │ answer / fallback
      │                 │ (continuous mode)                v
      └──── stop ───────┴───────────────────────────── SPEAKING

Interrupt ("stop all audio") may be requested in any state: playback is
cancelled, the reply backlog dropped, the in-flight query abandoned, and
the controller returns to LISTENING (continuous mode) or IDLE.
"""

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from blindvision.assistant.commands import HELP_TEXT, CommandKind, VoiceCommand, parse_command
from blindvision.assistant.scene import SceneQueryService
from blindvision.assistant.scheduler import ScheduledTask, Scheduler, ThreadingScheduler
from blindvision.assistant.speech_queue import SpeechOutputQueue
from blindvision.assistant.utterance_filter import UtteranceFilter
from blindvision.assistant.vision import FrameSource
from blindvision.assistant.watchdog import ListeningWatchdog
from blindvision.events import (
    Event,
    EventChannel,
    InputEnded,
    InputErrorKind,
    InputFailed,
    InputStarted,
    InterruptRequested,
    PlaybackFailed,
    PlaybackFinished,
    QueryFailed,
    QueryResolved,
    SettleElapsed,
    ShutdownRequested,
    StartRequested,
    StopRequested,
    TranscriptReceived,
    WatchdogFired,
)
from blindvision.stt.base import SpeechInputError, SpeechInputPort
from blindvision.tts.base import SpeechOutputPort

logger = logging.getLogger(__name__)


class TurnState(Enum):
    """Who currently owns the audio devices."""

    IDLE = "idle"  # Neither microphone nor speaker
    LISTENING = "listening"  # Microphone open
    PROCESSING = "processing"  # Query in flight, both closed
    SPEAKING = "speaking"  # Speaker active (or settling), microphone closed


@dataclass
class TurnMessages:
    """Fixed phrases the assistant speaks on its own."""

    greeting: Optional[str] = "BlindVision Assistant ready. Just speak to ask me questions."
    help: str = HELP_TEXT
    camera_unavailable: str = "Unable to capture image. Please make sure the camera is active."
    query_failed: str = "Sorry, I had trouble analyzing that. Please try again."
    no_input: str = "I didn't hear anything. Please try again."
    network: str = "Network error. Please check your connection."
    permission_denied: str = "Please allow microphone access to use voice commands."
    unsupported: str = "Speech recognition is not available on this device."


# What a pending SettleElapsed is for
_SETTLE = "settle"
_RESTART = "restart"


class TurnController:
    """
    Owns ``TurnState`` and arbitrates the microphone and speaker.

    Args:
        speech_input: Speech-to-text port.
        speech_output: Text-to-speech / playback port.
        scene: Scene query service.
        frames: Image capture source.
        utterance_filter: Transcript gate (default filter if None).
        speech_queue: Reply backlog (default cap 2 if None).
        scheduler: Delayed callbacks (threading timers if None).
        executor: Runs scene queries (single worker thread if None).
        channel: Event channel (new one if None).
        continuous: Resume listening after every turn.
        settle_delay: Seconds between end of playback and reopening the mic.
        input_restart_delay: Seconds before reopening the mic after the
            platform ended a listening session.
        watchdog_interval: Seconds between listening checks.
        watchdog_backoff: Seconds before retrying a failed restart.
        no_input_prompt_after: Consecutive no-input errors before the
            assistant says it did not hear anything (0 disables the prompt).
        messages: Phrases spoken by the assistant itself.
        on_state_change: Called with (old, new) on every transition.
    """

    def __init__(
        self,
        speech_input: SpeechInputPort,
        speech_output: SpeechOutputPort,
        scene: SceneQueryService,
        frames: FrameSource,
        utterance_filter: Optional[UtteranceFilter] = None,
        speech_queue: Optional[SpeechOutputQueue] = None,
        scheduler: Optional[Scheduler] = None,
        executor: Optional[Executor] = None,
        channel: Optional[EventChannel] = None,
        continuous: bool = True,
        settle_delay: float = 1.5,
        input_restart_delay: float = 1.0,
        watchdog_interval: float = 20.0,
        watchdog_backoff: float = 2.0,
        no_input_prompt_after: int = 2,
        messages: Optional[TurnMessages] = None,
        on_state_change: Optional[Callable[[TurnState, TurnState], None]] = None,
    ):
        self.speech_input = speech_input
        self.speech_output = speech_output
        self.scene = scene
        self.frames = frames
        self.utterance_filter = utterance_filter if utterance_filter is not None else UtteranceFilter()
        self.speech_queue = speech_queue if speech_queue is not None else SpeechOutputQueue()
        self.scheduler = scheduler if scheduler is not None else ThreadingScheduler()
        self._owns_executor = executor is None
        if executor is None:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="blindvision-query")
        self.executor = executor
        self.channel = channel if channel is not None else EventChannel()
        self.messages = messages if messages is not None else TurnMessages()
        self.on_state_change = on_state_change

        self.continuous_default = continuous
        self.settle_delay = settle_delay
        self.input_restart_delay = input_restart_delay
        self.no_input_prompt_after = no_input_prompt_after

        self.watchdog = ListeningWatchdog(
            self.scheduler, self.post, interval=watchdog_interval, backoff=watchdog_backoff
        )

        self._state = TurnState.IDLE
        self._continuous = False
        self._listen_once = False  # Explicit start() in non-continuous mode
        self._input_enabled = True
        self._running = False

        # Scene query bookkeeping
        self._turn_id = 0
        self._query_future: Optional[Future] = None

        # Playback bookkeeping
        self._playback_seq = 0
        self._playing_id: Optional[int] = None

        # Single settle/restart timer
        self._timer: Optional[ScheduledTask] = None
        self._timer_token = 0
        self._timer_purpose: Optional[str] = None

        self._no_input_count = 0

        self._handlers: dict[type, Callable[[Event], None]] = {
            StartRequested: self._on_start,
            StopRequested: self._on_stop,
            InterruptRequested: self._on_interrupt,
            ShutdownRequested: self._on_shutdown,
            InputStarted: self._on_input_started,
            TranscriptReceived: self._on_transcript,
            InputFailed: self._on_input_failed,
            InputEnded: self._on_input_ended,
            PlaybackFinished: self._on_playback_finished,
            PlaybackFailed: self._on_playback_failed,
            QueryResolved: self._on_query_resolved,
            QueryFailed: self._on_query_failed,
            SettleElapsed: self._on_settle_elapsed,
            WatchdogFired: self._on_watchdog_fired,
        }

        speech_input.bind(self.post)
        speech_output.bind(self.post)

    # ── Public API (any thread) ──

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def continuous(self) -> bool:
        return self._continuous

    @property
    def input_enabled(self) -> bool:
        """False after a fatal speech input error."""
        return self._input_enabled

    @property
    def mic_armed(self) -> bool:
        return self.speech_input.is_active

    @property
    def playback_armed(self) -> bool:
        return self.speech_output.is_playing

    def post(self, event: Event) -> None:
        self.channel.post(event)

    def start(self) -> None:
        self.post(StartRequested())

    def stop(self) -> None:
        self.post(StopRequested())

    def interrupt(self) -> None:
        self.post(InterruptRequested())

    def shutdown(self) -> None:
        self.post(ShutdownRequested())

    # ── Dispatch ──

    def dispatch(self, event: Event) -> None:
        """Handle one event on the current thread."""
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning("No handler for event %s", type(event).__name__)
            return
        try:
            handler(event)
        except Exception:
            logger.exception("Error handling %s in state %s", type(event).__name__, self._state.value)
            self._recover()

    def process_pending(self) -> int:
        """Dispatch every queued event without blocking; returns how many ran."""
        count = 0
        while True:
            event = self.channel.get_nowait()
            if event is None:
                return count
            self.dispatch(event)
            count += 1

    def run_forever(self, poll_interval: float = 0.5) -> None:
        """Dispatch events until a ShutdownRequested is handled."""
        self._running = True
        logger.debug("Turn controller dispatch loop started")
        while self._running:
            event = self.channel.get(timeout=poll_interval)
            if event is not None:
                self.dispatch(event)
        logger.debug("Turn controller dispatch loop stopped")

    # ── Transitions ──

    def _set_state(self, new_state: TurnState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.info("State: %s -> %s", old_state.value, new_state.value)
            if self.on_state_change is not None:
                try:
                    self.on_state_change(old_state, new_state)
                except Exception:
                    logger.exception("State change callback failed")

    def _enter_listening(self) -> None:
        self._listen_once = False
        self._set_state(TurnState.LISTENING)
        if self.speech_input.is_active:
            return
        if not self._open_mic():
            if self._input_enabled:
                self._schedule_timer(self.watchdog.backoff, _RESTART)
            elif self._state is TurnState.LISTENING:
                self._set_state(TurnState.IDLE)

    def _resume(self) -> None:
        """End of a cycle: listen again or go idle."""
        if self._input_enabled and (self._continuous or self._listen_once):
            self._enter_listening()
        else:
            self._listen_once = False
            self._set_state(TurnState.IDLE)

    def _open_mic(self) -> bool:
        if not self._input_enabled:
            return False
        try:
            self.speech_input.start()
            return True
        except SpeechInputError as e:
            if e.kind.is_fatal:
                self._disable_input(e.kind, str(e))
            else:
                logger.warning("Speech input failed to start (%s): %s", e.kind.value, e)
            return False
        except Exception as e:
            logger.warning("Speech input failed to start: %s", e)
            return False

    def _stop_mic(self) -> None:
        if not self.speech_input.is_active:
            return
        try:
            self.speech_input.stop()
        except Exception:
            logger.exception("Failed to stop speech input")

    def _say(self, text: str, remember: bool = False) -> None:
        """Speak now, or queue behind the current playback."""
        if remember:
            # Only scene answers feed echo detection
            self.utterance_filter.remember_output(text)
        if self._state is TurnState.SPEAKING and self._playing_id is not None:
            self.speech_queue.enqueue(text)
            logger.debug("Queued reply (%d waiting)", len(self.speech_queue))
            return
        self._cancel_timer()
        self._stop_mic()
        self._set_state(TurnState.SPEAKING)
        self._play(text)

    def _play(self, text: str) -> None:
        self._playback_seq += 1
        playback_id = self._playback_seq
        self._playing_id = playback_id
        logger.info("Speaking: %s", text)
        try:
            self.speech_output.speak(text, playback_id)
        except Exception as e:
            logger.error("Speech output failed: %s", e)
            self._playing_id = None
            self._after_playback(settle=False)

    def _after_playback(self, settle: bool = True) -> None:
        entry = self.speech_queue.dequeue_next()
        if entry is not None:
            self._play(entry.text)
            return
        if settle and self.settle_delay > 0:
            self._schedule_timer(self.settle_delay, _SETTLE)
        else:
            self._resume()

    def _reset_activity(self) -> None:
        """Cancel playback, backlog, query and timers."""
        self._turn_id += 1
        if self._query_future is not None:
            self._query_future.cancel()
            self._query_future = None
        dropped = self.speech_queue.clear()
        if dropped:
            logger.debug("Dropped %d queued replies", dropped)
        self._cancel_timer()
        self._playing_id = None
        self.speech_output.cancel()

    def _interrupt(self) -> None:
        logger.info("Interrupt: stopping all audio")
        self._reset_activity()
        if self._input_enabled and self._continuous:
            self._enter_listening()
        else:
            self._stop_mic()
            self._set_state(TurnState.IDLE)

    def _disable_input(self, kind: InputErrorKind, detail: str = "") -> None:
        if not self._input_enabled:
            return
        logger.error("Speech input unavailable (%s)%s", kind.value, f": {detail}" if detail else "")
        self._input_enabled = False
        self._continuous = False
        self._listen_once = False
        self.watchdog.disable()
        if self._timer_purpose == _RESTART:
            self._cancel_timer()
        self._stop_mic()

        if self._state is TurnState.IDLE:
            # Nobody is listening for an answer after stop()
            return

        message = (
            self.messages.permission_denied
            if kind is InputErrorKind.PERMISSION_DENIED
            else self.messages.unsupported
        )
        if self._state is TurnState.PROCESSING:
            # Spoken after the pending answer
            self.speech_queue.enqueue(message)
        else:
            self._say(message)

    def _recover(self) -> None:
        """Put the machine back in LISTENING or IDLE after a handler crashed."""
        if self._state in (TurnState.LISTENING, TurnState.IDLE):
            return
        try:
            self._reset_activity()
            self._stop_mic()
            self._resume()
        except Exception:
            logger.exception("Recovery failed, forcing idle")
            self._state = TurnState.IDLE

    # ── Timers ──

    def _schedule_timer(self, delay: float, purpose: str) -> None:
        self._cancel_timer()
        token = self._timer_token
        self._timer_purpose = purpose
        self._timer = self.scheduler.call_later(delay, lambda: self.post(SettleElapsed(token=token)))

    def _cancel_timer(self) -> None:
        self._timer_token += 1
        self._timer_purpose = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ── Handlers ──

    def _on_start(self, event: StartRequested) -> None:
        if self._state is not TurnState.IDLE:
            logger.debug("Start ignored in state %s", self._state.value)
            return
        self._input_enabled = True
        self._continuous = self.continuous_default
        self._listen_once = True
        self._no_input_count = 0
        if self._continuous:
            self.watchdog.enable()
        if self.messages.greeting:
            self._say(self.messages.greeting)
        else:
            self._enter_listening()

    def _on_stop(self, event: StopRequested) -> None:
        self._continuous = False
        self._listen_once = False
        self.watchdog.disable()
        self._reset_activity()
        self._stop_mic()
        self._set_state(TurnState.IDLE)

    def _on_interrupt(self, event: InterruptRequested) -> None:
        self._interrupt()

    def _on_shutdown(self, event: ShutdownRequested) -> None:
        self._on_stop(StopRequested())
        self._running = False
        if self._owns_executor:
            self.executor.shutdown(wait=False, cancel_futures=True)

    def _on_input_started(self, event: InputStarted) -> None:
        logger.debug("Speech input session started")

    def _on_transcript(self, event: TranscriptReceived) -> None:
        utterance = event.utterance
        if utterance is None or not utterance.is_final:
            return
        if self._state is not TurnState.LISTENING:
            logger.debug("Transcript dropped in state %s: %r", self._state.value, utterance.transcript)
            return

        if not self.utterance_filter.accepts(utterance.transcript):
            return

        command = parse_command(utterance.transcript)

        logger.info("Heard: %s", utterance.transcript)
        self._no_input_count = 0

        if command.kind is CommandKind.STOP:
            self._interrupt()
            return

        self._stop_mic()
        self._set_state(TurnState.PROCESSING)

        if command.kind is CommandKind.HELP:
            self._say(self.messages.help)
            return

        try:
            frame = self.frames.capture_current_frame()
        except Exception:
            logger.exception("Frame capture failed")
            frame = None
        if frame is None:
            logger.warning("No camera frame available")
            self._say(self.messages.camera_unavailable)
            return

        self._submit_query(command, frame)

    def _submit_query(self, command: VoiceCommand, frame: str) -> None:
        self._turn_id += 1
        turn_id = self._turn_id
        scene = self.scene
        post = self.post

        def run_query() -> None:
            try:
                if command.kind is CommandKind.DESCRIBE:
                    text = scene.describe_scene(frame)
                else:
                    text = scene.answer_question(frame, command.text)
            except Exception as e:
                logger.warning("Scene query failed: %s", e)
                post(QueryFailed(turn_id=turn_id, error=e))
                return
            post(QueryResolved(turn_id=turn_id, text=text))

        logger.debug("Submitting %s query (turn %d)", command.kind.value, turn_id)
        self._query_future = self.executor.submit(run_query)

    def _on_query_resolved(self, event: QueryResolved) -> None:
        if event.turn_id != self._turn_id or self._state is not TurnState.PROCESSING:
            logger.debug("Stale query result dropped (turn %d)", event.turn_id)
            return
        self._query_future = None
        text = (event.text or "").strip()
        if text:
            self._say(text, remember=True)
        else:
            self._say(self.messages.query_failed)

    def _on_query_failed(self, event: QueryFailed) -> None:
        if event.turn_id != self._turn_id or self._state is not TurnState.PROCESSING:
            logger.debug("Stale query failure dropped (turn %d)", event.turn_id)
            return
        self._query_future = None
        self._say(self.messages.query_failed)

    def _on_playback_finished(self, event: PlaybackFinished) -> None:
        if event.playback_id != self._playing_id:
            logger.debug("Stale playback completion dropped (%d)", event.playback_id)
            return
        self._playing_id = None
        self._after_playback()

    def _on_playback_failed(self, event: PlaybackFailed) -> None:
        if event.playback_id != self._playing_id:
            logger.debug("Stale playback failure dropped (%d)", event.playback_id)
            return
        logger.warning("Playback failed: %s", event.error)
        self._playing_id = None
        self._after_playback(settle=False)

    def _on_settle_elapsed(self, event: SettleElapsed) -> None:
        if event.token != self._timer_token:
            return
        purpose = self._timer_purpose
        self._timer = None
        self._timer_purpose = None

        if purpose == _SETTLE:
            if self._state is TurnState.SPEAKING and self._playing_id is None:
                self._resume()
        elif purpose == _RESTART:
            if self._state is TurnState.LISTENING and not self.speech_input.is_active:
                logger.info("Restarting speech input")
                if not self._open_mic() and self._input_enabled:
                    self._schedule_timer(self.watchdog.backoff, _RESTART)

    def _on_input_failed(self, event: InputFailed) -> None:
        kind = event.kind
        if kind.is_fatal:
            self._disable_input(kind, event.detail)
            return
        if kind is InputErrorKind.ABORTED:
            logger.debug("Speech input session aborted")
            return
        if self._state is not TurnState.LISTENING:
            logger.debug("Input error %s ignored in state %s", kind.value, self._state.value)
            return

        if kind is InputErrorKind.NO_INPUT:
            self._no_input_count += 1
            if self.no_input_prompt_after and self._no_input_count >= self.no_input_prompt_after:
                self._no_input_count = 0
                self._say(self.messages.no_input)
            else:
                logger.debug("No input (%d in a row)", self._no_input_count)
            return

        logger.warning("Speech input error: %s %s", kind.value, event.detail)
        self._say(self.messages.network)

    def _on_input_ended(self, event: InputEnded) -> None:
        if self._state is not TurnState.LISTENING:
            return
        if self.speech_input.is_active:
            # A restart already reopened the session
            return
        if self._continuous and self._input_enabled:
            logger.debug("Speech input ended, restarting in %.1fs", self.input_restart_delay)
            self._schedule_timer(self.input_restart_delay, _RESTART)
        else:
            logger.info("Speech input ended")
            self._set_state(TurnState.IDLE)

    def _on_watchdog_fired(self, event: WatchdogFired) -> None:
        action = self.watchdog.on_fire(
            listening=self._state is TurnState.LISTENING,
            busy=self._state in (TurnState.SPEAKING, TurnState.PROCESSING),
            input_active=self.speech_input.is_active,
            restart=self._restart_input,
        )
        logger.debug("Watchdog: %s", action.value)

    def _restart_input(self) -> bool:
        # The session may have died without reporting it, so stop() even when inactive
        try:
            self.speech_input.stop()
        except Exception:
            logger.exception("Failed to stop speech input before restart")
        return self._open_mic()
