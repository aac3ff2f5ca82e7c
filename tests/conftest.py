"""
Shared fixtures: fake ports, a manual clock and a deferred executor.

The fakes let the turn controller run deterministically on the test
thread. Both fake ports check the microphone/speaker exclusivity at the
moment they are armed, and the harness re-checks it after every event.
"""

from concurrent.futures import Executor, Future
from typing import Optional

import pytest

from blindvision.assistant.scene import SceneQueryService
from blindvision.assistant.turn import TurnController, TurnMessages
from blindvision.events import InputErrorKind
from blindvision.stt.base import SpeechInputPort
from blindvision.tts.base import SpeechOutputPort

FRAME = "ZmFrZS1qcGVn"  # base64 "fake-jpeg"


class FakeSpeechInput(SpeechInputPort):
    name = "fake-input"

    def __init__(self):
        super().__init__()
        self.active = False
        self.start_calls = 0
        self.stop_calls = 0
        self.calls: list[str] = []
        self.start_error: Optional[Exception] = None
        self.output: Optional["FakeSpeechOutput"] = None

    @property
    def is_active(self) -> bool:
        return self.active

    def start(self) -> None:
        self.start_calls += 1
        self.calls.append("start")
        if self.start_error is not None:
            raise self.start_error
        assert not (self.output and self.output.is_playing), "mic opened during playback"
        self.active = True
        self._emit_started()

    def stop(self) -> None:
        self.stop_calls += 1
        self.calls.append("stop")
        if not self.active:
            return
        self.active = False
        self._emit_ended()

    # Test helpers, mimicking platform callbacks

    def hear(self, text: str, is_final: bool = True) -> None:
        self._emit_result(text, is_final=is_final)

    def fail(self, kind: InputErrorKind, detail: str = "") -> None:
        self._emit_error(kind, detail)

    def end(self) -> None:
        """Platform closed the session and said so."""
        self.active = False
        self._emit_ended()

    def halt_silently(self) -> None:
        """Platform closed the session without telling anyone."""
        self.active = False


class FakeSpeechOutput(SpeechOutputPort):
    name = "fake-output"

    def __init__(self):
        super().__init__()
        self.spoken: list[str] = []
        self.stopped = 0
        self.speak_error: Optional[Exception] = None
        self.input: Optional[FakeSpeechInput] = None

    def _start_playback(self, text: str, playback_id: int) -> None:
        if self.speak_error is not None:
            raise self.speak_error
        assert not (self.input and self.input.is_active), "playback started while mic open"
        self.spoken.append(text)

    def _stop_playback(self) -> None:
        self.stopped += 1

    @property
    def current_id(self) -> Optional[int]:
        return self._current

    def complete(self) -> None:
        if self._current is not None:
            self._finish(self._current)

    def fail(self, error: str = "device error") -> None:
        if self._current is not None:
            self._finish(self._current, error=error)


class FakeSceneService(SceneQueryService):
    def __init__(self, answer: str = "A wooden table is straight ahead of you."):
        self.answer = answer
        self.error: Optional[Exception] = None
        self.describe_calls: list[str] = []
        self.answer_calls: list[tuple[str, str]] = []

    def describe_scene(self, image_b64: str) -> str:
        self.describe_calls.append(image_b64)
        if self.error is not None:
            raise self.error
        return self.answer

    def answer_question(self, image_b64: str, question: str) -> str:
        self.answer_calls.append((image_b64, question))
        if self.error is not None:
            raise self.error
        return self.answer


class FakeFrames:
    def __init__(self, frame: Optional[str] = FRAME):
        self.frame = frame
        self.captures = 0

    def capture_current_frame(self) -> Optional[str]:
        self.captures += 1
        return self.frame


class ManualTask:
    def __init__(self, due: float, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.done = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler driven by ``advance`` instead of wall-clock time."""

    def __init__(self):
        self.now = 0.0
        self.tasks: list[ManualTask] = []

    def call_later(self, delay: float, callback) -> ManualTask:
        task = ManualTask(self.now + delay, callback)
        self.tasks.append(task)
        return task

    def pending(self) -> list[ManualTask]:
        return [t for t in self.tasks if not t.cancelled and not t.done]

    def next_due(self, until: float) -> Optional[ManualTask]:
        due = [t for t in self.pending() if t.due <= until]
        return min(due, key=lambda t: t.due) if due else None

    def run(self, task: ManualTask) -> None:
        self.now = max(self.now, task.due)
        task.done = True
        task.callback()


class DeferredExecutor(Executor):
    """Holds submitted jobs until ``run_pending``; cancelled jobs never run."""

    def __init__(self):
        self.jobs: list = []

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        self.jobs.append((future, fn, args, kwargs))
        return future

    def run_pending(self) -> int:
        jobs, self.jobs = self.jobs, []
        ran = 0
        for future, fn, args, kwargs in jobs:
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except BaseException as e:
                future.set_exception(e)
            ran += 1
        return ran


class Harness:
    """A TurnController wired to fakes, plus helpers to drive it."""

    def __init__(self, **kwargs):
        self.input = FakeSpeechInput()
        self.output = FakeSpeechOutput()
        self.input.output = self.output
        self.output.input = self.input
        self.scene = kwargs.pop("scene", None) or FakeSceneService()
        self.frames = kwargs.pop("frames", None) or FakeFrames()
        self.scheduler = ManualScheduler()
        self.executor = DeferredExecutor()
        kwargs.setdefault("messages", TurnMessages(greeting=None))
        self.controller = TurnController(
            self.input,
            self.output,
            self.scene,
            self.frames,
            scheduler=self.scheduler,
            executor=self.executor,
            **kwargs,
        )

    @property
    def state(self):
        return self.controller.state

    def check_exclusive(self) -> None:
        assert not (self.input.is_active and self.output.is_playing), "mic and speaker both armed"

    def pump(self) -> int:
        count = 0
        while True:
            event = self.controller.channel.get_nowait()
            if event is None:
                return count
            self.controller.dispatch(event)
            self.check_exclusive()
            count += 1

    def advance(self, seconds: float) -> None:
        target = self.scheduler.now + seconds
        while True:
            task = self.scheduler.next_due(target)
            if task is None:
                break
            self.scheduler.run(task)
            self.pump()
        self.scheduler.now = target

    def start(self) -> None:
        self.controller.start()
        self.pump()

    def hear(self, text: str) -> None:
        self.input.hear(text)
        self.pump()

    def run_queries(self) -> None:
        self.executor.run_pending()
        self.pump()

    def finish_playback(self) -> None:
        self.output.complete()
        self.pump()

    def ask(self, text: str = "what is on the table") -> None:
        """Listening -> answer being spoken."""
        self.hear(text)
        self.run_queries()


@pytest.fixture
def make_harness():
    return Harness


@pytest.fixture
def harness():
    return Harness()
