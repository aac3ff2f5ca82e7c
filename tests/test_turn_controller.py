"""Tests for the turn controller state machine."""

import pytest

from blindvision.assistant.commands import GLASSES_QUESTION, HELP_TEXT
from blindvision.assistant.speech_queue import SpeechOutputQueue
from blindvision.assistant.turn import TurnController, TurnMessages, TurnState
from blindvision.assistant.utterance_filter import UtteranceFilter
from blindvision.assistant.watchdog import WatchdogAction
from blindvision.events import (
    EventChannel,
    InputErrorKind,
    PlaybackFinished,
    QueryResolved,
    TranscriptReceived,
    Utterance,
)
from blindvision.stt.base import SpeechInputError

from conftest import FRAME, FakeFrames, FakeSceneService, FakeSpeechInput, FakeSpeechOutput, ManualScheduler

MESSAGES = TurnMessages(greeting=None)


# ---------------------------------------------------------------------------
# End-to-end turns
# ---------------------------------------------------------------------------


class TestTurnCycle:
    def test_start_opens_microphone(self, harness):
        """start() without a greeting goes straight to listening."""
        harness.start()
        assert harness.state is TurnState.LISTENING
        assert harness.input.is_active
        assert harness.controller.continuous

    def test_accepted_question_is_answered(self, harness):
        """Listening -> processing -> speaking -> listening after the settle delay."""
        harness.start()

        harness.hear("where is my backpack")
        assert harness.state is TurnState.PROCESSING
        assert not harness.input.is_active
        assert harness.frames.captures == 1

        harness.run_queries()
        assert harness.state is TurnState.SPEAKING
        assert harness.scene.answer_calls == [(FRAME, "where is my backpack")]
        assert harness.output.spoken == [harness.scene.answer]

        harness.finish_playback()
        assert harness.state is TurnState.SPEAKING  # settling
        assert not harness.input.is_active

        harness.advance(1.0)
        assert harness.state is TurnState.SPEAKING
        harness.advance(0.5)
        assert harness.state is TurnState.LISTENING
        assert harness.input.is_active

    def test_describe_request_uses_describe_scene(self, harness):
        """Open-ended requests get a scene description instead of an answer."""
        harness.start()
        harness.ask("what is in front of me")
        assert harness.scene.describe_calls == [FRAME]
        assert harness.scene.answer_calls == []

    def test_noise_is_ignored(self, harness):
        """A lone filler word never leaves LISTENING."""
        harness.start()
        harness.hear("the")
        assert harness.state is TurnState.LISTENING
        assert harness.input.is_active
        assert harness.executor.jobs == []
        assert harness.frames.captures == 0

    def test_partial_transcripts_ignored(self, harness):
        harness.start()
        harness.input.hear("where is my backpack", is_final=False)
        harness.pump()
        assert harness.state is TurnState.LISTENING

    def test_empty_transcript_event_ignored(self, harness):
        harness.start()
        harness.controller.post(TranscriptReceived(utterance=None))
        harness.pump()
        assert harness.state is TurnState.LISTENING

    def test_echo_of_own_answer_is_rejected(self, make_harness):
        """Fragments of the assistant's last reply are not taken as questions."""
        h = make_harness()
        h.scene.answer = "There is a red mug next to the laptop on your desk."
        h.start()
        h.ask()
        h.finish_playback()
        h.advance(1.5)
        assert h.state is TurnState.LISTENING

        h.hear("red mug next to the laptop")
        assert h.state is TurnState.LISTENING
        assert h.executor.jobs == []

    def test_greeting_spoken_before_listening(self, make_harness):
        h = make_harness(messages=TurnMessages())
        h.start()
        assert h.state is TurnState.SPEAKING
        assert h.output.spoken == [TurnMessages().greeting]
        assert not h.input.is_active

        h.finish_playback()
        h.advance(1.5)
        assert h.state is TurnState.LISTENING

    def test_single_question_mode_goes_idle(self, make_harness):
        """Without continuous mode one turn ends in IDLE."""
        h = make_harness(continuous=False)
        h.start()
        assert h.state is TurnState.LISTENING
        assert not h.controller.watchdog.enabled

        h.ask()
        h.finish_playback()
        h.advance(1.5)
        assert h.state is TurnState.IDLE
        assert not h.input.is_active

    def test_greeting_then_listen_in_single_question_mode(self, make_harness):
        h = make_harness(continuous=False, messages=TurnMessages())
        h.start()
        h.finish_playback()
        h.advance(1.5)
        assert h.state is TurnState.LISTENING

    def test_start_ignored_when_not_idle(self, harness):
        harness.start()
        calls = harness.input.start_calls
        harness.start()
        assert harness.input.start_calls == calls
        assert harness.state is TurnState.LISTENING


class TestTranscriptGating:
    def test_transcript_dropped_while_processing(self, harness):
        harness.start()
        harness.hear("where is my backpack")
        harness.hear("what color is the door")
        assert len(harness.executor.jobs) == 1

    def test_transcript_dropped_while_speaking(self, harness):
        harness.start()
        harness.ask()
        harness.hear("what color is the door")
        assert harness.state is TurnState.SPEAKING
        assert harness.executor.jobs == []

    def test_transcript_dropped_while_idle(self, harness):
        harness.hear("where is my backpack")
        assert harness.state is TurnState.IDLE
        assert harness.executor.jobs == []


# ---------------------------------------------------------------------------
# Voice commands and fallbacks
# ---------------------------------------------------------------------------


class TestCommands:
    def test_help_is_answered_locally(self, harness):
        harness.start()
        harness.hear("help me please")
        assert harness.state is TurnState.SPEAKING
        assert harness.output.spoken == [HELP_TEXT]
        assert harness.executor.jobs == []
        assert harness.frames.captures == 0

    @pytest.mark.parametrize("word", ["help", "stop"])
    def test_single_command_word_is_noise(self, harness, word):
        """Commands go through the same word/keyword gate as questions."""
        harness.start()
        harness.hear(word)
        assert harness.state is TurnState.LISTENING
        assert harness.input.is_active
        assert harness.output.spoken == []

    def test_stop_phrase_interrupts(self, harness):
        harness.start()
        harness.hear("stop talking right now")
        assert harness.state is TurnState.LISTENING
        assert harness.executor.jobs == []
        assert harness.output.spoken == []

    def test_glasses_question_rewritten(self, harness):
        harness.start()
        harness.ask("where did I leave my glasses")
        assert harness.scene.answer_calls[0][1] == GLASSES_QUESTION

    def test_camera_not_ready(self, make_harness):
        """No frame: speak the camera fallback without querying."""
        h = make_harness(frames=FakeFrames(frame=None))
        h.start()
        h.hear("where is my backpack")
        assert h.state is TurnState.SPEAKING
        assert h.output.spoken == [MESSAGES.camera_unavailable]
        assert h.executor.jobs == []

        h.finish_playback()
        h.advance(1.5)
        assert h.state is TurnState.LISTENING

    def test_camera_exception_treated_as_not_ready(self, make_harness):
        class BrokenFrames(FakeFrames):
            def capture_current_frame(self):
                raise OSError("device gone")

        h = make_harness(frames=BrokenFrames())
        h.start()
        h.hear("where is my backpack")
        assert h.output.spoken == [MESSAGES.camera_unavailable]


class TestQueryFailures:
    def test_query_error_speaks_apology(self, harness):
        """Failed query -> apology -> listening."""
        harness.scene.error = ConnectionError("network unreachable")
        harness.start()
        harness.ask()
        assert harness.state is TurnState.SPEAKING
        assert harness.output.spoken == [MESSAGES.query_failed]

        harness.finish_playback()
        harness.advance(1.5)
        assert harness.state is TurnState.LISTENING
        assert harness.input.is_active

    def test_empty_answer_speaks_apology(self, harness):
        harness.scene.answer = "   "
        harness.start()
        harness.ask()
        assert harness.output.spoken == [MESSAGES.query_failed]

    def test_stale_result_ignored(self, harness):
        """A result for an abandoned turn never reaches the speaker."""
        harness.start()
        harness.hear("where is my backpack")
        harness.controller.interrupt()
        harness.pump()
        assert harness.state is TurnState.LISTENING

        harness.controller.post(QueryResolved(turn_id=1, text="late answer"))
        harness.pump()
        assert harness.output.spoken == []
        assert harness.state is TurnState.LISTENING


# ---------------------------------------------------------------------------
# Playback and queue
# ---------------------------------------------------------------------------


class TestPlayback:
    def test_queued_replies_spoken_in_order(self, harness):
        harness.start()
        harness.ask()
        harness.controller.speech_queue.enqueue("first")
        harness.controller.speech_queue.enqueue("second")

        harness.finish_playback()
        assert harness.output.spoken[-1] == "first"
        harness.finish_playback()
        assert harness.output.spoken[-1] == "second"
        assert harness.state is TurnState.SPEAKING

        harness.finish_playback()
        harness.advance(1.5)
        assert harness.state is TurnState.LISTENING

    def test_playback_failure_returns_to_listening(self, harness):
        harness.start()
        harness.ask()
        harness.output.fail()
        harness.pump()
        assert harness.state is TurnState.LISTENING
        assert harness.input.is_active
        assert not harness.output.is_playing

    def test_speak_raising_returns_to_listening(self, harness):
        harness.output.speak_error = RuntimeError("no audio device")
        harness.start()
        harness.ask()
        assert harness.state is TurnState.LISTENING
        assert not harness.output.is_playing

    def test_stale_playback_completion_ignored(self, harness):
        harness.start()
        harness.ask()
        harness.controller.post(PlaybackFinished(playback_id=999))
        harness.pump()
        assert harness.state is TurnState.SPEAKING
        assert harness.scheduler.pending()  # only the watchdog
        assert all(t.due >= 20.0 for t in harness.scheduler.pending())


# ---------------------------------------------------------------------------
# Interrupt and stop
# ---------------------------------------------------------------------------


class TestInterrupt:
    def test_interrupt_while_speaking(self, harness):
        """Playback cancelled, backlog dropped, back to listening."""
        harness.start()
        harness.ask()
        harness.controller.speech_queue.enqueue("pending reply")
        old_id = harness.output.current_id

        harness.controller.interrupt()
        harness.pump()
        assert harness.state is TurnState.LISTENING
        assert len(harness.controller.speech_queue) == 0
        assert harness.output.stopped == 1
        assert not harness.output.is_playing
        assert harness.input.is_active

        # Completion of the cancelled playback is ignored
        harness.controller.post(PlaybackFinished(playback_id=old_id))
        harness.pump()
        harness.advance(1.5)
        assert harness.output.spoken == [harness.scene.answer]
        assert harness.state is TurnState.LISTENING

    def test_interrupt_while_processing_cancels_query(self, harness):
        harness.start()
        harness.hear("where is my backpack")
        future = harness.executor.jobs[0][0]

        harness.controller.interrupt()
        harness.pump()
        assert future.cancelled()
        harness.run_queries()
        assert harness.scene.answer_calls == []
        assert harness.state is TurnState.LISTENING

    def test_double_interrupt_is_idempotent(self, harness):
        harness.start()
        harness.ask()
        harness.controller.interrupt()
        harness.pump()
        snapshot = (
            harness.state,
            harness.input.is_active,
            harness.input.start_calls,
            harness.output.is_playing,
            len(harness.controller.speech_queue),
        )

        harness.controller.interrupt()
        harness.pump()
        assert snapshot == (
            harness.state,
            harness.input.is_active,
            harness.input.start_calls,
            harness.output.is_playing,
            len(harness.controller.speech_queue),
        )

    def test_interrupt_without_continuous_goes_idle(self, make_harness):
        h = make_harness(continuous=False)
        h.start()
        h.ask()
        h.controller.interrupt()
        h.pump()
        assert h.state is TurnState.IDLE
        assert not h.input.is_active

    def test_stop_goes_idle_and_stays_there(self, harness):
        harness.start()
        harness.controller.stop()
        harness.pump()
        assert harness.state is TurnState.IDLE
        assert not harness.input.is_active
        assert not harness.controller.continuous
        assert not harness.controller.watchdog.enabled

        harness.advance(120)
        assert harness.state is TurnState.IDLE
        assert not harness.input.is_active

    def test_stop_while_speaking_cancels_settle(self, harness):
        harness.start()
        harness.ask()
        harness.finish_playback()
        harness.controller.stop()
        harness.pump()
        harness.advance(5)
        assert harness.state is TurnState.IDLE

    def test_shutdown_stops_loop(self, harness):
        harness.start()
        harness.controller.shutdown()
        harness.controller.run_forever(poll_interval=0.01)
        assert harness.state is TurnState.IDLE


# ---------------------------------------------------------------------------
# Speech input errors
# ---------------------------------------------------------------------------


class TestInputErrors:
    def test_single_no_input_is_silent(self, harness):
        harness.start()
        harness.input.fail(InputErrorKind.NO_INPUT)
        harness.pump()
        assert harness.state is TurnState.LISTENING
        assert harness.output.spoken == []

    def test_repeated_no_input_prompts(self, harness):
        harness.start()
        harness.input.fail(InputErrorKind.NO_INPUT)
        harness.input.fail(InputErrorKind.NO_INPUT)
        harness.pump()
        assert harness.state is TurnState.SPEAKING
        assert harness.output.spoken == [MESSAGES.no_input]

        harness.finish_playback()
        harness.advance(1.5)
        assert harness.state is TurnState.LISTENING

    def test_no_input_count_resets_on_speech(self, harness):
        harness.start()
        harness.input.fail(InputErrorKind.NO_INPUT)
        harness.pump()
        harness.hear("help me please")
        harness.finish_playback()
        harness.advance(1.5)

        harness.input.fail(InputErrorKind.NO_INPUT)
        harness.pump()
        assert harness.output.spoken == [HELP_TEXT]

    def test_no_input_swallowed_while_speaking(self, harness):
        harness.start()
        harness.ask()
        harness.input.fail(InputErrorKind.NO_INPUT)
        harness.input.fail(InputErrorKind.NO_INPUT)
        harness.pump()
        assert harness.output.spoken == [harness.scene.answer]
        assert len(harness.controller.speech_queue) == 0

    def test_network_error_spoken(self, harness):
        harness.start()
        harness.input.fail(InputErrorKind.NETWORK, "recognizer unreachable")
        harness.pump()
        assert harness.output.spoken == [MESSAGES.network]
        harness.finish_playback()
        harness.advance(1.5)
        assert harness.state is TurnState.LISTENING

    def test_aborted_is_not_spoken(self, harness):
        harness.start()
        harness.input.fail(InputErrorKind.ABORTED)
        harness.pump()
        assert harness.output.spoken == []
        assert harness.state is TurnState.LISTENING

    @pytest.mark.parametrize(
        "kind, message",
        [
            (InputErrorKind.PERMISSION_DENIED, MESSAGES.permission_denied),
            (InputErrorKind.UNSUPPORTED, MESSAGES.unsupported),
        ],
    )
    def test_fatal_error_disables_listening(self, harness, kind, message):
        """Fatal errors are spoken once and end in a degraded IDLE."""
        harness.start()
        harness.input.fail(kind)
        harness.input.fail(kind)
        harness.pump()
        assert harness.output.spoken == [message]
        assert not harness.controller.continuous
        assert not harness.controller.input_enabled
        assert not harness.controller.watchdog.enabled

        harness.finish_playback()
        harness.advance(60)
        assert harness.state is TurnState.IDLE
        assert not harness.input.is_active
        assert harness.output.spoken == [message]

    def test_fatal_error_on_start(self, harness):
        harness.input.start_error = SpeechInputError(InputErrorKind.PERMISSION_DENIED, "denied")
        harness.start()
        assert harness.output.spoken == [MESSAGES.permission_denied]
        harness.finish_playback()
        harness.advance(1.5)
        assert harness.state is TurnState.IDLE
        assert harness.input.start_calls == 1

    def test_fatal_error_while_processing_spoken_after_answer(self, harness):
        harness.start()
        harness.hear("where is my backpack")
        harness.input.fail(InputErrorKind.PERMISSION_DENIED)
        harness.pump()
        assert harness.state is TurnState.PROCESSING

        harness.run_queries()
        assert harness.output.spoken == [harness.scene.answer]
        harness.finish_playback()
        assert harness.output.spoken[-1] == MESSAGES.permission_denied
        harness.finish_playback()
        harness.advance(1.5)
        assert harness.state is TurnState.IDLE

    def test_start_after_fatal_error_retries(self, harness):
        """An explicit start() is a fresh attempt."""
        harness.start()
        harness.input.fail(InputErrorKind.UNSUPPORTED)
        harness.pump()
        harness.finish_playback()
        harness.advance(1.5)
        assert harness.state is TurnState.IDLE

        harness.start()
        assert harness.state is TurnState.LISTENING
        assert harness.controller.input_enabled

    def test_fatal_error_after_stop_is_silent(self, harness):
        """After an explicit stop the error is recorded but not spoken."""
        harness.start()
        harness.controller.stop()
        harness.pump()
        harness.input.fail(InputErrorKind.PERMISSION_DENIED)
        harness.pump()
        assert harness.state is TurnState.IDLE
        assert harness.output.spoken == []
        assert not harness.controller.input_enabled


# ---------------------------------------------------------------------------
# Recovering listening
# ---------------------------------------------------------------------------


class TestListeningRecovery:
    def test_input_end_restarts_after_delay(self, harness):
        harness.start()
        harness.input.end()
        harness.pump()
        assert harness.state is TurnState.LISTENING
        assert not harness.input.is_active

        harness.advance(0.5)
        assert not harness.input.is_active
        harness.advance(0.5)
        assert harness.input.is_active
        assert harness.input.start_calls == 2

    def test_input_end_without_continuous_goes_idle(self, make_harness):
        h = make_harness(continuous=False)
        h.start()
        h.input.end()
        h.pump()
        assert h.state is TurnState.IDLE

    def test_watchdog_restarts_silently_halted_input(self, harness):
        harness.start()
        harness.input.halt_silently()
        stops = harness.input.stop_calls
        harness.advance(20)
        assert harness.input.is_active
        assert harness.input.start_calls == 2
        assert harness.input.stop_calls == stops + 1
        assert harness.input.calls[-2:] == ["stop", "start"]

    def test_watchdog_noop_while_speaking(self, harness):
        harness.start()
        harness.ask()
        calls = harness.input.start_calls
        harness.advance(20)
        assert harness.state is TurnState.SPEAKING
        assert harness.input.start_calls == calls
        assert not harness.input.is_active

    def test_watchdog_noop_while_processing(self, harness):
        harness.start()
        harness.hear("where is my backpack")
        calls = harness.input.start_calls
        harness.advance(20)
        assert harness.state is TurnState.PROCESSING
        assert harness.input.start_calls == calls

    def test_watchdog_healthy_leaves_input_alone(self, harness):
        harness.start()
        action = harness.controller.watchdog.on_fire(
            listening=True, busy=False, input_active=True, restart=lambda: pytest.fail("restarted")
        )
        assert action is WatchdogAction.HEALTHY

    def test_watchdog_retries_after_backoff(self, harness):
        harness.start()
        harness.input.halt_silently()
        harness.input.start_error = SpeechInputError(InputErrorKind.NETWORK, "busy")
        harness.advance(20)
        assert not harness.input.is_active
        calls = harness.input.start_calls

        harness.input.start_error = None
        harness.advance(2)
        assert harness.input.is_active
        assert harness.input.start_calls == calls + 1

    def test_failed_start_retries_after_backoff(self, harness):
        harness.input.start_error = RuntimeError("device busy")
        harness.start()
        assert harness.state is TurnState.LISTENING
        assert not harness.input.is_active

        harness.input.start_error = None
        harness.advance(2)
        assert harness.input.is_active


# ---------------------------------------------------------------------------
# Exclusivity over a long mixed trace
# ---------------------------------------------------------------------------


class TestExclusivity:
    def test_mixed_trace_never_arms_both(self, make_harness):
        """The harness asserts exclusivity after every event of this trace."""
        h = make_harness(messages=TurnMessages())
        h.start()
        h.finish_playback()
        h.advance(1.5)

        for text in ["where is my backpack", "the", "help me please", "what is in front of me"]:
            h.hear(text)
            h.run_queries()
            h.input.fail(InputErrorKind.NO_INPUT)
            h.pump()
            h.advance(0.5)
            h.finish_playback()
            h.advance(1.5)
            h.finish_playback()
            h.advance(1.5)

        h.input.halt_silently()
        h.advance(40)
        h.ask()
        h.controller.interrupt()
        h.controller.interrupt()
        h.pump()
        h.input.end()
        h.pump()
        h.advance(5)
        assert h.state is TurnState.LISTENING
        assert h.input.is_active
        assert not h.output.is_playing

    def test_mic_and_playback_properties(self, harness):
        harness.start()
        assert harness.controller.mic_armed
        assert not harness.controller.playback_armed
        harness.ask()
        assert not harness.controller.mic_armed
        assert harness.controller.playback_armed


class TestStateCallback:
    def test_on_state_change_reports_transitions(self, make_harness):
        seen = []
        h = make_harness(on_state_change=lambda old, new: seen.append((old, new)))
        h.start()
        h.ask()
        assert seen == [
            (TurnState.IDLE, TurnState.LISTENING),
            (TurnState.LISTENING, TurnState.PROCESSING),
            (TurnState.PROCESSING, TurnState.SPEAKING),
        ]

    def test_failing_callback_does_not_break_turn(self, make_harness):
        def boom(old, new):
            raise RuntimeError("ui gone")

        h = make_harness(on_state_change=boom)
        h.start()
        h.ask()
        assert h.state is TurnState.SPEAKING


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_injected_collaborators_are_used(self):
        """Empty queues and channels are falsy but must still be kept."""
        queue = SpeechOutputQueue(max_depth=4)
        channel = EventChannel()
        utterance_filter = UtteranceFilter(min_words=2)
        controller = TurnController(
            FakeSpeechInput(),
            FakeSpeechOutput(),
            FakeSceneService(),
            FakeFrames(),
            utterance_filter=utterance_filter,
            speech_queue=queue,
            channel=channel,
            scheduler=ManualScheduler(),
        )
        assert controller.speech_queue is queue
        assert controller.speech_queue.max_depth == 4
        assert controller.channel is channel
        assert controller.utterance_filter is utterance_filter

        controller.start()
        assert len(channel) == 1

    def test_injected_queue_cap_applies(self, make_harness):
        h = make_harness(speech_queue=SpeechOutputQueue(max_depth=4))
        h.start()
        h.ask()
        for i in range(3):
            h.controller.speech_queue.enqueue(f"reply {i}")
        assert len(h.controller.speech_queue) == 3
