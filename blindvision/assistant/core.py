"""
Voice assistant core - configuration and wiring.

Builds the speech input, speech output, scene service and camera from
configuration, hands them to the ``TurnController`` and runs its dispatch
loop until stopped.
"""

import logging
from concurrent.futures import Executor
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Optional

from blindvision.assistant.scene import OpenAIVisionService, SceneQueryService
from blindvision.assistant.scheduler import Scheduler
from blindvision.assistant.speech_queue import SpeechOutputQueue
from blindvision.assistant.turn import TurnController, TurnMessages, TurnState
from blindvision.assistant.utterance_filter import UtteranceFilter
from blindvision.assistant.vision import Camera, CameraConfig, FrameSource, NoCamera
from blindvision.config import Config, get_config
from blindvision.events import EventChannel, InterruptRequested, ShutdownRequested
from blindvision.stt.base import SpeechInputPort
from blindvision.stt.registry import get_stt_backend
from blindvision.tts.base import SpeechOutputPort
from blindvision.tts.registry import get_tts_backend

logger = logging.getLogger(__name__)

DEFAULT_GREETING = TurnMessages.greeting


@dataclass
class AssistantConfig:
    """Configuration for the voice assistant."""

    # Turn taking
    continuous: bool = True  # Resume listening after every answer
    settle_delay_s: float = 1.5  # Wait after playback before reopening the mic
    input_restart_delay_s: float = 1.0  # Reopen the mic after the platform ended a session
    watchdog_interval_s: float = 20.0
    watchdog_backoff_s: float = 2.0
    queue_cap: int = 2  # Pending replies before the backlog is dropped
    no_input_prompt_after: int = 2  # Consecutive no-input errors before prompting (0 = never)
    greeting: Optional[str] = DEFAULT_GREETING

    # Utterance filter
    min_words: int = 4
    keyword_min_words: int = 2
    echo_memory: int = 3  # Recent replies used for echo detection

    # Backends
    stt_backend: str = "console"
    tts_backend: str = "console"

    # Microphone input
    audio_input_device: Optional[int] = None
    energy_threshold: float = 500.0
    silence_timeout_ms: int = 1200
    no_input_timeout_s: float = 8.0
    mic_session_idle_s: float = 30.0
    mic_report_idle_end: bool = True

    # Speaker output
    audio_output_device: Optional[int] = None
    console_words_per_minute: float = 180.0

    # Camera
    camera_enabled: bool = True
    camera_device: int = 0
    camera_width: int = 1280
    camera_height: int = 720
    jpeg_quality: int = 80

    # Scene service
    query_timeout_s: float = 30.0

    verbose: bool = False
    exit_on_input_loss: bool = True  # Shut down once input is gone for good and nothing is left to say

    # Callbacks
    on_state_change: Optional[Callable[[TurnState, TurnState], None]] = None

    @classmethod
    def from_yaml(cls, path: str) -> dict:
        """Load config values from a YAML file.

        Returns a dict of config keys -> values (not an AssistantConfig instance)
        so the caller can merge CLI overrides before constructing. Keys that are
        not AssistantConfig fields are ignored.
        """
        import yaml

        yaml_path = Path(path).expanduser()
        with open(yaml_path) as f:
            raw = yaml.safe_load(f) or {}

        valid_keys = {f.name for f in fields(cls) if f.name != "on_state_change"}
        unknown = sorted(k for k in raw if k not in valid_keys)
        if unknown:
            logger.warning("Ignoring unknown config keys in %s: %s", yaml_path, ", ".join(unknown))
        return {k: v for k, v in raw.items() if k in valid_keys}


class VoiceAssistant:
    """
    Hands-free scene assistant.

    Usage:
        from blindvision.assistant import VoiceAssistant, AssistantConfig

        assistant = VoiceAssistant(AssistantConfig(stt_backend="microphone",
                                                   tts_backend="elevenlabs"))
        assistant.run()  # Blocks until Ctrl+C or stop()

    Any port can be passed in directly instead of being built from config.
    """

    def __init__(
        self,
        config: Optional[AssistantConfig] = None,
        settings: Optional[Config] = None,
        speech_input: Optional[SpeechInputPort] = None,
        speech_output: Optional[SpeechOutputPort] = None,
        scene: Optional[SceneQueryService] = None,
        frames: Optional[FrameSource] = None,
        scheduler: Optional[Scheduler] = None,
        executor: Optional[Executor] = None,
    ):
        self.config = config or AssistantConfig()
        self.settings = settings or get_config()

        if self.config.verbose:
            logging.getLogger("blindvision").setLevel(logging.DEBUG)

        logger.info("Initializing speech input (%s)...", self.config.stt_backend)
        self.speech_input = speech_input or self._create_speech_input()

        logger.info("Initializing speech output (%s)...", self.config.tts_backend)
        self.speech_output = speech_output or self._create_speech_output()

        self.scene = scene or self._create_scene_service()
        self.frames = frames or self._create_frame_source()

        messages = TurnMessages(greeting=self.config.greeting or None)
        self.controller = TurnController(
            self.speech_input,
            self.speech_output,
            self.scene,
            self.frames,
            utterance_filter=UtteranceFilter(
                min_words=self.config.min_words,
                keyword_min_words=self.config.keyword_min_words,
                echo_memory=self.config.echo_memory,
            ),
            speech_queue=SpeechOutputQueue(max_depth=self.config.queue_cap),
            scheduler=scheduler,
            executor=executor,
            channel=EventChannel(),
            continuous=self.config.continuous,
            settle_delay=self.config.settle_delay_s,
            input_restart_delay=self.config.input_restart_delay_s,
            watchdog_interval=self.config.watchdog_interval_s,
            watchdog_backoff=self.config.watchdog_backoff_s,
            no_input_prompt_after=self.config.no_input_prompt_after,
            messages=messages,
            on_state_change=self._on_state_change,
        )

    # ── Construction ──

    def _create_speech_input(self) -> SpeechInputPort:
        kwargs: dict[str, Any] = {}
        if self.config.stt_backend == "microphone":
            from blindvision.stt.microphone import MicrophoneConfig

            t = self.settings.transcription
            kwargs = {
                "host": t.host,
                "model": t.model,
                "api_key": t.api_key,
                "language": t.language,
                "config": MicrophoneConfig(
                    device=self.config.audio_input_device,
                    energy_threshold=self.config.energy_threshold,
                    silence_timeout_ms=self.config.silence_timeout_ms,
                    no_input_timeout_s=self.config.no_input_timeout_s,
                    session_idle_timeout_s=self.config.mic_session_idle_s,
                    report_idle_end=self.config.mic_report_idle_end,
                ),
            }
        return get_stt_backend(self.config.stt_backend, **kwargs)

    def _create_speech_output(self) -> SpeechOutputPort:
        kwargs: dict[str, Any] = {}
        if self.config.tts_backend == "elevenlabs":
            v = self.settings.voice
            kwargs = {
                "api_key": v.api_key,
                "voice_id": v.voice_id,
                "model_id": v.model_id,
                "sample_rate": v.sample_rate,
                "device": self.config.audio_output_device,
            }
        elif self.config.tts_backend == "console":
            kwargs = {"words_per_minute": self.config.console_words_per_minute}
        return get_tts_backend(self.config.tts_backend, **kwargs)

    def _create_scene_service(self) -> SceneQueryService:
        s = self.settings.scene
        return OpenAIVisionService(
            model=s.model,
            api_key=s.api_key,
            base_url=s.base_url,
            timeout=self.config.query_timeout_s,
            max_tokens=s.max_tokens,
        )

    def _create_frame_source(self) -> FrameSource:
        if not self.config.camera_enabled:
            logger.info("Camera disabled")
            return NoCamera()
        return Camera(CameraConfig(
            device=self.config.camera_device,
            width=self.config.camera_width,
            height=self.config.camera_height,
            jpeg_quality=self.config.jpeg_quality,
        ))

    # ── Lifecycle ──

    @property
    def state(self) -> TurnState:
        return self.controller.state

    def run(self) -> None:
        """Run the assistant (blocking) until stop() or Ctrl+C."""
        if isinstance(self.frames, Camera) and not self.frames.is_open:
            if not self.frames.open():
                logger.warning("Camera unavailable; questions will get a camera fallback")

        self.controller.start()
        logger.info("Assistant ready! Just speak to ask a question...")
        try:
            while True:
                try:
                    self.controller.run_forever()
                    break
                except KeyboardInterrupt:
                    if not self._handle_keyboard_interrupt():
                        break
        finally:
            self.close()

    def _handle_keyboard_interrupt(self) -> bool:
        """
        Ctrl+C while an answer is pending or playing stops the audio, like a
        tap on the screen; Ctrl+C while listening or idle exits.

        Returns True if the assistant keeps running.
        """
        if self.controller.state in (TurnState.SPEAKING, TurnState.PROCESSING):
            logger.info("Interrupted (press Ctrl+C again to quit)")
            self.controller.dispatch(InterruptRequested())
            return True
        logger.info("Stopping assistant...")
        self.controller.dispatch(ShutdownRequested())
        return False

    def _on_state_change(self, old_state: TurnState, new_state: TurnState) -> None:
        if self.config.on_state_change is not None:
            self.config.on_state_change(old_state, new_state)
        if (
            self.config.exit_on_input_loss
            and new_state is TurnState.IDLE
            and not self.controller.input_enabled
        ):
            logger.info("Speech input is no longer available, shutting down")
            self.controller.shutdown()

    def stop(self) -> None:
        """Stop the assistant (safe from any thread)."""
        self.controller.shutdown()

    def interrupt(self) -> None:
        """Stop all audio and return to listening."""
        self.controller.interrupt()

    def close(self) -> None:
        for port in (self.speech_input, self.speech_output):
            try:
                port.close()
            except Exception as e:
                logger.warning("Error closing %s: %s", port.name, e)
        if isinstance(self.frames, Camera):
            self.frames.close()
