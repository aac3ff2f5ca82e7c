"""
Microphone speech input.

Captures audio with sounddevice, segments it with an energy-based voice
activity detector, and transcribes each segment through an
OpenAI-compatible ``/audio/transcriptions`` endpoint (OpenAI Whisper,
a vLLM Whisper container, ...).

Like browser and cloud recognizers, a session closes by itself after a
long stretch without speech. ``report_idle_end=False`` makes that close
silent, the way some mobile recognizers behave; the listening watchdog
is what notices and reopens it.

Requires: sounddevice, scipy
    pip install sounddevice scipy
"""

import io
import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import numpy as np

from blindvision.events import InputErrorKind
from blindvision.stt.base import SpeechInputError, SpeechInputPort
from blindvision.stt.registry import register_stt_backend

logger = logging.getLogger(__name__)


@dataclass
class MicrophoneConfig:
    """Audio capture and segmentation settings."""

    sample_rate: int = 16000
    channels: int = 1
    chunk_duration_ms: int = 100
    device: Optional[int] = None

    energy_threshold: float = 500.0
    silence_timeout_ms: int = 1200  # Silence after speech that ends an utterance
    max_utterance_s: float = 10.0
    no_input_timeout_s: float = 8.0  # Report "no input" after this long without speech
    session_idle_timeout_s: float = 30.0  # Close the session after this long without speech
    report_idle_end: bool = True

    @property
    def chunk_size(self) -> int:
        return int(self.sample_rate * self.chunk_duration_ms / 1000)


class EnergyVAD:
    """
    Energy-based voice activity detection on int16 chunks.

    ``detect_end_of_speech`` returns True once speech was followed by
    enough silence.
    """

    def __init__(self, energy_threshold: float = 500.0):
        self.energy_threshold = energy_threshold
        self._speech_frames = 0
        self._silence_frames = 0

    @property
    def in_speech(self) -> bool:
        return self._speech_frames > 0

    def is_speech(self, audio: np.ndarray) -> bool:
        if audio.dtype == np.int16:
            audio_float = audio.astype(np.float32) / 32768.0
        else:
            audio_float = audio

        rms = np.sqrt(np.mean(audio_float**2)) * 32768
        return rms > self.energy_threshold

    def detect_end_of_speech(
        self,
        audio: np.ndarray,
        silence_threshold_ms: int = 1000,
        chunk_duration_ms: int = 100,
    ) -> bool:
        frames_for_silence = max(silence_threshold_ms // chunk_duration_ms, 1)

        if self.is_speech(audio):
            self._speech_frames += 1
            self._silence_frames = 0
        elif self._speech_frames > 0:  # Only count silence after speech
            self._silence_frames += 1

        # Had speech, then enough silence
        if self._speech_frames > 2 and self._silence_frames >= frames_for_silence:
            self.reset()
            return True

        return False

    def reset(self) -> None:
        self._speech_frames = 0
        self._silence_frames = 0


@register_stt_backend("microphone")
class MicrophoneInput(SpeechInputPort):
    """Microphone capture plus remote Whisper transcription."""

    def __init__(
        self,
        host: str = "https://api.openai.com/v1",
        model: str = "whisper-1",
        api_key: Optional[str] = None,
        language: Optional[str] = "en",
        timeout: float = 30.0,
        config: Optional[MicrophoneConfig] = None,
        **kwargs: Any,
    ):
        super().__init__()
        try:
            import sounddevice as sd
        except ImportError as e:
            raise ImportError(
                "sounddevice not installed. "
                "Install with: pip install sounddevice"
            ) from e

        self._sd = sd
        self.config = config or MicrophoneConfig()
        self.host = host.rstrip("/")
        self.model = model
        self.language = language

        api_key = api_key or os.environ.get("OPENAI_API_KEY")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.Client(timeout=timeout, headers=headers)

        self._vad = EnergyVAD(self.config.energy_threshold)
        self._stream = None
        self._active = False
        self._generation = 0
        self._lock = threading.Lock()

        self._chunks: list[np.ndarray] = []
        self._segments: queue.Queue = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._last_speech = 0.0
        self._last_prompt = 0.0

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self) -> None:
        with self._lock:
            if self._active:
                return
            try:
                self._stream = self._sd.InputStream(
                    samplerate=self.config.sample_rate,
                    channels=self.config.channels,
                    dtype="int16",
                    blocksize=self.config.chunk_size,
                    device=self.config.device,
                    callback=self._audio_callback,
                )
                self._stream.start()
            except self._sd.PortAudioError as e:
                self._stream = None
                raise SpeechInputError(InputErrorKind.UNSUPPORTED, f"cannot open microphone: {e}") from e
            except Exception as e:
                self._stream = None
                raise SpeechInputError(InputErrorKind.NETWORK, str(e)) from e

            self._generation += 1
            self._active = True
            self._vad.reset()
            self._chunks = []
            now = time.monotonic()
            self._last_speech = now
            self._last_prompt = now
            self._worker = threading.Thread(
                target=self._session_loop,
                args=(self._generation,),
                name="blindvision-mic",
                daemon=True,
            )
            self._worker.start()

        logger.debug("Microphone session %d opened", self._generation)
        self._emit_started()

    def stop(self) -> None:
        if not self._close_session():
            return
        self._emit_ended()

    def _close_session(self) -> bool:
        with self._lock:
            if not self._active:
                return False
            self._active = False
            self._generation += 1
            stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                logger.warning("Error closing microphone stream: %s", e)
        return True

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("Audio input status: %s", status)
        if not self._active:
            return

        audio = (indata[:, 0] if indata.ndim > 1 else indata).copy()
        if self._vad.is_speech(audio):
            self._last_speech = time.monotonic()

        ended = self._vad.detect_end_of_speech(
            audio,
            silence_threshold_ms=self.config.silence_timeout_ms,
            chunk_duration_ms=self.config.chunk_duration_ms,
        )
        if self._vad.in_speech or ended:
            self._chunks.append(audio)

        too_long = len(self._chunks) * self.config.chunk_duration_ms >= self.config.max_utterance_s * 1000
        if (ended or too_long) and self._chunks:
            self._segments.put((self._generation, np.concatenate(self._chunks)))
            self._chunks = []
            self._vad.reset()

    def _session_loop(self, generation: int) -> None:
        """Transcribe segments and enforce idle timeouts for one session."""
        while self._active and generation == self._generation:
            try:
                seg_generation, audio = self._segments.get(timeout=0.1)
            except queue.Empty:
                self._check_idle(generation)
                continue
            if seg_generation != generation:
                continue
            self._transcribe_segment(generation, audio)

    def _check_idle(self, generation: int) -> None:
        now = time.monotonic()
        silent_for = now - self._last_speech

        if silent_for >= self.config.session_idle_timeout_s:
            logger.info("Microphone session idle for %.0fs, closing", silent_for)
            if self._close_session() and self.config.report_idle_end:
                self._emit_ended()
            return

        if now - self._last_prompt >= self.config.no_input_timeout_s and not self._vad.in_speech:
            self._last_prompt = now
            if generation == self._generation:
                self._emit_error(InputErrorKind.NO_INPUT)

    def _transcribe_segment(self, generation: int, audio: np.ndarray) -> None:
        try:
            text = self.transcribe(audio)
        except httpx.HTTPError as e:
            logger.warning("Transcription request failed: %s", e)
            if generation == self._generation:
                self._emit_error(InputErrorKind.NETWORK, str(e))
            return

        self._last_prompt = time.monotonic()
        if generation != self._generation:
            return
        if text:
            self._emit_result(text, is_final=True)
        else:
            self._emit_error(InputErrorKind.NO_INPUT)

    def transcribe(self, audio: np.ndarray) -> str:
        """
        Transcribe int16 PCM through the transcription endpoint.

        Raises:
            httpx.HTTPError: On connection failure or error status.
        """
        import scipy.io.wavfile

        buf = io.BytesIO()
        scipy.io.wavfile.write(buf, self.config.sample_rate, audio)

        files = {"file": ("audio.wav", buf.getvalue(), "audio/wav")}
        data = {"model": self.model}
        if self.language:
            data["language"] = self.language

        start = time.perf_counter()
        resp = self._client.post(f"{self.host}/audio/transcriptions", files=files, data=data)
        resp.raise_for_status()
        text = resp.json().get("text", "").strip()
        logger.debug(
            "Transcribed %.1fs of audio in %.0fms: %r",
            len(audio) / self.config.sample_rate,
            (time.perf_counter() - start) * 1000,
            text,
        )
        return text

    def close(self) -> None:
        super().close()
        self._client.close()

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info.update({"host": self.host, "model": self.model})
        return info
