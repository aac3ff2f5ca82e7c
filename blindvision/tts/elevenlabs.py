"""
ElevenLabs speech output.

Synthesizes raw PCM through the ElevenLabs text-to-speech REST API and
plays it with sounddevice. Synthesis and playback run on a worker thread;
``cancel()`` stops the audio device, which ends playback immediately.

Requires: sounddevice
    pip install sounddevice
"""

import logging
import os
import threading
import time
from typing import Any, Optional

import httpx
import numpy as np

from blindvision.tts.base import SpeechOutputPort
from blindvision.tts.cache import TTSCache
from blindvision.tts.registry import register_tts_backend

logger = logging.getLogger(__name__)

API_BASE = "https://api.elevenlabs.io/v1"
DEFAULT_VOICE_ID = "21m00Tcm4TlvDq8ikWAM"


@register_tts_backend("elevenlabs")
class ElevenLabsOutput(SpeechOutputPort):
    """ElevenLabs TTS with local PCM playback."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        voice_id: str = DEFAULT_VOICE_ID,
        model_id: str = "eleven_monolingual_v1",
        sample_rate: int = 22050,
        stability: float = 0.5,
        similarity_boost: float = 0.5,
        timeout: float = 20.0,
        device: Optional[int] = None,
        cache: Optional[TTSCache] = None,
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

        api_key = api_key or os.environ.get("ELEVENLABS_API_KEY")
        if not api_key:
            raise ValueError("ElevenLabs API key required. Set ELEVENLABS_API_KEY environment variable.")

        self._sd = sd
        self.voice_id = voice_id
        self.model_id = model_id
        self.sample_rate = sample_rate
        self.voice_settings = {"stability": stability, "similarity_boost": similarity_boost}
        self.device = device
        self.cache = cache if cache is not None else TTSCache()
        self._client = httpx.Client(
            base_url=API_BASE,
            timeout=timeout,
            headers={"xi-api-key": api_key, "Content-Type": "application/json"},
        )
        self._worker: Optional[threading.Thread] = None

    def synthesize(self, text: str) -> np.ndarray:
        """
        Return int16 mono PCM at ``sample_rate``.

        Raises:
            httpx.HTTPError: On connection failure or error status.
        """
        cached = self.cache.get(text, self.voice_id, self.model_id)
        if cached is not None:
            return cached.audio

        start = time.perf_counter()
        resp = self._client.post(
            f"/text-to-speech/{self.voice_id}",
            params={"output_format": f"pcm_{self.sample_rate}"},
            json={"text": text, "model_id": self.model_id, "voice_settings": self.voice_settings},
        )
        resp.raise_for_status()
        audio = np.frombuffer(resp.content, dtype="<i2").copy()
        logger.debug(
            "ElevenLabs: %d chars -> %.1fs audio in %.0fms",
            len(text),
            len(audio) / self.sample_rate,
            (time.perf_counter() - start) * 1000,
        )
        self.cache.put(text, self.voice_id, self.model_id, audio, self.sample_rate)
        return audio

    def _start_playback(self, text: str, playback_id: int) -> None:
        self._worker = threading.Thread(
            target=self._play,
            args=(text, playback_id),
            name="blindvision-tts",
            daemon=True,
        )
        self._worker.start()

    def _play(self, text: str, playback_id: int) -> None:
        try:
            audio = self.synthesize(text)
            if len(audio) == 0:
                raise RuntimeError("ElevenLabs returned no audio")
            # cancel() clears _current under the same lock, so playback
            # either never starts or is already running when it stops it
            with self._lock:
                if self._current != playback_id:
                    logger.debug("Playback %d cancelled before it started", playback_id)
                    return
                self._sd.play(audio, self.sample_rate, device=self.device)
            self._sd.wait()
        except Exception as e:
            logger.error("ElevenLabs playback failed: %s", e)
            self._finish(playback_id, error=str(e))
            return
        self._finish(playback_id)

    def _stop_playback(self) -> None:
        try:
            self._sd.stop()
        except Exception as e:
            logger.warning("Error stopping playback: %s", e)

    def close(self) -> None:
        super().close()
        self._client.close()

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info.update({
            "voice_id": self.voice_id,
            "model_id": self.model_id,
            "sample_rate": self.sample_rate,
            "cached_phrases": len(self.cache),
        })
        return info
