"""
Speech output (text-to-speech and playback) ports.
"""

from blindvision.tts.base import SpeechOutputPort
from blindvision.tts.registry import get_tts_backend, list_tts_backends, register_tts_backend

__all__ = [
    "SpeechOutputPort",
    "register_tts_backend",
    "get_tts_backend",
    "list_tts_backends",
]
