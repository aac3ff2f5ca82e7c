"""
Speech input (speech-to-text) ports.
"""

from blindvision.stt.base import SpeechInputError, SpeechInputPort
from blindvision.stt.registry import get_stt_backend, list_stt_backends, register_stt_backend

__all__ = [
    "SpeechInputError",
    "SpeechInputPort",
    "register_stt_backend",
    "get_stt_backend",
    "list_stt_backends",
]
