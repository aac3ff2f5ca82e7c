"""
Speech output backend registry for discovery and instantiation.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from blindvision.tts.base import SpeechOutputPort

_tts_backends: dict[str, type["SpeechOutputPort"]] = {}


def register_tts_backend(name: str):
    """
    Decorator to register a speech output backend.

    Example:
        @register_tts_backend("elevenlabs")
        class ElevenLabsOutput(SpeechOutputPort):
            ...
    """

    def decorator(cls: type["SpeechOutputPort"]) -> type["SpeechOutputPort"]:
        cls.name = name
        _tts_backends[name] = cls
        return cls

    return decorator


def get_tts_backend(name: str, **kwargs: Any) -> "SpeechOutputPort":
    """
    Get a speech output backend instance by name.

    Raises:
        ValueError: If backend not found
    """
    _discover_backends()

    if name not in _tts_backends:
        available = ", ".join(_tts_backends.keys())
        raise ValueError(f"TTS backend '{name}' not found. Available: {available}")

    return _tts_backends[name](**kwargs)


def list_tts_backends() -> list[dict]:
    """List all available speech output backends."""
    _discover_backends()

    return [
        {"name": name, "class": cls.__name__}
        for name, cls in _tts_backends.items()
    ]


def _discover_backends() -> None:
    from blindvision.tts import console  # noqa: F401

    # ElevenLabs backend (httpx + sounddevice)
    try:
        from blindvision.tts import elevenlabs  # noqa: F401
    except ImportError:
        pass
