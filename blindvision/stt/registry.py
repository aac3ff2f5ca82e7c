"""
Speech input backend registry for discovery and instantiation.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from blindvision.stt.base import SpeechInputPort

# Registry of available backends
_stt_backends: dict[str, type["SpeechInputPort"]] = {}


def register_stt_backend(name: str):
    """
    Decorator to register a speech input backend.

    Args:
        name: Backend name (e.g., "console", "microphone")

    Example:
        @register_stt_backend("console")
        class ConsoleInput(SpeechInputPort):
            ...
    """

    def decorator(cls: type["SpeechInputPort"]) -> type["SpeechInputPort"]:
        cls.name = name
        _stt_backends[name] = cls
        return cls

    return decorator


def get_stt_backend(name: str, **kwargs: Any) -> "SpeechInputPort":
    """
    Get a speech input backend instance by name.

    Args:
        name: Backend name
        **kwargs: Passed to the backend constructor

    Raises:
        ValueError: If backend not found
    """
    # Lazy import backends to avoid import errors when dependencies missing
    _discover_backends()

    if name not in _stt_backends:
        available = ", ".join(_stt_backends.keys())
        raise ValueError(f"STT backend '{name}' not found. Available: {available}")

    return _stt_backends[name](**kwargs)


def list_stt_backends() -> list[dict]:
    """List all available speech input backends."""
    _discover_backends()

    return [
        {"name": name, "class": cls.__name__}
        for name, cls in _stt_backends.items()
    ]


def _discover_backends() -> None:
    """Import backend modules; they register themselves via the decorator."""
    from blindvision.stt import console  # noqa: F401

    # Microphone backend (sounddevice + remote transcription)
    try:
        from blindvision.stt import microphone  # noqa: F401
    except ImportError:
        pass
