"""
Service settings for BlindVision.

Credentials and endpoints for the external services (scene understanding,
voice synthesis, transcription), read from the environment. Controller
timing and behavior live in ``AssistantConfig`` instead.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field


def _env(*names: str, default: Optional[str] = None) -> Optional[str]:
    """First non-empty environment variable among ``names``."""
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return default


def mask_secret(value: Optional[str]) -> str:
    """Render an API key for display."""
    if not value:
        return "(not set)"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


class SceneServiceConfig(BaseModel):
    """Vision-language model used to describe the scene and answer questions."""

    model: str = Field(
        default_factory=lambda: _env("BLINDVISION_SCENE_MODEL", default="gpt-4o")
    )
    base_url: Optional[str] = Field(
        default_factory=lambda: _env("BLINDVISION_SCENE_BASE_URL", "OPENAI_BASE_URL")
    )
    api_key: Optional[str] = Field(
        default_factory=lambda: _env("BLINDVISION_SCENE_API_KEY", "OPENAI_API_KEY")
    )
    max_tokens: int = Field(default=200)


class VoiceConfig(BaseModel):
    """ElevenLabs voice synthesis."""

    api_key: Optional[str] = Field(
        default_factory=lambda: _env("BLINDVISION_ELEVENLABS_API_KEY", "ELEVENLABS_API_KEY")
    )
    voice_id: str = Field(
        default_factory=lambda: _env("BLINDVISION_VOICE_ID", default="21m00Tcm4TlvDq8ikWAM")
    )
    model_id: str = Field(default="eleven_monolingual_v1")
    sample_rate: int = Field(default=22050)


class TranscriptionConfig(BaseModel):
    """OpenAI-compatible transcription endpoint used by the microphone input."""

    host: str = Field(
        default_factory=lambda: _env("BLINDVISION_STT_HOST", default="https://api.openai.com/v1")
    )
    model: str = Field(
        default_factory=lambda: _env("BLINDVISION_STT_MODEL", default="whisper-1")
    )
    api_key: Optional[str] = Field(
        default_factory=lambda: _env("BLINDVISION_STT_API_KEY", "OPENAI_API_KEY")
    )
    language: Optional[str] = Field(default="en")


class Config(BaseModel):
    """Main configuration."""

    scene: SceneServiceConfig = Field(default_factory=SceneServiceConfig)
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration."""
    global _config
    _config = config
