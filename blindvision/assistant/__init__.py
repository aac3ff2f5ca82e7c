"""
Assistant module: turn taking, audio arbitration and scene queries.
"""

from blindvision.assistant.core import AssistantConfig, VoiceAssistant
from blindvision.assistant.turn import TurnController, TurnMessages, TurnState

__all__ = ["VoiceAssistant", "AssistantConfig", "TurnController", "TurnMessages", "TurnState"]
