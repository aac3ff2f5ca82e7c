"""
Voice command routing.

Decides what an accepted transcript asks for: a built-in command handled
locally (help, stop), a general description of the scene, or a specific
question about it.
"""

import re
from dataclasses import dataclass
from enum import Enum


class CommandKind(Enum):
    HELP = "help"
    STOP = "stop"
    DESCRIBE = "describe"
    QUESTION = "question"

    @property
    def needs_scene(self) -> bool:
        return self in (CommandKind.DESCRIBE, CommandKind.QUESTION)


@dataclass
class VoiceCommand:
    kind: CommandKind
    text: str


HELP_TEXT = (
    "I can help you find things. Just ask: Where is my backpack? "
    "Do you see a bag? What's in front of me?"
)

GLASSES_QUESTION = "Where are my glasses or sunglasses? Look for them specifically."

_HELP = re.compile(r"\bhelp\b", re.IGNORECASE)
_STOP = re.compile(r"\b(stop|quiet)\b", re.IGNORECASE)
_GLASSES = re.compile(r"\bwhere\b.*\b(sun)?glasses\b", re.IGNORECASE)

# Open-ended requests that want the whole scene rather than one answer
_DESCRIBE = re.compile(
    r"^\s*(please\s+)?describe\b"
    r"|\bwhat(?:'s|\s+is|\s+do\s+you\s+see)\s+(in\s+front\s+of\s+me|around\s+me|ahead)\b"
    r"|\bwhat\s+(can|do)\s+you\s+see\b"
    r"|\bwhere\s+am\s+i\b"
    r"|\blook\s+around\b",
    re.IGNORECASE,
)


def parse_command(transcript: str) -> VoiceCommand:
    """Route a transcript to a command kind."""
    text = transcript.strip()

    if _HELP.search(text):
        return VoiceCommand(CommandKind.HELP, text)
    if _STOP.search(text):
        return VoiceCommand(CommandKind.STOP, text)
    if _GLASSES.search(text):
        return VoiceCommand(CommandKind.QUESTION, GLASSES_QUESTION)
    if _DESCRIBE.search(text):
        return VoiceCommand(CommandKind.DESCRIBE, text)
    return VoiceCommand(CommandKind.QUESTION, text)
