"""
Gate between raw speech-to-text output and the scene query service.

Open-mic recognition produces a steady stream of fragments: coughs turned
into "the", half sentences, and pieces of the assistant's own voice picked
up by the microphone. This filter is a cheap heuristic, not a classifier:
an occasional false accept costs one spurious query, a false reject costs
the user repeating themselves.
"""

import logging
import re
from collections import deque
from enum import Enum
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class Verdict(Enum):
    COMMAND = "command"
    NOISE = "noise"
    ECHO = "echo"

    @property
    def accepted(self) -> bool:
        return self is Verdict.COMMAND


# Fragments of typical spoken descriptions that kept coming back as input
# when the speaker bled into the microphone.
DEFAULT_ECHO_FRAGMENTS = (
    "the person on the left",
    "wearing glasses and",
    "room with",
)

DEFAULT_KEYWORDS = frozenset({
    "where", "what", "how", "can", "do", "is", "who", "which",
    "find", "see", "help", "look", "read", "describe",
    "color", "glasses", "backpack", "bag",
})

_NON_WORD = re.compile(r"[^\w\s']+")


def normalize(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace."""
    return " ".join(_NON_WORD.sub(" ", text.lower()).split())


class UtteranceFilter:
    """
    Classifies a final transcript as a command, noise, or an echo.

    Args:
        echo_fragments: Static phrases that always mark an echo.
        keywords: Words that make a short transcript worth answering.
        min_words: Word count at which any transcript is accepted.
        keyword_min_words: Word count needed when a keyword is present.
        echo_memory: Number of recent assistant replies remembered for
            echo detection (0 disables it).
        echo_ngram: Length of the word sequences taken from recent replies.
    """

    def __init__(
        self,
        echo_fragments: Iterable[str] = DEFAULT_ECHO_FRAGMENTS,
        keywords: Iterable[str] = DEFAULT_KEYWORDS,
        min_words: int = 4,
        keyword_min_words: int = 2,
        echo_memory: int = 3,
        echo_ngram: int = 4,
    ):
        self._static_fragments = tuple(normalize(f) for f in echo_fragments if normalize(f))
        self._keywords = frozenset(k.lower() for k in keywords)
        self._min_words = min_words
        self._keyword_min_words = keyword_min_words
        self._echo_ngram = echo_ngram
        self._recent_output: deque[frozenset[str]] = deque(maxlen=max(echo_memory, 1))
        self._echo_memory = echo_memory

    def remember_output(self, text: str) -> None:
        """Record assistant speech so fragments of it are treated as echoes."""
        if self._echo_memory <= 0:
            return
        words = normalize(text).split()
        n = self._echo_ngram
        if len(words) < n:
            return
        grams = frozenset(" ".join(words[i:i + n]) for i in range(len(words) - n + 1))
        self._recent_output.append(grams)

    def forget_output(self) -> None:
        self._recent_output.clear()

    def echo_fragments(self) -> list[str]:
        """Current denylist (static plus derived)."""
        derived = set()
        for grams in self._recent_output:
            derived.update(grams)
        return list(self._static_fragments) + sorted(derived)

    def _matching_echo(self, norm: str) -> Optional[str]:
        padded = f" {norm} "
        for fragment in self._static_fragments:
            if f" {fragment} " in padded:
                return fragment
        words = norm.split()
        n = self._echo_ngram
        for grams in self._recent_output:
            for i in range(len(words) - n + 1):
                gram = " ".join(words[i:i + n])
                if gram in grams:
                    return gram
        return None

    def classify(self, transcript: str) -> Verdict:
        norm = normalize(transcript)
        if not norm:
            return Verdict.NOISE

        echo = self._matching_echo(norm)
        if echo is not None:
            logger.debug("Rejected echo (%r): %r", echo, transcript)
            return Verdict.ECHO

        words = norm.split()
        if len(words) >= self._min_words:
            return Verdict.COMMAND
        if len(words) >= self._keyword_min_words and any(w in self._keywords for w in words):
            return Verdict.COMMAND

        logger.debug("Rejected noise: %r", transcript)
        return Verdict.NOISE

    def accepts(self, transcript: str) -> bool:
        return self.classify(transcript).accepted
