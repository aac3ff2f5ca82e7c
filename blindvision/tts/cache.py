"""LRU cache of synthesized speech, for the short phrases the assistant repeats."""

import hashlib
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class CachedSpeech:
    audio: np.ndarray
    sample_rate: int


class TTSCache:
    """
    Thread-safe LRU cache keyed by text, voice and model.

    Only short texts are cached: prompts, apologies and the greeting come
    back verbatim, scene answers almost never do.
    """

    def __init__(self, max_entries: int = 32, max_text_len: int = 120):
        self._max_entries = max_entries
        self._max_text_len = max_text_len
        self._cache: OrderedDict[str, CachedSpeech] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(text: str, voice: str, model: str) -> str:
        raw = f"{text.strip()}|{voice}|{model}"
        return hashlib.md5(raw.encode()).hexdigest()

    def cacheable(self, text: str) -> bool:
        return 0 < len(text.strip()) <= self._max_text_len

    def get(self, text: str, voice: str, model: str) -> Optional[CachedSpeech]:
        if not self.cacheable(text):
            return None
        key = self._key(text, voice, model)
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self.misses += 1
                return None
            self._cache.move_to_end(key)
            self.hits += 1
            return entry

    def put(self, text: str, voice: str, model: str,
            audio: np.ndarray, sample_rate: int) -> None:
        if not self.cacheable(text):
            return
        key = self._key(text, voice, model)
        with self._lock:
            self._cache[key] = CachedSpeech(audio=audio, sample_rate=sample_rate)
            self._cache.move_to_end(key)
            while len(self._cache) > self._max_entries:
                self._cache.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
