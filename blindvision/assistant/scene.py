"""
Scene-understanding service clients.

The assistant sends the current camera frame (base64 JPEG) plus either a
request for a general description or the user's question, and speaks
whatever text comes back. Any OpenAI-compatible chat completions endpoint
with image input works (OpenAI, vLLM serving a VLM, etc.).
"""

import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)


class SceneQueryService(ABC):
    """Abstract scene query service."""

    @abstractmethod
    def describe_scene(self, image_b64: str) -> str:
        """Describe the scene for navigation."""
        pass

    @abstractmethod
    def answer_question(self, image_b64: str, question: str) -> str:
        """Answer a question about the scene."""
        pass


class OpenAIVisionService(SceneQueryService):
    """
    Vision-language model behind an OpenAI-compatible API.

    Requires OPENAI_API_KEY (or ``api_key``) unless ``base_url`` points at
    a local server that ignores keys.
    """

    DESCRIBE_SYSTEM_PROMPT = (
        "You describe camera images for a blind person. Help them move around "
        "safely and understand where things are. Prioritize obstacles, steps, "
        "doorways and pathways, and say where things are relative to the user."
    )

    DESCRIBE_PROMPT = (
        "Describe what is in front of me. Mention obstacles and safety hazards "
        "first, then the layout and anything within reach. Use directions like "
        "'to your left', 'ahead of you', 'within arm's reach'. "
        "Two or three short sentences, no formatting."
    )

    ANSWER_SYSTEM_PROMPT = (
        "You are the eyes of a blind person. Answer their question directly from "
        "the image, including questions about people, clothing, hair, glasses, "
        "colors and objects. If the thing they ask about is not visible, say so. "
        "Keep it to one or two spoken sentences, no formatting."
    )

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        max_tokens: int = 200,
    ):
        try:
            from openai import OpenAI
        except ImportError as e:
            raise ImportError(
                "OpenAI client not installed. Install with: pip install openai"
            ) from e

        api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            if base_url is None:
                raise ValueError("OpenAI API key required. Set OPENAI_API_KEY environment variable.")
            api_key = "not-needed"

        self.model = model
        self.max_tokens = max_tokens
        self._client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        logger.info("Scene service ready: %s%s", model, f" at {base_url}" if base_url else "")

    @staticmethod
    def _build_content(text: str, image_b64: str) -> list[dict]:
        """OpenAI multimodal content array."""
        return [
            {"type": "text", "text": text},
            {
                "type": "image_url",
                "image_url": {"url": f"data:image/jpeg;base64,{image_b64}"},
            },
        ]

    def _complete(self, system_prompt: str, text: str, image_b64: str) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": self._build_content(text, image_b64)},
        ]
        start = time.perf_counter()
        response = self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=self.max_tokens,
        )
        latency = (time.perf_counter() - start) * 1000
        answer = (response.choices[0].message.content or "").strip()
        logger.debug("Scene service: %.0fms, %d chars", latency, len(answer))
        if not answer:
            raise RuntimeError("Scene service returned an empty answer")
        return answer

    def describe_scene(self, image_b64: str) -> str:
        return self._complete(self.DESCRIBE_SYSTEM_PROMPT, self.DESCRIBE_PROMPT, image_b64)

    def answer_question(self, image_b64: str, question: str) -> str:
        prompt = f'The user asks: "{question}"\nAnswer based on what you see.'
        return self._complete(self.ANSWER_SYSTEM_PROMPT, prompt, image_b64)
