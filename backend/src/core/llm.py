"""LLM client module for draft generation.

Routes completions through LiteLLM so the drafting model can be swapped by
configuration (``FOLLOW_UP_DRAFT_MODEL``) without code changes.
"""

import logging
import time
from typing import Any

from litellm import acompletion

from src.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1024


def _prepend_system_message(
    system_prompt: str | None,
    messages: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Convert a separate system_prompt into an OpenAI-style system message."""
    if not system_prompt:
        return list(messages)
    return [{"role": "system", "content": system_prompt}, *messages]


class LLMClient:
    """Async client for LLM completions."""

    def __init__(self, model: str | None = None, timeout: float | None = None) -> None:
        """Initialize LLM client.

        Args:
            model: LiteLLM model string; defaults to the configured draft model.
            timeout: Per-call timeout in seconds.
        """
        self._api_key = settings.ANTHROPIC_API_KEY.get_secret_value()
        self._model = model or settings.FOLLOW_UP_DRAFT_MODEL
        self._timeout = timeout or settings.LLM_TIMEOUT_SECONDS

    @property
    def model(self) -> str:
        """The model completions are requested from."""
        return self._model

    @property
    def is_configured(self) -> bool:
        """Whether an API key is available."""
        return bool(self._api_key)

    async def generate_response(
        self,
        messages: list[dict[str, str]],
        system_prompt: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = 0.7,
    ) -> str:
        """Generate a response from the model.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            system_prompt: Optional system prompt for context.
            max_tokens: Maximum tokens in response.
            temperature: Sampling temperature (0-1).

        Returns:
            Generated text response.

        Raises:
            Exception: Any provider error raised by LiteLLM.
        """
        logger.debug(
            "Calling LLM via LiteLLM",
            extra={
                "model": self._model,
                "message_count": len(messages),
                "has_system": system_prompt is not None,
            },
        )

        start = time.time()
        response = await acompletion(
            model=self._model,
            messages=_prepend_system_message(system_prompt, messages),
            max_tokens=max_tokens,
            temperature=temperature,
            api_key=self._api_key,
            timeout=self._timeout,
        )
        latency_ms = int((time.time() - start) * 1000)

        text_content: str = str(response.choices[0].message.content or "")
        logger.debug(
            "LLM response received",
            extra={"response_length": len(text_content), "latency_ms": latency_ms},
        )
        return text_content
