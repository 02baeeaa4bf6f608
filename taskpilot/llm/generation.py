"""Generation capability used by the execution loop and training scanner.

The core treats generation as an opaque call: two prompts in, text out.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from taskpilot.llm.client import LLMMessage, OpenRouterClient
from taskpilot.llm.router import ModelRouter

logger = logging.getLogger("taskpilot.llm.generation")


class Generator(Protocol):
    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        timeout: Optional[float] = None,
    ) -> str:
        """Return the raw completion text.

        Raises:
            GenerationError: The call failed (GenerationTimeoutError on timeout).
        """
        ...


class OpenRouterGenerator:
    """Generator backed by OpenRouter, using the role's model chain."""

    def __init__(self, client: OpenRouterClient, model_router: ModelRouter, role: str = "builder"):
        self.client = client
        self.model_router = model_router
        self.role = role

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        timeout: Optional[float] = None,
    ) -> str:
        models = self.model_router.get_model_chain(self.role)
        response = self.client.complete_with_fallback(
            messages=[
                LLMMessage("system", system_prompt),
                LLMMessage("user", user_prompt),
            ],
            models=models,
            max_tokens=max_tokens,
            timeout=timeout,
        )
        logger.debug("Generated %d chars with %s (role %s)", len(response.content), response.model, self.role)
        return response.content
