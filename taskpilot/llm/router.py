"""Model router for TaskPilot.

Resolves generation roles (builder, trainer) to OpenRouter model IDs
using the user-managed config/models.yaml file.
"""

from __future__ import annotations

import logging

from taskpilot.core.config import ModelRegistry

logger = logging.getLogger("taskpilot.llm.router")


class ModelRouter:
    """Maps generation roles to LLM model IDs."""

    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def get_model(self, role: str) -> str:
        """Resolve a role to its configured model ID.

        Raises:
            ConfigError: If role not found in models.yaml.
        """
        model = self.registry.get_model(role)
        logger.debug("Resolved role '%s' -> model '%s'", role, model)
        return model

    def get_model_chain(self, role: str) -> list[str]:
        """Resolve a role to [primary, fallbacks...], de-duplicated."""
        primary = self.get_model(role)
        fallbacks = self.registry.get_fallback_models(role)

        chain: list[str] = []
        for model in [primary, *fallbacks]:
            if model and model not in chain:
                chain.append(model)

        logger.debug("Resolved model chain for role '%s': %s", role, chain)
        return chain
