"""Factory for creating LLM providers."""

from __future__ import annotations

import logging

from phased_agent_orchestrator.llm.openai_provider import OpenAIProvider
from phased_agent_orchestrator.llm.provider import LLMProvider
from phased_agent_orchestrator.orchestrator.config import LLMConfig

logger = logging.getLogger(__name__)


class LLMFactory:
    """Factory for creating LLM provider instances."""

    @staticmethod
    def create(config: LLMConfig) -> LLMProvider:
        """Create an LLM provider based on configuration.

        Args:
            config: LLM configuration specifying the provider.

        Returns:
            Configured LLM provider instance.

        Raises:
            ValueError: If provider type is not supported.
        """
        logger.info(f"Creating LLM provider: {config.provider}")

        if config.provider == "openai":
            return OpenAIProvider(config)
        raise ValueError(f"Unsupported LLM provider: {config.provider}")
