"""Factory for creating LLM providers."""

import logging

from work_orchestrator.llm.openai_provider import OpenAIProvider
from work_orchestrator.llm.provider import LLMProvider
from work_orchestrator.orchestrator.config import LLMConfig

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
            ValueError: If provider type is not supported or credentials are missing.
        """
        logger.info("Creating LLM provider", extra={"provider": config.provider})

        if config.provider == "openai":
            return OpenAIProvider(config)
        raise ValueError(f"Unsupported LLM provider: {config.provider}")
