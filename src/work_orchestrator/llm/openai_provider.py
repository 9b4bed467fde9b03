"""OpenAI LLM provider implementation."""

import logging
from typing import Any

from openai import OpenAI

from work_orchestrator.llm.provider import LLMProvider
from work_orchestrator.orchestrator.config import LLMConfig

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI API provider implementation."""

    def __init__(self, config: LLMConfig, client: OpenAI | None = None) -> None:
        """Initialize the OpenAI provider.

        Args:
            config: LLM configuration.
            client: Optional pre-built client (tests inject a mock).

        Raises:
            ValueError: If API key is not provided and no client is given.
        """
        if client is None and not config.openai_api_key:
            raise ValueError("ORCHESTRATOR_LLM_OPENAI_API_KEY is required for the openai provider")

        self.config = config
        self.client = client or OpenAI(api_key=config.openai_api_key)
        self.model = config.openai_model
        self.temperature = config.openai_temperature

        logger.info("OpenAI provider initialized", extra={"model": self.model})

    def chat(
        self,
        messages: list[dict[str, str]],
        max_tokens: int | None = None,
        temperature: float | None = None,
        **kwargs: Any,
    ) -> str:
        """Generate chat completion using OpenAI API.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            max_tokens: Maximum tokens to generate.
            temperature: Sampling temperature.
            **kwargs: Additional OpenAI-specific parameters.

        Returns:
            Generated chat response.
        """
        temp = temperature if temperature is not None else self.temperature

        logger.debug("Generating chat completion", extra={"messages": len(messages)})

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,  # type: ignore
            max_tokens=max_tokens,
            temperature=temp,
            **kwargs,
        )

        content = response.choices[0].message.content or ""
        logger.debug("Chat completion received", extra={"characters": len(content)})

        return content
