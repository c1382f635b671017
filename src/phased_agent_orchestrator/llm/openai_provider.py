"""OpenAI LLM provider implementation."""

from __future__ import annotations

import logging
from typing import Any

from openai import OpenAI, OpenAIError

from phased_agent_orchestrator.llm.provider import ChatCompletion, LLMProvider, LLMProviderError
from phased_agent_orchestrator.orchestrator.config import LLMConfig

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI API provider implementation."""

    def __init__(self, config: LLMConfig, client: OpenAI | None = None) -> None:
        """Initialize the OpenAI provider.

        Args:
            config: LLM configuration.
            client: Pre-built client (tests inject a mock).

        Raises:
            ValueError: If API key is not provided and no client is given.
        """
        if client is None and not config.openai_api_key:
            raise ValueError("OpenAI API key is required")

        self.config = config
        self.client = client or OpenAI(
            api_key=config.openai_api_key, base_url=config.openai_base_url
        )
        self.temperature = config.openai_temperature

        logger.info("OpenAI provider initialized", extra={"base_url": config.openai_base_url})

    def chat(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> ChatCompletion:
        temp = temperature if temperature is not None else self.temperature

        logger.debug(f"Generating chat completion with {len(messages)} messages")

        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=messages,  # type: ignore[arg-type]
                max_tokens=max_tokens,
                temperature=temp,
                timeout=timeout,
                **kwargs,
            )
        except OpenAIError as e:
            raise LLMProviderError(str(e)) from e

        content = response.choices[0].message.content or ""
        usage = response.usage
        logger.debug(f"Generated {len(content)} characters")

        return ChatCompletion(
            text=content,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )

    def count_tokens(self, text: str) -> int:
        """Count tokens using a simple approximation.

        Note:
            Rough approximation: 1 token ~ 4 characters.
        """
        return len(text) // 4
