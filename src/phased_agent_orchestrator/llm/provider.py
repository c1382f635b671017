"""Abstract base class for LLM providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


class LLMProviderError(RuntimeError):
    """Raised when the provider could not produce a completion."""


@dataclass(frozen=True, slots=True)
class ChatCompletion:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    This interface allows pluggable LLM backends behind the worker.
    """

    @abstractmethod
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
        """Generate chat completion from messages.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            model: Provider model id.
            max_tokens: Maximum tokens to generate.
            temperature: Sampling temperature.
            timeout: Request timeout in seconds.
            **kwargs: Additional provider-specific parameters.

        Returns:
            The response text and token usage.

        Raises:
            LLMProviderError: If the request failed.
        """

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        """Count the number of tokens in text."""
