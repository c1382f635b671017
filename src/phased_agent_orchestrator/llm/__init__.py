"""LLM package initialization."""

from phased_agent_orchestrator.llm.factory import LLMFactory
from phased_agent_orchestrator.llm.provider import ChatCompletion, LLMProvider, LLMProviderError
from phased_agent_orchestrator.llm.worker import LLMWorker

__all__ = [
    "ChatCompletion",
    "LLMFactory",
    "LLMProvider",
    "LLMProviderError",
    "LLMWorker",
]
