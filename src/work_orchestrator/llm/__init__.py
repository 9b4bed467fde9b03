"""LLM package initialization."""

from work_orchestrator.llm.executor import LLMStepExecutor
from work_orchestrator.llm.factory import LLMFactory
from work_orchestrator.llm.provider import LLMProvider

__all__ = [
    "LLMFactory",
    "LLMProvider",
    "LLMStepExecutor",
]
