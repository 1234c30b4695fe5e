from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProviderError(Exception):
    """Reasoning service unreachable or answered with an error status."""


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate response from LLM."""
        pass
