from app.services.llm.base import LLMProvider, LLMProviderError, LLMResponse
from app.services.llm.factory import get_llm_provider, parse_json_object
from app.services.llm.openai_provider import OpenAIProvider

__all__ = [
    "LLMProvider",
    "LLMProviderError",
    "LLMResponse",
    "OpenAIProvider",
    "get_llm_provider",
    "parse_json_object",
]
