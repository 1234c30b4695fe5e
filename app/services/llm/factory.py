import json
import re
from typing import Optional

from app.config import settings
from app.services.llm.base import LLMProvider
from app.services.llm.openai_provider import OpenAIProvider

_llm_provider: Optional[LLMProvider] = None


def get_llm_provider() -> Optional[LLMProvider]:
    """Get or create LLM provider instance. None when no API key is configured."""
    global _llm_provider
    if _llm_provider is None and settings.openai_api_key:
        _llm_provider = OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.decision_model,
            base_url=settings.openai_base_url,
            default_timeout_seconds=settings.llm_timeout_seconds,
        )
    return _llm_provider


def parse_json_object(content: str) -> Optional[dict]:
    """Parse a JSON object out of model output, tolerating code fences and surrounding prose."""
    content = (content or "").strip()
    if not content:
        return None
    if content.startswith("```"):
        content = re.sub(r"```(?:json)?\n?", "", content).strip()

    payload = None
    try:
        payload = json.loads(content)
    except Exception:
        match = re.search(r"\{.*\}", content, re.DOTALL)
        if match:
            try:
                payload = json.loads(match.group(0))
            except Exception:
                payload = None

    return payload if isinstance(payload, dict) else None
