from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm.base import LLMProvider, LLMProviderError, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-5-mini",
        base_url: str = "https://api.openai.com/v1/chat/completions",
        default_timeout_seconds: float = 20.0,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url
        self.default_timeout_seconds = default_timeout_seconds

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate response from OpenAI."""

        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else self.default_timeout_seconds

        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise LLMProviderError(f"OpenAI transport error: {exc}") from exc

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise LLMProviderError(f"OpenAI API error: {response.status_code} - {response.text}")

        data = response.json()

        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
