import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from app.services.greeting_service import FALLBACK_GREETING, generate_greeting, is_greeting
from app.services.llm import LLMResponse


class TestIsGreeting:
    @pytest.mark.parametrize("text", ["hi", "Hello", "hey there", "good morning", "hi, bot", "yo", "whats up"])
    def test_greetings(self, text):
        assert is_greeting(text) is True

    @pytest.mark.parametrize(
        "text",
        [
            "hi, how do I cancel?",
            "hello can you help",
            "show my orders",
            "history",
            "hello there my friend, nice to meet",
            "",
        ],
    )
    def test_not_greetings(self, text):
        assert is_greeting(text) is False


class TestGenerateGreeting:
    @pytest.mark.asyncio
    async def test_uses_model_text(self):
        llm = Mock()
        llm.generate = AsyncMock(return_value=LLMResponse(content=" Welcome back! ", model="test"))

        assert await generate_greeting(llm) == "Welcome back!"

    @pytest.mark.asyncio
    async def test_fallback_without_provider(self):
        assert await generate_greeting(None) == FALLBACK_GREETING

    @pytest.mark.asyncio
    async def test_fallback_on_error(self):
        llm = Mock()
        llm.generate = AsyncMock(side_effect=RuntimeError("boom"))

        assert await generate_greeting(llm) == FALLBACK_GREETING

    @pytest.mark.asyncio
    async def test_fallback_on_timeout(self):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)
            return LLMResponse(content="late", model="test")

        llm = Mock()
        llm.generate = slow

        assert await generate_greeting(llm, timeout_seconds=0.01) == FALLBACK_GREETING
