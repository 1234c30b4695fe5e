import asyncio
import re
from typing import Optional

from app.logging_config import get_logger
from app.services.llm import LLMProvider

logger = get_logger("greeting_service")

FALLBACK_GREETING = (
    "Hi there! I'm here to help you navigate the platform and answer any questions you may have. "
    "How can I assist you today?"
)

GREETING_WORDS = (
    "hi",
    "hello",
    "hey",
    "greetings",
    "good morning",
    "good afternoon",
    "good evening",
    "howdy",
    "sup",
    "yo",
    "what's up",
    "whats up",
)

QUESTION_WORDS = ("what", "how", "when", "where", "why", "who", "which", "can", "could", "would", "should", "is", "are", "do", "does")

MAX_GREETING_LENGTH = 20

GREETING_PROMPT = """Write a short, friendly welcome message for a visitor who just opened a support chat.
{name_line}Mention that you can help them get things done on the platform. One or two sentences, no emojis."""


def is_greeting(text: Optional[str]) -> bool:
    """Short pleasantry with no question in it."""
    normalized = (text or "").strip().lower()
    if not normalized or len(normalized) >= MAX_GREETING_LENGTH:
        return False

    words = re.findall(r"[a-z']+", normalized)
    if any(word in QUESTION_WORDS for word in words):
        return False

    for greeting in GREETING_WORDS:
        if normalized == greeting:
            return True
        if normalized.startswith(greeting) and normalized[len(greeting):len(greeting) + 1] in (" ", ","):
            return True
    return False


async def generate_greeting(
    llm: Optional[LLMProvider],
    visitor_name: Optional[str] = None,
    timeout_seconds: float = 3.0,
) -> str:
    """Welcome text for a chat trigger. Falls back to a fixed greeting on any failure."""
    if llm is None:
        return FALLBACK_GREETING

    name_line = f"The visitor's name is {visitor_name}.\n" if visitor_name else ""
    messages = [{"role": "user", "content": GREETING_PROMPT.format(name_line=name_line)}]

    try:
        response = await asyncio.wait_for(
            llm.generate(messages, temperature=0.7, max_tokens=120, timeout_seconds=timeout_seconds),
            timeout=timeout_seconds,
        )
    except Exception as e:
        logger.warning(f"Greeting generation failed, using fallback: {e}")
        return FALLBACK_GREETING

    text = (response.content or "").strip()
    return text or FALLBACK_GREETING
