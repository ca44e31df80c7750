"""Title-generation prompt and helpers."""

import os
import re

from llmchat.api.schemas import CompletionMessage, CompletionRequest, Message

DEFAULT_TITLE_MODEL = "google/gemini-2.0-flash-lite-001"

TITLE_PROMPT = """Summarize this chat conversation in 1-5 words (maximum conciseness). \
Use title case. Focus on user's intent. It will be used as a title. \
Do not mention yourself (assistant) or the user. Example: Exploring Python Generators"""

TITLE_CONTEXT_MESSAGES = 6


def title_model() -> str:
    return os.environ.get("TITLE_MODEL", DEFAULT_TITLE_MODEL)


def build_title_request(messages: list[Message], model: str | None = None) -> CompletionRequest:
    """Build the summarization request.

    Args:
        messages: Conversation so far; only the first few are sent.
        model: Override for the title model.

    Returns:
        Request with the instruction appended as a final user message.
    """
    context = [
        CompletionMessage(role=m.role, content=m.content)
        for m in messages[:TITLE_CONTEXT_MESSAGES]
    ]
    context.append(CompletionMessage(role="user", content=TITLE_PROMPT))
    return CompletionRequest(
        model=model or title_model(),
        messages=context,
        temperature=0.5,
        max_tokens=10,
    )


def sanitize_title(raw: str | None) -> str:
    """Strip everything except letters, digits and whitespace."""
    if not raw:
        return ""
    return re.sub(r"[^a-zA-Z0-9\s]", "", raw).strip()
