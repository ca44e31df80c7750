"""Request assembly for completion calls.

Turns a slice of the conversation plus the active settings into the
/chat/completions body, and computes the history slice a retry resends.
"""

from dataclasses import dataclass

from llmchat.api.schemas import CompletionMessage, CompletionRequest, Message


@dataclass(frozen=True)
class RequestConfig:
    """Settings captured at dispatch time.

    Attributes:
        api_key: Bearer credential; blank means not configured.
        model: OpenRouter model id.
        temperature: Sampling temperature.
        system_prompt: Sent as a leading system message when non-blank.
    """
    api_key: str
    model: str
    temperature: float
    system_prompt: str = ""

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key.strip())


def build_completion_request(messages: list[Message], config: RequestConfig) -> CompletionRequest:
    """Build the request body for a history slice.

    Only user and assistant messages are sent; loading placeholders are skipped.
    """
    payload = []
    if config.system_prompt.strip():
        payload.append(CompletionMessage(role="system", content=config.system_prompt))
    payload.extend(
        CompletionMessage(role=m.role, content=m.content)
        for m in messages
        if m.role in ("user", "assistant") and not m.is_loading
    )
    return CompletionRequest(model=config.model, messages=payload, temperature=config.temperature)


def preceding_user_index(messages: list[Message], index: int) -> int | None:
    """Index of the nearest user message before position index, if any."""
    for i in range(index - 1, -1, -1):
        if messages[i].role == "user":
            return i
    return None
