"""Pydantic models for conversations, persisted sessions and the OpenRouter wire format.

Messages and sessions are what the engine and the history store exchange;
the Completion* models mirror the /chat/completions request and response bodies.
"""

import time
import uuid
from typing import Literal

from pydantic import BaseModel, Field

Role = Literal["user", "assistant", "system"]


def new_id() -> str:
    """Fresh UUID4 string."""
    return str(uuid.uuid4())


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class Message(BaseModel):
    """Single entry in a conversation. Position in the list is the order."""
    id: str = Field(default_factory=new_id)
    role: Role
    content: str
    timestamp: int = Field(default_factory=now_ms)
    is_edited: bool = False
    original_content: str | None = None
    is_loading: bool = False


class ChatSettings(BaseModel):
    """Per-session sampling settings, restored when the session is selected."""
    model: str
    temperature: float = 0.7
    system_prompt: str = ""


class ChatSession(BaseModel):
    """Persisted conversation document."""
    id: str = Field(default_factory=new_id)
    title: str
    created_at: int
    last_modified: int
    messages: list[Message] = Field(default_factory=list)
    settings: ChatSettings
    total_tokens: int = 0


class ChatHistoryIndexEntry(BaseModel):
    """Summary projection of a ChatSession used by the history list."""
    id: str
    title: str
    last_modified: int


class CompletionMessage(BaseModel):
    role: Role = "assistant"
    content: str | None = None


class CompletionRequest(BaseModel):
    """Body of POST /chat/completions."""
    model: str = Field(..., min_length=1)
    messages: list[CompletionMessage]
    temperature: float | None = None
    max_tokens: int | None = None


class CompletionChoice(BaseModel):
    message: CompletionMessage | None = None
    finish_reason: str | None = None


class CompletionUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionResponse(BaseModel):
    """Body of a successful /chat/completions response. Unknown fields are ignored."""
    id: str | None = None
    model: str | None = None
    choices: list[CompletionChoice] = Field(default_factory=list)
    usage: CompletionUsage | None = None

    @property
    def content(self) -> str | None:
        """Content of the first choice, or None if the API returned none."""
        if not self.choices or self.choices[0].message is None:
            return None
        return self.choices[0].message.content

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens if self.usage else 0


class ModelInfo(BaseModel):
    """Entry of GET /models."""
    id: str
    name: str | None = None
    description: str | None = None
    context_length: int | None = None
    created: int | None = None
    architecture: dict | None = None
    pricing: dict | None = None

    @property
    def is_free(self) -> bool:
        """True when both prompt and completion are priced at zero."""
        if not self.pricing:
            return False
        return str(self.pricing.get("prompt")) == "0" and str(self.pricing.get("completion")) == "0"
