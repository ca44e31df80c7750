"""Effects returned by the conversation engine's command handlers.

Handlers never perform I/O themselves. They mutate the conversation state
and hand back a list of these values; the application context executes them
in order and feeds completion results back into the engine.
"""

from dataclasses import dataclass
from enum import Enum

from llmchat.api.schemas import CompletionRequest


class SaveTrigger(str, Enum):
    """Why a session snapshot was requested."""
    INITIAL = "initial"
    RESPONSE = "response"
    RETRY_RESPONSE = "retry_response"
    EDIT = "edit"
    DELETE = "delete"


@dataclass(frozen=True)
class RequestCompletion:
    """Dispatch a completion request and report back under request_id."""
    request_id: str
    request: CompletionRequest
    api_key: str


@dataclass(frozen=True)
class SaveRequested:
    trigger: SaveTrigger


@dataclass(frozen=True)
class CredentialMissing:
    """Ask the user for an API key. Not an error."""


@dataclass(frozen=True)
class Busy:
    """Command rejected because a request is already in flight."""


Effect = RequestCompletion | SaveRequested | CredentialMissing | Busy
