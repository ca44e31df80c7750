"""Shared fixtures for all tests."""

import json

import httpx
import pytest

from llmchat.api.schemas import CompletionResponse
from llmchat.core.completion_client import CompletionClient
from llmchat.core.database import ChatRepository
from llmchat.engine.context_builder import RequestConfig
from llmchat.engine.prompts import DEFAULT_TITLE_MODEL


def completion_body(content: str | None = "Hi there!", total_tokens: int = 10, model: str = "test/model") -> dict:
    return {
        "id": "gen-123",
        "model": model,
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": total_tokens // 2, "completion_tokens": total_tokens - total_tokens // 2, "total_tokens": total_tokens},
    }


def make_response(content: str | None = "Hi there!", total_tokens: int = 10) -> CompletionResponse:
    return CompletionResponse.model_validate(completion_body(content, total_tokens))


class FakeOpenRouter:
    """httpx.MockTransport handler that records requests and replays canned replies.

    Chat replies are popped from ``replies`` in order (default: a plain
    greeting). Requests for the title model get ``title_reply``.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.replies: list[tuple[int, dict]] = []
        self.title_reply = "Python Generators!"
        self.models: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/models"):
            return httpx.Response(200, json={"data": self.models})

        body = json.loads(request.content)
        if body["model"] == DEFAULT_TITLE_MODEL:
            return httpx.Response(200, json=completion_body(self.title_reply, 3, DEFAULT_TITLE_MODEL))
        if self.replies:
            status, payload = self.replies.pop(0)
            return httpx.Response(status, json=payload)
        return httpx.Response(200, json=completion_body())

    def bodies(self, model: str | None = None) -> list[dict]:
        """JSON bodies of chat-completion requests, optionally for one model."""
        found = [json.loads(r.content) for r in self.requests if r.url.path.endswith("/chat/completions")]
        return [b for b in found if model is None or b["model"] == model]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("TITLE_MODEL", "OPENROUTER_BASE_URL", "DATABASE_URL", "LLM_TIMEOUT"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def repository():
    """Fresh in-memory database per test."""
    repo = ChatRepository("sqlite:///:memory:")
    yield repo
    repo.close()


@pytest.fixture
def openrouter() -> FakeOpenRouter:
    return FakeOpenRouter()


@pytest.fixture
def client(openrouter) -> CompletionClient:
    return CompletionClient(base_url="https://openrouter.test/api/v1", transport=httpx.MockTransport(openrouter))


@pytest.fixture
def config() -> RequestConfig:
    return RequestConfig(api_key="sk-test", model="test/model", temperature=0.7)


@pytest.fixture
def no_key_config() -> RequestConfig:
    return RequestConfig(api_key="", model="test/model", temperature=0.7)


@pytest.fixture
def reply():
    """Factory for parsed completion responses."""
    return make_response


@pytest.fixture
def reply_body():
    """Factory for raw /chat/completions JSON bodies."""
    return completion_body
