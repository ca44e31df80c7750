"""OpenRouter client: chat completions and the model list.

One HTTP call per request. There is no failover and no automatic retry:
every retry in the chat flow is explicit and user-initiated. Timeouts are
delegated to httpx.
"""

import os

import httpx
import structlog
from pydantic import ValidationError

from llmchat.api.schemas import CompletionRequest, CompletionResponse, ModelInfo

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class CompletionError(Exception):
    """Network failure, non-2xx status or unreadable body from the API."""
    pass


class CredentialMissingError(CompletionError):
    """No bearer credential was supplied."""
    pass


def _error_message(response: httpx.Response) -> str:
    """Build the user-facing message for a non-2xx response.

    Uses the API's own ``error.message`` when the body carries one,
    otherwise falls back to the bare status.
    """
    try:
        detail = response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return f"HTTP error ({response.status_code})"
    return f"API Error ({response.status_code}): {detail}"


class CompletionClient:
    """Async wrapper around the OpenRouter REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or os.environ.get("OPENROUTER_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.timeout = timeout if timeout is not None else float(os.environ.get("LLM_TIMEOUT", "60"))

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=transport,
        )

    async def complete(self, request: CompletionRequest, api_key: str) -> CompletionResponse:
        """Send one chat-completion request.

        Args:
            request: Model, messages and sampling parameters.
            api_key: Bearer credential.

        Returns:
            Parsed completion response.

        Raises:
            CredentialMissingError: If api_key is blank.
            CompletionError: On transport failure, non-2xx status or malformed body.
        """
        if not api_key or not api_key.strip():
            raise CredentialMissingError("API key is required.")

        logger.debug("completion.request", model=request.model, messages=len(request.messages))

        try:
            response = await self._client.post(
                "/chat/completions",
                json=request.model_dump(exclude_none=True),
                headers={"Authorization": f"Bearer {api_key}"},
            )
        except httpx.HTTPError as e:
            logger.error("completion.transport_failed", model=request.model, error=str(e))
            raise CompletionError(f"Network error: {e}") from e

        if response.is_error:
            message = _error_message(response)
            logger.error("completion.http_error", status=response.status_code, error=message)
            raise CompletionError(message)

        try:
            parsed = CompletionResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error("completion.malformed_body", error=str(e))
            raise CompletionError(f"Malformed response body: {e}") from e

        logger.info("completion.ok", model=parsed.model or request.model, total_tokens=parsed.total_tokens)
        return parsed

    async def list_models(self) -> list[ModelInfo]:
        """Fetch the model catalog. No credential needed.

        Raises:
            CompletionError: On transport failure, non-2xx status or malformed body.
        """
        try:
            response = await self._client.get("/models")
        except httpx.HTTPError as e:
            logger.error("models.transport_failed", error=str(e))
            raise CompletionError(f"Network error: {e}") from e

        if response.is_error:
            raise CompletionError(_error_message(response))

        try:
            return [ModelInfo.model_validate(item) for item in response.json().get("data", [])]
        except (ValueError, AttributeError, ValidationError) as e:
            logger.error("models.malformed_body", error=str(e))
            raise CompletionError(f"Malformed response body: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
