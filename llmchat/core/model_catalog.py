"""Model catalog: the list of OpenRouter models and the current selection.

A failed fetch degrades gracefully: the error is recorded and the previous
list and selection stay usable.
"""

import structlog

from llmchat.api.schemas import ModelInfo
from llmchat.core.completion_client import CompletionClient, CompletionError
from llmchat.core.database import ChatRepository

logger = structlog.get_logger(__name__)

DEFAULT_MODEL_ID = "openrouter/quasar-alpha"
SELECTED_MODEL_KEY = "selected_model_id"
SHOW_FREE_ONLY_KEY = "show_free_only"


def reconcile_selection(models: list[ModelInfo], selected_id: str) -> str:
    """Keep the selection if still listed, else fall back to the first model."""
    if not models or any(m.id == selected_id for m in models):
        return selected_id
    return models[0].id


class ModelCatalog:
    """Fetched models plus the persisted selection and free-only filter."""

    def __init__(self, repository: ChatRepository, client: CompletionClient):
        self._repository = repository
        self._client = client
        self.models: list[ModelInfo] = []
        self.selected_model_id = DEFAULT_MODEL_ID
        self.show_free_only = False
        self.is_loading = False
        self.error: str | None = None

    @property
    def visible_models(self) -> list[ModelInfo]:
        if self.show_free_only:
            return [m for m in self.models if m.is_free]
        return list(self.models)

    @property
    def selected_model(self) -> ModelInfo | None:
        return next((m for m in self.models if m.id == self.selected_model_id), None)

    def load_preferences(self) -> None:
        self.selected_model_id = self._repository.get_setting(SELECTED_MODEL_KEY) or DEFAULT_MODEL_ID
        self.show_free_only = self._repository.get_setting(SHOW_FREE_ONLY_KEY) == "true"

    async def fetch(self) -> list[ModelInfo]:
        """Refresh the model list, newest first.

        Returns:
            The current list (unchanged if the fetch failed).
        """
        self.is_loading = True
        self.error = None
        try:
            models = await self._client.list_models()
        except CompletionError as e:
            self.error = str(e)
            logger.warning("models.fetch_failed", error=self.error)
            return self.models
        finally:
            self.is_loading = False

        self.models = sorted(models, key=lambda m: m.created or 0, reverse=True)
        selected = reconcile_selection(self.models, self.selected_model_id)
        if selected != self.selected_model_id:
            logger.info("models.selection_replaced", previous=self.selected_model_id, selected=selected)
            self.select(selected)
        logger.info("models.fetched", count=len(self.models))
        return self.models

    def select(self, model_id: str) -> None:
        self.selected_model_id = model_id
        self._repository.set_settings({SELECTED_MODEL_KEY: model_id})

    def set_show_free_only(self, show_free_only: bool) -> None:
        self.show_free_only = show_free_only
        self._repository.set_settings({SHOW_FREE_ONLY_KEY: "true" if show_free_only else "false"})
