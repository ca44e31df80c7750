"""Application context: the object a UI shell drives.

Wires the settings store, model catalog, conversation engine and chat history
together and executes the effects the engine returns.

Startup sequence: open DB → load settings → load history index → fetch models.
"""

import asyncio

import structlog
from dotenv import load_dotenv

from llmchat.api.schemas import ChatHistoryIndexEntry, ChatSession, ChatSettings, Message
from llmchat.core.completion_client import CompletionClient, CompletionError
from llmchat.core.database import ChatRepository
from llmchat.core.model_catalog import ModelCatalog
from llmchat.core.settings_store import SettingsStore
from llmchat.engine.context_builder import RequestConfig
from llmchat.engine.conversation import ConversationEngine, ConversationState
from llmchat.engine.effects import Busy, CredentialMissing, Effect, RequestCompletion, SaveRequested
from llmchat.engine.history import ChatHistory

load_dotenv()

logger = structlog.get_logger(__name__)


class ChatApp:
    """One chat client instance. Nothing here is module-global, so several can coexist."""

    def __init__(self, repository: ChatRepository | None = None, client: CompletionClient | None = None):
        self.repository = repository or ChatRepository()
        self.client = client or CompletionClient()
        self.settings = SettingsStore(self.repository)
        self.catalog = ModelCatalog(self.repository, self.client)
        self.engine = ConversationEngine()
        self.history = ChatHistory(self.repository, self.client)
        self.credential_prompt_open = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> ConversationState:
        return self.engine.state

    async def start(self, fetch_models: bool = True) -> None:
        """Load persisted state and refresh the model list."""
        logger.info("startup.begin")

        self.settings.load()
        self.catalog.load_preferences()
        logger.info("startup.settings_loaded", model=self.catalog.selected_model_id)

        await self.history.load_index()
        logger.info("startup.history_loaded", sessions=len(self.history.index))

        if fetch_models:
            await self.catalog.fetch()
            logger.info("startup.models_fetched", count=len(self.catalog.models), error=self.catalog.error)

        logger.info("startup.complete")

    async def close(self) -> None:
        await self.drain()
        await self.client.aclose()
        self.repository.close()
        logger.info("shutdown.complete")

    async def drain(self) -> None:
        """Wait until no completion or title task is pending."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
        await self.history.drain()

    def _request_config(self) -> RequestConfig:
        return RequestConfig(
            api_key=self.settings.settings.api_key,
            model=self.catalog.selected_model_id,
            temperature=self.settings.settings.temperature,
            system_prompt=self.settings.settings.system_prompt,
        )

    def _session_settings(self) -> ChatSettings:
        return ChatSettings(
            model=self.catalog.selected_model_id,
            temperature=self.settings.settings.temperature,
            system_prompt=self.settings.settings.system_prompt,
        )

    # --- effect execution -------------------------------------------------

    async def _run(self, effects: list[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, SaveRequested):
                await self.history.on_save_requested(
                    effect.trigger,
                    self.engine.state.messages,
                    self._session_settings(),
                    self.engine.state.total_tokens,
                    api_key=self.settings.settings.api_key,
                )
            elif isinstance(effect, RequestCompletion):
                task = asyncio.create_task(self._complete(effect))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            elif isinstance(effect, CredentialMissing):
                self.credential_prompt_open = True
            elif isinstance(effect, Busy):
                logger.info("chat.busy")

    async def _complete(self, effect: RequestCompletion) -> None:
        try:
            response = await self.client.complete(effect.request, effect.api_key)
        except CompletionError as e:
            effects = self.engine.fail(effect.request_id, str(e))
        else:
            effects = self.engine.complete(effect.request_id, response)
        await self._run(effects)

    # --- chat commands ----------------------------------------------------

    def change_input(self, text: str) -> None:
        self.engine.change_input(text)

    async def send(self) -> None:
        await self._run(self.engine.send(self._request_config()))

    async def edit_message(self, message_id: str, new_content: str) -> None:
        await self._run(self.engine.edit_message(message_id, new_content))

    async def delete_message(self, message_id: str) -> None:
        await self._run(self.engine.delete_message(message_id))

    async def retry(self, message: Message) -> None:
        await self._run(self.engine.retry(message, self._request_config()))

    # --- history commands -------------------------------------------------

    async def select_session(self, session_id: str) -> ChatSession | None:
        """Load a stored session and restore its messages and sampling settings."""
        session = await self.history.select_session(session_id)
        if session is None:
            return None
        self.engine.load(session.messages, session.total_tokens)
        self.catalog.select(session.settings.model)
        self.settings.change_temperature(session.settings.temperature)
        self.settings.change_system_prompt(session.settings.system_prompt)
        return session

    def new_session(self) -> None:
        self.history.start_new()
        self.engine.reset()

    async def delete_session(self, session_id: str) -> None:
        if await self.history.delete_session(session_id):
            self.engine.reset()

    async def rename_session(self, session_id: str, new_title: str) -> ChatHistoryIndexEntry | None:
        return await self.history.rename_session(session_id, new_title)

    async def duplicate_session(self, session_id: str) -> ChatSession:
        """Clone a session and switch to the clone.

        Raises:
            SessionNotFoundError: If session_id is not stored.
        """
        clone = await self.history.duplicate_session(session_id)
        await self.select_session(clone.id)
        return clone

    async def regenerate_title(self) -> ChatHistoryIndexEntry | None:
        return await self.history.regenerate_title(self.settings.settings.api_key)

    # --- settings commands ------------------------------------------------

    def change_credential(self, api_key: str) -> None:
        self.settings.change_api_key(api_key)
        if self.settings.has_credential:
            self.credential_prompt_open = False

    def change_temperature(self, temperature: float) -> None:
        self.settings.change_temperature(temperature)

    def change_system_prompt(self, system_prompt: str) -> None:
        self.settings.change_system_prompt(system_prompt)

    def change_model(self, model_id: str) -> None:
        self.catalog.select(model_id)

    def dismiss_credential_prompt(self) -> None:
        self.credential_prompt_open = False
