"""Chat history: the recency index, the current session and the save policy.

Storage calls are blocking SQLAlchemy work and run through asyncio.to_thread;
their results are applied on the event loop. The in-memory index is only
ever patched from the result of a completed write.
"""

import asyncio
from datetime import datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError

from llmchat.api.schemas import (
    ChatHistoryIndexEntry,
    ChatSession,
    ChatSettings,
    Message,
    new_id,
    now_ms,
)
from llmchat.core.completion_client import CompletionClient, CompletionError
from llmchat.core.database import ChatRepository
from llmchat.engine.effects import SaveTrigger
from llmchat.engine.prompts import build_title_request, sanitize_title

logger = structlog.get_logger(__name__)


class SessionNotFoundError(Exception):
    """Session id is not in the store."""
    pass


class TitleGenerationError(Exception):
    """Title could not be produced for a session."""
    pass


def default_title(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def upsert_index_entry(index: list[ChatHistoryIndexEntry], session: ChatSession) -> list[ChatHistoryIndexEntry]:
    """Insert or replace the entry for a saved session, keeping recency order."""
    entry = ChatHistoryIndexEntry(id=session.id, title=session.title, last_modified=session.last_modified)
    return patch_index_entry(index, entry)


def patch_index_entry(index: list[ChatHistoryIndexEntry], entry: ChatHistoryIndexEntry) -> list[ChatHistoryIndexEntry]:
    updated = [e for e in index if e.id != entry.id]
    updated.append(entry)
    updated.sort(key=lambda e: e.last_modified, reverse=True)
    return updated


def is_first_round_trip(messages: list[Message]) -> bool:
    """True for exactly one user message followed by one assistant reply."""
    return len(messages) == 2 and messages[0].role == "user" and messages[1].role == "assistant"


class ChatHistory:
    """Session lifecycle on top of a ChatRepository.

    The current session moves None -> Draft -> Persisted (-> Titled). A draft
    gets its id at its first snapshot so every later snapshot of it lands on
    the same row.
    """

    def __init__(self, repository: ChatRepository, client: CompletionClient, title_model: str | None = None):
        self._repository = repository
        self._client = client
        self._title_model = title_model
        self.index: list[ChatHistoryIndexEntry] = []
        self.current_session: ChatSession | None = None
        self.is_loading_index = False
        self.is_saving = False
        self.is_loading_session = False
        self._switch_epoch = 0
        self._auto_titled: set[str] = set()
        self._title_tasks: set[asyncio.Task] = set()

    @property
    def current_session_id(self) -> str | None:
        return self.current_session.id if self.current_session else None

    # --- store operations -------------------------------------------------

    async def load_index(self) -> list[ChatHistoryIndexEntry]:
        """Re-read the full index from storage."""
        self.is_loading_index = True
        try:
            self.index = await asyncio.to_thread(self._repository.list_index)
        finally:
            self.is_loading_index = False
        logger.info("history.index_loaded", sessions=len(self.index))
        return self.index

    async def load_session(self, session_id: str) -> ChatSession | None:
        return await asyncio.to_thread(self._repository.get, session_id)

    async def save_session(self, session: ChatSession) -> ChatSession:
        """Persist a session and patch the index from the stored result.

        The stored copy becomes the current session unless the user switched
        to another session while the write was running. A rename that landed
        during the write keeps its title.
        """
        epoch = self._switch_epoch
        self.is_saving = True
        try:
            saved = await asyncio.to_thread(self._repository.put, session)
        finally:
            self.is_saving = False

        known = next((e for e in self.index if e.id == saved.id), None)
        if known is not None and saved.title == session.title and known.title != session.title:
            saved = saved.model_copy(update={"title": known.title})
        self.index = upsert_index_entry(self.index, saved)
        if epoch == self._switch_epoch and self.current_session_id in (None, saved.id):
            self.current_session = saved
        logger.info("history.saved", session_id=saved.id, messages=len(saved.messages))
        return saved

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session.

        Returns:
            True if it was the current session, which is then cleared.
        """
        await asyncio.to_thread(self._repository.delete, session_id)
        self.index = [e for e in self.index if e.id != session_id]
        self._auto_titled.discard(session_id)
        logger.info("history.deleted", session_id=session_id)
        if self.current_session_id == session_id:
            self.start_new()
            return True
        return False

    async def rename_session(self, session_id: str, new_title: str) -> ChatHistoryIndexEntry | None:
        """Rename a stored session.

        Returns:
            Updated index entry, or None if the session does not exist.
        """
        entry = await asyncio.to_thread(self._repository.rename, session_id, new_title.strip())
        if entry is None:
            logger.info("history.rename_missing", session_id=session_id)
            return None

        self.index = patch_index_entry(self.index, entry)
        if self.current_session_id == entry.id:
            self.current_session = self.current_session.model_copy(
                update={"title": entry.title, "last_modified": entry.last_modified}
            )
        logger.info("history.renamed", session_id=session_id, title=entry.title)
        return entry

    async def duplicate_session(self, session_id: str) -> ChatSession:
        """Clone a stored session under a new id with fresh message ids.

        Raises:
            SessionNotFoundError: If the source session does not exist.
        """
        source = await self.load_session(session_id)
        if source is None:
            raise SessionNotFoundError(f"Chat session {session_id} not found")

        now = now_ms()
        clone = source.model_copy(update={
            "id": new_id(),
            "title": f"{source.title} (Copy)",
            "created_at": now,
            "last_modified": now,
            "messages": [m.model_copy(update={"id": new_id()}) for m in source.messages],
        })
        saved = await asyncio.to_thread(self._repository.put, clone)
        self.index = upsert_index_entry(self.index, saved)
        logger.info("history.duplicated", source_id=session_id, session_id=saved.id)
        return saved

    def search_index(self, term: str) -> list[ChatHistoryIndexEntry]:
        """Case-insensitive title filter over the in-memory index."""
        needle = term.strip().lower()
        if not needle:
            return list(self.index)
        return [e for e in self.index if needle in e.title.lower()]

    # --- session switching ------------------------------------------------

    async def select_session(self, session_id: str) -> ChatSession | None:
        """Make a stored session current. Unknown ids leave everything unchanged."""
        self.is_loading_session = True
        try:
            session = await self.load_session(session_id)
        finally:
            self.is_loading_session = False

        if session is None:
            logger.info("history.session_missing", session_id=session_id)
            return None
        self._switch_epoch += 1
        self.current_session = session
        return session

    def start_new(self) -> None:
        """Drop the current session; the next snapshot starts a new draft."""
        self._switch_epoch += 1
        self.current_session = None

    # --- save policy ------------------------------------------------------

    def prepare_snapshot(self, messages: list[Message], settings: ChatSettings, total_tokens: int) -> ChatSession:
        """Build the document for the current conversation state."""
        now = now_ms()
        current = self.current_session
        if current is None:
            snapshot = ChatSession(
                title=default_title(now),
                created_at=now,
                last_modified=now,
                messages=list(messages),
                settings=settings,
                total_tokens=total_tokens,
            )
        else:
            snapshot = current.model_copy(update={
                "messages": list(messages),
                "settings": settings,
                "total_tokens": total_tokens,
            })
        self.current_session = snapshot
        return snapshot

    async def on_save_requested(
        self,
        trigger: SaveTrigger,
        messages: list[Message],
        settings: ChatSettings,
        total_tokens: int,
        api_key: str = "",
    ) -> ChatSession | None:
        """Persist a snapshot for a save trigger emitted by the engine.

        Empty conversations are never written. The first round trip (sent or retried) of
        a session schedules automatic titling.

        Returns:
            The stored session, or None if nothing was written.
        """
        if not messages:
            logger.debug("history.save_skipped", reason="empty", trigger=trigger.value)
            return None

        snapshot = self.prepare_snapshot(messages, settings, total_tokens)
        try:
            saved = await self.save_session(snapshot)
        except SQLAlchemyError as e:
            logger.error("history.save_failed", session_id=snapshot.id, trigger=trigger.value, error=str(e))
            return None

        if (
            trigger in (SaveTrigger.RESPONSE, SaveTrigger.RETRY_RESPONSE)
            and is_first_round_trip(saved.messages)
            and saved.id not in self._auto_titled
        ):
            self._auto_titled.add(saved.id)
            self._schedule_title(saved.id, saved.messages, api_key)
        return saved

    # --- titles -----------------------------------------------------------

    async def generate_title(self, session_id: str, messages: list[Message], api_key: str) -> str:
        """Ask the title model for a short summary of the conversation.

        Raises:
            TitleGenerationError: Missing credential, empty conversation, API
                failure or an empty result after sanitizing.
        """
        if not api_key or not api_key.strip():
            raise TitleGenerationError("API key is required for title generation.")
        if not messages:
            raise TitleGenerationError("Cannot generate title for empty chat.")

        request = build_title_request(messages, self._title_model)
        logger.debug("history.title_request", session_id=session_id, model=request.model)
        try:
            response = await self._client.complete(request, api_key)
        except CompletionError as e:
            raise TitleGenerationError(f"Title generation failed: {e}") from e

        title = sanitize_title(response.content)
        if not title:
            raise TitleGenerationError("Title generation resulted in an empty response.")
        return title

    async def apply_generated_title(self, session_id: str, messages: list[Message], api_key: str) -> ChatHistoryIndexEntry | None:
        """Generate and store a title. Failures are logged and leave the old title."""
        try:
            title = await self.generate_title(session_id, messages, api_key)
        except TitleGenerationError as e:
            logger.warning("history.title_failed", session_id=session_id, error=str(e))
            return None
        try:
            return await self.rename_session(session_id, title)
        except SQLAlchemyError as e:
            logger.error("history.title_store_failed", session_id=session_id, error=str(e))
            return None

    async def regenerate_title(self, api_key: str) -> ChatHistoryIndexEntry | None:
        """Retitle the current session on request, regardless of its length."""
        current = self.current_session
        if current is None:
            return None
        return await self.apply_generated_title(current.id, current.messages, api_key)

    def _schedule_title(self, session_id: str, messages: list[Message], api_key: str) -> None:
        task = asyncio.create_task(self.apply_generated_title(session_id, messages, api_key))
        self._title_tasks.add(task)
        task.add_done_callback(self._title_tasks.discard)

    async def drain(self) -> None:
        """Wait for background title tasks."""
        while self._title_tasks:
            await asyncio.gather(*list(self._title_tasks))
