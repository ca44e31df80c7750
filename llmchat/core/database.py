"""SQLAlchemy + SQLite persistence for chat sessions and scalar settings.

A session is stored whole, one row per conversation, with its messages and
sampling settings serialized as JSON. ``last_modified`` carries the only
secondary index and drives the recency ordering of the history list.
"""

import json
import os
import threading
from pathlib import Path
from typing import Callable

import structlog
from sqlalchemy import BigInteger, Column, Integer, String, Text, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from llmchat.api.schemas import ChatHistoryIndexEntry, ChatSession, ChatSettings, Message, now_ms

logger = structlog.get_logger(__name__)

Base = declarative_base()


class ChatRow(Base):
    """Persistent chat session row."""
    __tablename__ = "chats"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    created_at = Column(BigInteger, nullable=False)
    last_modified = Column(BigInteger, nullable=False, index=True)
    messages = Column(Text, nullable=False)  # JSON list
    settings = Column(Text, nullable=False)  # JSON object
    total_tokens = Column(Integer, nullable=False, default=0)


class SettingRow(Base):
    """Key/value preference row."""
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)


def _engine_kwargs(url: str) -> dict:
    parsed = make_url(url)
    if not parsed.drivername.startswith("sqlite"):
        return {}
    if not parsed.database or parsed.database == ":memory:":
        # A single shared connection, otherwise every pooled connection sees its own empty database
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return {"connect_args": {"check_same_thread": False}}


def normalize_message(message: Message) -> Message:
    """Coerce the edit bookkeeping fields into their persisted shape."""
    return message.model_copy(update={
        "is_edited": bool(message.is_edited),
        "original_content": message.original_content if message.is_edited else None,
    })


class ChatRepository:
    """Synchronous storage for ChatSession documents and settings.

    Calls block; the async layer runs them in worker threads.
    """

    def __init__(self, database_url: str | None = None, clock: Callable[[], int] = now_ms):
        """Create engine + tables.

        Args:
            database_url: SQLAlchemy connection string. Defaults to DATABASE_URL env var.
            clock: Millisecond clock used to stamp last_modified.
        """
        url = database_url or os.environ.get("DATABASE_URL", "sqlite:///data/llmchat.sqlite")
        self._engine = create_engine(url, echo=False, **_engine_kwargs(url))
        self._SessionLocal = sessionmaker(bind=self._engine)
        self._clock = clock
        self._stamp_lock = threading.Lock()
        self._last_stamp = 0

        Base.metadata.create_all(self._engine)
        logger.info("db.initialized", url=url.split("///")[0] + "///***")

    def get_session(self) -> Session:
        """Get a new database session."""
        return self._SessionLocal()

    def _stamp(self) -> int:
        """Next last_modified value, strictly greater than any issued before."""
        with self._stamp_lock:
            stamp = max(self._clock(), self._last_stamp + 1)
            self._last_stamp = stamp
            return stamp

    def list_index(self) -> list[ChatHistoryIndexEntry]:
        """Summary projection of every stored session, most recent first."""
        with self.get_session() as session:
            rows = (
                session.query(ChatRow.id, ChatRow.title, ChatRow.last_modified)
                .order_by(ChatRow.last_modified.desc())
                .all()
            )
            return [ChatHistoryIndexEntry(id=r.id, title=r.title, last_modified=r.last_modified) for r in rows]

    def get(self, session_id: str) -> ChatSession | None:
        """Fetch a full session.

        Returns:
            The stored ChatSession, or None if the id is unknown.
        """
        with self.get_session() as session:
            row = session.get(ChatRow, session_id)
            return _row_to_session(row) if row is not None else None

    def put(self, chat: ChatSession) -> ChatSession:
        """Upsert a session by id.

        Stamps last_modified and normalizes every message before writing.
        The title is only written when the row is created; afterwards it
        changes through rename() alone.

        Returns:
            The session exactly as stored.
        """
        stored = chat.model_copy(update={
            "last_modified": self._stamp(),
            "messages": [normalize_message(m) for m in chat.messages],
        })
        messages = json.dumps([m.model_dump() for m in stored.messages])
        settings = json.dumps(stored.settings.model_dump())
        with self.get_session() as session:
            row = session.get(ChatRow, stored.id)
            if row is None:
                session.add(ChatRow(
                    id=stored.id,
                    title=stored.title,
                    created_at=stored.created_at,
                    last_modified=stored.last_modified,
                    messages=messages,
                    settings=settings,
                    total_tokens=stored.total_tokens,
                ))
            else:
                row.last_modified = stored.last_modified
                row.messages = messages
                row.settings = settings
                row.total_tokens = stored.total_tokens
                stored = stored.model_copy(update={"title": row.title, "created_at": row.created_at})
            session.commit()
        logger.debug("db.session_saved", session_id=stored.id, messages=len(stored.messages))
        return stored

    def delete(self, session_id: str) -> None:
        """Remove a session. Unknown ids are ignored."""
        with self.get_session() as session:
            deleted = session.query(ChatRow).filter(ChatRow.id == session_id).delete()
            session.commit()
        logger.debug("db.session_deleted", session_id=session_id, found=bool(deleted))

    def rename(self, session_id: str, title: str) -> ChatHistoryIndexEntry | None:
        """Update a session's title and last_modified.

        Returns:
            The updated index entry, or None if the id is unknown.
        """
        with self.get_session() as session:
            row = session.get(ChatRow, session_id)
            if row is None:
                return None
            row.title = title
            row.last_modified = self._stamp()
            session.commit()
            return ChatHistoryIndexEntry(id=row.id, title=row.title, last_modified=row.last_modified)

    def get_setting(self, key: str) -> str | None:
        with self.get_session() as session:
            row = session.get(SettingRow, key)
            return row.value if row is not None else None

    def set_settings(self, values: dict[str, str]) -> None:
        """Upsert several settings in one transaction."""
        with self.get_session() as session:
            for key, value in values.items():
                session.merge(SettingRow(key=key, value=value))
            session.commit()

    def reset(self) -> None:
        """Drop and recreate all tables."""
        Base.metadata.drop_all(self._engine)
        Base.metadata.create_all(self._engine)
        logger.info("db.reset")

    def close(self) -> None:
        self._engine.dispose()


def _row_to_session(row: ChatRow) -> ChatSession:
    """Convert a SQLAlchemy row to a Pydantic ChatSession."""
    return ChatSession(
        id=row.id,
        title=row.title,
        created_at=row.created_at,
        last_modified=row.last_modified,
        messages=[Message.model_validate(m) for m in json.loads(row.messages)],
        settings=ChatSettings.model_validate(json.loads(row.settings)),
        total_tokens=row.total_tokens or 0,
    )
