"""In-memory repository implementation."""

import asyncio
import itertools
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import UUID

import structlog

from ..domain.errors import NotFoundError
from ..domain.models import (
    PLACEHOLDER_SESSION_TITLE,
    ChatSession,
    Document,
    Message,
    MessageCreate,
)
from .base import Repository

logger = structlog.get_logger()


class InMemoryRepository(Repository):
    """Async-safe in-memory store."""

    def __init__(self) -> None:
        self._sessions: Dict[UUID, ChatSession] = {}
        # (insertion sequence, message) so equal timestamps keep insert order
        self._messages: Dict[UUID, List[Tuple[int, Message]]] = {}
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()
        logger.info("repository_initialized")

    async def create_session(self, user_id: str, title: Optional[str] = None) -> ChatSession:
        session = ChatSession(user_id=user_id, title=title or PLACEHOLDER_SESSION_TITLE)
        async with self._lock:
            self._sessions[session.id] = session
            self._messages[session.id] = []
        logger.info("session_created", session_id=str(session.id), user_id=user_id)
        return session.model_copy()

    async def get_session(self, session_id: UUID) -> Optional[ChatSession]:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                logger.warning("session_not_found", session_id=str(session_id))
                return None
            return session.model_copy()

    async def list_sessions(self, user_id: str) -> List[ChatSession]:
        async with self._lock:
            sessions = [s for s in self._sessions.values() if s.user_id == user_id]
            sessions.sort(key=lambda s: s.updated_at, reverse=True)
            return [s.model_copy() for s in sessions]

    async def update_session_title(self, session_id: UUID, title: str) -> ChatSession:
        async with self._lock:
            session = self._require_session(session_id)
            session.title = title
            session.updated_at = datetime.utcnow()
            logger.info("session_title_updated", session_id=str(session_id), title=title)
            return session.model_copy()

    async def delete_session(self, session_id: UUID) -> None:
        async with self._lock:
            self._require_session(session_id)
            del self._sessions[session_id]
            self._messages.pop(session_id, None)
        logger.info("session_deleted", session_id=str(session_id))

    async def add_message(self, message: MessageCreate) -> Message:
        async with self._lock:
            session = self._require_session(message.session_id)
            stored = Message(**message.model_dump())
            self._messages[message.session_id].append((next(self._sequence), stored))
            session.updated_at = stored.created_at
            logger.info(
                "message_added",
                session_id=str(message.session_id),
                message_id=str(stored.id),
                message_role=stored.role.value,
            )
            return stored.model_copy(deep=True)

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        async with self._lock:
            found = self._find_message(message_id)
            return found.model_copy(deep=True) if found else None

    async def list_messages(
        self, session_id: UUID, limit: int = 20, offset: int = 0
    ) -> List[Message]:
        async with self._lock:
            self._require_session(session_id)
            rows = sorted(
                self._messages.get(session_id, []),
                key=lambda row: (row[1].created_at, row[0]),
                reverse=True,
            )
            return [m.model_copy(deep=True) for _, m in rows[offset : offset + limit]]

    async def update_message_document(self, message_id: UUID, document: Document) -> Message:
        async with self._lock:
            found = self._find_message(message_id)
            if found is None:
                logger.error("message_not_found_for_update", message_id=str(message_id))
                raise NotFoundError(f"Message {message_id} not found")
            found.document = document.model_copy(deep=True)
            logger.info("message_document_updated", message_id=str(message_id))
            return found.model_copy(deep=True)

    def _require_session(self, session_id: UUID) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            logger.error("session_not_found", session_id=str(session_id))
            raise NotFoundError(f"Session {session_id} not found")
        return session

    def _find_message(self, message_id: UUID) -> Optional[Message]:
        for rows in self._messages.values():
            for _, message in rows:
                if message.id == message_id:
                    return message
        return None
