"""Paginated message history of the active chat session."""

from typing import List, Optional
from uuid import UUID

import structlog

from ..domain.errors import NotFoundError, PersistenceError
from ..domain.models import Document, Message, MessageCreate, Role
from ..repositories.base import Repository

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 20


class MessageTimeline:
    """Chronological, deduplicated message list for one session at a time.

    Pages are fetched newest first and prepended. Every fetch remembers the
    session and binding epoch it was issued under; a fetch that resolves after
    the binding changed is dropped.
    """

    def __init__(self, repository: Repository, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self.repository = repository
        self.page_size = page_size
        self.session_id: Optional[UUID] = None
        self.messages: List[Message] = []
        self.has_more = True
        self.offset = 0
        self._epoch = 0
        self._inflight = 0

    @property
    def loading(self) -> bool:
        return self._inflight > 0

    def _reset(self) -> None:
        self.messages = []
        self.offset = 0
        self.has_more = True

    def unbind(self) -> None:
        self._epoch += 1
        self.session_id = None
        self._reset()

    async def bind(self, session_id: Optional[UUID]) -> None:
        """Switch to another session and fetch its newest page.

        The old session's messages are cleared before the first await.
        """
        self.unbind()
        self.session_id = session_id
        logger.info("timeline_bound", session_id=str(session_id) if session_id else None)
        if session_id is not None:
            await self.load_page(reset=True)

    async def load_page(self, reset: bool = False) -> List[Message]:
        """Fetch the next older page, or the newest page when ``reset``."""
        session_id = self.session_id
        if session_id is None:
            return []
        epoch = self._epoch
        offset = 0 if reset else self.offset
        self._inflight += 1
        try:
            page = await self.repository.list_messages(
                session_id, limit=self.page_size, offset=offset
            )
        except NotFoundError:
            raise
        except Exception as e:
            logger.error("message_fetch_failed", session_id=str(session_id), error=str(e))
            raise PersistenceError("Message retrieval failed") from e
        finally:
            self._inflight -= 1

        if self.session_id != session_id or self._epoch != epoch:
            logger.info(
                "stale_page_discarded",
                fetched_for=str(session_id),
                active=str(self.session_id) if self.session_id else None,
            )
            return []

        chronological = list(reversed(page))
        if reset:
            self._reset()
        known = {m.id for m in self.messages}
        fresh = [m for m in chronological if m.id not in known]
        self.messages = fresh + self.messages
        self.offset = offset + len(page)
        self.has_more = len(page) == self.page_size
        logger.debug(
            "page_loaded",
            session_id=str(session_id),
            offset=offset,
            fetched=len(page),
            has_more=self.has_more,
        )
        return fresh

    async def load_older(self) -> List[Message]:
        if self.loading or not self.has_more:
            return []
        return await self.load_page(reset=False)

    async def append(self, message: MessageCreate) -> Message:
        """Persist a message and append the stored copy."""
        if self.session_id is None or message.session_id != self.session_id:
            raise PersistenceError("Message does not belong to the active session")
        session_id = self.session_id
        epoch = self._epoch
        try:
            stored = await self.repository.add_message(message)
        except Exception as e:
            logger.error("message_append_failed", session_id=str(session_id), error=str(e))
            raise PersistenceError("Message adding failed") from e

        if self.session_id == session_id and self._epoch == epoch:
            if all(m.id != stored.id for m in self.messages):
                self.messages.append(stored)
                self.offset += 1
        else:
            logger.info("append_after_session_switch", session_id=str(session_id))
        return stored

    def get(self, message_id: UUID) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def latest_assistant(self) -> Optional[Message]:
        for message in reversed(self.messages):
            if message.role is Role.ASSISTANT:
                return message
        return None

    async def update_document(self, message_id: UUID, document: Document) -> Message:
        """Replace the document of an assistant message in memory and in the store."""
        current = self.get(message_id)
        if current is None:
            current = await self.repository.get_message(message_id)
        if current is None:
            raise NotFoundError(f"Message {message_id} not found")
        if current.role is not Role.ASSISTANT:
            raise PersistenceError("Only assistant messages carry documents")
        try:
            updated = await self.repository.update_message_document(message_id, document)
        except NotFoundError:
            raise
        except Exception as e:
            logger.error("message_update_failed", message_id=str(message_id), error=str(e))
            raise PersistenceError("Message update failed") from e

        self.messages = [
            m.model_copy(update={"document": updated.document}) if m.id == message_id else m
            for m in self.messages
        ]
        return updated
