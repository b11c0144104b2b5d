"""Base repository interface."""

from abc import ABC, abstractmethod
from typing import List, Optional
from uuid import UUID

from ..domain.models import ChatSession, Document, Message, MessageCreate


class Repository(ABC):
    """Abstract base class for session and message stores."""

    @abstractmethod
    async def create_session(self, user_id: str, title: Optional[str] = None) -> ChatSession:
        """Create a new chat session."""
        pass

    @abstractmethod
    async def get_session(self, session_id: UUID) -> Optional[ChatSession]:
        """Retrieve a session by ID."""
        pass

    @abstractmethod
    async def list_sessions(self, user_id: str) -> List[ChatSession]:
        """List a user's sessions, most recently updated first."""
        pass

    @abstractmethod
    async def update_session_title(self, session_id: UUID, title: str) -> ChatSession:
        """Replace a session's title and bump its update time."""
        pass

    @abstractmethod
    async def delete_session(self, session_id: UUID) -> None:
        """Delete a session and its messages."""
        pass

    @abstractmethod
    async def add_message(self, message: MessageCreate) -> Message:
        """Insert a message and return it with its assigned ID."""
        pass

    @abstractmethod
    async def get_message(self, message_id: UUID) -> Optional[Message]:
        """Retrieve a message by ID."""
        pass

    @abstractmethod
    async def list_messages(
        self, session_id: UUID, limit: int = 20, offset: int = 0
    ) -> List[Message]:
        """List a session's messages newest first with offset pagination."""
        pass

    @abstractmethod
    async def update_message_document(self, message_id: UUID, document: Document) -> Message:
        """Replace the document embedded in a message."""
        pass
