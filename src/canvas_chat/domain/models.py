"""Domain models for the canvas chat application."""

import math
import re
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

PLACEHOLDER_SESSION_TITLE = "Untitled Session"
UNTITLED_DOCUMENT = "Untitled Document"


class Role(str, Enum):
    """Message author."""

    USER = "user"
    ASSISTANT = "assistant"


class ChatSession(BaseModel):
    """Chat session model."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    title: str = PLACEHOLDER_SESSION_TITLE
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class DocumentExtra(BaseModel):
    """Advisory metadata derived from a document body."""

    word_count: Optional[int] = None
    estimated_read_time: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None


class Document(BaseModel):
    """Canvas document embedded in an assistant message."""

    title: str = ""
    body: str = ""
    extra: Optional[DocumentExtra] = None


class UploadedFile(BaseModel):
    """File attached to an outgoing message."""

    file_name: str
    file_url: str
    storage_path: str
    content_type: str
    size: int
    original_name: str
    user_id: Optional[str] = None
    uploaded_at: datetime = Field(default_factory=datetime.utcnow)


class MessageCreate(BaseModel):
    """Message as submitted for insertion."""

    session_id: UUID
    role: Role
    content: str = ""
    file_data: Optional[UploadedFile] = None
    document: Optional[Document] = None


class Message(MessageCreate):
    """Persisted message."""

    id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ContextMessage(BaseModel):
    """Message reduced to what the model needs."""

    role: Role
    content: str = ""
    file: Optional[UploadedFile] = None

    @classmethod
    def from_message(cls, message: Message) -> "ContextMessage":
        return cls(role=message.role, content=message.content, file=message.file_data)


class PartialStructuredValue(BaseModel):
    """Snapshot of one generation's structured output.

    Every field stays ``None`` until the stream has produced it. Snapshots are
    immutable; the decoder emits a new one for every change.
    """

    model_config = ConfigDict(frozen=True)

    title: Optional[str] = None
    body: Optional[str] = None
    general: Optional[str] = None
    extra: Optional[DocumentExtra] = None
    complete: bool = False

    def to_document(self) -> Document:
        """Document view of the value, empty strings for missing fields."""
        extra = None
        if self.extra is not None:
            extra = self.extra.model_copy(deep=True)
            if extra.tags is not None:
                extra.tags = [tag for tag in extra.tags if isinstance(tag, str) and tag]
        return Document(title=self.title or "", body=self.body or "", extra=extra)


class ModelOption(BaseModel):
    """Selectable model."""

    id: str
    name: str
    provider: str


MODEL_OPTIONS: Dict[str, List[ModelOption]] = {
    "google": [
        ModelOption(id="gemini-1.5-pro", name="Gemini 1.5 Pro", provider="google"),
        ModelOption(id="gemini-1.5-flash", name="Gemini 1.5 Flash", provider="google"),
        ModelOption(id="gemini-1.0-ultra", name="Gemini 1.0 Ultra", provider="google"),
    ],
}

DEFAULT_MODEL = MODEL_OPTIONS["google"][1]


def find_model(model_id: str) -> Optional[ModelOption]:
    """Look up a catalogue entry by model id."""
    for options in MODEL_OPTIONS.values():
        for option in options:
            if option.id == model_id:
                return option
    return None


_TAG_RE = re.compile(r"<[^>]*>")
_SPACE_RE = re.compile(r"\s+")


def estimate_reading_time(html: str) -> str:
    """Estimate reading time of an HTML body at 100 words per minute."""
    text = _SPACE_RE.sub(" ", _TAG_RE.sub(" ", html or ""))
    words = len([word for word in text.strip().split(" ") if word])
    minutes = math.ceil(words / 100) or 1
    return f"{minutes} minute{'s' if minutes > 1 else ''}"
