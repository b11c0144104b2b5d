"""Edit state of the open canvas document.

The editor is always in exactly one ``EditorMode``. Every state change goes
through ``_transition``, which consults ``TRANSITIONS``; pairs missing from the
table are refused with the policy rejection listed in ``REJECTIONS``.

Dirty tracking compares the draft against a pinned pristine snapshot and is
only meaningful while editing. The snapshot is replaced when a stream
completes, when editing starts, on save, and whenever a different document is
bound.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple, Type
from uuid import UUID

import structlog

from ..domain.errors import (
    EditWhileStreaming,
    NotEditing,
    NothingToDiscard,
    NothingToSave,
    PolicyRejection,
    SaveOrDiscardFirst,
)
from ..domain.models import UNTITLED_DOCUMENT, Document, DocumentExtra, estimate_reading_time

logger = structlog.get_logger()

STREAMING_TITLE = "Generating Document..."


class EditorMode(str, Enum):
    STREAMING = "streaming"
    READING = "reading"
    EDITING = "editing"


class EditorEvent(str, Enum):
    STREAM_UPDATE = "stream_update"
    STREAM_COMPLETE = "stream_complete"
    STREAM_ABORT = "stream_abort"
    ENTER_EDIT = "enter_edit"
    EDIT = "edit"
    SAVE = "save"
    DISCARD = "discard"
    LEAVE_EDIT = "leave_edit"
    BIND = "bind"


S, R, E = EditorMode.STREAMING, EditorMode.READING, EditorMode.EDITING

TRANSITIONS: Dict[Tuple[EditorMode, EditorEvent], EditorMode] = {
    (S, EditorEvent.STREAM_UPDATE): S,
    (R, EditorEvent.STREAM_UPDATE): S,
    (E, EditorEvent.STREAM_UPDATE): S,
    (S, EditorEvent.STREAM_COMPLETE): R,
    (S, EditorEvent.STREAM_ABORT): R,
    (R, EditorEvent.ENTER_EDIT): E,
    (E, EditorEvent.EDIT): E,
    (E, EditorEvent.SAVE): R,
    (E, EditorEvent.DISCARD): R,
    (E, EditorEvent.LEAVE_EDIT): R,
    (S, EditorEvent.BIND): R,
    (R, EditorEvent.BIND): R,
    (E, EditorEvent.BIND): R,
}

REJECTIONS: Dict[Tuple[EditorMode, EditorEvent], Type[PolicyRejection]] = {
    (S, EditorEvent.ENTER_EDIT): EditWhileStreaming,
    (S, EditorEvent.EDIT): EditWhileStreaming,
    (S, EditorEvent.SAVE): EditWhileStreaming,
    (S, EditorEvent.DISCARD): EditWhileStreaming,
}


@dataclass(frozen=True)
class DocumentDraft:
    """The editable fields of a document."""

    title: str = ""
    category: str = ""
    tags: Tuple[str, ...] = field(default_factory=tuple)
    body: str = ""

    @classmethod
    def from_document(cls, document: Optional[Document]) -> "DocumentDraft":
        if document is None:
            return cls()
        extra = document.extra or DocumentExtra()
        return cls(
            title=document.title or "",
            category=extra.category or "",
            tags=tuple(extra.tags or ()),
            body=document.body or "",
        )

    def differs_from(self, other: "DocumentDraft") -> bool:
        return (
            self.title != other.title
            or self.category != other.category
            or sorted(self.tags) != sorted(other.tags)
            or self.body != other.body
        )

    def normalized(self) -> Document:
        """The document as it is persisted on save."""
        return Document(
            title=self.title.strip() or UNTITLED_DOCUMENT,
            body=self.body,
            extra=DocumentExtra(
                estimated_read_time=estimate_reading_time(self.body),
                category=self.category.strip(),
                tags=[tag for tag in self.tags if tag],
            ),
        )


class DocumentEditState:
    """Mode machine, draft and pristine snapshot of the open document."""

    def __init__(self) -> None:
        self.mode = EditorMode.READING
        self.draft = DocumentDraft()
        self.pristine = DocumentDraft()
        self.bound_message_id: Optional[UUID] = None

    @property
    def dirty(self) -> bool:
        return self.editable and self.draft.differs_from(self.pristine)

    @property
    def editable(self) -> bool:
        return self.mode is EditorMode.EDITING

    @property
    def estimated_read_time(self) -> str:
        return estimate_reading_time(self.draft.body)

    @property
    def display_title(self) -> str:
        if self.mode is EditorMode.STREAMING and not self.draft.title:
            return STREAMING_TITLE
        return self.draft.title

    def _transition(self, event: EditorEvent) -> EditorMode:
        key = (self.mode, event)
        target = TRANSITIONS.get(key)
        if target is None:
            rejection = REJECTIONS.get(key, NotEditing)
            logger.info("editor_transition_rejected", mode=self.mode.value, editor_event=event.value)
            raise rejection()
        if target is not self.mode:
            logger.debug(
                "editor_transition", source=self.mode.value, target=target.value, editor_event=event.value
            )
        self.mode = target
        return target

    # streaming

    def apply_stream(self, document: Document) -> None:
        """Mirror the latest partial document into the draft."""
        if self.mode is not EditorMode.STREAMING:
            if self.dirty:
                logger.warning(
                    "unsaved_draft_replaced_by_stream",
                    message_id=str(self.bound_message_id) if self.bound_message_id else None,
                )
            self.bound_message_id = None
        self._transition(EditorEvent.STREAM_UPDATE)
        self.draft = DocumentDraft.from_document(document)

    def complete_stream(self, document: Document, message_id: Optional[UUID] = None) -> None:
        self._transition(EditorEvent.STREAM_COMPLETE)
        self.draft = self.pristine = DocumentDraft.from_document(document)
        self.bound_message_id = message_id

    def abort_stream(self) -> None:
        """Stop streaming and keep the last mirrored draft for display."""
        self._transition(EditorEvent.STREAM_ABORT)
        self.pristine = self.draft

    # binding

    def bind(self, document: Optional[Document], message_id: Optional[UUID]) -> None:
        """Open another document, dropping any unsaved draft."""
        if self.dirty:
            logger.info(
                "unsaved_draft_dropped",
                previous_message_id=str(self.bound_message_id) if self.bound_message_id else None,
            )
        self._transition(EditorEvent.BIND)
        self.draft = self.pristine = DocumentDraft.from_document(document)
        self.bound_message_id = message_id

    def unbind(self) -> None:
        self.bind(None, None)

    # reading / editing

    def enter_edit(self) -> None:
        self._transition(EditorEvent.ENTER_EDIT)
        self.pristine = self.draft

    def toggle(self) -> EditorMode:
        """Switch between reading and editing."""
        if self.editable:
            if self.dirty:
                raise SaveOrDiscardFirst()
            self._transition(EditorEvent.LEAVE_EDIT)
            self.draft = self.pristine
        else:
            self.enter_edit()
        return self.mode

    def _edit(self, **changes) -> None:
        self._transition(EditorEvent.EDIT)
        self.draft = replace(self.draft, **changes)

    def set_title(self, title: str) -> None:
        self._edit(title=title)

    def set_category(self, category: str) -> None:
        self._edit(category=category)

    def set_body(self, body: str) -> None:
        self._edit(body=body)

    def set_tags(self, tags: List[str]) -> None:
        self._edit(tags=tuple(tags))

    def add_tag(self, tag: str) -> None:
        tag = tag.strip()
        if not tag or tag in self.draft.tags:
            # still has to be a legal edit
            self._edit()
            return
        self._edit(tags=self.draft.tags + (tag,))

    def remove_tag(self, tag: str) -> None:
        self._edit(tags=tuple(t for t in self.draft.tags if t != tag))

    def prepare_save(self) -> Document:
        """Validate a save and return the normalized document without committing."""
        if not self.editable:
            raise REJECTIONS.get((self.mode, EditorEvent.SAVE), NotEditing)()
        if not self.dirty:
            raise NothingToSave()
        return self.draft.normalized()

    def commit_save(self, document: Document) -> None:
        self._transition(EditorEvent.SAVE)
        self.draft = self.pristine = DocumentDraft.from_document(document)

    def save(self) -> Document:
        document = self.prepare_save()
        self.commit_save(document)
        return document

    def discard(self) -> None:
        if not self.editable:
            raise REJECTIONS.get((self.mode, EditorEvent.DISCARD), NotEditing)()
        if not self.dirty:
            raise NothingToDiscard()
        self._transition(EditorEvent.DISCARD)
        self.draft = self.pristine

    def snapshot(self) -> dict:
        return {
            "mode": self.mode.value,
            "editable": self.editable,
            "dirty": self.dirty,
            "title": self.display_title,
            "category": self.draft.category,
            "tags": list(self.draft.tags),
            "body": self.draft.body,
            "estimated_read_time": self.estimated_read_time,
            "message_id": str(self.bound_message_id) if self.bound_message_id else None,
        }
