"""Reconciliation of streamed generations with the session, timeline and editor.

``ChatSessionOrchestrator`` is the only writer of the timeline, the editor and
the generation owner marker. A generation is represented by a
``GenerationTicket``; the ticket is the owner from submit until completion,
and it is dropped whenever the active session changes. Completion is applied
only while the ticket still owns the workspace, so a late stream can never
write into another session.
"""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set
from uuid import UUID, uuid4

import structlog

from ..domain.errors import (
    AttachmentInFlight,
    DecodeError,
    EmptyInput,
    GenerationError,
    NoActiveSession,
    NoDocumentBound,
    NotFoundError,
    PolicyRejection,
    RequestValidationError,
    SubmissionInFlight,
    TimelineBusy,
)
from ..domain.models import (
    DEFAULT_MODEL,
    PLACEHOLDER_SESSION_TITLE,
    UNTITLED_DOCUMENT,
    ChatSession,
    ContextMessage,
    Message,
    MessageCreate,
    ModelOption,
    PartialStructuredValue,
    Role,
    UploadedFile,
    find_model,
)
from ..repositories.base import Repository
from ..services.llm import ProviderRegistry, TitleService
from ..services.storage import UploadService
from .classifier import ResponseClassifier, ResponseKind
from .decoder import StructuredStreamDecoder
from .editor import DocumentEditState, EditorMode
from .identity import IdentityCell
from .timeline import DEFAULT_PAGE_SIZE, MessageTimeline

logger = structlog.get_logger()


@dataclass
class GenerationTicket:
    session_id: UUID
    generation_id: UUID = field(default_factory=uuid4)
    # False once the user opened another document mid-stream
    mirroring: bool = True
    streamed: bool = False


class SubmitStatus(str, Enum):
    COMPLETED = "completed"
    DISCARDED = "discarded"
    DUPLICATE = "duplicate"


@dataclass
class SubmitResult:
    status: SubmitStatus
    user_message: Message
    kind: ResponseKind = ResponseKind.UNDETERMINED
    assistant_message: Optional[Message] = None
    partial_count: int = 0


class ChatSessionOrchestrator:
    """One user's chat workspace."""

    def __init__(
        self,
        repository: Repository,
        registry: ProviderRegistry,
        identity: IdentityCell,
        uploads: Optional[UploadService] = None,
        title_service: Optional[TitleService] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        model: ModelOption = DEFAULT_MODEL,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.identity = identity
        self.uploads = uploads
        self.title_service = title_service
        self.model = model
        self.timeline = MessageTimeline(repository, page_size=page_size)
        self.editor = DocumentEditState()
        self.sessions: List[ChatSession] = []
        self.active_session_id: Optional[UUID] = None
        self.attachment: Optional[UploadedFile] = None
        self.editor_open = False
        self.last_value: Optional[PartialStructuredValue] = None
        self.last_error: Optional[str] = None
        self._owner: Optional[GenerationTicket] = None
        self._background: Set[asyncio.Task] = set()
        self._unsubscribe = identity.subscribe(self._on_identity_changed)

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.get()

    @property
    def generating(self) -> bool:
        return self._owner is not None

    def _owns(self, ticket: GenerationTicket) -> bool:
        return self._owner is ticket and self.active_session_id == ticket.session_id

    def _require_user(self) -> str:
        user_id = self.user_id
        if user_id is None:
            raise PolicyRejection("You must be signed in")
        return user_id

    # session lifecycle

    def _clear_session_state(self) -> None:
        if self._owner is not None:
            logger.info(
                "generation_orphaned",
                generation_id=str(self._owner.generation_id),
                session_id=str(self._owner.session_id),
            )
        self._owner = None
        self.attachment = None
        self.editor_open = False
        self.editor.unbind()
        self.last_value = None
        self.last_error = None

    def _on_identity_changed(self, user_id: Optional[str]) -> None:
        logger.info("workspace_reset_for_identity", signed_in=user_id is not None)
        self._clear_session_state()
        self.active_session_id = None
        self.sessions = []
        self.timeline.unbind()

    async def refresh_sessions(self) -> List[ChatSession]:
        self.sessions = await self.repository.list_sessions(self._require_user())
        return self.sessions

    async def new_session(self) -> ChatSession:
        user_id = self._require_user()
        self._clear_session_state()
        session = await self.repository.create_session(user_id, PLACEHOLDER_SESSION_TITLE)
        self.sessions.insert(0, session)
        await self._activate(session.id)
        return session

    async def select_session(self, session_id: UUID) -> None:
        user_id = self._require_user()
        if session_id == self.active_session_id:
            return
        session = await self.repository.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError(f"Session {session_id} not found")
        self._clear_session_state()
        await self._activate(session_id)

    async def _activate(self, session_id: Optional[UUID]) -> None:
        self.active_session_id = session_id
        await self.timeline.bind(session_id)

    async def delete_session(self, session_id: UUID) -> None:
        user_id = self._require_user()
        session = await self.repository.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError(f"Session {session_id} not found")
        await self.repository.delete_session(session_id)
        self.sessions = [s for s in self.sessions if s.id != session_id]
        if self.active_session_id == session_id:
            self._clear_session_state()
            await self._activate(self.sessions[0].id if self.sessions else None)

    async def load_older(self) -> List[Message]:
        return await self.timeline.load_older()

    # attachments and model

    async def attach_file(self, original_name: str, content_type: str, data: bytes) -> UploadedFile:
        user_id = self._require_user()
        if self.attachment is not None:
            raise AttachmentInFlight()
        if self.uploads is None:
            raise PolicyRejection("File uploads are not available")
        self.attachment = await self.uploads.upload(user_id, original_name, content_type, data)
        return self.attachment

    async def remove_file(self) -> bool:
        attachment = self.attachment
        if attachment is None:
            return False
        removed = False
        try:
            if self.uploads is not None:
                removed = await self.uploads.remove(attachment)
        except Exception as e:
            logger.warning("attachment_remove_failed", path=attachment.storage_path, error=str(e))
        if self.attachment is attachment:
            self.attachment = None
        return removed

    def select_model(self, model_id: str) -> ModelOption:
        model = find_model(model_id)
        if model is None:
            raise RequestValidationError(f"Unknown model '{model_id}'", field="model")
        self.model = model
        return model

    # generation

    async def submit(
        self, text: str, attachment: Optional[UploadedFile] = None
    ) -> SubmitResult:
        """Persist the user's message, stream a reply and persist it once."""
        if not text or not text.strip():
            raise EmptyInput()
        if self.active_session_id is None:
            raise NoActiveSession()
        if self.timeline.loading:
            raise TimelineBusy()
        if self._owner is not None:
            raise SubmissionInFlight()

        session_id = self.active_session_id
        ticket = GenerationTicket(session_id=session_id)
        self._owner = ticket
        self.last_error = None
        self.last_value = None
        attachment = attachment or self.attachment
        try:
            first_message = not self.timeline.messages
            user_message = await self.timeline.append(
                MessageCreate(
                    session_id=session_id, role=Role.USER, content=text, file_data=attachment
                )
            )
            if self.attachment is attachment:
                self.attachment = None
            if first_message:
                self._spawn(self._generate_title(session_id, text))
            if not self._owns(ticket):
                logger.info("generation_skipped_session_changed", session_id=str(session_id))
                return SubmitResult(SubmitStatus.DISCARDED, user_message)

            context = [ContextMessage.from_message(m) for m in self.timeline.messages]
            return await self._generate(ticket, user_message, context)
        finally:
            if self._owner is ticket:
                self._owner = None

    async def _generate(
        self, ticket: GenerationTicket, user_message: Message, context: List[ContextMessage]
    ) -> SubmitResult:
        model = self.model
        provider = self.registry.for_model(model)
        decoder = StructuredStreamDecoder(provider.stream_structured(context, model.id))
        classifier = ResponseClassifier()
        final: Optional[PartialStructuredValue] = None
        count = 0
        logger.info(
            "generation_started",
            generation_id=str(ticket.generation_id),
            session_id=str(ticket.session_id),
            model=model.id,
            context_size=len(context),
        )
        try:
            async with aclosing(decoder.stream()) as values:
                async for value in values:
                    if not self._owns(ticket):
                        logger.info(
                            "generation_discarded",
                            generation_id=str(ticket.generation_id),
                            partials=count,
                        )
                        return SubmitResult(SubmitStatus.DISCARDED, user_message, partial_count=count)
                    count += 1
                    self.last_value = value
                    kind = classifier.classify(value)
                    if value.complete:
                        final = value
                    elif kind is ResponseKind.DOCUMENT and ticket.mirroring:
                        self._mirror(ticket, value)
        except GenerationError as e:
            if self._owns(ticket):
                self.last_error = str(e)
                self._abort_mirror(ticket)
            logger.warning(
                "generation_failed",
                generation_id=str(ticket.generation_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        return await self._complete(ticket, user_message, classifier, final, count)

    def _mirror(self, ticket: GenerationTicket, value: PartialStructuredValue) -> None:
        if not ticket.streamed:
            ticket.streamed = True
            self.editor_open = True
        self.editor.apply_stream(value.to_document())

    def _abort_mirror(self, ticket: GenerationTicket) -> None:
        if ticket.streamed and ticket.mirroring and self.editor.mode is EditorMode.STREAMING:
            self.editor.abort_stream()

    async def _complete(
        self,
        ticket: GenerationTicket,
        user_message: Message,
        classifier: ResponseClassifier,
        final: Optional[PartialStructuredValue],
        count: int,
    ) -> SubmitResult:
        if not self._owns(ticket):
            logger.info("completion_discarded", generation_id=str(ticket.generation_id))
            return SubmitResult(SubmitStatus.DISCARDED, user_message, partial_count=count)

        kind = classifier.classify(final)
        if final is None or kind is ResponseKind.UNDETERMINED:
            self._abort_mirror(ticket)
            error = DecodeError("Response contained neither a reply nor a document", last_value=final)
            self.last_error = str(error)
            raise error

        general = final.general or ""
        recent = self.timeline.latest_assistant()
        if recent is not None and recent.content == general:
            logger.warning(
                "duplicate_reply_suppressed",
                generation_id=str(ticket.generation_id),
                session_id=str(ticket.session_id),
            )
            self._abort_mirror(ticket)
            return SubmitResult(SubmitStatus.DUPLICATE, user_message, kind, partial_count=count)

        document = None
        if kind is ResponseKind.DOCUMENT:
            document = final.to_document()
            document.title = document.title or UNTITLED_DOCUMENT

        try:
            assistant = await self.timeline.append(
                MessageCreate(
                    session_id=ticket.session_id,
                    role=Role.ASSISTANT,
                    content=general,
                    document=document,
                )
            )
        except Exception:
            if self._owns(ticket):
                self._abort_mirror(ticket)
            raise

        if document is not None and self._owns(ticket) and ticket.mirroring:
            if self.editor.mode is EditorMode.STREAMING:
                self.editor.complete_stream(document, assistant.id)
            else:
                self.editor.bind(document, assistant.id)
            self.editor_open = True

        logger.info(
            "generation_completed",
            generation_id=str(ticket.generation_id),
            session_id=str(ticket.session_id),
            kind=kind.value,
            partials=count,
        )
        return SubmitResult(SubmitStatus.COMPLETED, user_message, kind, assistant, count)

    # background work

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _generate_title(self, session_id: UUID, first_message: str) -> None:
        if self.title_service is None:
            return
        try:
            session = await self.repository.get_session(session_id)
            if session is None or session.title != PLACEHOLDER_SESSION_TITLE:
                return
            title = await self.title_service.generate(first_message)
            if not title:
                return
            updated = await self.repository.update_session_title(session_id, title)
        except Exception as e:
            logger.warning("session_title_update_failed", session_id=str(session_id), error=str(e))
            return
        self.sessions = [updated if s.id == session_id else s for s in self.sessions]

    async def drain(self) -> None:
        """Wait for best-effort background work."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        self._unsubscribe()
        await self.drain()

    # documents

    def open_document(self, message_id: UUID) -> None:
        message = self.timeline.get(message_id)
        if message is None or message.document is None:
            raise NotFoundError(f"No document for message {message_id}")
        if self._owner is not None and self.editor.mode is EditorMode.STREAMING:
            self._owner.mirroring = False
        self.editor.bind(message.document, message.id)
        self.editor_open = True

    def close_document(self) -> None:
        if self._owner is not None:
            self._owner.mirroring = False
        self.editor.unbind()
        self.editor_open = False

    def toggle_editor(self) -> EditorMode:
        return self.editor.toggle()

    def edit_document(
        self,
        title: Optional[str] = None,
        category: Optional[str] = None,
        body: Optional[str] = None,
        tags: Optional[List[str]] = None,
        add_tag: Optional[str] = None,
        remove_tag: Optional[str] = None,
    ) -> None:
        if title is not None:
            self.editor.set_title(title)
        if category is not None:
            self.editor.set_category(category)
        if body is not None:
            self.editor.set_body(body)
        if tags is not None:
            self.editor.set_tags(tags)
        if add_tag is not None:
            self.editor.add_tag(add_tag)
        if remove_tag is not None:
            self.editor.remove_tag(remove_tag)

    def discard_document(self) -> None:
        self.editor.discard()

    async def save_document(self) -> Message:
        """Persist the edited draft into its message, then commit it."""
        document = self.editor.prepare_save()
        message_id = self.editor.bound_message_id
        if message_id is None:
            raise NoDocumentBound()
        updated = await self.timeline.update_document(message_id, document)
        if self.editor.bound_message_id == message_id and self.editor.mode is EditorMode.EDITING:
            self.editor.commit_save(document)
        logger.info("document_saved", message_id=str(message_id))
        return updated

    def snapshot(self) -> dict:
        return {
            "user_id": self.user_id,
            "active_session_id": str(self.active_session_id) if self.active_session_id else None,
            "model": self.model.id,
            "generating": self.generating,
            "loading": self.timeline.loading,
            "has_more": self.timeline.has_more,
            "attachment": self.attachment.model_dump(mode="json") if self.attachment else None,
            "editor_open": self.editor_open,
            "editor": self.editor.snapshot(),
            "last_error": self.last_error,
            "live": self.last_value.model_dump(mode="json") if self.last_value else None,
        }
