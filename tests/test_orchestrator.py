"""Test suite for the chat session orchestrator."""

import asyncio
from uuid import uuid4

import pytest

from canvas_chat.core.classifier import ResponseKind
from canvas_chat.core.editor import DocumentDraft, EditorMode
from canvas_chat.core.orchestrator import ChatSessionOrchestrator, SubmitStatus
from canvas_chat.domain.errors import (
    AttachmentInFlight,
    DecodeError,
    EditWhileStreaming,
    EmptyInput,
    NoActiveSession,
    NoDocumentBound,
    NotFoundError,
    PolicyRejection,
    RequestValidationError,
    SubmissionInFlight,
    TransportError,
    UploadRejected,
)
from canvas_chat.domain.models import PLACEHOLDER_SESSION_TITLE, Role

from conftest import DOCUMENT_CHUNKS, USER_ID, Gate, general_chunks

LAKES_CHUNKS = [
    '{"title": "Lakes", ',
    '"document": "<p>Lakes are',
    ' still.</p>", "general": "An article about lakes."}',
]


async def stored_messages(repository, session_id):
    return list(reversed(await repository.list_messages(session_id, limit=100)))


@pytest.mark.asyncio
async def test_document_generation(workspace, provider, repository):
    """Test that a document request ends with one reply and an open document."""
    session = await workspace.new_session()
    provider.add(DOCUMENT_CHUNKS)

    result = await workspace.submit("Write a short article about rivers")

    assert result.status is SubmitStatus.COMPLETED
    assert result.kind is ResponseKind.DOCUMENT
    assert result.partial_count > 1
    messages = await stored_messages(repository, session.id)
    assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT]
    assistant = messages[1]
    assert assistant.content == "Here is a short article about rivers."
    assert assistant.document.title == "Rivers"
    assert assistant.document.body == "<h1>Rivers</h1><p>Rivers carry water to the sea.</p>"
    assert assistant.document.extra.tags == ["nature", "water"]

    assert workspace.editor.mode is EditorMode.READING
    assert workspace.editor.bound_message_id == assistant.id
    assert workspace.editor.pristine == workspace.editor.draft
    assert workspace.editor.draft.title == "Rivers"
    assert workspace.editor_open
    assert not workspace.generating
    assert [m.id for m in workspace.timeline.messages] == [m.id for m in messages]


@pytest.mark.asyncio
async def test_document_after_summary_is_kept(workspace, provider, repository):
    """Test that a body streamed after the summary still becomes the document."""
    session = await workspace.new_session()
    gate = Gate()
    provider.add(
        [
            '{"general": "Here is your article.", ',
            '"document": "<h1>Rivers</h1><p>Rivers carry',
            gate,
            ' water.</p>", ',
            '"title": "Rivers"}',
        ]
    )

    task = asyncio.create_task(workspace.submit("Write a 3-paragraph article about rivers"))
    await gate.reached.wait()
    assert workspace.editor.mode is EditorMode.STREAMING
    assert workspace.editor_open
    gate.release.set()
    result = await task

    assert result.kind is ResponseKind.DOCUMENT
    assert result.assistant_message.content == "Here is your article."
    assert result.assistant_message.document.body == "<h1>Rivers</h1><p>Rivers carry water.</p>"
    stored = await stored_messages(repository, session.id)
    assert stored[-1].document.title == "Rivers"
    assert workspace.editor.mode is EditorMode.READING
    assert workspace.editor.bound_message_id == result.assistant_message.id


@pytest.mark.asyncio
async def test_general_reply_leaves_editor_alone(workspace, provider, repository):
    """Test that a conversational reply never touches the editor."""
    session = await workspace.new_session()
    provider.add(general_chunks("4"))

    result = await workspace.submit("What's 2+2?")

    assert result.kind is ResponseKind.GENERAL
    assert result.assistant_message.content == "4"
    assert result.assistant_message.document is None
    assert workspace.editor.mode is EditorMode.READING
    assert workspace.editor.draft == DocumentDraft()
    assert not workspace.editor_open
    assert len(await stored_messages(repository, session.id)) == 2


@pytest.mark.asyncio
async def test_editor_streams_document_while_generating(workspace, provider):
    """Test that document partials are mirrored into the editor."""
    await workspace.new_session()
    gate = Gate()
    provider.add(DOCUMENT_CHUNKS[:2] + [gate] + DOCUMENT_CHUNKS[2:])

    task = asyncio.create_task(workspace.submit("Write about rivers"))
    await gate.reached.wait()
    assert workspace.editor.mode is EditorMode.STREAMING
    assert workspace.editor.draft.body.startswith("<h1>Rivers</h1>")
    assert workspace.editor_open
    with pytest.raises(EditWhileStreaming):
        workspace.toggle_editor()

    gate.release.set()
    result = await task
    assert result.status is SubmitStatus.COMPLETED
    assert workspace.editor.mode is EditorMode.READING


@pytest.mark.asyncio
async def test_session_switch_discards_generation(workspace, provider, repository):
    """Test that a stream finishing after a session switch writes nothing."""
    first = await workspace.new_session()
    gate = Gate()
    provider.add(DOCUMENT_CHUNKS[:2] + [gate] + DOCUMENT_CHUNKS[2:])

    task = asyncio.create_task(workspace.submit("Write about rivers"))
    await gate.reached.wait()
    assert workspace.editor.mode is EditorMode.STREAMING

    second = await workspace.new_session()
    assert workspace.editor.mode is EditorMode.READING
    assert workspace.editor.draft == DocumentDraft()
    assert not workspace.editor_open
    assert not workspace.generating

    gate.release.set()
    result = await task
    await workspace.drain()

    assert result.status is SubmitStatus.DISCARDED
    assert workspace.active_session_id == second.id
    assert workspace.timeline.messages == []
    assert workspace.editor.draft == DocumentDraft()
    assert [m.role for m in await stored_messages(repository, first.id)] == [Role.USER]
    assert await stored_messages(repository, second.id) == []


@pytest.mark.asyncio
async def test_duplicate_reply_is_suppressed(workspace, provider, repository):
    """Test that an identical consecutive reply is not persisted twice."""
    session = await workspace.new_session()
    provider.add(general_chunks("4")).add(general_chunks("4"))

    await workspace.submit("What's 2+2?")
    result = await workspace.submit("And again?")

    assert result.status is SubmitStatus.DUPLICATE
    assert result.assistant_message is None
    roles = [m.role for m in await stored_messages(repository, session.id)]
    assert roles == [Role.USER, Role.ASSISTANT, Role.USER]


@pytest.mark.asyncio
async def test_context_includes_history(workspace, provider):
    """Test that each generation sees the loaded conversation."""
    await workspace.new_session()
    provider.add(general_chunks("4")).add(general_chunks("6"))

    await workspace.submit("What's 2+2?")
    await workspace.submit("And 3+3?")

    assert [m.content for m in provider.calls[1]] == ["What's 2+2?", "4", "And 3+3?"]


@pytest.mark.asyncio
async def test_transport_failure_keeps_partial_document(workspace, provider, repository):
    """Test that an interrupted stream persists no reply and stops streaming."""
    session = await workspace.new_session()
    provider.add(DOCUMENT_CHUNKS[:2] + [ConnectionError("network down")])

    with pytest.raises(TransportError):
        await workspace.submit("Write about rivers")

    assert workspace.editor.mode is EditorMode.READING
    assert workspace.editor.draft.body == "<h1>Rivers</h1><p>Rivers carry"
    assert "network down" in workspace.last_error
    assert not workspace.generating
    assert [m.role for m in await stored_messages(repository, session.id)] == [Role.USER]


@pytest.mark.asyncio
async def test_malformed_output_is_decode_error(workspace, provider, repository):
    """Test that output without reply or document is rejected."""
    session = await workspace.new_session()
    provider.add(['{"title": "", "document": "", "general": ""}'])

    with pytest.raises(DecodeError):
        await workspace.submit("Hello")

    assert workspace.last_error
    assert len(await stored_messages(repository, session.id)) == 1


@pytest.mark.asyncio
async def test_second_submission_is_rejected(workspace, provider):
    """Test that only one generation runs at a time."""
    await workspace.new_session()
    gate = Gate()
    provider.add(general_chunks("4")[:1] + [gate] + general_chunks("4")[1:])

    task = asyncio.create_task(workspace.submit("What's 2+2?"))
    await gate.reached.wait()
    with pytest.raises(SubmissionInFlight):
        await workspace.submit("Another question")

    gate.release.set()
    result = await task
    assert result.status is SubmitStatus.COMPLETED
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_submit_rejections(workspace):
    """Test refusals before any message is written."""
    with pytest.raises(NoActiveSession):
        await workspace.submit("Hello")
    await workspace.new_session()
    with pytest.raises(EmptyInput):
        await workspace.submit("   ")
    assert workspace.timeline.messages == []


@pytest.mark.asyncio
async def test_first_message_generates_title(workspace, provider, repository):
    """Test that the first message renames the placeholder session."""
    session = await workspace.new_session()
    assert session.title == PLACEHOLDER_SESSION_TITLE
    provider.add(general_chunks("Hi there")).add(general_chunks("Still here"))

    await workspace.submit("Tell me about the rivers of the world")
    await workspace.submit("Anything else?")
    await workspace.drain()

    stored = await repository.get_session(session.id)
    assert stored.title == "Rivers of the World"
    assert workspace.sessions[0].title == "Rivers of the World"
    assert provider.title_calls == ["Tell me about the rivers of the world"]


@pytest.mark.asyncio
async def test_title_failure_keeps_placeholder(workspace, provider, repository):
    """Test that a failed title generation does not affect the reply."""
    session = await workspace.new_session()
    provider.title_error = RuntimeError("quota exceeded")
    provider.add(general_chunks("Hello"))

    result = await workspace.submit("Hi")
    await workspace.drain()

    assert result.status is SubmitStatus.COMPLETED
    stored = await repository.get_session(session.id)
    assert stored.title == PLACEHOLDER_SESSION_TITLE


@pytest.mark.asyncio
async def test_oversized_upload_is_rejected(workspace, storage):
    """Test that an oversized file never reaches storage."""
    await workspace.new_session()
    with pytest.raises(UploadRejected) as info:
        await workspace.attach_file("notes.txt", "text/plain", b"x" * (6 * 1024 * 1024))
    assert info.value.reason == "size"
    assert storage.objects == {}
    assert workspace.attachment is None


@pytest.mark.asyncio
async def test_single_attachment(workspace, storage):
    """Test that a second attachment is refused until the first is removed."""
    await workspace.new_session()
    first = await workspace.attach_file("notes.txt", "text/plain", b"hello")
    assert first.storage_path.startswith(f"{USER_ID}/text/")
    assert first.storage_path.endswith(".txt")

    with pytest.raises(AttachmentInFlight) as info:
        await workspace.attach_file("more.md", "text/markdown", b"# hi")
    assert str(info.value) == "Only one file allowed. Remove the file to upload new file"
    assert len(storage.objects) == 1

    assert await workspace.remove_file()
    assert storage.objects == {}
    assert workspace.attachment is None
    await workspace.attach_file("more.md", "text/markdown", b"# hi")


@pytest.mark.asyncio
async def test_attachment_sent_with_message(workspace, provider):
    """Test that the pending attachment goes out with the next message."""
    await workspace.new_session()
    attachment = await workspace.attach_file("photo.png", "image/png", b"\x89PNG")
    provider.add(general_chunks("Nice picture"))

    result = await workspace.submit("What is in this picture?")

    assert result.user_message.file_data.file_url == attachment.file_url
    assert provider.calls[0][-1].file.storage_path == attachment.storage_path
    assert workspace.attachment is None


@pytest.mark.asyncio
async def test_save_document_persists_edits(workspace, provider, repository):
    """Test the edit and save flow of a generated document."""
    await workspace.new_session()
    provider.add(DOCUMENT_CHUNKS)
    result = await workspace.submit("Write about rivers")
    message_id = result.assistant_message.id

    assert workspace.toggle_editor() is EditorMode.EDITING
    workspace.edit_document(title="Great Rivers", add_tag="rivers")
    assert workspace.editor.dirty

    updated = await workspace.save_document()

    assert updated.document.title == "Great Rivers"
    stored = await repository.get_message(message_id)
    assert stored.document.title == "Great Rivers"
    assert stored.document.extra.tags == ["nature", "water", "rivers"]
    assert stored.document.extra.estimated_read_time == "1 minute"
    assert workspace.timeline.get(message_id).document.title == "Great Rivers"
    assert workspace.editor.mode is EditorMode.READING
    assert not workspace.editor.dirty


@pytest.mark.asyncio
async def test_save_without_document(workspace):
    """Test that a draft with no backing message cannot be saved."""
    await workspace.new_session()
    workspace.toggle_editor()
    workspace.edit_document(title="Loose draft")
    with pytest.raises(NoDocumentBound):
        await workspace.save_document()
    assert workspace.editor.mode is EditorMode.EDITING


@pytest.mark.asyncio
async def test_opening_document_mid_stream_stops_mirroring(workspace, provider):
    """Test that a user-opened document is not replaced by the running stream."""
    await workspace.new_session()
    provider.add(DOCUMENT_CHUNKS)
    rivers = (await workspace.submit("Write about rivers")).assistant_message

    gate = Gate()
    provider.add(LAKES_CHUNKS[:2] + [gate] + LAKES_CHUNKS[2:])
    task = asyncio.create_task(workspace.submit("Write about lakes"))
    await gate.reached.wait()
    assert workspace.editor.mode is EditorMode.STREAMING

    workspace.open_document(rivers.id)
    gate.release.set()
    result = await task

    assert result.status is SubmitStatus.COMPLETED
    assert result.assistant_message.document.title == "Lakes"
    assert workspace.editor.bound_message_id == rivers.id
    assert workspace.editor.draft.title == "Rivers"


@pytest.mark.asyncio
async def test_open_unknown_document(workspace):
    """Test opening a message that carries no document."""
    await workspace.new_session()
    with pytest.raises(NotFoundError):
        workspace.open_document(uuid4())


@pytest.mark.asyncio
async def test_select_and_delete_sessions(workspace, repository):
    """Test switching between sessions and deleting the active one."""
    first = await workspace.new_session()
    second = await workspace.new_session()
    assert workspace.active_session_id == second.id

    await workspace.select_session(first.id)
    assert workspace.active_session_id == first.id

    await workspace.delete_session(first.id)
    assert workspace.active_session_id == second.id
    assert [s.id for s in workspace.sessions] == [second.id]
    assert await repository.get_session(first.id) is None


@pytest.mark.asyncio
async def test_foreign_session_is_not_found(workspace, repository):
    """Test that another user's session cannot be selected."""
    other = await repository.create_session("someone-else")
    with pytest.raises(NotFoundError):
        await workspace.select_session(other.id)


@pytest.mark.asyncio
async def test_refresh_sessions(workspace, repository):
    """Test listing only the current user's sessions."""
    await repository.create_session(USER_ID)
    await repository.create_session("someone-else")
    sessions = await workspace.refresh_sessions()
    assert [s.user_id for s in sessions] == [USER_ID]


def test_select_model(workspace):
    """Test choosing a model from the catalogue."""
    assert workspace.select_model("gemini-1.5-pro").id == "gemini-1.5-pro"
    assert workspace.model.id == "gemini-1.5-pro"
    with pytest.raises(RequestValidationError) as info:
        workspace.select_model("gpt-4")
    assert info.value.field == "model"


@pytest.mark.asyncio
async def test_sign_out_resets_workspace(workspace, identity, provider):
    """Test that an identity change clears every piece of session state."""
    await workspace.new_session()
    provider.add(DOCUMENT_CHUNKS)
    await workspace.submit("Write about rivers")
    await workspace.drain()

    identity.set(None)

    assert workspace.active_session_id is None
    assert workspace.sessions == []
    assert workspace.timeline.messages == []
    assert workspace.editor.draft == DocumentDraft()
    assert not workspace.editor_open
    with pytest.raises(PolicyRejection):
        await workspace.new_session()


@pytest.mark.asyncio
async def test_close_unsubscribes(repository, registry, identity):
    """Test that closing a workspace releases its identity subscription."""
    workspace = ChatSessionOrchestrator(repository, registry, identity)
    assert identity.subscriber_count == 1
    await workspace.close()
    assert identity.subscriber_count == 0
