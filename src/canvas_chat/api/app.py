"""
FastAPI Application Module

HTTP surface of the canvas chat service: a streaming structured-output
endpoint, title generation, session history, and per-user workspaces that
drive the chat orchestrator (submit, pagination, attachments and the canvas
document editor).

Key Features:
- NDJSON streaming of partial structured values
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support
"""

import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..config import Settings
from ..core.decoder import StructuredStreamDecoder
from ..core.orchestrator import ChatSessionOrchestrator, SubmitStatus
from ..domain.errors import (
    ChatError,
    GenerationError,
    NotFoundError,
    PersistenceError,
    PolicyRejection,
    RequestValidationError,
    UploadRejected,
)
from ..domain.models import (
    DEFAULT_MODEL,
    MODEL_OPTIONS,
    ChatSession,
    ContextMessage,
    Message,
    Role,
    UploadedFile,
    find_model,
)
from ..repositories.memory import InMemoryRepository
from ..services.llm import ProviderRegistry, TitleService, default_registry
from ..services.storage import InMemoryFileStorage, UploadService
from .workspaces import WorkspaceManager

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total errors", ["kind"], registry=CUSTOM_REGISTRY)
GENERATIONS = Counter(
    "generations_total", "Generations by outcome", ["outcome"], registry=CUSTOM_REGISTRY
)

logger = get_logger()

DEFAULT_SESSION_TITLE = "New Chat Session"
FALLBACK_SESSION_TITLE = "Chat Session"


class SubmitRequest(BaseModel):
    content: str
    model: Optional[str] = None


class SelectSessionRequest(BaseModel):
    session_id: UUID


class SessionCreate(BaseModel):
    title: Optional[str] = None


class TitleUpdate(BaseModel):
    title: str


class EditorUpdate(BaseModel):
    title: Optional[str] = None
    category: Optional[str] = None
    body: Optional[str] = None
    tags: Optional[List[str]] = None
    add_tag: Optional[str] = None
    remove_tag: Optional[str] = None


# Core service instances
settings = Settings.from_env()
repository = InMemoryRepository()
file_storage = InMemoryFileStorage(settings.public_url)
provider_registry = default_registry(settings, file_storage)
upload_service = UploadService(file_storage)
title_service = TitleService(provider_registry, find_model(settings.title_model) or DEFAULT_MODEL)
workspaces = WorkspaceManager(
    repository,
    provider_registry,
    upload_service,
    title_service,
    page_size=settings.page_size,
    model=find_model(settings.default_model) or DEFAULT_MODEL,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles app startup/shutdown and resource management"""
    logger.info("application_startup_complete")

    yield

    await workspaces.close_all()
    logger.info("application_shutdown_complete")


def get_repository() -> InMemoryRepository:
    """Returns the session and message store"""
    return repository


def get_provider_registry() -> ProviderRegistry:
    """Returns the model provider registry"""
    return provider_registry


def get_title_service() -> TitleService:
    """Returns the session title generator"""
    return title_service


def get_workspaces() -> WorkspaceManager:
    """Returns the per-user workspace manager"""
    return workspaces


def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Identity supplied by the authenticating proxy"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not signed in")
    return x_user_id


async def get_workspace(
    user_id: str = Depends(get_current_user),
    manager: WorkspaceManager = Depends(get_workspaces),
) -> ChatSessionOrchestrator:
    return await manager.get(user_id)


app = FastAPI(
    title="Canvas Chat API",
    description="Chat with a language model and edit the canvas documents it writes",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Tracks requests"""
    REQUESTS.inc()
    logger.info("request_started", path=request.url.path, method=request.method)
    try:
        return await call_next(request)
    except Exception as e:
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise


def error_status(error: ChatError) -> int:
    if isinstance(error, RequestValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, PolicyRejection):
        return 409
    if isinstance(error, UploadRejected):
        return 413 if error.reason == "size" else 415
    if isinstance(error, GenerationError):
        return 502
    return 500


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, error: ChatError) -> JSONResponse:
    status = error_status(error)
    kind = type(error).__name__
    ERRORS.labels(kind=kind).inc()
    content: Dict[str, Any] = {"error": str(error), "type": kind}
    if isinstance(error, RequestValidationError):
        content["field"] = error.field
    if status >= 500:
        logger.error("request_error", path=request.url.path, error=str(error), error_type=kind)
    else:
        logger.info("request_rejected", path=request.url.path, error=str(error), error_type=kind)
    return JSONResponse(status_code=status, content=content)


def _context_from_payload(payload: Any) -> ContextMessage:
    if not isinstance(payload, dict):
        raise RequestValidationError("Each message must be an object", field="messages")
    role = payload.get("role")
    if role not in (Role.USER.value, Role.ASSISTANT.value):
        raise RequestValidationError("Message role must be 'user' or 'assistant'", field="messages")
    content = payload.get("content") or ""
    parts = payload.get("parts")
    if isinstance(parts, list):
        text = next((p.get("text") for p in parts if isinstance(p, dict) and p.get("type") == "text"), None)
        content = text or ""
    file = payload.get("file")
    return ContextMessage(
        role=Role(role),
        content=content,
        file=UploadedFile.model_validate(file) if isinstance(file, dict) else None,
    )


def _model_from_payload(value: Any):
    model_id = value.get("id") if isinstance(value, dict) else value
    if not model_id:
        raise RequestValidationError("A model must be selected", field="model")
    model = find_model(model_id)
    if model is None:
        raise RequestValidationError(f"Unknown model '{model_id}'", field="model")
    return model


@app.post("/api/chat")
async def chat(request: Request, registry: ProviderRegistry = Depends(get_provider_registry)):
    """Streams partial structured values as NDJSON"""
    try:
        body = await request.json()
    except ValueError:
        raise RequestValidationError("Request body must be JSON", field="body")
    if not isinstance(body, dict):
        raise RequestValidationError("Request body must be an object", field="body")
    messages = body.get("messages")
    if not isinstance(messages, list):
        raise RequestValidationError("Messages must be provided as an array", field="messages")
    model = _model_from_payload(body.get("model"))
    context = [_context_from_payload(m) for m in messages]
    provider = registry.for_model(model)
    decoder = StructuredStreamDecoder(provider.stream_structured(context, model.id))

    async def stream():
        try:
            async for value in decoder:
                yield json.dumps(value.model_dump(mode="json", exclude_none=True)) + "\n"
            GENERATIONS.labels(outcome="completed").inc()
        except GenerationError as e:
            GENERATIONS.labels(outcome="failed").inc()
            ERRORS.labels(kind=type(e).__name__).inc()
            logger.error("chat_stream_error", model=model.id, error=str(e))
            yield json.dumps({"error": str(e), "type": type(e).__name__}) + "\n"

    GENERATIONS.labels(outcome="started").inc()
    return StreamingResponse(stream(), media_type="application/x-ndjson")


@app.post("/api/generate-title")
async def generate_title(request: Request, titles: TitleService = Depends(get_title_service)):
    """Title for a session from its first message; never fails"""
    try:
        body = await request.json()
    except ValueError:
        body = {}
    message = body.get("message") if isinstance(body, dict) else None
    if not message:
        return {"title": DEFAULT_SESSION_TITLE}
    title = await titles.generate(message)
    return {"title": title or FALLBACK_SESSION_TITLE}


@app.get("/models")
async def list_models() -> Dict[str, Any]:
    return {key: [m.model_dump() for m in options] for key, options in MODEL_OPTIONS.items()}


@app.get("/sessions", response_model=List[ChatSession])
async def list_sessions(
    user_id: str = Depends(get_current_user),
    repository: InMemoryRepository = Depends(get_repository),
) -> List[ChatSession]:
    """Lists the caller's sessions, most recently updated first"""
    return await repository.list_sessions(user_id)


async def _owned_session(repository: InMemoryRepository, session_id: UUID, user_id: str) -> ChatSession:
    session = await repository.get_session(session_id)
    if session is None or session.user_id != user_id:
        raise NotFoundError("Session not found")
    return session


@app.post("/sessions", response_model=ChatSession)
async def create_session(
    request: Optional[SessionCreate] = None,
    user_id: str = Depends(get_current_user),
    repository: InMemoryRepository = Depends(get_repository),
) -> ChatSession:
    """Creates a session with the placeholder title unless one is given"""
    title = request.title if request else None
    return await repository.create_session(user_id, title)


@app.delete("/sessions/{session_id}")
async def delete_session(
    session_id: UUID,
    user_id: str = Depends(get_current_user),
    repository: InMemoryRepository = Depends(get_repository),
):
    """Deletes a session and its messages"""
    await _owned_session(repository, session_id, user_id)
    try:
        await repository.delete_session(session_id)
    except NotFoundError:
        raise
    except Exception as e:
        logger.error("session_delete_failed", session_id=str(session_id), error=str(e))
        raise PersistenceError("Session deletion failed") from e
    return {"deleted": str(session_id)}


@app.patch("/sessions/{session_id}", response_model=ChatSession)
async def rename_session(
    session_id: UUID,
    update: TitleUpdate,
    user_id: str = Depends(get_current_user),
    repository: InMemoryRepository = Depends(get_repository),
) -> ChatSession:
    await _owned_session(repository, session_id, user_id)
    return await repository.update_session_title(session_id, update.title)


@app.get("/sessions/{session_id}/messages", response_model=List[Message])
async def get_messages(
    session_id: UUID,
    limit: int = 20,
    offset: int = 0,
    user_id: str = Depends(get_current_user),
    repository: InMemoryRepository = Depends(get_repository),
) -> List[Message]:
    """Gets a page of message history, newest first"""
    await _owned_session(repository, session_id, user_id)
    return await repository.list_messages(session_id, limit=limit, offset=offset)


def _workspace_view(workspace: ChatSessionOrchestrator) -> Dict[str, Any]:
    view = workspace.snapshot()
    view["sessions"] = [s.model_dump(mode="json") for s in workspace.sessions]
    view["messages"] = [m.model_dump(mode="json") for m in workspace.timeline.messages]
    return view


@app.get("/workspace")
async def get_workspace_state(workspace: ChatSessionOrchestrator = Depends(get_workspace)):
    await workspace.refresh_sessions()
    return _workspace_view(workspace)


@app.post("/workspace/sessions")
async def create_workspace_session(workspace: ChatSessionOrchestrator = Depends(get_workspace)):
    session = await workspace.new_session()
    logger.info("session_created", session_id=str(session.id))
    return _workspace_view(workspace)


@app.post("/workspace/select")
async def select_workspace_session(
    request: SelectSessionRequest,
    workspace: ChatSessionOrchestrator = Depends(get_workspace),
):
    await workspace.select_session(request.session_id)
    return _workspace_view(workspace)


@app.delete("/workspace/sessions/{session_id}")
async def delete_workspace_session(
    session_id: UUID,
    workspace: ChatSessionOrchestrator = Depends(get_workspace),
):
    await workspace.refresh_sessions()
    await workspace.delete_session(session_id)
    return _workspace_view(workspace)


@app.post("/workspace/older")
async def load_older_messages(workspace: ChatSessionOrchestrator = Depends(get_workspace)):
    older = await workspace.load_older()
    return {
        "loaded": [m.model_dump(mode="json") for m in older],
        "has_more": workspace.timeline.has_more,
    }


@app.post("/workspace/submit")
async def submit_message(
    request: SubmitRequest,
    workspace: ChatSessionOrchestrator = Depends(get_workspace),
):
    """Persists the user message, generates the reply and persists it once"""
    if request.model:
        workspace.select_model(request.model)
    GENERATIONS.labels(outcome="started").inc()
    try:
        result = await workspace.submit(request.content)
    except GenerationError:
        GENERATIONS.labels(outcome="failed").inc()
        raise
    GENERATIONS.labels(outcome=result.status.value).inc()
    return {
        "status": result.status.value,
        "kind": result.kind.value,
        "user_message": result.user_message.model_dump(mode="json"),
        "assistant_message": (
            result.assistant_message.model_dump(mode="json")
            if result.status is SubmitStatus.COMPLETED and result.assistant_message
            else None
        ),
        "workspace": _workspace_view(workspace),
    }


@app.post("/workspace/files", response_model=UploadedFile)
async def upload_file(
    request: Request,
    x_file_name: str = Header(default="upload"),
    workspace: ChatSessionOrchestrator = Depends(get_workspace),
) -> UploadedFile:
    """Uploads the raw request body as the pending attachment"""
    content_type = request.headers.get("content-type", "application/octet-stream")
    content_type = content_type.split(";", 1)[0].strip()
    data = await request.body()
    return await workspace.attach_file(x_file_name, content_type, data)


@app.delete("/workspace/files")
async def remove_file(workspace: ChatSessionOrchestrator = Depends(get_workspace)):
    removed = await workspace.remove_file()
    return {"removed": removed}


@app.post("/workspace/documents/{message_id}")
async def open_document(
    message_id: UUID,
    workspace: ChatSessionOrchestrator = Depends(get_workspace),
):
    workspace.open_document(message_id)
    return workspace.snapshot()


@app.delete("/workspace/documents")
async def close_document(workspace: ChatSessionOrchestrator = Depends(get_workspace)):
    workspace.close_document()
    return workspace.snapshot()


@app.patch("/workspace/editor")
async def edit_document(
    update: EditorUpdate,
    workspace: ChatSessionOrchestrator = Depends(get_workspace),
):
    workspace.edit_document(**update.model_dump(exclude_none=True))
    return workspace.editor.snapshot()


@app.post("/workspace/editor/toggle")
async def toggle_editor(workspace: ChatSessionOrchestrator = Depends(get_workspace)):
    workspace.toggle_editor()
    return workspace.editor.snapshot()


@app.post("/workspace/editor/discard")
async def discard_document(workspace: ChatSessionOrchestrator = Depends(get_workspace)):
    workspace.discard_document()
    return workspace.editor.snapshot()


@app.post("/workspace/editor/save")
async def save_document(workspace: ChatSessionOrchestrator = Depends(get_workspace)):
    try:
        message = await workspace.save_document()
    except PersistenceError as e:
        logger.error("document_save_failed", error=str(e))
        raise
    return {"message": message.model_dump(mode="json"), "editor": workspace.editor.snapshot()}


@app.post("/workspace/sign-out")
async def sign_out(
    user_id: str = Depends(get_current_user),
    manager: WorkspaceManager = Depends(get_workspaces),
):
    return {"signed_out": await manager.sign_out(user_id)}


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
