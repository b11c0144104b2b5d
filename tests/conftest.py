"""Shared fakes and fixtures for the canvas chat tests."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from canvas_chat.core.identity import IdentityCell
from canvas_chat.core.orchestrator import ChatSessionOrchestrator
from canvas_chat.domain.models import DEFAULT_MODEL, ContextMessage
from canvas_chat.repositories.memory import InMemoryRepository
from canvas_chat.services.llm import GenerationProvider, ProviderRegistry, TitleService
from canvas_chat.services.storage import InMemoryFileStorage, UploadService

USER_ID = "user-1"

DOCUMENT_CHUNKS = [
    '{"title": "Rivers", ',
    '"document": "<h1>Rivers</h1><p>Rivers carry',
    " water to the sea.</p>\", ",
    '"general": "Here is a short article about rivers.", ',
    '"extra": {"wordCount": 8, "estimatedReadTime": "1 minute", ',
    '"tags": ["nature", "water"], "category": "Geography"}}',
]


def general_chunks(text: str) -> List[str]:
    return ['{"title": "", "document": "", ', '"general": ' + json.dumps(text) + "}"]


def chunked(value: Dict[str, Any], size: int = 7) -> List[str]:
    text = json.dumps(value)
    return [text[i : i + size] for i in range(0, len(text), size)]


class Gate:
    """Pauses a scripted stream until released."""

    def __init__(self) -> None:
        self.reached = asyncio.Event()
        self.release = asyncio.Event()


class ScriptedProvider(GenerationProvider):
    """Provider that replays scripted chunk sequences, one per call."""

    def __init__(self, title: str = "Rivers of the World") -> None:
        self.scripts: List[List[Any]] = []
        self.calls: List[List[ContextMessage]] = []
        self.title = title
        self.title_error: Optional[Exception] = None
        self.title_calls: List[str] = []

    def add(self, chunks: List[Any]) -> "ScriptedProvider":
        self.scripts.append(list(chunks))
        return self

    async def stream_structured(self, messages, model):
        self.calls.append(list(messages))
        script = self.scripts.pop(0)
        for item in script:
            if isinstance(item, Gate):
                item.reached.set()
                await item.release.wait()
                continue
            if isinstance(item, Exception):
                raise item
            await asyncio.sleep(0)
            yield item

    async def generate_text(self, prompt, system, model, max_output_tokens=20):
        self.title_calls.append(prompt)
        if self.title_error is not None:
            raise self.title_error
        return self.title


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def registry(provider) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register("google", lambda: provider)
    return registry


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def storage() -> InMemoryFileStorage:
    return InMemoryFileStorage("http://files.test")


@pytest.fixture
def identity() -> IdentityCell:
    return IdentityCell(USER_ID)


@pytest.fixture
def workspace(repository, registry, identity, storage) -> ChatSessionOrchestrator:
    return ChatSessionOrchestrator(
        repository,
        registry,
        identity,
        uploads=UploadService(storage),
        title_service=TitleService(registry, DEFAULT_MODEL),
        page_size=20,
    )
