"""Model providers for structured chat generation and title generation."""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import google.generativeai as genai
import structlog

from ..config import Settings
from ..domain.errors import RequestValidationError
from ..domain.models import ContextMessage, ModelOption, Role, UploadedFile
from .storage import FileStorage

logger = structlog.get_logger()

SYSTEM_PROMPT = """You are an AI assistant that can generate both conversational responses and structured documents.

DOCUMENT GENERATION RULES:
- Generate a full document response (with title, document, general, and extra fields) ONLY when the user explicitly requests:
  * Written content creation (articles, essays, reports, guides, tutorials)
  * Document drafting (letters, proposals, documentation)
  * Structured content (lists, outlines, formatted text)
  * Creative writing (stories, poems, scripts)

GENERAL RESPONSE RULES:
- For all other interactions, provide ONLY a general response:
  * Questions and answers
  * Explanations and clarifications
  * Conversations and discussions
  * Technical help and troubleshooting
  * Code reviews and suggestions
  * General chat and casual interactions

When providing a general response:
- Set document field to an empty string ""
- Set title field to an empty string ""
- Focus your content in the general field with markdown formatting
- Leave extra field empty or undefined

When generating documents:
- Provide meaningful title
- Create rich HTML content for the document field using semantic tags (h1, h2, h3, p, strong, em, u, s, blockquote, code, ul, ol)
- Include a brief summary in the general field
- Add relevant metadata in the extra field (word count, read time, tags, category)"""

TITLE_PROMPT = (
    "Generate a short, descriptive title (max 50 characters) for a chat session based on "
    "the user's first message. Return only the title, no quotes or extra text. "
    "Make it concise and meaningful."
)

TITLE_MAX_LENGTH = 50

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "title": {"type": "STRING", "description": "The title of the document"},
        "document": {
            "type": "STRING",
            "description": "The main content for the canvas editor, semantic HTML tags only",
        },
        "general": {
            "type": "STRING",
            "description": "Brief summary for chat bubble display with markdown response",
        },
        "extra": {
            "type": "OBJECT",
            "properties": {
                "wordCount": {"type": "INTEGER"},
                "estimatedReadTime": {"type": "STRING"},
                "tags": {"type": "ARRAY", "items": {"type": "STRING"}},
                "category": {"type": "STRING"},
            },
        },
    },
    "required": ["title", "document", "general"],
}

IMAGE_PREFIX = "image/"
FILE_REFERENCE_TYPES = {
    "application/pdf",
    "text/plain",
    "text/markdown",
    "text/x-markdown",
    "application/json",
    "text/csv",
}


def attachment_part(file: UploadedFile) -> Dict[str, Any]:
    """Content part referencing an attachment, or a textual stand-in."""
    if file.content_type.startswith(IMAGE_PREFIX):
        return {
            "type": "image",
            "url": file.file_url,
            "path": file.storage_path,
            "mime_type": file.content_type,
        }
    if file.content_type in FILE_REFERENCE_TYPES:
        return {
            "type": "file",
            "url": file.file_url,
            "path": file.storage_path,
            "mime_type": file.content_type,
        }
    return {
        "type": "text",
        "text": f"[Attached file: {file.original_name} ({file.content_type}, {file.size} bytes)]",
    }


def build_content_parts(message: ContextMessage) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    if message.content:
        parts.append({"type": "text", "text": message.content})
    if message.file is not None:
        parts.append(attachment_part(message.file))
    if not parts:
        parts.append({"type": "text", "text": ""})
    return parts


class GenerationProvider(ABC):
    """Abstract base class for model providers."""

    @abstractmethod
    def stream_structured(
        self, messages: List[ContextMessage], model: str
    ) -> AsyncIterator[str]:
        """Stream the JSON text of one structured response as raw chunks."""
        pass

    @abstractmethod
    async def generate_text(
        self, prompt: str, system: str, model: str, max_output_tokens: int = 20
    ) -> str:
        """Generate a short plain-text completion."""
        pass


class GeminiProvider(GenerationProvider):
    """Provider backed by Google's Gemini models."""

    def __init__(self, api_key: Optional[str], storage: Optional[FileStorage] = None):
        if not api_key:
            raise RuntimeError("GEMINI_API_KEY is not set")
        genai.configure(api_key=api_key)
        self.storage = storage
        logger.info("gemini_provider_init", attachments=storage is not None)

    async def _to_gemini(self, message: ContextMessage) -> Dict[str, Any]:
        """Convert a context message; attachments are sent inline as bytes."""
        parts: List[Any] = []
        for part in build_content_parts(message):
            if part["type"] == "text":
                parts.append({"text": part["text"]})
            elif self.storage is None:
                logger.warning("attachment_skipped", path=part["path"])
                parts.append({"text": f"[Attached file: {part['url']}]"})
            else:
                data = await self.storage.read(part["path"])
                parts.append({"inline_data": {"mime_type": part["mime_type"], "data": data}})
        role = "model" if message.role is Role.ASSISTANT else "user"
        return {"role": role, "parts": parts}

    async def stream_structured(
        self, messages: List[ContextMessage], model: str
    ) -> AsyncIterator[str]:
        client = genai.GenerativeModel(model, system_instruction=SYSTEM_PROMPT)
        response = await client.generate_content_async(
            [await self._to_gemini(m) for m in messages],
            generation_config=genai.GenerationConfig(
                response_mime_type="application/json",
                response_schema=RESPONSE_SCHEMA,
            ),
            stream=True,
        )
        async for chunk in response:
            yield chunk.text

    async def generate_text(
        self, prompt: str, system: str, model: str, max_output_tokens: int = 20
    ) -> str:
        client = genai.GenerativeModel(model, system_instruction=system)
        response = await client.generate_content_async(
            prompt,
            generation_config=genai.GenerationConfig(max_output_tokens=max_output_tokens),
        )
        return response.text


ProviderFactory = Callable[[], GenerationProvider]


class ProviderRegistry:
    """Maps a provider key to a lazily created provider."""

    def __init__(self) -> None:
        self._factories: Dict[str, ProviderFactory] = {}
        self._instances: Dict[str, GenerationProvider] = {}

    def register(self, key: str, factory: ProviderFactory) -> None:
        self._factories[key] = factory
        self._instances.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._factories)

    def get(self, key: str) -> GenerationProvider:
        if key not in self._factories:
            raise RequestValidationError(f"Unknown model provider '{key}'", field="model")
        if key not in self._instances:
            self._instances[key] = self._factories[key]()
        return self._instances[key]

    def for_model(self, model: ModelOption) -> GenerationProvider:
        return self.get(model.provider)


def default_registry(settings: Settings, storage: Optional[FileStorage] = None) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(
        "google", lambda: GeminiProvider(api_key=settings.gemini_api_key, storage=storage)
    )
    return registry


class TitleService:
    """Best-effort session title generation."""

    def __init__(self, registry: ProviderRegistry, model: ModelOption):
        self.registry = registry
        self.model = model

    async def generate(self, first_message: str) -> Optional[str]:
        """Return a short title, or None when generation fails."""
        if not first_message or not first_message.strip():
            return None
        try:
            provider = self.registry.for_model(self.model)
            text = await provider.generate_text(first_message, TITLE_PROMPT, self.model.id)
        except Exception as e:
            logger.warning("title_generation_failed", error=str(e))
            return None
        title = (text or "").strip().strip("\"'").strip()
        if not title:
            return None
        return title[:TITLE_MAX_LENGTH].rstrip()
