"""File upload validation and storage."""

import asyncio
import secrets
import string
import time
from abc import ABC, abstractmethod
from typing import Dict

import structlog

from ..domain.errors import NotFoundError, PersistenceError, UploadRejected
from ..domain.models import UploadedFile

logger = structlog.get_logger()

MAX_FILE_SIZE = 5 * 1024 * 1024
MAX_PDF_SIZE = 10 * 1024 * 1024

ALLOWED_TYPES = {
    "application/pdf",
    "text/plain",
    "text/markdown",
    "text/x-markdown",
}

DEFAULT_EXTENSIONS = {
    "application/pdf": "pdf",
    "text/plain": "txt",
    "text/markdown": "md",
    "text/x-markdown": "md",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
}

_ALPHABET = string.ascii_lowercase + string.digits


def file_kind(content_type: str) -> str:
    """Storage folder for a MIME type."""
    if content_type.startswith("image/"):
        return "image"
    if content_type == "application/pdf":
        return "pdf"
    if content_type in ("text/markdown", "text/x-markdown"):
        return "markdown"
    return "text"


def validate_upload(content_type: str, size: int) -> None:
    """Reject disallowed types and oversized files before any upload."""
    if not content_type.startswith("image/") and content_type not in ALLOWED_TYPES:
        raise UploadRejected(
            f'File type "{content_type}" is not allowed. '
            "Allowed types: PDF, Text, Markdown, and Images",
            reason="type",
        )
    if content_type == "application/pdf":
        if size > MAX_PDF_SIZE:
            raise UploadRejected("PDF files must be less than 10MB", reason="size")
    elif size > MAX_FILE_SIZE:
        raise UploadRejected("File size must be less than 5MB", reason="size")


def generate_storage_path(original_name: str, user_id: str, content_type: str) -> str:
    """``{user}/{kind}/{millis}-{random}.{ext}``"""
    _, dot, suffix = original_name.rpartition(".")
    extension = suffix if dot and suffix else DEFAULT_EXTENSIONS.get(content_type, "txt")
    random_part = "".join(secrets.choice(_ALPHABET) for _ in range(13))
    millis = int(time.time() * 1000)
    return f"{user_id}/{file_kind(content_type)}/{millis}-{random_part}.{extension}"


class FileStorage(ABC):
    """Abstract base class for object storage."""

    @abstractmethod
    async def upload(self, data: bytes, path: str, content_type: str) -> str:
        """Store bytes under ``path`` and return the public URL."""
        pass

    @abstractmethod
    async def remove(self, path: str) -> bool:
        """Delete an object; False when nothing was removed."""
        pass

    @abstractmethod
    async def read(self, path: str) -> bytes:
        """Return the stored bytes; raises NotFoundError when missing."""
        pass


class InMemoryFileStorage(FileStorage):
    """Object storage kept in process memory."""

    def __init__(self, public_url: str = "http://localhost:8000/files") -> None:
        self.public_url = public_url.rstrip("/")
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def upload(self, data: bytes, path: str, content_type: str) -> str:
        async with self._lock:
            self.objects[path] = data
            self.content_types[path] = content_type
        return f"{self.public_url}/{path}"

    async def remove(self, path: str) -> bool:
        async with self._lock:
            self.content_types.pop(path, None)
            return self.objects.pop(path, None) is not None

    async def read(self, path: str) -> bytes:
        async with self._lock:
            if path not in self.objects:
                raise NotFoundError(f"File {path} not found")
            return self.objects[path]


class UploadService:
    """Validates and stores user attachments."""

    def __init__(self, storage: FileStorage) -> None:
        self.storage = storage

    async def upload(
        self, user_id: str, original_name: str, content_type: str, data: bytes
    ) -> UploadedFile:
        validate_upload(content_type, len(data))
        path = generate_storage_path(original_name, user_id, content_type)
        try:
            url = await self.storage.upload(data, path, content_type)
        except Exception as e:
            logger.error("file_upload_failed", path=path, error=str(e))
            raise PersistenceError(f"Upload failed: {e}") from e
        logger.info("file_uploaded", path=path, size=len(data), content_type=content_type)
        return UploadedFile(
            file_name=path.rsplit("/", 1)[-1],
            file_url=url,
            storage_path=path,
            content_type=content_type,
            size=len(data),
            original_name=original_name,
            user_id=user_id,
        )

    async def remove(self, file: UploadedFile) -> bool:
        try:
            removed = await self.storage.remove(file.storage_path)
        except Exception as e:
            logger.error("file_remove_failed", path=file.storage_path, error=str(e))
            raise PersistenceError(f"Remove failed: {e}") from e
        if not removed:
            logger.warning("file_remove_missing", path=file.storage_path)
        return removed
