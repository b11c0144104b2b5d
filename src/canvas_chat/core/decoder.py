"""Incremental decoding of a streamed structured response.

The model streams the JSON text of a single object shaped like
``CanvasResponse``. After every chunk the accumulated text is parsed with
``json_repair``, which closes whatever strings, arrays and objects are still
open, and the result is folded into a ``PartialValueBuilder``. The builder only
ever extends fields, so consumers see a monotonic sequence of snapshots even
when the repaired parse of a truncated buffer is noisy.
"""

import json
import re
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

import structlog
from json_repair import repair_json
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..domain.errors import DecodeError, GenerationError, TransportError
from ..domain.models import DocumentExtra, PartialStructuredValue

logger = structlog.get_logger()

# A trailing backslash or unfinished \uXXXX escape would be repaired into
# text that the next chunk contradicts.
_OPEN_ESCAPE_RE = re.compile(r"(?<!\\)(?:\\\\)*\\(?:u[0-9a-fA-F]{0,3})?$")
# A high surrogate escape is only meaningful together with its low half.
_HIGH_SURROGATE_RE = re.compile(r"(?<!\\)((?:\\\\)*)\\u[dD][89abAB][0-9a-fA-F]{2}$")
_SURROGATE_RE = re.compile("[\ud800-\udfff]")


def _join_surrogates(value: Any) -> Any:
    """Combine escaped surrogate pairs that were decoded one half at a time."""
    if isinstance(value, str):
        if not _SURROGATE_RE.search(value):
            return value
        return value.encode("utf-16-le", "surrogatepass").decode("utf-16-le", "surrogatepass")
    if isinstance(value, dict):
        return {k: _join_surrogates(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_join_surrogates(v) for v in value]
    return value


class ResponseExtra(BaseModel):
    """Wire shape of the ``extra`` object."""

    model_config = ConfigDict(populate_by_name=True)

    word_count: Optional[int] = Field(default=None, alias="wordCount")
    estimated_read_time: Optional[str] = Field(default=None, alias="estimatedReadTime")
    tags: Optional[List[str]] = None
    category: Optional[str] = None


class CanvasResponse(BaseModel):
    """Wire shape of one complete generation."""

    title: str
    document: str
    general: str
    extra: Optional[ResponseExtra] = None


def _extend(current: Optional[str], new: Any) -> Optional[str]:
    if not isinstance(new, str) or not new:
        return current
    if current is None:
        return new
    if len(new) > len(current) and new.startswith(current):
        return new
    return current


def _extend_list(current: Optional[List[str]], new: List[str]) -> Optional[List[str]]:
    if not new:
        return current
    if current is None:
        return list(new)
    if len(new) > len(current) and new[: len(current)] == current:
        return list(new)
    return current


class PartialValueBuilder:
    """Accumulates the fields of one generation with extend-only semantics."""

    def __init__(self) -> None:
        self.title: Optional[str] = None
        self.body: Optional[str] = None
        self.general: Optional[str] = None
        self.word_count: Optional[int] = None
        self.estimated_read_time: Optional[str] = None
        self.category: Optional[str] = None
        self.tags: Optional[List[str]] = None
        self.has_extra = False

    def _state(self) -> tuple:
        return (
            self.title,
            self.body,
            self.general,
            self.word_count,
            self.estimated_read_time,
            self.category,
            tuple(self.tags) if self.tags is not None else None,
            self.has_extra,
        )

    def merge(self, data: Dict[str, Any]) -> bool:
        """Fold a best-effort parse of an incomplete buffer into the builder.

        Returns True if any field changed.
        """
        before = self._state()
        self.title = _extend(self.title, data.get("title"))
        self.body = _extend(self.body, data.get("document"))
        self.general = _extend(self.general, data.get("general"))

        extra = data.get("extra")
        if isinstance(extra, dict):
            self.estimated_read_time = _extend(
                self.estimated_read_time, extra.get("estimatedReadTime")
            )
            self.category = _extend(self.category, extra.get("category"))
            tags = extra.get("tags")
            if isinstance(tags, list):
                # the last item may still be streaming
                complete = [t for t in tags[:-1] if isinstance(t, str)]
                self.tags = _extend_list(self.tags, complete)
            if self.estimated_read_time or self.category or self.tags:
                self.has_extra = True
        return self._state() != before

    def finish(self, response: CanvasResponse) -> None:
        """Replace every field with the validated terminal value."""
        self.title = response.title
        self.body = response.document
        self.general = response.general
        extra = response.extra
        self.has_extra = extra is not None
        self.word_count = extra.word_count if extra else None
        self.estimated_read_time = extra.estimated_read_time if extra else None
        self.category = extra.category if extra else None
        self.tags = list(extra.tags) if extra and extra.tags is not None else None

    def snapshot(self, complete: bool = False) -> PartialStructuredValue:
        extra = None
        if self.has_extra:
            extra = DocumentExtra(
                word_count=self.word_count,
                estimated_read_time=self.estimated_read_time,
                category=self.category,
                tags=list(self.tags) if self.tags is not None else None,
            )
        return PartialStructuredValue(
            title=self.title,
            body=self.body,
            general=self.general,
            extra=extra,
            complete=complete,
        )


def parse_partial(buffer: str) -> Dict[str, Any]:
    """Best-effort parse of a possibly truncated JSON object."""
    text = _OPEN_ESCAPE_RE.sub("", buffer.strip())
    text = _HIGH_SURROGATE_RE.sub(r"\1", text)
    if not text:
        return {}
    try:
        data = repair_json(text, return_objects=True)
    except Exception as e:
        logger.debug("partial_parse_failed", error=str(e), length=len(text))
        return {}
    return _join_surrogates(data) if isinstance(data, dict) else {}


def parse_final(buffer: str) -> CanvasResponse:
    """Strictly parse and validate the terminal buffer."""
    try:
        return CanvasResponse.model_validate(json.loads(buffer))
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        raise DecodeError(f"Malformed response: {e}") from e


class StructuredStreamDecoder:
    """Turns a chunk stream into a sequence of partial value snapshots.

    Iterate once with ``async for``. The last snapshot has ``complete=True``.
    Source failures raise ``TransportError`` and schema violations raise
    ``DecodeError``; both carry the last snapshot that was yielded.
    """

    def __init__(self, chunks: AsyncIterable[str]) -> None:
        self._chunks = chunks
        self._builder = PartialValueBuilder()
        self._buffer = ""
        self._started = False
        self.last_value: Optional[PartialStructuredValue] = None
        self.completed = False

    def __aiter__(self) -> AsyncIterator[PartialStructuredValue]:
        return self.stream()

    def stream(self) -> AsyncIterator[PartialStructuredValue]:
        """The snapshot sequence; available once per decoder."""
        if self._started:
            raise RuntimeError("StructuredStreamDecoder can only be iterated once")
        self._started = True
        return self._decode()

    def _publish(self, complete: bool = False) -> PartialStructuredValue:
        self.last_value = self._builder.snapshot(complete=complete)
        return self.last_value

    async def _decode(self) -> AsyncIterator[PartialStructuredValue]:
        chunks = 0
        try:
            async for chunk in self._chunks:
                if not chunk:
                    continue
                chunks += 1
                self._buffer += chunk
                if self._builder.merge(parse_partial(self._buffer)):
                    yield self._publish()
        except GenerationError:
            raise
        except Exception as e:
            logger.warning("stream_interrupted", chunks=chunks, error=str(e))
            raise TransportError(str(e) or type(e).__name__, last_value=self.last_value) from e

        try:
            response = parse_final(self._buffer)
        except DecodeError as e:
            logger.warning("stream_decode_failed", chunks=chunks, error=str(e))
            e.last_value = self.last_value
            raise
        self._builder.finish(response)
        self.completed = True
        logger.debug("stream_decoded", chunks=chunks, length=len(self._buffer))
        yield self._publish(complete=True)
