"""
Streaming response processing.

The ResponseProcessor buffers the text chunks of each stream by stream id.
When the terminal chunk arrives it extracts action tags from the full text,
caches the cleaned result and emits a final chunk carrying the cleaned
response, the actions and the usage. Buffers and finalized results live in
bounded LRU caches.
"""

import logging
import re
from collections import OrderedDict
from collections.abc import AsyncIterable, AsyncIterator, Hashable
from typing import Any, Generic, TypeVar

from ..core.models import ActionSet, CodeBlock, ProcessedResponse, StreamChunk
from .actions import ExtractionResult, extract_action_tags
from .file_actions import FileActionExecutor, LocalFileActionExecutor, process_file_operations

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 50

_CODE_BLOCK = re.compile(r"```([a-zA-Z0-9_]+)?\n([\s\S]+?)\n```")
_BRACKETS = {"{": "}", "(": ")", "[": "]"}

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """Bounded mapping that evicts the least recently used entry."""

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._data: OrderedDict[K, V] = OrderedDict()

    def get(self, key: K, default: V | None = None) -> V | None:
        if key not in self._data:
            return default
        self._data.move_to_end(key)
        return self._data[key]

    def set(self, key: K, value: V) -> None:
        self._data[key] = value
        self._data.move_to_end(key)
        while len(self._data) > self.max_size:
            evicted, _ = self._data.popitem(last=False)
            logger.debug(f"Evicted {evicted} from response cache")

    def pop(self, key: K, default: V | None = None) -> V | None:
        return self._data.pop(key, default)

    def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[K]:
        return list(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)


def extract_code_blocks(response: str) -> list[CodeBlock]:
    """
    Extract fenced code blocks in document order.

    Example:
        >>> extract_code_blocks("text\\n```js\\nconst x=1;\\n```\\nmore")
        [CodeBlock(language='js', code='const x=1;')]
    """
    return [
        CodeBlock(language=match.group(1) or "text", code=match.group(2).strip())
        for match in _CODE_BLOCK.finditer(response)
    ]


def validate_code(code: str, language: str) -> dict[str, Any]:
    """
    Basic bracket-balance check for JavaScript and TypeScript.

    Other languages are reported valid.
    """
    if language not in ("javascript", "typescript"):
        return {"valid": True, "errors": []}

    errors = []
    stack: list[str] = []
    for i, char in enumerate(code):
        if char in _BRACKETS:
            stack.append(char)
        elif char in _BRACKETS.values():
            last = stack.pop() if stack else None
            if last is None or _BRACKETS[last] != char:
                expected = _BRACKETS[last] if last else "none"
                errors.append(
                    f"Mismatched bracket at position {i}: expected {expected}, got {char}"
                )

    if stack:
        errors.append(f"Unclosed brackets: {', '.join(_BRACKETS[b] for b in stack)}")

    return {"valid": not errors, "errors": errors}


class ResponseProcessor:
    """
    Per-stream buffering and finalization of streamed responses.

    Each stream id moves from accumulating to finalized exactly once. Error
    chunks end a stream without extracting actions.
    """

    def __init__(
        self,
        cache_size: int = DEFAULT_CACHE_SIZE,
        executor: FileActionExecutor | None = None,
    ):
        self._buffers: LRUCache[str, list[str]] = LRUCache(cache_size)
        self._processed: LRUCache[str, ProcessedResponse] = LRUCache(cache_size)
        self.executor: FileActionExecutor = executor or LocalFileActionExecutor()

    def process_stream_chunk(self, chunk: StreamChunk, stream_id: str) -> StreamChunk:
        """
        Process one chunk of a stream.

        Args:
            chunk: Chunk from a provider stream
            stream_id: Stream the chunk belongs to

        Returns:
            The chunk to forward to the caller
        """
        if chunk.error:
            self._buffers.pop(stream_id)
            logger.error(f"Stream {stream_id} failed: {chunk.error}")
            return StreamChunk(done=True, error=chunk.error, stream_id=stream_id)

        if chunk.done:
            processed = self.finalize(stream_id, chunk)
            return StreamChunk(
                done=True,
                full_response=processed.cleaned_response,
                actions=processed.actions,
                usage=chunk.usage,
                stream_id=stream_id,
            )

        self._append(stream_id, chunk.text)
        return StreamChunk(text=chunk.text, stream_id=stream_id)

    async def process_stream(
        self, chunks: AsyncIterable[StreamChunk], stream_id: str
    ) -> AsyncIterator[StreamChunk]:
        """Adapt a provider stream into processed chunks."""
        async for chunk in chunks:
            processed = self.process_stream_chunk(chunk, stream_id)
            yield processed
            if processed.done:
                break

    def finalize(self, stream_id: str, chunk: StreamChunk | None = None) -> ProcessedResponse:
        """Finalize a stream's buffer into a cleaned response and its actions."""
        raw = "".join(self._buffers.pop(stream_id) or [])
        extraction: ExtractionResult = extract_action_tags(raw)

        processed = ProcessedResponse(
            stream_id=stream_id,
            raw_response=raw,
            cleaned_response=extraction.cleaned_response,
            actions=extraction.actions,
            code_blocks=extract_code_blocks(extraction.cleaned_response),
            usage=chunk.usage if chunk else None,
        )
        self._processed.set(stream_id, processed)

        if extraction.actions.has_actions():
            logger.info(f"Extracted actions from stream {stream_id}")
        return processed

    def _append(self, stream_id: str, text: str) -> None:
        buffer = self._buffers.get(stream_id)
        if buffer is None:
            buffer = []
            self._buffers.set(stream_id, buffer)
        buffer.append(text)

    def get_full_response(self, stream_id: str) -> str | None:
        """Raw text of a stream, while accumulating or after finalization."""
        buffer = self._buffers.get(stream_id)
        if buffer is not None:
            return "".join(buffer)
        processed = self._processed.get(stream_id)
        return processed.raw_response if processed else None

    def get_processed_response(self, stream_id: str) -> ProcessedResponse | None:
        return self._processed.get(stream_id)

    def is_active(self, stream_id: str) -> bool:
        return stream_id in self._buffers

    def clear_response_cache(self, stream_id: str | None = None) -> None:
        """Forget one stream, or every stream when no id is given."""
        if stream_id:
            self._buffers.pop(stream_id)
            self._processed.pop(stream_id)
        else:
            self._buffers.clear()
            self._processed.clear()

    def extract_code_blocks(self, response: str) -> list[CodeBlock]:
        return extract_code_blocks(response)

    def extract_action_tags(self, response: str) -> ExtractionResult:
        return extract_action_tags(response)

    def validate_code(self, code: str, language: str) -> dict[str, Any]:
        return validate_code(code, language)

    async def process_file_operations(self, actions: ActionSet) -> dict[str, list[dict[str, Any]]]:
        return await process_file_operations(actions, self.executor)
