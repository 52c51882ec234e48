import asyncio
import logging
from typing import Any, AsyncIterator, Callable, List, Optional, TypeVar

from ..types import StreamChunk
from .parsers import SSEEvent, parse_line_records, split_framed_events

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LineBuffer:
    """Accumulates transport fragments and hands back complete lines."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> List[str]:
        self._pending += text
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return lines

    def finish(self) -> Optional[str]:
        remainder, self._pending = self._pending, ""
        if remainder.strip():
            return remainder
        return None

    @property
    def pending(self) -> str:
        return self._pending


class EventBuffer:
    """SSE counterpart of ``LineBuffer``: keeps text after the last blank line."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> List[SSEEvent]:
        events, self._pending = split_framed_events(self._pending + text)
        return events

    def finish(self) -> List[SSEEvent]:
        remainder, self._pending = self._pending, ""
        if not remainder.strip():
            return []
        events, _ = split_framed_events(remainder.rstrip("\n") + "\n\n")
        return events


async def iter_line_records(fragments: AsyncIterator[str]) -> AsyncIterator[Any]:
    buffer = LineBuffer()
    async for fragment in fragments:
        for line in buffer.feed(fragment):
            for record in parse_line_records(line):
                yield record
    remainder = buffer.finish()
    if remainder is not None:
        for record in parse_line_records(remainder):
            yield record


class StreamBuffer:
    """Coalesces small content deltas into fewer ``on_flush`` calls.

    Each ``add`` re-arms a timer on the running event loop; the buffered text is
    delivered once no new content has arrived for ``flush_delay_ms``.
    """

    def __init__(self, on_flush: Callable[[str], Any], flush_delay_ms: float = 50) -> None:
        self._on_flush = on_flush
        self._flush_delay = flush_delay_ms / 1000.0
        self._buffer = ""
        self._handle: Optional[asyncio.TimerHandle] = None

    def add(self, content: str) -> None:
        self._buffer += content
        self._schedule_flush()

    def flush(self) -> None:
        self._cancel_timer()
        if self._buffer:
            content, self._buffer = self._buffer, ""
            self._on_flush(content)

    def peek(self) -> str:
        return self._buffer

    def clear(self) -> None:
        self._buffer = ""
        self._cancel_timer()

    def _schedule_flush(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._flush_delay, self.flush)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


def _overlap_length(head: str, tail: str) -> int:
    for size in range(min(len(head), len(tail)), 0, -1):
        if head.endswith(tail[:size]):
            return size
    return 0


def merge_stream_chunks(chunks: List[StreamChunk]) -> StreamChunk:
    """Join chunks into one, dropping text repeated across chunk boundaries.

    For each adjacent pair the longest suffix of the merged text that is also a
    prefix of the next chunk is written once. ``done`` and ``metadata`` come
    from the last chunk.
    """
    if not chunks:
        return StreamChunk(content="", done=False)
    if len(chunks) == 1:
        return chunks[0]
    merged = chunks[0].content
    for chunk in chunks[1:]:
        merged += chunk.content[_overlap_length(merged, chunk.content):]
    last = chunks[-1]
    return StreamChunk(content=merged, done=last.done, metadata=last.metadata)


def filter_stream_chunks(
    chunks: List[StreamChunk], predicate: Callable[[StreamChunk], bool]
) -> List[StreamChunk]:
    return [chunk for chunk in chunks if predicate(chunk)]


def transform_stream_chunks(
    chunks: List[StreamChunk], transform: Callable[[StreamChunk], T]
) -> List[T]:
    return [transform(chunk) for chunk in chunks]


class StreamProcessor:
    def __init__(
        self,
        *,
        buffer_size: Optional[int] = None,
        merge_overlapping: bool = False,
        filter_empty: bool = False,
    ) -> None:
        self.buffer_size = buffer_size
        self.merge_overlapping = merge_overlapping
        self.filter_empty = filter_empty
        self._chunks: List[StreamChunk] = []

    def add_chunk(self, chunk: StreamChunk) -> List[StreamChunk]:
        self._chunks.append(chunk)
        if self.filter_empty:
            # an empty terminal chunk is kept
            self._chunks = [c for c in self._chunks if c.content.strip() or c.done]
        if self.merge_overlapping and len(self._chunks) > 1:
            self._chunks = [merge_stream_chunks(self._chunks)]
        if self.buffer_size and len(self._chunks) >= self.buffer_size:
            return self.flush()
        if chunk.done:
            return self.flush()
        return []

    def flush(self) -> List[StreamChunk]:
        result, self._chunks = self._chunks, []
        return result

    def buffer_info(self) -> dict[str, int]:
        return {
            "count": len(self._chunks),
            "total_length": sum(len(c.content) for c in self._chunks),
        }


__all__ = [
    "EventBuffer",
    "LineBuffer",
    "StreamBuffer",
    "StreamProcessor",
    "filter_stream_chunks",
    "iter_line_records",
    "merge_stream_chunks",
    "transform_stream_chunks",
]
