# src/gemini_relay/stream_parser.py

import json
import codecs
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Union

from .message_adapter import make_text_event

lib_logger = logging.getLogger("gemini_relay")

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class SSEStreamParser:
    """
    Incremental decoder from raw SSE bytes to backend events.

    Text that is not yet terminated by a newline is carried over to the next
    feed(). A `data: [DONE]` line ends the event sequence; anything after it
    is ignored. Data lines that are not a JSON object are dropped with a warning.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: Union[bytes, str]) -> List[Dict[str, Any]]:
        if self.done:
            return []
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        events: List[Dict[str, Any]] = []
        while not self.done and "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        if self.done:
            self._buffer = ""
        return events

    def flush(self) -> List[Dict[str, Any]]:
        """Processes whatever is left once the stream has ended."""
        if self.done:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        events: List[Dict[str, Any]] = []
        for line in tail.split("\n"):
            if self.done:
                break
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def _parse_line(self, line: str):
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX) :]
        if data.startswith(" "):
            data = data[1:]
        if data.strip() == DONE_SENTINEL:
            self.done = True
            return None
        if not data.strip():
            return None
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            lib_logger.warning(f"Could not decode JSON from backend stream: {line[:200]}")
            return None
        if not isinstance(event, dict):
            lib_logger.warning(f"Ignoring non-object backend event: {line[:200]}")
            return None
        return event


async def iter_sse_events(
    chunks: AsyncIterable[Union[bytes, str]],
) -> AsyncIterator[Dict[str, Any]]:
    """Lazily yields events from an SSE body, stopping at the [DONE] sentinel."""
    parser = SSEStreamParser()
    async for chunk in chunks:
        for event in parser.feed(chunk):
            yield event
        if parser.done:
            return
    for event in parser.flush():
        yield event


async def iter_text_events(
    chunks: AsyncIterable[Union[bytes, str]],
) -> AsyncIterator[Dict[str, Any]]:
    """Yields one text event per decoded fragment of raw CLI output, in arrival order."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    async for chunk in chunks:
        text = decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if text:
            yield make_text_event(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        yield make_text_event(tail)
