"""Line framing and demultiplexing of the run event stream.

The execution backend writes one event per line, prefixed with ``data: ``
and followed by a JSON object. Chunks from the transport can split a line
anywhere, including in the middle of a multi-byte character.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import AsyncIterable, AsyncIterator

from pydantic import ValidationError

from batchprompt.schemas import Event, parse_event

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "


class FramingError(Exception):
    """Raised when a protocol line cannot be decoded into an event."""

    pass


def parse_line(line: str) -> Event:
    """Decode one protocol line into an event.

    Args:
        line: A complete line, without its trailing newline

    Returns:
        The parsed event

    Raises:
        FramingError: if the line is blank, lacks the data prefix, or its
            payload is not a valid JSON event object
    """
    if not line.strip():
        raise FramingError("blank line")
    if not line.startswith(DATA_PREFIX):
        raise FramingError("missing data prefix")

    try:
        payload = json.loads(line[len(DATA_PREFIX):])
    except json.JSONDecodeError as e:
        raise FramingError(f"invalid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise FramingError(f"expected JSON object, got {type(payload).__name__}")

    try:
        return parse_event(payload)
    except ValidationError as e:
        raise FramingError(f"invalid event: {e.error_count()} validation error(s)") from e


def encode_event(event: Event) -> str:
    """Frame an event for the wire, the way the backend emits it."""
    data = event.model_dump_json(by_alias=True, exclude_none=True)
    return f"{DATA_PREFIX}{data}\n\n"


class StreamDemultiplexer:
    """Reassembles lines across chunk boundaries and parses them into events."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.dropped_lines = 0

    @property
    def pending(self) -> str:
        """Trailing fragment still waiting for its newline."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[Event]:
        """Consume one chunk and return the events of every line it completes."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)

        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")

        events = []
        for line in lines:
            if not line.strip() or not line.startswith(DATA_PREFIX):
                continue
            try:
                events.append(parse_line(line))
            except FramingError as e:
                self.dropped_lines += 1
                logger.debug(f"Dropped malformed line: {e}")
        return events

    def finish(self) -> None:
        """Discard whatever is left once the stream has ended."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        if tail.strip():
            logger.debug(f"Discarding unterminated line at end of stream ({len(tail)} chars)")
        self._buffer = ""


async def demultiplex(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[Event]:
    """Yield events, in arrival order, from an async stream of chunks."""
    demux = StreamDemultiplexer()
    async for chunk in chunks:
        for event in demux.feed(chunk):
            yield event
    demux.finish()
