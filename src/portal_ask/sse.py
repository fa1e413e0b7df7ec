"""Decoding of the line-oriented server-sent event stream into typed events."""

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from pydantic import BaseModel, TypeAdapter, ValidationError

from .models import Done, StreamEvent

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_PAYLOAD = "[DONE]"

# Event types we understand. Anything else is dropped so that new upstream
# event types never break older clients.
KNOWN_EVENT_TYPES = frozenset(
    {
        "message_start",
        "text_delta",
        "sources",
        "message_complete",
        "error",
    }
)

_event_adapter: TypeAdapter = TypeAdapter(StreamEvent)


def _map_legacy(data: dict[str, Any]) -> dict[str, Any]:
    """Map the legacy ``answer{content, citations}`` shape onto message_complete."""
    if data.get("type") != "answer":
        return data
    mapped = {k: v for k, v in data.items() if k != "citations"}
    mapped["type"] = "message_complete"
    if data.get("citations") is not None:
        mapped["sources"] = data["citations"]
    return mapped


def parse_payload(payload: str) -> StreamEvent | None:
    """Parse the payload of one ``data:`` line.

    Returns:
        The typed event, or None if the payload is malformed or of an unknown type.
    """
    if payload == DONE_PAYLOAD:
        return Done()

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        logger.warning(f"Skipping malformed SSE payload: {e}")
        return None

    if not isinstance(data, dict):
        logger.warning(f"Skipping non-object SSE payload: {payload[:80]}")
        return None

    data = _map_legacy(data)
    event_type = data.get("type")
    if event_type not in KNOWN_EVENT_TYPES:
        logger.debug(f"Ignoring unknown event type: {event_type!r}")
        return None

    try:
        return _event_adapter.validate_python(data)
    except ValidationError as e:
        logger.warning(f"Skipping invalid {event_type} event: {e.error_count()} error(s)")
        return None


def parse_line(line: str) -> StreamEvent | None:
    """Parse one line of the stream; non-data lines yield None."""
    line = line.rstrip("\r")
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX) :].strip()
    if not payload:
        return None
    return parse_payload(payload)


class SSEDecoder:
    """Incremental decoder: bytes in, events out.

    The trailing fragment of each read (no newline yet) is held back and
    prepended to the next read, so events may be split across reads at any
    byte boundary, including inside a multi-byte UTF-8 character.
    """

    def __init__(self):
        self._text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Add a chunk and return the events completed by it."""
        if isinstance(chunk, bytes):
            chunk = self._text_decoder.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def close(self) -> list[StreamEvent]:
        """Flush the buffered fragment as a final best-effort line."""
        self._buffer += self._text_decoder.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        if not remaining.strip():
            return []
        return self._parse_lines(remaining.split("\n"))

    @staticmethod
    def _parse_lines(lines: list[str]) -> list[StreamEvent]:
        events = []
        for line in lines:
            event = parse_line(line)
            if event is not None:
                events.append(event)
        return events


async def decode_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
    """Lazily decode an async byte stream into events.

    Each call owns its own decoder state; the sequence cannot be replayed.
    """
    decoder = SSEDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.close():
        yield event


def encode_event(payload: dict[str, Any] | BaseModel | str) -> bytes:
    """Encode one ``data: ...`` frame.

    A string payload is written verbatim (used for ``[DONE]``).
    """
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(exclude_none=True)
    if isinstance(payload, dict):
        payload = json.dumps(payload, ensure_ascii=False)
    return f"{DATA_PREFIX}{payload}\n\n".encode("utf-8")


DONE_FRAME = encode_event(DONE_PAYLOAD)
