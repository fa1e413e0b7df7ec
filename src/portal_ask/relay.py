"""Re-emit upstream stream events as the public SSE envelope.

Used when portal-ask sits between the upstream service and a browser: the
downstream client always sees snake_case sources, a complete
``message_complete`` and exactly one ``[DONE]``.
"""

import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from .models import (
    Done,
    ErrorEvent,
    MessageComplete,
    MessageStart,
    SourceRecord,
    SourcesEvent,
    StreamEvent,
    TextDelta,
)
from .session import merge_final_sources
from .sse import DONE_FRAME, encode_event

logger = logging.getLogger(__name__)


def _public_sources(sources: list[SourceRecord]) -> list[dict[str, Any]]:
    return [s.to_public() for s in sources]


async def relay(
    events: AsyncIterable[StreamEvent],
    conversation_id: str | None = None,
) -> AsyncIterator[bytes]:
    """Translate upstream events into downstream ``data:`` frames.

    Args:
        events: Upstream events (e.g. from ``AskTransport.send``)
        conversation_id: Conversation being continued, if any

    Yields:
        Encoded frames; the last one is always ``data: [DONE]``.
    """
    text = ""
    sources: list[SourceRecord] = []

    try:
        async for event in events:
            if isinstance(event, Done):
                continue

            if isinstance(event, MessageStart):
                conversation_id = event.id or conversation_id
                yield encode_event({"type": "message_start", "id": conversation_id})

            elif isinstance(event, TextDelta):
                text += event.delta
                yield encode_event({"type": "text_delta", "delta": event.delta})

            elif isinstance(event, SourcesEvent):
                sources = list(event.sources)
                yield encode_event({"type": "sources", "sources": _public_sources(sources)})

            elif isinstance(event, MessageComplete):
                conversation_id = event.conversation_id or conversation_id
                final_sources = (
                    merge_final_sources(event.sources, sources) if event.sources else sources
                )
                payload: dict[str, Any] = {
                    "type": "message_complete",
                    "responseType": event.response_type,
                    "content": event.content or text,
                    "sources": _public_sources(final_sources),
                    "conversation_id": conversation_id,
                }
                if event.clarifying_questions:
                    payload["clarifying_questions"] = event.clarifying_questions
                yield encode_event(payload)

            elif isinstance(event, ErrorEvent):
                yield encode_event(
                    {
                        "type": "error",
                        "code": event.code,
                        "message": event.message,
                        "retryable": event.retryable,
                    }
                )
    except Exception as e:
        logger.warning(f"Upstream stream failed: {e}")
        yield encode_event(
            {
                "type": "error",
                "code": "STREAM_ERROR",
                "message": str(e) or "Stream error",
                "retryable": False,
            }
        )

    yield DONE_FRAME
