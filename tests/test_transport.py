"""Tests for the HTTP transport."""

import asyncio
import json

import httpx
import pytest

from portal_ask.config import AskSettings
from portal_ask.models import (
    Done,
    ErrorEvent,
    MessageComplete,
    MessageStart,
    SourcesEvent,
    TextDelta,
)
from portal_ask.transport import AbortSignal, AskTimeout, AskTransport, TransportError


async def collect(transport: AskTransport, *args, **kwargs) -> list:
    return [event async for event in transport.send(*args, **kwargs)]


class TestEndpoint:
    """URL and request shape."""

    def test_new_and_continue_endpoints(self, settings):
        transport = AskTransport(settings)
        assert transport.endpoint() == "https://api.example.com/api/v1/ask"
        assert transport.endpoint("conv-1") == "https://api.example.com/api/v1/ask/conv-1"

    @pytest.mark.parametrize(
        "backend_url,expected",
        [
            ("https://api.example.com/", "https://api.example.com/api/v1"),
            ("api.example.com", "https://api.example.com/api/v1"),
            ("http://localhost:4000/api/v1", "http://localhost:4000/api/v1"),
        ],
    )
    def test_api_base(self, backend_url, expected):
        assert AskSettings(api_key="k", backend_url=backend_url).api_base == expected

    @pytest.mark.asyncio
    async def test_request_shape(self, make_transport, sse):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return sse.response({"type": "text_delta", "delta": "ok"})

        transport = make_transport(handler)
        await collect(transport, "What is churn?", conversation_id="conv-1")

        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api/v1/ask/conv-1"
        assert request.headers["Authorization"] == "test-key"
        assert request.headers["Accept"] == "text/event-stream"
        assert json.loads(request.content) == {
            "message": "What is churn?",
            "conversationId": "conv-1",
        }

    @pytest.mark.asyncio
    async def test_new_conversation_body(self, make_transport, sse):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            assert request.url.path == "/api/v1/ask"
            return sse.response()

        await collect(make_transport(handler), "Hi")
        assert bodies == [{"message": "Hi"}]


class TestStreaming:
    """Event-stream responses."""

    @pytest.mark.asyncio
    async def test_decodes_stream(self, make_transport, sse, wire_sources):
        def handler(request):
            return sse.response(
                {"type": "message_start", "id": "conv-1"},
                {"type": "sources", "sources": wire_sources},
                {"type": "text_delta", "delta": "Answer [1]"},
                {"type": "mystery_event", "payload": 1},
                {"type": "message_complete", "conversationId": "conv-1"},
            )

        events = await collect(make_transport(handler), "Q")
        assert [type(e) for e in events] == [
            MessageStart,
            SourcesEvent,
            TextDelta,
            MessageComplete,
            Done,
        ]
        assert events[1].sources[0].video_id == "vid-1"

    @pytest.mark.asyncio
    async def test_split_reads(self, make_transport, sse):
        body = sse.body(
            {"type": "text_delta", "delta": "naïve "},
            {"type": "text_delta", "delta": "café ☕"},
        )

        async def chunks():
            for i in range(0, len(body), 3):
                yield body[i : i + 3]

        def handler(request):
            return httpx.Response(
                200, headers={"content-type": "text/event-stream"}, content=chunks()
            )

        events = await collect(make_transport(handler), "Q")
        assert [e.delta for e in events if isinstance(e, TextDelta)] == ["naïve ", "café ☕"]

    @pytest.mark.asyncio
    async def test_stream_without_done(self, make_transport, sse):
        def handler(request):
            return sse.response({"type": "text_delta", "delta": "cut"}, done=False)

        events = await collect(make_transport(handler), "Q")
        assert events == [TextDelta(delta="cut")]

    @pytest.mark.asyncio
    async def test_abort_stops_reading(self, make_transport, sse):
        """Once aborted, no further reads are consumed and the iterator ends quietly."""
        first = sse.body({"type": "text_delta", "delta": "first"}, done=False)

        async def chunks():
            yield first
            await asyncio.Event().wait()
            yield sse.body({"type": "text_delta", "delta": "never"})

        def handler(request):
            return httpx.Response(
                200, headers={"content-type": "text/event-stream"}, content=chunks()
            )

        signal = AbortSignal()
        events = []

        async def consume():
            async for event in make_transport(handler).send("Q", signal=signal):
                events.append(event)

        task = asyncio.create_task(consume())
        while not events:
            await asyncio.sleep(0.01)
        signal.abort("stopped")
        await asyncio.wait_for(task, timeout=2)

        assert events == [TextDelta(delta="first")]
        assert signal.reason == "stopped"

    @pytest.mark.asyncio
    async def test_already_aborted_signal_yields_nothing(self, make_transport, sse):
        signal = AbortSignal()
        signal.abort()

        def handler(request):
            return sse.response({"type": "text_delta", "delta": "x"})

        assert await collect(make_transport(handler), "Q", signal=signal) == []

    @pytest.mark.asyncio
    async def test_abort_while_connecting(self, make_transport, sse):
        """An abort before response headers arrive ends the iterator without waiting."""
        connecting = asyncio.Event()

        async def handler(request):
            connecting.set()
            await asyncio.Event().wait()
            return sse.response({"type": "text_delta", "delta": "never"})

        signal = AbortSignal()
        task = asyncio.create_task(
            collect(make_transport(handler, timeout=60.0), "Q", signal=signal)
        )
        await asyncio.wait_for(connecting.wait(), timeout=1)
        signal.abort("superseded")

        assert await asyncio.wait_for(task, timeout=1) == []


class TestFailures:
    """Status, network and timeout errors."""

    @pytest.mark.asyncio
    async def test_non_2xx(self, make_transport):
        def handler(request):
            return httpx.Response(500, json={"error": "boom"})

        with pytest.raises(TransportError) as exc_info:
            await collect(make_transport(handler), "Q")
        assert exc_info.value.status_code == 500
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_continue_failure_message(self, make_transport):
        def handler(request):
            return httpx.Response(404)

        with pytest.raises(TransportError, match=r"Failed to continue conversation \(404\)"):
            await collect(make_transport(handler), "Q", conversation_id="gone")

    @pytest.mark.asyncio
    async def test_network_error(self, make_transport):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError) as exc_info:
            await collect(make_transport(handler), "Q")
        assert not isinstance(exc_info.value, AskTimeout)

    @pytest.mark.asyncio
    async def test_httpx_timeout(self, make_transport):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(AskTimeout):
            await collect(make_transport(handler), "Q")

    @pytest.mark.asyncio
    async def test_slow_connect_times_out(self, make_transport):
        async def handler(request):
            await asyncio.Event().wait()

        with pytest.raises(AskTimeout):
            await collect(make_transport(handler, timeout=0.1), "Q")

    @pytest.mark.asyncio
    async def test_total_deadline(self, make_transport):
        """A stream that stalls past the timeout raises AskTimeout."""

        async def chunks():
            yield b'data: {"type": "text_delta", "delta": "slow"}\n\n'
            await asyncio.Event().wait()
            yield b""

        def handler(request):
            return httpx.Response(
                200, headers={"content-type": "text/event-stream"}, content=chunks()
            )

        transport = make_transport(handler, timeout=0.2)
        events = []
        with pytest.raises(AskTimeout):
            async for event in transport.send("Q"):
                events.append(event)
        assert events == [TextDelta(delta="slow")]

    @pytest.mark.asyncio
    async def test_deep_uses_long_timeout(self, make_transport):
        async def chunks():
            await asyncio.sleep(0.3)
            yield b'data: {"type": "text_delta", "delta": "deep"}\n\n'

        def handler(request):
            return httpx.Response(
                200, headers={"content-type": "text/event-stream"}, content=chunks()
            )

        transport = make_transport(handler, timeout=0.1, deep_timeout=5.0)
        events = await collect(transport, "Q", deep=True)
        assert events == [TextDelta(delta="deep")]


class TestJsonFallback:
    """Non-streaming responses replayed as events."""

    @pytest.mark.asyncio
    async def test_synthesized_answer(self, make_transport, wire_sources):
        text = "Price on value [1]. " * 6

        def handler(request):
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "mode": "synthesized",
                    "conversation_id": "conv-j",
                    "answer": {"text": text, "citations": wire_sources},
                },
            )

        events = await collect(make_transport(handler, chunk_size=50), "Q")

        assert events[0] == MessageStart(id="conv-j")
        deltas = [e.delta for e in events if isinstance(e, TextDelta)]
        assert "".join(deltas) == text
        assert all(len(d) <= 50 for d in deltas)
        assert len(deltas) == 3
        complete = events[-1]
        assert isinstance(complete, MessageComplete)
        assert complete.content == text
        assert complete.conversation_id == "conv-j"
        assert [s.id for s in complete.sources] == ["c_intro", "c_churn", "c_hiring"]

    @pytest.mark.asyncio
    async def test_camel_case_conversation_id(self, make_transport):
        def handler(request):
            return httpx.Response(
                200, json={"success": True, "conversationId": "conv-c", "answer": {"text": "x"}}
            )

        events = await collect(make_transport(handler), "Q")
        assert events[0] == MessageStart(id="conv-c")

    @pytest.mark.asyncio
    async def test_clarification(self, make_transport):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "mode": "clarification",
                    "needs_clarification": True,
                    "clarifying_questions": ["Which course?"],
                    "conversation_id": "conv-q",
                },
            )

        events = await collect(make_transport(handler), "Q")
        complete = events[-1]
        assert complete.is_clarification
        assert complete.clarifying_questions == ["Which course?"]
        assert not any(isinstance(e, TextDelta) for e in events)

    @pytest.mark.asyncio
    async def test_error_body(self, make_transport):
        def handler(request):
            return httpx.Response(200, json={"success": False, "error": "No videos indexed"})

        events = await collect(make_transport(handler), "Q")
        assert events == [ErrorEvent(message="No videos indexed", retryable=True)]

    @pytest.mark.asyncio
    async def test_retrieval_only_chunks_become_sources(self, make_transport):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "mode": "retrieval_only",
                    "retrieval": {
                        "chunks": [
                            {"videoId": "v1", "timestampStartMs": 61000, "text": "clip"}
                        ]
                    },
                },
            )

        events = await collect(make_transport(handler), "Q")
        complete = events[-1]
        assert complete.content == ""
        assert complete.sources[0].start == 61.0

    @pytest.mark.asyncio
    async def test_invalid_json(self, make_transport):
        def handler(request):
            return httpx.Response(200, headers={"content-type": "text/plain"}, content=b"oops")

        with pytest.raises(TransportError, match="Invalid JSON"):
            await collect(make_transport(handler), "Q")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"success": True, "answer": {"text": "x", "citations": [{"timestamp": "n/a"}]}},
            {"success": True, "answer": "just a string"},
            {"success": True, "answer": {"text": "x", "citations": {"id": "c_1"}}},
        ],
    )
    async def test_malformed_answer(self, make_transport, body):
        def handler(request):
            return httpx.Response(200, json=body)

        with pytest.raises(TransportError, match="Invalid JSON") as exc_info:
            await collect(make_transport(handler), "Q")
        assert exc_info.value.retryable is False


class TestLoadConversation:
    """Fetching stored conversations."""

    @pytest.mark.asyncio
    async def test_loads_history(self, make_transport):
        def handler(request):
            assert request.method == "GET"
            assert request.url.path == "/api/v1/ask/conv-h"
            return httpx.Response(
                200,
                json={
                    "conversationId": "conv-h",
                    "metadata": {"originalQuery": "How do I price?"},
                    "messages": [
                        {"id": "m1", "role": "user", "content": "How do I price?"},
                        {
                            "id": "m2",
                            "role": "assistant",
                            "content": "On value [1].",
                            "sources": [{"id": "c_1", "videoId": "v1", "timestamp": 5}],
                            "insertedAt": "2025-01-02T03:04:05Z",
                        },
                    ],
                },
            )

        history = await make_transport(handler).load_conversation("conv-h")
        assert history.conversation_id == "conv-h"
        assert history.original_query == "How do I price?"
        assert [m.role for m in history.messages] == ["user", "assistant"]
        assert history.messages[1].sources[0].video_id == "v1"
        assert history.messages[1].inserted_at.year == 2025

    @pytest.mark.asyncio
    async def test_not_found(self, make_transport):
        def handler(request):
            return httpx.Response(404)

        assert await make_transport(handler).load_conversation("missing") is None

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, make_transport):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"conversationId": "conv-r", "messages": []})

        history = await make_transport(handler).load_conversation("conv-r")
        assert history.conversation_id == "conv-r"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self, make_transport):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        with pytest.raises(TransportError):
            await make_transport(handler).load_conversation("conv-x")
        assert len(calls) == 1
