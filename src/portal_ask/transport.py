"""HTTP transport to the upstream ask service (httpx, async)."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
from pydantic import ValidationError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .config import HISTORY_RETRY_ATTEMPTS, AskSettings
from .models import (
    ConversationHistory,
    ErrorEvent,
    MessageComplete,
    MessageStart,
    SourceRecord,
    StreamEvent,
    TextDelta,
)
from .sse import SSEDecoder

logger = logging.getLogger(__name__)

EVENT_STREAM = "text/event-stream"


class AskError(Exception):
    """Error talking to the ask service."""

    pass


class TransportError(AskError):
    """Non-2xx status, network failure or unreadable response (retryable)."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class AskTimeout(TransportError):
    """The request exceeded its time budget."""

    pass


class AbortSignal:
    """Cooperative cancellation flag shared by a session and its transport.

    Once aborted the transport stops reading and its event iterator ends.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


def _should_retry(exc: BaseException) -> bool:
    """Retry transient failures only (network, timeouts, 5xx)."""
    if isinstance(exc, TransportError):
        if exc.status_code is not None and exc.status_code < 500:
            return False
        return exc.retryable
    return False


class AskTransport:
    """Issues ask requests and turns responses into StreamEvents.

    Streaming (``text/event-stream``) responses are decoded incrementally.
    Plain JSON responses are replayed as the same event sequence (start,
    chunked text deltas, complete) so consumers only deal with one API.
    """

    def __init__(self, settings: AskSettings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy load the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AskTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def endpoint(self, conversation_id: str | None = None) -> str:
        """``/ask`` starts a conversation, ``/ask/{id}`` continues one."""
        if conversation_id:
            return f"{self.settings.api_base}/ask/{conversation_id}"
        return f"{self.settings.api_base}/ask"

    def _headers(self, accept: str = EVENT_STREAM) -> dict[str, str]:
        return {
            "Authorization": self.settings.api_key,
            "Content-Type": "application/json",
            "Accept": accept,
        }

    @staticmethod
    def build_body(query: str, conversation_id: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"message": query}
        if conversation_id:
            body["conversationId"] = conversation_id
        return body

    async def send(
        self,
        query: str,
        conversation_id: str | None = None,
        signal: AbortSignal | None = None,
        deep: bool = False,
    ) -> AsyncIterator[StreamEvent]:
        """Send a question and yield events as they arrive.

        Args:
            query: User's question
            conversation_id: Continue this upstream conversation if given
            signal: Abort signal; once set, no further reads are consumed
            deep: Use the long timeout (deep / web-search answers)

        Raises:
            AskTimeout: If the whole exchange takes longer than the timeout
            TransportError: On non-2xx status or network failure
        """
        signal = signal or AbortSignal()
        loop = asyncio.get_running_loop()
        timeout = self.settings.timeout_for(deep)
        deadline = loop.time() + timeout
        url = self.endpoint(conversation_id)

        logger.debug(f"POST {url} (timeout {timeout:.0f}s)")
        request = self.client.build_request(
            "POST",
            url,
            json=self.build_body(query, conversation_id),
            headers=self._headers(),
            timeout=httpx.Timeout(timeout, connect=self.settings.connect_timeout),
        )

        response = await self._open(request, signal, timeout)
        if response is None:
            logger.debug(f"Aborted before the response arrived ({signal.reason})")
            return

        try:
            if not response.is_success:
                await response.aread()
                if conversation_id:
                    message = (
                        f"Failed to continue conversation ({response.status_code}). "
                        "Please try again or start a new conversation."
                    )
                else:
                    message = f"Request failed with status {response.status_code}"
                raise TransportError(message, status_code=response.status_code)

            content_type = response.headers.get("content-type", "")
            if EVENT_STREAM not in content_type:
                logger.info(f"Non-streaming response ({content_type or 'no content type'})")
                data = await self._read_json(response, deadline)
                async for event in self.synthesize_events(data, signal):
                    yield event
                return

            decoder = SSEDecoder()
            chunks = response.aiter_bytes()
            while True:
                chunk = await self._next_chunk(chunks, signal, deadline)
                if chunk is None:
                    break
                for event in decoder.feed(chunk):
                    if signal.aborted:
                        return
                    yield event

            if signal.aborted:
                logger.debug(f"Stream aborted ({signal.reason})")
                return
            for event in decoder.close():
                yield event
        except httpx.TimeoutException as e:
            raise AskTimeout(f"Request timed out after {timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Connection lost: {e}") from e
        finally:
            await response.aclose()

    async def _open(
        self,
        request: httpx.Request,
        signal: AbortSignal,
        timeout: float,
    ) -> httpx.Response | None:
        """Send the request, racing the connect against abort and the timeout.

        Returns None once aborted; a response that arrives after the abort is closed.
        """
        if signal.aborted:
            return None

        sending = asyncio.ensure_future(self.client.send(request, stream=True))
        aborted = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {sending, aborted},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (sending, aborted):
                if not task.done():
                    task.cancel()

        if sending in done:
            try:
                response = sending.result()
            except httpx.TimeoutException as e:
                raise AskTimeout(f"Request timed out after {timeout:.0f}s") from e
            except httpx.HTTPError as e:
                raise TransportError(f"Request failed: {e}") from e
            if signal.aborted:
                await response.aclose()
                return None
            return response
        if aborted in done:
            return None
        raise AskTimeout(f"Request timed out after {timeout:.0f}s")

    async def _next_chunk(
        self,
        chunks: AsyncIterator[bytes],
        signal: AbortSignal,
        deadline: float,
    ) -> bytes | None:
        """Await the next body chunk, racing it against abort and the deadline.

        Returns None at end of body or once aborted.
        """
        if signal.aborted:
            return None
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise AskTimeout("Request timed out")

        read = asyncio.ensure_future(anext(chunks))
        aborted = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {read, aborted},
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (read, aborted):
                if not task.done():
                    task.cancel()

        if read in done and not signal.aborted:
            try:
                return read.result()
            except StopAsyncIteration:
                return None
        if aborted in done or signal.aborted:
            return None
        raise AskTimeout("Request timed out")

    async def _read_json(self, response: httpx.Response, deadline: float) -> dict[str, Any]:
        remaining = max(0.0, deadline - asyncio.get_running_loop().time())
        try:
            body = await asyncio.wait_for(response.aread(), timeout=remaining)
        except asyncio.TimeoutError as e:
            raise AskTimeout("Request timed out") from e
        try:
            data = json.loads(body)
        except ValueError as e:
            raise TransportError("Invalid JSON response") from e
        if not isinstance(data, dict):
            raise TransportError("Unexpected JSON response")
        return data

    async def synthesize_events(
        self,
        data: dict[str, Any],
        signal: AbortSignal | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Replay a non-streaming JSON answer as stream events.

        The answer text is cut into small deltas with a short delay between
        them so the UI renders it the same way as a streamed answer.
        """
        signal = signal or AbortSignal()
        conversation_id = data.get("conversation_id") or data.get("conversationId")

        if data.get("success") is False or (data.get("error") and "answer" not in data):
            yield ErrorEvent(
                code=data.get("code"),
                message=str(data.get("error") or "Request failed"),
                retryable=bool(data.get("retryable", True)),
            )
            return

        if conversation_id:
            yield MessageStart(id=conversation_id)

        if data.get("mode") == "clarification":
            questions = (
                data.get("clarifying_questions") or data.get("clarifyingQuestions") or []
            )
            yield MessageComplete(
                response_type="clarification",
                content="\n".join(questions),
                clarifying_questions=questions,
                conversation_id=conversation_id,
            )
            return

        text, sources = self._parse_answer(data)

        size = max(1, self.settings.chunk_size)
        for i in range(0, len(text), size):
            if signal.aborted:
                return
            yield TextDelta(delta=text[i : i + size])
            await asyncio.sleep(self.settings.chunk_delay)

        yield MessageComplete(
            content=text,
            sources=sources,
            conversation_id=conversation_id,
            response_type=data.get("mode"),
        )

    @staticmethod
    def _parse_answer(data: dict[str, Any]) -> tuple[str, list[SourceRecord]]:
        """Answer text and sources of a JSON response.

        Raises:
            TransportError: If the answer or its sources have the wrong shape
        """
        answer = data.get("answer") or {}
        retrieval = data.get("retrieval") or {}
        if not isinstance(answer, dict) or not isinstance(retrieval, dict):
            raise TransportError("Invalid JSON response", retryable=False)

        text = answer.get("text") or ""
        raw_sources = answer.get("citations")
        if raw_sources is None:
            raw_sources = retrieval.get("chunks") or []
        if not isinstance(text, str) or not isinstance(raw_sources, list):
            raise TransportError("Invalid JSON response", retryable=False)

        try:
            sources = [SourceRecord.model_validate(s) for s in raw_sources]
        except (ValidationError, ValueError) as e:
            raise TransportError("Invalid JSON response", retryable=False) from e
        return text, sources

    @retry(
        retry=retry_if_exception(_should_retry),
        stop=stop_after_attempt(HISTORY_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def load_conversation(self, conversation_id: str) -> ConversationHistory | None:
        """Fetch a stored upstream conversation.

        Returns:
            The conversation, or None if the service does not know the id.

        Raises:
            TransportError: On network failure or unexpected status (5xx retried)
        """
        url = self.endpoint(conversation_id)
        try:
            response = await self.client.get(
                url,
                headers=self._headers(accept="application/json"),
                timeout=self.settings.timeout,
            )
        except httpx.TimeoutException as e:
            raise AskTimeout("Loading conversation timed out") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Loading conversation failed: {e}") from e

        if response.status_code == 404:
            return None
        if not response.is_success:
            raise TransportError(
                f"Loading conversation failed with status {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return ConversationHistory.model_validate(response.json())
        except ValueError as e:
            raise TransportError("Invalid conversation response", retryable=False) from e
