"""Conversation controller - async interface for the CLI and other UIs."""

import asyncio
import logging
from contextlib import aclosing

from .citations import reconcile
from .config import TIMEOUT_MESSAGE
from .models import ConversationHistory, ConversationTurn
from .session import StreamSession
from .store import ConversationStore
from .transport import AbortSignal, AskTimeout, AskTransport, TransportError

logger = logging.getLogger(__name__)


def history_to_turns(history: ConversationHistory) -> list[ConversationTurn]:
    """Rebuild display turns from a stored upstream conversation.

    Messages without an id get one derived from the conversation id, so turns
    of different conversations never share an id. If the history holds no
    user message, the original query is shown as the opening question.
    """
    turns = []
    if history.original_query and not any(m.role == "user" for m in history.messages):
        turns.append(
            ConversationTurn(
                id=f"{history.conversation_id}-query",
                role="user",
                text=history.original_query,
                render_text=history.original_query,
                final=True,
            )
        )

    for i, message in enumerate(history.messages):
        turn_id = message.id or f"{history.conversation_id}-{message.role}-{i}"
        if message.role == "user":
            turns.append(
                ConversationTurn(
                    id=turn_id,
                    role="user",
                    text=message.content,
                    render_text=message.content,
                    final=True,
                    created_at=message.inserted_at,
                )
            )
            continue
        result = reconcile(message.content, message.sources)
        turns.append(
            ConversationTurn(
                id=turn_id,
                role="assistant",
                text=message.content,
                render_text=result.render_text,
                citations=result.citations,
                final=True,
                created_at=message.inserted_at,
            )
        )
    return turns


class AskConversation:
    """One multi-turn conversation with the ask service.

    Runs at most one StreamSession at a time. A new question aborts the
    session in flight and waits for it to unwind before anything of the new
    request is consumed, so the store never sees two streaming turns.
    """

    def __init__(self, transport: AskTransport, store: ConversationStore | None = None):
        self.transport = transport
        self.store = store or ConversationStore()
        self._session: StreamSession | None = None
        self._signal: AbortSignal | None = None
        self._tasks: dict[asyncio.Task, int] = {}
        self._generation = 0

    @property
    def active_session(self) -> StreamSession | None:
        """The session currently streaming, if any."""
        if self._session is not None and not self._session.terminal:
            return self._session
        return None

    @property
    def conversation_id(self) -> str | None:
        return self.store.conversation_id

    async def ask(self, query: str, deep: bool = False) -> ConversationTurn | None:
        """Ask a question and stream the answer into the store.

        Args:
            query: User's question
            deep: Allow the long (deep answer) timeout

        Returns:
            The finalized assistant turn, or None if a newer question
            superseded this one before it started.
        """
        return await self._ask(query, deep, self._next_generation())

    async def _ask(self, query: str, deep: bool, generation: int) -> ConversationTurn | None:
        await self._abort_previous(generation)
        if generation != self._generation:
            logger.debug(f"Question superseded before sending: {query[:50]}")
            return None

        self.store.add_user_turn(query)
        session = StreamSession(self.store, query)
        signal = AbortSignal()
        self._session, self._signal = session, signal
        session.start()

        logger.info(f"Asking (conversation={self.store.conversation_id}, deep={deep})")
        try:
            events = self.transport.send(
                query,
                conversation_id=self.store.conversation_id,
                signal=signal,
                deep=deep,
            )
            async with aclosing(events):
                async for event in events:
                    if signal.aborted or not session.apply(event):
                        break
            if signal.aborted:
                session.cancel()
            else:
                session.end_of_stream()
        except asyncio.CancelledError:
            session.cancel()
            raise
        except AskTimeout as e:
            logger.warning(f"Ask timed out: {e}")
            session.fail(TIMEOUT_MESSAGE, retryable=True, timed_out=True)
        except TransportError as e:
            logger.warning(f"Ask failed: {e}")
            session.fail(str(e), retryable=e.retryable)
        finally:
            if self._session is session:
                self._signal = None

        return session.turn

    def submit(self, query: str, deep: bool = False) -> asyncio.Task:
        """Start ``ask`` in the background and return its task."""
        generation = self._next_generation()
        task = asyncio.create_task(self._ask(query, deep, generation))
        self._tasks[task] = generation
        task.add_done_callback(lambda t: self._tasks.pop(t, None))
        return task

    def stop(self) -> None:
        """Stop the answer in flight. The partial answer (if any) is kept."""
        if self._signal is not None:
            logger.info("Stopping current response")
            self._signal.abort("stopped")

    async def reset(self) -> None:
        """Stop any answer in flight and start a fresh conversation."""
        await self._abort_previous(self._next_generation())
        self._session = None
        self.store.clear()

    async def retry(self, deep: bool = False) -> ConversationTurn | None:
        """Ask the last user question again."""
        query = self.store.last_user_query()
        if query is None:
            return None
        return await self.ask(query, deep=deep)

    async def answer_clarification(self, text: str, deep: bool = False) -> ConversationTurn | None:
        """Reply to a clarifying question in the same conversation."""
        last = self.store.last_assistant_turn
        if last is not None and last.clarification is not None:
            self.store.set_conversation_id(last.clarification.conversation_id)
        return await self.ask(text, deep=deep)

    async def load(self, conversation_id: str) -> ConversationHistory | None:
        """Replace the store with a conversation fetched from the service.

        Returns:
            The fetched history, or None if the service does not know the id.
        """
        await self._abort_previous(self._next_generation())
        history = await self.transport.load_conversation(conversation_id)
        if history is None:
            logger.info(f"Conversation not found: {conversation_id}")
            return None
        self._session = None
        self.store.replace(history_to_turns(history), history.conversation_id)
        return history

    def _next_generation(self) -> int:
        """Supersede everything started so far. Returns the new generation."""
        self._generation += 1
        if self._signal is not None:
            self._signal.abort("superseded")
        return self._generation

    async def _abort_previous(self, generation: int) -> None:
        """Wait for older submitted questions to unwind."""
        older = [t for t, g in self._tasks.items() if g < generation and not t.done()]
        if older:
            await asyncio.gather(*older, return_exceptions=True)

        # ask() awaited directly (no task): finalize its turn here
        if self._session is not None and not self._session.terminal:
            self._session.cancel()
