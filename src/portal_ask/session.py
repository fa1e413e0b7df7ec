"""Per-request stream session: accumulates events into one assistant turn."""

import logging
from enum import Enum

from .citations import reconcile
from .config import INTERRUPTED_MESSAGE
from .models import (
    ClarificationPayload,
    ConversationTurn,
    ErrorEvent,
    MessageComplete,
    MessageStart,
    SourceRecord,
    SourcesEvent,
    StreamEvent,
    TextDelta,
)
from .store import ConversationStore

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle of a stream session."""

    IDLE = "idle"
    AWAITING_FIRST_EVENT = "awaiting_first_event"
    STREAMING_TEXT = "streaming_text"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"
    CLARIFICATION = "clarification"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {
        SessionState.COMPLETE,
        SessionState.ERROR,
        SessionState.CLARIFICATION,
        SessionState.CANCELLED,
    }
)


def merge_final_sources(
    final: list[SourceRecord],
    accumulated: list[SourceRecord],
) -> list[SourceRecord]:
    """Fill metadata missing from the final source list from the streamed one.

    Final sources usually carry ids and cited flags but may lack titles or
    playback ids that the earlier ``sources`` event had.
    """
    by_key = {s.source_key: s for s in accumulated}
    merged = []
    for src in final:
        orig = by_key.get(src.source_key)
        if orig is None:
            orig = next(
                (s for s in accumulated if s.video_id == src.video_id and s.text == src.text),
                None,
            )
        if orig is None:
            merged.append(src)
            continue
        merged.append(
            src.model_copy(
                update={
                    "id": src.id or orig.id,
                    "title": src.title or orig.title,
                    "playback_id": src.playback_id or orig.playback_id,
                    "speaker": src.speaker or orig.speaker,
                    "end": src.end if src.end is not None else orig.end,
                }
            )
        )
    return merged


class StreamSession:
    """State machine for one streamed answer.

    Owns the accumulated text, the current source list and the citation
    numbering for a single assistant turn, and writes every change through
    the ConversationStore. Once terminal, further events are ignored.

    Transitions:
        idle -> awaiting_first_event      start()
        awaiting_first_event -> streaming text_delta (turn becomes an answer)
        any -> streaming_text             sources (re-reconcile, numbers kept)
        streaming_text -> clarification   message_complete(responseType=clarification)
        streaming_text -> complete        message_complete, or stream end with text
        any -> error                      error event / transport failure
        any -> complete|cancelled         cancel()
    """

    def __init__(self, store: ConversationStore, query: str):
        self.store = store
        self.query = query
        self.state = SessionState.IDLE
        self.turn_id: str | None = None
        self.text = ""
        self.sources: list[SourceRecord] = []
        self.display_numbers: dict[str, int] = {}
        self.conversation_id: str | None = store.conversation_id

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def turn(self) -> ConversationTurn | None:
        if self.turn_id is None:
            return None
        return self.store.get_turn(self.turn_id)

    def start(self) -> ConversationTurn:
        """Create the loading assistant turn."""
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"Session already started ({self.state.value})")
        turn = self.store.begin_assistant_turn()
        self.turn_id = turn.id
        self._transition(SessionState.AWAITING_FIRST_EVENT)
        return turn

    def apply(self, event: StreamEvent) -> bool:
        """Process one decoded event.

        Returns:
            True while the session still accepts events.
        """
        if self.terminal:
            logger.debug(f"Ignoring {event.type} after terminal state {self.state.value}")
            return False
        if self.state is SessionState.IDLE:
            raise RuntimeError("Session not started")

        if isinstance(event, MessageStart):
            self._adopt_conversation_id(event.id)
        elif isinstance(event, TextDelta):
            self._on_text_delta(event)
        elif isinstance(event, SourcesEvent):
            self._on_sources(event)
        elif isinstance(event, MessageComplete):
            self._on_complete(event)
        elif isinstance(event, ErrorEvent):
            self.fail(event.message, retryable=event.retryable)
        # Done is a transport marker; end_of_stream() handles it

        return not self.terminal

    def fail(self, message: str, retryable: bool = True, timed_out: bool = False) -> None:
        """Finish with an error, keeping any partial answer visible."""
        if self.terminal:
            return
        if self.text:
            logger.warning(f"Stream failed after partial answer: {message}")
            self._finalize(
                SessionState.ERROR,
                kind="answer",
                notice=message,
                retryable=retryable,
                timed_out=timed_out,
            )
            return

        logger.warning(f"Stream failed: {message}")
        self._transition(SessionState.ERROR)
        self.store.finalize_turn(
            self.turn_id,
            kind="error",
            text=message,
            render_text=message,
            citations=[],
            retryable=retryable,
            timed_out=timed_out,
        )

    def end_of_stream(self) -> None:
        """The transport closed. Finalize from the accumulator if nothing terminal arrived."""
        if self.terminal:
            return
        if self.text:
            logger.info("Stream ended without message_complete, using accumulated text")
            self._finalize(SessionState.COMPLETE, kind="answer")
        else:
            self.fail(INTERRUPTED_MESSAGE, retryable=True)

    def cancel(self) -> None:
        """User stop or resubmission. Never reported as an error."""
        if self.terminal or self.state is SessionState.IDLE:
            return
        if self.text:
            self._finalize(SessionState.COMPLETE, kind="answer", stopped=True)
        else:
            self._transition(SessionState.CANCELLED)
            self.store.finalize_turn(self.turn_id, kind="answer", stopped=True)

    # -- event handlers --

    def _on_text_delta(self, event: TextDelta) -> None:
        self._transition(SessionState.STREAMING_TEXT)
        self.text += event.delta
        self._render(kind="answer")

    def _on_sources(self, event: SourcesEvent) -> None:
        self._transition(SessionState.STREAMING_TEXT)
        self.sources = list(event.sources)
        self._render()

    def _on_complete(self, event: MessageComplete) -> None:
        self._adopt_conversation_id(event.conversation_id)

        if event.is_clarification:
            self._on_clarification(event)
            return

        self._transition(SessionState.FINALIZING)
        if event.content:
            self.text = event.content
        if event.sources:
            self.sources = merge_final_sources(event.sources, self.sources)
        self._finalize(SessionState.COMPLETE, kind="answer")

    def _on_clarification(self, event: MessageComplete) -> None:
        questions = list(event.clarifying_questions)
        if not questions and event.content:
            questions = [event.content]
        content = event.content or "\n".join(questions)

        self.text = ""
        self.sources = []
        self._transition(SessionState.CLARIFICATION)
        self.store.finalize_turn(
            self.turn_id,
            kind="clarification",
            text=content,
            render_text=content,
            citations=[],
            clarification=ClarificationPayload(
                questions=questions,
                original_query=self.query,
                conversation_id=self.conversation_id,
            ),
        )

    # -- helpers --

    def _adopt_conversation_id(self, conversation_id: str | None) -> None:
        if conversation_id:
            self.conversation_id = conversation_id
            self.store.set_conversation_id(conversation_id)

    def _reconcile(self) -> dict:
        result = reconcile(self.text, self.sources, seed=self.display_numbers)
        self.display_numbers = result.display_numbers
        return {
            "text": self.text,
            "render_text": result.render_text,
            "citations": result.citations,
        }

    def _render(self, **changes) -> None:
        self.store.update_turn(self.turn_id, **self._reconcile(), **changes)

    def _finalize(self, state: SessionState, **changes) -> None:
        self._transition(state)
        self.store.finalize_turn(self.turn_id, **self._reconcile(), **changes)

    def _transition(self, state: SessionState) -> None:
        if state is not self.state:
            logger.debug(f"Session {self.turn_id}: {self.state.value} -> {state.value}")
            self.state = state
