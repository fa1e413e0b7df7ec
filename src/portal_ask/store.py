"""Client-side conversation store: the ordered list of turns the UI renders."""

import uuid
from collections.abc import Callable
from datetime import datetime

from .models import ConversationTurn

Listener = Callable[[ConversationTurn | None], None]


class StoreError(Exception):
    """Invalid store mutation (second in-flight turn, update of a final turn)."""

    pass


class ConversationStore:
    """Append-only list of turns plus the conversation id.

    At most one assistant turn is in flight at a time; it is mutated in place
    until finalized, after which it is read-only. Listeners are called with
    the changed turn (or None when the whole list changed).
    """

    def __init__(self):
        self.turns: list[ConversationTurn] = []
        self.conversation_id: str | None = None
        self.streaming_turn_id: str | None = None
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, turn: ConversationTurn | None) -> None:
        for listener in list(self._listeners):
            listener(turn)

    def _index(self, turn_id: str) -> int:
        for i, turn in enumerate(self.turns):
            if turn.id == turn_id:
                return i
        raise StoreError(f"Unknown turn: {turn_id}")

    def get_turn(self, turn_id: str) -> ConversationTurn | None:
        for turn in self.turns:
            if turn.id == turn_id:
                return turn
        return None

    @property
    def in_flight(self) -> ConversationTurn | None:
        """The assistant turn currently being streamed, if any."""
        if self.streaming_turn_id is None:
            return None
        return self.get_turn(self.streaming_turn_id)

    @property
    def last_assistant_turn(self) -> ConversationTurn | None:
        for turn in reversed(self.turns):
            if turn.role == "assistant":
                return turn
        return None

    def history_for_display(self) -> list[ConversationTurn]:
        """Turns to render. Stopped assistant turns that never got text are hidden."""
        return [
            t
            for t in self.turns
            if not (t.role == "assistant" and t.stopped and not t.text)
        ]

    def last_user_query(self) -> str | None:
        for turn in reversed(self.turns):
            if turn.role == "user":
                return turn.text
        return None

    def add_user_turn(self, text: str) -> ConversationTurn:
        turn = ConversationTurn(
            id=f"user-{uuid.uuid4()}",
            role="user",
            text=text,
            render_text=text,
            kind="answer",
            final=True,
            created_at=datetime.now(),
        )
        self.turns.append(turn)
        self._notify(turn)
        return turn

    def begin_assistant_turn(self) -> ConversationTurn:
        """Append a loading assistant turn and mark it in flight."""
        if self.streaming_turn_id is not None:
            raise StoreError("Another response is still streaming")
        turn = ConversationTurn(
            id=f"assistant-{uuid.uuid4()}",
            role="assistant",
            kind="loading",
            created_at=datetime.now(),
        )
        self.turns.append(turn)
        self.streaming_turn_id = turn.id
        self._notify(turn)
        return turn

    def update_turn(self, turn_id: str, **changes) -> ConversationTurn:
        """Replace fields of a non-final turn."""
        index = self._index(turn_id)
        turn = self.turns[index]
        if turn.final:
            raise StoreError(f"Turn {turn_id} is final")
        updated = turn.model_copy(update=changes)
        self.turns[index] = updated
        self._notify(updated)
        return updated

    def finalize_turn(self, turn_id: str, **changes) -> ConversationTurn:
        """Apply last changes, make the turn immutable and release the in-flight slot."""
        turn = self.update_turn(turn_id, final=True, **changes)
        if self.streaming_turn_id == turn_id:
            self.streaming_turn_id = None
        return turn

    def set_conversation_id(self, conversation_id: str | None) -> None:
        """Adopt a conversation id. An assigned id is never dropped by None."""
        if conversation_id:
            self.conversation_id = conversation_id

    def replace(self, turns: list[ConversationTurn], conversation_id: str | None) -> None:
        """Load a full conversation (e.g. from history)."""
        self.turns = [t.model_copy(update={"final": True}) for t in turns]
        self.conversation_id = conversation_id
        self.streaming_turn_id = None
        self._notify(None)

    def clear(self) -> None:
        self.turns = []
        self.conversation_id = None
        self.streaming_turn_id = None
        self._notify(None)
