"""Pydantic models for portal-ask."""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

Role = Literal["user", "assistant"]
TurnKind = Literal["loading", "answer", "clarification", "error"]


def parse_seconds(value: Any) -> float | None:
    """Convert a wire time value ("07:13", "1:02:03", 433, "433") to seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if ":" in text:
        seconds = 0.0
        for part in text.split(":"):
            seconds = seconds * 60 + float(part or 0)
        return seconds
    return float(text)


class WireModel(BaseModel):
    """Base for models parsed from upstream JSON.

    Unknown keys are ignored and explicit nulls fall back to field defaults.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class SourceRecord(WireModel):
    """A transcript excerpt the answer may cite."""

    id: str | None = None
    video_id: str = ""
    title: str = ""
    start: float = 0.0  # seconds
    end: float | None = None  # seconds
    text: str = ""
    playback_id: str | None = None
    speaker: str | None = None
    cited: bool | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_wire_keys(cls, data: Any) -> Any:
        """Accept snake_case, camelCase and the legacy citation shape."""
        if not isinstance(data, dict):
            return data
        d = {k: v for k, v in data.items() if v is not None}

        def first(*keys: str) -> Any:
            for key in keys:
                if key in d:
                    return d[key]
            return None

        normalized: dict[str, Any] = {
            "id": first("id"),
            "video_id": first("video_id", "videoId"),
            "title": first("title", "video_title", "videoTitle"),
            "text": first("text", "transcript_excerpt", "transcriptExcerpt"),
            "playback_id": first("playback_id", "playbackId"),
            "speaker": first("speaker"),
            "cited": first("cited"),
        }

        start = first("start", "timestamp")
        if start is None and first("start_ms", "startMs", "timestampStartMs") is not None:
            start = float(first("start_ms", "startMs", "timestampStartMs")) / 1000
        if start is None:
            start = first("timestamp_start", "timestampStart")
        end = first("end", "timestamp_end", "timestampEnd")
        if end is None and first("end_ms", "endMs", "timestampEndMs") is not None:
            end = float(first("end_ms", "endMs", "timestampEndMs")) / 1000
        normalized["start"] = parse_seconds(start)
        normalized["end"] = parse_seconds(end)

        return {k: v for k, v in normalized.items() if v is not None}

    @property
    def source_key(self) -> str:
        """Identity: the explicit id when supplied, else (video, start offset)."""
        if self.id:
            return self.id
        return f"{self.video_id}_{int(round(self.start * 1000))}"

    def to_public(self) -> dict[str, Any]:
        """Stable public shape re-emitted to browsers."""
        return {
            "id": self.id,
            "video_id": self.video_id,
            "title": self.title,
            "timestamp": self.start,
            "timestamp_end": self.end,
            "text": self.text,
            "playback_id": self.playback_id,
            "speaker": self.speaker,
            "cited": self.cited,
        }


# =============================================================================
# Stream events
# =============================================================================


class MessageStart(WireModel):
    """Upstream accepted the request; carries the conversation id."""

    type: Literal["message_start"] = "message_start"
    id: str | None = None


class TextDelta(WireModel):
    """Incremental answer text."""

    type: Literal["text_delta"] = "text_delta"
    delta: str = ""


class SourcesEvent(WireModel):
    """Full replacement of the source list."""

    type: Literal["sources"] = "sources"
    sources: list[SourceRecord] = Field(default_factory=list)


class MessageComplete(WireModel):
    """Terminal event with the authoritative answer (or a clarification)."""

    type: Literal["message_complete"] = "message_complete"
    content: str | None = None
    sources: list[SourceRecord] | None = None
    conversation_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("conversation_id", "conversationId"),
    )
    response_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("response_type", "responseType", "mode"),
    )
    clarifying_questions: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("clarifying_questions", "clarifyingQuestions", "questions"),
    )

    @property
    def is_clarification(self) -> bool:
        return self.response_type == "clarification"


class ErrorEvent(WireModel):
    """Upstream-declared failure."""

    type: Literal["error"] = "error"
    code: str | int | None = None
    message: str = "An error occurred"
    retryable: bool = False


class Done(BaseModel):
    """Transport-level end-of-stream marker ([DONE])."""

    type: Literal["done"] = "done"


StreamEvent = Annotated[
    Union[MessageStart, TextDelta, SourcesEvent, MessageComplete, ErrorEvent, Done],
    Field(discriminator="type"),
]


# =============================================================================
# Conversation
# =============================================================================


class Citation(BaseModel):
    """A source as shown next to an answer, with its display number."""

    id: str
    number: int  # 1-based, by first appearance in the answer
    video_id: str
    playback_id: str = ""
    speaker: str = "Speaker"
    title: str = "Untitled"
    text: str = ""
    start: float = 0.0
    end: float = 0.0
    timestamp_start: str = "00:00"
    timestamp_end: str = "00:00"
    cited: bool = True


class Reconciliation(BaseModel):
    """Result of matching answer markers against sources."""

    citations: list[Citation] = Field(default_factory=list)
    display_numbers: dict[str, int] = Field(default_factory=dict)
    render_text: str = ""


class ClarificationPayload(BaseModel):
    """Follow-up question asked by the upstream instead of an answer."""

    questions: list[str] = Field(default_factory=list)
    original_query: str = ""
    conversation_id: str | None = None


class ConversationTurn(BaseModel):
    """One user or assistant message in a conversation."""

    id: str
    role: Role
    text: str = ""
    render_text: str = ""  # text with citation placeholders
    citations: list[Citation] = Field(default_factory=list)
    kind: TurnKind = "answer"
    clarification: ClarificationPayload | None = None
    notice: str | None = None  # warning shown after a partial answer
    retryable: bool = False
    timed_out: bool = False
    stopped: bool = False  # user or resubmission cancelled the stream
    final: bool = False
    created_at: datetime | None = None


class HistoryMessage(WireModel):
    """A message from a stored upstream conversation."""

    id: str = ""
    role: Role = "assistant"
    content: str = ""
    sources: list[SourceRecord] = Field(default_factory=list)
    inserted_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("inserted_at", "insertedAt"),
    )


class ConversationHistory(WireModel):
    """Upstream conversation fetched by id."""

    conversation_id: str = Field(
        validation_alias=AliasChoices("conversation_id", "conversationId"),
    )
    messages: list[HistoryMessage] = Field(default_factory=list)
    original_query: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _lift_metadata(cls, data: Any) -> Any:
        if isinstance(data, dict) and "original_query" not in data:
            metadata = data.get("metadata") or {}
            query = metadata.get("originalQuery") or metadata.get("original_query")
            if query:
                data = {**data, "original_query": query}
        return data


class StoredConversation(BaseModel):
    """Locally persisted conversation."""

    id: str  # UUID
    upstream_id: str | None = None  # conversation id assigned by the service
    title: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
