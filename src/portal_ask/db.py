"""SQLite database operations for portal-ask."""

import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path

from .config import DB_PATH, ensure_data_dir
from .models import Citation, ConversationTurn, StoredConversation

DEFAULT_TITLE = "New Chat"

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    upstream_id TEXT,
    title TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS turns (
    id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    role TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'answer',
    text TEXT NOT NULL,
    render_text TEXT,
    citations TEXT,
    notice TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (conversation_id, id),
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE INDEX IF NOT EXISTS idx_turns_conversation ON turns(conversation_id, seq);
CREATE INDEX IF NOT EXISTS idx_conversations_upstream ON conversations(upstream_id);
"""


def generate_title(query: str, max_length: int = 50) -> str:
    """Generate a conversation title from the first question.

    Takes the query up to max_length chars, cut at a word boundary.
    """
    title = " ".join(query.split())

    lowered = title.lower()
    for prefix in ["can you ", "please ", "could you ", "tell me "]:
        if lowered.startswith(prefix):
            title = title[len(prefix) :]
            break

    if len(title) > max_length:
        cut = title[:max_length].rfind(" ")
        if cut > max_length // 2:
            title = title[:cut] + "..."
        else:
            title = title[:max_length] + "..."

    if title:
        title = title[0].upper() + title[1:]
    return title or DEFAULT_TITLE


class Database:
    """SQLite database wrapper for locally saved conversations."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            if self.db_path == DB_PATH:
                ensure_data_dir()
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "Database":
        """Context manager entry - initializes if needed."""
        self.init()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit - closes connection."""
        self.close()

    def init(self) -> None:
        """Initialize database schema."""
        conn = self.connect()
        conn.executescript(SCHEMA)
        conn.commit()

    # Conversation methods

    def _conversation_from_row(self, row: sqlite3.Row) -> StoredConversation:
        return StoredConversation(**dict(row))

    def create_conversation(
        self,
        title: str | None = None,
        upstream_id: str | None = None,
        conversation_id: str | None = None,
    ) -> StoredConversation:
        """Create a new local conversation.

        Args:
            title: Defaults to "New Chat" (replaced on the first question).
            upstream_id: Conversation id assigned by the service, if known.
            conversation_id: Local id; a UUID is generated if omitted.
        """
        conn = self.connect()
        conversation_id = conversation_id or str(uuid.uuid4())
        now = datetime.now()
        conn.execute(
            """
            INSERT INTO conversations (id, upstream_id, title, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                conversation_id,
                upstream_id,
                title or DEFAULT_TITLE,
                now.isoformat(),
                now.isoformat(),
            ),
        )
        conn.commit()
        return StoredConversation(
            id=conversation_id,
            upstream_id=upstream_id,
            title=title or DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
        )

    def get_conversation(self, conversation_id: str) -> StoredConversation | None:
        """Get a conversation by ID, ID prefix or upstream ID."""
        conn = self.connect()
        row = conn.execute(
            "SELECT * FROM conversations WHERE id = ? OR upstream_id = ?",
            (conversation_id, conversation_id),
        ).fetchone()
        if row:
            return self._conversation_from_row(row)

        rows = conn.execute(
            "SELECT * FROM conversations WHERE id LIKE ? ORDER BY updated_at DESC",
            (f"{conversation_id}%",),
        ).fetchall()
        if len(rows) == 1:
            return self._conversation_from_row(rows[0])
        return None

    def list_conversations(self, limit: int = 20) -> list[StoredConversation]:
        """List recent conversations, most recent first."""
        conn = self.connect()
        rows = conn.execute(
            "SELECT * FROM conversations ORDER BY updated_at DESC LIMIT ?", (limit,)
        ).fetchall()
        return [self._conversation_from_row(row) for row in rows]

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        """Update a conversation's title."""
        conn = self.connect()
        conn.execute(
            "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
            (title, datetime.now().isoformat(), conversation_id),
        )
        conn.commit()

    def set_upstream_id(self, conversation_id: str, upstream_id: str) -> None:
        """Record the conversation id assigned by the service."""
        conn = self.connect()
        conn.execute(
            "UPDATE conversations SET upstream_id = ?, updated_at = ? WHERE id = ?",
            (upstream_id, datetime.now().isoformat(), conversation_id),
        )
        conn.commit()

    def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and all its turns."""
        conn = self.connect()
        conn.execute("DELETE FROM turns WHERE conversation_id = ?", (conversation_id,))
        conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        conn.commit()

    # Turn methods

    def save_turn(self, conversation_id: str, turn: ConversationTurn) -> None:
        """Persist a finalized turn.

        The first user question of a "New Chat" conversation becomes its title.
        """
        conn = self.connect()
        now = datetime.now()
        existing = conn.execute(
            "SELECT seq FROM turns WHERE conversation_id = ? AND id = ?",
            (conversation_id, turn.id),
        ).fetchone()
        if existing:
            seq = existing[0]
        else:
            seq = conn.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 FROM turns WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()[0]
        citations = json.dumps([c.model_dump() for c in turn.citations])
        created_at = turn.created_at or now
        conn.execute(
            """
            INSERT OR REPLACE INTO turns
                (id, conversation_id, seq, role, kind, text, render_text,
                 citations, notice, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                turn.id,
                conversation_id,
                seq,
                turn.role,
                turn.kind,
                turn.text,
                turn.render_text,
                citations,
                turn.notice,
                created_at.isoformat(),
            ),
        )
        conn.execute(
            "UPDATE conversations SET updated_at = ? WHERE id = ?",
            (now.isoformat(), conversation_id),
        )
        conn.commit()

        if turn.role == "user":
            conversation = self.get_conversation(conversation_id)
            if conversation and conversation.title == DEFAULT_TITLE:
                self.update_conversation_title(conversation_id, generate_title(turn.text))

    def get_turns(self, conversation_id: str, limit: int | None = None) -> list[ConversationTurn]:
        """Get turns of a conversation, oldest first."""
        conn = self.connect()
        if limit:
            rows = conn.execute(
                """
                SELECT * FROM (
                    SELECT * FROM turns
                    WHERE conversation_id = ?
                    ORDER BY seq DESC
                    LIMIT ?
                ) ORDER BY seq ASC
                """,
                (conversation_id, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM turns WHERE conversation_id = ? ORDER BY seq ASC",
                (conversation_id,),
            ).fetchall()

        turns = []
        for row in rows:
            citations = [Citation(**c) for c in json.loads(row["citations"] or "[]")]
            turns.append(
                ConversationTurn(
                    id=row["id"],
                    role=row["role"],
                    kind=row["kind"],
                    text=row["text"],
                    render_text=row["render_text"] or row["text"],
                    citations=citations,
                    notice=row["notice"],
                    final=True,
                    created_at=row["created_at"],
                )
            )
        return turns

    def get_turn_count(self, conversation_id: str) -> int:
        """Get count of turns in a conversation."""
        conn = self.connect()
        count = conn.execute(
            "SELECT COUNT(*) FROM turns WHERE conversation_id = ?", (conversation_id,)
        ).fetchone()[0]
        return count
