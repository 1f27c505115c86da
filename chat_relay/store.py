"""Conversation store interface and two implementations.

The relay only ever creates conversations, appends messages, lists them and
sets a title once; it never edits or reorders a persisted message.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Literal, Optional, Protocol
from uuid import uuid4

from .errors import StoreError

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant"]


@dataclass
class Conversation:
    id: str
    owner_id: str
    title: Optional[str]
    created_at: datetime


@dataclass
class MessageRecord:
    id: str
    conversation_id: str
    owner_id: str
    role: Role
    content: str
    created_at: datetime

    def as_prompt_entry(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class ConversationStore(Protocol):
    def create_conversation(self, owner_id: str) -> Conversation:
        ...

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    def get_conversation_title(self, conversation_id: str) -> Optional[str]:
        ...

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        ...

    def list_conversations(self, owner_id: str) -> List[Conversation]:
        ...

    def append_message(self, conversation_id: str, role: Role, content: str, owner_id: str) -> MessageRecord:
        ...

    def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        ...

    def delete_message(self, message_id: str, owner_id: str) -> bool:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryConversationStore:
    """Process-local store; every operation is serialised by one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[MessageRecord]] = {}

    def create_conversation(self, owner_id: str) -> Conversation:
        conv = Conversation(id=uuid4().hex, owner_id=owner_id, title=None, created_at=_now())
        with self._lock:
            self._conversations[conv.id] = conv
            self._messages[conv.id] = []
        return replace(conv)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conv = self._conversations.get(conversation_id)
            return replace(conv) if conv else None

    def get_conversation_title(self, conversation_id: str) -> Optional[str]:
        conv = self.get_conversation(conversation_id)
        return conv.title if conv else None

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        with self._lock:
            conv = self._conversations.get(conversation_id)
            if conv is None:
                raise StoreError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
            conv.title = title

    def list_conversations(self, owner_id: str) -> List[Conversation]:
        with self._lock:
            items = [replace(c) for c in self._conversations.values() if c.owner_id == owner_id]
        return sorted(items, key=lambda c: c.created_at, reverse=True)

    def append_message(self, conversation_id: str, role: Role, content: str, owner_id: str) -> MessageRecord:
        with self._lock:
            if conversation_id not in self._conversations:
                raise StoreError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
            record = MessageRecord(
                id=uuid4().hex,
                conversation_id=conversation_id,
                owner_id=owner_id,
                role=role,
                content=content,
                created_at=_now(),
            )
            self._messages[conversation_id].append(record)
        return replace(record)

    def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        with self._lock:
            items = [replace(m) for m in self._messages.get(conversation_id, [])]
        # sorted() is stable, so equal timestamps keep insertion order.
        return sorted(items, key=lambda m: m.created_at)

    def delete_message(self, message_id: str, owner_id: str) -> bool:
        with self._lock:
            for messages in self._messages.values():
                for idx, message in enumerate(messages):
                    if message.id == message_id and message.owner_id == owner_id:
                        del messages[idx]
                        return True
        return False


class SqliteConversationStore:
    """SQLite-backed storage for conversations and messages."""

    def __init__(self, db_path: Path | str):
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _migrate(self) -> None:
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (conversation_id) REFERENCES conversations(id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conv
                ON messages(conversation_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_conversations_owner
                ON conversations(owner_id, created_at);
        """)
        self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def create_conversation(self, owner_id: str) -> Conversation:
        conv = Conversation(id=uuid4().hex, owner_id=owner_id, title=None, created_at=_now())
        self._write(
            "INSERT INTO conversations (id, owner_id, title, created_at) VALUES (?, ?, NULL, ?)",
            (conv.id, owner_id, conv.created_at.isoformat()),
        )
        return conv

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        row = self._read_one(
            "SELECT id, owner_id, title, created_at FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        return self._to_conversation(row) if row else None

    def get_conversation_title(self, conversation_id: str) -> Optional[str]:
        row = self._read_one("SELECT title FROM conversations WHERE id = ?", (conversation_id,))
        return row["title"] if row else None

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        updated = self._write("UPDATE conversations SET title = ? WHERE id = ?", (title, conversation_id))
        if not updated:
            raise StoreError(code="CONVERSATION_NOT_FOUND", message=conversation_id)

    def list_conversations(self, owner_id: str) -> List[Conversation]:
        rows = self._read_all(
            "SELECT id, owner_id, title, created_at FROM conversations "
            "WHERE owner_id = ? ORDER BY created_at DESC",
            (owner_id,),
        )
        return [self._to_conversation(row) for row in rows]

    def append_message(self, conversation_id: str, role: Role, content: str, owner_id: str) -> MessageRecord:
        record = MessageRecord(
            id=uuid4().hex,
            conversation_id=conversation_id,
            owner_id=owner_id,
            role=role,
            content=content,
            created_at=_now(),
        )
        self._write(
            "INSERT INTO messages (id, conversation_id, owner_id, role, content, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (record.id, conversation_id, owner_id, role, content, record.created_at.isoformat()),
        )
        return record

    def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        rows = self._read_all(
            "SELECT id, conversation_id, owner_id, role, content, created_at FROM messages "
            "WHERE conversation_id = ? ORDER BY created_at ASC, seq ASC",
            (conversation_id,),
        )
        return [
            MessageRecord(
                id=row["id"],
                conversation_id=row["conversation_id"],
                owner_id=row["owner_id"],
                role=row["role"],
                content=row["content"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def delete_message(self, message_id: str, owner_id: str) -> bool:
        return bool(self._write("DELETE FROM messages WHERE id = ? AND owner_id = ?", (message_id, owner_id)))

    def _write(self, sql: str, params: tuple) -> int:
        try:
            with self._lock:
                cur = self.conn.execute(sql, params)
                self.conn.commit()
                return cur.rowcount
        except sqlite3.Error as exc:
            logger.error("SQLite write failed: %s", exc)
            raise StoreError(code="STORE_WRITE_ERROR", message=str(exc)) from exc

    def _read_one(self, sql: str, params: tuple) -> Optional[sqlite3.Row]:
        rows = self._read_all(sql, params)
        return rows[0] if rows else None

    def _read_all(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        try:
            with self._lock:
                return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            logger.error("SQLite read failed: %s", exc)
            raise StoreError(code="STORE_READ_ERROR", message=str(exc)) from exc

    @staticmethod
    def _to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
