"""SQLite 会话存储。

会话与消息分表存储，load_messages 直接按会话查询消息表。
save_all 在一个事务内完成，失败时整体回滚。
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import List, Sequence

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.models import Conversation, Message, format_ts, parse_ts
from chat_core.domain.exceptions import PersistenceError


CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    position INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    image_ref TEXT DEFAULT NULL,
    PRIMARY KEY (conversation_id, id),
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, seq);
"""


class SqliteConversationStore(ConversationStore):
    def __init__(self, db_path: str | Path | None = None):
        self._db_path = Path(db_path or Path(settings.storage_root) / "conversations.db")
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._connect() as conn:
                conn.executescript(CREATE_TABLES)
        except sqlite3.Error as e:
            raise PersistenceError(code="STORE_OPEN_ERROR", message=str(e))

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(str(self._db_path))
        except sqlite3.Error as e:
            raise PersistenceError(code="STORE_OPEN_ERROR", message=str(e))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def load_all(self) -> List[Conversation]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT id, title, updated_at FROM conversations ORDER BY position"
                ).fetchall()
                return [
                    Conversation(
                        id=row["id"],
                        title=row["title"],
                        messages=self._select_messages(conn, row["id"]),
                        updated_at=parse_ts(row["updated_at"]),
                    )
                    for row in rows
                ]
        except sqlite3.Error as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e))

    def save_all(self, conversations: Sequence[Conversation]) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM messages")
                conn.execute("DELETE FROM conversations")
                for position, conv in enumerate(conversations):
                    conn.execute(
                        "INSERT INTO conversations (id, title, position, updated_at) VALUES (?, ?, ?, ?)",
                        (conv.id, conv.title, position, format_ts(conv.updated_at)),
                    )
                    conn.executemany(
                        """INSERT INTO messages
                           (id, conversation_id, seq, role, content, image_ref)
                           VALUES (?, ?, ?, ?, ?, ?)""",
                        [
                            (m.id, conv.id, seq, m.role, m.content, m.image_ref)
                            for seq, m in enumerate(conv.messages)
                        ],
                    )
        except sqlite3.Error as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))

    def load_messages(self, conversation_id: str) -> List[Message]:
        try:
            with self._connect() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)
                ).fetchone()
                if exists is None:
                    raise PersistenceError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
                return self._select_messages(conn, conversation_id)
        except sqlite3.Error as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e))

    @staticmethod
    def _select_messages(conn: sqlite3.Connection, conversation_id: str) -> List[Message]:
        rows = conn.execute(
            "SELECT id, role, content, image_ref FROM messages WHERE conversation_id = ? ORDER BY seq",
            (conversation_id,),
        ).fetchall()
        return [
            Message(id=r["id"], role=r["role"], content=r["content"], image_ref=r["image_ref"])
            for r in rows
        ]
