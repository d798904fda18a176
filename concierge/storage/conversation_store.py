from __future__ import annotations

from typing import Any, List

from concierge.models import ConversationMessage, MessageAction, NewMessage
from concierge.storage.db import Database, TenantScope, dump_json, from_ts, load_json, to_ts, utcnow


class ConversationStore:
    """
    Append-only message log plus a conversation metadata row.

    Messages are ordered by created_at, ties broken by insertion id, so two
    messages saved in the same microsecond still read back in write order.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def init_schema(self) -> None:
        with self.db.session() as conn:
            self.db.init_pragmas(conn)
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS conversation_messages (
                    {self.db.id_column()},
                    tenant_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    action TEXT,
                    metadata TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversation_messages_lookup "
                "ON conversation_messages (tenant_id, user_id, conversation_id, created_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    tenant_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    conversation_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, user_id, conversation_id)
                )
                """
            )

    def _row_to_message(self, row: Any) -> ConversationMessage:
        action = load_json(row["action"])
        return ConversationMessage(
            tenant_id=row["tenant_id"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            action=MessageAction.model_validate(action) if action else None,
            metadata=load_json(row["metadata"]),
            created_at=from_ts(row["created_at"]),
        )

    def save_message(
        self,
        scope: TenantScope,
        user_id: str,
        conversation_id: str,
        message: NewMessage,
    ) -> ConversationMessage:
        created_at = utcnow()
        action = message.action.model_dump(mode="json") if message.action else None
        with self.db.session() as conn:
            conn.execute(
                self.db.sql(
                    "INSERT INTO conversation_messages "
                    "(tenant_id, user_id, conversation_id, role, content, action, metadata, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
                ),
                (
                    scope.tenant_id,
                    user_id,
                    conversation_id,
                    message.role,
                    message.content,
                    dump_json(action),
                    dump_json(message.metadata),
                    to_ts(created_at),
                ),
            )
        return ConversationMessage(
            tenant_id=scope.tenant_id,
            user_id=user_id,
            conversation_id=conversation_id,
            role=message.role,
            content=message.content,
            action=message.action,
            metadata=message.metadata,
            created_at=created_at,
        )

    def get_last_messages(
        self,
        scope: TenantScope,
        user_id: str,
        conversation_id: str,
        limit: int = 4,
    ) -> List[ConversationMessage]:
        """Most recent `limit` messages, returned oldest first."""
        if limit <= 0:
            return []
        with self.db.session() as conn:
            rows = conn.execute(
                self.db.sql(
                    "SELECT tenant_id, user_id, conversation_id, role, content, action, metadata, created_at "
                    "FROM conversation_messages "
                    "WHERE tenant_id = ? AND user_id = ? AND conversation_id = ? "
                    "ORDER BY created_at DESC, id DESC LIMIT ?"
                ),
                (scope.tenant_id, user_id, conversation_id, limit),
            ).fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    def upsert_conversation(self, scope: TenantScope, user_id: str, conversation_id: str) -> None:
        now = to_ts(utcnow())
        with self.db.session() as conn:
            conn.execute(
                self.db.sql(
                    "INSERT INTO conversations (tenant_id, user_id, conversation_id, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?) "
                    "ON CONFLICT (tenant_id, user_id, conversation_id) DO UPDATE SET updated_at = excluded.updated_at"
                ),
                (scope.tenant_id, user_id, conversation_id, now, now),
            )
