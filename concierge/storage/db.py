"""
Database helpers for SQLite (local) and Postgres.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from concierge.config import Settings


@dataclass(frozen=True)
class TenantScope:
    """
    Tenant-scoped repository handle.

    Every store method takes one of these; there is no way to query a store
    without naming the tenant.
    """

    tenant_id: str

    def __post_init__(self) -> None:
        if not self.tenant_id or not self.tenant_id.strip():
            raise ValueError("tenant_id must be a non-empty string")


@dataclass(frozen=True)
class Database:
    dialect: str  # "sqlite" or "postgres"
    database_url: Optional[str]
    db_path: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        if settings.database_url:
            return cls(dialect="postgres", database_url=settings.database_url, db_path=settings.db_path)
        return cls(dialect="sqlite", database_url=None, db_path=settings.db_path)

    @property
    def is_postgres(self) -> bool:
        return self.dialect == "postgres"

    def connect(self) -> Any:
        if self.is_postgres:
            import psycopg
            from psycopg.rows import dict_row

            return psycopg.connect(self.database_url, row_factory=dict_row)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def session(self) -> Iterator[Any]:
        """One connection per unit of work; commit on success, always close."""
        conn = self.connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def sql(self, query: str) -> str:
        """
        Convert parameter placeholders for the active dialect.
        SQLite uses '?', Postgres uses '%s'.
        """
        if self.is_postgres:
            return query.replace("?", "%s")
        return query

    def id_column(self) -> str:
        if self.is_postgres:
            return "id BIGSERIAL PRIMARY KEY"
        return "id INTEGER PRIMARY KEY AUTOINCREMENT"

    def init_pragmas(self, conn: Any) -> None:
        if not self.is_postgres:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=3000")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def load_json(value: Optional[str], default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default
