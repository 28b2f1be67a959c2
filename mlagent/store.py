"""Durable records of accounts, questions and the audit log (SQLite backend)."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import fields
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from mlagent.models import Account, AuditLogEntry, Question, QuestionStatus
from mlagent.utils.logging import get_logger

log = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    ml_user_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    site_id TEXT NOT NULL DEFAULT 'MLB',
    nickname TEXT NOT NULL DEFAULT '',
    thumbnail TEXT,
    access_token TEXT NOT NULL DEFAULT '',
    refresh_token TEXT NOT NULL DEFAULT '',
    token_expires_at TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_accounts_seller ON accounts (ml_user_id);

CREATE TABLE IF NOT EXISTS questions (
    id TEXT PRIMARY KEY,
    ml_question_id TEXT NOT NULL UNIQUE,
    account_id TEXT NOT NULL,
    seller_id TEXT NOT NULL,
    text TEXT NOT NULL,
    status TEXT NOT NULL,
    item_id TEXT NOT NULL DEFAULT '',
    item_title TEXT,
    item_price REAL NOT NULL DEFAULT 0,
    item_permalink TEXT,
    item_thumbnail TEXT,
    customer_id TEXT,
    sequential_id TEXT NOT NULL DEFAULT '',
    date_created TEXT NOT NULL,
    received_at TEXT NOT NULL,
    processed_at TEXT,
    answered_at TEXT,
    failed_at TEXT,
    failure_reason TEXT,
    answer TEXT,
    answered_by TEXT
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log (entity_id);
"""

_QUESTION_COLUMNS = [f.name for f in fields(Question)]
_ACCOUNT_COLUMNS = [f.name for f in fields(Account)]
_DATETIME_COLUMNS = {
    "date_created", "received_at", "processed_at", "answered_at", "failed_at",
    "token_expires_at",
}


class DuplicateQuestionError(Exception):
    """A question with the same external id is already stored."""


def _to_db(column: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, QuestionStatus):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _from_db(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _DATETIME_COLUMNS:
        return datetime.fromisoformat(value)
    if column == "status":
        return QuestionStatus(value)
    if column == "is_active":
        return bool(value)
    return value


class QuestionStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def start(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def stop(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def upsert_account(self, account: Account) -> None:
        assert self._db is not None
        values = [_to_db(c, getattr(account, c)) for c in _ACCOUNT_COLUMNS]
        updates = ", ".join(f"{c} = excluded.{c}" for c in _ACCOUNT_COLUMNS if c != "id")
        await self._db.execute(
            f"INSERT INTO accounts ({', '.join(_ACCOUNT_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _ACCOUNT_COLUMNS)}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            values,
        )
        await self._db.commit()

    async def get_account(self, account_id: str) -> Account | None:
        """Look up an account (with its organization) by internal id."""
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {', '.join(_ACCOUNT_COLUMNS)} FROM accounts WHERE id = ?",
            (account_id,),
        )
        row = await cursor.fetchone()
        return self._account_from_row(row) if row else None

    async def find_account_by_seller(self, ml_user_id: str) -> Account | None:
        """Find the active account for an external seller id."""
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {', '.join(_ACCOUNT_COLUMNS)} FROM accounts "
            "WHERE ml_user_id = ? AND is_active = 1 LIMIT 1",
            (str(ml_user_id),),
        )
        row = await cursor.fetchone()
        return self._account_from_row(row) if row else None

    async def update_account_tokens(
        self,
        account_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        assert self._db is not None
        await self._db.execute(
            "UPDATE accounts SET access_token = ?, refresh_token = ?, token_expires_at = ? "
            "WHERE id = ?",
            (access_token, refresh_token, expires_at.isoformat(), account_id),
        )
        await self._db.commit()

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    async def get_question(self, ml_question_id: str) -> Question | None:
        """Unique lookup by external question id."""
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {', '.join(_QUESTION_COLUMNS)} FROM questions WHERE ml_question_id = ?",
            (ml_question_id,),
        )
        row = await cursor.fetchone()
        return self._question_from_row(row) if row else None

    async def create_question(self, question: Question) -> Question:
        """Insert a question. Raises DuplicateQuestionError on an existing external id."""
        assert self._db is not None
        values = [_to_db(c, getattr(question, c)) for c in _QUESTION_COLUMNS]
        try:
            await self._db.execute(
                f"INSERT INTO questions ({', '.join(_QUESTION_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _QUESTION_COLUMNS)})",
                values,
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateQuestionError(question.ml_question_id) from e
        await self._db.commit()
        return question

    async def update_question(self, question_id: str, **changes: Any) -> Question | None:
        """Update a question by internal id and return the stored row."""
        assert self._db is not None
        unknown = set(changes) - set(_QUESTION_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown question fields: {sorted(unknown)}")
        if changes:
            assignments = ", ".join(f"{c} = ?" for c in changes)
            values = [_to_db(c, v) for c, v in changes.items()]
            await self._db.execute(
                f"UPDATE questions SET {assignments} WHERE id = ?",
                (*values, question_id),
            )
            await self._db.commit()
        cursor = await self._db.execute(
            f"SELECT {', '.join(_QUESTION_COLUMNS)} FROM questions WHERE id = ?",
            (question_id,),
        )
        row = await cursor.fetchone()
        return self._question_from_row(row) if row else None

    async def count_questions(self) -> int:
        assert self._db is not None
        cursor = await self._db.execute("SELECT COUNT(*) FROM questions")
        row = await cursor.fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    async def append_audit(self, entry: AuditLogEntry) -> None:
        assert self._db is not None
        await self._db.execute(
            "INSERT INTO audit_log "
            "(action, entity_type, entity_id, organization_id, account_id, metadata, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                entry.action,
                entry.entity_type,
                entry.entity_id,
                entry.organization_id,
                entry.account_id,
                json.dumps(entry.metadata, default=str),
                entry.timestamp.isoformat(),
            ),
        )
        await self._db.commit()

    async def list_audit(self, action: str | None = None) -> list[AuditLogEntry]:
        """List audit entries oldest first, optionally filtered by action."""
        assert self._db is not None
        query = (
            "SELECT action, entity_type, entity_id, organization_id, account_id, metadata, timestamp "
            "FROM audit_log"
        )
        params: tuple[Any, ...] = ()
        if action is not None:
            query += " WHERE action = ?"
            params = (action,)
        cursor = await self._db.execute(query + " ORDER BY id", params)
        rows = await cursor.fetchall()
        return [
            AuditLogEntry(
                action=row[0],
                entity_type=row[1],
                entity_id=row[2],
                organization_id=row[3],
                account_id=row[4],
                metadata=json.loads(row[5]),
                timestamp=datetime.fromisoformat(row[6]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _question_from_row(row: Any) -> Question:
        return Question(**{c: _from_db(c, v) for c, v in zip(_QUESTION_COLUMNS, row)})

    @staticmethod
    def _account_from_row(row: Any) -> Account:
        return Account(**{c: _from_db(c, v) for c, v in zip(_ACCOUNT_COLUMNS, row)})
