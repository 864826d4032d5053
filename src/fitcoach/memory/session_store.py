"""
memory/session_store.py — Session Store (persistence boundary)

Durability for ConversationState, and nothing else:

    load(session_id)   -> ConversationState | None
    save(state)        -> None
    delete(session_id) -> None

Two implementations:
  - InMemorySessionStore : dict of serialised JSON payloads. Every load()
                           returns a fresh object, so callers never share
                           mutable state with the store.
  - SqliteSessionStore   : aiosqlite, one row per session.

Both serialise explicitly through ConversationState.model_dump_json(), so
timestamps travel as ISO-8601 strings with their UTC offset and come back
as identical aware datetimes.

Usage:
    store = SqliteSessionStore("./data/sqlite/sessions.db")
    await store.init()
    await store.save(state)
    state = await store.load("session-1")
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import aiosqlite
from pydantic import ValidationError as PydanticValidationError

from fitcoach.exceptions import SessionStoreError
from fitcoach.memory.types import ConversationState
from fitcoach.observability.logger import get_logger

log = get_logger(__name__)


def _encode(state: ConversationState) -> str:
    return state.model_dump_json()


def _decode(payload: str, session_id: str) -> ConversationState:
    try:
        return ConversationState.model_validate_json(payload)
    except PydanticValidationError as e:
        raise SessionStoreError(f"Stored state for '{session_id}' is corrupt: {e}") from e


class SessionStore(ABC):
    """Abstract persistence boundary for ConversationState."""

    async def init(self) -> None:
        """Open connections / create schema. No-op by default."""

    async def close(self) -> None:
        """Release resources. No-op by default."""

    @abstractmethod
    async def load(self, session_id: str) -> Optional[ConversationState]:
        ...

    @abstractmethod
    async def save(self, state: ConversationState) -> None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def list_sessions(self) -> list[str]:
        ...


# ─────────────────────────────────────────────────────────────────────────────
# In-memory
# ─────────────────────────────────────────────────────────────────────────────


class InMemorySessionStore(SessionStore):
    """Process-local store for tests and single-process development."""

    def __init__(self) -> None:
        self._payloads: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def load(self, session_id: str) -> Optional[ConversationState]:
        async with self._lock:
            payload = self._payloads.get(session_id)
        if payload is None:
            return None
        return _decode(payload, session_id)

    async def save(self, state: ConversationState) -> None:
        payload = _encode(state)
        async with self._lock:
            self._payloads[state.session_id] = payload

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            self._payloads.pop(session_id, None)

    async def list_sessions(self) -> list[str]:
        async with self._lock:
            return sorted(self._payloads)

    def __len__(self) -> int:
        return len(self._payloads)


# ─────────────────────────────────────────────────────────────────────────────
# SQLite
# ─────────────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id  TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    payload     TEXT NOT NULL,      -- ConversationState JSON
    version     INTEGER NOT NULL,
    updated_at  TEXT NOT NULL       -- ISO-8601 UTC, mirrors payload.updated_at
);

CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);
"""


class SqliteSessionStore(SessionStore):
    """Durable aiosqlite-backed store."""

    def __init__(self, db_path: str = "./data/sqlite/sessions.db") -> None:
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        """Create the database file and tables if they don't exist."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        log.info("session_store.initialized", db_path=self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise SessionStoreError(
                "SqliteSessionStore is not initialised (or has been closed). "
                "Call `await store.init()` before use."
            )
        return self._db

    async def load(self, session_id: str) -> Optional[ConversationState]:
        db = self._require_db()
        try:
            async with self._lock:
                async with db.execute(
                    "SELECT payload FROM sessions WHERE session_id = ?", (session_id,)
                ) as cursor:
                    row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise SessionStoreError(f"load('{session_id}') failed: {e}") from e
        if row is None:
            return None
        return _decode(row[0], session_id)

    async def save(self, state: ConversationState) -> None:
        db = self._require_db()
        try:
            async with self._lock:
                await db.execute(
                    """INSERT INTO sessions (session_id, user_id, payload, version, updated_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(session_id) DO UPDATE SET
                           user_id = excluded.user_id,
                           payload = excluded.payload,
                           version = excluded.version,
                           updated_at = excluded.updated_at""",
                    (
                        state.session_id,
                        state.user_id,
                        _encode(state),
                        state.metadata.version,
                        state.updated_at.isoformat(),
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise SessionStoreError(f"save('{state.session_id}') failed: {e}") from e
        log.debug("session_store.saved", session_id=state.session_id, version=state.metadata.version)

    async def delete(self, session_id: str) -> None:
        db = self._require_db()
        try:
            async with self._lock:
                await db.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
                await db.commit()
        except aiosqlite.Error as e:
            raise SessionStoreError(f"delete('{session_id}') failed: {e}") from e

    async def list_sessions(self) -> list[str]:
        db = self._require_db()
        async with self._lock:
            async with db.execute("SELECT session_id FROM sessions ORDER BY session_id") as cursor:
                rows = await cursor.fetchall()
        return [r[0] for r in rows]
