"""Durable storage backends for account ledgers and sessions.

A vault persists each account's ledger as a versioned JSON document and
each session as a row. ``store_ledger`` is a compare-and-swap on the
version: writers that lost a race get ``LedgerConflictError`` instead of
silently overwriting another process's deduction.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from pay_per_prompt.errors import LedgerConflictError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredLedger:
    """A ledger document plus the version it was read at."""

    ledger_json: str
    version: int


@dataclass(frozen=True)
class Session:
    """An issued sign-in session."""

    session_id: str
    account_id: str
    issued_at: datetime
    expires_at: datetime


class LedgerVault(Protocol):
    """Storage protocol used by LedgerStore and SessionDirectory."""

    async def fetch_ledger(self, account_id: str) -> StoredLedger | None: ...

    async def store_ledger(self, account_id: str, ledger_json: str, expected_version: int) -> int: ...

    async def fetch_session(self, session_id: str) -> Session | None: ...

    async def store_session(self, session: Session) -> None: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryVault:
    """Process-local vault for development and tests."""

    def __init__(self) -> None:
        self._ledgers: dict[str, StoredLedger] = {}
        self._sessions: dict[str, Session] = {}

    async def fetch_ledger(self, account_id: str) -> StoredLedger | None:
        return self._ledgers.get(account_id)

    async def store_ledger(self, account_id: str, ledger_json: str, expected_version: int) -> int:
        """Write a ledger if its stored version still equals ``expected_version``.

        ``expected_version`` is 0 for accounts that have never been stored.
        Returns the new version.
        """
        current = self._ledgers.get(account_id)
        current_version = current.version if current else 0
        if current_version != expected_version:
            raise LedgerConflictError(account_id)
        new_version = expected_version + 1
        self._ledgers[account_id] = StoredLedger(ledger_json, new_version)
        return new_version

    async def fetch_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def store_session(self, session: Session) -> None:
        self._sessions[session.session_id] = session

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS ledgers (
    account_id TEXT PRIMARY KEY,
    ledger_json TEXT NOT NULL,
    version INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    issued_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sessions_account ON sessions(account_id);
"""


class SqliteVault:
    """SQLite-backed vault. Blocking calls run in a worker thread.

    The version check is a conditional ``UPDATE ... WHERE version = ?`` so
    several server processes may share one database file.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10.0)
        if not self._initialized:
            conn.executescript(_SCHEMA)
            conn.commit()
            self._initialized = True
        return conn

    # -- ledgers ------------------------------------------------------------

    def _fetch_ledger_sync(self, account_id: str) -> StoredLedger | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT ledger_json, version FROM ledgers WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return StoredLedger(ledger_json=row[0], version=int(row[1]))

    def _store_ledger_sync(self, account_id: str, ledger_json: str, expected_version: int) -> int:
        now = datetime.now(timezone.utc).isoformat()
        new_version = expected_version + 1
        conn = self._connect()
        try:
            if expected_version == 0:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO ledgers (account_id, ledger_json, version, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (account_id, ledger_json, new_version, now),
                )
            else:
                cursor = conn.execute(
                    "UPDATE ledgers SET ledger_json = ?, version = ?, updated_at = ? "
                    "WHERE account_id = ? AND version = ?",
                    (ledger_json, new_version, now, account_id, expected_version),
                )
            if cursor.rowcount != 1:
                conn.rollback()
                raise LedgerConflictError(account_id)
            conn.commit()
        finally:
            conn.close()
        return new_version

    async def fetch_ledger(self, account_id: str) -> StoredLedger | None:
        return await asyncio.to_thread(self._fetch_ledger_sync, account_id)

    async def store_ledger(self, account_id: str, ledger_json: str, expected_version: int) -> int:
        return await asyncio.to_thread(
            self._store_ledger_sync, account_id, ledger_json, expected_version
        )

    # -- sessions -----------------------------------------------------------

    def _fetch_session_sync(self, session_id: str) -> Session | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT session_id, account_id, issued_at, expires_at "
                "FROM sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return Session(
            session_id=row[0],
            account_id=row[1],
            issued_at=datetime.fromisoformat(row[2]),
            expires_at=datetime.fromisoformat(row[3]),
        )

    def _store_session_sync(self, session: Session) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO sessions (session_id, account_id, issued_at, expires_at) "
                "VALUES (?, ?, ?, ?)",
                (
                    session.session_id,
                    session.account_id,
                    session.issued_at.isoformat(),
                    session.expires_at.isoformat(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    async def fetch_session(self, session_id: str) -> Session | None:
        return await asyncio.to_thread(self._fetch_session_sync, session_id)

    async def store_session(self, session: Session) -> None:
        await asyncio.to_thread(self._store_session_sync, session)

    async def close(self) -> None:
        # Connections are opened per call; nothing to release.
        return None
