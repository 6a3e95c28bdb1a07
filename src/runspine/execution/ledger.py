"""Completion ledger - persistent record of finished jobs.

The ledger is the single source of truth for "has this job already been
done". A row with an ``end_time`` means the job completed in some earlier
run; a row without one marks an attempt that started but was never
confirmed.

Architecture:

    .. code-block:: text

        CompletionLedger(path)
        ┌───────────────────────────────────────────────────────────┐
        │ initialize()   apply pending migrations (LedgerInitError) │
        │ session()      one sqlite3 connection per caller          │
        │                                                           │
        │ LedgerSession                                             │
        │  ───────────────                                          │
        │  lookup(id)                   read                        │
        │  record_completion(id, s, e)  insert, never overwrite     │
        │  mark_interrupted(id, s)      insert with end_time NULL   │
        │  complete_interrupted(id, e)  backfill end_time           │
        │  clear_interrupted(id)        delete unfinished marker    │
        │  list_records() / count()     inspection                  │
        ├───────────────────────────────────────────────────────────┤
        │  Table: completion_records(id PK, start_time, end_time)   │
        └───────────────────────────────────────────────────────────┘

Writes from all sessions are serialized by a ledger-wide lock on top of
SQLite's own locking. Inserting an id that already exists raises
``DuplicateRecordError``; existing rows are never overwritten.

Example:
    >>> ledger = CompletionLedger("/tmp/ledger.db")
    >>> ledger.initialize()
    >>> with ledger.session() as session:
    ...     if session.lookup("ytdlp:youtube:abc") is None:
    ...         session.record_completion("ytdlp:youtube:abc", start, end)
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from runspine.core.errors import DuplicateRecordError, LedgerError, LedgerInitError
from runspine.core.logging import get_logger
from runspine.execution.migrations import MigrationRunner
from runspine.execution.models import CompletionRecord

logger = get_logger(__name__)


def _to_db(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _from_db(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _row_to_record(row: tuple) -> CompletionRecord:
    return CompletionRecord(id=row[0], start_time=_from_db(row[1]), end_time=_from_db(row[2]))


class LedgerSession:
    """Ledger operations bound to one connection.

    Obtain one from :meth:`CompletionLedger.session`; a session must not be
    shared between threads.
    """

    def __init__(self, conn: sqlite3.Connection, write_lock: threading.Lock):
        self._conn = conn
        self._write_lock = write_lock

    # =========================================================================
    # READS
    # =========================================================================

    def lookup(self, record_id: str) -> CompletionRecord | None:
        """Return the record for ``record_id``, or ``None``."""
        row = self._conn.execute(
            "SELECT id, start_time, end_time FROM completion_records WHERE id = ?",
            (record_id,),
        ).fetchone()
        return _row_to_record(row) if row else None

    def list_records(self, limit: int = 100, interrupted_only: bool = False) -> list[CompletionRecord]:
        """List records, most recently started first.

        Args:
            limit: Maximum number of rows returned.
            interrupted_only: Only rows whose ``end_time`` is NULL.
        """
        query = "SELECT id, start_time, end_time FROM completion_records"
        if interrupted_only:
            query += " WHERE end_time IS NULL"
        query += " ORDER BY start_time DESC, id LIMIT ?"
        return [_row_to_record(row) for row in self._conn.execute(query, (limit,)).fetchall()]

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM completion_records").fetchone()[0]

    # =========================================================================
    # WRITES
    # =========================================================================

    def record_completion(self, record_id: str, start_time: datetime, end_time: datetime) -> CompletionRecord:
        """Insert a completed record.

        Raises:
            DuplicateRecordError: A row for ``record_id`` already exists.
        """
        if end_time < start_time:
            raise ValueError("end_time must not be earlier than start_time")
        self._insert(record_id, start_time, end_time)
        logger.debug("ledger.record_completed", record_id=record_id)
        return CompletionRecord(id=record_id, start_time=start_time, end_time=end_time)

    def mark_interrupted(self, record_id: str, start_time: datetime) -> CompletionRecord:
        """Insert a started-but-unfinished marker (``end_time`` NULL).

        Raises:
            DuplicateRecordError: A row for ``record_id`` already exists.
        """
        self._insert(record_id, start_time, None)
        logger.debug("ledger.attempt_marked", record_id=record_id)
        return CompletionRecord(id=record_id, start_time=start_time)

    def complete_interrupted(self, record_id: str, end_time: datetime) -> bool:
        """Set ``end_time`` on an interrupted row.

        Returns:
            True if a row was updated; False if there was no interrupted row
            (completed rows are left untouched).
        """
        with self._write_lock:
            cursor = self._conn.execute(
                "UPDATE completion_records SET end_time = ? WHERE id = ? AND end_time IS NULL",
                (_to_db(end_time), record_id),
            )
            self._conn.commit()
        updated = cursor.rowcount > 0
        if updated:
            logger.debug("ledger.interrupted_completed", record_id=record_id)
        return updated

    def clear_interrupted(self, record_id: str) -> bool:
        """Delete an interrupted row. Completed rows are never deleted."""
        with self._write_lock:
            cursor = self._conn.execute(
                "DELETE FROM completion_records WHERE id = ? AND end_time IS NULL",
                (record_id,),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def _insert(self, record_id: str, start_time: datetime, end_time: datetime | None) -> None:
        with self._write_lock:
            try:
                self._conn.execute(
                    "INSERT INTO completion_records (id, start_time, end_time) VALUES (?, ?, ?)",
                    (record_id, _to_db(start_time), _to_db(end_time) if end_time else None),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise DuplicateRecordError(record_id, cause=exc) from exc


class CompletionLedger:
    """SQLite-backed store of completion records.

    Args:
        path: Database file. Parent directories are created on initialize.
        busy_timeout_seconds: How long a connection waits on a locked
            database before giving up.
    """

    def __init__(self, path: str | Path, *, busy_timeout_seconds: float = 30.0):
        self.path = Path(path)
        self.busy_timeout_seconds = busy_timeout_seconds
        self._write_lock = threading.Lock()

    def initialize(self) -> list[str]:
        """Create the database if needed and apply pending migrations.

        Returns:
            Filenames of migrations applied by this call.

        Raises:
            LedgerInitError: The file cannot be opened or a migration failed.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect()
        except (OSError, sqlite3.Error) as exc:
            raise LedgerInitError(f"Could not open ledger {self.path}: {exc}", cause=exc) from exc

        try:
            result = MigrationRunner(conn).apply_pending()
        except sqlite3.Error as exc:
            raise LedgerInitError(f"Could not migrate ledger {self.path}: {exc}", cause=exc) from exc
        finally:
            conn.close()

        result.raise_for_failure(self.path)

        logger.info("ledger.initialized", path=str(self.path), applied=result.applied)
        return result.applied

    @contextmanager
    def session(self) -> Iterator[LedgerSession]:
        """Open a session with its own connection, closed on exit."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise LedgerError(f"Could not open ledger {self.path}: {exc}", cause=exc) from exc
        try:
            yield LedgerSession(conn, self._write_lock)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout_seconds)
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_seconds * 1000)}")
        return conn

    # ---- Convenience pass-throughs (one short-lived session per call) ----

    def lookup(self, record_id: str) -> CompletionRecord | None:
        with self.session() as s:
            return s.lookup(record_id)

    def record_completion(self, record_id: str, start_time: datetime, end_time: datetime) -> CompletionRecord:
        with self.session() as s:
            return s.record_completion(record_id, start_time, end_time)

    def mark_interrupted(self, record_id: str, start_time: datetime) -> CompletionRecord:
        with self.session() as s:
            return s.mark_interrupted(record_id, start_time)

    def complete_interrupted(self, record_id: str, end_time: datetime) -> bool:
        with self.session() as s:
            return s.complete_interrupted(record_id, end_time)

    def clear_interrupted(self, record_id: str) -> bool:
        with self.session() as s:
            return s.clear_interrupted(record_id)

    def list_records(self, limit: int = 100, interrupted_only: bool = False) -> list[CompletionRecord]:
        with self.session() as s:
            return s.list_records(limit=limit, interrupted_only=interrupted_only)

    def count(self) -> int:
        with self.session() as s:
            return s.count()
