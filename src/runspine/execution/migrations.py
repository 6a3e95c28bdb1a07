"""Schema migrations for the completion ledger.

Migrations are numbered ``.sql`` files in ``runspine/execution/schema/``::

    001_completion_records.sql
    002_add_note.sql

They are applied in version order (``10_x.sql`` after ``9_y.sql``). Each file
runs in one transaction together with its row in ``_migrations``, so a file
that fails leaves neither half of its statements nor a tracking row behind,
and the next ``initialize()`` tries it again. Files must not contain their
own ``BEGIN``/``COMMIT``.

Optional columns are added with a new file; rows written by older versions
stay readable because the ledger selects only the columns it knows about.
"""

from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from runspine.core.errors import ErrorContext, LedgerInitError
from runspine.core.logging import get_logger
from runspine.execution.models import utcnow

logger = get_logger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent / "schema"

_FILENAME = re.compile(r"^(?P<version>\d+)_[\w.-]+\.sql$")


@dataclass(frozen=True)
class Migration:
    """One numbered schema file."""

    version: int
    path: Path

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class MigrationResult:
    """Outcome of ``MigrationRunner.apply_pending``."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.failed is None

    def raise_for_failure(self, ledger_path: str | Path) -> None:
        """Raise ``LedgerInitError`` if a migration failed."""
        if self.failed is None:
            return
        raise LedgerInitError(
            f"Ledger migration {self.failed} failed for {ledger_path}: {self.error}",
            context=ErrorContext(metadata={"migration": self.failed, "applied": list(self.applied)}),
        )


def discover_migrations(schema_dir: Path) -> list[Migration]:
    """Numbered ``.sql`` files of ``schema_dir`` in version order.

    Raises:
        LedgerInitError: A file is not named ``<number>_<name>.sql`` or two
            files share a version.
    """
    if not schema_dir.is_dir():
        return []

    by_version: dict[int, Migration] = {}
    for path in schema_dir.glob("*.sql"):
        match = _FILENAME.match(path.name)
        if match is None:
            raise LedgerInitError(f"Migration file {path.name} is not named <number>_<name>.sql")
        version = int(match.group("version"))
        if version in by_version:
            raise LedgerInitError(
                f"Migrations {by_version[version].name} and {path.name} share version {version}"
            )
        by_version[version] = Migration(version=version, path=path)

    return [by_version[v] for v in sorted(by_version)]


class MigrationRunner:
    """Brings a ledger database up to the newest schema version.

    Args:
        conn: Open connection to the ledger database.
        schema_dir: Directory of numbered ``.sql`` files; the bundled ledger
            schema by default.
    """

    def __init__(self, conn: sqlite3.Connection, schema_dir: Path | str | None = None) -> None:
        self._conn = conn
        self._schema_dir = Path(schema_dir) if schema_dir else SCHEMA_DIR
        self._ensure_migrations_table()

    def applied_versions(self) -> dict[int, str]:
        """Map of applied version to the filename it was applied from."""
        rows = self._conn.execute("SELECT version, filename FROM _migrations ORDER BY version")
        return {version: filename for version, filename in rows}

    def current_version(self) -> int:
        """Highest applied version, 0 for a fresh database."""
        return max(self.applied_versions(), default=0)

    def pending(self) -> list[Migration]:
        applied = self.applied_versions()
        return [m for m in discover_migrations(self._schema_dir) if m.version not in applied]

    def apply_pending(self) -> MigrationResult:
        """Apply pending migrations in version order, stopping at the first failure."""
        result = MigrationResult()
        applied = self.applied_versions()

        for migration in discover_migrations(self._schema_dir):
            if migration.version in applied:
                result.skipped.append(migration.name)
                continue
            try:
                self._apply(migration)
            except (OSError, sqlite3.Error) as exc:
                result.failed = migration.name
                result.error = str(exc)
                logger.error("migration.failed", migration=migration.name, error=str(exc))
                break
            result.applied.append(migration.name)
            logger.info("migration.applied", migration=migration.name, version=migration.version)

        return result

    def _apply(self, migration: Migration) -> None:
        sql = migration.path.read_text(encoding="utf-8")
        try:
            self._conn.executescript(f"BEGIN;\n{sql}\n")
            self._conn.execute(
                "INSERT INTO _migrations (version, filename, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, utcnow().isoformat()),
            )
            self._conn.commit()
        except sqlite3.Error:
            if self._conn.in_transaction:
                self._conn.rollback()
            raise

    def _ensure_migrations_table(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS _migrations (
                version INTEGER PRIMARY KEY,
                filename TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()


__all__ = ["Migration", "MigrationResult", "MigrationRunner", "SCHEMA_DIR", "discover_migrations"]
