"""
Versioned schema changes for the toll state store.

A migration is a module named NNN_name.py next to this file that defines
VERSION, NAME, upgrade(conn) and optionally downgrade(conn). Applied
versions are recorded in the `migrations` table.
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

Step = Callable[[sqlite3.Connection], None]


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    upgrade: Step
    downgrade: Step | None = None

    @classmethod
    def from_module(cls, module) -> "Migration":
        return cls(
            version=module.VERSION,
            name=module.NAME,
            upgrade=module.upgrade,
            downgrade=getattr(module, "downgrade", None),
        )


def get_all_migrations() -> list[Migration]:
    """Migration modules of this package, ordered by version."""
    found = []
    for path in Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py"):
        module = importlib.import_module(f"{__package__}.{path.stem}")
        found.append(Migration.from_module(module))
    return sorted(found, key=lambda m: m.version)


class MigrationRunner:
    """Applies and reverts migrations on one connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TEXT NOT NULL
                )
                """
            )

    def get_current_version(self) -> int:
        """Highest applied version, 0 on a fresh database."""
        (version,) = self.conn.execute("SELECT MAX(version) FROM migrations").fetchone()
        return version or 0

    def _applied(self) -> set[int]:
        return {row[0] for row in self.conn.execute("SELECT version FROM migrations")}

    def _up(self, migration: Migration) -> None:
        logger.info(f"Applying migration {migration.version}: {migration.name}")
        applied_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        with self.conn:
            migration.upgrade(self.conn)
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, applied_at),
            )

    def _down(self, migration: Migration) -> None:
        if migration.downgrade is None:
            raise NotImplementedError(f"Migration {migration.version} cannot be reverted")
        logger.info(f"Reverting migration {migration.version}: {migration.name}")
        with self.conn:
            migration.downgrade(self.conn)
            self.conn.execute("DELETE FROM migrations WHERE version = ?", (migration.version,))

    def run_pending(self) -> list[int]:
        """Apply every migration not yet recorded; returns the applied versions."""
        applied = self._applied()
        pending = [m for m in get_all_migrations() if m.version not in applied]
        for migration in pending:
            self._up(migration)
        return [m.version for m in pending]

    def migrate_to(self, target_version: int) -> None:
        """Apply or revert migrations until `target_version` is current."""
        applied = self._applied()
        migrations = get_all_migrations()
        for migration in migrations:
            if migration.version <= target_version and migration.version not in applied:
                self._up(migration)
        for migration in reversed(migrations):
            if migration.version > target_version and migration.version in applied:
                self._down(migration)
