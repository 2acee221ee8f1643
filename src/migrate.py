"""
Forward-only schema migrations.

SQL files named NNN_description.sql in the migrations/ directory are
applied in version order. Each file runs in its own transaction together
with its bookkeeping row, so a failed file leaves no trace.
"""

import logging
import re
from pathlib import Path
from typing import List, NamedTuple, Set

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_[\w-]+\.sql$")


class Migration(NamedTuple):
    version: str
    filename: str
    path: Path


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the bookkeeping table on first run."""
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )


def discover_migrations() -> List[Migration]:
    """
    List migration files, ordered by version.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
    """
    if not MIGRATIONS_DIR.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    found = []
    for path in MIGRATIONS_DIR.iterdir():
        if not path.is_file():
            continue
        match = MIGRATION_PATTERN.match(path.name)
        if match:
            found.append(Migration(match.group(1), path.name, path))

    return sorted(found)


async def get_applied_versions(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def apply_migration(pool: asyncpg.Pool, migration: Migration) -> None:
    """Run one migration file and record it, atomically."""
    sql = migration.path.read_text(encoding="utf-8")

    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
                migration.version,
                migration.filename,
            )

    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Apply every migration not yet recorded in schema_migrations.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails. Earlier migrations
            stay applied.
    """
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)
        applied = await get_applied_versions(conn)

    pending = [m for m in discover_migrations() if m.version not in applied]
    if not pending:
        logger.info("Database schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for migration in pending:
        await apply_migration(pool, migration)

    return len(pending)
