"""Database migration runner."""

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


async def init_database(db_path: Path) -> None:
    """Initialize the database with the schema."""
    async with aiosqlite.connect(db_path) as db:
        schema_sql = SCHEMA_PATH.read_text()

        # WAL lets the sweep read while a request persists nudges
        await db.execute("PRAGMA journal_mode=WAL")
        await db.executescript(schema_sql)
        await db.commit()

        logger.info(f"Database initialized at {db_path}")


async def run_migrations(db_path: Path) -> None:
    """Run any pending migrations.

    The schema is idempotent (CREATE ... IF NOT EXISTS), so this only
    ensures every table and index exists.
    """
    await init_database(db_path)
