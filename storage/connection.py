"""
Opening SQLite connections for SkillStore and JobStore.

Both stores normally point at the same database file while the API
process, the scheduler worker and the CLI all hold connections, so every
connection is opened in WAL mode with a busy timeout.

Usage:
    from storage.connection import open_database

    db = await open_database("skills.db", foreign_keys=True)
"""

import logging
from pathlib import Path
from typing import Union

import aiosqlite

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


async def open_database(
    db_path: Union[str, Path],
    foreign_keys: bool = True,
    busy_timeout_ms: int = 5000,
) -> aiosqlite.Connection:
    """
    Connect with Row results, creating the parent directory of a file database.

    Args:
        db_path: database file, or ":memory:"
        foreign_keys: enforce foreign key constraints on this connection
        busy_timeout_ms: how long a writer waits for another process's lock
    """
    in_memory = str(db_path) == MEMORY
    if not in_memory:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(str(db_path))
    conn.row_factory = aiosqlite.Row
    await conn.execute(f"PRAGMA foreign_keys = {'ON' if foreign_keys else 'OFF'}")
    await conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
    if not in_memory:
        cursor = await conn.execute("PRAGMA journal_mode = WAL")
        mode = (await cursor.fetchone())[0]
        if str(mode).lower() != "wal":
            logger.warning(f"{db_path}: WAL unavailable, journal mode is {mode}")
    return conn
