import asyncio
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, List, Optional, Tuple

logger = logging.getLogger(__name__)

# ─── Schema ──────────────────────────────────────────────────────────────────
# created_at is stored as an ISO-8601 UTC string on both backends so the
# same SQL (and ordering) works for SQLite and PostgreSQL.
JOBS_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        file_path TEXT,
        mime_type TEXT,
        email TEXT NOT NULL,
        marketing_opt_in BOOLEAN DEFAULT FALSE,
        text_content TEXT,
        deep_research_prompt TEXT,
        final_report TEXT,
        error TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at)",
)

_PLACEHOLDER_PATTERN = r"(\'[^\']*\'|\"[^\"]*\")|\?"


def to_postgres_placeholders(sql: str) -> str:
    """Rewrite '?' placeholders as asyncpg's $1, $2, ... (ignoring quoted literals)."""
    counter = 0

    def replace_placeholder(match):
        nonlocal counter
        if match.group(1):
            return match.group(1)
        counter += 1
        return f"${counter}"

    return re.sub(_PLACEHOLDER_PATTERN, replace_placeholder, sql)


# ─── ASYNC PostgreSQL Wrapper ────────────────────────────────────────────────
class AsyncPostgresCursor:
    """Wraps asyncpg connection to support '?' placeholders"""
    def __init__(self, conn):
        self.conn = conn
        self._last_result = None

    async def execute(self, sql: str, params: Tuple = ()) -> "AsyncPostgresCursor":
        self._last_result = await self.conn.fetch(to_postgres_placeholders(sql), *params)
        return self

    async def fetchone(self) -> Optional[Any]:
        if self._last_result:
            return self._last_result[0]
        return None

    async def fetchall(self) -> List[Any]:
        return list(self._last_result or [])


class AsyncPostgresConnection:
    """Wraps an asyncpg pool connection"""
    def __init__(self, conn):
        self.conn = conn

    async def execute(self, sql: str, params: Tuple = ()) -> AsyncPostgresCursor:
        cursor = AsyncPostgresCursor(self.conn)
        await cursor.execute(sql, params)
        return cursor

    async def commit(self):
        pass  # asyncpg auto-commits outside explicit transactions


# ─── ASYNC SQLite Wrapper ────────────────────────────────────────────────────
class AsyncSqliteConnection:
    """Wraps aiosqlite connection"""
    def __init__(self, conn):
        self.conn = conn

    async def execute(self, sql: str, params: Tuple = ()):
        return await self.conn.execute(sql, params)

    async def commit(self):
        await self.conn.commit()


# ─── Pools & Connections ─────────────────────────────────────────────────────
async def create_postgres_pool(dsn: str, connect_timeout: float, command_timeout: float):
    """Create the asyncpg pool, bounded by connect_timeout overall."""
    import asyncpg

    pool = await asyncio.wait_for(
        asyncpg.create_pool(
            dsn=dsn,
            min_size=1,
            max_size=10,
            timeout=connect_timeout,
            command_timeout=command_timeout,
        ),
        timeout=connect_timeout,
    )
    logger.info("Async PostgreSQL Pool initialized.")
    return pool


@asynccontextmanager
async def postgres_connection(pool):
    async with pool.acquire() as conn:
        yield AsyncPostgresConnection(conn)


@asynccontextmanager
async def sqlite_connection(path: str, timeout: float):
    import aiosqlite

    async with aiosqlite.connect(path, timeout=timeout) as conn:
        conn.row_factory = aiosqlite.Row
        yield AsyncSqliteConnection(conn)


async def create_schema(conn) -> None:
    for statement in JOBS_SCHEMA:
        await conn.execute(statement)
    await conn.commit()
