"""
Job Store: durable keyed map of job id -> Job, with an in-memory fallback.

The durable backend (PostgreSQL when DATABASE_URL is set, otherwise a local
SQLite file) is tried once, on ``open()`` or on first use. If it cannot be
reached within the configured timeouts the store switches to a process-local
dict for the rest of the process lifetime. There is no reconnect loop: jobs
created in memory vanish on restart and are invisible to other processes.
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from insight_engine.db import (
    create_postgres_pool,
    create_schema,
    postgres_connection,
    sqlite_connection,
)
from insight_engine.services.jobs import (
    JOB_FIELDS,
    Job,
    JobStatus,
    allowed_sources,
    can_transition,
)

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id", "status", "file_path", "mime_type", "email", "marketing_opt_in",
    "text_content", "deep_research_prompt", "final_report", "error", "created_at",
)


class StoreMode(str, Enum):
    POSTGRES = "postgres"
    SQLITE = "sqlite"
    MEMORY = "memory"


class StoreUnavailable(RuntimeError):
    """Raised when no backend can serve a job store operation."""


# ─── Row Mapping ─────────────────────────────────────────────────────────────

def _to_column(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name == "status":
        return JobStatus(value).value
    if name == "final_report":
        return json.dumps(value, default=str)
    if name == "created_at":
        return value.astimezone(timezone.utc).isoformat()
    if name == "marketing_opt_in":
        return bool(value)
    return value


def _row_to_job(row) -> Job:
    final_report = row["final_report"]
    if isinstance(final_report, str):
        final_report = json.loads(final_report)
    created_at = row["created_at"]
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at)
    return Job(
        id=row["id"],
        status=JobStatus(row["status"]),
        file_path=row["file_path"] or "",
        mime_type=row["mime_type"] or "",
        email=row["email"],
        marketing_opt_in=bool(row["marketing_opt_in"]),
        text_content=row["text_content"],
        deep_research_prompt=row["deep_research_prompt"],
        final_report=final_report,
        error=row["error"],
        created_at=created_at,
    )


def _check_fields(updates: Dict[str, Any]) -> None:
    unknown = set(updates) - (JOB_FIELDS - {"id"})
    if unknown:
        raise ValueError(f"Unknown job fields: {sorted(unknown)}")


def _check_terminal_payload(status: JobStatus, updates: Dict[str, Any]) -> None:
    if status == JobStatus.COMPLETE and updates.get("final_report") is None:
        raise ValueError("A complete job needs a final_report")
    if status == JobStatus.ERROR and not updates.get("error"):
        raise ValueError("An errored job needs an error message")


class JobStore:
    """
    create/get/update/list access to Job records.

    All access to job state goes through this object; it is created once per
    process (or per worker task) and injected where needed.
    """

    def __init__(
        self,
        database_url: str = "",
        sqlite_path: Optional[str] = None,
        connect_timeout: float = 30.0,
        command_timeout: float = 45.0,
    ):
        self.database_url = database_url
        self.sqlite_path = sqlite_path
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.mode: Optional[StoreMode] = None
        self._pool = None
        self._memory: Dict[str, Job] = {}
        self._memory_lock = asyncio.Lock()
        self._open_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings) -> "JobStore":
        return cls(
            database_url=settings.DATABASE_URL,
            sqlite_path=settings.SQLITE_PATH or None,
            connect_timeout=settings.STORE_CONNECT_TIMEOUT_SECONDS,
            command_timeout=settings.STORE_COMMAND_TIMEOUT_SECONDS,
        )

    # ─── Lifecycle ───────────────────────────────────────────────────────

    async def open(self) -> StoreMode:
        """Establish the backend once; later calls return the chosen mode."""
        async with self._open_lock:
            if self.mode is not None:
                return self.mode
            try:
                if self.database_url:
                    self._pool = await create_postgres_pool(
                        self.database_url, self.connect_timeout, self.command_timeout
                    )
                    async with postgres_connection(self._pool) as conn:
                        await create_schema(conn)
                    self.mode = StoreMode.POSTGRES
                elif self.sqlite_path:
                    async with sqlite_connection(self.sqlite_path, self.connect_timeout) as conn:
                        await create_schema(conn)
                    self.mode = StoreMode.SQLITE
                else:
                    logger.info("No durable job store configured. Using in-memory store.")
                    self.mode = StoreMode.MEMORY
                    return self.mode
                logger.info(f"Job store connected ({self.mode.value}).")
            except Exception as e:
                logger.error(
                    f"Job store unreachable ({type(e).__name__}: {e}). "
                    "Falling back to in-memory store; jobs will not survive a restart."
                )
                await self._close_pool()
                self.mode = StoreMode.MEMORY
            return self.mode

    async def close(self) -> None:
        await self._close_pool()
        if self.mode != StoreMode.MEMORY:
            self.mode = None

    async def _close_pool(self) -> None:
        if self._pool is not None:
            try:
                await self._pool.close()
                logger.info("Async PostgreSQL Pool closed.")
            except Exception as e:
                logger.warning(f"Failed to close PostgreSQL pool: {e}")
            self._pool = None

    @asynccontextmanager
    async def _connection(self):
        try:
            if self.mode == StoreMode.POSTGRES:
                async with postgres_connection(self._pool) as conn:
                    yield conn
            else:
                async with sqlite_connection(self.sqlite_path, self.connect_timeout) as conn:
                    yield conn
        except Exception as e:
            raise StoreUnavailable(f"Job store ({self.mode.value}) operation failed: {e}") from e

    async def _in_memory(self) -> bool:
        if self.mode is None:
            await self.open()
        return self.mode == StoreMode.MEMORY

    # ─── Operations ──────────────────────────────────────────────────────

    async def create_job(self, job: Job) -> None:
        if await self._in_memory():
            async with self._memory_lock:
                self._memory[job.id] = dataclasses.replace(job)
            logger.debug(f"Job created in memory: {job.id}")
            return

        placeholders = ", ".join("?" for _ in _COLUMNS)
        values = tuple(_to_column(col, getattr(job, col)) for col in _COLUMNS)
        async with self._connection() as conn:
            await conn.execute(
                f"INSERT INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})", values
            )
            await conn.commit()
        logger.debug(f"Job created in {self.mode.value}: {job.id}")

    async def get_job(self, job_id: str) -> Optional[Job]:
        if await self._in_memory():
            job = self._memory.get(job_id)
            return dataclasses.replace(job) if job else None

        async with self._connection() as conn:
            cursor = await conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
            row = await cursor.fetchone()
        return _row_to_job(row) if row else None

    async def update_job(self, job_id: str, **updates: Any) -> bool:
        """Merge fields into a job. Returns False (no-op) if the job is missing."""
        _check_fields(updates)
        if not updates:
            return await self.get_job(job_id) is not None

        if await self._in_memory():
            async with self._memory_lock:
                existing = self._memory.get(job_id)
                if existing is None:
                    logger.debug(f"update_job: {job_id} not found, ignoring")
                    return False
                self._memory[job_id] = dataclasses.replace(existing, **updates)
            return True

        return await self._update_where(job_id, updates, sources=None)

    async def transition(self, job_id: str, status: JobStatus, **updates: Any) -> bool:
        """
        Move a job to ``status`` (plus extra fields) only if the state machine
        allows it from the job's current status. Returns whether it was applied.
        """
        status = JobStatus(status)
        _check_fields(updates)
        _check_terminal_payload(status, updates)
        updates["status"] = status

        if await self._in_memory():
            async with self._memory_lock:
                existing = self._memory.get(job_id)
                if existing is None or not can_transition(existing.status, status):
                    return False
                self._memory[job_id] = dataclasses.replace(existing, **updates)
            return True

        return await self._update_where(job_id, updates, sources=allowed_sources(status))

    async def get_jobs(self) -> List[Job]:
        if await self._in_memory():
            jobs = [dataclasses.replace(j) for j in self._memory.values()]
            return sorted(jobs, key=lambda j: j.created_at)

        async with self._connection() as conn:
            cursor = await conn.execute("SELECT * FROM jobs ORDER BY created_at", ())
            rows = await cursor.fetchall()
        return [_row_to_job(r) for r in rows]

    async def _update_where(self, job_id: str, updates: Dict[str, Any], sources) -> bool:
        columns = list(updates)
        set_clause = ", ".join(f"{col} = ?" for col in columns)
        params: List[Any] = [_to_column(col, updates[col]) for col in columns]
        params.append(job_id)
        sql = f"UPDATE jobs SET {set_clause} WHERE id = ?"
        if sources is not None:
            sql += f" AND status IN ({', '.join('?' for _ in sources)})"
            params.extend(s.value for s in sorted(sources, key=lambda s: s.value))
        sql += " RETURNING id"

        async with self._connection() as conn:
            cursor = await conn.execute(sql, tuple(params))
            rows = await cursor.fetchall()
            await conn.commit()
        return bool(rows)
