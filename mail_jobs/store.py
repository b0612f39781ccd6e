"""Database store layer for jobs and their audit events."""

import json
from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import UUID, uuid4

import asyncpg

from mail_jobs.errors import DuplicateJobError, JobNotFoundError
from mail_jobs.models import Job, JobEvent, JobEventType, JobStatus


def _dump_json(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _load_json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def affected_rows(status: str) -> int:
    """Parse the affected row count out of an asyncpg status like "UPDATE 1"."""
    try:
        return int(status.split()[-1]) if status else 0
    except ValueError:
        return 0


class JobStore:
    """Database layer for job operations."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def insert_job(
        self,
        id: UUID,
        type: str,
        payload: Any,
        run_at: datetime,
        priority: int = 0,
        max_attempts: int = 5,
        retry_backoff_ms: int = 60_000,
        dedupe_key: Optional[str] = None,
    ) -> Job:
        """
        Insert a new PENDING job.

        Raises:
            DuplicateJobError: If (type, dedupe_key) is already taken
        """
        async with self.db_pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO jobs (
                        id, type, payload, dedupe_key, priority, status,
                        attempts, max_attempts, retry_backoff_ms, run_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, 0, $7, $8, $9)
                    RETURNING *
                    """,
                    id,
                    type,
                    _dump_json(payload),
                    dedupe_key,
                    priority,
                    JobStatus.PENDING.value,
                    max_attempts,
                    retry_backoff_ms,
                    run_at,
                )
            except asyncpg.UniqueViolationError as e:
                raise DuplicateJobError(type, dedupe_key) from e

        return self._row_to_job(row)

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)

        if not row:
            raise JobNotFoundError(job_id)

        return self._row_to_job(row)

    async def find_job_by_dedupe_key(
        self, type: str, dedupe_key: str
    ) -> Optional[Job]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM jobs WHERE type = $1 AND dedupe_key = $2",
                type,
                dedupe_key,
            )
        return self._row_to_job(row) if row else None

    async def list_jobs(
        self,
        type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filters."""
        query = "SELECT * FROM jobs WHERE 1=1"
        params = []
        param_idx = 1

        if type:
            query += f" AND type = ${param_idx}"
            params.append(type)
            param_idx += 1

        if status:
            query += f" AND status = ${param_idx}"
            params.append(status)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx}"
        params.append(limit)

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_job(row) for row in rows]

    async def select_lease_candidate(
        self, now: datetime, allowed_types: Optional[Sequence[str]] = None
    ) -> Optional[Job]:
        """Return the best PENDING job due at `now`, without claiming it."""
        query = """
            SELECT * FROM jobs
            WHERE status = $1
              AND run_at <= $2
        """
        params: list[Any] = [JobStatus.PENDING.value, now]
        if allowed_types is not None:
            query += " AND type = ANY($3::text[])"
            params.append(list(allowed_types))
        query += " ORDER BY priority DESC, run_at ASC, created_at ASC LIMIT 1"

        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)

        return self._row_to_job(row) if row else None

    async def try_lease(self, job_id: UUID, now: datetime) -> Optional[Job]:
        """
        Claim a job by flipping it PENDING -> RUNNING.

        The status guard makes this a compare-and-swap: when another caller
        leased the row first, no row is updated and None is returned.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET status = $1,
                    attempts = attempts + 1,
                    locked_at = $2,
                    last_run_at = $2,
                    last_error = NULL,
                    updated_at = now()
                WHERE id = $3 AND status = $4
                RETURNING *
                """,
                JobStatus.RUNNING.value,
                now,
                job_id,
                JobStatus.PENDING.value,
            )

        return self._row_to_job(row) if row else None

    async def mark_succeeded(self, job_id: UUID, completed_at: datetime) -> None:
        """Mark a job as succeeded."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET status = $1,
                    completed_at = $2,
                    last_error = NULL,
                    updated_at = now()
                WHERE id = $3
                """,
                JobStatus.SUCCEEDED.value,
                completed_at,
                job_id,
            )

    async def mark_failed(
        self, job_id: UUID, error: str, completed_at: datetime
    ) -> None:
        """Mark a job as permanently failed."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET status = $1,
                    last_error = $2,
                    completed_at = $3,
                    updated_at = now()
                WHERE id = $4
                """,
                JobStatus.FAILED.value,
                error,
                completed_at,
                job_id,
            )

    async def schedule_retry(
        self, job_id: UUID, error: str, next_run_at: datetime
    ) -> None:
        """Put a job back to PENDING for a later attempt."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET status = $1,
                    run_at = $2,
                    last_error = $3,
                    updated_at = now()
                WHERE id = $4
                """,
                JobStatus.PENDING.value,
                next_run_at,
                error,
                job_id,
            )

    async def insert_event(
        self,
        job_id: UUID,
        type: JobEventType,
        detail: Optional[dict[str, Any]] = None,
    ) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO job_events (id, job_id, type, detail)
                VALUES ($1, $2, $3, $4)
                """,
                uuid4(),
                job_id,
                type.value,
                _dump_json(detail),
            )

    async def list_events(self, job_id: UUID) -> list[JobEvent]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM job_events WHERE job_id = $1 ORDER BY created_at ASC",
                job_id,
            )
        return [self._row_to_event(row) for row in rows]

    async def list_recent_events(self, limit: int = 20) -> list[JobEvent]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM job_events ORDER BY created_at DESC LIMIT $1",
                limit,
            )
        return [self._row_to_event(row) for row in rows]

    async def list_upcoming_jobs(self, limit: int = 5) -> list[Job]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM jobs
                WHERE status = $1
                ORDER BY run_at ASC
                LIMIT $2
                """,
                JobStatus.PENDING.value,
                limit,
            )
        return [self._row_to_job(row) for row in rows]

    async def count_jobs_by_status(self) -> dict[str, int]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS total FROM jobs GROUP BY status"
            )
        return {row["status"]: row["total"] for row in rows}

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            type=row["type"],
            status=JobStatus(row["status"]),
            payload=_load_json(row["payload"]),
            dedupe_key=row["dedupe_key"],
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            retry_backoff_ms=row["retry_backoff_ms"],
            run_at=row["run_at"],
            locked_at=row["locked_at"],
            last_run_at=row["last_run_at"],
            last_error=row["last_error"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_event(self, row: asyncpg.Record) -> JobEvent:
        return JobEvent(
            id=row["id"],
            job_id=row["job_id"],
            type=JobEventType(row["type"]),
            detail=_load_json(row["detail"]),
            created_at=row["created_at"],
        )
