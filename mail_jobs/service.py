"""High-level service layer for job operations."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence
from uuid import UUID, uuid4

import asyncpg

from mail_jobs.config import MailJobsConfig
from mail_jobs.errors import DuplicateJobError
from mail_jobs.models import EnqueueResult, Job, JobEvent, JobEventType
from mail_jobs.store import JobStore

# Candidate selections per lease before giving up when other callers keep
# winning the race for the same rows.
MAX_LEASE_ATTEMPTS = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime; aware values are returned unchanged."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobService:
    """High-level API for job operations."""

    def __init__(
        self,
        config: MailJobsConfig,
        db_pool: Optional[asyncpg.Pool],
        logger: Optional[logging.Logger] = None,
        store: Optional[JobStore] = None,
    ):
        self.config = config
        self.store = store or JobStore(db_pool)
        self.logger = logger or logging.getLogger(__name__)

    async def enqueue(
        self,
        *,
        type: str,
        payload: Any = None,
        dedupe_key: Optional[str] = None,
        priority: int = 0,
        run_at: Optional[datetime] = None,
        max_attempts: int = 5,
        retry_backoff_ms: int = 60_000,
    ) -> EnqueueResult:
        """
        Enqueue a new job.

        Args:
            type: Job type, used to look up the handler (e.g. "billing.sendInvoiceEmail")
            payload: JSON-serializable payload handed to the handler
            dedupe_key: Optional key collapsing equivalent requests of the same type
            priority: Job priority (higher = leased first)
            run_at: Earliest execution time (defaults to now)
            max_attempts: Attempts before the job is marked FAILED
            retry_backoff_ms: Base delay of the exponential retry backoff

        Returns:
            EnqueueResult: The job and whether an existing one was returned instead
        """
        run_at = utcnow() if run_at is None else as_utc(run_at)

        try:
            job = await self.store.insert_job(
                id=uuid4(),
                type=type,
                payload=payload,
                dedupe_key=dedupe_key,
                priority=priority,
                run_at=run_at,
                max_attempts=max_attempts,
                retry_backoff_ms=retry_backoff_ms,
            )
        except DuplicateJobError:
            if not dedupe_key:
                raise
            existing = await self.store.find_job_by_dedupe_key(type, dedupe_key)
            if existing is None:
                raise
            await self.record_event(
                existing.id, JobEventType.DEDUPED, {"dedupe_key": dedupe_key}
            )
            self.logger.info(f"Deduped job {type} onto {existing.id} ({dedupe_key})")
            return EnqueueResult(job=existing, deduped=True)

        await self.record_event(
            job.id,
            JobEventType.ENQUEUED,
            {"dedupe_key": dedupe_key, "priority": job.priority},
        )
        self.logger.info(f"Enqueued job {job.id} (type={type}, priority={priority})")
        return EnqueueResult(job=job, deduped=False)

    async def lease_next_job(
        self,
        now: Optional[datetime] = None,
        allowed_types: Optional[Sequence[str]] = None,
    ) -> Optional[Job]:
        """
        Claim the next eligible job, or return None when nothing is due.

        Candidates are ordered by priority (desc), run_at then created_at. The
        claim itself is a guarded PENDING -> RUNNING update; losing it to a
        concurrent caller sends us back to candidate selection.
        """
        now = utcnow() if now is None else as_utc(now)

        for _ in range(MAX_LEASE_ATTEMPTS):
            candidate = await self.store.select_lease_candidate(now, allowed_types)
            if candidate is None:
                return None

            job = await self.store.try_lease(candidate.id, now)
            if job is None:
                self.logger.debug(f"Lost lease race for job {candidate.id}")
                continue

            await self.record_event(
                job.id, JobEventType.STARTED, {"attempts": job.attempts}
            )
            return job

        return None

    async def mark_job_succeeded(self, job: Job) -> None:
        """Mark a job as succeeded."""
        await self.store.mark_succeeded(job.id, utcnow())
        await self.record_event(
            job.id, JobEventType.SUCCEEDED, {"attempts": job.attempts}
        )
        self.logger.info(f"Job {job.id} succeeded")

    async def mark_job_failed(self, job: Job, message: str) -> None:
        """Mark a job as permanently failed."""
        await self.store.mark_failed(job.id, message, utcnow())
        await self.record_event(job.id, JobEventType.FAILED, {"message": message})
        self.logger.error(f"Job {job.id} ({job.type}) marked as failed: {message}")

    async def schedule_job_retry(
        self, job: Job, message: str, delay_ms: int
    ) -> datetime:
        """Send a job back to PENDING, eligible again after `delay_ms`."""
        next_run_at = utcnow() + timedelta(milliseconds=delay_ms)
        await self.store.schedule_retry(job.id, message, next_run_at)
        await self.record_event(
            job.id,
            JobEventType.RETRY_SCHEDULED,
            {"delay_ms": delay_ms, "run_at": next_run_at.isoformat()},
        )
        self.logger.info(f"Job {job.id} scheduled for retry at {next_run_at}")
        return next_run_at

    async def record_event(
        self,
        job_id: UUID,
        type: JobEventType,
        detail: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append an audit event; failures are logged, the job row stays authoritative."""
        try:
            await self.store.insert_event(job_id, type, detail)
        except Exception as e:
            self.logger.warning(
                f"Could not record {type.value} event for job {job_id}: {e}"
            )

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        return await self.store.get_job(job_id)

    async def list_jobs(
        self,
        *,
        type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filters."""
        return await self.store.list_jobs(type=type, status=status, limit=limit)

    async def list_job_events(self, job_id: UUID) -> list[JobEvent]:
        return await self.store.list_events(job_id)

    async def get_job_metrics(self) -> dict[str, Any]:
        """Totals per status, the next due jobs and the latest audit events."""
        totals = await self.store.count_jobs_by_status()
        upcoming = await self.store.list_upcoming_jobs(limit=5)
        recent_events = await self.store.list_recent_events(limit=20)
        return {
            "totals": totals,
            "upcoming": [
                {
                    "id": str(job.id),
                    "type": job.type,
                    "run_at": job.run_at.isoformat() if job.run_at else None,
                    "priority": job.priority,
                }
                for job in upcoming
            ],
            "recent_events": [event.to_dict() for event in recent_events],
        }
