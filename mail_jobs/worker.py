"""Queue draining logic for mail jobs."""

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Optional, Sequence

from mail_jobs.alerts import JobFailureAlerter
from mail_jobs.models import JobOutcome, ProcessQueueResult
from mail_jobs.service import JobService

DEFAULT_BACKOFF_MS = 60_000
MAX_BACKOFF_MS = 60 * 60 * 1000


async def process_queue(
    job_service: JobService,
    handlers: Mapping[str, Callable],
    max_jobs: int = 20,
    allowed_types: Optional[Sequence[str]] = None,
    alerter: Optional[JobFailureAlerter] = None,
    logger: Optional[logging.Logger] = None,
    now: Optional[datetime] = None,
) -> ProcessQueueResult:
    """
    Lease and run up to `max_jobs` due jobs, one at a time.

    Args:
        job_service: Service owning the job store
        handlers: Job type -> async handler called as handler(ctx, payload)
        max_jobs: Upper bound of jobs leased by this call
        allowed_types: Restrict leasing to these job types
        alerter: Notified when a job exhausts its attempts
        logger: Logger instance
        now: Reference time for due-ness (defaults to the current time)

    Returns:
        Counters and per-job details of the drain
    """
    logger = logger or job_service.logger
    limit = max(1, max_jobs)
    result = ProcessQueueResult()

    for _ in range(limit):
        job = await job_service.lease_next_job(now=now, allowed_types=allowed_types)
        if job is None:
            break

        handler = handlers.get(job.type)
        if handler is None:
            # Configuration error: retrying cannot help.
            message = f"No handler registered for {job.type}"
            logger.error(f"Job {job.id}: {message}")
            await job_service.mark_job_failed(job, message)
            result.record(
                JobOutcome(job.id, job.type, JobOutcome.SKIPPED, job.attempts, message)
            )
            continue

        logger.info(f"Executing job {job.id} (type={job.type}, attempt={job.attempts})")

        try:
            ctx = {"job": job, "logger": logger}
            await handler(ctx, job.payload)
        except Exception as e:
            message = normalize_error_message(e)
            logger.error(f"Job {job.id} failed: {message}", exc_info=True)

            if job.attempts >= job.max_attempts:
                await job_service.mark_job_failed(job, message)
                if alerter is not None:
                    await alerter.send(job, message)
                result.record(
                    JobOutcome(job.id, job.type, JobOutcome.FAILED, job.attempts, message)
                )
            else:
                delay_ms = compute_backoff_delay_ms(job.attempts, job.retry_backoff_ms)
                await job_service.schedule_job_retry(job, message, delay_ms)
                logger.info(
                    f"Job {job.id} will retry (attempt {job.attempts}/"
                    f"{job.max_attempts}) after {delay_ms}ms"
                )
                result.record(
                    JobOutcome(job.id, job.type, JobOutcome.RETRY, job.attempts, message)
                )
            continue

        await job_service.mark_job_succeeded(job)
        result.record(JobOutcome(job.id, job.type, JobOutcome.SUCCESS, job.attempts))

    return result


def compute_backoff_delay_ms(attempts: int, base_delay_ms: Any) -> int:
    """
    Calculate the retry delay after `attempts` failed attempts.

    Exponential backoff: base * 2^(attempts-1), capped at 1 hour. A missing or
    non-positive base falls back to 60 seconds.
    """
    try:
        base = int(base_delay_ms)
    except (TypeError, ValueError, OverflowError):
        base = DEFAULT_BACKOFF_MS
    if base <= 0:
        base = DEFAULT_BACKOFF_MS

    exponent = max(0, attempts - 1)
    # 2^22 ms already exceeds the cap for the smallest valid base.
    if exponent >= 22:
        return MAX_BACKOFF_MS
    return min(base * (2 ** exponent), MAX_BACKOFF_MS)


def normalize_error_message(error: BaseException) -> str:
    message = str(error)
    return message if message else type(error).__name__
