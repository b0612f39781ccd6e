"""Cron orchestration of the recurring messaging jobs."""

import logging
from datetime import date, datetime, time, timezone
from typing import Any, Optional

import asyncpg

from mail_jobs.alerts import JobFailureAlerter
from mail_jobs.collaborators import InboxSweeper
from mail_jobs.models import MessagingSettings
from mail_jobs.registry import JobRegistry
from mail_jobs.scheduled import ScheduledEmailService
from mail_jobs.service import JobService, as_utc
from mail_jobs.worker import process_queue

DISPATCH_JOB_TYPE = "messaging.dispatchScheduledEmails"
AUTO_REPLY_JOB_TYPE = "messaging.syncInboxAutoReplies"
SCHEDULED_EMAIL_INTERVAL_MS = 60 * 1000
AUTO_REPLY_INTERVAL_MS = 60 * 1000
DISPATCH_PRIORITY = 100
DISPATCH_RETRY_BACKOFF_MS = 60 * 1000
AUTO_REPLY_PRIORITY = 50
AUTO_REPLY_RETRY_BACKOFF_MS = 2 * 60 * 1000
CRON_MAX_JOBS = 25


def compute_slot_key(reference: datetime, interval_ms: int) -> int:
    """Bucket a timestamp into fixed intervals: floor(epoch_ms / interval_ms)."""
    epoch_ms = int(as_utc(reference).timestamp() * 1000)
    return epoch_ms // interval_ms


def _as_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    return None


def should_schedule_auto_reply(settings: MessagingSettings, reference: datetime) -> bool:
    """
    Whether a user's inbox needs an auto-reply sweep at `reference`.

    Permanent auto-reply always qualifies; vacation mode qualifies from the
    start day 00:00 to the end day 23:59:59.999999 (UTC), inclusive.
    """
    if settings.auto_reply_enabled:
        return True
    if not settings.vacation_mode_enabled:
        return False

    start = _as_date(settings.vacation_start_date)
    end = _as_date(settings.vacation_end_date)
    if start is None or end is None or end < start:
        return False

    window_start = datetime.combine(start, time.min, tzinfo=timezone.utc)
    window_end = datetime.combine(end, time.max, tzinfo=timezone.utc)
    return window_start <= as_utc(reference) <= window_end


class MessagingSettingsStore:
    """Read access to the messaging settings relevant to auto-replies."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def list_auto_reply_candidates(self) -> list[MessagingSettings]:
        """Users with both mail servers configured and some auto-reply mode on."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT user_id, auto_reply_enabled, vacation_mode_enabled,
                       vacation_start_date, vacation_end_date, imap_host, smtp_host
                FROM messaging_settings
                WHERE imap_host IS NOT NULL AND imap_host <> ''
                  AND smtp_host IS NOT NULL AND smtp_host <> ''
                  AND (
                    auto_reply_enabled
                    OR (
                      vacation_mode_enabled
                      AND vacation_start_date IS NOT NULL
                      AND vacation_end_date IS NOT NULL
                    )
                  )
                ORDER BY user_id
                """
            )

        return [
            MessagingSettings(
                user_id=row["user_id"],
                auto_reply_enabled=row["auto_reply_enabled"],
                vacation_mode_enabled=row["vacation_mode_enabled"],
                vacation_start_date=row["vacation_start_date"],
                vacation_end_date=row["vacation_end_date"],
                imap_host=row["imap_host"],
                smtp_host=row["smtp_host"],
            )
            for row in rows
        ]


class MessagingCron:
    """Turns each external cron tick into idempotent jobs, then drains the queue."""

    def __init__(
        self,
        job_service: JobService,
        scheduled_service: ScheduledEmailService,
        settings_store: MessagingSettingsStore,
        inbox_sweeper: InboxSweeper,
        alerter: Optional[JobFailureAlerter] = None,
        extra_handlers: Optional[JobRegistry] = None,
        max_jobs: int = CRON_MAX_JOBS,
        logger: Optional[logging.Logger] = None,
    ):
        self.job_service = job_service
        self.scheduled_service = scheduled_service
        self.settings_store = settings_store
        self.inbox_sweeper = inbox_sweeper
        self.alerter = alerter
        self.max_jobs = max_jobs
        self.logger = logger or logging.getLogger(__name__)

        self.registry = self._build_registry()
        if extra_handlers is not None:
            self.registry = self.registry.merge(extra_handlers)

    def _build_registry(self) -> JobRegistry:
        registry = JobRegistry()

        @registry.handler(DISPATCH_JOB_TYPE)
        async def dispatch_scheduled_emails(ctx, payload):
            result = await self.scheduled_service.run_dispatch_cycle()
            ctx["logger"].info(f"Scheduled email dispatch: {result.to_dict()}")

        @registry.handler(AUTO_REPLY_JOB_TYPE)
        async def sync_inbox_auto_replies(ctx, payload):
            if not isinstance(payload, dict):
                raise ValueError(f"Missing payload for job {ctx['job'].type}")
            user_id = payload.get("user_id")
            if not isinstance(user_id, str) or not user_id:
                raise ValueError("Invalid user id for the inbox auto-reply sweep.")
            bootstrap_mode = (
                "process" if payload.get("bootstrap_mode") == "process" else "skip"
            )
            await self.inbox_sweeper.sweep(user_id, bootstrap_mode)

        return registry

    async def run_messaging_cron_tick(
        self, now: Optional[datetime] = None
    ) -> dict[str, Any]:
        """
        Enqueue this slot's dispatch and auto-reply jobs, then drain the queue.

        Repeated ticks inside one slot reuse the slot's dedupe keys, so an
        over-eager or retried trigger enqueues nothing new.
        """
        now = datetime.now(timezone.utc) if now is None else as_utc(now)

        scheduled = {
            "scheduled_emails": await self._enqueue_dispatch_job(now),
            "auto_replies": await self._enqueue_auto_reply_jobs(now),
        }
        queue_result = await process_queue(
            self.job_service,
            self.registry.all_handlers(),
            max_jobs=self.max_jobs,
            allowed_types=self.registry.types(),
            alerter=self.alerter,
            logger=self.logger,
        )
        summary = {
            "scheduled": scheduled,
            "queue": queue_result.to_dict(),
            "timestamp": now.isoformat(),
        }
        self.logger.info(
            f"Messaging cron tick: {queue_result.processed} processed, "
            f"{queue_result.failed} failed, {queue_result.retried} retried"
        )
        return summary

    async def _enqueue_dispatch_job(self, now: datetime) -> dict[str, Any]:
        slot_key = compute_slot_key(now, SCHEDULED_EMAIL_INTERVAL_MS)
        result = await self.job_service.enqueue(
            type=DISPATCH_JOB_TYPE,
            dedupe_key=f"scheduled:{slot_key}",
            priority=DISPATCH_PRIORITY,
            run_at=now,
            retry_backoff_ms=DISPATCH_RETRY_BACKOFF_MS,
        )
        return {"deduped": result.deduped, "job_id": str(result.job.id)}

    async def _enqueue_auto_reply_jobs(self, now: datetime) -> dict[str, int]:
        slot_key = compute_slot_key(now, AUTO_REPLY_INTERVAL_MS)
        candidates = await self.settings_store.list_auto_reply_candidates()
        enqueued = 0
        deduped = 0

        for candidate in candidates:
            if not candidate.imap_host or not candidate.smtp_host:
                continue
            if not should_schedule_auto_reply(candidate, now):
                continue
            result = await self.job_service.enqueue(
                type=AUTO_REPLY_JOB_TYPE,
                payload={"user_id": candidate.user_id, "bootstrap_mode": "skip"},
                dedupe_key=f"{candidate.user_id}:{slot_key}",
                priority=AUTO_REPLY_PRIORITY,
                run_at=now,
                retry_backoff_ms=AUTO_REPLY_RETRY_BACKOFF_MS,
            )
            if result.deduped:
                deduped += 1
            else:
                enqueued += 1

        return {"requested": len(candidates), "enqueued": enqueued, "deduped": deduped}
