"""Wiring of the services into one object per process."""

import logging
from datetime import datetime
from typing import Any, Optional

import asyncpg

from mail_jobs.alerts import JobFailureAlerter
from mail_jobs.collaborators import (
    DocumentMailer,
    EmailTransport,
    InboxSweeper,
    MessagingCredentialsProvider,
)
from mail_jobs.config import MailJobsConfig
from mail_jobs.document_jobs import DocumentEmailProducer, EmailLogStore
from mail_jobs.messaging_jobs import MessagingCron, MessagingSettingsStore
from mail_jobs.scheduled import ScheduledEmailService, ScheduledEmailStore
from mail_jobs.service import JobService
from mail_jobs.store import JobStore


class MailJobs:
    """
    The queue, the scheduled-send outbox, the cron orchestrator and the
    document email producers sharing one job service.

    Stores default to the asyncpg implementations over `db_pool`; pass them
    explicitly to plug in other backends.
    """

    def __init__(
        self,
        config: MailJobsConfig,
        db_pool: Optional[asyncpg.Pool],
        *,
        credentials_provider: MessagingCredentialsProvider,
        transport: EmailTransport,
        inbox_sweeper: InboxSweeper,
        mailer: DocumentMailer,
        logger: Optional[logging.Logger] = None,
        job_store: Optional[JobStore] = None,
        scheduled_store: Optional[ScheduledEmailStore] = None,
        email_log_store: Optional[EmailLogStore] = None,
        settings_store: Optional[MessagingSettingsStore] = None,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

        self.job_service = JobService(config, db_pool, self.logger, store=job_store)
        self.alerter = JobFailureAlerter(
            config.alert_webhook_url,
            timeout=config.alert_timeout_seconds,
            logger=self.logger,
        )
        self.scheduled = ScheduledEmailService(
            scheduled_store or ScheduledEmailStore(db_pool),
            credentials_provider,
            transport,
            logger=self.logger,
        )
        self.documents = DocumentEmailProducer(
            self.job_service,
            email_log_store or EmailLogStore(db_pool),
            mailer,
            alerter=self.alerter,
            flush_max_jobs=config.document_flush_max_jobs,
            logger=self.logger,
        )
        self.cron = MessagingCron(
            self.job_service,
            self.scheduled,
            settings_store or MessagingSettingsStore(db_pool),
            inbox_sweeper,
            alerter=self.alerter,
            extra_handlers=self.documents.registry,
            max_jobs=config.cron_max_jobs,
            logger=self.logger,
        )

    async def run_messaging_cron_tick(
        self, now: Optional[datetime] = None
    ) -> dict[str, Any]:
        return await self.cron.run_messaging_cron_tick(now)

    async def queue_invoice_email_job(
        self, user_id: str, invoice_id: str, to: str, subject: Optional[str] = None
    ) -> dict[str, Any]:
        return await self.documents.queue_invoice_email_job(
            user_id, invoice_id, to, subject
        )

    async def queue_quote_email_job(
        self, user_id: str, quote_id: str, to: str, subject: Optional[str] = None
    ) -> dict[str, Any]:
        return await self.documents.queue_quote_email_job(
            user_id, quote_id, to, subject
        )

    async def shutdown(self) -> None:
        await self.documents.wait_for_background_tasks()
