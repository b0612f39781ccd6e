"""Durable job queue and scheduled email dispatch for invoicing/CRM apps."""

from mail_jobs.alerts import JobFailureAlerter
from mail_jobs.app import MailJobs
from mail_jobs.config import MailJobsConfig
from mail_jobs.ddl import ALL_TABLES_DDL, JOBS_TABLE_DDL
from mail_jobs.document_jobs import DocumentEmailProducer
from mail_jobs.errors import (
    AuthTokenError,
    DuplicateJobError,
    JobNotFoundError,
    MailJobsError,
    MessagingCredentialsError,
    RemoteHttpError,
    ScheduledEmailStateError,
    ValidationError,
)
from mail_jobs.http_client import CronHttpClient
from mail_jobs.messaging_jobs import MessagingCron
from mail_jobs.models import Job, JobStatus, ScheduledEmailStatus
from mail_jobs.registry import JobRegistry
from mail_jobs.scheduled import ScheduledEmailService, ScheduledEmailStore
from mail_jobs.service import JobService
from mail_jobs.store import JobStore
from mail_jobs.worker import compute_backoff_delay_ms, process_queue

__version__ = "0.1.0"

__all__ = [
    "JobFailureAlerter",
    "MailJobs",
    "MailJobsConfig",
    "ALL_TABLES_DDL",
    "JOBS_TABLE_DDL",
    "DocumentEmailProducer",
    "AuthTokenError",
    "DuplicateJobError",
    "JobNotFoundError",
    "MailJobsError",
    "MessagingCredentialsError",
    "RemoteHttpError",
    "ScheduledEmailStateError",
    "ValidationError",
    "CronHttpClient",
    "MessagingCron",
    "Job",
    "JobStatus",
    "ScheduledEmailStatus",
    "JobRegistry",
    "ScheduledEmailService",
    "ScheduledEmailStore",
    "JobService",
    "JobStore",
    "compute_backoff_delay_ms",
    "process_queue",
]
