"""Queueing of invoice and quote emails with a user-visible audit row."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import asyncpg

from mail_jobs.alerts import JobFailureAlerter
from mail_jobs.collaborators import DocumentMailer
from mail_jobs.errors import ValidationError
from mail_jobs.models import DocumentType, EmailLog, EmailLogStatus
from mail_jobs.registry import JobRegistry
from mail_jobs.service import JobService, as_utc
from mail_jobs.store import affected_rows
from mail_jobs.worker import process_queue

SEND_INVOICE_EMAIL_JOB_TYPE = "billing.sendInvoiceEmail"
SEND_QUOTE_EMAIL_JOB_TYPE = "billing.sendQuoteEmail"
DOCUMENT_EMAIL_JOB_TYPES = (SEND_INVOICE_EMAIL_JOB_TYPE, SEND_QUOTE_EMAIL_JOB_TYPE)

DOCUMENT_EMAIL_PRIORITY = 80
DEDUPE_WINDOW_MS = 30_000
FLUSH_MAX_JOBS = 5
EMAIL_LOG_ERROR_LENGTH = 500

DEFAULT_SUBJECTS = {
    DocumentType.FACTURE: "Invoice",
    DocumentType.DEVIS: "Quote",
}


def compute_dedupe_key(
    job_type: str,
    user_id: str,
    document_id: str,
    to: str,
    now: Optional[datetime] = None,
) -> str:
    """Key collapsing repeated sends of one document to one address within 30 s."""
    now = as_utc(now or datetime.now(timezone.utc))
    slot = int(now.timestamp() * 1000) // DEDUPE_WINDOW_MS
    return f"{job_type}:{user_id}:{document_id}:{to.lower()}:{slot}"


class EmailLogStore:
    """Database layer for document email audit rows."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def create_pending(
        self,
        user_id: str,
        document_type: DocumentType,
        document_id: str,
        to: str,
        subject: str,
    ) -> EmailLog:
        log_id = uuid4()
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO email_logs (
                    id, user_id, document_type, document_id, to_address, subject, status
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING created_at
                """,
                log_id,
                user_id,
                document_type.value,
                document_id,
                to,
                subject,
                EmailLogStatus.EN_ATTENTE.value,
            )
        return EmailLog(
            id=log_id,
            user_id=user_id,
            document_type=document_type,
            document_id=document_id,
            to=to,
            subject=subject,
            created_at=row["created_at"],
        )

    async def delete(self, log_id: UUID) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute("DELETE FROM email_logs WHERE id = $1", log_id)

    async def mark_failed(self, log_id: UUID, error: str) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                "UPDATE email_logs SET status = $1, error = $2 WHERE id = $3",
                EmailLogStatus.ECHEC.value,
                error,
                log_id,
            )

    async def mark_sent(self, log_id: UUID, sent_at: datetime) -> bool:
        """Flag the log as delivered unless the mailer already did."""
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE email_logs
                SET status = $1, sent_at = $2, error = NULL
                WHERE id = $3 AND status <> $1
                """,
                EmailLogStatus.ENVOYE.value,
                sent_at,
                log_id,
            )
        return affected_rows(status) == 1


def _require_string(payload: dict[str, Any], key: str, label: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"Missing field in the {label} email job: {key}")
    return value


def _optional_string(payload: dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    return value if isinstance(value, str) and value else None


class DocumentEmailProducer:
    """
    Entry point for "send this invoice/quote" actions.

    Each call creates an EN_ATTENTE email log, enqueues the send and kicks off
    a background drain of the document email jobs.
    """

    def __init__(
        self,
        job_service: JobService,
        email_log_store: EmailLogStore,
        mailer: DocumentMailer,
        alerter: Optional[JobFailureAlerter] = None,
        flush_max_jobs: int = FLUSH_MAX_JOBS,
        logger: Optional[logging.Logger] = None,
    ):
        self.job_service = job_service
        self.email_log_store = email_log_store
        self.mailer = mailer
        self.alerter = alerter
        self.flush_max_jobs = flush_max_jobs
        self.logger = logger or logging.getLogger(__name__)
        self.registry = self._build_registry()

        # At most one background drain per process; the lease keeps
        # correctness across processes.
        self._flush_in_flight = False
        self._background_tasks: set[asyncio.Task] = set()

    def _build_registry(self) -> JobRegistry:
        registry = JobRegistry()

        @registry.handler(SEND_INVOICE_EMAIL_JOB_TYPE)
        async def send_invoice_email(ctx, payload):
            if not isinstance(payload, dict):
                raise ValueError("Invalid payload for the invoice email job.")
            user_id = _require_string(payload, "user_id", "invoice")
            invoice_id = _require_string(payload, "invoice_id", "invoice")
            to = _require_string(payload, "to", "invoice")
            email_log_id = _optional_string(payload, "email_log_id")
            try:
                await self.mailer.send_invoice_email(
                    user_id=user_id,
                    invoice_id=invoice_id,
                    to=to,
                    subject=_optional_string(payload, "subject"),
                    email_log_id=email_log_id,
                )
            except Exception as e:
                await self._mark_email_log_failure(email_log_id, e)
                raise
            await self._mark_email_log_sent(email_log_id)

        @registry.handler(SEND_QUOTE_EMAIL_JOB_TYPE)
        async def send_quote_email(ctx, payload):
            if not isinstance(payload, dict):
                raise ValueError("Invalid payload for the quote email job.")
            user_id = _require_string(payload, "user_id", "quote")
            quote_id = _require_string(payload, "quote_id", "quote")
            to = _require_string(payload, "to", "quote")
            email_log_id = _optional_string(payload, "email_log_id")
            try:
                await self.mailer.send_quote_email(
                    user_id=user_id,
                    quote_id=quote_id,
                    to=to,
                    subject=_optional_string(payload, "subject"),
                    email_log_id=email_log_id,
                )
            except Exception as e:
                await self._mark_email_log_failure(email_log_id, e)
                raise
            await self._mark_email_log_sent(email_log_id)

        return registry

    async def queue_invoice_email_job(
        self, user_id: str, invoice_id: str, to: str, subject: Optional[str] = None
    ) -> dict[str, Any]:
        return await self._queue_document_email_job(
            user_id=user_id,
            document_id=invoice_id,
            document_type=DocumentType.FACTURE,
            document_key="invoice_id",
            job_type=SEND_INVOICE_EMAIL_JOB_TYPE,
            to=to,
            subject=subject,
        )

    async def queue_quote_email_job(
        self, user_id: str, quote_id: str, to: str, subject: Optional[str] = None
    ) -> dict[str, Any]:
        return await self._queue_document_email_job(
            user_id=user_id,
            document_id=quote_id,
            document_type=DocumentType.DEVIS,
            document_key="quote_id",
            job_type=SEND_QUOTE_EMAIL_JOB_TYPE,
            to=to,
            subject=subject,
        )

    async def _queue_document_email_job(
        self,
        *,
        user_id: str,
        document_id: str,
        document_type: DocumentType,
        document_key: str,
        job_type: str,
        to: str,
        subject: Optional[str],
    ) -> dict[str, Any]:
        normalized_email = (to or "").strip()
        if not normalized_email:
            raise ValidationError("An email address is required.")
        normalized_subject = (subject or "").strip() or None

        pending_log = await self.email_log_store.create_pending(
            user_id=user_id,
            document_type=document_type,
            document_id=document_id,
            to=normalized_email,
            subject=normalized_subject or DEFAULT_SUBJECTS[document_type],
        )

        payload = {
            "user_id": user_id,
            document_key: document_id,
            "to": normalized_email,
            "subject": normalized_subject,
            "email_log_id": str(pending_log.id),
        }
        result = await self.job_service.enqueue(
            type=job_type,
            payload=payload,
            priority=DOCUMENT_EMAIL_PRIORITY,
            dedupe_key=compute_dedupe_key(
                job_type, user_id, document_id, normalized_email
            ),
        )

        if result.deduped:
            # The job already in flight owns the visible pending row.
            try:
                await self.email_log_store.delete(pending_log.id)
            except Exception as e:
                self.logger.warning(
                    f"Could not delete duplicate email log {pending_log.id}: {e}"
                )

        self.schedule_flush()
        return {"job_id": str(result.job.id), "deduped": result.deduped}

    def schedule_flush(self) -> Optional[asyncio.Task]:
        """
        Start a fire-and-forget drain of the document email jobs.

        Returns the background task, or None when a drain is already running
        in this process.
        """
        if self._flush_in_flight:
            return None
        self._flush_in_flight = True

        task = asyncio.get_running_loop().create_task(self._flush())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _flush(self) -> None:
        try:
            await process_queue(
                self.job_service,
                self.registry.all_handlers(),
                max_jobs=self.flush_max_jobs,
                allowed_types=DOCUMENT_EMAIL_JOB_TYPES,
                alerter=self.alerter,
                logger=self.logger,
            )
        except Exception:
            self.logger.exception("Document email job processing failed")
        finally:
            self._flush_in_flight = False

    async def wait_for_background_tasks(self) -> None:
        """Await drains still running, e.g. on application shutdown."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    async def _mark_email_log_failure(
        self, log_id: Optional[str], error: Exception
    ) -> None:
        if not log_id:
            return
        message = str(error) or "Could not send this message."
        try:
            await self.email_log_store.mark_failed(
                UUID(log_id), message[:EMAIL_LOG_ERROR_LENGTH]
            )
        except Exception as e:
            self.logger.warning(f"Could not mark email log {log_id} as failed: {e}")

    async def _mark_email_log_sent(self, log_id: Optional[str]) -> None:
        if not log_id:
            return
        try:
            await self.email_log_store.mark_sent(
                UUID(log_id), datetime.now(timezone.utc)
            )
        except Exception as e:
            self.logger.warning(f"Could not mark email log {log_id} as sent: {e}")
