"""Scheduled (send-later) emails: storage, user actions and the dispatch cycle."""

import json
import logging
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence
from uuid import UUID, uuid4

import asyncpg

from mail_jobs.collaborators import EmailTransport, MessagingCredentialsProvider
from mail_jobs.errors import (
    MessagingCredentialsError,
    ScheduledEmailStateError,
    ValidationError,
)
from mail_jobs.models import (
    DispatchResult,
    EmailAttachment,
    MessagingCredentials,
    OutgoingEmail,
    ScheduledAttachment,
    ScheduledEmail,
    ScheduledEmailStatus,
    ScheduledEmailSummary,
)
from mail_jobs.service import as_utc, utcnow
from mail_jobs.store import affected_rows

DISPATCH_BATCH_SIZE = 10
PREVIEW_LENGTH = 400
FAILURE_REASON_LENGTH = 300

LISTED_STATUSES = (
    ScheduledEmailStatus.PENDING,
    ScheduledEmailStatus.SENDING,
    ScheduledEmailStatus.FAILED,
    ScheduledEmailStatus.CANCELLED,
)
RESCHEDULABLE_STATUSES = (ScheduledEmailStatus.PENDING, ScheduledEmailStatus.FAILED)
CANCELABLE_STATUSES = (ScheduledEmailStatus.PENDING, ScheduledEmailStatus.FAILED)


def _to_string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = json.loads(value)
    if not isinstance(value, list):
        return []
    return [str(entry) for entry in value if entry is not None and str(entry)]


def _clean_addresses(addresses: Optional[Iterable[str]]) -> list[str]:
    if isinstance(addresses, str):
        addresses = [addresses]
    return [address.strip() for address in addresses or [] if address and address.strip()]


def truncate_message(value: str, length: int = FAILURE_REASON_LENGTH) -> str:
    if len(value) <= length:
        return value
    return f"{value[:length]}…"


class ScheduledEmailStore:
    """Database layer for scheduled emails and their attachments."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def insert_scheduled_email(self, email: ScheduledEmail) -> ScheduledEmail:
        """Insert the email and its attachment rows atomically."""
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    INSERT INTO scheduled_emails (
                        id, user_id, to_addresses, cc_addresses, bcc_addresses,
                        subject, text_body, html_body, preview_text, send_at, status
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    RETURNING created_at
                    """,
                    email.id,
                    email.user_id,
                    json.dumps(email.to),
                    json.dumps(email.cc) if email.cc else None,
                    json.dumps(email.bcc) if email.bcc else None,
                    email.subject,
                    email.text,
                    email.html,
                    email.preview_text,
                    email.send_at,
                    ScheduledEmailStatus.PENDING.value,
                )
                for attachment in email.attachments:
                    await conn.execute(
                        """
                        INSERT INTO scheduled_email_attachments (
                            id, scheduled_email_id, filename, content_type, size, content
                        ) VALUES ($1, $2, $3, $4, $5, $6)
                        """,
                        attachment.id,
                        email.id,
                        attachment.filename,
                        attachment.content_type,
                        attachment.size,
                        attachment.content,
                    )

        email.created_at = row["created_at"]
        return email

    async def list_for_user(
        self, user_id: str, statuses: Sequence[ScheduledEmailStatus]
    ) -> list[ScheduledEmailSummary]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT e.*, COUNT(a.id) AS attachments_count
                FROM scheduled_emails e
                LEFT JOIN scheduled_email_attachments a
                  ON a.scheduled_email_id = e.id
                WHERE e.user_id = $1
                  AND e.status = ANY($2::text[])
                GROUP BY e.id
                ORDER BY array_position($2::text[], e.status), e.send_at ASC
                """,
                user_id,
                [status.value for status in statuses],
            )

        return [
            ScheduledEmailSummary(
                id=row["id"],
                subject=row["subject"],
                to=_to_string_list(row["to_addresses"]),
                cc=_to_string_list(row["cc_addresses"]),
                bcc=_to_string_list(row["bcc_addresses"]),
                send_at=row["send_at"],
                status=row["status"],
                failure_reason=row["failure_reason"],
                created_at=row["created_at"],
                preview_text=row["preview_text"],
                attachments_count=row["attachments_count"],
            )
            for row in rows
        ]

    async def reschedule(
        self,
        scheduled_email_id: UUID,
        user_id: str,
        send_at: datetime,
        from_statuses: Sequence[ScheduledEmailStatus],
    ) -> int:
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE scheduled_emails
                SET send_at = $1,
                    status = $2,
                    failure_reason = NULL,
                    updated_at = now()
                WHERE id = $3
                  AND user_id = $4
                  AND status = ANY($5::text[])
                """,
                send_at,
                ScheduledEmailStatus.PENDING.value,
                scheduled_email_id,
                user_id,
                [s.value for s in from_statuses],
            )
        return affected_rows(status)

    async def cancel(
        self,
        scheduled_email_id: UUID,
        user_id: str,
        canceled_at: datetime,
        from_statuses: Sequence[ScheduledEmailStatus],
    ) -> int:
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE scheduled_emails
                SET status = $1,
                    canceled_at = $2,
                    updated_at = now()
                WHERE id = $3
                  AND user_id = $4
                  AND status = ANY($5::text[])
                """,
                ScheduledEmailStatus.CANCELLED.value,
                canceled_at,
                scheduled_email_id,
                user_id,
                [s.value for s in from_statuses],
            )
        return affected_rows(status)

    async def fetch_due(self, now: datetime, limit: int) -> list[ScheduledEmail]:
        """PENDING emails whose send time has come, oldest first, with attachments."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM scheduled_emails
                WHERE status = $1 AND send_at <= $2
                ORDER BY send_at ASC
                LIMIT $3
                """,
                ScheduledEmailStatus.PENDING.value,
                now,
                limit,
            )
            if not rows:
                return []
            attachment_rows = await conn.fetch(
                """
                SELECT * FROM scheduled_email_attachments
                WHERE scheduled_email_id = ANY($1::uuid[])
                ORDER BY created_at ASC
                """,
                [row["id"] for row in rows],
            )

        attachments: dict[UUID, list[ScheduledAttachment]] = {}
        for row in attachment_rows:
            attachments.setdefault(row["scheduled_email_id"], []).append(
                ScheduledAttachment(
                    id=row["id"],
                    scheduled_email_id=row["scheduled_email_id"],
                    filename=row["filename"],
                    content_type=row["content_type"],
                    size=row["size"],
                    content=row["content"],
                    created_at=row["created_at"],
                )
            )

        return [
            self._row_to_email(row, attachments.get(row["id"], [])) for row in rows
        ]

    async def try_lease(self, scheduled_email_id: UUID) -> bool:
        """Flip PENDING -> SENDING; False when another dispatcher got there first."""
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE scheduled_emails
                SET status = $1, updated_at = now()
                WHERE id = $2 AND status = $3
                """,
                ScheduledEmailStatus.SENDING.value,
                scheduled_email_id,
                ScheduledEmailStatus.PENDING.value,
            )
        return affected_rows(status) == 1

    async def mark_sent(self, scheduled_email_id: UUID, sent_at: datetime) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE scheduled_emails
                SET status = $1, sent_at = $2, failure_reason = NULL, updated_at = now()
                WHERE id = $3 AND status = $4
                """,
                ScheduledEmailStatus.SENT.value,
                sent_at,
                scheduled_email_id,
                ScheduledEmailStatus.SENDING.value,
            )

    async def mark_failed(self, scheduled_email_id: UUID, reason: str) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE scheduled_emails
                SET status = $1, failure_reason = $2, updated_at = now()
                WHERE id = $3 AND status = $4
                """,
                ScheduledEmailStatus.FAILED.value,
                reason,
                scheduled_email_id,
                ScheduledEmailStatus.SENDING.value,
            )

    def _row_to_email(
        self, row: asyncpg.Record, attachments: list[ScheduledAttachment]
    ) -> ScheduledEmail:
        return ScheduledEmail(
            id=row["id"],
            user_id=row["user_id"],
            to=_to_string_list(row["to_addresses"]),
            cc=_to_string_list(row["cc_addresses"]),
            bcc=_to_string_list(row["bcc_addresses"]),
            subject=row["subject"],
            text=row["text_body"],
            html=row["html_body"],
            preview_text=row["preview_text"],
            send_at=row["send_at"],
            status=row["status"],
            failure_reason=row["failure_reason"],
            sent_at=row["sent_at"],
            canceled_at=row["canceled_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            attachments=attachments,
        )


class ScheduledEmailService:
    """User-facing scheduled-send operations and the dispatch cycle."""

    def __init__(
        self,
        store: ScheduledEmailStore,
        credentials_provider: MessagingCredentialsProvider,
        transport: EmailTransport,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.credentials_provider = credentials_provider
        self.transport = transport
        self.logger = logger or logging.getLogger(__name__)

    async def schedule_email_draft(
        self,
        *,
        user_id: str,
        to: Sequence[str],
        subject: str,
        text: str,
        html: str,
        send_at: datetime,
        cc: Optional[Sequence[str]] = None,
        bcc: Optional[Sequence[str]] = None,
        attachments: Sequence[EmailAttachment] = (),
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """
        Store an email to be sent at `send_at`.

        Raises:
            ValidationError: No recipient, or `send_at` is not in the future
        """
        recipients = _clean_addresses(to)
        if not recipients:
            raise ValidationError("At least one recipient is required.")
        send_at = as_utc(send_at)
        if send_at <= as_utc(now or utcnow()):
            raise ValidationError("The send time must be in the future.")

        preview_text = text.strip()[:PREVIEW_LENGTH]
        email_id = uuid4()
        email = ScheduledEmail(
            id=email_id,
            user_id=user_id,
            to=recipients,
            cc=_clean_addresses(cc),
            bcc=_clean_addresses(bcc),
            subject=subject,
            text=text,
            html=html,
            preview_text=preview_text or subject,
            send_at=send_at,
            attachments=[
                ScheduledAttachment(
                    id=uuid4(),
                    scheduled_email_id=email_id,
                    filename=attachment.filename,
                    content_type=attachment.content_type,
                    size=len(attachment.content),
                    content=bytes(attachment.content),
                )
                for attachment in attachments
            ],
        )
        await self.store.insert_scheduled_email(email)
        self.logger.info(f"Scheduled email {email_id} for user {user_id} at {send_at}")
        return {"id": str(email_id), "send_at": send_at.isoformat()}

    async def list_scheduled_emails(self, user_id: str) -> list[ScheduledEmailSummary]:
        return await self.store.list_for_user(user_id, LISTED_STATUSES)

    async def reschedule_scheduled_email(
        self,
        *,
        id: UUID,
        user_id: str,
        send_at: datetime,
        now: Optional[datetime] = None,
    ) -> None:
        """Move a PENDING or FAILED email to a new future send time."""
        send_at = as_utc(send_at)
        if send_at <= as_utc(now or utcnow()):
            raise ValidationError("The send time must be in the future.")
        updated = await self.store.reschedule(id, user_id, send_at, RESCHEDULABLE_STATUSES)
        if updated == 0:
            raise ScheduledEmailStateError(id, "reschedule")
        self.logger.info(f"Rescheduled email {id} to {send_at}")

    async def cancel_scheduled_email(self, *, id: UUID, user_id: str) -> None:
        updated = await self.store.cancel(id, user_id, utcnow(), CANCELABLE_STATUSES)
        if updated == 0:
            raise ScheduledEmailStateError(id, "cancel")
        self.logger.info(f"Cancelled scheduled email {id}")

    async def run_dispatch_cycle(self, now: Optional[datetime] = None) -> DispatchResult:
        """
        Send the scheduled emails that are due, at most DISPATCH_BATCH_SIZE per call.

        Each row is claimed with a guarded PENDING -> SENDING update so that
        overlapping cycles never send the same email twice. A failed send marks
        that row FAILED and the cycle moves on.
        """
        now = as_utc(now or utcnow())
        due = await self.store.fetch_due(now, DISPATCH_BATCH_SIZE)
        result = DispatchResult(due=len(due))
        credentials_cache: dict[str, MessagingCredentials] = {}

        for scheduled in due:
            if not await self.store.try_lease(scheduled.id):
                self.logger.debug(f"Scheduled email {scheduled.id} already claimed")
                result.skipped += 1
                continue

            try:
                credentials = await self._get_cached_credentials(
                    scheduled.user_id, credentials_cache
                )
                await self.transport.send(self._build_message(scheduled), credentials)
            except Exception as e:
                reason = truncate_message(str(e) or type(e).__name__)
                await self.store.mark_failed(scheduled.id, reason)
                self.logger.warning(f"Could not send scheduled email {scheduled.id}: {e}")
                result.failed += 1
                continue

            await self.store.mark_sent(scheduled.id, utcnow())
            self.logger.info(f"Sent scheduled email {scheduled.id}")
            result.sent += 1

        return result

    async def _get_cached_credentials(
        self, user_id: str, cache: dict[str, MessagingCredentials]
    ) -> MessagingCredentials:
        cached = cache.get(user_id)
        if cached is not None:
            return cached
        credentials = await self.credentials_provider.get_credentials(user_id)
        if credentials.smtp is None:
            raise MessagingCredentialsError(
                user_id, "The SMTP server is not configured."
            )
        cache[user_id] = credentials
        return credentials

    def _build_message(self, scheduled: ScheduledEmail) -> OutgoingEmail:
        return OutgoingEmail(
            to=scheduled.to,
            cc=scheduled.cc or None,
            bcc=scheduled.bcc or None,
            subject=scheduled.subject,
            text=scheduled.text,
            html=scheduled.html,
            attachments=[a.to_transport() for a in scheduled.attachments] or None,
        )
