"""Data models for jobs, scheduled emails and email logs."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class JobStatus(str, Enum):
    """Job status values."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class JobEventType(str, Enum):
    """Audit trail event types, one per job transition."""

    ENQUEUED = "ENQUEUED"
    DEDUPED = "DEDUPED"
    STARTED = "STARTED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"


class Job:
    """Represents a job record."""

    def __init__(
        self,
        id: UUID,
        type: str,
        status: JobStatus,
        payload: Optional[Any],
        run_at: datetime,
        priority: int = 0,
        attempts: int = 0,
        max_attempts: int = 5,
        retry_backoff_ms: int = 60_000,
        dedupe_key: Optional[str] = None,
        locked_at: Optional[datetime] = None,
        last_run_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.type = type
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.payload = payload
        self.run_at = run_at
        self.priority = priority
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.retry_backoff_ms = retry_backoff_ms
        self.dedupe_key = dedupe_key
        self.locked_at = locked_at
        self.last_run_at = last_run_at
        self.last_error = last_error
        self.completed_at = completed_at
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "type": self.type,
            "status": self.status.value,
            "payload": self.payload,
            "dedupe_key": self.dedupe_key,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "retry_backoff_ms": self.retry_backoff_ms,
            "run_at": _iso(self.run_at),
            "locked_at": _iso(self.locked_at),
            "last_run_at": _iso(self.last_run_at),
            "last_error": self.last_error,
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class JobEvent:
    """Append-only audit row attached to a job."""

    def __init__(
        self,
        id: UUID,
        job_id: UUID,
        type: JobEventType,
        detail: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ):
        self.id = id
        self.job_id = job_id
        self.type = JobEventType(type) if isinstance(type, str) else type
        self.detail = detail
        self.created_at = created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "job_id": str(self.job_id),
            "type": self.type.value,
            "detail": self.detail,
            "created_at": _iso(self.created_at),
        }


class EnqueueResult:
    """Outcome of an enqueue call."""

    def __init__(self, job: Job, deduped: bool):
        self.job = job
        self.deduped = deduped


class JobOutcome:
    """Per-job detail of a queue drain."""

    SUCCESS = "success"
    FAILED = "failed"
    RETRY = "retry"
    SKIPPED = "skipped"

    def __init__(
        self,
        job_id: UUID,
        type: str,
        status: str,
        attempts: int,
        message: Optional[str] = None,
    ):
        self.job_id = job_id
        self.type = type
        self.status = status
        self.attempts = attempts
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "job_id": str(self.job_id),
            "type": self.type,
            "status": self.status,
            "attempts": self.attempts,
        }
        if self.message is not None:
            data["message"] = self.message
        return data


class ProcessQueueResult:
    """Counters and details of one process_queue call."""

    def __init__(self):
        self.completed = 0
        self.failed = 0
        self.retried = 0
        self.skipped = 0
        self.details: List[JobOutcome] = []

    @property
    def processed(self) -> int:
        return len(self.details)

    def record(self, outcome: JobOutcome) -> None:
        self.details.append(outcome)
        if outcome.status == JobOutcome.SUCCESS:
            self.completed += 1
        elif outcome.status == JobOutcome.FAILED:
            self.failed += 1
        elif outcome.status == JobOutcome.RETRY:
            self.retried += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
            "skipped": self.skipped,
            "details": [outcome.to_dict() for outcome in self.details],
        }


class ScheduledEmailStatus(str, Enum):
    """Scheduled email status values."""

    PENDING = "PENDING"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class EmailAttachment:
    """Attachment handed to the email transport."""

    def __init__(
        self, filename: str, content: bytes, content_type: Optional[str] = None
    ):
        self.filename = filename
        self.content = content
        self.content_type = content_type


class ScheduledAttachment:
    """Attachment row owned by a scheduled email."""

    def __init__(
        self,
        id: UUID,
        scheduled_email_id: UUID,
        filename: Optional[str],
        content_type: Optional[str],
        size: int,
        content: bytes,
        created_at: Optional[datetime] = None,
    ):
        self.id = id
        self.scheduled_email_id = scheduled_email_id
        self.filename = filename
        self.content_type = content_type
        self.size = size
        self.content = content
        self.created_at = created_at

    def to_transport(self) -> EmailAttachment:
        return EmailAttachment(
            filename=self.filename or "attachment",
            content=bytes(self.content),
            content_type=self.content_type or None,
        )


class ScheduledEmail:
    """User-authored email waiting for its send time."""

    def __init__(
        self,
        id: UUID,
        user_id: str,
        to: List[str],
        subject: str,
        text: str,
        html: str,
        send_at: datetime,
        status: ScheduledEmailStatus = ScheduledEmailStatus.PENDING,
        cc: Optional[List[str]] = None,
        bcc: Optional[List[str]] = None,
        preview_text: str = "",
        failure_reason: Optional[str] = None,
        sent_at: Optional[datetime] = None,
        canceled_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        attachments: Optional[List[ScheduledAttachment]] = None,
    ):
        self.id = id
        self.user_id = user_id
        self.to = list(to)
        self.cc = list(cc or [])
        self.bcc = list(bcc or [])
        self.subject = subject
        self.text = text
        self.html = html
        self.preview_text = preview_text
        self.send_at = send_at
        self.status = (
            ScheduledEmailStatus(status) if isinstance(status, str) else status
        )
        self.failure_reason = failure_reason
        self.sent_at = sent_at
        self.canceled_at = canceled_at
        self.created_at = created_at
        self.updated_at = updated_at
        self.attachments = list(attachments or [])


class ScheduledEmailSummary:
    """List entry shown in the scheduled-send UI."""

    def __init__(
        self,
        id: UUID,
        subject: str,
        to: List[str],
        cc: List[str],
        bcc: List[str],
        send_at: datetime,
        status: ScheduledEmailStatus,
        failure_reason: Optional[str],
        created_at: Optional[datetime],
        preview_text: str,
        attachments_count: int,
    ):
        self.id = id
        self.subject = subject
        self.to = to
        self.cc = cc
        self.bcc = bcc
        self.send_at = send_at
        self.status = (
            ScheduledEmailStatus(status) if isinstance(status, str) else status
        )
        self.failure_reason = failure_reason
        self.created_at = created_at
        self.preview_text = preview_text
        self.attachments_count = attachments_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "subject": self.subject,
            "to": self.to,
            "cc": self.cc,
            "bcc": self.bcc,
            "send_at": _iso(self.send_at),
            "status": self.status.value,
            "failure_reason": self.failure_reason,
            "created_at": _iso(self.created_at),
            "preview_text": self.preview_text,
            "attachments_count": self.attachments_count,
        }


class DispatchResult:
    """Counters of one scheduled email dispatch cycle."""

    def __init__(self, due: int = 0, sent: int = 0, failed: int = 0, skipped: int = 0):
        self.due = due
        self.sent = sent
        self.failed = failed
        self.skipped = skipped

    def to_dict(self) -> Dict[str, int]:
        return {
            "due": self.due,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class OutgoingEmail:
    """Message handed to the email transport."""

    def __init__(
        self,
        to: List[str],
        subject: str,
        text: str,
        html: str,
        cc: Optional[List[str]] = None,
        bcc: Optional[List[str]] = None,
        attachments: Optional[List[EmailAttachment]] = None,
    ):
        self.to = to
        self.cc = cc
        self.bcc = bcc
        self.subject = subject
        self.text = text
        self.html = html
        self.attachments = attachments


class MailServerConfig:
    """Decrypted IMAP or SMTP connection settings."""

    def __init__(
        self,
        host: str,
        port: int,
        secure: bool,
        user: str,
        password: str,
        from_email: Optional[str] = None,
    ):
        self.host = host
        self.port = port
        self.secure = secure
        self.user = user
        self.password = password
        self.from_email = from_email


class MessagingCredentials:
    """A user's resolved messaging credentials."""

    def __init__(
        self,
        user_id: str,
        imap: Optional[MailServerConfig] = None,
        smtp: Optional[MailServerConfig] = None,
    ):
        self.user_id = user_id
        self.imap = imap
        self.smtp = smtp


class MessagingSettings:
    """Subset of a user's messaging settings relevant to auto-replies."""

    def __init__(
        self,
        user_id: str,
        auto_reply_enabled: bool = False,
        vacation_mode_enabled: bool = False,
        vacation_start_date: Optional[datetime] = None,
        vacation_end_date: Optional[datetime] = None,
        imap_host: Optional[str] = None,
        smtp_host: Optional[str] = None,
    ):
        self.user_id = user_id
        self.auto_reply_enabled = auto_reply_enabled
        self.vacation_mode_enabled = vacation_mode_enabled
        self.vacation_start_date = vacation_start_date
        self.vacation_end_date = vacation_end_date
        self.imap_host = imap_host
        self.smtp_host = smtp_host


class DocumentType(str, Enum):
    """Billing document kinds that can be emailed."""

    FACTURE = "FACTURE"
    DEVIS = "DEVIS"


class EmailLogStatus(str, Enum):
    """User-visible delivery status of a document email."""

    EN_ATTENTE = "EN_ATTENTE"
    ENVOYE = "ENVOYE"
    ECHEC = "ECHEC"


class EmailLog:
    """Audit row correlated with a document email job."""

    def __init__(
        self,
        id: UUID,
        user_id: str,
        document_type: DocumentType,
        document_id: str,
        to: str,
        subject: str,
        status: EmailLogStatus = EmailLogStatus.EN_ATTENTE,
        error: Optional[str] = None,
        sent_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ):
        self.id = id
        self.user_id = user_id
        self.document_type = (
            DocumentType(document_type)
            if isinstance(document_type, str)
            else document_type
        )
        self.document_id = document_id
        self.to = to
        self.subject = subject
        self.status = EmailLogStatus(status) if isinstance(status, str) else status
        self.error = error
        self.sent_at = sent_at
        self.created_at = created_at
