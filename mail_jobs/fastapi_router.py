"""FastAPI router for the mail jobs HTTP API."""

import base64
import binascii
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from mail_jobs.app import MailJobs
from mail_jobs.errors import (
    AuthTokenError,
    JobNotFoundError,
    ScheduledEmailStateError,
    ValidationError,
)
from mail_jobs.models import EmailAttachment


logger = logging.getLogger(__name__)

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


class DocumentEmailRequest(BaseModel):
    """Request model for sending an invoice or a quote."""

    user_id: str
    to: str
    subject: Optional[str] = None


class DocumentEmailResponse(BaseModel):
    job_id: str
    deduped: bool


class AttachmentRequest(BaseModel):
    filename: str
    content_base64: str
    content_type: Optional[str] = None


class ScheduleEmailRequest(BaseModel):
    """Request model for a send-later email."""

    user_id: str
    to: List[str]
    cc: List[str] = []
    bcc: List[str] = []
    subject: str
    text: str
    html: str
    send_at: datetime
    attachments: List[AttachmentRequest] = []


class ScheduleEmailResponse(BaseModel):
    id: str
    send_at: str


class RescheduleEmailRequest(BaseModel):
    user_id: str
    send_at: datetime


class CancelEmailRequest(BaseModel):
    user_id: str


class ScheduledEmailResponse(BaseModel):
    id: str
    subject: str
    to: List[str]
    cc: List[str]
    bcc: List[str]
    send_at: Optional[str] = None
    status: str
    failure_reason: Optional[str] = None
    created_at: Optional[str] = None
    preview_text: str
    attachments_count: int


class JobResponse(BaseModel):
    """Response model for job details."""

    id: str
    type: str
    status: str
    payload: Optional[Any] = None
    dedupe_key: Optional[str] = None
    priority: int
    attempts: int
    max_attempts: int
    retry_backoff_ms: int
    run_at: Optional[str] = None
    locked_at: Optional[str] = None
    last_run_at: Optional[str] = None
    last_error: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    events: Optional[List[Dict[str, Any]]] = None


def extract_cron_token(
    authorization: Optional[str],
    x_cron_secret: Optional[str],
    token: Optional[str],
) -> Optional[str]:
    """Token from `Authorization: Bearer`, then `X-Cron-Secret`, then `?token=`."""
    if authorization:
        match = _BEARER_RE.match(authorization.strip())
        if match:
            return match.group(1).strip()
    if x_cron_secret and x_cron_secret.strip():
        return x_cron_secret.strip()
    return token.strip() if token else None


def check_cron_token(
    provided: Optional[str], expected: Optional[str], is_production: bool
) -> None:
    """
    Raises:
        AuthTokenError: Wrong token, or no secret configured in production
    """
    if not expected:
        if is_production:
            raise AuthTokenError("Cron secret is not configured")
        return
    if provided != expected:
        raise AuthTokenError("Invalid cron token")


def create_mail_jobs_router(
    mail_jobs_factory: Callable[[], MailJobs],
    cron_secret_token: Optional[str] = None,
    is_production: bool = False,
) -> APIRouter:
    """
    Create FastAPI router for the mail jobs API.

    Args:
        mail_jobs_factory: Callable that returns the process' MailJobs instance
        cron_secret_token: Secret expected by the cron endpoint
        is_production: Without a secret, the cron endpoint is only open outside production

    Returns:
        APIRouter instance
    """
    router = APIRouter()

    async def get_mail_jobs() -> MailJobs:
        """Dependency to get the MailJobs instance."""
        return mail_jobs_factory()

    async def verify_cron_token(
        authorization: Optional[str] = Header(None),
        x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
        token: Optional[str] = Query(None),
    ) -> None:
        provided = extract_cron_token(authorization, x_cron_secret, token)
        try:
            check_cron_token(provided, cron_secret_token, is_production)
        except AuthTokenError as e:
            logger.warning(f"Rejected cron call: {e}")
            raise HTTPException(status_code=401, detail="Unauthorized") from e

    @router.api_route("/cron/messaging", methods=["GET", "POST"])
    async def messaging_cron(
        mail_jobs: MailJobs = Depends(get_mail_jobs),
        _: None = Depends(verify_cron_token),
    ):
        """Run one messaging cron tick."""
        summary = await mail_jobs.run_messaging_cron_tick()
        logger.info(f"[cron] messaging: {summary['scheduled']}")
        return summary

    @router.post("/documents/invoices/{invoice_id}/email", response_model=DocumentEmailResponse)
    async def queue_invoice_email(
        invoice_id: str,
        request: DocumentEmailRequest,
        mail_jobs: MailJobs = Depends(get_mail_jobs),
    ):
        """Queue an invoice email."""
        try:
            result = await mail_jobs.queue_invoice_email_job(
                request.user_id, invoice_id, request.to, request.subject
            )
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return DocumentEmailResponse(**result)

    @router.post("/documents/quotes/{quote_id}/email", response_model=DocumentEmailResponse)
    async def queue_quote_email(
        quote_id: str,
        request: DocumentEmailRequest,
        mail_jobs: MailJobs = Depends(get_mail_jobs),
    ):
        """Queue a quote email."""
        try:
            result = await mail_jobs.queue_quote_email_job(
                request.user_id, quote_id, request.to, request.subject
            )
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return DocumentEmailResponse(**result)

    @router.get("/scheduled-emails", response_model=List[ScheduledEmailResponse])
    async def list_scheduled_emails(
        user_id: str = Query(...),
        mail_jobs: MailJobs = Depends(get_mail_jobs),
    ):
        summaries = await mail_jobs.scheduled.list_scheduled_emails(user_id)
        return [ScheduledEmailResponse(**summary.to_dict()) for summary in summaries]

    @router.post("/scheduled-emails", response_model=ScheduleEmailResponse)
    async def schedule_email(
        request: ScheduleEmailRequest,
        mail_jobs: MailJobs = Depends(get_mail_jobs),
    ):
        """Schedule an email for later delivery."""
        try:
            attachments = [
                EmailAttachment(
                    filename=attachment.filename,
                    content=base64.b64decode(attachment.content_base64, validate=True),
                    content_type=attachment.content_type,
                )
                for attachment in request.attachments
            ]
        except (binascii.Error, ValueError) as e:
            raise HTTPException(
                status_code=400, detail=f"Invalid attachment content: {e}"
            ) from e

        try:
            result = await mail_jobs.scheduled.schedule_email_draft(
                user_id=request.user_id,
                to=request.to,
                cc=request.cc,
                bcc=request.bcc,
                subject=request.subject,
                text=request.text,
                html=request.html,
                send_at=request.send_at,
                attachments=attachments,
            )
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return ScheduleEmailResponse(**result)

    @router.post("/scheduled-emails/{email_id}/reschedule")
    async def reschedule_email(
        email_id: UUID,
        request: RescheduleEmailRequest,
        mail_jobs: MailJobs = Depends(get_mail_jobs),
    ):
        try:
            await mail_jobs.scheduled.reschedule_scheduled_email(
                id=email_id, user_id=request.user_id, send_at=request.send_at
            )
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except ScheduledEmailStateError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return {"id": str(email_id), "status": "PENDING"}

    @router.post("/scheduled-emails/{email_id}/cancel")
    async def cancel_email(
        email_id: UUID,
        request: CancelEmailRequest,
        mail_jobs: MailJobs = Depends(get_mail_jobs),
    ):
        try:
            await mail_jobs.scheduled.cancel_scheduled_email(
                id=email_id, user_id=request.user_id
            )
        except ScheduledEmailStateError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return {"id": str(email_id), "status": "CANCELLED"}

    @router.get("/jobs/metrics")
    async def job_metrics(mail_jobs: MailJobs = Depends(get_mail_jobs)):
        """Job totals per status, upcoming jobs and recent events."""
        return await mail_jobs.job_service.get_job_metrics()

    @router.get("/jobs/{job_id}", response_model=JobResponse)
    async def get_job(
        job_id: str,
        mail_jobs: MailJobs = Depends(get_mail_jobs),
    ):
        """Get job details and audit trail by ID."""
        try:
            job_uuid = UUID(job_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail="Invalid job ID format") from e

        try:
            job = await mail_jobs.job_service.get_job(job_uuid)
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        events = await mail_jobs.job_service.list_job_events(job_uuid)
        return JobResponse(**job.to_dict(), events=[e.to_dict() for e in events])

    @router.get("/jobs", response_model=List[JobResponse])
    async def list_jobs(
        type: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=1000),
        mail_jobs: MailJobs = Depends(get_mail_jobs),
    ):
        """List jobs with optional filters."""
        jobs = await mail_jobs.job_service.list_jobs(type=type, status=status, limit=limit)
        return [JobResponse(**job.to_dict()) for job in jobs]

    return router
