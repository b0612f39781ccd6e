"""Webhook alert fired when a job fails for good."""

import logging
from datetime import datetime, timezone
from typing import Optional

import aiohttp

from mail_jobs.models import Job


class JobFailureAlerter:
    """Posts terminal job failures to an optional webhook."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger or logging.getLogger(__name__)

    async def send(self, job: Job, message: str) -> bool:
        """
        Deliver the alert. Never raises.

        Returns:
            True when the webhook accepted the alert, False otherwise
            (including when no webhook is configured)
        """
        if not self.webhook_url:
            return False

        body = {
            "jobId": str(job.id),
            "type": job.type,
            "message": message,
            "attempts": job.attempts,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    self.webhook_url,
                    json=body,
                    headers={"Content-Type": "application/json"},
                ) as resp:
                    if resp.status >= 400:
                        response_body = await resp.text()
                        self.logger.warning(
                            f"Alert webhook rejected failure of job {job.id}: "
                            f"HTTP {resp.status} {response_body}"
                        )
                        return False
        except Exception as e:
            self.logger.warning(f"Could not send failure alert for job {job.id}: {e}")
            return False

        return True
