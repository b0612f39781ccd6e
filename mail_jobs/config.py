"""Configuration for the mail jobs platform."""

import os
from typing import Optional


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"Invalid integer in {name}: {raw!r}") from e


def _float_from_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"Invalid number in {name}: {raw!r}") from e


class MailJobsConfig:
    """Configuration object for mail jobs."""

    def __init__(
        self,
        db_dsn: str,
        alert_webhook_url: Optional[str] = None,
        alert_timeout_seconds: float = 5.0,
        cron_secret_token: Optional[str] = None,
        environment: str = "development",
        cron_max_jobs: int = 25,
        document_flush_max_jobs: int = 5,
    ):
        self.db_dsn = db_dsn
        self.alert_webhook_url = alert_webhook_url
        self.alert_timeout_seconds = alert_timeout_seconds
        self.cron_secret_token = cron_secret_token
        self.environment = environment
        self.cron_max_jobs = cron_max_jobs
        self.document_flush_max_jobs = document_flush_max_jobs

    @classmethod
    def from_env(cls) -> "MailJobsConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("MAIL_JOBS_DB_DSN")
        if not db_dsn:
            raise ValueError("MAIL_JOBS_DB_DSN environment variable is required")

        return cls(
            db_dsn=db_dsn,
            alert_webhook_url=os.getenv("JOBS_ALERT_WEBHOOK_URL") or None,
            alert_timeout_seconds=_float_from_env("JOBS_ALERT_TIMEOUT_SECONDS", 5.0),
            cron_secret_token=os.getenv("CRON_SECRET_TOKEN") or None,
            environment=os.getenv("MAIL_JOBS_ENV", "development"),
            cron_max_jobs=_int_from_env("MAIL_JOBS_CRON_MAX_JOBS", 25),
            document_flush_max_jobs=_int_from_env(
                "MAIL_JOBS_DOCUMENT_FLUSH_MAX_JOBS", 5
            ),
        )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"
