"""Exception types for the mail jobs library."""


class MailJobsError(Exception):
    """Base exception for all mail jobs errors."""

    pass


class ValidationError(MailJobsError):
    """Raised when a request is rejected before anything is persisted."""

    pass


class JobNotFoundError(MailJobsError):
    """Raised when a job is not found."""

    def __init__(self, job_id, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class DuplicateJobError(MailJobsError):
    """Raised by the store when (type, dedupe_key) already exists."""

    def __init__(self, type: str, dedupe_key: str = None):
        self.type = type
        self.dedupe_key = dedupe_key
        super().__init__(f"Job {type} with dedupe key {dedupe_key} already exists")


class ScheduledEmailStateError(MailJobsError):
    """Raised when a scheduled email is not in a status allowing the change."""

    def __init__(self, scheduled_email_id, action: str):
        self.scheduled_email_id = scheduled_email_id
        self.action = action
        super().__init__(
            f"Cannot {action} scheduled email {scheduled_email_id}: check its status"
        )


class MessagingCredentialsError(MailJobsError):
    """Raised when a user's messaging credentials are missing or unreadable."""

    def __init__(self, user_id: str, message: str = None):
        self.user_id = user_id
        if message is None:
            message = f"Messaging credentials unavailable for user {user_id}"
        super().__init__(message)


class AuthTokenError(MailJobsError):
    """Raised when the cron token is missing or invalid."""

    pass


class RemoteHttpError(MailJobsError):
    """Raised when an HTTP request to a remote mail jobs service fails."""

    def __init__(self, status_code: int, message: str, response_body: str = None):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(f"HTTP {status_code}: {message}")
