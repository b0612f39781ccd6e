"""Interfaces of the services this library drives but does not implement."""

from typing import Optional, Protocol

from mail_jobs.models import MessagingCredentials, OutgoingEmail


class MessagingCredentialsProvider(Protocol):
    async def get_credentials(self, user_id: str) -> MessagingCredentials:
        """
        Resolve a user's decrypted IMAP/SMTP settings.

        Raises:
            MessagingCredentialsError: When they are missing or cannot be decrypted
        """
        ...


class EmailTransport(Protocol):
    async def send(
        self, message: OutgoingEmail, credentials: MessagingCredentials
    ) -> None:
        """Send one message with the given credentials; raises on failure."""
        ...


class InboxSweeper(Protocol):
    async def sweep(self, user_id: str, bootstrap_mode: str) -> None:
        """Poll the user's inbox and send due auto-replies."""
        ...


class DocumentMailer(Protocol):
    """Renders and sends billing documents; raises on failure."""

    async def send_invoice_email(
        self,
        *,
        user_id: str,
        invoice_id: str,
        to: str,
        subject: Optional[str],
        email_log_id: Optional[str],
    ) -> None:
        ...

    async def send_quote_email(
        self,
        *,
        user_id: str,
        quote_id: str,
        to: str,
        subject: Optional[str],
        email_log_id: Optional[str],
    ) -> None:
        ...
