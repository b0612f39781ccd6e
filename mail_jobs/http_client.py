"""HTTP client for triggering the messaging cron endpoint."""

from typing import Any, Dict, Optional

import aiohttp

from mail_jobs.errors import RemoteHttpError


class CronHttpClient:
    """HTTP client for calling the cron endpoint of a mail jobs deployment."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        path: str = "/cron/messaging",
    ):
        """
        Initialize HTTP client.

        Args:
            base_url: Base URL of the application (e.g., "https://app.example.com/api")
            token: Cron secret, sent as `Authorization: Bearer <token>`
            timeout: Request timeout in seconds
            path: Path of the cron endpoint
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.path = path
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def trigger_tick(self) -> Dict[str, Any]:
        """
        Run one messaging cron tick remotely.

        Returns:
            The tick summary returned by the endpoint

        Raises:
            RemoteHttpError: If the HTTP request fails
        """
        url = f"{self.base_url}{self.path}"

        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.post(url, headers=headers) as resp:
                    response_body = await resp.text()

                    if resp.status == 401:
                        raise RemoteHttpError(
                            status_code=401,
                            message="Cron token rejected",
                            response_body=response_body,
                        )

                    if resp.status >= 400:
                        raise RemoteHttpError(
                            status_code=resp.status,
                            message=f"Cron tick failed: {response_body}",
                            response_body=response_body,
                        )

                    return await resp.json()

            except aiohttp.ClientError as e:
                raise RemoteHttpError(
                    status_code=0,
                    message=f"Network error: {str(e)}",
                ) from e
