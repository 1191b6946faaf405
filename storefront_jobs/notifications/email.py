"""Email delivery through an HTTP email API."""

from typing import Optional

import httpx
import structlog

from storefront_jobs.errors import ExternalServiceError

logger = structlog.get_logger()


class EmailSender:
    """Send transactional email via a JSON HTTP API."""

    def __init__(
        self,
        api_url: Optional[str],
        api_key: Optional[str] = None,
        sender: str = "no-reply@storefront.local",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize email sender.

        Args:
            api_url: Endpoint accepting ``{from, to, subject, text}``. When
                None, deliveries are logged and skipped.
            api_key: Bearer token for the email API
            sender: From address
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self._transport = transport

        logger.info(
            "email_sender_initialized",
            has_api_url=bool(self.api_url),
            has_api_key=bool(self.api_key),
            source="email",
        )

    async def send(self, to: str, subject: str, body: str) -> None:
        """Send a single message.

        Raises:
            ExternalServiceError: If the email API rejects the request or is unreachable
        """
        recipient_domain = to.rsplit("@", 1)[-1]

        if not self.api_url:
            logger.info(
                "email_delivery_skipped",
                reason="no_email_api_configured",
                recipient_domain=recipient_domain,
                source="email",
            )
            return

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    self.api_url,
                    json={
                        "from": self.sender,
                        "to": to,
                        "subject": subject,
                        "text": body,
                    },
                    headers=headers,
                    timeout=self.timeout,
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError("email", str(e)) from e

        logger.info(
            "email_sent",
            recipient_domain=recipient_domain,
            subject_length=len(subject),
            source="email",
        )
