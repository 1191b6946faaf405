from typing import Any, Optional

import httpx
import structlog

from storefront_jobs.errors import ExternalServiceError

logger = structlog.get_logger()


class WebhookRelay:
    """Forward payment-provider webhook events to an internal endpoint."""

    def __init__(
        self,
        forward_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.forward_url = forward_url
        self.timeout = timeout
        self._transport = transport

    async def relay(self, event: str, payload: Any) -> bool:
        """Forward one event. Returns False when no forward URL is configured.

        Raises:
            ExternalServiceError: If the forward endpoint fails
        """
        if not self.forward_url:
            logger.info(
                "webhook_event_not_forwarded", webhook_event=event, source="webhook"
            )
            return False

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    self.forward_url,
                    json={"event": event, "payload": payload},
                    timeout=self.timeout,
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError("webhook", str(e)) from e

        logger.info(
            "webhook_event_forwarded",
            webhook_event=event,
            status_code=response.status_code,
            source="webhook",
        )
        return True
