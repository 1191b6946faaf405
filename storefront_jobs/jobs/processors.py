import re

import structlog

from storefront_jobs.errors import JobValidationError, OrderNotFoundError
from storefront_jobs.jobs.payloads import (
    CacheWarmJobData,
    EmailJobData,
    OrderJobData,
    WebhookJobData,
)
from storefront_jobs.notifications import EmailSender, WebhookRelay
from storefront_jobs.storage import OrderStorage, RedisCache

logger = structlog.get_logger()

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class JobHandlers:
    """Handlers for each job type.

    Each handler receives an already-validated payload model and raises on
    failure; the dispatcher is responsible for catching and logging.
    """

    def __init__(
        self,
        storage: OrderStorage,
        email_sender: EmailSender,
        webhook_relay: WebhookRelay,
        cache: RedisCache,
    ) -> None:
        self.storage = storage
        self.email_sender = email_sender
        self.webhook_relay = webhook_relay
        self.cache = cache

    async def process_order(self, data: OrderJobData) -> None:
        """Run deferred post-checkout bookkeeping for an order.

        Raises:
            OrderNotFoundError: If the order does not exist
            ExternalServiceError: If the database lookup fails
        """
        order = await self.storage.get_order(data.order_id)
        if order is None:
            raise OrderNotFoundError(data.order_id)

        logger.info(
            "order_processed",
            order_id=order.id,
            order_status=order.status,
            source="processor",
        )

    async def send_email(self, data: EmailJobData) -> None:
        if not EMAIL_PATTERN.match(data.to):
            raise JobValidationError("Invalid email recipient")

        await self.email_sender.send(data.to, data.subject, data.body)

    async def process_webhook(self, data: WebhookJobData) -> None:
        logger.info("webhook_event_received", webhook_event=data.event, source="processor")
        await self.webhook_relay.relay(data.event, data.payload)

    async def warm_cache(self, data: CacheWarmJobData) -> None:
        """Report which keys are cold. Repopulating them is left to the storefront's read path."""
        cold = await self.cache.missing(data.keys)

        logger.info(
            "cache_warm_checked",
            key_count=len(data.keys),
            cold_count=len(cold),
            source="processor",
        )
