from typing import Any, Iterable, Optional

import structlog
from pydantic import ValidationError

from storefront_jobs.jobs.envelope import build_envelope
from storefront_jobs.jobs.payloads import (
    CACHE_WARM,
    EMAIL_SEND,
    ORDER_PROCESS,
    WEBHOOK_PROCESS,
    CacheWarmJobData,
    EmailJobData,
    JobPayload,
    OrderJobData,
    WebhookJobData,
)
from storefront_jobs.jobs.queue import RedisJobQueue

logger = structlog.get_logger()


class JobProducer:
    """Enqueue follow-up work from request handlers.

    Every method returns the new job id, or None when the job could not be
    queued. Nothing here raises: checkout and webhook handlers must complete
    whether or not their background work was scheduled.
    """

    def __init__(self, queue: RedisJobQueue):
        self.queue = queue

    async def enqueue_job(self, job_type: str, data: Any = None) -> Optional[str]:
        """Queue an arbitrary job.

        Example:
            job_id = await producer.enqueue_job('order:process', {'orderId': 'ord_123'})
        """
        try:
            envelope = build_envelope(job_type, data)
            if envelope is None:
                return None
            if not await self.queue.enqueue(envelope):
                return None
            return envelope.id
        except Exception as e:
            logger.error(
                "job_enqueue_error",
                job_type=str(job_type),
                error=str(e),
                error_type=type(e).__name__,
                source="producer",
            )
            return None

    async def enqueue_order_job(self, order_id: str) -> Optional[str]:
        return await self._enqueue_payload(ORDER_PROCESS, OrderJobData, order_id=order_id)

    async def enqueue_email_job(self, to: str, subject: str, body: str) -> Optional[str]:
        """Queue an email. Only emptiness is checked here; the handler checks the address."""
        return await self._enqueue_payload(
            EMAIL_SEND, EmailJobData, to=to, subject=subject, body=body
        )

    async def enqueue_webhook_job(self, event: str, payload: Any = None) -> Optional[str]:
        return await self._enqueue_payload(
            WEBHOOK_PROCESS, WebhookJobData, event=event, payload=payload
        )

    async def enqueue_cache_warm_job(self, keys: Iterable[str]) -> Optional[str]:
        return await self._enqueue_payload(CACHE_WARM, CacheWarmJobData, keys=keys)

    async def _enqueue_payload(
        self, job_type: str, model: type[JobPayload], **fields: Any
    ) -> Optional[str]:
        try:
            data = model(**fields).model_dump(mode="json", by_alias=True)
        except ValidationError as e:
            logger.warning(
                "job_payload_invalid",
                job_type=job_type,
                fields=sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()}),
                source="producer",
            )
            return None
        except Exception as e:
            logger.error(
                "job_payload_unserializable",
                job_type=job_type,
                error=str(e),
                error_type=type(e).__name__,
                source="producer",
            )
            return None

        return await self.enqueue_job(job_type, data)
