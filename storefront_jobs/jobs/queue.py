import asyncio
import json
import time
from datetime import datetime, timezone
from functools import partial
from typing import TYPE_CHECKING, Callable, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from storefront_jobs.errors import JobValidationError, QueueUnavailableError
from storefront_jobs.jobs.envelope import JobEnvelope

if TYPE_CHECKING:
    from storefront_jobs.config import Settings

logger = structlog.get_logger()

ClientFactory = Callable[[], Redis]


class ReconnectPolicy:
    """Bounded exponential backoff for queue-store reconnects."""

    def __init__(
        self,
        max_retries: int = 10,
        base_delay: float = 0.05,
        max_delay: float = 1.0,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def delay_for(self, failures: int) -> float:
        """Return how long to wait after ``failures`` consecutive failed attempts.

        Raises:
            QueueUnavailableError: Once ``failures`` reaches ``max_retries``
        """
        if failures >= self.max_retries:
            raise QueueUnavailableError(
                f"Queue store unreachable after {failures} attempts"
            )
        return min(self.base_delay * (2 ** (failures - 1)), self.max_delay)


class RedisJobQueue:
    """FIFO job queue stored in a single Redis list.

    Producers append with RPUSH and the worker removes from the head with
    BLPOP. Ordering holds only while exactly one worker consumes the list,
    and a popped envelope is gone from Redis whether or not its handler
    completes.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379",
        queue_name: str = "storefront:jobs",
        policy: Optional[ReconnectPolicy] = None,
        client_factory: Optional[ClientFactory] = None,
        connect_timeout: float = 5.0,
        dead_letter_queue_name: Optional[str] = None,
        outage_cooldown: float = 5.0,
    ):
        """Initialize the queue. No connection is made until first use.

        Args:
            url: Redis connection URL
            queue_name: Key of the Redis list holding pending envelopes
            policy: Reconnect policy applied when the store is unreachable
            client_factory: Callable returning a new client; overrides ``url``
            connect_timeout: Socket connect timeout in seconds
            dead_letter_queue_name: Key for failed envelopes, None to disable
            outage_cooldown: Seconds retrying connects fail fast after the
                reconnect budget is spent
        """
        self.queue_name = queue_name
        self.dead_letter_queue_name = dead_letter_queue_name
        self.policy = policy or ReconnectPolicy()
        self._client_factory = client_factory or partial(
            Redis.from_url,
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
        )
        self._client: Optional[Redis] = None
        self._connect_lock = asyncio.Lock()
        self.outage_cooldown = outage_cooldown
        self._unavailable_until = 0.0

    async def connect(
        self, retry: bool = True, stop: Optional[asyncio.Event] = None
    ) -> Redis:
        """Return the open client, connecting first if necessary.

        Once the reconnect budget is spent, retrying callers fail fast until
        ``outage_cooldown`` has passed, so concurrent producers do not queue
        up behind one another. Single attempts still probe the store, and a
        successful one ends the cooldown.

        Args:
            retry: Apply the reconnect policy; with False a single failed
                attempt raises immediately
            stop: Abandons the reconnect loop once set

        Raises:
            QueueUnavailableError: If the store cannot be reached
        """
        if self._client is not None:
            return self._client

        if retry:
            self._check_outage()
        async with self._connect_lock:
            if self._client is None:
                if retry:
                    self._check_outage()
                self._client = await self._open(retry, stop)
        return self._client

    def _check_outage(self) -> None:
        if time.monotonic() < self._unavailable_until:
            raise QueueUnavailableError("Queue store unavailable, waiting for cooldown")

    async def _open(self, retry: bool, stop: Optional[asyncio.Event]) -> Redis:
        failures = 0
        while True:
            if stop is not None and stop.is_set():
                raise QueueUnavailableError("Queue store reconnect interrupted")

            client = self._client_factory()
            try:
                await client.ping()
            except (RedisError, OSError) as e:
                failures += 1
                await self._close_client(client)
                if not retry:
                    raise QueueUnavailableError(f"Queue store unreachable: {e}") from e

                try:
                    delay = self.policy.delay_for(failures)
                except QueueUnavailableError:
                    self._unavailable_until = time.monotonic() + self.outage_cooldown
                    logger.error(
                        "queue_store_reconnect_exhausted",
                        attempts=failures,
                        cooldown_seconds=self.outage_cooldown,
                        error=str(e),
                        source="queue",
                    )
                    raise

                logger.warning(
                    "queue_store_reconnecting",
                    attempt=failures,
                    delay_seconds=delay,
                    error=str(e),
                    source="queue",
                )
                await self._backoff(delay, stop)
                continue

            self._unavailable_until = 0.0
            logger.info("queue_store_connected", queue=self.queue_name, source="queue")
            return client

    async def _backoff(self, delay: float, stop: Optional[asyncio.Event]) -> None:
        if stop is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def enqueue(self, envelope: JobEnvelope) -> bool:
        """Append an envelope to the tail of the queue.

        Never raises: failures are logged and reported as False so that the
        calling request can carry on.
        """
        try:
            client = await self.connect()
            await client.rpush(self.queue_name, envelope.to_json())
        except Exception as e:
            logger.error(
                "job_enqueue_failed",
                job_id=envelope.id,
                job_type=envelope.type,
                error=str(e),
                error_type=type(e).__name__,
                source="queue",
            )
            if isinstance(e, (RedisError, OSError)):
                await self.close()
            return False

        logger.info(
            "job_enqueued",
            job_id=envelope.id,
            job_type=envelope.type,
            source="queue",
        )
        return True

    async def dequeue(
        self, timeout: int = 1, stop: Optional[asyncio.Event] = None
    ) -> Optional[JobEnvelope]:
        """Block up to ``timeout`` seconds for the envelope at the head of the queue.

        Returns:
            The envelope, or None on timeout, transport error or malformed entry

        Raises:
            QueueUnavailableError: If ``connect`` gives up on the store
        """
        client = await self.connect(stop=stop)

        try:
            result = await client.blpop([self.queue_name], timeout=timeout)
        except (RedisError, OSError) as e:
            logger.warning(
                "job_dequeue_failed",
                error=str(e),
                error_type=type(e).__name__,
                source="queue",
            )
            await self.close()
            return None

        if not result:
            return None

        _, raw = result
        try:
            envelope = JobEnvelope.from_json(raw)
        except JobValidationError as e:
            logger.error(
                "job_dequeue_malformed",
                error=str(e),
                raw_size=len(raw),
                source="queue",
            )
            return None

        logger.debug(
            "job_dequeued",
            job_id=envelope.id,
            job_type=envelope.type,
            source="queue",
        )
        return envelope

    async def length(self) -> Optional[int]:
        """Return the number of pending envelopes, or None if unknown."""
        try:
            client = await self.connect(retry=False)
            return int(await client.llen(self.queue_name))
        except Exception as e:
            logger.warning(
                "queue_length_unavailable",
                error=str(e),
                source="queue",
            )
            return None

    async def ping(self) -> bool:
        """Check connectivity with a single attempt."""
        try:
            client = await self.connect(retry=False)
            return bool(await client.ping())
        except Exception as e:
            logger.warning("queue_store_ping_failed", error=str(e), source="queue")
            await self.close()
            return False

    async def dead_letter(self, envelope: JobEnvelope, error: Exception) -> bool:
        """Keep a failed envelope on the dead-letter list for manual replay."""
        if not self.dead_letter_queue_name:
            return False

        entry = json.dumps(
            {
                "envelope": json.loads(envelope.to_json()),
                "error": f"{type(error).__name__}: {error}",
                "failedAt": datetime.now(timezone.utc).isoformat(),
            }
        )
        try:
            client = await self.connect()
            await client.rpush(self.dead_letter_queue_name, entry)
        except Exception as e:
            logger.error(
                "job_dead_letter_failed",
                job_id=envelope.id,
                job_type=envelope.type,
                error=str(e),
                source="queue",
            )
            return False

        logger.info(
            "job_dead_lettered",
            job_id=envelope.id,
            job_type=envelope.type,
            source="queue",
        )
        return True

    async def close(self) -> None:
        """Close the current client, if any. Failures are logged, not raised."""
        client, self._client = self._client, None
        if client is not None:
            await self._close_client(client)

    async def _close_client(self, client: Redis) -> None:
        try:
            await client.aclose()
        except Exception as e:
            logger.warning("queue_store_close_failed", error=str(e), source="queue")


def queue_from_settings(settings: "Settings") -> RedisJobQueue:
    """Build the queue described by ``settings``."""
    return RedisJobQueue(
        url=settings.redis_url,
        queue_name=settings.queue_name,
        policy=ReconnectPolicy(
            max_retries=settings.redis_max_retries,
            base_delay=settings.redis_retry_base_delay,
            max_delay=settings.redis_retry_max_delay,
        ),
        connect_timeout=settings.redis_connect_timeout,
        outage_cooldown=settings.redis_outage_cooldown,
        dead_letter_queue_name=(
            settings.dead_letter_queue_name if settings.dead_letter_enabled else None
        ),
    )
