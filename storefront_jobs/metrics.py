import time
from typing import Optional

import structlog
from prometheus_client import CollectorRegistry, Gauge, generate_latest
from prometheus_client.core import GaugeMetricFamily

from storefront_jobs.jobs.queue import RedisJobQueue
from storefront_jobs.storage import OrderStorage

logger = structlog.get_logger()


class QueueLengthCollector:
    """Exposes ``redis_queue_length`` only while the length is known.

    A missing sample means the store could not be queried; 0 always means
    an empty queue.
    """

    def __init__(self) -> None:
        self.length: Optional[int] = None

    def collect(self):
        if self.length is not None:
            yield GaugeMetricFamily(
                "redis_queue_length", "Job queue length", value=self.length
            )


class MetricsCollector:
    """Prometheus gauges refreshed on every scrape.

    Each dependency is queried independently; a failing one reports 0
    instead of failing the whole response. The queue length is left out
    when unknown.
    """

    def __init__(self, queue: RedisJobQueue, storage: OrderStorage) -> None:
        self.queue = queue
        self.storage = storage
        self.registry = CollectorRegistry()
        self._started = time.monotonic()

        self.uptime = Gauge(
            "process_uptime_seconds", "Process uptime in seconds", registry=self.registry
        )
        self.database_connected = Gauge(
            "database_connected", "Database connection status", registry=self.registry
        )
        self.database_orders = Gauge(
            "database_orders_count", "Number of orders", registry=self.registry
        )
        self.redis_connected = Gauge(
            "redis_connected", "Redis connection status", registry=self.registry
        )
        self.queue_length = QueueLengthCollector()
        self.registry.register(self.queue_length)

    async def collect(self) -> bytes:
        """Refresh all gauges and return the text exposition."""
        self.uptime.set(time.monotonic() - self._started)
        await self._collect_database()
        await self._collect_queue()
        return generate_latest(self.registry)

    async def _collect_database(self) -> None:
        if not await self.storage.ping():
            self.database_connected.set(0)
            self.database_orders.set(0)
            return

        self.database_connected.set(1)
        try:
            self.database_orders.set(await self.storage.count_orders())
        except Exception as e:
            logger.error("database_metrics_failed", error=str(e), source="metrics")
            self.database_orders.set(0)

    async def _collect_queue(self) -> None:
        if not await self.queue.ping():
            self.redis_connected.set(0)
            self.queue_length.length = None
            return

        self.redis_connected.set(1)
        self.queue_length.length = await self.queue.length()
