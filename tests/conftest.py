import asyncio
from collections import defaultdict, deque

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from storefront_jobs.jobs import JobProducer, JobWorker, ReconnectPolicy, RedisJobQueue
from storefront_jobs.jobs.dispatcher import build_dispatcher
from storefront_jobs.jobs.processors import JobHandlers
from storefront_jobs.notifications import EmailSender, WebhookRelay
from storefront_jobs.storage import OrderStorage, RedisCache

QUEUE_NAME = "test:jobs"


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio.Redis the queue uses."""

    def __init__(self):
        self.lists = defaultdict(deque)
        self.values = {}
        self.available = True
        self.closed = False

    def _check(self):
        if not self.available:
            raise RedisConnectionError("Connection refused")

    async def ping(self):
        self._check()
        return True

    async def rpush(self, key, *values):
        self._check()
        self.lists[key].extend(values)
        return len(self.lists[key])

    async def blpop(self, keys, timeout=0):
        self._check()
        for key in keys:
            if self.lists[key]:
                return (key, self.lists[key].popleft())
        await asyncio.sleep(0)
        return None

    async def llen(self, key):
        self._check()
        return len(self.lists[key])

    async def exists(self, *keys):
        self._check()
        return sum(1 for key in keys if key in self.values)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def queue(fake_redis):
    return RedisJobQueue(
        queue_name=QUEUE_NAME,
        client_factory=lambda: fake_redis,
        policy=ReconnectPolicy(max_retries=3, base_delay=0, max_delay=0),
    )


@pytest.fixture
def producer(queue):
    return JobProducer(queue)


@pytest.fixture
async def storage(tmp_path):
    storage = OrderStorage(str(tmp_path / "storefront.db"), create=True)
    await storage.initialize()
    yield storage
    await storage.close()


@pytest.fixture
def handlers(storage, queue):
    return JobHandlers(
        storage=storage,
        email_sender=EmailSender(api_url=None),
        webhook_relay=WebhookRelay(),
        cache=RedisCache(queue.connect),
    )


@pytest.fixture
def dispatcher(handlers):
    return build_dispatcher(handlers)


@pytest.fixture
def worker(queue, dispatcher, storage):
    return JobWorker(
        queue=queue,
        dispatcher=dispatcher,
        storage=storage,
        poll_timeout=1,
        idle_delay=0,
        error_backoff=0,
    )
