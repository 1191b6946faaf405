import asyncio

import pytest
from structlog.testing import capture_logs

from storefront_jobs.config import get_settings
from storefront_jobs.jobs import (
    DispatchOutcome,
    JobWorker,
    ReconnectPolicy,
    RedisJobQueue,
    WorkerState,
)
from storefront_jobs.jobs.worker import build_worker, main
from storefront_jobs.storage import OrderStorage

from .conftest import FakeRedis


async def test_checkout_fan_out(worker, producer, storage, queue):
    await storage.save_order("ord_123", status="paid")
    job_id = await producer.enqueue_order_job("ord_123")

    with capture_logs() as logs:
        outcome = await worker.run_once()

    assert outcome is DispatchOutcome.SUCCEEDED
    assert await queue.length() == 0
    assert await worker.run_once() is None

    [processed] = [log for log in logs if log["event"] == "order_processed"]
    assert processed["order_id"] == "ord_123"
    [succeeded] = [log for log in logs if log["event"] == "job_dispatch_succeeded"]
    assert succeeded["job_id"] == job_id


async def test_missing_order_is_logged_and_loop_continues(worker, producer, queue):
    await producer.enqueue_order_job("ord_123")
    await producer.enqueue_webhook_job("payment.paid", {"id": "pay_1"})

    with capture_logs() as logs:
        first = await worker.run_once()
        second = await worker.run_once()

    assert first is DispatchOutcome.FAILED
    assert second is DispatchOutcome.SUCCEEDED
    assert await queue.length() == 0

    [failure] = [log for log in logs if log["event"] == "job_dispatch_failed"]
    assert "ord_123" in failure["error"]
    assert failure["error_type"] == "OrderNotFoundError"


async def test_loop_error_is_caught_and_backed_off(worker, monkeypatch):
    async def broken_dequeue(timeout=1, stop=None):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(worker.queue, "dequeue", broken_dequeue)

    with capture_logs() as logs:
        assert await worker.run_once() is None

    assert logs[0]["event"] == "worker_loop_error"
    assert worker.state is WorkerState.LOOPING


async def test_startup_requires_database(queue, dispatcher, tmp_path):
    worker = JobWorker(
        queue=queue,
        dispatcher=dispatcher,
        storage=OrderStorage(str(tmp_path / "missing.db")),
        idle_delay=0,
    )

    exit_code = await worker.serve()

    assert exit_code == 1
    assert worker.state is WorkerState.FAILED_STARTUP


async def test_startup_tolerates_unreachable_queue_store(worker, fake_redis):
    fake_redis.available = False

    with capture_logs() as logs:
        assert await worker.startup() is True

    assert worker.state is WorkerState.READY
    assert any(log["event"] == "worker_queue_store_unreachable" for log in logs)


async def test_serve_drains_queue_and_shuts_down_cleanly(worker, producer, queue, fake_redis):
    for i in range(5):
        await producer.enqueue_cache_warm_job([f"key:{i}"])

    task = asyncio.create_task(worker.serve())
    for _ in range(500):
        if worker.jobs_dispatched == 5:
            break
        await asyncio.sleep(0.01)

    worker.request_shutdown()
    exit_code = await asyncio.wait_for(task, timeout=5)

    assert exit_code == 0
    assert worker.jobs_dispatched == 5
    assert worker.state is WorkerState.STOPPED
    assert fake_redis.closed


async def test_fatal_error_exits_non_zero(worker, monkeypatch):
    async def broken_run():
        raise RuntimeError("event loop on fire")

    monkeypatch.setattr(worker, "run", broken_run)

    assert await worker.serve() == 1
    assert worker.state is WorkerState.STOPPED


async def test_teardown_failures_are_swallowed(worker, monkeypatch):
    async def broken_close():
        raise OSError("socket already gone")

    monkeypatch.setattr(worker.storage, "close", broken_close)

    with capture_logs() as logs:
        await worker.shutdown()

    assert worker.state is WorkerState.STOPPED
    assert any(log["event"] == "worker_teardown_failed" for log in logs)


async def test_shutdown_interrupts_queue_reconnect(dispatcher, storage):
    store = FakeRedis()
    store.available = False
    queue = RedisJobQueue(
        client_factory=lambda: store,
        policy=ReconnectPolicy(max_retries=100, base_delay=30, max_delay=30),
    )
    worker = JobWorker(queue=queue, dispatcher=dispatcher, storage=storage, idle_delay=0)

    with capture_logs() as logs:
        task = asyncio.create_task(worker.serve())
        for _ in range(100):
            if any(log["event"] == "queue_store_reconnecting" for log in logs):
                break
            await asyncio.sleep(0.01)
        worker.request_shutdown()
        exit_code = await asyncio.wait_for(task, timeout=2)

    assert exit_code == 0
    assert worker.state is WorkerState.STOPPED
    assert any(log["event"] == "worker_reconnect_abandoned" for log in logs)
    assert not any(log["event"] == "worker_loop_error" for log in logs)


@pytest.fixture
def clean_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_main_exits_when_database_url_missing(monkeypatch, clean_settings, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(SystemExit) as exit_info:
        main()

    assert exit_info.value.code == 1


def test_main_exits_on_unsupported_database(monkeypatch, clean_settings, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", "postgresql://shop@db/shop")

    with pytest.raises(SystemExit) as exit_info:
        main()

    assert exit_info.value.code == 1


def test_build_worker_from_settings(monkeypatch, clean_settings, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'shop.db'}")
    monkeypatch.setenv("DEAD_LETTER_ENABLED", "true")
    monkeypatch.setenv("QUEUE_NAME", "shop:jobs")

    worker = build_worker(get_settings())

    assert worker.queue.queue_name == "shop:jobs"
    assert worker.queue.dead_letter_queue_name == "storefront:jobs:dead"
    assert worker.dispatcher.on_failure is not None
    assert worker.storage.db_path == str(tmp_path / "shop.db")
