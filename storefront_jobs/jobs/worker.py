import asyncio
import signal
import sys
from enum import Enum
from typing import Optional

import structlog
from pydantic import ValidationError

from storefront_jobs.config import Settings, get_settings
from storefront_jobs.errors import ConfigurationError, QueueUnavailableError
from storefront_jobs.jobs.dispatcher import DispatchOutcome, JobDispatcher, build_dispatcher
from storefront_jobs.jobs.processors import JobHandlers
from storefront_jobs.jobs.queue import RedisJobQueue, queue_from_settings
from storefront_jobs.logs import configure_logging
from storefront_jobs.notifications import EmailSender, WebhookRelay
from storefront_jobs.storage import OrderStorage, RedisCache

logger = structlog.get_logger()


class WorkerState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    LOOPING = "looping"
    PROCESSING = "processing"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAILED_STARTUP = "failed_startup"


class JobWorker:
    """Single consumer that pops jobs off the queue and dispatches them.

    Jobs are handled one at a time, in queue order. Run exactly one worker
    per queue: a second consumer would still receive each job once, but
    processing order across the two would no longer match enqueue order.
    """

    def __init__(
        self,
        queue: RedisJobQueue,
        dispatcher: JobDispatcher,
        storage: OrderStorage,
        poll_timeout: int = 1,
        idle_delay: float = 0.1,
        error_backoff: float = 5.0,
        name: str = "storefront-worker",
    ):
        """Initialize worker.

        Args:
            queue: Queue to consume
            dispatcher: Dispatcher routing envelopes to handlers
            storage: Primary data store, checked at startup and closed at shutdown
            poll_timeout: Seconds each blocking pop waits for a job
            idle_delay: Pause after every iteration
            error_backoff: Pause after an unexpected loop error
            name: Worker name used in logs
        """
        self.queue = queue
        self.dispatcher = dispatcher
        self.storage = storage
        self.poll_timeout = poll_timeout
        self.idle_delay = idle_delay
        self.error_backoff = error_backoff
        self.name = name
        self.state = WorkerState.STARTING
        self.jobs_dispatched = 0
        self._stop = asyncio.Event()

    def _transition(self, state: WorkerState) -> None:
        logger.info(
            "worker_state_changed",
            worker=self.name,
            previous=self.state.value,
            state=state.value,
            source="worker",
        )
        self.state = state

    async def startup(self) -> bool:
        """Check dependencies. Returns False if the worker must not start.

        The database is mandatory; an unreachable queue store only logs a
        warning since the loop reconnects on its own.
        """
        if not await self.storage.ping():
            logger.error(
                "worker_startup_failed",
                worker=self.name,
                reason="database_unreachable",
                source="worker",
            )
            self._transition(WorkerState.FAILED_STARTUP)
            return False

        if not await self.queue.ping():
            logger.warning(
                "worker_queue_store_unreachable",
                worker=self.name,
                queue=self.queue.queue_name,
                source="worker",
            )

        self._transition(WorkerState.READY)
        return True

    async def run(self) -> None:
        """Consume jobs until ``request_shutdown()`` is called."""
        self._transition(WorkerState.LOOPING)
        while not self._stop.is_set():
            await self.run_once()

    async def run_once(self) -> Optional[DispatchOutcome]:
        """Run one loop iteration. Never raises.

        Returns:
            The dispatch outcome, or None if no job was processed
        """
        try:
            envelope = await self.queue.dequeue(timeout=self.poll_timeout, stop=self._stop)

            outcome = None
            if envelope is not None:
                self.state = WorkerState.PROCESSING
                outcome = await self.dispatcher.dispatch(envelope)
                self.jobs_dispatched += 1
                self.state = WorkerState.LOOPING

            await self._pause(self.idle_delay)
            return outcome

        except Exception as e:
            if self._stop.is_set() and isinstance(e, QueueUnavailableError):
                logger.info(
                    "worker_reconnect_abandoned",
                    worker=self.name,
                    source="worker",
                )
                self.state = WorkerState.LOOPING
                return None

            # Unexpected error in the loop itself; keep the worker alive
            logger.error(
                "worker_loop_error",
                worker=self.name,
                error=str(e),
                error_type=type(e).__name__,
                source="worker",
                exc_info=True,
            )
            self.state = WorkerState.LOOPING
            await self._pause(self.error_backoff)
            return None

    def request_shutdown(self) -> None:
        if not self._stop.is_set():
            logger.info("worker_shutdown_requested", worker=self.name, source="worker")
        self._stop.set()

    async def shutdown(self) -> None:
        """Release the queue and database connections."""
        self._transition(WorkerState.SHUTTING_DOWN)
        await self._teardown()
        self._transition(WorkerState.STOPPED)
        logger.info(
            "worker_stopped",
            worker=self.name,
            jobs_dispatched=self.jobs_dispatched,
            source="worker",
        )

    async def serve(self) -> int:
        """Start, loop and shut down. Returns the process exit code."""
        logger.info(
            "worker_starting",
            worker=self.name,
            queue=self.queue.queue_name,
            job_types=self.dispatcher.job_types,
            source="worker",
        )

        try:
            if not await self.startup():
                await self._teardown()
                return 1
            await self.run()
            exit_code = 0
        except Exception as e:
            logger.critical(
                "worker_fatal_error",
                worker=self.name,
                error=str(e),
                error_type=type(e).__name__,
                source="worker",
                exc_info=True,
            )
            exit_code = 1

        await self.shutdown()
        return exit_code

    async def _teardown(self) -> None:
        for resource, close in (("queue", self.queue.close), ("database", self.storage.close)):
            try:
                await close()
            except Exception as e:
                logger.warning(
                    "worker_teardown_failed",
                    worker=self.name,
                    resource=resource,
                    error=str(e),
                    source="worker",
                )

    async def _pause(self, seconds: float) -> None:
        """Sleep for ``seconds``, waking early on shutdown."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


def build_worker(settings: Settings) -> JobWorker:
    """Assemble the worker and its collaborators from settings.

    Raises:
        ConfigurationError: If ``database_url`` is not a supported database
    """
    queue = queue_from_settings(settings)
    storage = OrderStorage(settings.sqlite_path)
    handlers = JobHandlers(
        storage=storage,
        email_sender=EmailSender(
            api_url=settings.email_api_url,
            api_key=settings.email_api_key,
            sender=settings.email_from,
            timeout=settings.http_timeout,
        ),
        webhook_relay=WebhookRelay(
            forward_url=settings.webhook_forward_url,
            timeout=settings.http_timeout,
        ),
        cache=RedisCache(queue.connect),
    )
    dispatcher = build_dispatcher(
        handlers,
        on_failure=queue.dead_letter if settings.dead_letter_enabled else None,
    )
    return JobWorker(
        queue=queue,
        dispatcher=dispatcher,
        storage=storage,
        poll_timeout=settings.worker_poll_timeout,
        idle_delay=settings.worker_idle_delay,
        error_backoff=settings.worker_error_backoff,
        name=settings.service_name,
    )


async def _serve(worker: JobWorker) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.request_shutdown)
    return await worker.serve()


def main() -> None:
    """Entry point for the ``storefront-worker`` process."""
    try:
        settings = get_settings()
    except ValidationError as e:
        configure_logging()
        logger.error(
            "worker_config_invalid",
            missing=sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()}),
            source="worker",
        )
        sys.exit(1)

    configure_logging(settings.log_level)

    try:
        worker = build_worker(settings)
    except ConfigurationError as e:
        logger.error("worker_config_invalid", error=str(e), source="worker")
        sys.exit(1)

    sys.exit(asyncio.run(_serve(worker)))


if __name__ == "__main__":
    main()
