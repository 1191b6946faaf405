import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, ValidationError

from storefront_jobs.errors import JobValidationError
from storefront_jobs.jobs.envelope import ENVELOPE_VERSION, JobEnvelope
from storefront_jobs.jobs.payloads import (
    CACHE_WARM,
    EMAIL_SEND,
    ORDER_PROCESS,
    WEBHOOK_PROCESS,
    CacheWarmJobData,
    EmailJobData,
    OrderJobData,
    WebhookJobData,
)
from storefront_jobs.jobs.processors import JobHandlers

logger = structlog.get_logger()

Handler = Callable[[Any], Awaitable[None]]
FailureHook = Callable[[JobEnvelope, Exception], Awaitable[Any]]

SUPPORTED_VERSIONS = frozenset({ENVELOPE_VERSION})


class DispatchOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN_TYPE = "unknown_type"
    REJECTED = "rejected"


@dataclass
class _Route:
    payload_model: Optional[type[BaseModel]]
    handler: Handler


class JobDispatcher:
    """Route envelopes to handlers by job type.

    A failing handler never propagates: the error is logged with the job id
    and type, the envelope is discarded, and the outcome is returned. Jobs
    are not retried.
    """

    def __init__(self, on_failure: Optional[FailureHook] = None):
        """Initialize dispatcher.

        Args:
            on_failure: Awaited with the envelope and error after a handler fails
        """
        self._routes: dict[str, _Route] = {}
        self.on_failure = on_failure

    def register(
        self,
        job_type: str,
        payload_model: Optional[type[BaseModel]],
        handler: Handler,
    ) -> None:
        """Register ``handler`` for ``job_type``.

        The envelope's ``data`` is validated into ``payload_model`` before the
        handler is called. With ``payload_model=None`` the raw data is passed.
        """
        self._routes[job_type] = _Route(payload_model=payload_model, handler=handler)

    @property
    def job_types(self) -> list[str]:
        return sorted(self._routes)

    async def dispatch(self, envelope: JobEnvelope) -> DispatchOutcome:
        if envelope.version not in SUPPORTED_VERSIONS:
            logger.warning(
                "job_rejected_unsupported_version",
                job_id=envelope.id,
                job_type=envelope.type,
                version=envelope.version,
                source="dispatcher",
            )
            return DispatchOutcome.REJECTED

        route = self._routes.get(envelope.type)
        if route is None:
            logger.warning(
                "job_unknown_type",
                job_id=envelope.id,
                job_type=envelope.type,
                source="dispatcher",
            )
            return DispatchOutcome.UNKNOWN_TYPE

        logger.info(
            "job_dispatch_started",
            job_id=envelope.id,
            job_type=envelope.type,
            source="dispatcher",
        )
        started = time.perf_counter()

        try:
            payload = _narrow(route.payload_model, envelope)
            await route.handler(payload)
        except Exception as e:
            logger.error(
                "job_dispatch_failed",
                job_id=envelope.id,
                job_type=envelope.type,
                error=f"{type(e).__name__}: {e}",
                error_type=type(e).__name__,
                duration_ms=_elapsed_ms(started),
                source="dispatcher",
                exc_info=True,
            )
            await self._notify_failure(envelope, e)
            return DispatchOutcome.FAILED

        logger.info(
            "job_dispatch_succeeded",
            job_id=envelope.id,
            job_type=envelope.type,
            duration_ms=_elapsed_ms(started),
            source="dispatcher",
        )
        return DispatchOutcome.SUCCEEDED

    async def _notify_failure(self, envelope: JobEnvelope, error: Exception) -> None:
        if self.on_failure is None:
            return
        try:
            await self.on_failure(envelope, error)
        except Exception as e:
            logger.error(
                "job_failure_hook_failed",
                job_id=envelope.id,
                job_type=envelope.type,
                error=str(e),
                source="dispatcher",
            )


def _narrow(payload_model: Optional[type[BaseModel]], envelope: JobEnvelope) -> Any:
    if payload_model is None:
        return envelope.data
    try:
        return payload_model.model_validate(envelope.data)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors()})
        raise JobValidationError(
            f"Invalid {envelope.type} payload ({', '.join(fields)})"
        ) from e


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def build_dispatcher(
    handlers: JobHandlers, on_failure: Optional[FailureHook] = None
) -> JobDispatcher:
    """Return a dispatcher wired to the standard storefront handlers."""
    dispatcher = JobDispatcher(on_failure=on_failure)
    dispatcher.register(ORDER_PROCESS, OrderJobData, handlers.process_order)
    dispatcher.register(EMAIL_SEND, EmailJobData, handlers.send_email)
    dispatcher.register(WEBHOOK_PROCESS, WebhookJobData, handlers.process_webhook)
    dispatcher.register(CACHE_WARM, CacheWarmJobData, handlers.warm_cache)
    return dispatcher
