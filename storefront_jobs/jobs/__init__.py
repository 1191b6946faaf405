"""Background job queue: envelopes, producer, dispatcher and worker."""

from .dispatcher import DispatchOutcome, JobDispatcher, build_dispatcher
from .envelope import JobEnvelope, build_envelope
from .producer import JobProducer
from .queue import ReconnectPolicy, RedisJobQueue
from .worker import JobWorker, WorkerState

__all__ = [
    "DispatchOutcome",
    "JobDispatcher",
    "JobEnvelope",
    "JobProducer",
    "JobWorker",
    "ReconnectPolicy",
    "RedisJobQueue",
    "WorkerState",
    "build_dispatcher",
    "build_envelope",
]
