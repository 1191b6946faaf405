"""Exception types shared by the queue, handlers and worker."""

from typing import Optional


class StorefrontJobsError(Exception):
    """Base class for errors raised by this package."""


class ConfigurationError(StorefrontJobsError):
    """Required configuration is missing or invalid."""


class JobValidationError(StorefrontJobsError):
    """A job payload or envelope does not have the expected shape."""


class NotFoundError(StorefrontJobsError):
    """A referenced entity does not exist."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        self.resource = resource
        self.identifier = identifier
        suffix = f" {identifier}" if identifier else ""
        super().__init__(f"{resource}{suffix} not found")


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order", order_id)


class ExternalServiceError(StorefrontJobsError):
    """A downstream service (database, HTTP API) failed."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class QueueUnavailableError(StorefrontJobsError):
    """The queue store could not be reached within the reconnect budget."""

