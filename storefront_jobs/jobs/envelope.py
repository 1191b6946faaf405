import secrets
import string
from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from storefront_jobs.errors import JobValidationError

logger = structlog.get_logger()

ENVELOPE_VERSION = 1

_ID_ALPHABET = string.digits + string.ascii_lowercase


class JobEnvelope(BaseModel):
    """A unit of work as it travels through the queue.

    Serialized as JSON with the fields ``id``, ``type``, ``data``,
    ``createdAt`` and ``version``. Envelopes written before ``version``
    existed are read as version 1.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    type: str
    data: Any = None
    created_at: datetime = Field(alias="createdAt")
    version: int = ENVELOPE_VERSION

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "JobEnvelope":
        """Parse an envelope read from the queue.

        Raises:
            JobValidationError: If ``raw`` is not valid JSON or lacks required fields
        """
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors()})
            raise JobValidationError(
                f"Malformed job envelope ({', '.join(fields)})"
            ) from e


def generate_job_id(job_type: str, created_at: datetime) -> str:
    """Return ``<type>-<epoch millis>-<9 random base36 chars>``."""
    millis = int(created_at.timestamp() * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{job_type}-{millis}-{suffix}"


def build_envelope(job_type: str, data: Any = None) -> Optional[JobEnvelope]:
    """Create a new envelope for ``job_type``.

    Returns None (and logs) when ``job_type`` is empty or not a string, so
    that callers on a best-effort path never have to handle an exception.
    """
    if not job_type or not isinstance(job_type, str):
        logger.error(
            "invalid_job_type",
            job_type=repr(job_type),
            source="envelope",
        )
        return None

    created_at = datetime.now(timezone.utc)
    return JobEnvelope(
        id=generate_job_id(job_type, created_at),
        type=job_type,
        data=data,
        created_at=created_at,
    )
