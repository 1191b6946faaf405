"""Job type tags and the payload model carried by each of them."""

from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

ORDER_PROCESS = "order:process"
EMAIL_SEND = "email:send"
WEBHOOK_PROCESS = "webhook:process"
CACHE_WARM = "cache:warm"

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class JobPayload(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class OrderJobData(JobPayload):
    order_id: NonEmptyStr = Field(alias="orderId")


class EmailJobData(JobPayload):
    to: NonEmptyStr
    subject: NonEmptyStr
    body: NonEmptyStr


class WebhookJobData(JobPayload):
    event: NonEmptyStr
    payload: Any = None


class CacheWarmJobData(JobPayload):
    keys: list[NonEmptyStr] = Field(min_length=1)
