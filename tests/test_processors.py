import pytest
from structlog.testing import capture_logs

from storefront_jobs.errors import JobValidationError, OrderNotFoundError
from storefront_jobs.jobs import DispatchOutcome
from storefront_jobs.jobs.envelope import build_envelope
from storefront_jobs.jobs.payloads import (
    CacheWarmJobData,
    EmailJobData,
    OrderJobData,
    WebhookJobData,
)


async def test_process_order_loads_existing_order(handlers, storage):
    await storage.save_order("ord_123", status="paid", order_number="YT-1001")

    with capture_logs() as logs:
        await handlers.process_order(OrderJobData(order_id="ord_123"))

    [processed] = [log for log in logs if log["event"] == "order_processed"]
    assert processed["order_id"] == "ord_123"
    assert processed["order_status"] == "paid"


async def test_process_order_raises_not_found(handlers):
    with pytest.raises(OrderNotFoundError) as err:
        await handlers.process_order(OrderJobData(order_id="ord_missing"))

    assert err.value.order_id == "ord_missing"
    assert "ord_missing" in str(err.value)


async def test_send_email_validates_recipient(handlers):
    with pytest.raises(JobValidationError):
        await handlers.send_email(EmailJobData(to="not-an-address", subject="s", body="b"))


async def test_send_email_without_api_is_skipped(handlers):
    with capture_logs() as logs:
        await handlers.send_email(EmailJobData(to="buyer@example.com", subject="s", body="b"))

    assert logs[-1]["event"] == "email_delivery_skipped"
    assert logs[-1]["recipient_domain"] == "example.com"


async def test_process_webhook_without_forward_url(handlers):
    with capture_logs() as logs:
        await handlers.process_webhook(WebhookJobData(event="payment.paid", payload={"id": 1}))

    assert [log["event"] for log in logs] == [
        "webhook_event_received",
        "webhook_event_not_forwarded",
    ]
    assert logs[0]["webhook_event"] == "payment.paid"


async def test_webhook_job_dispatches_successfully(dispatcher):
    envelope = build_envelope(
        "webhook:process", {"event": "payment.paid", "payload": {"id": "pay_1"}}
    )

    with capture_logs() as logs:
        outcome = await dispatcher.dispatch(envelope)

    assert outcome is DispatchOutcome.SUCCEEDED
    assert not [log for log in logs if log["event"] == "job_dispatch_failed"]


async def test_warm_cache_reports_cold_keys(handlers, fake_redis):
    fake_redis.values["products:featured"] = "[]"

    with capture_logs() as logs:
        await handlers.warm_cache(CacheWarmJobData(keys=["products:featured", "products:new"]))

    [checked] = [log for log in logs if log["event"] == "cache_warm_checked"]
    assert checked["key_count"] == 2
    assert checked["cold_count"] == 1
