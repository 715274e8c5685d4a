"""Tests for webhook dispatch, retries and endpoint management."""

import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from eventflow.errors import (
    DeliveryAlreadyDeliveredError,
    InvalidWebhookError,
    WebhookDeliveryNotFoundError,
    WebhookNotFoundError,
)
from eventflow.models import DeadLetter, utcnow
from eventflow.models.webhook import DeliveryStatus, WebhookDelivery, WebhookEndpoint, WebhookEventType
from eventflow.services.webhook_dispatcher import (
    WebhookDispatcher,
    delivery_backoff,
    generate_webhook_secret,
    sign_payload,
    verify_signature,
)

TENANT = "tenant-1"


@pytest.fixture
def dispatcher(session_factory, settings, receiver):
    return WebhookDispatcher(session_factory, settings, transport=httpx.MockTransport(receiver))


async def _endpoint(dispatcher, events=("payment.completed",), tenant=TENANT, url="https://hooks.example.com/pm"):
    return await dispatcher.create_endpoint(tenant, url, list(events), description="test")


async def _delivery(session_factory, delivery_id):
    async with session_factory() as db:
        return await db.get(WebhookDelivery, delivery_id)


async def _endpoint_row(session_factory, endpoint_id):
    async with session_factory() as db:
        return await db.get(WebhookEndpoint, endpoint_id)


# ── Signing ──────────────────────────────────────────────
def test_sign_payload():
    sig = sign_payload('{"event":"test"}', "secret123")
    assert isinstance(sig, str)
    assert len(sig) == 64  # SHA-256 hex


def test_sign_payload_different_secrets():
    assert sign_payload("hello", "key1") != sign_payload("hello", "key2")


def test_verify_signature():
    body = '{"id":"evt_1"}'
    assert verify_signature(body, sign_payload(body, "s3cret"), "s3cret") is True
    assert verify_signature(body, sign_payload(body, "other"), "s3cret") is False
    assert verify_signature(body + " ", sign_payload(body, "s3cret"), "s3cret") is False
    assert verify_signature(body, "", "s3cret") is False


def test_generated_secret_format():
    secret = generate_webhook_secret()
    assert secret.startswith("whsec_")
    assert secret != generate_webhook_secret()


def test_delivery_backoff():
    assert delivery_backoff(1) == timedelta(minutes=2)
    assert delivery_backoff(4) == timedelta(minutes=16)


# ── Trigger ──────────────────────────────────────────────
@pytest.mark.asyncio
async def test_trigger_creates_pending_delivery_for_subscribers(dispatcher):
    subscribed = await _endpoint(dispatcher, events=["payment.completed", "lease.signed"])
    await _endpoint(dispatcher, events=["lease.signed"])
    await _endpoint(dispatcher, tenant="tenant-2")

    deliveries = await dispatcher.trigger_webhook(
        TENANT, WebhookEventType.PAYMENT_COMPLETED, {"amount": 1200}, deliver_now=False
    )

    assert len(deliveries) == 1
    d = deliveries[0]
    assert d.webhook_endpoint_id == subscribed.id
    assert d.status == DeliveryStatus.PENDING.value
    assert d.attempts == 0

    envelope = json.loads(d.payload)
    assert envelope["id"].startswith("evt_")
    assert envelope["type"] == "payment.completed"
    assert envelope["data"] == {"amount": 1200}
    assert envelope["tenantId"] == TENANT
    assert isinstance(envelope["created"], int)


@pytest.mark.asyncio
async def test_trigger_skips_inactive_endpoints(dispatcher):
    ep = await _endpoint(dispatcher)
    await dispatcher.update_endpoint(TENANT, ep.id, is_active=False)

    assert await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False) == []


@pytest.mark.asyncio
async def test_trigger_delivers_in_background(dispatcher, receiver, session_factory):
    await _endpoint(dispatcher)

    deliveries = await dispatcher.trigger_webhook(TENANT, "payment.completed", {"amount": 5})
    await dispatcher.drain()

    stored = await _delivery(session_factory, deliveries[0].id)
    assert stored.status == DeliveryStatus.DELIVERED.value
    assert len(receiver.requests) == 1


# ── Delivery ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_successful_delivery(dispatcher, receiver, session_factory):
    ep = await _endpoint(dispatcher)
    [d] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {"amount": 10}, deliver_now=False)

    await dispatcher.deliver(d.id)

    stored = await _delivery(session_factory, d.id)
    assert stored.status == DeliveryStatus.DELIVERED.value
    assert stored.http_status == 200
    assert stored.response_body == "ok"
    assert stored.delivered_at is not None
    assert stored.response_time_ms >= 0
    assert stored.attempts == 1

    endpoint = await _endpoint_row(session_factory, ep.id)
    assert endpoint.failure_count == 0
    assert endpoint.last_success_at is not None

    request = receiver.requests[0]
    body = request.content.decode()
    assert request.method == "POST"
    assert str(request.url) == "https://hooks.example.com/pm"
    assert request.headers["content-type"] == "application/json"
    assert request.headers["x-webhook-event"] == "payment.completed"
    assert request.headers["x-webhook-id"] == d.id
    assert request.headers["user-agent"] == "PropertyManager-Webhooks/1.0"
    assert verify_signature(body, request.headers["x-webhook-signature"], ep.secret)


@pytest.mark.asyncio
async def test_first_failure_schedules_retry(dispatcher, receiver, session_factory):
    receiver.status_code = 500
    ep = await _endpoint(dispatcher)
    [d] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)

    before = utcnow()
    await dispatcher.deliver(d.id)

    stored = await _delivery(session_factory, d.id)
    assert stored.status == DeliveryStatus.RETRYING.value
    assert stored.attempts == 1
    assert stored.http_status == 500
    assert stored.next_retry_at >= before + timedelta(minutes=2) - timedelta(seconds=1)

    endpoint = await _endpoint_row(session_factory, ep.id)
    assert endpoint.failure_count == 1
    assert endpoint.last_failure_at is not None
    assert endpoint.last_failure_reason == "boom"

    # Not due yet
    assert await dispatcher.process_webhook_deliveries() == 0


@pytest.mark.asyncio
async def test_retry_backoff_follows_given_clock(dispatcher, receiver, session_factory):
    receiver.status_code = 500
    ep = await _endpoint(dispatcher)
    [d] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)

    later = utcnow() + timedelta(hours=3)
    assert await dispatcher.process_webhook_deliveries(now=later) == 1

    stored = await _delivery(session_factory, d.id)
    assert stored.next_retry_at == later + timedelta(minutes=2)
    endpoint = await _endpoint_row(session_factory, ep.id)
    assert endpoint.last_failure_at == later

    # Due two minutes after the injected attempt, not after the wall clock
    assert await dispatcher.process_webhook_deliveries(now=later + timedelta(minutes=1)) == 0
    assert await dispatcher.process_webhook_deliveries(now=later + timedelta(minutes=2)) == 1


@pytest.mark.asyncio
async def test_five_failures_mark_delivery_failed(dispatcher, receiver, session_factory):
    receiver.status_code = 500
    await _endpoint(dispatcher)
    [d] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)

    for i in range(5):
        attempted = await dispatcher.process_webhook_deliveries(now=utcnow() + timedelta(hours=2 * (i + 1)))
        assert attempted == 1

    stored = await _delivery(session_factory, d.id)
    assert stored.status == DeliveryStatus.FAILED.value
    assert stored.attempts == 5
    assert stored.next_retry_at is None
    assert len(receiver.requests) == 5

    assert await dispatcher.process_webhook_deliveries(now=utcnow() + timedelta(days=2)) == 0

    async with session_factory() as db:
        letters = list((await db.execute(select(DeadLetter))).scalars().all())
    assert len(letters) == 1
    assert letters[0].source == "webhook_delivery"
    assert letters[0].reference_id == d.id
    assert letters[0].attempts == 5


@pytest.mark.asyncio
async def test_network_error_counts_as_failure(dispatcher, receiver, session_factory):
    receiver.error = httpx.ConnectError("connection refused")
    await _endpoint(dispatcher)
    [d] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)

    result = await dispatcher.deliver(d.id)

    assert result is not None
    stored = await _delivery(session_factory, d.id)
    assert stored.status == DeliveryStatus.RETRYING.value
    assert stored.http_status is None
    assert "connection refused" in stored.response_body


@pytest.mark.asyncio
async def test_delivered_rows_are_not_resent(dispatcher, receiver):
    await _endpoint(dispatcher)
    [d] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)

    await dispatcher.deliver(d.id)
    await dispatcher.deliver(d.id)
    assert len(receiver.requests) == 1


@pytest.mark.asyncio
async def test_endpoint_auto_disabled_after_repeated_failures(session_factory, settings, receiver):
    settings.webhook_auto_disable_after = 2
    dispatcher = WebhookDispatcher(session_factory, settings, transport=httpx.MockTransport(receiver))
    receiver.status_code = 503
    ep = await _endpoint(dispatcher)

    for _ in range(2):
        [d] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)
        await dispatcher.deliver(d.id)

    endpoint = await _endpoint_row(session_factory, ep.id)
    assert endpoint.failure_count == 2
    assert endpoint.is_active is False
    assert await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False) == []


@pytest.mark.asyncio
async def test_success_resets_failure_count(dispatcher, receiver, session_factory):
    ep = await _endpoint(dispatcher)
    receiver.status_code = 500
    [d1] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)
    await dispatcher.deliver(d1.id)

    receiver.status_code = 200
    [d2] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)
    await dispatcher.deliver(d2.id)

    endpoint = await _endpoint_row(session_factory, ep.id)
    assert endpoint.failure_count == 0


# ── Management ───────────────────────────────────────────
@pytest.mark.asyncio
async def test_create_endpoint_validation(dispatcher):
    with pytest.raises(InvalidWebhookError):
        await dispatcher.create_endpoint(TENANT, "http://insecure.example.com", ["payment.completed"])
    with pytest.raises(InvalidWebhookError):
        await dispatcher.create_endpoint(TENANT, "https://ok.example.com", ["contact.created"])
    with pytest.raises(InvalidWebhookError):
        await dispatcher.create_endpoint(TENANT, "https://ok.example.com", [])


@pytest.mark.asyncio
async def test_create_endpoint_dedupes_events(dispatcher):
    ep = await dispatcher.create_endpoint(
        TENANT, "https://ok.example.com", ["lease.signed", "lease.signed", "payment.completed"]
    )
    assert ep.event_list == ["lease.signed", "payment.completed"]
    assert ep.secret.startswith("whsec_")
    assert ep.is_active is True


@pytest.mark.asyncio
async def test_lookups_are_tenant_scoped(dispatcher):
    ep = await _endpoint(dispatcher)

    assert (await dispatcher.get_endpoint(TENANT, ep.id)).id == ep.id
    with pytest.raises(WebhookNotFoundError):
        await dispatcher.get_endpoint("tenant-2", ep.id)
    with pytest.raises(WebhookNotFoundError):
        await dispatcher.delete_endpoint("tenant-2", ep.id)
    assert await dispatcher.list_endpoints("tenant-2") == []


@pytest.mark.asyncio
async def test_update_endpoint(dispatcher):
    ep = await _endpoint(dispatcher)

    updated = await dispatcher.update_endpoint(
        TENANT, ep.id, url="https://new.example.com/hook", events=["lease.created"], description="new"
    )
    assert updated.url == "https://new.example.com/hook"
    assert updated.event_list == ["lease.created"]
    assert updated.description == "new"

    with pytest.raises(InvalidWebhookError):
        await dispatcher.update_endpoint(TENANT, ep.id, url="ftp://nope")


@pytest.mark.asyncio
async def test_reenabling_resets_failure_count(dispatcher, receiver, session_factory):
    receiver.status_code = 500
    ep = await _endpoint(dispatcher)
    [d] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)
    await dispatcher.deliver(d.id)

    await dispatcher.update_endpoint(TENANT, ep.id, is_active=False)
    updated = await dispatcher.update_endpoint(TENANT, ep.id, is_active=True)
    assert updated.failure_count == 0


@pytest.mark.asyncio
async def test_regenerate_secret(dispatcher):
    ep = await _endpoint(dispatcher)
    secret = await dispatcher.regenerate_secret(TENANT, ep.id)
    assert secret.startswith("whsec_")
    assert secret != ep.secret
    assert (await dispatcher.get_endpoint(TENANT, ep.id)).secret == secret


@pytest.mark.asyncio
async def test_delete_endpoint_removes_deliveries(dispatcher, session_factory):
    ep = await _endpoint(dispatcher)
    [d] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)

    await dispatcher.delete_endpoint(TENANT, ep.id)

    assert await _delivery(session_factory, d.id) is None
    with pytest.raises(WebhookNotFoundError):
        await dispatcher.get_endpoint(TENANT, ep.id)


@pytest.mark.asyncio
async def test_list_deliveries_filters(dispatcher, receiver):
    ep = await _endpoint(dispatcher, events=["payment.completed", "lease.signed"])
    await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)
    await dispatcher.trigger_webhook(TENANT, "lease.signed", {}, deliver_now=False)

    rows, total = await dispatcher.list_deliveries(TENANT, webhook_id=ep.id)
    assert total == 2

    rows, total = await dispatcher.list_deliveries(TENANT, event_type="lease.signed")
    assert total == 1
    assert rows[0].event_type == "lease.signed"

    rows, total = await dispatcher.list_deliveries("tenant-2")
    assert total == 0


@pytest.mark.asyncio
async def test_retry_failed_delivery(dispatcher, receiver, session_factory):
    receiver.status_code = 500
    await _endpoint(dispatcher)
    [d] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)
    for i in range(5):
        await dispatcher.process_webhook_deliveries(now=utcnow() + timedelta(hours=2 * (i + 1)))
    assert (await _delivery(session_factory, d.id)).status == DeliveryStatus.FAILED.value

    receiver.status_code = 200
    await dispatcher.retry_delivery(TENANT, d.id)

    stored = await _delivery(session_factory, d.id)
    assert stored.status == DeliveryStatus.DELIVERED.value
    assert stored.attempts == 1


@pytest.mark.asyncio
async def test_retry_delivered_is_refused(dispatcher):
    await _endpoint(dispatcher)
    [d] = await dispatcher.trigger_webhook(TENANT, "payment.completed", {}, deliver_now=False)
    await dispatcher.deliver(d.id)

    with pytest.raises(DeliveryAlreadyDeliveredError):
        await dispatcher.retry_delivery(TENANT, d.id)
    with pytest.raises(WebhookDeliveryNotFoundError):
        await dispatcher.retry_delivery("tenant-2", d.id)


@pytest.mark.asyncio
async def test_send_test_webhook(dispatcher, receiver):
    ep = await _endpoint(dispatcher)

    result = await dispatcher.send_test_webhook(TENANT, ep.id)

    assert result["success"] is True
    assert result["http_status"] == 200
    request = receiver.requests[0]
    assert request.headers["x-webhook-event"] == "test"
    assert verify_signature(request.content.decode(), request.headers["x-webhook-signature"], ep.secret)
    rows, total = await dispatcher.list_deliveries(TENANT)
    assert total == 0


@pytest.mark.asyncio
async def test_send_test_webhook_network_error(dispatcher, receiver):
    receiver.error = httpx.ConnectTimeout("timed out")
    ep = await _endpoint(dispatcher)

    result = await dispatcher.send_test_webhook(TENANT, ep.id)
    assert result["success"] is False
    assert "timed out" in result["error"]
