"""Webhook dispatch service: delivers events to tenant endpoints with retry and HMAC signing.

``trigger_webhook`` writes delivery rows and attempts them in a background task;
``process_webhook_deliveries`` makes one attempt per due row. Failed attempts
back off exponentially (2^attempts minutes) until the attempt limit, after
which the delivery is terminal ``failed`` and dead-lettered.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlparse

import httpx
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventflow.config import Settings, get_settings
from eventflow.errors import (
    DeliveryAlreadyDeliveredError,
    InvalidWebhookError,
    WebhookDeliveryNotFoundError,
    WebhookNotFoundError,
)
from eventflow.models import dump_json, utcnow
from eventflow.models.webhook import DeliveryStatus, WebhookDelivery, WebhookEndpoint, WebhookEventType
from eventflow.services.dead_letters import record_dead_letter

logger = logging.getLogger(__name__)

RESPONSE_BODY_LIMIT = 1000
FAILURE_REASON_LIMIT = 500


def generate_webhook_secret() -> str:
    return f"whsec_{secrets.token_urlsafe(32)}"


def sign_payload(payload: str, secret: str) -> str:
    """Generate hex HMAC-SHA256 signature for webhook payload."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def verify_signature(payload: str, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature)


def delivery_backoff(attempts: int) -> timedelta:
    return timedelta(minutes=2 ** attempts)


def _validate_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.netloc:
        raise InvalidWebhookError("Webhook URL must be a valid https:// URL")


def _validate_events(events: list[str]) -> list[str]:
    valid = {e.value for e in WebhookEventType}
    for evt in events:
        if evt not in valid:
            raise InvalidWebhookError(f"Invalid event type: {evt}")
    if not events:
        raise InvalidWebhookError("At least one event type is required")
    return list(dict.fromkeys(events))


class WebhookDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        # Injected in tests (httpx.MockTransport)
        self.transport = transport
        self._background: set[asyncio.Task] = set()
        self._inflight: set[str] = set()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.webhook_timeout_seconds, transport=self.transport)

    # ── Trigger & process ───────────────────────────────
    async def trigger_webhook(
        self,
        tenant_id: str,
        event_type,
        data: dict,
        deliver_now: bool = True,
    ) -> list[WebhookDelivery]:
        """Queue one delivery per matching endpoint. Never raises."""
        event_type = event_type.value if isinstance(event_type, WebhookEventType) else str(event_type)
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(WebhookEndpoint).where(
                        WebhookEndpoint.tenant_id == tenant_id,
                        WebhookEndpoint.is_active.is_(True),
                    )
                )
                endpoints = [ep for ep in result.scalars().all() if ep.subscribes_to(event_type)]
                if not endpoints:
                    return []

                envelope = {
                    "id": f"evt_{secrets.token_hex(16)}",
                    "type": event_type,
                    "created": int(time.time()),
                    "data": data,
                    "tenantId": tenant_id,
                }
                deliveries = [
                    WebhookDelivery(
                        webhook_endpoint_id=ep.id,
                        event_type=event_type,
                        payload=dump_json(envelope),
                        status=DeliveryStatus.PENDING.value,
                        attempts=0,
                    )
                    for ep in endpoints
                ]
                db.add_all(deliveries)
                await db.commit()
        except Exception:
            logger.exception(f"Failed to queue webhook {event_type} for tenant {tenant_id}")
            return []

        logger.info(f"Queued {len(deliveries)} webhook deliveries: tenant={tenant_id} event={event_type}")
        if deliver_now:
            self._spawn(self._deliver_all([d.id for d in deliveries]))
        return deliveries

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for background delivery sweeps started by ``trigger_webhook``."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def cancel_background(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self.drain()

    async def _deliver_all(self, delivery_ids: list[str]) -> None:
        for delivery_id in delivery_ids:
            await self.deliver(delivery_id)

    async def process_webhook_deliveries(self, now: Optional[datetime] = None) -> int:
        """Attempt every due delivery in one batch. Returns the number attempted."""
        now = now or utcnow()
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(WebhookDelivery.id)
                    .where(
                        WebhookDelivery.status.in_(
                            (DeliveryStatus.PENDING.value, DeliveryStatus.RETRYING.value)
                        ),
                        WebhookDelivery.attempts < self.settings.webhook_max_attempts,
                        or_(WebhookDelivery.next_retry_at.is_(None), WebhookDelivery.next_retry_at <= now),
                    )
                    .order_by(WebhookDelivery.created_at)
                    .limit(self.settings.webhook_batch_size)
                )
                delivery_ids = list(result.scalars().all())
        except Exception:
            logger.exception("Failed to load due webhook deliveries")
            return 0

        for delivery_id in delivery_ids:
            await self.deliver(delivery_id, now=now)
        return len(delivery_ids)

    async def deliver(self, delivery_id: str, now: Optional[datetime] = None) -> Optional[WebhookDelivery]:
        """Make a single delivery attempt and record the outcome.

        ``now`` stamps the attempt and anchors the retry backoff; defaults to the wall clock.
        """
        if delivery_id in self._inflight:
            logger.debug(f"Webhook delivery {delivery_id} already in flight")
            return None
        self._inflight.add(delivery_id)
        try:
            return await self._deliver(delivery_id, now)
        except Exception:
            logger.exception(f"Webhook delivery {delivery_id} crashed")
            return None
        finally:
            self._inflight.discard(delivery_id)

    async def _deliver(self, delivery_id: str, now: Optional[datetime] = None) -> Optional[WebhookDelivery]:
        async with self.session_factory() as db:
            delivery = await db.get(WebhookDelivery, delivery_id)
            if delivery is None or delivery.status in (
                DeliveryStatus.DELIVERED.value,
                DeliveryStatus.FAILED.value,
            ):
                return delivery
            endpoint = await db.get(WebhookEndpoint, delivery.webhook_endpoint_id)
            if endpoint is None:
                return delivery

            body = delivery.payload or "{}"
            headers = {
                "Content-Type": "application/json",
                "X-Webhook-Signature": sign_payload(body, endpoint.secret),
                "X-Webhook-Event": delivery.event_type,
                "X-Webhook-Id": delivery.id,
                "User-Agent": self.settings.webhook_user_agent,
            }

            http_status: Optional[int] = None
            response_body = ""
            success = False
            start = time.monotonic()
            try:
                async with self._client() as client:
                    resp = await client.post(endpoint.url, content=body, headers=headers)
                http_status = resp.status_code
                response_body = resp.text
                success = resp.is_success
            except httpx.HTTPError as exc:
                response_body = str(exc) or exc.__class__.__name__
            elapsed_ms = int((time.monotonic() - start) * 1000)

            now = now or utcnow()
            delivery.http_status = http_status
            delivery.response_body = response_body[:RESPONSE_BODY_LIMIT]
            delivery.response_time_ms = elapsed_ms
            delivery.attempts = (delivery.attempts or 0) + 1

            if success:
                delivery.status = DeliveryStatus.DELIVERED.value
                delivery.delivered_at = now
                delivery.next_retry_at = None
                endpoint.failure_count = 0
                endpoint.last_success_at = now
                await db.commit()
                logger.info(f"Webhook delivered: id={delivery.id[:8]} status={http_status} url={endpoint.url}")
                return delivery

            endpoint.failure_count = (endpoint.failure_count or 0) + 1
            endpoint.last_failure_at = now
            endpoint.last_failure_reason = (response_body or f"HTTP {http_status}")[:FAILURE_REASON_LIMIT]
            threshold = self.settings.webhook_auto_disable_after
            if threshold and endpoint.failure_count >= threshold and endpoint.is_active:
                endpoint.is_active = False
                logger.warning(
                    f"Webhook endpoint {endpoint.id} disabled after {endpoint.failure_count} consecutive failures"
                )

            if delivery.attempts >= self.settings.webhook_max_attempts:
                delivery.status = DeliveryStatus.FAILED.value
                delivery.next_retry_at = None
                await db.commit()
                logger.error(
                    f"Webhook failed permanently: id={delivery.id[:8]} attempts={delivery.attempts} "
                    f"status={http_status} url={endpoint.url}"
                )
                await record_dead_letter(
                    db,
                    source="webhook_delivery",
                    reference_id=delivery.id,
                    kind=delivery.event_type,
                    payload=delivery.payload,
                    error=endpoint.last_failure_reason,
                    attempts=delivery.attempts,
                )
                return delivery

            delivery.status = DeliveryStatus.RETRYING.value
            delivery.next_retry_at = now + delivery_backoff(delivery.attempts)
            await db.commit()
            logger.warning(
                f"Webhook attempt {delivery.attempts} failed: id={delivery.id[:8]} status={http_status} "
                f"next_retry_at={delivery.next_retry_at.isoformat()}"
            )
            return delivery

    # ── Endpoint management ─────────────────────────────
    async def create_endpoint(
        self,
        tenant_id: str,
        url: str,
        events: list[str],
        description: str = "",
    ) -> WebhookEndpoint:
        """Register an endpoint. The generated secret is only readable on the returned object."""
        _validate_url(url)
        events = _validate_events(events)
        endpoint = WebhookEndpoint(
            tenant_id=tenant_id,
            url=url,
            description=description,
            secret=generate_webhook_secret(),
            events=json.dumps(events),
        )
        async with self.session_factory() as db:
            db.add(endpoint)
            await db.commit()
        return endpoint

    async def list_endpoints(self, tenant_id: str, active: Optional[bool] = None) -> list[WebhookEndpoint]:
        stmt = select(WebhookEndpoint).where(WebhookEndpoint.tenant_id == tenant_id)
        if active is not None:
            stmt = stmt.where(WebhookEndpoint.is_active.is_(active))
        stmt = stmt.order_by(WebhookEndpoint.created_at.desc())
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def get_endpoint(self, tenant_id: str, webhook_id: str) -> WebhookEndpoint:
        async with self.session_factory() as db:
            return await self._load_endpoint(db, tenant_id, webhook_id)

    async def _load_endpoint(self, db: AsyncSession, tenant_id: str, webhook_id: str) -> WebhookEndpoint:
        result = await db.execute(
            select(WebhookEndpoint).where(
                WebhookEndpoint.id == webhook_id,
                WebhookEndpoint.tenant_id == tenant_id,
            )
        )
        endpoint = result.scalar_one_or_none()
        if endpoint is None:
            raise WebhookNotFoundError(webhook_id)
        return endpoint

    async def update_endpoint(
        self,
        tenant_id: str,
        webhook_id: str,
        url: Optional[str] = None,
        description: Optional[str] = None,
        events: Optional[list[str]] = None,
        is_active: Optional[bool] = None,
    ) -> WebhookEndpoint:
        async with self.session_factory() as db:
            endpoint = await self._load_endpoint(db, tenant_id, webhook_id)
            if url is not None:
                _validate_url(url)
                endpoint.url = url
            if description is not None:
                endpoint.description = description
            if events is not None:
                endpoint.events = json.dumps(_validate_events(events))
            if is_active is not None:
                endpoint.is_active = is_active
                # Reset failure counter if re-enabled
                if is_active:
                    endpoint.failure_count = 0
            await db.commit()
            return endpoint

    async def regenerate_secret(self, tenant_id: str, webhook_id: str) -> str:
        async with self.session_factory() as db:
            endpoint = await self._load_endpoint(db, tenant_id, webhook_id)
            endpoint.secret = generate_webhook_secret()
            await db.commit()
            return endpoint.secret

    async def delete_endpoint(self, tenant_id: str, webhook_id: str) -> None:
        async with self.session_factory() as db:
            endpoint = await self._load_endpoint(db, tenant_id, webhook_id)
            await db.execute(
                WebhookDelivery.__table__.delete().where(WebhookDelivery.webhook_endpoint_id == endpoint.id)
            )
            await db.delete(endpoint)
            await db.commit()

    # ── Delivery history ────────────────────────────────
    async def list_deliveries(
        self,
        tenant_id: str,
        webhook_id: Optional[str] = None,
        event_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        delivery_id: Optional[str] = None,
    ) -> tuple[list[WebhookDelivery], int]:
        conditions = [WebhookEndpoint.tenant_id == tenant_id]
        if delivery_id:
            conditions.append(WebhookDelivery.id == delivery_id)
        if webhook_id:
            conditions.append(WebhookDelivery.webhook_endpoint_id == webhook_id)
        if event_type:
            conditions.append(WebhookDelivery.event_type == event_type)
        if status:
            conditions.append(WebhookDelivery.status == status)

        stmt = (
            select(WebhookDelivery)
            .join(WebhookEndpoint, WebhookEndpoint.id == WebhookDelivery.webhook_endpoint_id)
            .where(*conditions)
            .order_by(WebhookDelivery.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        count_stmt = (
            select(func.count(WebhookDelivery.id))
            .join(WebhookEndpoint, WebhookEndpoint.id == WebhookDelivery.webhook_endpoint_id)
            .where(*conditions)
        )
        async with self.session_factory() as db:
            rows = list((await db.execute(stmt)).scalars().all())
            total = (await db.execute(count_stmt)).scalar() or 0
        return rows, total

    async def retry_delivery(self, tenant_id: str, delivery_id: str) -> Optional[WebhookDelivery]:
        """Reset a delivery to a fresh pending state and attempt it immediately."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookDelivery)
                .join(WebhookEndpoint, WebhookEndpoint.id == WebhookDelivery.webhook_endpoint_id)
                .where(WebhookDelivery.id == delivery_id, WebhookEndpoint.tenant_id == tenant_id)
            )
            delivery = result.scalar_one_or_none()
            if delivery is None:
                raise WebhookDeliveryNotFoundError(delivery_id)
            if delivery.status == DeliveryStatus.DELIVERED.value:
                raise DeliveryAlreadyDeliveredError(delivery_id)
            delivery.status = DeliveryStatus.PENDING.value
            delivery.attempts = 0
            delivery.next_retry_at = None
            await db.commit()

        return await self.deliver(delivery_id)

    async def send_test_webhook(self, tenant_id: str, webhook_id: str) -> dict:
        """Send a signed test ping straight to the endpoint; nothing is persisted."""
        endpoint = await self.get_endpoint(tenant_id, webhook_id)
        payload = {
            "id": f"evt_test_{secrets.token_hex(8)}",
            "type": WebhookEventType.PAYMENT_COMPLETED.value,
            "created": int(time.time()),
            "data": {"test": True, "message": "This is a test webhook delivery"},
            "tenantId": tenant_id,
        }
        body = json.dumps(payload)
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": sign_payload(body, endpoint.secret),
            "X-Webhook-Id": payload["id"],
            "X-Webhook-Event": "test",
            "User-Agent": self.settings.webhook_user_agent,
        }

        start = time.monotonic()
        try:
            async with self._client() as client:
                resp = await client.post(endpoint.url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            return {
                "success": False,
                "error": str(exc) or exc.__class__.__name__,
                "response_time_ms": int((time.monotonic() - start) * 1000),
            }
        return {
            "success": resp.is_success,
            "http_status": resp.status_code,
            "response_body": resp.text[:RESPONSE_BODY_LIMIT],
            "response_time_ms": int((time.monotonic() - start) * 1000),
        }
