"""Webhook management and event dispatch API.

Every route is scoped to the tenant named in the ``X-Tenant-Id`` header.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from eventflow.api.deps import get_event_system, get_tenant_id
from eventflow.errors import (
    DeliveryAlreadyDeliveredError,
    InvalidWebhookError,
    WebhookDeliveryNotFoundError,
    WebhookNotFoundError,
)
from eventflow.models.webhook import WEBHOOK_EVENT_DESCRIPTIONS, WebhookEventType
from eventflow.schemas import (
    DeliveryList,
    DeliveryOut,
    PingResult,
    ProcessResult,
    TriggerRequest,
    TriggerResult,
    WebhookCreate,
    WebhookCreated,
    WebhookEventTypeOut,
    WebhookOut,
    WebhookSecret,
    WebhookUpdate,
)
from eventflow.system import EventSystem

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


# ── Event Types ──────────────────────────────────────────
@router.get("/events", response_model=list[WebhookEventTypeOut])
async def list_event_types():
    """List all available webhook event types."""
    return [
        WebhookEventTypeOut(type=t.value, description=WEBHOOK_EVENT_DESCRIPTIONS.get(t, ""))
        for t in WebhookEventType
    ]


# ── Endpoints ────────────────────────────────────────────
@router.post("/", response_model=WebhookCreated, status_code=201)
async def create_webhook(
    data: WebhookCreate,
    tenant_id: str = Depends(get_tenant_id),
    system: EventSystem = Depends(get_event_system),
):
    try:
        wh = await system.webhooks.create_endpoint(tenant_id, data.url, data.events, data.description)
    except InvalidWebhookError as e:
        raise HTTPException(400, str(e))
    return WebhookCreated.from_model(wh)


@router.get("/", response_model=list[WebhookOut])
async def list_webhooks(
    active: Optional[bool] = None,
    tenant_id: str = Depends(get_tenant_id),
    system: EventSystem = Depends(get_event_system),
):
    endpoints = await system.webhooks.list_endpoints(tenant_id, active=active)
    return [WebhookOut.from_model(wh) for wh in endpoints]


@router.post("/trigger", response_model=TriggerResult, status_code=202)
async def trigger_webhook(
    data: TriggerRequest,
    tenant_id: str = Depends(get_tenant_id),
    system: EventSystem = Depends(get_event_system),
):
    """Queue deliveries of ``event_type`` to every subscribed endpoint of the tenant."""
    try:
        event_type = WebhookEventType(data.event_type)
    except ValueError:
        raise HTTPException(400, f"Invalid event type: {data.event_type}")
    deliveries = await system.webhooks.trigger_webhook(tenant_id, event_type, data.data)
    return TriggerResult(queued=len(deliveries), delivery_ids=[d.id for d in deliveries])


@router.post("/process", response_model=ProcessResult)
async def process_deliveries(system: EventSystem = Depends(get_event_system)):
    """Run one delivery sweep now instead of waiting for the timer."""
    return ProcessResult(processed=await system.webhooks.process_webhook_deliveries())


@router.get("/deliveries", response_model=DeliveryList)
async def list_all_deliveries(
    event_type: Optional[str] = None,
    status: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    system: EventSystem = Depends(get_event_system),
):
    rows, total = await system.webhooks.list_deliveries(
        tenant_id, event_type=event_type, status=status, limit=limit, offset=skip
    )
    return DeliveryList(items=[DeliveryOut.model_validate(d) for d in rows], total=total)


@router.post("/deliveries/{delivery_id}/retry", response_model=DeliveryOut)
async def retry_delivery(
    delivery_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: EventSystem = Depends(get_event_system),
):
    try:
        await system.webhooks.retry_delivery(tenant_id, delivery_id)
    except WebhookDeliveryNotFoundError:
        raise HTTPException(404, "Delivery not found")
    except DeliveryAlreadyDeliveredError as e:
        raise HTTPException(400, str(e))

    rows, _ = await system.webhooks.list_deliveries(tenant_id, limit=1, delivery_id=delivery_id)
    if not rows:
        raise HTTPException(404, "Delivery not found")
    return DeliveryOut.model_validate(rows[0])


@router.get("/{webhook_id}", response_model=WebhookOut)
async def get_webhook(
    webhook_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: EventSystem = Depends(get_event_system),
):
    try:
        wh = await system.webhooks.get_endpoint(tenant_id, webhook_id)
    except WebhookNotFoundError:
        raise HTTPException(404, "Webhook not found")
    return WebhookOut.from_model(wh)


@router.patch("/{webhook_id}", response_model=WebhookOut)
async def update_webhook(
    webhook_id: str,
    data: WebhookUpdate,
    tenant_id: str = Depends(get_tenant_id),
    system: EventSystem = Depends(get_event_system),
):
    try:
        wh = await system.webhooks.update_endpoint(
            tenant_id, webhook_id, **data.model_dump(exclude_unset=True)
        )
    except WebhookNotFoundError:
        raise HTTPException(404, "Webhook not found")
    except InvalidWebhookError as e:
        raise HTTPException(400, str(e))
    return WebhookOut.from_model(wh)


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(
    webhook_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: EventSystem = Depends(get_event_system),
):
    try:
        await system.webhooks.delete_endpoint(tenant_id, webhook_id)
    except WebhookNotFoundError:
        raise HTTPException(404, "Webhook not found")


@router.post("/{webhook_id}/secret", response_model=WebhookSecret)
async def regenerate_secret(
    webhook_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: EventSystem = Depends(get_event_system),
):
    try:
        secret = await system.webhooks.regenerate_secret(tenant_id, webhook_id)
    except WebhookNotFoundError:
        raise HTTPException(404, "Webhook not found")
    return WebhookSecret(secret=secret)


@router.get("/{webhook_id}/deliveries", response_model=DeliveryList)
async def list_deliveries(
    webhook_id: str,
    event_type: Optional[str] = None,
    status: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    system: EventSystem = Depends(get_event_system),
):
    """List delivery history for a webhook."""
    try:
        await system.webhooks.get_endpoint(tenant_id, webhook_id)
    except WebhookNotFoundError:
        raise HTTPException(404, "Webhook not found")
    rows, total = await system.webhooks.list_deliveries(
        tenant_id, webhook_id=webhook_id, event_type=event_type, status=status, limit=limit, offset=skip
    )
    return DeliveryList(items=[DeliveryOut.model_validate(d) for d in rows], total=total)


@router.post("/{webhook_id}/test", response_model=PingResult)
async def test_webhook(
    webhook_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: EventSystem = Depends(get_event_system),
):
    """Send a test ping to the webhook endpoint."""
    try:
        result = await system.webhooks.send_test_webhook(tenant_id, webhook_id)
    except WebhookNotFoundError:
        raise HTTPException(404, "Webhook not found")
    return PingResult(**result)
