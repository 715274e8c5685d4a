"""Event handlers translate domain events into scheduled jobs and pushes.

Each handler reads its typed payload, works out when follow-up work is due and
schedules it on the job queue. Real-time pushes are best-effort: a broadcast
failure is logged and the handler carries on.
"""

import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from eventflow.models import utcnow
from eventflow.models.job import JobType
from eventflow.schemas.events import DomainEvent, EventType
from eventflow.services.event_bus import EventBus
from eventflow.services.job_queue import JobQueue
from eventflow.services.notifications import ConnectionManager, NotificationService

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    job_queue: JobQueue
    notifications: NotificationService
    broadcaster: Optional[ConnectionManager] = None
    clock: Callable[[], datetime] = utcnow

    async def push(self, channel: str, payload: dict) -> None:
        if self.broadcaster is None:
            return
        try:
            await self.broadcaster.broadcast_new_message(channel, payload)
        except Exception:
            logger.exception(f"Real-time push to {channel} failed")


Handler = Callable[[DomainEvent, HandlerContext], Awaitable[None]]


# ── Leases ──────────────────────────────────────────────
async def handle_tenant_signed_lease(event: DomainEvent, ctx: HandlerContext) -> None:
    """Tell the landlord right away and nudge again in 24 hours."""
    p = event.payload
    await ctx.push(f"landlord-{p.landlord_user_id}", {
        "type": "lease_signed",
        "leaseId": p.lease_id,
        "tenantName": p.tenant_name,
        "message": f"{p.tenant_name} has signed the lease. Please review and sign.",
    })

    await ctx.notifications.create_notification(
        user_id=p.landlord_user_id,
        type="reminder",
        title="Lease Awaiting Your Signature",
        message=f"{p.tenant_name} has signed the lease. Please review and sign to complete the agreement.",
        action_url=f"/admin/products/{p.property_id}/details" if p.property_id else None,
        metadata={"leaseId": p.lease_id, "propertyId": p.property_id},
        landlord_id=p.landlord_id,
    )

    await ctx.job_queue.schedule_reminder(
        "lease_signing",
        p.landlord_user_id,
        ctx.clock() + timedelta(hours=24),
        {"leaseId": p.lease_id, "tenantName": p.tenant_name, "propertyId": p.property_id},
    )


async def handle_lease_created(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    for days in (3, 1):
        await ctx.job_queue.schedule_reminder(
            "rent",
            p.tenant_id,
            p.rent_due_date - timedelta(days=days),
            {"leaseId": p.lease_id, "daysUntilDue": days},
        )


async def handle_rent_due_soon(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    await ctx.job_queue.schedule_reminder(
        "rent",
        p.tenant_id,
        ctx.clock(),
        {
            "leaseId": p.lease_id,
            "dueDate": p.due_date.isoformat() if p.due_date else None,
            "amount": p.amount,
        },
    )


# ── Payments & balances ─────────────────────────────────
async def _schedule_balance_release(ctx: HandlerContext, transaction_id: str, available_at: datetime) -> None:
    await ctx.job_queue.schedule(
        JobType.RELEASE_BALANCE,
        payload={"transactionId": transaction_id},
        scheduled_for=available_at,
        priority=8,
    )


async def handle_payment_received(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    await _schedule_balance_release(ctx, p.transaction_id, p.available_at)
    if p.landlord_id:
        await ctx.push(f"landlord-{p.landlord_id}", {
            "type": "payment_received",
            "amount": p.amount,
            "availableAt": p.available_at.isoformat(),
        })


async def handle_pending_balance(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    await _schedule_balance_release(ctx, p.transaction_id, p.available_at)


# ── Appointments ────────────────────────────────────────
async def _schedule_appointment_reminder(ctx: HandlerContext, p) -> None:
    reminder_time = p.start_time - timedelta(hours=24)
    if reminder_time > ctx.clock():
        await ctx.job_queue.schedule_reminder(
            "appointment", p.contractor_id, reminder_time, {"appointmentId": p.appointment_id}
        )


async def handle_appointment_created(event: DomainEvent, ctx: HandlerContext) -> None:
    await _schedule_appointment_reminder(ctx, event.payload)


async def handle_appointment_updated(event: DomainEvent, ctx: HandlerContext) -> None:
    # Reminders already queued for the old time are not cancelled
    p = event.payload
    if p.start_time != p.previous_start_time:
        await _schedule_appointment_reminder(ctx, p)


# ── Contractor verification ─────────────────────────────
async def handle_verification_uploaded(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    if not p.expires_at:
        return
    lead_days = 14 if p.verification_type == "insurance" else 30
    reminder_date = p.expires_at - timedelta(days=lead_days)
    if reminder_date > ctx.clock():
        await ctx.job_queue.schedule_reminder(
            "verification",
            p.contractor_id,
            reminder_date,
            {"verificationType": p.verification_type, "expiresAt": p.expires_at.isoformat()},
        )


async def handle_verification_expiring(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    await ctx.job_queue.schedule_reminder(
        "verification",
        p.contractor_id,
        ctx.clock(),
        {
            "verificationType": p.verification_type,
            "expiresAt": p.expires_at.isoformat() if p.expires_at else None,
            "daysUntilExpiration": p.days_until_expiration,
        },
    )


# ── Invoices, documents, webhooks ───────────────────────
async def handle_invoice_created(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    reminder_date = p.due_date - timedelta(days=3)
    if reminder_date > ctx.clock():
        await ctx.job_queue.schedule_reminder(
            "invoice", p.customer_id, reminder_date, {"invoiceId": p.invoice_id, "daysUntilDue": 3}
        )


async def handle_invoice_overdue(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    now = ctx.clock()
    await ctx.job_queue.schedule(
        JobType.PROCESS_LATE_FEE,
        payload={"invoiceId": p.invoice_id},
        scheduled_for=now,
        priority=7,
    )
    await ctx.job_queue.schedule(
        JobType.SEND_NOTIFICATION,
        payload={
            "userId": p.customer_id,
            "type": "alert",
            "title": "Invoice Overdue",
            "message": "Your invoice is overdue. Please make payment to avoid additional fees.",
            "actionUrl": f"/invoices/{p.invoice_id}",
        },
        scheduled_for=now,
        priority=9,
    )


async def handle_document_expired(event: DomainEvent, ctx: HandlerContext) -> None:
    await ctx.job_queue.schedule(
        JobType.CLEANUP_DOCUMENTS,
        payload={"documentId": event.payload.document_id},
        scheduled_for=ctx.clock(),
        priority=3,
    )


async def handle_webhook_failed(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    await ctx.job_queue.schedule(
        JobType.PROCESS_WEBHOOK,
        payload={"deliveryId": p.webhook_id},
        scheduled_for=ctx.clock() + timedelta(minutes=2 ** p.retry_count),
        priority=5,
        max_retries=5,
    )


# ── Showings & open houses ──────────────────────────────
async def handle_property_showing_scheduled(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    now = ctx.clock()
    await ctx.job_queue.schedule(
        JobType.SEND_NOTIFICATION,
        payload={
            "type": "email",
            "to": p.visitor_email,
            "subject": "Property Showing Confirmed",
            "template": "showing_confirmation",
            "data": {
                "visitorName": p.visitor_name,
                "date": p.on_date.isoformat(),
                "startTime": p.start_time.strftime("%H:%M"),
                "propertyId": p.property_id,
            },
        },
        scheduled_for=now,
        priority=9,
    )

    reminder_time = p.starts_at - timedelta(hours=24)
    if reminder_time > now:
        await ctx.job_queue.schedule(
            JobType.SEND_REMINDER,
            payload={
                "reminderType": "property_showing",
                "recipientEmail": p.visitor_email,
                "appointmentId": p.appointment_id,
                "showingDateTime": p.starts_at.isoformat(),
            },
            scheduled_for=reminder_time,
            priority=7,
        )

    await ctx.push(f"property-{p.property_id}", {
        "type": "showing_scheduled",
        "visitorName": p.visitor_name,
        "date": p.on_date.isoformat(),
        "startTime": p.start_time.strftime("%H:%M"),
    })


async def handle_open_house_scheduled(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    now = ctx.clock()
    start_time = p.start_time.strftime("%H:%M")

    reminder_time = p.starts_at - timedelta(hours=24)
    if reminder_time > now:
        await ctx.job_queue.schedule_reminder(
            "open_house",
            p.agent_id,
            reminder_time,
            {
                "openHouseId": p.open_house_id,
                "listingId": p.listing_id,
                "date": p.on_date.isoformat(),
                "startTime": start_time,
                "endTime": p.end_time.strftime("%H:%M") if p.end_time else None,
            },
        )

    starting_soon = p.starts_at - timedelta(hours=1)
    if starting_soon > now:
        await ctx.job_queue.schedule(
            JobType.SEND_NOTIFICATION,
            payload={"type": "open_house_starting", "agentId": p.agent_id, "openHouseId": p.open_house_id},
            scheduled_for=starting_soon,
            priority=8,
        )

    await ctx.push(f"agent-{p.agent_id}", {
        "type": "open_house_scheduled",
        "openHouseId": p.open_house_id,
        "date": p.on_date.isoformat(),
        "startTime": start_time,
    })


async def handle_open_house_starting_soon(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    await ctx.job_queue.schedule(
        JobType.SEND_NOTIFICATION,
        payload={
            "userId": p.agent_id,
            "type": "alert",
            "title": "Open House Starting Soon",
            "message": "Your open house starts in 1 hour. Make sure everything is ready!",
            "actionUrl": f"/agent/open-houses/{p.open_house_id}",
        },
        scheduled_for=ctx.clock(),
        priority=9,
    )


# ── Work orders & leads ─────────────────────────────────
async def handle_work_order_created(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    if p.is_open_bid:
        await ctx.push(f"contractors-{p.category}", {
            "type": "new_job_available",
            "workOrderId": p.work_order_id,
            "title": p.title,
            "category": p.category,
            "posterType": p.poster_type,
        })
        return

    if not p.contractor_id:
        return

    await ctx.job_queue.schedule(
        JobType.SEND_NOTIFICATION,
        payload={
            "userId": p.contractor_id,
            "type": "work_order",
            "title": "New Work Order Assigned",
            "message": f"You have been assigned a new job: {p.title}",
            "actionUrl": f"/contractor/work-orders/{p.work_order_id}",
        },
        scheduled_for=ctx.clock(),
        priority=9,
    )
    await ctx.push(f"contractor-{p.contractor_id}", {
        "type": "work_order_assigned",
        "workOrderId": p.work_order_id,
        "title": p.title,
    })


async def handle_bid_received(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    await ctx.push(f"user-{p.work_order_owner_id}", {
        "type": "bid_received",
        "workOrderId": p.work_order_id,
        "bidId": p.bid_id,
        "amount": p.amount,
    })
    await ctx.job_queue.schedule(
        JobType.SEND_NOTIFICATION,
        payload={
            "userId": p.work_order_owner_id,
            "type": "bid",
            "title": "New Bid Received",
            "message": f"A contractor has submitted a bid of ${p.amount:g} for your work order",
            "actionUrl": f"/work-orders/{p.work_order_id}",
        },
        scheduled_for=ctx.clock(),
        priority=8,
    )


async def handle_bid_accepted(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    await ctx.push(f"contractor-{p.contractor_id}", {
        "type": "bid_accepted",
        "workOrderId": p.work_order_id,
        "bidId": p.bid_id,
        "amount": p.amount,
    })
    await ctx.job_queue.schedule(
        JobType.SEND_NOTIFICATION,
        payload={
            "userId": p.contractor_id,
            "type": "success",
            "title": "Bid Accepted!",
            "message": f"Your bid of ${p.amount:g} has been accepted. Time to get to work!",
            "actionUrl": f"/contractor/work-orders/{p.work_order_id}",
        },
        scheduled_for=ctx.clock(),
        priority=9,
    )


async def handle_contractor_lead_matched(event: DomainEvent, ctx: HandlerContext) -> None:
    p = event.payload
    await ctx.push(f"contractor-{p.contractor_id}", {
        "type": "new_lead",
        "matchId": p.match_id,
        "leadId": p.lead_id,
        "serviceType": p.service_type,
        "leadScore": p.lead_score,
    })
    await ctx.job_queue.schedule(
        JobType.SEND_NOTIFICATION,
        payload={
            "userId": p.contractor_id,
            "type": "lead",
            "title": "New Lead Available",
            "message": f"A new {p.service_type} lead (score: {p.lead_score}) is waiting for your response",
            "actionUrl": f"/contractor/leads/{p.match_id}",
        },
        scheduled_for=ctx.clock(),
        priority=8,
    )


EVENT_HANDLERS: dict[EventType, Handler] = {
    EventType.LEASE_TENANT_SIGNED: handle_tenant_signed_lease,
    EventType.LEASE_CREATED: handle_lease_created,
    EventType.PAYMENT_RECEIVED: handle_payment_received,
    EventType.PAYMENT_PENDING: handle_pending_balance,
    EventType.APPOINTMENT_CREATED: handle_appointment_created,
    EventType.APPOINTMENT_UPDATED: handle_appointment_updated,
    EventType.VERIFICATION_UPLOADED: handle_verification_uploaded,
    EventType.VERIFICATION_EXPIRING_SOON: handle_verification_expiring,
    EventType.RENT_DUE_SOON: handle_rent_due_soon,
    EventType.INVOICE_CREATED: handle_invoice_created,
    EventType.INVOICE_OVERDUE: handle_invoice_overdue,
    EventType.BALANCE_PENDING_RELEASE: handle_pending_balance,
    EventType.DOCUMENT_EXPIRED: handle_document_expired,
    EventType.WEBHOOK_FAILED: handle_webhook_failed,
    EventType.PROPERTY_SHOWING_SCHEDULED: handle_property_showing_scheduled,
    EventType.OPEN_HOUSE_SCHEDULED: handle_open_house_scheduled,
    EventType.OPEN_HOUSE_STARTING_SOON: handle_open_house_starting_soon,
    EventType.WORK_ORDER_CREATED: handle_work_order_created,
    EventType.WORK_ORDER_BID_RECEIVED: handle_bid_received,
    EventType.WORK_ORDER_BID_ACCEPTED: handle_bid_accepted,
    EventType.CONTRACTOR_LEAD_MATCHED: handle_contractor_lead_matched,
}


def register_event_handlers(bus: EventBus, ctx: HandlerContext) -> None:
    """Subscribe every handler in EVENT_HANDLERS to ``bus``."""
    logger.info("Initializing event handlers...")
    for event_type, handler in EVENT_HANDLERS.items():
        bound = functools.partial(handler, ctx=ctx)
        functools.update_wrapper(bound, handler)
        bus.subscribe(event_type, bound)
    logger.info(f"Event handlers initialized ({len(EVENT_HANDLERS)} event types)")
