"""Job executors: the work behind each JobType.

Executors take the job payload dict and raise on failure; the job queue turns
an exception into a retry. Balance release, late fees and document cleanup
live in the host application and are plugged in through ``external``.
"""

import logging
from typing import Awaitable, Callable, Optional

from eventflow.models.job import JobType
from eventflow.services.email import EmailSender, render_template
from eventflow.services.notifications import NotificationService
from eventflow.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

Executor = Callable[[dict], Awaitable[Optional[dict]]]


def _days(value) -> str:
    return "1 day" if value == 1 else f"{value} days"


# reminderType -> (title, message builder, action url builder)
REMINDER_TEMPLATES: dict[str, tuple[str, Callable[[dict], str], Callable[[dict], Optional[str]]]] = {
    "lease_signing": (
        "Lease Still Awaiting Your Signature",
        lambda p: f"{p.get('tenantName', 'Your tenant')} signed the lease and is waiting on your signature.",
        lambda p: f"/admin/products/{p['propertyId']}/details" if p.get("propertyId") else None,
    ),
    "rent": (
        "Rent Due Soon",
        lambda p: (
            f"Your rent is due in {_days(p['daysUntilDue'])}."
            if p.get("daysUntilDue") is not None
            else "Your rent payment is due soon."
        ),
        lambda p: "/user/payments",
    ),
    "appointment": (
        "Upcoming Appointment",
        lambda p: "You have an appointment scheduled in 24 hours.",
        lambda p: f"/contractor/appointments/{p['appointmentId']}" if p.get("appointmentId") else None,
    ),
    "verification": (
        "Verification Expiring",
        lambda p: (
            f"Your {p.get('verificationType', 'verification')} document expires on {p['expiresAt']}."
            if p.get("expiresAt")
            else f"Your {p.get('verificationType', 'verification')} document is about to expire."
        ),
        lambda p: "/contractor/profile",
    ),
    "invoice": (
        "Invoice Due Soon",
        lambda p: f"Your invoice is due in {_days(p.get('daysUntilDue', 3))}.",
        lambda p: f"/invoices/{p['invoiceId']}" if p.get("invoiceId") else None,
    ),
    "open_house": (
        "Open House Tomorrow",
        lambda p: (
            f"Your open house starts tomorrow at {p['startTime']}."
            if p.get("startTime")
            else "Your open house starts tomorrow."
        ),
        lambda p: f"/agent/open-houses/{p['openHouseId']}" if p.get("openHouseId") else None,
    ),
}


class JobExecutors:
    def __init__(
        self,
        notifications: NotificationService,
        webhooks: WebhookDispatcher,
        email: EmailSender,
        external: Optional[dict[JobType, Executor]] = None,
    ):
        self.notifications = notifications
        self.webhooks = webhooks
        self.email = email
        self.external = dict(external or {})

    def as_mapping(self) -> dict[JobType, Executor]:
        executors: dict[JobType, Executor] = {
            JobType.SEND_REMINDER: self.send_reminder,
            JobType.SEND_NOTIFICATION: self.send_notification,
            JobType.PROCESS_WEBHOOK: self.process_webhook,
        }
        executors.update(self.external)
        return executors

    async def send_reminder(self, payload: dict) -> dict:
        kind = payload.get("reminderType", "")

        if kind == "property_showing":
            to = payload.get("recipientEmail")
            if not to:
                raise ValueError("property_showing reminder has no recipientEmail")
            subject, html = render_template(
                "showing_reminder", {"showingDateTime": payload.get("showingDateTime", "")}
            )
            await self.email.send(to, subject, html)
            return {"channel": "email", "to": to}

        recipient = payload.get("recipientId")
        if not recipient:
            raise ValueError(f"{kind or 'unknown'} reminder has no recipientId")

        title, message, action_url = REMINDER_TEMPLATES.get(
            kind, ("Reminder", lambda p: "You have a pending item that needs attention.", lambda p: None)
        )
        await self.notifications.create_notification(
            user_id=recipient,
            type="reminder",
            title=title,
            message=message(payload),
            action_url=action_url(payload),
            metadata={k: v for k, v in payload.items() if k not in ("reminderType", "recipientId")},
        )
        return {"channel": "in_app", "userId": recipient}

    async def send_notification(self, payload: dict) -> dict:
        if payload.get("type") == "email":
            to = payload.get("to")
            if not to:
                raise ValueError("email notification has no recipient")
            template = payload.get("template")
            if template:
                subject, html = render_template(template, payload.get("data") or {})
            else:
                subject, html = payload.get("subject", ""), payload.get("html", "")
            await self.email.send(to, payload.get("subject") or subject, html)
            return {"channel": "email", "to": to}

        user_id = payload.get("userId") or payload.get("agentId")
        if not user_id:
            raise ValueError("notification has no userId")

        if payload.get("type") == "open_house_starting":
            title = "Open House Starting Soon"
            message = "Your open house starts in 1 hour. Make sure everything is ready!"
            action_url = f"/agent/open-houses/{payload.get('openHouseId')}"
            kind = "alert"
        else:
            title = payload.get("title") or "Notification"
            message = payload.get("message", "")
            action_url = payload.get("actionUrl")
            kind = payload.get("type", "info")

        await self.notifications.create_notification(
            user_id=user_id,
            type=kind,
            title=title,
            message=message,
            action_url=action_url,
            metadata=payload.get("metadata"),
            landlord_id=payload.get("landlordId"),
        )
        return {"channel": "in_app", "userId": user_id}

    async def process_webhook(self, payload: dict) -> dict:
        delivery_id = payload.get("deliveryId") or payload.get("webhookId")
        if delivery_id:
            delivery = await self.webhooks.deliver(delivery_id)
            return {"deliveryId": delivery_id, "status": delivery.status if delivery else None}
        attempted = await self.webhooks.process_webhook_deliveries()
        return {"attempted": attempted}
