"""Domain triggers turn application records into published events.

The host application calls these right after it writes a record. Records are
plain dicts with the web app's camelCase keys. A trigger never raises: a
failure is logged and the caller's write stands.
"""

import logging
from typing import Any, Callable, Mapping, Optional

from eventflow.schemas.events import EventType
from eventflow.services.event_bus import EventBus

logger = logging.getLogger(__name__)


def _pick(record: Mapping[str, Any], *keys: str) -> dict:
    return {k: record[k] for k in keys if record.get(k) is not None}


class DomainTriggers:
    def __init__(self, bus: EventBus):
        self.bus = bus

    async def _publish(self, name: str, event_type: EventType, build: Callable[[], dict]) -> None:
        try:
            await self.bus.publish(event_type, build())
        except Exception:
            logger.exception(f"Trigger {name} failed to publish {event_type.value}")

    async def on_lease_signed_by_tenant(
        self,
        lease: Mapping[str, Any],
        tenant_name: str,
        landlord_user_id: str,
    ) -> None:
        await self._publish("on_lease_signed_by_tenant", EventType.LEASE_TENANT_SIGNED, lambda: {
            "leaseId": lease["id"],
            "tenantName": tenant_name,
            "landlordUserId": landlord_user_id,
            **_pick(lease, "propertyId", "landlordId"),
        })

    async def on_lease_create(self, lease: Mapping[str, Any]) -> None:
        await self._publish("on_lease_create", EventType.LEASE_CREATED, lambda: {
            "leaseId": lease["id"],
            "tenantId": lease.get("tenantId"),
            "rentDueDate": lease.get("rentDueDate") or lease.get("startDate"),
        })

    async def on_payment_received(self, payment: Mapping[str, Any]) -> None:
        await self._publish("on_payment_received", EventType.PAYMENT_RECEIVED, lambda: {
            "transactionId": payment.get("transactionId") or payment["id"],
            "availableAt": payment.get("availableAt"),
            **_pick(payment, "landlordId", "amount"),
        })

    async def on_appointment_create(self, appointment: Mapping[str, Any]) -> None:
        await self._publish("on_appointment_create", EventType.APPOINTMENT_CREATED, lambda: {
            "appointmentId": appointment["id"],
            "contractorId": appointment.get("contractorId"),
            "startTime": appointment.get("startTime"),
        })

    async def on_appointment_update(
        self,
        appointment: Mapping[str, Any],
        previous_start_time: Optional[Any] = None,
    ) -> None:
        await self._publish("on_appointment_update", EventType.APPOINTMENT_UPDATED, lambda: {
            "appointmentId": appointment["id"],
            "contractorId": appointment.get("contractorId"),
            "startTime": appointment.get("startTime"),
            "previousStartTime": previous_start_time,
        })

    async def on_invoice_create(self, invoice: Mapping[str, Any]) -> None:
        await self._publish("on_invoice_create", EventType.INVOICE_CREATED, lambda: {
            "invoiceId": invoice["id"],
            "customerId": invoice.get("customerId"),
            "dueDate": invoice.get("dueDate"),
        })

    async def on_work_order_create(self, work_order: Mapping[str, Any], poster_type: str = "landlord") -> None:
        await self._publish("on_work_order_create", EventType.WORK_ORDER_CREATED, lambda: {
            "workOrderId": work_order["id"],
            "title": work_order.get("title", ""),
            "posterType": poster_type,
            "posterId": work_order.get("landlordId") or work_order.get("homeownerId"),
            "category": work_order.get("category"),
            "isOpenBid": bool(work_order.get("isOpenBid")),
            "contractorId": work_order.get("contractorId"),
        })

    async def on_bid_received(self, bid: Mapping[str, Any], work_order: Mapping[str, Any]) -> None:
        await self._publish("on_bid_received", EventType.WORK_ORDER_BID_RECEIVED, lambda: {
            "bidId": bid["id"],
            "workOrderId": work_order["id"],
            "workOrderOwnerId": work_order.get("ownerId") or work_order.get("landlordId"),
            "amount": bid.get("amount"),
            **_pick(bid, "contractorId"),
        })

    async def on_bid_accepted(self, bid: Mapping[str, Any], work_order: Mapping[str, Any]) -> None:
        await self._publish("on_bid_accepted", EventType.WORK_ORDER_BID_ACCEPTED, lambda: {
            "bidId": bid["id"],
            "workOrderId": work_order["id"],
            "contractorId": bid.get("contractorId"),
            "amount": bid.get("amount"),
        })

    async def on_contractor_lead_match(self, match: Mapping[str, Any], lead: Mapping[str, Any]) -> None:
        await self._publish("on_contractor_lead_match", EventType.CONTRACTOR_LEAD_MATCHED, lambda: {
            "matchId": match["id"],
            "leadId": lead["id"],
            "contractorId": match.get("contractorId"),
            "serviceType": lead.get("projectType") or lead.get("serviceType") or "",
            "leadScore": lead.get("leadScore"),
        })

    async def on_showing_scheduled(self, appointment: Mapping[str, Any]) -> None:
        await self._publish("on_showing_scheduled", EventType.PROPERTY_SHOWING_SCHEDULED, lambda: {
            "appointmentId": appointment["id"],
            "propertyId": appointment.get("propertyId"),
            "date": appointment.get("date"),
            "startTime": appointment.get("startTime"),
            "visitorName": appointment.get("name") or appointment.get("visitorName"),
            "visitorEmail": appointment.get("email") or appointment.get("visitorEmail"),
        })

    async def on_open_house_create(self, open_house: Mapping[str, Any]) -> None:
        await self._publish("on_open_house_create", EventType.OPEN_HOUSE_SCHEDULED, lambda: {
            "openHouseId": open_house["id"],
            "agentId": open_house.get("agentId"),
            "date": open_house.get("date"),
            "startTime": open_house.get("startTime"),
            **_pick(open_house, "listingId", "endTime"),
        })
