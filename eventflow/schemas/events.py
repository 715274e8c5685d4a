"""Domain event types and their typed payloads.

Every :class:`EventType` member has exactly one payload model in
:data:`EVENT_PAYLOADS`. Payloads accept the camelCase keys used by the web
application (``leaseId``) as well as snake_case attribute names.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from eventflow.errors import UnknownEventTypeError


class EventType(str, Enum):
    LEASE_TENANT_SIGNED = "lease.tenant_signed"
    LEASE_CREATED = "lease.created"
    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_PENDING = "payment.pending"
    APPOINTMENT_CREATED = "appointment.created"
    APPOINTMENT_UPDATED = "appointment.updated"
    VERIFICATION_UPLOADED = "verification.uploaded"
    VERIFICATION_EXPIRING_SOON = "verification.expiring_soon"
    RENT_DUE_SOON = "rent.due_soon"
    INVOICE_CREATED = "invoice.created"
    INVOICE_OVERDUE = "invoice.overdue"
    BALANCE_PENDING_RELEASE = "balance.pending_release"
    DOCUMENT_EXPIRED = "document.expired"
    WEBHOOK_FAILED = "webhook.failed"
    PROPERTY_SHOWING_SCHEDULED = "property.showing_scheduled"
    OPEN_HOUSE_SCHEDULED = "open_house.scheduled"
    OPEN_HOUSE_STARTING_SOON = "open_house.starting_soon"
    WORK_ORDER_CREATED = "work_order.created"
    WORK_ORDER_BID_RECEIVED = "work_order.bid_received"
    WORK_ORDER_BID_ACCEPTED = "work_order.bid_accepted"
    CONTRACTOR_LEAD_MATCHED = "contractor.lead_matched"

    @classmethod
    def parse(cls, value) -> "EventType":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownEventTypeError(value) from None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class EventPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


# ── Leases & rent ───────────────────────────────────────
class LeaseTenantSigned(EventPayload):
    lease_id: str
    tenant_name: str
    landlord_user_id: str
    property_id: Optional[str] = None
    landlord_id: Optional[str] = None


class LeaseCreated(EventPayload):
    lease_id: str
    tenant_id: str
    rent_due_date: UTCDatetime


class RentDueSoon(EventPayload):
    tenant_id: str
    lease_id: str
    due_date: Optional[UTCDatetime] = None
    amount: Optional[float] = None


# ── Payments & balances ─────────────────────────────────
class PaymentReceived(EventPayload):
    transaction_id: str
    available_at: UTCDatetime
    landlord_id: Optional[str] = None
    amount: Optional[float] = None


class BalanceRelease(EventPayload):
    transaction_id: str
    available_at: UTCDatetime


# ── Appointments ────────────────────────────────────────
class AppointmentCreated(EventPayload):
    appointment_id: str
    contractor_id: str
    start_time: UTCDatetime


class AppointmentUpdated(AppointmentCreated):
    previous_start_time: Optional[UTCDatetime] = None


# ── Contractor verification ─────────────────────────────
class VerificationUploaded(EventPayload):
    verification_type: str
    contractor_id: str
    expires_at: Optional[UTCDatetime] = None


class VerificationExpiring(EventPayload):
    contractor_id: str
    verification_type: str
    expires_at: Optional[UTCDatetime] = None
    days_until_expiration: Optional[int] = None


# ── Invoices & documents ────────────────────────────────
class InvoiceCreated(EventPayload):
    invoice_id: str
    customer_id: str
    due_date: UTCDatetime


class InvoiceOverdue(EventPayload):
    invoice_id: str
    customer_id: str


class DocumentExpired(EventPayload):
    document_id: str


class WebhookFailed(EventPayload):
    webhook_id: str
    retry_count: int = 0


# ── Showings & open houses ──────────────────────────────
class PropertyShowingScheduled(EventPayload):
    appointment_id: str
    property_id: str
    on_date: date = Field(alias="date")
    start_time: time
    visitor_name: str
    visitor_email: str

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.on_date, self.start_time, tzinfo=timezone.utc)


class OpenHouseScheduled(EventPayload):
    open_house_id: str
    agent_id: str
    on_date: date = Field(alias="date")
    start_time: time
    listing_id: Optional[str] = None
    end_time: Optional[time] = None

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.on_date, self.start_time, tzinfo=timezone.utc)


class OpenHouseStartingSoon(EventPayload):
    agent_id: str
    open_house_id: str


# ── Work orders & leads ─────────────────────────────────
class WorkOrderCreated(EventPayload):
    work_order_id: str
    title: str
    poster_type: Optional[str] = None
    poster_id: Optional[str] = None
    category: Optional[str] = None
    is_open_bid: bool = False
    contractor_id: Optional[str] = None


class WorkOrderBidReceived(EventPayload):
    bid_id: str
    work_order_id: str
    work_order_owner_id: str
    amount: float
    contractor_id: Optional[str] = None


class WorkOrderBidAccepted(EventPayload):
    bid_id: str
    work_order_id: str
    contractor_id: str
    amount: float


class ContractorLeadMatched(EventPayload):
    match_id: str
    lead_id: str
    contractor_id: str
    service_type: str = ""
    lead_score: Optional[float] = None


EVENT_PAYLOADS: dict[EventType, type[EventPayload]] = {
    EventType.LEASE_TENANT_SIGNED: LeaseTenantSigned,
    EventType.LEASE_CREATED: LeaseCreated,
    EventType.PAYMENT_RECEIVED: PaymentReceived,
    EventType.PAYMENT_PENDING: BalanceRelease,
    EventType.APPOINTMENT_CREATED: AppointmentCreated,
    EventType.APPOINTMENT_UPDATED: AppointmentUpdated,
    EventType.VERIFICATION_UPLOADED: VerificationUploaded,
    EventType.VERIFICATION_EXPIRING_SOON: VerificationExpiring,
    EventType.RENT_DUE_SOON: RentDueSoon,
    EventType.INVOICE_CREATED: InvoiceCreated,
    EventType.INVOICE_OVERDUE: InvoiceOverdue,
    EventType.BALANCE_PENDING_RELEASE: BalanceRelease,
    EventType.DOCUMENT_EXPIRED: DocumentExpired,
    EventType.WEBHOOK_FAILED: WebhookFailed,
    EventType.PROPERTY_SHOWING_SCHEDULED: PropertyShowingScheduled,
    EventType.OPEN_HOUSE_SCHEDULED: OpenHouseScheduled,
    EventType.OPEN_HOUSE_STARTING_SOON: OpenHouseStartingSoon,
    EventType.WORK_ORDER_CREATED: WorkOrderCreated,
    EventType.WORK_ORDER_BID_RECEIVED: WorkOrderBidReceived,
    EventType.WORK_ORDER_BID_ACCEPTED: WorkOrderBidAccepted,
    EventType.CONTRACTOR_LEAD_MATCHED: ContractorLeadMatched,
}


@dataclass
class DomainEvent:
    """A published event as seen by handlers."""

    id: Optional[str]
    type: EventType
    payload: EventPayload
    created_at: datetime


def parse_payload(event_type: EventType, data: dict) -> EventPayload:
    """Validate raw event data; raises pydantic.ValidationError."""
    return EVENT_PAYLOADS[event_type].model_validate(data or {})
