"""Webhook models for per-tenant event delivery."""

from enum import Enum

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text

from eventflow.database import Base, UTCDateTime
from eventflow.models import load_json, new_uuid, utcnow


class WebhookEventType(str, Enum):
    # Payments
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    # Leases
    LEASE_CREATED = "lease.created"
    LEASE_SIGNED = "lease.signed"
    LEASE_RENEWED = "lease.renewed"
    LEASE_TERMINATED = "lease.terminated"
    LEASE_EXPIRING = "lease.expiring"
    # Tenants
    TENANT_CREATED = "tenant.created"
    TENANT_UPDATED = "tenant.updated"
    TENANT_MOVED_OUT = "tenant.moved_out"
    # Applications
    APPLICATION_SUBMITTED = "application.submitted"
    APPLICATION_APPROVED = "application.approved"
    APPLICATION_REJECTED = "application.rejected"
    # Maintenance
    MAINTENANCE_CREATED = "maintenance.created"
    MAINTENANCE_UPDATED = "maintenance.updated"
    MAINTENANCE_RESOLVED = "maintenance.resolved"
    # Work orders
    WORK_ORDER_CREATED = "work_order.created"
    WORK_ORDER_ASSIGNED = "work_order.assigned"
    WORK_ORDER_COMPLETED = "work_order.completed"
    WORK_ORDER_PAID = "work_order.paid"
    # Properties & units
    PROPERTY_CREATED = "property.created"
    PROPERTY_UPDATED = "property.updated"
    UNIT_CREATED = "unit.created"
    UNIT_AVAILABLE = "unit.available"
    UNIT_OCCUPIED = "unit.occupied"


WEBHOOK_EVENT_DESCRIPTIONS = {
    WebhookEventType.PAYMENT_COMPLETED: "Rent payment completed",
    WebhookEventType.PAYMENT_FAILED: "Rent payment failed",
    WebhookEventType.PAYMENT_REFUNDED: "Payment refunded",
    WebhookEventType.LEASE_CREATED: "New lease created",
    WebhookEventType.LEASE_SIGNED: "Lease signed by tenant",
    WebhookEventType.LEASE_RENEWED: "Lease renewed",
    WebhookEventType.LEASE_TERMINATED: "Lease terminated",
    WebhookEventType.LEASE_EXPIRING: "Lease expiring soon",
    WebhookEventType.TENANT_CREATED: "New tenant added",
    WebhookEventType.TENANT_UPDATED: "Tenant information updated",
    WebhookEventType.TENANT_MOVED_OUT: "Tenant moved out",
    WebhookEventType.APPLICATION_SUBMITTED: "New rental application",
    WebhookEventType.APPLICATION_APPROVED: "Application approved",
    WebhookEventType.APPLICATION_REJECTED: "Application rejected",
    WebhookEventType.MAINTENANCE_CREATED: "New maintenance ticket",
    WebhookEventType.MAINTENANCE_UPDATED: "Ticket status updated",
    WebhookEventType.MAINTENANCE_RESOLVED: "Ticket resolved",
    WebhookEventType.WORK_ORDER_CREATED: "New work order created",
    WebhookEventType.WORK_ORDER_ASSIGNED: "Work order assigned",
    WebhookEventType.WORK_ORDER_COMPLETED: "Work order completed",
    WebhookEventType.WORK_ORDER_PAID: "Contractor payment sent",
    WebhookEventType.PROPERTY_CREATED: "New property added",
    WebhookEventType.PROPERTY_UPDATED: "Property updated",
    WebhookEventType.UNIT_CREATED: "New unit added",
    WebhookEventType.UNIT_AVAILABLE: "Unit became available",
    WebhookEventType.UNIT_OCCUPIED: "Unit occupied",
}


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"


class WebhookEndpoint(Base):
    """Tenant-registered webhook endpoint receiving a subset of event types."""

    __tablename__ = "webhook_endpoints"

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    secret = Column(String(200), nullable=False)  # HMAC signing secret
    description = Column(String(500), default="")
    events = Column(Text, default="[]")  # JSON list of subscribed event types
    is_active = Column(Boolean, default=True)
    # Failure tracking
    failure_count = Column(Integer, default=0)
    last_success_at = Column(UTCDateTime, nullable=True)
    last_failure_at = Column(UTCDateTime, nullable=True)
    last_failure_reason = Column(String(500), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def event_list(self) -> list[str]:
        events = load_json(self.events, [])
        return events if isinstance(events, list) else []

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in self.event_list


class WebhookDelivery(Base):
    """One transmission (with retries) of an event payload to one endpoint."""

    __tablename__ = "webhook_deliveries"

    id = Column(String(36), primary_key=True, default=new_uuid)
    webhook_endpoint_id = Column(
        String(36), ForeignKey("webhook_endpoints.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type = Column(String(100), nullable=False)
    payload = Column(Text, default="{}")
    status = Column(String(20), default=DeliveryStatus.PENDING.value, nullable=False)
    http_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    attempts = Column(Integer, default=0)
    next_retry_at = Column(UTCDateTime, nullable=True)
    delivered_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (Index("ix_webhook_deliveries_due", "status", "next_retry_at"),)
