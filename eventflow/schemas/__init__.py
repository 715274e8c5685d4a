"""Pydantic schemas for API request/response."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from eventflow.models import load_json
from eventflow.models.job import JobType


# ── Events ──────────────────────────────────────────────
class EventPublish(BaseModel):
    type: str
    data: dict = Field(default_factory=dict)


class EventOut(BaseModel):
    id: str
    type: str
    data: dict
    processed: bool
    processed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class EventList(BaseModel):
    items: list[EventOut]
    total: int


class BacklogResult(BaseModel):
    replayed: int


# ── Jobs ────────────────────────────────────────────────
class JobCreate(BaseModel):
    type: JobType
    payload: dict = Field(default_factory=dict)
    scheduled_for: Optional[datetime] = None
    priority: int = Field(5, ge=0, le=10)
    max_retries: Optional[int] = Field(None, ge=1, le=20)


class JobOut(BaseModel):
    id: str
    type: str
    payload: dict
    scheduled_for: datetime
    priority: int
    attempts: int
    max_retries: int
    status: str
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_model(cls, job):
        return cls(
            id=job.id,
            type=job.type,
            payload=job.data,
            scheduled_for=job.scheduled_for,
            priority=job.priority,
            attempts=job.attempts or 0,
            max_retries=job.max_retries,
            status=job.status,
            last_error=job.last_error,
            completed_at=job.completed_at,
            created_at=job.created_at,
        )


class JobList(BaseModel):
    items: list[JobOut]
    total: int


class ProcessResult(BaseModel):
    processed: int


# ── Webhooks ────────────────────────────────────────────
class WebhookCreate(BaseModel):
    url: str
    events: list[str]
    description: str = ""


class WebhookUpdate(BaseModel):
    url: Optional[str] = None
    events: Optional[list[str]] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class WebhookOut(BaseModel):
    id: str
    url: str
    description: str
    events: list[str]
    is_active: bool
    failure_count: int
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_failure_reason: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_model(cls, wh):
        return cls(
            id=wh.id,
            url=wh.url,
            description=wh.description or "",
            events=wh.event_list,
            is_active=bool(wh.is_active),
            failure_count=wh.failure_count or 0,
            last_success_at=wh.last_success_at,
            last_failure_at=wh.last_failure_at,
            last_failure_reason=wh.last_failure_reason,
            created_at=wh.created_at,
        )


class WebhookCreated(WebhookOut):
    # Only returned on creation; not retrievable afterwards
    secret: str

    @classmethod
    def from_model(cls, wh):
        return cls(**WebhookOut.from_model(wh).model_dump(), secret=wh.secret)


class WebhookSecret(BaseModel):
    secret: str


class WebhookEventTypeOut(BaseModel):
    type: str
    description: str


class DeliveryOut(BaseModel):
    id: str
    webhook_endpoint_id: str
    event_type: str
    status: str
    http_status: Optional[int] = None
    response_time_ms: Optional[int] = None
    attempts: int
    next_retry_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DeliveryList(BaseModel):
    items: list[DeliveryOut]
    total: int


class TriggerRequest(BaseModel):
    event_type: str
    data: dict = Field(default_factory=dict)


class TriggerResult(BaseModel):
    queued: int
    delivery_ids: list[str]


class PingResult(BaseModel):
    success: bool
    http_status: Optional[int] = None
    response_body: Optional[str] = None
    response_time_ms: int
    error: Optional[str] = None


# ── Notifications ───────────────────────────────────────
class NotificationOut(BaseModel):
    id: str
    user_id: str
    type: str
    title: str
    message: str
    action_url: Optional[str] = None
    metadata: dict
    is_read: bool
    created_at: datetime

    @classmethod
    def from_model(cls, n):
        return cls(
            id=n.id,
            user_id=n.user_id,
            type=n.type,
            title=n.title,
            message=n.message or "",
            action_url=n.action_url,
            metadata=load_json(n.metadata_, {}),
            is_read=bool(n.is_read),
            created_at=n.created_at,
        )


# ── Dead letters ────────────────────────────────────────
class DeadLetterOut(BaseModel):
    id: str
    source: str
    reference_id: Optional[str] = None
    kind: str
    payload: dict
    error: str
    attempts: int
    created_at: datetime

    @classmethod
    def from_model(cls, row):
        payload = load_json(row.payload, {})
        return cls(
            id=row.id,
            source=row.source,
            reference_id=row.reference_id,
            kind=row.kind or "",
            payload=payload if isinstance(payload, dict) else {"value": payload},
            error=row.error or "",
            attempts=row.attempts or 0,
            created_at=row.created_at,
        )


class DeadLetterList(BaseModel):
    items: list[DeadLetterOut]
    total: int
