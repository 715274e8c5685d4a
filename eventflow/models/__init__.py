"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Index, Integer, String, Text

from eventflow.database import Base, UTCDateTime


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def dump_json(value) -> str:
    return json.dumps(value if value is not None else {}, default=str)


def load_json(raw, default=None):
    """Decode a JSON text column, falling back to ``default`` on bad data."""
    if raw is None or raw == "":
        return default
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default


# ── Event log ───────────────────────────────────────────
class Event(Base):
    """Append-only record of every published domain event."""

    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=new_uuid)
    type = Column(String(100), nullable=False, index=True)
    payload = Column(Text, default="{}")  # JSON stored as text for portability
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (Index("ix_events_backlog", "processed", "created_at"),)

    @property
    def data(self) -> dict:
        return load_json(self.payload, {})


# ── In-app notification ─────────────────────────────────
class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    landlord_id = Column(String(36), nullable=True)
    type = Column(String(30), default="info")  # info|reminder|alert|success|bid|lead|work_order
    title = Column(String(300), nullable=False)
    message = Column(Text, default="")
    action_url = Column(String(500), nullable=True)
    metadata_ = Column("metadata", Text, default="{}")
    is_read = Column(Boolean, default=False)
    created_at = Column(UTCDateTime, default=utcnow)


# ── Dead letters ────────────────────────────────────────
class DeadLetter(Base):
    """Permanently failed job, webhook delivery or undispatchable event."""

    __tablename__ = "dead_letters"

    id = Column(String(36), primary_key=True, default=new_uuid)
    source = Column(String(30), nullable=False, index=True)  # job|webhook_delivery|event
    reference_id = Column(String(36), nullable=True, index=True)
    kind = Column(String(100), default="")
    payload = Column(Text, default="{}")
    error = Column(Text, default="")
    attempts = Column(Integer, default=0)
    created_at = Column(UTCDateTime, default=utcnow)


from eventflow.models.job import Job, JobStatus, JobType  # noqa: E402,F401
from eventflow.models.webhook import (  # noqa: E402,F401
    DeliveryStatus,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEventType,
)
