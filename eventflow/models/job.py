"""Job model — deferred, retryable unit of background work."""

from enum import Enum

from sqlalchemy import Column, Index, Integer, String, Text

from eventflow.database import Base, UTCDateTime
from eventflow.models import load_json, new_uuid, utcnow


class JobType(str, Enum):
    SEND_REMINDER = "send_reminder"
    SEND_NOTIFICATION = "send_notification"
    RELEASE_BALANCE = "release_balance"
    PROCESS_LATE_FEE = "process_late_fee"
    CLEANUP_DOCUMENTS = "cleanup_documents"
    PROCESS_WEBHOOK = "process_webhook"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


RUNNABLE_STATUSES = (JobStatus.PENDING.value, JobStatus.RETRYING.value)
TERMINAL_STATUSES = (JobStatus.DONE.value, JobStatus.FAILED.value)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=new_uuid)
    type = Column(String(50), nullable=False)
    payload = Column(Text, default="{}")
    scheduled_for = Column(UTCDateTime, nullable=False, default=utcnow)
    priority = Column(Integer, default=5)  # 0=low, 5=normal, 10=high
    attempts = Column(Integer, default=0)
    max_retries = Column(Integer, default=3)
    status = Column(String(20), default=JobStatus.PENDING.value, nullable=False)
    last_error = Column(Text, nullable=True)
    # Claim lease: a worker owns a processing row until lease_until
    claimed_by = Column(String(64), nullable=True)
    lease_until = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_jobs_due", "status", "scheduled_for", "priority"),
    )

    @property
    def data(self) -> dict:
        return load_json(self.payload, {})

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<Job {self.type} ({self.status})>"
