"""Persisted, priority-ordered job queue driven by a timer.

Due jobs are claimed with a conditional UPDATE before they run, so two
workers polling the same table never execute the same job concurrently.
A claim carries a lease; a worker that dies mid-job leaves a ``processing``
row whose lease expires and which the next tick picks up again.
"""

import asyncio
import logging
import socket
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventflow.config import Settings, get_settings
from eventflow.errors import MissingExecutorError
from eventflow.models import dump_json, utcnow
from eventflow.models.job import RUNNABLE_STATUSES, Job, JobStatus, JobType
from eventflow.services.dead_letters import record_dead_letter

logger = logging.getLogger(__name__)

Executor = Callable[[dict], Awaitable[Optional[dict]]]
TickHook = Callable[[], Awaitable[object]]

REMINDER_PRIORITY = 7


def retry_backoff(attempts: int) -> timedelta:
    """Exponential backoff: 2^attempts minutes."""
    return timedelta(minutes=2 ** attempts)


class JobQueue:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        worker_id: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.worker_id = worker_id or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"
        self._executors: dict[str, Executor] = {}
        self._tick_hooks: list[TickHook] = []
        self._task: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None
        # Stopped loops still finishing their last tick
        self._retiring: list[asyncio.Task] = []

    # ── Registration ────────────────────────────────────
    def register_executor(self, job_type, executor: Executor) -> None:
        self._executors[JobType(job_type).value] = executor

    def add_tick_hook(self, hook: TickHook) -> None:
        """Run ``hook`` after each tick's job batch (e.g. webhook delivery sweep)."""
        self._tick_hooks.append(hook)

    # ── Scheduling ──────────────────────────────────────
    async def schedule(
        self,
        type,
        payload: Optional[dict] = None,
        scheduled_for: Optional[datetime] = None,
        priority: int = 5,
        max_retries: Optional[int] = None,
    ) -> Job:
        job = Job(
            type=JobType(type).value,
            payload=dump_json(payload or {}),
            scheduled_for=scheduled_for or utcnow(),
            priority=priority,
            max_retries=max_retries if max_retries is not None else self.settings.job_default_max_retries,
            status=JobStatus.PENDING.value,
            attempts=0,
        )
        async with self.session_factory() as db:
            db.add(job)
            await db.commit()

        logger.info(
            f"Job scheduled: type={job.type} priority={job.priority} "
            f"for={job.scheduled_for.isoformat()} id={job.id[:8]}"
        )
        return job

    async def schedule_reminder(
        self,
        kind: str,
        recipient_id: Optional[str],
        when: datetime,
        payload: Optional[dict] = None,
    ) -> Job:
        return await self.schedule(
            JobType.SEND_REMINDER,
            payload={"reminderType": kind, "recipientId": recipient_id, **(payload or {})},
            scheduled_for=when,
            priority=REMINDER_PRIORITY,
        )

    # ── Queries ─────────────────────────────────────────
    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self.session_factory() as db:
            return await db.get(Job, job_id)

    async def list_jobs(
        self,
        status: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        stmt = select(Job)
        count_stmt = select(func.count(Job.id))
        if status:
            stmt = stmt.where(Job.status == status)
            count_stmt = count_stmt.where(Job.status == status)
        if type:
            stmt = stmt.where(Job.type == type)
            count_stmt = count_stmt.where(Job.type == type)
        stmt = stmt.order_by(Job.scheduled_for.desc()).offset(offset).limit(limit)
        async with self.session_factory() as db:
            rows = list((await db.execute(stmt)).scalars().all())
            total = (await db.execute(count_stmt)).scalar() or 0
        return rows, total

    # ── Processing loop ─────────────────────────────────
    @property
    def is_running(self) -> bool:
        # A loop told to stop is on its way out even if its task is still alive
        return (
            self._task is not None
            and not self._task.done()
            and self._stop is not None
            and not self._stop.is_set()
        )

    def start_processing(self, interval_ms: Optional[int] = None) -> None:
        if self.is_running:
            logger.warning("Job processing already running")
            return
        if self._task is not None and not self._task.done():
            self._retiring.append(self._task)
        interval = interval_ms / 1000 if interval_ms is not None else self.settings.job_poll_interval_seconds
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(interval, self._stop), name="eventflow-job-queue")
        logger.info(f"Job processing started (every {interval:g}s, worker={self.worker_id})")

    def stop_processing(self) -> None:
        """Prevent further ticks. A tick already in progress runs to completion."""
        if self._stop is not None and not self._stop.is_set():
            self._stop.set()
            logger.info("Job processing stopping")

    async def wait_stopped(self) -> None:
        tasks = [*self._retiring, *([self._task] if self._task is not None else [])]
        self._retiring = []
        if tasks:
            await asyncio.gather(*tasks)
        self._task = None

    async def _run(self, interval: float, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            await self.tick()

    async def tick(self) -> None:
        try:
            await self.process_due_jobs()
        except Exception:
            logger.exception("Job processing tick failed")
        for hook in self._tick_hooks:
            try:
                await hook()
            except Exception:
                logger.exception(f"Tick hook {getattr(hook, '__name__', hook)} failed")

    async def process_due_jobs(self, now: Optional[datetime] = None) -> int:
        """Claim and execute one batch of due jobs. Returns the number executed."""
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Job.id)
                .where(
                    or_(
                        and_(
                            Job.status.in_(RUNNABLE_STATUSES),
                            Job.scheduled_for <= now,
                            Job.attempts < Job.max_retries,
                        ),
                        and_(
                            Job.status == JobStatus.PROCESSING.value,
                            Job.lease_until <= now,
                        ),
                    )
                )
                .order_by(Job.priority.desc(), Job.scheduled_for.asc())
                .limit(self.settings.job_batch_size)
            )
            job_ids = list(result.scalars().all())

        if not job_ids:
            return 0

        logger.info(f"Processing {len(job_ids)} due jobs")
        executed = 0
        for job_id in job_ids:
            job = await self._claim(job_id, now)
            if job is None:
                logger.debug(f"Job {job_id[:8]} claimed elsewhere, skipping")
                continue
            await self._execute(job, now)
            executed += 1
        return executed

    async def _claim(self, job_id: str, now: datetime) -> Optional[Job]:
        lease_until = now + timedelta(seconds=self.settings.job_claim_lease_seconds)
        async with self.session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    or_(
                        Job.status.in_(RUNNABLE_STATUSES),
                        and_(Job.status == JobStatus.PROCESSING.value, Job.lease_until <= now),
                    ),
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    claimed_by=self.worker_id,
                    lease_until=lease_until,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount != 1:
                return None
            return await db.get(Job, job_id)

    async def _execute(self, job: Job, now: Optional[datetime] = None) -> None:
        try:
            executor = self._executors.get(job.type)
            if executor is None:
                raise MissingExecutorError(job.type)
            await executor(job.data)
        except Exception as e:
            await self._record_failure(job, e, now)
        else:
            await self._record_success(job, now)

    async def _record_success(self, job: Job, now: Optional[datetime] = None) -> None:
        async with self.session_factory() as db:
            db.add(job)
            job.status = JobStatus.DONE.value
            job.completed_at = now or utcnow()
            job.lease_until = None
            await db.commit()
        logger.info(f"Job completed: id={job.id[:8]} type={job.type}")

    async def _record_failure(self, job: Job, error: Exception, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        error_msg = str(error) or error.__class__.__name__
        async with self.session_factory() as db:
            db.add(job)
            job.attempts = (job.attempts or 0) + 1
            job.last_error = error_msg[:2000]
            job.lease_until = None

            if job.attempts >= job.max_retries:
                job.status = JobStatus.FAILED.value
                job.completed_at = now
                await db.commit()
                logger.error(
                    f"Job failed permanently: id={job.id[:8]} type={job.type} "
                    f"attempts={job.attempts} error={error_msg}"
                )
                await record_dead_letter(
                    db,
                    source="job",
                    reference_id=job.id,
                    kind=job.type,
                    payload=job.payload,
                    error=error_msg,
                    attempts=job.attempts,
                )
                return

            backoff = retry_backoff(job.attempts)
            job.status = JobStatus.RETRYING.value
            job.scheduled_for = now + backoff
            await db.commit()
            logger.warning(
                f"Job retry {job.attempts}/{job.max_retries}: id={job.id[:8]} type={job.type} "
                f"backoff={int(backoff.total_seconds())}s error={error_msg}"
            )
