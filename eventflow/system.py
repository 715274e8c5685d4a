"""EventSystem wires the bus, job queue and webhook dispatcher together.

The host server owns one instance (FastAPI keeps it on ``app.state``) and
drives it from its lifespan: ``initialize()`` on startup, ``shutdown()`` on
exit.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventflow.config import Settings, get_settings
from eventflow.database import create_engine_from_settings, create_session_factory
from eventflow.models.job import JobType
from eventflow.services.email import EmailSender
from eventflow.services.event_bus import EventBus
from eventflow.services.event_handlers import HandlerContext, register_event_handlers
from eventflow.services.job_queue import JobQueue
from eventflow.services.notifications import ConnectionManager, NotificationService
from eventflow.services.triggers import DomainTriggers
from eventflow.services.webhook_dispatcher import WebhookDispatcher
from eventflow.tasks.executors import Executor, JobExecutors

logger = logging.getLogger(__name__)


class EventSystem:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        broadcaster: Optional[ConnectionManager] = None,
        email: Optional[EmailSender] = None,
        external_executors: Optional[dict[JobType, Executor]] = None,
        transport=None,
    ):
        self.settings = settings or get_settings()
        self.engine = None
        if session_factory is None:
            self.engine = create_engine_from_settings(self.settings)
            session_factory = create_session_factory(self.engine)
        self.session_factory = session_factory

        self.broadcaster = broadcaster or ConnectionManager()
        self.bus = EventBus(session_factory)
        self.job_queue = JobQueue(session_factory, self.settings)
        self.webhooks = WebhookDispatcher(session_factory, self.settings, transport=transport)
        self.notifications = NotificationService(session_factory)
        self.triggers = DomainTriggers(self.bus)

        self.executors = JobExecutors(
            self.notifications,
            self.webhooks,
            email or EmailSender(self.settings),
            external=external_executors,
        )
        for job_type, executor in self.executors.as_mapping().items():
            self.job_queue.register_executor(job_type, executor)

        self.handler_context = HandlerContext(
            job_queue=self.job_queue,
            notifications=self.notifications,
            broadcaster=self.broadcaster,
        )
        self._initialized = False
        self._handlers_registered = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self, start_processing: bool = True) -> None:
        """Register handlers, replay the backlog and start the job timer. Safe to call twice."""
        if self._initialized:
            logger.debug("Event system already initialized")
            return

        logger.info("Initializing event system...")
        if not self._handlers_registered:
            register_event_handlers(self.bus, self.handler_context)
            self.job_queue.add_tick_hook(self.webhooks.process_webhook_deliveries)
            self._handlers_registered = True

        replayed = await self.bus.process_backlog()
        if replayed:
            logger.info(f"Replayed {replayed} backlog events")

        if start_processing:
            self.job_queue.start_processing()

        self._initialized = True
        logger.info("Event system initialized")

    async def shutdown(self) -> None:
        logger.info("Shutting down event system...")
        self.job_queue.stop_processing()
        await self.job_queue.wait_stopped()
        await self.webhooks.cancel_background()
        self._initialized = False
        logger.info("Event system shut down")

    async def dispose(self) -> None:
        """Shut down and close the engine this instance created, if any."""
        await self.shutdown()
        if self.engine is not None:
            await self.engine.dispose()
