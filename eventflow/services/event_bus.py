"""In-process event bus with a persisted event log.

Every ``publish`` writes an :class:`Event` row before dispatching, so events
whose handlers never ran (crash between persist and dispatch) are replayed by
``process_backlog`` on the next start.

A payload that fails validation against its event type runs no handlers at
all, including ones that would not read the offending field: the event is
dead-lettered and counts as failed for every subscriber.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventflow.models import Event, dump_json, utcnow
from eventflow.schemas.events import DomainEvent, EventType, parse_payload
from eventflow.services.dead_letters import record_dead_letter

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._handlers: dict[EventType, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type, handler: EventHandler) -> None:
        self._handlers[EventType.parse(event_type)].append(handler)

    def handlers_for(self, event_type) -> list[EventHandler]:
        return list(self._handlers.get(EventType.parse(event_type), []))

    async def publish(self, event_type, data: Optional[dict] = None) -> Optional[Event]:
        """Persist the event, then run its handlers in subscription order.

        Handler failures are logged and never reach the publisher. If the
        event row cannot be written the handlers still run.
        """
        event_type = EventType.parse(event_type)
        data = data or {}

        event: Optional[Event] = None
        try:
            async with self.session_factory() as db:
                event = Event(type=event_type.value, payload=dump_json(data))
                db.add(event)
                await db.commit()
        except Exception:
            logger.exception(f"Failed to persist event {event_type.value}")
            event = None

        await self._dispatch(
            event_id=event.id if event else None,
            event_type=event_type,
            data=data,
            created_at=event.created_at if event else utcnow(),
        )

        if event is not None:
            processed_at = await self._mark_processed(event.id)
            if processed_at is not None:
                event.processed = True
                event.processed_at = processed_at
        return event

    async def process_backlog(self) -> int:
        """Re-dispatch every unprocessed event, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Event).where(Event.processed.is_(False)).order_by(Event.created_at)
            )
            backlog = list(result.scalars().all())

        if not backlog:
            return 0

        logger.info(f"Replaying {len(backlog)} unprocessed events")
        for event in backlog:
            try:
                event_type = EventType.parse(event.type)
            except ValueError:
                logger.warning(f"Skipping backlog event {event.id} with unknown type {event.type}")
            else:
                await self._dispatch(event.id, event_type, event.data, event.created_at)
            await self._mark_processed(event.id)
        return len(backlog)

    async def _dispatch(self, event_id, event_type: EventType, data: dict, created_at) -> None:
        handlers = self.handlers_for(event_type)
        if not handlers:
            logger.debug(f"No handlers for {event_type.value}")
            return

        try:
            payload = parse_payload(event_type, data)
        except ValidationError as e:
            logger.error(f"Invalid payload for {event_type.value} (event {event_id}): {e}")
            try:
                async with self.session_factory() as db:
                    await record_dead_letter(
                        db,
                        source="event",
                        reference_id=event_id,
                        kind=event_type.value,
                        payload=data,
                        error=str(e),
                    )
            except Exception:
                logger.exception(f"Failed to dead-letter event {event_id}")
            return

        domain_event = DomainEvent(id=event_id, type=event_type, payload=payload, created_at=created_at)
        for handler in handlers:
            try:
                await handler(domain_event)
            except Exception:
                name = getattr(handler, "__name__", repr(handler))
                logger.exception(f"Handler {name} failed for {event_type.value}")

    async def _mark_processed(self, event_id: str) -> Optional[datetime]:
        now = utcnow()
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(Event)
                    .where(Event.id == event_id)
                    .values(processed=True, processed_at=now)
                )
                await db.commit()
        except Exception:
            logger.exception(f"Failed to mark event {event_id} processed")
            return None
        return now
