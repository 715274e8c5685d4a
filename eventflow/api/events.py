"""Domain event publishing and event log API."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventflow.api.deps import get_db, get_event_system
from eventflow.errors import UnknownEventTypeError
from eventflow.models import Event
from eventflow.schemas import BacklogResult, EventList, EventOut, EventPublish
from eventflow.schemas.events import EventType
from eventflow.system import EventSystem

router = APIRouter(prefix="/events", tags=["events"])


@router.get("/types", response_model=list[str])
async def list_event_types():
    return [t.value for t in EventType]


@router.post("/", response_model=EventOut, status_code=202)
async def publish_event(data: EventPublish, system: EventSystem = Depends(get_event_system)):
    """Publish an event; handlers run before the response is returned."""
    try:
        event_type = EventType.parse(data.type)
    except UnknownEventTypeError as e:
        raise HTTPException(400, str(e))

    event = await system.bus.publish(event_type, data.data)
    if event is None:
        raise HTTPException(500, "Event could not be recorded")
    return EventOut.model_validate(event)


@router.get("/", response_model=EventList)
async def list_events(
    type: Optional[str] = None,
    processed: Optional[bool] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Event)
    count_stmt = select(func.count(Event.id))
    if type:
        stmt = stmt.where(Event.type == type)
        count_stmt = count_stmt.where(Event.type == type)
    if processed is not None:
        stmt = stmt.where(Event.processed.is_(processed))
        count_stmt = count_stmt.where(Event.processed.is_(processed))

    stmt = stmt.order_by(Event.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    total = (await db.execute(count_stmt)).scalar() or 0
    return EventList(items=[EventOut.model_validate(e) for e in result.scalars().all()], total=total)


@router.post("/backlog", response_model=BacklogResult)
async def replay_backlog(system: EventSystem = Depends(get_event_system)):
    return BacklogResult(replayed=await system.bus.process_backlog())
