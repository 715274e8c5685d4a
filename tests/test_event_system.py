"""Tests for the EventSystem lifecycle."""

import pytest
from sqlalchemy import select

from eventflow.models import Event, dump_json
from eventflow.models.job import JobType
from eventflow.schemas.events import EventType


@pytest.mark.asyncio
async def test_initialize_registers_every_handler(event_system):
    await event_system.initialize(start_processing=False)

    assert event_system.initialized
    for event_type in EventType:
        assert len(event_system.bus.handlers_for(event_type)) == 1


@pytest.mark.asyncio
async def test_initialize_is_idempotent(event_system):
    await event_system.initialize()
    await event_system.initialize()

    assert event_system.job_queue.is_running
    assert len(event_system.bus.handlers_for(EventType.LEASE_CREATED)) == 1


@pytest.mark.asyncio
async def test_initialize_replays_backlog(event_system, session_factory):
    async with session_factory() as db:
        db.add(Event(type=EventType.DOCUMENT_EXPIRED.value, payload=dump_json({"documentId": "d1"})))
        await db.commit()

    await event_system.initialize(start_processing=False)

    rows, total = await event_system.job_queue.list_jobs(type=JobType.CLEANUP_DOCUMENTS.value)
    assert total == 1
    async with session_factory() as db:
        event = (await db.execute(select(Event))).scalar_one()
    assert event.processed is True


@pytest.mark.asyncio
async def test_shutdown_then_reinitialize(event_system):
    await event_system.initialize()
    await event_system.shutdown()

    assert not event_system.initialized
    assert not event_system.job_queue.is_running

    await event_system.initialize()
    assert event_system.job_queue.is_running
    # Handlers are not registered twice
    assert len(event_system.bus.handlers_for(EventType.LEASE_CREATED)) == 1


@pytest.mark.asyncio
async def test_timer_processes_webhook_deliveries(event_system, receiver):
    import asyncio

    await event_system.webhooks.create_endpoint("t1", "https://hooks.example.com/a", ["lease.created"])
    await event_system.webhooks.trigger_webhook("t1", "lease.created", {"leaseId": "L1"}, deliver_now=False)

    await event_system.initialize()
    for _ in range(200):
        if receiver.requests:
            break
        await asyncio.sleep(0.01)

    assert len(receiver.requests) == 1
