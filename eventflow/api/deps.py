"""Shared FastAPI dependencies."""

from fastapi import Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from eventflow.system import EventSystem


def get_event_system(request: Request) -> EventSystem:
    system = getattr(request.app.state, "event_system", None)
    if system is None:
        raise HTTPException(503, "Event system not available")
    return system


async def get_db(request: Request) -> AsyncSession:
    system = get_event_system(request)
    async with system.session_factory() as session:
        yield session


async def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-Id")) -> str:
    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise HTTPException(400, "X-Tenant-Id header is required")
    return tenant_id
