"""Dead-letter inspection API."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from eventflow.api.deps import get_db
from eventflow.schemas import DeadLetterList, DeadLetterOut
from eventflow.services.dead_letters import list_dead_letters

router = APIRouter(prefix="/dead-letters", tags=["dead-letters"])


@router.get("/", response_model=DeadLetterList)
async def get_dead_letters(
    source: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await list_dead_letters(db, source=source, limit=limit, offset=skip)
    return DeadLetterList(items=[DeadLetterOut.from_model(r) for r in rows], total=total)
