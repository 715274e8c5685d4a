"""Dead-letter sink: durable record of work that permanently failed."""

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventflow.models import DeadLetter, dump_json

logger = logging.getLogger(__name__)


async def record_dead_letter(
    db: AsyncSession,
    source: str,
    reference_id: Optional[str],
    kind: str,
    payload,
    error: str,
    attempts: int = 0,
) -> DeadLetter:
    letter = DeadLetter(
        source=source,
        reference_id=reference_id,
        kind=kind,
        payload=payload if isinstance(payload, str) else dump_json(payload),
        error=(error or "")[:2000],
        attempts=attempts,
    )
    db.add(letter)
    await db.commit()
    logger.warning(f"Dead letter recorded: source={source} ref={reference_id} kind={kind}")
    return letter


async def list_dead_letters(
    db: AsyncSession,
    source: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[DeadLetter], int]:
    stmt = select(DeadLetter)
    count_stmt = select(func.count(DeadLetter.id))
    if source:
        stmt = stmt.where(DeadLetter.source == source)
        count_stmt = count_stmt.where(DeadLetter.source == source)
    stmt = stmt.order_by(DeadLetter.created_at.desc()).offset(offset).limit(limit)
    rows = list((await db.execute(stmt)).scalars().all())
    total = (await db.execute(count_stmt)).scalar() or 0
    return rows, total
