"""In-app notifications and real-time push over WebSockets."""

import json
import logging
from collections import defaultdict
from typing import Optional

from fastapi.websockets import WebSocket
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventflow.models import Notification, dump_json, utcnow

logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_notification(
        self,
        user_id: str,
        title: str,
        message: str = "",
        type: str = "info",
        action_url: Optional[str] = None,
        metadata: Optional[dict] = None,
        landlord_id: Optional[str] = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            landlord_id=landlord_id,
            type=type,
            title=title,
            message=message,
            action_url=action_url,
            metadata_=dump_json(metadata or {}),
        )
        async with self.session_factory() as db:
            db.add(notification)
            await db.commit()
        logger.info(f"Notification created: user={user_id} title={title!r}")
        return notification

    async def list_for_user(self, user_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def mark_read(self, notification_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(Notification).where(Notification.id == notification_id).values(is_read=True)
            )
            await db.commit()
        return result.rowcount == 1


class ConnectionManager:
    """Channel-keyed WebSocket registry (channels look like ``landlord-{id}``)."""

    def __init__(self):
        self.channels: dict[str, set[WebSocket]] = defaultdict(set)
        self.total_messages_sent = 0

    async def connect(self, channel: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.channels[channel].add(websocket)
        logger.info(f"channel={channel} event=connect subscribers={len(self.channels[channel])}")

    def disconnect(self, channel: str, websocket: WebSocket) -> None:
        sockets = self.channels.get(channel)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.channels[channel]
        logger.info(f"channel={channel} event=disconnect")

    def subscriber_count(self, channel: str) -> int:
        return len(self.channels.get(channel, ()))

    async def broadcast_new_message(self, channel: str, payload: dict) -> int:
        """Send ``payload`` to every socket on ``channel``; returns how many received it."""
        message = json.dumps({"channel": channel, "sentAt": utcnow().isoformat(), **payload}, default=str)
        delivered = 0
        dead = []
        for ws in list(self.channels.get(channel, ())):
            try:
                await ws.send_text(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"channel={channel} event=error reason='{e}'")
                dead.append(ws)
        for ws in dead:
            self.disconnect(channel, ws)
        self.total_messages_sent += delivered
        return delivered
