"""In-app notifications API and the real-time WebSocket channel."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect

from eventflow.api.deps import get_event_system
from eventflow.schemas import NotificationOut
from eventflow.system import EventSystem

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])
ws_router = APIRouter(tags=["realtime"])


@router.get("/", response_model=list[NotificationOut])
async def list_notifications(
    user_id: str,
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    system: EventSystem = Depends(get_event_system),
):
    rows = await system.notifications.list_for_user(user_id, unread_only=unread_only, limit=limit)
    return [NotificationOut.from_model(n) for n in rows]


@router.post("/{notification_id}/read", status_code=204)
async def mark_read(notification_id: str, system: EventSystem = Depends(get_event_system)):
    if not await system.notifications.mark_read(notification_id):
        raise HTTPException(404, "Notification not found")


@ws_router.websocket("/ws/{channel}")
async def channel_socket(websocket: WebSocket, channel: str):
    manager = websocket.app.state.event_system.broadcaster
    await manager.connect(channel, websocket)
    try:
        # Inbound messages are ignored; the socket is push-only
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(channel, websocket)
