"""
WebSocket endpoint for real-time conflict and analysis events.

Connect: ws://host/ws/conflicts?token=<jwt>[&analysis_id=<uuid>]

Without analysis_id the socket streams every event for the caller's
organization; with it, only that analysis's run events.
"""

import asyncio

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import DEV_ORGANIZATION_ID, get_db, get_event_broadcaster
from conflicts.repository import SqlAnalysisStore
from core.config import get_settings
from core.security import decode_access_token
from events.broadcaster import EventBroadcaster
from events.contracts import analysis_topic, org_topic

settings = get_settings()
logger = structlog.get_logger()
router = APIRouter()

HEARTBEAT_SECONDS = 30


async def authenticate_ws(token: str) -> dict | None:
    """Validate JWT token from WebSocket query param."""
    if settings.debug:
        return {
            "sub": "dev-user",
            "organization_id": DEV_ORGANIZATION_ID,
        }
    return decode_access_token(token)


@router.websocket("/ws/conflicts")
async def websocket_conflicts(
    websocket: WebSocket,
    token: str = Query(...),
    analysis_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_event_broadcaster),
):
    """
    Stream conflict lifecycle and analysis events.

    Messages sent to client:
        {"type": "conflict:new", "topic": "...", "payload": {...}, "emitted_at": "..."}
        {"type": "analysis:progress", ...}
        {"type": "heartbeat", "payload": {}}
    """
    user = await authenticate_ws(token)
    if user is None:
        await websocket.close(code=4001, reason="Unauthorized")
        return

    organization_id = str(user["organization_id"])
    if analysis_id is not None:
        if await SqlAnalysisStore(db).get(organization_id, analysis_id) is None:
            await websocket.close(code=4004, reason="Analysis not found")
            return
        topic = analysis_topic(analysis_id)
    else:
        topic = org_topic(organization_id)

    await websocket.accept()
    subscription = await broadcaster.subscribe(topic)
    logger.info("events.ws.connected", organization_id=organization_id, topic=topic)

    try:
        while True:
            try:
                event = await subscription.get(timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "heartbeat", "payload": {}})
                continue
            except LookupError:
                break
            await websocket.send_text(event.to_message())
    except WebSocketDisconnect:
        logger.info("events.ws.disconnected", organization_id=organization_id, topic=topic)
    finally:
        await subscription.cancel()
