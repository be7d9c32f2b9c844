"""
Public Tracking API Endpoints.

Anyone holding a journey's tracking link can follow it. The journey id in
the link is the only credential.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Path, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from safereach.app.core.exceptions import ResourceNotFoundError
from safereach.app.db.session import get_db, get_session_factory
from safereach.app.schemas.tracking import PublicTrackingResponse
from safereach.app.services.journey_queries import build_public_snapshot
from safereach.app.services.realtime import (
    ChangeTopic, RealtimeChannel, RowFilter, event_message, get_realtime_channel
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/track", tags=["Public Tracking"])


@router.get("/{journey_id}", response_model=PublicTrackingResponse)
async def get_tracking(
    journey_id: str = Path(..., description="Journey ID from the tracking link"),
    db: AsyncSession = Depends(get_db)
):
    """
    Current state of a tracked journey.

    Includes the traveler's name, the path walked so far, check-ins and
    route steps. Returns 404 for an unknown link.
    """
    return await build_public_snapshot(db, journey_id)


@router.websocket("/{journey_id}/ws")
async def follow_journey(
    websocket: WebSocket,
    journey_id: str,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    channel: RealtimeChannel = Depends(get_realtime_channel)
):
    """
    Live view of a journey.

    Subscribes first, then sends a full ``snapshot`` so nothing committed in
    between is missed. After that every journey update and new breadcrumb
    is relayed as it happens. Viewers that reconnect get a fresh snapshot.
    """
    await websocket.accept()

    async with channel.stream(
        (ChangeTopic.JOURNEY_ROW_CHANGED, RowFilter.eq("id", journey_id)),
        (ChangeTopic.LOCATION_ROW_INSERTED, RowFilter.eq("journey_id", journey_id)),
    ) as inbox:
        async with session_factory() as db:
            try:
                snapshot = await build_public_snapshot(db, journey_id)
            except ResourceNotFoundError as e:
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
                return
        await websocket.send_json({"type": "snapshot", "data": snapshot.model_dump(mode="json")})

        receiver = asyncio.create_task(websocket.receive_text())
        try:
            while True:
                getter = asyncio.create_task(inbox.get())
                done, _ = await asyncio.wait({receiver, getter}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    await websocket.send_json(event_message(getter.result()))
                else:
                    getter.cancel()
                if receiver in done:
                    # Viewers only listen; incoming text is ignored, a disconnect raises
                    receiver.result()
                    receiver = asyncio.create_task(websocket.receive_text())
        except WebSocketDisconnect:
            logger.debug("Viewer left journey %s", journey_id)
        finally:
            receiver.cancel()
