"""WebSocket routes for real-time node status."""

import asyncio

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from core.container import container
from core.logging import get_logger
from services.execution.status import status_channel

logger = get_logger(__name__)
router = APIRouter(tags=["websocket"])


@router.websocket("/ws/status")
async def websocket_status_endpoint(websocket: WebSocket, caller_id: str = Query(default="default")):
    """Stream node status for one caller.

    The client subscribes to ``workflow-status:{caller_id}``. Incoming
    messages are only used for keepalive (``{"type": "ping"}``).
    """
    broadcaster = container.broadcaster()
    channel = status_channel(caller_id)
    await broadcaster.connect(websocket, channel)

    try:
        while True:
            data = await websocket.receive_json()
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                logger.debug("Ignoring WebSocket message", channel=channel, msg_type=data.get("type"))
    except WebSocketDisconnect:
        logger.debug("WebSocket disconnected", channel=channel)
    except asyncio.CancelledError:
        # Server shutdown
        raise
    finally:
        await broadcaster.disconnect(websocket, channel)


@router.get("/ws/info")
async def websocket_info():
    """Number of connected status subscribers."""
    return {"connections": container.broadcaster().connection_count}
