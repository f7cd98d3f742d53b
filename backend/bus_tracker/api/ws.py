"""WebSocket feed of bus changes.

A client first receives a full ``snapshot`` message, then ``diff`` messages
as buses move and ``status`` messages when the upstream goes stale. Sending
the text ``resync`` asks for a fresh full snapshot.
"""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from bus_tracker.core.broadcaster import RESYNC, Broadcaster, Subscription

logger = logging.getLogger(__name__)

router = APIRouter()

# Will be set by main.py on startup
broadcaster: Broadcaster | None = None


async def _forward(websocket: WebSocket, feed: Broadcaster, subscription: Subscription) -> None:
    while True:
        message = await subscription.next()
        if message is RESYNC:
            message = feed.current_snapshot_message()
        await websocket.send_bytes(message)


async def _listen(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        command = await websocket.receive_text()
        if command.strip().lower() == "resync":
            subscription.request_resync()


@router.websocket("/ws/buses")
async def buses_ws(websocket: WebSocket) -> None:
    await websocket.accept()

    feed = broadcaster
    if feed is None:
        await websocket.close(code=1011, reason="Service not ready")
        return

    subscription = feed.subscribe()
    tasks = set()
    try:
        await websocket.send_bytes(feed.current_snapshot_message())
        tasks = {
            asyncio.create_task(_forward(websocket, feed, subscription)),
            asyncio.create_task(_listen(websocket, subscription)),
        }
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.error("WebSocket feed error", exc_info=error)
    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            task.cancel()
        feed.unsubscribe(subscription)
