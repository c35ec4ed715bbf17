"""
WebSocket Endpoint：訂閱 lane channel

連線後先送一次目前的完整狀態，之後每次 commit 都會收到事件。
Broadcaster 的 callback 在 request thread 上同步執行，這裡用
call_soon_threadsafe 把訊息交給 event loop 上的 queue。
"""
import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from database import SessionLocal
from core.lane_session_manager import LaneSessionManager
from services.broadcast_service import SESSION_UPDATED, broadcaster
from services.time_service import utcnow
from schemas import LaneEvent

router = APIRouter(tags=["websocket"])
logger = logging.getLogger(__name__)


def _initial_snapshot(lane_id: str):
    db = SessionLocal()
    try:
        state = LaneSessionManager.get_session_snapshot(db, lane_id)
    finally:
        db.close()
    if state is None:
        return None
    return LaneEvent(
        type=SESSION_UPDATED,
        lane_id=lane_id,
        payload=state.model_dump(mode="json"),
        timestamp=utcnow()
    ).model_dump(mode="json")


@router.websocket("/ws/lanes/{lane_id}")
async def lane_channel(websocket: WebSocket, lane_id: str):
    await websocket.accept()

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def on_message(message):
        loop.call_soon_threadsafe(queue.put_nowait, message)

    broadcaster.subscribe(lane_id, on_message)
    logger.info(f"WebSocket subscribed to lane {lane_id}")

    try:
        snapshot = await asyncio.to_thread(_initial_snapshot, lane_id)
        if snapshot is not None:
            await websocket.send_json(snapshot)

        while True:
            message = await queue.get()
            await websocket.send_json(message)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected from lane {lane_id}")
    finally:
        broadcaster.unsubscribe(lane_id, on_message)
