from fastapi import APIRouter, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import time
import uuid
from typing import Optional

from backend import RedisRoomStore, RoomStore, create_room_store
from broadcaster import UpdateBroadcaster, participants_message, selection_message
from constants import LOG_FILE, LOG_LEVEL, REDIS_URL, ROOM_SWEEP_INTERVAL_SECONDS
from exceptions import BackendUnavailable
from logging_config import get_logger, setup_logging
from pubsub import LocalPubSub, RedisPubSub, TopicSubscription
from redis_keys import room_topic
from room_service import RoomService
from routers.rooms import rooms_router
from sweeper import RoomSweeper

logger = get_logger(__name__)

realtime_router = APIRouter()


def create_pubsub(store: RoomStore):
    """Redis pub/sub goes with the Redis store so updates cross instances; otherwise stay in-process."""
    if isinstance(store, RedisRoomStore):
        return RedisPubSub.from_url(store.redis_client, REDIS_URL)
    return LocalPubSub()


def create_app(store: Optional[RoomStore] = None, pubsub=None,
               sweep_interval: float = ROOM_SWEEP_INTERVAL_SECONDS) -> FastAPI:
    """
    Build the application with its room store chosen once.

    Tests pass their own store/pubsub; in production the store comes from
    ``create_room_store`` (Redis, falling back to memory).
    """
    setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
    if store is None:
        store = create_room_store()
    if pubsub is None:
        pubsub = create_pubsub(store)
    service = RoomService(store, UpdateBroadcaster(store, pubsub))
    sweeper = RoomSweeper(service, interval=sweep_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper.start()
        yield
        await sweeper.stop()
        await pubsub.close()

    app = FastAPI(title="drawroom", lifespan=lifespan)
    app.state.room_store = store
    app.state.pubsub = pubsub
    app.state.room_service = service
    app.state.sweeper = sweeper

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)
    app.include_router(realtime_router)

    @app.get("/health")
    def health():
        return {"status": "healthy", "backend": store.name}

    logger.info(f"FastAPI application initialized with {store.name} room store")
    return app


async def forward_updates(websocket: WebSocket, subscription: TopicSubscription, connection_id: str) -> None:
    """Relay topic messages to one WebSocket until the subscription ends or the socket fails."""
    try:
        async for message in subscription:
            await websocket.send_json(message)
            logger.debug(f"Sent {message.get('type', 'unknown')} update to connection {connection_id}")
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(f"Error sending to connection {connection_id} on {subscription.topic}: {e}")


async def drain_client(websocket: WebSocket, connection_id: str) -> None:
    """Clients only listen; discard anything they send until they go away."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {connection_id}")


@realtime_router.websocket("/rooms/{room_id}/ws")
async def websocket_endpoint(room_id: str, websocket: WebSocket):
    """Push channel for one room.

    On connect the client receives a ``ping``, the full ``participants`` list
    and the last ``selection`` (if any); after that every update published on
    the room topic. Unknown rooms are rejected with close code 1008. If the
    update stream dies the socket is closed with 1011 so the client falls
    back to polling.
    """
    service: RoomService = websocket.app.state.room_service
    pubsub = websocket.app.state.pubsub
    logger.info(f"WebSocket connection attempt for room: {room_id}")

    # Subscribe before reading the snapshot so no update falls in between
    subscription = await pubsub.subscribe(room_topic(room_id))
    try:
        snapshot = await service.get_snapshot(room_id)
    except BackendUnavailable as e:
        logger.error(f"WebSocket connection rejected: room store unavailable for {room_id}: {e}")
        await subscription.close()
        await websocket.close(code=1011, reason="Room store unavailable")
        return

    if snapshot is None:
        logger.info(f"WebSocket connection rejected: Room {room_id} not found")
        await subscription.close()
        await websocket.close(code=1008, reason="Room not found")
        return

    await websocket.accept()
    connection_id = str(uuid.uuid4())
    logger.info(f"WebSocket connection {connection_id} accepted for room: {room_id}")

    tasks = []
    try:
        await websocket.send_json({"type": "ping", "message": "Connected to room", "timestamp": int(time.time())})
        await websocket.send_json(participants_message([p.name for p in snapshot.participants]))
        if snapshot.selection:
            await websocket.send_json(
                selection_message(snapshot.selection.selected_names, snapshot.selection.requested_count)
            )

        forward_task = asyncio.create_task(forward_updates(websocket, subscription, connection_id))
        receive_task = asyncio.create_task(drain_client(websocket, connection_id))
        tasks = [forward_task, receive_task]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

        if receive_task in done and receive_task.exception():
            logger.error(f"WebSocket receive failed for connection {connection_id} in room {room_id}: "
                         f"{receive_task.exception()}")
        if receive_task not in done:
            logger.warning(f"Update stream for room {room_id} ended, closing connection {connection_id}")
            await websocket.close(code=1011, reason="Update stream unavailable")
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {connection_id} in room {room_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id} in room {room_id}: {e}", exc_info=True)
    finally:
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await subscription.close()
        logger.debug(f"Released subscription for connection {connection_id} in room {room_id}")
