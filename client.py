"""
Client side of the realtime update flow.

A ``RealtimeClientSession`` keeps one room's render state current. It listens
on the push channel and falls back to polling the snapshot endpoint while the
push channel is down. Push events and poll results are both folded into a
complete ``RoomSnapshot`` and handed to the render callback, so missed,
duplicated or reordered events only ever cause a redundant re-render.
"""
import asyncio
import json
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from constants import POLL_INTERVAL_SECONDS
from logging_config import get_logger
from schemas.rooms import ParticipantView, RoomSnapshot, SelectionView

logger = get_logger(__name__)

Render = Callable[[RoomSnapshot], None]
SnapshotFetcher = Callable[[str], Awaitable[Optional[RoomSnapshot]]]


class SessionState(str, Enum):
    CONNECTING = "connecting"
    LIVE = "live"
    DEGRADED = "degraded"
    CLOSED = "closed"


class PushListener:
    """Callbacks a push transport reports to."""

    def on_connected(self) -> None: ...

    def on_disconnected(self) -> None: ...

    def on_rejected(self, reason: str) -> None: ...

    def on_message(self, message: dict) -> None: ...


def apply_event(snapshot: RoomSnapshot, message: dict) -> Optional[RoomSnapshot]:
    """
    Fold one push event into a complete snapshot.

    A ``participants`` event replaces the membership and keeps the selection;
    a ``selection`` event replaces the selection and keeps the membership.
    Anything else (``ping``, unknown types) returns ``None``.
    """
    event_type = message.get("type")
    if event_type == "participants":
        participants = [ParticipantView(name=p["name"]) for p in message.get("participants") or []]
        return RoomSnapshot(participants=participants, selection=snapshot.selection)
    if event_type == "selection":
        selected = message.get("selected")
        if selected is None:
            return None
        selection = SelectionView(
            selected_names=[p["name"] for p in selected],
            requested_count=int(message.get("count", len(selected))),
        )
        return RoomSnapshot(participants=list(snapshot.participants), selection=selection)
    return None


class RealtimeClientSession(PushListener):
    """
    Per-room client state machine: CONNECTING -> LIVE <-> DEGRADED, then CLOSED.

    While LIVE there is no poll task. Losing or being refused the push channel
    moves to DEGRADED and starts polling every ``poll_interval`` seconds; a
    successful push connect cancels the poll task again.
    """

    def __init__(self, room_id: str, push, fetch_snapshot: SnapshotFetcher, render: Render,
                 poll_interval: float = POLL_INTERVAL_SECONDS):
        self.room_id = room_id
        self.push = push
        self.fetch_snapshot = fetch_snapshot
        self.render = render
        self.poll_interval = poll_interval
        self.state = SessionState.CONNECTING
        self.snapshot = RoomSnapshot(participants=[])
        self._subscription = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start(self) -> None:
        """Open the push channel; must be called from a running event loop."""
        if self.state == SessionState.CLOSED:
            raise RuntimeError("Session already closed")
        logger.info(f"Connecting realtime session for room {self.room_id}")
        self._subscription = self.push.subscribe(self.room_id, self)

    def on_connected(self) -> None:
        if self.state == SessionState.CLOSED:
            return
        logger.info(f"Push channel connected for room {self.room_id}")
        self.state = SessionState.LIVE
        self._cancel_polling()

    def on_disconnected(self) -> None:
        if self.state == SessionState.CLOSED:
            return
        logger.info(f"Push channel disconnected for room {self.room_id}, falling back to polling")
        self._degrade()

    def on_rejected(self, reason: str) -> None:
        if self.state == SessionState.CLOSED:
            return
        logger.warning(f"Push channel rejected for room {self.room_id}: {reason}")
        self._degrade()

    def on_message(self, message: dict) -> None:
        if self.state == SessionState.CLOSED:
            return
        snapshot = apply_event(self.snapshot, message)
        if snapshot is None:
            logger.debug(f"Ignoring {message.get('type', 'unknown')} event for room {self.room_id}")
            return
        self.apply_snapshot(snapshot)

    def apply_snapshot(self, snapshot: RoomSnapshot) -> None:
        """Replace the whole render state; the only path to ``render``."""
        self.snapshot = snapshot
        self.render(snapshot)

    async def poll_once(self) -> bool:
        try:
            snapshot = await self.fetch_snapshot(self.room_id)
        except Exception as e:
            logger.warning(f"Polling update failed for room {self.room_id}: {e}")
            return False
        if snapshot is None or self.state == SessionState.CLOSED:
            return False
        self.apply_snapshot(snapshot)
        return True

    def close(self) -> None:
        """Release the push subscription and cancel polling before returning."""
        if self.state == SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        self._cancel_polling()
        logger.info(f"Realtime session for room {self.room_id} closed")

    def _degrade(self) -> None:
        self.state = SessionState.DEGRADED
        if not self.polling:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    def _cancel_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
            logger.debug(f"Polling stopped for room {self.room_id}")

    async def _poll_loop(self) -> None:
        logger.info(f"Starting polling every {self.poll_interval} seconds for room {self.room_id}")
        while True:
            await asyncio.sleep(self.poll_interval)
            await self.poll_once()


class PushSubscription:
    def __init__(self, task: asyncio.Task):
        self.task = task

    def close(self) -> None:
        self.task.cancel()


class WebSocketPushTransport:
    """
    Push transport over the room WebSocket.

    Reconnects ``reconnect_delay`` seconds after every disconnect or
    rejection until the subscription is closed.
    """

    def __init__(self, base_url: str, reconnect_delay: float = 5.0):
        base_url = base_url.rstrip('/')
        self.ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
        self.reconnect_delay = reconnect_delay

    def url_for(self, room_id: str) -> str:
        return f"{self.ws_base}/rooms/{room_id}/ws"

    def subscribe(self, room_id: str, listener: PushListener) -> PushSubscription:
        task = asyncio.get_running_loop().create_task(self._run(room_id, listener))
        return PushSubscription(task)

    async def _run(self, room_id: str, listener: PushListener) -> None:
        url = self.url_for(room_id)
        while True:
            try:
                async with websockets.connect(url) as ws:
                    listener.on_connected()
                    async for raw in ws:
                        self._deliver(url, raw, listener)
                listener.on_disconnected()
            except InvalidHandshake as e:
                listener.on_rejected(str(e))
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"WebSocket connection to {url} lost: {e}")
                listener.on_disconnected()
            except Exception as e:
                logger.warning(f"WebSocket connection to {url} failed: {e!r}")
                listener.on_disconnected()
            await asyncio.sleep(self.reconnect_delay)

    @staticmethod
    def _deliver(url: str, raw, listener: PushListener) -> None:
        """Hand one frame to the listener; a malformed frame is dropped, not fatal."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug(f"Ignoring non-JSON frame from {url}")
            return
        if not isinstance(message, dict):
            logger.warning(f"Ignoring non-object frame from {url}")
            return
        try:
            listener.on_message(message)
        except Exception as e:
            logger.warning(f"Could not apply frame from {url}: {e!r}")


class HttpSnapshotFetcher:
    """Fetches the poll endpoint; returns ``None`` for unknown rooms."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.transport = transport

    async def __call__(self, room_id: str) -> Optional[RoomSnapshot]:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            resp = await client.get(f"/rooms/{room_id}/updates", headers={"Accept": "application/json"})
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return RoomSnapshot.model_validate(resp.json())
