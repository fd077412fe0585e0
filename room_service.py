"""
Room commands: create, join, select, snapshot.

Authorization gates each command, the store applies it, and the broadcaster
fans the change out to every client subscribed to the room topic.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from authorization import is_owner, resolve_caller
from backend import RoomStore
from broadcaster import UpdateBroadcaster
from exceptions import InvalidSelectionCount, RoomNotFound, SelectionForbidden
from logging_config import get_logger
from models import AuthorizedCaller, Room, SelectionResult
from schemas.rooms import ParticipantView, RoomSnapshot, SelectionView

logger = get_logger(__name__)


@dataclass(frozen=True)
class CreatedRoom:
    room_id: str
    owner_token: str


@dataclass(frozen=True)
class JoinedRoom:
    room_id: str
    participant_token: str
    name: str
    rejoined: bool = False


def build_snapshot(room: Room) -> RoomSnapshot:
    selection = None
    if room.last_selection:
        selection = SelectionView(
            selected_names=list(room.last_selection.selected_names),
            requested_count=room.last_selection.requested_count,
            selected_at=room.last_selection.selected_at.isoformat(),
        )
    return RoomSnapshot(
        participants=[ParticipantView(name=p.name) for p in room.members()],
        selection=selection,
    )


class RoomService:
    def __init__(self, store: RoomStore, broadcaster: UpdateBroadcaster):
        self.store = store
        self.broadcaster = broadcaster

    async def create_room(self, owner_name: str) -> CreatedRoom:
        room, owner_token = await run_in_threadpool(self.store.create_room, owner_name)
        return CreatedRoom(room_id=room.id, owner_token=owner_token)

    async def join_room(self, room_id: str, name: str, participant_token: Optional[str] = None) -> Optional[JoinedRoom]:
        """Add a participant; ``None`` when the room does not exist."""
        if participant_token:
            room = await run_in_threadpool(self.store.find_room, room_id)
            caller = resolve_caller(room, participant_token=participant_token)
            if caller and caller.is_participant:
                logger.info(f"{caller.name} already joined room {room_id}, keeping existing membership")
                return JoinedRoom(room_id=room_id, participant_token=caller.token, name=caller.name, rejoined=True)

        participant = await run_in_threadpool(self.store.add_participant, room_id, name)
        if participant is None:
            logger.warning(f"Join room failed: Room {room_id} not found")
            return None

        await self.broadcaster.participants_changed(room_id)
        return JoinedRoom(room_id=room_id, participant_token=participant.token, name=participant.name)

    async def run_selection(self, room_id: str, requested_count: int, owner_token: Optional[str]) -> SelectionResult:
        room = await run_in_threadpool(self.store.find_room, room_id)
        if room is None:
            raise RoomNotFound(room_id)
        if not is_owner(room, owner_token):
            raise SelectionForbidden(room_id)

        member_count = len(room.members())
        if requested_count <= 0:
            raise InvalidSelectionCount(InvalidSelectionCount.COUNT_NOT_POSITIVE, requested_count, member_count)
        if requested_count > member_count:
            raise InvalidSelectionCount(InvalidSelectionCount.COUNT_EXCEEDS_MEMBERS, requested_count, member_count)

        drawn = await run_in_threadpool(self.store.draw, room_id, requested_count)
        # The room can expire between the checks and the draw
        if drawn is None:
            raise RoomNotFound(room_id)

        _, result = drawn
        logger.info(f"Selection in room {room_id}: {result.selected_count} of {member_count} members")

        await self.broadcaster.selection_made(room_id, result.selected_names, requested_count)
        return result

    async def get_snapshot(self, room_id: str) -> Optional[RoomSnapshot]:
        room = await run_in_threadpool(self.store.find_room, room_id)
        if room is None:
            return None
        return build_snapshot(room)

    async def whoami(self, room_id: str, owner_token: Optional[str], participant_token: Optional[str]):
        """Return ``(room_found, caller)`` for the presented tokens."""
        room = await run_in_threadpool(self.store.find_room, room_id)
        if room is None:
            return False, None
        caller: Optional[AuthorizedCaller] = resolve_caller(room, owner_token, participant_token)
        return True, caller

    async def expire_rooms(self) -> int:
        return await run_in_threadpool(self.store.expire_rooms)
