from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from typing import Optional

from exceptions import BackendUnavailable, InvalidSelectionCount, RoomNotFound, SelectionForbidden
from logging_config import get_logger
from room_service import RoomService
from schemas.rooms import (
    CallerResponse,
    CreateRoomRequest,
    CreateRoomResponse,
    JoinRoomRequest,
    JoinRoomResponse,
    RoomSnapshot,
    SelectionRequest,
    SelectionResponse,
)

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def get_room_service(request: Request) -> RoomService:
    return request.app.state.room_service


def owner_token(
    x_owner_token: Optional[str] = Header(None),
    owner_token: Optional[str] = Query(None),
) -> Optional[str]:
    return x_owner_token or owner_token


def participant_token(
    x_participant_token: Optional[str] = Header(None),
    participant_token: Optional[str] = Query(None),
) -> Optional[str]:
    return x_participant_token or participant_token


def client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def build_ws_url(request: Request, room_id: str) -> str:
    base_url = str(request.base_url).rstrip('/')
    # Replace http/https with ws/wss
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/rooms/{room_id}/ws"


def backend_unavailable(action: str, room_id: Optional[str], e: BackendUnavailable) -> HTTPException:
    logger.error(f"{action} failed for room {room_id}: room store unavailable: {e}", exc_info=True)
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Room store unavailable")


@rooms_router.post("/", response_model=CreateRoomResponse, status_code=status.HTTP_201_CREATED)
async def create_room(room: CreateRoomRequest, request: Request, service: RoomService = Depends(get_room_service)):
    # Response 201: { "room_id": "7hd92f", "owner_token": "...", "ws_url": "wss://api.example.com/rooms/7hd92f/ws" }
    logger.info(f"Room creation request from {client_host(request)}, owner_name: {room.owner_name}")
    try:
        created = await service.create_room(room.owner_name)
    except BackendUnavailable as e:
        raise backend_unavailable("Create room", None, e)

    logger.info(f"Room {created.room_id} created successfully for {room.owner_name}")
    return CreateRoomResponse(
        room_id=created.room_id,
        owner_token=created.owner_token,
        ws_url=build_ws_url(request, created.room_id),
    )


@rooms_router.post("/{room_id}/join", response_model=JoinRoomResponse)
async def join_room(
    room_id: str,
    join_room_request: JoinRoomRequest,
    request: Request,
    token: Optional[str] = Depends(participant_token),
    service: RoomService = Depends(get_room_service),
):
    # A caller that already holds a participant token for this room keeps it
    logger.info(f"Join room request for {room_id} from {client_host(request)}, name: {join_room_request.name}")
    try:
        joined = await service.join_room(room_id, join_room_request.name, participant_token=token)
    except BackendUnavailable as e:
        raise backend_unavailable("Join room", room_id, e)

    if joined is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")

    action = "rejoined" if joined.rejoined else "joined"
    logger.info(f"{joined.name} {action} room {room_id}")
    return JoinRoomResponse(participant_token=joined.participant_token, ws_url=build_ws_url(request, room_id))


@rooms_router.post("/{room_id}/select", response_model=SelectionResponse)
async def run_selection(
    room_id: str,
    selection_request: SelectionRequest,
    request: Request,
    token: Optional[str] = Depends(owner_token),
    service: RoomService = Depends(get_room_service),
):
    logger.info(f"Selection request for {room_id} from {client_host(request)}, count: {selection_request.count}")
    try:
        result = await service.run_selection(room_id, selection_request.count, token)
    except RoomNotFound:
        logger.warning(f"Selection failed: Room {room_id} not found")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    except SelectionForbidden:
        logger.warning(f"Selection failed: {client_host(request)} is not the owner of room {room_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You are not the owner of the room")
    except InvalidSelectionCount as e:
        logger.warning(f"Selection failed for room {room_id}: {e}")
        raise HTTPException(
            status_code=422,
            detail={"reason": e.reason, "message": str(e), "member_count": e.member_count},
        )
    except BackendUnavailable as e:
        raise backend_unavailable("Selection", room_id, e)

    return SelectionResponse(selected_names=result.selected_names, requested_count=result.requested_count)


async def _snapshot(room_id: str, service: RoomService) -> RoomSnapshot:
    try:
        snapshot = await service.get_snapshot(room_id)
    except BackendUnavailable as e:
        raise backend_unavailable("Snapshot", room_id, e)
    if snapshot is None:
        logger.warning(f"Snapshot failed: Room {room_id} not found")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    return snapshot


@rooms_router.get("/{room_id}", response_model=RoomSnapshot)
async def get_room_snapshot(room_id: str, service: RoomService = Depends(get_room_service)):
    """
    Current room state.

    Returns:
    - participants: members in join order, owner last
    - selection: latest draw (selected_names, requested_count, selected_at) or null
    """
    logger.debug(f"Room snapshot request for {room_id}")
    return await _snapshot(room_id, service)


@rooms_router.get("/{room_id}/updates", response_model=RoomSnapshot)
async def poll_updates(room_id: str, service: RoomService = Depends(get_room_service)):
    """Polling fallback for clients without a live WebSocket; same body as ``GET /rooms/{room_id}``."""
    logger.debug(f"Poll request for {room_id}")
    return await _snapshot(room_id, service)


@rooms_router.get("/{room_id}/me", response_model=CallerResponse)
async def whoami(
    room_id: str,
    owner: Optional[str] = Depends(owner_token),
    participant: Optional[str] = Depends(participant_token),
    service: RoomService = Depends(get_room_service),
):
    try:
        found, caller = await service.whoami(room_id, owner, participant)
    except BackendUnavailable as e:
        raise backend_unavailable("Caller lookup", room_id, e)
    if not found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    if caller is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a member of this room")
    return CallerResponse(role=caller.role.value, name=caller.name)
