import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ..config import Settings
from ..dependencies import get_app_settings, get_engine, get_store
from ..enums import RoomStatus
from ..exceptions import StoreError
from ..game.engine import GameEngine
from ..schemas.room import (
    CreateRoomRequest,
    JoinRoomRequest,
    RoomJoinResponse,
    RoomPublic,
    RoomState,
    UserPublic,
)
from ..services.store import GameStore

router = APIRouter(prefix="/room", tags=["rooms"])
logger = logging.getLogger(__name__)


def _clean_nickname(raw: str, settings: Settings) -> str:
    return (raw or "").strip()[: settings.max_nickname_length].strip()


@router.post("/create", response_model=RoomJoinResponse)
async def create_room(
    payload: CreateRoomRequest,
    store: GameStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    nickname = _clean_nickname(payload.nickname, settings)
    if not nickname:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nickname is required")

    try:
        room, host = await store.create_room(nickname)
    except StoreError as exc:
        logger.exception("Error creating room")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create room"
        ) from exc

    logger.info("Room %s (%s) created by %s", room.id, room.code, host.id)
    return RoomJoinResponse(room=RoomPublic.model_validate(room), user=UserPublic.model_validate(host))


@router.post("/join", response_model=RoomJoinResponse)
async def join_room(
    payload: JoinRoomRequest,
    store: GameStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    code = (payload.code or "").strip().upper()
    nickname = _clean_nickname(payload.nickname, settings)
    if not code or not nickname:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Code and nickname are required"
        )

    try:
        room = await store.get_room_by_code(code)
        if not room:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
        if room.status != RoomStatus.LOBBY:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Room has already started")

        users = await store.list_users(room.id)
        if len(users) >= settings.max_room_users:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Room is full")

        user = await store.create_user(nickname, room.id)
    except StoreError as exc:
        logger.exception("Error joining room %s", code)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to join room"
        ) from exc

    return RoomJoinResponse(room=RoomPublic.model_validate(room), user=UserPublic.model_validate(user))


@router.get("/{code}", response_model=RoomState, response_model_by_alias=True)
async def get_room_state(code: str, engine: GameEngine = Depends(get_engine)):
    try:
        room = await engine.store.get_room_by_code(code.strip().upper())
        if not room:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
        state = await engine.get_room_state(room.id)
    except StoreError as exc:
        logger.exception("Error getting room %s", code)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to get room"
        ) from exc

    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    return state
