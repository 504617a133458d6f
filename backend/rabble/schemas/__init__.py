from .room import (
    RoomPublic,
    UserPublic,
    GuessItemPublic,
    AssociationPublic,
    GuessPublic,
    RoundPublic,
    RoomState,
    CreateRoomRequest,
    JoinRoomRequest,
    RoomJoinResponse,
)
from .message import (
    ClientMessage,
    ServerMessage,
    StartGamePayload,
    SubmitAssociationPayload,
    SubmitGuessPayload,
)

__all__ = [
    "RoomPublic",
    "UserPublic",
    "GuessItemPublic",
    "AssociationPublic",
    "GuessPublic",
    "RoundPublic",
    "RoomState",
    "CreateRoomRequest",
    "JoinRoomRequest",
    "RoomJoinResponse",
    "ClientMessage",
    "ServerMessage",
    "StartGamePayload",
    "SubmitAssociationPayload",
    "SubmitGuessPayload",
]
