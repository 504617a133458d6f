from datetime import datetime
from typing import List

from pydantic import BaseModel, Field

from ..enums import RoomStatus, RoundStatus


class RoomPublic(BaseModel):
    id: int
    code: str
    host_id: int | None
    status: RoomStatus
    created_at: datetime

    class Config:
        from_attributes = True


class UserPublic(BaseModel):
    id: int
    nickname: str
    room_id: int
    score: int
    is_host: bool
    joined_at: datetime

    class Config:
        from_attributes = True


class GuessItemPublic(BaseModel):
    id: int
    room_id: int
    name: str
    order_index: int

    class Config:
        from_attributes = True


class AssociationPublic(BaseModel):
    id: int
    user_id: int
    guess_item_id: int
    value: str
    submitted_at: datetime

    class Config:
        from_attributes = True


class GuessPublic(BaseModel):
    id: int
    user_id: int
    guess_item_id: int
    guessed_item_id: int
    round_number: int
    submitted_at: datetime

    class Config:
        from_attributes = True


class RoundPublic(BaseModel):
    id: int
    room_id: int
    guess_item_id: int
    round_number: int
    status: RoundStatus
    revealed_at: datetime | None

    class Config:
        from_attributes = True


class RoomState(BaseModel):
    room: RoomPublic
    users: List[UserPublic]
    guess_items: List[GuessItemPublic] = Field(alias="guessItems")
    current_round: RoundPublic | None = Field(alias="currentRound")
    associations: List[AssociationPublic]
    guesses: List[GuessPublic]

    class Config:
        from_attributes = True
        populate_by_name = True


class CreateRoomRequest(BaseModel):
    nickname: str = ""


class JoinRoomRequest(BaseModel):
    code: str = ""
    nickname: str = ""


class RoomJoinResponse(BaseModel):
    room: RoomPublic
    user: UserPublic
