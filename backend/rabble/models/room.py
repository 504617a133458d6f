from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel

from ..enums import RoomStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Room(SQLModel, table=True):
    __tablename__ = "rooms"

    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(index=True, unique=True)
    # Set right after the host user row exists.
    host_id: Optional[int] = Field(default=None)
    status: RoomStatus = Field(default=RoomStatus.LOBBY)
    created_at: datetime = Field(default_factory=utcnow)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    nickname: str
    room_id: int = Field(foreign_key="rooms.id", index=True)
    score: int = Field(default=0)
    is_host: bool = Field(default=False)
    joined_at: datetime = Field(default_factory=utcnow)
