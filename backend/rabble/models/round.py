from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from ..enums import QueuePhase, RoundStatus
from .room import utcnow


class Round(SQLModel, table=True):
    __tablename__ = "rounds"
    __table_args__ = (UniqueConstraint("room_id", "round_number", name="uq_round_room_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    room_id: int = Field(foreign_key="rooms.id", index=True)
    guess_item_id: int = Field(foreign_key="guess_items.id")
    round_number: int
    status: RoundStatus = Field(default=RoundStatus.ACTIVE)
    revealed_at: datetime | None = Field(default=None)


class Guess(SQLModel, table=True):
    __tablename__ = "guesses"
    __table_args__ = (UniqueConstraint("user_id", "round_number", name="uq_guess_user_round"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    room_id: int = Field(foreign_key="rooms.id", index=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    # The item the round was about.
    guess_item_id: int = Field(foreign_key="guess_items.id")
    # The option the player picked.
    guessed_item_id: int = Field(foreign_key="guess_items.id")
    round_number: int
    submitted_at: datetime = Field(default_factory=utcnow)


class RoundOption(SQLModel, table=True):
    __tablename__ = "round_options"

    room_id: int = Field(foreign_key="rooms.id", primary_key=True)
    round_number: int = Field(primary_key=True)
    option_order: int = Field(primary_key=True)
    guess_item_id: int = Field(foreign_key="guess_items.id")


class RoundQueueEntry(SQLModel, table=True):
    __tablename__ = "round_queue"

    room_id: int = Field(foreign_key="rooms.id", primary_key=True)
    phase: QueuePhase = Field(primary_key=True)
    position: int = Field(primary_key=True)
    guess_item_id: int = Field(foreign_key="guess_items.id")
    played: bool = Field(default=False, index=True)
