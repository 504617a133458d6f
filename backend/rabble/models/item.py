from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from .room import utcnow


class GuessItem(SQLModel, table=True):
    __tablename__ = "guess_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    room_id: int = Field(foreign_key="rooms.id", index=True)
    name: str
    order_index: int


class Association(SQLModel, table=True):
    __tablename__ = "associations"
    __table_args__ = (UniqueConstraint("user_id", "guess_item_id", name="uq_association_user_item"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    guess_item_id: int = Field(foreign_key="guess_items.id", index=True)
    value: str
    submitted_at: datetime = Field(default_factory=utcnow)


class Assignment(SQLModel, table=True):
    """Which item a player writes a clue for during the submitting phase."""

    __tablename__ = "assignments"

    room_id: int = Field(foreign_key="rooms.id", primary_key=True)
    user_id: int = Field(foreign_key="users.id", primary_key=True, index=True)
    guess_item_id: int = Field(foreign_key="guess_items.id")
    assigned_at: datetime = Field(default_factory=utcnow)
