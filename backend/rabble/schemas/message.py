from typing import Any, List

from pydantic import BaseModel, Field


class ClientMessage(BaseModel):
    type: str
    payload: dict[str, Any] | None = None


class StartGamePayload(BaseModel):
    items: List[Any] = Field(default_factory=list)


class SubmitAssociationPayload(BaseModel):
    value: str | int | float | None = None


class SubmitGuessPayload(BaseModel):
    guessed_item_id: int | None = None


class ServerMessage(BaseModel):
    type: str
    payload: Any = None
