from enum import Enum


class RoomStatus(str, Enum):
    LOBBY = "lobby"
    SUBMITTING = "submitting"
    GUESSING = "guessing"
    LIGHTNING = "lightning"
    FINISHED = "finished"


class RoundStatus(str, Enum):
    ACTIVE = "active"
    VOTING = "voting"
    REVEALED = "revealed"
    COMPLETED = "completed"


class QueuePhase(str, Enum):
    STANDARD = "standard"
    LIGHTNING = "lightning"


PLAYING_STATUSES = (RoomStatus.GUESSING, RoomStatus.LIGHTNING)
