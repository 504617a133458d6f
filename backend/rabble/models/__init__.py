from .room import Room, User
from .item import GuessItem, Association, Assignment
from .round import Round, Guess, RoundOption, RoundQueueEntry

__all__ = [
    "Room",
    "User",
    "GuessItem",
    "Association",
    "Assignment",
    "Round",
    "Guess",
    "RoundOption",
    "RoundQueueEntry",
]
