class RabbleError(Exception):
    """Base class for errors raised by the game core."""


class StoreError(RabbleError):
    """The backing store failed to complete an operation."""


class DuplicateEntryError(StoreError):
    """A write was rejected by a uniqueness constraint."""


class RoomNotFoundError(RabbleError):
    def __init__(self, room_id: int) -> None:
        super().__init__(f"Room {room_id} not found")
        self.room_id = room_id


class GameRuleError(RabbleError):
    """A request broke a game rule; the message is safe to show to players."""
