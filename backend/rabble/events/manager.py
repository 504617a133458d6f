import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Set

from fastapi import WebSocket, status

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ClientSession:
    """One live socket. A user with several tabs open has several sessions."""

    websocket: WebSocket
    room_id: int
    user_id: int

    async def send(self, payload: dict[str, Any]) -> None:
        await self.websocket.send_json(payload)


class ConnectionManager:
    def __init__(self) -> None:
        self.room_connections: Dict[int, Set[ClientSession]] = defaultdict(set)

    def register(self, session: ClientSession) -> None:
        self.room_connections[session.room_id].add(session)

    def unregister(self, session: ClientSession) -> None:
        if session.room_id in self.room_connections:
            self.room_connections[session.room_id].discard(session)
            if not self.room_connections[session.room_id]:
                del self.room_connections[session.room_id]

    async def broadcast(self, room_id: int, payload: dict[str, Any]) -> None:
        connections = self.room_connections.get(room_id, set()).copy()
        for connection in connections:
            await self.send(connection, payload)

    async def unicast(self, room_id: int, user_id: int, payload: dict[str, Any]) -> None:
        connections = self.room_connections.get(room_id, set()).copy()
        for connection in connections:
            if connection.user_id == user_id:
                await self.send(connection, payload)

    async def send(self, connection: ClientSession, payload: dict[str, Any]) -> None:
        try:
            await connection.send(payload)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Failed to send %s to user %s in room %s",
                payload.get("type"),
                connection.user_id,
                connection.room_id,
            )

    def connection_count(self, room_id: int) -> int:
        return len(self.room_connections.get(room_id, ()))

    @property
    def online_count(self) -> int:
        return sum(len(conns) for conns in self.room_connections.values())

    async def close_all(self) -> None:
        sessions = [session for conns in self.room_connections.values() for session in conns]
        self.room_connections.clear()
        for session in sessions:
            try:
                await session.websocket.close(code=status.WS_1001_GOING_AWAY)
            except Exception:  # noqa: BLE001
                logger.debug("Socket for user %s already closed", session.user_id)
