import logging
from contextlib import asynccontextmanager
from random import Random
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable

from fastapi import WebSocket, status
from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from ..config import Settings
from ..enums import PLAYING_STATUSES, RoomStatus, RoundStatus
from ..events.manager import ClientSession, ConnectionManager
from ..exceptions import DuplicateEntryError, GameRuleError, StoreError
from ..game.engine import GameEngine
from ..models import Room, Round
from ..schemas.message import (
    ClientMessage,
    ServerMessage,
    StartGamePayload,
    SubmitAssociationPayload,
    SubmitGuessPayload,
)
from ..schemas.room import GuessItemPublic, UserPublic
from ..services.store import GameStore

logger = logging.getLogger(__name__)

INVALID_FORMAT = "Invalid message format"
UNKNOWN_TYPE = "Unknown message type"
CANCELLED_MESSAGE = "The host cancelled the game."

Handler = Callable[[GameEngine, ClientSession, dict], Awaitable[None]]


def message(type_: str, payload: Any = None) -> dict[str, Any]:
    return ServerMessage(type=type_, payload=payload).model_dump(mode="json", by_alias=True)


def normalize_items(raw_items: Iterable[Any], max_length: int) -> list[str]:
    """Trim, drop blanks, cap length, then de-duplicate keeping first occurrence."""
    seen: dict[str, None] = {}
    for raw in raw_items:
        item = ("" if raw is None else str(raw)).strip()
        if item:
            seen.setdefault(item[:max_length], None)
    return list(seen)


class ProtocolHandler:
    """Drives the room state machine from client socket messages.

    Unauthorised or out-of-phase actions are dropped without a reply so
    players cannot probe a room's internals.
    """

    def __init__(
        self,
        registry: ConnectionManager,
        session_factory: sessionmaker,
        settings: Settings,
        rng: Random | None = None,
    ) -> None:
        self.registry = registry
        self.session_factory = session_factory
        self.settings = settings
        self.rng = rng or Random()
        self.handlers: Dict[str, Handler] = {
            "start_game": self.handle_start_game,
            "submit_association": self.handle_submit_association,
            "submit_guess": self.handle_submit_guess,
            "reveal_votes": self.handle_reveal_votes,
            "reveal_answer": self.handle_reveal_answer,
            "next_round": self.handle_next_round,
            "skip_stage": self.handle_skip_stage,
            "cancel_game": self.handle_cancel_game,
        }

    @asynccontextmanager
    async def engine(self) -> AsyncIterator[GameEngine]:
        async with self.session_factory() as db_session:
            yield GameEngine(GameStore(db_session, self.settings), self.settings, self.rng)

    # Connection lifecycle

    async def serve(self, websocket: WebSocket, room_id: int, user_id: int) -> None:
        client = await self.connect(websocket, room_id, user_id)
        if client is None:
            return
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    await self._reply_error(client, INVALID_FORMAT)
                    continue
                await self.handle_message(client, raw)
        finally:
            self.disconnect(client)

    async def connect(self, websocket: WebSocket, room_id: int, user_id: int) -> ClientSession | None:
        client: ClientSession | None = None
        try:
            async with self.engine() as engine:
                room = await engine.store.get_room(room_id)
                user = await engine.store.get_user(user_id)
                if room is None or user is None or user.room_id != room_id:
                    await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid room or user")
                    return None

                await websocket.accept()
                client = ClientSession(websocket=websocket, room_id=room_id, user_id=user_id)
                self.registry.register(client)
                logger.info("User %s connected to room %s", user_id, room_id)

                state = await engine.initialize_room_state(room_id)
                await self.registry.send(client, message("room_state", state))

                if state.room.status == RoomStatus.SUBMITTING:
                    assignment = await self._assignment_payload(engine, room_id, user_id)
                    if assignment:
                        await self.registry.send(client, message("assignment", assignment))

                current = state.current_round
                if state.room.status in PLAYING_STATUSES and current is not None:
                    payload = await self._round_payload(
                        engine,
                        room_id,
                        current.round_number,
                        current.guess_item_id,
                        state.room.status,
                    )
                    await self.registry.send(client, message("round_started", payload))

                await self._broadcast_state(engine, room_id)
                return client
        except StoreError:
            logger.exception("Storage failure while connecting user %s to room %s", user_id, room_id)
            if client is not None:
                self.registry.unregister(client)
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
            return None

    def disconnect(self, client: ClientSession) -> None:
        self.registry.unregister(client)
        logger.info("User %s disconnected from room %s", client.user_id, client.room_id)

    # Dispatch

    async def handle_message(self, client: ClientSession, raw: str) -> None:
        try:
            parsed = ClientMessage.model_validate_json(raw)
        except ValidationError:
            await self._reply_error(client, INVALID_FORMAT)
            return

        handler = self.handlers.get(parsed.type)
        if handler is None:
            await self._reply_error(client, UNKNOWN_TYPE)
            return

        try:
            async with self.engine() as engine:
                await handler(engine, client, parsed.payload or {})
        except ValidationError:
            await self._reply_error(client, INVALID_FORMAT)
        except GameRuleError as exc:
            await self._reply_error(client, str(exc))
        except StoreError:
            logger.exception(
                "Storage failure handling %s from user %s in room %s",
                parsed.type,
                client.user_id,
                client.room_id,
            )

    async def _reply_error(self, client: ClientSession, text: str) -> None:
        await self.registry.send(client, message("error", {"message": text}))

    async def _host_room(self, engine: GameEngine, client: ClientSession) -> Room | None:
        user = await engine.store.get_user(client.user_id)
        if user is None or not user.is_host or user.room_id != client.room_id:
            logger.debug("Ignoring host action from user %s in room %s", client.user_id, client.room_id)
            return None
        return await engine.store.get_room(client.room_id)

    # Lobby

    async def handle_start_game(self, engine: GameEngine, client: ClientSession, payload: dict) -> None:
        room = await self._host_room(engine, client)
        if room is None or room.status != RoomStatus.LOBBY:
            return

        data = StartGamePayload.model_validate(payload)
        items = normalize_items(data.items, self.settings.max_item_length)
        players = await engine.list_players(room.id)

        if len(players) < self.settings.min_players:
            raise GameRuleError(f"Need at least {self.settings.min_players} players to start")
        if len(items) < self.settings.min_items:
            raise GameRuleError(f"Please enter at least {self.settings.min_items} items")
        if len(items) > len(players):
            raise GameRuleError("Number of items cannot exceed number of players")

        async with engine.store.atomic():
            if not await engine.store.transition_room_status(room.id, RoomStatus.LOBBY, RoomStatus.SUBMITTING):
                return
            await engine.store.create_guess_items(room.id, items)
            assignments = await engine.start_submission_phase(room.id)
        logger.info("Room %s started with %s players and %s items", room.id, len(players), len(items))

        state = await engine.get_room_state(room.id)
        await self.registry.broadcast(room.id, message("game_started", {"state": state}))
        await self._broadcast_state(engine, room.id)

        names = {item.id: item.name for item in await engine.store.list_guess_items(room.id)}
        for user_id, item_id in assignments.items():
            await self.registry.unicast(
                room.id,
                user_id,
                message("assignment", {"guess_item_id": item_id, "guess_item_name": names.get(item_id)}),
            )

    async def handle_cancel_game(self, engine: GameEngine, client: ClientSession, payload: dict) -> None:
        room = await self._host_room(engine, client)
        if room is None or room.status != RoomStatus.LOBBY:
            return
        if not await engine.store.transition_room_status(room.id, RoomStatus.LOBBY, RoomStatus.FINISHED):
            return

        logger.info("Room %s cancelled by host", room.id)
        await self.registry.broadcast(room.id, message("game_cancelled", {"message": CANCELLED_MESSAGE}))
        await self._broadcast_state(engine, room.id)

    # Submitting

    async def handle_submit_association(self, engine: GameEngine, client: ClientSession, payload: dict) -> None:
        room_id, user_id = client.room_id, client.user_id
        room = await engine.store.get_room(room_id)
        if room is None or room.status != RoomStatus.SUBMITTING:
            return
        assignment = await engine.store.get_assignment(room_id, user_id)
        if assignment is None:
            return
        if await engine.store.get_association(user_id, assignment.guess_item_id):
            return

        data = SubmitAssociationPayload.model_validate(payload)
        value = ("" if data.value is None else str(data.value)).strip()
        if not value:
            return

        try:
            await engine.store.create_association(
                user_id,
                assignment.guess_item_id,
                value[: self.settings.max_association_length],
            )
        except DuplicateEntryError:
            logger.debug("Duplicate association from user %s ignored", user_id)
            return

        all_submitted = await engine.check_all_submitted(room_id)
        await self.registry.broadcast(
            room_id,
            message("association_submitted", {"user_id": user_id, "all_submitted": all_submitted}),
        )
        await self._broadcast_state(engine, room_id)

        if all_submitted:
            await self._begin_guessing(engine, room_id)

    async def _begin_guessing(self, engine: GameEngine, room_id: int) -> None:
        async with engine.store.atomic():
            started = await engine.start_guessing_phase(room_id)
        if started:
            await self._announce_round(engine, room_id)
            return
        room = await engine.store.get_room(room_id)
        if room is not None and room.status == RoomStatus.FINISHED:
            await self._announce_finish(engine, room_id)

    # Guessing

    async def handle_submit_guess(self, engine: GameEngine, client: ClientSession, payload: dict) -> None:
        room_id, user_id = client.room_id, client.user_id
        room = await engine.store.get_room(room_id)
        if room is None or room.status not in PLAYING_STATUSES:
            return
        round_ = await engine.store.get_current_round(room_id)
        if round_ is None or round_.status != RoundStatus.ACTIVE:
            return

        eligible = await engine.get_eligible_guessers(room_id, round_.guess_item_id)
        if user_id not in {user.id for user in eligible}:
            logger.debug("User %s is not eligible for round %s", user_id, round_.round_number)
            return

        data = SubmitGuessPayload.model_validate(payload)
        options = await engine.ensure_round_options(room_id, round_.round_number, round_.guess_item_id)
        if data.guessed_item_id not in {option.id for option in options}:
            return
        if await engine.store.get_guess(user_id, round_.round_number):
            return

        try:
            await engine.store.create_guess(
                room_id,
                user_id,
                round_.guess_item_id,
                data.guessed_item_id,
                round_.round_number,
            )
        except DuplicateEntryError:
            logger.debug("Duplicate guess from user %s ignored", user_id)
            return

        guesses = await engine.store.list_guesses_for_round(room_id, round_.round_number)
        await self.registry.broadcast(
            room_id,
            message(
                "guess_submitted",
                {
                    "user_id": user_id,
                    "all_guessed": len(guesses) >= len(eligible),
                    "guess_count": len(guesses),
                    "total_eligible": len(eligible),
                },
            ),
        )
        await self._broadcast_state(engine, room_id)

    async def _playing_round(self, engine: GameEngine, room: Room | None) -> Round | None:
        if room is None or room.status not in PLAYING_STATUSES:
            return None
        return await engine.store.get_current_round(room.id)

    async def handle_reveal_votes(self, engine: GameEngine, client: ClientSession, payload: dict) -> None:
        room = await self._host_room(engine, client)
        round_ = await self._playing_round(engine, room)
        if round_ is not None and round_.status == RoundStatus.ACTIVE:
            await self._open_voting(engine, round_)

    async def handle_reveal_answer(self, engine: GameEngine, client: ClientSession, payload: dict) -> None:
        room = await self._host_room(engine, client)
        round_ = await self._playing_round(engine, room)
        if round_ is not None and round_.status == RoundStatus.VOTING:
            await self._reveal_answer(engine, round_)

    async def handle_next_round(self, engine: GameEngine, client: ClientSession, payload: dict) -> None:
        room = await self._host_room(engine, client)
        round_ = await self._playing_round(engine, room)
        if round_ is not None and round_.status == RoundStatus.REVEALED:
            await self._finish_round(engine, round_)

    async def handle_skip_stage(self, engine: GameEngine, client: ClientSession, payload: dict) -> None:
        room = await self._host_room(engine, client)
        if room is None:
            return

        if room.status == RoomStatus.SUBMITTING:
            logger.info("Host skipped the submitting phase in room %s", room.id)
            await self._begin_guessing(engine, room.id)
            return

        round_ = await self._playing_round(engine, room)
        if round_ is None:
            return
        if round_.status == RoundStatus.ACTIVE:
            await self._open_voting(engine, round_)
        elif round_.status == RoundStatus.VOTING:
            await self._reveal_answer(engine, round_)
        elif round_.status == RoundStatus.REVEALED:
            await self._finish_round(engine, round_)

    async def _open_voting(self, engine: GameEngine, round_: Round) -> None:
        if not await engine.store.transition_round_status(round_.id, RoundStatus.ACTIVE, RoundStatus.VOTING):
            return
        tallies = await engine.calculate_vote_tallies(round_.room_id, round_.round_number)
        await self.registry.broadcast(round_.room_id, message("votes_revealed", {"tallies": tallies}))
        await self._broadcast_state(engine, round_.room_id)

    async def _reveal_answer(self, engine: GameEngine, round_: Round) -> None:
        # Only the caller that wins voting -> revealed awards points.
        async with engine.store.atomic():
            if not await engine.store.transition_round_status(round_.id, RoundStatus.VOTING, RoundStatus.REVEALED):
                return
            await engine.award_points(round_.room_id, round_.round_number, round_.guess_item_id)

        correct_item = await engine.store.get_guess_item(round_.guess_item_id)
        users = await engine.store.list_users(round_.room_id)
        await self.registry.broadcast(
            round_.room_id,
            message(
                "answer_revealed",
                {
                    "correct_item": GuessItemPublic.model_validate(correct_item) if correct_item else None,
                    "users": [UserPublic.model_validate(user) for user in users],
                },
            ),
        )
        await self._broadcast_state(engine, round_.room_id)

    async def _finish_round(self, engine: GameEngine, round_: Round) -> None:
        async with engine.store.atomic():
            if not await engine.store.transition_round_status(round_.id, RoundStatus.REVEALED, RoundStatus.COMPLETED):
                return
            advanced = await engine.advance_to_next_round(round_.room_id)
        if advanced:
            await self._announce_round(engine, round_.room_id)
        else:
            await self._announce_finish(engine, round_.room_id)

    # Outbound

    async def _announce_round(self, engine: GameEngine, room_id: int) -> None:
        round_ = await engine.store.get_current_round(room_id)
        room = await engine.store.get_room(room_id)
        if round_ is None or room is None:
            return
        payload = await self._round_payload(
            engine,
            room_id,
            round_.round_number,
            round_.guess_item_id,
            room.status,
        )
        await self.registry.broadcast(room_id, message("round_started", payload))
        await self._broadcast_state(engine, room_id)

    async def _announce_finish(self, engine: GameEngine, room_id: int) -> None:
        leaderboard = await engine.get_leaderboard(room_id)
        logger.info("Room %s finished", room_id)
        await self.registry.broadcast(
            room_id,
            message("game_finished", {"final_scores": [UserPublic.model_validate(u) for u in leaderboard]}),
        )
        await self._broadcast_state(engine, room_id)

    async def _round_payload(
        self,
        engine: GameEngine,
        room_id: int,
        round_number: int,
        guess_item_id: int,
        room_status: RoomStatus,
    ) -> dict[str, Any]:
        associations = await engine.store.list_associations_for_item(guess_item_id)
        options = await engine.ensure_round_options(room_id, round_number, guess_item_id)
        eligible = await engine.get_eligible_guessers(room_id, guess_item_id)
        return {
            "round_number": round_number,
            "associations": [{"value": association.value} for association in associations],
            "options": [GuessItemPublic.model_validate(option) for option in options],
            "eligible_user_ids": [user.id for user in eligible],
            "phase": "lightning" if room_status == RoomStatus.LIGHTNING else "guessing",
        }

    async def _assignment_payload(self, engine: GameEngine, room_id: int, user_id: int) -> dict | None:
        assignment = await engine.store.get_assignment(room_id, user_id)
        if assignment is None:
            return None
        item = await engine.store.get_guess_item(assignment.guess_item_id)
        return {
            "guess_item_id": assignment.guess_item_id,
            "guess_item_name": item.name if item else None,
        }

    async def _broadcast_state(self, engine: GameEngine, room_id: int) -> None:
        state = await engine.get_room_state(room_id)
        if state is None:
            return
        await self.registry.broadcast(room_id, message("room_state", state))
