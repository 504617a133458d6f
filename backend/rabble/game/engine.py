import logging
from random import Random
from typing import Optional, Sequence

from ..config import Settings, get_settings
from ..enums import PLAYING_STATUSES, QueuePhase, RoomStatus, RoundStatus
from ..exceptions import DuplicateEntryError, GameRuleError, RoomNotFoundError
from ..models import GuessItem, User
from ..schemas.room import (
    AssociationPublic,
    GuessItemPublic,
    GuessPublic,
    RoomPublic,
    RoomState,
    RoundPublic,
    UserPublic,
)
from ..services.store import GameStore
from .planning import distribute_players, pick_options, plan_rounds
from .scoring import VoteTally, compute_awards, tally_votes

logger = logging.getLogger(__name__)

PHASE_ROOM_STATUS = {
    QueuePhase.STANDARD: RoomStatus.GUESSING,
    QueuePhase.LIGHTNING: RoomStatus.LIGHTNING,
}


class GameEngine:
    """Game rules over a :class:`GameStore`.

    The engine never talks to clients. Every call reads what it needs from the
    store, decides, and writes the outcome back. Randomness comes from ``rng``
    so a seeded ``Random`` makes shuffles reproducible.
    """

    def __init__(
        self,
        store: GameStore,
        settings: Settings | None = None,
        rng: Random | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.rng = rng or Random()

    # Snapshots

    async def initialize_room_state(self, room_id: int) -> RoomState:
        room = await self.store.get_room(room_id)
        if room is None:
            raise RoomNotFoundError(room_id)

        users = await self.store.list_users(room_id)
        items = await self.store.list_guess_items(room_id)
        current_round = await self.store.get_current_round(room_id)
        associations = await self.store.list_associations(room_id)
        guesses = await self.store.list_guesses(room_id)

        return RoomState(
            room=RoomPublic.model_validate(room),
            users=[UserPublic.model_validate(user) for user in users],
            guess_items=[GuessItemPublic.model_validate(item) for item in items],
            current_round=RoundPublic.model_validate(current_round) if current_round else None,
            associations=[AssociationPublic.model_validate(a) for a in associations],
            guesses=[GuessPublic.model_validate(guess) for guess in guesses],
        )

    async def get_room_state(self, room_id: int) -> Optional[RoomState]:
        try:
            return await self.initialize_room_state(room_id)
        except RoomNotFoundError:
            return None

    async def list_players(self, room_id: int) -> list[User]:
        users = await self.store.list_users(room_id)
        return [user for user in users if not user.is_host]

    async def get_leaderboard(self, room_id: int) -> list[User]:
        players = await self.list_players(room_id)
        return sorted(players, key=lambda user: user.score, reverse=True)

    # Submitting phase

    async def assign_guess_items(self, room_id: int) -> dict[int, int]:
        players = await self.list_players(room_id)
        items = await self.store.list_guess_items(room_id)
        if not items:
            raise GameRuleError("No guess items to assign")
        return distribute_players(
            [player.id for player in players],
            [item.id for item in items],
            self.rng,
        )

    async def start_submission_phase(self, room_id: int) -> dict[int, int]:
        assignments = await self.assign_guess_items(room_id)
        await self.store.update_room_status(room_id, RoomStatus.SUBMITTING)
        await self.store.set_assignments(room_id, assignments)
        logger.info("Room %s entered submitting with %s assignments", room_id, len(assignments))
        return assignments

    async def check_all_submitted(self, room_id: int) -> bool:
        assignments = await self.store.list_assignments(room_id)
        associations = await self.store.list_associations(room_id)
        submitted = {association.user_id for association in associations}
        return all(assignment.user_id in submitted for assignment in assignments)

    # Guessing phase

    async def start_guessing_phase(self, room_id: int) -> bool:
        """Leave the submitting phase and start the first round.

        Returns False when another caller already left the submitting phase,
        or when nothing is playable and the game went straight to finished.
        """
        entered = await self.store.transition_room_status(
            room_id, RoomStatus.SUBMITTING, RoomStatus.GUESSING
        )
        if not entered:
            logger.debug("Room %s is no longer submitting; guessing not started", room_id)
            return False

        items = await self.store.list_guess_items(room_id)
        associations = await self.store.list_associations(room_id)
        answered = {association.guess_item_id for association in associations}
        playable = [item.id for item in items if item.id in answered]

        if not playable:
            await self.store.update_room_status(room_id, RoomStatus.FINISHED)
            logger.info("Room %s had no playable items; game finished", room_id)
            return False

        players = await self.list_players(room_id)
        plan = plan_rounds(
            playable,
            len(players),
            self.rng,
            lightning_threshold=self.settings.lightning_player_threshold,
            standard_cap=self.settings.standard_round_cap,
        )
        await self.store.set_round_queue(room_id, QueuePhase.STANDARD, plan.standard)
        await self.store.set_round_queue(room_id, QueuePhase.LIGHTNING, plan.lightning)
        logger.info(
            "Room %s queued %s rounds (%s lightning)",
            room_id,
            plan.total,
            len(plan.lightning),
        )

        for phase in (QueuePhase.STANDARD, QueuePhase.LIGHTNING):
            if await self.start_next_queued_round(room_id, phase):
                return True

        await self.store.update_room_status(room_id, RoomStatus.FINISHED)
        return False

    async def start_next_queued_round(self, room_id: int, phase: QueuePhase) -> bool:
        item_id = await self.store.get_next_queued(room_id, phase)
        if item_id is None:
            return False

        await self.store.mark_queued_played(room_id, phase, item_id)
        round_number = await self.store.next_round_number(room_id)
        await self.store.create_round(room_id, item_id, round_number)
        await self.store.update_room_status(room_id, PHASE_ROOM_STATUS[phase])
        logger.info("Room %s started %s round %s", room_id, phase.value, round_number)
        return True

    async def get_eligible_guessers(self, room_id: int, guess_item_id: int) -> list[User]:
        players = await self.list_players(room_id)
        authors = {
            association.user_id
            for association in await self.store.list_associations_for_item(guess_item_id)
        }
        return [player for player in players if player.id not in authors]

    async def ensure_round_options(
        self,
        room_id: int,
        round_number: int,
        correct_item_id: int,
    ) -> list[GuessItem]:
        existing = await self.store.get_round_options(room_id, round_number)
        if existing:
            return existing

        items = await self.store.list_guess_items(room_id)
        by_id = {item.id: item for item in items}
        if correct_item_id not in by_id:
            raise GameRuleError("Correct item not found")

        option_ids = pick_options(
            correct_item_id,
            list(by_id),
            self.rng,
            option_count=self.settings.option_count,
        )
        try:
            await self.store.set_round_options(room_id, round_number, option_ids)
        except DuplicateEntryError:
            # Another session fixed the options first; theirs stand.
            logger.debug("Room %s round %s options already stored", room_id, round_number)
            return await self.store.get_round_options(room_id, round_number)
        return [by_id[item_id] for item_id in option_ids]

    async def calculate_vote_tallies(self, room_id: int, round_number: int) -> list[VoteTally]:
        guesses = await self.store.list_guesses_for_round(room_id, round_number)
        items = await self.store.list_guess_items(room_id)
        return tally_votes(guesses, {item.id: item.name for item in items})

    async def award_points(
        self,
        room_id: int,
        round_number: int,
        correct_item_id: int,
    ) -> dict[int, int]:
        """Credit every correct guess of the round.

        Not idempotent: call it once per round, on the voting -> revealed edge.
        """
        guesses = await self.store.list_guesses_for_round(room_id, round_number)
        awards = compute_awards(
            guesses,
            correct_item_id,
            points=self.settings.points_per_correct_guess,
        )
        for user_id, points in awards.items():
            await self.store.update_user_score(user_id, points)
        logger.info("Room %s round %s awarded %s", room_id, round_number, awards)
        return awards

    async def advance_to_next_round(self, room_id: int) -> bool:
        current = await self.store.get_current_round(room_id)
        room = await self.store.get_room(room_id)
        if current is None or room is None or room.status not in PLAYING_STATUSES:
            return False

        if current.status != RoundStatus.COMPLETED:
            await self.store.update_round_status(current.id, RoundStatus.COMPLETED)

        phases: Sequence[QueuePhase]
        if room.status == RoomStatus.GUESSING:
            phases = (QueuePhase.STANDARD, QueuePhase.LIGHTNING)
        else:
            phases = (QueuePhase.LIGHTNING,)

        for phase in phases:
            if await self.start_next_queued_round(room_id, phase):
                return True

        await self.store.update_room_status(room_id, RoomStatus.FINISHED)
        logger.info("Room %s finished after round %s", room_id, current.round_number)
        return False
