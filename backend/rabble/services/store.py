import logging
import random
import string
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping, Optional, Sequence

from sqlalchemy import delete as sa_delete, func, insert as sa_insert, update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from ..config import Settings, get_settings
from ..enums import QueuePhase, RoomStatus, RoundStatus
from ..exceptions import DuplicateEntryError, StoreError
from ..models import (
    Assignment,
    Association,
    Guess,
    GuessItem,
    Room,
    Round,
    RoundOption,
    RoundQueueEntry,
    User,
)
from ..models.room import utcnow

logger = logging.getLogger(__name__)

ROOM_CODE_CHARS = string.ascii_uppercase
ROOM_CODE_ATTEMPTS = 10


def _fresh(model):
    # Always reload rows: other sessions may have written since we last looked.
    return select(model).execution_options(populate_existing=True)


class GameStore:
    """Persistence for rooms, users and everything a game writes."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self._atomic = False

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        """Run several writes as one commit; any error rolls all of them back.

        Writes inside the block only flush. Nested blocks join the outer one.
        """
        if self._atomic:
            yield
            return

        self._atomic = True
        try:
            yield
        except BaseException:
            self._atomic = False
            await self.session.rollback()
            raise
        self._atomic = False
        await self._commit()

    async def _execute(self, statement):
        try:
            return await self.session.execute(statement)
        except IntegrityError as exc:
            await self.session.rollback()
            raise DuplicateEntryError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise StoreError(str(exc)) from exc

    async def _commit(self, *refresh) -> None:
        try:
            if self._atomic:
                await self.session.flush()
            else:
                await self.session.commit()
            for instance in refresh:
                await self.session.refresh(instance)
        except IntegrityError as exc:
            await self.session.rollback()
            raise DuplicateEntryError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise StoreError(str(exc)) from exc

    # Rooms

    def _generate_code(self) -> str:
        return "".join(random.choices(ROOM_CODE_CHARS, k=self.settings.room_code_length))

    async def create_room(self, host_nickname: str) -> tuple[Room, User]:
        code = self._generate_code()
        for _ in range(ROOM_CODE_ATTEMPTS):
            if await self.get_room_by_code(code) is None:
                break
            code = self._generate_code()

        room = Room(code=code, status=RoomStatus.LOBBY)
        self.session.add(room)
        try:
            await self.session.flush()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise StoreError(str(exc)) from exc

        host = User(nickname=host_nickname, room_id=room.id, is_host=True)
        self.session.add(host)
        try:
            await self.session.flush()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise StoreError(str(exc)) from exc

        room.host_id = host.id
        self.session.add(room)
        await self._commit(room, host)
        return room, host

    async def get_room(self, room_id: int) -> Optional[Room]:
        result = await self._execute(_fresh(Room).where(Room.id == room_id))
        return result.scalar_one_or_none()

    async def get_room_by_code(self, code: str) -> Optional[Room]:
        result = await self._execute(_fresh(Room).where(Room.code == code))
        return result.scalar_one_or_none()

    async def update_room_status(self, room_id: int, status: RoomStatus) -> None:
        await self._execute(sa_update(Room).where(Room.id == room_id).values(status=status))
        await self._commit()

    async def transition_room_status(
        self,
        room_id: int,
        expected: RoomStatus,
        status: RoomStatus,
    ) -> bool:
        """Move a room from ``expected`` to ``status``; False if it was not in ``expected``."""
        result = await self._execute(
            sa_update(Room)
            .where(Room.id == room_id, Room.status == expected)
            .values(status=status)
        )
        await self._commit()
        return result.rowcount == 1

    # Users

    async def create_user(self, nickname: str, room_id: int) -> User:
        user = User(nickname=nickname, room_id=room_id, is_host=False)
        self.session.add(user)
        await self._commit(user)
        return user

    async def get_user(self, user_id: int) -> Optional[User]:
        result = await self._execute(_fresh(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def list_users(self, room_id: int) -> Sequence[User]:
        statement = _fresh(User).where(User.room_id == room_id).order_by(User.joined_at, User.id)
        result = await self._execute(statement)
        return result.scalars().all()

    async def update_user_score(self, user_id: int, delta: int) -> None:
        await self._execute(
            sa_update(User)
            .where(User.id == user_id)
            .values(score=User.score + delta)
            .execution_options(synchronize_session=False)
        )
        await self._commit()

    # Guess items

    async def create_guess_items(self, room_id: int, names: Sequence[str]) -> list[GuessItem]:
        items = [
            GuessItem(room_id=room_id, name=name, order_index=index)
            for index, name in enumerate(names)
        ]
        self.session.add_all(items)
        await self._commit(*items)
        return items

    async def list_guess_items(self, room_id: int) -> Sequence[GuessItem]:
        statement = (
            _fresh(GuessItem)
            .where(GuessItem.room_id == room_id)
            .order_by(GuessItem.order_index, GuessItem.id)
        )
        result = await self._execute(statement)
        return result.scalars().all()

    async def get_guess_item(self, item_id: int) -> Optional[GuessItem]:
        result = await self._execute(_fresh(GuessItem).where(GuessItem.id == item_id))
        return result.scalar_one_or_none()

    # Associations

    async def create_association(self, user_id: int, item_id: int, value: str) -> Association:
        association = Association(user_id=user_id, guess_item_id=item_id, value=value)
        self.session.add(association)
        await self._commit(association)
        return association

    async def list_associations(self, room_id: int) -> Sequence[Association]:
        statement = (
            _fresh(Association)
            .join(GuessItem, GuessItem.id == Association.guess_item_id)
            .where(GuessItem.room_id == room_id)
            .order_by(Association.id)
        )
        result = await self._execute(statement)
        return result.scalars().all()

    async def list_associations_for_item(self, item_id: int) -> Sequence[Association]:
        statement = (
            _fresh(Association)
            .where(Association.guess_item_id == item_id)
            .order_by(Association.id)
        )
        result = await self._execute(statement)
        return result.scalars().all()

    async def get_association(self, user_id: int, item_id: int) -> Optional[Association]:
        statement = _fresh(Association).where(
            Association.user_id == user_id,
            Association.guess_item_id == item_id,
        )
        result = await self._execute(statement)
        return result.scalar_one_or_none()

    # Assignments

    async def set_assignments(self, room_id: int, assignments: Mapping[int, int]) -> None:
        await self._execute(sa_delete(Assignment).where(Assignment.room_id == room_id))
        self.session.add_all(
            Assignment(room_id=room_id, user_id=user_id, guess_item_id=item_id)
            for user_id, item_id in assignments.items()
        )
        await self._commit()

    async def get_assignment(self, room_id: int, user_id: int) -> Optional[Assignment]:
        statement = _fresh(Assignment).where(
            Assignment.room_id == room_id,
            Assignment.user_id == user_id,
        )
        result = await self._execute(statement)
        return result.scalar_one_or_none()

    async def list_assignments(self, room_id: int) -> Sequence[Assignment]:
        result = await self._execute(_fresh(Assignment).where(Assignment.room_id == room_id))
        return result.scalars().all()

    # Guesses

    async def create_guess(
        self,
        room_id: int,
        user_id: int,
        item_id: int,
        guessed_item_id: int,
        round_number: int,
    ) -> Guess:
        guess = Guess(
            room_id=room_id,
            user_id=user_id,
            guess_item_id=item_id,
            guessed_item_id=guessed_item_id,
            round_number=round_number,
        )
        self.session.add(guess)
        await self._commit(guess)
        return guess

    async def list_guesses_for_round(self, room_id: int, round_number: int) -> Sequence[Guess]:
        statement = (
            _fresh(Guess)
            .where(Guess.room_id == room_id, Guess.round_number == round_number)
            .order_by(Guess.id)
        )
        result = await self._execute(statement)
        return result.scalars().all()

    async def list_guesses(self, room_id: int) -> Sequence[Guess]:
        statement = _fresh(Guess).where(Guess.room_id == room_id).order_by(Guess.id)
        result = await self._execute(statement)
        return result.scalars().all()

    async def get_guess(self, user_id: int, round_number: int) -> Optional[Guess]:
        statement = _fresh(Guess).where(
            Guess.user_id == user_id,
            Guess.round_number == round_number,
        )
        result = await self._execute(statement)
        return result.scalar_one_or_none()

    # Rounds

    async def create_round(self, room_id: int, item_id: int, round_number: int) -> Round:
        round_ = Round(
            room_id=room_id,
            guess_item_id=item_id,
            round_number=round_number,
            status=RoundStatus.ACTIVE,
        )
        self.session.add(round_)
        await self._commit(round_)
        return round_

    async def get_current_round(self, room_id: int) -> Optional[Round]:
        statement = (
            _fresh(Round)
            .where(Round.room_id == room_id)
            .order_by(Round.round_number.desc())
            .limit(1)
        )
        result = await self._execute(statement)
        return result.scalars().first()

    async def next_round_number(self, room_id: int) -> int:
        result = await self._execute(
            select(func.max(Round.round_number)).where(Round.room_id == room_id)
        )
        return (result.scalar() or 0) + 1

    def _round_values(self, status: RoundStatus) -> dict:
        values: dict = {"status": status}
        if status == RoundStatus.REVEALED:
            values["revealed_at"] = utcnow()
        return values

    async def update_round_status(self, round_id: int, status: RoundStatus) -> None:
        await self._execute(
            sa_update(Round).where(Round.id == round_id).values(**self._round_values(status))
        )
        await self._commit()

    async def transition_round_status(
        self,
        round_id: int,
        expected: RoundStatus,
        status: RoundStatus,
    ) -> bool:
        result = await self._execute(
            sa_update(Round)
            .where(Round.id == round_id, Round.status == expected)
            .values(**self._round_values(status))
        )
        await self._commit()
        return result.rowcount == 1

    # Round options

    async def set_round_options(self, room_id: int, round_number: int, item_ids: Sequence[int]) -> None:
        """Store the option set of a round.

        Options are written once: a second write for the same round raises
        :class:`DuplicateEntryError` and leaves the first set in place.
        """
        await self._execute(
            sa_insert(RoundOption).values(
                [
                    {
                        "room_id": room_id,
                        "round_number": round_number,
                        "option_order": order,
                        "guess_item_id": item_id,
                    }
                    for order, item_id in enumerate(item_ids)
                ]
            )
        )
        await self._commit()

    async def get_round_options(self, room_id: int, round_number: int) -> list[GuessItem]:
        statement = (
            _fresh(GuessItem)
            .join(RoundOption, RoundOption.guess_item_id == GuessItem.id)
            .where(RoundOption.room_id == room_id, RoundOption.round_number == round_number)
            .order_by(RoundOption.option_order)
        )
        result = await self._execute(statement)
        return list(result.scalars().all())

    # Round queue

    async def set_round_queue(self, room_id: int, phase: QueuePhase, item_ids: Sequence[int]) -> None:
        await self._execute(
            sa_delete(RoundQueueEntry).where(
                RoundQueueEntry.room_id == room_id,
                RoundQueueEntry.phase == phase,
            )
        )
        self.session.add_all(
            RoundQueueEntry(room_id=room_id, phase=phase, position=position, guess_item_id=item_id)
            for position, item_id in enumerate(item_ids)
        )
        await self._commit()

    async def _first_unplayed(
        self,
        room_id: int,
        phase: QueuePhase,
        item_id: int | None = None,
    ) -> Optional[RoundQueueEntry]:
        statement = _fresh(RoundQueueEntry).where(
            RoundQueueEntry.room_id == room_id,
            RoundQueueEntry.phase == phase,
            RoundQueueEntry.played.is_(False),
        )
        if item_id is not None:
            statement = statement.where(RoundQueueEntry.guess_item_id == item_id)
        result = await self._execute(statement.order_by(RoundQueueEntry.position).limit(1))
        return result.scalars().first()

    async def get_next_queued(self, room_id: int, phase: QueuePhase) -> Optional[int]:
        entry = await self._first_unplayed(room_id, phase)
        return entry.guess_item_id if entry else None

    async def mark_queued_played(self, room_id: int, phase: QueuePhase, item_id: int) -> None:
        entry = await self._first_unplayed(room_id, phase, item_id)
        if entry is None:
            logger.debug("Queue entry %s/%s/%s already played", room_id, phase.value, item_id)
            return
        entry.played = True
        self.session.add(entry)
        await self._commit()
