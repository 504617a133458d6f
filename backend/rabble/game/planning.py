"""Pure helpers that decide who writes about what and which items get played.

Every function takes the random source explicitly so callers (and tests) can
pin the outcome with a seeded ``random.Random``.
"""

from dataclasses import dataclass, field
from random import Random
from typing import Sequence, TypeVar

T = TypeVar("T")


def shuffled(values: Sequence[T], rng: Random) -> list[T]:
    result = list(values)
    rng.shuffle(result)
    return result


def distribute_players(
    player_ids: Sequence[int],
    item_ids: Sequence[int],
    rng: Random,
) -> dict[int, int]:
    """Spread players over items as evenly as possible.

    Each item gets ``len(players) // len(items)`` players and the first
    ``len(players) % len(items)`` items (in the order given) get one extra.
    Which player lands on which item is decided by shuffling the players.
    """
    if not item_ids:
        raise ValueError("No guess items to assign")

    per_item, remainder = divmod(len(player_ids), len(item_ids))
    players = shuffled(player_ids, rng)

    assignments: dict[int, int] = {}
    cursor = 0
    for index, item_id in enumerate(item_ids):
        count = per_item + (1 if index < remainder else 0)
        for player_id in players[cursor : cursor + count]:
            assignments[player_id] = item_id
        cursor += count
    return assignments


@dataclass
class RoundPlan:
    standard: list[int] = field(default_factory=list)
    lightning: list[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.standard) + len(self.lightning)


def plan_rounds(
    playable_item_ids: Sequence[int],
    player_count: int,
    rng: Random,
    *,
    lightning_threshold: int = 15,
    standard_cap: int = 10,
) -> RoundPlan:
    """Shuffle the playable items and split them into the two round queues.

    Large rooms (more than ``lightning_threshold`` players) only play
    ``standard_cap`` full rounds; every remaining item goes to lightning.
    """
    order = shuffled(playable_item_ids, rng)
    if player_count > lightning_threshold:
        cut = min(standard_cap, len(order))
        return RoundPlan(standard=order[:cut], lightning=order[cut:])
    return RoundPlan(standard=order)


def pick_options(
    correct_item_id: int,
    all_item_ids: Sequence[int],
    rng: Random,
    *,
    option_count: int = 4,
) -> list[int]:
    others = shuffled([item_id for item_id in all_item_ids if item_id != correct_item_id], rng)
    options = [correct_item_id, *others[: max(0, option_count - 1)]]
    rng.shuffle(options)
    return options
