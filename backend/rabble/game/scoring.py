from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Mapping

from ..models import Guess

DEFAULT_POINTS_PER_CORRECT_GUESS = 10
UNKNOWN_ITEM_NAME = "Unknown"


@dataclass
class VoteTally:
    guess_item_id: int
    guess_item_name: str
    vote_count: int


def tally_votes(guesses: Iterable[Guess], item_names: Mapping[int, str]) -> list[VoteTally]:
    """Count votes per picked item, most votes first.

    Items with equal counts keep whatever order ``Counter`` yields; callers
    must not rely on it.
    """
    counts = Counter(guess.guessed_item_id for guess in guesses)
    tallies = [
        VoteTally(
            guess_item_id=item_id,
            guess_item_name=item_names.get(item_id, UNKNOWN_ITEM_NAME),
            vote_count=count,
        )
        for item_id, count in counts.items()
    ]
    tallies.sort(key=lambda tally: tally.vote_count, reverse=True)
    return tallies


def compute_awards(
    guesses: Iterable[Guess],
    correct_item_id: int,
    *,
    points: int = DEFAULT_POINTS_PER_CORRECT_GUESS,
) -> dict[int, int]:
    awards: dict[int, int] = {}
    for guess in guesses:
        if guess.guessed_item_id == correct_item_id:
            awards[guess.user_id] = awards.get(guess.user_id, 0) + points
    return awards
