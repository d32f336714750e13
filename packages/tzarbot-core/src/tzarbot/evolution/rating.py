"""Elo ratings against the in-game opponent."""

from __future__ import annotations

_MIN_RATING = 100.0
_MAX_RATING = 3000.0


def expected_score(rating: float, opponent: float) -> float:
    return 1.0 / (1.0 + 10.0 ** ((opponent - rating) / 400.0))


def update_rating(rating: float, opponent: float, wins: int, games: int, k_factor: float = 32.0) -> float:
    """Apply ``games`` results (``wins`` of them won) at the current expectation."""
    if games <= 0:
        return rating
    change = k_factor * (wins - games * expected_score(rating, opponent))
    return max(_MIN_RATING, min(_MAX_RATING, rating + change))
