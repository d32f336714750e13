"""Per-game fitness from the statistics a worker reports.

A genome's fitness is the mean over the games it actually played, so a
partial evaluation is never extrapolated. Each game is scored from:

- a win bonus plus a time bonus for fast wins;
- unit, building, resource, combat and activity terms, each capped so one
  statistic cannot dominate;
- an exploration term and a small share of the in-game score;
- penalties for idling, invalid actions, losing and losing quickly.

The result is floored at ``FitnessWeights.minimum_fitness``.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol

from tzarbot.config import FitnessWeights

if TYPE_CHECKING:
    from tzarbot.communication.wire import GameOutcome

# Spend ratio the resource term rewards most.
_TARGET_SPEND_RATIO = 0.8


class FitnessCalculator(Protocol):
    def calculate(self, game: GameOutcome) -> float: ...


def average_fitness(calculator: FitnessCalculator, games: Sequence[GameOutcome]) -> float:
    """Mean fitness over the games played; 0.0 when there are none."""
    if not games:
        return 0.0
    return sum(calculator.calculate(game) for game in games) / len(games)


class GameFitnessCalculator:
    """Weighted sum of game statistics, per ``FitnessWeights``."""

    def __init__(self, weights: FitnessWeights | None = None) -> None:
        self._weights = weights or FitnessWeights()

    @property
    def weights(self) -> FitnessWeights:
        return self._weights

    def calculate(self, game: GameOutcome) -> float:
        w = self._weights
        fitness = 0.0
        if game.won:
            fitness += w.win_bonus + w.time_bonus * game.time_efficiency

        fitness += w.unit_weight * unit_score(game)
        fitness += w.building_weight * building_score(game)
        fitness += w.resource_weight * resource_score(game)
        fitness += w.combat_weight * combat_score(game)
        fitness += w.activity_weight * activity_score(game)
        fitness += w.exploration_weight * game.exploration_score
        fitness -= self.penalties(game)

        if game.game_score is not None:
            fitness += w.game_score_weight * (game.game_score / 10000.0)
        return max(fitness, w.minimum_fitness)

    def penalties(self, game: GameOutcome) -> float:
        w = self._weights
        total = 0.0
        if game.inactivity_ratio > 0.5:
            total += w.inactivity_penalty * (game.inactivity_ratio - 0.5) * 2.0
        if game.invalid_action_ratio > 0.1:
            total += w.invalid_action_penalty * game.invalid_action_ratio
        if not game.won:
            total += w.loss_penalty
            if game.duration_s < w.quick_loss_s:
                total += w.quick_loss_penalty
        return total


def unit_score(game: GameOutcome) -> float:
    score = game.units_built * 0.1 + game.units_killed * 0.2
    if game.unit_kd_ratio > 1.0:
        score += (game.unit_kd_ratio - 1.0) * 5.0
    return min(score, 100.0)


def building_score(game: GameOutcome) -> float:
    score = game.buildings_built * 0.5 + game.buildings_destroyed * 1.0 - game.buildings_lost * 0.2
    return max(0.0, min(score, 50.0))


def resource_score(game: GameOutcome) -> float:
    if game.resources_gathered == 0:
        return 0.0
    spend_ratio = game.resources_spent / max(1, game.resources_gathered)
    efficiency = max(0.0, 1.0 - abs(spend_ratio - _TARGET_SPEND_RATIO))
    return min(game.resources_gathered / 1000.0 * efficiency, 30.0)


def combat_score(game: GameOutcome) -> float:
    total = game.damage_dealt + game.damage_received
    if total == 0:
        return 0.0
    return min(game.damage_dealt / 1000.0 * (game.damage_dealt / total), 50.0)


def activity_score(game: GameOutcome) -> float:
    return min(game.valid_actions * 0.01 * (1.0 - game.inactivity_ratio), 20.0)
