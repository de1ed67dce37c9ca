"""Tests for chronicle_engine.mechanics — inline skill-check resolution."""

import random

import pytest

from chronicle_engine.mechanics import (
    OUTCOME_TIERS,
    DiceRoller,
    determine_tier,
    resolve_check,
    stat_modifier,
)
from chronicle_engine.models import Character, MomentumState, SkillCheckPlan


class FixedRng:
    """randint() returns queued values in order."""

    def __init__(self, values: list[int]) -> None:
        self.values = list(values)

    def randint(self, a: int, b: int) -> int:
        return self.values.pop(0)


def _plan(**kwargs) -> SkillCheckPlan:
    return SkillCheckPlan(skill="investigation", attribute="focus", **kwargs)


class TestDiceRoller:
    def test_single_roll_without_advantage(self) -> None:
        assert DiceRoller(FixedRng([3, 4])).total(1) == 8

    def test_advantage_keeps_best(self) -> None:
        assert DiceRoller(FixedRng([1, 1, 6, 6])).total(0, advantage=True) == 12

    def test_disadvantage_keeps_worst(self) -> None:
        assert DiceRoller(FixedRng([6, 6, 1, 2])).total(0, disadvantage=True) == 3

    def test_advantage_and_disadvantage_cancel(self) -> None:
        rng = FixedRng([2, 2, 6, 6])
        assert DiceRoller(rng).total(0, advantage=True, disadvantage=True) == 4
        assert rng.values == [6, 6]


class TestModifiers:
    def test_skill_and_attribute_tiers(self, investigator: Character) -> None:
        assert stat_modifier(investigator, "investigation", "focus") == 2

    def test_unknown_skill_counts_as_fool(self, investigator: Character) -> None:
        assert stat_modifier(investigator, "hacking", "ingenuity") == -2


@pytest.mark.parametrize(
    "margin,tier",
    [(5, "breakthrough"), (2, "breakthrough"), (1, "advance"), (0, "advance"),
     (-1, "stall"), (-2, "regress"), (-3, "regress"), (-4, "collapse")],
)
def test_determine_tier(margin: int, tier: str) -> None:
    assert determine_tier(margin) == tier


class TestResolveCheck:
    def test_breakthrough_adds_two_momentum(self, investigator: Character) -> None:
        result = resolve_check(_plan(), investigator, rng=FixedRng([4, 4]))
        assert result.die_sum == 10
        assert result.target == 8
        assert result.margin == 2
        assert result.outcome_tier == "breakthrough"
        assert result.new_momentum == 2
        assert result.momentum_delta == 2

    def test_momentum_feeds_the_modifier(self, investigator: Character) -> None:
        investigator.momentum = MomentumState(current=-2)
        result = resolve_check(_plan(risk_level="desperate"), investigator, rng=FixedRng([1, 2]))
        assert result.total_modifier == 0
        assert result.margin == -7
        assert result.outcome_tier == "collapse"
        assert result.new_momentum == -2
        assert result.momentum_delta == -2

    def test_momentum_clamped_at_ceiling(self, investigator: Character) -> None:
        investigator.momentum = MomentumState(current=3)
        result = resolve_check(_plan(risk_level="controlled"), investigator, rng=FixedRng([6, 6]))
        assert result.outcome_tier == "breakthrough"
        assert result.new_momentum == 3

    def test_advantage_flag_recorded(self, investigator: Character) -> None:
        result = resolve_check(_plan(advantage="advantage"), investigator, rng=FixedRng([1, 1, 3, 3]))
        assert result.advantage is True
        assert result.disadvantage is False
        assert result.die_sum == 8

    @pytest.mark.parametrize("seed", range(20))
    def test_outcome_always_enumerated(self, investigator: Character, seed: int) -> None:
        result = resolve_check(_plan(risk_level="risky"), investigator, rng=random.Random(seed))
        assert result.outcome_tier in OUTCOME_TIERS
        assert -2 <= result.new_momentum <= 3
