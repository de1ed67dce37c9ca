"""Skill-check mechanics for inline resolution.

A check rolls 2d6 + modifier against a target set by the risk level.
modifier = skill tier + attribute tier + current momentum. Advantage rolls
twice and keeps the better total; disadvantage keeps the worse.

    margin >=  2  breakthrough   momentum +2
    margin >=  0  advance        momentum +1
    margin >= -1  stall          momentum  0
    margin >= -3  regress        momentum -1
    otherwise     collapse       momentum -2
"""

from __future__ import annotations

import random
from uuid import uuid4

from chronicle_engine.models import Character, SkillCheckPlan, SkillCheckResult

RISK_LEVEL_TARGET: dict[str, int] = {
    "controlled": 7,
    "standard": 8,
    "risky": 9,
    "desperate": 10,
}

ATTRIBUTE_TIER_MODIFIER: dict[str, int] = {
    "rudimentary": -2,
    "standard": 0,
    "advanced": 1,
    "superior": 2,
    "transcendent": 4,
}

SKILL_TIER_MODIFIER: dict[str, int] = {
    "fool": -2,
    "apprentice": 0,
    "artisan": 1,
    "virtuoso": 2,
    "legend": 4,
}

TIER_THRESHOLDS: list[tuple[int, str]] = [
    (2, "breakthrough"),
    (0, "advance"),
    (-1, "stall"),
    (-3, "regress"),
]

MOMENTUM_DELTA: dict[str, int] = {
    "breakthrough": 2,
    "advance": 1,
    "stall": 0,
    "regress": -1,
    "collapse": -2,
}

OUTCOME_TIERS: tuple[str, ...] = ("breakthrough", "advance", "stall", "regress", "collapse")


class DiceRoller:
    num_dice = 2
    die_size = 6

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def roll(self) -> list[int]:
        return [self._rng.randint(1, self.die_size) for _ in range(self.num_dice)]

    def total(self, modifier: int, advantage: bool = False, disadvantage: bool = False) -> int:
        first = sum(self.roll()) + modifier
        if advantage == disadvantage:
            return first
        second = sum(self.roll()) + modifier
        return max(first, second) if advantage else min(first, second)


def stat_modifier(character: Character, skill: str, attribute: str) -> int:
    """Skill tier + attribute tier modifier, without momentum."""
    skill_entry = character.skills.get(skill)
    skill_mod = SKILL_TIER_MODIFIER[skill_entry.tier] if skill_entry else SKILL_TIER_MODIFIER["fool"]
    attribute_mod = ATTRIBUTE_TIER_MODIFIER.get(character.attributes.get(attribute, "standard"), 0)
    return skill_mod + attribute_mod


def determine_tier(margin: int) -> str:
    for threshold, tier in TIER_THRESHOLDS:
        if margin >= threshold:
            return tier
    return "collapse"


def resolve_check(
    plan: SkillCheckPlan,
    character: Character,
    rng: random.Random | None = None,
) -> SkillCheckResult:
    """Roll the plan against the character sheet and return the outcome."""
    momentum = character.momentum
    modifier = stat_modifier(character, plan.skill, plan.attribute) + momentum.current
    advantage = plan.advantage == "advantage"
    disadvantage = plan.advantage == "disadvantage"

    die_sum = DiceRoller(rng).total(modifier, advantage=advantage, disadvantage=disadvantage)
    target = RISK_LEVEL_TARGET[plan.risk_level]
    margin = die_sum - target
    tier = determine_tier(margin)
    new_momentum = max(momentum.floor, min(momentum.ceiling, momentum.current + MOMENTUM_DELTA[tier]))

    return SkillCheckResult(
        check_id=str(uuid4()),
        die_sum=die_sum,
        total_modifier=modifier,
        target=target,
        margin=margin,
        outcome_tier=tier,
        advantage=advantage,
        disadvantage=disadvantage,
        new_momentum=new_momentum,
        momentum_delta=MOMENTUM_DELTA[tier],
    )
