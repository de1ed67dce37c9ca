"""Intent intake node: classify the player message into an Intent.

One JSON model call. Fields the model leaves out or gets wrong fall back to
keyword heuristics, so a garbled classification never fails the turn. A
failing model call does.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from chronicle_engine.llm import parse_json_output
from chronicle_engine.models import ATTRIBUTES, BeatDirective, Intent
from chronicle_engine.pipeline.context import ExecutionContext
from chronicle_engine.prompts import build_intent_packet

logger = logging.getLogger(__name__)

DEFAULT_SKILL = "talk"
DEFAULT_TONE = "narrative"
DEFAULT_ATTRIBUTE = "focus"
SUMMARY_LIMIT = 120

INTENT_TYPES = ("action", "inquiry", "clarification", "possibility", "planning", "reflection")

SKILL_DEFAULT_ATTRIBUTE: dict[str, str] = {
    "talk": "presence",
    "persuasion": "presence",
    "investigation": "focus",
    "perception": "focus",
    "stealth": "finesse",
    "hacking": "ingenuity",
    "brawl": "vitality",
    "athletics": "vitality",
    "endurance": "resolve",
    "lore": "attunement",
}

CHECK_SIGNAL = re.compile(r"\b(check|roll|test|risk|push|attempt)\b", re.I)
CREATIVE_SPARK = re.compile(r"\b(improvise|callback|lore|rock opera)\b", re.I)

# (pattern, skill, requires_check)
MOVE_MATCHERS: list[tuple[re.Pattern[str], str, bool]] = [
    (re.compile(r"\b(sneak|stealth|quietly|scout|delve|hide)\b", re.I), "stealth", True),
    (re.compile(r"\b(negotiate|parley|convince|persuade|bargain)\b", re.I), "persuasion", True),
    (re.compile(r"\b(search|investigate|examine|inspect|track)\b", re.I), "investigation", True),
    (re.compile(r"\b(scan|analy[sz]e|override|decrypt|hack)\b", re.I), "hacking", True),
    (re.compile(r"\b(attack|charge|strike|brawl|fight)\b", re.I), "brawl", True),
    (re.compile(r"\b(climb|leap|jump|sprint|swim)\b", re.I), "athletics", True),
]

TONE_MATCHERS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(attack|strike|charge|brawl)\b", re.I), "aggressive"),
    (re.compile(r"\b(sneak|slip|quietly|hide)\b", re.I), "stealth"),
    (re.compile(r"\b(parley|negotiate|talk|appeal)\b", re.I), "diplomatic"),
]

INTENT_TYPE_MATCHERS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(what if|could i|is it possible|would it)\b", re.I), "possibility"),
    (re.compile(r"\b(i mean|to clarify|to be clear|actually i)\b", re.I), "clarification"),
    (re.compile(r"\b(plan|prepare|strategy|next steps)\b", re.I), "planning"),
    (re.compile(r"\b(remember|reflect|recall|think back)\b", re.I), "reflection"),
    (re.compile(r"^\s*(what|who|where|when|why|how|is|are|do|does)\b", re.I), "inquiry"),
]


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------

def detect_intent_type(text: str) -> str:
    for pattern, intent_type in INTENT_TYPE_MATCHERS:
        if pattern.search(text):
            return intent_type
    if text.rstrip().endswith("?"):
        return "inquiry"
    return "action"


def detect_tone(text: str) -> str:
    if not text:
        return "neutral"
    for pattern, tone in TONE_MATCHERS:
        if pattern.search(text):
            return tone
    return DEFAULT_TONE


def detect_move(text: str) -> tuple[str, bool]:
    """Return (skill, requires_check) for the first matching move."""
    for pattern, skill, requires_check in MOVE_MATCHERS:
        if pattern.search(text):
            return skill, requires_check
    return DEFAULT_SKILL, False


def summarize(text: str) -> str:
    trimmed = " ".join(text.split())
    if not trimmed:
        return "No intent provided."
    if len(trimmed) > SUMMARY_LIMIT:
        return trimmed[:SUMMARY_LIMIT - 1] + "…"
    return trimmed


# ---------------------------------------------------------------------------
# Model output normalisation
# ---------------------------------------------------------------------------

def _clean(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _confidence(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(0.0, min(1.0, float(value)))


def _beat_directive(value: Any) -> BeatDirective | None:
    if not isinstance(value, dict) or value.get("kind") not in ("new", "existing", "independent"):
        return None
    return BeatDirective(kind=value["kind"], summary=_clean(value.get("summary")))


def resolve_attribute(context: ExecutionContext, skill: str, proposed: Any) -> str:
    """Character sheet first, then the model's pick, then the skill default."""
    character = context.session.character
    if character is not None and skill in character.skills:
        return character.skills[skill].attribute
    candidate = _clean(proposed)
    if candidate is not None and candidate.lower() in ATTRIBUTES:
        return candidate.lower()
    return SKILL_DEFAULT_ATTRIBUTE.get(skill, DEFAULT_ATTRIBUTE)


def build_intent(context: ExecutionContext, data: dict[str, Any] | None) -> Intent:
    text = context.content.strip()
    data = data or {}
    move_skill, move_check = detect_move(text)

    skill = (_clean(data.get("skill")) or move_skill).lower()
    intent_type = data.get("intent_type")
    if intent_type not in INTENT_TYPES:
        intent_type = detect_intent_type(text)

    requires_check = data.get("requires_check")
    if not isinstance(requires_check, bool):
        requires_check = move_check or bool(CHECK_SIGNAL.search(text))

    creative_spark = data.get("creative_spark")
    if not isinstance(creative_spark, bool):
        creative_spark = bool(CREATIVE_SPARK.search(text))

    return Intent(
        intent_summary=summarize(_clean(data.get("intent_summary")) or text),
        intent_type=intent_type,
        tone=_clean(data.get("tone")) or detect_tone(text),
        skill=skill,
        attribute=resolve_attribute(context, skill, data.get("attribute")),
        requires_check=requires_check,
        creative_spark=creative_spark,
        beat_directive=_beat_directive(data.get("beat_directive")),
        router_confidence=_confidence(data.get("router_confidence")),
        router_rationale=_clean(data.get("router_rationale")),
    )


class IntentIntakeNode:
    id = "intent-intake"

    async def process(self, context: ExecutionContext) -> ExecutionContext:
        packet = build_intent_packet(context.scene_frame, context.content, ATTRIBUTES)
        output = await context.complete(packet)

        data = parse_json_output(output)
        if data is None:
            logger.warning(
                "Intent intake fell back to heuristics session=%s turn=%d",
                context.session_id, context.turn_sequence,
            )
        intent = build_intent(context, data)
        context.player_intent = intent
        context.record(
            self.id, "classified",
            intent_type=intent.intent_type,
            skill=intent.skill,
            attribute=intent.attribute,
            requires_check=intent.requires_check,
            source="model" if data is not None else "heuristic",
        )
        return context
