"""Handlebars prompt packets for the model-calling pipeline nodes."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pybars

from chronicle_engine.models import (
    CheckRequestEnvelope,
    Intent,
    PromptPacket,
    SafetyAssessment,
    SceneFrame,
    SkillCheckPlan,
    SkillCheckResult,
)

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}} — iterate over the first N items."""
    result = []
    for item in list(items or [])[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} — iterate over the last N items."""
    result = []
    count = int(count)
    if count <= 0:
        return result
    for item in list(items or [])[-count:]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Templates ────────────────────────────────────────────
# Free text goes through triple braces so it reaches the model unescaped.

SCENE_TEMPLATE = (
    "{{#if frame.location_name}}Location: {{{frame.location_name}}}\n"
    "{{#if frame.location_description}}{{{frame.location_description}}}\n{{/if}}"
    "{{#if frame.atmosphere}}Atmosphere: {{{frame.atmosphere}}}\n{{/if}}"
    "{{else}}Location: unknown\n{{/if}}"
    "{{#if frame.character_name}}Character: {{{frame.character_name}}} "
    "(momentum {{frame.momentum}})\n"
    "{{#if frame.top_skills}}Strongest skills: "
    "{{#each frame.top_skills}}{{{this}}}; {{/each}}\n{{/if}}"
    "{{/if}}"
    "{{#if frame.recent_turns}}\nRecent turns:\n"
    "{{#last frame.recent_turns window}}"
    "> {{{player}}}\n{{{gm}}}\n\n"
    "{{/last}}"
    "{{/if}}"
)

INTENT_SYSTEM = (
    "You classify player messages for a tabletop role-play game master. "
    "Reply with a single JSON object and nothing else."
)

INTENT_TEMPLATE = (
    SCENE_TEMPLATE
    + "\nPlayer message:\n> {{{message}}}\n\n"
    "Return JSON with these keys:\n"
    '  "intent_summary": one short sentence describing what the player wants\n'
    '  "intent_type": one of action, inquiry, clarification, possibility, planning, reflection\n'
    '  "tone": one word (aggressive, stealth, diplomatic, narrative, ...)\n'
    '  "skill": the skill the action leans on\n'
    '  "attribute": one of {{attributes}}\n'
    '  "requires_check": true when the outcome is uncertain and risky\n'
    '  "creative_spark": true when the player builds on established lore in a clever way\n'
    '  "beat_directive": {"kind": "new" | "existing" | "independent", "summary": "..."}\n'
    '  "router_confidence": number between 0 and 1\n'
    '  "router_rationale": one sentence\n'
)

CHECK_SYSTEM = (
    "You plan skill checks for a tabletop role-play game master. "
    "Reply with a single JSON object and nothing else."
)

CHECK_TEMPLATE = (
    SCENE_TEMPLATE
    + "\nPlayer intent: {{{intent.intent_summary}}}\n"
    "Skill: {{{intent.skill}}} ({{intent.attribute}})\n\n"
    "Return JSON with these keys:\n"
    '  "risk_level": one of controlled, standard, risky, desperate\n'
    '  "advantage": one of advantage, disadvantage, none\n'
    '  "rationale": one sentence\n'
    '  "complication_seeds": up to three short complications if the check goes badly\n'
)

NARRATIVE_SYSTEM = (
    "You are the game master of a collaborative role-play chronicle. "
    "Write in second person, present tense. Never speak or decide for the player."
)

NARRATIVE_TEMPLATE = (
    SCENE_TEMPLATE
    + "\nPlayer message:\n> {{{message}}}\n"
    "Intent: {{{intent.intent_summary}}} (tone: {{intent.tone}})\n"
    "{{#if result}}\nSkill check on {{{plan.skill}}} ({{plan.attribute}}, {{plan.risk_level}}): "
    "{{result.outcome_tier}} (rolled {{result.die_sum}} against {{result.target}}).\n"
    "Narrate the consequences of that outcome.\n"
    "{{#if plan.complication_seeds}}Possible complications: "
    "{{#take plan.complication_seeds 3}}{{{this}}}; {{/take}}\n{{/if}}"
    "{{/if}}"
    "{{#if check_request}}\nA {{{check_request.plan.skill}}} check "
    "({{check_request.plan.attribute}}, {{check_request.plan.risk_level}}) is pending.\n"
    "Build tension up to the moment of the roll but do not reveal its outcome.\n"
    "{{/if}}"
    "{{#if safety.escalate}}\nSAFETY CONSTRAINT: the request touches {{{safety.reason}}}.\n"
    "Do not continue or describe the requested action. Redirect the scene in-fiction "
    "toward a safe alternative and keep the player engaged.\n"
    "{{/if}}"
    "\nWrite the next game-master beat in two to four short paragraphs."
)


# ── Packet builders ──────────────────────────────────────


def _scene_context(frame: SceneFrame, window: int) -> dict[str, Any]:
    return {"frame": frame.model_dump(), "window": window}


def build_intent_packet(frame: SceneFrame, message: str, attributes: tuple[str, ...]) -> PromptPacket:
    ctx = _scene_context(frame, 2)
    ctx.update({"message": message, "attributes": ", ".join(attributes)})
    return PromptPacket(
        stage="intent-intake",
        system=INTENT_SYSTEM,
        prompt=render_prompt(INTENT_TEMPLATE, ctx),
        response_format="json",
        temperature=0.1,
        max_tokens=300,
    )


def build_check_packet(frame: SceneFrame, intent: Intent) -> PromptPacket:
    ctx = _scene_context(frame, 2)
    ctx["intent"] = intent.model_dump()
    return PromptPacket(
        stage="check-planner",
        system=CHECK_SYSTEM,
        prompt=render_prompt(CHECK_TEMPLATE, ctx),
        response_format="json",
        temperature=0.25,
        max_tokens=250,
    )


def build_narrative_packet(
    frame: SceneFrame,
    message: str,
    intent: Intent,
    safety: SafetyAssessment | None = None,
    plan: SkillCheckPlan | None = None,
    result: SkillCheckResult | None = None,
    check_request: CheckRequestEnvelope | None = None,
    window: int = 6,
) -> PromptPacket:
    ctx = _scene_context(frame, window)
    ctx.update({
        "message": message,
        "intent": intent.model_dump(),
        "safety": safety.model_dump() if safety else {},
        "plan": plan.model_dump() if plan else {},
        "result": result.model_dump() if result else None,
        "check_request": check_request.model_dump() if check_request else None,
    })
    return PromptPacket(
        stage="narrative-weaver",
        system=NARRATIVE_SYSTEM,
        prompt=render_prompt(NARRATIVE_TEMPLATE, ctx),
        response_format="text",
        temperature=0.8,
        max_tokens=450,
    )
