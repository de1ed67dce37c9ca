"""Narrative weaver node: the game-master beat for this turn.

Always produces non-empty content. If the model returns nothing usable the
node writes a deterministic fallback narration from the scene frame.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from chronicle_engine.models import NarrativeEvent
from chronicle_engine.pipeline.context import ExecutionContext
from chronicle_engine.prompts import build_narrative_packet

logger = logging.getLogger(__name__)

SUMMARY_LIMIT = 160

_SENTENCE_END = re.compile(r"(?<=[.!?])\s")

TONE_LINES = {
    "aggressive": "Tension crackles as you lean into confrontation.",
    "stealth": "Shadows stretch, inviting silent movement.",
    "diplomatic": "Words sharpen as carefully as any tool you carry.",
}
DEFAULT_TONE_LINE = "The world waits, attentive to your next move."
REDIRECT_LINE = (
    "The scene shifts away from that path; the story turns toward what you can still "
    "change here, and the table's moderators have been asked to take a look."
)


def summarize(content: str) -> str:
    first = _SENTENCE_END.split(content.strip(), maxsplit=1)[0]
    if len(first) > SUMMARY_LIMIT:
        return first[:SUMMARY_LIMIT - 1].rstrip() + "…"
    return first


def fallback_narration(context: ExecutionContext) -> str:
    frame = context.scene_frame
    intent = context.player_intent
    location = frame.location_name or "the frontier"
    if frame.character_name:
        segments = [f"At {location}, {frame.character_name} takes stock of the moment."]
    else:
        segments = [f"At {location}, you take stock of the moment."]
    if frame.atmosphere:
        segments.append(frame.atmosphere)

    escalated = context.safety is not None and context.safety.escalate
    if escalated:
        segments.append(REDIRECT_LINE)
    else:
        segments.append(TONE_LINES.get(intent.tone, DEFAULT_TONE_LINE))

    result = context.skill_check_result
    plan = context.skill_check_plan
    if result is not None and plan is not None:
        segments.append(f"Your {plan.skill} attempt ends in {result.outcome_tier}.")
    elif context.check_request is not None:
        segments.append(f"A {context.check_request.plan.skill} check hangs in the balance.")
    return " ".join(segments)


def build_markers(context: ExecutionContext) -> list[dict[str, Any]]:
    markers: list[dict[str, Any]] = [
        {"marker": "narrative-beat", "tone": context.player_intent.tone},
        {"marker": "momentum-state", "value": context.scene_frame.momentum},
    ]
    result = context.skill_check_result
    if result is not None:
        markers.append({
            "marker": "check-resolved",
            "skill": context.skill_check_plan.skill,
            "outcome_tier": result.outcome_tier,
            "new_momentum": result.new_momentum,
        })
    if context.check_request is not None:
        markers.append({
            "marker": "check-requested",
            "check_id": context.check_request.id,
            "skill": context.check_request.plan.skill,
            "audit_ref": context.check_request.audit_ref,
        })
    safety = context.safety
    if safety is not None and safety.escalate:
        markers.append({
            "marker": "safety-escalated",
            "flags": list(safety.flags),
            "severity": safety.severity,
            "audit_ref": safety.audit_ref,
        })
    return markers


class NarrativeWeaverNode:
    id = "narrative-weaver"

    async def process(self, context: ExecutionContext) -> ExecutionContext:
        packet = build_narrative_packet(
            context.scene_frame,
            context.content,
            context.player_intent,
            safety=context.safety,
            plan=context.skill_check_plan,
            result=context.skill_check_result,
            check_request=context.check_request,
            window=context.config.history_window,
        )
        content = (await context.complete(packet)).strip()

        used_fallback = not content
        if used_fallback:
            logger.warning(
                "Narrative weaver got empty output, using fallback session=%s turn=%d",
                context.session_id, context.turn_sequence,
            )
            content = fallback_narration(context)

        escalated = context.safety is not None and context.safety.escalate
        context.narrative_event = NarrativeEvent(
            session_id=context.session_id,
            turn_sequence=context.turn_sequence,
            content=content,
            summary=summarize(content),
            markers=build_markers(context),
            degraded=escalated,
        )
        context.record(
            self.id, "redirected" if escalated else "narrated",
            audit_ref=context.safety.audit_ref if escalated else None,
            length=len(content),
            fallback=used_fallback,
        )
        return context
