"""Check planner node: decide on a skill check and resolve or defer it.

Inline resolution needs a character sheet and inline mode; otherwise the
plan is packaged as a CheckRequestEnvelope for an external resolution
engine. Escalated turns never get a check.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from chronicle_engine.llm import parse_json_output
from chronicle_engine.mechanics import resolve_check, stat_modifier
from chronicle_engine.models import CheckRequestEnvelope, Intent, SkillCheckPlan
from chronicle_engine.pipeline.context import ExecutionContext
from chronicle_engine.prompts import build_check_packet

logger = logging.getLogger(__name__)

RISK_LEVELS = ("controlled", "standard", "risky", "desperate")
ADVANTAGE_STATES = ("advantage", "disadvantage", "none")
MAX_COMPLICATION_SEEDS = 3


def build_plan(intent: Intent, data: dict[str, Any] | None, momentum: int) -> SkillCheckPlan:
    """Build a plan from the model's answer, field by field with defaults."""
    data = data or {}

    risk_level = data.get("risk_level")
    if risk_level not in RISK_LEVELS:
        risk_level = "standard"

    proposed = data.get("advantage")
    if proposed not in ADVANTAGE_STATES:
        proposed = "none"

    rationale = data.get("rationale")
    if not isinstance(rationale, str) or not rationale.strip():
        rationale = f"{intent.skill} ({intent.attribute}) carries uncertainty."

    seeds = data.get("complication_seeds")
    if not isinstance(seeds, list):
        seeds = []
    seeds = [s.strip() for s in seeds if isinstance(s, str) and s.strip()]

    return SkillCheckPlan(
        skill=intent.skill,
        attribute=intent.attribute,
        risk_level=risk_level,
        advantage=combine_advantage(proposed, intent.creative_spark, momentum),
        rationale=rationale.strip(),
        complication_seeds=seeds[:MAX_COMPLICATION_SEEDS],
    )


def combine_advantage(proposed: str, creative_spark: bool, momentum: int) -> str:
    advantage = proposed == "advantage" or creative_spark or momentum >= 2
    disadvantage = proposed == "disadvantage" or momentum <= -2
    if advantage and not disadvantage:
        return "advantage"
    if disadvantage and not advantage:
        return "disadvantage"
    return "none"


def build_envelope(
    context: ExecutionContext,
    plan: SkillCheckPlan,
    audit_ref: str,
    prompt: str,
) -> CheckRequestEnvelope:
    character = context.session.character
    safety_flags = list(context.safety.flags) if context.safety is not None else []
    flags = ["creative-spark"] if context.player_intent.creative_spark else []
    flags.extend(f"safety:{flag}" for flag in safety_flags)
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=context.config.check_expiry_seconds)
    return CheckRequestEnvelope(
        session_id=context.session_id,
        turn_sequence=context.turn_sequence,
        audit_ref=audit_ref,
        player_id=context.player_id,
        plan=plan,
        flags=flags,
        safety_flags=safety_flags,
        momentum=context.scene_frame.momentum,
        stat_value=stat_modifier(character, plan.skill, plan.attribute) if character else None,
        prompt_hash=hashlib.sha256(prompt.encode("utf-8")).hexdigest(),
        expires_at=expires_at.isoformat(),
    )


class CheckPlannerNode:
    id = "check-planner"

    async def process(self, context: ExecutionContext) -> ExecutionContext:
        intent = context.player_intent
        if not intent.requires_check:
            context.record(self.id, "skipped", reason="no_check_required")
            return context
        if context.safety is not None and context.safety.escalate:
            context.record(self.id, "skipped", reason="safety_escalation")
            return context

        packet = build_check_packet(context.scene_frame, intent)
        output = await context.complete(packet)
        data = parse_json_output(output)
        if data is None:
            logger.warning(
                "Check planner used default plan session=%s turn=%d",
                context.session_id, context.turn_sequence,
            )

        plan = build_plan(intent, data, context.scene_frame.momentum)
        context.skill_check_plan = plan
        audit_ref = context.tools.generate_audit_ref(
            "check", context.session_id, context.turn_sequence
        )

        character = context.session.character
        if context.config.check_resolution == "inline" and character is not None:
            result = resolve_check(plan, character, rng=context.rng)
            context.skill_check_result = result
            context.record(
                self.id, "resolved",
                audit_ref=audit_ref,
                skill=plan.skill,
                risk_level=plan.risk_level,
                advantage=plan.advantage,
                outcome_tier=result.outcome_tier,
                margin=result.margin,
            )
            return context

        envelope = build_envelope(context, plan, audit_ref, packet.prompt)
        context.check_request = envelope
        context.record(
            self.id, "deferred",
            audit_ref=audit_ref,
            check_id=envelope.id,
            skill=plan.skill,
            risk_level=plan.risk_level,
            advantage=plan.advantage,
        )
        return context
