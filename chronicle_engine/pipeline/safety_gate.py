"""Safety gate node: policy categories over the player message. No model call.

Every matching category adds its flag. Any flag at or above the configured
threshold escalates the turn and stamps an audit ref for moderation. The
gate never drops a turn; the planner and weaver degrade on escalation.
"""

from __future__ import annotations

import logging
import re

from chronicle_engine.models import SEVERITY_ORDER, SafetyAssessment
from chronicle_engine.pipeline.context import ExecutionContext

logger = logging.getLogger(__name__)

# (pattern, flag, severity)
SAFETY_CATEGORIES: list[tuple[re.Pattern[str], str, str]] = [
    (
        re.compile(r"\b(time\s?travel|rewrite\s+history|undo\s+the\s+past)\b", re.I),
        "prohibited-capability:time-travel",
        "high",
    ),
    (
        re.compile(r"\b(mind\s?control|enslave|mass\s+hypnosis)\b", re.I),
        "prohibited-capability:mass-mind-control",
        "high",
    ),
    (
        re.compile(
            r"\b(mass\s+casualty|planetary\s+strike|genocide|massacre|"
            r"kill\s+(everyone|them\s+all))\b",
            re.I,
        ),
        "content-warning:mass-casualty",
        "high",
    ),
    (
        re.compile(r"\b(kill\s+myself|suicide|self[-\s]?harm|hurt\s+myself|end\s+my\s+life)\b", re.I),
        "self-harm",
        "critical",
    ),
    (
        re.compile(
            r"\b(child|children|minor|underage|kid)s?\b.*\b(sex|sexual|nude|explicit)\b"
            r"|\b(sex|sexual|nude|explicit)\b.*\b(child|children|minor|underage|kid)s?\b",
            re.I | re.S,
        ),
        "sexual-content-minors",
        "critical",
    ),
    (
        re.compile(r"\b(terrorist\s+attack|school\s+shooting|build\s+a\s+(pipe\s+)?bomb)\b", re.I),
        "real-world-extremism",
        "high",
    ),
    (
        re.compile(r"\b(tortur\w*|flay\w*|dismember\w*)\b", re.I),
        "graphic-torture",
        "medium",
    ),
]


def severity_rank(severity: str) -> int:
    return SEVERITY_ORDER.index(severity)


def assess(text: str, threshold: str) -> SafetyAssessment:
    """Flag every category the text matches. Does not stamp an audit ref."""
    flags: list[str] = []
    severity = "none"
    for pattern, flag, flag_severity in SAFETY_CATEGORIES:
        if pattern.search(text) and flag not in flags:
            flags.append(flag)
            if severity_rank(flag_severity) > severity_rank(severity):
                severity = flag_severity

    if not flags:
        return SafetyAssessment()

    escalate = severity_rank(severity) >= severity_rank(threshold)
    if escalate:
        reason = "policy categories " + ", ".join(flags)
    else:
        reason = f"flags below {threshold} threshold: " + ", ".join(flags)
    return SafetyAssessment(escalate=escalate, severity=severity, flags=flags, reason=reason)


class SafetyGateNode:
    id = "safety-gate"

    async def process(self, context: ExecutionContext) -> ExecutionContext:
        text = context.content
        if context.player_intent is not None:
            text = f"{text}\n{context.player_intent.intent_summary}"

        safety = assess(text, context.config.safety_threshold)
        if safety.escalate:
            safety.audit_ref = context.tools.generate_audit_ref(
                "safety", context.session_id, context.turn_sequence
            )
            logger.warning(
                "Safety escalation session=%s turn=%d severity=%s flags=%s",
                context.session_id, context.turn_sequence, safety.severity, safety.flags,
            )

        context.safety = safety
        context.record(
            self.id, "escalate" if safety.escalate else "clear",
            audit_ref=safety.audit_ref,
            severity=safety.severity,
            flags=list(safety.flags),
        )
        return context
