"""Core domain models.

All pipeline nodes, the session store and the tool harness operate on these
types. Pydantic is used for validation and serialisation at every data
boundary.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Mechanics vocabulary
# ---------------------------------------------------------------------------

Attribute = Literal[
    "vitality",
    "finesse",
    "focus",
    "resolve",
    "attunement",
    "ingenuity",
    "presence",
]
ATTRIBUTES: tuple[str, ...] = (
    "vitality", "finesse", "focus", "resolve", "attunement", "ingenuity", "presence",
)

AttributeTier = Literal["rudimentary", "standard", "advanced", "superior", "transcendent"]
SkillTier = Literal["fool", "apprentice", "artisan", "virtuoso", "legend"]
RiskLevel = Literal["controlled", "standard", "risky", "desperate"]
OutcomeTier = Literal["breakthrough", "advance", "stall", "regress", "collapse"]
AdvantageState = Literal["advantage", "disadvantage", "none"]

Severity = Literal["none", "low", "medium", "high", "critical"]
SEVERITY_ORDER: tuple[str, ...] = ("none", "low", "medium", "high", "critical")

IntentType = Literal[
    "action",
    "inquiry",
    "clarification",
    "possibility",
    "planning",
    "reflection",
]

Role = Literal["player", "gm", "system"]


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

class TranscriptEntry(BaseModel):
    """One line of the chronicle transcript (player, GM or system)."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    role: Role
    content: str
    player_id: str | None = None
    turn_sequence: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    markers: list[dict[str, Any]] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Character & location
# ---------------------------------------------------------------------------

class MomentumState(BaseModel):
    current: int = 0
    floor: int = -2
    ceiling: int = 3


class Skill(BaseModel):
    name: str
    attribute: Attribute
    tier: SkillTier = "apprentice"


class Character(BaseModel):
    """Latest known character sheet for a session."""

    id: str
    name: str
    attributes: dict[str, AttributeTier] = Field(default_factory=dict)
    skills: dict[str, Skill] = Field(default_factory=dict)
    momentum: MomentumState = Field(default_factory=MomentumState)
    tags: list[str] = Field(default_factory=list)


class LocationSummary(BaseModel):
    """Read-only location snapshot supplied by the world service."""

    id: str
    name: str
    description: str = ""
    atmosphere: str | None = None
    tags: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Node outputs
# ---------------------------------------------------------------------------

class BeatDirective(BaseModel):
    kind: Literal["new", "existing", "independent"]
    summary: str | None = None


class Intent(BaseModel):
    """Structured classification of the player's message."""

    intent_summary: str
    intent_type: IntentType = "action"
    tone: str = "narrative"
    skill: str = "talk"
    attribute: Attribute = "focus"
    requires_check: bool = False
    creative_spark: bool = False
    beat_directive: BeatDirective | None = None
    router_confidence: float | None = None
    router_rationale: str | None = None
    tags: list[str] = Field(default_factory=list)


class SceneFrame(BaseModel):
    """Normalised ambient context assembled by the scene-frame node."""

    character_name: str | None = None
    momentum: int = 0
    top_skills: list[str] = Field(default_factory=list)
    location_name: str | None = None
    location_description: str = ""
    atmosphere: str | None = None
    recent_turns: list[dict[str, Any]] = Field(default_factory=list)
    turn_count: int = 0


class SafetyAssessment(BaseModel):
    escalate: bool = False
    severity: Severity = "none"
    flags: list[str] = Field(default_factory=list)
    reason: str = ""
    audit_ref: str | None = None


class SkillCheckPlan(BaseModel):
    skill: str
    attribute: Attribute
    risk_level: RiskLevel = "standard"
    advantage: AdvantageState = "none"
    rationale: str = ""
    complication_seeds: list[str] = Field(default_factory=list)


class SkillCheckResult(BaseModel):
    check_id: str
    die_sum: int
    total_modifier: int
    target: int
    margin: int
    outcome_tier: OutcomeTier
    advantage: bool = False
    disadvantage: bool = False
    new_momentum: int = 0
    momentum_delta: int = 0


class CheckRequestEnvelope(BaseModel):
    """A skill check handed to an external resolution engine.

    Carries everything the resolver needs to compute an outcome without
    reading the narrative text.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    turn_sequence: int
    audit_ref: str
    player_id: str
    plan: SkillCheckPlan
    flags: list[str] = Field(default_factory=list)
    # Safety flags that stayed below the escalation threshold; the resolver
    # may still veto on them.
    safety_flags: list[str] = Field(default_factory=list)
    momentum: int = 0
    stat_value: int | None = None
    prompt_hash: str = ""
    expires_at: str
    created_at: str = Field(default_factory=utc_now)


class CheckResolution(BaseModel):
    id: str
    session_id: str
    audit_ref: str | None = None
    outcome_tier: OutcomeTier
    die_sum: int | None = None
    margin: int | None = None
    new_momentum: int | None = None
    received_at: str = Field(default_factory=utc_now)


class CheckVeto(BaseModel):
    id: str
    session_id: str
    audit_ref: str | None = None
    reason: str = "safety policy"
    safety_flags: list[str] = Field(default_factory=list)
    recorded_at: str = Field(default_factory=utc_now)


class ModerationAlert(BaseModel):
    session_id: str
    audit_ref: str
    severity: Severity
    flags: list[str] = Field(default_factory=list)
    reason: str


class AuditEntry(BaseModel):
    """One node's record of what it decided and why."""

    node_id: str
    decision: str
    detail: dict[str, Any] = Field(default_factory=dict)
    audit_ref: str | None = None
    recorded_at: str = Field(default_factory=utc_now)


class NarrativeEvent(BaseModel):
    session_id: str
    turn_sequence: int
    content: str
    summary: str = ""
    markers: list[dict[str, Any]] = Field(default_factory=list)
    degraded: bool = False


class PromptPacket(BaseModel):
    """Structured input to the model client."""

    stage: str
    prompt: str
    system: str = ""
    response_format: Literal["json", "text"] = "text"
    temperature: float = 0.7
    max_tokens: int = 450


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class Turn(BaseModel):
    """One complete player/GM exchange. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    turn_sequence: int
    player_message: TranscriptEntry
    gm_message: TranscriptEntry
    system_message: TranscriptEntry | None = None
    player_intent: Intent
    skill_check_plan: SkillCheckPlan | None = None
    skill_check_result: SkillCheckResult | None = None
    check_request_id: str | None = None
    gm_summary: str | None = None
    safety: SafetyAssessment | None = None
    audit_trail: list[AuditEntry] = Field(default_factory=list)


class SessionState(BaseModel):
    """Per-session mutable state owned by the SessionStore."""

    session_id: str
    turn_sequence: int = 0
    character: Character | None = None
    location: LocationSummary | None = None
    turns: list[Turn] = Field(default_factory=list)
    pending_checks: dict[str, CheckRequestEnvelope] = Field(default_factory=dict)
    resolved_checks: list[CheckResolution] = Field(default_factory=list)
    vetoed_checks: list[CheckVeto] = Field(default_factory=list)


class TurnResult(BaseModel):
    """What handle_turn hands back to its caller."""

    narrative_event: NarrativeEvent
    check_request: CheckRequestEnvelope | None = None
    safety: SafetyAssessment | None = None
    audit_trail: list[AuditEntry]
    prompt_packets: list[PromptPacket] = Field(default_factory=list)
    session_state: SessionState
    turn: Turn
    # Downstream operations that failed after the turn was committed.
    side_effect_failures: list[str] = Field(default_factory=list)
