"""Execution context threaded through the node pipeline for one turn."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from chronicle_engine.config import PipelineSettings
from chronicle_engine.llm import LLM, LLMError
from chronicle_engine.models import (
    AuditEntry,
    CheckRequestEnvelope,
    Intent,
    NarrativeEvent,
    PromptPacket,
    SafetyAssessment,
    SceneFrame,
    SessionState,
    SkillCheckPlan,
    SkillCheckResult,
    TranscriptEntry,
)
from chronicle_engine.telemetry import SessionTelemetry
from chronicle_engine.tools import ToolHarness

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """Created once per turn and owned by that turn's pipeline run.

    `session` is a snapshot; nodes read it but never write it back.
    Each node writes only its own output field and appends exactly one
    audit entry.
    """

    session_id: str
    player_id: str
    turn_sequence: int
    message: TranscriptEntry
    session: SessionState
    tools: ToolHarness
    llm: LLM
    telemetry: SessionTelemetry
    config: PipelineSettings = field(default_factory=PipelineSettings)
    rng: Any = None
    audit_trail: list[AuditEntry] = field(default_factory=list)
    prompt_packets: list[PromptPacket] = field(default_factory=list)

    # Node outputs
    scene_frame: SceneFrame | None = None
    player_intent: Intent | None = None
    safety: SafetyAssessment | None = None
    skill_check_plan: SkillCheckPlan | None = None
    skill_check_result: SkillCheckResult | None = None
    check_request: CheckRequestEnvelope | None = None
    narrative_event: NarrativeEvent | None = None

    @property
    def content(self) -> str:
        return self.message.content

    def record(
        self,
        node_id: str,
        decision: str,
        audit_ref: str | None = None,
        **detail: Any,
    ) -> AuditEntry:
        entry = AuditEntry(node_id=node_id, decision=decision, detail=detail, audit_ref=audit_ref)
        self.audit_trail.append(entry)
        return entry

    async def complete(self, packet: PromptPacket) -> str:
        """Call the model client under the per-call timeout."""
        self.prompt_packets.append(packet)
        timeout = self.config.model_call_timeout
        try:
            return await asyncio.wait_for(self.llm(packet), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise LLMError(f"Model call for {packet.stage} timed out after {timeout}s") from e
