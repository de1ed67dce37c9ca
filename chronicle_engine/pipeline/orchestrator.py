"""Pipeline orchestrator — runs the node pipeline for one player turn.

Turn flow:
  1. scene-frame        → normalised scene from the session snapshot
  2. intent-intake      → classify the player message (model call, JSON)
  3. safety-gate        → policy categories, escalation flag + audit ref
  4. check-planner      → skill-check plan, resolved inline or deferred
  5. narrative-weaver   → the game-master beat (model call, text)

Nodes are plain objects with an `id` and an async `process(context)`.
Each must append exactly one audit entry. Node errors propagate unmodified
and nothing is retried here. A safety escalation never stops the run; the
later nodes degrade instead.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from chronicle_engine.pipeline.check_planner import CheckPlannerNode
from chronicle_engine.pipeline.context import ExecutionContext
from chronicle_engine.pipeline.intent_intake import IntentIntakeNode
from chronicle_engine.pipeline.narrative_weaver import NarrativeWeaverNode
from chronicle_engine.pipeline.safety_gate import SafetyGateNode
from chronicle_engine.pipeline.scene_frame import SceneFrameNode
from chronicle_engine.telemetry import SessionTelemetry

logger = logging.getLogger(__name__)


class Node(Protocol):
    id: str

    async def process(self, context: ExecutionContext) -> ExecutionContext: ...


class PipelineContractError(RuntimeError):
    """Raised when a node or the finished pipeline breaks the audit/output contract."""


DEFAULT_NODES: tuple[Node, ...] = (
    SceneFrameNode(),
    IntentIntakeNode(),
    SafetyGateNode(),
    CheckPlannerNode(),
    NarrativeWeaverNode(),
)


class Orchestrator:
    def __init__(
        self,
        nodes: Sequence[Node] = DEFAULT_NODES,
        telemetry: SessionTelemetry | None = None,
    ) -> None:
        self.nodes = list(nodes)
        self._telemetry = telemetry

    async def run(self, context: ExecutionContext) -> ExecutionContext:
        """Run every node in order and return the finished context."""
        telemetry = self._telemetry or context.telemetry

        for node in self.nodes:
            telemetry.record_transition(
                context.session_id, node.id, "start", context.turn_sequence
            )
            before = len(context.audit_trail)
            try:
                context = await node.process(context)
                added = len(context.audit_trail) - before
                if added != 1:
                    raise PipelineContractError(
                        f"Node {node.id!r} appended {added} audit entries, expected exactly 1"
                    )
            except Exception as e:
                telemetry.record_transition(
                    context.session_id, node.id, "error", context.turn_sequence,
                    error=f"{type(e).__name__}: {e}",
                )
                raise
            telemetry.record_transition(
                context.session_id, node.id, "success", context.turn_sequence,
                decision=context.audit_trail[-1].decision,
            )

        event = context.narrative_event
        if event is None or not event.content.strip():
            raise PipelineContractError("Pipeline finished without narrative content")
        return context
