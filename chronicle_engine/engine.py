"""Turn engine — entry point for one player message.

Phases of a single handle_turn call:

    IDLE → SESSION_ENSURED → PLAYER_MESSAGE_STAGED → PIPELINE_EXECUTING
         → PIPELINE_RESOLVED → SIDE_EFFECTS_COMMITTED → RETURNED

The player message is only staged while the pipeline runs. Player and GM
messages are committed together as one Turn once the pipeline has resolved,
so a failed turn leaves the session exactly as it was. Once the turn is
committed it stands: a check dispatch or moderation escalation that fails
afterwards is logged, recorded in telemetry and reported on the result.

Calls for the same session are serialised by a per-session lock. Check
resolutions, vetoes and character updates that arrive while a turn holds
the lock are queued and applied before the lock is released.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import Counter, defaultdict
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any

from chronicle_engine.bus import CheckBus, CheckDispatcher, ModerationQueue
from chronicle_engine.config import PipelineSettings
from chronicle_engine.llm import LLM
from chronicle_engine.models import (
    Character,
    CheckResolution,
    CheckVeto,
    ModerationAlert,
    SessionState,
    TranscriptEntry,
    Turn,
    TurnResult,
)
from chronicle_engine.pipeline import DEFAULT_NODES, ExecutionContext, Node, Orchestrator
from chronicle_engine.storage import SessionStore, is_valid_session_id
from chronicle_engine.telemetry import SessionTelemetry
from chronicle_engine.tools import ToolHarness
from chronicle_engine.world import LocationSource

logger = logging.getLogger(__name__)


class TurnValidationError(ValueError):
    """Raised for malformed turn input, before any state is touched."""


class TurnPhase(str, Enum):
    IDLE = "idle"
    SESSION_ENSURED = "session_ensured"
    PLAYER_MESSAGE_STAGED = "player_message_staged"
    PIPELINE_EXECUTING = "pipeline_executing"
    PIPELINE_RESOLVED = "pipeline_resolved"
    SIDE_EFFECTS_COMMITTED = "side_effects_committed"
    RETURNED = "returned"


class SessionLocks:
    """One asyncio.Lock per session id, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: Counter[str] = Counter()

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._users[session_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if not self._users[session_id]:
                del self._users[session_id]
                del self._locks[session_id]

    def locked(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class TurnEngine:
    def __init__(
        self,
        store: SessionStore,
        llm: LLM,
        bus: CheckDispatcher | None = None,
        moderation: ModerationQueue | None = None,
        telemetry: SessionTelemetry | None = None,
        locations: LocationSource | None = None,
        config: PipelineSettings | None = None,
        nodes: Sequence[Node] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.bus = bus if bus is not None else CheckBus()
        self.moderation = moderation if moderation is not None else self.bus
        self.telemetry = telemetry or SessionTelemetry()
        self.config = config or PipelineSettings()
        self.tools = ToolHarness(store, self.bus, self.moderation, self.telemetry)
        self.orchestrator = Orchestrator(nodes if nodes is not None else DEFAULT_NODES, self.telemetry)
        self.llm = llm
        self.locations = locations
        self.rng = rng
        self.locks = SessionLocks()
        # Phase of each in-flight turn; entries are removed when the turn ends.
        self.phases: dict[str, TurnPhase] = {}
        self._queued: defaultdict[str, list[Callable[[], SessionState]]] = defaultdict(list)

        if isinstance(self.bus, CheckBus):
            self.bus.on_check_resolved(self.handle_check_resolved)
            self.bus.on_check_vetoed(self.handle_check_vetoed)

    def _advance(self, session_id: str, phase: TurnPhase) -> None:
        self.phases[session_id] = phase
        logger.debug("session=%s phase=%s", session_id, phase.value)

    @staticmethod
    def _validate(session_id: Any, player_id: Any, content: Any, metadata: Any) -> None:
        if not isinstance(session_id, str) or not session_id.strip():
            raise TurnValidationError("session_id is required")
        if not is_valid_session_id(session_id):
            raise TurnValidationError(
                "session_id may only contain letters, digits, '_', '-' and '.', "
                "and must not start with '.'"
            )
        if not isinstance(player_id, str) or not player_id.strip():
            raise TurnValidationError("player_id is required")
        if not isinstance(content, str) or not content.strip():
            raise TurnValidationError("content must be a non-empty string")
        if metadata is not None and not isinstance(metadata, dict):
            raise TurnValidationError("metadata must be a mapping")

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def handle_turn(
        self,
        session_id: str,
        player_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> TurnResult:
        """Process one player message and return the committed turn."""
        self._validate(session_id, player_id, content, metadata)

        async with self.locks.hold(session_id):
            try:
                return await self._run_turn(session_id, player_id, content, metadata)
            finally:
                self._apply_queued(session_id)
                self.phases.pop(session_id, None)

    async def _run_turn(
        self,
        session_id: str,
        player_id: str,
        content: str,
        metadata: dict[str, Any] | None,
    ) -> TurnResult:
        self._advance(session_id, TurnPhase.IDLE)
        state = self.tools.load_session(session_id)
        if self.locations is not None and state.character is not None:
            location = await self.locations.get_location(state.character.id)
            if location is not None:
                self.tools.set_location(session_id, location)
        self._advance(session_id, TurnPhase.SESSION_ENSURED)

        snapshot = self.tools.snapshot_session(session_id)
        turn_sequence = snapshot.turn_sequence + 1
        player_message = TranscriptEntry(
            role="player",
            content=content.strip(),
            player_id=player_id,
            turn_sequence=turn_sequence,
            metadata=dict(metadata or {}),
        )
        self._advance(session_id, TurnPhase.PLAYER_MESSAGE_STAGED)

        context = ExecutionContext(
            session_id=session_id,
            player_id=player_id,
            turn_sequence=turn_sequence,
            message=player_message,
            session=snapshot,
            tools=self.tools,
            llm=self.llm,
            telemetry=self.telemetry,
            config=self.config,
            rng=self.rng,
        )
        self._advance(session_id, TurnPhase.PIPELINE_EXECUTING)
        try:
            context = await self.orchestrator.run(context)
        except Exception:
            logger.exception(
                "Turn failed session=%s turn=%d; session left unchanged",
                session_id, turn_sequence,
            )
            raise
        self._advance(session_id, TurnPhase.PIPELINE_RESOLVED)

        turn = self._build_turn(context)
        self.tools.commit_turn(session_id, turn)
        failures = self._publish(session_id, context)
        self._advance(session_id, TurnPhase.SIDE_EFFECTS_COMMITTED)

        safety = context.safety
        logger.info(
            "Turn %d resolved session=%s check=%s escalated=%s",
            turn_sequence, session_id,
            "inline" if context.skill_check_result else
            "deferred" if context.check_request else "none",
            bool(safety and safety.escalate),
        )
        result = TurnResult(
            narrative_event=context.narrative_event,
            check_request=context.check_request,
            safety=safety,
            audit_trail=list(context.audit_trail),
            prompt_packets=list(context.prompt_packets),
            session_state=self.tools.snapshot_session(session_id),
            turn=turn,
            side_effect_failures=failures,
        )
        self._advance(session_id, TurnPhase.RETURNED)
        return result

    def _publish(self, session_id: str, context: ExecutionContext) -> list[str]:
        """Dispatch the deferred check and escalate to moderation.

        Runs after the turn is committed. A failing downstream system does not
        fail the turn; the failed operation names are returned instead.
        """
        failures: list[str] = []
        if context.check_request is not None:
            try:
                self.tools.dispatch_check_request(session_id, context.check_request)
            except Exception:
                logger.exception(
                    "Check dispatch failed session=%s check=%s; turn %d stays committed",
                    session_id, context.check_request.id, context.turn_sequence,
                )
                failures.append("dispatch_check_request")

        safety = context.safety
        if safety is not None and safety.escalate:
            alert = ModerationAlert(
                session_id=session_id,
                audit_ref=safety.audit_ref,
                severity=safety.severity,
                flags=list(safety.flags),
                reason=safety.reason,
            )
            try:
                self.tools.escalate_moderation(session_id, alert)
            except Exception:
                logger.exception(
                    "Moderation escalation failed session=%s audit_ref=%s; turn %d stays committed",
                    session_id, safety.audit_ref, context.turn_sequence,
                )
                failures.append("escalate_moderation")
        return failures

    @staticmethod
    def _build_turn(context: ExecutionContext) -> Turn:
        event = context.narrative_event
        gm_message = TranscriptEntry(
            role="gm",
            content=event.content,
            turn_sequence=context.turn_sequence,
            markers=event.markers,
            metadata={
                "summary": event.summary,
                "degraded": event.degraded,
                "prompt_packets": [p.model_dump() for p in context.prompt_packets],
            },
        )

        notes: list[str] = []
        safety = context.safety
        if safety is not None and safety.escalate:
            notes.append(f"Moderator review requested ({safety.audit_ref}).")
        if context.check_request is not None:
            notes.append(
                f"{context.check_request.plan.skill} check pending ({context.check_request.id})."
            )
        system_message = None
        if notes:
            system_message = TranscriptEntry(
                role="system", content=" ".join(notes), turn_sequence=context.turn_sequence
            )

        return Turn(
            turn_sequence=context.turn_sequence,
            player_message=context.message,
            gm_message=gm_message,
            system_message=system_message,
            player_intent=context.player_intent,
            skill_check_plan=context.skill_check_plan,
            skill_check_result=context.skill_check_result,
            check_request_id=context.check_request.id if context.check_request else None,
            gm_summary=event.summary,
            safety=safety,
            audit_trail=list(context.audit_trail),
        )

    # ------------------------------------------------------------------
    # Session setup and resolution callbacks
    # ------------------------------------------------------------------

    def _apply_or_queue(
        self, session_id: str, operation: Callable[[], SessionState]
    ) -> SessionState | None:
        """Apply now, or queue until the turn holding the session is done."""
        if self.locks.locked(session_id):
            self._queued[session_id].append(operation)
            logger.debug("session=%s busy; queued update until the turn ends", session_id)
            return None
        return operation()

    def _apply_queued(self, session_id: str) -> None:
        for operation in self._queued.pop(session_id, []):
            try:
                operation()
            except Exception:
                logger.exception("Queued update failed session=%s", session_id)

    def set_character(self, session_id: str, character: Character) -> SessionState | None:
        character = character.model_copy(deep=True)
        return self._apply_or_queue(
            session_id, lambda: self.tools.set_character(session_id, character)
        )

    def handle_check_resolved(self, resolution: CheckResolution) -> SessionState | None:
        return self._apply_or_queue(
            resolution.session_id, lambda: self.tools.record_check_resolution(resolution)
        )

    def handle_check_vetoed(self, veto: CheckVeto) -> SessionState | None:
        return self._apply_or_queue(
            veto.session_id, lambda: self.tools.record_check_veto(veto)
        )
