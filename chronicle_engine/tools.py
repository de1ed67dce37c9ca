"""Tool harness: the only component allowed to perform side effects.

Nodes never touch the session store or the bus directly; the turn engine
commits their results through this harness once the pipeline has resolved.
Every failing operation is recorded in telemetry and re-raised. Nothing is
retried here.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar
from uuid import uuid4

from chronicle_engine.bus import CheckDispatcher, ModerationQueue
from chronicle_engine.models import (
    Character,
    CheckRequestEnvelope,
    CheckResolution,
    CheckVeto,
    LocationSummary,
    ModerationAlert,
    SessionState,
    Turn,
)
from chronicle_engine.storage import SessionStore
from chronicle_engine.telemetry import SessionTelemetry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ToolHarness:
    def __init__(
        self,
        store: SessionStore,
        dispatcher: CheckDispatcher,
        moderation: ModerationQueue,
        telemetry: SessionTelemetry,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._moderation = moderation
        self._telemetry = telemetry

    def _run(
        self,
        operation: str,
        session_id: str,
        action: Callable[[], T],
        reference_id: str | None = None,
    ) -> T:
        try:
            return action()
        except Exception as e:
            self._telemetry.record_tool_error(
                session_id, operation, str(e), reference_id=reference_id
            )
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load_session(self, session_id: str) -> SessionState:
        return self._store.ensure_session(session_id)

    def snapshot_session(self, session_id: str) -> SessionState:
        return self._store.snapshot(session_id)

    @staticmethod
    def generate_audit_ref(component: str, session_id: str, turn_sequence: int) -> str:
        return f"{component}:{session_id}:{turn_sequence}:{uuid4()}"

    # ------------------------------------------------------------------
    # Session writes
    # ------------------------------------------------------------------

    def commit_turn(self, session_id: str, turn: Turn) -> SessionState:
        """Append the finished turn and apply an inline check's momentum.

        The check was rolled against a snapshot, so only its delta is applied
        to the live character.
        """

        def _commit() -> SessionState:
            state = self._store.add_turn(session_id, turn)
            result = turn.skill_check_result
            if result is not None:
                state = self._store.adjust_momentum(session_id, result.momentum_delta)
            return state

        return self._run("commit_turn", session_id, _commit, reference_id=str(turn.turn_sequence))

    def set_character(self, session_id: str, character: Character) -> SessionState:
        return self._run(
            "set_character", session_id,
            lambda: self._store.set_character(session_id, character),
            reference_id=character.id,
        )

    def set_location(self, session_id: str, location: LocationSummary) -> SessionState:
        return self._run(
            "set_location", session_id,
            lambda: self._store.set_location(session_id, location),
            reference_id=location.id,
        )

    # ------------------------------------------------------------------
    # Downstream systems
    # ------------------------------------------------------------------

    def dispatch_check_request(self, session_id: str, envelope: CheckRequestEnvelope) -> None:
        def _dispatch() -> None:
            self._store.record_check_request(session_id, envelope)
            self._dispatcher.dispatch(envelope)
            self._telemetry.record_check_dispatch(session_id, envelope.id, envelope.audit_ref)

        self._run("dispatch_check_request", session_id, _dispatch, reference_id=envelope.id)

    def escalate_moderation(self, session_id: str, alert: ModerationAlert) -> None:
        def _escalate() -> None:
            self._moderation.escalate(alert)
            self._telemetry.record_safety_event(
                session_id, alert.audit_ref, alert.severity, alert.flags, alert.reason
            )

        self._run("escalate_moderation", session_id, _escalate, reference_id=alert.audit_ref)

    def record_check_resolution(self, resolution: CheckResolution) -> SessionState:
        def _record() -> SessionState:
            state = self._store.record_check_resolution(resolution.session_id, resolution)
            self._telemetry.record_check_resolution(
                resolution.session_id, resolution.id, resolution.outcome_tier,
                audit_ref=resolution.audit_ref,
            )
            return state

        return self._run(
            "record_check_resolution", resolution.session_id, _record, reference_id=resolution.id
        )

    def record_check_veto(self, veto: CheckVeto) -> SessionState:
        def _record() -> SessionState:
            state = self._store.record_check_veto(veto.session_id, veto)
            self._telemetry.record_safety_event(
                veto.session_id, veto.audit_ref, "high", veto.safety_flags, veto.reason
            )
            return state

        return self._run("record_check_veto", veto.session_id, _record, reference_id=veto.id)


