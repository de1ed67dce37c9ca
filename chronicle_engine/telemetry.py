"""Append-only telemetry / audit recorder.

Node transitions and the check and safety lifecycle are recorded per
session. Events are never rewritten; readers get copies.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Literal

from pydantic import BaseModel, Field

from chronicle_engine.models import utc_now

logger = logging.getLogger(__name__)

EventKind = Literal[
    "transition",
    "tool_error",
    "check_dispatch",
    "check_resolution",
    "safety_event",
]


class TelemetryEvent(BaseModel):
    kind: EventKind
    session_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    recorded_at: str = Field(default_factory=utc_now)


class SessionTelemetry:
    def __init__(self) -> None:
        self._events: dict[str, list[TelemetryEvent]] = defaultdict(list)

    def _append(self, kind: EventKind, session_id: str, **data: Any) -> TelemetryEvent:
        event = TelemetryEvent(kind=kind, session_id=session_id, data=data)
        self._events[session_id].append(event)
        return event

    def events(self, session_id: str, kind: EventKind | None = None) -> list[TelemetryEvent]:
        return [
            e.model_copy(deep=True)
            for e in self._events.get(session_id, [])
            if kind is None or e.kind == kind
        ]

    # ------------------------------------------------------------------
    # Recorders
    # ------------------------------------------------------------------

    def record_transition(
        self,
        session_id: str,
        node_id: str,
        status: Literal["start", "success", "error"],
        turn_sequence: int,
        **metadata: Any,
    ) -> None:
        self._append(
            "transition", session_id,
            node_id=node_id, status=status, turn_sequence=turn_sequence, **metadata,
        )
        logger.debug(
            "node %s %s session=%s turn=%d", node_id, status, session_id, turn_sequence
        )

    def record_tool_error(
        self,
        session_id: str,
        operation: str,
        message: str,
        reference_id: str | None = None,
    ) -> None:
        self._append(
            "tool_error", session_id,
            operation=operation, message=message, reference_id=reference_id,
        )
        logger.warning("tool %s failed session=%s: %s", operation, session_id, message)

    def record_check_dispatch(self, session_id: str, check_id: str, audit_ref: str) -> None:
        self._append("check_dispatch", session_id, check_id=check_id, audit_ref=audit_ref)
        logger.info("check %s dispatched session=%s", check_id, session_id)

    def record_check_resolution(
        self,
        session_id: str,
        check_id: str,
        outcome_tier: str,
        audit_ref: str | None = None,
    ) -> None:
        self._append(
            "check_resolution", session_id,
            check_id=check_id, outcome_tier=outcome_tier, audit_ref=audit_ref,
        )
        logger.info("check %s resolved as %s session=%s", check_id, outcome_tier, session_id)

    def record_safety_event(
        self,
        session_id: str,
        audit_ref: str | None,
        severity: str,
        flags: list[str],
        reason: str,
    ) -> None:
        self._append(
            "safety_event", session_id,
            audit_ref=audit_ref, severity=severity, flags=list(flags), reason=reason,
        )
        logger.warning(
            "safety event session=%s severity=%s flags=%s", session_id, severity, flags
        )
