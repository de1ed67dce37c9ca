"""Session store.

Owns all per-session mutable state: turn sequence, latest character sheet,
latest location and the ordered, append-only turn history. One store object
is constructed at process start and handed to the tool harness; nothing else
mutates session state.

State lives in memory. When constructed with a base path, every mutation is
also written through to a flat JSON file per session:

    {base}/
      sessions/
        {session_id}.json     ← SessionState
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from chronicle_engine.models import (
    Character,
    CheckRequestEnvelope,
    CheckResolution,
    CheckVeto,
    LocationSummary,
    SessionState,
    Turn,
)

logger = logging.getLogger(__name__)

# Session ids double as file names, so they must not contain path separators
# or start with a dot.
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]*$")


def is_valid_session_id(session_id: str) -> bool:
    return isinstance(session_id, str) and bool(SESSION_ID_PATTERN.match(session_id))


class InvalidSessionIdError(ValueError):
    """Raised for a session id that cannot be used as a file name."""


class SequenceConflictError(RuntimeError):
    """Raised when a turn's stamped sequence is not the next one for its session."""

    def __init__(self, session_id: str, expected: int, received: int) -> None:
        super().__init__(
            f"Turn sequence conflict for session {session_id!r}: "
            f"expected {expected}, received {received}"
        )
        self.session_id = session_id
        self.expected = expected
        self.received = received


class SessionStore:
    def __init__(self, base_path: Path | None = None) -> None:
        self._sessions: dict[str, SessionState] = {}
        self._dir: Path | None = None
        if base_path is not None:
            self._dir = base_path / "sessions"
            self._dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal persistence helpers
    # ------------------------------------------------------------------

    def _session_file(self, session_id: str) -> Path | None:
        if self._dir is None:
            return None
        return self._dir / f"{session_id}.json"

    def _load(self, session_id: str) -> SessionState | None:
        path = self._session_file(session_id)
        if path is None or not path.exists():
            return None
        return SessionState.model_validate_json(path.read_text())

    def _save(self, state: SessionState) -> None:
        path = self._session_file(state.session_id)
        if path is not None:
            path.write_text(state.model_dump_json(indent=2))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def ensure_session(self, session_id: str) -> SessionState:
        """Return the session, creating a zeroed one on first reference."""
        if not is_valid_session_id(session_id):
            raise InvalidSessionIdError(f"Invalid session id: {session_id!r}")
        state = self._sessions.get(session_id)
        if state is None:
            state = self._load(session_id) or SessionState(session_id=session_id)
            self._sessions[session_id] = state
            self._save(state)
        return state

    def get_session_state(self, session_id: str) -> SessionState:
        if session_id not in self._sessions:
            logger.debug("get_session_state created session %s implicitly", session_id)
        return self.ensure_session(session_id)

    def snapshot(self, session_id: str) -> SessionState:
        """Deep copy of the current state, safe to hand to the pipeline."""
        return self.ensure_session(session_id).model_copy(deep=True)

    def list_sessions(self) -> list[str]:
        ids = set(self._sessions)
        if self._dir is not None:
            ids.update(p.stem for p in self._dir.glob("*.json"))
        return sorted(ids)

    # ------------------------------------------------------------------
    # Snapshots (last write wins)
    # ------------------------------------------------------------------

    def set_character(self, session_id: str, character: Character) -> SessionState:
        state = self.ensure_session(session_id)
        state.character = character.model_copy(deep=True)
        self._save(state)
        return state

    def adjust_momentum(self, session_id: str, delta: int) -> SessionState:
        """Shift the live character's momentum by delta, clamped to its bounds."""
        state = self.ensure_session(session_id)
        if state.character is not None:
            momentum = state.character.momentum
            momentum.current = max(momentum.floor, min(momentum.ceiling, momentum.current + delta))
            self._save(state)
        return state

    def set_location(self, session_id: str, location: LocationSummary) -> SessionState:
        state = self.ensure_session(session_id)
        state.location = location
        self._save(state)
        return state

    # ------------------------------------------------------------------
    # Turns (append-only)
    # ------------------------------------------------------------------

    def add_turn(self, session_id: str, turn: Turn) -> SessionState:
        """Append a turn and advance the sequence.

        The turn must carry the next sequence number. Anything else means two
        writers raced on the same session; the write is rejected and nothing
        is renumbered.
        """
        state = self.ensure_session(session_id)
        expected = state.turn_sequence + 1
        if turn.turn_sequence != expected:
            logger.warning(
                "Rejected turn for session %s: expected sequence %d, got %d",
                session_id, expected, turn.turn_sequence,
            )
            raise SequenceConflictError(session_id, expected, turn.turn_sequence)

        state.turns.append(turn)
        state.turn_sequence = expected
        self._save(state)
        return state

    # ------------------------------------------------------------------
    # Check lifecycle
    # ------------------------------------------------------------------

    def record_check_request(self, session_id: str, envelope: CheckRequestEnvelope) -> SessionState:
        state = self.ensure_session(session_id)
        state.pending_checks[envelope.id] = envelope
        self._save(state)
        return state

    def record_check_resolution(self, session_id: str, resolution: CheckResolution) -> SessionState:
        state = self.ensure_session(session_id)
        if state.pending_checks.pop(resolution.id, None) is None:
            logger.info(
                "Resolution for unknown check %s in session %s recorded anyway",
                resolution.id, session_id,
            )
        state.resolved_checks.append(resolution)

        if resolution.new_momentum is not None and state.character is not None:
            momentum = state.character.momentum
            momentum.current = max(momentum.floor, min(momentum.ceiling, resolution.new_momentum))
        self._save(state)
        return state

    def record_check_veto(self, session_id: str, veto: CheckVeto) -> SessionState:
        state = self.ensure_session(session_id)
        state.pending_checks.pop(veto.id, None)
        if not any(v.id == veto.id for v in state.vetoed_checks):
            state.vetoed_checks.append(veto)
        self._save(state)
        return state
