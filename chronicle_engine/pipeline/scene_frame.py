"""Scene frame node: ambient context from the session snapshot. No model call."""

from __future__ import annotations

from chronicle_engine.mechanics import SKILL_TIER_MODIFIER
from chronicle_engine.models import SceneFrame, SessionState
from chronicle_engine.pipeline.context import ExecutionContext

TOP_SKILL_COUNT = 3


class SceneFrameError(ValueError):
    """Raised when the session snapshot is internally inconsistent."""


def _check_turn_numbering(session: SessionState) -> None:
    numbers = [t.turn_sequence for t in session.turns]
    if numbers != list(range(1, len(numbers) + 1)):
        raise SceneFrameError(
            f"Session {session.session_id!r} has out-of-order turns: {numbers}"
        )
    if session.turn_sequence != len(session.turns):
        raise SceneFrameError(
            f"Session {session.session_id!r} turn_sequence={session.turn_sequence} "
            f"but holds {len(session.turns)} turns"
        )


def build_scene_frame(session: SessionState, history_window: int) -> SceneFrame:
    _check_turn_numbering(session)

    frame = SceneFrame(turn_count=len(session.turns))

    character = session.character
    if character is not None:
        frame.character_name = character.name
        frame.momentum = character.momentum.current
        ranked = sorted(
            character.skills.values(),
            key=lambda s: (-SKILL_TIER_MODIFIER[s.tier], s.name),
        )
        frame.top_skills = [f"{s.name} ({s.tier})" for s in ranked[:TOP_SKILL_COUNT]]

    location = session.location
    if location is not None:
        frame.location_name = location.name
        frame.location_description = location.description
        frame.atmosphere = location.atmosphere

    window = session.turns[-history_window:] if history_window > 0 else []
    frame.recent_turns = [
        {
            "turn": t.turn_sequence,
            "player": t.player_message.content,
            "gm": t.gm_message.content,
        }
        for t in window
    ]
    return frame


class SceneFrameNode:
    id = "scene-frame"

    async def process(self, context: ExecutionContext) -> ExecutionContext:
        frame = build_scene_frame(context.session, context.config.history_window)
        context.scene_frame = frame
        context.record(
            self.id, "framed",
            location=frame.location_name,
            character=frame.character_name,
            window=len(frame.recent_turns),
        )
        return context
