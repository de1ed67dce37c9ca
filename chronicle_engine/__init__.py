"""Turn-processing core for a multiplayer narrative role-play game master.

One player message goes in; the next game-master beat, an optional skill
check, a safety assessment and the per-node audit trail come out.
"""

from chronicle_engine.engine import TurnEngine, TurnPhase, TurnValidationError
from chronicle_engine.storage import SequenceConflictError, SessionStore

__all__ = [
    "SequenceConflictError",
    "SessionStore",
    "TurnEngine",
    "TurnPhase",
    "TurnValidationError",
]
