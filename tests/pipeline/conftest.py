import pytest

from chronicle_engine.bus import CheckBus
from chronicle_engine.config import PipelineSettings
from chronicle_engine.llm import EchoLLM
from chronicle_engine.models import SessionState, TranscriptEntry
from chronicle_engine.pipeline.context import ExecutionContext
from chronicle_engine.storage import SessionStore
from chronicle_engine.telemetry import SessionTelemetry
from chronicle_engine.tools import ToolHarness


@pytest.fixture
def make_context(store: SessionStore, bus: CheckBus, telemetry: SessionTelemetry):
    """Build an ExecutionContext for the next turn of `session` (default: empty S1)."""
    tools = ToolHarness(store, bus, bus, telemetry)

    def _make(
        content: str = "I look around.",
        llm=None,
        session: SessionState | None = None,
        rng=None,
        **settings,
    ) -> ExecutionContext:
        session = session or SessionState(session_id="S1")
        return ExecutionContext(
            session_id=session.session_id,
            player_id="p1",
            turn_sequence=session.turn_sequence + 1,
            message=TranscriptEntry(role="player", content=content, player_id="p1"),
            session=session,
            tools=tools,
            llm=llm or EchoLLM(),
            telemetry=telemetry,
            config=PipelineSettings(**settings),
            rng=rng,
        )

    return _make
