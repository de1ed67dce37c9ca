import random
from collections.abc import Callable

import pytest

from chronicle_engine.bus import CheckBus
from chronicle_engine.config import PipelineSettings
from chronicle_engine.engine import TurnEngine
from chronicle_engine.models import (
    Character,
    LocationSummary,
    MomentumState,
    PromptPacket,
    Skill,
)
from chronicle_engine.storage import SessionStore
from chronicle_engine.telemetry import SessionTelemetry


# ---------------------------------------------------------------------------
# StubLLM — dispatches by packet stage, independent queue per stage
# ---------------------------------------------------------------------------

class StubLLM:
    """Deterministic model client for tests.

    Provide a dict mapping stage name → list of responses (in call order).
    A response that is an exception instance is raised instead of returned.
    Raises if a stage is called more times than responses were provided.
    """

    def __init__(self, responses: dict[str, list[str | Exception]]) -> None:
        self._queues: dict[str, list[str | Exception]] = {k: list(v) for k, v in responses.items()}
        self.calls: list[PromptPacket] = []

    async def __call__(self, packet: PromptPacket) -> str:
        self.calls.append(packet)
        queue = self._queues.get(packet.stage)
        if not queue:
            raise AssertionError(
                f"StubLLM: unexpected call to stage={packet.stage!r} "
                f"(no responses queued). calls so far: {[c.stage for c in self.calls]}"
            )
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def stages(self) -> list[str]:
        return [c.stage for c in self.calls]

    def assert_exhausted(self) -> None:
        """Assert every queued response was consumed — catches missing model calls."""
        leftover = {k: v for k, v in self._queues.items() if v}
        if leftover:
            raise AssertionError(f"StubLLM: unused responses remain: {leftover}")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def stub_llm() -> Callable[..., StubLLM]:
    return StubLLM


@pytest.fixture
def store() -> SessionStore:
    return SessionStore()


@pytest.fixture
def telemetry() -> SessionTelemetry:
    return SessionTelemetry()


@pytest.fixture
def bus() -> CheckBus:
    return CheckBus()


@pytest.fixture
def investigator() -> Character:
    return Character(
        id="char-vey",
        name="Vey Solace",
        attributes={"focus": "advanced", "finesse": "standard", "presence": "rudimentary"},
        skills={
            "investigation": Skill(name="investigation", attribute="focus", tier="artisan"),
            "stealth": Skill(name="stealth", attribute="finesse", tier="apprentice"),
            "talk": Skill(name="talk", attribute="presence", tier="fool"),
        },
        momentum=MomentumState(current=0),
    )


@pytest.fixture
def docks() -> LocationSummary:
    return LocationSummary(
        id="loc-docks",
        name="Saltreach Docks",
        description="Rotting piers under a sodium-lamp haze.",
        atmosphere="Gulls wheel over oily water.",
        tags=["harbor"],
    )


@pytest.fixture
def make_engine(store: SessionStore, bus: CheckBus, telemetry: SessionTelemetry):
    """Build a TurnEngine over the shared store, bus and telemetry."""

    def _make(llm, seed: int = 7, **settings) -> TurnEngine:
        return TurnEngine(
            store,
            llm,
            bus=bus,
            telemetry=telemetry,
            config=PipelineSettings(**settings),
            rng=random.Random(seed),
        )

    return _make
