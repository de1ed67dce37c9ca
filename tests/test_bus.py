"""Tests for chronicle_engine.bus and chronicle_engine.telemetry."""

import pytest

from chronicle_engine.bus import (
    ADMIN_ALERT_TOPIC,
    CHECK_REQUEST_TOPIC,
    CHECK_RESOLVED_TOPIC,
    CHECK_VETOED_TOPIC,
    CheckBus,
)
from chronicle_engine.models import (
    CheckRequestEnvelope,
    CheckResolution,
    CheckVeto,
    ModerationAlert,
    SkillCheckPlan,
)
from chronicle_engine.telemetry import SessionTelemetry


def _envelope() -> CheckRequestEnvelope:
    return CheckRequestEnvelope(
        session_id="S1",
        turn_sequence=1,
        audit_ref="check:S1:1:x",
        player_id="p1",
        plan=SkillCheckPlan(skill="stealth", attribute="finesse"),
        expires_at="2030-01-01T00:00:00+00:00",
    )


class TestCheckBus:
    def test_dispatch_publishes_and_notifies(self, bus: CheckBus) -> None:
        received = []
        bus.on_check_request(received.append)
        envelope = _envelope()
        bus.dispatch(envelope)
        assert received == [envelope]
        assert bus.published[CHECK_REQUEST_TOPIC] == [envelope]

    def test_listeners_run_in_subscription_order(self, bus: CheckBus) -> None:
        order = []
        bus.on_check_resolved(lambda r: order.append("first"))
        bus.on_check_resolved(lambda r: order.append("second"))
        bus.emit_check_resolved(CheckResolution(id="c", session_id="S1", outcome_tier="stall"))
        assert order == ["first", "second"]
        assert len(bus.published[CHECK_RESOLVED_TOPIC]) == 1

    def test_listener_error_propagates(self, bus: CheckBus) -> None:
        def boom(_):
            raise RuntimeError("resolver down")

        bus.on_check_vetoed(boom)
        with pytest.raises(RuntimeError, match="resolver down"):
            bus.emit_check_vetoed(CheckVeto(id="c", session_id="S1"))
        assert len(bus.published[CHECK_VETOED_TOPIC]) == 1

    def test_escalate_goes_to_admin_alert(self, bus: CheckBus) -> None:
        alerts = []
        bus.on_admin_alert(alerts.append)
        alert = ModerationAlert(session_id="S1", audit_ref="safety:S1:1:x", severity="high", reason="r")
        bus.escalate(alert)
        assert alerts == [alert]
        assert bus.published[ADMIN_ALERT_TOPIC] == [alert]


class TestSessionTelemetry:
    def test_events_filtered_by_kind(self, telemetry: SessionTelemetry) -> None:
        telemetry.record_transition("S1", "scene-frame", "start", 1)
        telemetry.record_check_dispatch("S1", "c1", "check:S1:1:x")
        telemetry.record_transition("S1", "scene-frame", "success", 1)

        transitions = telemetry.events("S1", kind="transition")
        assert [e.data["status"] for e in transitions] == ["start", "success"]
        assert len(telemetry.events("S1")) == 3

    def test_sessions_are_isolated(self, telemetry: SessionTelemetry) -> None:
        telemetry.record_tool_error("S1", "commit_turn", "disk full")
        assert telemetry.events("S2") == []

    def test_events_are_copies(self, telemetry: SessionTelemetry) -> None:
        telemetry.record_safety_event("S1", "safety:S1:1:x", "high", ["self-harm"], "r")
        telemetry.events("S1")[0].data["flags"].append("tampered")
        assert telemetry.events("S1")[0].data["flags"] == ["self-harm"]
