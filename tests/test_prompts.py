"""Tests for Handlebars prompt rendering: helpers, error handling and packet builders."""

import pytest

from chronicle_engine.models import (
    ATTRIBUTES,
    Intent,
    SafetyAssessment,
    SceneFrame,
    SkillCheckPlan,
    SkillCheckResult,
)
from chronicle_engine.prompts import (
    PromptError,
    build_check_packet,
    build_intent_packet,
    build_narrative_packet,
    render_prompt,
)


# ── render_prompt ────────────────────────────────────────────


def test_render_simple_variable():
    assert render_prompt("Hello {{name}}!", {"name": "World"}) == "Hello World!"


def test_render_if_conditional():
    tpl = "{{#if show}}yes{{else}}no{{/if}}"
    assert render_prompt(tpl, {"show": True}) == "yes"
    assert render_prompt(tpl, {"show": False}) == "no"


def test_render_missing_variable():
    assert render_prompt("Hello {{name}}!", {}) == "Hello !"


def test_render_invalid_template():
    with pytest.raises(PromptError):
        render_prompt("{{> missing_partial}}", {})


# ── helpers: take & last ────────────────────────────────────


def test_take_first_n():
    result = render_prompt("{{#take items 2}}{{this}} {{/take}}", {"items": ["a", "b", "c"]})
    assert result == "a b "


def test_last_n():
    result = render_prompt("{{#last items 2}}{{this}} {{/last}}", {"items": ["a", "b", "c", "d"]})
    assert result == "c d "


def test_last_zero_renders_nothing():
    result = render_prompt("{{#last items n}}{{this}}{{/last}}", {"items": ["a", "b"], "n": 0})
    assert result == ""


def test_last_with_objects():
    tpl = "{{#last msgs 1}}{{text}}{{/last}}"
    result = render_prompt(tpl, {"msgs": [{"text": "first"}, {"text": "second"}]})
    assert result == "second"


# ── packet builders ──────────────────────────────────────────


@pytest.fixture
def frame() -> SceneFrame:
    return SceneFrame(
        character_name="Vey Solace",
        momentum=1,
        top_skills=["investigation (artisan)"],
        location_name="Saltreach Docks",
        location_description="Rotting piers.",
        atmosphere="Gulls wheel overhead.",
        recent_turns=[
            {"turn": 1, "player": "I arrive.", "gm": "Rain."},
            {"turn": 2, "player": "I wait.", "gm": "Nothing stirs."},
            {"turn": 3, "player": "I listen.", "gm": "A bell rings."},
        ],
        turn_count=3,
    )


def test_intent_packet(frame: SceneFrame):
    packet = build_intent_packet(frame, "I search the docks for the ritual circle.", ATTRIBUTES)
    assert packet.stage == "intent-intake"
    assert packet.response_format == "json"
    assert packet.temperature == 0.1
    assert "Location: Saltreach Docks" in packet.prompt
    assert "> I search the docks for the ritual circle." in packet.prompt
    assert "vitality, finesse, focus" in packet.prompt
    # Only the last two turns are shown to the classifier
    assert "I arrive." not in packet.prompt
    assert "A bell rings." in packet.prompt


def test_free_text_is_not_html_escaped(frame: SceneFrame):
    packet = build_intent_packet(frame, "I say \"hold\" & wait <quietly>", ATTRIBUTES)
    assert "I say \"hold\" & wait <quietly>" in packet.prompt


def test_check_packet(frame: SceneFrame):
    intent = Intent(intent_summary="Search the docks", skill="investigation", requires_check=True)
    packet = build_check_packet(frame, intent)
    assert packet.stage == "check-planner"
    assert packet.response_format == "json"
    assert "Skill: investigation (focus)" in packet.prompt


def test_narrative_packet_with_result(frame: SceneFrame):
    plan = SkillCheckPlan(
        skill="investigation", attribute="focus", risk_level="risky",
        complication_seeds=["the tide turns", "a watchman appears"],
    )
    result = SkillCheckResult(
        check_id="c1", die_sum=10, total_modifier=2, target=9, margin=1,
        outcome_tier="advance", new_momentum=2,
    )
    packet = build_narrative_packet(
        frame, "I search the docks.", Intent(intent_summary="Search"), plan=plan, result=result,
    )
    assert packet.stage == "narrative-weaver"
    assert packet.response_format == "text"
    assert "advance (rolled 10 against 9)" in packet.prompt
    assert "the tide turns; a watchman appears;" in packet.prompt
    assert "SAFETY CONSTRAINT" not in packet.prompt


def test_narrative_packet_degraded_when_escalated(frame: SceneFrame):
    safety = SafetyAssessment(
        escalate=True, severity="high", flags=["self-harm"], reason="policy categories self-harm",
    )
    packet = build_narrative_packet(frame, "x", Intent(intent_summary="x"), safety=safety)
    assert "SAFETY CONSTRAINT" in packet.prompt
    assert "Redirect the scene" in packet.prompt
