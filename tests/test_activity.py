from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from bead_dispatch.dispatch.activity import (
    ActivityClassifier,
    ActivityProbe,
    ActivityRule,
    ClassifierConfig,
    classify_activity,
    normalize_capture,
)
from bead_dispatch.dispatch.errors import TmuxError
from bead_dispatch.dispatch.models import ActivityState, AgentType, Pane
from tests.conftest import GENERATING, IDLE_CLAUDE, IDLE_CODEX, THINKING, FakeTmux

pytestmark = [
    allure.epic("Pane Activity"),
    allure.feature("Classifier"),
]

T0 = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    ("text", "agent_type", "state", "rule"),
    [
        (IDLE_CLAUDE, AgentType.CLAUDE, ActivityState.WAITING, "claude_prompt"),
        ("│ >            │\n", AgentType.CLAUDE, ActivityState.WAITING, "claude_prompt"),
        (IDLE_CODEX, AgentType.CODEX, ActivityState.WAITING, "codex_prompt"),
        ("Done\n  82% context left\n", AgentType.CODEX, ActivityState.WAITING, "codex_prompt"),
        ("Type your message\n", AgentType.GEMINI, ActivityState.WAITING, "gemini_prompt"),
        ("Added 2 files\naider> \n", AgentType.AIDER, ActivityState.WAITING, "aider_prompt"),
        (THINKING, AgentType.CLAUDE, ActivityState.THINKING, "interrupt_thinking"),
        (GENERATING, AgentType.CLAUDE, ActivityState.GENERATING, "interrupt_hint"),
        (GENERATING, AgentType.CODEX, ActivityState.GENERATING, "interrupt_hint"),
        (
            "⠋ Thinking about the schema (esc to cancel, 3s)\n",
            AgentType.GEMINI,
            ActivityState.THINKING,
            "gemini_thinking",
        ),
        ("Reading (esc to cancel)\n", AgentType.GEMINI, ActivityState.GENERATING, "cancel_hint"),
        ("user@host:~/repo$ \n", AgentType.USER, ActivityState.WAITING, "shell_prompt"),
        ("", AgentType.USER, ActivityState.WAITING, "empty_buffer"),
    ],
)
def test_classifier_matches_agent_signatures(
    text: str,
    agent_type: AgentType,
    state: ActivityState,
    rule: str,
) -> None:
    activity = classify_activity(text, agent_type, now=T0)

    assert activity.state is state
    assert activity.matched_rule == rule
    assert activity.matched_pattern
    assert 0.0 < activity.confidence <= 1.0


def test_working_marker_wins_over_visible_prompt() -> None:
    text = "> previous question\n✳ Writing tests (esc to interrupt)\n>\n"

    activity = classify_activity(text, AgentType.CLAUDE, now=T0)

    assert activity.state is ActivityState.GENERATING
    assert activity.matched_rule == "interrupt_hint"


def test_agent_specific_rules_do_not_apply_to_other_agents() -> None:
    activity = classify_activity("Reading files (esc to cancel)\n", AgentType.CLAUDE, now=T0)

    assert activity.state is ActivityState.UNKNOWN
    assert activity.matched_rule is None


def test_generic_prompt_catches_agents_without_dedicated_rules() -> None:
    activity = classify_activity("All done.\n❯\n", AgentType.CURSOR, now=T0)

    assert activity.state is ActivityState.WAITING
    assert activity.matched_rule == "generic_prompt"
    assert activity.confidence == pytest.approx(0.7)


def test_empty_agent_pane_is_unknown() -> None:
    activity = classify_activity("", AgentType.CLAUDE, now=T0)

    assert activity.state is ActivityState.UNKNOWN
    assert activity.confidence == 0.0


def test_error_signature_is_detected() -> None:
    text = (
        "Running migration\n"
        "Traceback (most recent call last):\n"
        '  File "manage.py", line 3, in <module>\n'
        "ValueError: bad revision\n"
    )

    activity = classify_activity(text, AgentType.CODEX, now=T0)

    assert activity.state is ActivityState.ERROR
    assert activity.matched_rule == "error_signature"


def test_ansi_escapes_are_ignored() -> None:
    text = "\x1b[2m\x1b[38;5;244m? for shortcuts\x1b[0m   \n\n"

    assert normalize_capture(text) == "? for shortcuts"
    assert classify_activity(text, AgentType.CLAUDE, now=T0).state is ActivityState.WAITING


def test_output_velocity_marks_pane_generating() -> None:
    classifier = ActivityClassifier()
    first = classifier.classify("compiling\n", AgentType.CODEX, now=T0)

    second = classifier.classify(
        "compiling\nbuilt 12 targets in 0.8s, linking bead-dispatch\n",
        AgentType.CODEX,
        now=T0 + timedelta(seconds=2),
        previous=first.sample,
    )

    assert first.velocity is None
    added = "built 12 targets in 0.8s, linking bead-dispatch"
    assert second.velocity == pytest.approx(len(added) / 2)
    assert second.state is ActivityState.GENERATING
    assert second.matched_rule == "output_velocity"


def test_velocity_below_minimum_does_not_count_as_generating() -> None:
    classifier = ActivityClassifier(ClassifierConfig(min_generating_velocity=100.0))
    first = classifier.classify("compiling\n", AgentType.CODEX, now=T0)

    second = classifier.classify(
        "compiling\nok\n",
        AgentType.CODEX,
        now=T0 + timedelta(seconds=1),
        previous=first.sample,
    )

    assert second.velocity == pytest.approx(2.0)
    assert second.state is ActivityState.UNKNOWN


def test_stall_requires_configured_threshold() -> None:
    text = "applying migration 0042\n"
    disabled = ActivityClassifier()
    first = disabled.classify(text, AgentType.CODEX, now=T0)
    later = disabled.classify(
        text,
        AgentType.CODEX,
        now=T0 + timedelta(hours=1),
        previous=first.sample,
    )

    assert later.state is ActivityState.UNKNOWN


def test_unchanged_output_past_threshold_is_stalled_and_keeps_state_since() -> None:
    text = "applying migration 0042\n"
    classifier = ActivityClassifier(ClassifierConfig(stall_threshold_seconds=30))

    first = classifier.classify(text, AgentType.CODEX, now=T0)
    stalled = classifier.classify(
        text,
        AgentType.CODEX,
        now=T0 + timedelta(seconds=45),
        previous=first.sample,
    )
    still_stalled = classifier.classify(
        text,
        AgentType.CODEX,
        now=T0 + timedelta(seconds=90),
        previous=stalled.sample,
    )

    assert stalled.state is ActivityState.STALLED
    assert stalled.velocity == 0.0
    assert stalled.sample.output_changed_at == T0
    assert still_stalled.state is ActivityState.STALLED
    assert still_stalled.state_since == T0 + timedelta(seconds=45)


@pytest.mark.parametrize(
    ("text", "agent_type"),
    [
        (GENERATING, AgentType.CLAUDE),
        (THINKING, AgentType.CODEX),
        ("Reading (esc to cancel)\n", AgentType.GEMINI),
    ],
)
def test_frozen_working_marker_becomes_stalled(text: str, agent_type: AgentType) -> None:
    classifier = ActivityClassifier(ClassifierConfig(stall_threshold_seconds=30))

    first = classifier.classify(text, agent_type, now=T0)
    recent = classifier.classify(
        text,
        agent_type,
        now=T0 + timedelta(seconds=10),
        previous=first.sample,
    )
    frozen = classifier.classify(
        text,
        agent_type,
        now=T0 + timedelta(hours=2),
        previous=recent.sample,
    )

    assert first.state in {ActivityState.GENERATING, ActivityState.THINKING}
    assert recent.state is first.state
    assert frozen.state is ActivityState.STALLED
    assert frozen.matched_rule == "stalled_working_marker"
    assert frozen.state_since == T0 + timedelta(hours=2)


def test_frozen_working_marker_without_threshold_stays_generating() -> None:
    classifier = ActivityClassifier()
    first = classifier.classify(GENERATING, AgentType.CLAUDE, now=T0)

    later = classifier.classify(
        GENERATING,
        AgentType.CLAUDE,
        now=T0 + timedelta(hours=2),
        previous=first.sample,
    )

    assert later.state is ActivityState.GENERATING


def test_state_since_resets_when_state_changes() -> None:
    classifier = ActivityClassifier()
    busy = classifier.classify(THINKING, AgentType.CLAUDE, now=T0)
    idle = classifier.classify(
        IDLE_CLAUDE,
        AgentType.CLAUDE,
        now=T0 + timedelta(seconds=5),
        previous=busy.sample,
    )

    assert busy.state_since == T0
    assert idle.state is ActivityState.WAITING
    assert idle.state_since == T0 + timedelta(seconds=5)


def test_registered_prompt_pattern_precedes_generic_rules() -> None:
    classifier = ActivityClassifier()

    rule = classifier.register_prompt_pattern(
        AgentType.CLAUDE,
        r"(?i)^awaiting instructions$",
        "team wrapper prompt",
    )
    activity = classifier.classify("Build finished\nAwaiting instructions\n", AgentType.CLAUDE)

    names = [item.name for item in classifier.rules]
    assert names.index(rule.name) < names.index("generic_prompt")
    assert activity.state is ActivityState.WAITING
    assert activity.matched_rule == rule.name
    assert classify_activity("Awaiting instructions\n", AgentType.CLAUDE).state is (
        ActivityState.UNKNOWN
    )


def test_classifier_contains_rule_failures() -> None:
    def broken(_observation):
        raise RuntimeError("bad rule")

    classifier = ActivityClassifier(
        rules=(
            ActivityRule(
                name="broken",
                state=ActivityState.WAITING,
                match_type="prompt",
                matcher=broken,
                confidence=1.0,
            ),
        ),
    )

    activity = classifier.classify(IDLE_CLAUDE, AgentType.CLAUDE, now=T0)

    assert activity.state is ActivityState.UNKNOWN
    assert activity.confidence == 0.0
    assert activity.state_since == T0


def test_probe_captures_and_classifies_pane() -> None:
    pane = Pane(index=1, agent_type=AgentType.CLAUDE, pane_id="%1")
    tmux = FakeTmux([pane], {"%1": THINKING})

    activity = ActivityProbe(tmux).probe(pane)

    assert activity.state is ActivityState.THINKING
    assert activity.to_dict()["state"] == "THINKING"


def test_probe_propagates_capture_failures() -> None:
    pane = Pane(index=1, agent_type=AgentType.CLAUDE, pane_id="%1")
    tmux = FakeTmux([pane])
    tmux.failing_captures.add("%1")

    with pytest.raises(TmuxError):
        ActivityProbe(tmux).probe(pane)
