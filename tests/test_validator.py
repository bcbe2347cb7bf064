from __future__ import annotations

import allure
import pytest

from bead_dispatch.dispatch.errors import DispatchError, ErrorCode, StoreError
from bead_dispatch.dispatch.models import ActivityState, AgentType, AssignmentStatus
from bead_dispatch.dispatch.repository import AssignmentStore
from bead_dispatch.dispatch.validator import AdmissionValidator
from tests.conftest import GENERATING, THINKING, FakeTmux

pytestmark = [
    allure.epic("Assignment Scheduling"),
    allure.feature("Admission Control"),
]


def test_direct_assign_to_waiting_pane_commits_and_sends_prompt(
    validator: AdmissionValidator,
    store: AssignmentStore,
    fake_tmux: FakeTmux,
) -> None:
    outcome = validator.direct_assign(["bd-xyz"], 3)

    assert outcome.assignment.pane == 3
    assert outcome.assignment.pane_was_busy is False
    assert outcome.assignment.deps_ignored is False
    assert outcome.activity.state is ActivityState.WAITING
    assert outcome.prompt_sent is True
    assert outcome.warnings == []
    assert store.get("bd-xyz").prompt_sent is True
    pane_id, text = fake_tmux.sent[-1]
    assert pane_id == "%3"
    assert "bd-xyz" in text
    assert "Fix login redirect" in text


@pytest.mark.parametrize("screen", [GENERATING, THINKING])
def test_busy_pane_is_rejected_without_force(
    validator: AdmissionValidator,
    store: AssignmentStore,
    fake_tmux: FakeTmux,
    screen: str,
) -> None:
    fake_tmux.screens["%3"] = screen

    with pytest.raises(DispatchError) as error:
        validator.direct_assign(["bd-xyz"], 3)

    assert error.value.code is ErrorCode.PANE_BUSY
    assert "Pane 3" in error.value.message
    assert "--force" in error.value.message
    assert store.get("bd-xyz") is None
    assert fake_tmux.sent == []


def test_force_assigns_busy_pane_and_flags_it(
    validator: AdmissionValidator,
    fake_tmux: FakeTmux,
) -> None:
    fake_tmux.screens["%3"] = GENERATING

    outcome = validator.direct_assign(["bd-xyz"], 3, force=True)

    assert outcome.assignment.pane_was_busy is True
    assert outcome.activity.state is ActivityState.GENERATING
    assert any("GENERATING" in warning for warning in outcome.warnings)


def test_blocked_bead_is_rejected_with_blocker_ids(validator: AdmissionValidator) -> None:
    with pytest.raises(DispatchError) as error:
        validator.direct_assign(["bd-blocked"], 3)

    assert error.value.code is ErrorCode.BLOCKED
    assert "bd-1, bd-2" in error.value.message
    assert "--ignore-deps" in error.value.message


def test_ignore_deps_assigns_blocked_bead_and_keeps_blockers(
    validator: AdmissionValidator,
    store: AssignmentStore,
) -> None:
    outcome = validator.direct_assign(["bd-blocked"], 3, ignore_deps=True)

    assert outcome.assignment.deps_ignored is True
    stored = store.get("bd-blocked")
    assert stored.deps_ignored is True
    assert stored.blocked_by_ids == ("bd-1", "bd-2")
    assert any("bd-1, bd-2" in warning for warning in outcome.warnings)


def test_user_pane_is_not_an_agent(validator: AdmissionValidator) -> None:
    with pytest.raises(DispatchError) as error:
        validator.direct_assign(["bd-xyz"], 0)

    assert error.value.code is ErrorCode.NOT_AGENT_PANE


def test_unknown_pane_is_not_found(validator: AdmissionValidator) -> None:
    with pytest.raises(DispatchError) as error:
        validator.direct_assign(["bd-xyz"], 9)

    assert error.value.code is ErrorCode.PANE_NOT_FOUND
    assert "9" in error.value.message


@pytest.mark.parametrize("bead_ids", [[], ["bd-xyz", "bd-123"], ["  "]])
def test_direct_assign_takes_exactly_one_bead(
    validator: AdmissionValidator,
    bead_ids: list[str],
) -> None:
    with pytest.raises(DispatchError) as error:
        validator.direct_assign(bead_ids, 3)

    assert error.value.code is ErrorCode.INVALID_ARGS


def test_second_assignment_of_live_bead_is_duplicate(
    validator: AdmissionValidator,
    store: AssignmentStore,
) -> None:
    validator.direct_assign(["bd-xyz"], 3)

    with pytest.raises(StoreError) as error:
        validator.direct_assign(["bd-xyz"], 1)

    assert error.value.code is ErrorCode.DUPLICATE
    assert len(store.list_assignments()) == 1


def test_delivery_failure_keeps_record_for_redelivery(
    validator: AdmissionValidator,
    store: AssignmentStore,
    fake_tmux: FakeTmux,
) -> None:
    fake_tmux.failing_sends.add("%3")

    outcome = validator.direct_assign(["bd-xyz"], 3)

    assert outcome.prompt_sent is False
    assert outcome.delivery_error.code is ErrorCode.SEND_ERROR
    assert any("redeliver" in warning for warning in outcome.warnings)
    assert store.get("bd-xyz").prompt_sent is False

    fake_tmux.failing_sends.clear()
    retried = validator.redeliver("bd-xyz")

    assert retried.prompt_sent is True
    assert store.get("bd-xyz").prompt_sent is True
    assert fake_tmux.sent[-1][0] == "%3"


def test_redeliver_requires_live_assignment(validator: AdmissionValidator) -> None:
    with pytest.raises(DispatchError) as error:
        validator.redeliver("bd-missing")

    assert error.value.code is ErrorCode.NOT_ASSIGNED


def test_reassign_to_current_pane_is_already_assigned(validator: AdmissionValidator) -> None:
    validator.direct_assign(["bd-123"], 1)

    with pytest.raises(DispatchError) as error:
        validator.reassign("bd-123", to_pane=1)

    assert error.value.code is ErrorCode.ALREADY_ASSIGNED


def test_reassign_of_unassigned_bead_is_not_assigned(validator: AdmissionValidator) -> None:
    with pytest.raises(DispatchError) as error:
        validator.reassign("bd-missing", to_pane=3, force=True)

    assert error.value.code is ErrorCode.NOT_ASSIGNED


def test_reassign_round_trip_keeps_previous_pane(
    validator: AdmissionValidator,
    store: AssignmentStore,
    fake_tmux: FakeTmux,
) -> None:
    validator.direct_assign(["bd-123"], 1)
    store.mark_working("bd-123")

    outcome = validator.reassign("bd-123", to_pane=3)

    stored = store.get("bd-123")
    assert stored.pane == 3
    assert stored.status is AssignmentStatus.ASSIGNED
    assert stored.prompt_sent is True
    assert outcome.previous_pane == 1
    assert store.previous_panes("bd-123") == [1]
    assert "previously assigned to pane 1" in fake_tmux.sent[-1][1]


def test_reassign_to_busy_target_needs_force(
    validator: AdmissionValidator,
    fake_tmux: FakeTmux,
) -> None:
    validator.direct_assign(["bd-123"], 1)
    fake_tmux.screens["%3"] = THINKING

    with pytest.raises(DispatchError) as error:
        validator.reassign("bd-123", to_pane=3)
    forced = validator.reassign("bd-123", to_pane=3, force=True)

    assert error.value.code is ErrorCode.TARGET_BUSY
    assert forced.assignment.pane == 3
    assert forced.assignment.pane_was_busy is True


def test_reassign_to_user_pane_is_rejected(validator: AdmissionValidator) -> None:
    validator.direct_assign(["bd-123"], 1)

    with pytest.raises(DispatchError) as error:
        validator.reassign("bd-123", to_pane=0)

    assert error.value.code is ErrorCode.NOT_AGENT_PANE


def test_reassign_by_type_picks_first_idle_pane_of_that_type(
    validator: AdmissionValidator,
    store: AssignmentStore,
) -> None:
    validator.direct_assign(["bd-123"], 2)

    outcome = validator.reassign("bd-123", to_agent_type=AgentType.CLAUDE)

    assert outcome.pane.index == 1
    assert store.get("bd-123").agent_type is AgentType.CLAUDE


def test_reassign_by_type_without_idle_pane(
    validator: AdmissionValidator,
    fake_tmux: FakeTmux,
) -> None:
    validator.direct_assign(["bd-123"], 1)
    fake_tmux.screens["%3"] = GENERATING

    with pytest.raises(DispatchError) as error:
        validator.reassign("bd-123", to_agent_type=AgentType.CLAUDE)

    assert error.value.code is ErrorCode.NO_IDLE_AGENT


@pytest.mark.parametrize(
    ("to_pane", "to_agent_type"),
    [(None, None), (3, AgentType.CODEX)],
)
def test_reassign_needs_exactly_one_target(
    validator: AdmissionValidator,
    to_pane: int | None,
    to_agent_type: AgentType | None,
) -> None:
    validator.direct_assign(["bd-123"], 1)

    with pytest.raises(DispatchError) as error:
        validator.reassign("bd-123", to_pane=to_pane, to_agent_type=to_agent_type)

    assert error.value.code is ErrorCode.INVALID_ARGS


def test_missing_bead_surfaces_tracker_error(validator: AdmissionValidator) -> None:
    with pytest.raises(DispatchError) as error:
        validator.direct_assign(["bd-nope"], 3)

    assert error.value.code is ErrorCode.BEAD_NOT_FOUND


def test_retry_prefers_a_different_idle_pane_and_resends_stored_prompt(
    validator: AdmissionValidator,
    store: AssignmentStore,
    fake_tmux: FakeTmux,
) -> None:
    first = validator.direct_assign(["bd-xyz"], 1)
    store.mark_failed("bd-xyz", "context exhausted")

    outcome = validator.retry("bd-xyz")

    assert outcome.pane.index == 2
    assert outcome.previous_pane == 1
    assert outcome.previous_agent_type is AgentType.CLAUDE
    assert outcome.previous_fail_reason == "context exhausted"
    assert outcome.prompt_sent is True
    stored = store.get("bd-xyz")
    assert stored.status is AssignmentStatus.ASSIGNED
    assert stored.agent_type is AgentType.CODEX
    assert stored.retry_count == 1
    assert fake_tmux.sent[-1] == ("%2", first.assignment.prompt)
    payload = outcome.to_dict()
    assert payload["previous_agent_type"] == "claude"
    assert payload["previous_fail_reason"] == "context exhausted"


def test_retry_falls_back_to_the_failed_pane_when_it_is_the_only_idle_one(
    validator: AdmissionValidator,
    store: AssignmentStore,
    fake_tmux: FakeTmux,
) -> None:
    validator.direct_assign(["bd-xyz"], 1)
    store.mark_failed("bd-xyz")
    for pane_id in ("%2", "%3", "%4"):
        fake_tmux.screens[pane_id] = GENERATING

    outcome = validator.retry("bd-xyz")

    assert outcome.pane.index == 1


def test_retry_to_busy_pane_needs_force(
    validator: AdmissionValidator,
    store: AssignmentStore,
    fake_tmux: FakeTmux,
) -> None:
    validator.direct_assign(["bd-xyz"], 1)
    store.mark_failed("bd-xyz")
    fake_tmux.screens["%3"] = THINKING

    with pytest.raises(DispatchError) as error:
        validator.retry("bd-xyz", to_pane=3)
    forced = validator.retry("bd-xyz", to_pane=3, force=True, prompt="Try bd-xyz again")

    assert error.value.code is ErrorCode.PANE_BUSY
    assert store.get("bd-xyz").retry_count == 1
    assert forced.assignment.pane_was_busy is True
    assert forced.assignment.prompt == "Try bd-xyz again"
    assert any("retried (forced)" in warning for warning in forced.warnings)


def test_retry_without_idle_agent_pane(
    validator: AdmissionValidator,
    store: AssignmentStore,
    fake_tmux: FakeTmux,
) -> None:
    validator.direct_assign(["bd-xyz"], 1)
    store.mark_failed("bd-xyz")
    for pane_id in ("%1", "%2", "%3", "%4"):
        fake_tmux.screens[pane_id] = GENERATING

    with pytest.raises(DispatchError) as error:
        validator.retry("bd-xyz")

    assert error.value.code is ErrorCode.NO_IDLE_AGENT
    assert store.get("bd-xyz").status is AssignmentStatus.FAILED


def test_retry_rejects_beads_that_have_not_failed(validator: AdmissionValidator) -> None:
    validator.direct_assign(["bd-xyz"], 1)

    with pytest.raises(DispatchError) as live:
        validator.retry("bd-xyz", to_pane=3)
    with pytest.raises(DispatchError) as missing:
        validator.retry("bd-missing")

    assert live.value.code is ErrorCode.INVALID_TRANSITION
    assert missing.value.code is ErrorCode.NOT_ASSIGNED
