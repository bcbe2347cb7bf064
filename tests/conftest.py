"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from bead_dispatch.dispatch.activity import ActivityProbe
from bead_dispatch.dispatch.errors import ErrorCode, SendError, TmuxError, TrackerError
from bead_dispatch.dispatch.models import AgentType, Bead, Pane
from bead_dispatch.dispatch.planner import StrategyPlanner
from bead_dispatch.dispatch.repository import AssignmentStore
from bead_dispatch.dispatch.validator import AdmissionValidator

IDLE_CLAUDE = "Done. All tests pass.\n\n? for shortcuts\n"
IDLE_CODEX = "Applied patch to src/app.py\n\n› Ask Codex to do anything\n"
IDLE_GEMINI = "Finished.\n\nType your message or @path/to/file\n"
GENERATING = "Editing src/app.py\n✳ Writing tests (esc to interrupt)\n"
THINKING = "✻ Pondering… (12s · esc to interrupt)\n"
SHELL = "user@host:~/repo$ \n"

SESSION = "dev"


class FakeTmux:
    """In-memory pane enumerator, output capturer and prompt delivery."""

    def __init__(self, panes: list[Pane], screens: dict[str, str] | None = None) -> None:
        self.panes = list(panes)
        self.screens = dict(screens or {})
        self.sent: list[tuple[str, str]] = []
        self.failing_sends: set[str] = set()
        self.failing_captures: set[str] = set()
        self.list_error: TmuxError | None = None

    def list_panes(self, session: str) -> list[Pane]:
        if self.list_error is not None:
            raise self.list_error
        return sorted(self.panes, key=lambda pane: pane.index)

    def capture(self, pane_id: str, lines: int, *, timeout_seconds: float) -> str:
        if pane_id in self.failing_captures:
            raise TmuxError(f"can't find pane: {pane_id}")
        return self.screens.get(pane_id, "")

    def send(self, pane_id: str, text: str, *, timeout_seconds: float) -> None:
        if pane_id in self.failing_sends:
            raise SendError(f"tmux send-keys timed out after {timeout_seconds:g}s")
        self.sent.append((pane_id, text))


class FakeTracker:
    """In-memory dependency source and ready queue."""

    def __init__(self, beads: list[Bead] | None = None) -> None:
        self.beads = {bead.id: bead for bead in beads or []}
        self.ready: list[str] = []

    def add(self, bead: Bead) -> Bead:
        self.beads[bead.id] = bead
        return bead

    def fetch_bead(self, bead_id: str) -> Bead:
        bead = self.beads.get(bead_id)
        if bead is None:
            raise TrackerError(f"Bead {bead_id} not found", code=ErrorCode.BEAD_NOT_FOUND)
        return bead

    def ready_beads(self, limit: int = 0) -> list[Bead]:
        beads = [self.beads[bead_id] for bead_id in self.ready]
        return beads[:limit] if limit > 0 else beads


def default_panes() -> list[Pane]:
    return [
        Pane(index=0, agent_type=AgentType.USER, pane_id="%0", title="dev__user_0"),
        Pane(index=1, agent_type=AgentType.CLAUDE, pane_id="%1", title="dev__cc_1_opus"),
        Pane(index=2, agent_type=AgentType.CODEX, pane_id="%2", title="dev__cod_2"),
        Pane(index=3, agent_type=AgentType.CLAUDE, pane_id="%3", title="dev__cc_3"),
        Pane(index=4, agent_type=AgentType.GEMINI, pane_id="%4", title="dev__gmi_4"),
    ]


def default_screens() -> dict[str, str]:
    return {
        "%0": SHELL,
        "%1": IDLE_CLAUDE,
        "%2": IDLE_CODEX,
        "%3": IDLE_CLAUDE,
        "%4": IDLE_GEMINI,
    }


@pytest.fixture()
def fake_tmux() -> FakeTmux:
    return FakeTmux(default_panes(), default_screens())


@pytest.fixture()
def fake_tracker() -> FakeTracker:
    return FakeTracker(
        [
            Bead(id="bd-xyz", title="Fix login redirect"),
            Bead(id="bd-123", title="Refactor session cache"),
            Bead(id="bd-blocked", title="Ship billing page", blocked_by_ids=("bd-1", "bd-2")),
        ],
    )


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[AssignmentStore]:
    assignment_store = AssignmentStore(tmp_path / "dev.db", session_name=SESSION)
    assignment_store.init_schema()
    try:
        yield assignment_store
    finally:
        assignment_store.close()


@pytest.fixture()
def validator(
    store: AssignmentStore,
    fake_tmux: FakeTmux,
    fake_tracker: FakeTracker,
) -> AdmissionValidator:
    return AdmissionValidator(
        session=SESSION,
        store=store,
        panes=fake_tmux,
        probe=ActivityProbe(fake_tmux),
        dependencies=fake_tracker,
        delivery=fake_tmux,
    )


@pytest.fixture()
def planner(store: AssignmentStore, validator: AdmissionValidator) -> StrategyPlanner:
    return StrategyPlanner(validator=validator, store=store)
