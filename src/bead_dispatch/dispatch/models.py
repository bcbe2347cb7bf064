"""Domain models for pane activity and bead assignments."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AgentType(str, Enum):
    """Kinds of processes that can occupy a pane."""

    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"
    CURSOR = "cursor"
    WINDSURF = "windsurf"
    AIDER = "aider"
    USER = "user"
    UNKNOWN = "unknown"

    @property
    def is_agent(self) -> bool:
        return self not in {AgentType.USER, AgentType.UNKNOWN}


_AGENT_TYPE_ALIASES = {
    "cc": AgentType.CLAUDE,
    "claude-code": AgentType.CLAUDE,
    "cod": AgentType.CODEX,
    "gmi": AgentType.GEMINI,
    "shell": AgentType.USER,
}


def parse_agent_type(value: str | None) -> AgentType:
    """Resolve an agent type name or short code, falling back to UNKNOWN."""

    normalized = (value or "").strip().lower()
    if not normalized:
        return AgentType.UNKNOWN
    alias = _AGENT_TYPE_ALIASES.get(normalized)
    if alias is not None:
        return alias
    try:
        return AgentType(normalized)
    except ValueError:
        return AgentType.UNKNOWN


class ActivityState(str, Enum):
    """Inferred activity of a pane. Derived per observation, never stored."""

    WAITING = "WAITING"
    GENERATING = "GENERATING"
    THINKING = "THINKING"
    ERROR = "ERROR"
    STALLED = "STALLED"
    UNKNOWN = "UNKNOWN"


class AssignmentStatus(str, Enum):
    """Assignment lifecycle states."""

    ASSIGNED = "assigned"
    WORKING = "working"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_live(self) -> bool:
        return self in LIVE_STATUSES


LIVE_STATUSES = frozenset({AssignmentStatus.ASSIGNED, AssignmentStatus.WORKING})


@dataclass(slots=True, frozen=True)
class Bead:
    """Work item as reported by the tracker."""

    id: str
    title: str = ""
    blocked_by_ids: tuple[str, ...] = ()
    priority: int = 2
    labels: tuple[str, ...] = ()
    issue_type: str = ""


@dataclass(slots=True, frozen=True)
class Pane:
    """One multiplexer pane, enumerated fresh on every invocation."""

    index: int
    agent_type: AgentType
    pane_id: str
    title: str = ""
    variant: str = ""
    tags: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "agent_type": self.agent_type.value,
            "pane_id": self.pane_id,
            "title": self.title,
            "variant": self.variant,
            "tags": list(self.tags),
        }


@dataclass(slots=True, frozen=True)
class ActivitySample:
    """Timestamped capture kept between observations of the same pane."""

    text: str
    captured_at: datetime
    output_changed_at: datetime
    state: ActivityState
    state_since: datetime


@dataclass(slots=True, frozen=True)
class PaneActivity:
    """Classification of one pane at one point in time."""

    state: ActivityState
    confidence: float
    velocity: float | None
    state_since: datetime
    matched_rule: str | None
    matched_pattern: str | None
    sample: ActivitySample

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "confidence": round(self.confidence, 3),
            "velocity": round(self.velocity, 3) if self.velocity is not None else None,
            "state_since": self.state_since.isoformat(),
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


@dataclass(slots=True)
class AssignmentView:
    """Readable assignment record."""

    bead_id: str
    bead_title: str
    pane: int
    agent_type: AgentType
    model: str
    status: AssignmentStatus
    prompt: str
    prompt_sent: bool
    assigned_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    fail_reason: str | None = None
    pane_was_busy: bool = False
    deps_ignored: bool = False
    retry_count: int = 0
    blocked_by_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "bead_id": self.bead_id,
            "bead_title": self.bead_title,
            "pane": self.pane,
            "agent_type": self.agent_type.value,
            "model": self.model,
            "status": self.status.value,
            "prompt": self.prompt,
            "prompt_sent": self.prompt_sent,
            "assigned_at": self.assigned_at.isoformat(),
            "started_at": _iso_or_none(self.started_at),
            "completed_at": _iso_or_none(self.completed_at),
            "failed_at": _iso_or_none(self.failed_at),
            "fail_reason": self.fail_reason,
            "pane_was_busy": self.pane_was_busy,
            "deps_ignored": self.deps_ignored,
            "retry_count": self.retry_count,
            "blocked_by_ids": list(self.blocked_by_ids),
        }


@dataclass(slots=True)
class AssignmentEventView:
    """Assignment event entry for the audit trail."""

    bead_id: str
    event_type: str
    status_from: AssignmentStatus | None
    status_to: AssignmentStatus | None
    pane_from: int | None
    pane_to: int | None
    details: dict[str, Any]
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "bead_id": self.bead_id,
            "event_type": self.event_type,
            "status_from": self.status_from.value if self.status_from is not None else None,
            "status_to": self.status_to.value if self.status_to is not None else None,
            "pane_from": self.pane_from,
            "pane_to": self.pane_to,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class AssignmentFilter:
    """Selection used by list queries. Empty filter returns everything."""

    statuses: frozenset[AssignmentStatus] | None = None
    pane: int | None = None
    active_only: bool = False


class SkipReason(str, Enum):
    """Why the planner left a bead unassigned."""

    NO_IDLE_AGENTS = "no_idle_agents"
    BLOCKED_BY_DEPENDENCY = "blocked_by_dependency"
    LIMIT_REACHED = "limit_reached"
    ASSIGNMENT_FAILED = "assignment_failed"


@dataclass(slots=True)
class SkippedBead:
    """Bead left out of a planned batch."""

    bead_id: str
    reason: SkipReason
    error_code: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "bead_id": self.bead_id,
            "reason": self.reason.value,
            "error_code": self.error_code,
            "message": self.message,
        }


@dataclass(slots=True)
class PlannedAssignment:
    """Bead/pane pair chosen by the planner."""

    bead_id: str
    bead_title: str
    pane: int
    agent_type: AgentType
    committed: bool
    prompt_sent: bool = False
    assignment: AssignmentView | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bead_id": self.bead_id,
            "bead_title": self.bead_title,
            "pane": self.pane,
            "agent_type": self.agent_type.value,
            "committed": self.committed,
            "prompt_sent": self.prompt_sent,
            "assignment": self.assignment.to_dict() if self.assignment is not None else None,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class PlanResult:
    """Outcome of one planner batch."""

    strategy: str
    assignments: list[PlannedAssignment] = field(default_factory=list)
    skipped: list[SkippedBead] = field(default_factory=list)
    dry_run: bool = False

    @property
    def warnings(self) -> list[str]:
        return [warning for item in self.assignments for warning in item.warnings]

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "dry_run": self.dry_run,
            "assignments": [item.to_dict() for item in self.assignments],
            "skipped": [item.to_dict() for item in self.skipped],
        }


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
