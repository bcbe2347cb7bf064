"""Strategy names, speed ranking and the agent capability matrix."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from bead_dispatch.dispatch.models import AgentType, Bead


class Strategy(str, Enum):
    """Batch planning strategies."""

    BALANCED = "balanced"
    SPEED = "speed"
    QUALITY = "quality"
    DEPENDENCY = "dependency"
    ROUND_ROBIN = "round-robin"


_STRATEGY_ALIASES = {
    "roundrobin": Strategy.ROUND_ROBIN,
    "round_robin": Strategy.ROUND_ROBIN,
    "rr": Strategy.ROUND_ROBIN,
    "deps": Strategy.DEPENDENCY,
}


def parse_strategy(value: str) -> Strategy:
    """Resolve a strategy name or alias. Raises ValueError for unknown names."""

    normalized = value.strip().lower()
    alias = _STRATEGY_ALIASES.get(normalized)
    if alias is not None:
        return alias
    try:
        return Strategy(normalized)
    except ValueError as error:
        choices = ", ".join(strategy.value for strategy in Strategy)
        raise ValueError(f"Unknown strategy {value!r}. Expected one of: {choices}") from error


class TaskType(str, Enum):
    """Coarse work categories used by the capability matrix."""

    REFACTOR = "refactor"
    ANALYSIS = "analysis"
    DOCS = "docs"
    BUG = "bug"
    FEATURE = "feature"
    TESTING = "testing"
    TASK = "task"
    CHORE = "chore"
    EPIC = "epic"


# Checked in order; the first keyword family found in the text wins.
_TASK_TYPE_KEYWORDS: tuple[tuple[TaskType, tuple[str, ...]], ...] = (
    (TaskType.REFACTOR, ("refactor",)),
    (TaskType.ANALYSIS, ("analysis", "analyze", "investigate", "research", "design")),
    (TaskType.DOCS, ("docs", "doc", "documentation", "readme", "comment")),
    (TaskType.BUG, ("bug", "fix", "broken", "error", "crash")),
    (TaskType.FEATURE, ("feature", "implement", "add", "new")),
    (TaskType.TESTING, ("test", "testing", "spec", "coverage")),
    (TaskType.CHORE, ("chore",)),
    (TaskType.EPIC, ("epic",)),
)

DEFAULT_CAPABILITIES: dict[AgentType, dict[TaskType, float]] = {
    AgentType.CLAUDE: {
        TaskType.REFACTOR: 0.95,
        TaskType.ANALYSIS: 0.90,
        TaskType.DOCS: 0.85,
        TaskType.BUG: 0.80,
        TaskType.FEATURE: 0.85,
        TaskType.TESTING: 0.75,
        TaskType.TASK: 0.80,
        TaskType.CHORE: 0.70,
        TaskType.EPIC: 0.90,
    },
    AgentType.CODEX: {
        TaskType.REFACTOR: 0.75,
        TaskType.ANALYSIS: 0.70,
        TaskType.DOCS: 0.70,
        TaskType.BUG: 0.90,
        TaskType.FEATURE: 0.90,
        TaskType.TESTING: 0.85,
        TaskType.TASK: 0.85,
        TaskType.CHORE: 0.80,
        TaskType.EPIC: 0.60,
    },
    AgentType.GEMINI: {
        TaskType.REFACTOR: 0.75,
        TaskType.ANALYSIS: 0.85,
        TaskType.DOCS: 0.90,
        TaskType.BUG: 0.75,
        TaskType.FEATURE: 0.80,
        TaskType.TESTING: 0.80,
        TaskType.TASK: 0.75,
        TaskType.CHORE: 0.75,
        TaskType.EPIC: 0.75,
    },
}
DEFAULT_CAPABILITY_SCORE = 0.5

_WORD_RE = re.compile(r"[a-z0-9]+")


def parse_task_type(value: str | None) -> TaskType | None:
    """Exact task type name, or None."""

    normalized = (value or "").strip().lower()
    try:
        return TaskType(normalized)
    except ValueError:
        return None


def infer_task_type(bead: Bead) -> TaskType | None:
    """Task type from the issue type, then labels, then title keywords."""

    explicit = parse_task_type(bead.issue_type)
    if explicit is not None and explicit is not TaskType.TASK:
        return explicit
    for label in bead.labels:
        from_label = parse_task_type(label)
        if from_label is not None:
            return from_label
    words = set(_tokenize(bead.title))
    for task_type, keywords in _TASK_TYPE_KEYWORDS:
        if words.intersection(keywords):
            return task_type
    return explicit


def _tokenize(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


@dataclass(slots=True, frozen=True)
class PlannerPolicy:
    """Explicit planner tunables passed in at call time."""

    default_strategy: Strategy = Strategy.BALANCED
    speed_ranking: tuple[AgentType, ...] = ()
    capabilities: Mapping[AgentType, Mapping[TaskType, float]] = field(
        default_factory=lambda: DEFAULT_CAPABILITIES,
    )

    def speed_rank(self, agent_type: AgentType) -> int:
        """Position in the speed ranking; unranked types sort after ranked ones."""

        try:
            return self.speed_ranking.index(agent_type)
        except ValueError:
            return len(self.speed_ranking)

    def capability_score(self, agent_type: AgentType, task_type: TaskType) -> float:
        return self.capabilities.get(agent_type, {}).get(task_type, DEFAULT_CAPABILITY_SCORE)

    def has_capability_data(self, agent_type: AgentType, task_type: TaskType) -> bool:
        return task_type in self.capabilities.get(agent_type, {})

    @classmethod
    def with_overrides(
        cls,
        *,
        default_strategy: Strategy = Strategy.BALANCED,
        speed_ranking: tuple[AgentType, ...] = (),
        capability_overrides: Mapping[tuple[AgentType, TaskType], float] | None = None,
    ) -> PlannerPolicy:
        """Policy with the default capability matrix patched by overrides."""

        capabilities = {agent: dict(scores) for agent, scores in DEFAULT_CAPABILITIES.items()}
        for (agent_type, task_type), score in (capability_overrides or {}).items():
            capabilities.setdefault(agent_type, {})[task_type] = score
        return cls(
            default_strategy=default_strategy,
            speed_ranking=speed_ranking,
            capabilities=capabilities,
        )
