"""Batch planning: match ready beads to idle panes under a named strategy.

Each chosen pair goes through the admission validator on its own; a failure
for one pair is recorded as a skipped bead and the batch continues.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from bead_dispatch.dispatch.errors import DispatchError, ErrorCode
from bead_dispatch.dispatch.models import (
    AgentType,
    AssignmentFilter,
    Bead,
    Pane,
    PlannedAssignment,
    PlanResult,
    SkippedBead,
    SkipReason,
)
from bead_dispatch.dispatch.policy import PlannerPolicy, Strategy, infer_task_type
from bead_dispatch.dispatch.repository import AssignmentStore
from bead_dispatch.dispatch.validator import AdmissionValidator
from bead_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

# Failures caused by the pane rather than the bead; the pane leaves the pool.
_PANE_ERROR_CODES = frozenset(
    {
        ErrorCode.PANE_BUSY,
        ErrorCode.PANE_NOT_FOUND,
        ErrorCode.NOT_AGENT_PANE,
        ErrorCode.TMUX_ERROR,
    },
)


@dataclass(slots=True)
class _BatchState:
    """Mutable bookkeeping for one batch."""

    pool: list[Pane]
    live_by_type: dict[AgentType, int] = field(default_factory=dict)
    last_assigned_at: dict[int, datetime] = field(default_factory=dict)
    last_pane: int | None = None
    committed: set[str] = field(default_factory=set)

    def take(self, pane: Pane) -> int:
        position = self.pool.index(pane)
        self.pool.pop(position)
        return position

    def give_back(self, pane: Pane, position: int) -> None:
        self.pool.insert(position, pane)


class StrategyPlanner:
    """Sequences validator calls for a batch of beads."""

    def __init__(
        self,
        *,
        validator: AdmissionValidator,
        store: AssignmentStore,
        policy: PlannerPolicy | None = None,
    ) -> None:
        self.validator = validator
        self.store = store
        self.policy = policy or PlannerPolicy()

    def plan(  # noqa: PLR0913
        self,
        beads: Sequence[Bead],
        idle_panes: Sequence[Pane],
        *,
        strategy: Strategy | None = None,
        limit: int = 0,
        ignore_deps: bool = False,
        dry_run: bool = False,
        retry: bool = False,
    ) -> PlanResult:
        """Plan and, unless ``dry_run``, commit one batch.

        With ``retry`` the beads are failed assignments given another attempt.
        """

        strategy = strategy or self.policy.default_strategy
        state = self._initial_state(idle_panes)
        result = PlanResult(strategy=strategy.value, dry_run=dry_run)

        for bead in self._order_beads(strategy, beads):
            if limit > 0 and len(result.assignments) >= limit:
                result.skipped.append(
                    SkippedBead(
                        bead_id=bead.id,
                        reason=SkipReason.LIMIT_REACHED,
                        message=f"Batch limit of {limit} reached",
                    ),
                )
                continue

            if strategy is Strategy.DEPENDENCY and not ignore_deps:
                pending = self._pending_blockers(bead, state)
                if pending:
                    result.skipped.append(
                        SkippedBead(
                            bead_id=bead.id,
                            reason=SkipReason.BLOCKED_BY_DEPENDENCY,
                            error_code=ErrorCode.BLOCKED.value,
                            message=f"Waiting on {', '.join(pending)}",
                        ),
                    )
                    continue

            pane = self._select_pane(strategy, bead, state)
            if pane is None:
                result.skipped.append(
                    SkippedBead(
                        bead_id=bead.id,
                        reason=SkipReason.NO_IDLE_AGENTS,
                        message="No idle agent pane left in this batch",
                    ),
                )
                continue

            position = state.take(pane)
            if dry_run:
                result.assignments.append(
                    PlannedAssignment(
                        bead_id=bead.id,
                        bead_title=bead.title,
                        pane=pane.index,
                        agent_type=pane.agent_type,
                        committed=False,
                    ),
                )
                self._record(state, pane, bead)
                continue

            planned, pane_reusable = self._admit(
                bead,
                pane,
                state,
                ignore_deps=ignore_deps,
                retry=retry,
                result=result,
            )
            if planned is None:
                if pane_reusable:
                    state.give_back(pane, position)
                continue
            result.assignments.append(planned)
            self._record(state, pane, bead)

        logger.info(
            "Planned %d assignment(s), skipped %d bead(s) with strategy %s",
            len(result.assignments),
            len(result.skipped),
            strategy.value,
        )
        return result

    def _admit(
        self,
        bead: Bead,
        pane: Pane,
        state: _BatchState,
        *,
        ignore_deps: bool,
        retry: bool,
        result: PlanResult,
    ) -> tuple[PlannedAssignment | None, bool]:
        """Committed pair, or None plus whether the pane can take another bead."""

        try:
            if retry:
                outcome = self.validator.readmit(pane, bead_id=bead.id)
            else:
                outcome = self.validator.admit(
                    pane,
                    bead_id=bead.id,
                    bead=bead,
                    ignore_deps=ignore_deps,
                    satisfied=frozenset(state.committed),
                )
        except DispatchError as error:
            reason = SkipReason.ASSIGNMENT_FAILED
            if error.code is ErrorCode.BLOCKED:
                reason = SkipReason.BLOCKED_BY_DEPENDENCY
            elif error.code in _PANE_ERROR_CODES:
                reason = SkipReason.NO_IDLE_AGENTS
            logger.info("Skipping bead %s on pane %d: %s", bead.id, pane.index, error.message)
            result.skipped.append(
                SkippedBead(
                    bead_id=bead.id,
                    reason=reason,
                    error_code=error.code.value,
                    message=error.message,
                ),
            )
            return None, error.code not in _PANE_ERROR_CODES
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected failure assigning bead %s to pane %d", bead.id, pane.index)
            result.skipped.append(
                SkippedBead(
                    bead_id=bead.id,
                    reason=SkipReason.ASSIGNMENT_FAILED,
                    message=str(error),
                ),
            )
            return None, True

        planned = PlannedAssignment(
            bead_id=bead.id,
            bead_title=bead.title,
            pane=pane.index,
            agent_type=pane.agent_type,
            committed=True,
            prompt_sent=outcome.prompt_sent,
            assignment=outcome.assignment,
            warnings=list(outcome.warnings),
        )
        return planned, False

    def _initial_state(self, idle_panes: Sequence[Pane]) -> _BatchState:
        state = _BatchState(
            pool=[pane for pane in idle_panes if pane.agent_type.is_agent],
        )
        most_recent: datetime | None = None
        for view in self.store.list_assignments(AssignmentFilter()):
            if view.status.is_live:
                state.live_by_type[view.agent_type] = state.live_by_type.get(view.agent_type, 0) + 1
            previous = state.last_assigned_at.get(view.pane)
            if previous is None or view.assigned_at > previous:
                state.last_assigned_at[view.pane] = view.assigned_at
            if most_recent is None or view.assigned_at >= most_recent:
                most_recent = view.assigned_at
                state.last_pane = view.pane
        return state

    def _record(self, state: _BatchState, pane: Pane, bead: Bead) -> None:
        state.committed.add(bead.id)
        state.live_by_type[pane.agent_type] = state.live_by_type.get(pane.agent_type, 0) + 1
        state.last_assigned_at[pane.index] = utc_now()
        state.last_pane = pane.index

    def _pending_blockers(self, bead: Bead, state: _BatchState) -> list[str]:
        # Out-of-batch blockers are unresolved; in-batch ones must be committed first.
        return [blocker for blocker in bead.blocked_by_ids if blocker not in state.committed]

    def _order_beads(self, strategy: Strategy, beads: Sequence[Bead]) -> list[Bead]:
        # P0 first; queue order is kept within a priority.
        ordered = sorted(beads, key=lambda bead: bead.priority)
        if strategy is Strategy.DEPENDENCY:
            return _topological_order(ordered)
        return ordered

    def _select_pane(self, strategy: Strategy, bead: Bead, state: _BatchState) -> Pane | None:
        if not state.pool:
            return None
        if strategy is Strategy.SPEED:
            return min(
                enumerate(state.pool),
                key=lambda item: (self.policy.speed_rank(item[1].agent_type), item[0]),
            )[1]
        if strategy is Strategy.QUALITY:
            return self._select_by_capability(bead, state) or self._select_balanced(state)
        if strategy is Strategy.ROUND_ROBIN:
            return _select_round_robin(state)
        return self._select_balanced(state)

    def _select_balanced(self, state: _BatchState) -> Pane:
        types_in_order: list[AgentType] = []
        for pane in state.pool:
            if pane.agent_type not in types_in_order:
                types_in_order.append(pane.agent_type)
        chosen_type = min(
            enumerate(types_in_order),
            key=lambda item: (state.live_by_type.get(item[1], 0), item[0]),
        )[1]
        candidates = [pane for pane in state.pool if pane.agent_type is chosen_type]
        return min(
            candidates,
            key=lambda pane: (
                pane.index in state.last_assigned_at,
                state.last_assigned_at.get(pane.index, datetime.min),
                pane.index,
            ),
        )

    def _select_by_capability(self, bead: Bead, state: _BatchState) -> Pane | None:
        task_type = infer_task_type(bead)
        if task_type is None:
            return None
        scored = [
            (self.policy.capability_score(pane.agent_type, task_type), -position, pane)
            for position, pane in enumerate(state.pool)
            if self.policy.has_capability_data(pane.agent_type, task_type)
        ]
        if not scored:
            return None
        return max(scored, key=lambda item: (item[0], item[1]))[2]


def _select_round_robin(state: _BatchState) -> Pane:
    ordered = sorted(state.pool, key=lambda pane: pane.index)
    if state.last_pane is None:
        return ordered[0]
    for pane in ordered:
        if pane.index > state.last_pane:
            return pane
    return ordered[0]


def _topological_order(beads: Sequence[Bead]) -> list[Bead]:
    """Kahn's algorithm over in-batch edges, ties broken by queue position.

    Beads caught in a cycle are appended in queue order; the planner then skips
    them because their blockers never commit.
    """

    position = {bead.id: index for index, bead in enumerate(beads)}
    by_id = {bead.id: bead for bead in beads}
    indegree = {bead.id: 0 for bead in beads}
    dependents: dict[str, list[str]] = {bead.id: [] for bead in beads}
    for bead in beads:
        for blocker in set(bead.blocked_by_ids):
            if blocker in by_id and blocker != bead.id:
                indegree[bead.id] += 1
                dependents[blocker].append(bead.id)

    ready = [(position[bead_id], bead_id) for bead_id, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: list[Bead] = []
    while ready:
        _, bead_id = heapq.heappop(ready)
        ordered.append(by_id[bead_id])
        for dependent in dependents[bead_id]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, (position[dependent], dependent))

    placed = {bead.id for bead in ordered}
    ordered.extend(bead for bead in beads if bead.id not in placed)
    return ordered
