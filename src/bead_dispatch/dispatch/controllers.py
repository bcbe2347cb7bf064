"""Controllers for dispatch CLI commands."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from bead_dispatch.config import Settings
from bead_dispatch.dispatch.activity import ActivityClassifier, ActivityProbe
from bead_dispatch.dispatch.beads import BrBeadTracker
from bead_dispatch.dispatch.collaborators import BeadTracker, Multiplexer
from bead_dispatch.dispatch.envelope import ResultEnvelope
from bead_dispatch.dispatch.errors import DispatchError, ErrorCode, TmuxError
from bead_dispatch.dispatch.models import (
    ActivitySample,
    ActivityState,
    AgentType,
    AssignmentFilter,
    AssignmentStatus,
    Bead,
    Pane,
    PaneActivity,
    PlanResult,
    SkippedBead,
    SkipReason,
    parse_agent_type,
)
from bead_dispatch.dispatch.planner import StrategyPlanner
from bead_dispatch.dispatch.policy import Strategy, parse_strategy
from bead_dispatch.dispatch.repository import AssignmentStore
from bead_dispatch.dispatch.tmux import TmuxClient
from bead_dispatch.dispatch.validator import AdmissionOutcome, AdmissionValidator
from bead_dispatch.storage.common import session_db_path

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ActivityCommand:
    """CLI input for pane activity inspection."""

    session: str
    state_dir: Path | None = None
    agent_type: str | None = None
    lines: int | None = None
    interval_seconds: float = 0.0


@dataclass(slots=True)
class AssignCommand:
    """CLI input for direct assignment."""

    session: str
    bead_ids: tuple[str, ...]
    pane: int
    state_dir: Path | None = None
    force: bool = False
    ignore_deps: bool = False
    prompt: str = ""


@dataclass(slots=True)
class ReassignCommand:
    """CLI input for reassignment."""

    session: str
    bead_id: str
    state_dir: Path | None = None
    to_pane: int | None = None
    to_type: str | None = None
    force: bool = False
    prompt: str = ""


@dataclass(slots=True)
class PlanCommand:
    """CLI input for batch planning."""

    session: str
    bead_ids: tuple[str, ...] = ()
    state_dir: Path | None = None
    strategy: str | None = None
    limit: int = 0
    ignore_deps: bool = False
    dry_run: bool = False


@dataclass(slots=True)
class RetryCommand:
    """CLI input for retrying one failed assignment."""

    session: str
    bead_id: str
    state_dir: Path | None = None
    pane: int | None = None
    force: bool = False
    prompt: str = ""


@dataclass(slots=True)
class RetryFailedCommand:
    """CLI input for retrying failed assignments as a batch."""

    session: str
    state_dir: Path | None = None
    agent_type: str | None = None
    strategy: str | None = None
    limit: int = 0


@dataclass(slots=True)
class ListAssignmentsCommand:
    """CLI input for assignment listing."""

    session: str
    state_dir: Path | None = None
    statuses: tuple[str, ...] = ()
    pane: int | None = None
    active_only: bool = False


@dataclass(slots=True)
class MutateAssignmentCommand:
    """CLI input for single-assignment operations."""

    session: str
    bead_id: str
    state_dir: Path | None = None
    reason: str = ""


@dataclass(slots=True)
class _DispatchContext:
    settings: Settings
    session: str
    store: AssignmentStore
    tmux: Multiplexer
    tracker: BeadTracker
    probe: ActivityProbe
    validator: AdmissionValidator
    planner: StrategyPlanner


class DispatchCliController:
    """Coordinates activity, assignment and planning CLI operations."""

    def __init__(
        self,
        *,
        tmux_factory: Callable[[Settings], Multiplexer] | None = None,
        tracker_factory: Callable[[Settings], BeadTracker] | None = None,
    ) -> None:
        self.tmux_factory = tmux_factory or _default_tmux
        self.tracker_factory = tracker_factory or _default_tracker

    def activity(self, command: ActivityCommand) -> ResultEnvelope:
        warnings: list[str] = []
        try:
            settings = _load_settings(command.state_dir)
            tmux = self.tmux_factory(settings)
            panes = tmux.list_panes(command.session)
            if command.agent_type:
                wanted = _parse_agent_type_arg(command.agent_type)
                panes = [pane for pane in panes if pane.agent_type is wanted]
            probe = ActivityProbe(
                tmux,
                ActivityClassifier(settings.classifier.to_config()),
                capture_lines=command.lines or settings.tmux.capture_lines,
                timeout_seconds=settings.tmux.capture_timeout_seconds,
            )
            activities = {pane.index: _probe_or_none(probe, pane, warnings) for pane in panes}
            if command.interval_seconds > 0 and panes:
                time.sleep(command.interval_seconds)
                for pane in panes:
                    first = activities[pane.index]
                    activities[pane.index] = _probe_or_none(
                        probe,
                        pane,
                        warnings,
                        previous=first.sample if first is not None else None,
                    )
        except DispatchError as error:
            return ResultEnvelope.failed("activity", command.session, error, warnings=warnings)

        entries = []
        summary = {state.value: 0 for state in ActivityState}
        for pane in panes:
            activity = activities[pane.index]
            summary[activity.state.value if activity is not None else "UNKNOWN"] += 1
            entries.append(
                {
                    **pane.to_dict(),
                    "activity": activity.to_dict() if activity is not None else _unknown_activity(),
                },
            )
        return ResultEnvelope.ok(
            "activity",
            command.session,
            {"panes": entries, "summary": summary},
            warnings=warnings,
        )

    def assign(self, command: AssignCommand) -> ResultEnvelope:
        try:
            with self._context(command.session, command.state_dir) as context:
                outcome = context.validator.direct_assign(
                    command.bead_ids,
                    command.pane,
                    force=command.force,
                    ignore_deps=command.ignore_deps,
                    prompt=command.prompt,
                )
        except DispatchError as error:
            return ResultEnvelope.failed("assign", command.session, error)
        return _outcome_envelope("assign", command.session, outcome)

    def reassign(self, command: ReassignCommand) -> ResultEnvelope:
        try:
            to_agent_type = (
                _parse_agent_type_arg(command.to_type) if command.to_type is not None else None
            )
            with self._context(command.session, command.state_dir) as context:
                outcome = context.validator.reassign(
                    command.bead_id,
                    to_pane=command.to_pane,
                    to_agent_type=to_agent_type,
                    force=command.force,
                    prompt=command.prompt,
                )
        except DispatchError as error:
            return ResultEnvelope.failed("reassign", command.session, error)
        return _outcome_envelope("reassign", command.session, outcome)

    def plan(self, command: PlanCommand) -> ResultEnvelope:
        warnings: list[str] = []
        try:
            with self._context(command.session, command.state_dir) as context:
                strategy = _resolve_strategy(context.settings, command.strategy)
                beads, unresolved = _collect_beads(context.tracker, command.bead_ids)
                idle_panes = _idle_panes(context, warnings)
                result = context.planner.plan(
                    beads,
                    idle_panes,
                    strategy=strategy,
                    limit=command.limit,
                    ignore_deps=command.ignore_deps,
                    dry_run=command.dry_run,
                )
        except DispatchError as error:
            return ResultEnvelope.failed("plan", command.session, error, warnings=warnings)

        result.skipped[:0] = unresolved
        data = result.to_dict()
        data["idle_panes"] = [pane.index for pane in idle_panes]
        return ResultEnvelope.ok(
            "plan",
            command.session,
            data,
            warnings=warnings + result.warnings,
        )

    def retry(self, command: RetryCommand) -> ResultEnvelope:
        try:
            with self._context(command.session, command.state_dir) as context:
                outcome = context.validator.retry(
                    command.bead_id,
                    to_pane=command.pane,
                    force=command.force,
                    prompt=command.prompt,
                )
        except DispatchError as error:
            return ResultEnvelope.failed("assignments", command.session, error, subcommand="retry")
        return _outcome_envelope("assignments", command.session, outcome, subcommand="retry")

    def retry_failed(self, command: RetryFailedCommand) -> ResultEnvelope:
        warnings: list[str] = []
        try:
            wanted = (
                _parse_agent_type_arg(command.agent_type) if command.agent_type else None
            )
            with self._context(command.session, command.state_dir) as context:
                strategy = _resolve_strategy(context.settings, command.strategy)
                failed = [
                    view
                    for view in context.store.list_assignments(
                        AssignmentFilter(statuses=frozenset({AssignmentStatus.FAILED})),
                    )
                    if wanted is None or view.agent_type is wanted
                ]
                if failed:
                    beads, unresolved = _collect_beads(
                        context.tracker,
                        tuple(view.bead_id for view in failed),
                    )
                    idle_panes = _idle_panes(context, warnings)
                    result = context.planner.plan(
                        beads,
                        idle_panes,
                        strategy=strategy,
                        limit=command.limit,
                        ignore_deps=True,
                        retry=True,
                    )
                else:
                    unresolved, idle_panes = [], []
                    result = PlanResult(strategy=strategy.value, dry_run=False)
        except DispatchError as error:
            return ResultEnvelope.failed(
                "assignments",
                command.session,
                error,
                subcommand="retry-failed",
                warnings=warnings,
            )

        result.skipped[:0] = unresolved
        data = result.to_dict()
        data["idle_panes"] = [pane.index for pane in idle_panes]
        data["summary"] = {
            "total_failed": len(failed),
            "retried_count": len(result.assignments),
            "skipped_count": len(result.skipped),
        }
        return ResultEnvelope.ok(
            "assignments",
            command.session,
            data,
            subcommand="retry-failed",
            warnings=warnings + result.warnings,
        )

    def list_assignments(self, command: ListAssignmentsCommand) -> ResultEnvelope:
        try:
            statuses = _parse_statuses(command.statuses)
            with self._store(command.session, command.state_dir) as store:
                views = store.list_assignments(
                    AssignmentFilter(
                        statuses=statuses,
                        pane=command.pane,
                        active_only=command.active_only,
                    ),
                )
                stats = store.stats()
        except DispatchError as error:
            return ResultEnvelope.failed("assignments", command.session, error, subcommand="list")
        return ResultEnvelope.ok(
            "assignments",
            command.session,
            {"assignments": [view.to_dict() for view in views], "stats": stats},
            subcommand="list",
        )

    def mark_working(self, command: MutateAssignmentCommand) -> ResultEnvelope:
        return self._mutate(
            command,
            "mark-working",
            lambda store: store.mark_working(command.bead_id),
        )

    def mark_done(self, command: MutateAssignmentCommand) -> ResultEnvelope:
        return self._mutate(command, "mark-done", lambda store: store.mark_done(command.bead_id))

    def mark_failed(self, command: MutateAssignmentCommand) -> ResultEnvelope:
        return self._mutate(
            command,
            "mark-failed",
            lambda store: store.mark_failed(command.bead_id, command.reason),
        )

    def cancel(self, command: MutateAssignmentCommand) -> ResultEnvelope:
        try:
            with self._store(command.session, command.state_dir) as store:
                current = store.get(command.bead_id)
                if current is None or not current.status.is_live:
                    raise DispatchError(
                        ErrorCode.NOT_ASSIGNED,
                        f"Bead {command.bead_id} has no active assignment to cancel",
                    )
                store.remove(command.bead_id)
        except DispatchError as error:
            return ResultEnvelope.failed("assignments", command.session, error, subcommand="cancel")
        return ResultEnvelope.ok(
            "assignments",
            command.session,
            {"cancelled": current.to_dict()},
            subcommand="cancel",
        )

    def redeliver(self, command: MutateAssignmentCommand) -> ResultEnvelope:
        try:
            with self._context(command.session, command.state_dir) as context:
                outcome = context.validator.redeliver(command.bead_id)
        except DispatchError as error:
            return ResultEnvelope.failed(
                "assignments",
                command.session,
                error,
                subcommand="redeliver",
            )
        return _outcome_envelope("assignments", command.session, outcome, subcommand="redeliver")

    def history(self, command: MutateAssignmentCommand) -> ResultEnvelope:
        try:
            with self._store(command.session, command.state_dir) as store:
                current = store.get(command.bead_id)
                events = store.history(command.bead_id)
                previous_panes = store.previous_panes(command.bead_id)
        except DispatchError as error:
            return ResultEnvelope.failed(
                "assignments",
                command.session,
                error,
                subcommand="history",
            )
        if current is None and not events:
            return ResultEnvelope.failed(
                "assignments",
                command.session,
                DispatchError(ErrorCode.NOT_ASSIGNED, f"Bead {command.bead_id} has no history"),
                subcommand="history",
            )
        return ResultEnvelope.ok(
            "assignments",
            command.session,
            {
                "assignment": current.to_dict() if current is not None else None,
                "previous_panes": previous_panes,
                "events": [event.to_dict() for event in events],
            },
            subcommand="history",
        )

    def _mutate(
        self,
        command: MutateAssignmentCommand,
        subcommand: str,
        operation: Callable[[AssignmentStore], Any],
    ) -> ResultEnvelope:
        try:
            with self._store(command.session, command.state_dir) as store:
                view = operation(store)
        except DispatchError as error:
            return ResultEnvelope.failed(
                "assignments",
                command.session,
                error,
                subcommand=subcommand,
            )
        return ResultEnvelope.ok(
            "assignments",
            command.session,
            {"assignment": view.to_dict()},
            subcommand=subcommand,
        )

    @contextmanager
    def _store(self, session: str, state_dir: Path | None) -> Iterator[AssignmentStore]:
        settings = _load_settings(state_dir)
        with _assignment_store(settings, session) as store:
            yield store

    @contextmanager
    def _context(self, session: str, state_dir: Path | None) -> Iterator[_DispatchContext]:
        settings = _load_settings(state_dir)
        tmux = self.tmux_factory(settings)
        tracker = self.tracker_factory(settings)
        probe = ActivityProbe(
            tmux,
            ActivityClassifier(settings.classifier.to_config()),
            capture_lines=settings.tmux.capture_lines,
            timeout_seconds=settings.tmux.capture_timeout_seconds,
        )
        with _assignment_store(settings, session) as store:
            validator = AdmissionValidator(
                session=session,
                store=store,
                panes=tmux,
                probe=probe,
                dependencies=tracker,
                delivery=tmux,
                send_timeout_seconds=settings.tmux.send_timeout_seconds,
            )
            yield _DispatchContext(
                settings=settings,
                session=session,
                store=store,
                tmux=tmux,
                tracker=tracker,
                probe=probe,
                validator=validator,
                planner=StrategyPlanner(
                    validator=validator,
                    store=store,
                    policy=settings.planner.to_policy(),
                ),
            )


def _default_tmux(settings: Settings) -> Multiplexer:
    return TmuxClient(
        settings.tmux.binary,
        list_timeout_seconds=settings.tmux.capture_timeout_seconds,
    )


def _default_tracker(settings: Settings) -> BeadTracker:
    return BrBeadTracker(
        settings.tracker.binary,
        workdir=settings.tracker.workdir,
        timeout_seconds=settings.tracker.timeout_seconds,
    )


def _load_settings(state_dir: Path | None) -> Settings:
    try:
        settings = Settings.from_env(state_dir=state_dir)
        settings.validate()
    except ValueError as error:
        raise DispatchError(ErrorCode.INVALID_ARGS, str(error)) from error
    return settings


@contextmanager
def _assignment_store(settings: Settings, session: str) -> Iterator[AssignmentStore]:
    if not session.strip():
        raise DispatchError(ErrorCode.INVALID_ARGS, "Session name is required")
    try:
        db_path = session_db_path(settings.store.state_dir, session)
    except ValueError as error:
        raise DispatchError(ErrorCode.INVALID_ARGS, str(error)) from error
    store = AssignmentStore(
        db_path,
        session_name=session,
        busy_timeout_ms=settings.store.busy_timeout_ms,
        max_attempts=settings.store.max_attempts,
    )
    try:
        store.init_schema()
        yield store
    finally:
        store.close()


def _collect_beads(
    tracker: BeadTracker,
    bead_ids: tuple[str, ...],
) -> tuple[list[Bead], list[SkippedBead]]:
    if not bead_ids:
        return tracker.ready_beads(), []

    beads: list[Bead] = []
    unresolved: list[SkippedBead] = []
    seen: set[str] = set()
    for bead_id in bead_ids:
        if bead_id in seen:
            continue
        seen.add(bead_id)
        try:
            beads.append(tracker.fetch_bead(bead_id))
        except DispatchError as error:
            unresolved.append(
                SkippedBead(
                    bead_id=bead_id,
                    reason=SkipReason.ASSIGNMENT_FAILED,
                    error_code=error.code.value,
                    message=error.message,
                ),
            )
    return beads, unresolved


def _idle_panes(context: _DispatchContext, warnings: list[str]) -> list[Pane]:
    idle: list[Pane] = []
    for pane in context.tmux.list_panes(context.session):
        if not pane.agent_type.is_agent:
            continue
        activity = _probe_or_none(context.probe, pane, warnings)
        if activity is not None and activity.state is ActivityState.WAITING:
            idle.append(pane)
    return idle


def _probe_or_none(
    probe: ActivityProbe,
    pane: Pane,
    warnings: list[str],
    *,
    previous: ActivitySample | None = None,
) -> PaneActivity | None:
    try:
        return probe.probe(pane, previous=previous)
    except TmuxError as error:
        logger.warning("Could not capture pane %d: %s", pane.index, error)
        warnings.append(f"Pane {pane.index} could not be captured: {error.message}")
        return None


def _unknown_activity() -> dict[str, Any]:
    return {
        "state": ActivityState.UNKNOWN.value,
        "confidence": 0.0,
        "velocity": None,
        "state_since": None,
        "matched_rule": None,
        "matched_pattern": None,
    }


def _outcome_envelope(
    command: str,
    session: str,
    outcome: AdmissionOutcome,
    *,
    subcommand: str | None = None,
) -> ResultEnvelope:
    if outcome.delivery_error is not None:
        return ResultEnvelope.failed(
            command,
            session,
            outcome.delivery_error,
            subcommand=subcommand,
            data=outcome.to_dict(),
            warnings=outcome.warnings,
        )
    return ResultEnvelope.ok(
        command,
        session,
        outcome.to_dict(),
        subcommand=subcommand,
        warnings=outcome.warnings,
    )


def _resolve_strategy(settings: Settings, value: str | None) -> Strategy:
    if not value:
        return settings.planner.default_strategy
    try:
        return parse_strategy(value)
    except ValueError as error:
        raise DispatchError(ErrorCode.INVALID_ARGS, str(error)) from error


def _parse_agent_type_arg(value: str) -> AgentType:
    agent_type = parse_agent_type(value)
    if agent_type is AgentType.UNKNOWN and value.strip().lower() != AgentType.UNKNOWN.value:
        raise DispatchError(ErrorCode.INVALID_ARGS, f"Unknown agent type: {value!r}")
    return agent_type


def _parse_statuses(values: tuple[str, ...]) -> frozenset[AssignmentStatus] | None:
    if not values:
        return None
    statuses: set[AssignmentStatus] = set()
    for value in values:
        try:
            statuses.add(AssignmentStatus(value.strip().lower()))
        except ValueError as error:
            raise DispatchError(
                ErrorCode.INVALID_ARGS,
                f"Unknown assignment status: {value!r}",
            ) from error
    return frozenset(statuses)
