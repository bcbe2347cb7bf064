"""Admission control for direct assignment, reassignment and prompt redelivery."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from bead_dispatch.dispatch.activity import ActivityProbe
from bead_dispatch.dispatch.collaborators import DependencySource, PaneEnumerator, PromptDelivery
from bead_dispatch.dispatch.errors import (
    AdmissionError,
    DispatchError,
    ErrorCode,
    SendError,
    StoreError,
    TmuxError,
)
from bead_dispatch.dispatch.models import (
    ActivityState,
    AgentType,
    AssignmentStatus,
    AssignmentView,
    Bead,
    Pane,
    PaneActivity,
)
from bead_dispatch.dispatch.prompts import (
    DEFAULT_ASSIGN_TEMPLATE,
    DEFAULT_CONTINUATION_TEMPLATE,
    render_prompt,
)
from bead_dispatch.dispatch.repository import AssignmentStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AdmissionOutcome:
    """Committed assignment plus what happened while delivering its prompt."""

    assignment: AssignmentView
    pane: Pane
    activity: PaneActivity | None
    prompt_sent: bool
    delivery_error: DispatchError | None = None
    previous_pane: int | None = None
    previous_agent_type: AgentType | None = None
    previous_fail_reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "assignment": self.assignment.to_dict(),
            "pane": self.pane.to_dict(),
            "activity": self.activity.to_dict() if self.activity is not None else None,
            "prompt_sent": self.prompt_sent,
        }
        if self.previous_pane is not None:
            payload["previous_pane"] = self.previous_pane
        if self.previous_agent_type is not None:
            payload["previous_agent_type"] = self.previous_agent_type.value
            payload["previous_fail_reason"] = self.previous_fail_reason
        return payload


class AdmissionValidator:
    """Checks a bead/pane pair against busy, dependency and agent-type policy."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        session: str,
        store: AssignmentStore,
        panes: PaneEnumerator,
        probe: ActivityProbe,
        dependencies: DependencySource,
        delivery: PromptDelivery,
        send_timeout_seconds: float = 5.0,
        assign_template: str = DEFAULT_ASSIGN_TEMPLATE,
        continuation_template: str = DEFAULT_CONTINUATION_TEMPLATE,
    ) -> None:
        self.session = session
        self.store = store
        self.panes = panes
        self.probe = probe
        self.dependencies = dependencies
        self.delivery = delivery
        self.send_timeout_seconds = send_timeout_seconds
        self.assign_template = assign_template
        self.continuation_template = continuation_template

    def list_panes(self) -> list[Pane]:
        return self.panes.list_panes(self.session)

    def direct_assign(
        self,
        bead_ids: Sequence[str],
        pane_index: int,
        *,
        force: bool = False,
        ignore_deps: bool = False,
        prompt: str = "",
    ) -> AdmissionOutcome:
        """Assign exactly one bead to the pane with the given index."""

        if len(bead_ids) != 1 or not bead_ids[0].strip():
            raise AdmissionError(
                ErrorCode.INVALID_ARGS,
                f"Direct assignment takes exactly one bead id, got {len(bead_ids)}",
            )
        pane = self._find_pane(self.list_panes(), pane_index)
        return self.admit(
            pane,
            bead_id=bead_ids[0].strip(),
            force=force,
            ignore_deps=ignore_deps,
            prompt=prompt,
        )

    def admit(  # noqa: PLR0913
        self,
        pane: Pane,
        *,
        bead_id: str,
        bead: Bead | None = None,
        force: bool = False,
        ignore_deps: bool = False,
        prompt: str = "",
        satisfied: frozenset[str] = frozenset(),
    ) -> AdmissionOutcome:
        """Run admission checks for a resolved pane, commit, then deliver.

        ``satisfied`` lists blockers already handled in the current batch.
        """

        activity = self._check_target(pane, force=force)
        busy = activity.state is not ActivityState.WAITING

        if bead is None:
            bead = self.dependencies.fetch_bead(bead_id)
        blockers = tuple(
            blocker for blocker in bead.blocked_by_ids if blocker not in satisfied
        )
        if blockers and not ignore_deps:
            raise AdmissionError(
                ErrorCode.BLOCKED,
                f"Bead {bead_id} is blocked by {', '.join(blockers)}; "
                "use --ignore-deps to assign anyway",
            )

        text = prompt or render_prompt(
            self.assign_template,
            bead_id=bead_id,
            bead_title=bead.title,
            bead_type=bead.issue_type,
            blocked_by=blockers,
            session=self.session,
            pane=pane.index,
        )
        view = self.store.assign(
            bead_id,
            bead_title=bead.title,
            pane=pane.index,
            agent_type=pane.agent_type,
            model=pane.variant,
            prompt=text,
            pane_was_busy=busy,
            deps_ignored=bool(blockers) and ignore_deps,
            blocked_by_ids=blockers,
        )

        warnings: list[str] = []
        if busy:
            warnings.append(
                f"Pane {pane.index} was {activity.state.value} when bead {bead_id} "
                "was assigned (forced)",
            )
        if view.deps_ignored:
            warnings.append(
                f"Bead {bead_id} assigned despite unresolved blockers: {', '.join(blockers)}",
            )
        view, sent, delivery_error = self._deliver(pane, view, warnings)
        return AdmissionOutcome(
            assignment=view,
            pane=pane,
            activity=activity,
            prompt_sent=sent,
            delivery_error=delivery_error,
            warnings=warnings,
        )

    def reassign(
        self,
        bead_id: str,
        *,
        to_pane: int | None = None,
        to_agent_type: AgentType | None = None,
        force: bool = False,
        prompt: str = "",
    ) -> AdmissionOutcome:
        """Move a live assignment to a specific pane or to an idle pane of a type."""

        current = self.store.get(bead_id)
        if current is None or not current.status.is_live:
            raise AdmissionError(
                ErrorCode.NOT_ASSIGNED,
                f"Bead {bead_id} has no active assignment to reassign",
            )
        if (to_pane is None) == (to_agent_type is None):
            raise AdmissionError(
                ErrorCode.INVALID_ARGS,
                "Specify exactly one of --to-pane or --to-type",
            )

        panes = self.list_panes()
        if to_agent_type is not None:
            target, activity = self._first_idle_pane(panes, to_agent_type, exclude=current.pane)
        else:
            target = self._find_pane(panes, to_pane)
            if not target.agent_type.is_agent:
                raise AdmissionError(
                    ErrorCode.NOT_AGENT_PANE,
                    f"Pane {target.index} runs {target.agent_type.value}, not an agent",
                )
            if target.index == current.pane and not force:
                raise AdmissionError(
                    ErrorCode.ALREADY_ASSIGNED,
                    f"Bead {bead_id} is already assigned to pane {target.index}",
                )
            activity = self.probe.probe(target)
            if activity.state is not ActivityState.WAITING and not force:
                raise AdmissionError(
                    ErrorCode.TARGET_BUSY,
                    f"Target pane {target.index} is {activity.state.value}; "
                    "use --force to reassign anyway",
                )
        text = prompt or render_prompt(
            self.continuation_template,
            bead_id=bead_id,
            bead_title=current.bead_title,
            blocked_by=current.blocked_by_ids,
            session=self.session,
            pane=target.index,
            previous_pane=current.pane,
        )
        busy = activity.state is not ActivityState.WAITING
        view = self.store.reassign(
            bead_id,
            pane=target.index,
            agent_type=target.agent_type,
            model=target.variant,
            pane_was_busy=busy,
            prompt=text,
        )

        warnings: list[str] = []
        if busy:
            warnings.append(
                f"Pane {target.index} was {activity.state.value} when bead {bead_id} "
                "was reassigned (forced)",
            )
        view, sent, delivery_error = self._deliver(target, view, warnings)
        return AdmissionOutcome(
            assignment=view,
            pane=target,
            activity=activity,
            prompt_sent=sent,
            delivery_error=delivery_error,
            previous_pane=current.pane,
            warnings=warnings,
        )

    def retry(
        self,
        bead_id: str,
        *,
        to_pane: int | None = None,
        force: bool = False,
        prompt: str = "",
    ) -> AdmissionOutcome:
        """Give a failed bead another attempt on ``to_pane`` or the first idle agent pane.

        Without a target pane, panes other than the one that failed are tried first.
        The stored prompt is sent again unless ``prompt`` replaces it.
        """

        current = self._require_failed(bead_id)
        panes = self.list_panes()
        if to_pane is None:
            target, activity = self._first_idle_agent_pane(panes, avoid=current.pane)
        else:
            target = self._find_pane(panes, to_pane)
            activity = self._check_target(target, force=force)
        return self._retry_on(target, activity, current, prompt=prompt)

    def readmit(
        self,
        pane: Pane,
        *,
        bead_id: str,
        force: bool = False,
        prompt: str = "",
    ) -> AdmissionOutcome:
        """Retry a failed bead on an already resolved pane."""

        current = self._require_failed(bead_id)
        activity = self._check_target(pane, force=force)
        return self._retry_on(pane, activity, current, prompt=prompt)

    def redeliver(self, bead_id: str) -> AdmissionOutcome:
        """Send the stored prompt of a live assignment again."""

        view = self.store.get(bead_id)
        if view is None or not view.status.is_live:
            raise AdmissionError(
                ErrorCode.NOT_ASSIGNED,
                f"Bead {bead_id} has no active assignment",
            )
        pane = self._find_pane(self.list_panes(), view.pane)
        warnings: list[str] = []
        view, sent, delivery_error = self._deliver(pane, view, warnings)
        return AdmissionOutcome(
            assignment=view,
            pane=pane,
            activity=None,
            prompt_sent=sent,
            delivery_error=delivery_error,
            warnings=warnings,
        )

    def _retry_on(
        self,
        target: Pane,
        activity: PaneActivity,
        current: AssignmentView,
        *,
        prompt: str,
    ) -> AdmissionOutcome:
        busy = activity.state is not ActivityState.WAITING
        view = self.store.retry(
            current.bead_id,
            pane=target.index,
            agent_type=target.agent_type,
            model=target.variant,
            pane_was_busy=busy,
            prompt=prompt,
        )

        warnings: list[str] = []
        if busy:
            warnings.append(
                f"Pane {target.index} was {activity.state.value} when bead {current.bead_id} "
                "was retried (forced)",
            )
        view, sent, delivery_error = self._deliver(target, view, warnings)
        return AdmissionOutcome(
            assignment=view,
            pane=target,
            activity=activity,
            prompt_sent=sent,
            delivery_error=delivery_error,
            previous_pane=current.pane,
            previous_agent_type=current.agent_type,
            previous_fail_reason=current.fail_reason,
            warnings=warnings,
        )

    def _require_failed(self, bead_id: str) -> AssignmentView:
        current = self.store.get(bead_id)
        if current is None:
            raise AdmissionError(
                ErrorCode.NOT_ASSIGNED,
                f"Bead {bead_id} has no assignment to retry",
            )
        if current.status is not AssignmentStatus.FAILED:
            raise AdmissionError(
                ErrorCode.INVALID_TRANSITION,
                f"Bead {bead_id} is {current.status.value}; only failed assignments can be retried",
            )
        return current

    def _check_target(self, pane: Pane, *, force: bool) -> PaneActivity:
        if not pane.agent_type.is_agent:
            raise AdmissionError(
                ErrorCode.NOT_AGENT_PANE,
                f"Pane {pane.index} runs {pane.agent_type.value}, not an agent",
            )
        activity = self.probe.probe(pane)
        if activity.state is not ActivityState.WAITING and not force:
            raise AdmissionError(
                ErrorCode.PANE_BUSY,
                f"Pane {pane.index} is {activity.state.value} "
                f"(confidence {activity.confidence:.2f}); use --force to assign anyway",
            )
        return activity

    def _first_idle_agent_pane(
        self,
        panes: list[Pane],
        *,
        avoid: int,
    ) -> tuple[Pane, PaneActivity]:
        candidates = sorted(
            (pane for pane in panes if pane.agent_type.is_agent),
            key=lambda item: (item.index == avoid, item.index),
        )
        for pane in candidates:
            activity = self.probe.probe(pane)
            if activity.state is ActivityState.WAITING:
                return pane, activity
        raise AdmissionError(
            ErrorCode.NO_IDLE_AGENT,
            f"No idle agent pane in session {self.session}",
        )

    def _first_idle_pane(
        self,
        panes: list[Pane],
        agent_type: AgentType,
        *,
        exclude: int,
    ) -> tuple[Pane, PaneActivity]:
        if not agent_type.is_agent:
            raise AdmissionError(
                ErrorCode.INVALID_ARGS,
                f"{agent_type.value} is not an agent type",
            )
        for pane in sorted(panes, key=lambda item: item.index):
            if pane.agent_type is not agent_type or pane.index == exclude:
                continue
            activity = self.probe.probe(pane)
            if activity.state is ActivityState.WAITING:
                return pane, activity
        raise AdmissionError(
            ErrorCode.NO_IDLE_AGENT,
            f"No idle {agent_type.value} pane in session {self.session}",
        )

    def _find_pane(self, panes: list[Pane], pane_index: int) -> Pane:
        for pane in panes:
            if pane.index == pane_index:
                return pane
        raise AdmissionError(
            ErrorCode.PANE_NOT_FOUND,
            f"Pane {pane_index} not found in session {self.session}",
        )

    def _deliver(
        self,
        pane: Pane,
        view: AssignmentView,
        warnings: list[str],
    ) -> tuple[AssignmentView, bool, DispatchError | None]:
        try:
            self.delivery.send(pane.pane_id, view.prompt, timeout_seconds=self.send_timeout_seconds)
        except (SendError, TmuxError) as error:
            logger.warning(
                "Prompt for bead %s not delivered to pane %d: %s",
                view.bead_id,
                pane.index,
                error,
            )
            warnings.append(
                f"Prompt for bead {view.bead_id} was not delivered to pane {pane.index}; "
                "retry with `assignments redeliver`",
            )
            return view, False, error

        try:
            view = self.store.mark_prompt_sent(view.bead_id)
        except StoreError as error:
            logger.warning("Prompt sent but flag not recorded for %s: %s", view.bead_id, error)
            warnings.append(f"Prompt for bead {view.bead_id} was sent but not recorded as sent")
        return view, True, None
