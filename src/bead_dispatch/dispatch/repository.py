"""Per-session assignment store backed by SQLModel + SQLite.

Every mutation loads the full assignment snapshot, applies the change to the
in-memory copy and writes the whole snapshot back in one transaction. The
write is guarded by a revision counter: a writer that lost the race sees the
guard match zero rows, rolls back and retries from a fresh snapshot.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import DatabaseError, IntegrityError
from sqlmodel import Session, col, select

from bead_dispatch.dispatch.errors import ErrorCode, StoreError
from bead_dispatch.dispatch.models import (
    LIVE_STATUSES,
    AgentType,
    AssignmentEventView,
    AssignmentFilter,
    AssignmentStatus,
    AssignmentView,
    parse_agent_type,
)
from bead_dispatch.storage.alembic_runner import upgrade_head
from bead_dispatch.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from bead_dispatch.storage.sqlmodel_models import (
    STORE_REVISION_ROW_ID,
    AssignmentEvent,
    AssignmentRecord,
    StoreRevision,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ALLOWED_TRANSITIONS: dict[AssignmentStatus, frozenset[AssignmentStatus]] = {
    AssignmentStatus.ASSIGNED: frozenset(
        {AssignmentStatus.WORKING, AssignmentStatus.DONE, AssignmentStatus.FAILED},
    ),
    AssignmentStatus.WORKING: frozenset({AssignmentStatus.DONE, AssignmentStatus.FAILED}),
}


@dataclass(slots=True)
class _PendingEvent:
    bead_id: str
    event_type: str
    status_from: AssignmentStatus | None
    status_to: AssignmentStatus | None
    pane_from: int | None = None
    pane_to: int | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class _Snapshot:
    revision: int
    records: dict[str, AssignmentView]
    events: list[_PendingEvent] = field(default_factory=list)

    def require_live(self, bead_id: str) -> AssignmentView:
        view = self.records.get(bead_id)
        if view is None or not view.status.is_live:
            raise StoreError(
                f"Bead {bead_id} has no active assignment",
                code=ErrorCode.NOT_ASSIGNED,
            )
        return view


class AssignmentStore:
    """Assignment persistence facade for one multiplexer session."""

    def __init__(
        self,
        db_path: Path,
        *,
        session_name: str,
        busy_timeout_ms: int = 5_000,
        max_attempts: int = 5,
    ) -> None:
        self.db_path = db_path
        self.session_name = session_name
        self.max_attempts = max(1, max_attempts)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and make sure the revision row exists."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            upgrade_head(self.db_path)
        except DatabaseError as error:
            raise StoreError(
                f"Assignment store {self.db_path} could not be migrated: {error}",
            ) from error
        self._ensure_revision_row()

    def _ensure_revision_row(self) -> None:
        with Session(self.engine) as session:
            if session.get(StoreRevision, STORE_REVISION_ROW_ID) is not None:
                return
            session.add(
                StoreRevision(
                    id=STORE_REVISION_ROW_ID,
                    session_name=self.session_name,
                    revision=0,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                # Another process created it first.
                session.rollback()

    def revision(self) -> int:
        """Current store revision, bumped by every committed mutation."""

        with Session(self.engine) as session:
            row = session.get(StoreRevision, STORE_REVISION_ROW_ID)
            return row.revision if row is not None else 0

    def assign(  # noqa: PLR0913
        self,
        bead_id: str,
        *,
        bead_title: str,
        pane: int,
        agent_type: AgentType,
        model: str = "",
        prompt: str = "",
        pane_was_busy: bool = False,
        deps_ignored: bool = False,
        blocked_by_ids: tuple[str, ...] = (),
    ) -> AssignmentView:
        """Create a live assignment. A terminal record for the bead is replaced."""

        def mutation(snapshot: _Snapshot, now: datetime) -> AssignmentView:
            existing = snapshot.records.get(bead_id)
            if existing is not None and existing.status.is_live:
                raise StoreError(
                    f"Bead {bead_id} is already assigned to pane {existing.pane} "
                    f"(status={existing.status.value})",
                    code=ErrorCode.DUPLICATE,
                )
            if existing is not None:
                del snapshot.records[bead_id]
            view = AssignmentView(
                bead_id=bead_id,
                bead_title=bead_title,
                pane=pane,
                agent_type=agent_type,
                model=model,
                status=AssignmentStatus.ASSIGNED,
                prompt=prompt,
                prompt_sent=False,
                assigned_at=now,
                pane_was_busy=pane_was_busy,
                deps_ignored=deps_ignored,
                blocked_by_ids=tuple(blocked_by_ids),
            )
            snapshot.records[bead_id] = view
            snapshot.events.append(
                _PendingEvent(
                    bead_id=bead_id,
                    event_type="assigned",
                    status_from=existing.status if existing is not None else None,
                    status_to=AssignmentStatus.ASSIGNED,
                    pane_from=existing.pane if existing is not None else None,
                    pane_to=pane,
                    details={
                        "agent_type": agent_type.value,
                        "pane_was_busy": pane_was_busy,
                        "deps_ignored": deps_ignored,
                        "blocked_by_ids": list(blocked_by_ids),
                    },
                ),
            )
            return view

        view = self._mutate("assign", mutation)
        logger.info("Assigned bead %s to pane %d (%s)", bead_id, pane, agent_type.value)
        return view

    def get(self, bead_id: str) -> AssignmentView | None:
        with Session(self.engine) as session:
            row = session.get(AssignmentRecord, bead_id)
            return _to_view(row) if row is not None else None

    def list_assignments(self, selection: AssignmentFilter | None = None) -> list[AssignmentView]:
        """Assignments in insertion order, optionally filtered."""

        selection = selection or AssignmentFilter()
        statuses = selection.statuses
        if selection.active_only:
            statuses = LIVE_STATUSES if statuses is None else statuses & LIVE_STATUSES

        statement = select(AssignmentRecord).order_by(col(AssignmentRecord.seq))
        if selection.pane is not None:
            statement = statement.where(col(AssignmentRecord.pane) == selection.pane)
        if statuses is not None:
            statement = statement.where(
                col(AssignmentRecord.status).in_([status.value for status in statuses]),
            )
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
            return [_to_view(row) for row in rows]

    def mark_working(self, bead_id: str) -> AssignmentView:
        return self._transition(bead_id, AssignmentStatus.WORKING)

    def mark_done(self, bead_id: str) -> AssignmentView:
        return self._transition(bead_id, AssignmentStatus.DONE)

    def mark_failed(self, bead_id: str, reason: str = "") -> AssignmentView:
        return self._transition(bead_id, AssignmentStatus.FAILED, reason=reason)

    def mark_prompt_sent(self, bead_id: str) -> AssignmentView:
        """Record that the rendered prompt reached the pane."""

        def mutation(snapshot: _Snapshot, _: datetime) -> AssignmentView:
            view = snapshot.require_live(bead_id)
            view.prompt_sent = True
            snapshot.events.append(
                _PendingEvent(
                    bead_id=bead_id,
                    event_type="prompt_sent",
                    status_from=view.status,
                    status_to=view.status,
                    pane_to=view.pane,
                ),
            )
            return view

        return self._mutate("mark_prompt_sent", mutation)

    def reassign(  # noqa: PLR0913
        self,
        bead_id: str,
        *,
        pane: int,
        agent_type: AgentType,
        model: str = "",
        pane_was_busy: bool = False,
        prompt: str = "",
    ) -> AssignmentView:
        """Move a live assignment to another pane and restart its lifecycle."""

        def mutation(snapshot: _Snapshot, now: datetime) -> AssignmentView:
            view = snapshot.require_live(bead_id)
            previous_pane = view.pane
            previous_status = view.status
            view.pane = pane
            view.agent_type = agent_type
            view.model = model
            view.status = AssignmentStatus.ASSIGNED
            view.prompt_sent = False
            view.pane_was_busy = pane_was_busy
            view.assigned_at = now
            view.started_at = None
            if prompt:
                view.prompt = prompt
            snapshot.events.append(
                _PendingEvent(
                    bead_id=bead_id,
                    event_type="reassigned",
                    status_from=previous_status,
                    status_to=AssignmentStatus.ASSIGNED,
                    pane_from=previous_pane,
                    pane_to=pane,
                    details={"agent_type": agent_type.value, "pane_was_busy": pane_was_busy},
                ),
            )
            return view

        view = self._mutate("reassign", mutation)
        logger.info("Reassigned bead %s to pane %d (%s)", bead_id, pane, agent_type.value)
        return view

    def retry(  # noqa: PLR0913
        self,
        bead_id: str,
        *,
        pane: int,
        agent_type: AgentType,
        model: str = "",
        pane_was_busy: bool = False,
        prompt: str = "",
    ) -> AssignmentView:
        """Put a failed assignment back to assigned on ``pane``, counting the attempt."""

        def mutation(snapshot: _Snapshot, now: datetime) -> AssignmentView:
            view = snapshot.records.get(bead_id)
            if view is None:
                raise StoreError(
                    f"Bead {bead_id} has no assignment",
                    code=ErrorCode.NOT_ASSIGNED,
                )
            if view.status is not AssignmentStatus.FAILED:
                raise StoreError(
                    f"Cannot retry bead {bead_id}: status is {view.status.value}, not failed",
                    code=ErrorCode.INVALID_TRANSITION,
                )
            previous_pane = view.pane
            previous_agent_type = view.agent_type
            previous_reason = view.fail_reason
            view.pane = pane
            view.agent_type = agent_type
            view.model = model
            view.status = AssignmentStatus.ASSIGNED
            view.prompt_sent = False
            view.pane_was_busy = pane_was_busy
            view.assigned_at = now
            view.started_at = None
            view.completed_at = None
            view.failed_at = None
            view.fail_reason = None
            view.retry_count += 1
            if prompt:
                view.prompt = prompt
            snapshot.events.append(
                _PendingEvent(
                    bead_id=bead_id,
                    event_type="retried",
                    status_from=AssignmentStatus.FAILED,
                    status_to=AssignmentStatus.ASSIGNED,
                    pane_from=previous_pane,
                    pane_to=pane,
                    details={
                        "agent_type": agent_type.value,
                        "previous_agent_type": previous_agent_type.value,
                        "previous_fail_reason": previous_reason,
                        "retry_count": view.retry_count,
                    },
                ),
            )
            return view

        view = self._mutate("retry", mutation)
        logger.info(
            "Retrying bead %s on pane %d (%s), attempt %d",
            bead_id,
            pane,
            agent_type.value,
            view.retry_count,
        )
        return view

    def remove(self, bead_id: str) -> bool:
        """Drop the record for a bead. Returns False when there was none."""

        def mutation(snapshot: _Snapshot, _: datetime) -> bool:
            view = snapshot.records.pop(bead_id, None)
            if view is None:
                return False
            snapshot.events.append(
                _PendingEvent(
                    bead_id=bead_id,
                    event_type="removed",
                    status_from=view.status,
                    status_to=None,
                    pane_from=view.pane,
                ),
            )
            return True

        return self._mutate("remove", mutation)

    def history(self, bead_id: str) -> list[AssignmentEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AssignmentEvent)
                .where(AssignmentEvent.bead_id == bead_id)
                .order_by(col(AssignmentEvent.id)),
            ).all()
            return [_to_event_view(row) for row in rows]

    def previous_panes(self, bead_id: str) -> list[int]:
        """Panes a bead was moved away from, oldest first."""

        return [
            event.pane_from
            for event in self.history(bead_id)
            if event.event_type == "reassigned" and event.pane_from is not None
        ]

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in AssignmentStatus}
        for view in self.list_assignments():
            counts[view.status.value] += 1
        counts["total"] = sum(counts.values())
        return counts

    def _transition(
        self,
        bead_id: str,
        target: AssignmentStatus,
        *,
        reason: str | None = None,
    ) -> AssignmentView:
        def mutation(snapshot: _Snapshot, now: datetime) -> AssignmentView:
            view = snapshot.records.get(bead_id)
            if view is None:
                raise StoreError(
                    f"Bead {bead_id} has no assignment",
                    code=ErrorCode.NOT_ASSIGNED,
                )
            if target not in _ALLOWED_TRANSITIONS.get(view.status, frozenset()):
                raise StoreError(
                    f"Cannot move bead {bead_id} from {view.status.value} to {target.value}",
                    code=ErrorCode.INVALID_TRANSITION,
                )
            previous = view.status
            view.status = target
            if target is AssignmentStatus.WORKING:
                view.started_at = now
            elif target is AssignmentStatus.DONE:
                view.completed_at = now
            else:
                view.failed_at = now
                view.fail_reason = reason or None
            snapshot.events.append(
                _PendingEvent(
                    bead_id=bead_id,
                    event_type=target.value,
                    status_from=previous,
                    status_to=target,
                    pane_to=view.pane,
                    details={"reason": reason} if reason else {},
                ),
            )
            return view

        return self._mutate(f"mark_{target.value}", mutation)

    def _mutate(self, operation: str, mutation: Callable[[_Snapshot, datetime], T]) -> T:
        attempts = 0
        database_retry_used = False
        while True:
            attempts += 1
            try:
                snapshot = self._load_snapshot()
                now = utc_now()
                result = mutation(snapshot, now)
                if not snapshot.events or self._commit_snapshot(snapshot, now):
                    return result
            except DatabaseError as error:
                if database_retry_used:
                    raise StoreError(
                        f"Assignment store {self.db_path} failed during {operation}: {error}",
                    ) from error
                database_retry_used = True
                logger.warning(
                    "Assignment store error during %s, re-reading once: %s",
                    operation,
                    error,
                )
                continue

            if attempts >= self.max_attempts:
                raise StoreError(
                    f"Gave up on {operation} after {attempts} attempts: "
                    "the store kept changing under concurrent writers",
                    code=ErrorCode.STORE_CONFLICT,
                )
            logger.warning(
                "Store revision changed during %s, retrying (%d/%d)",
                operation,
                attempts,
                self.max_attempts,
            )

    def _load_snapshot(self) -> _Snapshot:
        with Session(self.engine) as session:
            revision_row = session.get(StoreRevision, STORE_REVISION_ROW_ID)
            if revision_row is None:
                raise StoreError(
                    f"Assignment store {self.db_path} is not initialized",
                )
            rows = session.exec(
                select(AssignmentRecord).order_by(col(AssignmentRecord.seq)),
            ).all()
            return _Snapshot(
                revision=revision_row.revision,
                records={row.bead_id: _to_view(row) for row in rows},
            )

    def _commit_snapshot(self, snapshot: _Snapshot, now: datetime) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StoreRevision)
                .where(
                    col(StoreRevision.id) == STORE_REVISION_ROW_ID,
                    col(StoreRevision.revision) == snapshot.revision,
                )
                .values(
                    revision=snapshot.revision + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            session.exec(sa_delete(AssignmentRecord))
            for seq, view in enumerate(snapshot.records.values(), start=1):
                session.add(_to_record(view, seq=seq, now=now))
            for pending in snapshot.events:
                session.add(
                    AssignmentEvent(
                        bead_id=pending.bead_id,
                        event_type=pending.event_type,
                        status_from=(
                            pending.status_from.value if pending.status_from is not None else None
                        ),
                        status_to=(
                            pending.status_to.value if pending.status_to is not None else None
                        ),
                        pane_from=pending.pane_from,
                        pane_to=pending.pane_to,
                        details_json=(
                            json.dumps(pending.details, ensure_ascii=False, sort_keys=True)
                            if pending.details
                            else None
                        ),
                        created_at=to_db_datetime(now),
                    ),
                )
            session.commit()
            return True


def _to_record(view: AssignmentView, *, seq: int, now: datetime) -> AssignmentRecord:
    return AssignmentRecord(
        bead_id=view.bead_id,
        seq=seq,
        bead_title=view.bead_title,
        pane=view.pane,
        agent_type=view.agent_type.value,
        model=view.model,
        status=view.status.value,
        prompt=view.prompt,
        prompt_sent=view.prompt_sent,
        pane_was_busy=view.pane_was_busy,
        deps_ignored=view.deps_ignored,
        retry_count=view.retry_count,
        blocked_by_json=json.dumps(list(view.blocked_by_ids)),
        fail_reason=view.fail_reason,
        assigned_at=to_db_datetime(view.assigned_at),
        started_at=to_db_datetime(view.started_at) if view.started_at is not None else None,
        completed_at=(
            to_db_datetime(view.completed_at) if view.completed_at is not None else None
        ),
        failed_at=to_db_datetime(view.failed_at) if view.failed_at is not None else None,
        updated_at=to_db_datetime(now),
    )


def _to_view(row: AssignmentRecord) -> AssignmentView:
    return AssignmentView(
        bead_id=row.bead_id,
        bead_title=row.bead_title,
        pane=row.pane,
        agent_type=parse_agent_type(row.agent_type),
        model=row.model,
        status=AssignmentStatus(row.status),
        prompt=row.prompt,
        prompt_sent=row.prompt_sent,
        assigned_at=to_utc_aware_datetime(row.assigned_at),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        failed_at=to_utc_aware_datetime(row.failed_at) if row.failed_at is not None else None,
        fail_reason=row.fail_reason,
        pane_was_busy=row.pane_was_busy,
        deps_ignored=row.deps_ignored,
        retry_count=row.retry_count,
        blocked_by_ids=tuple(json.loads(row.blocked_by_json or "[]")),
    )


def _to_event_view(row: AssignmentEvent) -> AssignmentEventView:
    return AssignmentEventView(
        bead_id=row.bead_id,
        event_type=row.event_type,
        status_from=AssignmentStatus(row.status_from) if row.status_from is not None else None,
        status_to=AssignmentStatus(row.status_to) if row.status_to is not None else None,
        pane_from=row.pane_from,
        pane_to=row.pane_to,
        details=json.loads(row.details_json) if row.details_json else {},
        created_at=to_utc_aware_datetime(row.created_at),
    )
