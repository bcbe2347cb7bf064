"""SQLModel table definitions for the per-session assignment store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel

STORE_REVISION_ROW_ID = 1


class StoreRevision(SQLModel, table=True):
    __tablename__ = "store_revision"  # type: ignore[bad-override]

    id: int = Field(default=STORE_REVISION_ROW_ID, primary_key=True)
    session_name: str
    revision: int = Field(default=0)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AssignmentRecord(SQLModel, table=True):
    __tablename__ = "assignments"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_assignments_pane_status", "pane", "status"),)

    bead_id: str = Field(primary_key=True)
    seq: int = Field(index=True)
    bead_title: str = Field(default="")
    pane: int = Field(index=True)
    agent_type: str = Field(index=True)
    model: str = Field(default="")
    status: str = Field(index=True)
    prompt: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    prompt_sent: bool = Field(default=False)
    pane_was_busy: bool = Field(default=False)
    deps_ignored: bool = Field(default=False)
    retry_count: int = Field(default=0)
    blocked_by_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    fail_reason: str | None = Field(default=None, sa_column=Column(Text))
    assigned_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    failed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AssignmentEvent(SQLModel, table=True):
    __tablename__ = "assignment_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_assignment_events_bead_time", "bead_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    bead_id: str = Field(index=True)
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    pane_from: int | None = Field(default=None)
    pane_to: int | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
