"""Assignment store baseline: revision guard, assignments, audit events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "store_revision",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_name", sa.String(), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "assignments",
        sa.Column("bead_id", sa.String(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("bead_title", sa.String(), nullable=False, server_default=""),
        sa.Column("pane", sa.Integer(), nullable=False),
        sa.Column("agent_type", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("prompt_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pane_was_busy", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deps_ignored", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("blocked_by_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("fail_reason", sa.Text(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("bead_id"),
    )
    op.create_index("ix_assignments_seq", "assignments", ["seq"])
    op.create_index("ix_assignments_pane", "assignments", ["pane"])
    op.create_index("ix_assignments_agent_type", "assignments", ["agent_type"])
    op.create_index("ix_assignments_status", "assignments", ["status"])
    op.create_index("idx_assignments_pane_status", "assignments", ["pane", "status"])

    op.create_table(
        "assignment_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("bead_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("pane_from", sa.Integer(), nullable=True),
        sa.Column("pane_to", sa.Integer(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_assignment_events_bead_id", "assignment_events", ["bead_id"])
    op.create_index("ix_assignment_events_event_type", "assignment_events", ["event_type"])
    op.create_index(
        "idx_assignment_events_bead_time",
        "assignment_events",
        ["bead_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_assignment_events_bead_time", table_name="assignment_events")
    op.drop_index("ix_assignment_events_event_type", table_name="assignment_events")
    op.drop_index("ix_assignment_events_bead_id", table_name="assignment_events")
    op.drop_table("assignment_events")
    op.drop_index("idx_assignments_pane_status", table_name="assignments")
    op.drop_index("ix_assignments_status", table_name="assignments")
    op.drop_index("ix_assignments_agent_type", table_name="assignments")
    op.drop_index("ix_assignments_pane", table_name="assignments")
    op.drop_index("ix_assignments_seq", table_name="assignments")
    op.drop_table("assignments")
    op.drop_table("store_revision")
