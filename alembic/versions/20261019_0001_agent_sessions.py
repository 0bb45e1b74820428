"""Create agent session and session event tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agent_sessions",
        sa.Column("agent_id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_group", sa.Integer(), nullable=True),
        sa.Column("current_item", sa.Integer(), nullable=True),
        sa.Column("branch_name", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tasks_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_agent_sessions_status", "agent_sessions", ["status"])

    op.create_table(
        "agent_session_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "agent_id",
            sa.Integer(),
            sa.ForeignKey("agent_sessions.agent_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_agent_session_events_event_type",
        "agent_session_events",
        ["event_type"],
    )
    op.create_index(
        "idx_agent_session_events_agent_time",
        "agent_session_events",
        ["agent_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_agent_session_events_agent_time", table_name="agent_session_events")
    op.drop_index("ix_agent_session_events_event_type", table_name="agent_session_events")
    op.drop_table("agent_session_events")
    op.drop_index("ix_agent_sessions_status", table_name="agent_sessions")
    op.drop_table("agent_sessions")
