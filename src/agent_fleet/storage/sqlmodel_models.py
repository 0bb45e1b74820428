"""SQLModel ORM tables for agent session storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text
from sqlmodel import Field, SQLModel


class AgentSessionRow(SQLModel, table=True):
    __tablename__ = "agent_sessions"  # type: ignore[bad-override]

    agent_id: int = Field(sa_column=Column(Integer, primary_key=True, autoincrement=False))
    status: str = Field(index=True)
    current_group: int | None = None
    current_item: int | None = None
    branch_name: str | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    tasks_completed: int = Field(default=0)
    error_count: int = Field(default=0)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentSessionEvent(SQLModel, table=True):
    __tablename__ = "agent_session_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_session_events_agent_time", "agent_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    agent_id: int = Field(
        sa_column=Column(
            ForeignKey("agent_sessions.agent_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
