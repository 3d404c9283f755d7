"""SQLModel ORM tables for the job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class JobRecord(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_queue", "status", "priority", "created_at"),
        Index(
            "uq_jobs_single_active",
            "status",
            unique=True,
            sqlite_where=text("status = 'active'"),
        ),
    )

    job_id: str = Field(primary_key=True)
    task: str = Field(sa_column=Column(Text, nullable=False))
    chat_id: str | None = Field(default=None, index=True)
    source: str = Field(index=True)
    phone_number: str | None = None
    priority: int = Field(default=50)
    status: str = Field(index=True)
    session_code: str | None = Field(default=None, index=True)
    retry_count: int = Field(default=0)
    result: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class JobEventRecord(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentSessionRecord(SQLModel, table=True):
    __tablename__ = "agent_sessions"  # type: ignore[bad-override]

    session_code: str = Field(primary_key=True)
    agent_session_id: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_activity_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
