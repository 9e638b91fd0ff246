"""SQLModel ORM tables for the outbox issue store and KV cache."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel

__all__ = [
    "IssueEventRow",
    "IssueLabelRow",
    "IssueRow",
    "KvEntryRow",
    "QualityEventRow",
    "SQLModel",
]


class IssueRow(SQLModel, table=True):
    __tablename__ = "issues"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_issues_open_assignee", "is_closed", "assignee"),)

    issue_id: int | None = Field(default=None, primary_key=True)
    title: str
    body: str = Field(sa_column=Column(Text, nullable=False))
    assignee: str | None = Field(default=None, index=True)
    is_closed: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class IssueLabelRow(SQLModel, table=True):
    __tablename__ = "issue_labels"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("issue_id", "label", name="pk_issue_labels"),
        Index("idx_issue_labels_label", "label"),
    )

    issue_id: int = Field(
        sa_column=Column(
            ForeignKey("issues.issue_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    label: str = Field(sa_column=Column(Text, nullable=False))


class IssueEventRow(SQLModel, table=True):
    __tablename__ = "events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_events_issue_time", "issue_id", "event_id"),)

    event_id: int | None = Field(default=None, primary_key=True)
    issue_id: int = Field(
        sa_column=Column(
            ForeignKey("issues.issue_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    actor: str
    body: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QualityEventRow(SQLModel, table=True):
    __tablename__ = "quality_events"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_quality_events_idempotency_key"),
        Index("idx_quality_events_issue_time", "issue_id", "quality_event_id"),
    )

    quality_event_id: int | None = Field(default=None, primary_key=True)
    issue_id: int = Field(
        sa_column=Column(
            ForeignKey("issues.issue_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    idempotency_key: str
    source: str
    external_event_id: str
    category: str = Field(index=True)
    result: str
    actor: str
    summary: str = Field(sa_column=Column(Text, nullable=False))
    evidence_json: str = Field(sa_column=Column(Text, nullable=False, server_default="[]"))
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    ingested_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class KvEntryRow(SQLModel, table=True):
    __tablename__ = "outbox_kv"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
