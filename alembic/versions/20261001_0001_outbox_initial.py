"""Create outbox issue store and KV cache tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "issues",
        sa.Column("issue_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("assignee", sa.String(), nullable=True),
        sa.Column("is_closed", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("issue_id"),
    )
    op.create_index("ix_issues_assignee", "issues", ["assignee"])
    op.create_index("idx_issues_open_assignee", "issues", ["is_closed", "assignee"])

    op.create_table(
        "issue_labels",
        sa.Column("issue_id", sa.Integer(), nullable=False),
        sa.Column("label", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["issue_id"], ["issues.issue_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("issue_id", "label", name="pk_issue_labels"),
    )
    op.create_index("idx_issue_labels_label", "issue_labels", ["label"])

    op.create_table(
        "events",
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("issue_id", sa.Integer(), nullable=False),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["issue_id"], ["issues.issue_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("idx_events_issue_time", "events", ["issue_id", "event_id"])

    op.create_table(
        "quality_events",
        sa.Column("quality_event_id", sa.Integer(), nullable=False),
        sa.Column("issue_id", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("external_event_id", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("result", sa.String(), nullable=False),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("evidence_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["issue_id"], ["issues.issue_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("quality_event_id"),
        sa.UniqueConstraint("idempotency_key", name="uq_quality_events_idempotency_key"),
    )
    op.create_index("ix_quality_events_category", "quality_events", ["category"])
    op.create_index(
        "idx_quality_events_issue_time",
        "quality_events",
        ["issue_id", "quality_event_id"],
    )

    op.create_table(
        "outbox_kv",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("outbox_kv")
    op.drop_index("idx_quality_events_issue_time", table_name="quality_events")
    op.drop_index("ix_quality_events_category", table_name="quality_events")
    op.drop_table("quality_events")
    op.drop_index("idx_events_issue_time", table_name="events")
    op.drop_table("events")
    op.drop_index("idx_issue_labels_label", table_name="issue_labels")
    op.drop_table("issue_labels")
    op.drop_index("idx_issues_open_assignee", table_name="issues")
    op.drop_index("ix_issues_assignee", table_name="issues")
    op.drop_table("issues")
