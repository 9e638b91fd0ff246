"""Issue Store: transactional persistence for issues, labels, events and quality events."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from outbox_flow.outbox.models import (
    EventView,
    IssueFilter,
    IssueView,
    QualityEventCreate,
    QualityEventView,
)
from outbox_flow.storage.alembic_runner import upgrade_head
from outbox_flow.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
)
from outbox_flow.storage.sqlmodel_models import (
    IssueEventRow,
    IssueLabelRow,
    IssueRow,
    QualityEventRow,
)


class OutboxRepository:
    """Issue Store facade backed by SQLModel + SQLite.

    Every method takes the transaction-scoped `session` explicitly; callers
    obtain one from `transaction()` so all writes of one logical operation
    commit or roll back together.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""

        with Session(self.engine) as session:
            try:
                yield session
                session.commit()
            except BaseException:
                session.rollback()
                raise

    def create_issue(
        self,
        *,
        session: Session,
        title: str,
        body: str,
        labels: list[str],
        now: datetime,
    ) -> int:
        row = IssueRow(
            title=title,
            body=body,
            assignee=None,
            is_closed=False,
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        session.add(row)
        session.flush()
        if row.issue_id is None:
            raise RuntimeError("Issue insert did not return an id")
        for label in dict.fromkeys(labels):
            session.add(IssueLabelRow(issue_id=row.issue_id, label=label))
        session.flush()
        return row.issue_id

    def get_issue(self, *, session: Session, issue_id: int) -> IssueView | None:
        row = session.exec(select(IssueRow).where(IssueRow.issue_id == issue_id)).one_or_none()
        if row is None:
            return None
        return _to_issue_view(row, self.list_issue_labels(session=session, issue_id=issue_id))

    def is_issue_closed(self, *, session: Session, issue_id: int) -> bool | None:
        """Closed flag for dependency checks; None when the issue does not exist."""

        row = session.exec(
            select(IssueRow.is_closed).where(IssueRow.issue_id == issue_id),
        ).one_or_none()
        if row is None:
            return None
        return bool(row)

    def list_issues(self, *, session: Session, issue_filter: IssueFilter) -> list[IssueView]:
        """List issues ordered by id; include labels are AND, any labels are OR."""

        statement = select(IssueRow)
        if not issue_filter.include_closed:
            statement = statement.where(col(IssueRow.is_closed).is_(False))
        if issue_filter.assignee is not None:
            statement = statement.where(IssueRow.assignee == issue_filter.assignee)
        for label in issue_filter.include_labels:
            statement = statement.where(_has_label(label))
        if issue_filter.any_labels:
            statement = statement.where(
                select(IssueLabelRow.issue_id)
                .where(
                    col(IssueLabelRow.issue_id) == col(IssueRow.issue_id),
                    col(IssueLabelRow.label).in_(issue_filter.any_labels),
                )
                .exists(),
            )
        for label in issue_filter.exclude_labels:
            statement = statement.where(~_has_label(label))
        rows = session.exec(statement.order_by(col(IssueRow.issue_id).asc())).all()

        labels_by_issue = self._labels_for_issues(
            session=session,
            issue_ids=[row.issue_id for row in rows if row.issue_id is not None],
        )
        return [
            _to_issue_view(row, labels_by_issue.get(row.issue_id or 0, [])) for row in rows
        ]

    def list_issue_labels(self, *, session: Session, issue_id: int) -> list[str]:
        rows = session.exec(
            select(IssueLabelRow.label)
            .where(IssueLabelRow.issue_id == issue_id)
            .order_by(col(IssueLabelRow.label).asc()),
        ).all()
        return [str(label) for label in rows]

    def add_issue_label(self, *, session: Session, issue_id: int, label: str) -> None:
        session.exec(
            sqlite_insert(IssueLabelRow)
            .values(issue_id=issue_id, label=label)
            .on_conflict_do_nothing(index_elements=["issue_id", "label"]),
        )

    def remove_issue_label(self, *, session: Session, issue_id: int, label: str) -> None:
        session.exec(
            sa_delete(IssueLabelRow).where(
                col(IssueLabelRow.issue_id) == issue_id,
                col(IssueLabelRow.label) == label,
            ),
        )

    def replace_state_label(self, *, session: Session, issue_id: int, state_label: str) -> None:
        """Keep exactly one `state:*` label on the issue."""

        session.exec(
            sa_delete(IssueLabelRow).where(
                col(IssueLabelRow.issue_id) == issue_id,
                col(IssueLabelRow.label).startswith("state:"),
            ),
        )
        self.add_issue_label(session=session, issue_id=issue_id, label=state_label)

    def set_assignee(
        self,
        *,
        session: Session,
        issue_id: int,
        assignee: str | None,
        now: datetime,
    ) -> None:
        self._update_issue(
            session=session,
            issue_id=issue_id,
            values={"assignee": assignee, "updated_at": to_db_datetime(now)},
        )

    def touch_issue(self, *, session: Session, issue_id: int, now: datetime) -> None:
        self._update_issue(
            session=session,
            issue_id=issue_id,
            values={"updated_at": to_db_datetime(now)},
        )

    def mark_closed(self, *, session: Session, issue_id: int, now: datetime) -> None:
        self._update_issue(
            session=session,
            issue_id=issue_id,
            values={
                "is_closed": True,
                "closed_at": to_db_datetime(now),
                "updated_at": to_db_datetime(now),
            },
        )

    def append_event(
        self,
        *,
        session: Session,
        issue_id: int,
        actor: str,
        body: str,
        now: datetime,
    ) -> int:
        row = IssueEventRow(
            issue_id=issue_id,
            actor=actor,
            body=body,
            created_at=to_db_datetime(now),
        )
        session.add(row)
        session.flush()
        if row.event_id is None:
            raise RuntimeError("Event insert did not return an id")
        return row.event_id

    def list_issue_events(self, *, session: Session, issue_id: int) -> list[EventView]:
        rows = session.exec(
            select(IssueEventRow)
            .where(IssueEventRow.issue_id == issue_id)
            .order_by(col(IssueEventRow.event_id).asc()),
        ).all()
        return [_to_event_view(row) for row in rows]

    def list_events_after(
        self,
        *,
        session: Session,
        after_event_id: int,
        limit: int,
    ) -> list[EventView]:
        rows = session.exec(
            select(IssueEventRow)
            .where(col(IssueEventRow.event_id) > after_event_id)
            .order_by(col(IssueEventRow.event_id).asc())
            .limit(max(1, limit)),
        ).all()
        return [_to_event_view(row) for row in rows]

    def create_quality_event(self, *, session: Session, payload: QualityEventCreate) -> bool:
        """Insert-or-ignore by idempotency key; returns False for a duplicate."""

        result = session.exec(
            sqlite_insert(QualityEventRow)
            .values(
                issue_id=payload.issue_id,
                idempotency_key=payload.idempotency_key,
                source=payload.source,
                external_event_id=payload.external_event_id,
                category=payload.category,
                result=payload.result,
                actor=payload.actor,
                summary=payload.summary,
                evidence_json=json.dumps(payload.evidence, ensure_ascii=False),
                payload_json=payload.payload_json,
                ingested_at=to_db_datetime(payload.ingested_at),
            )
            .on_conflict_do_nothing(index_elements=["idempotency_key"]),
        )
        return result.rowcount == 1

    def list_quality_events(
        self,
        *,
        session: Session,
        issue_id: int,
        limit: int,
    ) -> list[QualityEventView]:
        rows = session.exec(
            select(QualityEventRow)
            .where(QualityEventRow.issue_id == issue_id)
            .order_by(col(QualityEventRow.quality_event_id).desc())
            .limit(max(1, limit)),
        ).all()
        return [_to_quality_event_view(row) for row in rows]

    def count_quality_events(
        self,
        *,
        session: Session,
        issue_id: int | None = None,
    ) -> list[tuple[str, str, int]]:
        """Return `(category, result, count)` rows, optionally scoped to one issue."""

        statement = select(
            QualityEventRow.category,
            QualityEventRow.result,
            func.count(col(QualityEventRow.quality_event_id)),
        )
        if issue_id is not None:
            statement = statement.where(QualityEventRow.issue_id == issue_id)
        rows = session.exec(
            statement.group_by(QualityEventRow.category, QualityEventRow.result).order_by(
                col(QualityEventRow.category).asc(),
                col(QualityEventRow.result).asc(),
            ),
        ).all()
        return [(category, result, int(count)) for category, result, count in rows]

    def _labels_for_issues(self, *, session: Session, issue_ids: list[int]) -> dict[int, list[str]]:
        if not issue_ids:
            return {}
        rows = session.exec(
            select(IssueLabelRow)
            .where(col(IssueLabelRow.issue_id).in_(issue_ids))
            .order_by(col(IssueLabelRow.label).asc()),
        ).all()
        labels: dict[int, list[str]] = {}
        for row in rows:
            labels.setdefault(row.issue_id, []).append(row.label)
        return labels

    def _update_issue(self, *, session: Session, issue_id: int, values: dict[str, object]) -> None:
        result = session.exec(
            sa_update(IssueRow).where(col(IssueRow.issue_id) == issue_id).values(**values),
        )
        if result.rowcount != 1:
            raise RuntimeError(f"Issue not found: {issue_id}")


def _has_label(label: str):
    return (
        select(IssueLabelRow.issue_id)
        .where(
            col(IssueLabelRow.issue_id) == col(IssueRow.issue_id),
            col(IssueLabelRow.label) == label,
        )
        .exists()
    )


def _to_issue_view(row: IssueRow, labels: list[str]) -> IssueView:
    return IssueView(
        issue_id=row.issue_id or 0,
        title=row.title,
        body=row.body,
        assignee=row.assignee,
        is_closed=bool(row.is_closed),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        closed_at=to_utc_aware_datetime(row.closed_at) if row.closed_at is not None else None,
        labels=sorted(labels),
    )


def _to_event_view(row: IssueEventRow) -> EventView:
    return EventView(
        event_id=row.event_id or 0,
        issue_id=row.issue_id,
        actor=row.actor,
        body=row.body,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_quality_event_view(row: QualityEventRow) -> QualityEventView:
    try:
        evidence = json.loads(row.evidence_json or "[]")
    except json.JSONDecodeError:
        evidence = []
    if not isinstance(evidence, list):
        evidence = []
    return QualityEventView(
        quality_event_id=row.quality_event_id or 0,
        issue_id=row.issue_id,
        idempotency_key=row.idempotency_key,
        source=row.source,
        external_event_id=row.external_event_id,
        category=row.category,
        result=row.result,
        actor=row.actor,
        summary=row.summary,
        evidence=[str(item).strip() for item in evidence if str(item).strip()],
        payload_json=row.payload_json,
        ingested_at=to_utc_aware_datetime(row.ingested_at),
    )
