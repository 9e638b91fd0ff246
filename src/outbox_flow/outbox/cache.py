"""KV Cache for lead cursors, active-run tokens and run sequence counters.

The cache lives in the same SQLite file as the Issue Store but never joins an
issue transaction: every call opens and commits its own short session.
"""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import delete as sa_delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from outbox_flow.storage.common import to_db_datetime, utc_now
from outbox_flow.storage.sqlmodel_models import KvEntryRow


class KvCache(Protocol):
    """Non-transactional string key/value store."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class SqliteKvCache:
    """`outbox_kv` table accessed outside issue transactions."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, key: str) -> str | None:
        with Session(self.engine) as session:
            value = session.exec(select(KvEntryRow.value).where(KvEntryRow.key == key)).one_or_none()
        return str(value) if value is not None else None

    def set(self, key: str, value: str) -> None:
        now = to_db_datetime(utc_now())
        statement = sqlite_insert(KvEntryRow).values(key=key, value=value, updated_at=now)
        statement = statement.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": statement.excluded.value, "updated_at": statement.excluded.updated_at},
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()

    def delete(self, key: str) -> None:
        with Session(self.engine) as session:
            session.exec(sa_delete(KvEntryRow).where(col(KvEntryRow.key) == key))
            session.commit()


def cursor_key(role: str) -> str:
    return f"lead:{role}:cursor:event_id"


def active_run_key(role: str, issue_ref: str) -> str:
    return f"lead:{role}:active_run:{issue_ref}"


def run_seq_key(role: str, issue_ref: str) -> str:
    return f"lead:{role}:run_seq:{issue_ref}"


def seen_updated_at_key(role: str, issue_ref: str) -> str:
    return f"lead:{role}:seen_issue_updated_at:{issue_ref}"
