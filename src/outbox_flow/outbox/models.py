"""Domain models for the outbox issue store and worker contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ResultCode(str, Enum):
    """Closed failure taxonomy attached to blocked transitions."""

    DEP_UNRESOLVED = "dep_unresolved"
    TEST_FAILED = "test_failed"
    CI_FAILED = "ci_failed"
    REVIEW_CHANGES_REQUESTED = "review_changes_requested"
    ENV_UNAVAILABLE = "env_unavailable"
    PERMISSION_DENIED = "permission_denied"
    OUTPUT_UNPARSEABLE = "output_unparseable"
    STALE_RUN = "stale_run"
    MANUAL_INTERVENTION = "manual_intervention"


class IssueState(str, Enum):
    """Singleton `state:*` label values."""

    TODO = "todo"
    DOING = "doing"
    BLOCKED = "blocked"
    REVIEW = "review"
    DONE = "done"

    @property
    def label(self) -> str:
        return f"state:{self.value}"


@dataclass(slots=True)
class IssueView:
    """Readable issue view with its current label set."""

    issue_id: int
    title: str
    body: str
    assignee: str | None
    is_closed: bool
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None = None
    labels: list[str] = field(default_factory=list)

    @property
    def issue_ref(self) -> str:
        return f"local#{self.issue_id}"

    def has_label(self, label: str) -> bool:
        return label in self.labels

    @property
    def state(self) -> str | None:
        for label in self.labels:
            if label.startswith("state:"):
                return label
        return None


@dataclass(slots=True)
class IssueFilter:
    """Label and ownership filter for issue listing."""

    include_closed: bool = False
    assignee: str | None = None
    include_labels: tuple[str, ...] = ()
    any_labels: tuple[str, ...] = ()
    exclude_labels: tuple[str, ...] = ()


@dataclass(slots=True)
class EventView:
    """One append-only timeline event."""

    event_id: int
    issue_id: int
    actor: str
    body: str
    created_at: datetime


@dataclass(slots=True)
class IssueDetails:
    """Issue with its full event timeline."""

    issue: IssueView
    events: list[EventView]


@dataclass(slots=True)
class QualityEventCreate:
    """Insert payload for one quality event audit row."""

    issue_id: int
    idempotency_key: str
    source: str
    external_event_id: str
    category: str
    result: str
    actor: str
    summary: str
    evidence: list[str]
    payload_json: str
    ingested_at: datetime


@dataclass(slots=True)
class QualityEventView:
    """Stored quality event audit row."""

    quality_event_id: int
    issue_id: int
    idempotency_key: str
    source: str
    external_event_id: str
    category: str
    result: str
    actor: str
    summary: str
    evidence: list[str]
    payload_json: str
    ingested_at: datetime


@dataclass(slots=True)
class WorkOrder:
    """Task handed to a worker process through the context pack."""

    issue_ref: str
    run_id: str
    role: str
    repo_dir: str


@dataclass(slots=True)
class WorkChanges:
    pr: str = "none"
    commit: str = "none"


@dataclass(slots=True)
class WorkTests:
    command: str = "none"
    result: str = "n/a"
    evidence: str = "none"


@dataclass(slots=True)
class WorkResult:
    """Worker result envelope; IssueRef and RunID must echo the order."""

    issue_ref: str
    run_id: str
    status: str = ""
    summary: str = ""
    result_code: str = ""
    changes: WorkChanges = field(default_factory=WorkChanges)
    tests: WorkTests = field(default_factory=WorkTests)
