"""Controllers for outbox, lead, quality and worker CLI commands."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from outbox_flow.config import Settings
from outbox_flow.outbox.cache import SqliteKvCache
from outbox_flow.outbox.codex_runner import WorkflowCodexRunner
from outbox_flow.outbox.errors import OutboxError, OutboxValidationError
from outbox_flow.outbox.merge_gate import DEFAULT_MERGE_ACTOR, build_merge_close_comment, can_merge
from outbox_flow.outbox.models import IssueFilter, QualityEventView
from outbox_flow.outbox.pipeline import PipelineOrchestrator, PipelineRequest
from outbox_flow.outbox.quality import QualityEventInput, QualityService
from outbox_flow.outbox.repository import OutboxRepository
from outbox_flow.outbox.service import OutboxService
from outbox_flow.outbox.sync import LeadSyncEngine, SyncResult
from outbox_flow.outbox.worker import run_worker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class InitDbCommand:
    db_path: Path | None


@dataclass(slots=True)
class IssueCreateCommand:
    """CLI input for issue creation."""

    db_path: Path | None
    title: str
    body: str
    labels: tuple[str, ...] = ()


@dataclass(slots=True)
class IssueClaimCommand:
    db_path: Path | None
    issue_ref: str
    assignee: str
    actor: str | None = None
    comment: str | None = None


@dataclass(slots=True)
class IssueUnclaimCommand:
    db_path: Path | None
    issue_ref: str
    actor: str
    comment: str | None = None


@dataclass(slots=True)
class IssueCommentCommand:
    """CLI input for appending a Structured Comment, optionally moving state."""

    db_path: Path | None
    issue_ref: str
    actor: str
    body: str
    state: str | None = None


@dataclass(slots=True)
class IssueCloseCommand:
    db_path: Path | None
    issue_ref: str
    actor: str = ""
    comment: str | None = None


@dataclass(slots=True)
class IssueListCommand:
    db_path: Path | None
    include_closed: bool = False
    assignee: str | None = None
    labels: tuple[str, ...] = ()
    any_labels: tuple[str, ...] = ()
    exclude_labels: tuple[str, ...] = ()


@dataclass(slots=True)
class IssueShowCommand:
    db_path: Path | None
    issue_ref: str


@dataclass(slots=True)
class IssueLabelCommand:
    db_path: Path | None
    issue_ref: str
    actor: str
    labels: tuple[str, ...]


@dataclass(slots=True)
class MergeCheckCommand:
    db_path: Path | None
    issue_ref: str


@dataclass(slots=True)
class MergeApplyCommand:
    db_path: Path | None
    issue_ref: str
    actor: str = DEFAULT_MERGE_ACTOR


@dataclass(slots=True)
class PipelineRunCommand:
    """CLI input for one coding/review/test pipeline run."""

    db_path: Path | None
    workflow_file: Path | None
    issue_ref: str
    project_dir: str
    prompt_file: str
    coding_role: str = "backend"
    max_review_round: int = 3
    max_test_round: int = 3


@dataclass(slots=True)
class QualityIngestCommand:
    """CLI input for ingesting one quality signal."""

    db_path: Path | None
    issue_ref: str
    source: str = "manual"
    external_event_id: str = ""
    category: str = ""
    result: str = ""
    actor: str = ""
    summary: str = ""
    evidence: tuple[str, ...] = ()
    payload_file: Path | None = None
    idempotency_key: str = ""


@dataclass(slots=True)
class QualityListCommand:
    db_path: Path | None
    issue_ref: str
    limit: int = 20


@dataclass(slots=True)
class QualityStatsCommand:
    db_path: Path | None
    issue_ref: str | None = None


@dataclass(slots=True)
class QualityExportCommand:
    db_path: Path | None
    issue_ref: str
    output_format: str = "json"
    output_path: Path | None = None
    limit: int = 1_000


@dataclass(slots=True)
class QualityBatchCommand:
    """CLI input for ingesting every payload file in a directory."""

    db_path: Path | None
    issue_ref: str
    source: str
    directory: Path
    pattern: str = "*.json"
    continue_on_error: bool = False


@dataclass(slots=True)
class QualityWebhookCommand:
    db_path: Path | None
    host: str | None = None
    port: int | None = None
    github_secret: str | None = None
    gitlab_token: str | None = None


@dataclass(slots=True)
class LeadRunCommand:
    """CLI input for the lead sync loop."""

    db_path: Path | None
    workflow_file: Path | None
    role: str = "backend"
    assignee: str = ""
    once: bool = False
    poll_interval_seconds: float | None = None
    event_batch: int | None = None
    max_ticks: int | None = None


@dataclass(slots=True)
class LeadRunIssueCommand:
    db_path: Path | None
    workflow_file: Path | None
    issue_ref: str
    role: str = "backend"
    assignee: str = ""
    force_spawn: bool = False


@dataclass(slots=True)
class LeadCleanupWorkdirCommand:
    db_path: Path | None
    workflow_file: Path | None
    role: str
    issue_ref: str
    run_id: str


@dataclass(slots=True)
class LeadActiveRunCommand:
    db_path: Path | None
    role: str
    issue_ref: str


@dataclass(slots=True)
class WorkerRunCommand:
    context_pack_dir: Path
    workflow_file: Path


class OutboxCliController:
    """Coordinates issue store, lead, quality and worker CLI operations."""

    def __init__(self, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self._sleep = sleep

    def init_db(self, command: InitDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings):
            pass
        return [f"Database initialized: {settings.db_path}"]

    def create_issue(self, command: IssueCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            issue_ref = service.create_issue(
                title=command.title,
                body=command.body,
                labels=list(command.labels),
            )
        return [issue_ref]

    def claim_issue(self, command: IssueClaimCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            service.claim_issue(
                issue_ref=command.issue_ref,
                assignee=command.assignee,
                actor=command.actor,
                comment=command.comment,
            )
        return [f"Issue claimed: {command.issue_ref} assignee={command.assignee}"]

    def unclaim_issue(self, command: IssueUnclaimCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            service.unclaim_issue(
                issue_ref=command.issue_ref,
                actor=command.actor,
                comment=command.comment,
            )
        return [f"Issue unclaimed: {command.issue_ref}"]

    def comment_issue(self, command: IssueCommentCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            service.comment_issue(
                issue_ref=command.issue_ref,
                actor=command.actor,
                body=command.body,
                state=command.state,
            )
        return [f"Comment appended: {command.issue_ref}"]

    def close_issue(self, command: IssueCloseCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            service.close_issue(
                issue_ref=command.issue_ref,
                actor=command.actor,
                comment=command.comment,
            )
        return [f"Issue closed: {command.issue_ref}"]

    def list_issues(self, command: IssueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            issues = service.list_issues(
                IssueFilter(
                    include_closed=command.include_closed,
                    assignee=command.assignee,
                    include_labels=command.labels,
                    any_labels=command.any_labels,
                    exclude_labels=command.exclude_labels,
                ),
            )
        if not issues:
            return ["No issues found."]
        return [
            f"{issue.issue_ref} [{issue.state or 'state:none'}] {issue.title} "
            f"assignee={issue.assignee or '-'} labels={','.join(issue.labels) or '-'}"
            f"{' closed' if issue.is_closed else ''}"
            for issue in issues
        ]

    def show_issue(self, command: IssueShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            details = service.show_issue(issue_ref=command.issue_ref)
        issue = details.issue
        lines = [
            f"Issue: {issue.issue_ref}",
            f"Title: {issue.title}",
            f"Assignee: {issue.assignee or '-'}",
            f"Closed: {'yes' if issue.is_closed else 'no'}",
            f"Labels: {', '.join(issue.labels) or '-'}",
            f"Updated: {issue.updated_at.isoformat()}",
            "",
            issue.body,
        ]
        for event in details.events:
            lines += ["", f"--- e{event.event_id} {event.actor} {event.created_at.isoformat()}", event.body]
        return lines

    def add_labels(self, command: IssueLabelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            service.add_issue_labels(
                issue_ref=command.issue_ref,
                actor=command.actor,
                labels=list(command.labels),
            )
        return [f"Labels added: {command.issue_ref} {', '.join(command.labels)}"]

    def remove_labels(self, command: IssueLabelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            service.remove_issue_labels(
                issue_ref=command.issue_ref,
                actor=command.actor,
                labels=list(command.labels),
            )
        return [f"Labels removed: {command.issue_ref} {', '.join(command.labels)}"]

    def merge_check(self, command: MergeCheckCommand) -> tuple[bool, list[str]]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            ready, reason = can_merge(service, issue_ref=command.issue_ref)
        return ready, [f"Merge gate: issue={command.issue_ref} ready={str(ready).lower()} reason={reason}"]

    def merge_apply(self, command: MergeApplyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        actor = command.actor.strip() or DEFAULT_MERGE_ACTOR
        with _services(settings) as (service, _):
            ready, reason = can_merge(service, issue_ref=command.issue_ref)
            if not ready:
                raise OutboxValidationError(f"merge gate not ready: {reason}")
            service.close_issue(
                issue_ref=command.issue_ref,
                actor=actor,
                comment=build_merge_close_comment(
                    issue_ref=command.issue_ref,
                    actor=actor,
                    reason=reason,
                ),
            )
        return [f"Merge applied: {command.issue_ref} closed by {actor}"]

    def run_pipeline(self, command: PipelineRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, workflow_file=command.workflow_file)
        with _services(settings) as (service, repository):
            orchestrator = PipelineOrchestrator(
                service=service,
                quality=QualityService(repository=repository),
                runner=WorkflowCodexRunner(settings.workflow_file),
            )
            result = orchestrator.run(
                PipelineRequest(
                    issue_ref=command.issue_ref,
                    project_dir=command.project_dir,
                    prompt_file=command.prompt_file,
                    coding_role=command.coding_role,
                    max_review_round=command.max_review_round,
                    max_test_round=command.max_test_round,
                ),
            )
        return [
            "Pipeline result: "
            f"issue={result.issue_ref} rounds={result.rounds} "
            f"ready_to_merge={str(result.ready_to_merge).lower()} "
            f"last_result_code={result.last_result_code}",
            f"Last result: {result.last_result}",
        ]

    def ingest_quality(self, command: QualityIngestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = command.payload_file.read_text("utf-8") if command.payload_file else ""
        with _repository(settings) as repository:
            outcome = QualityService(repository=repository).ingest(
                QualityEventInput(
                    issue_ref=command.issue_ref,
                    source=command.source,
                    external_event_id=command.external_event_id,
                    category=command.category,
                    result=command.result,
                    actor=command.actor,
                    summary=command.summary,
                    evidence=list(command.evidence),
                    payload=payload,
                    idempotency_key=command.idempotency_key,
                ),
            )
        return [
            "Quality event: "
            f"issue={outcome.issue_ref} marker={outcome.marker} "
            f"duplicate={str(outcome.duplicate).lower()} routed_role={outcome.routed_role}",
            f"Idempotency key: {outcome.idempotency_key}",
        ]

    def list_quality(self, command: QualityListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            events = QualityService(repository=repository).list_quality_events(
                issue_ref=command.issue_ref,
                limit=command.limit,
            )
        if not events:
            return ["No quality events found."]
        return [
            f"q{event.quality_event_id} {event.ingested_at.isoformat()} "
            f"{event.source} {event.category}/{event.result} actor={event.actor} "
            f"summary={event.summary} evidence={','.join(event.evidence) or 'none'}"
            for event in events
        ]

    def quality_stats(self, command: QualityStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            rows = QualityService(repository=repository).quality_stats(issue_ref=command.issue_ref)
        scope = command.issue_ref or "all"
        if not rows:
            return [f"Quality stats ({scope}): no events"]
        total = sum(count for _, _, count in rows)
        return [
            f"Quality stats ({scope}): total={total}",
            *(f"  {category}/{result}: {count}" for category, result, count in rows),
        ]

    def export_quality(self, command: QualityExportCommand) -> list[str]:
        output_format = command.output_format.strip().lower()
        if output_format not in {"json", "jsonl"}:
            raise OutboxValidationError(f"unsupported export format {command.output_format!r}")
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            events = QualityService(repository=repository).list_quality_events(
                issue_ref=command.issue_ref,
                limit=command.limit,
            )
        records = [_quality_event_record(event) for event in events]
        if output_format == "json":
            text = json.dumps(records, ensure_ascii=False, indent=2)
        else:
            text = "\n".join(json.dumps(record, ensure_ascii=False) for record in records)
        if command.output_path is None:
            return text.splitlines()
        command.output_path.parent.mkdir(parents=True, exist_ok=True)
        command.output_path.write_text(text + "\n", "utf-8")
        return [f"Exported {len(records)} quality events to {command.output_path}"]

    def ingest_quality_batch(self, command: QualityBatchCommand) -> list[str]:
        if not command.directory.is_dir():
            raise OutboxValidationError(f"directory not found: {command.directory}")
        files = sorted(path for path in command.directory.glob(command.pattern) if path.is_file())
        settings = Settings.from_env(db_path=command.db_path)
        lines: list[str] = []
        ingested = duplicates = failed = 0
        with _repository(settings) as repository:
            quality = QualityService(repository=repository)
            for path in files:
                try:
                    outcome = quality.ingest(
                        QualityEventInput(
                            issue_ref=command.issue_ref,
                            source=command.source,
                            payload=path.read_text("utf-8"),
                        ),
                    )
                except (OutboxError, OSError) as error:
                    if not command.continue_on_error:
                        raise
                    failed += 1
                    logger.warning("Quality payload %s failed: %s", path, error)
                    lines.append(f"failed {path.name}: {error}")
                    continue
                if outcome.duplicate:
                    duplicates += 1
                else:
                    ingested += 1
                lines.append(
                    f"{'duplicate' if outcome.duplicate else 'ingested'} {path.name}: "
                    f"marker={outcome.marker} routed_role={outcome.routed_role}",
                )
        lines.append(
            f"Quality batch: files={len(files)} ingested={ingested} "
            f"duplicates={duplicates} failed={failed}",
        )
        return lines

    def serve_webhook(self, command: QualityWebhookCommand) -> None:
        import uvicorn  # noqa: PLC0415

        from outbox_flow.outbox.webhook import create_webhook_app  # noqa: PLC0415

        settings = Settings.from_env(db_path=command.db_path)
        host = command.host or settings.webhook.host
        port = command.port or settings.webhook.port
        with _repository(settings) as repository:
            app = create_webhook_app(
                QualityService(repository=repository),
                github_secret=(
                    command.github_secret
                    if command.github_secret is not None
                    else settings.webhook.github_secret
                ),
                gitlab_token=(
                    command.gitlab_token
                    if command.gitlab_token is not None
                    else settings.webhook.gitlab_token
                ),
            )
            logger.info("Quality webhook server starting on %s:%d", host, port)
            uvicorn.run(app, host=host, port=port, access_log=settings.webhook.access_log)

    def run_lead(
        self,
        command: LeadRunCommand,
        *,
        emit: Callable[[list[str]], None] | None = None,
    ) -> list[str]:
        """Run one tick with `once`, otherwise poll until `max_ticks` or interrupt."""

        settings = Settings.from_env(db_path=command.db_path, workflow_file=command.workflow_file)
        poll_interval = (
            command.poll_interval_seconds
            if command.poll_interval_seconds is not None
            else settings.lead.poll_interval_seconds
        )
        event_batch = command.event_batch or settings.lead.event_batch
        ticks = 0
        lines: list[str] = []
        with _repository(settings) as repository:
            engine = _lead_engine(repository)
            while True:
                summary = engine.sync(
                    workflow_file=settings.workflow_file,
                    role=command.role,
                    assignee=command.assignee,
                    event_batch=event_batch,
                )
                ticks += 1
                tick_lines = [render_sync_summary(summary)]
                if emit is None:
                    lines += tick_lines
                else:
                    emit(tick_lines)
                if command.once or (command.max_ticks is not None and ticks >= command.max_ticks):
                    return lines
                if poll_interval > 0:
                    self._sleep(poll_interval)

    def run_lead_issue(self, command: LeadRunIssueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, workflow_file=command.workflow_file)
        with _repository(settings) as repository:
            outcome = _lead_engine(repository).run_issue_once(
                workflow_file=settings.workflow_file,
                issue_ref=command.issue_ref,
                role=command.role,
                assignee=command.assignee,
                force_spawn=command.force_spawn,
            )
        return [
            f"lead run-issue issue={command.issue_ref} role={command.role} "
            f"processed={str(outcome.processed).lower()} blocked={str(outcome.blocked).lower()} "
            f"spawned={str(outcome.spawned).lower()}",
        ]

    def cleanup_workdir(self, command: LeadCleanupWorkdirCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, workflow_file=command.workflow_file)
        with _repository(settings) as repository:
            workdir = _lead_engine(repository).cleanup_workdir(
                workflow_file=settings.workflow_file,
                role=command.role,
                issue_ref=command.issue_ref,
                run_id=command.run_id,
            )
        return [f"Workdir cleaned up: {workdir}"]

    def active_run(self, command: LeadActiveRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as (service, _):
            run_id = service.get_active_run_id(role=command.role, issue_ref=command.issue_ref)
        return [run_id or "none"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        result = run_worker(
            context_pack_dir=command.context_pack_dir,
            workflow_file=command.workflow_file,
        )
        return [
            f"worker run issue={result.issue_ref} run={result.run_id} status={result.status} "
            f"result_code={result.result_code or 'none'}",
        ]


def render_sync_summary(summary: SyncResult) -> str:
    return (
        f"lead sync role={summary.role} cursor={summary.cursor_before}->{summary.cursor_after} "
        f"candidates={summary.candidates} processed={summary.processed} "
        f"blocked={summary.blocked} spawned={summary.spawned} skipped={summary.skipped}"
    )


def _quality_event_record(event: QualityEventView) -> dict[str, object]:
    return {
        "quality_event_id": event.quality_event_id,
        "issue_id": event.issue_id,
        "idempotency_key": event.idempotency_key,
        "source": event.source,
        "external_event_id": event.external_event_id,
        "category": event.category,
        "result": event.result,
        "actor": event.actor,
        "summary": event.summary,
        "evidence": event.evidence,
        "ingested_at": event.ingested_at.isoformat(),
    }


def _lead_engine(repository: OutboxRepository) -> LeadSyncEngine:
    cache = SqliteKvCache(repository.engine)
    return LeadSyncEngine(
        service=OutboxService(repository=repository, cache=cache),
        repository=repository,
        cache=cache,
    )


@contextmanager
def _services(settings: Settings) -> Iterator[tuple[OutboxService, OutboxRepository]]:
    with _repository(settings) as repository:
        yield OutboxService(repository=repository, cache=SqliteKvCache(repository.engine)), repository


@contextmanager
def _repository(settings: Settings) -> Iterator[OutboxRepository]:
    repository = OutboxRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
