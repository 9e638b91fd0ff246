"""CLI entrypoint for outbox-flow."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from outbox_flow import __version__
from outbox_flow.config import LOG_LEVELS
from outbox_flow.outbox.controllers import (
    InitDbCommand,
    IssueClaimCommand,
    IssueCloseCommand,
    IssueCommentCommand,
    IssueCreateCommand,
    IssueLabelCommand,
    IssueListCommand,
    IssueShowCommand,
    IssueUnclaimCommand,
    LeadActiveRunCommand,
    LeadCleanupWorkdirCommand,
    LeadRunCommand,
    LeadRunIssueCommand,
    MergeApplyCommand,
    MergeCheckCommand,
    OutboxCliController,
    PipelineRunCommand,
    QualityBatchCommand,
    QualityExportCommand,
    QualityIngestCommand,
    QualityListCommand,
    QualityStatsCommand,
    QualityWebhookCommand,
    WorkerRunCommand,
)
from outbox_flow.outbox.errors import OutboxError

click.rich_click.USE_MARKDOWN = True
OUTBOX_CONTROLLER = OutboxCliController()
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"

T = TypeVar("T")

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
WORKFLOW_OPTION = click.option(
    "--workflow",
    "workflow_file",
    type=click.Path(path_type=Path),
    default=None,
    help="Workflow profile TOML. Defaults to OUTBOX_FLOW_WORKFLOW_FILE or workflow.toml.",
)


@click.group()
@click.version_option(version=__version__, prog_name="outbox-flow")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def outbox_flow(log_level: str) -> None:
    """Outbox-driven orchestration of AI coding agents."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@outbox_flow.group()
def outbox() -> None:
    """Local issue store commands."""


@outbox.command("init-db")
@DB_PATH_OPTION
def outbox_init_db(db_path: Path | None) -> None:
    """Create or migrate the outbox database."""

    _emit_lines(_run(lambda: OUTBOX_CONTROLLER.init_db(InitDbCommand(db_path=db_path))))


@outbox.command("create")
@DB_PATH_OPTION
@click.option("--title", required=True, help="Issue title.")
@click.option("--body", default="", help="Issue body (the spec snapshot handed to workers).")
@click.option("--label", "labels", multiple=True, help="Label to attach. Can be repeated.")
def outbox_create(db_path: Path | None, title: str, body: str, labels: tuple[str, ...]) -> None:
    """Create an issue and print its reference."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.create_issue(
                IssueCreateCommand(db_path=db_path, title=title, body=body, labels=labels),
            ),
        ),
    )


@outbox.command("claim")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference, for example local#12.")
@click.option("--assignee", required=True, help="New assignee.")
@click.option("--actor", default=None, help="Actor recorded on the comment. Defaults to the assignee.")
@click.option("--comment", default=None, help="Optional claim comment.")
def outbox_claim(
    db_path: Path | None,
    issue_ref: str,
    assignee: str,
    actor: str | None,
    comment: str | None,
) -> None:
    """Assign an issue and move it to `state:doing`."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.claim_issue(
                IssueClaimCommand(
                    db_path=db_path,
                    issue_ref=issue_ref,
                    assignee=assignee,
                    actor=actor,
                    comment=comment,
                ),
            ),
        ),
    )


@outbox.command("unclaim")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option("--actor", required=True, help="Actor releasing the issue.")
@click.option("--comment", default=None, help="Optional unclaim comment.")
def outbox_unclaim(db_path: Path | None, issue_ref: str, actor: str, comment: str | None) -> None:
    """Clear the assignee and move the issue back to `state:todo`."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.unclaim_issue(
                IssueUnclaimCommand(db_path=db_path, issue_ref=issue_ref, actor=actor, comment=comment),
            ),
        ),
    )


@outbox.command("comment")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option("--actor", required=True, help="Comment author.")
@click.option("--body", required=True, help="Comment body; free text is wrapped into a Structured Comment.")
@click.option(
    "--state",
    default=None,
    help="Optional state transition, for example `review` or `state:done`.",
)
def outbox_comment(
    db_path: Path | None,
    issue_ref: str,
    actor: str,
    body: str,
    state: str | None,
) -> None:
    """Append a comment, optionally transitioning the issue state."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.comment_issue(
                IssueCommentCommand(
                    db_path=db_path,
                    issue_ref=issue_ref,
                    actor=actor,
                    body=body,
                    state=state,
                ),
            ),
        ),
    )


@outbox.command("close")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option("--actor", default="", help="Actor closing the issue.")
@click.option("--comment", default=None, help="Close comment with concrete Tests evidence.")
def outbox_close(db_path: Path | None, issue_ref: str, actor: str, comment: str | None) -> None:
    """Close an issue; requires a comment with test evidence."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.close_issue(
                IssueCloseCommand(db_path=db_path, issue_ref=issue_ref, actor=actor, comment=comment),
            ),
        ),
    )


@outbox.command("list")
@DB_PATH_OPTION
@click.option("--include-closed", is_flag=True, default=False, help="Include closed issues.")
@click.option("--assignee", default=None, help="Only issues assigned to this actor.")
@click.option("--label", "labels", multiple=True, help="Required label (AND). Can be repeated.")
@click.option("--any-label", "any_labels", multiple=True, help="Any-of label (OR). Can be repeated.")
@click.option("--exclude-label", "exclude_labels", multiple=True, help="Excluded label. Can be repeated.")
def outbox_list(  # noqa: PLR0913
    db_path: Path | None,
    include_closed: bool,
    assignee: str | None,
    labels: tuple[str, ...],
    any_labels: tuple[str, ...],
    exclude_labels: tuple[str, ...],
) -> None:
    """List issues by label and ownership filters."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.list_issues(
                IssueListCommand(
                    db_path=db_path,
                    include_closed=include_closed,
                    assignee=assignee,
                    labels=labels,
                    any_labels=any_labels,
                    exclude_labels=exclude_labels,
                ),
            ),
        ),
    )


@outbox.command("show")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
def outbox_show(db_path: Path | None, issue_ref: str) -> None:
    """Show an issue with its full event timeline."""

    _emit_lines(
        _run(lambda: OUTBOX_CONTROLLER.show_issue(IssueShowCommand(db_path=db_path, issue_ref=issue_ref))),
    )


@outbox.group()
def label() -> None:
    """Issue label commands."""


@label.command("add")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option("--actor", required=True, help="Actor recorded on the label event.")
@click.option("--label", "labels", multiple=True, required=True, help="Label to add. Can be repeated.")
def label_add(db_path: Path | None, issue_ref: str, actor: str, labels: tuple[str, ...]) -> None:
    """Add labels; a `state:*` label replaces the current state."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.add_labels(
                IssueLabelCommand(db_path=db_path, issue_ref=issue_ref, actor=actor, labels=labels),
            ),
        ),
    )


@label.command("remove")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option("--actor", required=True, help="Actor recorded on the label event.")
@click.option("--label", "labels", multiple=True, required=True, help="Label to remove. Can be repeated.")
def label_remove(db_path: Path | None, issue_ref: str, actor: str, labels: tuple[str, ...]) -> None:
    """Remove labels from an issue."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.remove_labels(
                IssueLabelCommand(db_path=db_path, issue_ref=issue_ref, actor=actor, labels=labels),
            ),
        ),
    )


@outbox.group()
def merge() -> None:
    """Merge gate commands."""


@merge.command("check")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
def merge_check(db_path: Path | None, issue_ref: str) -> None:
    """Report whether review and QA verdicts allow merging."""

    ready, lines = _run(
        lambda: OUTBOX_CONTROLLER.merge_check(MergeCheckCommand(db_path=db_path, issue_ref=issue_ref)),
    )
    _emit_lines(lines)
    if not ready:
        raise click.ClickException("Merge gate is not ready.")


@merge.command("apply")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option("--actor", default="lead-integrator", show_default=True, help="Actor closing the issue.")
def merge_apply(db_path: Path | None, issue_ref: str, actor: str) -> None:
    """Close the issue with merge evidence when the gate is ready."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.merge_apply(
                MergeApplyCommand(db_path=db_path, issue_ref=issue_ref, actor=actor),
            ),
        ),
    )


@outbox.group()
def pipeline() -> None:
    """Codex coding/review/test pipeline commands."""


@pipeline.command("run")
@DB_PATH_OPTION
@WORKFLOW_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option("--project-dir", required=True, help="Project directory the codex steps run in.")
@click.option("--prompt-file", required=True, help="Prompt file passed to every codex step.")
@click.option("--coding-role", default="backend", show_default=True, help="Role for the coding step.")
@click.option(
    "--max-review-round",
    type=click.IntRange(min=1),
    default=3,
    show_default=True,
    help="Review failures tolerated before manual intervention.",
)
@click.option(
    "--max-test-round",
    type=click.IntRange(min=1),
    default=3,
    show_default=True,
    help="Test failures tolerated before manual intervention.",
)
def pipeline_run(  # noqa: PLR0913
    db_path: Path | None,
    workflow_file: Path | None,
    issue_ref: str,
    project_dir: str,
    prompt_file: str,
    coding_role: str,
    max_review_round: int,
    max_test_round: int,
) -> None:
    """Run coding, review and test rounds until ready to merge or blocked."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.run_pipeline(
                PipelineRunCommand(
                    db_path=db_path,
                    workflow_file=workflow_file,
                    issue_ref=issue_ref,
                    project_dir=project_dir,
                    prompt_file=prompt_file,
                    coding_role=coding_role,
                    max_review_round=max_review_round,
                    max_test_round=max_test_round,
                ),
            ),
        ),
    )


@outbox.group()
def quality() -> None:
    """Quality event ingestion commands."""


@quality.command("ingest")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option(
    "--source",
    default="manual",
    show_default=True,
    help="Signal source: github, gitlab, or any generic name.",
)
@click.option("--event-id", "external_event_id", default="", help="Provider delivery id.")
@click.option("--category", default="", help="review or ci. Inferred from the payload when omitted.")
@click.option(
    "--result",
    default="",
    help="approved, changes_requested, pass or fail. Inferred from the payload when omitted.",
)
@click.option("--actor", default="", help="Actor that produced the signal.")
@click.option("--summary", default="", help="Short human summary.")
@click.option("--evidence", multiple=True, help="Evidence reference. Can be repeated.")
@click.option(
    "--payload-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Raw provider payload JSON.",
)
@click.option("--idempotency-key", default="", help="Explicit dedupe key.")
def quality_ingest(  # noqa: PLR0913
    db_path: Path | None,
    issue_ref: str,
    source: str,
    external_event_id: str,
    category: str,
    result: str,
    actor: str,
    summary: str,
    evidence: tuple[str, ...],
    payload_file: Path | None,
    idempotency_key: str,
) -> None:
    """Ingest one review or CI signal into the issue timeline."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.ingest_quality(
                QualityIngestCommand(
                    db_path=db_path,
                    issue_ref=issue_ref,
                    source=source,
                    external_event_id=external_event_id,
                    category=category,
                    result=result,
                    actor=actor,
                    summary=summary,
                    evidence=evidence,
                    payload_file=payload_file,
                    idempotency_key=idempotency_key,
                ),
            ),
        ),
    )


@quality.command("ingest-batch")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option("--source", required=True, help="Signal source for every payload.")
@click.option(
    "--dir",
    "directory",
    type=click.Path(path_type=Path, file_okay=False),
    required=True,
    help="Directory with payload files.",
)
@click.option("--pattern", default="*.json", show_default=True, help="Glob for payload files.")
@click.option(
    "--continue-on-error",
    is_flag=True,
    default=False,
    help="Report failed files and keep going.",
)
def quality_ingest_batch(  # noqa: PLR0913
    db_path: Path | None,
    issue_ref: str,
    source: str,
    directory: Path,
    pattern: str,
    continue_on_error: bool,
) -> None:
    """Ingest every payload file in a directory, in name order."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.ingest_quality_batch(
                QualityBatchCommand(
                    db_path=db_path,
                    issue_ref=issue_ref,
                    source=source,
                    directory=directory,
                    pattern=pattern,
                    continue_on_error=continue_on_error,
                ),
            ),
        ),
    )


@quality.command("list")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True, help="Rows to show.")
def quality_list(db_path: Path | None, issue_ref: str, limit: int) -> None:
    """List stored quality events, newest first."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.list_quality(
                QualityListCommand(db_path=db_path, issue_ref=issue_ref, limit=limit),
            ),
        ),
    )


@quality.command("stats")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", default=None, help="Restrict to one issue.")
def quality_stats(db_path: Path | None, issue_ref: str | None) -> None:
    """Count quality events by category and result."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.quality_stats(
                QualityStatsCommand(db_path=db_path, issue_ref=issue_ref),
            ),
        ),
    )


@quality.command("export")
@DB_PATH_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["json", "jsonl"], case_sensitive=False),
    default="json",
    show_default=True,
    help="Export format.",
)
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Write to a file instead of stdout.",
)
@click.option("--limit", type=click.IntRange(min=1), default=1_000, show_default=True, help="Rows to export.")
def quality_export(
    db_path: Path | None,
    issue_ref: str,
    output_format: str,
    output_path: Path | None,
    limit: int,
) -> None:
    """Export quality events as JSON or JSON lines."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.export_quality(
                QualityExportCommand(
                    db_path=db_path,
                    issue_ref=issue_ref,
                    output_format=output_format,
                    output_path=output_path,
                    limit=limit,
                ),
            ),
        ),
    )


@quality.command("webhook")
@DB_PATH_OPTION
@click.option("--host", default=None, help="Bind host. Defaults to OUTBOX_FLOW_WEBHOOK_HOST.")
@click.option("--port", type=click.IntRange(min=1, max=65_535), default=None, help="Bind port.")
@click.option("--github-secret", default=None, help="GitHub HMAC secret. Empty disables the check.")
@click.option("--gitlab-token", default=None, help="GitLab shared token. Empty disables the check.")
def quality_webhook(
    db_path: Path | None,
    host: str | None,
    port: int | None,
    github_secret: str | None,
    gitlab_token: str | None,
) -> None:
    """Serve the GitHub/GitLab webhook receiver."""

    _run(
        lambda: OUTBOX_CONTROLLER.serve_webhook(
            QualityWebhookCommand(
                db_path=db_path,
                host=host,
                port=port,
                github_secret=github_secret,
                gitlab_token=gitlab_token,
            ),
        ),
    )


@outbox_flow.group()
def lead() -> None:
    """Lead sync commands."""


@lead.command("run")
@DB_PATH_OPTION
@WORKFLOW_OPTION
@click.option("--role", default="backend", show_default=True, help="Role this lead serves.")
@click.option("--assignee", default="", help="Actor name. Defaults to lead-<role>.")
@click.option("--once", is_flag=True, default=False, help="Run a single sync tick and exit.")
@click.option(
    "--poll-interval",
    "poll_interval_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds between ticks. Defaults to OUTBOX_FLOW_LEAD_POLL_INTERVAL_SECONDS.",
)
@click.option(
    "--event-batch",
    type=click.IntRange(min=1),
    default=None,
    help="Events read per tick. Defaults to OUTBOX_FLOW_LEAD_EVENT_BATCH.",
)
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks.",
)
def lead_run(  # noqa: PLR0913
    db_path: Path | None,
    workflow_file: Path | None,
    role: str,
    assignee: str,
    once: bool,
    poll_interval_seconds: float | None,
    event_batch: int | None,
    max_ticks: int | None,
) -> None:
    """Scan the outbox and spawn workers for eligible issues."""

    _run(
        lambda: OUTBOX_CONTROLLER.run_lead(
            LeadRunCommand(
                db_path=db_path,
                workflow_file=workflow_file,
                role=role,
                assignee=assignee,
                once=once,
                poll_interval_seconds=poll_interval_seconds,
                event_batch=event_batch,
                max_ticks=max_ticks,
            ),
            emit=_emit_lines,
        ),
    )


@lead.command("run-issue")
@DB_PATH_OPTION
@WORKFLOW_OPTION
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option("--role", default="backend", show_default=True, help="Role this lead serves.")
@click.option("--assignee", default="", help="Actor name. Defaults to lead-<role>.")
@click.option(
    "--force-spawn",
    is_flag=True,
    default=False,
    help="Ignore the seen marker and process the issue again.",
)
def lead_run_issue(  # noqa: PLR0913
    db_path: Path | None,
    workflow_file: Path | None,
    issue_ref: str,
    role: str,
    assignee: str,
    force_spawn: bool,
) -> None:
    """Process exactly one issue through the lead gates."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.run_lead_issue(
                LeadRunIssueCommand(
                    db_path=db_path,
                    workflow_file=workflow_file,
                    issue_ref=issue_ref,
                    role=role,
                    assignee=assignee,
                    force_spawn=force_spawn,
                ),
            ),
        ),
    )


@lead.command("cleanup-workdir")
@DB_PATH_OPTION
@WORKFLOW_OPTION
@click.option("--role", required=True, help="Role owning the workdir.")
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
@click.option("--run-id", required=True, help="Run id of the workdir to remove.")
def lead_cleanup_workdir(
    db_path: Path | None,
    workflow_file: Path | None,
    role: str,
    issue_ref: str,
    run_id: str,
) -> None:
    """Remove a retained per-run workdir."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.cleanup_workdir(
                LeadCleanupWorkdirCommand(
                    db_path=db_path,
                    workflow_file=workflow_file,
                    role=role,
                    issue_ref=issue_ref,
                    run_id=run_id,
                ),
            ),
        ),
    )


@lead.command("active-run")
@DB_PATH_OPTION
@click.option("--role", required=True, help="Role owning the run.")
@click.option("--issue", "issue_ref", required=True, help="Issue reference.")
def lead_active_run(db_path: Path | None, role: str, issue_ref: str) -> None:
    """Print the active run id for a role and issue, or `none`."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.active_run(
                LeadActiveRunCommand(db_path=db_path, role=role, issue_ref=issue_ref),
            ),
        ),
    )


@outbox_flow.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option(
    "--context-pack",
    "context_pack_dir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    required=True,
    help="Context pack directory prepared by the lead.",
)
@click.option(
    "--workflow",
    "workflow_file",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="Workflow profile TOML.",
)
def worker_run(context_pack_dir: Path, workflow_file: Path) -> None:
    """Run the role executor and write the work result files."""

    _emit_lines(
        _run(
            lambda: OUTBOX_CONTROLLER.run_worker(
                WorkerRunCommand(context_pack_dir=context_pack_dir, workflow_file=workflow_file),
            ),
        ),
    )


def _run(action: Callable[[], T]) -> T:
    try:
        return action()
    except (OutboxError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    outbox_flow()
