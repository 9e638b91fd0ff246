"""Lead sync: one tick of the event-driven dispatcher for a role.

A tick reads the event cursor, unions the listen-label queue with issues
already assigned to the lead, and walks the candidates in ascending issue
order. Each candidate is gated (closed, ownership, seen-marker, autoflow,
state, needs-human, dependencies) before a worker is spawned under the
group's concurrency cap. Every outcome is written back as a Structured
Comment; a result for a superseded run is discarded without writeback.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path

from outbox_flow.outbox.cache import (
    KvCache,
    active_run_key,
    cursor_key,
    run_seq_key,
    seen_updated_at_key,
)
from outbox_flow.outbox.comments import StructuredComment, format_read_up_to, parse_structured_comment
from outbox_flow.outbox.contracts import (
    WORK_AUDIT_FILE,
    LoadedWorkResult,
    has_required_evidence,
    load_work_result,
    prepare_context_pack,
    validate_work_result_echo,
)
from outbox_flow.outbox.errors import (
    OutboxValidationError,
    WorkdirError,
    WorkflowConfigError,
    WorkResultError,
)
from outbox_flow.outbox.models import (
    EventView,
    IssueFilter,
    IssueState,
    IssueView,
    ResultCode,
    WorkChanges,
    WorkOrder,
    WorkResult,
    WorkTests,
)
from outbox_flow.outbox.repository import OutboxRepository
from outbox_flow.outbox.rules import (
    AUTOFLOW_OFF_LABEL,
    NEEDS_HUMAN_LABEL,
    format_issue_ref,
    format_run_id,
    is_none_like,
    is_stale_run,
    next_role_for_review_changes,
    parse_issue_ref,
    unresolved_dependencies,
)
from outbox_flow.outbox.service import OutboxService
from outbox_flow.outbox.workdir import (
    WorkdirManager,
    WorkdirManagerFactory,
    git_worktree_factory,
    sanitize_workdir_segment,
)
from outbox_flow.outbox.worker import InvokeWorkerRequest, WorkerInvoker, WorkerRunError, invoke_worker
from outbox_flow.outbox.workflow import (
    SUPPORTED_OUTBOX_BACKEND,
    GroupConfig,
    WorkflowProfile,
    load_workflow_profile,
)
from outbox_flow.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_EVENT_BATCH = 200
VERDICT_MARKERS = ("review:approved", "review:changes_requested", "qa:pass", "qa:fail")
_REVIEW_VERDICTS = ("review:approved", "review:changes_requested")
_QA_VERDICTS = ("qa:pass", "qa:fail")
_NEEDS_HUMAN_RESULT_CODES = frozenset(
    {
        ResultCode.MANUAL_INTERVENTION.value,
        ResultCode.OUTPUT_UNPARSEABLE.value,
        ResultCode.PERMISSION_DENIED.value,
    },
)

ResultLoader = Callable[[Path], LoadedWorkResult]


@dataclass(slots=True)
class SyncResult:
    """Counters for one lead tick, printed by `lead run`."""

    role: str
    cursor_before: int = 0
    cursor_after: int = 0
    candidates: int = 0
    processed: int = 0
    blocked: int = 0
    spawned: int = 0
    skipped: int = 0


@dataclass(slots=True)
class IssueRunResult:
    """Outcome of driving a single issue through the lead gates."""

    processed: bool = False
    blocked: bool = False
    spawned: bool = False


@dataclass(slots=True)
class _IssueContext:
    role: str
    actor: str
    group: GroupConfig
    profile: WorkflowProfile
    workflow_file: Path
    issue: IssueView
    cursor_after: int
    allow_spawn: bool
    ignore_state_skip: bool = False
    verdicts_changed: bool = False

    @property
    def issue_ref(self) -> str:
        return self.issue.issue_ref


class LeadSyncEngine:
    """Drive the outbox toward completion for one role at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        service: OutboxService,
        repository: OutboxRepository,
        cache: KvCache,
        worker_invoker: WorkerInvoker = invoke_worker,
        result_loader: ResultLoader = load_work_result,
        workdir_factory: WorkdirManagerFactory = git_worktree_factory,
        executable: tuple[str, ...] = (),
    ) -> None:
        self.service = service
        self.repository = repository
        self.cache = cache
        self.worker_invoker = worker_invoker
        self.result_loader = result_loader
        self.workdir_factory = workdir_factory
        self.executable = executable

    def sync(
        self,
        *,
        workflow_file: Path,
        role: str = "backend",
        assignee: str = "",
        event_batch: int = DEFAULT_EVENT_BATCH,
    ) -> SyncResult:
        """Run one tick: advance the cursor, gate candidates and spawn under the cap."""

        role = role.strip() or "backend"
        actor = assignee.strip() or f"lead-{role}"
        profile, group = self._load_profile(workflow_file, role)

        cursor_before = _parse_cursor(self.cache.get(cursor_key(role)))
        with self.repository.transaction() as session:
            events = self.repository.list_events_after(
                session=session,
                after_event_id=cursor_before,
                limit=event_batch if event_batch > 0 else DEFAULT_EVENT_BATCH,
            )
        cursor_after = max((event.event_id for event in events), default=cursor_before)

        candidates = self._collect_candidates(
            group=group,
            actor=actor,
            touched_issue_ids={event.issue_id for event in events},
        )
        summary = SyncResult(
            role=role,
            cursor_before=cursor_before,
            cursor_after=cursor_after,
            candidates=len(candidates),
        )
        for issue_id in candidates:
            issue = self.service.get_issue(issue_ref=candidates[issue_id])
            outcome = self._process_issue(
                _IssueContext(
                    role=role,
                    actor=actor,
                    group=group,
                    profile=profile,
                    workflow_file=profile.path,
                    issue=issue,
                    cursor_after=cursor_after,
                    allow_spawn=summary.spawned < group.spawn_cap,
                ),
            )
            if outcome.processed:
                summary.processed += 1
            else:
                summary.skipped += 1
            if outcome.blocked:
                summary.blocked += 1
            if outcome.spawned:
                summary.spawned += 1

        if cursor_after > cursor_before:
            self.cache.set(cursor_key(role), str(cursor_after))
        logger.info(
            "Lead tick finished: role=%s cursor=%d->%d candidates=%d processed=%d spawned=%d",
            role,
            cursor_before,
            cursor_after,
            summary.candidates,
            summary.processed,
            summary.spawned,
        )
        return summary

    def run_issue_once(  # noqa: PLR0913
        self,
        *,
        workflow_file: Path,
        issue_ref: str,
        role: str = "backend",
        assignee: str = "",
        force_spawn: bool = False,
    ) -> IssueRunResult:
        """Drive one issue through the gates; `force_spawn` bypasses the state skip."""

        role = role.strip() or "backend"
        actor = assignee.strip() or f"lead-{role}"
        profile, group = self._load_profile(workflow_file, role)
        issue = self.service.get_issue(issue_ref=issue_ref)
        return self._process_issue(
            _IssueContext(
                role=role,
                actor=actor,
                group=group,
                profile=profile,
                workflow_file=profile.path,
                issue=issue,
                cursor_after=0,
                allow_spawn=True,
                ignore_state_skip=force_spawn,
            ),
        )

    def cleanup_workdir(
        self,
        *,
        workflow_file: Path,
        role: str,
        issue_ref: str,
        run_id: str,
    ) -> Path:
        """Remove the sandbox of a past run; a dirty tree is refused."""

        role = role.strip()
        if not role:
            raise OutboxValidationError("role is required")
        if not run_id.strip():
            raise OutboxValidationError("run id is required")
        parse_issue_ref(issue_ref)
        profile = load_workflow_profile(workflow_file)
        if not profile.should_use_workdir(role):
            raise WorkflowConfigError(f"workdir is not enabled for role {role}")

        config = replace(profile.workdir, cleanup="immediate")
        manager = self.workdir_factory(config, profile, profile.resolve_role_repo_dir(role))
        workdir = _workdir_path(profile, role=role, issue_ref=issue_ref, run_id=run_id)
        manager.cleanup(role=role, issue_ref=issue_ref, run_id=run_id, workdir=workdir)
        return workdir

    def _load_profile(self, workflow_file: Path, role: str) -> tuple[WorkflowProfile, GroupConfig]:
        profile = load_workflow_profile(workflow_file)
        if not profile.is_role_enabled(role):
            raise WorkflowConfigError(f"role {role} is not enabled in workflow")
        if profile.outbox.backend != SUPPORTED_OUTBOX_BACKEND:
            raise WorkflowConfigError(
                f"lead only supports sqlite backend, got {profile.outbox.backend!r}",
            )
        group = profile.find_group_by_role(role)
        if group is None:
            raise WorkflowConfigError(f"group config is required for role {role}")
        return profile, group

    def _collect_candidates(
        self,
        *,
        group: GroupConfig,
        actor: str,
        touched_issue_ids: set[int],
    ) -> dict[int, str]:
        """Union of event-touched, listen-label and assigned issues, ordered by id."""

        queue = self.service.list_issues(
            IssueFilter(any_labels=group.listen_labels, exclude_labels=(AUTOFLOW_OFF_LABEL,)),
        )
        assigned = self.service.list_issues(
            IssueFilter(assignee=actor, exclude_labels=(AUTOFLOW_OFF_LABEL,)),
        )
        merged = {issue_id: format_issue_ref(issue_id) for issue_id in touched_issue_ids}
        merged.update({issue.issue_id: issue.issue_ref for issue in [*queue, *assigned]})
        return dict(sorted(merged.items()))

    def _process_issue(self, ctx: _IssueContext) -> IssueRunResult:  # noqa: C901, PLR0911
        issue = ctx.issue
        if issue.is_closed:
            return IssueRunResult()

        assignee = (issue.assignee or "").strip()
        if ctx.group.is_subscriber:
            if not assignee:
                return IssueRunResult()
        elif assignee != ctx.actor:
            return IssueRunResult()

        seen = (self.cache.get(seen_updated_at_key(ctx.role, ctx.issue_ref)) or "").strip()
        if seen and seen == issue.updated_at.isoformat():
            return IssueRunResult()
        if issue.has_label(AUTOFLOW_OFF_LABEL):
            return IssueRunResult()
        if not ctx.ignore_state_skip and self._should_skip_by_state(ctx):
            return IssueRunResult()
        if ctx.group.is_subscriber and not any(
            issue.has_label(label) for label in ctx.group.listen_labels
        ):
            return IssueRunResult()

        if ctx.role == "integrator" and not ctx.group.is_subscriber and not ctx.group.is_comment_only:
            ctx.verdicts_changed = self._index_verdict_labels(ctx)

        if issue.has_label(NEEDS_HUMAN_LABEL):
            self._write_comment(
                ctx,
                StructuredComment(
                    role=ctx.role,
                    issue_ref=ctx.issue_ref,
                    run_id="none",
                    action="update",
                    status="blocked",
                    result_code=ResultCode.MANUAL_INTERVENTION.value,
                    read_up_to=format_read_up_to(ctx.cursor_after),
                    trigger="manual:needs-human",
                    summary=[
                        apply_verdict_marker(
                            ctx.role,
                            "blocked",
                            ResultCode.MANUAL_INTERVENTION.value,
                            "issue has needs-human label",
                        ),
                    ],
                    blocked_by=[NEEDS_HUMAN_LABEL],
                    next_steps=[f"@{ctx.role} remove needs-human after manual review"],
                ),
            )
            self._mark_seen(ctx)
            return IssueRunResult(processed=True, blocked=True)

        with self.repository.transaction() as session:
            unresolved = unresolved_dependencies(
                issue.body,
                is_closed=lambda dep_id: self.repository.is_issue_closed(
                    session=session,
                    issue_id=dep_id,
                ),
            )
        if unresolved:
            self._write_comment(
                ctx,
                StructuredComment(
                    role=ctx.role,
                    issue_ref=ctx.issue_ref,
                    run_id="none",
                    action="update",
                    status="blocked",
                    result_code=ResultCode.DEP_UNRESOLVED.value,
                    read_up_to=format_read_up_to(ctx.cursor_after),
                    trigger="manual:depends-on",
                    summary=[
                        apply_verdict_marker(
                            ctx.role,
                            "blocked",
                            ResultCode.DEP_UNRESOLVED.value,
                            "issue has unresolved dependencies",
                        ),
                    ],
                    blocked_by=unresolved,
                    next_steps=[f"@{ctx.role} wait until dependencies are closed"],
                ),
            )
            self._mark_seen(ctx)
            return IssueRunResult(processed=True, blocked=True)

        if not ctx.allow_spawn:
            if ctx.verdicts_changed:
                self._mark_seen(ctx)
                return IssueRunResult(processed=True)
            return IssueRunResult()

        return self._spawn_worker(ctx)

    def _spawn_worker(self, ctx: _IssueContext) -> IssueRunResult:  # noqa: C901, PLR0915
        repo_dir = ctx.profile.resolve_role_repo_dir(ctx.role)
        run_id = self._next_run_id(ctx.role, ctx.issue_ref)
        self.cache.set(active_run_key(ctx.role, ctx.issue_ref), run_id)
        logger.info("Spawning worker: issue=%s role=%s run=%s", ctx.issue_ref, ctx.role, run_id)

        manager: WorkdirManager | None = None
        workdir: Path | None = None
        effective_repo_dir = repo_dir
        if ctx.profile.should_use_workdir(ctx.role):
            manager = self.workdir_factory(ctx.profile.workdir, ctx.profile, repo_dir)
            try:
                workdir = manager.prepare(role=ctx.role, issue_ref=ctx.issue_ref, run_id=run_id)
            except (WorkdirError, OSError) as error:
                logger.warning("Workdir prepare failed for %s run=%s: %s", ctx.issue_ref, run_id, error)
                self._write_blocked_run_comment(
                    ctx,
                    run_id=run_id,
                    trigger=f"workdir:prepare:{run_id}",
                    result_code=ResultCode.ENV_UNAVAILABLE.value,
                    summary=f"workdir prepare failed: {error}",
                    blocked_by=["workdir-prepare"],
                    next_step=f"@{ctx.role} fix git worktree setup and retry with a new run",
                )
                self._mark_seen(ctx)
                return IssueRunResult(processed=True, blocked=True)
            effective_repo_dir = workdir

        def cleanup() -> None:
            if manager is not None and workdir is not None:
                manager.cleanup(role=ctx.role, issue_ref=ctx.issue_ref, run_id=run_id, workdir=workdir)

        context_pack_dir = context_pack_path(ctx.profile, ctx.issue_ref, run_id)
        order = WorkOrder(
            issue_ref=ctx.issue_ref,
            run_id=run_id,
            role=ctx.role,
            repo_dir=str(effective_repo_dir),
        )
        try:
            prepare_context_pack(
                context_pack_dir,
                order=order,
                spec_snapshot=ctx.issue.body,
                read_up_to=ctx.cursor_after,
            )
        except OSError:
            cleanup()
            raise

        try:
            self.worker_invoker(
                InvokeWorkerRequest(
                    workflow_file=ctx.workflow_file,
                    context_pack_dir=context_pack_dir,
                    issue_ref=ctx.issue_ref,
                    run_id=run_id,
                    role=ctx.role,
                    timeout_seconds=ctx.profile.resolve_executor(ctx.role).timeout_seconds,
                    executable=self.executable,
                ),
            )
        except (WorkerRunError, OSError) as error:
            logger.warning("Worker execution failed for %s run=%s: %s", ctx.issue_ref, run_id, error)
            summary = f"worker execution failed: {error}"
            blocked_by = ["worker-execution"]
            result_code = ResultCode.ENV_UNAVAILABLE.value
            next_step = f"@{ctx.role} inspect worker logs and retry with a new run"
            try:
                cleanup()
            except (WorkdirError, OSError) as cleanup_error:
                summary += f"; workdir cleanup failed: {cleanup_error}"
                blocked_by.append("workdir-cleanup")
                result_code = ResultCode.MANUAL_INTERVENTION.value
                next_step = (
                    f"@{ctx.role} cleanup {self._display_path(ctx, workdir)} and retry with a new run"
                )
            self._write_blocked_run_comment(
                ctx,
                run_id=run_id,
                trigger=f"workrun:{run_id}",
                result_code=result_code,
                summary=summary,
                blocked_by=blocked_by,
                next_step=next_step,
            )
            if should_add_needs_human_for_result_code(result_code):
                self._add_needs_human(ctx)
            self._mark_seen(ctx)
            return IssueRunResult(processed=True, blocked=True, spawned=True)

        try:
            loaded = self.result_loader(context_pack_dir)
        except (WorkResultError, OutboxValidationError, OSError) as error:
            logger.warning("Work result unreadable for %s run=%s: %s", ctx.issue_ref, run_id, error)
            self._cleanup_quietly(cleanup, ctx.issue_ref, run_id)
            self._write_blocked_run_comment(
                ctx,
                run_id=run_id,
                trigger=f"workrun:{run_id}",
                result_code=ResultCode.OUTPUT_UNPARSEABLE.value,
                summary=f"worker result is missing or invalid: {error}",
                blocked_by=["worker-result"],
                next_step=f"@{ctx.role} provide parseable work result",
            )
            self._add_needs_human(ctx)
            self._mark_seen(ctx)
            return IssueRunResult(processed=True, blocked=True, spawned=True)

        result = loaded.result
        active_run_id = self.cache.get(active_run_key(ctx.role, ctx.issue_ref))
        if is_stale_run(active_run_id, result.run_id):
            logger.info(
                "Discarding stale result: issue=%s result_run=%s active_run=%s",
                ctx.issue_ref,
                result.run_id,
                active_run_id,
            )
            self._cleanup_quietly(cleanup, ctx.issue_ref, run_id)
            return IssueRunResult(processed=True, spawned=True)

        try:
            validate_work_result_echo(order, result)
        except WorkResultError as error:
            self._cleanup_quietly(cleanup, ctx.issue_ref, run_id)
            self._write_blocked_run_comment(
                ctx,
                run_id=run_id,
                trigger=f"workrun:{run_id}",
                result_code=ResultCode.OUTPUT_UNPARSEABLE.value,
                summary=str(error),
                blocked_by=["work-result-echo"],
                next_step=f"@{ctx.role} fix work result issue_ref/run_id",
            )
            self._add_needs_human(ctx)
            self._mark_seen(ctx)
            return IssueRunResult(processed=True, blocked=True, spawned=True)

        comment, needs_human = self._classify_result(ctx, result=result, run_id=run_id)
        comment.summary.append(f"WorkResultSource: {loaded.source}")
        if (context_pack_dir / WORK_AUDIT_FILE).exists():
            comment.summary.append(
                f"Audit: {self._display_path(ctx, context_pack_dir / WORK_AUDIT_FILE)}",
            )

        try:
            cleanup()
        except (WorkdirError, OSError) as error:
            logger.warning("Workdir cleanup failed for %s run=%s: %s", ctx.issue_ref, run_id, error)
            comment.status = IssueState.BLOCKED.value
            comment.result_code = ResultCode.MANUAL_INTERVENTION.value
            comment.summary[0] = f"{comment.summary[0]}; workdir cleanup failed: {error}"
            comment.blocked_by = [item for item in comment.blocked_by if not is_none_like(item)]
            comment.blocked_by.append("workdir-cleanup")
            comment.next_steps = [
                f"@{ctx.role} cleanup {self._display_path(ctx, workdir)} and retry with a new run",
            ]
            needs_human = True

        self._write_comment(ctx, comment)
        if needs_human:
            self._add_needs_human(ctx)
        if ctx.role in {"reviewer", "qa"} and not ctx.group.is_subscriber and not ctx.group.is_comment_only:
            first = comment.summary[0].lower() if comment.summary else ""
            marker = next((item for item in VERDICT_MARKERS if first.startswith(item)), "")
            if marker:
                self._sync_verdict_labels(ctx, [marker])
        self._mark_seen(ctx)
        return IssueRunResult(
            processed=True,
            blocked=comment.status == IssueState.BLOCKED.value,
            spawned=True,
        )

    def _classify_result(
        self,
        ctx: _IssueContext,
        *,
        result: WorkResult,
        run_id: str,
    ) -> tuple[StructuredComment, bool]:
        status = IssueState.REVIEW.value
        result_code = ""
        summary = "worker completed with evidence"
        next_step = "@integrator review and merge"
        blocked_by: list[str] = []
        needs_human = False
        if ctx.role == "reviewer":
            summary = "review completed with evidence"
            next_step = "@integrator finalize review decision"
        elif ctx.role == "qa":
            summary = "qa completed with evidence"
            next_step = "@integrator finalize qa decision"

        code = "" if is_none_like(result.result_code) else result.result_code.strip()
        if not has_required_evidence(result):
            status = IssueState.BLOCKED.value
            result_code = ResultCode.MANUAL_INTERVENTION.value
            summary = "worker result is missing PR/Commit or Tests evidence"
            blocked_by = ["missing-evidence"]
            next_step = f"@{ctx.role} provide PR/Commit and Tests evidence"
            needs_human = True
        elif ctx.role == "reviewer" and code == ResultCode.REVIEW_CHANGES_REQUESTED.value:
            status = IssueState.BLOCKED.value
            result_code = code
            summary = "review requested changes"
            blocked_by = ["review-changes-requested"]
            next_step = (
                f"@{next_role_for_review_changes(ctx.issue.labels)} address review changes and rerun"
            )
        elif code:
            status = IssueState.BLOCKED.value
            result_code = code
            summary = f"worker reported result_code: {code}"
            blocked_by = ["worker-result-code"]
            next_step = f"@{ctx.role} investigate failure and rerun"
            needs_human = should_add_needs_human_for_result_code(code)

        comment = StructuredComment(
            role=ctx.role,
            issue_ref=ctx.issue_ref,
            run_id=run_id,
            action="update",
            status=status,
            result_code=result_code,
            read_up_to=format_read_up_to(ctx.cursor_after),
            trigger=f"workrun:{run_id}",
            summary=[apply_verdict_marker(ctx.role, status, result_code, summary)],
            changes=WorkChanges(pr=result.changes.pr, commit=result.changes.commit),
            tests=WorkTests(
                command=result.tests.command,
                result=result.tests.result,
                evidence=result.tests.evidence,
            ),
            blocked_by=blocked_by,
            next_steps=[next_step],
        )
        return comment, needs_human

    def _should_skip_by_state(self, ctx: _IssueContext) -> bool:
        state = ctx.issue.state
        if state in {IssueState.BLOCKED.label, IssueState.DONE.label}:
            return True
        if state == IssueState.REVIEW.label:
            return not (
                ctx.role == "reviewer" or IssueState.REVIEW.label in ctx.group.listen_labels
            )
        return False

    def _index_verdict_labels(self, ctx: _IssueContext) -> bool:
        """Mirror the latest review/qa verdict markers into labels; True when labels changed."""

        latest_review = ""
        latest_qa = ""
        for event in self.service.list_events(issue_ref=ctx.issue_ref):
            marker = extract_verdict_marker(event)
            if marker in _REVIEW_VERDICTS:
                latest_review = marker
            elif marker in _QA_VERDICTS:
                latest_qa = marker
        return self._sync_verdict_labels(ctx, [latest_review, latest_qa])

    def _sync_verdict_labels(self, ctx: _IssueContext, markers: list[str]) -> bool:
        """Keep exactly the given marker of each verdict family as a label."""

        changed = False
        labels = set(self.service.get_issue(issue_ref=ctx.issue_ref).labels)
        for latest in markers:
            family = _REVIEW_VERDICTS if latest in _REVIEW_VERDICTS else _QA_VERDICTS
            if latest not in family:
                continue
            to_remove = [label for label in family if label != latest and label in labels]
            if to_remove:
                self.service.remove_issue_labels(
                    issue_ref=ctx.issue_ref,
                    actor=ctx.actor,
                    labels=to_remove,
                )
                changed = True
            if latest not in labels:
                self.service.add_issue_labels(
                    issue_ref=ctx.issue_ref,
                    actor=ctx.actor,
                    labels=[latest],
                )
                changed = True
        if changed:
            ctx.issue = self.service.get_issue(issue_ref=ctx.issue_ref)
        return changed

    def _write_blocked_run_comment(  # noqa: PLR0913
        self,
        ctx: _IssueContext,
        *,
        run_id: str,
        trigger: str,
        result_code: str,
        summary: str,
        blocked_by: list[str],
        next_step: str,
    ) -> None:
        self._write_comment(
            ctx,
            StructuredComment(
                role=ctx.role,
                issue_ref=ctx.issue_ref,
                run_id=run_id,
                action="update",
                status=IssueState.BLOCKED.value,
                result_code=result_code,
                read_up_to=format_read_up_to(ctx.cursor_after),
                trigger=trigger,
                summary=[
                    apply_verdict_marker(ctx.role, IssueState.BLOCKED.value, result_code, summary),
                ],
                blocked_by=blocked_by,
                next_steps=[next_step],
            ),
        )

    def _write_comment(self, ctx: _IssueContext, comment: StructuredComment) -> None:
        state = None if ctx.group.is_comment_only else comment.status
        self.service.comment_issue(
            issue_ref=ctx.issue_ref,
            actor=ctx.actor,
            body=comment.render(),
            state=state,
        )

    def _add_needs_human(self, ctx: _IssueContext) -> None:
        if ctx.group.is_comment_only:
            return
        current = self.service.get_issue(issue_ref=ctx.issue_ref)
        if current.has_label(NEEDS_HUMAN_LABEL):
            return
        try:
            self.service.add_issue_labels(
                issue_ref=ctx.issue_ref,
                actor=ctx.actor,
                labels=[NEEDS_HUMAN_LABEL],
            )
        except OutboxValidationError:
            logger.exception("Failed to add needs-human to %s", ctx.issue_ref)

    def _mark_seen(self, ctx: _IssueContext) -> None:
        current = self.service.get_issue(issue_ref=ctx.issue_ref)
        self.cache.set(seen_updated_at_key(ctx.role, ctx.issue_ref), current.updated_at.isoformat())

    def _next_run_id(self, role: str, issue_ref: str) -> str:
        key = run_seq_key(role, issue_ref)
        seq = _parse_cursor(self.cache.get(key)) + 1
        run_id = format_run_id(run_date=utc_now(), role=role, seq=seq)
        self.cache.set(key, str(seq))
        return run_id

    @staticmethod
    def _cleanup_quietly(cleanup: Callable[[], None], issue_ref: str, run_id: str) -> None:
        try:
            cleanup()
        except (WorkdirError, OSError) as error:
            logger.warning("Workdir cleanup failed for %s run=%s: %s", issue_ref, run_id, error)

    @staticmethod
    def _display_path(ctx: _IssueContext, path: Path | None) -> str:
        if path is None:
            return "none"
        base = ctx.profile.base_dir.resolve()
        resolved = path.resolve()
        if resolved != base and resolved.is_relative_to(base):
            return str(resolved.relative_to(base))
        return str(resolved)


def context_pack_path(profile: WorkflowProfile, issue_ref: str, run_id: str) -> Path:
    """`<workflow dir>/state/context_packs/<sanitized issue ref>/<run id>`."""

    return profile.base_dir / "state" / "context_packs" / sanitize_workdir_segment(issue_ref) / run_id


def apply_verdict_marker(role: str, status: str, result_code: str, summary: str) -> str:
    """Prefix reviewer/qa summaries with their verdict marker."""

    summary = summary.strip()
    role = role.strip()
    if role == "reviewer":
        marker = "review:approved"
        if status.strip() == "blocked" or result_code.strip() == "review_changes_requested":
            marker = "review:changes_requested"
        prefix = "review:"
    elif role == "qa":
        marker = "qa:fail" if status.strip() == "blocked" else "qa:pass"
        prefix = "qa:"
    else:
        return summary
    if summary.lower().startswith(prefix):
        return summary
    return f"{marker}; {summary}" if summary else marker


def extract_verdict_marker(event: EventView) -> str:
    try:
        comment = parse_structured_comment(event.body)
    except OutboxValidationError:
        return ""
    if not comment.summary:
        return ""
    first = comment.summary[0].strip().lower()
    return next((marker for marker in VERDICT_MARKERS if first.startswith(marker)), "")


def should_add_needs_human_for_result_code(code: str) -> bool:
    return code.strip() in _NEEDS_HUMAN_RESULT_CODES


def _workdir_path(profile: WorkflowProfile, *, role: str, issue_ref: str, run_id: str) -> Path:
    return profile.resolve_path(profile.workdir.root).joinpath(
        sanitize_workdir_segment(role),
        sanitize_workdir_segment(issue_ref),
        sanitize_workdir_segment(run_id),
    )


def _parse_cursor(raw: str | None) -> int:
    try:
        return int((raw or "").strip() or 0)
    except ValueError:
        return 0
