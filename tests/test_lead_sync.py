from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from outbox_flow.outbox.cache import SqliteKvCache, active_run_key, cursor_key
from outbox_flow.outbox.comments import parse_structured_comment
from outbox_flow.outbox.contracts import (
    LINKS_FILE,
    WORK_ORDER_FILE,
    WORK_RESULT_JSON_FILE,
    LoadedWorkResult,
    read_work_order,
    write_work_result_json,
)
from outbox_flow.outbox.errors import WorkdirError, WorkflowConfigError, WorkResultError
from outbox_flow.outbox.models import WorkChanges, WorkResult, WorkTests
from outbox_flow.outbox.repository import OutboxRepository
from outbox_flow.outbox.service import OutboxService
from outbox_flow.outbox.sync import (
    LeadSyncEngine,
    apply_verdict_marker,
    context_pack_path,
    should_add_needs_human_for_result_code,
)
from outbox_flow.outbox.worker import InvokeWorkerRequest, WorkerRunError
from outbox_flow.outbox.workflow import load_workflow_profile

pytestmark = [
    allure.epic("Lead Runtime"),
    allure.feature("Lead Sync"),
]


class FakeWorker:
    """Writes a canned work result into the context pack instead of running a process."""

    def __init__(
        self,
        *,
        commit: str = "git:abc123",
        result_code: str = "",
        test_result: str = "pass",
        on_invoke: Callable[[InvokeWorkerRequest], None] | None = None,
    ) -> None:
        self.commit = commit
        self.result_code = result_code
        self.test_result = test_result
        self.on_invoke = on_invoke
        self.calls: list[InvokeWorkerRequest] = []

    def __call__(self, request: InvokeWorkerRequest) -> None:
        self.calls.append(request)
        if self.on_invoke is not None:
            self.on_invoke(request)
        write_work_result_json(
            request.context_pack_dir / WORK_RESULT_JSON_FILE,
            WorkResult(
                issue_ref=request.issue_ref,
                run_id=request.run_id,
                summary="implemented",
                result_code=self.result_code,
                changes=WorkChanges(pr="none", commit=self.commit),
                tests=WorkTests(command="pytest -q", result=self.test_result, evidence="stdout.log"),
            ),
        )


_WORKDIR_POLICY = """\
[workdir]
enabled = true
backend = "git-worktree"
root = "sandboxes"
cleanup = "immediate"
roles = ["backend"]
"""


class _RecordingWorkdirManager:
    """Hands out plain directories and records cleanups; `cleanup_error` makes cleanup fail."""

    def __init__(self, root: Path, *, cleanup_error: str = "") -> None:
        self.root = root
        self.cleanup_error = cleanup_error
        self.cleaned: list[Path] = []

    def prepare(self, *, role: str, issue_ref: str, run_id: str) -> Path:
        workdir = self.root / run_id
        workdir.mkdir(parents=True)
        return workdir

    def cleanup(self, *, role: str, issue_ref: str, run_id: str, workdir: Path) -> None:
        self.cleaned.append(workdir)
        if self.cleanup_error:
            raise WorkdirError(self.cleanup_error)


def _engine(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    worker: Callable[[InvokeWorkerRequest], None],
    **kwargs: object,
) -> LeadSyncEngine:
    return LeadSyncEngine(
        service=service,
        repository=repository,
        cache=cache,
        worker_invoker=worker,
        **kwargs,
    )


def _claimed_issue(service: OutboxService, *, labels: list[str], body: str = "Build it", assignee: str = "lead-backend") -> str:
    issue_ref = service.create_issue(title="task", body=body, labels=labels)
    service.claim_issue(issue_ref=issue_ref, assignee=assignee)
    return issue_ref


def _last_comment(service: OutboxService, issue_ref: str):
    return parse_structured_comment(service.list_events(issue_ref=issue_ref)[-1].body)


def _run_comment(service: OutboxService, issue_ref: str):
    return next(
        parse_structured_comment(event.body)
        for event in service.list_events(issue_ref=issue_ref)
        if "Trigger: workrun:" in event.body
    )


def test_sync_spawns_worker_and_moves_issue_to_review(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow()
    issue_ref = _claimed_issue(service, labels=["to:backend"])
    service.comment_issue(issue_ref=issue_ref, actor="pm", body="kickoff")
    worker = FakeWorker()

    summary = _engine(service, repository, cache, worker).sync(workflow_file=workflow)

    assert (summary.candidates, summary.processed, summary.spawned, summary.blocked) == (1, 1, 1, 0)
    assert len(worker.calls) == 1
    request = worker.calls[0]
    assert request.run_id.endswith("-backend-0001")
    assert request.context_pack_dir == context_pack_path(
        load_workflow_profile(workflow),
        issue_ref,
        request.run_id,
    )
    assert (request.context_pack_dir / LINKS_FILE).read_text("utf-8").endswith("ReadUpTo: e1\n")

    issue = service.get_issue(issue_ref=issue_ref)
    assert issue.state == "state:review"
    comment = _last_comment(service, issue_ref)
    assert comment.run_id == request.run_id
    assert comment.summary[0] == "worker completed with evidence"
    assert "WorkResultSource: json" in comment.summary
    assert comment.changes.commit == "git:abc123"
    assert comment.read_up_to == "e1"
    assert service.get_active_run_id(role="backend", issue_ref=issue_ref) == request.run_id


def test_needs_human_never_spawns_and_blocks(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow()
    issue_ref = _claimed_issue(service, labels=["to:backend", "needs-human"])
    worker = FakeWorker()
    engine = _engine(service, repository, cache, worker)

    summary = engine.sync(workflow_file=workflow)

    assert worker.calls == []
    assert (summary.processed, summary.blocked, summary.spawned) == (1, 1, 0)
    assert service.get_issue(issue_ref=issue_ref).state == "state:blocked"
    comment = _last_comment(service, issue_ref)
    assert comment.result_code == "manual_intervention"
    assert comment.blocked_by == ["needs-human"]

    again = engine.sync(workflow_file=workflow)
    assert (again.processed, again.skipped) == (0, 1)
    assert worker.calls == []


def test_spawns_are_capped_by_max_concurrent(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow(groups='[groups.backend]\nrole = "backend"\nmax_concurrent = 2\n')
    refs = [_claimed_issue(service, labels=["to:backend"]) for _ in range(3)]
    worker = FakeWorker()
    engine = _engine(service, repository, cache, worker)

    first = engine.sync(workflow_file=workflow)

    assert (first.candidates, first.spawned, first.skipped) == (3, 2, 1)
    assert [service.get_issue(issue_ref=ref).state for ref in refs] == [
        "state:review",
        "state:review",
        "state:doing",
    ]

    second = engine.sync(workflow_file=workflow)
    assert second.spawned == 1
    assert [call.issue_ref for call in worker.calls] == refs


def test_stale_result_is_discarded_without_writeback(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
    tmp_path: Path,
) -> None:
    workflow = make_workflow(extra=_WORKDIR_POLICY)
    issue_ref = _claimed_issue(service, labels=["to:backend"])
    manager = _RecordingWorkdirManager(tmp_path / "sandboxes")
    worker = FakeWorker(
        on_invoke=lambda request: cache.set(
            active_run_key(request.role, request.issue_ref),
            "2099-01-01-backend-0042",
        ),
    )

    summary = _engine(
        service,
        repository,
        cache,
        worker,
        workdir_factory=lambda config, profile, repo_dir: manager,
    ).sync(workflow_file=workflow)

    assert (summary.processed, summary.spawned, summary.blocked) == (1, 1, 0)
    assert service.list_events(issue_ref=issue_ref) == []
    assert manager.cleaned == [tmp_path / "sandboxes" / worker.calls[0].run_id]
    assert service.get_issue(issue_ref=issue_ref).state == "state:doing"


def test_event_cursor_only_moves_forward(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow()
    issue_ref = _claimed_issue(service, labels=["to:backend"])
    service.comment_issue(issue_ref=issue_ref, actor="pm", body="kickoff")
    engine = _engine(service, repository, cache, FakeWorker())

    ticks = [engine.sync(workflow_file=workflow) for _ in range(3)]

    assert [(tick.cursor_before, tick.cursor_after) for tick in ticks] == [(0, 1), (1, 2), (2, 2)]
    assert cache.get(cursor_key("backend")) == "2"

    cache.set(cursor_key("backend"), "not-a-number")
    assert engine.sync(workflow_file=workflow).cursor_before == 0


def test_unresolved_dependency_blocks_before_spawn(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow()
    dep_ref = service.create_issue(title="dep", body="first")
    issue_ref = _claimed_issue(service, labels=["to:backend"], body=f"DependsOn: {dep_ref}")
    worker = FakeWorker()

    summary = _engine(service, repository, cache, worker).sync(workflow_file=workflow)

    assert worker.calls == []
    assert summary.blocked == 1
    comment = _last_comment(service, issue_ref)
    assert comment.result_code == "dep_unresolved"
    assert comment.blocked_by == [dep_ref]
    assert service.get_issue(issue_ref=issue_ref).state == "state:blocked"


def test_gates_skip_foreign_autoflow_off_and_done_issues(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow()
    _claimed_issue(service, labels=["to:backend"], assignee="someone-else")
    service.create_issue(title="unclaimed", body="b", labels=["to:backend"])
    _claimed_issue(service, labels=["to:backend", "autoflow:off"])
    done_ref = _claimed_issue(service, labels=["to:backend"])
    service.add_issue_labels(issue_ref=done_ref, actor="pm", labels=["state:done"])
    worker = FakeWorker()

    summary = _engine(service, repository, cache, worker).sync(workflow_file=workflow)

    assert worker.calls == []
    assert (summary.candidates, summary.processed, summary.skipped) == (3, 0, 3)


def test_missing_evidence_blocks_and_flags_needs_human(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow()
    issue_ref = _claimed_issue(service, labels=["to:backend"])

    _engine(service, repository, cache, FakeWorker(commit="none")).sync(workflow_file=workflow)

    issue = service.get_issue(issue_ref=issue_ref)
    assert issue.state == "state:blocked"
    assert issue.has_label("needs-human")
    comment = _run_comment(service, issue_ref)
    assert comment.result_code == "manual_intervention"
    assert comment.blocked_by == ["missing-evidence"]


def test_worker_result_code_blocks_without_needs_human(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow()
    issue_ref = _claimed_issue(service, labels=["to:backend"])

    summary = _engine(service, repository, cache, FakeWorker(result_code="test_failed", test_result="fail")).sync(
        workflow_file=workflow,
    )

    assert summary.blocked == 1
    issue = service.get_issue(issue_ref=issue_ref)
    assert issue.state == "state:blocked"
    assert not issue.has_label("needs-human")
    assert _last_comment(service, issue_ref).result_code == "test_failed"


def test_worker_execution_failure_is_env_unavailable(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow()
    issue_ref = _claimed_issue(service, labels=["to:backend"])

    def crash(request: InvokeWorkerRequest) -> None:
        raise WorkerRunError("worker exited with code 2", transient=False)

    summary = _engine(service, repository, cache, crash).sync(workflow_file=workflow)

    assert (summary.blocked, summary.spawned) == (1, 1)
    comment = _last_comment(service, issue_ref)
    assert comment.result_code == "env_unavailable"
    assert comment.blocked_by == ["worker-execution"]
    assert not service.get_issue(issue_ref=issue_ref).has_label("needs-human")


def test_unparseable_result_flags_needs_human(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow()
    issue_ref = _claimed_issue(service, labels=["to:backend"])

    def broken_loader(context_pack_dir: Path) -> LoadedWorkResult:
        raise WorkResultError("work result json is invalid")

    _engine(service, repository, cache, FakeWorker(), result_loader=broken_loader).sync(
        workflow_file=workflow,
    )

    assert _run_comment(service, issue_ref).result_code == "output_unparseable"
    assert service.get_issue(issue_ref=issue_ref).has_label("needs-human")


class _FailingWorkdirManager:
    def prepare(self, *, role: str, issue_ref: str, run_id: str) -> Path:
        raise WorkdirError("git worktree add failed: fatal")

    def cleanup(self, *, role: str, issue_ref: str, run_id: str, workdir: Path) -> None:
        raise AssertionError("cleanup must not run after a failed prepare")


def test_workdir_prepare_failure_blocks_without_spawning(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow(extra=_WORKDIR_POLICY)
    issue_ref = _claimed_issue(service, labels=["to:backend"])
    worker = FakeWorker()

    summary = _engine(
        service,
        repository,
        cache,
        worker,
        workdir_factory=lambda config, profile, repo_dir: _FailingWorkdirManager(),
    ).sync(workflow_file=workflow)

    assert worker.calls == []
    assert (summary.blocked, summary.spawned) == (1, 0)
    comment = _last_comment(service, issue_ref)
    assert comment.result_code == "env_unavailable"
    assert comment.trigger.startswith("workdir:prepare:")


def test_subscriber_group_comments_without_touching_state(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow(
        groups="""\
[groups.qa]
role = "qa"
mode = "subscriber"
writeback = "comment-only"
listen_labels = ["to:qa"]
""",
    )
    issue_ref = _claimed_issue(service, labels=["to:qa"], assignee="dev")

    summary = _engine(service, repository, cache, FakeWorker()).sync(workflow_file=workflow, role="qa")

    assert summary.spawned == 1
    issue = service.get_issue(issue_ref=issue_ref)
    assert issue.state == "state:doing"
    assert not issue.has_label("qa:pass")
    assert _last_comment(service, issue_ref).summary[0].startswith("qa:pass; ")


def test_integrator_indexes_verdict_markers_into_labels(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow(
        groups='[groups.integrator]\nrole = "integrator"\nlisten_labels = ["state:review"]\n',
    )
    issue_ref = _claimed_issue(service, labels=["to:backend"], assignee="lead-integrator")
    for body in ("review:changes_requested; split it", "review:approved; lgtm", "qa:pass; green"):
        service.comment_issue(
            issue_ref=issue_ref,
            actor="bot",
            body=f"IssueRef: {issue_ref}\nSummary:\n- {body}\nChanges:\nTests:\nNext:\n- none\n",
        )
    service.add_issue_labels(issue_ref=issue_ref, actor="bot", labels=["review:changes_requested"])

    _engine(service, repository, cache, FakeWorker()).sync(workflow_file=workflow, role="integrator")

    labels = service.get_issue(issue_ref=issue_ref).labels
    assert "review:approved" in labels
    assert "qa:pass" in labels
    assert "review:changes_requested" not in labels


def test_run_issue_once_and_profile_errors(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow()
    issue_ref = _claimed_issue(service, labels=["to:backend"])
    worker = FakeWorker()
    engine = _engine(service, repository, cache, worker)

    outcome = engine.run_issue_once(workflow_file=workflow, issue_ref=issue_ref)
    assert (outcome.processed, outcome.spawned, outcome.blocked) == (True, True, False)

    skipped = engine.run_issue_once(workflow_file=workflow, issue_ref=issue_ref)
    assert not skipped.processed

    with pytest.raises(WorkflowConfigError, match="not enabled"):
        engine.sync(workflow_file=workflow, role="designer")
    with pytest.raises(WorkflowConfigError, match="group config"):
        engine.sync(workflow_file=workflow, role="qa")
    with pytest.raises(WorkflowConfigError, match="workdir is not enabled"):
        engine.cleanup_workdir(
            workflow_file=workflow,
            role="backend",
            issue_ref=issue_ref,
            run_id="2026-10-01-backend-0001",
        )


def test_verdict_markers_and_needs_human_codes() -> None:
    assert apply_verdict_marker("reviewer", "review", "", "looks fine") == "review:approved; looks fine"
    assert (
        apply_verdict_marker("reviewer", "review", "review_changes_requested", "x")
        == "review:changes_requested; x"
    )
    assert apply_verdict_marker("qa", "blocked", "ci_failed", "") == "qa:fail"
    assert apply_verdict_marker("qa", "review", "", "qa: already marked") == "qa: already marked"
    assert apply_verdict_marker("backend", "review", "", " done ") == "done"

    assert should_add_needs_human_for_result_code("permission_denied")
    assert not should_add_needs_human_for_result_code("test_failed")


def test_event_touched_issues_join_the_candidates(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow()
    frontend_ref = service.create_issue(title="ui", body="Build the form", labels=["to:frontend"])
    service.comment_issue(issue_ref=frontend_ref, actor="pm", body="mockups attached")
    worker = FakeWorker()

    summary = _engine(service, repository, cache, worker).sync(workflow_file=workflow)

    assert (summary.cursor_before, summary.cursor_after) == (0, 1)
    assert (summary.candidates, summary.processed, summary.skipped, summary.spawned) == (1, 0, 1, 0)
    assert worker.calls == []
    assert len(service.list_events(issue_ref=frontend_ref)) == 1


def test_dirty_workdir_keeps_evidence_and_flags_needs_human(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
    git_repo: Path,
) -> None:
    workflow = make_workflow(extra=_WORKDIR_POLICY)
    issue_ref = _claimed_issue(service, labels=["to:backend"])
    workdirs: list[Path] = []

    def leave_changes(request: InvokeWorkerRequest) -> None:
        workdir = Path(read_work_order(request.context_pack_dir / WORK_ORDER_FILE).repo_dir)
        (workdir / "scratch.txt").write_text("uncommitted\n", "utf-8")
        workdirs.append(workdir)

    summary = _engine(service, repository, cache, FakeWorker(on_invoke=leave_changes)).sync(
        workflow_file=workflow,
    )

    assert (summary.processed, summary.spawned, summary.blocked) == (1, 1, 1)
    assert workdirs[0] != git_repo
    assert (workdirs[0] / "scratch.txt").exists()
    issue = service.get_issue(issue_ref=issue_ref)
    assert issue.state == "state:blocked"
    assert issue.has_label("needs-human")
    comment = _run_comment(service, issue_ref)
    assert comment.result_code == "manual_intervention"
    assert comment.blocked_by == ["workdir-cleanup"]
    assert "workdir cleanup failed" in comment.summary[0]
    assert comment.changes.commit == "git:abc123"
    assert comment.tests.result == "pass"


def test_worker_failure_reports_cleanup_failure_in_the_same_comment(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
    tmp_path: Path,
) -> None:
    workflow = make_workflow(extra=_WORKDIR_POLICY)
    issue_ref = _claimed_issue(service, labels=["to:backend"])
    manager = _RecordingWorkdirManager(tmp_path / "sandboxes", cleanup_error="workdir is dirty")

    def crash(request: InvokeWorkerRequest) -> None:
        raise WorkerRunError("worker timed out", transient=True)

    summary = _engine(
        service,
        repository,
        cache,
        crash,
        workdir_factory=lambda config, profile, repo_dir: manager,
    ).sync(workflow_file=workflow)

    assert (summary.blocked, summary.spawned) == (1, 1)
    assert len(manager.cleaned) == 1
    runs = [event for event in service.list_events(issue_ref=issue_ref) if "Trigger: workrun:" in event.body]
    assert len(runs) == 1
    comment = parse_structured_comment(runs[0].body)
    assert comment.blocked_by == ["worker-execution", "workdir-cleanup"]
    assert comment.result_code == "manual_intervention"
    assert "worker timed out" in comment.summary[0]
    assert "workdir cleanup failed: workdir is dirty" in comment.summary[0]
    assert service.get_issue(issue_ref=issue_ref).has_label("needs-human")


def test_reviewer_changes_route_to_the_labelled_coding_role(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
) -> None:
    workflow = make_workflow(groups='[groups.reviewer]\nrole = "reviewer"\n')
    issue_ref = _claimed_issue(service, labels=["to:frontend"], assignee="lead-reviewer")

    summary = _engine(
        service,
        repository,
        cache,
        FakeWorker(result_code="review_changes_requested"),
    ).sync(workflow_file=workflow, role="reviewer")

    assert (summary.spawned, summary.blocked) == (1, 1)
    comment = _run_comment(service, issue_ref)
    assert comment.result_code == "review_changes_requested"
    assert comment.blocked_by == ["review-changes-requested"]
    assert comment.summary[0] == "review:changes_requested; review requested changes"
    assert comment.next_steps == ["@frontend address review changes and rerun"]
    issue = service.get_issue(issue_ref=issue_ref)
    assert issue.state == "state:blocked"
    assert issue.has_label("review:changes_requested")
    assert not issue.has_label("needs-human")


def test_manual_cleanup_ignores_the_configured_policy(
    service: OutboxService,
    repository: OutboxRepository,
    cache: SqliteKvCache,
    make_workflow: Callable[..., Path],
    git_repo: Path,
) -> None:
    workflow = make_workflow(extra=_WORKDIR_POLICY.replace('cleanup = "immediate"', 'cleanup = "on-close"'))
    engine = _engine(service, repository, cache, FakeWorker())

    removed = engine.cleanup_workdir(
        workflow_file=workflow,
        role="backend",
        issue_ref="local#7",
        run_id="2026-10-01-backend-0001",
    )

    assert removed == workflow.parent.resolve() / "sandboxes" / "backend" / "local_7" / "2026-10-01-backend-0001"
    assert not removed.exists()
