from __future__ import annotations

import allure
import pytest

from outbox_flow.outbox.codex_runner import CodexRunInput, CodexRunMode, CodexRunOutput
from outbox_flow.outbox.errors import CodexRunnerError, IssueNotFoundError, OutboxValidationError
from outbox_flow.outbox.pipeline import (
    PipelineOrchestrator,
    PipelineRequest,
    normalize_pipeline_request,
    pipeline_run_id,
)
from outbox_flow.outbox.quality import QualityService
from outbox_flow.outbox.repository import OutboxRepository
from outbox_flow.outbox.service import OutboxService

pytestmark = [
    allure.epic("Quality Gate"),
    allure.feature("Pipeline Orchestrator"),
]

PASS = CodexRunOutput(status="pass", summary="", result_code="none", evidence="log://ok")
FAIL = CodexRunOutput(status="fail", summary="needs tests", result_code="", evidence="")


class ScriptedRunner:
    """Replay canned outputs per mode and record every call."""

    def __init__(self, script: dict[CodexRunMode, list[CodexRunOutput | Exception]]) -> None:
        self.script = {mode: list(outputs) for mode, outputs in script.items()}
        self.calls: list[CodexRunInput] = []

    def run(self, run_input: CodexRunInput) -> CodexRunOutput:
        self.calls.append(run_input)
        outputs = self.script[run_input.mode]
        item = outputs.pop(0) if len(outputs) > 1 else outputs[0]
        if isinstance(item, Exception):
            raise item
        return item


def _orchestrator(
    service: OutboxService,
    repository: OutboxRepository,
    runner: ScriptedRunner,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        service=service,
        quality=QualityService(repository=repository),
        runner=runner,
        execution_id_factory=lambda: "exec",
    )


def _request(issue_ref: str, **overrides: object) -> PipelineRequest:
    request = PipelineRequest(issue_ref=issue_ref, project_dir="/work/app", prompt_file="prompt.md")
    for key, value in overrides.items():
        setattr(request, key, value)
    return request


def test_review_round_trip_reaches_ready_to_merge(service: OutboxService, repository: OutboxRepository) -> None:
    issue_ref = service.create_issue(title="t", body="b", labels=["to:frontend"])
    runner = ScriptedRunner(
        {
            CodexRunMode.CODING: [PASS],
            CodexRunMode.REVIEW: [FAIL, PASS],
            CodexRunMode.TEST: [PASS],
        },
    )

    result = _orchestrator(service, repository, runner).run(_request(issue_ref, coding_role="frontend"))

    assert result.ready_to_merge
    assert result.rounds == 2
    assert (result.last_result, result.last_result_code) == ("ready_to_merge", "none")
    assert [(call.mode, call.role) for call in runner.calls] == [
        (CodexRunMode.CODING, "frontend"),
        (CodexRunMode.REVIEW, "reviewer"),
        (CodexRunMode.CODING, "frontend"),
        (CodexRunMode.REVIEW, "reviewer"),
        (CodexRunMode.TEST, "qa"),
    ]
    assert runner.calls[3].run_id == "pipeline-exec-review-002"

    quality = QualityService(repository=repository)
    assert quality.quality_stats(issue_ref=issue_ref) == [
        ("ci", "pass", 1),
        ("review", "approved", 1),
        ("review", "changes_requested", 1),
    ]
    issue = service.get_issue(issue_ref=issue_ref)
    assert issue.has_label("review:approved")
    assert issue.has_label("qa:pass")
    assert not issue.has_label("needs-human")


def test_review_rounds_exhausted_needs_human(service: OutboxService, repository: OutboxRepository) -> None:
    issue_ref = service.create_issue(title="t", body="b")
    runner = ScriptedRunner({CodexRunMode.CODING: [PASS], CodexRunMode.REVIEW: [FAIL], CodexRunMode.TEST: [PASS]})

    result = _orchestrator(service, repository, runner).run(_request(issue_ref, max_review_round=1))

    assert not result.ready_to_merge
    assert result.rounds == 2
    assert result.last_result == "review exceeded max rounds (1)"
    assert result.last_result_code == "manual_intervention"
    issue = service.get_issue(issue_ref=issue_ref)
    assert issue.has_label("needs-human")
    assert issue.state == "state:blocked"


def test_failed_tests_retry_until_budget(service: OutboxService, repository: OutboxRepository) -> None:
    issue_ref = service.create_issue(title="t", body="b")
    runner = ScriptedRunner({CodexRunMode.CODING: [PASS], CodexRunMode.REVIEW: [PASS], CodexRunMode.TEST: [FAIL]})

    result = _orchestrator(service, repository, runner).run(_request(issue_ref, max_test_round=2))

    assert result.rounds == 3
    assert result.last_result == "test exceeded max rounds (2)"
    stats = {(category, outcome): count for category, outcome, count in QualityService(repository=repository).quality_stats()}
    assert stats[("ci", "fail")] == 3


def test_coding_failure_and_runner_errors_stop_immediately(
    service: OutboxService,
    repository: OutboxRepository,
) -> None:
    first = service.create_issue(title="t", body="b")
    failing = CodexRunOutput(status="fail", summary="compile error", result_code="test_failed")
    result = _orchestrator(
        service,
        repository,
        ScriptedRunner({CodexRunMode.CODING: [failing]}),
    ).run(_request(first))
    assert result.last_result == "compile error (test_failed)"
    assert result.last_result_code == "manual_intervention"

    second = service.create_issue(title="t", body="b")
    broken = ScriptedRunner(
        {
            CodexRunMode.CODING: [PASS],
            CodexRunMode.REVIEW: [CodexRunnerError("executor missing")],
        },
    )
    result = _orchestrator(service, repository, broken).run(_request(second))
    assert result.last_result == "review step failed: executor missing"
    assert service.get_issue(issue_ref=second).has_label("needs-human")


def test_request_validation(service: OutboxService, repository: OutboxRepository) -> None:
    normalized = normalize_pipeline_request(
        PipelineRequest(
            issue_ref=" local#1 ",
            project_dir=" . ",
            prompt_file="p.md",
            coding_role=" ",
            max_review_round=0,
            max_test_round=-1,
        ),
    )
    assert (normalized.issue_ref, normalized.coding_role) == ("local#1", "backend")
    assert (normalized.max_review_round, normalized.max_test_round) == (3, 3)

    with pytest.raises(OutboxValidationError, match="prompt file is required"):
        normalize_pipeline_request(PipelineRequest(issue_ref="local#1", project_dir=".", prompt_file=""))

    runner = ScriptedRunner({CodexRunMode.CODING: [PASS]})
    with pytest.raises(IssueNotFoundError):
        _orchestrator(service, repository, runner).run(_request("local#77"))
    assert runner.calls == []

    assert pipeline_run_id(" ", CodexRunMode.TEST, 4) == "pipeline-run-unknown-test-004"
