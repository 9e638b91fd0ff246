"""Pipeline Orchestrator: coding -> review -> test rounds over a codex runner.

Every step verdict is recorded through Quality Event Ingestion, so the
issue timeline carries the same markers a webhook would produce. The loop
ends in exactly one of two places: ready-to-merge (review and tests passed
and the Merge Gate agrees) or manual intervention (`needs-human` plus
`state:blocked`).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from outbox_flow.outbox.codex_runner import CodexRunInput, CodexRunMode, CodexRunner, CodexRunOutput
from outbox_flow.outbox.errors import CodexRunnerError, OutboxValidationError
from outbox_flow.outbox.merge_gate import can_merge
from outbox_flow.outbox.models import IssueState, ResultCode
from outbox_flow.outbox.payload import (
    CATEGORY_CI,
    CATEGORY_REVIEW,
    RESULT_APPROVED,
    RESULT_CHANGES_REQUESTED,
    RESULT_FAIL,
    RESULT_PASS,
)
from outbox_flow.outbox.quality import QualityEventInput, QualityService
from outbox_flow.outbox.rules import NEEDS_HUMAN_LABEL, QA_PASS_LABEL, REVIEW_APPROVED_LABEL, first_non_empty
from outbox_flow.outbox.service import OutboxService

logger = logging.getLogger(__name__)

DEFAULT_CODING_ROLE = "backend"
DEFAULT_MAX_REVIEW_ROUND = 3
DEFAULT_MAX_TEST_ROUND = 3
PIPELINE_SOURCE = "codex-pipeline"
PIPELINE_LEAD_ACTOR = "lead-pipeline"
PIPELINE_REVIEW_ACTOR = "codex-reviewer"
PIPELINE_QA_ACTOR = "codex-qa"


@dataclass(slots=True)
class PipelineRequest:
    issue_ref: str
    project_dir: str
    prompt_file: str
    coding_role: str = DEFAULT_CODING_ROLE
    max_review_round: int = DEFAULT_MAX_REVIEW_ROUND
    max_test_round: int = DEFAULT_MAX_TEST_ROUND


@dataclass(slots=True)
class PipelineResult:
    issue_ref: str
    rounds: int = 0
    ready_to_merge: bool = False
    last_result: str = "pipeline started"
    last_result_code: str = "none"


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        service: OutboxService,
        quality: QualityService,
        runner: CodexRunner,
        execution_id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.service = service
        self.quality = quality
        self.runner = runner
        self._execution_id_factory = execution_id_factory or new_execution_id

    def run(self, request: PipelineRequest) -> PipelineResult:  # noqa: C901
        request = normalize_pipeline_request(request)
        self.service.get_issue(issue_ref=request.issue_ref)

        result = PipelineResult(issue_ref=request.issue_ref)
        execution_id = self._execution_id_factory()
        review_failures = 0
        test_failures = 0
        seq = {mode: 0 for mode in CodexRunMode}

        while True:
            result.rounds += 1

            coding = self._run_step(request, CodexRunMode.CODING, request.coding_role, execution_id, seq)
            if isinstance(coding, str):
                return self._manual_intervention(result, f"coding step failed: {coding}")
            _, coding_out = coding
            if not coding_out.passed:
                reason = first_non_empty(coding_out.summary, "coding step did not pass")
                code = coding_out.result_code.strip()
                if code and code != "none":
                    reason = f"{reason} ({code})"
                return self._manual_intervention(result, reason)

            review = self._run_step(request, CodexRunMode.REVIEW, "reviewer", execution_id, seq)
            if isinstance(review, str):
                return self._manual_intervention(result, f"review step failed: {review}")
            review_run_id, review_out = review
            if not review_out.passed:
                review_failures += 1
                summary = first_non_empty(review_out.summary, "review changes requested")
                self._ingest(
                    request,
                    execution_id=execution_id,
                    run_id=review_run_id,
                    category=CATEGORY_REVIEW,
                    result=RESULT_CHANGES_REQUESTED,
                    actor=PIPELINE_REVIEW_ACTOR,
                    summary=summary,
                    evidence=[
                        first_non_empty(review_out.evidence, f"codex://review/{review_run_id}"),
                    ],
                )
                if review_failures > request.max_review_round:
                    return self._manual_intervention(
                        result,
                        f"review exceeded max rounds ({request.max_review_round})",
                    )
                result.last_result = summary
                result.last_result_code = first_non_empty(
                    review_out.result_code,
                    ResultCode.REVIEW_CHANGES_REQUESTED.value,
                )
                continue

            self._ingest(
                request,
                execution_id=execution_id,
                run_id=review_run_id,
                category=CATEGORY_REVIEW,
                result=RESULT_APPROVED,
                actor=PIPELINE_REVIEW_ACTOR,
                summary=first_non_empty(review_out.summary, "review approved"),
                evidence=[review_out.evidence] if review_out.evidence.strip() else [],
            )
            self.service.add_issue_labels(
                issue_ref=request.issue_ref,
                actor=PIPELINE_LEAD_ACTOR,
                labels=[REVIEW_APPROVED_LABEL],
            )

            test = self._run_step(request, CodexRunMode.TEST, "qa", execution_id, seq)
            if isinstance(test, str):
                return self._manual_intervention(result, f"test step failed: {test}")
            test_run_id, test_out = test
            if test_out.passed:
                self._ingest(
                    request,
                    execution_id=execution_id,
                    run_id=test_run_id,
                    category=CATEGORY_CI,
                    result=RESULT_PASS,
                    actor=PIPELINE_QA_ACTOR,
                    summary=first_non_empty(test_out.summary, "ci checks passed"),
                    evidence=[test_out.evidence] if test_out.evidence.strip() else [],
                )
                self.service.add_issue_labels(
                    issue_ref=request.issue_ref,
                    actor=PIPELINE_LEAD_ACTOR,
                    labels=[QA_PASS_LABEL],
                )
                ready, reason = can_merge(self.service, issue_ref=request.issue_ref)
                if not ready:
                    return self._manual_intervention(
                        result,
                        first_non_empty(reason, "merge gate not ready"),
                    )
                result.ready_to_merge = True
                result.last_result = "ready_to_merge"
                result.last_result_code = "none"
                logger.info("Pipeline ready to merge: %s rounds=%d", request.issue_ref, result.rounds)
                return result

            test_failures += 1
            summary = first_non_empty(test_out.summary, "ci checks failed")
            self._ingest(
                request,
                execution_id=execution_id,
                run_id=test_run_id,
                category=CATEGORY_CI,
                result=RESULT_FAIL,
                actor=PIPELINE_QA_ACTOR,
                summary=summary,
                evidence=[first_non_empty(test_out.evidence, f"codex://test/{test_run_id}")],
            )
            if test_failures > request.max_test_round:
                return self._manual_intervention(
                    result,
                    f"test exceeded max rounds ({request.max_test_round})",
                )
            result.last_result = summary
            result.last_result_code = first_non_empty(test_out.result_code, ResultCode.CI_FAILED.value)

    def _run_step(
        self,
        request: PipelineRequest,
        mode: CodexRunMode,
        role: str,
        execution_id: str,
        seq: dict[CodexRunMode, int],
    ) -> tuple[str, CodexRunOutput] | str:
        """Return `(run_id, output)`, or the error text when the runner itself failed."""

        seq[mode] += 1
        run_id = pipeline_run_id(execution_id, mode, seq[mode])
        try:
            output = self.runner.run(
                CodexRunInput(
                    mode=mode,
                    role=role,
                    project_dir=request.project_dir,
                    prompt_file=request.prompt_file,
                    issue_ref=request.issue_ref,
                    run_id=run_id,
                ),
            )
        except CodexRunnerError as error:
            logger.warning("Codex %s step failed for %s: %s", mode.value, request.issue_ref, error)
            return str(error)
        return run_id, output

    def _ingest(  # noqa: PLR0913
        self,
        request: PipelineRequest,
        *,
        execution_id: str,
        run_id: str,
        category: str,
        result: str,
        actor: str,
        summary: str,
        evidence: list[str],
    ) -> None:
        self.quality.ingest(
            QualityEventInput(
                issue_ref=request.issue_ref,
                source=PIPELINE_SOURCE,
                external_event_id=f"pipeline:{execution_id}:{category}:{run_id}",
                category=category,
                result=result,
                actor=actor,
                summary=summary,
                evidence=evidence,
                idempotency_key=f"pipeline:{request.issue_ref}:{execution_id}:{category}:{run_id}",
            ),
        )

    def _manual_intervention(self, result: PipelineResult, reason: str) -> PipelineResult:
        self.service.add_issue_labels(
            issue_ref=result.issue_ref,
            actor=PIPELINE_LEAD_ACTOR,
            labels=[NEEDS_HUMAN_LABEL, IssueState.BLOCKED.label],
        )
        result.ready_to_merge = False
        result.last_result = first_non_empty(reason, "manual intervention required")
        result.last_result_code = ResultCode.MANUAL_INTERVENTION.value
        logger.warning("Pipeline needs manual intervention: %s (%s)", result.issue_ref, result.last_result)
        return result


def normalize_pipeline_request(request: PipelineRequest) -> PipelineRequest:
    issue_ref = request.issue_ref.strip()
    project_dir = request.project_dir.strip()
    prompt_file = request.prompt_file.strip()
    if not issue_ref:
        raise OutboxValidationError("issue ref is required")
    if not project_dir:
        raise OutboxValidationError("project dir is required")
    if not prompt_file:
        raise OutboxValidationError("prompt file is required")
    return PipelineRequest(
        issue_ref=issue_ref,
        project_dir=project_dir,
        prompt_file=prompt_file,
        coding_role=request.coding_role.strip() or DEFAULT_CODING_ROLE,
        max_review_round=(
            request.max_review_round if request.max_review_round > 0 else DEFAULT_MAX_REVIEW_ROUND
        ),
        max_test_round=request.max_test_round if request.max_test_round > 0 else DEFAULT_MAX_TEST_ROUND,
    )


def pipeline_run_id(execution_id: str, mode: CodexRunMode, seq: int) -> str:
    return f"pipeline-{execution_id.strip() or 'run-unknown'}-{mode.value}-{seq:03d}"


def new_execution_id() -> str:
    return f"run-{time.time_ns()}"
