"""Pipeline step runners: execute one coding/review/test step and report a verdict."""

from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from outbox_flow.outbox.errors import CodexRunnerError
from outbox_flow.outbox.models import ResultCode
from outbox_flow.outbox.rules import first_non_empty, first_non_empty_line
from outbox_flow.outbox.workflow import DEFAULT_EXECUTOR_TIMEOUT_SECONDS, load_workflow_profile

logger = logging.getLogger(__name__)


class CodexRunMode(str, Enum):
    CODING = "coding"
    REVIEW = "review"
    TEST = "test"


_SUCCESS_SUMMARIES = {
    CodexRunMode.CODING: "coding completed",
    CodexRunMode.REVIEW: "review approved",
    CodexRunMode.TEST: "tests passed",
}
_FAILURE_CODES = {
    CodexRunMode.CODING: ResultCode.MANUAL_INTERVENTION.value,
    CodexRunMode.REVIEW: ResultCode.REVIEW_CHANGES_REQUESTED.value,
    CodexRunMode.TEST: ResultCode.CI_FAILED.value,
}
_DEFAULT_ROLES = {
    CodexRunMode.CODING: "backend",
    CodexRunMode.REVIEW: "reviewer",
    CodexRunMode.TEST: "qa",
}


@dataclass(slots=True)
class CodexRunInput:
    mode: CodexRunMode
    project_dir: str
    prompt_file: str
    issue_ref: str
    run_id: str
    role: str = ""


@dataclass(slots=True)
class CodexRunOutput:
    status: str = ""
    summary: str = ""
    result_code: str = ""
    commit: str = ""
    evidence: str = ""

    @property
    def passed(self) -> bool:
        return self.status.strip().lower() == "pass"


class CodexRunner(Protocol):
    def run(self, run_input: CodexRunInput) -> CodexRunOutput: ...


class NoopCodexRunner:
    """Placeholder used when no workflow is bound."""

    def run(self, run_input: CodexRunInput) -> CodexRunOutput:
        raise CodexRunnerError("codex runner is not configured")


class WorkflowCodexRunner:
    """Run the role's configured executor in the project directory.

    The executor reports on stdout as a JSON object
    `{status, summary, result_code, commit, evidence}`; missing fields are
    filled with per-mode defaults. Silence on exit 0 counts as a pass.
    """

    def __init__(self, workflow_file: Path | str = "workflow.toml") -> None:
        self.workflow_file = Path(str(workflow_file).strip() or "workflow.toml")

    def run(self, run_input: CodexRunInput) -> CodexRunOutput:
        profile = load_workflow_profile(self.workflow_file)
        role = run_input.role.strip() or _DEFAULT_ROLES[run_input.mode]
        executor = profile.resolve_executor(role)
        timeout = executor.timeout_seconds if executor.timeout_seconds > 0 else (
            DEFAULT_EXECUTOR_TIMEOUT_SECONDS
        )

        env = os.environ.copy()
        env.update(
            {
                "OUTBOX_FLOW_CODEX_MODE": run_input.mode.value,
                "OUTBOX_FLOW_CODEX_ROLE": role,
                "OUTBOX_FLOW_CODEX_ISSUE_REF": run_input.issue_ref.strip(),
                "OUTBOX_FLOW_CODEX_PROMPT_FILE": run_input.prompt_file.strip(),
                "OUTBOX_FLOW_CODEX_RUN_ID": run_input.run_id.strip(),
                "OUTBOX_FLOW_RUN_ID": run_input.run_id.strip(),
            },
        )
        logger.info(
            "Codex step started: mode=%s role=%s issue=%s run=%s",
            run_input.mode.value,
            role,
            run_input.issue_ref,
            run_input.run_id,
        )
        try:
            completed = subprocess.run(  # noqa: S603
                [executor.program, *executor.args],
                cwd=run_input.project_dir.strip() or ".",
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Codex step timed out after %ss: run=%s", timeout, run_input.run_id)
            return CodexRunOutput(
                status="fail",
                summary="codex executor timed out",
                result_code=ResultCode.ENV_UNAVAILABLE.value,
                evidence=default_codex_evidence(run_input.mode, run_input.run_id),
            )
        except OSError as error:
            raise CodexRunnerError(f"codex executor failed to start: {error}") from error

        failed = completed.returncode != 0
        raw = completed.stdout.strip()
        if raw:
            try:
                parsed = parse_codex_result(raw)
            except CodexRunnerError:
                if not failed:
                    raise
            else:
                return normalize_codex_output(
                    parsed,
                    run_input,
                    failed=failed,
                    stderr=completed.stderr,
                    exit_code=completed.returncode,
                )

        if failed:
            return CodexRunOutput(
                status="fail",
                summary=first_non_empty(
                    first_non_empty_line(completed.stderr),
                    f"exit status {completed.returncode}",
                ),
                result_code=_FAILURE_CODES[run_input.mode],
                evidence=default_codex_evidence(run_input.mode, run_input.run_id),
            )
        return CodexRunOutput(
            status="pass",
            summary=_SUCCESS_SUMMARIES[run_input.mode],
            result_code="none",
            evidence=default_codex_evidence(run_input.mode, run_input.run_id),
        )


def parse_codex_result(raw: str) -> CodexRunOutput:
    text = raw.strip()
    if not text:
        raise CodexRunnerError("codex result is empty")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise CodexRunnerError(f"parse codex result: {error}") from error
    if not isinstance(payload, dict):
        raise CodexRunnerError("parse codex result: expected a JSON object")
    return CodexRunOutput(
        status=str(payload.get("status") or ""),
        summary=str(payload.get("summary") or ""),
        result_code=str(payload.get("result_code") or ""),
        commit=str(payload.get("commit") or ""),
        evidence=str(payload.get("evidence") or ""),
    )


def normalize_codex_output(
    output: CodexRunOutput,
    run_input: CodexRunInput,
    *,
    failed: bool,
    stderr: str = "",
    exit_code: int = 0,
) -> CodexRunOutput:
    status = output.status.strip().lower() or ("fail" if failed else "pass")
    summary = output.summary.strip()
    if not summary:
        if status == "pass":
            summary = _SUCCESS_SUMMARIES[run_input.mode]
        else:
            summary = first_non_empty(
                first_non_empty_line(stderr),
                f"exit status {exit_code}" if failed else "",
                "codex step failed",
            )
    result_code = output.result_code.strip() or (
        "none" if status == "pass" else _FAILURE_CODES[run_input.mode]
    )
    return CodexRunOutput(
        status=status,
        summary=summary,
        result_code=result_code,
        commit=output.commit.strip(),
        evidence=output.evidence.strip() or default_codex_evidence(run_input.mode, run_input.run_id),
    )


def default_codex_evidence(mode: CodexRunMode, run_id: str) -> str:
    run_id = run_id.strip()
    if not run_id:
        return f"codex://{mode.value}"
    return f"codex://{mode.value}/{run_id}"
