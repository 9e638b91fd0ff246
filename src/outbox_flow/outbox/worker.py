"""Worker process boundary: lead-side invocation and the worker-side run.

The lead re-invokes this program as `worker run --context-pack <dir>
--workflow <file>`. The only interop surface is the context pack plus the
process exit code.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol

from outbox_flow.outbox.contracts import (
    STDERR_LOG_FILE,
    STDOUT_LOG_FILE,
    WORK_AUDIT_FILE,
    WORK_ORDER_FILE,
    WORK_RESULT_JSON_FILE,
    WORK_RESULT_TEXT_FILE,
    read_work_order,
    work_result_status,
    write_json,
    write_work_result_json,
    write_work_result_text,
)
from outbox_flow.outbox.models import ResultCode, WorkChanges, WorkResult, WorkTests
from outbox_flow.outbox.workflow import load_workflow_profile
from outbox_flow.storage.common import utc_now

logger = logging.getLogger(__name__)

WORKER_STDOUT_LOG_FILE = "worker_stdout.log"
WORKER_STDERR_LOG_FILE = "worker_stderr.log"
TIMEOUT_EXIT_CODE = 124


class WorkerRunError(RuntimeError):
    """Worker subprocess error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class InvokeWorkerRequest:
    """One lead-to-worker dispatch."""

    workflow_file: Path
    context_pack_dir: Path
    issue_ref: str
    run_id: str
    role: str
    timeout_seconds: int
    executable: tuple[str, ...] = ()


@dataclass(slots=True)
class ProcessRunResult:
    exit_code: int
    timed_out: bool


class WorkerInvoker(Protocol):
    def __call__(self, request: InvokeWorkerRequest) -> None: ...


def default_worker_executable() -> tuple[str, ...]:
    return (sys.executable, "-m", "outbox_flow.main")


def invoke_worker(request: InvokeWorkerRequest) -> None:
    """Run the worker subprocess; raise `WorkerRunError` unless it exits cleanly."""

    argv = [
        *(request.executable or default_worker_executable()),
        "worker",
        "run",
        "--context-pack",
        str(request.context_pack_dir),
        "--workflow",
        str(request.workflow_file),
    ]

    env = os.environ.copy()
    env["OUTBOX_FLOW_CONTEXT_PACK"] = str(request.context_pack_dir)
    env["OUTBOX_FLOW_ISSUE_REF"] = request.issue_ref
    env["OUTBOX_FLOW_RUN_ID"] = request.run_id
    env["OUTBOX_FLOW_ROLE"] = request.role

    request.context_pack_dir.mkdir(parents=True, exist_ok=True)
    logger.info(
        "Invoking worker: issue=%s run=%s role=%s",
        request.issue_ref,
        request.run_id,
        request.role,
    )
    try:
        with (
            (request.context_pack_dir / WORKER_STDOUT_LOG_FILE).open("w", encoding="utf-8") as out,
            (request.context_pack_dir / WORKER_STDERR_LOG_FILE).open("w", encoding="utf-8") as err,
        ):
            outcome = run_subprocess_with_timeout(
                run_args=argv,
                env=env,
                cwd=None,
                timeout_seconds=request.timeout_seconds,
                stdout_handle=out,
                stderr_handle=err,
            )
    except FileNotFoundError as error:
        raise WorkerRunError(f"worker command not found: {argv[0]}", transient=False) from error
    except OSError as error:
        raise WorkerRunError(f"worker failed to start: {error}", transient=True) from error

    if outcome.timed_out:
        raise WorkerRunError(
            f"worker timed out after {request.timeout_seconds}s",
            transient=True,
        )
    if outcome.exit_code != 0:
        raise WorkerRunError(f"worker exited with code {outcome.exit_code}", transient=False)


def run_worker(*, context_pack_dir: Path, workflow_file: Path) -> WorkResult:
    """Execute the role's executor for the order in `context_pack_dir` and write results."""

    order = read_work_order(context_pack_dir / WORK_ORDER_FILE)
    profile = load_workflow_profile(workflow_file)
    executor = profile.resolve_executor(order.role)

    started_at = utc_now()
    command_text = " ".join([executor.program, *executor.args])
    result = WorkResult(
        issue_ref=order.issue_ref,
        run_id=order.run_id,
        changes=WorkChanges(pr="none", commit=resolve_git_commit(Path(order.repo_dir)) or "none"),
        tests=WorkTests(command=command_text, result="pass", evidence="none"),
    )

    try:
        with (
            (context_pack_dir / STDOUT_LOG_FILE).open("w", encoding="utf-8") as out,
            (context_pack_dir / STDERR_LOG_FILE).open("w", encoding="utf-8") as err,
        ):
            outcome = run_subprocess_with_timeout(
                run_args=[executor.program, *executor.args],
                env=os.environ.copy(),
                cwd=Path(order.repo_dir),
                timeout_seconds=executor.timeout_seconds,
                stdout_handle=out,
                stderr_handle=err,
            )
    except OSError as error:
        logger.warning("Executor %s failed to start: %s", executor.program, error)
        outcome = ProcessRunResult(exit_code=-1, timed_out=False)

    if outcome.timed_out:
        result.tests.result = "fail"
        result.result_code = ResultCode.ENV_UNAVAILABLE.value
        result.summary = "executor timed out"
    elif outcome.exit_code != 0:
        result.tests.result = "fail"
        result.result_code = ResultCode.TEST_FAILED.value
        result.summary = "executor failed"
    else:
        result.summary = "executor ok"
    result.status = work_result_status(result)

    write_json(
        context_pack_dir / WORK_AUDIT_FILE,
        {
            "IssueRef": order.issue_ref,
            "RunID": order.run_id,
            "Role": order.role,
            "ExecutorProgram": executor.program,
            "ExecutorArgs": list(executor.args),
            "TimeoutSeconds": executor.timeout_seconds,
            "StartedAt": started_at.isoformat(),
            "FinishedAt": utc_now().isoformat(),
            "ExitCode": outcome.exit_code,
            "TimedOut": outcome.timed_out,
            "StdoutPath": STDOUT_LOG_FILE,
            "StderrPath": STDERR_LOG_FILE,
            "WorkResultSource": "json+text",
            "WorkResultJSON": WORK_RESULT_JSON_FILE,
            "WorkResultText": WORK_RESULT_TEXT_FILE,
        },
    )
    write_work_result_json(context_pack_dir / WORK_RESULT_JSON_FILE, result)
    write_work_result_text(context_pack_dir / WORK_RESULT_TEXT_FILE, result)
    logger.info(
        "Worker run finished: issue=%s run=%s status=%s exit_code=%d",
        order.issue_ref,
        order.run_id,
        result.status,
        outcome.exit_code,
    )
    return result


def resolve_git_commit(repo_dir: Path) -> str:
    """Return `git:<sha>` for HEAD, or "" when it cannot be resolved."""

    try:
        completed = subprocess.run(  # noqa: S603
            ["git", "-C", str(repo_dir), "rev-parse", "HEAD"],  # noqa: S607
            capture_output=True,
            text=True,
            timeout=30,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return ""
    sha = completed.stdout.strip()
    if completed.returncode != 0 or not sha:
        return ""
    return f"git:{sha}"


def run_subprocess_with_timeout(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path | None,
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
) -> ProcessRunResult:
    """Wait for the process under a deadline; an interrupt while waiting terminates it and propagates."""

    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()

    try:
        while True:
            returncode = process.poll()
            if returncode is not None:
                return ProcessRunResult(exit_code=returncode, timed_out=False)

            if time.monotonic() - start_monotonic >= timeout_seconds:
                _terminate_process(process)
                return ProcessRunResult(exit_code=TIMEOUT_EXIT_CODE, timed_out=True)

            time.sleep(0.1)
    except BaseException:
        _terminate_process(process)
        raise


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
