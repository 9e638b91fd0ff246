from __future__ import annotations

import json
import os
import subprocess
import sys
import time
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace

import allure
import pytest

from outbox_flow.outbox import worker as worker_module
from outbox_flow.outbox.contracts import (
    LINKS_FILE,
    SPEC_SNAPSHOT_FILE,
    STDOUT_LOG_FILE,
    WORK_AUDIT_FILE,
    WORK_ORDER_FILE,
    WORK_RESULT_JSON_FILE,
    WORK_RESULT_TEXT_FILE,
    has_required_evidence,
    load_work_result,
    prepare_context_pack,
    read_work_order,
    validate_work_result_echo,
)
from outbox_flow.outbox.errors import OutboxValidationError, WorkResultError
from outbox_flow.outbox.models import WorkChanges, WorkOrder, WorkResult, WorkTests
from outbox_flow.outbox.worker import (
    InvokeWorkerRequest,
    WorkerRunError,
    invoke_worker,
    run_subprocess_with_timeout,
    run_worker,
)

pytestmark = [
    allure.epic("Lead Runtime"),
    allure.feature("Worker Contracts"),
]

_RUN_ID = "2026-10-01-backend-0001"


def _order(repo_dir: Path) -> WorkOrder:
    return WorkOrder(issue_ref="local#5", run_id=_RUN_ID, role="backend", repo_dir=str(repo_dir))


def test_prepare_context_pack_writes_order_spec_and_links(tmp_path: Path) -> None:
    pack = tmp_path / "pack"
    order = _order(tmp_path)

    prepare_context_pack(pack, order=order, spec_snapshot="## Goal\nShip", read_up_to=17)

    assert read_work_order(pack / WORK_ORDER_FILE) == order
    assert (pack / SPEC_SNAPSHOT_FILE).read_text("utf-8") == "## Goal\nShip"
    assert (pack / LINKS_FILE).read_text("utf-8") == "IssueRef: local#5\nReadUpTo: e17\n"


def test_work_order_validation_rejects_bad_run_id(tmp_path: Path) -> None:
    path = tmp_path / WORK_ORDER_FILE
    path.write_text(
        json.dumps({"IssueRef": "local#5", "RunID": "run-1", "Role": "backend", "RepoDir": "."}),
        "utf-8",
    )

    with pytest.raises(OutboxValidationError, match="invalid run id"):
        read_work_order(path)


def test_load_work_result_prefers_json_and_accepts_snake_case(tmp_path: Path) -> None:
    (tmp_path / WORK_RESULT_JSON_FILE).write_text(
        json.dumps(
            {
                "issue_ref": "local#5",
                "run_id": _RUN_ID,
                "summary": "done",
                "result_code": "none",
                "changes": {"commit": "git:abc"},
                "tests": {"command": "pytest", "result": "pass"},
            },
        ),
        "utf-8",
    )
    (tmp_path / WORK_RESULT_TEXT_FILE).write_text("IssueRef: local#9\nRunId: other\n", "utf-8")

    loaded = load_work_result(tmp_path)

    assert loaded.source == "json"
    assert loaded.result.issue_ref == "local#5"
    assert loaded.result.result_code == ""
    assert loaded.result.changes.pr == "none"
    assert loaded.result.status == "ok"
    assert has_required_evidence(loaded.result)


def test_load_work_result_text_defaults_failure_code(tmp_path: Path) -> None:
    (tmp_path / WORK_RESULT_TEXT_FILE).write_text(
        "\n".join(
            [
                "IssueRef: local#5",
                f"RunId: {_RUN_ID}",
                "Status: fail",
                "Summary: tests broke",
                "Commit: git:abc",
                "Tests: pytest => fail",
                "",
                "Notes:",
                "- ResultCode: ignored after blank line",
            ],
        ),
        "utf-8",
    )

    loaded = load_work_result(tmp_path)

    assert loaded.source == "text"
    assert loaded.result.result_code == "test_failed"
    assert loaded.result.tests.command == "pytest"
    assert loaded.result.tests.result == "fail"


def test_load_work_result_falls_back_to_logs(tmp_path: Path) -> None:
    prepare_context_pack(tmp_path, order=_order(tmp_path), spec_snapshot="s", read_up_to=0)
    (tmp_path / STDOUT_LOG_FILE).write_text("ok\n", "utf-8")

    loaded = load_work_result(tmp_path)

    assert loaded.source == "logs"
    assert loaded.result.run_id == _RUN_ID
    assert loaded.result.tests.evidence == STDOUT_LOG_FILE
    assert not has_required_evidence(loaded.result)


def test_invalid_result_inputs_raise(tmp_path: Path) -> None:
    with pytest.raises(WorkResultError, match="work order not found"):
        load_work_result(tmp_path)

    (tmp_path / WORK_RESULT_JSON_FILE).write_text("{not json", "utf-8")
    with pytest.raises(WorkResultError, match="invalid"):
        load_work_result(tmp_path)

    (tmp_path / WORK_RESULT_JSON_FILE).write_text(
        json.dumps({"IssueRef": "local#5", "RunID": _RUN_ID, "ResultCode": "exploded"}),
        "utf-8",
    )
    with pytest.raises(WorkResultError, match="invalid result code"):
        load_work_result(tmp_path)


def test_echo_validation_catches_identity_mismatch(tmp_path: Path) -> None:
    order = _order(tmp_path)
    validate_work_result_echo(order, WorkResult(issue_ref="local#5", run_id=_RUN_ID))

    with pytest.raises(WorkResultError, match="issue_ref mismatch"):
        validate_work_result_echo(order, WorkResult(issue_ref="local#6", run_id=_RUN_ID))
    with pytest.raises(WorkResultError, match="run_id mismatch"):
        validate_work_result_echo(order, WorkResult(issue_ref="local#5", run_id="2026-10-01-backend-0002"))


def test_required_evidence_needs_change_and_tests_result() -> None:
    assert has_required_evidence(
        WorkResult(issue_ref="local#1", run_id=_RUN_ID, changes=WorkChanges(pr="#12")),
    )
    assert not has_required_evidence(WorkResult(issue_ref="local#1", run_id=_RUN_ID))
    assert not has_required_evidence(
        WorkResult(
            issue_ref="local#1",
            run_id=_RUN_ID,
            changes=WorkChanges(commit="git:abc"),
            tests=WorkTests(result=" "),
        ),
    )


def _executor_workflow(make_workflow: Callable[..., Path], script: str) -> Path:
    return make_workflow(
        extra=f"""\
[executors.backend]
program = '{sys.executable}'
args = ['-c', '{script}']
timeout_seconds = 30
""",
    )


def test_run_worker_writes_results_and_audit(make_workflow: Callable[..., Path], tmp_path: Path) -> None:
    workflow = _executor_workflow(make_workflow, 'print("executor ran")')
    pack = tmp_path / "pack"
    prepare_context_pack(pack, order=_order(tmp_path / "repo"), spec_snapshot="s", read_up_to=0)

    result = run_worker(context_pack_dir=pack, workflow_file=workflow)

    assert result.status == "ok"
    assert result.summary == "executor ok"
    assert (pack / STDOUT_LOG_FILE).read_text("utf-8").strip() == "executor ran"
    audit = json.loads((pack / WORK_AUDIT_FILE).read_text("utf-8"))
    assert audit["ExitCode"] == 0
    assert audit["RunID"] == _RUN_ID
    loaded = load_work_result(pack)
    assert loaded.source == "json"
    assert loaded.result.tests.result == "pass"


def test_run_worker_reports_executor_failure(make_workflow: Callable[..., Path], tmp_path: Path) -> None:
    workflow = _executor_workflow(make_workflow, "import sys; sys.exit(3)")
    pack = tmp_path / "pack"
    prepare_context_pack(pack, order=_order(tmp_path / "repo"), spec_snapshot="s", read_up_to=0)

    result = run_worker(context_pack_dir=pack, workflow_file=workflow)

    assert result.status == "fail"
    assert result.result_code == "test_failed"
    assert load_work_result(pack).result.result_code == "test_failed"


def _invoke(tmp_path: Path, script: str, timeout_seconds: int = 30) -> None:
    invoke_worker(
        InvokeWorkerRequest(
            workflow_file=tmp_path / "workflow.toml",
            context_pack_dir=tmp_path / "pack",
            issue_ref="local#5",
            run_id=_RUN_ID,
            role="backend",
            timeout_seconds=timeout_seconds,
            executable=(sys.executable, "-c", script),
        ),
    )


def test_invoke_worker_maps_exit_codes_and_timeouts(tmp_path: Path) -> None:
    _invoke(tmp_path, "import sys; sys.exit(0)")

    with pytest.raises(WorkerRunError) as failed:
        _invoke(tmp_path, "import sys; sys.exit(2)")
    assert not failed.value.transient

    with pytest.raises(WorkerRunError) as timed_out:
        _invoke(tmp_path, "import time; time.sleep(10)", timeout_seconds=1)
    assert timed_out.value.transient


def test_interrupt_while_waiting_terminates_the_subprocess(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    terminated: list[subprocess.Popen[str]] = []
    terminate = worker_module._terminate_process

    def recording_terminate(process: subprocess.Popen[str]) -> None:
        terminated.append(process)
        terminate(process)

    def interrupted_sleep(seconds: float) -> None:
        raise KeyboardInterrupt

    monkeypatch.setattr(worker_module, "_terminate_process", recording_terminate)
    monkeypatch.setattr(worker_module, "time", SimpleNamespace(monotonic=time.monotonic, sleep=interrupted_sleep))

    with (
        (tmp_path / "out.log").open("w", encoding="utf-8") as out,
        (tmp_path / "err.log").open("w", encoding="utf-8") as err,
        pytest.raises(KeyboardInterrupt),
    ):
        run_subprocess_with_timeout(
            run_args=[sys.executable, "-c", "import time; time.sleep(30)"],
            env=os.environ.copy(),
            cwd=None,
            timeout_seconds=60,
            stdout_handle=out,
            stderr_handle=err,
        )

    assert len(terminated) == 1
    assert terminated[0].poll() is not None
