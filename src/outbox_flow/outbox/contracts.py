"""File-based contracts between the lead and its worker processes.

A context pack is one directory per dispatched run:

- `work_order.json`: IssueRef, RunID, Role, RepoDir.
- `spec_snapshot.md`: issue body at dispatch time.
- `constraints.md`: fixed hard constraints.
- `links.md`: IssueRef and the read cursor (`e<N>` or `none`).

The worker answers with `work_result.json` (canonical) or the legacy
`work_result.txt`; when neither exists the lead falls back to a result
synthesized from the work order and the worker logs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from outbox_flow.outbox.comments import format_read_up_to
from outbox_flow.outbox.errors import OutboxValidationError, WorkResultError
from outbox_flow.outbox.models import (
    ResultCode,
    WorkChanges,
    WorkOrder,
    WorkResult,
    WorkTests,
)
from outbox_flow.outbox.rules import (
    first_non_empty,
    is_none_like,
    normalize_result_code,
    parse_run_id,
    validate_canonical_issue_ref,
)

WORK_ORDER_FILE = "work_order.json"
SPEC_SNAPSHOT_FILE = "spec_snapshot.md"
CONSTRAINTS_FILE = "constraints.md"
LINKS_FILE = "links.md"
WORK_RESULT_JSON_FILE = "work_result.json"
WORK_RESULT_TEXT_FILE = "work_result.txt"
WORK_AUDIT_FILE = "work_audit.json"
STDOUT_LOG_FILE = "stdout.log"
STDERR_LOG_FILE = "stderr.log"

CONSTRAINTS_TEXT = "Hard:\n- Keep IssueRef and RunId unchanged\n- Provide Changes and Tests evidence\n"

ResultSource = Literal["json", "text", "logs"]


@dataclass(slots=True)
class LoadedWorkResult:
    """Parsed worker result tagged with the format it was read from."""

    result: WorkResult
    source: ResultSource


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def prepare_context_pack(
    context_pack_dir: Path,
    *,
    order: WorkOrder,
    spec_snapshot: str,
    read_up_to: int,
) -> None:
    context_pack_dir.mkdir(parents=True, exist_ok=True)
    write_work_order(context_pack_dir / WORK_ORDER_FILE, order)
    (context_pack_dir / SPEC_SNAPSHOT_FILE).write_text(spec_snapshot, "utf-8")
    (context_pack_dir / CONSTRAINTS_FILE).write_text(CONSTRAINTS_TEXT, "utf-8")
    (context_pack_dir / LINKS_FILE).write_text(
        f"IssueRef: {order.issue_ref}\nReadUpTo: {format_read_up_to(read_up_to)}\n",
        "utf-8",
    )


def write_work_order(path: Path, order: WorkOrder) -> None:
    write_json(
        path,
        {
            "IssueRef": order.issue_ref,
            "RunID": order.run_id,
            "Role": order.role,
            "RepoDir": order.repo_dir,
        },
    )


def read_work_order(path: Path) -> WorkOrder:
    """Load `work_order.json` and validate every field."""

    raw = load_json(path)
    order = WorkOrder(
        issue_ref=str(raw.get("IssueRef", "")).strip(),
        run_id=str(raw.get("RunID", "")).strip(),
        role=str(raw.get("Role", "")).strip(),
        repo_dir=str(raw.get("RepoDir", "")).strip(),
    )
    validate_work_order(order)
    return order


def validate_work_order(order: WorkOrder) -> None:
    for name, value in (
        ("issue_ref", order.issue_ref),
        ("run_id", order.run_id),
        ("role", order.role),
        ("repo_dir", order.repo_dir),
    ):
        if not value.strip():
            raise OutboxValidationError(f"work order missing required field: {name}")
    validate_canonical_issue_ref(order.issue_ref)
    parse_run_id(order.run_id)


def work_result_status(result: WorkResult) -> str:
    if not is_none_like(result.result_code) or result.tests.result.strip() == "fail":
        return "fail"
    return "ok"


def write_work_result_json(path: Path, result: WorkResult) -> None:
    write_json(
        path,
        {
            "IssueRef": result.issue_ref,
            "RunID": result.run_id,
            "Status": result.status or work_result_status(result),
            "Summary": result.summary,
            "ResultCode": result.result_code,
            "Changes": {"PR": result.changes.pr, "Commit": result.changes.commit},
            "Tests": {
                "Command": result.tests.command,
                "Result": result.tests.result,
                "Evidence": result.tests.evidence,
            },
        },
    )


def write_work_result_text(path: Path, result: WorkResult) -> None:
    summary = result.summary.strip().splitlines()[0].strip() if result.summary.strip() else ""
    lines = [
        f"IssueRef: {result.issue_ref}",
        f"RunId: {result.run_id}",
        f"Status: {work_result_status(result)}",
        f"Summary: {summary or 'none'}",
        f"PR: {_none_if_empty(result.changes.pr)}",
        f"Commit: {_none_if_empty(result.changes.commit)}",
        f"Tests: {_none_if_empty(result.tests.command)} => {_none_if_empty(result.tests.result)}",
        f"Evidence: {_none_if_empty(result.tests.evidence)}",
        f"ResultCode: {_none_if_empty(result.result_code)}",
        "",
        "Notes:",
        "- generated by worker runner",
    ]
    path.write_text("\n".join(lines) + "\n", "utf-8")


def load_work_result(context_pack_dir: Path) -> LoadedWorkResult:
    """Load the worker result: JSON first, then legacy text, then the logs fallback."""

    json_path = context_pack_dir / WORK_RESULT_JSON_FILE
    if json_path.exists():
        return LoadedWorkResult(result=load_work_result_json(json_path), source="json")
    text_path = context_pack_dir / WORK_RESULT_TEXT_FILE
    if text_path.exists():
        return LoadedWorkResult(result=load_work_result_text(text_path), source="text")
    return LoadedWorkResult(result=load_work_result_from_logs(context_pack_dir), source="logs")


def load_work_result_json(path: Path) -> WorkResult:
    try:
        raw = load_json(path)
    except (json.JSONDecodeError, TypeError) as error:
        raise WorkResultError(f"work result json is invalid: {error}") from error

    result = _result_from_pascal(raw)
    if not result.issue_ref or not result.run_id:
        candidate = _result_from_snake(raw)
        if candidate.issue_ref and candidate.run_id:
            result = candidate
    if not result.issue_ref or not result.run_id:
        raise WorkResultError("work result json missing issue_ref/run_id")

    result.result_code = _normalize_code(result.result_code)
    result.changes.pr = result.changes.pr or "none"
    result.changes.commit = result.changes.commit or "none"
    result.tests.command = result.tests.command or "none"
    result.tests.result = result.tests.result or "n/a"
    result.tests.evidence = result.tests.evidence or "none"
    result.status = result.status or work_result_status(result)
    result.summary = result.summary or "none"
    return result


def load_work_result_text(path: Path) -> WorkResult:
    """Parse the `Key: value` header block that ends at the first blank line."""

    headers: dict[str, str] = {}
    for raw_line in path.read_text("utf-8").splitlines():
        line = raw_line.strip()
        if not line:
            break
        key, sep, value = line.partition(":")
        if not sep or not key.strip():
            continue
        headers[key.strip().lower()] = value.strip()

    issue_ref = first_non_empty(headers.get("issueref"), headers.get("issue_ref"))
    run_id = first_non_empty(headers.get("runid"), headers.get("run_id"))
    if not issue_ref or not run_id:
        raise WorkResultError("work result text missing issue_ref/run_id")

    tests_value = first_non_empty(headers.get("tests"), "none")
    test_command, test_result = tests_value, "n/a"
    if "=>" in tests_value:
        left, _, right = tests_value.partition("=>")
        test_command, test_result = left.strip(), right.strip()

    result = WorkResult(
        issue_ref=issue_ref,
        run_id=run_id,
        status=first_non_empty(headers.get("status")).lower(),
        summary=first_non_empty(headers.get("summary"), "none"),
        result_code=_normalize_code(
            first_non_empty(headers.get("resultcode"), headers.get("result_code")),
        ),
        changes=WorkChanges(
            pr=first_non_empty(headers.get("pr"), "none"),
            commit=first_non_empty(headers.get("commit"), "none"),
        ),
        tests=WorkTests(
            command=test_command or "none",
            result=test_result or "n/a",
            evidence=first_non_empty(headers.get("evidence"), "none"),
        ),
    )
    if result.status == "fail" and not result.result_code:
        result.result_code = ResultCode.TEST_FAILED.value
    if result.status == "blocked" and not result.result_code:
        result.result_code = ResultCode.DEP_UNRESOLVED.value
    result.status = result.status or work_result_status(result)
    return result


def load_work_result_from_logs(context_pack_dir: Path) -> WorkResult:
    """Synthesize a result when the worker wrote no result file.

    Identity comes from the work order; the presence of `stdout.log` is the
    only (weak) test evidence and its content is not inspected.
    """

    order_path = context_pack_dir / WORK_ORDER_FILE
    if not order_path.exists():
        raise WorkResultError("work result missing and work order not found")
    try:
        order = read_work_order(order_path)
    except (OutboxValidationError, json.JSONDecodeError, TypeError) as error:
        raise WorkResultError(f"work result missing and work order invalid: {error}") from error

    has_stdout = (context_pack_dir / STDOUT_LOG_FILE).exists()
    tests = WorkTests(
        command="none",
        result="pass" if has_stdout else "fail",
        evidence=STDOUT_LOG_FILE if has_stdout else "none",
    )
    result = WorkResult(
        issue_ref=order.issue_ref,
        run_id=order.run_id,
        summary="work result synthesized from worker logs",
        tests=tests,
    )
    result.status = work_result_status(result)
    return result


def validate_work_result_echo(order: WorkOrder, result: WorkResult) -> None:
    if not result.issue_ref.strip():
        raise WorkResultError("work result is invalid: issue_ref is required")
    if not result.run_id.strip():
        raise WorkResultError("work result is invalid: run_id is required")
    if result.issue_ref != order.issue_ref:
        raise WorkResultError("work result is invalid: issue_ref mismatch")
    if result.run_id != order.run_id:
        raise WorkResultError("work result is invalid: run_id mismatch")


def validate_work_result_evidence(result: WorkResult) -> None:
    """Require PR or Commit evidence plus a Tests result."""

    if is_none_like(result.changes.pr) and is_none_like(result.changes.commit):
        raise WorkResultError("work result is invalid: changes require pr or commit")
    if not result.tests.result.strip():
        raise WorkResultError("work result is invalid: tests.result is required")


def has_required_evidence(result: WorkResult) -> bool:
    try:
        validate_work_result_evidence(result)
    except WorkResultError:
        return False
    return True


def _result_from_pascal(raw: dict[str, Any]) -> WorkResult:
    changes = _sub_object(raw, "Changes")
    tests = _sub_object(raw, "Tests")
    return WorkResult(
        issue_ref=_text(raw, "IssueRef"),
        run_id=_text(raw, "RunID"),
        status=_text(raw, "Status"),
        summary=_text(raw, "Summary"),
        result_code=_text(raw, "ResultCode"),
        changes=WorkChanges(pr=_text(changes, "PR"), commit=_text(changes, "Commit")),
        tests=WorkTests(
            command=_text(tests, "Command"),
            result=_text(tests, "Result"),
            evidence=_text(tests, "Evidence"),
        ),
    )


def _result_from_snake(raw: dict[str, Any]) -> WorkResult:
    changes = _sub_object(raw, "changes")
    tests = _sub_object(raw, "tests")
    return WorkResult(
        issue_ref=_text(raw, "issue_ref"),
        run_id=_text(raw, "run_id"),
        status=_text(raw, "status"),
        summary=_text(raw, "summary"),
        result_code=_text(raw, "result_code"),
        changes=WorkChanges(pr=_text(changes, "pr"), commit=_text(changes, "commit")),
        tests=WorkTests(
            command=_text(tests, "command"),
            result=_text(tests, "result"),
            evidence=_text(tests, "evidence"),
        ),
    )


def _normalize_code(code: str) -> str:
    try:
        return normalize_result_code(code)
    except OutboxValidationError as error:
        raise WorkResultError(str(error)) from error


def _sub_object(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    return value if isinstance(value, dict) else {}


def _text(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    return str(value).strip()


def _none_if_empty(value: str) -> str:
    return value.strip() or "none"
