"""Pure issue rules: references, run ids, labels, evidence and the precondition gate."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime

from outbox_flow.outbox.errors import (
    DependsUnresolvedError,
    IssueNotClaimedError,
    NeedsHumanError,
    OutboxValidationError,
)
from outbox_flow.outbox.models import IssueState, ResultCode

LOCAL_REF_PREFIX = "local#"
NEEDS_HUMAN_LABEL = "needs-human"
AUTOFLOW_OFF_LABEL = "autoflow:off"
REVIEW_APPROVED_LABEL = "review:approved"
QA_PASS_LABEL = "qa:pass"
TASK_KIND_LABEL = "kind:task"

_RUN_ID_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2})-([a-z][a-z0-9-]*)-(\d{4})$")
_GRAPHQL_NODE_ID_PATTERN = re.compile(r"^[A-Za-z0-9+/]{16,}={0,2}$")
_STATE_LABELS = frozenset(state.label for state in IssueState)
_WORK_START_STATES = frozenset(
    {IssueState.DOING.label, IssueState.REVIEW.label, IssueState.DONE.label},
)
_REVIEW_CHANGES_ROUTING = (
    ("to:backend", "backend"),
    ("to:frontend", "frontend"),
    ("to:qa", "qa"),
)


@dataclass(slots=True, frozen=True)
class RunIdParts:
    """Decoded `<date>-<role>-<seq>` run identifier."""

    run_date: str
    role: str
    seq: int


def parse_issue_ref(issue_ref: str) -> int:
    """Resolve `local#N` into the numeric issue id."""

    trimmed = (issue_ref or "").strip()
    if not trimmed:
        raise OutboxValidationError("issue ref is required")
    if not trimmed.startswith(LOCAL_REF_PREFIX):
        raise OutboxValidationError(f"unsupported issue ref: {issue_ref!r}")
    number_text = trimmed[len(LOCAL_REF_PREFIX) :]
    if not number_text.isdigit() or int(number_text) == 0:
        raise OutboxValidationError(f"invalid issue ref: {issue_ref!r}")
    return int(number_text)


def format_issue_ref(issue_id: int) -> str:
    return f"{LOCAL_REF_PREFIX}{issue_id}"


def validate_canonical_issue_ref(issue_ref: str) -> None:
    """Accept `local#N` and `owner/repo#N`; reject platform-internal ids."""

    trimmed = (issue_ref or "").strip()
    if not trimmed:
        raise OutboxValidationError("issue ref is required")
    if _is_internal_issue_id(trimmed):
        raise OutboxValidationError(
            f"platform internal id cannot be used as issue ref: {issue_ref!r}",
        )
    if trimmed.startswith(LOCAL_REF_PREFIX):
        parse_issue_ref(trimmed)
        return
    left, sep, right = trimmed.partition("#")
    path_parts = left.strip().split("/")
    right = right.strip()
    if (
        not sep
        or "#" in right
        or len(path_parts) != 2  # noqa: PLR2004
        or not all(path_parts)
        or not right.isdigit()
        or int(right) == 0
    ):
        raise OutboxValidationError(f"invalid issue ref: {issue_ref!r}")


def _is_internal_issue_id(value: str) -> bool:
    if value.lower().startswith("gid://gitlab/"):
        return True
    if "#" in value or "/" in value:
        return False
    if value.isdigit():
        return True
    return _GRAPHQL_NODE_ID_PATTERN.match(value) is not None


def format_run_id(*, run_date: date | datetime, role: str, seq: int) -> str:
    return f"{run_date.strftime('%Y-%m-%d')}-{role}-{seq:04d}"


def parse_run_id(run_id: str) -> RunIdParts:
    trimmed = (run_id or "").strip()
    if not trimmed:
        raise OutboxValidationError("run id is required")
    match = _RUN_ID_PATTERN.match(trimmed)
    if match is None:
        raise OutboxValidationError(f"invalid run id: {run_id!r}")
    try:
        datetime.strptime(match.group(1), "%Y-%m-%d")
    except ValueError as error:
        raise OutboxValidationError(f"invalid run id: {run_id!r}") from error
    seq = int(match.group(3))
    if seq <= 0:
        raise OutboxValidationError(f"invalid run id: {run_id!r}")
    return RunIdParts(run_date=match.group(1), role=match.group(2), seq=seq)


def is_stale_run(active_run_id: str | None, incoming_run_id: str | None) -> bool:
    active = (active_run_id or "").strip()
    incoming = (incoming_run_id or "").strip()
    if not active or not incoming:
        return False
    return active != incoming


def is_none_like(value: str | None) -> bool:
    return (value or "").strip().lower() in {"", "none", "n/a"}


def first_non_empty(*values: str | None) -> str:
    for value in values:
        stripped = (value or "").strip()
        if stripped:
            return stripped
    return ""


def first_non_empty_line(body: str) -> str:
    for raw in body.splitlines():
        line = raw.strip()
        if line:
            return line
    return ""


def allowed_result_codes() -> list[str]:
    return sorted(code.value for code in ResultCode)


def validate_result_code(code: str) -> str:
    """Return the code if it belongs to the closed enum, else raise."""

    normalized = (code or "").strip()
    try:
        return ResultCode(normalized).value
    except ValueError as error:
        raise OutboxValidationError(
            f"invalid result code: {code!r} (allowed: {', '.join(allowed_result_codes())})",
        ) from error


def normalize_result_code(code: str | None) -> str:
    """Map none-like codes to "" (no code) and validate everything else."""

    if is_none_like(code):
        return ""
    return validate_result_code(code or "")


def normalize_state_label(state: str | None) -> str:
    """Return `state:<x>` for bare or prefixed input; "" for empty input."""

    trimmed = (state or "").strip()
    if not trimmed:
        return ""
    if not trimmed.startswith("state:"):
        trimmed = f"state:{trimmed}"
    if trimmed not in _STATE_LABELS:
        raise OutboxValidationError(f"invalid state label: {state!r}")
    return trimmed


def is_state_label(label: str) -> bool:
    return label.strip().startswith("state:")


def requires_work_start_validation(state_label: str) -> bool:
    return state_label in _WORK_START_STATES


def is_task_issue(title: str, labels: Iterable[str]) -> bool:
    for label in labels:
        if label.strip().lower() == TASK_KIND_LABEL:
            return True
    return "[kind:task]" in title.lower()


def has_task_issue_sections(body: str) -> bool:
    lower = body.lower()
    return "## goal" in lower and "## acceptance criteria" in lower


def parse_depends_on_refs(body: str) -> list[str]:
    """Collect `DependsOn:` tokens from an issue body, in order, without duplicates."""

    seen: set[str] = set()
    refs: list[str] = []
    in_depends_on = False
    for raw in body.splitlines():
        line = raw.strip()
        if not line:
            continue
        lower_line = line.lower()
        if lower_line.startswith(("- dependson:", "dependson:")):
            in_depends_on = True
            _add_dependency_tokens(line.split(":", 1)[1], seen, refs)
            continue
        if not in_depends_on:
            continue
        if lower_line.startswith(("- blockedby:", "blockedby:")) or line.startswith("## "):
            break
        if line.startswith("- "):
            _add_dependency_tokens(line[2:].strip(), seen, refs)
            continue
        if ":" in line and not lower_line.startswith("http"):
            break
        _add_dependency_tokens(line, seen, refs)
    return refs


def _add_dependency_tokens(raw: str, seen: set[str], refs: list[str]) -> None:
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        token = token.removesuffix(".")
        if is_none_like(token) or token in seen:
            continue
        seen.add(token)
        refs.append(token)


def unresolved_dependencies(
    body: str,
    *,
    is_closed: Callable[[int], bool | None],
) -> list[str]:
    """Return local dependency refs that are not closed.

    `is_closed` returns None for a missing issue. Non-local refs are treated
    as external and never block.
    """

    unresolved: list[str] = []
    for ref in parse_depends_on_refs(body):
        if not ref.startswith(LOCAL_REF_PREFIX):
            continue
        try:
            issue_id = parse_issue_ref(ref)
        except OutboxValidationError:
            unresolved.append(ref)
            continue
        if not is_closed(issue_id):
            unresolved.append(ref)
    return unresolved


def has_close_evidence(body: str) -> bool:
    """True when the body carries non-empty Changes (PR or Commit) and a Tests result."""

    in_changes = False
    in_tests = False
    has_changes = False
    has_tests_result = False
    for raw in body.splitlines():
        line = raw.strip()
        if not line:
            continue
        lower_line = line.lower()
        if lower_line.startswith("changes:"):
            in_changes, in_tests = True, False
            continue
        if lower_line.startswith("tests:"):
            in_changes, in_tests = False, True
            continue
        if lower_line.endswith(":") and not lower_line.startswith("- "):
            in_changes, in_tests = False, False
            continue
        if in_changes:
            for prefix in ("- pr:", "- commit:"):
                if lower_line.startswith(prefix) and not is_none_like(line[len(prefix) :]):
                    has_changes = True
        if in_tests and lower_line.startswith("- result:") and line[len("- result:") :].strip():
            has_tests_result = True
    return has_changes and has_tests_result


def evaluate_work_preconditions(
    *,
    target_state: str,
    assignee: str | None,
    has_needs_human: bool,
    unresolved: list[str],
) -> None:
    """Raise the first failing work-start precondition for doing/review/done."""

    if not requires_work_start_validation(target_state):
        return
    if not (assignee or "").strip():
        raise IssueNotClaimedError()
    if has_needs_human:
        raise NeedsHumanError([NEEDS_HUMAN_LABEL])
    deps = [dep.strip() for dep in unresolved if dep.strip()]
    if deps:
        raise DependsUnresolvedError(deps)


def next_role_for_review_changes(labels: Iterable[str]) -> str:
    """Route review changes back to a coding role; label priority is fixed."""

    present = {label.strip() for label in labels}
    for label, role in _REVIEW_CHANGES_ROUTING:
        if label in present:
            return role
    return "backend"
