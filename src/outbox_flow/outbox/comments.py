"""Structured Comment: the canonical audit record written by every outbox writer.

Every field is always rendered; empty values become `none`. The record is
plain text so humans and workers can read it from the issue timeline:

    Role: backend
    Repo: main
    IssueRef: local#12
    RunId: 2026-10-01-backend-0001
    ...
    Summary:
    - worker completed with evidence

    Changes:
    - PR: none
    - Commit: git:abc123
    ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from outbox_flow.outbox.errors import OutboxValidationError
from outbox_flow.outbox.models import WorkChanges, WorkTests
from outbox_flow.outbox.rules import (
    first_non_empty_line,
    normalize_result_code,
    normalize_state_label,
)
from outbox_flow.storage.common import utc_now

_HEADER_FIELDS = (
    ("role", "Role"),
    ("repo", "Repo"),
    ("issue_ref", "IssueRef"),
    ("run_id", "RunId"),
    ("spec_ref", "SpecRef"),
    ("contracts_ref", "ContractsRef"),
    ("action", "Action"),
    ("status", "Status"),
    ("result_code", "ResultCode"),
    ("read_up_to", "ReadUpTo"),
    ("trigger", "Trigger"),
)
_LIST_SECTIONS = {
    "summary:": "summary",
    "blockedby:": "blocked_by",
    "openquestions:": "open_questions",
    "next:": "next_steps",
}


@dataclass(slots=True)
class StructuredComment:
    """Fixed-field audit record; see module docstring for the wire shape."""

    role: str = ""
    issue_ref: str = ""
    run_id: str = ""
    action: str = ""
    status: str = ""
    result_code: str = ""
    read_up_to: str = ""
    trigger: str = ""
    summary: list[str] = field(default_factory=list)
    changes: WorkChanges = field(default_factory=WorkChanges)
    tests: WorkTests = field(default_factory=WorkTests)
    blocked_by: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    repo: str = "main"
    spec_ref: str = ""
    contracts_ref: str = ""

    def render(self) -> str:
        """Serialize to the canonical text shape; rejects out-of-enum result codes."""

        result_code = normalize_result_code(self.result_code) or "none"
        header = {
            "role": self.role,
            "repo": self.repo,
            "issue_ref": self.issue_ref,
            "run_id": self.run_id,
            "spec_ref": self.spec_ref,
            "contracts_ref": self.contracts_ref,
            "action": self.action,
            "status": self.status,
            "result_code": result_code,
            "read_up_to": self.read_up_to,
            "trigger": self.trigger,
        }
        lines = [f"{title}: {_none_if_empty(header[key])}" for key, title in _HEADER_FIELDS]
        lines += ["", "Summary:", *_bullets(self.summary)]
        lines += [
            "",
            "Changes:",
            f"- PR: {_none_if_empty(self.changes.pr)}",
            f"- Commit: {_none_if_empty(self.changes.commit)}",
        ]
        lines += [
            "",
            "Tests:",
            f"- Command: {_none_if_empty(self.tests.command)}",
            f"- Result: {_none_if_empty(self.tests.result)}",
            f"- Evidence: {_none_if_empty(self.tests.evidence)}",
        ]
        lines += ["", "BlockedBy:", f"- {_join_or_none(self.blocked_by)}"]
        lines += ["", "OpenQuestions:", *_bullets(self.open_questions)]
        lines += ["", "Next:", *_bullets(self.next_steps)]
        return "\n".join(lines) + "\n"


def is_structured_comment_body(body: str) -> bool:
    lower = body.lower()
    return all(marker in lower for marker in ("issueref:", "changes:", "tests:", "next:"))


def parse_structured_comment(body: str) -> StructuredComment:
    """Parse a rendered comment back into fields; unknown lines are ignored."""

    if not is_structured_comment_body(body):
        raise OutboxValidationError("body is not a structured comment")

    comment = StructuredComment(repo="")
    section = ""
    header_keys = {title.lower(): key for key, title in _HEADER_FIELDS}
    for raw in body.splitlines():
        line = raw.strip()
        if not line:
            continue
        lower = line.lower()
        if lower in _LIST_SECTIONS or lower in {"changes:", "tests:"}:
            section = lower
            continue
        if not line.startswith("- "):
            name, sep, value = line.partition(":")
            if sep and name.strip().lower() in header_keys:
                setattr(comment, header_keys[name.strip().lower()], _empty_if_none(value))
            section = ""
            continue
        item = line[2:].strip()
        if section in _LIST_SECTIONS:
            values = getattr(comment, _LIST_SECTIONS[section])
            if section == "blockedby:":
                values.extend(part.strip() for part in item.split(",") if part.strip())
            else:
                values.append(item)
            continue
        name, _, value = item.partition(":")
        key = name.strip().lower()
        if section == "changes:" and key in {"pr", "commit"}:
            setattr(comment.changes, key, value.strip())
        elif section == "tests:" and key in {"command", "result", "evidence"}:
            setattr(comment.tests, key, value.strip())
    comment.summary = [item for item in comment.summary if item.lower() != "none"]
    comment.blocked_by = [item for item in comment.blocked_by if item.lower() != "none"]
    comment.open_questions = [item for item in comment.open_questions if item.lower() != "none"]
    return comment


def normalize_comment_body(
    *,
    issue_ref: str,
    actor: str,
    body: str,
    state: str = "",
    action: str = "update",
    now: datetime | None = None,
) -> str:
    """Return structured bodies unchanged; wrap free text into a Structured Comment.

    A structured body is still checked: its ResultCode must be none-like or in the closed enum.
    """

    if is_structured_comment_body(body):
        normalize_result_code(parse_structured_comment(body).result_code)
        return body

    status = "doing"
    try:
        normalized_state = normalize_state_label(state)
    except OutboxValidationError:
        normalized_state = ""
    if normalized_state:
        status = normalized_state.removeprefix("state:")

    summary = first_non_empty_line(body)
    if not summary:
        summary = action.strip() if action.strip() in {"claim", "blocked", "done"} else "update"

    return StructuredComment(
        role=actor,
        issue_ref=issue_ref,
        run_id="none",
        action=action,
        status=status,
        read_up_to="none",
        trigger=f"manual:{_timestamp(now)}",
        summary=[summary],
        next_steps=["@integrator review update"],
    ).render()


def build_blocked_comment(  # noqa: PLR0913
    *,
    issue_ref: str,
    actor: str,
    blocked_by: list[str],
    reason: str,
    result_code: str,
    now: datetime | None = None,
) -> str:
    """Blocked transition record written by manual issue operations."""

    if not normalize_result_code(result_code):
        raise OutboxValidationError("blocked event requires result_code")
    return StructuredComment(
        role=actor,
        issue_ref=issue_ref,
        run_id="none",
        action="blocked",
        status="blocked",
        result_code=result_code,
        read_up_to="none",
        trigger=f"manual:{_timestamp(now)}",
        summary=[reason],
        blocked_by=blocked_by,
        next_steps=["@lead resolve blocker"],
    ).render()


def format_read_up_to(event_id: int) -> str:
    if event_id <= 0:
        return "none"
    return f"e{event_id}"


def _timestamp(now: datetime | None) -> str:
    return (now or utc_now()).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _bullets(values: list[str]) -> list[str]:
    clean = [value.strip() for value in values if value.strip()]
    if not clean:
        clean = ["none"]
    return [f"- {value}" for value in clean]


def _join_or_none(values: list[str]) -> str:
    clean = [value.strip() for value in values if value.strip()]
    return ", ".join(clean) if clean else "none"


def _none_if_empty(value: str) -> str:
    stripped = (value or "").strip()
    return stripped or "none"


def _empty_if_none(value: str) -> str:
    stripped = value.strip()
    return "" if stripped.lower() == "none" else stripped
