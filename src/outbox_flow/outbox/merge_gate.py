"""Merge Gate: read-only readiness check over merge-signal labels."""

from __future__ import annotations

from outbox_flow.outbox.comments import StructuredComment
from outbox_flow.outbox.models import WorkChanges, WorkTests
from outbox_flow.outbox.rules import NEEDS_HUMAN_LABEL, QA_PASS_LABEL, REVIEW_APPROVED_LABEL
from outbox_flow.outbox.service import OutboxService

DEFAULT_MERGE_ACTOR = "lead-integrator"


def can_merge(service: OutboxService, *, issue_ref: str) -> tuple[bool, str]:
    """Return `(ready, reason)`; the reason names the first failing condition."""

    issue = service.get_issue(issue_ref=issue_ref)
    if issue.has_label(NEEDS_HUMAN_LABEL):
        return False, "needs-human present"
    if not issue.has_label(REVIEW_APPROVED_LABEL):
        return False, f"missing {REVIEW_APPROVED_LABEL}"
    if not issue.has_label(QA_PASS_LABEL):
        return False, f"missing {QA_PASS_LABEL}"
    return True, "ready"


def build_merge_close_comment(*, issue_ref: str, actor: str, reason: str) -> str:
    return StructuredComment(
        role=actor,
        issue_ref=issue_ref,
        run_id="none",
        action="done",
        status="done",
        read_up_to="none",
        trigger="manual:merge-apply",
        summary=[f"merge gate passed ({reason})"],
        changes=WorkChanges(pr="none", commit="git:merge-gate"),
        tests=WorkTests(
            command=f"outbox-flow outbox merge check --issue {issue_ref}",
            result="pass",
            evidence="merge-gate",
        ),
        next_steps=["@lead close issue"],
    ).render()
