"""Quality Event Ingestion: idempotent review/CI signals with audit writeback."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field

from outbox_flow.outbox.comments import StructuredComment
from outbox_flow.outbox.errors import IssueClosedError, IssueNotFoundError, OutboxValidationError
from outbox_flow.outbox.models import IssueState, QualityEventCreate, QualityEventView, ResultCode, WorkTests
from outbox_flow.outbox.payload import (
    CATEGORY_CI,
    CATEGORY_REVIEW,
    RESULT_APPROVED,
    RESULT_CHANGES_REQUESTED,
    RESULT_FAIL,
    RESULT_PASS,
    default_quality_summary,
    infer_quality_fields,
    normalize_evidence,
)
from outbox_flow.outbox.repository import OutboxRepository
from outbox_flow.outbox.rules import first_non_empty, next_role_for_review_changes, parse_issue_ref
from outbox_flow.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_QUALITY_LIST_LIMIT = 20
WEBHOOK_CATEGORY = "webhook"
AUTH_REJECTED_RESULT = "auth_rejected"

_RESULTS_BY_CATEGORY = {
    CATEGORY_REVIEW: (RESULT_APPROVED, RESULT_CHANGES_REQUESTED),
    CATEGORY_CI: (RESULT_PASS, RESULT_FAIL),
}


@dataclass(slots=True)
class QualityEventInput:
    """One quality signal; empty fields are inferred from `payload` when present."""

    issue_ref: str
    source: str = ""
    external_event_id: str = ""
    category: str = ""
    result: str = ""
    actor: str = ""
    summary: str = ""
    evidence: list[str] = field(default_factory=list)
    payload: str = ""
    idempotency_key: str = ""


@dataclass(slots=True)
class IngestResult:
    issue_ref: str
    idempotency_key: str
    category: str
    result: str
    marker: str
    duplicate: bool = False
    routed_role: str = "none"
    comment_written: bool = False


@dataclass(frozen=True, slots=True)
class _Writeback:
    marker: str
    action: str
    status: str
    result_code: str
    blocked_by: tuple[str, ...]
    tests_command: str
    tests_result: str
    next_suffix: str
    is_failure: bool = False


_PASS_NEXT = "review quality gate signals"
_FAIL_NEXT = "address quality failure and rerun"
_WRITEBACKS = {
    (CATEGORY_REVIEW, RESULT_APPROVED): _Writeback(
        marker="review:approved",
        action="update",
        status=IssueState.REVIEW.value,
        result_code="",
        blocked_by=(),
        tests_command="review verdict",
        tests_result="pass",
        next_suffix=_PASS_NEXT,
    ),
    (CATEGORY_REVIEW, RESULT_CHANGES_REQUESTED): _Writeback(
        marker="review:changes_requested",
        action="blocked",
        status=IssueState.BLOCKED.value,
        result_code=ResultCode.REVIEW_CHANGES_REQUESTED.value,
        blocked_by=("review-changes-requested",),
        tests_command="review verdict",
        tests_result="fail",
        next_suffix=_FAIL_NEXT,
        is_failure=True,
    ),
    (CATEGORY_CI, RESULT_PASS): _Writeback(
        marker="qa:pass",
        action="update",
        status=IssueState.REVIEW.value,
        result_code="",
        blocked_by=(),
        tests_command="ci checks",
        tests_result="pass",
        next_suffix=_PASS_NEXT,
    ),
    (CATEGORY_CI, RESULT_FAIL): _Writeback(
        marker="qa:fail",
        action="blocked",
        status=IssueState.BLOCKED.value,
        result_code=ResultCode.CI_FAILED.value,
        blocked_by=("ci-failed",),
        tests_command="ci checks",
        tests_result="fail",
        next_suffix=_FAIL_NEXT,
        is_failure=True,
    ),
}


class QualityService:
    """Normalize, dedupe and write back quality signals for one Issue Store."""

    def __init__(self, *, repository: OutboxRepository) -> None:
        self.repository = repository

    def ingest(self, event: QualityEventInput) -> IngestResult:
        """Insert-or-ignore one signal; only a fresh insert writes a comment.

        Passing signals route to `integrator`; failing signals route to the
        coding role derived from `to:*` labels and move the issue to
        `state:blocked`. The assignee is never changed.
        """

        issue_ref = event.issue_ref.strip()
        if not issue_ref:
            raise OutboxValidationError("issue ref is required")
        issue_id = parse_issue_ref(issue_ref)

        source = event.source.strip().lower() or "manual"
        event = _merge_inferred_fields(event, source)
        category = normalize_quality_category(event.category)
        result = normalize_quality_result(category, event.result)

        external_event_id = first_non_empty(event.external_event_id, "none")
        actor = first_non_empty(event.actor, "quality-bot")
        summary = first_non_empty(event.summary, default_quality_summary(category, result))
        evidence = normalize_evidence(event.evidence)
        writeback = _WRITEBACKS[(category, result)]
        if writeback.is_failure and not evidence:
            raise OutboxValidationError("quality failure requires evidence")

        payload_json = event.payload.strip() or json.dumps(
            {
                "issue_ref": issue_ref,
                "source": source,
                "external_event_id": external_event_id,
                "category": category,
                "result": result,
                "actor": actor,
                "summary": summary,
                "evidence": evidence,
            },
            sort_keys=True,
        )
        idempotency_key = event.idempotency_key.strip() or derive_quality_event_key(
            issue_ref,
            source,
            external_event_id,
            category,
            result,
            actor,
            summary,
            evidence,
            payload_json,
        )
        outcome = IngestResult(
            issue_ref=issue_ref,
            idempotency_key=idempotency_key,
            category=category,
            result=result,
            marker=writeback.marker,
        )

        now = utc_now()
        with self.repository.transaction() as session:
            issue = self.repository.get_issue(session=session, issue_id=issue_id)
            if issue is None:
                raise IssueNotFoundError(issue_ref)
            if issue.is_closed:
                raise IssueClosedError(issue_ref)

            inserted = self.repository.create_quality_event(
                session=session,
                payload=QualityEventCreate(
                    issue_id=issue_id,
                    idempotency_key=idempotency_key,
                    source=source,
                    external_event_id=external_event_id,
                    category=category,
                    result=result,
                    actor=actor,
                    summary=summary,
                    evidence=evidence,
                    payload_json=payload_json,
                    ingested_at=now,
                ),
            )
            if not inserted:
                outcome.duplicate = True
                logger.info("Duplicate quality event ignored: %s key=%s", issue_ref, idempotency_key)
                return outcome

            routed_role = (
                next_role_for_review_changes(issue.labels) if writeback.is_failure else "integrator"
            )
            body = StructuredComment(
                role=actor,
                issue_ref=issue_ref,
                run_id="none",
                action=writeback.action,
                status=writeback.status,
                result_code=writeback.result_code,
                read_up_to="none",
                trigger=f"quality:{category}:{idempotency_key}",
                summary=[f"{writeback.marker}; {summary}"],
                tests=WorkTests(
                    command=writeback.tests_command,
                    result=writeback.tests_result,
                    evidence=", ".join(evidence) or "none",
                ),
                blocked_by=list(writeback.blocked_by),
                next_steps=[f"@{routed_role} {writeback.next_suffix}"],
            ).render()
            self.repository.append_event(
                session=session,
                issue_id=issue_id,
                actor=actor,
                body=body,
                now=now,
            )
            if writeback.is_failure:
                self.repository.replace_state_label(
                    session=session,
                    issue_id=issue_id,
                    state_label=IssueState.BLOCKED.label,
                )
            self.repository.touch_issue(session=session, issue_id=issue_id, now=now)
            outcome.routed_role = routed_role
            outcome.comment_written = True

        logger.info(
            "Quality event ingested: %s %s/%s routed=%s",
            issue_ref,
            category,
            result,
            outcome.routed_role,
        )
        return outcome

    def ingest_auth_rejection(
        self,
        *,
        issue_ref: str,
        source: str,
        external_event_id: str,
        reason: str,
        payload: str,
    ) -> bool:
        """Record a rejected webhook delivery for audit; no comment, no routing."""

        issue_id = parse_issue_ref(issue_ref)
        now = utc_now()
        key_source = f"{issue_ref}|{source}|{external_event_id}|{reason}|{now.isoformat()}"
        with self.repository.transaction() as session:
            if self.repository.get_issue(session=session, issue_id=issue_id) is None:
                raise IssueNotFoundError(issue_ref)
            return self.repository.create_quality_event(
                session=session,
                payload=QualityEventCreate(
                    issue_id=issue_id,
                    idempotency_key="qevt:auth:" + hashlib.sha256(key_source.encode()).hexdigest(),
                    source=source,
                    external_event_id=first_non_empty(external_event_id, "none"),
                    category=WEBHOOK_CATEGORY,
                    result=AUTH_REJECTED_RESULT,
                    actor=f"{source}-webhook",
                    summary=reason,
                    evidence=[],
                    payload_json=payload,
                    ingested_at=now,
                ),
            )

    def list_quality_events(
        self,
        *,
        issue_ref: str,
        limit: int = DEFAULT_QUALITY_LIST_LIMIT,
    ) -> list[QualityEventView]:
        issue_id = parse_issue_ref(issue_ref)
        with self.repository.transaction() as session:
            return self.repository.list_quality_events(
                session=session,
                issue_id=issue_id,
                limit=limit if limit > 0 else DEFAULT_QUALITY_LIST_LIMIT,
            )

    def quality_stats(self, *, issue_ref: str | None = None) -> list[tuple[str, str, int]]:
        issue_id = parse_issue_ref(issue_ref) if issue_ref else None
        with self.repository.transaction() as session:
            return self.repository.count_quality_events(session=session, issue_id=issue_id)


def normalize_quality_category(value: str) -> str:
    normalized = value.strip().lower()
    if not normalized:
        raise OutboxValidationError("quality event category is required")
    if normalized not in _RESULTS_BY_CATEGORY:
        raise OutboxValidationError(f"unsupported quality category {value!r}")
    return normalized


def normalize_quality_result(category: str, value: str) -> str:
    normalized = value.strip().lower()
    if normalized in _RESULTS_BY_CATEGORY.get(category, ()):
        return normalized
    if not normalized:
        raise OutboxValidationError("quality event result is required")
    raise OutboxValidationError(f"unsupported quality result {value!r} for category {category}")


def derive_quality_event_key(  # noqa: PLR0913
    issue_ref: str,
    source: str,
    external_event_id: str,
    category: str,
    result: str,
    actor: str,
    summary: str,
    evidence: list[str],
    payload_json: str,
) -> str:
    parts = [
        issue_ref.strip(),
        source.strip(),
        external_event_id.strip(),
        category.strip(),
        result.strip(),
        actor.strip(),
        summary.strip(),
        ",".join(evidence),
        payload_json.strip(),
    ]
    return "qevt:" + hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def _merge_inferred_fields(event: QualityEventInput, source: str) -> QualityEventInput:
    """Fill empty fields from the payload; inference failure falls through to validation."""

    if not event.payload.strip():
        return event
    complete = all(
        value.strip()
        for value in (event.category, event.result, event.external_event_id, event.actor, event.summary)
    ) and bool(normalize_evidence(event.evidence))
    if complete:
        return event
    try:
        inferred = infer_quality_fields(source, event.payload)
    except OutboxValidationError as error:
        logger.debug("Quality payload inference skipped: %s", error)
        return event
    return QualityEventInput(
        issue_ref=event.issue_ref,
        source=event.source,
        external_event_id=event.external_event_id.strip() or inferred.external_event_id,
        category=event.category.strip() or inferred.category,
        result=event.result.strip() or inferred.result,
        actor=event.actor.strip() or inferred.actor,
        summary=event.summary.strip() or inferred.summary,
        evidence=normalize_evidence(event.evidence) or inferred.evidence,
        payload=event.payload,
        idempotency_key=event.idempotency_key,
    )
