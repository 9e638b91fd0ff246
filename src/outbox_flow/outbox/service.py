"""Issue operations over the Issue Store; one transaction per logical operation."""

from __future__ import annotations

import logging

from sqlmodel import Session

from outbox_flow.outbox.cache import KvCache, active_run_key
from outbox_flow.outbox.comments import (
    StructuredComment,
    build_blocked_comment,
    normalize_comment_body,
)
from outbox_flow.outbox.errors import (
    DependsUnresolvedError,
    IssueClosedError,
    IssueNotFoundError,
    NeedsHumanError,
    OutboxValidationError,
    PreconditionError,
)
from outbox_flow.outbox.models import (
    EventView,
    IssueDetails,
    IssueFilter,
    IssueState,
    IssueView,
    ResultCode,
)
from outbox_flow.outbox.repository import OutboxRepository
from outbox_flow.outbox.rules import (
    NEEDS_HUMAN_LABEL,
    evaluate_work_preconditions,
    format_issue_ref,
    has_close_evidence,
    has_task_issue_sections,
    is_state_label,
    is_task_issue,
    normalize_state_label,
    parse_issue_ref,
    requires_work_start_validation,
    unresolved_dependencies,
)
from outbox_flow.storage.common import utc_now

logger = logging.getLogger(__name__)


class OutboxService:
    """Create, claim, comment, label and close issues with audit events."""

    def __init__(self, *, repository: OutboxRepository, cache: KvCache) -> None:
        self.repository = repository
        self.cache = cache

    def create_issue(self, *, title: str, body: str, labels: list[str] | None = None) -> str:
        title = title.strip()
        body = body.strip()
        if not title:
            raise OutboxValidationError("title is required")
        if not body:
            raise OutboxValidationError("body is required")

        normalized = _normalize_labels(labels or [])
        state_labels = [label for label in normalized if is_state_label(label)]
        if len(state_labels) > 1:
            raise OutboxValidationError("multiple state labels are not allowed")
        state = normalize_state_label(state_labels[0]) if state_labels else IssueState.TODO.label
        normalized = [label for label in normalized if not is_state_label(label)] + [state]
        if is_task_issue(title, normalized) and not has_task_issue_sections(body):
            raise OutboxValidationError(
                "task issue body requires ## Goal and ## Acceptance Criteria sections",
            )

        with self.repository.transaction() as session:
            issue_id = self.repository.create_issue(
                session=session,
                title=title,
                body=body,
                labels=normalized,
                now=utc_now(),
            )
        issue_ref = format_issue_ref(issue_id)
        logger.info("Issue created: %s labels=%s", issue_ref, ",".join(normalized))
        return issue_ref

    def claim_issue(
        self,
        *,
        issue_ref: str,
        assignee: str,
        actor: str | None = None,
        comment: str | None = None,
    ) -> None:
        issue_id = parse_issue_ref(issue_ref)
        assignee = assignee.strip()
        if not assignee:
            raise OutboxValidationError("assignee is required")
        actor = (actor or "").strip() or assignee
        now = utc_now()
        event_body = (
            normalize_comment_body(
                issue_ref=issue_ref,
                actor=actor,
                body=comment or "",
                state=IssueState.DOING.label,
                action="claim",
                now=now,
            )
            if (comment or "").strip()
            else ""
        )
        with self.repository.transaction() as session:
            self._require_open_issue(session, issue_id, issue_ref)
            self.repository.set_assignee(session=session, issue_id=issue_id, assignee=assignee, now=now)
            self.repository.replace_state_label(
                session=session,
                issue_id=issue_id,
                state_label=IssueState.DOING.label,
            )
            if event_body:
                self.repository.append_event(
                    session=session,
                    issue_id=issue_id,
                    actor=actor,
                    body=event_body,
                    now=now,
                )

    def unclaim_issue(self, *, issue_ref: str, actor: str, comment: str | None = None) -> None:
        issue_id = parse_issue_ref(issue_ref)
        actor = actor.strip()
        if not actor:
            raise OutboxValidationError("actor is required")
        now = utc_now()
        event_body = normalize_comment_body(
            issue_ref=issue_ref,
            actor=actor,
            body=(comment or "").strip() or "unclaimed",
            state=IssueState.TODO.label,
            action="unclaim",
            now=now,
        )
        with self.repository.transaction() as session:
            self._require_open_issue(session, issue_id, issue_ref)
            self.repository.set_assignee(session=session, issue_id=issue_id, assignee=None, now=now)
            self.repository.replace_state_label(
                session=session,
                issue_id=issue_id,
                state_label=IssueState.TODO.label,
            )
            self.repository.append_event(
                session=session,
                issue_id=issue_id,
                actor=actor,
                body=event_body,
                now=now,
            )

    def comment_issue(
        self,
        *,
        issue_ref: str,
        actor: str,
        body: str,
        state: str | None = None,
    ) -> None:
        """Append a Structured Comment and optionally move the state label.

        A precondition failure for doing/review/done commits a blocked
        transition first and then raises the precondition error.
        """

        issue_id = parse_issue_ref(issue_ref)
        actor = actor.strip()
        if not actor:
            raise OutboxValidationError("actor is required")
        body = body.strip()
        if not body:
            raise OutboxValidationError("body is required")
        state_label = normalize_state_label(state)

        now = utc_now()
        event_body = normalize_comment_body(
            issue_ref=issue_ref,
            actor=actor,
            body=body,
            state=state_label,
            now=now,
        )
        blocked_error: PreconditionError | None = None
        with self.repository.transaction() as session:
            issue = self._require_open_issue(session, issue_id, issue_ref)
            if requires_work_start_validation(state_label):
                blocked_error = self._check_preconditions(
                    session,
                    issue=issue,
                    target_state=state_label,
                    actor=actor,
                )
            if blocked_error is None:
                self.repository.append_event(
                    session=session,
                    issue_id=issue_id,
                    actor=actor,
                    body=event_body,
                    now=now,
                )
                self.repository.touch_issue(session=session, issue_id=issue_id, now=now)
                if state_label:
                    self.repository.replace_state_label(
                        session=session,
                        issue_id=issue_id,
                        state_label=state_label,
                    )
        if blocked_error is not None:
            raise blocked_error

    def close_issue(self, *, issue_ref: str, actor: str = "", comment: str | None = None) -> None:
        issue_id = parse_issue_ref(issue_ref)
        comment = (comment or "").strip()
        actor = actor.strip()
        if comment and not actor:
            raise OutboxValidationError("actor is required")

        now = utc_now()
        blocked_error: PreconditionError | None = None
        with self.repository.transaction() as session:
            issue = self.repository.get_issue(session=session, issue_id=issue_id)
            if issue is None:
                raise IssueNotFoundError(issue_ref)
            if issue.is_closed:
                return
            blocked_error = self._check_preconditions(
                session,
                issue=issue,
                target_state=IssueState.DONE.label,
                actor=actor,
            )
            if blocked_error is None:
                prior_evidence = any(
                    has_close_evidence(event.body)
                    for event in self.repository.list_issue_events(session=session, issue_id=issue_id)
                )
                if not prior_evidence and not has_close_evidence(comment):
                    raise OutboxValidationError(
                        "close requires structured evidence with Changes and Tests",
                    )
                self.repository.mark_closed(session=session, issue_id=issue_id, now=now)
                self.repository.replace_state_label(
                    session=session,
                    issue_id=issue_id,
                    state_label=IssueState.DONE.label,
                )
                if comment:
                    self.repository.append_event(
                        session=session,
                        issue_id=issue_id,
                        actor=actor,
                        body=normalize_comment_body(
                            issue_ref=issue_ref,
                            actor=actor,
                            body=comment,
                            state=IssueState.DONE.label,
                            action="done",
                            now=now,
                        ),
                        now=now,
                    )
        if blocked_error is not None:
            raise blocked_error
        logger.info("Issue closed: %s", issue_ref)

    def add_issue_labels(self, *, issue_ref: str, actor: str, labels: list[str]) -> None:
        issue_id = parse_issue_ref(issue_ref)
        actor = _require_actor(actor)
        normalized = _require_labels(labels)

        state_label = ""
        other_labels: list[str] = []
        for label in normalized:
            if is_state_label(label):
                if state_label and state_label != label:
                    raise OutboxValidationError("multiple state labels are not allowed")
                state_label = normalize_state_label(label)
                continue
            other_labels.append(label)

        now = utc_now()
        with self.repository.transaction() as session:
            self._require_open_issue(session, issue_id, issue_ref)
            for label in other_labels:
                self.repository.add_issue_label(session=session, issue_id=issue_id, label=label)
            if state_label:
                self.repository.replace_state_label(
                    session=session,
                    issue_id=issue_id,
                    state_label=state_label,
                )
            self.repository.touch_issue(session=session, issue_id=issue_id, now=now)
            self._append_label_event(
                session,
                issue_id=issue_id,
                issue_ref=issue_ref,
                actor=actor,
                action="label-add",
                summary=f"labels added: {', '.join(normalized)}",
            )

    def remove_issue_labels(self, *, issue_ref: str, actor: str, labels: list[str]) -> None:
        issue_id = parse_issue_ref(issue_ref)
        actor = _require_actor(actor)
        normalized = _require_labels(labels)

        now = utc_now()
        with self.repository.transaction() as session:
            self._require_open_issue(session, issue_id, issue_ref)
            for label in normalized:
                self.repository.remove_issue_label(session=session, issue_id=issue_id, label=label)
            self.repository.touch_issue(session=session, issue_id=issue_id, now=now)
            self._append_label_event(
                session,
                issue_id=issue_id,
                issue_ref=issue_ref,
                actor=actor,
                action="label-remove",
                summary=f"labels removed: {', '.join(normalized)}",
            )

    def get_issue(self, *, issue_ref: str) -> IssueView:
        issue_id = parse_issue_ref(issue_ref)
        with self.repository.transaction() as session:
            issue = self.repository.get_issue(session=session, issue_id=issue_id)
        if issue is None:
            raise IssueNotFoundError(issue_ref)
        return issue

    def show_issue(self, *, issue_ref: str) -> IssueDetails:
        issue_id = parse_issue_ref(issue_ref)
        with self.repository.transaction() as session:
            issue = self.repository.get_issue(session=session, issue_id=issue_id)
            if issue is None:
                raise IssueNotFoundError(issue_ref)
            events = self.repository.list_issue_events(session=session, issue_id=issue_id)
        return IssueDetails(issue=issue, events=events)

    def list_events(self, *, issue_ref: str) -> list[EventView]:
        return self.show_issue(issue_ref=issue_ref).events

    def list_issues(self, issue_filter: IssueFilter | None = None) -> list[IssueView]:
        with self.repository.transaction() as session:
            return self.repository.list_issues(
                session=session,
                issue_filter=issue_filter or IssueFilter(),
            )

    def get_active_run_id(self, *, role: str, issue_ref: str) -> str:
        parse_issue_ref(issue_ref)
        return (self.cache.get(active_run_key(role.strip() or "backend", issue_ref)) or "").strip()

    def _require_open_issue(self, session: Session, issue_id: int, issue_ref: str) -> IssueView:
        issue = self.repository.get_issue(session=session, issue_id=issue_id)
        if issue is None:
            raise IssueNotFoundError(issue_ref)
        if issue.is_closed:
            raise IssueClosedError(issue_ref)
        return issue

    def _check_preconditions(
        self,
        session: Session,
        *,
        issue: IssueView,
        target_state: str,
        actor: str,
    ) -> PreconditionError | None:
        """Return a committed-blocked precondition error; re-raise the unclaimed case."""

        unresolved = unresolved_dependencies(
            issue.body,
            is_closed=lambda dep_id: self.repository.is_issue_closed(session=session, issue_id=dep_id),
        )
        try:
            evaluate_work_preconditions(
                target_state=target_state,
                assignee=issue.assignee,
                has_needs_human=issue.has_label(NEEDS_HUMAN_LABEL),
                unresolved=unresolved,
            )
        except (NeedsHumanError, DependsUnresolvedError) as error:
            result_code = (
                ResultCode.DEP_UNRESOLVED
                if isinstance(error, DependsUnresolvedError)
                else ResultCode.MANUAL_INTERVENTION
            )
            now = utc_now()
            self.repository.replace_state_label(
                session=session,
                issue_id=issue.issue_id,
                state_label=IssueState.BLOCKED.label,
            )
            if actor:
                self.repository.append_event(
                    session=session,
                    issue_id=issue.issue_id,
                    actor=actor,
                    body=build_blocked_comment(
                        issue_ref=issue.issue_ref,
                        actor=actor,
                        blocked_by=error.blockers,
                        reason=str(error),
                        result_code=result_code.value,
                        now=now,
                    ),
                    now=now,
                )
            self.repository.touch_issue(session=session, issue_id=issue.issue_id, now=now)
            logger.info("Issue %s blocked by precondition: %s", issue.issue_ref, error)
            return error
        return None

    def _append_label_event(  # noqa: PLR0913
        self,
        session: Session,
        *,
        issue_id: int,
        issue_ref: str,
        actor: str,
        action: str,
        summary: str,
    ) -> None:
        now = utc_now()
        labels = self.repository.list_issue_labels(session=session, issue_id=issue_id)
        status = next(
            (label.removeprefix("state:") for label in labels if is_state_label(label)),
            "doing",
        )
        body = StructuredComment(
            role=actor,
            issue_ref=issue_ref,
            run_id="none",
            action=action,
            status=status,
            read_up_to="none",
            trigger=f"manual:{action}:{now.isoformat()}",
            summary=[summary],
            next_steps=["@lead continue"],
        ).render()
        self.repository.append_event(session=session, issue_id=issue_id, actor=actor, body=body, now=now)


def _normalize_labels(labels: list[str]) -> list[str]:
    return list(dict.fromkeys(label.strip() for label in labels if label.strip()))


def _require_labels(labels: list[str]) -> list[str]:
    normalized = _normalize_labels(labels)
    if not normalized:
        raise OutboxValidationError("labels are required")
    return normalized


def _require_actor(actor: str) -> str:
    actor = actor.strip()
    if not actor:
        raise OutboxValidationError("actor is required")
    return actor
