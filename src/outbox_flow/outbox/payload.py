"""Infer quality-event fields from raw GitHub, GitLab or generic JSON payloads."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from outbox_flow.outbox.errors import OutboxValidationError
from outbox_flow.outbox.rules import first_non_empty

CATEGORY_REVIEW = "review"
CATEGORY_CI = "ci"
RESULT_APPROVED = "approved"
RESULT_CHANGES_REQUESTED = "changes_requested"
RESULT_PASS = "pass"
RESULT_FAIL = "fail"

_GITHUB_PASS_CONCLUSIONS = frozenset({"success", "completed_success"})
_GITHUB_FAIL_CONCLUSIONS = frozenset(
    {
        "failure",
        "timed_out",
        "cancelled",
        "canceled",
        "action_required",
        "startup_failure",
        "stale",
        "neutral",
        "skipped",
        "completed",
    },
)
_GITLAB_PIPELINE_FAIL = frozenset({"failed", "canceled", "cancelled", "manual", "skipped"})
_GITLAB_MR_APPROVED_ACTIONS = frozenset({"merge", "merged", "approve", "approved", "approval"})
_GITLAB_MR_CHANGES_ACTIONS = frozenset(
    {
        "unapprove",
        "unapproved",
        "unapproval",
        "changes_requested",
        "request_changes",
        "requested_changes",
    },
)
_GITLAB_MR_APPROVED_STATES = frozenset({"merged", "approved"})
_GITLAB_MR_CHANGES_STATES = frozenset({"changes_requested", "needs_changes", "rejected"})


@dataclass(slots=True)
class InferredQualityFields:
    category: str = ""
    result: str = ""
    external_event_id: str = ""
    actor: str = ""
    summary: str = ""
    evidence: list[str] = field(default_factory=list)


def infer_quality_fields(source: str, payload: str) -> InferredQualityFields:
    """Dispatch on `source`; unknown sources use explicit `category`/`result` fields."""

    text = payload.strip()
    if not text:
        raise OutboxValidationError("payload is required for inference")
    try:
        root = json.loads(text)
    except json.JSONDecodeError as error:
        raise OutboxValidationError(f"parse payload json: {error}") from error
    if not isinstance(root, dict):
        raise OutboxValidationError("payload must be a JSON object")

    normalized = source.strip().lower()
    if normalized == "github":
        return infer_github_fields(root)
    if normalized == "gitlab":
        return infer_gitlab_fields(root)
    return infer_generic_fields(root)


def infer_github_fields(root: dict[str, Any]) -> InferredQualityFields:
    review = _map_field(root, "review")
    if review is not None:
        state = _string_field(review, "state").lower()
        if state == "approved":
            result = RESULT_APPROVED
        elif state == "changes_requested":
            result = RESULT_CHANGES_REQUESTED
        else:
            raise OutboxValidationError(f"unsupported github review.state {state!r}")
        review_id = first_non_empty(
            _string_field(review, "id"),
            _string_field(root, "delivery"),
            "unknown",
        )
        return InferredQualityFields(
            category=CATEGORY_REVIEW,
            result=result,
            external_event_id=f"github:review:{review_id}",
            actor=first_non_empty(
                _string_field(_map_field(review, "user"), "login"),
                _string_field(_map_field(root, "sender"), "login"),
                "github-bot",
            ),
            summary=first_non_empty(_string_field(review, "body"), f"github review {state}"),
            evidence=normalize_evidence(
                [
                    _string_field(review, "html_url"),
                    _string_field(_map_field(root, "pull_request"), "html_url"),
                ],
            ),
        )

    check_run = _map_field(root, "check_run")
    if check_run is not None:
        outcome = first_non_empty(
            _string_field(check_run, "conclusion"),
            _string_field(check_run, "status"),
        )
        return InferredQualityFields(
            category=CATEGORY_CI,
            result=map_github_check_conclusion(outcome),
            external_event_id=(
                f"github:check_run:{first_non_empty(_string_field(check_run, 'id'), 'unknown')}"
            ),
            actor=first_non_empty(
                _string_field(_map_field(_map_field(check_run, "app"), "owner"), "login"),
                _string_field(_map_field(root, "sender"), "login"),
                "github-bot",
            ),
            summary=first_non_empty(
                _string_field(check_run, "name"),
                f"github check_run {first_non_empty(outcome, 'unknown')}",
            ),
            evidence=normalize_evidence(
                [_string_field(check_run, "html_url"), _string_field(check_run, "details_url")],
            ),
        )

    check_suite = _map_field(root, "check_suite")
    if check_suite is not None:
        outcome = first_non_empty(
            _string_field(check_suite, "conclusion"),
            _string_field(check_suite, "status"),
        )
        return InferredQualityFields(
            category=CATEGORY_CI,
            result=map_github_check_conclusion(outcome),
            external_event_id=(
                f"github:check_suite:{first_non_empty(_string_field(check_suite, 'id'), 'unknown')}"
            ),
            actor=first_non_empty(_string_field(_map_field(root, "sender"), "login"), "github-bot"),
            summary=first_non_empty(
                _string_field(check_suite, "head_branch"),
                f"github check_suite {first_non_empty(outcome, 'unknown')}",
            ),
            evidence=normalize_evidence([_string_field(check_suite, "url")]),
        )

    raise OutboxValidationError("unsupported github payload kind")


def infer_gitlab_fields(root: dict[str, Any]) -> InferredQualityFields:
    object_kind = _string_field(root, "object_kind").lower()
    if object_kind not in {"pipeline", "merge_request"}:
        raise OutboxValidationError(f"unsupported gitlab object_kind {object_kind!r}")
    attrs = _map_field(root, "object_attributes")
    if attrs is None:
        raise OutboxValidationError(f"gitlab {object_kind} payload missing object_attributes")
    actor = first_non_empty(_string_field(_map_field(root, "user"), "username"), "gitlab-bot")
    evidence = normalize_evidence([_string_field(attrs, "url"), _string_field(attrs, "web_url")])

    if object_kind == "pipeline":
        status = _string_field(attrs, "status").lower()
        if status == "success":
            result = RESULT_PASS
        elif status in _GITLAB_PIPELINE_FAIL:
            result = RESULT_FAIL
        else:
            raise OutboxValidationError(f"unsupported gitlab pipeline status {status!r}")
        return InferredQualityFields(
            category=CATEGORY_CI,
            result=result,
            external_event_id=(
                f"gitlab:pipeline:{first_non_empty(_string_field(attrs, 'id'), 'unknown')}"
            ),
            actor=actor,
            summary=f"gitlab pipeline {status}",
            evidence=evidence,
        )

    action = _string_field(attrs, "action").lower()
    state = _string_field(attrs, "state").lower()
    merge_request_id = first_non_empty(
        _string_field(attrs, "id"),
        _string_field(attrs, "iid"),
        "unknown",
    )
    return InferredQualityFields(
        category=CATEGORY_REVIEW,
        result=map_gitlab_merge_request(
            action,
            state,
            has_changes_requested_marker=_has_gitlab_changes_requested_marker(root, attrs),
        ),
        external_event_id=f"gitlab:merge_request:{merge_request_id}",
        actor=actor,
        summary=first_non_empty(
            _string_field(attrs, "title"),
            f"gitlab merge_request {first_non_empty(action, state, 'unknown')}",
        ),
        evidence=evidence,
    )


def infer_generic_fields(root: dict[str, Any]) -> InferredQualityFields:
    category = _string_field(root, "category").lower()
    result = _string_field(root, "result").lower()
    if not category or not result:
        raise OutboxValidationError("payload missing category/result for generic inference")
    evidence_raw = root.get("evidence")
    evidence = (
        [str(item) for item in evidence_raw if item is not None]
        if isinstance(evidence_raw, list)
        else []
    )
    return InferredQualityFields(
        category=category,
        result=result,
        external_event_id=first_non_empty(_string_field(root, "external_event_id"), "none"),
        actor=first_non_empty(_string_field(root, "actor"), "quality-bot"),
        summary=first_non_empty(
            _string_field(root, "summary"),
            default_quality_summary(category, result),
        ),
        evidence=normalize_evidence(evidence),
    )


def map_github_check_conclusion(value: str) -> str:
    normalized = value.strip().lower()
    if normalized in _GITHUB_PASS_CONCLUSIONS:
        return RESULT_PASS
    if normalized in _GITHUB_FAIL_CONCLUSIONS:
        return RESULT_FAIL
    if not normalized:
        raise OutboxValidationError("github check payload missing conclusion/status")
    raise OutboxValidationError(f"unsupported github check conclusion/status {normalized!r}")


def map_gitlab_merge_request(action: str, state: str, *, has_changes_requested_marker: bool) -> str:
    """Map MR action first, then state; a changes-requested label wins on reopen/update."""

    if action in _GITLAB_MR_APPROVED_ACTIONS:
        return RESULT_APPROVED
    if action in _GITLAB_MR_CHANGES_ACTIONS:
        return RESULT_CHANGES_REQUESTED
    if state in _GITLAB_MR_APPROVED_STATES:
        return RESULT_APPROVED
    if state in _GITLAB_MR_CHANGES_STATES:
        return RESULT_CHANGES_REQUESTED
    if has_changes_requested_marker and (
        action in {"reopen", "reopened", "update", "updated"} or state in {"opened", "reopened"}
    ):
        return RESULT_CHANGES_REQUESTED
    raise OutboxValidationError(f"unsupported gitlab merge_request action/state {action!r}/{state!r}")


def default_quality_summary(category: str, result: str) -> str:
    if category == CATEGORY_REVIEW:
        return "review approved" if result == RESULT_APPROVED else "review changes requested"
    if category == CATEGORY_CI:
        return "ci checks passed" if result == RESULT_PASS else "ci checks failed"
    return "quality event ingested"


def normalize_evidence(values: list[str] | tuple[str, ...] | None) -> list[str]:
    """Trim, drop empties and dedupe while keeping first-seen order."""

    return list(dict.fromkeys(item.strip() for item in values or [] if item and item.strip()))


def _has_gitlab_changes_requested_marker(root: dict[str, Any], attrs: dict[str, Any]) -> bool:
    if _bool_field(attrs, "changes_requested") or _bool_field(root, "changes_requested"):
        return True
    labels = [*_gitlab_label_values(root.get("labels")), *_gitlab_label_values(attrs.get("labels"))]
    return any(_compact_label(label) == "changesrequested" for label in labels)


def _gitlab_label_values(raw: object) -> list[str]:
    if not isinstance(raw, list):
        return []
    values = []
    for item in raw:
        if isinstance(item, dict):
            title = first_non_empty(_string_field(item, "title"), _string_field(item, "name"))
            if title:
                values.append(title)
        elif item is not None:
            values.append(str(item).strip())
    return values


def _compact_label(value: str) -> str:
    return value.strip().lower().replace("-", "").replace("_", "").replace(" ", "")


def _map_field(root: dict[str, Any] | None, key: str) -> dict[str, Any] | None:
    if root is None:
        return None
    value = root.get(key)
    return value if isinstance(value, dict) else None


def _string_field(root: dict[str, Any] | None, key: str) -> str:
    if root is None:
        return ""
    value = root.get(key)
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _bool_field(root: dict[str, Any], key: str) -> bool:
    value = root.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    if isinstance(value, int | float):
        return value != 0
    return False
