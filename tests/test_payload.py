from __future__ import annotations

import json

import allure
import pytest

from outbox_flow.outbox.errors import OutboxValidationError
from outbox_flow.outbox.payload import (
    infer_quality_fields,
    map_github_check_conclusion,
    map_gitlab_merge_request,
    normalize_evidence,
)

pytestmark = [
    allure.epic("Quality Gate"),
    allure.feature("Payload Inference"),
]


def test_github_review_payload() -> None:
    payload = {
        "review": {
            "id": 42,
            "state": "CHANGES_REQUESTED",
            "body": "please split the migration",
            "html_url": "https://github.com/acme/app/pull/7#pullrequestreview-42",
            "user": {"login": "alice"},
        },
        "pull_request": {"html_url": "https://github.com/acme/app/pull/7"},
    }

    fields = infer_quality_fields("GitHub", json.dumps(payload))

    assert (fields.category, fields.result) == ("review", "changes_requested")
    assert fields.external_event_id == "github:review:42"
    assert fields.actor == "alice"
    assert fields.summary == "please split the migration"
    assert fields.evidence == [
        "https://github.com/acme/app/pull/7#pullrequestreview-42",
        "https://github.com/acme/app/pull/7",
    ]


def test_github_check_run_and_suite_payloads() -> None:
    check_run = {
        "check_run": {
            "id": 5,
            "name": "unit tests",
            "conclusion": "timed_out",
            "html_url": "https://github.com/acme/app/runs/5",
            "app": {"owner": {"login": "github-actions"}},
        },
    }
    fields = infer_quality_fields("github", json.dumps(check_run))
    assert (fields.category, fields.result) == ("ci", "fail")
    assert fields.external_event_id == "github:check_run:5"
    assert fields.actor == "github-actions"
    assert fields.summary == "unit tests"

    check_suite = {"check_suite": {"id": 9, "status": "success"}, "sender": {"login": "bot"}}
    fields = infer_quality_fields("github", json.dumps(check_suite))
    assert (fields.result, fields.actor, fields.summary) == ("pass", "bot", "github check_suite success")

    with pytest.raises(OutboxValidationError, match="unsupported github payload kind"):
        infer_quality_fields("github", json.dumps({"issue": {}}))


def test_gitlab_pipeline_and_merge_request_payloads() -> None:
    pipeline = {
        "object_kind": "pipeline",
        "object_attributes": {"id": 3, "status": "success"},
    }
    fields = infer_quality_fields("gitlab", json.dumps(pipeline))
    assert (fields.category, fields.result, fields.actor) == ("ci", "pass", "gitlab-bot")

    merge_request = {
        "object_kind": "merge_request",
        "user": {"username": "bob"},
        "labels": [{"title": "Changes Requested"}],
        "object_attributes": {
            "iid": 12,
            "action": "update",
            "state": "opened",
            "title": "Add login",
            "url": "https://gitlab.example.com/mr/12",
        },
    }
    fields = infer_quality_fields("gitlab", json.dumps(merge_request))
    assert (fields.category, fields.result) == ("review", "changes_requested")
    assert fields.external_event_id == "gitlab:merge_request:12"
    assert fields.summary == "Add login"

    with pytest.raises(OutboxValidationError, match="object_kind"):
        infer_quality_fields("gitlab", json.dumps({"object_kind": "push"}))
    with pytest.raises(OutboxValidationError, match="missing object_attributes"):
        infer_quality_fields("gitlab", json.dumps({"object_kind": "pipeline"}))


def test_generic_payload_and_invalid_json() -> None:
    fields = infer_quality_fields(
        "ci",
        json.dumps({"category": "CI", "result": "FAIL", "evidence": ["log.txt", "log.txt", None]}),
    )
    assert (fields.category, fields.result) == ("ci", "fail")
    assert fields.actor == "quality-bot"
    assert fields.summary == "ci checks failed"
    assert fields.evidence == ["log.txt"]

    with pytest.raises(OutboxValidationError, match="category/result"):
        infer_quality_fields("ci", json.dumps({"category": "ci"}))
    with pytest.raises(OutboxValidationError, match="parse payload json"):
        infer_quality_fields("ci", "{broken")
    with pytest.raises(OutboxValidationError, match="JSON object"):
        infer_quality_fields("ci", "[1, 2]")


def test_conclusion_and_merge_request_mapping() -> None:
    assert map_github_check_conclusion("Success") == "pass"
    assert map_github_check_conclusion("neutral") == "fail"
    with pytest.raises(OutboxValidationError, match="missing conclusion"):
        map_github_check_conclusion("")
    with pytest.raises(OutboxValidationError, match="unsupported"):
        map_github_check_conclusion("in_progress")

    assert map_gitlab_merge_request("approved", "", has_changes_requested_marker=False) == "approved"
    assert map_gitlab_merge_request("", "merged", has_changes_requested_marker=False) == "approved"
    assert map_gitlab_merge_request("unapprove", "opened", has_changes_requested_marker=False) == "changes_requested"
    with pytest.raises(OutboxValidationError):
        map_gitlab_merge_request("update", "opened", has_changes_requested_marker=False)

    assert normalize_evidence([" a ", "", "b", "a"]) == ["a", "b"]
    assert normalize_evidence(None) == []
