from __future__ import annotations

import asyncio
import hashlib
import hmac
import json

import allure
import pytest
from fastapi.testclient import TestClient

from outbox_flow.outbox.quality import AUTH_REJECTED_RESULT, IngestResult, QualityEventInput, QualityService
from outbox_flow.outbox.repository import OutboxRepository
from outbox_flow.outbox.service import OutboxService
from outbox_flow.outbox.webhook import (
    WebhookAuthError,
    create_webhook_app,
    validate_github_signature,
    validate_gitlab_token,
)

pytestmark = [
    allure.epic("Quality Gate"),
    allure.feature("Webhook Receiver"),
]

_SECRET = "s3cret"
_REVIEW = json.dumps(
    {
        "review": {"id": 11, "state": "approved", "user": {"login": "alice"}},
        "pull_request": {"html_url": "https://github.com/acme/app/pull/3"},
    },
).encode("utf-8")


def _sign(payload: bytes) -> str:
    return "sha256=" + hmac.new(_SECRET.encode("utf-8"), payload, hashlib.sha256).hexdigest()


@pytest.fixture()
def quality(repository: OutboxRepository) -> QualityService:
    return QualityService(repository=repository)


@pytest.fixture()
def client(quality: QualityService) -> TestClient:
    return TestClient(create_webhook_app(quality, github_secret=_SECRET, gitlab_token="tok"))


def test_signed_github_delivery_is_ingested_once(
    client: TestClient,
    service: OutboxService,
    quality: QualityService,
) -> None:
    issue_ref = service.create_issue(title="t", body="b")
    headers = {"X-Hub-Signature-256": _sign(_REVIEW), "X-GitHub-Delivery": "d-1"}

    first = client.post("/webhooks/github", params={"issue_ref": issue_ref}, content=_REVIEW, headers=headers)
    second = client.post("/webhooks/github", params={"issue_ref": issue_ref}, content=_REVIEW, headers=headers)

    assert first.status_code == 200
    assert first.json() == {
        "issue_ref": issue_ref,
        "duplicate": False,
        "marker": "review:approved",
        "routed_role": "integrator",
    }
    assert second.json()["duplicate"] is True
    stored = quality.list_quality_events(issue_ref=issue_ref)
    assert len(stored) == 1
    assert stored[0].external_event_id == "d-1"
    assert stored[0].actor == "alice"


def test_ingestion_runs_outside_the_event_loop(
    client: TestClient,
    service: OutboxService,
    quality: QualityService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    issue_ref = service.create_issue(title="t", body="b")
    ingest = quality.ingest
    loops: list[bool] = []

    def recording_ingest(event: QualityEventInput) -> IngestResult:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            loops.append(False)
        else:
            loops.append(True)
        return ingest(event)

    monkeypatch.setattr(quality, "ingest", recording_ingest)
    headers = {"X-Hub-Signature-256": _sign(_REVIEW), "X-GitHub-Delivery": "d-9"}

    response = client.post("/webhooks/github", params={"issue_ref": issue_ref}, content=_REVIEW, headers=headers)

    assert response.status_code == 200
    assert loops == [False]


def test_bad_signature_is_rejected_and_audited(
    client: TestClient,
    service: OutboxService,
    quality: QualityService,
) -> None:
    issue_ref = service.create_issue(title="t", body="b")

    response = client.post(
        "/webhooks/github",
        params={"issue_ref": issue_ref},
        content=_REVIEW,
        headers={"X-Hub-Signature-256": "sha256=" + "0" * 64},
    )

    assert response.status_code == 401
    assert response.json() == {"error": "invalid X-Hub-Signature-256"}
    stored = quality.list_quality_events(issue_ref=issue_ref)
    assert [(row.category, row.result) for row in stored] == [("webhook", AUTH_REJECTED_RESULT)]
    assert service.list_events(issue_ref=issue_ref) == []


def test_gitlab_token_and_request_errors(client: TestClient, service: OutboxService) -> None:
    issue_ref = service.create_issue(title="t", body="b")
    pipeline = json.dumps(
        {"object_kind": "pipeline", "object_attributes": {"id": 4, "status": "success"}},
    ).encode("utf-8")

    ok = client.post(
        "/webhooks/gitlab",
        params={"issue_ref": issue_ref},
        content=pipeline,
        headers={"X-Gitlab-Token": "tok"},
    )
    assert ok.status_code == 200
    assert ok.json()["marker"] == "qa:pass"

    missing_ref = client.post("/webhooks/gitlab", content=pipeline, headers={"X-Gitlab-Token": "tok"})
    assert missing_ref.status_code == 400
    assert missing_ref.json() == {"error": "issue_ref is required"}

    unknown = client.post(
        "/webhooks/gitlab",
        params={"issue_ref": "local#404"},
        content=pipeline,
        headers={"X-Gitlab-Token": "tok"},
    )
    assert unknown.status_code == 400

    no_token = client.post("/webhooks/gitlab", params={"issue_ref": issue_ref}, content=pipeline)
    assert no_token.status_code == 401


def test_auth_validators() -> None:
    validate_github_signature("", "", b"anything")
    validate_github_signature(_SECRET, _sign(b"body"), b"body")
    with pytest.raises(WebhookAuthError, match="missing"):
        validate_github_signature(_SECRET, "", b"body")
    with pytest.raises(WebhookAuthError, match="format"):
        validate_github_signature(_SECRET, "sha1=abc", b"body")
    with pytest.raises(WebhookAuthError, match="digest"):
        validate_github_signature(_SECRET, "sha256=zz", b"body")

    validate_gitlab_token("", "")
    validate_gitlab_token("tok", " tok ")
    with pytest.raises(WebhookAuthError, match="invalid X-Gitlab-Token"):
        validate_gitlab_token("tok", "nope")
