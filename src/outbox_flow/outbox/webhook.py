"""FastAPI webhook receiver turning GitHub/GitLab deliveries into quality events."""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Callable

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from outbox_flow.outbox.errors import IssueNotFoundError, OutboxError, OutboxValidationError
from outbox_flow.outbox.quality import QualityEventInput, QualityService

logger = logging.getLogger(__name__)

_SIGNATURE_PREFIX = "sha256="


class WebhookAuthError(OutboxError):
    """Delivery failed signature or token validation."""


def create_webhook_app(
    quality: QualityService,
    *,
    github_secret: str = "",
    gitlab_token: str = "",
) -> FastAPI:
    """Build the app; an empty secret or token disables that provider's check.

    Ingestion writes to SQLite synchronously, so each delivery runs in the threadpool.
    """

    app = FastAPI(title="outbox-flow quality webhook")

    @app.post("/webhooks/github")
    async def github_webhook(request: Request) -> JSONResponse:
        payload = await request.body()
        return await run_in_threadpool(
            _handle_delivery,
            quality,
            request=request,
            payload=payload,
            source="github",
            external_event_id=request.headers.get("X-GitHub-Delivery", "").strip(),
            validate_auth=lambda: validate_github_signature(
                github_secret,
                request.headers.get("X-Hub-Signature-256", ""),
                payload,
            ),
        )

    @app.post("/webhooks/gitlab")
    async def gitlab_webhook(request: Request) -> JSONResponse:
        payload = await request.body()
        return await run_in_threadpool(
            _handle_delivery,
            quality,
            request=request,
            payload=payload,
            source="gitlab",
            external_event_id=request.headers.get("X-Gitlab-Event-UUID", "").strip(),
            validate_auth=lambda: validate_gitlab_token(
                gitlab_token,
                request.headers.get("X-Gitlab-Token", ""),
            ),
        )

    return app


def _handle_delivery(  # noqa: PLR0913
    quality: QualityService,
    *,
    request: Request,
    payload: bytes,
    source: str,
    external_event_id: str,
    validate_auth: Callable[[], None],
) -> JSONResponse:
    issue_ref = request.query_params.get("issue_ref", "").strip()
    if not issue_ref:
        return _error(400, "issue_ref is required")
    payload_text = payload.decode("utf-8", errors="replace")

    try:
        validate_auth()
    except WebhookAuthError as error:
        logger.warning("Rejected %s webhook for %s: %s", source, issue_ref, error)
        try:
            quality.ingest_auth_rejection(
                issue_ref=issue_ref,
                source=source,
                external_event_id=external_event_id,
                reason=str(error),
                payload=payload_text,
            )
        except (OutboxError, ValueError):
            logger.exception("Failed to record webhook auth rejection for %s", issue_ref)
        return _error(401, str(error))

    try:
        outcome = quality.ingest(
            QualityEventInput(
                issue_ref=issue_ref,
                source=source,
                external_event_id=external_event_id,
                payload=payload_text,
            ),
        )
    except (OutboxValidationError, IssueNotFoundError) as error:
        return _error(400, str(error))
    except OutboxError as error:
        logger.exception("Webhook ingest failed for %s", issue_ref)
        return _error(500, str(error))

    return JSONResponse(
        status_code=200,
        content={
            "issue_ref": outcome.issue_ref,
            "duplicate": outcome.duplicate,
            "marker": outcome.marker,
            "routed_role": outcome.routed_role,
        },
    )


def validate_github_signature(secret: str, signature_header: str, payload: bytes) -> None:
    secret = secret.strip()
    if not secret:
        return
    signature = signature_header.strip()
    if not signature:
        raise WebhookAuthError("missing X-Hub-Signature-256")
    if len(signature) <= len(_SIGNATURE_PREFIX) or not signature[: len(_SIGNATURE_PREFIX)].lower() == (
        _SIGNATURE_PREFIX
    ):
        raise WebhookAuthError("invalid X-Hub-Signature-256 format")
    try:
        provided = bytes.fromhex(signature[len(_SIGNATURE_PREFIX) :].strip())
    except ValueError as error:
        raise WebhookAuthError("invalid X-Hub-Signature-256 digest") from error
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    if not hmac.compare_digest(provided, expected):
        raise WebhookAuthError("invalid X-Hub-Signature-256")


def validate_gitlab_token(secret: str, token_header: str) -> None:
    secret = secret.strip()
    if not secret:
        return
    token = token_header.strip()
    if not token:
        raise WebhookAuthError("missing X-Gitlab-Token")
    if not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise WebhookAuthError("invalid X-Gitlab-Token")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})
