"""Runtime configuration for the outbox CLI, lead loop and webhook receiver."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class LeadSettings:
    """Lead sync loop settings."""

    event_batch: int = 200
    poll_interval_seconds: float = 5.0


@dataclass(slots=True)
class WebhookSettings:
    """Quality webhook receiver settings; empty secrets disable the check."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8088
    github_secret: str = ""
    gitlab_token: str = ""
    access_log: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".outbox_flow.db")
    sqlite_busy_timeout_ms: int = 5_000
    workflow_file: Path = Path("workflow.toml")
    log_level: str = "INFO"
    lead: LeadSettings = field(default_factory=LeadSettings)
    webhook: WebhookSettings = field(default_factory=WebhookSettings)

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        workflow_file: Path | None = None,
    ) -> Settings:
        """Load settings from environment; explicit arguments win."""

        settings = cls(
            db_path=db_path or Path(os.getenv("OUTBOX_FLOW_DB_PATH", ".outbox_flow.db")),
            sqlite_busy_timeout_ms=int(os.getenv("OUTBOX_FLOW_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            workflow_file=workflow_file
            or Path(os.getenv("OUTBOX_FLOW_WORKFLOW_FILE", "workflow.toml")),
            log_level=os.getenv("OUTBOX_FLOW_LOG_LEVEL", "INFO").strip().upper(),
            lead=LeadSettings(
                event_batch=int(os.getenv("OUTBOX_FLOW_LEAD_EVENT_BATCH", "200")),
                poll_interval_seconds=float(
                    os.getenv("OUTBOX_FLOW_LEAD_POLL_INTERVAL_SECONDS", "5.0"),
                ),
            ),
            webhook=WebhookSettings(
                host=os.getenv("OUTBOX_FLOW_WEBHOOK_HOST", "0.0.0.0"),  # noqa: S104
                port=int(os.getenv("OUTBOX_FLOW_WEBHOOK_PORT", "8088")),
                github_secret=os.getenv("OUTBOX_FLOW_GITHUB_SECRET", ""),
                gitlab_token=os.getenv("OUTBOX_FLOW_GITLAB_TOKEN", ""),
                access_log=_env_bool("OUTBOX_FLOW_WEBHOOK_ACCESS_LOG", default=True),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("OUTBOX_FLOW_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"OUTBOX_FLOW_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}.")
        if self.lead.event_batch <= 0:
            raise ValueError("OUTBOX_FLOW_LEAD_EVENT_BATCH must be a positive integer.")
        if self.lead.poll_interval_seconds < 0:
            raise ValueError("OUTBOX_FLOW_LEAD_POLL_INTERVAL_SECONDS must be >= 0.")
        if not 0 < self.webhook.port < 65_536:
            raise ValueError("OUTBOX_FLOW_WEBHOOK_PORT must be a valid TCP port.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
