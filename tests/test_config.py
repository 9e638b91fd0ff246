from __future__ import annotations

from pathlib import Path

import allure
import pytest

from outbox_flow.config import LeadSettings, Settings, WebhookSettings

pytestmark = [
    allure.epic("Outbox"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "OUTBOX_FLOW_DB_PATH",
        "OUTBOX_FLOW_WORKFLOW_FILE",
        "OUTBOX_FLOW_LOG_LEVEL",
        "OUTBOX_FLOW_LEAD_EVENT_BATCH",
        "OUTBOX_FLOW_WEBHOOK_PORT",
        "OUTBOX_FLOW_WEBHOOK_ACCESS_LOG",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".outbox_flow.db")
    assert settings.workflow_file == Path("workflow.toml")
    assert settings.lead.event_batch == 200
    assert settings.webhook.port == 8088
    assert settings.webhook.access_log is True


def test_from_env_parses_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("OUTBOX_FLOW_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("OUTBOX_FLOW_LOG_LEVEL", "debug")
    monkeypatch.setenv("OUTBOX_FLOW_LEAD_POLL_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("OUTBOX_FLOW_GITHUB_SECRET", "abc")
    monkeypatch.setenv("OUTBOX_FLOW_WEBHOOK_ACCESS_LOG", "off")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.log_level == "DEBUG"
    assert settings.lead.poll_interval_seconds == 0.5
    assert settings.webhook.github_secret == "abc"
    assert settings.webhook.access_log is False

    explicit = Settings.from_env(db_path=tmp_path / "cli.db", workflow_file=tmp_path / "w.toml")
    assert explicit.db_path == tmp_path / "cli.db"
    assert explicit.workflow_file == tmp_path / "w.toml"


def test_from_env_rejects_invalid_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OUTBOX_FLOW_WEBHOOK_ACCESS_LOG", "maybe")
    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()

    monkeypatch.delenv("OUTBOX_FLOW_WEBHOOK_ACCESS_LOG")
    monkeypatch.setenv("OUTBOX_FLOW_LOG_LEVEL", "chatty")
    with pytest.raises(ValueError, match="OUTBOX_FLOW_LOG_LEVEL"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(sqlite_busy_timeout_ms=-1), "BUSY_TIMEOUT"),
        (Settings(lead=LeadSettings(event_batch=0)), "EVENT_BATCH"),
        (Settings(lead=LeadSettings(poll_interval_seconds=-1)), "POLL_INTERVAL"),
        (Settings(webhook=WebhookSettings(port=70_000)), "WEBHOOK_PORT"),
    ],
)
def test_validate_rejects_out_of_range(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
