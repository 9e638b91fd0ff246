"""Shared test fixtures."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from outbox_flow.outbox.cache import SqliteKvCache
from outbox_flow.outbox.repository import OutboxRepository
from outbox_flow.outbox.service import OutboxService

_WORKFLOW_HEADER = """\
version = 2

[outbox]
backend = "sqlite"
path = "outbox.db"

[roles]
enabled = ["backend", "frontend", "reviewer", "qa", "integrator"]

[repos]
main = "repo"

[role_repo]
backend = "main"
frontend = "main"
reviewer = "main"
qa = "main"
integrator = "main"
"""

DEFAULT_GROUPS = """\
[groups.backend]
role = "backend"
max_concurrent = 1
"""


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OutboxRepository]:
    repo = OutboxRepository(tmp_path / "outbox.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def cache(repository: OutboxRepository) -> SqliteKvCache:
    return SqliteKvCache(repository.engine)


@pytest.fixture()
def service(repository: OutboxRepository, cache: SqliteKvCache) -> OutboxService:
    return OutboxService(repository=repository, cache=cache)


@pytest.fixture()
def make_workflow(tmp_path: Path) -> Callable[..., Path]:
    """Write `workflow.toml` under tmp_path; `groups` and `extra` are raw TOML."""

    def _make(groups: str = DEFAULT_GROUPS, extra: str = "") -> Path:
        (tmp_path / "repo").mkdir(exist_ok=True)
        path = tmp_path / "workflow.toml"
        path.write_text("\n".join([_WORKFLOW_HEADER, groups, extra]), "utf-8")
        return path

    return _make


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """A git repository with one commit."""

    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir(exist_ok=True)

    def _git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)  # noqa: S603, S607

    _git("init", "-q")
    _git("config", "user.email", "dev@example.com")
    _git("config", "user.name", "dev")
    (repo / "README.md").write_text("hello\n", "utf-8")
    _git("add", "README.md")
    _git("commit", "-q", "-m", "init")
    return repo
