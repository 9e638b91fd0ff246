"""Workflow profile: per-deployment role, group, executor and workdir policy."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from outbox_flow.outbox.errors import WorkflowConfigError

SUPPORTED_PROFILE_VERSION = 2
SUPPORTED_OUTBOX_BACKEND = "sqlite"
GROUP_MODES = frozenset({"owner", "subscriber"})
WRITEBACK_MODES = frozenset({"full", "comment-only"})

DEFAULT_EXECUTOR_PROGRAM = "go"
DEFAULT_EXECUTOR_ARGS = ("test", "./...")
DEFAULT_EXECUTOR_TIMEOUT_SECONDS = 1_800


@dataclass(slots=True)
class OutboxConfig:
    backend: str = SUPPORTED_OUTBOX_BACKEND
    path: str = ""


@dataclass(slots=True)
class GroupConfig:
    """One lead group: which role it drives and how it writes back."""

    name: str
    role: str
    max_concurrent: int = 1
    mode: str = "owner"
    writeback: str = "full"
    listen_labels: tuple[str, ...] = ()

    @property
    def is_subscriber(self) -> bool:
        return self.mode == "subscriber"

    @property
    def is_comment_only(self) -> bool:
        return self.writeback == "comment-only"

    @property
    def spawn_cap(self) -> int:
        return max(self.max_concurrent, 1)


@dataclass(slots=True)
class ExecutorConfig:
    program: str = DEFAULT_EXECUTOR_PROGRAM
    args: tuple[str, ...] = DEFAULT_EXECUTOR_ARGS
    timeout_seconds: int = DEFAULT_EXECUTOR_TIMEOUT_SECONDS


@dataclass(slots=True)
class WorkdirConfig:
    """Git-worktree sandbox policy."""

    enabled: bool = False
    backend: str = ""
    root: str = ""
    cleanup: str = ""
    roles: tuple[str, ...] = ()


@dataclass(slots=True)
class WorkflowProfile:
    """Parsed `workflow.toml`; `path` anchors relative repo and workdir paths."""

    path: Path
    version: int
    outbox: OutboxConfig = field(default_factory=OutboxConfig)
    enabled_roles: tuple[str, ...] = ()
    repos: dict[str, str] = field(default_factory=dict)
    role_repo: dict[str, str] = field(default_factory=dict)
    groups: dict[str, GroupConfig] = field(default_factory=dict)
    executors: dict[str, ExecutorConfig] = field(default_factory=dict)
    workdir: WorkdirConfig = field(default_factory=WorkdirConfig)

    @property
    def base_dir(self) -> Path:
        return self.path.parent

    def is_role_enabled(self, role: str) -> bool:
        normalized = role.strip()
        return bool(normalized) and normalized in self.enabled_roles

    def find_group_by_role(self, role: str) -> GroupConfig | None:
        for name in sorted(self.groups):
            group = self.groups[name]
            if group.role == role.strip():
                return group
        return None

    def resolve_role_repo_dir(self, role: str) -> Path:
        repo_key = self.role_repo.get(role, "").strip()
        if not repo_key:
            raise WorkflowConfigError(f"role_repo mapping is required for role {role}")
        repo_path = self.repos.get(repo_key, "").strip()
        if not repo_path:
            raise WorkflowConfigError(f"repos mapping is required for repo key {repo_key}")
        return self.resolve_path(repo_path)

    def resolve_executor(self, role: str) -> ExecutorConfig:
        return self.executors.get(role.strip(), ExecutorConfig())

    def should_use_workdir(self, role: str) -> bool:
        normalized = role.strip()
        return self.workdir.enabled and bool(normalized) and normalized in self.workdir.roles

    def resolve_path(self, value: str) -> Path:
        """Absolute paths stay as-is; relative ones resolve against the profile directory."""

        candidate = Path(value)
        if candidate.is_absolute():
            return candidate.resolve()
        return (self.base_dir / candidate).resolve()


def load_workflow_profile(path: Path | str) -> WorkflowProfile:
    """Read and validate a workflow profile file."""

    text_path = str(path).strip()
    if not text_path:
        raise WorkflowConfigError("workflow file is required")
    profile_path = Path(text_path).resolve()
    try:
        raw = tomllib.loads(profile_path.read_text("utf-8"))
    except FileNotFoundError as error:
        raise WorkflowConfigError(f"workflow file not found: {profile_path}") from error
    except tomllib.TOMLDecodeError as error:
        raise WorkflowConfigError(f"invalid workflow file {profile_path}: {error}") from error
    return parse_workflow_profile(raw, path=profile_path)


def parse_workflow_profile(raw: dict[str, Any], *, path: Path) -> WorkflowProfile:
    version = raw.get("version")
    if version != SUPPORTED_PROFILE_VERSION:
        raise WorkflowConfigError(
            f"workflow version must be {SUPPORTED_PROFILE_VERSION}, got {version!r}",
        )

    outbox_raw = _table(raw, "outbox")
    roles_raw = _table(raw, "roles")
    groups = {
        name: _parse_group(name, _as_table(value, f"groups.{name}"))
        for name, value in _table(raw, "groups").items()
    }
    executors = {
        role: _parse_executor(_as_table(value, f"executors.{role}"))
        for role, value in _table(raw, "executors").items()
    }
    return WorkflowProfile(
        path=path,
        version=SUPPORTED_PROFILE_VERSION,
        outbox=OutboxConfig(
            backend=str(outbox_raw.get("backend", SUPPORTED_OUTBOX_BACKEND)).strip(),
            path=str(outbox_raw.get("path", "")).strip(),
        ),
        enabled_roles=_string_tuple(roles_raw.get("enabled", []), "roles.enabled"),
        repos=_string_map(_table(raw, "repos")),
        role_repo=_string_map(_table(raw, "role_repo")),
        groups=groups,
        executors=executors,
        workdir=_parse_workdir(_table(raw, "workdir")),
    )


def _parse_group(name: str, raw: dict[str, Any]) -> GroupConfig:
    role = str(raw.get("role", "")).strip()
    if not role:
        raise WorkflowConfigError(f"groups.{name}.role is required")
    mode = str(raw.get("mode", "")).strip().lower() or "owner"
    if mode not in GROUP_MODES:
        raise WorkflowConfigError(f"groups.{name}.mode must be owner or subscriber, got {mode!r}")
    writeback = str(raw.get("writeback", "")).strip().lower() or "full"
    if writeback not in WRITEBACK_MODES:
        raise WorkflowConfigError(
            f"groups.{name}.writeback must be full or comment-only, got {writeback!r}",
        )
    if mode == "subscriber" and writeback != "comment-only":
        raise WorkflowConfigError(
            f"groups.{name}: subscriber mode requires writeback = \"comment-only\"",
        )
    max_concurrent = raw.get("max_concurrent", 1)
    if not isinstance(max_concurrent, int):
        raise WorkflowConfigError(f"groups.{name}.max_concurrent must be an integer")
    listen_labels = _string_tuple(raw.get("listen_labels", []), f"groups.{name}.listen_labels")
    return GroupConfig(
        name=name,
        role=role,
        max_concurrent=max_concurrent,
        mode=mode,
        writeback=writeback,
        listen_labels=listen_labels or (f"to:{role}",),
    )


def _parse_executor(raw: dict[str, Any]) -> ExecutorConfig:
    program = str(raw.get("program", "")).strip() or DEFAULT_EXECUTOR_PROGRAM
    args = _string_tuple(raw.get("args", []), "executors.args") or DEFAULT_EXECUTOR_ARGS
    timeout_seconds = raw.get("timeout_seconds", 0)
    if not isinstance(timeout_seconds, int) or timeout_seconds <= 0:
        timeout_seconds = DEFAULT_EXECUTOR_TIMEOUT_SECONDS
    return ExecutorConfig(program=program, args=args, timeout_seconds=timeout_seconds)


def _parse_workdir(raw: dict[str, Any]) -> WorkdirConfig:
    return WorkdirConfig(
        enabled=bool(raw.get("enabled", False)),
        backend=str(raw.get("backend", "")).strip(),
        root=str(raw.get("root", "")).strip(),
        cleanup=str(raw.get("cleanup", "")).strip(),
        roles=_string_tuple(raw.get("roles", []), "workdir.roles"),
    )


def _table(raw: dict[str, Any], key: str) -> dict[str, Any]:
    return _as_table(raw.get(key, {}), key)


def _as_table(value: object, key: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise WorkflowConfigError(f"{key} must be a table")
    return value


def _string_tuple(value: object, key: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise WorkflowConfigError(f"{key} must be an array of strings")
    return tuple(str(item).strip() for item in value if str(item).strip())


def _string_map(raw: dict[str, Any]) -> dict[str, str]:
    return {str(key).strip(): str(value).strip() for key, value in raw.items()}
