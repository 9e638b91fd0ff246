"""Git-worktree sandboxes for isolated worker execution."""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from outbox_flow.outbox.errors import WorkdirError, WorkflowConfigError
from outbox_flow.outbox.workflow import WorkdirConfig, WorkflowProfile

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 120
_SEGMENT_REPLACEMENTS = str.maketrans({"/": "_", "\\": "_", "#": "_", ":": "_", " ": "_"})


class WorkdirManager(Protocol):
    """Prepare and remove one sandbox per (role, issue, run)."""

    def prepare(self, *, role: str, issue_ref: str, run_id: str) -> Path: ...

    def cleanup(self, *, role: str, issue_ref: str, run_id: str, workdir: Path) -> None: ...


WorkdirManagerFactory = Callable[[WorkdirConfig, WorkflowProfile, Path], WorkdirManager]
GitRunner = Callable[[list[str]], subprocess.CompletedProcess[str]]


class GitWorktreeManager:
    """Detached `git worktree` checkouts under a configured sandbox root."""

    def __init__(
        self,
        *,
        config: WorkdirConfig,
        profile: WorkflowProfile,
        repo_dir: Path,
        run_git: GitRunner | None = None,
    ) -> None:
        if not config.enabled:
            raise WorkflowConfigError("workdir is disabled")
        if config.backend != "git-worktree":
            raise WorkflowConfigError(f"unsupported workdir backend {config.backend!r}")
        if config.cleanup != "immediate":
            raise WorkflowConfigError(f"unsupported workdir cleanup policy {config.cleanup!r}")
        if not config.root:
            raise WorkflowConfigError("workdir root is required when enabled")
        self.repo_dir = repo_dir.resolve()
        self.allowed_root = profile.resolve_path(config.root)
        self._run_git = run_git or _run_git

    def workdir_path(self, *, role: str, issue_ref: str, run_id: str) -> Path:
        segments = []
        for name, value in (("role", role), ("issue ref", issue_ref), ("run id", run_id)):
            if not value.strip():
                raise WorkdirError(f"{name} is required")
            segments.append(sanitize_workdir_segment(value))
        return self.allowed_root.joinpath(*segments)

    def prepare(self, *, role: str, issue_ref: str, run_id: str) -> Path:
        workdir = self.workdir_path(role=role, issue_ref=issue_ref, run_id=run_id)
        ensure_path_inside_dir(self.allowed_root, workdir)
        if workdir.exists():
            raise WorkdirError(f"workdir already exists: {workdir}")
        workdir.parent.mkdir(parents=True, exist_ok=True)

        self._ensure_repo_is_git()
        result = self._git(self.repo_dir, "worktree", "add", "--detach", str(workdir), "HEAD")
        if result.returncode != 0:
            self._cleanup_failed_prepare(workdir)
            raise WorkdirError(f"git worktree add failed: {_output(result)}")

        logger.info(
            "git worktree prepared: role=%s issue=%s run=%s workdir=%s",
            role,
            issue_ref,
            run_id,
            workdir,
        )
        return workdir

    def cleanup(self, *, role: str, issue_ref: str, run_id: str, workdir: Path) -> None:
        """Remove a clean worktree; a dirty tree is an error and stays on disk."""

        ensure_path_inside_dir(self.allowed_root, workdir)
        if not workdir.exists():
            self._prune()
            return

        status = self._git(workdir, "status", "--porcelain")
        if status.returncode != 0:
            raise WorkdirError(f"git status failed: {_output(status)}")
        if status.stdout.strip():
            raise WorkdirError(f"workdir is dirty: git status reports changes: {_output(status)}")

        removed = self._git(self.repo_dir, "worktree", "remove", str(workdir))
        if removed.returncode != 0:
            raise WorkdirError(f"git worktree remove failed: {_output(removed)}")
        self._prune()
        logger.info(
            "git worktree cleaned up: role=%s issue=%s run=%s workdir=%s",
            role,
            issue_ref,
            run_id,
            workdir,
        )

    def _ensure_repo_is_git(self) -> None:
        result = self._git(self.repo_dir, "rev-parse", "--is-inside-work-tree")
        if result.returncode != 0:
            raise WorkdirError(f"git rev-parse failed: {_output(result)}")
        if result.stdout.strip().lower() != "true":
            raise WorkdirError(f"repo is not a git working tree: {self.repo_dir}")

    def _prune(self) -> None:
        result = self._git(self.repo_dir, "worktree", "prune")
        if result.returncode != 0:
            raise WorkdirError(f"git worktree prune failed: {_output(result)}")

    def _cleanup_failed_prepare(self, workdir: Path) -> None:
        try:
            self._prune()
        except WorkdirError as error:
            logger.warning("Prune after failed worktree add failed: %s", error)
        try:
            ensure_path_inside_dir(self.allowed_root, workdir)
        except WorkdirError as error:
            logger.warning("Skip removing failed workdir outside allowed root: %s", error)
            return
        shutil.rmtree(workdir, ignore_errors=True)

    def _git(self, cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
        return self._run_git(["git", "-C", str(cwd), *args])


def git_worktree_factory(
    config: WorkdirConfig,
    profile: WorkflowProfile,
    repo_dir: Path,
) -> WorkdirManager:
    return GitWorktreeManager(config=config, profile=profile, repo_dir=repo_dir)


def sanitize_workdir_segment(value: str) -> str:
    return value.strip().translate(_SEGMENT_REPLACEMENTS)


def ensure_path_inside_dir(root: Path, target: Path) -> None:
    """Reject the root itself and any path that escapes it."""

    root_abs = root.resolve()
    target_abs = target.resolve()
    if target_abs == root_abs:
        raise WorkdirError(f"target path is the root directory: {target_abs}")
    if not target_abs.is_relative_to(root_abs):
        raise WorkdirError(f"target path escapes root directory: {target_abs} (root={root_abs})")


def _run_git(argv: list[str]) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(  # noqa: S603
            argv,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
            check=False,
        )
    except FileNotFoundError as error:
        raise WorkdirError("git executable not found") from error
    except subprocess.TimeoutExpired as error:
        raise WorkdirError(f"git timed out after {GIT_TIMEOUT_SECONDS}s: {' '.join(argv)}") from error


def _output(result: subprocess.CompletedProcess[str]) -> str:
    return "\n".join(part.strip() for part in (result.stdout, result.stderr) if part.strip())
