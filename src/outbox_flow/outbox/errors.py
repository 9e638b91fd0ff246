"""Error taxonomy for outbox operations."""

from __future__ import annotations


class OutboxError(RuntimeError):
    """Base error for outbox operations."""


class OutboxValidationError(OutboxError, ValueError):
    """Bad or missing input; raised before any state mutation."""


class IssueNotFoundError(OutboxError):
    """Issue reference does not resolve to a stored issue."""

    def __init__(self, issue_ref: str) -> None:
        super().__init__(f"issue {issue_ref} not found")
        self.issue_ref = issue_ref


class IssueClosedError(OutboxError):
    """Mutation attempted on a closed issue."""

    def __init__(self, issue_ref: str) -> None:
        super().__init__(f"issue {issue_ref} is closed")
        self.issue_ref = issue_ref


class PreconditionError(OutboxError):
    """Work-start precondition failed; carries the blocking items."""

    default_message = "work precondition failed"

    def __init__(self, blockers: list[str] | None = None, message: str | None = None) -> None:
        self.blockers = list(blockers or [])
        text = message or self.default_message
        if self.blockers:
            text = f"{text}: {', '.join(self.blockers)}"
        super().__init__(text)


class IssueNotClaimedError(PreconditionError):
    default_message = "work start requires assignee claim"


class NeedsHumanError(PreconditionError):
    default_message = "issue has needs-human label"


class DependsUnresolvedError(PreconditionError):
    default_message = "issue has unresolved dependencies"


class WorkflowConfigError(OutboxError):
    """Workflow profile or workdir policy is invalid."""


class WorkdirError(OutboxError):
    """Git worktree sandbox lifecycle failure."""


class WorkResultError(OutboxError):
    """Worker result is missing, unparseable, or fails identity echo."""


class CodexRunnerError(OutboxError):
    """Pipeline runner could not produce a step outcome."""
