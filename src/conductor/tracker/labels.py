from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Literal

from conductor.tracker.base import Comment, Issue

Priority = Literal["high", "medium", "low", "none"]

READY = "ai-task"
IN_PROGRESS = "ai-in-progress"
BLOCKED = "ai-blocked"
REVIEW_READY = "ai-review-ready"
DEBUGGING = "ai-debugging"
APPROVED = "ai-approved"
PRIORITY_HIGH = "ai-priority:high"
PRIORITY_MEDIUM = "ai-priority:medium"
PRIORITY_LOW = "ai-priority:low"

PRIORITY_RANK: dict[str, int] = {"high": 0, "medium": 1, "low": 2, "none": 3}

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def priority_of(issue: Issue) -> Priority:
    if issue.has_label(PRIORITY_HIGH):
        return "high"
    if issue.has_label(PRIORITY_MEDIUM):
        return "medium"
    if issue.has_label(PRIORITY_LOW):
        return "low"
    return "none"


def sort_by_priority(issues: Iterable[Issue]) -> list[Issue]:
    """Order by priority bucket, then by creation time, oldest first."""
    return sorted(
        issues,
        key=lambda issue: (
            PRIORITY_RANK[priority_of(issue)],
            issue.created_at or _EPOCH,
            issue.number,
        ),
    )


def is_ready_for_pickup(issue: Issue) -> bool:
    return issue.has_label(READY) and not issue.has_label(IN_PROGRESS)


def is_allowed(issue: Issue, allowed_users: list[str]) -> bool:
    if not allowed_users:
        return True
    if issue.author in allowed_users:
        return True
    return issue.has_label(APPROVED)


def latest_human_comment(issue: Issue, self_username: str) -> Comment | None:
    human = [comment for comment in issue.comments if comment.author != self_username]
    return human[-1] if human else None


def latest_self_comment(issue: Issue, self_username: str) -> Comment | None:
    if not self_username:
        return None
    own = [comment for comment in issue.comments if comment.author == self_username]
    return own[-1] if own else None


def block_reference(issue: Issue, self_username: str) -> datetime:
    """When an issue became blocked, as far as the tracker alone can tell.

    The agent asks its question in a comment before labelling the issue
    blocked, so the newest self-authored comment marks the block start.
    Without one every human comment counts as new.
    """
    own = latest_self_comment(issue, self_username)
    return own.created_at if own else _EPOCH
