from conductor.tracker.base import (
    CheckState,
    Comment,
    Issue,
    IssueTracker,
    PullRequest,
    TrackerError,
)
from conductor.tracker.github import GitHubTracker

__all__ = [
    "CheckState",
    "Comment",
    "GitHubTracker",
    "Issue",
    "IssueTracker",
    "PullRequest",
    "TrackerError",
]
