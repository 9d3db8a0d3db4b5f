from conductor.workspace.git import GitCommandError, GitRunner, WorktreeEntry
from conductor.workspace.manager import (
    ReclaimCandidate,
    WorkspaceManager,
    branch_name,
    recovery_branch_name,
    slugify,
)

__all__ = [
    "GitCommandError",
    "GitRunner",
    "ReclaimCandidate",
    "WorkspaceManager",
    "WorktreeEntry",
    "branch_name",
    "recovery_branch_name",
    "slugify",
]
